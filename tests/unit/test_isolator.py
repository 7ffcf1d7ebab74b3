"""Tests for per-task worktrees against a real local git repository."""

from unittest.mock import MagicMock

import pytest

from backlog_agent.core.config import WorktreeConfig
from backlog_agent.integrations.github.client import PullRequestInfo
from backlog_agent.utils.subprocess_utils import git_output, run_git_command
from backlog_agent.workspace.isolator import WorkspaceError, WorkspaceIsolator, WorktreeHandle, file_changes

TASK_ID = "a1b2c3d4-0000-4000-8000-000000000001"


@pytest.fixture
def origin(tmp_path):
    path = tmp_path / "origin.git"
    run_git_command(["init", "--bare", "-b", "main", str(path)], cwd=tmp_path)
    return path


@pytest.fixture
def repo(tmp_path, origin):
    path = tmp_path / "repo"
    path.mkdir()
    for args in (
        ["init", "-b", "main"],
        ["config", "user.email", "agent@example.com"],
        ["config", "user.name", "Agent"],
        ["remote", "add", "origin", str(origin)],
    ):
        run_git_command(args, cwd=path)
    (path / "README.md").write_text("# App\n")
    run_git_command(["add", "-A"], cwd=path)
    run_git_command(["commit", "-m", "initial"], cwd=path)
    run_git_command(["push", "-u", "origin", "main"], cwd=path)
    return path


def _isolator(repo, tmp_path, **config):
    return WorkspaceIsolator(
        repo, WorktreeConfig(root=tmp_path / "worktrees", **config), clock=lambda: 1700000000.0,
    )


class TestWorktreeHandle:
    """Cleanup runs exactly once however the handle is left."""

    def test_cleanup_once_on_normal_exit(self):
        calls = []
        with WorktreeHandle("/tmp/x", "task/x", True, on_cleanup=lambda: calls.append(1)) as handle:
            pass
        handle.cleanup()
        assert calls == [1]
        assert handle.cleaned_up

    def test_cleanup_once_when_body_raises(self):
        calls = []
        handle = WorktreeHandle("/tmp/x", "task/x", True, on_cleanup=lambda: calls.append(1))
        with pytest.raises(RuntimeError):
            with handle:
                raise RuntimeError("agent crashed")
        handle.cleanup()
        assert calls == [1]


class TestCreate:
    def test_creates_branch_and_worktree(self, repo, tmp_path):
        handle = _isolator(repo, tmp_path).create(TASK_ID)

        assert handle.isolated
        assert handle.branch_name == "task/a1b2c3d4"
        assert handle.path == tmp_path / "worktrees" / "task-a1b2c3d4-1700000000000"
        assert (handle.path / "README.md").exists()
        assert git_output(["rev-parse", "--abbrev-ref", "HEAD"], cwd=handle.path) == "task/a1b2c3d4"

    def test_cleanup_removes_worktree(self, repo, tmp_path):
        isolator = _isolator(repo, tmp_path)
        with isolator.workspace(TASK_ID) as handle:
            path = handle.path
            assert path.exists()
        assert not path.exists()
        assert str(path) not in git_output(["worktree", "list"], cwd=repo)

    def test_cleanup_disabled_keeps_worktree(self, repo, tmp_path):
        isolator = _isolator(repo, tmp_path, cleanup=False)
        with isolator.workspace(TASK_ID) as handle:
            path = handle.path
        assert path.exists()

    def test_existing_branch_is_reused(self, repo, tmp_path):
        run_git_command(["branch", "task/a1b2c3d4"], cwd=repo)
        handle = _isolator(repo, tmp_path).create(TASK_ID)
        assert git_output(["rev-parse", "--abbrev-ref", "HEAD"], cwd=handle.path) == "task/a1b2c3d4"

    def test_invalid_task_id(self, repo, tmp_path):
        with pytest.raises(ValueError):
            _isolator(repo, tmp_path).create("../escape")

    def test_fallback_to_primary_when_git_fails(self, tmp_path):
        not_a_repo = tmp_path / "plain"
        not_a_repo.mkdir()
        handle = _isolator(not_a_repo, tmp_path).create_or_fallback(TASK_ID)
        assert not handle.isolated
        assert handle.path == not_a_repo.resolve()
        assert handle.branch_name is None

    def test_disabled_uses_primary(self, repo, tmp_path):
        handle = _isolator(repo, tmp_path, enabled=False).create_or_fallback(TASK_ID)
        assert not handle.isolated

    def test_failed_create_raises_workspace_error(self, repo, tmp_path):
        isolator = _isolator(repo, tmp_path)
        isolator.create(TASK_ID)
        # Same branch can't be checked out in two worktrees
        with pytest.raises(WorkspaceError):
            WorkspaceIsolator(repo, WorktreeConfig(root=tmp_path / "worktrees"), clock=lambda: 1.0).create(TASK_ID)


class TestPublish:
    def test_commits_pushes_and_opens_pr(self, repo, tmp_path, origin):
        isolator = _isolator(repo, tmp_path)
        handle = isolator.create(TASK_ID)
        (handle.path / "theme.css").write_text("body { color: white; }\n")

        repo_client = MagicMock()
        repo_client.find_pull_request.return_value = None
        repo_client.create_pull_request.return_value = PullRequestInfo(
            7, "https://github.com/octo/app/pull/7", "Add dark mode", "task/a1b2c3d4", "main",
        )

        url = isolator.publish(handle, "Add dark mode", "octo/app", repo_client, body="Closes task")

        assert url == "https://github.com/octo/app/pull/7"
        assert git_output(["log", "-1", "--format=%s", "task/a1b2c3d4"], cwd=origin) == "feat: Add dark mode"
        repo_client.create_pull_request.assert_called_once_with(
            "octo/app", "task/a1b2c3d4", "main", "Add dark mode", "Closes task",
        )

    def test_existing_pr_is_reused(self, repo, tmp_path):
        isolator = _isolator(repo, tmp_path)
        handle = isolator.create(TASK_ID)
        repo_client = MagicMock()
        repo_client.find_pull_request.return_value = PullRequestInfo(
            3, "https://github.com/octo/app/pull/3", "Old", "task/a1b2c3d4", "main",
        )

        assert isolator.publish(handle, "Fix header", "octo/app", repo_client) == "https://github.com/octo/app/pull/3"
        repo_client.create_pull_request.assert_not_called()

    def test_primary_handle_is_not_published(self, repo, tmp_path):
        isolator = _isolator(repo, tmp_path)
        assert isolator.publish(isolator.primary(), "x", "octo/app", MagicMock()) is None

    def test_no_pr_without_repository(self, repo, tmp_path):
        isolator = _isolator(repo, tmp_path)
        handle = isolator.create(TASK_ID)
        assert isolator.publish(handle, "Fix header", None, MagicMock()) is None


class TestFileChanges:
    def test_text_binary_deleted_and_directories(self, tmp_path):
        (tmp_path / "app.py").write_text("print('hi')\n")
        (tmp_path / "logo.png").write_bytes(b"\x89PNG\xff\x00")
        (tmp_path / "pkg").mkdir()
        (tmp_path / "pkg" / "a.py").write_text("a\n")

        changes = file_changes(tmp_path, ["app.py", "logo.png", "gone.py", "pkg/"])

        by_path = {c.path: c for c in changes}
        assert by_path["app.py"].content == "print('hi')\n"
        assert by_path["logo.png"].encoding == "base64"
        assert by_path["gone.py"].action == "delete"
        assert by_path["pkg/a.py"].content == "a\n"


class TestPublishViaApi:
    def test_commits_to_task_branch_and_opens_pr(self, repo, tmp_path):
        (repo / "theme.css").write_text("body { color: white; }\n")
        repo_client = MagicMock()
        repo_client.branch_exists.return_value = False
        repo_client.commit_changes.return_value.sha = "abc123"
        repo_client.find_pull_request.return_value = None
        repo_client.create_pull_request.return_value = PullRequestInfo(
            8, "https://github.com/octo/app/pull/8", "Add dark mode", "task/a1b2c3d4", "main",
        )

        url, sha = _isolator(repo, tmp_path).publish_via_api(
            TASK_ID, "Add dark mode", repo, ["theme.css"], "octo/app", repo_client, body="Closes task",
        )

        assert (url, sha) == ("https://github.com/octo/app/pull/8", "abc123")
        repo_client.create_branch.assert_called_once_with("octo/app", "task/a1b2c3d4", "main")
        changes = repo_client.commit_changes.call_args.args[2]
        assert [c.path for c in changes] == ["theme.css"]

    def test_nothing_to_publish(self, repo, tmp_path):
        with pytest.raises(WorkspaceError):
            _isolator(repo, tmp_path).publish_via_api(TASK_ID, "x", repo, [], "octo/app", MagicMock())


class TestSyncPrimary:
    def test_primary_tree_moves_to_merged_remote_head(self, repo, tmp_path, origin):
        other = tmp_path / "other"
        run_git_command(["clone", str(origin), str(other)], cwd=tmp_path)
        run_git_command(["config", "user.email", "dev@example.com"], cwd=other)
        run_git_command(["config", "user.name", "Dev"], cwd=other)
        (other / "README.md").write_text("# App (merged)\n")
        run_git_command(["commit", "-am", "merge PR"], cwd=other)
        run_git_command(["push", "origin", "main"], cwd=other)

        _isolator(repo, tmp_path).sync_primary("main")

        assert (repo / "README.md").read_text() == "# App (merged)\n"
        assert git_output(["log", "-1", "--format=%s"], cwd=repo) == "merge PR"

    def test_unknown_branch_raises(self, repo, tmp_path):
        with pytest.raises(WorkspaceError):
            _isolator(repo, tmp_path).sync_primary("does-not-exist")
