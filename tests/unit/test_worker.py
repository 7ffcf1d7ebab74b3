"""Tests for WorkerLoop with a fake tracker and scripted executors."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from backlog_agent.core.models import Provider, SessionStatus, utcnow
from backlog_agent.core.prompts import pr_created_comment
from backlog_agent.core.worker import WorkerLoop
from backlog_agent.deploy.deployer import DeployResult
from backlog_agent.executors.base import ExecutionResult
from backlog_agent.integrations.github.client import CommitInfo, PullRequestInfo
from backlog_agent.integrations.tracker.client import TrackerError
from backlog_agent.sessions.manager import SessionManager
from backlog_agent.sessions.store import InMemorySessionStore
from backlog_agent.workspace.isolator import WorkspaceError, WorkspaceIsolator
from tests.unit.factories import NOW, agent, human, make_comment, make_task

TASK_ID = "a1b2c3d4-0000-4000-8000-000000000001"
PR_URL = "https://github.com/octo/app/pull/5"


class FakeTracker:
    """In-memory tracker recording every write."""

    def __init__(self, tasks=(), comments=None):
        self.tasks = {t.id: t for t in tasks}
        self.comments = comments or {}
        self.posted = []
        self.reassigned = []
        self.completed = []
        self.list_calls = []

    async def list_tasks(self, include_completed=False):
        self.list_calls.append(include_completed)
        return list(self.tasks.values())

    async def get_task(self, task_id):
        return self.tasks[task_id]

    async def list_comments(self, task_id):
        return list(self.comments.get(task_id, []))

    async def create_comment(self, task_id, content, agent_id=None):
        self.posted.append((task_id, content, agent_id))

    async def reassign_task(self, task_id, assignee_id):
        self.reassigned.append((task_id, assignee_id))

    async def complete_task(self, task_id):
        self.completed.append(task_id)

    async def get_agent_id_by_email(self, email):
        return "agent-1"

    def contents(self):
        return [content for _, content, _ in self.posted]


def _result(**overrides):
    data = {"success": True, "exit_code": 0, "modified_files": ["src/toggle.ts"], "pr_url": PR_URL}
    data.update(overrides)
    return ExecutionResult(**data)


@pytest.fixture
def executor():
    executor = MagicMock()
    executor.start_session = AsyncMock(return_value=_result())
    executor.resume_session = AsyncMock(return_value=_result(session_token="tok-2"))
    return executor


@pytest.fixture
def build_worker(config, executor):
    def build(tracker, session_store=None, repo_client=None, deployer=None, sleep=None):
        router = MagicMock()
        router.resolve.return_value = executor
        kwargs = {"sleep": sleep} if sleep else {}
        return WorkerLoop(
            config=config,
            tracker=tracker,
            router=router,
            isolator=WorkspaceIsolator(config.worker.repository_path, config.worktree),
            session_store=session_store or InMemorySessionStore(),
            sessions=SessionManager(),
            repo_client=repo_client,
            deployer=deployer,
            **kwargs,
        )
    return build


class TestPolling:
    @pytest.mark.asyncio
    async def test_only_open_agent_tasks_are_processed(self, build_worker, executor):
        tracker = FakeTracker([
            make_task(),
            make_task(id="b1", assignee="jo@example.com"),
            make_task(id="c1", completed=True),
        ])
        worker = build_worker(tracker)

        assert await worker.poll_once() == 1
        assert tracker.list_calls == [False]
        executor.start_session.assert_awaited_once()
        assert executor.start_session.await_args.args[0].task_id == TASK_ID

    @pytest.mark.asyncio
    async def test_in_progress_task_is_skipped(self, build_worker, executor):
        fresh_start = make_comment("🤖 **Claude Agent Starting**", is_agent=True, now=utcnow())
        tracker = FakeTracker([make_task()], {TASK_ID: [fresh_start]})

        assert await build_worker(tracker).poll_once() == 0
        executor.start_session.assert_not_awaited()
        assert tracker.posted == []

    @pytest.mark.asyncio
    async def test_cooldown_after_success(self, build_worker, executor):
        tracker = FakeTracker([make_task()])
        worker = build_worker(tracker)

        await worker.poll_once()
        assert await worker.poll_once() == 0
        executor.start_session.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unreadable_task_does_not_block_the_rest(self, build_worker, executor):
        class FlakyTracker(FakeTracker):
            async def list_comments(self, task_id):
                if task_id == "bad":
                    raise TrackerError("comments unavailable", 500)
                return await super().list_comments(task_id)

        tracker = FlakyTracker([make_task(id="bad"), make_task()])
        worker = build_worker(tracker)

        assert await worker.poll_once() == 1
        executor.start_session.assert_awaited_once()
        assert executor.start_session.await_args.args[0].task_id == TASK_ID
        assert not worker.state.is_locked("bad")

    @pytest.mark.asyncio
    async def test_poll_failure_does_not_stop_loop(self, build_worker):
        tracker = FakeTracker()
        tracker.list_tasks = AsyncMock(side_effect=TrackerError("tracker down", 503))
        sleeps = []

        async def sleep(seconds):
            sleeps.append(seconds)
            worker.stop()

        worker = build_worker(tracker, sleep=sleep)
        await worker.run_forever()
        assert sleeps == [30]


class TestProcessPath:
    @pytest.mark.asyncio
    async def test_success_posts_markers_and_unassigns(self, build_worker):
        tracker = FakeTracker([make_task()])
        worker = build_worker(tracker)

        await worker.poll_once()

        posted = tracker.contents()
        assert "Claude Agent Starting" in posted[0]
        assert "Pull Request Created" in posted[1]
        assert PR_URL in posted[1]
        assert all(agent_id == "agent-1" for _, _, agent_id in tracker.posted)
        assert tracker.reassigned == [(TASK_ID, "user-1")]
        assert worker.sessions.get_by_task_id(TASK_ID).status == SessionStatus.WAITING_INPUT.value
        assert worker.active_tasks() == []

    @pytest.mark.asyncio
    async def test_no_changes(self, build_worker, executor):
        executor.start_session.return_value = _result(modified_files=[], pr_url=None, summary="Nothing to do")
        tracker = FakeTracker([make_task()])
        worker = build_worker(tracker)

        await worker.poll_once()

        assert "No Changes Made" in tracker.contents()[-1]
        assert worker.sessions.get_by_task_id(TASK_ID).status == SessionStatus.COMPLETED.value
        assert tracker.reassigned == [(TASK_ID, "user-1")]

    @pytest.mark.asyncio
    async def test_changes_without_pr_report_implementation_complete(self, build_worker, executor):
        executor.start_session.return_value = _result(pr_url=None)
        tracker = FakeTracker([make_task()])

        await build_worker(tracker).poll_once()

        assert "Implementation Complete" in tracker.contents()[-1]
        assert "src/toggle.ts" in tracker.contents()[-1]

    @pytest.mark.asyncio
    async def test_resume_with_latest_feedback(self, build_worker, executor, tmp_path):
        store = InMemorySessionStore({TASK_ID: {"session_token": "tok-1", "worktree_path": str(tmp_path)}})
        comments = [
            agent("❌ **Implementation Failed**\n\nboom", minutes_ago=10),
            human("retry with a blue toggle", minutes_ago=1),
        ]
        tracker = FakeTracker([make_task()], {TASK_ID: comments})
        worker = build_worker(tracker, session_store=store)

        await worker.poll_once()

        executor.start_session.assert_not_awaited()
        session, feedback = executor.resume_session.await_args.args[:2]
        assert feedback == "retry with a blue toggle"
        assert session.session_token == "tok-1"
        assert "Continuing from previous session" in tracker.contents()[0]
        assert worker.sessions.get_by_task_id(TASK_ID).session_token == "tok-2"

    @pytest.mark.asyncio
    async def test_missing_worktree_starts_fresh(self, build_worker, executor, tmp_path):
        store = InMemorySessionStore({TASK_ID: {"session_token": "tok-1", "worktree_path": str(tmp_path / "gone")}})
        comments = [agent("❌ **Worker Error**", minutes_ago=10), human("retry", minutes_ago=1)]
        tracker = FakeTracker([make_task()], {TASK_ID: comments})

        await build_worker(tracker, session_store=store).poll_once()

        executor.resume_session.assert_not_awaited()
        executor.start_session.assert_awaited_once()


class TestFailureBoundary:
    """Failures become a comment on the task and never escape dispatch."""

    @pytest.mark.asyncio
    async def test_exception_posts_error_and_releases_lock(self, build_worker, executor):
        executor.start_session.side_effect = RuntimeError("boom")
        tracker = FakeTracker([make_task()])
        worker = build_worker(tracker)

        assert await worker.poll_once() == 1

        failure = tracker.contents()[-1]
        assert failure.startswith("❌ **Worker Error**")
        assert "**retry**" in failure
        assert not worker.state.is_locked(TASK_ID)
        assert worker.sessions.get_by_task_id(TASK_ID).status == SessionStatus.ERROR.value

    @pytest.mark.asyncio
    async def test_failed_run_is_implementation_failure(self, build_worker, executor):
        executor.start_session.return_value = _result(success=False, exit_code=1, error="Claude Code exited with code 1")
        tracker = FakeTracker([make_task()])

        await build_worker(tracker).poll_once()

        assert tracker.contents()[-1].startswith("❌ **Implementation Failed**")
        assert tracker.reassigned == []

    @pytest.mark.asyncio
    async def test_verification_failure(self, build_worker, config):
        config.workflow.verify_command = "echo 'type error in toggle.ts' >&2; exit 3"
        tracker = FakeTracker([make_task()])

        await build_worker(tracker).poll_once()

        failure = tracker.contents()[-1]
        assert failure.startswith("❌ **Verification Failed**")
        assert "type error in toggle.ts" in failure

    @pytest.mark.asyncio
    async def test_failure_comment_errors_are_contained(self, build_worker, executor):
        executor.start_session.side_effect = RuntimeError("boom")
        tracker = FakeTracker([make_task()])
        worker = build_worker(tracker)
        original = tracker.create_comment

        async def flaky(task_id, content, agent_id=None):
            if content.startswith("❌"):
                raise TrackerError("tracker down")
            await original(task_id, content, agent_id)

        tracker.create_comment = flaky
        assert await worker.poll_once() == 1
        assert not worker.state.is_locked(TASK_ID)

    @pytest.mark.asyncio
    async def test_duplicate_dispatch_is_refused(self, build_worker, executor):
        tracker = FakeTracker([make_task()])
        worker = build_worker(tracker)
        worker.state.try_acquire(TASK_ID)

        status = worker.classifier.classify([])
        assert await worker.dispatch(make_task(), [], status) is False
        executor.start_session.assert_not_awaited()


class TestShipPath:
    def _ship_comments(self):
        return [
            agent(pr_created_comment(PR_URL, Provider.CLAUDE), minutes_ago=10),
            human("ship it", minutes_ago=1),
        ]

    @pytest.mark.asyncio
    async def test_ship_merges_and_completes(self, build_worker, executor):
        repo_client = MagicMock()
        repo_client.merge_pull_request.return_value = "abc1234def"
        store = InMemorySessionStore({TASK_ID: "tok-1"})
        tracker = FakeTracker([make_task()], {TASK_ID: self._ship_comments()})
        worker = build_worker(tracker, session_store=store, repo_client=repo_client)

        await worker.poll_once()

        repo_client.merge_pull_request.assert_called_once_with("octo/app", 5)
        executor.start_session.assert_not_awaited()
        posted = tracker.contents()
        assert "Ship It Deployment Started" in posted[0]
        assert "**Shipped!**" in posted[-1]
        assert tracker.completed == [TASK_ID]
        assert tracker.reassigned == [(TASK_ID, "user-1")]
        assert store.get(TASK_ID) is None

    @pytest.mark.asyncio
    async def test_ship_without_credentials_fails_visibly(self, build_worker):
        tracker = FakeTracker([make_task()], {TASK_ID: self._ship_comments()})

        await build_worker(tracker).poll_once()

        failure = tracker.contents()[-1]
        assert failure.startswith("❌ **Ship It Failed**")
        assert "**ship it** to merge the existing PR" in failure


class TestManualRuns:
    @pytest.mark.asyncio
    async def test_unassigned_task_not_processed_without_force(self, build_worker, executor):
        tracker = FakeTracker([make_task(assignee="jo@example.com")])
        status = await build_worker(tracker).process_task_by_id(TASK_ID)
        assert not status.should_process
        assert status.reason == "Task is not assigned to an AI agent"
        executor.start_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_force_overrides_skip(self, build_worker, executor):
        comments = [agent(pr_created_comment(PR_URL, Provider.CLAUDE), minutes_ago=10)]
        tracker = FakeTracker([make_task()], {TASK_ID: comments})

        status = await build_worker(tracker).process_task_by_id(TASK_ID, force=True)

        assert status.should_process
        assert status.reason.startswith("Manual run")
        assert executor.start_session.await_count + executor.resume_session.await_count == 1


def _repo_client():
    repo_client = MagicMock()
    repo_client.branch_exists.return_value = False
    repo_client.commit_changes.return_value = CommitInfo(sha="c0ffee1234", url="https://github.com/c", message="m")
    repo_client.find_pull_request.return_value = None
    repo_client.create_pull_request.return_value = PullRequestInfo(
        number=5, url=PR_URL, title="Add dark mode toggle", head_ref="task/a1b2c3d4", base_ref="main",
    )
    repo_client.get_pull_request.return_value = PullRequestInfo(
        number=5, url=PR_URL, title="Add dark mode toggle", head_ref="task/a1b2c3d4", base_ref="main",
    )
    repo_client.get_pr_comments.return_value = []
    return repo_client


class TestPublishing:
    """Changes made in the primary tree are published through the hosting API."""

    @pytest.mark.asyncio
    async def test_primary_tree_changes_become_a_pr(self, build_worker, executor, config, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "toggle.ts").write_text("export const dark = true;\n")
        config.workflow.verify_command = "true"
        executor.start_session.return_value = _result(pr_url=None)
        repo_client = _repo_client()
        tracker = FakeTracker([make_task()])

        await build_worker(tracker, repo_client=repo_client).poll_once()

        repo_client.create_branch.assert_called_once_with("octo/app", "task/a1b2c3d4", "main")
        repository, branch, changes, message = repo_client.commit_changes.call_args.args
        assert (repository, branch) == ("octo/app", "task/a1b2c3d4")
        assert [(c.path, c.content) for c in changes] == [("src/toggle.ts", "export const dark = true;\n")]
        assert message == "feat: Add dark mode toggle"
        repo_client.create_pull_request.assert_called_once()
        status_args = repo_client.set_commit_status.call_args.args
        assert status_args[:3] == ("octo/app", "c0ffee1234", "success")
        assert "Pull Request Created" in tracker.contents()[-1]
        assert PR_URL in tracker.contents()[-1]

    @pytest.mark.asyncio
    async def test_existing_branch_and_pr_are_reused(self, build_worker, executor, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "toggle.ts").write_text("x\n")
        executor.start_session.return_value = _result(pr_url=None)
        repo_client = _repo_client()
        repo_client.branch_exists.return_value = True
        repo_client.find_pull_request.return_value = repo_client.create_pull_request.return_value

        await build_worker(FakeTracker([make_task()]), repo_client=repo_client).poll_once()

        repo_client.create_branch.assert_not_called()
        repo_client.create_pull_request.assert_not_called()
        repo_client.set_commit_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_pr_discussion_reaches_the_agent(self, build_worker, executor):
        repo_client = _repo_client()
        repo_client.get_pr_comments.return_value = [
            {"id": "9", "author": "octocat", "body": "please rename the toggle", "created_at": NOW},
            {"id": "10", "author": "ci[bot]", "body": "", "created_at": NOW},
        ]
        comments = [
            agent(pr_created_comment(PR_URL, Provider.CLAUDE), minutes_ago=10),
            human("address the review", minutes_ago=1),
        ]
        tracker = FakeTracker([make_task()], {TASK_ID: comments})

        await build_worker(tracker, repo_client=repo_client).poll_once()

        repo_client.get_pr_comments.assert_called_once_with("octo/app", 5)
        context = executor.start_session.await_args.kwargs["context"]
        pr_comments = [c for c in context.comments if c.id.startswith("pr-")]
        assert [c.content for c in pr_comments] == ["(on PR #5) please rename the toggle"]
        assert pr_comments[0].author_name == "octocat"

    @pytest.mark.asyncio
    async def test_preview_link_posted_on_the_pr(self, build_worker):
        repo_client = _repo_client()
        deployer = MagicMock(is_configured=True)
        deployer.deploy_preview.return_value = DeployResult(success=True, url="https://task-a1b2c3d4.preview.app")
        tracker = FakeTracker([make_task()])

        await build_worker(tracker, repo_client=repo_client, deployer=deployer).poll_once()

        assert "Preview Ready" in tracker.contents()[-1]
        repository, number, body = repo_client.add_pr_comment.call_args.args
        assert (repository, number) == ("octo/app", 5)
        assert "https://task-a1b2c3d4.preview.app" in body


class TestShipDeployment:
    def _ship_comments(self):
        return [
            agent(pr_created_comment(PR_URL, Provider.CLAUDE), minutes_ago=10),
            human("ship it", minutes_ago=1),
        ]

    @pytest.mark.asyncio
    async def test_primary_tree_synced_before_production_deploy(self, build_worker):
        calls = []
        repo_client = _repo_client()
        repo_client.merge_pull_request.side_effect = lambda *args: calls.append("merge") or "abc1234def"
        deployer = MagicMock(is_configured=True)
        deployer.deploy_production.side_effect = (
            lambda path: calls.append("deploy") or DeployResult(success=True, url="https://app.example.com")
        )
        tracker = FakeTracker([make_task()], {TASK_ID: self._ship_comments()})
        worker = build_worker(tracker, repo_client=repo_client, deployer=deployer)
        worker.isolator.sync_primary = MagicMock(side_effect=lambda branch: calls.append(f"sync {branch}"))

        await worker.poll_once()

        assert calls == ["merge", "sync main", "deploy"]
        repo_client.delete_branch.assert_called_once_with("octo/app", "task/a1b2c3d4")
        assert "https://app.example.com" in tracker.contents()[-1]

    @pytest.mark.asyncio
    async def test_failed_sync_skips_deploy_but_still_ships(self, build_worker):
        repo_client = _repo_client()
        repo_client.merge_pull_request.return_value = "abc1234def"
        deployer = MagicMock(is_configured=True)
        tracker = FakeTracker([make_task()], {TASK_ID: self._ship_comments()})
        worker = build_worker(tracker, repo_client=repo_client, deployer=deployer)
        worker.isolator.sync_primary = MagicMock(side_effect=WorkspaceError("fetch failed"))

        await worker.poll_once()

        deployer.deploy_production.assert_not_called()
        assert "**Shipped!**" in tracker.contents()[-1]
        assert tracker.completed == [TASK_ID]

    @pytest.mark.asyncio
    async def test_branch_kept_when_configured(self, build_worker, config):
        config.github.delete_branch_on_merge = False
        repo_client = _repo_client()
        repo_client.merge_pull_request.return_value = "abc1234def"
        tracker = FakeTracker([make_task()], {TASK_ID: self._ship_comments()})

        await build_worker(tracker, repo_client=repo_client).poll_once()

        repo_client.delete_branch.assert_not_called()
