"""Per-task git worktrees.

Each task gets its own checkout on branch ``task/<id8>`` under the worktree
root, so concurrent or crashing agents never touch the primary tree. When a
worktree can't be created the task runs in the primary tree instead.
"""

import base64
import logging
import shutil
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from ..core.config import WorktreeConfig
from ..core.prompts import commit_prefix, generate_branch_name
from ..integrations.github.client import FileChange, RepositoryClient, RepositoryError
from ..utils.subprocess_utils import SubprocessError, run_git_command
from ..utils.validators import validate_branch_name, validate_task_id

logger = logging.getLogger(__name__)


class WorkspaceError(Exception):
    """Creating or publishing a workspace failed."""


class WorktreeHandle:
    """
    A task's working directory plus its one-shot cleanup.

    ``cleanup`` runs the removal at most once no matter how many times it is
    called; using the handle as a context manager calls it on exit whether or
    not the body raised.
    """

    def __init__(
        self,
        path: Path,
        branch_name: Optional[str],
        isolated: bool,
        on_cleanup: Optional[Callable[[], None]] = None,
    ):
        self.path = Path(path)
        self.branch_name = branch_name
        self.isolated = isolated
        self._on_cleanup = on_cleanup
        self._cleaned = False

    @property
    def cleaned_up(self) -> bool:
        return self._cleaned

    def cleanup(self) -> None:
        if self._cleaned:
            return
        self._cleaned = True
        if self._on_cleanup is not None:
            self._on_cleanup()

    def __enter__(self) -> "WorktreeHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    def __repr__(self) -> str:
        return f"WorktreeHandle(path={str(self.path)!r}, branch={self.branch_name!r}, isolated={self.isolated})"


class WorkspaceIsolator:
    """Creates, publishes and removes per-task worktrees of one repository."""

    def __init__(
        self,
        repository_path: Path,
        config: WorktreeConfig,
        branch_prefix: str = "task/",
        clock: Callable[[], float] = time.time,
    ):
        self.repository_path = Path(repository_path).resolve()
        self.config = config
        self.branch_prefix = branch_prefix
        self._clock = clock

    def primary(self) -> WorktreeHandle:
        """Handle on the primary tree; its cleanup does nothing."""
        return WorktreeHandle(self.repository_path, None, isolated=False)

    def _default_branch(self) -> str:
        result = run_git_command(
            ["symbolic-ref", "refs/remotes/origin/HEAD"], cwd=self.repository_path, check=False
        )
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip().replace("refs/remotes/origin/", "")
        main = run_git_command(["rev-parse", "--verify", "main"], cwd=self.repository_path, check=False)
        return "main" if main.returncode == 0 else "master"

    def _branch_exists(self, branch: str) -> bool:
        for ref in (branch, f"origin/{branch}"):
            result = run_git_command(["rev-parse", "--verify", ref], cwd=self.repository_path, check=False)
            if result.returncode == 0:
                return True
        return False

    def create(self, task_id: str) -> WorktreeHandle:
        """
        Add a worktree for ``task_id``.

        Raises:
            WorkspaceError: If git refuses to create it
        """
        validate_task_id(task_id)
        short_id = task_id[:8]
        branch = validate_branch_name(generate_branch_name(task_id, self.branch_prefix))
        path = self.config.root / f"task-{short_id}-{int(self._clock() * 1000)}"

        logger.info(f"🌳 Creating git worktree for task {short_id} (branch {branch}, path {path})")
        self.config.root.mkdir(parents=True, exist_ok=True)

        fetch = run_git_command(["fetch", "origin"], cwd=self.repository_path, check=False)
        if fetch.returncode != 0:
            logger.warning("Could not fetch from origin (continuing anyway)")

        try:
            if self._branch_exists(branch):
                logger.info(f"📌 Using existing branch {branch}")
                run_git_command(["worktree", "add", str(path), branch], cwd=self.repository_path, timeout=60)
            else:
                base = self._default_branch()
                logger.info(f"🌱 Creating new branch {branch} from {base}")
                run_git_command(
                    ["worktree", "add", "-b", branch, str(path), base], cwd=self.repository_path, timeout=60,
                )
        except SubprocessError as e:
            raise WorkspaceError(f"Failed to create worktree: {e.stderr.strip() or e}") from e

        return self.attach(path, branch)

    def attach(self, path: Path, branch: Optional[str]) -> WorktreeHandle:
        """Handle on an existing worktree, e.g. one kept from a previous run."""
        return WorktreeHandle(Path(path), branch, isolated=True, on_cleanup=lambda: self._remove(Path(path)))

    def create_or_fallback(self, task_id: str) -> WorktreeHandle:
        """Isolated worktree when enabled and possible, else the primary tree."""
        if not self.config.enabled:
            return self.primary()
        try:
            return self.create(task_id)
        except (WorkspaceError, SubprocessError, ValueError, OSError) as e:
            logger.error(f"⚠️ Worktree creation failed, falling back to primary tree: {e}")
            return self.primary()

    @contextmanager
    def workspace(self, task_id: str) -> Iterator[WorktreeHandle]:
        handle = self.create_or_fallback(task_id)
        with handle:
            yield handle

    def _remove(self, path: Path) -> None:
        if not self.config.cleanup:
            logger.info(f"Keeping worktree {path} (cleanup disabled)")
            return
        logger.info(f"🧹 Cleaning up worktree {path}")
        try:
            run_git_command(["worktree", "remove", str(path), "--force"], cwd=self.repository_path)
        except SubprocessError as e:
            logger.warning(f"git worktree remove failed, deleting directory instead: {e.stderr.strip()}")
            shutil.rmtree(path, ignore_errors=True)
            run_git_command(["worktree", "prune"], cwd=self.repository_path, check=False)

    def publish(
        self,
        handle: WorktreeHandle,
        title: str,
        repository: Optional[str],
        repo_client: Optional[RepositoryClient],
        base_branch: str = "main",
        body: str = "",
        create_pr: bool = True,
    ) -> Optional[str]:
        """
        Commit leftovers, push the handle's branch and open a PR.

        Returns the PR URL (an existing open PR for the branch is reused), or
        None when no PR was requested or possible.
        """
        if not handle.branch_name:
            return None
        cwd = handle.path

        status = run_git_command(["status", "--porcelain"], cwd=cwd)
        if status.stdout.strip():
            logger.info("📝 Uncommitted changes detected, committing")
            run_git_command(["add", "-A"], cwd=cwd)
            message = f"{commit_prefix(title)}: {title[:50]}"
            run_git_command(["commit", "-m", message], cwd=cwd, check=False)

        logger.info(f"🚀 Pushing branch {handle.branch_name}")
        try:
            run_git_command(["push", "-u", "origin", handle.branch_name], cwd=cwd, timeout=60)
        except SubprocessError as e:
            raise WorkspaceError(f"Failed to push {handle.branch_name}: {e.stderr.strip() or e}") from e

        if not create_pr or not repository or repo_client is None:
            return None

        existing = repo_client.find_pull_request(repository, handle.branch_name)
        if existing:
            logger.info(f"Existing PR for {handle.branch_name}: {existing.url}")
            return existing.url
        try:
            pr = repo_client.create_pull_request(repository, handle.branch_name, base_branch, title, body)
        except RepositoryError as e:
            raise WorkspaceError(str(e)) from e
        return pr.url

    def publish_via_api(
        self,
        task_id: str,
        title: str,
        cwd: Path,
        files: Sequence[str],
        repository: str,
        repo_client: RepositoryClient,
        base_branch: str = "main",
        body: str = "",
    ) -> Tuple[str, str]:
        """
        Commit ``files`` from ``cwd`` to the task branch through the hosting API.

        Used when the run happened in the primary tree and there is no local
        task branch to push. Returns (PR URL, commit sha).
        """
        branch = validate_branch_name(generate_branch_name(task_id, self.branch_prefix))
        changes = file_changes(cwd, files)
        if not changes:
            raise WorkspaceError("No changed files to publish")

        if not repo_client.branch_exists(repository, branch):
            repo_client.create_branch(repository, branch, base_branch)
        commit = repo_client.commit_changes(repository, branch, changes, f"{commit_prefix(title)}: {title[:50]}")

        existing = repo_client.find_pull_request(repository, branch)
        if existing:
            return existing.url, commit.sha
        pr = repo_client.create_pull_request(repository, branch, base_branch, title, body)
        return pr.url, commit.sha

    def sync_primary(self, branch: str) -> None:
        """
        Reset the primary tree to ``origin/<branch>``.

        Raises:
            WorkspaceError: If fetching or resetting fails
        """
        validate_branch_name(branch)
        logger.info(f"🔄 Updating primary tree to origin/{branch}")
        try:
            run_git_command(["fetch", "origin", branch], cwd=self.repository_path, timeout=60)
            run_git_command(["checkout", branch], cwd=self.repository_path)
            run_git_command(["reset", "--hard", f"origin/{branch}"], cwd=self.repository_path)
        except SubprocessError as e:
            raise WorkspaceError(f"Failed to update primary tree to {branch}: {e.stderr.strip() or e}") from e


def file_changes(root: Path, paths: Sequence[str]) -> List[FileChange]:
    """
    API file changes for ``paths`` as they are on disk under ``root``.

    Missing files become deletions, directories expand to the files in
    them, and anything that isn't UTF-8 is sent base64 encoded.
    """
    changes: List[FileChange] = []
    for relative in paths:
        full = root / relative
        if full.is_dir():
            nested = [str(p.relative_to(root)) for p in sorted(full.rglob("*")) if p.is_file()]
            changes.extend(file_changes(root, nested))
        elif not full.exists():
            changes.append(FileChange(relative, action="delete"))
        else:
            data = full.read_bytes()
            try:
                changes.append(FileChange(relative, data.decode("utf-8")))
            except UnicodeDecodeError:
                changes.append(FileChange(relative, base64.b64encode(data).decode("ascii"), encoding="base64"))
    return changes
