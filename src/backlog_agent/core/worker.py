"""Poll loop that turns assigned tracker tasks into agent runs and pull requests."""

import asyncio
import logging
import subprocess
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from ..deploy.deployer import VercelDeployer
from ..errors.translator import FailureTranslator
from ..executors.base import ExecutionContext, ExecutionResult, ExecutorCallbacks
from ..executors.router import ExecutorRouter, route_provider
from ..integrations.github.client import RepositoryClient, RepositoryError, parse_pr_url
from ..integrations.tracker.client import TrackerClient, TrackerError
from ..sessions.manager import SessionManager
from ..sessions.store import SessionStore
from ..utils.rich_logging import ContextLogger
from ..utils.subprocess_utils import git_output, run_command
from ..workspace.isolator import WorkspaceError, WorkspaceIsolator, WorktreeHandle
from .classifier import StateClassifier, extract_pr_url
from .config import OrchestratorConfig
from .models import Comment, ProcessingAction, ProcessingStatus, Session, SessionStatus, Task
from .prompts import (
    IMPLEMENTATION_FAILED_TITLE,
    SHIP_FAILED_TITLE,
    VERIFICATION_FAILED_TITLE,
    WORKER_ERROR_TITLE,
    implementation_complete_comment,
    latest_human_comment,
    no_changes_comment,
    pr_created_comment,
    preview_ready_comment,
    shipped_comment,
    starting_comment,
)
from .state import OrchestratorState

logger = logging.getLogger(__name__)

VERIFY_OUTPUT_TAIL = 3000


class VerificationError(Exception):
    """The build/typecheck command failed on the agent's changes."""


class ExecutionError(Exception):
    """The agent run itself failed."""


class WorkerLoop:
    """
    Polls the tracker and drives each actionable task through one agent run.

    Tasks within a cycle are handled one after another. Every failure is
    contained at the task boundary: it becomes a comment on that task and the
    loop moves on.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        tracker: TrackerClient,
        router: ExecutorRouter,
        isolator: WorkspaceIsolator,
        session_store: SessionStore,
        sessions: SessionManager,
        repo_client: Optional[RepositoryClient] = None,
        deployer: Optional[VercelDeployer] = None,
        state: Optional[OrchestratorState] = None,
        classifier: Optional[StateClassifier] = None,
        translator: Optional[FailureTranslator] = None,
        log: Optional[ContextLogger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.tracker = tracker
        self.router = router
        self.isolator = isolator
        self.session_store = session_store
        self.sessions = sessions
        self.repo_client = repo_client
        self.deployer = deployer
        self.state = state or OrchestratorState(cooldown_seconds=config.worker.cooldown_seconds)
        self.classifier = classifier or StateClassifier(config.worker.stale_marker_seconds)
        self.translator = translator or FailureTranslator()
        self.log = log or ContextLogger(logger)
        self._sleep = sleep
        self._running = False
        self._identities = {i.lower() for i in config.tracker.agent_identities}

    # --- Loop ---

    async def run_forever(self) -> None:
        """Poll until ``stop()`` is called."""
        self._running = True
        logger.info(f"🚀 Worker started, polling every {self.config.worker.poll_interval}s")
        for session in self.sessions.recover():
            logger.warning(f"⚠️ Session for task {session.task_id} was interrupted by a restart")
        self.sessions.cleanup_expired()

        while self._running:
            try:
                await self.poll_once()
            except Exception as e:
                # Tracker outages end the cycle, not the worker
                logger.error(f"❌ Poll cycle failed: {e}", exc_info=True)
            if self._running:
                await self._sleep(self.config.worker.poll_interval)

    def stop(self) -> None:
        logger.info("Stopping worker")
        self._running = False

    def is_agent_task(self, task: Task) -> bool:
        return not task.completed and (task.assignee or "").lower() in self._identities

    async def poll_once(self) -> int:
        """One cycle; returns how many tasks were acted on."""
        tasks = await self.tracker.list_tasks(include_completed=False)
        agent_tasks = [t for t in tasks if self.is_agent_task(t)]
        logger.info(f"📋 Found {len(tasks)} tasks, {len(agent_tasks)} assigned to AI agents")

        handled = 0
        for task in agent_tasks:
            if self.state.should_skip(task.id):
                logger.debug(f"⏭️ Skipping task {task.id[:8]}: locked or cooling down")
                continue
            try:
                comments = await self.tracker.list_comments(task.id)
                status = self.classifier.classify(comments)
            except Exception as e:
                # One unreadable task must not starve the rest of the cycle
                logger.error(f"❌ Could not read state of task {task.id[:8]}: {e}")
                continue
            logger.info(
                f"🔍 {task.title[:60]!r}: {'PROCESS' if status.should_process else 'SKIP'} ({status.reason})"
            )
            if not status.should_process:
                continue
            if await self.dispatch(task, comments, status):
                handled += 1
        return handled

    async def process_task_by_id(self, task_id: str, force: bool = False) -> ProcessingStatus:
        """
        Handle one task right now, outside the poll schedule.

        With ``force`` the classifier's skip verdict is overridden (a ship
        verdict is still honoured) and assignment is not checked.
        """
        task = await self.tracker.get_task(task_id)
        if not force and not self.is_agent_task(task):
            return ProcessingStatus(should_process=False, reason="Task is not assigned to an AI agent")
        if self.state.should_skip(task.id):
            return ProcessingStatus(should_process=False, reason="Task is locked or cooling down")

        comments = await self.tracker.list_comments(task.id)
        status = self.classifier.classify(comments)
        if not status.should_process:
            if not force:
                logger.info(f"⏭️ Not processing {task.id[:8]}: {status.reason}")
                return status
            status = ProcessingStatus(
                should_process=True, reason=f"Manual run ({status.reason})", action=ProcessingAction.PROCESS,
            )
        await self.dispatch(task, comments, status)
        return status

    # --- Task boundary ---

    async def dispatch(self, task: Task, comments: Sequence[Comment], status: ProcessingStatus) -> bool:
        """Run one task under its lock; False if the lock was already held."""
        if not self.state.try_acquire(task.id):
            logger.info(f"⚠️ Task {task.id[:8]} already executing, skipping duplicate")
            return False

        started = time.monotonic()
        self.log.task_started(task.id, task.title, provider=route_provider(task.assignee).value)
        agent_id: Optional[str] = None
        try:
            agent_id = await self._agent_id(task)
            if status.action == ProcessingAction.SHIP_IT:
                await self._ship(task, status.pr_url, agent_id)
            else:
                await self._process(task, comments, agent_id)
            self.log.task_finished(time.monotonic() - started)
        except Exception as e:
            self.log.task_failed(str(e))
            logger.debug("Task failure traceback", exc_info=True)
            await self._report_failure(task, e, status, agent_id)
            if self.sessions.get_by_task_id(task.id):
                self.sessions.update(task.id, status=SessionStatus.ERROR)
        finally:
            self.state.release(task.id)
        return True

    async def _report_failure(
        self, task: Task, error: Exception, status: ProcessingStatus, agent_id: Optional[str]
    ) -> None:
        if status.action == ProcessingAction.SHIP_IT:
            title = SHIP_FAILED_TITLE
        elif isinstance(error, VerificationError):
            title = VERIFICATION_FAILED_TITLE
        elif isinstance(error, ExecutionError):
            title = IMPLEMENTATION_FAILED_TITLE
        else:
            title = WORKER_ERROR_TITLE
        pr_url = status.pr_url or getattr(error, "pr_url", None)
        try:
            await self.tracker.create_comment(
                task.id, self.translator.format_comment(error, title, pr_url), agent_id
            )
        except TrackerError as post_error:
            logger.error(f"Failed to post failure comment on {task.id[:8]}: {post_error}")

    # --- Helpers ---

    async def _agent_id(self, task: Task) -> Optional[str]:
        email = task.assignee
        if not email:
            return None
        configured = self.config.tracker.agent_user_ids.get(email)
        if configured:
            return configured
        try:
            return await self.tracker.get_agent_id_by_email(email)
        except TrackerError as e:
            logger.warning(f"Could not look up agent id for {email}: {e}")
            return None

    async def _post(self, task: Task, content: str, agent_id: Optional[str]) -> None:
        await self.tracker.create_comment(task.id, content, agent_id)

    async def _unassign(self, task: Task) -> None:
        """Hand the task back to its creator so the agent doesn't pick it up again."""
        await self.tracker.reassign_task(task.id, task.creator_id)

    def _repository(self, task: Task) -> Optional[str]:
        return task.repository or self.config.worker.default_repository

    async def _prepare_workspace(self, task: Task, has_history: bool) -> Tuple[WorktreeHandle, bool]:
        """
        Workspace for this run plus whether the previous session can resume.

        Resuming needs prior agent activity, a stored session token and the
        stored workspace still on disk; anything less starts fresh.
        """
        token = self.session_store.get_token(task.id)
        stored = self.session_store.get_worktree(task.id)
        if has_history and token and stored and Path(stored[0]).exists():
            path, branch = stored
            if Path(path).resolve() == self.isolator.repository_path:
                handle = self.isolator.primary()
            else:
                handle = self.isolator.attach(Path(path), branch)
            logger.info(f"📚 Resuming task {task.id[:8]} in {path}")
            return handle, True

        handle = await asyncio.to_thread(self.isolator.create_or_fallback, task.id)
        self.session_store.set_worktree(task.id, str(handle.path), handle.branch_name)
        return handle, False

    def _open_session(self, task: Task, handle: WorktreeHandle, resumed: bool) -> Session:
        provider = route_provider(task.assignee)
        existing = self.sessions.get_by_task_id(task.id)
        if existing is None or not resumed:
            self.sessions.create(
                task.id, task.title, task.description, project_path=str(handle.path), provider=provider,
            )
        else:
            self.sessions.increment_message_count(task.id)
        session = self.sessions.update(
            task.id, status=SessionStatus.RUNNING, project_path=str(handle.path), provider=provider,
        )
        token = self.session_store.get_token(task.id)
        if resumed and token and not session.session_token:
            session = self.sessions.update(task.id, session_token=token)
        return session

    async def _verify(self, cwd: Path) -> None:
        command = self.config.workflow.verify_command
        if not command:
            return
        logger.info(f"🔎 Verifying changes: {command}")
        try:
            result = await asyncio.to_thread(
                run_command, command, cwd=cwd, check=False, timeout=self.config.workflow.verify_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise VerificationError(
                f"`{command}` timed out after {self.config.workflow.verify_timeout}s"
            ) from e
        if result.returncode != 0:
            output = (result.stdout + result.stderr)[-VERIFY_OUTPUT_TAIL:]
            raise VerificationError(f"`{command}` exited with {result.returncode}:\n{output}")
        logger.info("✅ Verification passed")

    # --- Process path ---

    async def _process(self, task: Task, comments: Sequence[Comment], agent_id: Optional[str]) -> None:
        executor = self.router.resolve(task.assignee)
        provider = route_provider(task.assignee)
        repository = self._repository(task)
        has_history = any(c.is_agent for c in comments)
        feedback = latest_human_comment(comments) if has_history else None

        handle, resumed = await self._prepare_workspace(task, has_history)
        try:
            await self._post(
                task,
                starting_comment(
                    provider, task, repository, resumed=resumed,
                    latest_feedback=feedback.content if feedback else None,
                ),
                agent_id,
            )
            session = self._open_session(task, handle, resumed)

            async def on_comment(content: str) -> None:
                await self._post(task, content, agent_id)

            async def on_progress(message: str) -> None:
                logger.debug(f"⏳ {task.id[:8]}: {message}")

            pr_discussion = await self._pr_discussion(comments) if has_history else []
            context = ExecutionContext(
                cwd=handle.path,
                comments=(*comments, *pr_discussion),
                repository=repository,
                task_title=task.title,
                task_description=task.description,
            )
            callbacks = ExecutorCallbacks(on_comment=on_comment, on_progress=on_progress)

            if resumed and feedback is not None:
                result = await executor.resume_session(session, feedback.content, context, callbacks)
            else:
                result = await executor.start_session(session, context=context, callbacks=callbacks)

            if result.session_token:
                self.sessions.update(task.id, session_token=result.session_token)
            if not result.success:
                raise ExecutionError(result.error or f"Agent exited with code {result.exit_code}")

            await self._finish(task, handle, result, repository, agent_id)
        finally:
            await asyncio.to_thread(handle.cleanup)

    async def _finish(
        self,
        task: Task,
        handle: WorktreeHandle,
        result: ExecutionResult,
        repository: Optional[str],
        agent_id: Optional[str],
    ) -> None:
        provider = route_provider(task.assignee)
        if not result.has_changes and not result.pr_url:
            logger.warning(f"⚠️ Task {task.id[:8]} finished without changes")
            await self._post(task, no_changes_comment(result.summary), agent_id)
            self.sessions.update(task.id, status=SessionStatus.COMPLETED)
            await self._unassign(task)
            self.state.start_cooldown(task.id)
            return

        await self._verify(handle.path)

        pr_url = result.pr_url
        workflow = self.config.workflow
        body = f"## Summary\n\n{result.summary or task.title}\n\nTask: {task.id}"
        sha: Optional[str] = None
        if not pr_url and handle.branch_name:
            pr_url = await asyncio.to_thread(
                self.isolator.publish, handle, task.title, repository, self.repo_client,
                self.config.github.default_base, body, workflow.create_pr,
            )
            if pr_url:
                sha = await asyncio.to_thread(git_output, ["rev-parse", "HEAD"], cwd=handle.path)
        elif not pr_url and repository and self.repo_client is not None and workflow.create_pr:
            # Primary tree run: there is no local task branch, so commit through the API
            pr_url, sha = await asyncio.to_thread(
                self.isolator.publish_via_api, task.id, task.title, handle.path, result.modified_files,
                repository, self.repo_client, self.config.github.default_base, body,
            )
        if sha and repository and workflow.verify_command:
            await self._mark_verified(repository, sha)

        if pr_url:
            await self._post(task, pr_created_comment(pr_url, provider, task.title), agent_id)
            await self._deploy_preview(task, handle, pr_url, agent_id)
        else:
            await self._post(task, implementation_complete_comment(result.modified_files, result.summary), agent_id)

        self.sessions.update(task.id, status=SessionStatus.WAITING_INPUT)
        await self._unassign(task)
        self.state.start_cooldown(task.id)

    async def _mark_verified(self, repository: str, sha: str) -> None:
        try:
            await asyncio.to_thread(
                self.repo_client.set_commit_status, repository, sha, "success",
                f"Verification passed: {self.config.workflow.verify_command}",
            )
        except RepositoryError as e:
            logger.warning(f"⚠️ Could not set commit status on {sha[:7]}: {e}")

    async def _pr_discussion(self, comments: Sequence[Comment]) -> List[Comment]:
        """Review comments left on the task's pull request, as task comments."""
        pr_url = extract_pr_url(comments)
        if not pr_url or self.repo_client is None:
            return []
        try:
            repository, number = parse_pr_url(pr_url)
            raw = await asyncio.to_thread(self.repo_client.get_pr_comments, repository, number)
        except RepositoryError as e:
            logger.warning(f"⚠️ Could not read comments on {pr_url}: {e}")
            return []
        return [
            Comment(
                id=f"pr-{c['id']}",
                content=f"(on PR #{number}) {c['body']}",
                created_at=c["created_at"],
                author_name=c["author"] or None,
                is_agent=c["author"].endswith("[bot]"),
            )
            for c in raw
            if c["body"].strip()
        ]

    async def _deploy_preview(
        self, task: Task, handle: WorktreeHandle, pr_url: str, agent_id: Optional[str]
    ) -> None:
        if self.deployer is None or not self.deployer.is_configured:
            return
        deployed = await asyncio.to_thread(self.deployer.deploy_preview, handle.path, handle.branch_name)
        if not deployed.success or not deployed.url:
            logger.warning(f"⚠️ Preview deployment failed for {task.id[:8]}: {deployed.error}")
            return

        comment = preview_ready_comment(deployed.url)
        await self._post(task, comment, agent_id)
        if self.repo_client is None:
            return
        try:
            repository, number = parse_pr_url(pr_url)
            await asyncio.to_thread(self.repo_client.add_pr_comment, repository, number, comment)
        except RepositoryError as e:
            logger.warning(f"⚠️ Could not post preview link on {pr_url}: {e}")

    # --- Ship path ---

    async def _ship(self, task: Task, pr_url: Optional[str], agent_id: Optional[str]) -> None:
        if not pr_url:
            raise RepositoryError("Could not find a pull request URL in the task comments")
        if self.repo_client is None:
            raise RepositoryError("No GitHub credential configured for merging pull requests")

        repository, number = parse_pr_url(pr_url)
        pr = await asyncio.to_thread(self.repo_client.get_pull_request, repository, number)
        await self._post(
            task, f"🚀 **Ship It Deployment Started**\n\nMerging PR #{number} and deploying...", agent_id,
        )
        sha = await asyncio.to_thread(self.repo_client.merge_pull_request, repository, number)
        logger.info(f"✅ PR #{number} merged ({sha[:7]})")

        if self.config.github.delete_branch_on_merge:
            try:
                await asyncio.to_thread(self.repo_client.delete_branch, repository, pr.head_ref)
            except RepositoryError as e:
                logger.warning(f"⚠️ Could not delete branch {pr.head_ref}: {e}")

        deploy_url: Optional[str] = None
        if self.deployer is not None and self.deployer.is_configured:
            deploy_url = await self._deploy_production(pr.base_ref)

        await self._post(task, shipped_comment(pr_url, deploy_url), agent_id)
        await self._unassign(task)
        try:
            await self.tracker.complete_task(task.id)
        except TrackerError as e:
            logger.warning(f"⚠️ Could not mark task {task.id[:8]} complete: {e}")

        if self.sessions.get_by_task_id(task.id):
            self.sessions.update(task.id, status=SessionStatus.COMPLETED)
        self.session_store.delete(task.id)
        self.state.start_cooldown(task.id)

    async def _deploy_production(self, base_ref: str) -> Optional[str]:
        """Deploy the primary tree once it holds the merged ``base_ref``."""
        try:
            await asyncio.to_thread(self.isolator.sync_primary, base_ref)
        except (WorkspaceError, ValueError) as e:
            logger.warning(f"⚠️ Skipping production deployment, primary tree not updated: {e}")
            return None
        deployed = await asyncio.to_thread(self.deployer.deploy_production, self.isolator.repository_path)
        if not deployed.success:
            logger.warning(f"⚠️ Production deployment failed: {deployed.error}")
            return None
        return deployed.url

    def active_tasks(self) -> List[str]:
        return sorted(self.state.active_tasks)
