"""Claude Code CLI executor running on the local terminal engine."""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from ..core.config import ExecutorConfig, WorkflowConfig
from ..core.models import Provider, Session, Task
from ..core.prompts import agent_display_name, build_resume_prompt, build_task_prompt
from ..sessions.store import SessionStore
from ..utils.subprocess_utils import check_command_exists
from .base import ExecutionContext, ExecutionResult, Executor, ExecutorCallbacks, ParsedOutput
from .output_parser import parse_output
from .terminal_engine import (
    EngineRun,
    GitBaseline,
    TerminalExecutionEngine,
    capture_baseline,
    collect_changes,
    find_pr_url,
)

logger = logging.getLogger(__name__)


class ClaudeTerminalExecutor(Executor):
    """
    Runs ``claude --print`` with the prompt on stdin.

    The CLI's session id is captured from its stream-json output and stored
    per task so a follow-up comment can ``--resume`` the same conversation.
    """

    provider = Provider.CLAUDE

    def __init__(
        self,
        config: ExecutorConfig,
        workflow: WorkflowConfig,
        session_store: SessionStore,
        engine: Optional[TerminalExecutionEngine] = None,
    ):
        self.config = config
        self.workflow = workflow
        self.session_store = session_store
        self.engine = engine or TerminalExecutionEngine(
            initial_output_timeout=config.initial_output_timeout,
            stall_timeout=config.stall_timeout,
            max_timeout=config.max_timeout,
            heartbeat_interval=config.heartbeat_interval,
            max_attempts=config.max_attempts,
            logs_dir=config.logs_dir,
        )

    @property
    def supports_resume(self) -> bool:
        return True

    @property
    def model(self) -> str:
        return self.config.model or self.config.claude_cli_model

    def build_command(self, resume_token: Optional[str] = None) -> List[str]:
        cmd = [
            self.config.claude_cli_executable,
            "--print",
            "--output-format", "stream-json",
            "--verbose",
            "--model", self.model,
            "--dangerously-skip-permissions",
            "--max-turns", str(self.config.max_turns),
        ]
        if resume_token:
            cmd.extend(["--resume", resume_token])
        return cmd

    async def start_session(
        self,
        session: Session,
        prompt: Optional[str] = None,
        context: Optional[ExecutionContext] = None,
        callbacks: Optional[ExecutorCallbacks] = None,
    ) -> ExecutionResult:
        context = context or ExecutionContext(cwd=Path(session.project_path or "."))
        if prompt is None:
            task = Task(id=session.task_id, title=session.title, description=session.description)
            prompt = build_task_prompt(task, context.comments, self.workflow, self.config.prompt_max_chars)

        logger.info(f"🤖 Starting Claude session for task {session.task_id} ({len(prompt)} chars)")
        return await self._execute(session, prompt, context, callbacks, resume_token=None)

    async def resume_session(
        self,
        session: Session,
        input: str,
        context: Optional[ExecutionContext] = None,
        callbacks: Optional[ExecutorCallbacks] = None,
    ) -> ExecutionResult:
        context = context or ExecutionContext(cwd=Path(session.project_path or "."))
        token = session.session_token or self.session_store.get_token(session.task_id)
        if not token:
            logger.info(f"No stored Claude session for task {session.task_id}; starting fresh")
            return await self.start_session(session, context=context, callbacks=callbacks)

        logger.info(f"🔄 Resuming Claude session {token} for task {session.task_id}")
        prompt = build_resume_prompt(input, self.config.prompt_max_chars)
        return await self._execute(session, prompt, context, callbacks, resume_token=token)

    async def _execute(
        self,
        session: Session,
        prompt: str,
        context: ExecutionContext,
        callbacks: Optional[ExecutorCallbacks],
        resume_token: Optional[str],
    ) -> ExecutionResult:
        baseline = await asyncio.to_thread(capture_baseline, context.cwd)
        run = await self.engine.run(
            self.build_command(resume_token),
            prompt,
            cwd=context.cwd,
            callbacks=callbacks,
            agent_name="Claude",
            task_id=session.task_id,
        )

        if run.session_id:
            self.session_store.set_token(session.task_id, run.session_id)
        return await asyncio.to_thread(self._to_result, run, context.cwd, baseline)

    def _to_result(self, run: EngineRun, cwd: Path, baseline: GitBaseline) -> ExecutionResult:
        files, diff = collect_changes(cwd, baseline)
        parsed = self.parse_output(run.output)
        success = run.exit_code == 0 and not run.timed_out

        error = None
        if not success:
            if run.timed_out:
                error = run.timeout_reason
            elif not run.produced_output:
                error = f"No output received from Claude Code after {run.attempts} attempts"
            else:
                error = parsed.error or (run.stderr.strip()[:500] or f"Claude Code exited with code {run.exit_code}")

        return ExecutionResult(
            success=success,
            exit_code=run.exit_code,
            stdout=run.output,
            stderr=run.stderr,
            session_token=run.session_id,
            diff=diff,
            modified_files=files,
            pr_url=find_pr_url(run.output, run.stdout),
            summary=parsed.summary,
            error=error,
            timed_out=run.timed_out,
            attempts=run.attempts,
        )

    def parse_output(self, text: str) -> ParsedOutput:
        return parse_output(text)

    async def check_available(self) -> bool:
        if not check_command_exists(self.config.claude_cli_executable):
            return False
        try:
            process = await asyncio.create_subprocess_exec(
                self.config.claude_cli_executable, "--version",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            return await asyncio.wait_for(process.wait(), timeout=5) == 0
        except (OSError, asyncio.TimeoutError):
            return False

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {agent_display_name(self.provider)} model={self.model}>"
