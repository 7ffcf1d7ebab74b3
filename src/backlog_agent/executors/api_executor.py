"""API-backed executor: a litellm tool-use loop over local file and shell tools.

Works for any provider litellm supports. These sessions are not resumable on
the provider side, so a follow-up rebuilds context from the comment history.
"""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TextIO

import litellm

from ..core.config import ExecutorConfig, WorkflowConfig
from ..core.models import Provider, Session, Task
from ..core.prompts import (
    agent_display_name,
    build_context_rebuild_prompt,
    build_task_prompt,
    build_workflow_instructions,
    format_comment_history,
)
from ..safeguards.retry_handler import RetryHandler
from .base import ExecutionContext, ExecutionResult, Executor, ExecutorCallbacks, ParsedOutput
from .output_parser import DetectedSignal, SignalKind, SignalParser, deliver_signal, parse_output
from .planning import (
    EXPLORE_NUDGE,
    FORMAT_NUDGE,
    IMPLEMENT_REQUEST,
    NO_FILES_NUDGE,
    PLAN_REQUEST,
    ImplementationPlan,
    PlanningError,
    extract_plan,
)
from .terminal_engine import capture_baseline, collect_changes, find_pr_url
from .tools import (
    PLANNING_TOOL_DEFINITIONS,
    READ_ONLY_TOOLS,
    TASK_COMPLETE,
    TOOL_DEFINITIONS,
    ToolRunner,
    truncate_output,
)

logger = logging.getLogger(__name__)

PROJECT_CONTEXT_FILES = ("AGENTS.md", "CLAUDE.md", "README.md")
MAX_PROJECT_CONTEXT_CHARS = 8000
TOOL_SNIPPET_CHARS = 500

COMPLETION_NUDGE = "Please call task_complete to finalize your work, or continue if there is more to do."
MAX_TURNS_ERROR = "Max iterations reached"

_TRANSIENT_API_ERRORS = (
    litellm.RateLimitError,
    litellm.APIConnectionError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
    litellm.Timeout,
    asyncio.TimeoutError,
)


def _is_transient_api_error(error: Exception) -> bool:
    return isinstance(error, _TRANSIENT_API_ERRORS)


class ApiToolExecutor(Executor):
    """Drives one provider's chat-completions API with function calling."""

    def __init__(
        self,
        provider: Provider,
        model: str,
        config: ExecutorConfig,
        workflow: WorkflowConfig,
        api_key: Optional[str] = None,
        completion: Optional[Callable[..., Awaitable[Any]]] = None,
        retry_handler: Optional[RetryHandler] = None,
    ):
        self.provider = provider
        self.model = model
        self.config = config
        self.workflow = workflow
        self.api_key = api_key
        self._completion = completion or litellm.acompletion
        self.retry_handler = retry_handler or RetryHandler(max_attempts=config.max_attempts)

    @property
    def agent_name(self) -> str:
        return agent_display_name(self.provider).replace(" Agent", "")

    def _read_project_context(self, cwd: Path) -> str:
        for name in PROJECT_CONTEXT_FILES:
            path = cwd / name
            if not path.is_file():
                continue
            content = path.read_text(errors="replace")
            if len(content) > MAX_PROJECT_CONTEXT_CHARS:
                content = content[:MAX_PROJECT_CONTEXT_CHARS] + "\n\n[... truncated ...]"
            return f"\n\n## Project Instructions (from {name})\n\n{content}"
        return ""

    def build_system_prompt(self, session: Session, cwd: Path) -> str:
        task = Task(id=session.task_id, title=session.title, description=session.description)
        details = f"\nDetails: {session.description}" if session.description else ""
        return (
            "You are an expert software engineer working on a coding task.\n"
            "You have access to tools for reading, writing, and editing files, running bash "
            "commands, and searching the codebase.\n"
            f"{self._read_project_context(cwd)}\n\n"
            f"## Your Task\n{session.title}{details}\n\n"
            f"{build_workflow_instructions(task, self.workflow)}\n\n"
            "## Additional Guidelines\n\n"
            "- Understand the task by reading relevant files first\n"
            "- Plan your approach - identify which files need changes\n"
            "- Use the available tools to implement changes\n"
            f"- Complete the task by calling {TASK_COMPLETE} with a summary\n\n"
            "CRITICAL: You must use ACTUAL FUNCTION CALLS, not text descriptions."
        )

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
        else:
            history = format_comment_history(context.comments)
            if history:
                prompt = f"{history}\n\n---\n\n{prompt}"

        logger.info(f"🚀 Starting {self.agent_name} API session for task {session.task_id} (model {self.model})")
        if self.config.plan_first:
            try:
                plan = await self.plan(session, prompt, context, callbacks)
            except Exception as e:
                logger.error(f"❌ {self.agent_name} planning failed: {e}")
                return ExecutionResult(success=False, exit_code=1, error=f"Planning failed: {e}")
            prompt = f"{prompt}\n\n{plan.to_prompt_section()}\n\n{IMPLEMENT_REQUEST}"
        return await self._run_loop(session, prompt, context, callbacks)

    async def resume_session(
        self,
        session: Session,
        input: str,
        context: Optional[ExecutionContext] = None,
        callbacks: Optional[ExecutorCallbacks] = None,
    ) -> ExecutionResult:
        context = context or ExecutionContext(cwd=Path(session.project_path or "."))
        logger.info(f"🔄 Rebuilding {self.agent_name} context from comment history for task {session.task_id}")
        prompt = build_context_rebuild_prompt(context.comments, input, self.config.prompt_max_chars)
        return await self._run_loop(session, prompt, context, callbacks)

    async def plan(
        self,
        session: Session,
        prompt: str,
        context: ExecutionContext,
        callbacks: Optional[ExecutorCallbacks] = None,
    ) -> ImplementationPlan:
        """
        Let the model explore read-only and return its implementation plan.

        The plan is posted as a plan comment through ``callbacks``.

        Raises:
            PlanningError: If no plan with at least one file arrives within
                ``max_planning_turns`` or ``planning_timeout``
        """
        callbacks = callbacks or ExecutorCallbacks()
        runner = ToolRunner(context.cwd)
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": self.build_system_prompt(session, context.cwd)},
            {"role": "user", "content": f"{prompt}\n\n{PLAN_REQUEST}"},
        ]
        started = time.monotonic()
        logger.info(f"🧭 {self.agent_name} planning task {session.task_id}")

        for turn in range(1, self.config.max_planning_turns + 1):
            if time.monotonic() - started > self.config.planning_timeout:
                raise PlanningError(f"Planning exceeded {self.config.planning_timeout}s")
            if callbacks.on_progress:
                await callbacks.on_progress(f"Planning turn {turn}/{self.config.max_planning_turns}...")

            response = await self._call_model(messages, PLANNING_TOOL_DEFINITIONS)
            message = response.choices[0].message
            content = message.content or ""
            tool_calls = list(message.tool_calls or [])
            messages.append({
                "role": "assistant",
                "content": content or None,
                **({"tool_calls": [self._tool_call_dict(tc) for tc in tool_calls]} if tool_calls else {}),
            })

            if tool_calls:
                for tool_call in tool_calls:
                    name = tool_call.function.name
                    if name not in READ_ONLY_TOOLS:
                        result_text = f"Error: {name} is not available while planning"
                    else:
                        try:
                            args = json.loads(tool_call.function.arguments or "{}")
                        except json.JSONDecodeError as e:
                            result_text = f"Error: arguments were not valid JSON: {e}"
                        else:
                            result_text = (await asyncio.to_thread(runner.execute, name, args)).result
                    logger.debug(f"🔧 Planning tool: {name}")
                    messages.append({
                        "role": "tool",
                        "tool_call_id": tool_call.id,
                        "content": truncate_output(result_text),
                    })
                continue

            plan = extract_plan(content, self.config.max_plan_files)
            if plan is not None and plan.files:
                logger.info(f"📋 Plan ready after {turn} turns: {len(plan.files)} files")
                await deliver_signal(
                    DetectedSignal(SignalKind.PLAN, plan.to_markdown(), content), callbacks, self.agent_name,
                )
                return plan
            if plan is not None:
                nudge = NO_FILES_NUDGE
            elif turn == 1:
                nudge = EXPLORE_NUDGE
            else:
                nudge = FORMAT_NUDGE
            messages.append({"role": "user", "content": nudge})

        raise PlanningError(MAX_TURNS_ERROR)

    async def _call_model(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]] = TOOL_DEFINITIONS,
    ) -> Any:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "tools": tools,
            "tool_choice": "auto",
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key

        async def attempt(n: int) -> Any:
            return await asyncio.wait_for(self._completion(**kwargs), timeout=self.config.api_call_timeout)

        return await self.retry_handler.run(
            attempt,
            is_transient=lambda response: False,
            is_transient_error=_is_transient_api_error,
            description=f"{self.agent_name} API call",
        )

    async def _run_loop(
        self,
        session: Session,
        prompt: str,
        context: ExecutionContext,
        callbacks: Optional[ExecutorCallbacks],
    ) -> ExecutionResult:
        callbacks = callbacks or ExecutorCallbacks()
        cwd = context.cwd
        runner = ToolRunner(cwd)
        parser = SignalParser()
        baseline = await asyncio.to_thread(capture_baseline, cwd)
        deliveries: Set[asyncio.Task] = set()

        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": self.build_system_prompt(session, cwd)},
            {"role": "user", "content": prompt},
        ]
        transcript: List[str] = []
        touched: List[str] = []
        summary: Optional[str] = None
        error: Optional[str] = None
        timed_out = False
        max_turns_reached = False
        started = time.monotonic()
        log_file = self._open_log(session.task_id)

        def record(text: str) -> None:
            transcript.append(text)
            if log_file:
                log_file.write(text)
                log_file.flush()

        try:
            for turn in range(1, self.config.max_turns + 1):
                if time.monotonic() - started > self.config.max_timeout:
                    timed_out = True
                    error = f"Execution exceeded {self.config.max_timeout}s"
                    record("\n\n[Execution timed out]")
                    break

                if callbacks.on_progress:
                    await callbacks.on_progress(f"Turn {turn}/{self.config.max_turns}...")

                response = await self._call_model(messages)
                choice = response.choices[0]
                message = choice.message
                content = message.content or ""
                tool_calls = list(message.tool_calls or [])

                messages.append({
                    "role": "assistant",
                    "content": content or None,
                    **({"tool_calls": [self._tool_call_dict(tc) for tc in tool_calls]} if tool_calls else {}),
                })

                if content:
                    record(f"\n\n{content}")
                    logger.debug(f"📝 Assistant: {content[:200]}")
                    for detected in parser.feed(content + "\n\n"):
                        task = asyncio.create_task(deliver_signal(detected, callbacks, self.agent_name))
                        deliveries.add(task)
                        task.add_done_callback(deliveries.discard)

                if tool_calls:
                    for tool_call in tool_calls:
                        name = tool_call.function.name
                        try:
                            args = json.loads(tool_call.function.arguments or "{}")
                        except json.JSONDecodeError as e:
                            args = None
                            result_text = f"Error: arguments were not valid JSON: {e}"
                        logger.info(f"🔧 Tool: {name}")

                        if name == TASK_COMPLETE and args is not None:
                            summary = str(args.get("summary", "")).strip() or None
                            record(f"\n\n[Task Complete]\nSummary: {summary}")
                            result_text = "Task marked complete"
                        elif args is not None:
                            result = await asyncio.to_thread(runner.execute, name, args)
                            result_text = result.result
                            if result.changed_path and result.changed_path not in touched:
                                touched.append(result.changed_path)
                            snippet = result_text[:TOOL_SNIPPET_CHARS]
                            ellipsis = "..." if len(result_text) > TOOL_SNIPPET_CHARS else ""
                            record(f"\n\n[{name}]: {snippet}{ellipsis}")

                        messages.append({
                            "role": "tool",
                            "tool_call_id": tool_call.id,
                            "content": truncate_output(result_text),
                        })
                    if summary is not None:
                        break
                    continue

                if choice.finish_reason in ("stop", "end_turn", None):
                    messages.append({"role": "user", "content": COMPLETION_NUDGE})
            else:
                logger.warning(f"⚠️ {self.agent_name} reached max turns ({self.config.max_turns}) without completing")
                max_turns_reached = True
                error = MAX_TURNS_ERROR
        except Exception as e:
            logger.error(f"❌ {self.agent_name} API session failed: {e}")
            error = str(e)
        finally:
            if deliveries:
                await asyncio.gather(*deliveries, return_exceptions=True)
            if log_file:
                log_file.write(f"\n\n{'=' * 50}\nCompleted: {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
                log_file.write(f"Duration: {time.monotonic() - started:.1f}s\n")
                if error:
                    log_file.write(f"ERROR: {error}\n")
                log_file.close()

        stdout = "".join(transcript)
        files, diff = await asyncio.to_thread(collect_changes, cwd, baseline)
        modified_files = files or touched
        # Running out of turns still counts when the work landed on disk
        success = error is None or (max_turns_reached and bool(modified_files))
        return ExecutionResult(
            success=success,
            exit_code=0 if success else 1,
            stdout=stdout,
            diff=diff,
            modified_files=modified_files,
            pr_url=find_pr_url(stdout),
            summary=summary or self.parse_output(stdout).summary,
            error=error,
            timed_out=timed_out,
        )

    @staticmethod
    def _tool_call_dict(tool_call: Any) -> Dict[str, Any]:
        return {
            "id": tool_call.id,
            "type": "function",
            "function": {"name": tool_call.function.name, "arguments": tool_call.function.arguments},
        }

    def _open_log(self, task_id: str) -> Optional[TextIO]:
        logs_dir = Path(self.config.logs_dir)
        logs_dir.mkdir(parents=True, exist_ok=True)
        log_file = open(logs_dir / f"{self.provider.value}-api-{task_id}.log", "a")
        log_file.write(f"=== {self.agent_name} API task {task_id} ===\nModel: {self.model}\n")
        log_file.write(f"Started: {time.strftime('%Y-%m-%d %H:%M:%S')}\n{'=' * 50}\n")
        log_file.flush()
        return log_file

    def parse_output(self, text: str) -> ParsedOutput:
        return parse_output(text)

    async def check_available(self) -> bool:
        if self.api_key:
            return True
        env_check = litellm.validate_environment(model=self.model)
        return bool(env_check.get("keys_in_environment"))
