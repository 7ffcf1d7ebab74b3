"""Supervised execution of a local agent CLI.

The child gets its prompt on stdin and runs in its own process group. Three
timeouts apply independently: no first byte within ``initial_output_timeout``,
no new byte for ``stall_timeout``, or total runtime past ``max_timeout``.
Any of them terminates the whole group.

Output is exposed as an async generator of ``EngineEvent``s. ``run`` consumes
it, turns detected signals into task comments (delivered on their own tasks
so a slow tracker never stalls the pipe), and retries runs that produced no
output at all.
"""

import asyncio
import codecs
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, Set, TextIO, Tuple

from ..safeguards.retry_handler import RetryHandler
from ..utils.process_utils import kill_process_tree
from ..utils.subprocess_utils import SubprocessError, run_git_command
from .base import ExecutorCallbacks
from .output_parser import (
    DetectedSignal,
    SignalParser,
    deliver_signal,
    extract_pr_url,
    parse_stream_line,
)

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_OUTPUT_TIMEOUT = 180
DEFAULT_STALL_TIMEOUT = 300
DEFAULT_MAX_TIMEOUT = 900
DEFAULT_HEARTBEAT_INTERVAL = 30
DEFAULT_KILL_GRACE = 10

MAX_DIFF_CHARS = 5000
DIFF_TRUNCATED_MARKER = "\n\n[... diff truncated ...]"

# Env vars the agent's shell tool must not see
_SENSITIVE_ENV_VARS = frozenset({
    "BACKLOG_AGENT_TRACKER__CLIENT_SECRET",
    "BACKLOG_AGENT_WEBHOOK__SECRET",
    "BACKLOG_AGENT_DEPLOY__TOKEN",
})


class EngineEventKind(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    TEXT = "text"  # Human-readable text extracted from stdout
    RESULT = "result"  # Final answer reported by the tool
    SESSION_ID = "session_id"
    SIGNAL = "signal"
    HEARTBEAT = "heartbeat"
    TIMEOUT = "timeout"
    EXIT = "exit"


@dataclass
class EngineEvent:
    kind: EngineEventKind
    text: str = ""
    session_id: Optional[str] = None
    signal: Optional[DetectedSignal] = None
    exit_code: Optional[int] = None
    elapsed: float = 0.0
    idle: float = 0.0


@dataclass
class EngineRun:
    """Everything captured from one attempt."""
    exit_code: Optional[int] = None
    stdout: str = ""  # Human-readable text
    raw_stdout: str = ""
    stderr: str = ""
    result_text: Optional[str] = None
    session_id: Optional[str] = None
    timed_out: bool = False
    timeout_reason: Optional[str] = None
    signals: List[DetectedSignal] = field(default_factory=list)
    duration: float = 0.0
    attempts: int = 1

    @property
    def produced_output(self) -> bool:
        return bool(self.raw_stdout)

    @property
    def output(self) -> str:
        """Final answer if the tool reported one, else the streamed text."""
        return self.result_text or self.stdout


@dataclass
class GitBaseline:
    """Working-tree state captured before a run."""
    dirty_files: Set[str] = field(default_factory=set)
    head: Optional[str] = None


@dataclass
class _Progress:
    started: float
    last_output: Optional[float] = None
    output_bytes: int = 0


class TerminalExecutionEngine:
    """Spawns and supervises one agent CLI process per attempt."""

    def __init__(
        self,
        *,
        initial_output_timeout: float = DEFAULT_INITIAL_OUTPUT_TIMEOUT,
        stall_timeout: float = DEFAULT_STALL_TIMEOUT,
        max_timeout: float = DEFAULT_MAX_TIMEOUT,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        kill_grace: float = DEFAULT_KILL_GRACE,
        max_attempts: int = 3,
        retry_handler: Optional[RetryHandler] = None,
        logs_dir: Path = Path("logs"),
        log_prefix: str = "claude-cli",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.initial_output_timeout = initial_output_timeout
        self.stall_timeout = stall_timeout
        self.max_timeout = max_timeout
        self.heartbeat_interval = heartbeat_interval
        self.kill_grace = kill_grace
        self.retry_handler = retry_handler or RetryHandler(max_attempts=max_attempts)
        self.logs_dir = Path(logs_dir)
        self.log_prefix = log_prefix
        self._clock = clock
        self._tick = min(0.5, initial_output_timeout / 4, stall_timeout / 4, max_timeout / 4)

    # --- Process supervision ---

    @staticmethod
    def build_env(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        env = os.environ.copy()
        if extra:
            env.update(extra)
        for key in _SENSITIVE_ENV_VARS:
            env.pop(key, None)
        return env

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, then SIGKILL after the grace period."""
        if process.returncode is not None:
            return
        kill_process_tree(process.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            logger.warning(f"Process {process.pid} ignored SIGTERM for {self.kill_grace}s, sending SIGKILL")
            kill_process_tree(process.pid, signal.SIGKILL)
            await process.wait()

    def _timeout_reason(self, progress: _Progress, now: float) -> Optional[str]:
        elapsed = now - progress.started
        if elapsed > self.max_timeout:
            return f"Maximum runtime of {self.max_timeout:g}s exceeded"
        if progress.last_output is None:
            if elapsed > self.initial_output_timeout:
                return f"No output received within {self.initial_output_timeout:g}s"
        elif now - progress.last_output > self.stall_timeout:
            return f"Process stalled: no output for {self.stall_timeout:g}s"
        return None

    async def stream(
        self,
        argv: Sequence[str],
        prompt: str,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> AsyncIterator[EngineEvent]:
        """
        Run ``argv`` with ``prompt`` on stdin and yield raw events until exit.

        Yields STDOUT/STDERR chunks (UTF-8 decoded incrementally), HEARTBEAT
        every ``heartbeat_interval`` seconds, at most one TIMEOUT, and a final
        EXIT. The generator is single-use; closing it early terminates the
        child.
        """
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=env if env is not None else self.build_env(),
            start_new_session=True,
        )
        logger.info(f"🚀 Spawned {argv[0]} (pid {process.pid}) in {cwd or os.getcwd()}")

        try:
            process.stdin.write(prompt.encode())
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"Child closed stdin before the prompt was written: {e}")
        finally:
            process.stdin.close()

        queue: asyncio.Queue = asyncio.Queue()
        done = object()
        progress = _Progress(started=self._clock())

        async def pump(stream: asyncio.StreamReader, kind: EngineEventKind) -> None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    break
                progress.last_output = self._clock()
                progress.output_bytes += len(chunk)
                text = decoder.decode(chunk)
                if text:
                    await queue.put(EngineEvent(kind, text=text))
            tail = decoder.decode(b"", final=True)
            if tail:
                await queue.put(EngineEvent(kind, text=tail))

        async def watchdog() -> None:
            last_heartbeat = progress.started
            while process.returncode is None:
                await asyncio.sleep(self._tick)
                now = self._clock()
                reason = self._timeout_reason(progress, now)
                if reason:
                    logger.error(f"❌ {reason}, killing pid {process.pid}")
                    await queue.put(EngineEvent(EngineEventKind.TIMEOUT, text=reason, elapsed=now - progress.started))
                    await self._terminate(process)
                    return
                if now - last_heartbeat >= self.heartbeat_interval:
                    last_heartbeat = now
                    elapsed = now - progress.started
                    idle = now - (progress.last_output or progress.started)
                    logger.info(
                        f"💓 Heartbeat: {elapsed:.0f}s elapsed, last output {idle:.0f}s ago, "
                        f"{progress.output_bytes} bytes captured"
                    )
                    await queue.put(EngineEvent(EngineEventKind.HEARTBEAT, elapsed=elapsed, idle=idle))

        readers = [
            asyncio.create_task(pump(process.stdout, EngineEventKind.STDOUT)),
            asyncio.create_task(pump(process.stderr, EngineEventKind.STDERR)),
        ]
        dog = asyncio.create_task(watchdog())

        async def finish() -> None:
            await process.wait()
            # Grandchildren outside the group can hold the pipes open
            _, pending = await asyncio.wait(readers, timeout=self.kill_grace)
            for task in pending:
                task.cancel()
            await queue.put(done)

        closer = asyncio.create_task(finish())

        try:
            while True:
                event = await queue.get()
                if event is done:
                    break
                yield event
            yield EngineEvent(
                EngineEventKind.EXIT,
                exit_code=process.returncode,
                elapsed=self._clock() - progress.started,
            )
        finally:
            dog.cancel()
            if process.returncode is None:
                await self._terminate(process)
            for task in (closer, *readers):
                task.cancel()

    async def events(
        self,
        argv: Sequence[str],
        prompt: str,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        signal_parser: Optional[SignalParser] = None,
    ) -> AsyncIterator[EngineEvent]:
        """``stream`` plus parsed TEXT, SESSION_ID and SIGNAL events.

        Stdout is split into lines; each line is parsed as stream-json when it
        is JSON and passed through as text otherwise.
        """
        parser = signal_parser or SignalParser(clock=self._clock)
        line_buffer = ""
        session_id: Optional[str] = None

        def parse_lines(lines: List[str]) -> List[EngineEvent]:
            nonlocal session_id
            parsed_events: List[EngineEvent] = []
            for line in lines:
                parsed = parse_stream_line(line)
                if parsed.session_id and parsed.session_id != session_id:
                    session_id = parsed.session_id
                    parsed_events.append(EngineEvent(EngineEventKind.SESSION_ID, session_id=session_id))
                text = parsed.text if line.strip() else "\n"
                if parsed.result_text:
                    parsed_events.append(EngineEvent(EngineEventKind.RESULT, text=parsed.result_text))
                if text:
                    parsed_events.append(EngineEvent(EngineEventKind.TEXT, text=text))
                    for detected in parser.feed(text):
                        parsed_events.append(EngineEvent(EngineEventKind.SIGNAL, signal=detected))
            return parsed_events

        async for event in self.stream(argv, prompt, cwd=cwd, env=env):
            if event.kind == EngineEventKind.STDOUT:
                yield event
                line_buffer += event.text
                *lines, line_buffer = line_buffer.split("\n")
                for parsed_event in parse_lines(lines):
                    yield parsed_event
            elif event.kind == EngineEventKind.EXIT:
                if line_buffer:
                    for parsed_event in parse_lines([line_buffer]):
                        yield parsed_event
                    line_buffer = ""
                for detected in parser.flush():
                    yield EngineEvent(EngineEventKind.SIGNAL, signal=detected)
                yield event
            else:
                yield event

    # --- Runs ---

    def _open_log(self, task_id: Optional[str], argv: Sequence[str], cwd: Optional[Path], attempt: int) -> Optional[TextIO]:
        if not task_id:
            return None
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.logs_dir / f"{self.log_prefix}-{task_id}.log"
        log_file = open(log_path, "a")
        log_file.write(f"=== {argv[0]} task {task_id} (attempt {attempt}) ===\n")
        log_file.write(f"Working Directory: {cwd or 'current directory'}\n")
        log_file.write(f"Started: {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
        log_file.write(
            f"Timeouts: initial={self.initial_output_timeout:g}s, "
            f"stall={self.stall_timeout:g}s, max={self.max_timeout:g}s\n"
        )
        log_file.write("=" * 50 + "\n\n")
        log_file.flush()
        logger.info(f"Streaming agent output to {log_path}")
        return log_file

    async def run_once(
        self,
        argv: Sequence[str],
        prompt: str,
        cwd: Optional[Path] = None,
        callbacks: Optional[ExecutorCallbacks] = None,
        agent_name: str = "Claude",
        task_id: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        attempt: int = 1,
    ) -> EngineRun:
        """Run one attempt to completion, delivering signals as comments."""
        run = EngineRun(attempts=attempt)
        text_chunks: List[str] = []
        raw_chunks: List[str] = []
        stderr_chunks: List[str] = []
        deliveries: Set[asyncio.Task] = set()
        started = self._clock()
        log_file = self._open_log(task_id, argv, cwd, attempt)

        try:
            async for event in self.events(argv, prompt, cwd=cwd, env=env):
                if event.kind == EngineEventKind.STDOUT:
                    raw_chunks.append(event.text)
                elif event.kind == EngineEventKind.TEXT:
                    text_chunks.append(event.text)
                    if log_file:
                        log_file.write(event.text)
                        log_file.flush()
                elif event.kind == EngineEventKind.STDERR:
                    stderr_chunks.append(event.text)
                    if log_file:
                        log_file.write(f"[stderr] {event.text}")
                        log_file.flush()
                elif event.kind == EngineEventKind.RESULT:
                    run.result_text = event.text
                elif event.kind == EngineEventKind.SESSION_ID:
                    run.session_id = event.session_id
                    logger.info(f"🔑 Agent session id: {event.session_id}")
                    if log_file:
                        log_file.write(f"[Session: {event.session_id}]\n")
                elif event.kind == EngineEventKind.SIGNAL:
                    run.signals.append(event.signal)
                    if callbacks:
                        task = asyncio.create_task(deliver_signal(event.signal, callbacks, agent_name))
                        deliveries.add(task)
                        task.add_done_callback(deliveries.discard)
                elif event.kind == EngineEventKind.TIMEOUT:
                    run.timed_out = True
                    run.timeout_reason = event.text
                elif event.kind == EngineEventKind.EXIT:
                    run.exit_code = event.exit_code
        finally:
            run.duration = self._clock() - started
            run.stdout = "".join(text_chunks)
            run.raw_stdout = "".join(raw_chunks)
            run.stderr = "".join(stderr_chunks)
            if deliveries:
                await asyncio.gather(*deliveries, return_exceptions=True)
            if log_file:
                log_file.write(f"\n\n{'=' * 50}\nSUMMARY\n{'=' * 50}\n")
                log_file.write(f"Completed: {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
                log_file.write(f"Duration: {run.duration:.1f}s\n")
                log_file.write(f"Exit code: {run.exit_code}\n")
                log_file.write(f"Timed out: {run.timed_out}\n")
                if run.timeout_reason:
                    log_file.write(f"Timeout reason: {run.timeout_reason}\n")
                if run.stderr:
                    log_file.write(f"\nSTDERR Summary:\n{run.stderr[:1000]}\n")
                log_file.close()

        logger.info(
            f"✅ {argv[0]} exited with code {run.exit_code} after {run.duration:.1f}s "
            f"(stdout={len(run.raw_stdout)} chars, stderr={len(run.stderr)} chars)"
        )
        return run

    async def run(
        self,
        argv: Sequence[str],
        prompt: str,
        cwd: Optional[Path] = None,
        callbacks: Optional[ExecutorCallbacks] = None,
        agent_name: str = "Claude",
        task_id: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> EngineRun:
        """
        Run with retries.

        Only a run that produced no stdout at all and did not exit cleanly is
        considered a transient hang. A non-zero exit with output is returned
        as is.
        """
        async def attempt(n: int) -> EngineRun:
            if n > 1:
                logger.info(f"🔄 Retry attempt {n}/{self.retry_handler.max_attempts}")
            return await self.run_once(
                argv, prompt, cwd=cwd, callbacks=callbacks,
                agent_name=agent_name, task_id=task_id, env=env, attempt=n,
            )

        return await self.retry_handler.run(
            attempt,
            is_transient=lambda r: not r.produced_output and r.exit_code != 0,
            description=f"{agent_name} run",
        )


def _porcelain_paths(output: str) -> List[str]:
    paths = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        paths.append(path.strip().strip('"'))
    return paths


def capture_baseline(cwd: Path) -> GitBaseline:
    """Record files already dirty, and HEAD, before the agent runs."""
    baseline = GitBaseline()
    try:
        status = run_git_command(["status", "--porcelain"], cwd=cwd)
        baseline.dirty_files = set(_porcelain_paths(status.stdout))
        baseline.head = run_git_command(["rev-parse", "HEAD"], cwd=cwd).stdout.strip() or None
    except SubprocessError as e:
        logger.warning(f"Could not capture git baseline in {cwd}: {e}")
    logger.info(f"📊 Git baseline: {len(baseline.dirty_files)} pre-existing uncommitted files")
    return baseline


def collect_changes(cwd: Path, baseline: Optional[GitBaseline] = None) -> Tuple[List[str], str]:
    """
    Files changed by the run, and a diff truncated at MAX_DIFF_CHARS.

    Includes commits the agent made on top of the baseline HEAD. Files that
    were already dirty before the run are not attributed to it and are left
    out of the diff as well.
    """
    baseline = baseline or GitBaseline()
    try:
        status = run_git_command(["status", "--porcelain"], cwd=cwd)
        files = _porcelain_paths(status.stdout)
        if baseline.head:
            committed = run_git_command(["diff", "--name-only", baseline.head, "HEAD"], cwd=cwd, check=False)
            files += [f for f in committed.stdout.splitlines() if f.strip()]
        files = [f for f in dict.fromkeys(files) if f not in baseline.dirty_files]
        diff = ""
        if files:
            diff = run_git_command(
                ["diff", baseline.head or "HEAD", "--no-color", "--", *files], cwd=cwd, check=False,
            ).stdout
    except SubprocessError as e:
        logger.warning(f"Could not collect git changes in {cwd}: {e}")
        return [], ""

    if len(diff) > MAX_DIFF_CHARS:
        diff = diff[:MAX_DIFF_CHARS] + DIFF_TRUNCATED_MARKER
    logger.info(f"📝 {len(files)} files changed by this run")
    return files, diff


def find_pr_url(*texts: Optional[str]) -> Optional[str]:
    """First PR URL found scanning ``texts`` in order."""
    for text in texts:
        url = extract_pr_url(text or "")
        if url:
            return url
    return None
