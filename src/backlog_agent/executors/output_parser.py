"""Parsing of agent output: session ids, stream-json events and signals.

Every parser here is layered: structured JSON is tried first and free-text
pattern matching is the fallback, since CLI versions disagree on format.
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from ..core.classifier import PR_URL_PATTERN
from ..core.prompts import PLAN_TITLE, PR_CREATED_TITLE
from .base import ExecutorCallbacks, ParsedOutput

logger = logging.getLogger(__name__)

SESSION_ID_PATTERNS = (
    re.compile(r"Session ID:\s*([a-f0-9-]+)", re.IGNORECASE),
    re.compile(r'"session_id":\s*"([a-f0-9-]+)"', re.IGNORECASE),
)

FILE_MENTION_PATTERN = re.compile(r"(?:modified|created|edited|wrote):\s*[`'\"]*([^`'\"]+)[`'\"]*", re.IGNORECASE)

PLAN_PATTERNS = (
    re.compile(r"^#+\s*(?:Implementation\s+)?Plan\b", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^#+\s*Approach\b", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^\*\*(?:Implementation\s+)?Plan\*\*", re.IGNORECASE | re.MULTILINE),
    re.compile(
        r"^(?:##\s+)?(?:Step\s+)?\d+\.\s+(?:First|Create|Modify|Update|Add|Remove|Fix|Implement)",
        re.IGNORECASE | re.MULTILINE,
    ),
    re.compile(
        r"(?:Here(?:'s| is) (?:my|the) (?:implementation )?plan|I(?:'ll| will) (?:start|begin) by"
        r"|Let me (?:outline|plan|describe) (?:my|the) approach)",
        re.IGNORECASE,
    ),
)

QUESTION_PATTERNS = (
    re.compile(r"(?:Do you want|Would you like|Should I|Can I|May I)\s+.+\?", re.IGNORECASE),
    re.compile(r"Please (?:confirm|clarify|specify|let me know)", re.IGNORECASE),
    re.compile(
        r"(?:Before I (?:proceed|continue|start)|I need (?:to know|clarification|more information))",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:Option\s+[1-3A-C]:|Which (?:approach|option|method) (?:do you prefer|should I use)\?)",
        re.IGNORECASE,
    ),
)

PROGRESS_PATTERNS = (
    re.compile(r"(?:Creating|Modifying|Updating|Deleting|Reading|Writing)\s+(?:file\s+)?[`']?[\w/.]+[`']?", re.IGNORECASE),
    re.compile(r"(?:Committing|Pushing|Creating branch|Creating PR|Merging)", re.IGNORECASE),
    re.compile(r"(?:Running|Executing)\s+(?:tests|build|lint|predeploy)", re.IGNORECASE),
)

PR_ANNOUNCEMENT_PATTERN = re.compile(
    r"(?:PR|Pull Request)\s+(?:created|opened).*?(" + PR_URL_PATTERN.pattern + r")",
    re.IGNORECASE | re.DOTALL,
)

ERROR_PATTERN = re.compile(r"^(?:error|fatal|failed):\s*(.+)$", re.IGNORECASE | re.MULTILINE)

# Seconds between two signals of the same kind
PLAN_INTERVAL = 30.0
QUESTION_INTERVAL = 60.0
PROGRESS_INTERVAL = 15.0
ERROR_INTERVAL = 60.0

MIN_SECTION_LENGTH = 20
DEDUP_PREFIX_LENGTH = 100
MAX_PLAN_LENGTH = 1000
MAX_PROGRESS_LENGTH = 200
SUMMARY_LENGTH = 500

_SECTION_SPLIT = re.compile(r"\n\n+")


class SignalKind(str, Enum):
    PLAN = "plan"
    QUESTION = "question"
    PROGRESS = "progress"
    PR_CREATED = "pr_created"
    ERROR = "error"


@dataclass(frozen=True)
class DetectedSignal:
    kind: SignalKind
    content: str
    raw: str


@dataclass
class StreamLine:
    """What one line of ``--output-format stream-json`` contributed."""
    text: str = ""
    session_id: Optional[str] = None
    result_text: Optional[str] = None


def extract_session_id(text: str) -> Optional[str]:
    """Find a provider session id in one line of output."""
    stripped = text.strip()
    if stripped.startswith("{"):
        try:
            event = json.loads(stripped)
        except (json.JSONDecodeError, ValueError):
            event = None
        if isinstance(event, dict) and event.get("session_id"):
            return str(event["session_id"])

    for pattern in SESSION_ID_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def parse_stream_line(line: str) -> StreamLine:
    """Parse a single line from ``--output-format stream-json``.

    Non-JSON lines are passed through as raw text.
    """
    line = line.strip()
    if not line:
        return StreamLine()

    try:
        event = json.loads(line)
    except (json.JSONDecodeError, ValueError):
        return StreamLine(text=line + "\n", session_id=extract_session_id(line))

    if not isinstance(event, dict):
        return StreamLine(text=line + "\n")

    parsed = StreamLine(session_id=event.get("session_id") or None)
    event_type = event.get("type")

    if event_type == "assistant":
        chunks = []
        for block in event.get("message", {}).get("content", []):
            if block.get("type") == "text":
                chunks.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                chunks.append(f"\n[Tool Call: {block.get('name', 'unknown')}]\n")
        parsed.text = "".join(chunks)
    elif event_type == "result":
        parsed.result_text = event.get("result") or None
    elif event_type not in ("system", "user"):
        logger.debug(f"Unknown stream-json event type: {event_type}")
    return parsed


def extract_pr_url(text: str) -> Optional[str]:
    """Last pull-request URL mentioned in ``text``."""
    matches = PR_URL_PATTERN.findall(text or "")
    return matches[-1] if matches else None


def parse_output(text: str) -> ParsedOutput:
    """Pull files, PR URL, last error line and a summary out of free text."""
    result = ParsedOutput()
    files: List[str] = []

    for line in text.splitlines():
        file_match = FILE_MENTION_PATTERN.search(line)
        if file_match:
            files.append(file_match.group(1).strip())
        lowered = line.lower()
        if "error:" in lowered or "failed:" in lowered:
            result.error = line.strip()

    if files:
        result.files = list(dict.fromkeys(files))
    result.pr_url = extract_pr_url(text)

    paragraphs = [p.strip() for p in _SECTION_SPLIT.split(text) if len(p.strip()) > 50]
    if paragraphs:
        result.summary = paragraphs[-1][:SUMMARY_LENGTH]
    return result


def _plan_content(text: str) -> str:
    if len(text) > MAX_PLAN_LENGTH:
        return text[:MAX_PLAN_LENGTH] + "\n\n*[Plan truncated...]*"
    return text


def _progress_summary(text: str) -> str:
    first_line = text.split("\n", 1)[0]
    if len(first_line) <= MAX_PROGRESS_LENGTH:
        return first_line
    return first_line[:MAX_PROGRESS_LENGTH] + "..."


@dataclass
class _KindState:
    interval: float
    last_emitted: Optional[float] = None
    seen: Set[str] = field(default_factory=set)


class SignalParser:
    """
    Incremental detector for plan, question, progress, PR and error signals.

    Text is buffered until a blank line closes a section; each complete
    section is matched once. Plans and questions are de-duplicated on their
    first 100 characters, and every kind except PR announcements is rate
    limited so a chatty agent doesn't flood the task with comments.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._buffer = ""
        self._state: Dict[SignalKind, _KindState] = {
            SignalKind.PLAN: _KindState(PLAN_INTERVAL),
            SignalKind.QUESTION: _KindState(QUESTION_INTERVAL),
            SignalKind.PROGRESS: _KindState(PROGRESS_INTERVAL),
            SignalKind.ERROR: _KindState(ERROR_INTERVAL),
        }
        self._posted_prs: Set[str] = set()

    def feed(self, chunk: str) -> List[DetectedSignal]:
        self._buffer += chunk
        sections = _SECTION_SPLIT.split(self._buffer)
        if self._buffer.endswith("\n\n"):
            self._buffer = ""
        else:
            self._buffer = sections.pop()
        return self._scan(sections)

    def flush(self) -> List[DetectedSignal]:
        """Scan whatever is left in the buffer at end of stream."""
        remainder, self._buffer = self._buffer, ""
        return self._scan([remainder])

    def _ready(self, kind: SignalKind, now: float, key: Optional[str] = None) -> bool:
        state = self._state[kind]
        if state.last_emitted is not None and now - state.last_emitted <= state.interval:
            return False
        return key is None or key not in state.seen

    def _mark(self, kind: SignalKind, now: float, key: Optional[str] = None) -> None:
        state = self._state[kind]
        state.last_emitted = now
        if key is not None:
            state.seen.add(key)

    def _scan(self, sections: List[str]) -> List[DetectedSignal]:
        results: List[DetectedSignal] = []
        now = self._clock()

        for section in sections:
            trimmed = section.strip()
            if len(trimmed) < MIN_SECTION_LENGTH:
                continue
            key = trimmed[:DEDUP_PREFIX_LENGTH]

            pr_match = PR_ANNOUNCEMENT_PATTERN.search(trimmed)
            if pr_match:
                url = pr_match.group(1)
                if url not in self._posted_prs:
                    self._posted_prs.add(url)
                    results.append(DetectedSignal(SignalKind.PR_CREATED, url, trimmed))
                continue

            if self._ready(SignalKind.PLAN, now, key) and any(p.search(trimmed) for p in PLAN_PATTERNS):
                self._mark(SignalKind.PLAN, now, key)
                results.append(DetectedSignal(SignalKind.PLAN, _plan_content(trimmed), trimmed))

            if self._ready(SignalKind.QUESTION, now, key) and any(p.search(trimmed) for p in QUESTION_PATTERNS):
                self._mark(SignalKind.QUESTION, now, key)
                results.append(DetectedSignal(SignalKind.QUESTION, trimmed, trimmed))

            if self._ready(SignalKind.PROGRESS, now) and any(p.search(trimmed) for p in PROGRESS_PATTERNS):
                self._mark(SignalKind.PROGRESS, now)
                results.append(DetectedSignal(SignalKind.PROGRESS, _progress_summary(trimmed), trimmed))

            error_match = ERROR_PATTERN.search(trimmed)
            if error_match and self._ready(SignalKind.ERROR, now, key):
                self._mark(SignalKind.ERROR, now, key)
                results.append(DetectedSignal(SignalKind.ERROR, error_match.group(0).strip(), trimmed))

        return results


def format_signal_comment(signal: DetectedSignal, agent_name: str = "Claude") -> str:
    """Render a detected signal as a task comment."""
    if signal.kind == SignalKind.PLAN:
        return f"📋 **{agent_name}'s {PLAN_TITLE}**\n\n{signal.content}\n\n---\n*Planning in progress...*"
    if signal.kind == SignalKind.QUESTION:
        return (
            f"❓ **{agent_name} has a question**\n\n{signal.content}\n\n---\n"
            "*Please reply to this comment to provide clarification.*"
        )
    if signal.kind == SignalKind.PROGRESS:
        return f"⏳ **Progress Update**\n\n{signal.content}"
    if signal.kind == SignalKind.PR_CREATED:
        return f"🔗 **{PR_CREATED_TITLE}**\n\n[{signal.content}]({signal.content})"
    if signal.kind == SignalKind.ERROR:
        return f"⚠️ **Issue Detected**\n\n{signal.content}"
    return signal.content


async def deliver_signal(signal: DetectedSignal, callbacks: ExecutorCallbacks, agent_name: str) -> None:
    """Post one signal through ``callbacks``; failures are logged, never raised."""
    try:
        if callbacks.on_comment:
            logger.info(f"📤 Posting {signal.kind.value} comment to task")
            await callbacks.on_comment(format_signal_comment(signal, agent_name))
        if callbacks.on_progress and signal.kind == SignalKind.PROGRESS:
            await callbacks.on_progress(signal.content)
    except Exception as e:
        logger.warning(f"⚠️ Failed to post {signal.kind.value} comment: {e}")
