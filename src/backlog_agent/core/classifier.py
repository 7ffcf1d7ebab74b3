"""Comment-history state machine deciding whether to act on a task.

This is a heuristic over free-text markers the worker itself writes (see
``core.prompts``). It does not understand intent: a human comment that
reproduces a marker title verbatim is read the same way as the agent's.
"""

import logging
import re
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional, Sequence

from .models import Comment, ProcessingAction, ProcessingStatus, utcnow
from .prompts import (
    DEPLOYMENT_COMPLETE_TITLE,
    IMPLEMENTATION_COMPLETE_TITLE,
    IMPLEMENTATION_FAILED_TITLE,
    NO_CHANGES_TITLE,
    PR_CREATED_TITLE,
    RETRY_PHRASE,
    SHIP_FAILED_TITLE,
    SHIP_PHRASE,
    SHIPPED_TITLE,
    VERIFICATION_FAILED_TITLE,
    WORKER_ERROR_TITLE,
)

logger = logging.getLogger(__name__)

DEFAULT_STALE_MARKER_SECONDS = 300

PR_URL_PATTERN = re.compile(r"https?://[^\s/()\[\]]+/[^\s/()\[\]]+/[^\s/()\[\]]+/pull/\d+")

SHIP_PHRASES = ("ship it", "shipit", "ship-it", "merge and ship", "merge it")
RETRY_PHRASES = ("retry", "try again", "rerun", "re-run")

# Short replies that carry no instruction
ACKNOWLEDGEMENT_PHRASES = (
    "approve", "approved", "yes", "y", "lgtm", "looks good", "thanks",
    "thank you", "great", "perfect", "good", "ok", "okay", "done", "nice",
)
_ACK_MAX_LENGTH = 20

SYSTEM_COMMENT_PATTERNS = (
    re.compile(r"^.+ (reassigned|assigned|changed priority|marked this|moved to|removed from)", re.IGNORECASE),
    re.compile(r"^.+ (created|deleted|updated) (this task|a subtask)", re.IGNORECASE),
)

_SHIPPED_MARKERS = (f"**{SHIPPED_TITLE}", f"**{DEPLOYMENT_COMPLETE_TITLE}")
_FAILED_MARKERS = (
    IMPLEMENTATION_FAILED_TITLE,
    VERIFICATION_FAILED_TITLE,
    WORKER_ERROR_TITLE,
    SHIP_FAILED_TITLE,
    NO_CHANGES_TITLE,
    "Planning Failed",
)
_PR_MARKERS = (PR_CREATED_TITLE, "PR Updated", "Ready for Review")


class MarkerKind(str, Enum):
    STARTING = "starting"
    SHIPPED = "shipped"
    FAILED = "failed"
    PR_CREATED = "pr_created"
    IMPLEMENTATION_COMPLETE = "implementation_complete"
    UNKNOWN = "unknown"


def _normalize(content: str) -> str:
    return content.strip().lower()


def is_ship_request(content: str) -> bool:
    text = _normalize(content)
    return text == "ship" or any(phrase in text for phrase in SHIP_PHRASES)


def is_retry_request(content: str) -> bool:
    text = _normalize(content)
    return any(phrase in text for phrase in RETRY_PHRASES)


def is_acknowledgement(content: str) -> bool:
    """True when a short comment is made only of acknowledgement phrases."""
    text = _normalize(content)
    if not text or len(text) >= _ACK_MAX_LENGTH:
        return False
    remainder = re.sub(r"[^\w\s]", " ", text)
    for phrase in sorted(ACKNOWLEDGEMENT_PHRASES, key=len, reverse=True):
        remainder = re.sub(rf"\b{re.escape(phrase)}\b", " ", remainder)
    return not remainder.strip()


def is_system_comment(content: str) -> bool:
    return any(pattern.match(content) for pattern in SYSTEM_COMMENT_PATTERNS)


def is_starting_marker(content: str) -> bool:
    text = content.lower()
    return ("starting" in text and "agent" in text) or "**starting work**" in text


def classify_marker(content: str) -> MarkerKind:
    """Map an agent comment onto the marker it carries."""
    if any(marker in content for marker in _SHIPPED_MARKERS):
        return MarkerKind.SHIPPED
    if any(marker in content for marker in _FAILED_MARKERS):
        return MarkerKind.FAILED
    if is_starting_marker(content):
        return MarkerKind.STARTING
    if any(marker in content for marker in _PR_MARKERS):
        return MarkerKind.PR_CREATED
    if IMPLEMENTATION_COMPLETE_TITLE in content:
        return MarkerKind.IMPLEMENTATION_COMPLETE
    return MarkerKind.UNKNOWN


def extract_pr_url(comments: Iterable[Comment]) -> Optional[str]:
    """Most recent pull-request URL mentioned anywhere in the history."""
    for comment in sorted(comments, key=lambda c: c.created_at, reverse=True):
        match = PR_URL_PATTERN.search(comment.content)
        if match:
            return match.group(0)
    return None


class StateClassifier:
    """Decides, from comment history alone, whether to process a task.

    Pure function of (comments, now): classifying the same immutable list
    at the same instant always gives the same verdict.
    """

    def __init__(self, stale_marker_seconds: int = DEFAULT_STALE_MARKER_SECONDS):
        self.stale_marker_seconds = stale_marker_seconds

    def classify(
        self,
        comments: Sequence[Comment],
        now: Optional[datetime] = None,
    ) -> ProcessingStatus:
        now = now or utcnow()

        if not comments:
            return _process("New task with no comments")

        newest_first: List[Comment] = sorted(comments, key=lambda c: c.created_at, reverse=True)
        last_agent = next((c for c in newest_first if c.is_agent), None)
        if last_agent is None:
            return _process("No agent activity yet")

        # Only human comments posted after the agent's latest word count as replies
        reply = next(
            (
                c for c in newest_first
                if not c.is_agent
                and c.created_at > last_agent.created_at
                and c.author_id
                and not is_system_comment(c.content)
            ),
            None,
        )

        pr_url = extract_pr_url(newest_first)
        if reply is not None and is_ship_request(reply.content) and pr_url:
            return ProcessingStatus(
                should_process=True,
                reason=f"Ship requested for {pr_url}",
                action=ProcessingAction.SHIP_IT,
                pr_url=pr_url,
            )

        marker = classify_marker(last_agent.content)

        if marker == MarkerKind.STARTING:
            age = (now - last_agent.created_at).total_seconds()
            if age > self.stale_marker_seconds:
                return _process(
                    f"Stale starting marker ({int(age)}s old, limit {self.stale_marker_seconds}s); "
                    "previous run presumed crashed"
                )
            return _skip(f"Agent run in progress (started {int(age)}s ago)")

        if marker == MarkerKind.SHIPPED:
            return _skip("Task already shipped")

        if marker == MarkerKind.PR_CREATED:
            return _skip("Pull request awaiting human review")

        if marker == MarkerKind.IMPLEMENTATION_COMPLETE:
            if reply is not None and is_ship_request(reply.content):
                return _process("Ship requested without a pull request; pushing changes")
            return _skip(f"Implementation complete; waiting for '{SHIP_PHRASE}'")

        if reply is not None and is_retry_request(reply.content):
            label = "failed run" if marker == MarkerKind.FAILED else "previous run"
            return _process(f"Retry requested after {label}")

        if reply is not None and is_acknowledgement(reply.content):
            return _skip(f"Reply '{reply.content.strip()}' is an acknowledgement, not an instruction")
        if marker == MarkerKind.FAILED:
            return _skip(f"Previous run failed; waiting for '{RETRY_PHRASE}'")
        return _skip(f"No actionable request since last agent comment; waiting for '{RETRY_PHRASE}'")


def _process(reason: str) -> ProcessingStatus:
    return ProcessingStatus(should_process=True, reason=reason, action=ProcessingAction.PROCESS)


def _skip(reason: str) -> ProcessingStatus:
    return ProcessingStatus(should_process=False, reason=reason)
