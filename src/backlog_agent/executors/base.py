"""Executor contract shared by every AI execution backend."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence

from ..core.models import Comment, Provider, Session


@dataclass
class ParsedOutput:
    """Structured hints pulled out of an agent's free-text output."""
    summary: Optional[str] = None
    files: Optional[List[str]] = None
    pr_url: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ExecutionResult:
    """Outcome of one agent run."""
    success: bool
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    session_token: Optional[str] = None  # Provider-native id for a later resume
    diff: str = ""
    modified_files: List[str] = field(default_factory=list)
    pr_url: Optional[str] = None
    summary: Optional[str] = None
    error: Optional[str] = None
    timed_out: bool = False
    attempts: int = 1

    @property
    def has_changes(self) -> bool:
        return bool(self.modified_files)


@dataclass
class ExecutionContext:
    """Per-run inputs beyond the prompt."""
    cwd: Path
    comments: Sequence[Comment] = ()
    repository: Optional[str] = None  # "owner/repo"
    task_title: str = ""
    task_description: str = ""


@dataclass
class ExecutorCallbacks:
    """Async hooks an executor calls while running.

    ``on_comment`` posts markdown to the task; ``on_progress`` receives a
    short status line. Either may be omitted.
    """
    on_comment: Optional[Callable[[str], Awaitable[None]]] = None
    on_progress: Optional[Callable[[str], Awaitable[None]]] = None


class Executor(ABC):
    """One AI execution backend."""

    provider: Provider

    @property
    def supports_resume(self) -> bool:
        """Whether ``resume_session`` continues a provider-native session."""
        return False

    @abstractmethod
    async def start_session(
        self,
        session: Session,
        prompt: Optional[str] = None,
        context: Optional[ExecutionContext] = None,
        callbacks: Optional[ExecutorCallbacks] = None,
    ) -> ExecutionResult:
        """Run the agent on a fresh session. ``prompt`` defaults to the task prompt."""
        pass

    @abstractmethod
    async def resume_session(
        self,
        session: Session,
        input: str,
        context: Optional[ExecutionContext] = None,
        callbacks: Optional[ExecutorCallbacks] = None,
    ) -> ExecutionResult:
        """Continue ``session`` with follow-up ``input`` from a human."""
        pass

    @abstractmethod
    def parse_output(self, text: str) -> ParsedOutput:
        pass

    @abstractmethod
    async def check_available(self) -> bool:
        pass
