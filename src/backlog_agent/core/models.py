"""Domain models shared by the worker, classifier and executors."""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


def _ensure_aware(value: datetime) -> datetime:
    # The tracker emits ISO strings with and without offsets; treat naive as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Provider(str, Enum):
    """AI execution providers an agent identity can route to."""
    CLAUDE = "claude"
    OPENAI = "openai"
    GEMINI = "gemini"


class SessionStatus(str, Enum):
    """Lifecycle of one agent session."""
    PENDING = "pending"
    RUNNING = "running"
    WAITING_INPUT = "waiting_input"
    COMPLETED = "completed"
    ERROR = "error"
    INTERRUPTED = "interrupted"


class ProcessingAction(str, Enum):
    PROCESS = "process"
    SHIP_IT = "ship_it"


class Task(BaseModel):
    """A tracker task as seen by the orchestrator.

    The tracker owns tasks; the orchestrator only reads them and reassigns.
    """

    id: str
    title: str
    description: str = ""
    assignee_id: Optional[str] = None
    # Identity string used for routing (the assignee's email on the tracker)
    assignee: Optional[str] = None
    completed: bool = False
    repository: Optional[str] = None  # "owner/repo" from the task's list
    creator_id: Optional[str] = None

    @field_validator("description", mode="before")
    @classmethod
    def _none_description(cls, v: Any) -> str:
        return v or ""


class Comment(BaseModel):
    """Immutable comment from a task's history."""

    model_config = ConfigDict(frozen=True)

    id: str
    content: str
    created_at: datetime
    author_id: Optional[str] = None
    author_name: Optional[str] = None
    is_agent: bool = False

    @field_validator("created_at")
    @classmethod
    def _aware_created_at(cls, v: datetime) -> datetime:
        return _ensure_aware(v)


class ProcessingStatus(BaseModel):
    """Classifier verdict for one poll cycle."""

    model_config = ConfigDict(frozen=True)

    should_process: bool
    reason: str
    action: Optional[ProcessingAction] = None
    pr_url: Optional[str] = None


class Session(BaseModel):
    """One agent session for a task; at most one is live per task."""

    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    task_id: str
    title: str
    description: str = ""
    project_path: Optional[str] = None
    provider: Provider = Provider.CLAUDE
    session_token: Optional[str] = None
    status: SessionStatus = SessionStatus.PENDING
    message_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("created_at", "updated_at", "last_activity")
    @classmethod
    def _aware_timestamps(cls, v: datetime) -> datetime:
        return _ensure_aware(v)
