"""Pydantic models for webhook server responses."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel


class WebhookAccepted(BaseModel):
    success: bool = True
    event: str
    message: str = "Processing started"


class HealthReport(BaseModel):
    status: str  # "healthy" | "degraded"
    providers: Dict[str, str]
    active_sessions: int
    active_tasks: List[str]
    timestamp: datetime


class SessionSummary(BaseModel):
    id: str
    task_id: str
    title: str
    status: str
    provider: str
    provider_session_id: Optional[str] = None
    message_count: int
    updated_at: datetime


class SessionList(BaseModel):
    count: int
    sessions: List[SessionSummary]


class SessionDeleted(BaseModel):
    success: bool = True
    message: str
    previous_status: str


class StuckSessionsReset(BaseModel):
    success: bool = True
    message: str
    reset_task_ids: List[str]
