"""Session records: one live agent session per task."""

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.models import Provider, Session, SessionStatus, utcnow
from ..utils.atomic_io import atomic_write_json

logger = logging.getLogger(__name__)

DEFAULT_SESSION_MAX_AGE = timedelta(hours=24)

_ACTIVE_STATUSES = (SessionStatus.RUNNING.value, SessionStatus.WAITING_INPUT.value)


class SessionManager:
    """
    Tracks Session records keyed by task id.

    Persists to a JSON file when ``path`` is given, otherwise keeps
    everything in memory. Loaded lazily on first access.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path).expanduser() if path else None
        self._sessions: Optional[Dict[str, Session]] = None

    def _ensure_loaded(self) -> Dict[str, Session]:
        if self._sessions is not None:
            return self._sessions

        self._sessions = {}
        if self.path and self.path.exists():
            try:
                raw = json.loads(self.path.read_text() or "{}")
                self._sessions = {task_id: Session(**data) for task_id, data in raw.items()}
                logger.debug(f"Loaded {len(self._sessions)} sessions from {self.path}")
            except (json.JSONDecodeError, TypeError, ValueError) as e:
                logger.warning(f"Failed to load sessions from {self.path}: {e}")
        return self._sessions

    def _save(self) -> None:
        if not self.path:
            return
        atomic_write_json(
            self.path,
            {task_id: s.model_dump(mode="json") for task_id, s in self._ensure_loaded().items()},
        )

    def create(
        self,
        task_id: str,
        title: str,
        description: str = "",
        project_path: Optional[str] = None,
        provider: Provider = Provider.CLAUDE,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Session:
        """Create (or replace) the session for ``task_id``."""
        session = Session(
            task_id=task_id,
            title=title,
            description=description,
            project_path=project_path,
            provider=provider,
            metadata=metadata or {},
        )
        self._ensure_loaded()[task_id] = session
        self._save()
        logger.info(f"📝 Created session {session.id} for task {task_id}")
        return session

    def update(self, task_id: str, **changes: Any) -> Optional[Session]:
        sessions = self._ensure_loaded()
        session = sessions.get(task_id)
        if session is None:
            return None
        now = utcnow()
        updated = session.model_copy(update={**changes, "updated_at": now, "last_activity": now})
        # model_copy skips validation; keep enums stored as their plain values
        if isinstance(updated.status, SessionStatus):
            updated.status = updated.status.value
        if isinstance(updated.provider, Provider):
            updated.provider = updated.provider.value
        sessions[task_id] = updated
        self._save()
        return updated

    def get_by_task_id(self, task_id: str) -> Optional[Session]:
        return self._ensure_loaded().get(task_id)

    def increment_message_count(self, task_id: str) -> Optional[Session]:
        session = self.get_by_task_id(task_id)
        if session is None:
            return None
        return self.update(task_id, message_count=session.message_count + 1)

    def delete(self, task_id: str) -> bool:
        if self._ensure_loaded().pop(task_id, None) is None:
            return False
        self._save()
        return True

    def all(self) -> List[Session]:
        return list(self._ensure_loaded().values())

    def get_active(self) -> List[Session]:
        return [s for s in self._ensure_loaded().values() if s.status in _ACTIVE_STATUSES]

    def cleanup_expired(
        self,
        max_age: timedelta = DEFAULT_SESSION_MAX_AGE,
        now: Optional[datetime] = None,
    ) -> int:
        """Drop sessions idle longer than ``max_age``; running ones are kept."""
        now = now or utcnow()
        sessions = self._ensure_loaded()
        expired = [
            task_id for task_id, s in sessions.items()
            if s.status != SessionStatus.RUNNING.value and now - s.updated_at > max_age
        ]
        for task_id in expired:
            del sessions[task_id]
        if expired:
            self._save()
            logger.info(f"🧹 Cleaned up {len(expired)} expired sessions")
        return len(expired)

    def recover(self) -> List[Session]:
        """Mark sessions left running by a previous process as interrupted."""
        interrupted = []
        for task_id, session in list(self._ensure_loaded().items()):
            if session.status == SessionStatus.RUNNING.value:
                interrupted.append(self.update(task_id, status=SessionStatus.INTERRUPTED))
        if interrupted:
            logger.warning(f"⚠️ Marked {len(interrupted)} sessions as interrupted")
        return interrupted
