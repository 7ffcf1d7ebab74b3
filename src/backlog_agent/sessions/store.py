"""Persistence of provider resumption tokens and workspace handles per task.

On-disk format (one JSON object keyed by task id)::

    {"<task-id>": {"session_token": "...", "worktree_path": "...", "branch_name": "..."}}

Older files stored a bare token string per task; those values are migrated
transparently when the file is first read.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..utils.atomic_io import atomic_write_json

logger = logging.getLogger(__name__)

# Keys written by earlier releases of the terminal runner
_LEGACY_KEYS = {
    "claudeSessionId": "session_token",
    "worktreePath": "worktree_path",
    "branchName": "branch_name",
}


@dataclass
class SessionEntry:
    session_token: Optional[str] = None
    worktree_path: Optional[str] = None
    branch_name: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Any) -> "SessionEntry":
        """Build an entry from either format found on disk."""
        if isinstance(raw, str):
            return cls(session_token=raw)
        if isinstance(raw, dict):
            data = {_LEGACY_KEYS.get(k, k): v for k, v in raw.items()}
            return cls(
                session_token=data.get("session_token"),
                worktree_path=data.get("worktree_path"),
                branch_name=data.get("branch_name"),
            )
        raise ValueError(f"Unrecognised session entry: {raw!r}")

    def is_empty(self) -> bool:
        return not (self.session_token or self.worktree_path or self.branch_name)


class SessionStore(ABC):
    """Task id -> SessionEntry, loaded lazily on first access."""

    def __init__(self):
        self._entries: Optional[Dict[str, SessionEntry]] = None

    @abstractmethod
    def _load(self) -> Dict[str, SessionEntry]:
        pass

    @abstractmethod
    def _save(self, entries: Dict[str, SessionEntry]) -> None:
        pass

    def _ensure_loaded(self) -> Dict[str, SessionEntry]:
        if self._entries is None:
            self._entries = self._load()
        return self._entries

    def get(self, task_id: str) -> Optional[SessionEntry]:
        return self._ensure_loaded().get(task_id)

    def get_token(self, task_id: str) -> Optional[str]:
        entry = self.get(task_id)
        return entry.session_token if entry else None

    def set_token(self, task_id: str, token: str) -> None:
        entries = self._ensure_loaded()
        entry = entries.setdefault(task_id, SessionEntry())
        entry.session_token = token
        self._save(entries)

    def set_worktree(self, task_id: str, worktree_path: str, branch_name: str) -> None:
        entries = self._ensure_loaded()
        entry = entries.setdefault(task_id, SessionEntry())
        entry.worktree_path = worktree_path
        entry.branch_name = branch_name
        self._save(entries)

    def get_worktree(self, task_id: str) -> Optional[Tuple[str, Optional[str]]]:
        entry = self.get(task_id)
        if entry is None or not entry.worktree_path:
            return None
        return entry.worktree_path, entry.branch_name

    def delete(self, task_id: str) -> None:
        entries = self._ensure_loaded()
        if entries.pop(task_id, None) is not None:
            self._save(entries)

    def all(self) -> Dict[str, SessionEntry]:
        return dict(self._ensure_loaded())


class InMemorySessionStore(SessionStore):
    """Non-persistent store for tests and one-shot runs."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        super().__init__()
        self._initial = initial or {}

    def _load(self) -> Dict[str, SessionEntry]:
        return {task_id: SessionEntry.from_raw(raw) for task_id, raw in self._initial.items()}

    def _save(self, entries: Dict[str, SessionEntry]) -> None:
        pass


class FileSessionStore(SessionStore):
    """JSON-file store, read-modify-written by a single owning process."""

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path).expanduser()

    def _load(self) -> Dict[str, SessionEntry]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text() or "{}")
        except json.JSONDecodeError as e:
            logger.warning(f"Corrupt session store {self.path}, starting empty: {e}")
            return {}

        entries: Dict[str, SessionEntry] = {}
        migrated = 0
        for task_id, value in raw.items():
            try:
                entries[task_id] = SessionEntry.from_raw(value)
            except ValueError as e:
                logger.warning(f"Dropping session entry for {task_id}: {e}")
                continue
            if isinstance(value, str) or any(k in _LEGACY_KEYS for k in value):
                migrated += 1

        if migrated:
            logger.info(f"Migrated {migrated} legacy session entries in {self.path}")
            self._save(entries)
        return entries

    def _save(self, entries: Dict[str, SessionEntry]) -> None:
        data = {
            task_id: {k: v for k, v in asdict(entry).items() if v is not None}
            for task_id, entry in entries.items()
        }
        atomic_write_json(self.path, data)
