"""Session records and per-task resume state."""

from .manager import SessionManager
from .store import FileSessionStore, InMemorySessionStore, SessionEntry, SessionStore

__all__ = ["SessionManager", "FileSessionStore", "InMemorySessionStore", "SessionEntry", "SessionStore"]
