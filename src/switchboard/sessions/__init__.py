"""Session storage, the per-session turn engine and rewrite helpers."""

from switchboard.sessions.engine import SessionEngine
from switchboard.sessions.store import SessionStore

__all__ = ["SessionEngine", "SessionStore"]
