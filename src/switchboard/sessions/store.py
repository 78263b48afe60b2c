"""Persistent session registry.

Layout under the workspace root::

    sessions/<session_id>/session.json    metadata (labels, mode, usage, ...)
    sessions/<session_id>/messages.jsonl  one message per line
    sessions/<session_id>/memory.md       free-form notes owned by the agent

Sessions are loaded lazily: ``list`` only returns what is resident, and
``get`` pulls a persisted session into memory on first access.
"""

from __future__ import annotations

import json
import shutil
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from switchboard.errors import SessionBusyError, SessionNotFoundError, SessionStoreCorruptError
from switchboard.event_bus import SessionEventBus
from switchboard.events import SessionDeleted
from switchboard.logger import logger
from switchboard.types import Message, PermissionMode, Session, SessionOptions
from switchboard.utils import generate_id, now_iso, write_json_atomic, write_text_atomic

_SESSION_FILE = "session.json"
_MESSAGES_FILE = "messages.jsonl"
MEMORY_FILE = "memory.md"


class SessionStore:
    def __init__(
        self,
        root: Path,
        bus: SessionEventBus,
        *,
        default_permission_mode: PermissionMode = "ask",
    ) -> None:
        self._root = root
        self._dir = root / "sessions"
        self._bus = bus
        self._default_mode: PermissionMode = default_permission_mode
        self._sessions: dict[str, Session] = {}
        self._stop_fn: Callable[[str], Awaitable[Any]] | None = None

    @property
    def root(self) -> Path:
        return self._root

    def set_stop_fn(self, fn: Callable[[str], Awaitable[Any]]) -> None:
        """Set the coroutine used to stop a processing session before deletion."""
        self._stop_fn = fn

    # --- Paths ---

    def session_dir(self, session_id: str) -> Path:
        return self._dir / session_id

    def memory_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / MEMORY_FILE

    # --- Lifecycle ---

    def create(
        self,
        workspace_id: str,
        options: SessionOptions | None = None,
        *,
        programmatic: bool = False,
    ) -> Session:
        """Create and persist a new session.

        Programmatic callers (bridges, controllers) get ``allow-all`` unless
        they ask for something else; interactive callers get the configured
        default.
        """
        options = options or SessionOptions()
        mode = options.permission_mode or ("allow-all" if programmatic else self._default_mode)
        session = Session(
            id=generate_id("ses"),
            workspace_id=workspace_id,
            messages=list(options.messages),
            permission_mode=mode,
            working_directory=options.working_directory,
            labels=list(dict.fromkeys(options.labels)),
            name=options.name,
        )
        if session.messages:
            session.last_message_at = session.messages[-1].timestamp
        self._sessions[session.id] = session
        self.save(session)
        logger.info(
            "Created session",
            session_id=session.id,
            workspace_id=workspace_id,
            permission_mode=mode,
            labels=session.labels,
        )
        return session

    def get(self, session_id: str) -> Session | None:
        """Return the session, loading it from disk if needed."""
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        try:
            session = self._load(session_id)
        except SessionStoreCorruptError as exc:
            self._quarantine(session_id, exc)
            return None
        if session is not None:
            self._sessions[session_id] = session
        return session

    def require(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list(self) -> list[Session]:
        return list(self._sessions.values())

    def list_persisted_ids(self) -> list[str]:
        """Ids of every session on disk, resident or not."""
        if not self._dir.is_dir():
            return []
        return sorted(
            p.name
            for p in self._dir.iterdir()
            if p.is_dir() and not p.name.endswith(".corrupt") and (p / _SESSION_FILE).exists()
        )

    async def delete(self, session_id: str, *, force: bool = False) -> None:
        session = self.require(session_id)
        if session.is_processing:
            if not force:
                raise SessionBusyError(session_id)
            if self._stop_fn is not None:
                await self._stop_fn(session_id)

        self._sessions.pop(session_id, None)
        try:
            shutil.rmtree(self.session_dir(session_id))
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("Failed to remove session data", session_id=session_id, err=str(exc))

        logger.info("Deleted session", session_id=session_id, forced=force)
        self._bus.emit(SessionDeleted(session_id=session_id))

    # --- Mutators ---

    def set_labels(self, session_id: str, labels: list[str]) -> Session:
        session = self.require(session_id)
        session.labels = list(dict.fromkeys(labels))
        self.save_metadata(session)
        return session

    def rename(self, session_id: str, name: str) -> Session:
        session = self.require(session_id)
        session.name = name.strip() or None
        self.save_metadata(session)
        return session

    def set_permission_mode(self, session_id: str, mode: PermissionMode) -> Session:
        session = self.require(session_id)
        session.permission_mode = mode
        self.save_metadata(session)
        logger.info("Permission mode changed", session_id=session_id, mode=mode)
        return session

    # --- Persistence ---

    def save(self, session: Session) -> None:
        self.save_metadata(session)
        lines = "".join(json.dumps(m.to_dict()) + "\n" for m in session.messages)
        write_text_atomic(self.session_dir(session.id) / _MESSAGES_FILE, lines)

    def save_metadata(self, session: Session) -> None:
        write_json_atomic(self.session_dir(session.id) / _SESSION_FILE, session.metadata(), indent=2)

    def _load(self, session_id: str) -> Session | None:
        directory = self.session_dir(session_id)
        meta_path = directory / _SESSION_FILE
        if not meta_path.exists():
            return None
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
            messages: list[Message] = []
            messages_path = directory / _MESSAGES_FILE
            if messages_path.exists():
                for line in messages_path.read_text(encoding="utf-8").splitlines():
                    if line.strip():
                        messages.append(Message.from_dict(json.loads(line)))
            session = Session.from_metadata(meta, messages)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise SessionStoreCorruptError(f"{session_id}: {exc}") from exc
        logger.debug("Loaded session", session_id=session_id, messages=len(messages))
        return session

    def _quarantine(self, session_id: str, exc: Exception) -> None:
        directory = self.session_dir(session_id)
        target = directory.with_name(f"{session_id}.{now_iso().replace(':', '')}.corrupt")
        try:
            directory.rename(target)
        except OSError as rename_exc:
            logger.error(
                "Failed to quarantine corrupt session",
                session_id=session_id,
                err=str(rename_exc),
            )
            return
        logger.error(
            "Quarantined corrupt session",
            session_id=session_id,
            err=str(exc),
            moved_to=str(target),
        )
