"""Shared utility functions.

Small helpers used across multiple modules: id generation, timestamps,
atomic file writes and fire-and-forget task creation.
"""

from __future__ import annotations

import asyncio
import json
import secrets
from collections.abc import Coroutine
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from switchboard.logger import logger


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(UTC).isoformat()


def generate_id(prefix: str = "") -> str:
    """Generate a short unique id, sortable by creation time.

    Format: ``{yymmdd}-{6 hex chars}``, optionally prefixed with ``{prefix}_``.
    """
    stamp = datetime.now(UTC).strftime("%y%m%d")
    token = secrets.token_hex(3)
    return f"{prefix}_{stamp}-{token}" if prefix else f"{stamp}-{token}"


def write_text_atomic(path: Path, text: str) -> None:
    """Write text using atomic rename (tmp → final).

    Readers either see the old content or the complete new content.
    Creates parent directories if they don't exist.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)


def write_json_atomic(path: Path, data: Any, *, indent: int | None = None) -> None:
    """Write JSON data to a file using atomic rename."""
    write_text_atomic(path, json.dumps(data, indent=indent))


def truncate(text: str, limit: int, *, suffix: str = "...") -> str:
    """Cut *text* to *limit* characters, appending *suffix* when cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + suffix


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them.

    Used for fire-and-forget work (notification delivery, initial messages,
    stream flushes) whose result nobody awaits.
    """
    task = asyncio.create_task(coro, name=name)
    _BACKGROUND_TASKS.add(task)
    task.add_done_callback(_BACKGROUND_TASKS.discard)
    task.add_done_callback(_log_task_exception)
    return task


# Strong references so pending tasks are not garbage-collected mid-flight.
_BACKGROUND_TASKS: set[asyncio.Task[Any]] = set()


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Done-callback for background tasks: logs unhandled exceptions."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # exc_info carries the traceback; logger.exception() only works
        # inside an except block.
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )
