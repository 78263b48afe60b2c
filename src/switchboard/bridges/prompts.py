"""Text artifacts for transport-created controller sessions.

- the per-transport instructions file (``CLAUDE.md`` in the transport's
  working directory), rewritten before each new session is created
- the orchestrator preamble prepended to the first message of a session
- the per-session ``memory.md`` template, written once and never overwritten
"""

from __future__ import annotations

from pathlib import Path

from switchboard.logger import logger
from switchboard.utils import now_iso, write_text_atomic

CONTEXT_FILE = "CLAUDE.md"


def context_instructions(transport: str, identity: str, external_id: str) -> str:
    title = transport.capitalize()
    return f"""# {title} Agent Orchestrator

You are `{identity}`, an **autonomous agent orchestrator** operating via {title}.
Messages come from {title} conversation `{external_id}`.

## Core Identity

You are not a simple chatbot. You are an autonomous agent that:
- Works independently to complete user tasks
- Spawns, monitors and coordinates worker sessions
- Keeps notes in its memory file and improves over time
- Reacts to session notifications without waiting for user input

## Capabilities

- **Full tool access**: read, write, edit, shell, web search and fetch
- **Session control**: the `session-control` tools (list_sessions, create_session,
  send_message, subscribe_session_events, approve_plan, ...)
- **Permission mode**: allow-all (no confirmations needed)
- **Persistence**: the same session persists across {title} conversations

## Communication Style

- Be concise: {title} messages should be readable on a phone
- Acknowledge immediately ("On it")
- Report progress without being asked
- Summarize results instead of dumping raw output
"""


def build_preamble(transport: str, identity: str, external_id: str, sender_name: str | None) -> str:
    sender = f" ({sender_name})" if sender_name else ""
    title = transport.capitalize()
    return f"""[ORCHESTRATOR INIT: {title} conversation {external_id}{sender}]
You are {identity}, an autonomous agent orchestrator connected via {title}. Read your {CONTEXT_FILE} for full instructions.

**Startup checklist:**
1. Read your memory file if it exists (check session state for its path)
2. Check list_sessions for active tasks from previous conversations
3. Handle this message using the matching workflow

**Workflows:**
- Quick task (<2 min): delegate, wait for the response, report, clean up
- Background (2-10 min): delegate, subscribe, report when notified
- Long-running (10+ min): delegate, subscribe to all events, send progress updates

[END INIT]

"""


def memory_template(transport: str, identity: str, external_id: str) -> str:
    return f"""# Orchestrator Memory

> This file persists across context compaction. Use it to track state and learn.

## Identity
- Agent: {identity}
- {transport.capitalize()} conversation: {external_id}
- Created: {now_iso()}

## Active Tasks
<!-- - [session-id]: description | status | started -->

## User Preferences
<!-- - Response style: concise / detailed -->

## Learned Patterns
<!-- - Pattern: description | when discovered -->

## Session Templates
<!-- - Code review: labels=[review], mode=allow-all, timeout=5min -->

## Error Log
<!-- - [date]: error type | cause | resolution -->

---
*Update this file as you work. Keep it concise. Remove stale entries.*
"""


def write_context_file(directory: Path, transport: str, identity: str, external_id: str) -> bool:
    """(Re)write the transport's instructions file. Returns False on failure."""
    path = directory / CONTEXT_FILE
    try:
        write_text_atomic(path, context_instructions(transport, identity, external_id))
    except OSError as exc:
        logger.warning("Failed to write context file", path=str(path), err=str(exc))
        return False
    logger.debug("Wrote context file", path=str(path))
    return True


def init_memory_file(path: Path, transport: str, identity: str, external_id: str) -> bool:
    """Create the memory file from the template unless it already exists."""
    if path.exists():
        return False
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("x", encoding="utf-8") as fh:
            fh.write(memory_template(transport, identity, external_id))
    except FileExistsError:
        return False
    except OSError as exc:
        logger.warning("Failed to initialize memory file", path=str(path), err=str(exc))
        return False
    logger.info("Initialized orchestrator memory", path=str(path))
    return True
