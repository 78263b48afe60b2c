"""Exception hierarchy.

Engine and control-protocol failures are reported as data (events and
results). These exceptions cover the cases that do propagate: lookups of
unknown sessions, state conflicts, store corruption and transport API errors.
"""

from __future__ import annotations


class SwitchboardError(Exception):
    """Base class for all switchboard errors."""


class SessionNotFoundError(SwitchboardError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session '{session_id}' not found")
        self.session_id = session_id


class SessionBusyError(SwitchboardError):
    """Operation refused because the session is processing a turn."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Session '{session_id}' is currently processing. "
            "Stop it first or retry with force."
        )
        self.session_id = session_id


class InvalidMessageTargetError(SwitchboardError):
    """Rewind/branch target does not exist or is not a user message."""


class SessionStoreCorruptError(SwitchboardError):
    """A persisted session could not be read back."""


class TransportError(SwitchboardError):
    """A transport API call failed.

    ``description`` holds the API's own error text (e.g. Telegram's
    ``"Bad Request: message is not modified"``).
    """

    def __init__(self, description: str, *, status: int | None = None) -> None:
        super().__init__(description)
        self.description = description
        self.status = status

    @property
    def is_not_modified(self) -> bool:
        return "message is not modified" in self.description

    @property
    def is_parse_error(self) -> bool:
        return "can't parse entities" in self.description
