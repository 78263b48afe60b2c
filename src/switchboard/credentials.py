"""Credential lookup for transport bridges.

Bridges ask for secrets by id (``telegram_bot_token``, ``matrix_access_token``)
instead of reading settings directly, so a host application can plug in its
own storage. The default store reads ``[secrets]`` from the settings and keeps
runtime overrides in memory.
"""

from __future__ import annotations

from typing import Protocol

from switchboard.config import Settings


class CredentialStore(Protocol):
    def get(self, credential_id: str) -> str | None: ...

    def set(self, credential_id: str, secret: str) -> None: ...

    def delete(self, credential_id: str) -> None: ...


class SettingsCredentialStore:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._overrides: dict[str, str | None] = {}

    def get(self, credential_id: str) -> str | None:
        if credential_id in self._overrides:
            return self._overrides[credential_id]
        secret = getattr(self._settings.secrets, credential_id, None)
        return secret.get_secret_value() if secret is not None else None

    def set(self, credential_id: str, secret: str) -> None:
        self._overrides[credential_id] = secret

    def delete(self, credential_id: str) -> None:
        # Shadows the configured value too
        self._overrides[credential_id] = None
