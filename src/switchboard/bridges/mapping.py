"""Persistent external-conversation → session mapping for one transport.

Stored as a JSON array of ``{externalId, sessionId, workspaceId}`` objects.
Failures to read or write are logged and never raised: a bridge that
cannot persist its mapping keeps working in memory.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from switchboard.logger import logger
from switchboard.utils import write_json_atomic


@dataclass(frozen=True)
class ChannelMapping:
    external_id: str
    session_id: str
    workspace_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "externalId": self.external_id,
            "sessionId": self.session_id,
            "workspaceId": self.workspace_id,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ChannelMapping:
        # chatId/roomId: per-transport key names used by older mapping files
        external = raw.get("externalId", raw.get("chatId", raw.get("roomId")))
        if external is None:
            raise KeyError("externalId")
        return cls(
            external_id=str(external),
            session_id=raw["sessionId"],
            workspace_id=raw["workspaceId"],
        )


class ChannelMappingStore:
    def __init__(self, path: Path) -> None:
        self._path = path
        self._mappings: dict[str, ChannelMapping] = {}

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> int:
        """Read the mapping file. Returns the number of mappings loaded."""
        self._mappings.clear()
        if not self._path.exists():
            return 0
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(data, list):
                raise ValueError("expected a JSON array")
            for entry in data:
                mapping = ChannelMapping.from_dict(entry)
                self._mappings[mapping.external_id] = mapping
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Failed to load channel mappings", path=str(self._path), err=str(exc))
            self._mappings.clear()
            return 0
        logger.info("Loaded channel mappings", path=str(self._path), count=len(self._mappings))
        return len(self._mappings)

    def save(self) -> None:
        data = [m.to_dict() for m in self._mappings.values()]
        try:
            write_json_atomic(self._path, data, indent=2)
        except OSError as exc:
            logger.warning("Failed to save channel mappings", path=str(self._path), err=str(exc))

    def get(self, external_id: str) -> ChannelMapping | None:
        return self._mappings.get(external_id)

    def set(self, mapping: ChannelMapping) -> None:
        self._mappings[mapping.external_id] = mapping
        self.save()

    def remove(self, external_id: str) -> ChannelMapping | None:
        mapping = self._mappings.pop(external_id, None)
        if mapping is not None:
            self.save()
        return mapping

    def all(self) -> list[ChannelMapping]:
        return list(self._mappings.values())

    def __len__(self) -> int:
        return len(self._mappings)
