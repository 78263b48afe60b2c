"""Data models for switchboard."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias

from switchboard.utils import generate_id, now_iso

PermissionMode: TypeAlias = Literal["safe", "ask", "allow-all"]
Role: TypeAlias = Literal["user", "assistant", "tool"]

PERMISSION_MODES: tuple[str, ...] = ("safe", "ask", "allow-all")


@dataclass
class Message:
    role: Role
    content: str
    id: str = field(default_factory=lambda: generate_id("msg"))
    timestamp: str = field(default_factory=now_iso)
    tool_name: str | None = None
    is_intermediate: bool = False  # streamed text that was followed by a tool call

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.tool_name:
            data["toolName"] = self.tool_name
        if self.is_intermediate:
            data["isIntermediate"] = True
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Message:
        return cls(
            id=raw["id"],
            role=raw["role"],
            content=raw.get("content", ""),
            timestamp=raw.get("timestamp", ""),
            tool_name=raw.get("toolName"),
            is_intermediate=bool(raw.get("isIntermediate", False)),
        )

    def copy(self) -> Message:
        return Message(
            role=self.role,
            content=self.content,
            id=self.id,
            timestamp=self.timestamp,
            tool_name=self.tool_name,
            is_intermediate=self.is_intermediate,
        )


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: TokenUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cache_creation_tokens += other.cache_creation_tokens
        self.cost_usd += other.cost_usd

    def to_dict(self) -> dict[str, Any]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheReadTokens": self.cache_read_tokens,
            "cacheCreationTokens": self.cache_creation_tokens,
            "costUsd": self.cost_usd,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> TokenUsage:
        raw = raw or {}
        return cls(
            input_tokens=raw.get("inputTokens", 0),
            output_tokens=raw.get("outputTokens", 0),
            cache_read_tokens=raw.get("cacheReadTokens", 0),
            cache_creation_tokens=raw.get("cacheCreationTokens", 0),
            cost_usd=raw.get("costUsd", 0.0),
        )


@dataclass
class Session:
    """One conversation. Mutated only by the store and the engine."""

    id: str
    workspace_id: str
    messages: list[Message] = field(default_factory=list)
    is_processing: bool = False
    permission_mode: PermissionMode = "ask"
    working_directory: str | None = None
    labels: list[str] = field(default_factory=list)
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    sdk_session_id: str | None = None
    name: str | None = None
    created_at: str = field(default_factory=now_iso)
    last_message_at: str | None = None

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def has_label(self, *labels: str) -> bool:
        return any(label in self.labels for label in labels)

    def find_message(self, message_id: str) -> tuple[int, Message] | None:
        for idx, msg in enumerate(self.messages):
            if msg.id == message_id:
                return idx, msg
        return None

    def metadata(self) -> dict[str, Any]:
        """Everything except messages and runtime-only state, for session.json."""
        return {
            "id": self.id,
            "workspaceId": self.workspace_id,
            "name": self.name,
            "permissionMode": self.permission_mode,
            "workingDirectory": self.working_directory,
            "labels": list(self.labels),
            "tokenUsage": self.token_usage.to_dict(),
            "sdkSessionId": self.sdk_session_id,
            "createdAt": self.created_at,
            "lastMessageAt": self.last_message_at,
        }

    @classmethod
    def from_metadata(cls, raw: dict[str, Any], messages: list[Message]) -> Session:
        return cls(
            id=raw["id"],
            workspace_id=raw["workspaceId"],
            messages=messages,
            permission_mode=raw.get("permissionMode", "ask"),
            working_directory=raw.get("workingDirectory"),
            labels=list(raw.get("labels", [])),
            token_usage=TokenUsage.from_dict(raw.get("tokenUsage")),
            sdk_session_id=raw.get("sdkSessionId"),
            name=raw.get("name"),
            created_at=raw.get("createdAt", ""),
            last_message_at=raw.get("lastMessageAt"),
        )


@dataclass
class SessionOptions:
    """Creation options accepted by ``SessionStore.create``."""

    permission_mode: PermissionMode | None = None
    working_directory: str | None = None
    labels: list[str] = field(default_factory=list)
    name: str | None = None
    messages: list[Message] = field(default_factory=list)
