"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Secrets (bot tokens, API keys) live
in .env. Environment variables override both using ``__`` as the nested
delimiter (e.g. ``SECRETS__TELEGRAM_BOT_TOKEN``). Secrets use SecretStr for
masking in logs.

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from switchboard.config import get_settings

    s = get_settings()
    print(s.sessions.workspace_root)
    print(s.telegram.message_limit)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path
from typing import Literal, TypeAlias

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

PermissionModeName: TypeAlias = Literal["safe", "ask", "allow-all"]

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models. Rejects unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class SessionsConfig(_StrictModel):
    workspace_root: str = "data"
    default_workspace: str = "default"
    default_permission_mode: PermissionModeName = "ask"

    @field_validator("workspace_root")
    @classmethod
    def resolve_root(cls, v: str) -> str:
        p = Path(v).expanduser()
        if not p.is_absolute():
            p = (Path.cwd() / p).resolve()
        return str(p)


class AgentConfig(_StrictModel):
    runtime: str = "claude"  # name of the runtime plugin
    model: str | None = None  # None = SDK default
    rephrase_model: str | None = None
    voice_model: str | None = None


class ControlConfig(_StrictModel):
    send_timeout_ms: int = 120000
    # Labels that unlock the remote-control tool surface
    controller_labels: list[str] = ["telegram", "matrix", "controller"]


class SubscriptionsConfig(_StrictModel):
    poll_interval: float = 60.0  # seconds between long-running checks
    long_running_threshold: float = 600.0  # first notification
    long_running_repeat: float = 300.0  # every additional interval

    @field_validator("poll_interval", "long_running_threshold", "long_running_repeat")
    @classmethod
    def positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class TelegramConfig(_StrictModel):
    enabled: bool = False
    message_limit: int = 4096
    stream_edit_interval: float = 0.8  # seconds
    max_edits_per_message: int = 30
    poll_timeout: int = 30  # getUpdates long-poll timeout (seconds)
    api_base: str = "https://api.telegram.org"


class MatrixConfig(_StrictModel):
    enabled: bool = False
    homeserver: str | None = None
    message_limit: int = 4000
    stream_edits: bool = False
    stream_edit_interval: float = 0.8
    max_edits_per_message: int = 30
    max_message_age: float = 30.0  # seconds; older events are ignored
    typing_timeout_ms: int = 30000
    sync_timeout_ms: int = 30000

    @field_validator("homeserver")
    @classmethod
    def strip_trailing_slash(cls, v: str | None) -> str | None:
        return v.rstrip("/") if v else v


class LoggingConfig(_StrictModel):
    level: str | None = None  # overrides LOG_LEVEL once settings load

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str | None) -> str | None:
        return v.upper() if v else None


class SecretsConfig(_StrictModel):
    anthropic_api_key: SecretStr | None = None
    telegram_bot_token: SecretStr | None = None
    matrix_access_token: SecretStr | None = None


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    sessions: SessionsConfig = SessionsConfig()
    agent: AgentConfig = AgentConfig()
    control: ControlConfig = ControlConfig()
    subscriptions: SubscriptionsConfig = SubscriptionsConfig()
    telegram: TelegramConfig = TelegramConfig()
    matrix: MatrixConfig = MatrixConfig()
    logging: LoggingConfig = LoggingConfig()
    secrets: SecretsConfig = SecretsConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def workspace_root(self) -> Path:
        return Path(self.sessions.workspace_root)

    @cached_property
    def sessions_dir(self) -> Path:
        return self.workspace_root / "sessions"


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
