"""Configuration loading and validation for the toolchat engine."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
import tomllib
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigValidationError

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "toolchat"
CONFIG_PATH = CONFIG_DIR / "config.toml"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
VALID_PROVIDERS = {"ollama", "openai"}


def _validate_base_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme.lower() not in {"http", "https"}:
        raise ValueError("base_url must use http or https scheme.")
    if not parsed.hostname:
        raise ValueError("base_url must include a hostname.")
    return value.rstrip("/")


class ModelOverride(BaseModel):
    """Per-model backend settings that shadow the global defaults."""

    name: str
    provider: str | None = None
    base_url: str | None = None
    api_key: str | None = None

    @field_validator("name", mode="before")
    @classmethod
    def _validate_name(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("Model override name must be a non-empty string.")
        return value.strip()

    @field_validator("provider", mode="before")
    @classmethod
    def _validate_provider(cls, value: Any) -> str | None:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        if not isinstance(value, str) or value.strip().lower() not in VALID_PROVIDERS:
            raise ValueError(f"provider must be one of {sorted(VALID_PROVIDERS)}.")
        return value.strip().lower()

    @field_validator("base_url", mode="before")
    @classmethod
    def _validate_optional_url(cls, value: Any) -> str | None:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        if not isinstance(value, str):
            raise ValueError("base_url must be a string.")
        return _validate_base_url(value.strip())

    @field_validator("api_key", mode="before")
    @classmethod
    def _normalize_api_key(cls, value: Any) -> str | None:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("api_key must be a string.")
        return value.strip() or None


class BackendConfig(BaseModel):
    """Global backend defaults and chat options."""

    provider: str = "ollama"
    base_url: str = "http://localhost:11434"
    api_key: str | None = None
    model: str = "llama3.2"
    ollama_path: str = ""
    models: list[ModelOverride] = Field(default_factory=list)
    streaming_enabled: bool = True
    default_think: bool = True
    max_context_messages: int = Field(default=20, ge=1, le=10_000)
    temperature: float = Field(default=0.6, ge=0.0, le=2.0)
    timeout: int = Field(default=120, ge=1, le=3600)

    @field_validator("provider", mode="before")
    @classmethod
    def _validate_provider(cls, value: Any) -> str:
        if not isinstance(value, str) or value.strip().lower() not in VALID_PROVIDERS:
            raise ValueError(f"provider must be one of {sorted(VALID_PROVIDERS)}.")
        return value.strip().lower()

    @field_validator("base_url", mode="before")
    @classmethod
    def _validate_url(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("base_url must be a non-empty string.")
        return _validate_base_url(value.strip())

    @field_validator("model", "ollama_path", mode="before")
    @classmethod
    def _normalize_string(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("Expected a string value.")
        return value.strip()

    @field_validator("api_key", mode="before")
    @classmethod
    def _normalize_api_key(cls, value: Any) -> str | None:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("api_key must be a string.")
        return value.strip() or None

    @model_validator(mode="after")
    def _dedupe_models(self) -> BackendConfig:
        seen: set[str] = set()
        deduped: list[ModelOverride] = []
        for entry in self.models:
            if entry.name not in seen:
                seen.add(entry.name)
                deduped.append(entry)
        self.models = deduped
        return self


class ToolServerConfig(BaseModel):
    """One external tool server; read-only to the engine."""

    id: str
    name: str = ""
    enabled: bool = True
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    description: str = ""
    transport: Literal["stdin", "argv", "file"] = "stdin"
    send_initialize: bool = True
    timeout_seconds: float = Field(default=30.0, gt=0, le=600)

    @field_validator("id", "command", mode="before")
    @classmethod
    def _validate_required(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("Expected a non-empty string value.")
        return value.strip()

    @field_validator("env", mode="before")
    @classmethod
    def _validate_env(cls, value: Any) -> dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("env must be a table of name -> value.")
        return {str(k): str(v) for k, v in value.items()}

    @model_validator(mode="after")
    def _default_display_name(self) -> ToolServerConfig:
        if not self.name.strip():
            self.name = self.id
        return self


class ReActConfig(BaseModel):
    """Bounds and policies for the tool-augmented loop."""

    max_attempts: int = Field(default=5, ge=1, le=50)
    on_parse_failure: Literal["abort", "plain_chat"] = "abort"
    max_observation_bytes: int = Field(default=16_000, ge=256, le=5_000_000)


class AvailabilityConfig(BaseModel):
    """Probe and launch timing for self-hosted backends."""

    probe_timeout: float = Field(default=2.0, gt=0, le=60)
    poll_interval: float = Field(default=0.9, gt=0, le=60)
    deadline: float = Field(default=12.0, gt=0, le=600)
    stream_polling: bool = False
    stream_poll_interval: float = Field(default=0.04, gt=0, le=5)


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/toolchat/app.log"

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("log_file_path must be a non-empty string.")
        return value.strip()


class Config(BaseModel):
    """Root configuration model for all sections."""

    model_config = ConfigDict(frozen=True)
    backend: BackendConfig = BackendConfig()
    tool_servers: list[ToolServerConfig] = Field(default_factory=list)
    react: ReActConfig = ReActConfig()
    availability: AvailabilityConfig = AvailabilityConfig()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="after")
    def _validate_unique_servers(self) -> Config:
        ids = [server.id for server in self.tool_servers]
        if len(ids) != len(set(ids)):
            raise ValueError("tool_servers ids must be unique.")
        return self

    @property
    def enabled_tool_servers(self) -> list[ToolServerConfig]:
        return [server for server in self.tool_servers if server.enabled]


DEFAULT_CONFIG: dict[str, Any] = Config().model_dump()


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _enforce_private_permissions(path: Path) -> None:
    """Best-effort enforcement of private file permissions on POSIX systems."""
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning("Unable to enforce 0600 permissions for %s: %s", path, exc)


def validate_config(raw: dict[str, Any]) -> Config:
    """Validate merged config data and fall back to safe defaults when invalid."""
    try:
        return Config.model_validate(raw)
    except ValidationError as exc:
        LOGGER.warning(
            "config.invalid",
            extra={"event": "config.invalid", "errors": exc.error_count(), "reason": str(exc)},
        )
        return Config()
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from TOML, merge with defaults, and validate.

    The optional ``config_path`` argument is intended for tests and tooling.
    """
    target_path = config_path or CONFIG_PATH
    ensure_config_dir(target_path.parent)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (tomllib.TOMLDecodeError, OSError, UnicodeDecodeError) as exc:
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    return validate_config(_deep_merge(DEFAULT_CONFIG, raw_data))
