"""Configuration loading and validation for the project chat client."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from platformdirs import user_config_path, user_state_path
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigValidationError
from .transcript_builder import DEFAULT_DIRECTIVE

import tomllib

LOGGER = logging.getLogger(__name__)

APP_NAME = "project-chat"
CONFIG_DIR = user_config_path(APP_NAME)
CONFIG_PATH = CONFIG_DIR / "config.toml"
STATE_DIR = user_state_path(APP_NAME)

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class EndpointConfig(BaseModel):
    """Chat endpoint that answers turns with a ``data:`` event stream."""

    url: str = "http://localhost:3000/api/chat-with-images"
    timeout: int = Field(default=120, ge=1, le=3600)

    @field_validator("url", mode="before")
    @classmethod
    def _validate_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Expected a string value.")
        normalized = value.strip()
        parsed = urlparse(normalized)
        if parsed.scheme.lower() not in {"http", "https"}:
            raise ValueError("endpoint.url must use http or https scheme.")
        if not parsed.hostname:
            raise ValueError("endpoint.url must include a hostname.")
        return normalized


class ChatConfig(BaseModel):
    """Conversation defaults."""

    directive: str = DEFAULT_DIRECTIVE
    project_dir: str = "."

    @field_validator("directive", mode="before")
    @classmethod
    def _normalize_directive(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Expected a string value.")
        return value.strip()

    @field_validator("project_dir", mode="before")
    @classmethod
    def _validate_project_dir(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("project_dir must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("project_dir must not be empty.")
        return normalized


class CredentialsConfig(BaseModel):
    """Provider keys; the selected one is passed explicitly with each request."""

    model_config = ConfigDict(hide_input_in_errors=True)
    api_keys: list[str] = Field(default_factory=list)
    selected_api_key_index: int | None = Field(default=None, ge=0)

    @field_validator("api_keys", mode="before")
    @classmethod
    def _validate_api_keys(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("api_keys must be a list of strings.")
        keys: list[str] = []
        for item in value:
            if not isinstance(item, str) or not item.strip():
                raise ValueError("api_keys entries must be non-empty strings.")
            keys.append(item.strip())
        return keys

    @model_validator(mode="after")
    def _validate_selection(self) -> CredentialsConfig:
        index = self.selected_api_key_index
        if index is not None and index >= len(self.api_keys):
            raise ValueError("selected_api_key_index is out of range for api_keys.")
        return self


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = str(STATE_DIR / "app.log")

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
        if not isinstance(value, str):
            raise ValueError("log_file_path must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("log_file_path must not be empty.")
        return normalized


class Config(BaseModel):
    """Root configuration model for all sections."""

    endpoint: EndpointConfig = EndpointConfig()
    chat: ChatConfig = ChatConfig()
    credentials: CredentialsConfig = CredentialsConfig()
    logging: LoggingConfig = LoggingConfig()


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump()


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


def _safe_default_config() -> dict[str, dict[str, Any]]:
    """Return a deep copy of validated default config data."""
    return deepcopy(DEFAULT_CONFIG)


def _validate_config(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate merged config and fallback to safe defaults when possible."""
    try:
        config = Config.model_validate(raw)
        return config.model_dump()
    except ValidationError as exc:
        LOGGER.warning(
            "config.validation_failed",
            extra={"event": "config.validation_failed", "errors": exc.error_count()},
        )
        return _safe_default_config()
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> dict[str, dict[str, Any]]:
    """
    Load configuration from TOML, merge with defaults, and validate.

    The optional ``config_path`` argument is intended for tests and tooling.
    """
    target_path = config_path or CONFIG_PATH
    ensure_config_dir(target_path.parent)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (
            Exception
        ) as exc:  # noqa: BLE001 - we must not crash on invalid user config.
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    merged = (
        _deep_merge(DEFAULT_CONFIG, raw_data)
        if isinstance(raw_data, dict)
        else _safe_default_config()
    )
    return _validate_config(merged)
