"""Grouple chat service configuration.

Loads settings from a single YAML file:
  * grouple.settings.yaml: non-secret configuration

The file path can be overridden with the ``GROUPLE_SETTINGS_FILE``
environment variable. A missing file is not an error; every section has
defaults suitable for local development.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("grouple.settings.yaml")
SETTINGS_ENV_VAR = "GROUPLE_SETTINGS_FILE"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _settings_path() -> Path:
    override = os.environ.get(SETTINGS_ENV_VAR)
    return Path(override) if override else SETTINGS_FILE


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


class DatabaseSettings(BaseModel):
    """DuckDB file locations. ``:memory:`` is accepted for both."""
    bookings_path: str = "grouple_bookings.duckdb"
    chat_path: str = "grouple_chat.duckdb"


class ChatSettings(BaseModel):
    """Behaviour of the booking chat rooms.

    Attributes:
        preload_authorizations: Resolve every booking's participants at startup.
        preload_history: Hydrate the history cache for every booking that has
            persisted messages at startup (otherwise the first joiner loads it).
        allow_unverified_connections: Let connections that fail the identity
            checks join a resolvable booking anyway. Local debugging only.
        max_message_length: Longest accepted message body, in characters.
    """
    preload_authorizations: bool = True
    preload_history: bool = False
    allow_unverified_connections: bool = False
    max_message_length: int = 2000

    @field_validator("max_message_length")
    @classmethod
    def _positive_length(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("max_message_length must be positive")
        return value


class LoggingSettings(BaseModel):
    level: str = "info"


class AppSettings(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    chat:     ChatSettings     = Field(default_factory=ChatSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppSettings] = None


def load_settings(path: Optional[Path] = None) -> AppSettings:
    """Load settings from *path* (or the default location) into an AppSettings."""
    settings_data = _load_yaml(path or _settings_path())
    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, bookings_db=%s, chat_db=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.database.bookings_path,
        app_settings.database.chat_path,
    )
    return app_settings


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def set_config(config: AppSettings) -> None:
    """Replace the process-wide settings (used by tests)."""
    global _config
    _config = config


def reset_config() -> None:
    global _config
    _config = None
