"""Heartlock application configuration.

Loads settings from two YAML files:
  * heartlock.settings.yaml: non-secret configuration
  * heartlock.secrets.yaml: secrets (never committed)

Both files are looked up in ``$HEARTLOCK_CONFIG_DIR`` (default: the current
working directory). Missing files fall back to the model defaults.
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

CONFIG_DIR_ENV = "HEARTLOCK_CONFIG_DIR"
SETTINGS_FILENAME = "heartlock.settings.yaml"
SECRETS_FILENAME  = "heartlock.secrets.yaml"


def _config_dir() -> Path:
    return Path(os.environ.get(CONFIG_DIR_ENV, "."))


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    reload:          bool = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])


class LoggingSettings(BaseModel):
    level: str = "info"


class DatabaseSettings(BaseModel):
    path: str = "heartlock.duckdb"


class AuthSettings(BaseModel):
    token_expire_minutes: int = 60 * 24 * 7


class ChatSettings(BaseModel):
    """Realtime chat tuning knobs."""
    edit_window_seconds:     int = 5 * 60
    retention_hours:         int = 24
    retention_sweep_seconds: int = 60
    auth_timeout_seconds:    float = 10.0
    join_history_limit:      int = 50

    @field_validator("edit_window_seconds", "retention_hours", "retention_sweep_seconds")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value


class AppSettings(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    chat:     ChatSettings     = Field(default_factory=ChatSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(config_dir: Path | None = None) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    base = config_dir if config_dir is not None else _config_dir()
    settings_data = _load_yaml(base / SETTINGS_FILENAME)
    secrets_data  = _load_yaml(base / SECRETS_FILENAME)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, database=%s, retention_hours=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.database.path,
        app_settings.chat.retention_hours,
    )
    return app_settings


@lru_cache(maxsize=1)
def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    return load_settings()


def reset_config() -> None:
    """Drop the cached settings so the next ``get_config()`` reloads them."""
    get_config.cache_clear()
