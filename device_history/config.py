from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

ENV_PREFIX = "DEVICE_HISTORY_"


def get_str_env(key: str, default: Optional[str] = "") -> Optional[str]:
    return os.environ.get(ENV_PREFIX + key, default)


def get_int_env(key: str, default: int) -> int:
    try:
        return int(os.environ.get(ENV_PREFIX + key, str(default)))
    except ValueError:
        return default


def get_bool_env(key: str, default: bool) -> bool:
    value = os.environ.get(ENV_PREFIX + key, str(default)).lower()
    return value in ("1", "true", "yes")


def default_data_dir() -> str:
    return get_str_env("DATA_DIR", str(Path.home() / ".device_history"))


class MonitorConfig(BaseModel):
    """Poll loop configuration."""
    provider: str = Field(default_factory=lambda: get_str_env("PROVIDER", "auto"))
    poll_ms: int = Field(default_factory=lambda: get_int_env("POLL_MS", 500), gt=0)
    enrich_delay_ms: int = Field(default_factory=lambda: get_int_env("ENRICH_DELAY_MS", 2000), ge=0)


class StorageConfig(BaseModel):
    """State file locations."""
    data_dir: str = Field(default_factory=default_data_dir)
    keep_events: bool = Field(default_factory=lambda: get_bool_env("KEEP_EVENTS", True))


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default_factory=lambda: get_str_env("LOG_LEVEL", "INFO"))
    log_file: Optional[str] = Field(default_factory=lambda: get_str_env("LOG_FILE", None))
    max_size_mb: int = Field(default_factory=lambda: get_int_env("LOG_MAX_SIZE_MB", 10))
    backup_count: int = Field(default_factory=lambda: get_int_env("LOG_BACKUP_COUNT", 3))


class ServerConfig(BaseModel):
    """HTTP server configuration."""
    host: str = Field(default_factory=lambda: get_str_env("HOST", "127.0.0.1"))
    port: int = Field(default_factory=lambda: get_int_env("PORT", 8765))


class Settings(BaseModel):
    """Application configuration."""
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
