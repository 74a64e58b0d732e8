"""Application settings loaded from environment variables."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Glucose source server configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Server
    # Default to loopback; the server has no auth layer.
    bgs_host: str = "127.0.0.1"
    bgs_port: int = 8001
    bgs_log_level: str = "info"
    # Binding to a non-loopback host is refused unless this is set true.
    bgs_allow_insecure_bind: bool = False

    # Glucose source
    glucose_source_enabled: bool = True
    source_tag: str = "Firestore"
    feed_backend: Literal["firestore", "memory"] = "firestore"
    feed_collection: str = "entries"
    feed_lookback_minutes: int = 5

    # Execution context
    execution_mode: Literal["foreground", "background"] = "foreground"
    # 0 means no deadline for the background work unit.
    work_unit_timeout_seconds: float = 0

    # Firestore
    firestore_project: str = ""
    firestore_database: str = ""
    firestore_credentials_path: str = ""

    # Storage (local glucose store)
    db_path: str = "~/.bgsource/glucose.db"

    # Encryption of stored raw documents; empty keeps no raw copy
    encryption_key: str = ""


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
