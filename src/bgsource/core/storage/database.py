"""SQLite database management for the glucose store.

Handles connection lifecycle, schema creation, and migrations.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

# Current schema version
SCHEMA_VERSION = 2

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_V1 = """
-- One row per stored glucose reading; dedup_key enforces idempotent inserts
CREATE TABLE IF NOT EXISTS glucose_readings (
    id              TEXT PRIMARY KEY,
    dedup_key       TEXT NOT NULL UNIQUE,
    timestamp       INTEGER NOT NULL,
    value           REAL NOT NULL,
    raw             REAL NOT NULL DEFAULT 0,
    noise           REAL,
    trend_arrow     TEXT NOT NULL,
    source_sensor   TEXT NOT NULL,
    source_id       TEXT,
    utc_offset_ms   INTEGER NOT NULL DEFAULT 0,
    source_tag      TEXT NOT NULL,

    -- Encrypted originating document (only when an encryption key is set)
    raw_document_enc TEXT,

    created_at      TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Source enablement and sync state
CREATE TABLE IF NOT EXISTS data_sources (
    id           TEXT PRIMARY KEY,
    source_type  TEXT NOT NULL UNIQUE,
    display_name TEXT NOT NULL,
    connected_at TEXT,
    last_sync    TEXT,
    is_active    INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_readings_timestamp ON glucose_readings(timestamp);
CREATE INDEX IF NOT EXISTS idx_readings_source    ON glucose_readings(source_tag);
"""

# ---------------------------------------------------------------------------
# V2: Ingestion event trail (listener lifecycle, receipts, insert outcomes)
# ---------------------------------------------------------------------------

_SCHEMA_V2 = """
CREATE TABLE IF NOT EXISTS ingestion_events (
    id               TEXT PRIMARY KEY,
    timestamp        TEXT NOT NULL DEFAULT (datetime('now')),
    action           TEXT NOT NULL,
    source_tag       TEXT,
    document_ref     TEXT,
    inserted_count   INTEGER,
    skipped_count    INTEGER,
    status           TEXT NOT NULL DEFAULT 'success',
    error_type       TEXT,
    metadata_json    TEXT
);

CREATE INDEX IF NOT EXISTS idx_events_timestamp ON ingestion_events(timestamp);
CREATE INDEX IF NOT EXISTS idx_events_action    ON ingestion_events(action);
"""


class DatabaseError(Exception):
    """Raised when database operations fail."""


class GlucoseDatabase:
    """SQLite database manager for the glucose store.

    Supports both file-based and in-memory (`:memory:`) databases.
    In-memory mode is used for testing.

    The connection is shared between the event loop and the sink's worker
    thread, so callers serialise access through :attr:`lock`.

    Usage::

        db = GlucoseDatabase(":memory:")
        db.initialize()
        with db.lock:
            db.connection.execute(...)
        db.close()
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        """Initialize database manager.

        Args:
            db_path: Path to SQLite file, or ":memory:" for in-memory DB.
        """
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self.lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the active database connection.

        Raises:
            DatabaseError: If the database has not been initialized.
        """
        if self._conn is None:
            raise DatabaseError("Database not initialized. Call initialize() first.")
        return self._conn

    def initialize(self) -> None:
        """Create the database connection and ensure schema exists.

        For file-based databases, creates parent directories if needed.
        Idempotent: safe to call multiple times.
        """
        if self._conn is not None:
            return

        try:
            if self._db_path != ":memory:":
                db_file = Path(self._db_path).expanduser()
                db_file.parent.mkdir(parents=True, exist_ok=True)
                self._conn = sqlite3.connect(str(db_file), check_same_thread=False)
            else:
                self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        except (OSError, sqlite3.Error) as exc:
            raise DatabaseError(f"Could not open database {self._db_path!r}: {exc}") from exc

        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")

        self._ensure_schema()
        logger.info("Glucose database initialized: %s", self._db_path)

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist and apply migrations."""
        conn = self.connection

        # V1: Core tables (always applied; CREATE IF NOT EXISTS is idempotent)
        conn.executescript(_SCHEMA_V1)

        cursor = conn.execute("SELECT MAX(version) FROM schema_version")
        row = cursor.fetchone()
        current_version = row[0] if row[0] is not None else 0

        # V2: Ingestion event trail
        if current_version < 2:
            conn.executescript(_SCHEMA_V2)
            logger.info("Applied schema migration V2: ingestion_events table")

        if current_version < SCHEMA_VERSION:
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            conn.commit()
            logger.info(
                "Schema updated from version %d to %d", current_version, SCHEMA_VERSION
            )

    def get_schema_version(self) -> int:
        """Return the current schema version."""
        with self.lock:
            cursor = self.connection.execute("SELECT MAX(version) FROM schema_version")
            row = cursor.fetchone()
        return row[0] if row[0] is not None else 0

    def close(self) -> None:
        """Close the database connection."""
        with self.lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info("Glucose database closed")

    def __enter__(self) -> GlucoseDatabase:
        self.initialize()
        return self

    def __exit__(self, *args) -> None:
        self.close()
