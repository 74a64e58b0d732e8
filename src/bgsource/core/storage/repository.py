"""Glucose repository: reads and writes for the local glucose store.

The repository mediates between domain readings and the SQLite database,
using DocumentCipher (when configured) to seal the originating documents.
It implements the sink's storage port, so every write of a batch happens in
one transaction and duplicate dedup keys are ignored by the database itself.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Sequence

from bgsource.core.storage.database import DatabaseError, GlucoseDatabase
from bgsource.core.storage.encryption import DocumentCipher, EncryptionError
from bgsource.core.storage.models import DataSource, StoredGlucoseReading
from bgsource.domains.glucose.errors import StorageError
from bgsource.domains.glucose.models import GlucoseReading, IngestionResult

logger = logging.getLogger(__name__)

# Stay well below SQLITE_MAX_VARIABLE_NUMBER on older builds.
_IN_CHUNK = 500


class GlucoseRepository:
    """CRUD repository for glucose readings and data-source state.

    Usage::

        db = GlucoseDatabase(":memory:")
        db.initialize()
        repo = GlucoseRepository(db, DocumentCipher(key="..."))

        result = repo.insert_glucose_readings(readings, source_tag="Firestore")
        latest = repo.get_latest_reading()
    """

    def __init__(self, database: GlucoseDatabase, cipher: DocumentCipher | None = None) -> None:
        self._db = database
        self._cipher = cipher

    @property
    def database(self) -> GlucoseDatabase:
        return self._db

    @staticmethod
    def _new_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    # ------------------------------------------------------------------
    # Glucose readings
    # ------------------------------------------------------------------

    def existing_dedup_keys(self, keys: Iterable[str]) -> set[str]:
        """Return the subset of ``keys`` already stored."""
        keys = list(keys)
        found: set[str] = set()
        try:
            with self._db.lock:
                conn = self._db.connection
                for start in range(0, len(keys), _IN_CHUNK):
                    chunk = keys[start:start + _IN_CHUNK]
                    placeholders = ",".join("?" for _ in chunk)
                    rows = conn.execute(
                        f"SELECT dedup_key FROM glucose_readings WHERE dedup_key IN ({placeholders})",
                        chunk,
                    ).fetchall()
                    found.update(row[0] for row in rows)
        except (sqlite3.Error, DatabaseError) as exc:
            raise StorageError(f"Dedup lookup failed: {exc}") from exc
        return found

    def insert_glucose_readings(
        self, readings: Sequence[GlucoseReading], source_tag: str
    ) -> IngestionResult:
        """Insert readings in a single transaction.

        Rows whose dedup key already exists are ignored and counted as
        skipped. On any failure the whole batch is rolled back.

        Raises:
            StorageError: If the batch could not be committed.
        """
        if not readings:
            return IngestionResult()

        now = self._now_iso()
        inserted = 0
        with self._db.lock:
            try:
                conn = self._db.connection
            except DatabaseError as exc:
                raise StorageError(f"Glucose insert failed: {exc}") from exc
            try:
                for reading in readings:
                    cursor = conn.execute(
                        """INSERT OR IGNORE INTO glucose_readings (
                            id, dedup_key, timestamp, value, raw, noise,
                            trend_arrow, source_sensor, source_id, utc_offset_ms,
                            source_tag, raw_document_enc, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                        (
                            self._new_id(),
                            reading.dedup_key,
                            reading.timestamp,
                            reading.value,
                            reading.raw,
                            reading.noise,
                            reading.trend_arrow.value,
                            reading.source_sensor.value,
                            reading.source_id,
                            reading.utc_offset_ms,
                            source_tag,
                            self._seal(reading.raw_document),
                            now,
                        ),
                    )
                    inserted += cursor.rowcount
                self._touch_last_sync(source_tag, now)
                conn.commit()
            except Exception as exc:
                conn.rollback()
                raise StorageError(f"Glucose insert failed: {exc}") from exc

        logger.info("Stored %d glucose readings (source=%s)", inserted, source_tag)
        return IngestionResult(inserted=inserted, skipped=len(readings) - inserted)

    def get_readings(
        self,
        *,
        since_ms: int | None = None,
        until_ms: int | None = None,
        source_tag: str | None = None,
        limit: int = 288,
    ) -> list[StoredGlucoseReading]:
        """Get readings newest first.

        Args:
            since_ms: Only readings with ``timestamp >= since_ms``.
            until_ms: Only readings with ``timestamp < until_ms``.
            source_tag: Only readings written under this source tag.
            limit: Maximum number of rows (288 is one day of 5-minute data).
        """
        query = "SELECT * FROM glucose_readings WHERE 1=1"
        params: list[Any] = []
        if since_ms is not None:
            query += " AND timestamp >= ?"
            params.append(since_ms)
        if until_ms is not None:
            query += " AND timestamp < ?"
            params.append(until_ms)
        if source_tag:
            query += " AND source_tag = ?"
            params.append(source_tag)
        query += " ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        with self._db.lock:
            rows = self._db.connection.execute(query, params).fetchall()
        return [self._row_to_reading(row) for row in rows]

    def get_latest_reading(self, source_tag: str | None = None) -> StoredGlucoseReading | None:
        readings = self.get_readings(source_tag=source_tag, limit=1)
        return readings[0] if readings else None

    def count_readings(self, source_tag: str | None = None) -> int:
        query = "SELECT COUNT(*) FROM glucose_readings"
        params: tuple[Any, ...] = ()
        if source_tag:
            query += " WHERE source_tag = ?"
            params = (source_tag,)
        with self._db.lock:
            row = self._db.connection.execute(query, params).fetchone()
        return row[0]

    def purge_before(self, before_ms: int) -> int:
        """Delete all readings with ``timestamp < before_ms``.

        Returns:
            Number of readings deleted.
        """
        with self._db.lock:
            conn = self._db.connection
            cursor = conn.execute("DELETE FROM glucose_readings WHERE timestamp < ?", (before_ms,))
            conn.commit()
        deleted = cursor.rowcount
        if deleted:
            logger.info("Purged %d glucose readings older than %d", deleted, before_ms)
        return deleted

    def purge_before_days(self, days: int) -> int:
        """Delete all readings older than N days.

        Convenience wrapper around :meth:`purge_before`.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        return self.purge_before(int(cutoff.timestamp() * 1000))

    def delete_all_readings(self) -> int:
        """Delete every stored reading. Data-source state is kept.

        Returns:
            Number of readings deleted.
        """
        with self._db.lock:
            conn = self._db.connection
            count = conn.execute("SELECT COUNT(*) FROM glucose_readings").fetchone()[0]
            conn.execute("DELETE FROM glucose_readings")
            conn.commit()
        logger.warning("Deleted ALL glucose readings: %d rows removed", count)
        return count

    # ------------------------------------------------------------------
    # Data sources
    # ------------------------------------------------------------------

    def upsert_data_source(self, source: DataSource) -> None:
        """Insert or update a data source record."""
        with self._db.lock:
            conn = self._db.connection
            conn.execute(
                """INSERT INTO data_sources (id, source_type, display_name, connected_at, last_sync, is_active)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(source_type) DO UPDATE SET
                       display_name = excluded.display_name,
                       last_sync = excluded.last_sync,
                       is_active = excluded.is_active""",
                (
                    source.id or self._new_id(),
                    source.source_type,
                    source.display_name,
                    source.connected_at,
                    source.last_sync,
                    int(source.is_active),
                ),
            )
            conn.commit()

    def register_data_source(
        self, source_type: str, display_name: str, *, is_active: bool = True
    ) -> DataSource:
        source = DataSource(
            id=self._new_id(),
            source_type=source_type,
            display_name=display_name,
            connected_at=self._now_iso(),
            is_active=is_active,
        )
        self.upsert_data_source(source)
        logger.info("Registered data source %s (active=%s)", source_type, is_active)
        return source

    def get_data_source(self, source_type: str) -> DataSource | None:
        with self._db.lock:
            row = self._db.connection.execute(
                "SELECT * FROM data_sources WHERE source_type = ?", (source_type,)
            ).fetchone()
        return self._row_to_source(row) if row else None

    def set_source_active(self, source_type: str, active: bool) -> bool:
        """Flip a source's ``is_active`` flag. Returns False if it is unknown."""
        with self._db.lock:
            conn = self._db.connection
            cursor = conn.execute(
                "UPDATE data_sources SET is_active = ? WHERE source_type = ?",
                (int(active), source_type),
            )
            conn.commit()
        return cursor.rowcount > 0

    def get_data_sources(self, *, active_only: bool = True) -> list[DataSource]:
        """List registered data sources."""
        query = "SELECT * FROM data_sources"
        if active_only:
            query += " WHERE is_active = 1"
        with self._db.lock:
            rows = self._db.connection.execute(query).fetchall()
        return [self._row_to_source(row) for row in rows]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _touch_last_sync(self, source_tag: str, now: str) -> None:
        # Runs inside the insert transaction; committed by the caller.
        self._db.connection.execute(
            "UPDATE data_sources SET last_sync = ? WHERE source_type = ?",
            (now, source_tag),
        )

    def _seal(self, document: Any) -> str | None:
        if self._cipher is None or document is None:
            return None
        return self._cipher.seal(document)

    def _row_to_reading(self, row: Any) -> StoredGlucoseReading:
        raw_document = None
        if self._cipher is not None and row["raw_document_enc"]:
            try:
                raw_document = self._cipher.open(row["raw_document_enc"])
            except EncryptionError as exc:
                logger.warning("Could not open stored document for reading %s: %s", row["id"], exc)

        return StoredGlucoseReading(
            id=row["id"],
            dedup_key=row["dedup_key"],
            timestamp=row["timestamp"],
            value=row["value"],
            raw=row["raw"],
            noise=row["noise"],
            trend_arrow=row["trend_arrow"],
            source_sensor=row["source_sensor"],
            source_id=row["source_id"],
            utc_offset_ms=row["utc_offset_ms"],
            source_tag=row["source_tag"],
            raw_document=raw_document,
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_source(row: Any) -> DataSource:
        return DataSource(
            id=row["id"],
            source_type=row["source_type"],
            display_name=row["display_name"],
            connected_at=row["connected_at"],
            last_sync=row["last_sync"],
            is_active=bool(row["is_active"]),
        )
