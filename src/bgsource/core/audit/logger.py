"""Audit logger: persisted ingestion trail and tool-call logging.

Records listener lifecycle, document receipts, insert outcomes, tool
invocations and deletions in the ``ingestion_events`` table. The trail is
PHI-free:

* ``document_ref`` is the SHA-256 of the feed document id, never the id.
* no glucose values are written, only counts.
* ``error_type`` is the exception class name; messages stay in the log.

``AuditLogger`` is an ``IngestionObserver``, so it can be handed straight to
the subscriber and the sink. It also echoes every event through
``logging`` and never raises from a write.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from bgsource.core.storage.database import GlucoseDatabase
from bgsource.domains.glucose.events import LoggingObserver
from bgsource.domains.glucose.models import IngestionResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Input hashing
# ---------------------------------------------------------------------------

def _hash_input(data: Any) -> str:
    """SHA-256 hash of canonical JSON.

    Args:
        data: Value to hash. Must be JSON-serializable.

    Returns:
        Hex-encoded SHA-256 digest, or empty string on failure.
    """
    try:
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()
    except (TypeError, ValueError):
        return ""


# ---------------------------------------------------------------------------
# IngestionEvent dataclass
# ---------------------------------------------------------------------------

@dataclass
class IngestionEvent:
    """A single audit trail entry."""

    action: str                          # see the ACTION_* constants
    source_tag: str | None = None
    document_ref: str = ""               # hashed document id
    inserted_count: int | None = None
    skipped_count: int | None = None
    status: str = "success"              # 'success' | 'failure'
    error_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


ACTION_LISTENER_STARTED = "listener_started"
ACTION_LISTENER_STOPPED = "listener_stopped"
ACTION_LISTENER_FAILED = "listener_failed"
ACTION_DOCUMENT_RECEIVED = "document_received"
ACTION_DOCUMENT_REJECTED = "document_rejected"
ACTION_INSERT = "insert"
ACTION_TOOL_INVOCATION = "tool_invocation"
ACTION_DATA_DELETE = "data_delete"


# ---------------------------------------------------------------------------
# AuditLogger
# ---------------------------------------------------------------------------

class AuditLogger(LoggingObserver):
    """Records ingestion events to the ``ingestion_events`` SQLite table.

    All writes are committed immediately so no entry is lost on crash.

    Usage::

        audit = AuditLogger(glucose_db)
        sink = IdempotentSink(repository, observer=audit)
        subscriber = ChangeFeedSubscriber(feed, sink, observer=audit)

        audit.get_events(action="insert", limit=10)
    """

    def __init__(self, database: GlucoseDatabase, *, record_receipts: bool = True) -> None:
        self._db = database
        self._record_receipts = record_receipts

    # ---------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------

    def log_event(self, event: IngestionEvent) -> str:
        """Insert an event and return its UUID, or ``""`` if the write failed."""
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()

        metadata_json = (
            json.dumps(event.metadata, separators=(",", ":"), default=str)
            if event.metadata
            else None
        )

        try:
            with self._db.lock:
                conn = self._db.connection
                conn.execute(
                    """INSERT INTO ingestion_events
                       (id, timestamp, action, source_tag, document_ref,
                        inserted_count, skipped_count, status, error_type, metadata_json)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        event_id,
                        now,
                        event.action,
                        event.source_tag,
                        event.document_ref or None,
                        event.inserted_count,
                        event.skipped_count,
                        event.status,
                        event.error_type,
                        metadata_json,
                    ),
                )
                conn.commit()
        except Exception:
            logger.exception("Failed to write ingestion event; event lost")
            return ""

        return event_id

    # IngestionObserver ----------------------------------------------

    def listener_started(self, collection: str, lower_bound_ms: int) -> None:
        super().listener_started(collection, lower_bound_ms)
        self.log_event(IngestionEvent(
            action=ACTION_LISTENER_STARTED,
            metadata={"collection": collection, "lower_bound_ms": lower_bound_ms},
        ))

    def listener_stopped(self, reason: str) -> None:
        super().listener_stopped(reason)
        self.log_event(IngestionEvent(
            action=ACTION_LISTENER_STOPPED,
            metadata={"reason": reason},
        ))

    def listener_failed(self, error: Exception) -> None:
        super().listener_failed(error)
        self.log_event(IngestionEvent(
            action=ACTION_LISTENER_FAILED,
            status="failure",
            error_type=type(error).__name__,
        ))

    def document_received(self, document_id: str | None) -> None:
        super().document_received(document_id)
        if self._record_receipts:
            self.log_event(IngestionEvent(
                action=ACTION_DOCUMENT_RECEIVED,
                document_ref=_hash_input(document_id) if document_id else "",
            ))

    def document_rejected(self, document_id: str | None, error: Exception) -> None:
        super().document_rejected(document_id, error)
        self.log_event(IngestionEvent(
            action=ACTION_DOCUMENT_REJECTED,
            document_ref=_hash_input(document_id) if document_id else "",
            status="failure",
            error_type=type(error).__name__,
            metadata={"field": getattr(error, "field", None)},
        ))

    def insert_succeeded(self, source_tag: str, result: IngestionResult) -> None:
        super().insert_succeeded(source_tag, result)
        self.log_event(IngestionEvent(
            action=ACTION_INSERT,
            source_tag=source_tag,
            inserted_count=result.inserted,
            skipped_count=result.skipped,
        ))

    def insert_failed(self, source_tag: str, error: Exception) -> None:
        super().insert_failed(source_tag, error)
        self.log_event(IngestionEvent(
            action=ACTION_INSERT,
            source_tag=source_tag,
            status="failure",
            error_type=type(error).__name__,
        ))

    # Host-facing ----------------------------------------------------

    def log_tool_call(
        self,
        tool_name: str,
        tool_input: Any = None,
        *,
        status: str = "success",
        error_type: str | None = None,
    ) -> str:
        """Log a tool invocation. ``tool_input`` is hashed, never stored raw."""
        return self.log_event(IngestionEvent(
            action=ACTION_TOOL_INVOCATION,
            status=status,
            error_type=error_type,
            metadata={
                "tool_name": tool_name,
                "tool_input_hash": _hash_input(tool_input) if tool_input else "",
            },
        ))

    def log_data_delete(self, *, tool_name: str = "", count: int = 0) -> str:
        return self.log_event(IngestionEvent(
            action=ACTION_DATA_DELETE,
            metadata={"tool_name": tool_name, "records_deleted": count},
        ))

    # ---------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------

    def get_events(
        self,
        *,
        action: str | None = None,
        status: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Query events with optional filters.

        Args:
            action: Filter by action type.
            status: Filter by 'success' or 'failure'.
            since: ISO 8601 timestamp lower bound.
            limit: Maximum events to return.

        Returns:
            List of event dicts, newest first.
        """
        conditions: list[str] = []
        params: list[Any] = []

        if action:
            conditions.append("action = ?")
            params.append(action)
        if status:
            conditions.append("status = ?")
            params.append(status)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM ingestion_events{where} ORDER BY timestamp DESC, rowid DESC LIMIT ?"
        params.append(limit)

        with self._db.lock:
            rows = self._db.connection.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def count_events(self, *, action: str | None = None, since: str | None = None) -> int:
        """Count events, optionally by action and since a timestamp."""
        conditions: list[str] = []
        params: list[Any] = []
        if action:
            conditions.append("action = ?")
            params.append(action)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        with self._db.lock:
            row = self._db.connection.execute(
                f"SELECT COUNT(*) FROM ingestion_events{where}", params
            ).fetchone()
        return row[0]

    def summary(self, *, since: str | None = None) -> dict[str, Any]:
        """Aggregate counts per action plus inserted/skipped totals."""
        where = " WHERE timestamp >= ?" if since else ""
        params: tuple[Any, ...] = (since,) if since else ()
        with self._db.lock:
            conn = self._db.connection
            by_action = conn.execute(
                f"SELECT action, status, COUNT(*) AS n FROM ingestion_events{where} "
                "GROUP BY action, status",
                params,
            ).fetchall()
            totals = conn.execute(
                "SELECT COALESCE(SUM(inserted_count), 0), COALESCE(SUM(skipped_count), 0) "
                f"FROM ingestion_events{where}",
                params,
            ).fetchone()

        actions: dict[str, dict[str, int]] = {}
        for row in by_action:
            actions.setdefault(row["action"], {})[row["status"]] = row["n"]
        return {
            "actions": actions,
            "readings_inserted": totals[0],
            "readings_skipped": totals[1],
        }
