"""Observability port for the ingestion pipeline.

The subscriber and sink report what happens to every subscription, document
and batch through an ``IngestionObserver``. ``LoggingObserver`` writes to the
standard logger; ``bgsource.core.audit.logger.AuditLogger`` additionally
persists a PHI-free trail.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from bgsource.domains.glucose.models import IngestionResult

logger = logging.getLogger(__name__)


@runtime_checkable
class IngestionObserver(Protocol):
    """Receives pipeline events. Implementations must not raise."""

    def listener_started(self, collection: str, lower_bound_ms: int) -> None: ...

    def listener_stopped(self, reason: str) -> None: ...

    def listener_failed(self, error: Exception) -> None: ...

    def document_received(self, document_id: str | None) -> None: ...

    def document_rejected(self, document_id: str | None, error: Exception) -> None: ...

    def insert_succeeded(self, source_tag: str, result: IngestionResult) -> None: ...

    def insert_failed(self, source_tag: str, error: Exception) -> None: ...


class LoggingObserver:
    """Observer that only writes to the ``logging`` module."""

    def listener_started(self, collection: str, lower_bound_ms: int) -> None:
        logger.info("Starting listener on %r (date > %d)", collection, lower_bound_ms)

    def listener_stopped(self, reason: str) -> None:
        logger.info("Listener stopped: %s", reason)

    def listener_failed(self, error: Exception) -> None:
        logger.error("Error listening to change feed: %s", error)

    def document_received(self, document_id: str | None) -> None:
        logger.debug("Received added document %s", document_id or "<no id>")

    def document_rejected(self, document_id: str | None, error: Exception) -> None:
        logger.warning("Dropping document %s: %s", document_id or "<no id>", error)

    def insert_succeeded(self, source_tag: str, result: IngestionResult) -> None:
        logger.info(
            "Stored %s readings: %d inserted, %d duplicates skipped",
            source_tag, result.inserted, result.skipped,
        )

    def insert_failed(self, source_tag: str, error: Exception) -> None:
        logger.error("Error inserting %s glucose readings: %s", source_tag, error)
