"""Idempotent sink: de-duplicates mapped readings and writes new ones.

The sink is the only writer in the pipeline. It filters out duplicates
(within the batch and against storage), hands the remaining readings to the
storage port as one transaction, and reports counts. Storage failures are
returned in the result, never raised.
"""

from __future__ import annotations

import logging
from typing import Iterable, Protocol, Sequence, runtime_checkable

from bgsource.domains.glucose.errors import StorageError
from bgsource.domains.glucose.events import IngestionObserver, LoggingObserver
from bgsource.domains.glucose.models import GlucoseReading, IngestionResult

logger = logging.getLogger(__name__)


@runtime_checkable
class GlucoseStorage(Protocol):
    """Storage port consumed by the sink.

    ``insert_glucose_readings`` must commit all readings or none and must
    itself ignore readings whose ``dedup_key`` is already stored.
    """

    def existing_dedup_keys(self, keys: Iterable[str]) -> set[str]: ...

    def insert_glucose_readings(
        self, readings: Sequence[GlucoseReading], source_tag: str
    ) -> IngestionResult: ...


class IdempotentSink:
    """Insert glucose readings so that repeated delivery never duplicates rows.

    Usage::

        sink = IdempotentSink(repository, source_tag="Firestore")
        result = sink.insert([reading])
        result.inserted, result.skipped
    """

    def __init__(
        self,
        storage: GlucoseStorage,
        *,
        source_tag: str = "Firestore",
        observer: IngestionObserver | None = None,
    ) -> None:
        self._storage = storage
        self._source_tag = source_tag
        self._observer = observer or LoggingObserver()

    @property
    def source_tag(self) -> str:
        return self._source_tag

    def insert(self, readings: Sequence[GlucoseReading]) -> IngestionResult:
        """Store the new readings of a batch.

        Args:
            readings: Mapped readings in delivery order.

        Returns:
            Counts of inserted and skipped readings. ``error`` is set to the
            ``StorageError`` when the batch could not be committed, in which
            case nothing from the batch counts as inserted.
        """
        if not readings:
            return IngestionResult()

        unique: dict[str, GlucoseReading] = {}
        for reading in readings:
            unique.setdefault(reading.dedup_key, reading)
        skipped = len(readings) - len(unique)

        try:
            stored = self._storage.existing_dedup_keys(unique.keys())
            fresh = [r for key, r in unique.items() if key not in stored]
            skipped += len(unique) - len(fresh)
            if not fresh:
                logger.debug("Batch of %d readings contained only duplicates", len(readings))
                return IngestionResult(skipped=skipped)
            written = self._storage.insert_glucose_readings(fresh, self._source_tag)
        except StorageError as exc:
            self._observer.insert_failed(self._source_tag, exc)
            return IngestionResult(skipped=skipped, error=exc)

        # Rows another writer committed between the lookup and the insert
        # come back as skipped from storage.
        result = IngestionResult(inserted=written.inserted, skipped=skipped + written.skipped)
        self._observer.insert_succeeded(self._source_tag, result)
        return result
