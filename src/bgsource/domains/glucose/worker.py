"""Background work units for glucose ingestion.

``IngestionWorkUnit`` runs the change-feed subscriber as one cancellable,
optionally time-bounded task. Its ``finally`` block is the cancellation hook:
whatever ends the task, the subscription is closed before the task returns.

``ingest_document`` is the one-shot job: fetch a single remote document by id
and push it through the mapper and sink.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from bgsource.domains.glucose.errors import FeedError, MappingError
from bgsource.domains.glucose.feed import FeedClient
from bgsource.domains.glucose.mapper import map_document
from bgsource.domains.glucose.models import IngestionResult
from bgsource.domains.glucose.sink import IdempotentSink
from bgsource.domains.glucose.subscriber import BlockingRunner, ChangeFeedSubscriber

logger = logging.getLogger(__name__)

NOT_ENABLED = "Plugin not enabled"


@dataclass
class WorkResult:
    """Outcome reported back to whatever scheduled the work unit."""

    status: str  # 'success' | 'failure'
    message: str = ""
    totals: IngestionResult = field(default_factory=IngestionResult)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "message": self.message, **self.totals.to_dict()}


class IngestionWorkUnit:
    """Run a subscriber until it fails, the deadline passes, or the task is cancelled.

    Usage::

        unit = IngestionWorkUnit(subscriber, is_enabled=flag.is_enabled, timeout_seconds=900)
        task = asyncio.create_task(unit.run())
        ...
        task.cancel()  # closes the subscription
    """

    def __init__(
        self,
        subscriber: ChangeFeedSubscriber,
        *,
        is_enabled: Callable[[], bool] = lambda: True,
        timeout_seconds: float | None = None,
    ) -> None:
        self._subscriber = subscriber
        self._is_enabled = is_enabled
        self._timeout = timeout_seconds or None

    async def run(self) -> WorkResult:
        if not self._is_enabled():
            return WorkResult("success", NOT_ENABLED)

        before = self._subscriber.totals
        try:
            await self._subscriber.start()
        except FeedError as exc:
            return WorkResult("failure", str(exc))

        message = "Listener stopped"
        try:
            await asyncio.wait_for(self._subscriber.wait_stopped(), timeout=self._timeout)
        except asyncio.TimeoutError:
            message = "Deadline reached"
            logger.info("Ingestion work unit reached its %.0fs deadline", self._timeout)
        finally:
            await self._subscriber.stop("work unit finished")

        totals = _since(before, self._subscriber.totals)
        if self._subscriber.last_error is not None:
            return WorkResult("failure", str(self._subscriber.last_error), totals)
        if totals.error is not None:
            return WorkResult("failure", f"{type(totals.error).__name__}: {totals.error}", totals)
        return WorkResult("success", message, totals)


async def ingest_document(
    feed: FeedClient,
    sink: IdempotentSink,
    collection: str,
    document_id: str,
    *,
    is_enabled: Callable[[], bool] = lambda: True,
    run_blocking: BlockingRunner | None = None,
) -> WorkResult:
    """Fetch one document by id and store it.

    Returns:
        A failure result when the document does not exist, cannot be mapped,
        the feed cannot be read, or storage rejects the write.
    """
    if not is_enabled():
        return WorkResult("success", NOT_ENABLED)
    run = run_blocking or asyncio.to_thread

    logger.debug("Fetching %s/%s", collection, document_id)
    try:
        document = await run(feed.fetch_document, collection, document_id)
    except FeedError as exc:
        logger.error("Error while fetching %s/%s: %s", collection, document_id, exc)
        return WorkResult("failure", str(exc))
    if not document:
        return WorkResult("failure", "No data in document")

    try:
        reading = map_document(document)
    except MappingError as exc:
        logger.warning("Document %s rejected: %s", document_id, exc)
        return WorkResult("failure", str(exc), IngestionResult(rejected=1, error=exc))

    result = await run(sink.insert, [reading])
    if result.error is not None:
        return WorkResult("failure", str(result.error), result)
    return WorkResult("success", "Stored" if result.inserted else "Duplicate", result)


def _since(before: IngestionResult, after: IngestionResult) -> IngestionResult:
    return IngestionResult(
        inserted=after.inserted - before.inserted,
        skipped=after.skipped - before.skipped,
        rejected=after.rejected - before.rejected,
        error=after.error if after.error is not before.error else None,
    )
