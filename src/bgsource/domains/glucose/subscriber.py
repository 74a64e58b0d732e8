"""Change-feed subscriber: owns the live query and drives mapper and sink.

Feed callbacks can arrive on any thread. They are marshalled onto the event
loop that called ``start()`` and queued; a single consumer task processes
notifications in arrival order, maps the ``ADDED`` documents and hands each
notification's readings to the sink as one batch on a worker thread.

Every subscription gets a generation number. Callbacks carry the generation
they were registered with, so anything delivered after ``stop()`` (or after a
restart) is recognised as stale and dropped.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable

from bgsource.domains.glucose.errors import FeedError, MappingError
from bgsource.domains.glucose.events import IngestionObserver, LoggingObserver
from bgsource.domains.glucose.feed import (
    ChangeKind,
    ChangeNotification,
    FeedClient,
    FeedRegistration,
)
from bgsource.domains.glucose.mapper import map_document
from bgsource.domains.glucose.models import GlucoseReading, IngestionResult
from bgsource.domains.glucose.sink import IdempotentSink

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = "entries"
DEFAULT_LOOKBACK_MINUTES = 5

BlockingRunner = Callable[..., Awaitable[Any]]


class SubscriberState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    LISTENING = "listening"
    ERROR = "error"


class ChangeFeedSubscriber:
    """Live subscription to the glucose ``entries`` collection.

    Usage::

        subscriber = ChangeFeedSubscriber(feed, sink)
        await subscriber.start()
        ...
        await subscriber.stop()

    Args:
        feed: Feed client used to open the live query.
        sink: Destination for mapped readings.
        collection: Remote collection name.
        lookback_minutes: Width of the rolling window; only documents with a
            ``date`` newer than ``now - lookback`` are requested.
        gate: Live "is the source enabled" check, consulted for every
            inbound document.
        observer: Receives pipeline events.
        clock: Returns the current time in seconds since the epoch.
        run_blocking: Runs the sink call off the event loop. Defaults to
            ``asyncio.to_thread``.
    """

    def __init__(
        self,
        feed: FeedClient,
        sink: IdempotentSink,
        *,
        collection: str = DEFAULT_COLLECTION,
        lookback_minutes: float = DEFAULT_LOOKBACK_MINUTES,
        gate: Callable[[], bool] | None = None,
        observer: IngestionObserver | None = None,
        clock: Callable[[], float] = time.time,
        run_blocking: BlockingRunner | None = None,
    ) -> None:
        self._feed = feed
        self._sink = sink
        self._collection = collection
        self._lookback_ms = int(lookback_minutes * 60_000)
        self.gate = gate or (lambda: True)
        self._observer = observer or LoggingObserver()
        self._clock = clock
        self._run_blocking = run_blocking or asyncio.to_thread

        self._lock = asyncio.Lock()
        self._state = SubscriberState.STOPPED
        self._generation = 0
        self._registration: FeedRegistration | None = None
        self._queue: asyncio.Queue[ChangeNotification] | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._error_teardown: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: int | None = None
        self._stopped = asyncio.Event()
        self._stopped.set()

        self.lower_bound_ms: int | None = None
        self.last_error: Exception | None = None
        self.totals = IngestionResult()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SubscriberState:
        return self._state

    @property
    def is_listening(self) -> bool:
        return self._state is SubscriberState.LISTENING

    @property
    def collection(self) -> str:
        return self._collection

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open a new subscription, closing any existing one first.

        Raises:
            FeedError: The feed client refused the subscription.
        """
        async with self._lock:
            if self._state is not SubscriberState.STOPPED or self._registration is not None:
                await self._teardown("restarting")

            self._loop = asyncio.get_running_loop()
            self._loop_thread = threading.get_ident()
            self._generation += 1
            generation = self._generation
            self._state = SubscriberState.STARTING
            self._stopped.clear()
            self.last_error = None
            self.lower_bound_ms = int(self._clock() * 1000) - self._lookback_ms
            self._queue = asyncio.Queue()
            self._consumer = self._loop.create_task(self._consume(generation, self._queue))

            try:
                self._registration = self._feed.subscribe(
                    self._collection,
                    "date",
                    self.lower_bound_ms,
                    functools.partial(self._on_snapshot, generation),
                    functools.partial(self._on_error, generation),
                )
            except Exception as exc:
                error = exc if isinstance(exc, FeedError) else FeedError(str(exc))
                logger.error("Could not open listener on %r: %s", self._collection, error)
                self.last_error = error
                self._state = SubscriberState.ERROR
                self._observer.listener_failed(error)
                await self._teardown("failed to start")
                if error is exc:
                    raise
                raise error from exc

            if self._state is SubscriberState.ERROR:
                # Failed during registration; the error teardown closes it
                return
            self._state = SubscriberState.LISTENING
            self._observer.listener_started(self._collection, self.lower_bound_ms)

    async def stop(self, reason: str = "stopped") -> None:
        """Close the subscription. Safe to call in any state.

        Once this returns, nothing delivered on the old subscription reaches
        the sink.
        """
        async with self._lock:
            await self._teardown(reason)

    async def drain(self) -> None:
        """Wait until every notification queued so far has been processed."""
        queue = self._queue
        if queue is not None:
            await queue.join()

    async def wait_stopped(self) -> None:
        """Wait until the subscriber is in the ``STOPPED`` state."""
        await self._stopped.wait()

    async def _teardown(self, reason: str) -> None:
        if self._state is SubscriberState.STOPPED and self._registration is None:
            return

        self._generation += 1
        registration, self._registration = self._registration, None
        consumer, self._consumer = self._consumer, None
        self._queue = None

        if registration is not None:
            try:
                registration.remove()
            except Exception:
                logger.exception("Failed to remove feed registration")

        if consumer is not None and consumer is not asyncio.current_task():
            consumer.cancel()
            await asyncio.wait([consumer])

        self._state = SubscriberState.STOPPED
        self._stopped.set()
        self._observer.listener_stopped(reason)

    # ------------------------------------------------------------------
    # Feed callbacks (any thread)
    # ------------------------------------------------------------------

    def _on_snapshot(self, generation: int, notification: ChangeNotification) -> None:
        self._call_in_loop(self._enqueue, generation, notification)

    def _on_error(self, generation: int, error: Exception) -> None:
        self._call_in_loop(self._fail, generation, error)

    def _call_in_loop(self, callback: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None:
            return
        if threading.get_ident() == self._loop_thread:
            callback(*args)
            return
        try:
            loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug("Event loop closed; dropping feed callback")

    def _enqueue(self, generation: int, notification: ChangeNotification) -> None:
        if not self._is_current(generation) or self._queue is None:
            logger.debug("Dropping notification for a closed subscription")
            return
        self._queue.put_nowait(notification)

    def _fail(self, generation: int, error: Exception) -> None:
        if not self._is_current(generation):
            return
        feed_error = error if isinstance(error, FeedError) else FeedError(str(error))
        logger.error("Error listening to %r: %s", self._collection, feed_error)
        self.last_error = feed_error
        self._state = SubscriberState.ERROR
        self._observer.listener_failed(feed_error)
        self._error_teardown = self._loop.create_task(self._close_after_error(generation))

    async def _close_after_error(self, generation: int) -> None:
        async with self._lock:
            if generation == self._generation:
                await self._teardown("feed error")

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._state in (
            SubscriberState.STARTING,
            SubscriberState.LISTENING,
        )

    # ------------------------------------------------------------------
    # Processing (event loop)
    # ------------------------------------------------------------------

    async def _consume(self, generation: int, queue: asyncio.Queue[ChangeNotification]) -> None:
        while True:
            notification = await queue.get()
            try:
                await self._process(generation, notification)
            except Exception as exc:
                logger.exception("Unexpected error while processing a feed notification")
                self.totals = self.totals + IngestionResult(error=exc)
            finally:
                queue.task_done()

    def _accepting(self, generation: int) -> bool:
        if not self._is_current(generation):
            return False
        if not self.gate():
            logger.debug("Source disabled; dropping inbound document")
            return False
        return True

    async def _process(self, generation: int, notification: ChangeNotification) -> None:
        readings: list[GlucoseReading] = []
        rejected = 0
        for change in notification.changes:
            if change.kind is not ChangeKind.ADDED:
                continue
            if not self._accepting(generation):
                return
            self._observer.document_received(change.document_id)
            try:
                readings.append(map_document(change.document))
            except MappingError as exc:
                rejected += 1
                self._observer.document_rejected(change.document_id, exc)

        result = IngestionResult(rejected=rejected)
        if readings and self._accepting(generation):
            result = result + await self._run_blocking(self._sink.insert, readings)
        self.totals = self.totals + result
