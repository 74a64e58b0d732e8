"""Lifecycle controller: turns enable/disable events into subscriber state.

The controller picks the execution context for the subscriber:

* ``FOREGROUND``: the subscriber listens on the host's event loop until
  the source is disabled.
* ``BACKGROUND``: the subscriber runs inside an ``IngestionWorkUnit`` task
  with an optional deadline; disabling cancels the task.

It also owns the per-document enablement guard: the subscriber asks the
controller before mapping each inbound document.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from bgsource.domains.glucose.subscriber import ChangeFeedSubscriber, SubscriberState
from bgsource.domains.glucose.worker import IngestionWorkUnit, WorkResult

if TYPE_CHECKING:
    from bgsource.core.storage.repository import GlucoseRepository

logger = logging.getLogger(__name__)


@runtime_checkable
class FeatureFlag(Protocol):
    """Answers "is this glucose source currently enabled"."""

    def is_enabled(self) -> bool: ...


class StaticFeatureFlag:
    """In-memory flag."""

    def __init__(self, enabled: bool = True) -> None:
        self._enabled = enabled

    def is_enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled


class DataSourceFeatureFlag:
    """Flag persisted in the ``data_sources`` table.

    The stored ``is_active`` value wins; ``default`` is only used the first
    time a source is seen. The value is cached so the per-document check does
    not hit the database.
    """

    def __init__(
        self,
        repository: GlucoseRepository,
        source_type: str,
        *,
        display_name: str = "",
        default: bool = True,
    ) -> None:
        self._repo = repository
        self._source_type = source_type
        source = repository.get_data_source(source_type)
        if source is None:
            repository.register_data_source(
                source_type, display_name or source_type, is_active=default
            )
            self._enabled = default
        else:
            self._enabled = source.is_active

    def is_enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._repo.set_source_active(self._source_type, enabled)
        self._enabled = enabled


class ExecutionMode(str, Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"


class LifecycleController:
    """Start and stop a subscriber in response to enable/disable events.

    Usage::

        controller = LifecycleController(subscriber, flag)
        await controller.on_enable()
        ...
        await controller.on_disable()
    """

    def __init__(
        self,
        subscriber: ChangeFeedSubscriber,
        flag: FeatureFlag,
        *,
        mode: ExecutionMode = ExecutionMode.FOREGROUND,
        work_unit_timeout_seconds: float | None = None,
    ) -> None:
        self._subscriber = subscriber
        self._flag = flag
        self._mode = ExecutionMode(mode)
        self._timeout = work_unit_timeout_seconds
        self._task: asyncio.Task[WorkResult] | None = None
        self.last_work_result: WorkResult | None = None
        subscriber.gate = self.is_enabled

    @property
    def mode(self) -> ExecutionMode:
        return self._mode

    @property
    def is_running(self) -> bool:
        if self._mode is ExecutionMode.BACKGROUND:
            return self._task is not None and not self._task.done()
        return self._subscriber.state in (SubscriberState.STARTING, SubscriberState.LISTENING)

    def is_enabled(self) -> bool:
        return self._flag.is_enabled()

    async def on_enable(self) -> bool:
        """Start ingestion if the flag is on. Returns whether it is running."""
        if not self._flag.is_enabled():
            logger.info("Glucose source disabled; not starting listener")
            return False
        if self.is_running:
            return True

        if self._mode is ExecutionMode.FOREGROUND:
            await self._subscriber.start()
        else:
            unit = IngestionWorkUnit(
                self._subscriber,
                is_enabled=self._flag.is_enabled,
                timeout_seconds=self._timeout,
            )
            self._task = asyncio.get_running_loop().create_task(unit.run())
            self._task.add_done_callback(self._record_work_result)
        return True

    async def on_disable(self) -> None:
        """Stop ingestion. In-flight storage writes finish; no new ones start."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])
        await self._subscriber.stop("disabled")

    def status(self) -> dict[str, Any]:
        subscriber = self._subscriber
        return {
            "enabled": self._flag.is_enabled(),
            "mode": self._mode.value,
            "state": subscriber.state.value,
            "collection": subscriber.collection,
            "lower_bound_ms": subscriber.lower_bound_ms,
            "last_error": str(subscriber.last_error) if subscriber.last_error else None,
            "totals": subscriber.totals.to_dict(),
            "last_work_result": self.last_work_result.to_dict() if self.last_work_result else None,
        }

    def _record_work_result(self, task: asyncio.Task[WorkResult]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Ingestion work unit crashed: %s", exc, exc_info=exc)
            self.last_work_result = WorkResult("failure", f"{type(exc).__name__}: {exc}")
            return
        self.last_work_result = task.result()
        logger.info("Ingestion work unit finished: %s", self.last_work_result.message)
