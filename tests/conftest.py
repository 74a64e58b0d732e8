"""Shared test fixtures for glucose source tests."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FEED_BACKEND", "memory")
    monkeypatch.setenv("FIRESTORE_PROJECT", "")
    monkeypatch.setenv("DB_PATH", ":memory:")
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("EXECUTION_MODE", "foreground")
    monkeypatch.setenv("GLUCOSE_SOURCE_ENABLED", "true")

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from bgsource.domains.glucose.feed.memory import InMemoryFeedClient  # noqa: E402
from bgsource.domains.glucose.models import GlucoseReading, IngestionResult  # noqa: E402

# 2023-11-14T22:13:20Z
NOW_MS = 1_700_000_000_000


def make_document(
    date: Any = NOW_MS,
    sgv: Any = "120",
    *,
    direction: Any = "Flat",
    device: Any = "G6 Native",
    identifier: Any = None,
    **extra: Any,
) -> dict[str, Any]:
    """Create a feed document shaped like a CGM ``entries`` row."""
    doc: dict[str, Any] = {"date": date, "sgv": sgv, "direction": direction, "device": device}
    if identifier is not None:
        doc["identifier"] = identifier
    doc.update(extra)
    return doc


def make_reading(
    timestamp: int = NOW_MS,
    value: float = 120,
    *,
    source_id: str | None = None,
) -> GlucoseReading:
    return GlucoseReading(timestamp=timestamp, value=value, source_id=source_id)


class FrozenClock:
    """Settable stand-in for ``time.time``."""

    def __init__(self, now_ms: int = NOW_MS) -> None:
        self.seconds = now_ms / 1000

    def __call__(self) -> float:
        return self.seconds


class RecordingStorage:
    """In-memory GlucoseStorage that records every call."""

    def __init__(self, *, fail_with: Exception | None = None) -> None:
        self.rows: dict[str, GlucoseReading] = {}
        self.insert_calls: list[list[GlucoseReading]] = []
        self.fail_with = fail_with

    def existing_dedup_keys(self, keys):
        if self.fail_with is not None:
            raise self.fail_with
        return {key for key in keys if key in self.rows}

    def insert_glucose_readings(self, readings, source_tag):
        self.insert_calls.append(list(readings))
        if self.fail_with is not None:
            raise self.fail_with
        inserted = 0
        for reading in readings:
            if reading.dedup_key not in self.rows:
                self.rows[reading.dedup_key] = reading
                inserted += 1
        return IngestionResult(inserted=inserted, skipped=len(readings) - inserted)


class RecordingObserver:
    """IngestionObserver that keeps every event as a tuple."""

    def __init__(self) -> None:
        self.events: list[tuple[Any, ...]] = []

    def names(self) -> list[str]:
        return [event[0] for event in self.events]

    def listener_started(self, collection, lower_bound_ms):
        self.events.append(("listener_started", collection, lower_bound_ms))

    def listener_stopped(self, reason):
        self.events.append(("listener_stopped", reason))

    def listener_failed(self, error):
        self.events.append(("listener_failed", error))

    def document_received(self, document_id):
        self.events.append(("document_received", document_id))

    def document_rejected(self, document_id, error):
        self.events.append(("document_rejected", document_id, error))

    def insert_succeeded(self, source_tag, result):
        self.events.append(("insert_succeeded", source_tag, result))

    def insert_failed(self, source_tag, error):
        self.events.append(("insert_failed", source_tag, error))


async def run_inline(func, *args):
    """Blocking runner that stays on the event loop thread."""
    return func(*args)


# ---------------------------------------------------------------------------
# Pipeline fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def memory_feed() -> InMemoryFeedClient:
    return InMemoryFeedClient()


@pytest.fixture
def recording_storage() -> RecordingStorage:
    return RecordingStorage()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def glucose_db():
    """Create an in-memory GlucoseDatabase for testing."""
    from bgsource.core.storage.database import GlucoseDatabase

    db = GlucoseDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def document_cipher():
    """Create a DocumentCipher with a test key."""
    from cryptography.fernet import Fernet

    from bgsource.core.storage.encryption import DocumentCipher

    return DocumentCipher(Fernet.generate_key().decode())


@pytest.fixture
def glucose_repository(glucose_db, document_cipher):
    """Create a GlucoseRepository backed by in-memory SQLite."""
    from bgsource.core.storage.repository import GlucoseRepository

    return GlucoseRepository(glucose_db, document_cipher)


@pytest.fixture
def audit_logger(glucose_db):
    """Create an AuditLogger backed by in-memory SQLite."""
    from bgsource.core.audit.logger import AuditLogger

    return AuditLogger(glucose_db)
