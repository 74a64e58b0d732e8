"""Tests for the Firestore change feed adapter.

A stand-in client, query and watch replace the network side. Only the
``subscribe`` tests need the ``google-cloud-firestore`` SDK (for
``FieldFilter``); they are skipped when it is not installed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

import pytest

from bgsource.domains.glucose.errors import FeedError
from bgsource.domains.glucose.feed import ChangeKind
from bgsource.domains.glucose.feed.firestore import (
    FirestoreFeedClient,
    _convert_change,
    _WatchRegistration,
)


class _ChangeType(Enum):
    ADDED = 1
    MODIFIED = 2
    REMOVED = 3


@dataclass
class _Snapshot:
    id: str
    data: dict[str, Any] | None
    exists: bool = True

    def to_dict(self):
        return None if self.data is None else dict(self.data)


@dataclass
class _Change:
    type: Any
    document: _Snapshot


class _Rpc:
    def __init__(self) -> None:
        self.callbacks = []

    def add_done_callback(self, callback) -> None:
        self.callbacks.append(callback)

    def finish(self, future) -> None:
        for callback in self.callbacks:
            callback(future)


class _CallFuture:
    def __init__(self, error: Exception | None) -> None:
        self._error = error

    def exception(self):
        return self._error


class _Watch:
    def __init__(self, *, is_active: bool = True) -> None:
        self.unsubscribed = 0
        self.is_active = is_active
        self._rpc = _Rpc()

    def unsubscribe(self) -> None:
        self.unsubscribed += 1


class _Query:
    def __init__(self, client: _Client) -> None:
        self._client = client

    def on_snapshot(self, callback):
        if self._client.listen_error is not None:
            raise self._client.listen_error
        self._client.callbacks.append(callback)
        self._client.watch = _Watch()
        return self._client.watch


class _DocumentRef:
    def __init__(self, client: _Client, path: str) -> None:
        self._client = client
        self._path = path

    def get(self):
        if self._client.read_error is not None:
            raise self._client.read_error
        doc_id = self._path.rsplit("/", 1)[1]
        data = self._client.documents.get(self._path)
        return _Snapshot(doc_id, data, exists=data is not None)


class _Collection:
    def __init__(self, client: _Client, name: str) -> None:
        self._client = client
        self._name = name

    def where(self, *, filter):
        self._client.queries.append((self._name, filter))
        return _Query(self._client)

    def document(self, document_id: str) -> _DocumentRef:
        return _DocumentRef(self._client, f"{self._name}/{document_id}")


class _Client:
    def __init__(self) -> None:
        self.queries: list[tuple[str, Any]] = []
        self.callbacks: list[Any] = []
        self.documents: dict[str, dict[str, Any]] = {}
        self.watch: _Watch | None = None
        self.listen_error: Exception | None = None
        self.read_error: Exception | None = None

    def collection(self, name: str) -> _Collection:
        return _Collection(self, name)


@pytest.fixture
def client() -> _Client:
    return _Client()


@pytest.fixture
def feed(client) -> FirestoreFeedClient:
    feed = object.__new__(FirestoreFeedClient)
    feed._client = client
    return feed


@pytest.fixture
def firestore_sdk():
    return pytest.importorskip("google.cloud.firestore_v1.base_query")


def _listen(feed: FirestoreFeedClient, bound: int = 1000):
    received, errors = [], []
    registration = feed.subscribe("entries", "date", bound, received.append, errors.append)
    return registration, received, errors


# ---------------------------------------------------------------------------
# Change conversion
# ---------------------------------------------------------------------------

class TestConvertChange:
    def test_added(self):
        change = _convert_change(_Change(_ChangeType.ADDED, _Snapshot("abc", {"sgv": "100"})))
        assert change.kind is ChangeKind.ADDED
        assert change.document_id == "abc"
        assert change.document == {"sgv": "100", "identifier": "abc"}

    def test_modified_and_removed(self):
        assert _convert_change(_Change(_ChangeType.MODIFIED, _Snapshot("a", {}))).kind is ChangeKind.MODIFIED
        assert _convert_change(_Change(_ChangeType.REMOVED, _Snapshot("a", {}))).kind is ChangeKind.REMOVED

    def test_body_identifier_kept(self):
        change = _convert_change(
            _Change(_ChangeType.ADDED, _Snapshot("abc", {"identifier": "from-uploader"}))
        )
        assert change.document["identifier"] == "from-uploader"

    def test_empty_snapshot(self):
        change = _convert_change(_Change(_ChangeType.ADDED, _Snapshot("abc", None)))
        assert change.document == {"identifier": "abc"}


# ---------------------------------------------------------------------------
# Watch registration
# ---------------------------------------------------------------------------

class TestWatchRegistration:
    def test_remove_unsubscribes_once(self):
        watch = _Watch()
        registration = _WatchRegistration(watch, "entries", lambda error: None)
        registration.remove()
        registration.remove()
        assert watch.unsubscribed == 1

    def test_stream_end_reported_as_feed_error(self):
        watch, errors = _Watch(), []
        _WatchRegistration(watch, "entries", errors.append)
        watch._rpc.finish(_CallFuture(RuntimeError("503 unavailable")))
        assert len(errors) == 1
        assert isinstance(errors[0], FeedError)
        assert "503 unavailable" in str(errors[0])

    def test_stream_end_reported_once(self):
        watch, errors = _Watch(), []
        _WatchRegistration(watch, "entries", errors.append)
        watch._rpc.finish(_CallFuture(RuntimeError("quota")))
        watch._rpc.finish(_CallFuture(RuntimeError("quota")))
        assert len(errors) == 1

    def test_stream_end_after_remove_is_silent(self):
        watch, errors = _Watch(), []
        registration = _WatchRegistration(watch, "entries", errors.append)
        registration.remove()
        watch._rpc.finish(_CallFuture(None))
        assert errors == []

    def test_inactive_watch_reported_at_registration(self):
        errors = []
        _WatchRegistration(_Watch(is_active=False), "entries", errors.append)
        assert "not active" in str(errors[0])


# ---------------------------------------------------------------------------
# FirestoreFeedClient
# ---------------------------------------------------------------------------

class TestSubscribe:
    def test_query_filters_on_lower_bound(self, feed, client, firestore_sdk):
        _listen(feed, bound=1_699_999_700_000)
        ((collection, field_filter),) = client.queries
        assert collection == "entries"
        assert isinstance(field_filter, firestore_sdk.FieldFilter)
        assert (field_filter.field_path, field_filter.op_string, field_filter.value) == (
            "date",
            ">",
            1_699_999_700_000,
        )

    def test_snapshot_delivered_as_notification(self, feed, client, firestore_sdk):
        _, received, errors = _listen(feed)
        (callback,) = client.callbacks
        callback(
            [],
            [
                _Change(_ChangeType.ADDED, _Snapshot("a", {"sgv": "100"})),
                _Change(_ChangeType.REMOVED, _Snapshot("b", {})),
            ],
            None,
        )
        assert errors == []
        (notification,) = received
        assert [c.document_id for c in notification.changes] == ["a", "b"]
        assert [c.document_id for c in notification.added()] == ["a"]

    def test_undecodable_snapshot_goes_to_on_error(self, feed, client, firestore_sdk):
        class _Unknown:
            name = "RENAMED"

        _, received, errors = _listen(feed)
        client.callbacks[0]([], [_Change(_Unknown(), _Snapshot("a", {}))], None)
        assert received == []
        assert isinstance(errors[0], FeedError)

    def test_dropped_stream_goes_to_on_error(self, feed, client, firestore_sdk):
        _, _, errors = _listen(feed)
        client.watch._rpc.finish(_CallFuture(RuntimeError("unauthenticated")))
        assert "unauthenticated" in str(errors[0])

    def test_remove_unsubscribes_watch(self, feed, client, firestore_sdk):
        registration, _, errors = _listen(feed)
        registration.remove()
        client.watch._rpc.finish(_CallFuture(None))
        assert client.watch.unsubscribed == 1
        assert errors == []

    def test_listen_failure_is_feed_error(self, feed, client, firestore_sdk):
        client.listen_error = RuntimeError("permission denied")
        with pytest.raises(FeedError, match="permission denied") as exc_info:
            _listen(feed)
        assert isinstance(exc_info.value.__cause__, RuntimeError)


class TestFetchDocument:
    def test_existing_document_gets_identifier(self, feed, client):
        client.documents["entries/doc-1"] = {"date": 1, "sgv": "110"}
        assert feed.fetch_document("entries", "doc-1") == {
            "date": 1,
            "sgv": "110",
            "identifier": "doc-1",
        }

    def test_missing_document(self, feed):
        assert feed.fetch_document("entries", "nope") is None

    def test_read_failure_is_feed_error(self, feed, client):
        client.read_error = RuntimeError("deadline exceeded")
        with pytest.raises(FeedError, match="entries/doc-1") as exc_info:
            feed.fetch_document("entries", "doc-1")
        assert isinstance(exc_info.value.__cause__, RuntimeError)
