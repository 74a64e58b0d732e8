"""In-memory change feed, used for local development and tests.

Behaves like a document database's snapshot listener: a new subscription
first receives the existing matching documents as ``ADDED`` changes, then one
notification per write.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any

from bgsource.domains.glucose.feed import (
    ChangeKind,
    ChangeNotification,
    DocumentChange,
    ErrorCallback,
    SnapshotCallback,
)

logger = logging.getLogger(__name__)


@dataclass
class MemoryRegistration:
    """Registration handle returned by ``InMemoryFeedClient.subscribe``.

    The callbacks stay reachable after ``remove()`` so tests can simulate a
    notification that arrives late on a closed subscription.
    """

    collection: str
    field: str
    greater_than: Any
    on_snapshot: SnapshotCallback
    on_error: ErrorCallback
    active: bool = True
    _owner: InMemoryFeedClient | None = field(default=None, repr=False)

    def matches(self, collection: str, document: dict[str, Any]) -> bool:
        if collection != self.collection:
            return False
        value = document.get(self.field)
        try:
            return float(value) > float(self.greater_than)
        except (TypeError, ValueError):
            return False

    def remove(self) -> None:
        if self.active and self._owner is not None:
            self._owner._detach(self)
        self.active = False


class InMemoryFeedClient:
    """FeedClient over a dict of collections, delivering synchronously.

    Usage::

        feed = InMemoryFeedClient()
        registration = feed.subscribe("entries", "date", 0, on_snapshot, on_error)
        feed.add_document("entries", {"date": 1700000000000, "sgv": "120"})
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._registrations: list[MemoryRegistration] = []
        self.subscribe_count = 0

    # ------------------------------------------------------------------
    # FeedClient
    # ------------------------------------------------------------------

    def subscribe(
        self,
        collection: str,
        field: str,
        greater_than: Any,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> MemoryRegistration:
        registration = MemoryRegistration(
            collection=collection,
            field=field,
            greater_than=greater_than,
            on_snapshot=on_snapshot,
            on_error=on_error,
            _owner=self,
        )
        with self._lock:
            self._registrations.append(registration)
            self.subscribe_count += 1
            initial = [
                DocumentChange(ChangeKind.ADDED, _body(doc, doc_id), doc_id)
                for doc_id, doc in self._collections.get(collection, {}).items()
                if registration.matches(collection, doc)
            ]
        logger.debug("Memory feed subscription opened on %r (%d existing)", collection, len(initial))
        if initial:
            on_snapshot(ChangeNotification(changes=tuple(initial)))
        return registration

    def fetch_document(self, collection: str, document_id: str) -> dict[str, Any] | None:
        with self._lock:
            doc = self._collections.get(collection, {}).get(document_id)
        return _body(doc, document_id) if doc is not None else None

    # ------------------------------------------------------------------
    # Writes / test controls
    # ------------------------------------------------------------------

    @property
    def active_registrations(self) -> list[MemoryRegistration]:
        with self._lock:
            return list(self._registrations)

    def add_document(
        self, collection: str, document: dict[str, Any], document_id: str | None = None
    ) -> str:
        """Store a document and notify matching listeners with an ADDED change."""
        doc_id = document_id or uuid.uuid4().hex
        with self._lock:
            self._collections.setdefault(collection, {})[doc_id] = dict(document)
        self._notify(collection, [DocumentChange(ChangeKind.ADDED, _body(document, doc_id), doc_id)])
        return doc_id

    def modify_document(self, collection: str, document_id: str, document: dict[str, Any]) -> None:
        with self._lock:
            self._collections.setdefault(collection, {})[document_id] = dict(document)
        self._notify(
            collection, [DocumentChange(ChangeKind.MODIFIED, _body(document, document_id), document_id)]
        )

    def remove_document(self, collection: str, document_id: str) -> None:
        with self._lock:
            doc = self._collections.get(collection, {}).pop(document_id, None)
        if doc is not None:
            self._notify(collection, [DocumentChange(ChangeKind.REMOVED, doc, document_id)])

    def emit(self, collection: str, changes: list[DocumentChange]) -> None:
        """Deliver a notification verbatim to every listener on the collection."""
        self._notify(collection, changes, filtered=False)

    def fail(self, error: Exception) -> None:
        """Report a feed failure to every active listener."""
        for registration in self.active_registrations:
            registration.on_error(error)

    def _notify(
        self, collection: str, changes: list[DocumentChange], *, filtered: bool = True
    ) -> None:
        for registration in self.active_registrations:
            relevant = tuple(
                c for c in changes
                if not filtered
                or c.kind is ChangeKind.REMOVED
                or registration.matches(collection, c.document)
            )
            if relevant and registration.collection == collection:
                registration.on_snapshot(ChangeNotification(changes=relevant))

    def _detach(self, registration: MemoryRegistration) -> None:
        with self._lock:
            registration.active = False
            self._registrations = [r for r in self._registrations if r is not registration]
        logger.debug("Memory feed subscription on %r removed", registration.collection)


def _body(document: dict[str, Any], document_id: str) -> dict[str, Any]:
    body = dict(document)
    body.setdefault("identifier", document_id)
    return body
