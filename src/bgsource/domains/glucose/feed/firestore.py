"""Google Cloud Firestore change feed.

Requires the ``firestore`` extra (``google-cloud-firestore``). Snapshot
callbacks run on the Firestore client's watch thread.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from bgsource.domains.glucose.errors import FeedError
from bgsource.domains.glucose.feed import (
    ChangeKind,
    ChangeNotification,
    DocumentChange,
    ErrorCallback,
    SnapshotCallback,
)

logger = logging.getLogger(__name__)

_KINDS = {
    "ADDED": ChangeKind.ADDED,
    "MODIFIED": ChangeKind.MODIFIED,
    "REMOVED": ChangeKind.REMOVED,
}


class _WatchRegistration:
    """Wraps a Firestore ``Watch`` so removal is idempotent.

    The watch closes its stream on its own when the RPC fails for good
    (network, auth and quota errors). That end is reported once through
    ``on_error`` unless the registration was removed first.
    """

    def __init__(self, watch: Any, collection: str, on_error: ErrorCallback) -> None:
        self._watch = watch
        self._collection = collection
        self._on_error = on_error
        self._ended = False
        self._lock = threading.Lock()

        rpc = getattr(watch, "_rpc", None)
        if rpc is not None:
            rpc.add_done_callback(self._stream_done)
        else:
            logger.warning("Firestore watch has no RPC handle; stream loss on %r goes unreported", collection)
        if not getattr(watch, "is_active", True):
            self._stream_done(None)

    def remove(self) -> None:
        with self._lock:
            watch, self._watch = self._watch, None
        if watch is not None:
            watch.unsubscribe()

    def _stream_done(self, future: Any) -> None:
        with self._lock:
            if self._watch is None or self._ended:
                return
            self._ended = True
        error = FeedError(f"Firestore listener on {self._collection!r} ended: {_end_reason(future)}")
        logger.error("%s", error)
        self._on_error(error)


class FirestoreFeedClient:
    """FeedClient backed by a Firestore snapshot listener.

    Usage::

        feed = FirestoreFeedClient(project="my-project")
        registration = feed.subscribe("entries", "date", bound_ms, on_snapshot, on_error)
        ...
        registration.remove()
    """

    def __init__(
        self,
        project: str | None = None,
        *,
        database: str | None = None,
        credentials_path: str = "",
    ) -> None:
        from google.cloud import firestore

        try:
            if credentials_path:
                self._client = firestore.Client.from_service_account_json(
                    credentials_path, project=project, database=database
                )
            else:
                self._client = firestore.Client(project=project, database=database)
        except Exception as exc:
            raise FeedError(f"Could not create Firestore client: {exc}") from exc

    def subscribe(
        self,
        collection: str,
        field: str,
        greater_than: Any,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> _WatchRegistration:
        from google.cloud.firestore_v1.base_query import FieldFilter

        query = self._client.collection(collection).where(
            filter=FieldFilter(field, ">", greater_than)
        )

        def _callback(doc_snapshots: Any, changes: Any, read_time: Any) -> None:
            try:
                notification = ChangeNotification(
                    changes=tuple(_convert_change(change) for change in changes)
                )
            except Exception as exc:
                logger.exception("Could not decode Firestore snapshot")
                on_error(FeedError(f"Undecodable snapshot: {exc}"))
                return
            on_snapshot(notification)

        try:
            watch = query.on_snapshot(_callback)
        except Exception as exc:
            raise FeedError(f"Could not listen to {collection!r}: {exc}") from exc
        return _WatchRegistration(watch, collection, on_error)

    def fetch_document(self, collection: str, document_id: str) -> dict[str, Any] | None:
        try:
            snapshot = self._client.collection(collection).document(document_id).get()
        except Exception as exc:
            raise FeedError(f"Could not read {collection}/{document_id}: {exc}") from exc
        if not snapshot.exists:
            return None
        return _with_identifier(snapshot.to_dict() or {}, snapshot.id)


def _convert_change(change: Any) -> DocumentChange:
    snapshot = change.document
    return DocumentChange(
        kind=_KINDS[change.type.name],
        document=_with_identifier(snapshot.to_dict() or {}, snapshot.id),
        document_id=snapshot.id,
    )


def _with_identifier(document: dict[str, Any], document_id: str) -> dict[str, Any]:
    # The document id is the stable remote identifier when the body has none
    document.setdefault("identifier", document_id)
    return document


def _end_reason(future: Any) -> str:
    if future is None:
        return "watch is not active"
    exception = getattr(future, "exception", None)
    if not callable(exception):
        return str(future)
    try:
        error = exception()
    except Exception:
        # A cancelled call has no exception of its own
        return "stream cancelled"
    return str(error) if error is not None else "stream closed"
