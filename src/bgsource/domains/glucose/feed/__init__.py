"""Change-feed clients: abstraction over the remote document database."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol, runtime_checkable


class ChangeKind(str, Enum):
    """Kind of a single document change inside a notification."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class DocumentChange:
    """One change of one document, as delivered by the feed."""

    kind: ChangeKind
    document: dict[str, Any]
    document_id: str | None = None


@dataclass(frozen=True)
class ChangeNotification:
    """An ordered batch of document changes delivered in one callback."""

    changes: tuple[DocumentChange, ...] = field(default_factory=tuple)

    def added(self) -> list[DocumentChange]:
        return [c for c in self.changes if c.kind is ChangeKind.ADDED]


SnapshotCallback = Callable[[ChangeNotification], None]
ErrorCallback = Callable[[Exception], None]


@runtime_checkable
class FeedRegistration(Protocol):
    """Handle of one live query. ``remove()`` must be idempotent."""

    def remove(self) -> None: ...


@runtime_checkable
class FeedClient(Protocol):
    """Abstract interface for a live document-change feed.

    Callbacks may be invoked from any thread. A client must deliver changes
    in the order the database reports them.
    """

    def subscribe(
        self,
        collection: str,
        field: str,
        greater_than: Any,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> FeedRegistration:
        """Open a live query for documents with ``field > greater_than``."""
        ...

    def fetch_document(self, collection: str, document_id: str) -> dict[str, Any] | None:
        """Read one document body by id, or None when it does not exist."""
        ...
