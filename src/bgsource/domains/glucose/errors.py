"""Error taxonomy for the glucose ingestion pipeline.

* ``MappingError`` and subclasses are per-document and never fatal.
* ``FeedError`` closes the subscription; restarting is the caller's call.
* ``StorageError`` means the batch was not committed.

Duplicate readings are not an error anywhere in the pipeline.
"""

from __future__ import annotations


class MappingError(Exception):
    """A feed document could not be turned into a glucose reading."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class MissingFieldError(MappingError):
    """A required field is absent, null or blank."""


class InvalidNumberError(MappingError):
    """A numeric field is unparsable, non-finite or out of range."""


class FeedError(Exception):
    """The change-feed subscription failed (network, auth, quota, ...)."""


class StorageError(Exception):
    """The backing store rejected a write or could not be reached."""
