"""Fernet sealing of originating feed documents.

Each stored reading can keep the document it was mapped from, for audit and
reprocessing. Those documents are sealed before they reach SQLite; the
reading columns themselves stay in clear so they can be indexed and queried.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when a document cannot be sealed or opened."""


class DocumentCipher:
    """Seal and open JSON documents with a Fernet key.

    Usage::

        cipher = DocumentCipher(key=DocumentCipher.generate_key())
        token = cipher.seal({"sgv": "120", "date": 1700000000000})
        cipher.open(token)  # {"sgv": "120", "date": 1700000000000}
    """

    def __init__(self, key: str) -> None:
        """
        Raises:
            EncryptionError: If the key is empty or not a valid Fernet key.
        """
        if not key or not key.strip():
            raise EncryptionError("Encryption key must not be empty")
        try:
            self._fernet = Fernet(key.strip().encode("utf-8"))
        except (ValueError, TypeError) as exc:
            raise EncryptionError(f"Invalid encryption key: {exc}") from exc

    def seal(self, document: Mapping[str, Any] | None) -> str | None:
        """Serialise and encrypt a document. ``None`` stays ``None``.

        Values the JSON encoder does not know (timestamps from the feed
        client, for instance) are stored as their string form.
        """
        if document is None:
            return None
        try:
            payload = json.dumps(dict(document), separators=(",", ":"), default=str)
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Document is not serialisable: {exc}") from exc
        return self._fernet.encrypt(payload.encode("utf-8")).decode("utf-8")

    def open(self, token: str | None) -> dict[str, Any] | None:
        if not token:
            return None
        try:
            plaintext = self._fernet.decrypt(token.encode("utf-8"))
        except InvalidToken as exc:
            raise EncryptionError("Decryption failed: invalid token or wrong key") from exc
        return json.loads(plaintext)

    @staticmethod
    def generate_key() -> str:
        """Return a new URL-safe base64 Fernet key."""
        return Fernet.generate_key().decode("utf-8")
