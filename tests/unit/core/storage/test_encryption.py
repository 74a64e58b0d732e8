"""Tests for DocumentCipher (Fernet sealing of raw feed documents)."""

from __future__ import annotations

import pytest
from cryptography.fernet import Fernet

from bgsource.core.storage.encryption import DocumentCipher, EncryptionError


@pytest.fixture
def cipher() -> DocumentCipher:
    return DocumentCipher(Fernet.generate_key().decode())


class TestSealOpen:
    def test_document_round_trip(self, cipher: DocumentCipher):
        doc = {"date": 1700000000000, "sgv": "120", "direction": "Flat"}
        token = cipher.seal(doc)
        assert isinstance(token, str)
        assert not token.startswith("{")
        assert cipher.open(token) == doc

    def test_none_stays_none(self, cipher: DocumentCipher):
        assert cipher.seal(None) is None
        assert cipher.open(None) is None
        assert cipher.open("") is None

    def test_unknown_values_stored_as_text(self, cipher: DocumentCipher):
        class Stamp:
            def __str__(self) -> str:
                return "2023-11-14T22:13:20Z"

        assert cipher.open(cipher.seal({"sysTime": Stamp()})) == {"sysTime": "2023-11-14T22:13:20Z"}

    def test_generate_key_is_usable(self):
        DocumentCipher(DocumentCipher.generate_key())


class TestKeyValidation:
    def test_empty_key_raises(self):
        with pytest.raises(EncryptionError, match="must not be empty"):
            DocumentCipher("")

    def test_whitespace_key_raises(self):
        with pytest.raises(EncryptionError, match="must not be empty"):
            DocumentCipher("   ")

    def test_invalid_key_raises(self):
        with pytest.raises(EncryptionError, match="Invalid encryption key"):
            DocumentCipher("not-a-valid-fernet-key")


class TestCorruptData:
    def test_wrong_key_cannot_open(self, cipher: DocumentCipher):
        token = cipher.seal({"sgv": "100"})
        other = DocumentCipher(Fernet.generate_key().decode())
        with pytest.raises(EncryptionError, match="invalid token"):
            other.open(token)

    def test_tampered_token_raises(self, cipher: DocumentCipher):
        token = cipher.seal({"sgv": "100"})
        with pytest.raises(EncryptionError):
            cipher.open(token[:-5] + "XXXXX")
