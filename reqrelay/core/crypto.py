"""AES-GCM encryption of provider API keys stored in Redis or sent by the browser."""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_LENGTH = 12


class EncryptionError(Exception):
    """Raised when encryption or decryption fails."""


def _b64encode(data: bytes) -> str:
    # URL-safe, unpadded: same token format the browser produces
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(token: str) -> bytes:
    padded = token + "=" * (-len(token) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as e:
        raise EncryptionError("Encrypted token is not valid base64") from e


@dataclass(frozen=True)
class ApiKeyCipher:
    key: bytes

    @classmethod
    def from_passphrase(cls, passphrase: str) -> "ApiKeyCipher":
        if not passphrase:
            raise EncryptionError("Encryption key is empty")
        return cls(hashlib.sha256(passphrase.encode("utf-8")).digest())

    def encrypt(self, text: str) -> str:
        if not text:
            return ""
        nonce = os.urandom(NONCE_LENGTH)
        ciphertext = AESGCM(self.key).encrypt(nonce, text.encode("utf-8"), associated_data=None)
        return _b64encode(nonce + ciphertext)

    def decrypt(self, token: str) -> str:
        if not token:
            return ""
        payload = _b64decode(token)
        if len(payload) <= NONCE_LENGTH:
            raise EncryptionError("Encrypted payload is too short")
        nonce, ciphertext = payload[:NONCE_LENGTH], payload[NONCE_LENGTH:]
        try:
            plain = AESGCM(self.key).decrypt(nonce, ciphertext, associated_data=None)
        except InvalidTag as e:
            raise EncryptionError("API key could not be decrypted") from e
        return plain.decode("utf-8")


def cipher_from_key(passphrase: str) -> ApiKeyCipher | None:
    """None when no key is configured; API keys are then used as given."""
    return ApiKeyCipher.from_passphrase(passphrase) if passphrase else None
