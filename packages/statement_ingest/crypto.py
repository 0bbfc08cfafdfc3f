"""Authenticated symmetric encryption for secrets at rest.

``KeyCodec`` wraps AES-256-GCM from ``cryptography``. Every call to
:meth:`KeyCodec.encrypt` draws a fresh 16-byte IV and produces a self-contained
text envelope::

    base64(iv) ":" base64(tag) ":" base64(ciphertext)

The same codec class protects tenant material under the root KEK, upload
passwords under their own key, and tenant data under a tenant DEK. Keys are
passed in explicitly; nothing here reads the environment.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import IntegrityError, KeyMaterialError, MalformedEnvelopeError

KEY_BYTES: int = 32
IV_BYTES: int = 16
TAG_BYTES: int = 16
ENVELOPE_SEPARATOR: str = ":"


def generate_key_hex() -> str:
    """Return a fresh random 256-bit key encoded as 64 lowercase hex chars."""

    return os.urandom(KEY_BYTES).hex()


def parse_hex_key(hex_key: str | None, *, name: str = "key") -> bytes:
    """Decode hex key material, failing fast on anything but 32 bytes."""

    if hex_key is None or not hex_key.strip():
        raise KeyMaterialError(f"{name} is not set")
    try:
        raw = bytes.fromhex(hex_key.strip())
    except ValueError as e:
        raise KeyMaterialError(f"{name} is not valid hex") from e
    if len(raw) != KEY_BYTES:
        raise KeyMaterialError(
            f"{name} must be {KEY_BYTES} bytes ({KEY_BYTES * 2} hex chars), got {len(raw)} bytes"
        )
    return raw


def _b64decode(segment: str) -> bytes:
    try:
        return base64.b64decode(segment.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise MalformedEnvelopeError("Envelope segment is not valid base64") from e


class KeyCodec:
    """Encrypt/decrypt text envelopes with a single 256-bit key."""

    __slots__ = ("_aead", "_key")

    def __init__(self, key: bytes) -> None:
        if not isinstance(key, bytes | bytearray) or len(key) != KEY_BYTES:
            raise KeyMaterialError(f"KeyCodec requires exactly {KEY_BYTES} bytes of key material")
        self._key = bytes(key)
        self._aead = AESGCM(self._key)

    @classmethod
    def from_hex(cls, hex_key: str | None, *, name: str = "key") -> KeyCodec:
        return cls(parse_hex_key(hex_key, name=name))

    def __repr__(self) -> str:
        return "KeyCodec(<redacted>)"

    def encrypt(self, plaintext: str | bytes) -> str:
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else bytes(plaintext)
        iv = os.urandom(IV_BYTES)
        # AESGCM appends the tag to the ciphertext.
        sealed = self._aead.encrypt(iv, data, None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return ENVELOPE_SEPARATOR.join(
            base64.b64encode(part).decode("ascii") for part in (iv, tag, ciphertext)
        )

    def decrypt_bytes(self, envelope: str) -> bytes:
        if not isinstance(envelope, str):
            raise MalformedEnvelopeError("Envelope must be a string")
        parts = envelope.split(ENVELOPE_SEPARATOR)
        if len(parts) != 3:
            raise MalformedEnvelopeError(
                f"Invalid encrypted data format: expected 3 segments, got {len(parts)}"
            )
        iv, tag, ciphertext = (_b64decode(p) for p in parts)
        if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
            raise MalformedEnvelopeError("Envelope IV or tag has the wrong length")
        try:
            return self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise IntegrityError("Authentication tag verification failed") from e

    def decrypt(self, envelope: str) -> str:
        raw = self.decrypt_bytes(envelope)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise IntegrityError("Decrypted payload is not valid UTF-8") from e

    def keyed_hash(self, data: str) -> str:
        """HMAC-SHA256 of ``data`` under this key, as lowercase hex."""

        return hmac.new(self._key, data.encode("utf-8"), hashlib.sha256).hexdigest()


__all__ = [
    "ENVELOPE_SEPARATOR",
    "IntegrityError",
    "KeyCodec",
    "KeyMaterialError",
    "MalformedEnvelopeError",
    "generate_key_hex",
    "parse_hex_key",
]
