"""AES-256-GCM cookie encryption and HMAC-SHA256 helpers."""

import base64
import binascii
import hashlib
import hmac
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from campus_auth.core.exceptions import ConfigurationError, FormatError, IntegrityError

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError, ValueError) as e:
        raise FormatError("Invalid base64url data") from e


class CookieCipher:
    """Single fixed AEAD construction: blob = nonce || tag || ciphertext, base64url encoded."""

    def __init__(self, key: bytes):
        if not isinstance(key, bytes) or len(key) != KEY_SIZE:
            raise ConfigurationError(f"Encryption key must be exactly {KEY_SIZE} bytes for AES-256-GCM")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return b64url_encode(nonce + tag + ciphertext)

    def decrypt(self, blob: str) -> str:
        data = b64url_decode(blob)
        if len(data) < NONCE_SIZE + TAG_SIZE:
            raise FormatError("Ciphertext blob too short")
        nonce = data[:NONCE_SIZE]
        tag = data[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
        ciphertext = data[NONCE_SIZE + TAG_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise IntegrityError("Authentication tag mismatch") from e
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FormatError("Plaintext is not UTF-8") from e


def sign(data: str, secret: str) -> str:
    """Hex HMAC-SHA256 of data."""
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(data: str, secret: str, signature: str) -> bool:
    # Bytes compare: the signature is client input and may hold non-ASCII characters
    return hmac.compare_digest(sign(data, secret).encode("ascii"), signature.encode("utf-8", "surrogateescape"))


def hash_token(token: str) -> str:
    """SHA256 hex of a raw token secret, for storage and cache keys."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def load_encryption_key(encryption_key: str, secret_key: str, production: bool) -> bytes:
    """
    Decode ENCRYPTION_KEY (urlsafe base64 of 32 bytes).
    Outside production an empty key is derived as sha256(SECRET_KEY).
    """
    if not encryption_key.strip():
        if production:
            raise ConfigurationError("ENCRYPTION_KEY is required in production")
        if not secret_key:
            raise ConfigurationError("SECRET_KEY is required to derive the encryption key")
        return hashlib.sha256(secret_key.encode("utf-8")).digest()
    try:
        key = b64url_decode(encryption_key.strip())
    except FormatError as e:
        raise ConfigurationError("ENCRYPTION_KEY is not valid urlsafe base64") from e
    if len(key) != KEY_SIZE:
        raise ConfigurationError(f"ENCRYPTION_KEY must decode to {KEY_SIZE} bytes, got {len(key)}")
    return key
