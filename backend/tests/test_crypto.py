"""AES-256-GCM cookie cipher, HMAC signing and key loading."""

import base64
import hashlib

import pytest

from campus_auth.core.exceptions import ConfigurationError, FormatError, IntegrityError
from campus_auth.services.crypto import (
    NONCE_SIZE,
    TAG_SIZE,
    CookieCipher,
    b64url_decode,
    b64url_encode,
    hash_token,
    load_encryption_key,
    sign,
    verify_signature,
)

KEY = bytes(range(32))


def test_encrypt_decrypt_round_trip():
    cipher = CookieCipher(KEY)
    blob = cipher.encrypt('{"uid": 7}')
    assert "=" not in blob
    assert cipher.decrypt(blob) == '{"uid": 7}'


def test_fresh_nonce_per_encryption():
    cipher = CookieCipher(KEY)
    first, second = cipher.encrypt("same"), cipher.encrypt("same")
    assert first != second
    assert b64url_decode(first)[:NONCE_SIZE] != b64url_decode(second)[:NONCE_SIZE]


def test_blob_layout_nonce_tag_ciphertext():
    blob = b64url_decode(CookieCipher(KEY).encrypt("abcd"))
    # GCM ciphertext has the plaintext length
    assert len(blob) == NONCE_SIZE + TAG_SIZE + 4


def test_tampered_tag_fails_authentication():
    cipher = CookieCipher(KEY)
    raw = bytearray(b64url_decode(cipher.encrypt("payload")))
    raw[NONCE_SIZE] ^= 0x80
    with pytest.raises(IntegrityError):
        cipher.decrypt(b64url_encode(bytes(raw)))


def test_wrong_key_fails_authentication():
    blob = CookieCipher(KEY).encrypt("payload")
    with pytest.raises(IntegrityError):
        CookieCipher(bytes(32)).decrypt(blob)


def test_short_blob_is_format_error():
    with pytest.raises(FormatError):
        CookieCipher(KEY).decrypt(b64url_encode(b"x" * 10))


def test_invalid_base64_is_format_error():
    with pytest.raises(FormatError):
        b64url_decode("abcde")


@pytest.mark.parametrize("key", [b"", b"short", bytes(16), bytes(33)])
def test_key_must_be_32_bytes(key):
    with pytest.raises(ConfigurationError):
        CookieCipher(key)


def test_sign_and_verify():
    signature = sign("data", "secret")
    assert len(signature) == 64
    assert verify_signature("data", "secret", signature)
    assert not verify_signature("data!", "secret", signature)
    assert not verify_signature("data", "other", signature)


def test_verify_signature_with_non_ascii_input_is_false():
    assert not verify_signature("data", "secret", "\u00e9\u00e9")
    assert not verify_signature("data", "secret", "\u00e9" * 64)
    assert not verify_signature("data", "secret", "\udcff")


def test_hash_token_is_sha256_hex():
    assert hash_token("abc") == hashlib.sha256(b"abc").hexdigest()


def test_load_encryption_key_decodes_configured_key():
    encoded = base64.urlsafe_b64encode(KEY).decode()
    assert load_encryption_key(encoded, "s" * 40, production=True) == KEY


def test_load_encryption_key_derives_outside_production():
    assert load_encryption_key("", "s" * 40, production=False) == hashlib.sha256(b"s" * 40).digest()


def test_load_encryption_key_required_in_production():
    with pytest.raises(ConfigurationError):
        load_encryption_key("", "s" * 40, production=True)


def test_load_encryption_key_rejects_wrong_length():
    with pytest.raises(ConfigurationError):
        load_encryption_key(base64.urlsafe_b64encode(bytes(16)).decode(), "s" * 40, production=False)
