"""Password hashing and refresh token generation."""

from campus_auth.core.auth import create_refresh_token, hash_password, verify_password


def test_password_hash_round_trip():
    hashed = hash_password("password123")
    assert hashed != "password123"
    assert verify_password("password123", hashed)
    assert not verify_password("password124", hashed)


def test_refresh_tokens_are_unique():
    assert create_refresh_token() != create_refresh_token()
