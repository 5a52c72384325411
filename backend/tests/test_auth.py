"""Tests for auth endpoints: cookie login/logout/me/session, bearer token/refresh/revoke-all."""

import httpx
import pytest
from httpx import AsyncClient

from campus_auth.core.rate_limit import FIXED_WINDOW, LEAKY_BUCKET, SLIDING_WINDOW, TOKEN_BUCKET, RateLimiter
from tests.conftest import COOKIE_NAME

CREDENTIALS = {"email": "test@test.com", "password": "password123"}


def set_cookie_value(resp: httpx.Response, name: str = COOKIE_NAME) -> str | None:
    """Value of the Set-Cookie for name ('' when deleted, None when absent)."""
    value = None
    for header in resp.headers.get_list("set-cookie"):
        if header.startswith(f"{name}="):
            value = header.split(";", 1)[0][len(name) + 1:].strip('"')
    return value


async def send(client: AsyncClient, method: str, url: str, cookie: str | None = None, **kwargs) -> httpx.Response:
    """Request with an explicit auth cookie; the client's own jar is not used."""
    client.cookies.clear()
    headers = kwargs.pop("headers", {})
    if cookie:
        headers["Cookie"] = f"{COOKIE_NAME}={cookie}"
    resp = await client.request(method, url, headers=headers, **kwargs)
    client.cookies.clear()
    return resp


async def login_session(client: AsyncClient) -> tuple[str, str]:
    """Log in; return the auth cookie value and the csrf nonce."""
    resp = await send(client, "POST", "/api/v1/auth/login", json=CREDENTIALS)
    assert resp.status_code == 200
    return set_cookie_value(resp), resp.json()["csrf"]


async def login(client: AsyncClient) -> str:
    cookie, _ = await login_session(client)
    return cookie


@pytest.mark.asyncio
async def test_login_sets_secure_cookie(client: AsyncClient, test_user):
    resp = await send(client, "POST", "/api/v1/auth/login", json=CREDENTIALS)
    assert resp.status_code == 200
    data = resp.json()
    assert data["user"] == {"id": test_user.id, "email": "test@test.com"}
    assert len(data["csrf"]) == 32
    header = next(h for h in resp.headers.get_list("set-cookie") if h.startswith(f"{COOKIE_NAME}="))
    lowered = header.lower()
    for attribute in ("httponly", "secure", "samesite=strict", "path=/", "max-age=3600"):
        assert attribute in lowered
    assert resp.headers["cache-control"] == "no-store"


@pytest.mark.asyncio
async def test_me_with_cookie(client: AsyncClient, test_user):
    cookie = await login(client)
    resp = await send(client, "GET", "/api/v1/auth/me", cookie=cookie)
    assert resp.status_code == 200
    assert resp.json()["email"] == "test@test.com"


@pytest.mark.asyncio
async def test_me_without_cookie_redirects_to_login(client: AsyncClient):
    resp = await send(client, "GET", "/api/v1/auth/me")
    assert resp.status_code == 303
    assert resp.headers["location"] == "/login"


@pytest.mark.asyncio
async def test_tampered_cookie_redirects_and_clears(client: AsyncClient, test_user):
    cookie = await login(client)
    encrypted, signature = cookie.rsplit(".", 1)
    tampered = f"{encrypted}.{'0' * len(signature)}"
    resp = await send(client, "GET", "/api/v1/auth/session", cookie=tampered)
    assert resp.status_code == 303
    assert resp.headers["location"] == "/login"
    assert set_cookie_value(resp) == ""


@pytest.mark.asyncio
async def test_device_change_redirects(client: AsyncClient, test_user):
    cookie = await login(client)
    resp = await send(client, "GET", "/api/v1/auth/session", cookie=cookie, headers={"User-Agent": "curl/8.5.0"})
    assert resp.status_code == 303


@pytest.mark.asyncio
async def test_session_reports_payload(client: AsyncClient, test_user, clock):
    cookie = await login(client)
    resp = await send(client, "GET", "/api/v1/auth/session", cookie=cookie)
    assert resp.status_code == 200
    data = resp.json()
    assert data["uid"] == test_user.id
    assert data["issued_at"] == int(clock())
    assert data["expires_at"] == int(clock()) + 3600
    assert set_cookie_value(resp) is None


@pytest.mark.asyncio
async def test_session_rotates_after_interval(client: AsyncClient, test_user, clock):
    cookie = await login(client)
    clock.advance(901)
    resp = await send(client, "GET", "/api/v1/auth/session", cookie=cookie)
    assert resp.status_code == 200
    rotated = set_cookie_value(resp)
    assert rotated and rotated != cookie
    assert resp.json()["issued_at"] == int(clock())

    resp = await send(client, "GET", "/api/v1/auth/session", cookie=cookie)
    assert resp.status_code == 303
    resp = await send(client, "GET", "/api/v1/auth/session", cookie=rotated)
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_cookie_expires_after_lifetime(client: AsyncClient, test_user, clock):
    cookie = await login(client)
    clock.advance(3601)
    resp = await send(client, "GET", "/api/v1/auth/me", cookie=cookie)
    assert resp.status_code == 303


@pytest.mark.asyncio
async def test_login_wrong_password(client: AsyncClient, test_user):
    resp = await send(client, "POST", "/api/v1/auth/login", json={"email": "test@test.com", "password": "wrong"})
    assert resp.status_code == 401
    assert set_cookie_value(resp) is None


@pytest.mark.asyncio
async def test_login_failures_are_rate_limited(client: AsyncClient, test_user):
    for _ in range(5):
        resp = await send(client, "POST", "/api/v1/auth/login", json={"email": "test@test.com", "password": "wrong"})
        assert resp.status_code == 401
    resp = await send(client, "POST", "/api/v1/auth/login", json=CREDENTIALS)
    assert resp.status_code == 429
    assert resp.headers["x-ratelimit-remaining"] == "0"
    assert int(resp.headers["retry-after"]) > 0


@pytest.mark.asyncio
@pytest.mark.parametrize("algorithm", [SLIDING_WINDOW, FIXED_WINDOW, TOKEN_BUCKET, LEAKY_BUCKET])
async def test_login_rate_limited_under_every_algorithm(client: AsyncClient, test_user, cache, clock, algorithm):
    from campus_auth.main import app

    app.state.rate_limiter = RateLimiter(cache, max_attempts=5, window_seconds=300, algorithm=algorithm, clock=clock)
    for _ in range(5):
        resp = await send(client, "POST", "/api/v1/auth/login", json={"email": "test@test.com", "password": "wrong"})
        assert resp.status_code == 401
    for path in ("/api/v1/auth/login", "/api/v1/auth/token"):
        resp = await send(client, "POST", path, json=CREDENTIALS)
        assert resp.status_code == 429
        assert resp.headers["x-ratelimit-remaining"] == "0"
        assert int(resp.headers["retry-after"]) > 0


@pytest.mark.asyncio
async def test_rate_limit_window_expires(client: AsyncClient, test_user, clock):
    for _ in range(5):
        await send(client, "POST", "/api/v1/auth/login", json={"email": "test@test.com", "password": "wrong"})
    clock.advance(301)
    resp = await send(client, "POST", "/api/v1/auth/login", json=CREDENTIALS)
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_login_over_http_refused(client: AsyncClient, test_user):
    resp = await send(client, "POST", "http://test/api/v1/auth/login", json=CREDENTIALS)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "HTTPS required"
    assert set_cookie_value(resp) is None


@pytest.mark.asyncio
async def test_logout_revokes_session(client: AsyncClient, test_user):
    cookie, csrf = await login_session(client)
    resp = await send(client, "POST", "/api/v1/auth/logout", cookie=cookie, headers={"X-CSRF-Token": csrf})
    assert resp.status_code == 204
    assert set_cookie_value(resp) == ""
    resp = await send(client, "GET", "/api/v1/auth/me", cookie=cookie)
    assert resp.status_code == 303


@pytest.mark.asyncio
async def test_logout_without_cookie(client: AsyncClient):
    resp = await send(client, "POST", "/api/v1/auth/logout")
    assert resp.status_code == 204


@pytest.mark.asyncio
async def test_logout_without_csrf_header_is_forbidden(client: AsyncClient, test_user):
    cookie = await login(client)
    resp = await send(client, "POST", "/api/v1/auth/logout", cookie=cookie)
    assert resp.status_code == 403
    assert set_cookie_value(resp) is None
    resp = await send(client, "GET", "/api/v1/auth/me", cookie=cookie)
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_logout_with_wrong_csrf_token_is_forbidden(client: AsyncClient, test_user):
    cookie, csrf = await login_session(client)
    wrong = ("0" if csrf[0] != "0" else "1") + csrf[1:]
    for token in (wrong, "\u00e9t\u00e9"):
        resp = await send(
            client, "POST", "/api/v1/auth/logout", cookie=cookie, headers={"X-CSRF-Token": token.encode("utf-8")}
        )
        assert resp.status_code == 403
    resp = await send(client, "GET", "/api/v1/auth/me", cookie=cookie)
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_non_ascii_cookie_redirects_to_login(client: AsyncClient):
    client.cookies.clear()
    # Header bytes reach the app decoded as latin-1
    raw_cookie = {"Cookie": f"{COOKIE_NAME}=abc.\xe9\xe9".encode("latin-1")}
    for path in ("/api/v1/auth/me", "/api/v1/auth/session"):
        resp = await client.get(path, headers=raw_cookie)
        assert resp.status_code == 303
        assert resp.headers["location"] == "/login"
    resp = await client.post("/api/v1/auth/logout", headers=raw_cookie)
    assert resp.status_code == 204


@pytest.mark.asyncio
async def test_token_refresh_and_revoke_all(client: AsyncClient, test_user):
    cookie = await login(client)
    resp = await send(client, "POST", "/api/v1/auth/token", json={**CREDENTIALS, "device_id": "phone"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["token_type"] == "bearer"
    assert data["expires_in"] == 900

    resp = await send(
        client,
        "POST",
        "/api/v1/auth/refresh",
        json={"refresh_token": data["refresh_token"], "device_id": "phone"},
    )
    assert resp.status_code == 200
    renewed = resp.json()
    assert renewed["refresh_token"] != data["refresh_token"]

    resp = await send(
        client,
        "POST",
        "/api/v1/auth/refresh",
        json={"refresh_token": data["refresh_token"], "device_id": "phone"},
    )
    assert resp.status_code == 401

    resp = await send(
        client,
        "POST",
        "/api/v1/auth/revoke-all",
        headers={"Authorization": f"Bearer {renewed['access_token']}"},
    )
    assert resp.status_code == 200
    assert resp.json() == {"refresh_tokens": 1, "auth_cookies": 1}

    resp = await send(client, "GET", "/api/v1/auth/me", cookie=cookie)
    assert resp.status_code == 303


@pytest.mark.asyncio
async def test_token_wrong_password(client: AsyncClient, test_user):
    resp = await send(client, "POST", "/api/v1/auth/token", json={"email": "test@test.com", "password": "nope"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_refresh_invalid_token(client: AsyncClient):
    resp = await send(client, "POST", "/api/v1/auth/refresh", json={"refresh_token": "invalid"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_revoke_all_requires_bearer(client: AsyncClient):
    resp = await send(client, "POST", "/api/v1/auth/revoke-all")
    assert resp.status_code == 401
    resp = await send(client, "POST", "/api/v1/auth/revoke-all", headers={"Authorization": "Bearer junk"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
