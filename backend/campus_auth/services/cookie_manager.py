"""
Auth cookie lifecycle: issue, validate, rotate, destroy, logout, revoke-all.

Cookie value: base64url(AES-256-GCM(payload_json)) + "." + hex(HMAC-SHA256(encrypted, secret_key)).
The token secret inside the payload is stored server side only as a sha256 hash (auth_tokens);
a short-lived cache entry keyed by that hash lets validation skip the database.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import time
from typing import Callable

from starlette.responses import Response

from campus_auth.config import CookieSecuritySettings
from campus_auth.core.cache import CacheStore
from campus_auth.core.exceptions import (
    AuthError,
    DeviceMismatch,
    ExpiredCredential,
    FormatError,
    IntegrityError,
    IPMismatch,
    RevokedOrReplayed,
    TransportError,
)
from campus_auth.core.fingerprint import ClientContext, FingerprintGenerator
from campus_auth.core.rate_limit import RateLimiter
from campus_auth.schemas.auth import CookiePayload
from campus_auth.services.crypto import CookieCipher, hash_token, sign, verify_signature
from campus_auth.services.monitoring import EVENT_LOGIN, EVENT_LOGOUT, EVENT_REJECT, EVENT_ROTATE, EventTracker
from campus_auth.services.token_store import AuthTokenStore

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
CSRF_BYTES = 16


def _cache_key(token_hash: str) -> str:
    return f"auth_token:{token_hash}"


class CookieManager:
    def __init__(
        self,
        *,
        store: AuthTokenStore,
        cache: CacheStore,
        cipher: CookieCipher,
        fingerprints: FingerprintGenerator,
        rate_limiter: RateLimiter,
        tracker: EventTracker,
        config: CookieSecuritySettings,
        secret_key: str,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._cache = cache
        self._cipher = cipher
        self._fingerprints = fingerprints
        self._rate_limiter = rate_limiter
        self._tracker = tracker
        self.config = config
        self._secret_key = secret_key
        self._clock = clock

    @property
    def cookie_name(self) -> str:
        return self.config.cookie_name

    def encode_cookie(self, payload: CookiePayload) -> str:
        encrypted = self._cipher.encrypt(payload.to_json())
        return f"{encrypted}.{sign(encrypted, self._secret_key)}"

    def decode_cookie(self, value: str) -> CookiePayload:
        """Verify signature, decrypt and parse. Raises FormatError or IntegrityError."""
        encrypted, sep, signature = value.rpartition(".")
        if not sep or not encrypted or not signature:
            raise FormatError("Malformed cookie")
        if not verify_signature(encrypted, self._secret_key, signature):
            raise IntegrityError("Signature tampering detected")
        try:
            plaintext = self._cipher.decrypt(encrypted)
        except (IntegrityError, FormatError) as e:
            raise IntegrityError("Decryption failed") from e
        try:
            return CookiePayload.from_json(plaintext)
        except FormatError as e:
            raise FormatError("Malformed payload") from e

    async def issue_auth_cookie(self, user_id: int, ctx: ClientContext, response: Response) -> CookiePayload:
        """
        Persist a new token and set the auth cookie on response.
        Raises TransportError over plain HTTP; store errors propagate.
        """
        payload = await self._issue(user_id, ctx, response)
        self._tracker.track(EVENT_LOGIN, user_id)
        logger.info("Auth cookie issued for user %s", user_id)
        return payload

    async def _issue(self, user_id: int, ctx: ClientContext, response: Response) -> CookiePayload:
        self._require_https(ctx)

        token = secrets.token_hex(TOKEN_BYTES)
        issued_at = int(self._clock())
        payload = CookiePayload(
            uid=user_id,
            token=token,
            fingerprint=self._fingerprints.generate(ctx),
            issued_at=issued_at,
            expires_at=issued_at + self.config.lifetime,
            ip_hash=self._fingerprints.ip_hash(ctx),
            csrf=secrets.token_hex(CSRF_BYTES),
        )
        token_hash = hash_token(token)

        # Committed before the cookie referencing it is set
        displaced = await self._store.insert(
            user_id=user_id,
            token_hash=token_hash,
            device_hash=payload.fingerprint,
            ip_hash=payload.ip_hash,
            expires_at=payload.expires_at,
            now=issued_at,
            device_limit=self.config.multi_device_limit,
        )
        for old_hash in displaced:
            await self._forget(old_hash)

        self._set_cookie(response, self.encode_cookie(payload))
        await self._remember(token_hash, payload.expires_at)
        return payload

    async def validate_auth_cookie(self, ctx: ClientContext, response: Response) -> CookiePayload | None:
        """
        Return the authenticated payload, or None. Rejections never raise: they are logged,
        counted against the client IP, and the cookie is cleared on response.
        A due rotation sets a fresh cookie and the new payload is returned.
        """
        if not ctx.cookie:
            return None
        try:
            payload = await self._verify(ctx)
        except AuthError as e:
            await self._reject(str(e), ctx, response)
            return None

        try:
            rotated = await self.rotate_token(payload, ctx, response)
        except TransportError as e:
            logger.warning("Auth cookie rotation skipped for user %s: %s", payload.uid, e)
            rotated = None
        return rotated or payload

    async def _verify(self, ctx: ClientContext) -> CookiePayload:
        payload = self.decode_cookie(ctx.cookie or "")

        if payload.expires_at < self._clock():
            raise ExpiredCredential("Expired cookie")

        if self.config.enable_fingerprint and not hmac.compare_digest(
            payload.fingerprint, self._fingerprints.generate(ctx)
        ):
            raise DeviceMismatch("Device mismatch")

        if self.config.strict_ip_check and not hmac.compare_digest(
            payload.ip_hash, self._fingerprints.ip_hash(ctx)
        ):
            raise IPMismatch("IP mismatch")

        if not await self._token_is_active(hash_token(payload.token), payload.expires_at):
            raise RevokedOrReplayed("Replay or revoked token")
        return payload

    async def _token_is_active(self, token_hash: str, expires_at: int) -> bool:
        now = self._clock()
        try:
            cached = await self._cache.get(_cache_key(token_hash))
        except Exception as e:
            logger.warning("Auth cache read failed, falling back to database: %s", e)
            cached = None
        if isinstance(cached, (int, float)) and cached > now:
            return True

        row = await self._store.find_active(token_hash, now)
        if row is None:
            return False
        await self._remember(token_hash, expires_at)
        return True

    async def _reject(self, reason: str, ctx: ClientContext, response: Response) -> None:
        logger.warning("Auth cookie rejected: %s (ip=%s)", reason, ctx.ip or "unknown")
        await self._rate_limiter.hit(ctx.ip or "unknown")
        self._tracker.track(EVENT_REJECT, reason)
        self.destroy(response)

    async def rotate_token(
        self, payload: CookiePayload, ctx: ClientContext, response: Response
    ) -> CookiePayload | None:
        """
        Replace the token once rotation_interval has elapsed since issue.
        Returns the new payload, or None when not due or a concurrent request won the rotation.
        """
        interval = self.config.rotation_interval
        if not self.config.token_rotation or interval <= 0:
            return None
        if self._clock() - payload.issued_at < interval:
            return None

        self._require_https(ctx)
        token_hash = hash_token(payload.token)
        if not await self._store.revoke(token_hash):
            logger.info("Auth token for user %s already rotated by a concurrent request", payload.uid)
            return None
        await self._forget(token_hash)

        new_payload = await self._issue(payload.uid, ctx, response)
        self._tracker.track(EVENT_ROTATE, payload.uid)
        logger.info("Auth cookie rotated for user %s", payload.uid)
        return new_payload

    def destroy(self, response: Response) -> None:
        """Clear the cookie client side. Does not touch the database."""
        response.delete_cookie(
            self.config.cookie_name,
            path="/",
            secure=True,
            httponly=True,
            samesite="strict",
        )

    async def logout(self, ctx: ClientContext, response: Response) -> bool:
        """Revoke the presented token (when it verifies) and clear the cookie."""
        revoked = False
        payload = None
        if ctx.cookie:
            try:
                payload = self.decode_cookie(ctx.cookie)
            except AuthError as e:
                logger.info("Logout with unreadable auth cookie: %s", e)
        if payload is not None:
            token_hash = hash_token(payload.token)
            revoked = await self._store.revoke(token_hash)
            await self._forget(token_hash)
            self._tracker.track(EVENT_LOGOUT, payload.uid)
        self.destroy(response)
        return revoked

    async def revoke_all(self, user_id: int) -> int:
        """Revoke every cookie session of the user."""
        hashes = await self._store.revoke_all_for_user(user_id)
        for token_hash in hashes:
            await self._forget(token_hash)
        if hashes:
            logger.info("Revoked %d auth cookie session(s) for user %s", len(hashes), user_id)
        return len(hashes)

    async def cleanup_expired(self) -> int:
        """Delete revoked or expired cookie token rows."""
        return await self._store.delete_expired(self._clock())

    def _require_https(self, ctx: ClientContext) -> None:
        if self.config.require_https and not ctx.is_https:
            raise TransportError("Secure cookies require HTTPS")

    def _set_cookie(self, response: Response, value: str) -> None:
        response.set_cookie(
            self.config.cookie_name,
            value,
            max_age=self.config.lifetime,
            path="/",
            secure=True,
            httponly=True,
            samesite="strict",
        )

    async def _remember(self, token_hash: str, expires_at: int) -> None:
        """Best effort: cache the validated token until min(cache_ttl, remaining lifetime)."""
        ttl = min(self.config.cache_ttl, int(expires_at - self._clock()))
        if ttl <= 0:
            return
        try:
            await self._cache.set(_cache_key(token_hash), expires_at, ttl)
        except Exception as e:
            logger.warning("Auth cache write failed: %s", e)

    async def _forget(self, token_hash: str) -> None:
        try:
            await self._cache.delete(_cache_key(token_hash))
        except Exception as e:
            logger.warning("Auth cache delete failed: %s", e)
