"""
Bearer credentials for API clients: short-lived JWT access tokens plus
opaque refresh tokens stored as sha256 digests (refresh_tokens table).
Refreshing revokes the presented token and issues a new pair.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from jose import JWTError, jwt
from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campus_auth.core.auth import create_refresh_token
from campus_auth.core.exceptions import ExpiredCredential, InvalidAccessToken, InvalidRefreshToken
from campus_auth.models.refresh_token import RefreshToken
from campus_auth.services.crypto import hash_token
from campus_auth.services.token_store import to_datetime

logger = logging.getLogger(__name__)

TOKEN_TYPE_ACCESS = "access"


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    access_expires_in: int
    refresh_token: str
    refresh_expires_at: int


def _as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes for timezone-aware columns
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class TokenManager:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        secret_key: str,
        algorithm: str = "HS256",
        access_ttl: int = 900,
        refresh_ttl: int = 60 * 60 * 24 * 30,
        clock: Callable[[], float] = time.time,
    ):
        self._session_maker = session_maker
        self._secret_key = secret_key
        self._algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    def create_access_token(self, user_id: int) -> str:
        now = int(self._clock())
        payload = {"sub": str(user_id), "iat": now, "exp": now + self.access_ttl, "type": TOKEN_TYPE_ACCESS}
        result = jwt.encode(payload, self._secret_key, algorithm=self._algorithm)
        return result if isinstance(result, str) else result.decode("utf-8")

    def validate_access_token(self, token: str) -> int:
        """Return the user id of a valid access token; raise InvalidAccessToken otherwise."""
        try:
            # exp is checked against our clock so simulated time applies
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"verify_exp": False},
            )
        except JWTError as e:
            raise InvalidAccessToken("Invalid access token") from e
        if payload.get("type") != TOKEN_TYPE_ACCESS:
            raise InvalidAccessToken("Not an access token")
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or exp <= self._clock():
            raise InvalidAccessToken("Access token expired")
        try:
            return int(payload["sub"])
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidAccessToken("Invalid subject") from e

    async def issue_tokens(
        self,
        user_id: int,
        device_id: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedTokens:
        refresh_plain = create_refresh_token()
        refresh_expires_at = int(self._clock()) + self.refresh_ttl
        async with self._session_maker() as session:
            async with session.begin():
                session.add(
                    RefreshToken(
                        user_id=user_id,
                        device_id=device_id,
                        token_hash=hash_token(refresh_plain),
                        expires_at=to_datetime(refresh_expires_at),
                        revoked=False,
                        ip=ip,
                        user_agent=(user_agent or "")[:255] or None,
                    )
                )
        logger.info("Issued refresh token for user %s (device=%s)", user_id, device_id)
        return IssuedTokens(
            access_token=self.create_access_token(user_id),
            access_expires_in=self.access_ttl,
            refresh_token=refresh_plain,
            refresh_expires_at=refresh_expires_at,
        )

    async def refresh(
        self,
        refresh_token: str,
        device_id: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedTokens:
        """Exchange a refresh token for a new pair; the presented token is revoked."""
        token_hash = hash_token(refresh_token.strip())
        async with self._session_maker() as session:
            async with session.begin():
                query = select(RefreshToken).where(
                    RefreshToken.token_hash == token_hash,
                    RefreshToken.revoked.is_(False),
                )
                if device_id is not None:
                    query = query.where(RefreshToken.device_id == device_id)
                row = (await session.execute(query)).scalar_one_or_none()
                if row is None:
                    raise InvalidRefreshToken("Invalid refresh token")
                if _as_utc(row.expires_at) <= to_datetime(self._clock()):
                    raise ExpiredCredential("Refresh token expired")
                result = await session.execute(
                    update(RefreshToken)
                    .where(RefreshToken.id == row.id, RefreshToken.revoked.is_(False))
                    .values(revoked=True)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise InvalidRefreshToken("Refresh token already used")
                user_id = row.user_id
        logger.info("Refresh token used and revoked for user %s", user_id)
        return await self.issue_tokens(user_id, device_id, ip, user_agent)

    async def _revoke_where(self, *conditions) -> int:
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(RefreshToken)
                    .where(RefreshToken.revoked.is_(False), *conditions)
                    .values(revoked=True)
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount or 0

    async def revoke_all_for_user(self, user_id: int) -> int:
        count = await self._revoke_where(RefreshToken.user_id == user_id)
        logger.info("Revoked %d refresh token(s) for user %s", count, user_id)
        return count

    async def revoke_device(self, user_id: int, device_id: str) -> int:
        count = await self._revoke_where(RefreshToken.user_id == user_id, RefreshToken.device_id == device_id)
        logger.info("Revoked %d refresh token(s) for user %s device %s", count, user_id, device_id)
        return count

    async def revoke_by_id(self, token_id: int) -> bool:
        return await self._revoke_where(RefreshToken.id == token_id) == 1

    async def cleanup_expired(self) -> int:
        """Delete revoked or expired refresh tokens."""
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    delete(RefreshToken)
                    .where(or_(RefreshToken.revoked.is_(True), RefreshToken.expires_at < to_datetime(self._clock())))
                    .execution_options(synchronize_session=False)
                )
        deleted = result.rowcount or 0
        if deleted:
            logger.info("Cleaned up %d expired/revoked refresh token(s)", deleted)
        return deleted
