"""Persistent store for auth cookie tokens (auth_tokens table)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campus_auth.models.auth_token import AuthToken

logger = logging.getLogger(__name__)


def to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, timezone.utc)


class AuthTokenStore:
    """Every public method runs in its own transaction; writes are committed on return."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def insert(
        self,
        *,
        user_id: int,
        token_hash: str,
        device_hash: str,
        ip_hash: str,
        expires_at: float,
        now: float,
        device_limit: int = 0,
    ) -> list[str]:
        """
        Insert a new active token and return hashes of rows revoked to make room:
        any active row of the same user on the same device, then the oldest rows
        beyond device_limit (0 = unlimited). Insert and revokes commit together.
        """
        now_dt = to_datetime(now)
        async with self._session_maker() as session:
            async with session.begin():
                r = await session.execute(
                    select(AuthToken.id, AuthToken.token_hash, AuthToken.device_hash)
                    .where(
                        AuthToken.user_id == user_id,
                        AuthToken.is_revoked.is_(False),
                        AuthToken.expires_at > now_dt,
                    )
                    .order_by(AuthToken.id)
                )
                active = r.all()
                to_revoke = [row for row in active if row.device_hash == device_hash]
                others = [row for row in active if row.device_hash != device_hash]
                if device_limit > 0 and len(others) >= device_limit:
                    to_revoke.extend(others[: len(others) - device_limit + 1])
                if to_revoke:
                    await session.execute(
                        update(AuthToken)
                        .where(AuthToken.id.in_([row.id for row in to_revoke]))
                        .values(is_revoked=True)
                        .execution_options(synchronize_session=False)
                    )
                session.add(
                    AuthToken(
                        user_id=user_id,
                        token_hash=token_hash,
                        device_hash=device_hash,
                        ip_hash=ip_hash,
                        expires_at=to_datetime(expires_at),
                        last_used_at=now_dt,
                        is_revoked=False,
                    )
                )
        if to_revoke:
            logger.info("Revoked %d prior auth token(s) for user %s on issue", len(to_revoke), user_id)
        return [row.token_hash for row in to_revoke]

    async def find_active(self, token_hash: str, now: float) -> AuthToken | None:
        """Return the active row for token_hash and stamp last_used_at, or None."""
        now_dt = to_datetime(now)
        async with self._session_maker() as session:
            async with session.begin():
                r = await session.execute(
                    select(AuthToken).where(
                        AuthToken.token_hash == token_hash,
                        AuthToken.is_revoked.is_(False),
                        AuthToken.expires_at > now_dt,
                    )
                )
                row = r.scalar_one_or_none()
                if row is not None:
                    row.last_used_at = now_dt
        return row

    async def revoke(self, token_hash: str) -> bool:
        """Conditionally revoke one token; True only for the caller that flipped it."""
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(AuthToken)
                    .where(AuthToken.token_hash == token_hash, AuthToken.is_revoked.is_(False))
                    .values(is_revoked=True)
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1

    async def revoke_all_for_user(self, user_id: int) -> list[str]:
        """Revoke every non-revoked token of the user; return their hashes."""
        async with self._session_maker() as session:
            async with session.begin():
                r = await session.execute(
                    select(AuthToken.token_hash).where(
                        AuthToken.user_id == user_id,
                        AuthToken.is_revoked.is_(False),
                    )
                )
                hashes = list(r.scalars().all())
                if hashes:
                    await session.execute(
                        update(AuthToken)
                        .where(AuthToken.token_hash.in_(hashes), AuthToken.is_revoked.is_(False))
                        .values(is_revoked=True)
                        .execution_options(synchronize_session=False)
                    )
        return hashes

    async def delete_expired(self, now: float) -> int:
        """Delete revoked or expired rows."""
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    delete(AuthToken)
                    .where(or_(AuthToken.is_revoked.is_(True), AuthToken.expires_at < to_datetime(now)))
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount or 0

    async def count_active(self, user_id: int, now: float) -> int:
        async with self._session_maker() as session:
            r = await session.execute(
                select(AuthToken.id).where(
                    AuthToken.user_id == user_id,
                    AuthToken.is_revoked.is_(False),
                    AuthToken.expires_at > to_datetime(now),
                )
            )
            return len(r.all())
