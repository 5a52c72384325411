"""Auth: cookie login/logout/me/session, bearer token issue/refresh, revoke-all."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from campus_auth.api.deps import (
    get_bearer_user_id,
    get_client_context,
    get_cookie_manager,
    get_cookie_user,
    get_rate_limiter,
    get_token_manager,
    require_auth_cookie,
    require_csrf,
)
from campus_auth.core.auth import verify_password
from campus_auth.core.exceptions import ExpiredCredential, InvalidRefreshToken, TransportError
from campus_auth.core.fingerprint import ClientContext
from campus_auth.core.rate_limit import RateLimiter, auth_fail_key
from campus_auth.db.session import get_db
from campus_auth.models.user import User
from campus_auth.schemas.auth import (
    CookiePayload,
    LoginBody,
    LoginResponse,
    RefreshBody,
    RevokeAllResponse,
    SessionOut,
    TokenLoginBody,
    TokenResponse,
    UserOut,
)
from campus_auth.services.cookie_manager import CookieManager
from campus_auth.services.token_manager import IssuedTokens, TokenManager

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


async def _authenticate(
    session: AsyncSession,
    limiter: RateLimiter,
    ctx: ClientContext,
    email: str,
    password: str,
) -> User:
    """Check credentials behind the per-IP failure limit. Raises 429 or 401."""
    ip = ctx.ip or "unknown"
    fail_key = auth_fail_key(ip)
    if await limiter.limited(fail_key, limiter.max_attempts, limiter.window_seconds):
        raise HTTPException(
            status_code=429,
            detail="Too many failed attempts. Try again later.",
            headers=await limiter.headers(fail_key, limiter.max_attempts, limiter.window_seconds),
        )
    email = (email or "").strip().lower()
    user = None
    if email and password:
        r = await session.execute(select(User).where(User.email == email))
        user = r.scalar_one_or_none()
    if not user or not user.password_hash or not verify_password(password, user.password_hash):
        await limiter.hit(ip)
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return user


def _token_response(issued: IssuedTokens) -> TokenResponse:
    return TokenResponse(
        access_token=issued.access_token,
        refresh_token=issued.refresh_token,
        expires_in=issued.access_expires_in,
        refresh_expires_at=issued.refresh_expires_at,
    )


@router.post(
    "/login",
    response_model=LoginResponse,
    summary="Login with email and password; sets the auth cookie",
    responses={
        400: {"description": "HTTPS required"},
        401: {"description": "Invalid email or password"},
        429: {"description": "Too many failed attempts"},
    },
)
async def login(
    response: Response,
    session: Annotated[AsyncSession, Depends(get_db)],
    manager: Annotated[CookieManager, Depends(get_cookie_manager)],
    limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
    ctx: Annotated[ClientContext, Depends(get_client_context)],
    body: LoginBody,
) -> LoginResponse:
    user = await _authenticate(session, limiter, ctx, body.email, body.password)
    try:
        payload = await manager.issue_auth_cookie(user.id, ctx, response)
    except TransportError as e:
        logger.warning("Login over plain HTTP refused for user %s", user.id)
        raise HTTPException(status_code=400, detail="HTTPS required") from e
    return LoginResponse(
        user=UserOut(id=user.id, email=user.email),
        csrf=payload.csrf,
        expires_at=payload.expires_at,
    )


@router.post(
    "/logout",
    status_code=204,
    summary="Revoke the auth cookie session and clear the cookie",
    dependencies=[Depends(require_csrf)],
    responses={403: {"description": "CSRF token missing or invalid"}},
)
async def logout(
    response: Response,
    manager: Annotated[CookieManager, Depends(get_cookie_manager)],
    ctx: Annotated[ClientContext, Depends(get_client_context)],
) -> None:
    await manager.logout(ctx, response)


@router.get("/me", response_model=UserOut, summary="Get the cookie-authenticated user")
async def me(user: Annotated[User, Depends(get_cookie_user)]) -> UserOut:
    return UserOut(id=user.id, email=user.email)


@router.get("/session", response_model=SessionOut, summary="Current auth cookie session")
async def current_session(payload: Annotated[CookiePayload, Depends(require_auth_cookie)]) -> SessionOut:
    return SessionOut(
        uid=payload.uid,
        issued_at=payload.issued_at,
        expires_at=payload.expires_at,
        csrf=payload.csrf,
    )


@router.post(
    "/token",
    response_model=TokenResponse,
    summary="Login with email and password; returns bearer access and refresh tokens",
    responses={
        401: {"description": "Invalid email or password"},
        429: {"description": "Too many failed attempts"},
    },
)
async def token_login(
    session: Annotated[AsyncSession, Depends(get_db)],
    tokens: Annotated[TokenManager, Depends(get_token_manager)],
    limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
    ctx: Annotated[ClientContext, Depends(get_client_context)],
    body: TokenLoginBody,
) -> TokenResponse:
    user = await _authenticate(session, limiter, ctx, body.email, body.password)
    issued = await tokens.issue_tokens(user.id, body.device_id, ctx.ip or None, ctx.user_agent or None)
    return _token_response(issued)


@router.post(
    "/refresh",
    response_model=TokenResponse,
    summary="Exchange refresh token for new access and refresh tokens",
    responses={
        401: {"description": "Refresh token required, invalid or expired"},
    },
)
async def refresh_tokens(
    tokens: Annotated[TokenManager, Depends(get_token_manager)],
    ctx: Annotated[ClientContext, Depends(get_client_context)],
    body: RefreshBody,
) -> TokenResponse:
    """Exchange refresh_token for new access_token and refresh_token (rotation)."""
    if not body.refresh_token or not body.refresh_token.strip():
        raise HTTPException(status_code=401, detail="Refresh token required")
    try:
        issued = await tokens.refresh(body.refresh_token, body.device_id, ctx.ip or None, ctx.user_agent or None)
    except (InvalidRefreshToken, ExpiredCredential):
        raise HTTPException(status_code=401, detail="Invalid or expired refresh token")
    return _token_response(issued)


@router.post(
    "/revoke-all",
    response_model=RevokeAllResponse,
    summary="Revoke every refresh token and auth cookie session of the caller",
)
async def revoke_all(
    user_id: Annotated[int, Depends(get_bearer_user_id)],
    tokens: Annotated[TokenManager, Depends(get_token_manager)],
    manager: Annotated[CookieManager, Depends(get_cookie_manager)],
) -> RevokeAllResponse:
    refresh_count = await tokens.revoke_all_for_user(user_id)
    cookie_count = await manager.revoke_all(user_id)
    return RevokeAllResponse(refresh_tokens=refresh_count, auth_cookies=cookie_count)
