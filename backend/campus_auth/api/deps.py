"""FastAPI dependencies: auth services from app state, client context, request guards."""

import hmac
import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from campus_auth.config import settings
from campus_auth.core.exceptions import AuthError, InvalidAccessToken, LoginRequired
from campus_auth.core.fingerprint import ClientContext
from campus_auth.core.rate_limit import RateLimiter
from campus_auth.db.session import get_db
from campus_auth.models.user import User
from campus_auth.schemas.auth import CookiePayload
from campus_auth.services.cookie_manager import CookieManager
from campus_auth.services.token_manager import TokenManager

logger = logging.getLogger(__name__)

CSRF_HEADER = "X-CSRF-Token"


def get_cookie_manager(request: Request) -> CookieManager:
    return request.app.state.cookie_manager


def get_token_manager(request: Request) -> TokenManager:
    return request.app.state.token_manager


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_client_context(
    request: Request,
    manager: Annotated[CookieManager, Depends(get_cookie_manager)],
) -> ClientContext:
    return ClientContext.from_request(request, manager.cookie_name, settings.trust_proxy_headers)


async def require_auth_cookie(
    request: Request,
    response: Response,
    manager: Annotated[CookieManager, Depends(get_cookie_manager)],
    ctx: Annotated[ClientContext, Depends(get_client_context)],
) -> CookiePayload:
    """Request guard: a valid auth cookie or a redirect to the login page (route body never runs)."""
    payload = await manager.validate_auth_cookie(ctx, response)
    if payload is None:
        raise LoginRequired("Authentication required")
    request.state.auth_user_id = payload.uid
    return payload


async def get_cookie_user(
    session: Annotated[AsyncSession, Depends(get_db)],
    payload: Annotated[CookiePayload, Depends(require_auth_cookie)],
) -> User:
    r = await session.execute(select(User).where(User.id == payload.uid))
    user = r.scalar_one_or_none()
    if not user:
        raise LoginRequired("User not found")
    return user


async def get_bearer_user_id(
    request: Request,
    tokens: Annotated[TokenManager, Depends(get_token_manager)],
) -> int:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    token = auth_header[7:].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return tokens.validate_access_token(token)
    except InvalidAccessToken:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


async def require_csrf(
    request: Request,
    manager: Annotated[CookieManager, Depends(get_cookie_manager)],
    ctx: Annotated[ClientContext, Depends(get_client_context)],
) -> None:
    """
    State-changing cookie requests must echo the session's csrf nonce in X-CSRF-Token.
    Requests without a readable cookie pass unchecked.
    """
    if not ctx.cookie:
        return
    try:
        payload = manager.decode_cookie(ctx.cookie)
    except AuthError:
        return
    supplied = request.headers.get(CSRF_HEADER, "")
    if not hmac.compare_digest(payload.csrf.encode("ascii"), supplied.encode("utf-8", "surrogateescape")):
        logger.warning("CSRF check failed for user %s on %s", payload.uid, request.url.path)
        raise HTTPException(status_code=403, detail="CSRF token missing or invalid")
