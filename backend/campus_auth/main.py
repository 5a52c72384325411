import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campus_auth.api.v1 import auth

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logging.getLogger("campus_auth").setLevel(logging.DEBUG)
from campus_auth.config import Settings, settings
from campus_auth.core.cache import CacheStore, build_cache
from campus_auth.core.exceptions import LoginRequired
from campus_auth.core.fingerprint import FingerprintGenerator
from campus_auth.core.rate_limit import RateLimiter
from campus_auth.db.session import async_session_maker, init_db
from campus_auth.services.cookie_manager import CookieManager
from campus_auth.services.crypto import CookieCipher, load_encryption_key
from campus_auth.services.monitoring import EventTracker
from campus_auth.services.token_manager import TokenManager
from campus_auth.services.token_store import AuthTokenStore
from prometheus_client import make_asgi_app

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


def configure_services(
    app: FastAPI,
    session_maker: async_sessionmaker[AsyncSession],
    cache: CacheStore,
    config: Settings = settings,
    clock: Callable[[], float] = time.time,
) -> None:
    """Construct the auth services once and attach them to app.state."""
    key = load_encryption_key(config.encryption_key, config.secret_key, config.is_production)
    rate_limiter = RateLimiter.from_settings(cache, config.rate_limit, clock=clock)
    app.state.cache = cache
    app.state.rate_limiter = rate_limiter
    app.state.cookie_manager = CookieManager(
        store=AuthTokenStore(session_maker),
        cache=cache,
        cipher=CookieCipher(key),
        fingerprints=FingerprintGenerator(config.secret_key),
        rate_limiter=rate_limiter,
        tracker=EventTracker(),
        config=config.cookie_security,
        secret_key=config.secret_key,
        clock=clock,
    )
    app.state.token_manager = TokenManager(
        session_maker,
        secret_key=config.secret_key,
        algorithm=config.jwt_algorithm,
        access_ttl=config.access_token_expire_minutes * 60,
        refresh_ttl=config.refresh_token_expire_days * 24 * 3600,
        clock=clock,
    )


async def scheduled_token_cleanup():
    """Delete expired or revoked cookie tokens and refresh tokens."""
    cookie_rows = await app.state.cookie_manager.cleanup_expired()
    refresh_rows = await app.state.token_manager.cleanup_expired()
    if cookie_rows or refresh_rows:
        logger.info("Token cleanup: %d auth cookie rows, %d refresh rows", cookie_rows, refresh_rows)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.validate_security_config()
    await init_db()
    cache = build_cache(settings.redis_url)
    configure_services(app, async_session_maker, cache)

    scheduler.add_job(scheduled_token_cleanup, "interval", minutes=settings.token_cleanup_interval_minutes)
    scheduler.start()
    yield
    scheduler.shutdown()
    if hasattr(cache, "close"):
        await cache.close()


async def login_required_handler(request: Request, exc: LoginRequired):
    """Unauthenticated guarded request: clear the cookie and send the browser to the login page."""
    response = RedirectResponse(settings.login_path, status_code=303)
    response.delete_cookie(
        settings.cookie_security.cookie_name,
        path="/",
        secure=True,
        httponly=True,
        samesite="strict",
    )
    return response


limiter = Limiter(key_func=get_remote_address, default_limits=["200/minute"])

app = FastAPI(
    title="Campus Auth API",
    description="Authentication backend: encrypted rotating session cookies, bearer tokens, rate limiting",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(LoginRequired, login_required_handler)
app.add_middleware(SlowAPIMiddleware)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        if getattr(settings, "enable_hsts", False):
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()] if settings.cors_origins else []
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth.router, prefix="/api/v1")

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/health")
@limiter.exempt
def health(request: Request):
    return {"status": "ok"}
