"""Device fingerprint and IP hash derived from the request context."""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

from starlette.requests import Request


@dataclass(frozen=True)
class ClientContext:
    """What the auth layer needs from one HTTP request."""

    cookie: str | None = None
    user_agent: str = ""
    accept_language: str = ""
    ip: str = ""
    is_https: bool = False

    @classmethod
    def from_request(cls, request: Request, cookie_name: str, trust_proxy_headers: bool = False) -> ClientContext:
        ip = request.client.host if request.client else ""
        is_https = request.url.scheme == "https"
        if trust_proxy_headers:
            forwarded_for = request.headers.get("X-Forwarded-For", "")
            if forwarded_for.strip():
                ip = forwarded_for.split(",")[0].strip()
            proto = request.headers.get("X-Forwarded-Proto", "")
            if proto:
                is_https = proto.split(",")[0].strip().lower() == "https"
        return cls(
            cookie=request.cookies.get(cookie_name),
            user_agent=request.headers.get("User-Agent", ""),
            accept_language=request.headers.get("Accept-Language", ""),
            ip=ip,
            is_https=is_https,
        )


def partial_ip(ip: str) -> str:
    """Drop the last address group: 203.0.113.7 -> 203.0.113, 2001:db8::1 -> 2001:db8:."""
    separator = "." if "." in ip else ":"
    idx = ip.rfind(separator)
    return ip[:idx] if idx != -1 else ""


class FingerprintGenerator:
    def __init__(self, salt: str):
        self._salt = salt.encode("utf-8")

    def _keyed_hash(self, value: str) -> str:
        return hmac.new(self._salt, value.encode("utf-8"), hashlib.sha256).hexdigest()

    def generate(self, ctx: ClientContext) -> str:
        return self._keyed_hash("\x00".join((ctx.user_agent, ctx.accept_language, partial_ip(ctx.ip))))

    def ip_hash(self, ctx: ClientContext) -> str:
        return self._keyed_hash(ctx.ip)
