"""Auth schemas: encrypted cookie payload and API bodies."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, ValidationError

from campus_auth.core.exceptions import FormatError


class CookiePayload(BaseModel):
    """Contents of the encrypted auth cookie. Never persisted as a row."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    uid: int
    token: str  # raw hex secret; only ever transmitted encrypted
    fingerprint: str
    issued_at: int
    expires_at: int
    ip_hash: str
    csrf: str

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> CookiePayload:
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise FormatError(f"Invalid cookie payload: {e.error_count()} error(s)") from e


class LoginBody(BaseModel):
    email: str
    password: str


class TokenLoginBody(LoginBody):
    device_id: str | None = None


class RefreshBody(BaseModel):
    refresh_token: str
    device_id: str | None = None


class UserOut(BaseModel):
    id: int
    email: str


class LoginResponse(BaseModel):
    user: UserOut
    csrf: str  # echo back in X-CSRF-Token on state-changing requests
    expires_at: int


class SessionOut(BaseModel):
    uid: int
    issued_at: int
    expires_at: int
    csrf: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds until access token expires
    refresh_expires_at: int


class RevokeAllResponse(BaseModel):
    refresh_tokens: int
    auth_cookies: int
