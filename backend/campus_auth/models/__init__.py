from campus_auth.models.user import User
from campus_auth.models.auth_token import AuthToken
from campus_auth.models.refresh_token import RefreshToken

__all__ = [
    "User",
    "AuthToken",
    "RefreshToken",
]
