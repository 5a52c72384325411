"""Authentication error taxonomy."""


class AuthError(Exception):
    """Base class for credential issuance and validation failures."""


class TransportError(AuthError):
    """Credential issuance attempted over a non-HTTPS transport."""


class IntegrityError(AuthError):
    """Signature or AEAD tag did not verify."""


class FormatError(AuthError):
    """Malformed cookie, ciphertext blob or payload."""


class ExpiredCredential(AuthError):
    pass


class DeviceMismatch(AuthError):
    pass


class IPMismatch(AuthError):
    pass


class RevokedOrReplayed(AuthError):
    pass


class ConfigurationError(AuthError):
    """Bad key length or missing secret; raised at startup or first use."""


class InvalidAccessToken(AuthError):
    pass


class InvalidRefreshToken(AuthError):
    pass


class LoginRequired(AuthError):
    """Raised by the request guard; the app turns it into a redirect to the login page."""
