"""
auth/errors.py -- Exception taxonomy for the authentication core.

Every identity or session failure is an AuthError carrying a machine-readable
code and the HTTP status the request must terminate with. api/main.py
registers one exception handler for AuthError, so route handlers and
dependencies simply raise -- nothing in auth/ builds HTTP responses.

  401: InvalidCredentials, AccountDisabled, DiscoveryError, TokenExchangeError,
       NoRefreshToken, RefreshFailed, UserNotFound, NoSession, SessionExpired,
       SessionDecodeError
  403: Forbidden

UnknownPrincipalShape is deliberately NOT an AuthError. It means a principal
was built outside the two sanctioned login paths -- a programming error that
is logged with a traceback and surfaces as a generic 500.
"""

from __future__ import annotations

from typing import Any, Optional


class AuthError(Exception):
    """Base class for request-terminating authentication failures."""

    code = "unauthorized"
    status_code = 401
    default_message = "Unauthorized"

    def __init__(self, message: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "code": self.code}


class InvalidCredentials(AuthError):
    """Unknown username OR wrong password -- intentionally indistinguishable."""

    code = "invalid_credentials"
    default_message = "Invalid username or password"


class AccountDisabled(AuthError):
    code = "account_disabled"
    default_message = "Account is disabled"


class DiscoveryError(AuthError):
    """The provider's discovery document or key set could not be fetched."""

    code = "discovery_error"
    default_message = "Identity provider unavailable"


class TokenExchangeError(AuthError):
    """The authorization code was invalid, expired or failed verification."""

    code = "token_exchange_failed"
    default_message = "Login with the identity provider failed"


class NoRefreshToken(AuthError):
    code = "no_refresh_token"
    default_message = "Unauthorized"


class RefreshFailed(AuthError):
    code = "refresh_failed"
    default_message = "Session expired"


class UserNotFound(AuthError):
    """The session references a user that no longer exists."""

    code = "user_not_found"
    default_message = "Unauthorized"


class NoSession(AuthError):
    code = "no_session"
    default_message = "Unauthorized"


class SessionExpired(AuthError):
    code = "session_expired"
    default_message = "Session expired"


class SessionDecodeError(AuthError):
    """A stored session record is not a recognised variant."""

    code = "invalid_session"
    default_message = "Unauthorized"


class Forbidden(AuthError):
    code = "forbidden"
    status_code = 403
    default_message = "Access denied"


class UnknownPrincipalShape(RuntimeError):
    """A principal that is neither FederatedPrincipal nor LocalPrincipal."""
