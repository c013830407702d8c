"""
auth/errors.py -- Typed failure taxonomy for authentication and authorization.

Every class carries a stable machine-readable `code` and the HTTP status the
API layer maps it to. The core never returns a bare bool for a failure: callers
can tell "denied" (PermissionDenied) apart from "the system could not decide"
(DataIntegrityError, Timeout) and react accordingly -- deny vs. retry/alert.

Messages are safe for clients. Internal detail goes to the log, not here.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every typed failure raised by the auth core."""

    code: str = "auth_error"
    status_code: int = 400
    message: str = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    """Wrong username, wrong password, or inactive account -- deliberately indistinguishable."""

    code = "invalid_credentials"
    status_code = 401
    message = "Invalid credentials."


class AccountInactive(AuthError):
    code = "account_inactive"
    status_code = 403
    message = "Account is inactive."


class TokenExpired(AuthError):
    code = "token_expired"
    status_code = 401
    message = "Token has expired."


class SessionExpired(TokenExpired):
    """The token is still signed and in date, but its session has ended (logout, inactivity, expiry)."""

    code = "session_expired"
    message = "Session has expired."


class TokenInvalid(AuthError):
    code = "token_invalid"
    status_code = 401
    message = "Token is invalid."


class InvalidRefreshToken(AuthError):
    code = "invalid_refresh_token"
    status_code = 401
    message = "Invalid or expired refresh token."


class SessionNotFound(AuthError):
    code = "session_not_found"
    status_code = 404
    message = "Session not found."


class CycleError(AuthError):
    code = "hierarchy_cycle"
    status_code = 409
    message = "Role hierarchy edge would create a cycle."


class HierarchyTooDeep(AuthError):
    code = "hierarchy_too_deep"
    status_code = 409
    message = "Role hierarchy edge would exceed the maximum inheritance depth."


class DataIntegrityError(AuthError):
    """Store contents violate an invariant (cycle, dangling reference, missing principal)."""

    code = "data_integrity_error"
    status_code = 500
    message = "Authorization data is inconsistent."


class PermissionDenied(AuthError):
    code = "permission_denied"
    status_code = 403
    message = "Permission denied."


class Timeout(AuthError):
    code = "timeout"
    status_code = 503
    message = "Operation timed out."
