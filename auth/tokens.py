"""
auth/tokens.py -- Identity tokens, password hashing, and refresh-secret utilities.

Security design decisions:
  JWT: python-jose with HS256. Identity tokens carry ONLY sub (principal id),
       sid (session id), iat and exp. No role or permission claims: revoking
       access must never require re-issuing tokens, so authorization is
       re-checked against the permission cache on every request.

       Expiry is checked here against the caller-supplied clock rather than
       jose's wall clock, so the session manager and its tests share one
       notion of "now".

  Passwords: bcrypt directly. Its cost factor makes brute-force against
       low-entropy secrets expensive. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether a username exists [C1].

  Refresh secrets: secrets.token_urlsafe(48) gives 384 bits of entropy. We
       store HMAC-SHA256(SECRET_KEY, secret) so lookup is O(1) and a leaked
       sessions table is useless without SECRET_KEY. bcrypt's intentional
       slowness is unnecessary for high-entropy secrets.

Layer rule: no imports from api/ or cache/. Import from core/ is allowed --
core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import bcrypt
from jose import JWTError, jwt

from auth.errors import TokenExpired, TokenInvalid
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import CredentialStore

logger = logging.getLogger("warden.auth")

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("sub", "sid", "iat", "exp")
REFRESH_COOKIE_PATH = "/api/v1/auth"
MAX_PASSWORD_BYTES = 72  # bcrypt input limit

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
#
# Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
# wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
# rejects with an explicit error.
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError for a password over MAX_PASSWORD_BYTES once encoded;
    current bcrypt refuses rather than truncates. The API models reject such
    passwords with a 422 before they get here.
    """
    if len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password exceeds {MAX_PASSWORD_BYTES} bytes.")
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    if len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash -- treat as a mismatch, never as a match.
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("warden_timing_dummy")


def authenticate_user(store: CredentialStore, username: str, password: str, deadline=None) -> User | None:
    """Authenticate a username/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown username: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure -- including an inactive
    account, so the caller can answer every failure identically.
    """
    user = store.get_user_by_username(username, deadline=deadline)
    if user is None or user.hashed_password is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        logger.info("Login refused for inactive principal %s", user.id)
        return None
    return user


# ---------------------------------------------------------------------------
# Identity token encode / decode
# ---------------------------------------------------------------------------


def create_access_token(
    principal_id: int,
    session_id: str,
    issued_at: datetime,
    ttl_seconds: int,
    secret_key: str,
) -> tuple[str, datetime]:
    """Encode a signed identity token. Returns (token, expires_at).

    iat/exp are integer epoch seconds. sub is the principal id as a string
    (RFC 7519 requires a StringOrURI subject).
    """
    iat = int(issued_at.timestamp())
    exp = iat + ttl_seconds
    payload = {
        "sub": str(principal_id),
        "sid": session_id,
        "iat": iat,
        "exp": exp,
    }
    token = jwt.encode(payload, secret_key, algorithm=_ALGORITHM)
    return token, datetime.fromtimestamp(exp, tz=timezone.utc)


def decode_access_token(
    token: str,
    secret_key: str,
    now: datetime | None = None,
    verify_expiry: bool = True,
) -> dict[str, Any]:
    """Verify signature and shape, then expiry. Returns the claims dict.

    Raises TokenInvalid for a bad signature, malformed token, or missing claim;
    TokenExpired when exp <= now. verify_expiry=False is used by logout, which
    must accept an expired-but-authentic token.
    """
    try:
        payload = jwt.decode(
            token,
            secret_key,
            algorithms=[_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError as exc:
        raise TokenInvalid() from exc

    if any(claim not in payload for claim in _REQUIRED_CLAIMS):
        raise TokenInvalid()
    try:
        payload["sub"] = int(payload["sub"])
        payload["iat"] = int(payload["iat"])
        payload["exp"] = int(payload["exp"])
    except (TypeError, ValueError) as exc:
        raise TokenInvalid() from exc
    if not isinstance(payload["sid"], str) or not payload["sid"]:
        raise TokenInvalid()

    if verify_expiry:
        current = now or datetime.now(timezone.utc)
        if payload["exp"] <= int(current.timestamp()):
            raise TokenExpired()
    return payload


# ---------------------------------------------------------------------------
# Refresh secret generation and hashing
# ---------------------------------------------------------------------------


def generate_refresh_secret() -> str:
    """Return a new opaque refresh secret (URL-safe, 384 bits of entropy)."""
    return secrets.token_urlsafe(48)


def hash_refresh_secret(raw_secret: str, secret_key: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_secret) as a hex string.

    Deterministic, so the store can look a session up by hash in O(1).
    """
    return hmac.new(
        secret_key.encode(),
        raw_secret.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the identity token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the token expiry so both expire together.
    """
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.access_token_ttl_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=duration,
    )


def set_refresh_cookie(response, refresh_secret: str, expire_seconds: int) -> None:
    """Write the refresh secret as an httpOnly cookie scoped to the auth routes.

    path=REFRESH_COOKIE_PATH keeps the long-lived secret off every other request.
    """
    response.set_cookie(
        "refresh_token",
        value=refresh_secret,
        httponly=True,
        samesite="strict",
        secure=get_settings().secure_cookies,
        max_age=max(expire_seconds, 0),
        path=REFRESH_COOKIE_PATH,
    )


def clear_auth_cookies(response) -> None:
    """Remove every client-held credential cookie (refresh failure, logout)."""
    response.delete_cookie("access_token")
    response.delete_cookie("refresh_token", path=REFRESH_COOKIE_PATH)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
