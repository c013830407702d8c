"""
auth/sessions.py -- Session lifecycle: issue, validate, refresh, revoke, sweep.

A session binds one principal to one credential pair:
  - a short-lived signed identity token (JWT: sub, sid, iat, exp), and
  - a long-lived opaque refresh secret, stored only as HMAC-SHA256(SECRET_KEY, secret).

Revocation is real-time without re-issuing tokens: every identity token names
its session, and validate_token() checks that session on every request. Flip
is_active and every outstanding token for that session stops working.

Refresh rotation:
  With rotate_refresh_secrets on (the default), each refresh consumes the
  presented secret and issues a new one. The consumed hash is kept as
  previous_refresh_hash; presenting it again means the secret leaked or was
  replayed, so the whole session is revoked.

  The refresh write is a compare-and-swap on the session's version column.
  Two clients racing with the same secret cannot both win.

Expiry is lazy and authoritative: validate_token() and refresh() enforce
absolute expiry and the inactivity timeout themselves. sweep_expired() is
periodic hygiene only.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from auth import audit
from auth.errors import (
    AccountInactive,
    InvalidRefreshToken,
    SessionExpired,
    SessionNotFound,
    TokenExpired,
    TokenInvalid,
)
from auth.models import AnomalySignal, IssuedSession, RefreshedSession, Session, SessionContext
from auth.store import CredentialStore
from auth.tokens import (
    create_access_token,
    decode_access_token,
    generate_refresh_secret,
    hash_refresh_secret,
    utcnow,
)
from core.config import Settings
from core.deadline import Deadline

if TYPE_CHECKING:
    from auth.audit import AuditDispatcher

logger = logging.getLogger("warden.sessions")

_HIGH_RISK_SESSIONS = 10
_MEDIUM_RISK_SESSIONS = 5
_NEW_IP_RECOMMENDATIONS = ("Verify device", "Enable two-factor authentication")


class SessionManager:
    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        audit_dispatcher: AuditDispatcher | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock
        self._audit = audit_dispatcher

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def create_session(
        self,
        principal_id: int,
        device_info: dict | None = None,
        source_ip: str | None = None,
        deadline: Deadline | None = None,
    ) -> IssuedSession:
        """Open a session and return its credential pair.

        The raw refresh secret appears only in the return value. If the
        principal is at max_sessions_per_user, the least recently active
        sessions are deactivated first.
        """
        settings = self._settings
        now = self._clock()
        self._enforce_session_cap(principal_id, now)

        refresh_secret = generate_refresh_secret()
        session = Session(
            id=str(uuid.uuid4()),
            user_id=principal_id,
            refresh_token_hash=hash_refresh_secret(refresh_secret, settings.secret_key),
            device_info=dict(device_info or {}),
            ip_address=source_ip,
            created_at=now,
            last_activity=now,
            expires_at=now + timedelta(seconds=settings.refresh_token_ttl_seconds),
        )
        self._store.create_session(session, deadline=deadline)

        access_token, access_expires_at = create_access_token(
            principal_id, session.id, now, settings.access_token_ttl_seconds, settings.secret_key
        )
        logger.info("Session %s opened for principal %s", session.id, principal_id)
        return IssuedSession(
            access_token=access_token,
            refresh_secret=refresh_secret,
            session_id=session.id,
            expires_at=session.expires_at,
            access_expires_at=access_expires_at,
        )

    def _enforce_session_cap(self, principal_id: int, now: datetime) -> None:
        cap = self._settings.max_sessions_per_user
        if cap <= 0:
            return
        active = self._store.list_active_sessions(principal_id, now)  # most recent first
        for stale in active[cap - 1 :]:
            self._store.deactivate_session(stale.id)
            logger.info("Session %s closed: principal %s reached the session cap", stale.id, principal_id)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(
        self,
        refresh_secret: str,
        source_ip: str | None = None,
        session_id: str | None = None,
        deadline: Deadline | None = None,
    ) -> RefreshedSession:
        """Exchange a refresh secret for a new identity token (and, when rotating, a new secret).

        Raises InvalidRefreshToken for an unknown, consumed, inactive, idle, or
        expired secret and for a lost concurrent refresh; AccountInactive when
        the principal has been deactivated or removed.
        """
        settings = self._settings
        now = self._clock()
        presented_hash = hash_refresh_secret(refresh_secret, settings.secret_key)

        session = self._store.find_session_by_refresh_hash(presented_hash, deadline=deadline)
        if session is None:
            if settings.rotate_refresh_secrets:
                self._check_reuse(presented_hash, session_id, deadline)
            raise InvalidRefreshToken()
        if session_id is not None and session.id != session_id:
            raise InvalidRefreshToken()
        if not session.is_active or session.expires_at <= now:
            raise InvalidRefreshToken()
        if self._is_idle(session, now):
            self._close_idle(session, deadline)
            raise InvalidRefreshToken()

        user = self._store.get_user(session.user_id, deadline=deadline)
        if user is None or not user.is_active:
            self._store.deactivate_session(session.id, deadline=deadline)
            logger.info("Session %s closed on refresh: principal %s is inactive", session.id, session.user_id)
            raise AccountInactive()

        if settings.rotate_refresh_secrets:
            next_secret = generate_refresh_secret()
            swapped = self._store.compare_and_swap_session(
                session.id,
                session.version,
                now,
                ip_address=source_ip,
                new_refresh_hash=hash_refresh_secret(next_secret, settings.secret_key),
                consumed_refresh_hash=presented_hash,
                deadline=deadline,
            )
        else:
            next_secret = refresh_secret
            swapped = self._store.compare_and_swap_session(
                session.id, session.version, now, ip_address=source_ip, deadline=deadline
            )
        if not swapped:
            logger.info("Refresh of session %s lost a concurrent update", session.id)
            raise InvalidRefreshToken()

        access_token, access_expires_at = create_access_token(
            session.user_id, session.id, now, settings.access_token_ttl_seconds, settings.secret_key
        )
        return RefreshedSession(
            access_token=access_token,
            access_expires_at=access_expires_at,
            refresh_secret=next_secret,
            session_id=session.id,
            expires_at=session.expires_at,
            principal_id=session.user_id,
        )

    def _check_reuse(self, presented_hash: str, session_id: str | None, deadline: Deadline | None) -> None:
        """Revoke the session if presented_hash is a secret it has already consumed."""
        reused = self._store.find_session_by_previous_hash(presented_hash, deadline=deadline)
        if reused is None or (session_id is not None and reused.id != session_id):
            return
        self._store.deactivate_session(reused.id, deadline=deadline)
        logger.warning(
            "Refresh secret reuse on session %s (principal %s); session revoked",
            reused.id,
            reused.user_id,
        )
        if self._audit is not None:
            self._audit.record(
                audit.REFRESH_REUSE,
                reused.user_id,
                resource_type="session",
                resource_id=reused.id,
                success=False,
                error_message="Consumed refresh secret presented again",
            )
        raise InvalidRefreshToken()

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate_token(self, token: str, deadline: Deadline | None = None) -> SessionContext:
        """Verify an identity token and the session it names.

        Raises TokenInvalid, TokenExpired, SessionNotFound, or SessionExpired.
        An idle session is deactivated here rather than waiting for the sweep,
        even when the identity token presented has expired as well.
        """
        settings = self._settings
        now = self._clock()
        claims = decode_access_token(token, settings.secret_key, verify_expiry=False)

        session = self._store.get_session(claims["sid"], deadline=deadline)
        owned = session is not None and session.user_id == claims["sub"]
        if owned and session.is_active and self._is_idle(session, now):
            self._close_idle(session, deadline)
            raise SessionExpired()
        if claims["exp"] <= int(now.timestamp()):
            raise TokenExpired()
        if session is None:
            raise SessionNotFound()
        if not owned:
            raise TokenInvalid()
        if not session.is_active or session.expires_at <= now:
            raise SessionExpired()
        if not self._store.touch_session(session.id, now, deadline=deadline):
            # Revoked between the read and the touch.
            raise SessionExpired()

        return SessionContext(
            principal_id=session.user_id,
            session_id=session.id,
            issued_at=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )

    def _is_idle(self, session: Session, now: datetime) -> bool:
        return now - session.last_activity > timedelta(seconds=self._settings.session_inactivity_timeout_seconds)

    def _close_idle(self, session: Session, deadline: Deadline | None) -> None:
        self._store.deactivate_session(session.id, deadline=deadline)
        logger.info("Session %s closed after inactivity", session.id)

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke(self, token: str) -> str:
        """Revoke the session behind a refresh secret or an identity token.

        An identity token only needs a valid signature; an expired one is
        still accepted so a client can always log out. Idempotent. Returns the
        session id, or raises SessionNotFound if the credential names nothing.
        """
        settings = self._settings
        session = self._store.find_session_by_refresh_hash(hash_refresh_secret(token, settings.secret_key))
        if session is not None:
            self._store.deactivate_session(session.id)
            logger.info("Session %s revoked by refresh secret", session.id)
            return session.id
        try:
            claims = decode_access_token(token, settings.secret_key, verify_expiry=False)
        except TokenInvalid as exc:
            raise SessionNotFound() from exc
        self.revoke_session(claims["sid"])
        return claims["sid"]

    def revoke_session(self, session_id: str) -> None:
        if not self._store.deactivate_session(session_id):
            raise SessionNotFound()
        logger.info("Session %s revoked", session_id)

    def revoke_all(self, principal_id: int, except_session_id: str | None = None) -> int:
        """Deactivate every active session of a principal. Returns how many were closed."""
        closed = self._store.deactivate_user_sessions(principal_id, except_session_id=except_session_id)
        logger.info("Closed %d session(s) for principal %s", closed, principal_id)
        return closed

    # ------------------------------------------------------------------
    # Anomaly detection (advisory)
    # ------------------------------------------------------------------

    def detect_anomalies(self, principal_id: int, source_ip: str | None) -> AnomalySignal:
        """Score a login attempt against the principal's recent session history.

        Call before create_session(), otherwise the new session's IP counts as known.
        """
        now = self._clock()
        since = now - timedelta(seconds=self._settings.anomaly_window_seconds)
        recent = self._store.list_sessions_created_since(principal_id, since)
        known_ips = self._store.known_session_ips(principal_id)

        new_ip = bool(source_ip) and source_ip not in known_ips
        count = len(recent)
        if count > _HIGH_RISK_SESSIONS:
            risk = "high"
        elif count > _MEDIUM_RISK_SESSIONS:
            risk = "medium"
        else:
            risk = "low"

        return AnomalySignal(
            is_suspicious=new_ip and count > self._settings.anomaly_session_threshold,
            new_ip=new_ip,
            recent_session_count=count,
            unique_ips=len({s.ip_address for s in recent if s.ip_address}),
            risk_level=risk,
            recommendations=_NEW_IP_RECOMMENDATIONS if new_ip else (),
        )

    # ------------------------------------------------------------------
    # Listing and hygiene
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Session | None:
        return self._store.get_session(session_id)

    def list_active_sessions(self, principal_id: int) -> list[Session]:
        return self._store.list_active_sessions(principal_id, self._clock())

    def session_stats(self, principal_id: int | None = None) -> dict[str, int]:
        return self._store.count_sessions(self._clock(), user_id=principal_id)

    def sweep_expired(self) -> int:
        """Deactivate sessions past expiry or idle past the timeout. Returns rows changed."""
        now = self._clock()
        idle_cutoff = now - timedelta(seconds=self._settings.session_inactivity_timeout_seconds)
        swept = self._store.deactivate_lapsed_sessions(now, idle_cutoff)
        if swept:
            logger.info("Swept %d lapsed session(s)", swept)
        return swept
