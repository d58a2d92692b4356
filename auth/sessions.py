"""
auth/sessions.py -- Session Manager: login, token refresh, verification, logout.

Token lifecycle:
  authenticate() -- password check with brute-force lockout; on success mints
                    an access/refresh pair and installs the refresh token's
                    jti as the identity's only accepted refresh token.
  refresh()      -- accepts a refresh token only if its jti is still the
                    current one, then rotates it (mint-and-replace). Replaying
                    an already-rotated token fails with INVALID_TOKEN, which
                    bounds the blast radius of a leaked refresh token.
  verify()       -- signature + expiry + liveness (identity exists and is
                    active). Read-only against the store.
  logout()       -- revokes the presented refresh token's jti. Access tokens
                    are not revoked; they expire within minutes.

Lockout policy [C2]:
  While locked_until is in the future every attempt fails with ACCOUNT_LOCKED
  before the password is checked, and the failed-attempt counter is NOT
  incremented. A wrong password outside a lock increments the counter in one
  UPDATE and sets the lock when the threshold is reached.

Every method returns its result or an AuthError. None of them raise for an
authentication failure; store errors do propagate.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from audit.models import AuditAction
from audit.trail import AuditTrail
from auth.models import AuthError, AuthErrorKind, Identity, LoginResult, TokenPair
from auth.store import UserStore
from auth.tokens import (
    ACCESS_TOKEN_TYPE,
    REFRESH_TOKEN_TYPE,
    burn_password_check,
    create_access_token,
    create_refresh_token,
    decode_token,
    new_token_id,
    verify_password,
)
from core.clock import Clock, utcnow
from core.config import Settings

logger = logging.getLogger("loanledger.auth")


class SessionManager:
    def __init__(self, store: UserStore, audit: AuditTrail, settings: Settings, clock: Clock = utcnow) -> None:
        self._store = store
        self._audit = audit
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def authenticate(
        self,
        email: str,
        password: str,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> LoginResult | AuthError:
        now = self._clock()
        identity = self._store.get_by_email(email)
        if identity is None or not identity.is_active:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            burn_password_check(password)
            return AuthError.of(AuthErrorKind.INVALID_CREDENTIALS)

        if identity.is_locked(now):
            return AuthError.of(AuthErrorKind.ACCOUNT_LOCKED)

        if not verify_password(password, identity.hashed_password):
            self._record_failure(identity, ip, user_agent)
            return AuthError.of(AuthErrorKind.INVALID_CREDENTIALS)

        token_id = new_token_id()
        self._store.record_successful_login(identity.id, now, token_id)
        identity.failed_login_attempts = 0
        identity.locked_until = None
        identity.last_login = now
        identity.refresh_token_id = token_id

        pair = self._mint_pair(identity, token_id)
        self._audit.append(
            AuditAction.USER_LOGIN,
            "User",
            actor_id=identity.id,
            entity_id=identity.id,
            ip=ip,
            user_agent=user_agent,
        )
        logger.info("Login succeeded for user %s", identity.id)
        return LoginResult(access_token=pair.access_token, refresh_token=pair.refresh_token, identity=identity)

    def _record_failure(self, identity: Identity, ip: str | None, user_agent: str | None) -> None:
        threshold = self._settings.lockout_threshold
        lock_until = self._clock() + timedelta(minutes=self._settings.lockout_minutes)
        attempts = self._store.record_failed_login(identity.id, threshold, lock_until)
        if attempts >= threshold:
            logger.warning("User %s locked after %d failed login attempts", identity.id, attempts)
            self._audit.append(
                AuditAction.USER_LOCKED,
                "User",
                entity_id=identity.id,
                ip=ip,
                user_agent=user_agent,
                diff={"failedAttempts": attempts, "lockedUntil": lock_until},
            )

    # ------------------------------------------------------------------
    # Refresh / verify / logout
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair | AuthError:
        claims = decode_token(refresh_token, self._settings.refresh_secret_key, REFRESH_TOKEN_TYPE)
        if claims is None:
            return AuthError.of(AuthErrorKind.INVALID_TOKEN)
        identity = self._store.get_by_id(claims["identity_id"])
        if identity is None or not identity.is_active:
            return AuthError.of(AuthErrorKind.INVALID_TOKEN)

        new_id = new_token_id()
        if not self._store.rotate_refresh_token(identity.id, claims["jti"], new_id):
            # Already rotated or revoked: a replay of an old token.
            logger.warning("Rejected stale refresh token for user %s", identity.id)
            return AuthError.of(AuthErrorKind.INVALID_TOKEN)
        identity.refresh_token_id = new_id
        return self._mint_pair(identity, new_id)

    def verify(self, access_token: str) -> Identity | AuthError:
        claims = decode_token(access_token, self._settings.secret_key, ACCESS_TOKEN_TYPE)
        if claims is None:
            return AuthError.of(AuthErrorKind.INVALID_TOKEN)
        identity = self._store.get_by_id(claims["identity_id"])
        if identity is None:
            return AuthError.of(AuthErrorKind.INVALID_TOKEN)
        if not identity.is_active:
            return AuthError.of(AuthErrorKind.INACTIVE)
        return identity

    def logout(self, refresh_token: str | None = None) -> None:
        """Revoke the presented refresh token, if it is valid and current.

        The caller clears the cookie regardless of the outcome.
        """
        if not refresh_token:
            return
        claims = decode_token(refresh_token, self._settings.refresh_secret_key, REFRESH_TOKEN_TYPE)
        if claims is None:
            return
        self._store.rotate_refresh_token(claims["identity_id"], claims["jti"], None)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _mint_pair(self, identity: Identity, token_id: str) -> TokenPair:
        now = self._clock()
        return TokenPair(
            access_token=create_access_token(
                identity, self._settings.secret_key, now, self._settings.access_token_expire_seconds
            ),
            refresh_token=create_refresh_token(
                identity, token_id, self._settings.refresh_secret_key, now, self._settings.refresh_token_expire_seconds
            ),
        )
