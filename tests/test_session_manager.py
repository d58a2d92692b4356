"""Unit tests for auth/sessions.py -- login, lockout, refresh rotation, verify, logout.

Covers:
- successful login mints a verifiable pair, resets lockout state, audits USER_LOGIN
- unknown email, inactive identity and wrong password all look the same
- lockout at the threshold, no counter growth while locked, recovery after expiry
- refresh rotation: the new token works once, the old one never again
- a new login replaces the previous refresh session
- logout revokes the refresh token; garbage input is ignored
- verify rejects garbage, expired, refresh-typed and deactivated tokens
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from audit.models import AuditAction
from auth.models import AuthError, AuthErrorKind, Identity, LoginResult, Role, TokenPair
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import hash_password
from tests.conftest import PASSWORD, make_settings

EMAIL = "clerk@example.com"

# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def user_store():
    store = UserStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def identity_id(user_store: UserStore) -> int:
    return user_store.create_user(Identity(email=EMAIL, role=Role.CLERK, hashed_password=hash_password(PASSWORD)))


@pytest.fixture
def sessions(user_store, audit, clock) -> SessionManager:
    return SessionManager(user_store, audit, make_settings(), clock=clock)


def _login(sessions: SessionManager) -> LoginResult:
    result = sessions.authenticate(EMAIL, PASSWORD)
    assert isinstance(result, LoginResult), f"Expected LoginResult, got {result!r}"
    return result


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestAuthenticate:
    def test_success_returns_verifiable_tokens(self, sessions, identity_id) -> None:
        result = _login(sessions)
        assert result.identity.id == identity_id
        assert result.access_token and result.refresh_token
        verified = sessions.verify(result.access_token)
        assert isinstance(verified, Identity)
        assert verified.id == identity_id
        assert verified.role == Role.CLERK

    def test_email_match_is_case_insensitive(self, sessions, identity_id) -> None:
        result = sessions.authenticate("  Clerk@Example.COM ", PASSWORD)
        assert isinstance(result, LoginResult)

    def test_success_stamps_last_login(self, sessions, user_store, identity_id, clock) -> None:
        _login(sessions)
        stored = user_store.get_by_id(identity_id)
        assert stored.last_login == clock.now
        assert stored.refresh_token_id is not None

    def test_success_writes_login_audit(self, sessions, audit, identity_id) -> None:
        sessions.authenticate(EMAIL, PASSWORD, ip="10.0.0.7", user_agent="pytest")
        entries = audit.query(action=AuditAction.USER_LOGIN)
        assert len(entries) == 1
        assert entries[0].actor_id == identity_id
        assert entries[0].ip == "10.0.0.7"
        assert entries[0].user_agent == "pytest"

    def test_unknown_email_is_invalid_credentials(self, sessions, identity_id) -> None:
        result = sessions.authenticate("nobody@example.com", PASSWORD)
        assert isinstance(result, AuthError)
        assert result.kind == AuthErrorKind.INVALID_CREDENTIALS
        assert result.retryable is False

    def test_wrong_password_is_invalid_credentials(self, sessions, identity_id) -> None:
        result = sessions.authenticate(EMAIL, "wrong-password")
        assert isinstance(result, AuthError)
        assert result.kind == AuthErrorKind.INVALID_CREDENTIALS

    def test_inactive_identity_is_invalid_credentials(self, sessions, user_store, identity_id) -> None:
        """Deactivated accounts must not be distinguishable from unknown ones at login."""
        user_store.update_user(identity_id, is_active=False)
        result = sessions.authenticate(EMAIL, PASSWORD)
        assert isinstance(result, AuthError)
        assert result.kind == AuthErrorKind.INVALID_CREDENTIALS


class TestAuditUnavailable:
    """A failing audit store never turns a login decision into an error."""

    @pytest.fixture
    def sessions(self, user_store, broken_audit, clock) -> SessionManager:
        return SessionManager(user_store, broken_audit, make_settings(), clock=clock)

    def test_login_succeeds_and_is_persisted(self, sessions, user_store, identity_id, clock) -> None:
        result = _login(sessions)
        assert isinstance(sessions.verify(result.access_token), Identity)
        stored = user_store.get_by_id(identity_id)
        assert stored.last_login == clock.now
        assert stored.refresh_token_id is not None

    def test_lockout_still_applies(self, sessions, user_store, identity_id, clock) -> None:
        for _ in range(5):
            sessions.authenticate(EMAIL, "wrong-password")
        assert user_store.get_by_id(identity_id).locked_until == clock.now + timedelta(minutes=15)
        result = sessions.authenticate(EMAIL, PASSWORD)
        assert isinstance(result, AuthError)
        assert result.kind == AuthErrorKind.ACCOUNT_LOCKED


# ---------------------------------------------------------------------------
# Lockout
# ---------------------------------------------------------------------------


class TestLockout:
    def _fail(self, sessions: SessionManager, times: int) -> list:
        return [sessions.authenticate(EMAIL, "wrong-password") for _ in range(times)]

    def test_counter_increments_below_threshold(self, sessions, user_store, identity_id) -> None:
        self._fail(sessions, 3)
        stored = user_store.get_by_id(identity_id)
        assert stored.failed_login_attempts == 3
        assert stored.locked_until is None

    def test_threshold_locks_account(self, sessions, user_store, identity_id, clock) -> None:
        results = self._fail(sessions, 5)
        assert all(r.kind == AuthErrorKind.INVALID_CREDENTIALS for r in results)
        stored = user_store.get_by_id(identity_id)
        assert stored.failed_login_attempts == 5
        assert stored.locked_until == clock.now + timedelta(minutes=15)

    def test_locked_account_rejects_correct_password(self, sessions, identity_id) -> None:
        self._fail(sessions, 5)
        result = sessions.authenticate(EMAIL, PASSWORD)
        assert isinstance(result, AuthError)
        assert result.kind == AuthErrorKind.ACCOUNT_LOCKED
        assert result.retryable is True

    def test_no_counter_increment_while_locked(self, sessions, user_store, identity_id) -> None:
        self._fail(sessions, 5)
        locked_until = user_store.get_by_id(identity_id).locked_until
        results = self._fail(sessions, 3)
        assert all(r.kind == AuthErrorKind.ACCOUNT_LOCKED for r in results)
        stored = user_store.get_by_id(identity_id)
        assert stored.failed_login_attempts == 5
        assert stored.locked_until == locked_until

    def test_lock_writes_audit_entry(self, sessions, audit, identity_id) -> None:
        self._fail(sessions, 5)
        entries = audit.query(action=AuditAction.USER_LOCKED)
        assert len(entries) == 1
        assert entries[0].entity_id == str(identity_id)
        assert entries[0].diff["failedAttempts"] == 5

    def test_login_succeeds_after_lock_expires(self, sessions, user_store, identity_id, clock) -> None:
        self._fail(sessions, 5)
        clock.advance(minutes=15, seconds=1)
        result = sessions.authenticate(EMAIL, PASSWORD)
        assert isinstance(result, LoginResult)
        stored = user_store.get_by_id(identity_id)
        assert stored.failed_login_attempts == 0
        assert stored.locked_until is None

    def test_success_below_threshold_resets_counter(self, sessions, user_store, identity_id) -> None:
        self._fail(sessions, 4)
        _login(sessions)
        assert user_store.get_by_id(identity_id).failed_login_attempts == 0


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_refresh_rotates_pair(self, sessions, identity_id) -> None:
        login = _login(sessions)
        pair = sessions.refresh(login.refresh_token)
        assert isinstance(pair, TokenPair)
        assert pair.refresh_token != login.refresh_token
        assert isinstance(sessions.verify(pair.access_token), Identity)

    def test_rotated_token_cannot_be_replayed(self, sessions, identity_id) -> None:
        login = _login(sessions)
        first = sessions.refresh(login.refresh_token)
        assert isinstance(first, TokenPair)
        replay = sessions.refresh(login.refresh_token)
        assert isinstance(replay, AuthError)
        assert replay.kind == AuthErrorKind.INVALID_TOKEN
        # The legitimately rotated token keeps working.
        assert isinstance(sessions.refresh(first.refresh_token), TokenPair)

    def test_access_token_is_not_a_refresh_token(self, sessions, identity_id) -> None:
        login = _login(sessions)
        result = sessions.refresh(login.access_token)
        assert isinstance(result, AuthError)
        assert result.kind == AuthErrorKind.INVALID_TOKEN

    def test_new_login_replaces_previous_refresh_session(self, sessions, identity_id) -> None:
        first = _login(sessions)
        _login(sessions)
        result = sessions.refresh(first.refresh_token)
        assert isinstance(result, AuthError)
        assert result.kind == AuthErrorKind.INVALID_TOKEN

    def test_refresh_rejected_for_deactivated_identity(self, sessions, user_store, identity_id) -> None:
        login = _login(sessions)
        user_store.update_user(identity_id, is_active=False)
        result = sessions.refresh(login.refresh_token)
        assert isinstance(result, AuthError)
        assert result.kind == AuthErrorKind.INVALID_TOKEN

    def test_garbage_refresh_token(self, sessions) -> None:
        result = sessions.refresh("not-a-jwt")
        assert isinstance(result, AuthError)
        assert result.kind == AuthErrorKind.INVALID_TOKEN


# ---------------------------------------------------------------------------
# Verify / logout
# ---------------------------------------------------------------------------


class TestVerify:
    def test_garbage_token(self, sessions) -> None:
        result = sessions.verify("not-a-jwt")
        assert isinstance(result, AuthError)
        assert result.kind == AuthErrorKind.INVALID_TOKEN

    def test_refresh_token_is_not_an_access_token(self, sessions, identity_id) -> None:
        login = _login(sessions)
        result = sessions.verify(login.refresh_token)
        assert isinstance(result, AuthError)
        assert result.kind == AuthErrorKind.INVALID_TOKEN

    def test_expired_access_token(self, sessions, identity_id, clock) -> None:
        # Minted an hour ago with a 10-minute lifetime.
        clock.advance(hours=-1)
        login = _login(sessions)
        result = sessions.verify(login.access_token)
        assert isinstance(result, AuthError)
        assert result.kind == AuthErrorKind.INVALID_TOKEN

    def test_deactivated_identity_is_inactive(self, sessions, user_store, identity_id) -> None:
        login = _login(sessions)
        user_store.update_user(identity_id, is_active=False)
        result = sessions.verify(login.access_token)
        assert isinstance(result, AuthError)
        assert result.kind == AuthErrorKind.INACTIVE

    def test_token_signed_with_other_key_is_rejected(self, user_store, audit, clock, identity_id) -> None:
        other = SessionManager(
            user_store,
            audit,
            make_settings(secret_key="c" * 40, refresh_secret_key="d" * 40),
            clock=clock,
        )
        login = _login(other)
        mine = SessionManager(user_store, audit, make_settings(), clock=clock)
        result = mine.verify(login.access_token)
        assert isinstance(result, AuthError)
        assert result.kind == AuthErrorKind.INVALID_TOKEN


class TestLogout:
    def test_logout_revokes_refresh_token(self, sessions, user_store, identity_id) -> None:
        login = _login(sessions)
        sessions.logout(login.refresh_token)
        assert user_store.get_by_id(identity_id).refresh_token_id is None
        result = sessions.refresh(login.refresh_token)
        assert isinstance(result, AuthError)
        assert result.kind == AuthErrorKind.INVALID_TOKEN

    def test_logout_ignores_missing_or_garbage_token(self, sessions, identity_id) -> None:
        sessions.logout(None)
        sessions.logout("not-a-jwt")
        assert isinstance(_login(sessions), LoginResult)
