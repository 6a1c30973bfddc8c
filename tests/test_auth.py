"""
Test suite for the authentication service

Covers login, lockout, logout and refresh delegation.
"""

import threading

import pytest

from netbank.audit import AuditEventType, AuditOutcome
from netbank.errors import AuthError, AuthErrorCode, OperationTimeout
from netbank.identities import IdentityStatus

from conftest import PASSWORD


@pytest.fixture
def auth(system):
    return system.auth_service


def login_error(auth, email, password):
    with pytest.raises(AuthError) as exc_info:
        auth.login(email, password)
    return exc_info.value.code


class TestLogin:
    """Test credential verification"""

    def test_successful_login(self, system, auth, client_identity):
        """Test a correct password opens a session and is audited once"""
        result = auth.login("alice@example.com", PASSWORD)

        assert result.identity.id == client_identity.id
        assert result.identity.last_login is not None
        principal = system.token_service.validate_access(result.tokens.access_token)
        assert principal.identity_id == client_identity.id

        successes = system.audit_trail.get_events_by_type(AuditEventType.LOGIN_SUCCESS)
        assert [e.entity_id for e in successes] == [client_identity.id]

    def test_wrong_password(self, system, auth, client_identity):
        """Test a wrong password is INVALID_CREDENTIALS and counted"""
        assert login_error(auth, "alice@example.com", "wrong") == AuthErrorCode.INVALID_CREDENTIALS

        identity = system.identity_manager.get_identity(client_identity.id)
        assert identity.failed_login_attempts == 1
        [event] = system.audit_trail.get_events_by_type(AuditEventType.LOGIN_FAILED)
        assert event.outcome == AuditOutcome.FAILURE

    def test_unknown_email(self, system, auth):
        """Test an unknown e-mail looks exactly like a wrong password"""
        assert login_error(auth, "ghost@example.com", PASSWORD) == AuthErrorCode.INVALID_CREDENTIALS

        [event] = system.audit_trail.get_events_by_type(AuditEventType.LOGIN_FAILED)
        assert event.entity_id == "unknown"
        assert system.storage.count("sessions") == 0

    def test_success_resets_failures(self, system, auth, client_identity):
        """Test a successful login clears the failure counter"""
        for _ in range(3):
            login_error(auth, "alice@example.com", "wrong")
        auth.login("alice@example.com", PASSWORD)

        identity = system.identity_manager.get_identity(client_identity.id)
        assert identity.failed_login_attempts == 0
        assert identity.first_failed_at is None

    def test_deadline_expired_leaves_nothing(self, system, auth, client_identity):
        """Test a login past its deadline creates no session"""
        with pytest.raises(OperationTimeout):
            auth.login("alice@example.com", PASSWORD, deadline=0.0)

        assert system.storage.count("sessions") == 0
        assert not system.audit_trail.get_events_by_type(AuditEventType.LOGIN_SUCCESS)


class TestLockout:
    """Test consecutive-failure lockout"""

    def test_nth_failure_locks(self, system, auth, client_identity):
        """Test the failure that reaches the threshold already reports LOCKED"""
        codes = [login_error(auth, "alice@example.com", "wrong") for _ in range(5)]

        assert codes[:4] == [AuthErrorCode.INVALID_CREDENTIALS] * 4
        assert codes[4] == AuthErrorCode.LOCKED
        assert system.identity_manager.get_identity(client_identity.id).status == IdentityStatus.LOCKED

    def test_correct_password_while_locked(self, system, auth, client_identity):
        """Test the right password still yields LOCKED during the lockout"""
        for _ in range(5):
            login_error(auth, "alice@example.com", "wrong")

        assert login_error(auth, "alice@example.com", PASSWORD) == AuthErrorCode.LOCKED
        assert system.storage.count("sessions") == 0
        locked_events = system.audit_trail.get_events_by_type(AuditEventType.LOGIN_LOCKED)
        assert locked_events[-1].outcome == AuditOutcome.DENIED

    def test_lock_expires(self, system, auth, client_identity, clock):
        """Test login works again once the lockout window has elapsed"""
        for _ in range(5):
            login_error(auth, "alice@example.com", "wrong")

        clock.advance(minutes=16)
        result = auth.login("alice@example.com", PASSWORD)

        assert result.identity.status == IdentityStatus.ACTIVE
        assert result.identity.failed_login_attempts == 0

    def test_failures_outside_window_do_not_accumulate(self, system, auth, client_identity, clock):
        """Test failures spread beyond the window never lock"""
        for _ in range(4):
            login_error(auth, "alice@example.com", "wrong")
        clock.advance(minutes=20)

        assert login_error(auth, "alice@example.com", "wrong") == AuthErrorCode.INVALID_CREDENTIALS
        assert system.identity_manager.get_identity(client_identity.id).failed_login_attempts == 1

    def test_failure_after_expired_lock_starts_fresh(self, system, auth, client_identity, clock):
        """Test a wrong password after the lock lapsed counts from one"""
        for _ in range(5):
            login_error(auth, "alice@example.com", "wrong")
        clock.advance(minutes=16)

        assert login_error(auth, "alice@example.com", "wrong") == AuthErrorCode.INVALID_CREDENTIALS
        identity = system.identity_manager.get_identity(client_identity.id)
        assert identity.status == IdentityStatus.ACTIVE
        assert identity.failed_login_attempts == 1

    def test_concurrent_failures_lock(self, system, auth, client_identity):
        """Test racing failed attempts are all counted and end locked"""
        barrier = threading.Barrier(8)
        codes = []

        def attempt():
            barrier.wait()
            try:
                auth.login("alice@example.com", "wrong")
            except AuthError as e:
                codes.append(e.code)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(codes) == 8
        assert AuthErrorCode.LOCKED in codes
        identity = system.identity_manager.get_identity(client_identity.id)
        assert identity.status == IdentityStatus.LOCKED
        assert login_error(auth, "alice@example.com", PASSWORD) == AuthErrorCode.LOCKED

    def test_administrative_lock_revokes_sessions(self, system, auth, client_identity, admin_identity):
        """Test an administrative lock ends live sessions and blocks login"""
        result = auth.login("alice@example.com", PASSWORD)
        assert auth.lock_identity(client_identity.id, admin_identity.id)

        with pytest.raises(AuthError) as exc_info:
            system.token_service.validate_access(result.tokens.access_token)
        assert exc_info.value.code == AuthErrorCode.REVOKED
        assert login_error(auth, "alice@example.com", PASSWORD) == AuthErrorCode.LOCKED

        assert auth.unlock_identity(client_identity.id, admin_identity.id)
        assert auth.login("alice@example.com", PASSWORD).identity.id == client_identity.id


class TestLogoutAndRefresh:
    """Test logout and refresh"""

    def test_logout(self, system, auth, client_identity):
        """Test logout revokes the session and is audited"""
        result = auth.login("alice@example.com", PASSWORD)

        assert auth.logout(result.tokens.session_id, actor_id=client_identity.id)
        with pytest.raises(AuthError):
            system.token_service.validate_access(result.tokens.access_token)

        [event] = system.audit_trail.get_events_by_type(AuditEventType.LOGOUT)
        assert event.entity_id == result.tokens.session_id

    def test_logout_unknown_session(self, system, auth):
        """Test logging out a missing session writes nothing"""
        assert auth.logout("missing") is False
        assert not system.audit_trail.get_events_by_type(AuditEventType.LOGOUT)

    def test_repeated_logout_audited_once(self, system, auth, client_identity):
        """Test logging out an already revoked session writes no second LOGOUT"""
        result = auth.login("alice@example.com", PASSWORD)
        session_id = result.tokens.session_id

        assert auth.logout(session_id, actor_id=client_identity.id) is True
        assert auth.logout(session_id, actor_id=client_identity.id) is False

        assert len(system.audit_trail.get_events_by_type(AuditEventType.LOGOUT)) == 1
        assert len(system.audit_trail.get_events_by_type(AuditEventType.TOKEN_REVOKED)) == 1

    def test_refresh_delegates_rotation(self, system, auth, client_identity):
        """Test refresh rotates and stale reuse is detected"""
        result = auth.login("alice@example.com", PASSWORD)
        rotated = auth.refresh(result.tokens.refresh_token)

        assert rotated.session_id == result.tokens.session_id
        with pytest.raises(AuthError) as exc_info:
            auth.refresh(result.tokens.refresh_token)
        assert exc_info.value.code == AuthErrorCode.REUSE_DETECTED
