"""
Authentication Service Module

Orchestrates credential verification, login lockout and the token service.
Every login decision writes exactly one audit entry of its own.
"""

from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Callable, Optional

from .audit import AuditTrail, AuditEventType, AuditOutcome
from .config import BankConfig
from .errors import AuthError, AuthErrorCode
from .identities import (
    Identity, IdentityManager, IdentityStatus, burn_password_check, verify_password
)
from .logging_config import get_logger, log_action
from .tokens import TokenPair, TokenService, check_deadline


@dataclass(frozen=True)
class LockoutPolicy:
    """Consecutive-failure lockout configuration"""
    max_failed_attempts: int = 5
    failure_window: timedelta = timedelta(minutes=15)
    lockout_duration: timedelta = timedelta(minutes=15)

    @classmethod
    def from_config(cls, config: BankConfig) -> 'LockoutPolicy':
        return cls(
            max_failed_attempts=config.max_failed_logins,
            failure_window=timedelta(minutes=config.failed_login_window_minutes),
            lockout_duration=timedelta(minutes=config.lockout_minutes),
        )


@dataclass(frozen=True)
class LoginResult:
    """Authenticated identity and its fresh token pair"""
    identity: Identity
    tokens: TokenPair


class AuthService:
    """Login, logout and refresh"""

    def __init__(self, identity_manager: IdentityManager, token_service: TokenService,
                 audit_trail: AuditTrail, policy: LockoutPolicy,
                 clock: Optional[Callable[[], datetime]] = None):
        self.identities = identity_manager
        self.tokens = token_service
        self.audit_trail = audit_trail
        self.policy = policy
        self.logger = get_logger("netbank.auth")
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def login(self, email: str, password: str, deadline: Optional[float] = None) -> LoginResult:
        """
        Verify credentials and open a session

        The password hash is always computed, also for unknown e-mails and
        locked identities, so response timing does not reveal either. While a
        lock holds, even the correct password yields LOCKED.

        Raises:
            AuthError: INVALID_CREDENTIALS or LOCKED
            OperationTimeout: Deadline expired; no session was created
        """
        now = self._clock()
        identity = self.identities.get_identity_by_email(email)

        if identity is None:
            burn_password_check(password)
            self.audit_trail.log_event(
                AuditEventType.LOGIN_FAILED,
                "identity",
                "unknown",
                {'email': email, 'reason': 'unknown_identity'},
                outcome=AuditOutcome.FAILURE
            )
            raise AuthError(AuthErrorCode.INVALID_CREDENTIALS, "Invalid credentials")

        password_ok = verify_password(password, identity.password_salt, identity.password_hash)

        if identity.lock_active_at(now):
            self._deny_locked(identity)

        if not password_ok:
            self._register_failure(identity.id, now)

        def _admit(current: Identity) -> None:
            # Re-checked under the exclusive update: a concurrent failure may have locked it
            if current.lock_active_at(now):
                raise AuthError(AuthErrorCode.LOCKED, "Account is locked")
            self._reset_failures(current, now)

        try:
            with self.identities.storage.atomic():
                identity = self.identities.apply(identity.id, _admit)
                pair, session = self.tokens.open_session(identity)
                check_deadline(deadline)
        except AuthError:
            self._deny_locked(self.identities.get_identity(identity.id))

        self.tokens.audit_issue(session)
        self.audit_trail.log_event(
            AuditEventType.LOGIN_SUCCESS,
            "identity",
            identity.id,
            {'session_id': session.id},
            actor_id=identity.id,
            session_id=session.id
        )
        log_action(
            self.logger, "info", "Login succeeded",
            user_id=identity.id, action="login", resource=f"session:{session.id}"
        )
        return LoginResult(identity=identity, tokens=pair)

    def _deny_locked(self, identity: Identity) -> None:
        self.audit_trail.log_event(
            AuditEventType.LOGIN_LOCKED,
            "identity",
            identity.id,
            {'locked_until': identity.locked_until},
            actor_id=identity.id,
            outcome=AuditOutcome.DENIED
        )
        raise AuthError(AuthErrorCode.LOCKED, "Account is locked")

    def _register_failure(self, identity_id: str, now: datetime) -> None:
        """Count a failed attempt, lock on reaching the threshold, and raise"""
        def _count(identity: Identity) -> None:
            if identity.is_locked and not identity.lock_active_at(now):
                # Lapsed lock: the count starts over
                identity.status = IdentityStatus.ACTIVE
                identity.locked_until = None
                identity.first_failed_at = None
            if identity.first_failed_at is None or now - identity.first_failed_at > self.policy.failure_window:
                identity.failed_login_attempts = 0
                identity.first_failed_at = now
            identity.failed_login_attempts += 1
            if identity.failed_login_attempts >= self.policy.max_failed_attempts:
                identity.status = IdentityStatus.LOCKED
                identity.locked_until = now + self.policy.lockout_duration

        identity = self.identities.apply(identity_id, _count)

        self.audit_trail.log_event(
            AuditEventType.LOGIN_FAILED,
            "identity",
            identity_id,
            {'reason': 'invalid_password', 'failed_attempts': identity.failed_login_attempts,
             'locked': identity.is_locked},
            actor_id=identity_id,
            outcome=AuditOutcome.FAILURE
        )

        if identity.is_locked:
            log_action(
                self.logger, "warning", "Identity locked after consecutive failed logins",
                user_id=identity_id, action="lockout", resource=f"identity:{identity_id}",
                extra={'failed_attempts': identity.failed_login_attempts,
                       'locked_until': identity.locked_until}
            )
            raise AuthError(AuthErrorCode.LOCKED, "Account is locked")
        raise AuthError(AuthErrorCode.INVALID_CREDENTIALS, "Invalid credentials")

    @staticmethod
    def _reset_failures(identity: Identity, now: datetime) -> None:
        identity.status = IdentityStatus.ACTIVE
        identity.locked_until = None
        identity.failed_login_attempts = 0
        identity.first_failed_at = None
        identity.last_login = now

    def logout(self, session_id: str, actor_id: Optional[str] = None) -> bool:
        """Revoke the session and record the logout"""
        revoked = self.tokens.revoke(session_id, actor_id=actor_id, reason="logout")
        if revoked:
            self.audit_trail.log_event(
                AuditEventType.LOGOUT,
                "session",
                session_id,
                {},
                actor_id=actor_id,
                session_id=session_id
            )
        return revoked

    def refresh(self, refresh_token: str, deadline: Optional[float] = None) -> TokenPair:
        """Rotate a refresh token (see TokenService.rotate)"""
        return self.tokens.rotate(refresh_token, deadline=deadline)

    def lock_identity(self, identity_id: str, actor_id: str) -> bool:
        """Administratively lock an identity and revoke all its sessions"""
        if not self.identities.lock_identity(identity_id, actor_id):
            return False
        self.tokens.revoke_identity_sessions(identity_id, actor_id=actor_id)
        return True

    def unlock_identity(self, identity_id: str, actor_id: str) -> bool:
        return self.identities.unlock_identity(identity_id, actor_id)
