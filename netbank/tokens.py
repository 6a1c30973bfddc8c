"""
Token Service Module

Issues, validates, rotates and revokes authentication tokens.

Access tokens are short-lived HS256 JWTs carrying identity id, role, session id
and token id. Refresh tokens are opaque random strings stored only as SHA-256
hashes; each session keeps a rotation generation counter and exactly one live
refresh token. Presenting a refresh token from a superseded generation is
treated as compromise and voids the whole session chain.
"""

import hashlib
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import jwt

from .audit import AuditTrail, AuditEventType, AuditOutcome
from .config import BankConfig
from .errors import AuthError, AuthErrorCode, CacheUnavailable, OperationTimeout
from .logging_config import get_logger, log_action
from .rbac import Role
from .revocation import RevocationCache
from .storage import StorageInterface, StorageRecord


@dataclass(frozen=True)
class Principal:
    """Identity as established by a validated access token"""
    identity_id: str
    role: Role
    session_id: str
    token_id: str
    expires_at: datetime

    @property
    def id(self) -> str:
        return self.identity_id


@dataclass(frozen=True)
class TokenPair:
    """Tokens handed to a client at login or rotation"""
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: str


@dataclass
class Session(StorageRecord):
    """One login's refresh chain"""
    identity_id: str
    role: Role
    generation: int
    current_token_hash: str
    expires_at: datetime
    revoked: bool = False
    revoked_reason: Optional[str] = None
    revoked_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Session':
        data = dict(data)
        data['role'] = Role(data['role'])
        data['expires_at'] = datetime.fromisoformat(data['expires_at'])
        if data.get('revoked_at'):
            data['revoked_at'] = datetime.fromisoformat(data['revoked_at'])
        return super().from_dict(data)


@dataclass
class RefreshToken(StorageRecord):
    """A refresh token generation; the id is the token's SHA-256 hash"""
    session_id: str
    generation: int
    expires_at: datetime
    revoked: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RefreshToken':
        data = dict(data)
        data['expires_at'] = datetime.fromisoformat(data['expires_at'])
        return super().from_dict(data)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def check_deadline(deadline: Optional[float]) -> None:
    """Raise OperationTimeout if a monotonic deadline has passed"""
    if deadline is not None and time.monotonic() >= deadline:
        raise OperationTimeout("Request deadline expired before commit")


class TokenService:
    """Token lifecycle management"""

    def __init__(self, storage: StorageInterface, revocation_cache: RevocationCache,
                 audit_trail: AuditTrail, config: BankConfig,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.revocation_cache = revocation_cache
        self.audit_trail = audit_trail
        self.secret = config.jwt_secret
        self.algorithm = config.jwt_algorithm
        self.access_ttl = timedelta(minutes=config.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(hours=config.refresh_token_ttl_hours)
        self.sessions_table = "sessions"
        self.tokens_table = "refresh_tokens"
        self.logger = get_logger("netbank.tokens")
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # Issuance

    def _encode_access_token(self, identity_id: str, role: Role, session_id: str,
                             now: datetime) -> Tuple[str, datetime]:
        expires_at = now + self.access_ttl
        payload = {
            'sub': identity_id,
            'role': role.value,
            'sid': session_id,
            'jti': str(uuid.uuid4()),
            'typ': 'access',
            'iat': now,
            'exp': expires_at,
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm), expires_at

    def _new_refresh_token(self, session_id: str) -> str:
        return f"{session_id}.{secrets.token_urlsafe(32)}"

    def open_session(self, identity) -> Tuple[TokenPair, Session]:
        """
        Create a session and its first token pair without auditing.

        Callers run this inside their own atomic block and audit after commit.
        """
        now = self._clock()
        session_id = str(uuid.uuid4())
        refresh_token = self._new_refresh_token(session_id)
        token_hash = hash_token(refresh_token)
        role = identity.role

        session = Session(
            id=session_id,
            created_at=now,
            updated_at=now,
            identity_id=identity.id,
            role=role,
            generation=1,
            current_token_hash=token_hash,
            expires_at=now + self.refresh_ttl,
        )
        record = RefreshToken(
            id=token_hash,
            created_at=now,
            updated_at=now,
            session_id=session_id,
            generation=1,
            expires_at=session.expires_at,
        )

        with self.storage.atomic():
            self.storage.save(self.sessions_table, session_id, session.to_dict())
            if not self.storage.insert_if_absent(self.tokens_table, token_hash, record.to_dict()):
                raise RuntimeError("Refresh token hash collision")

        access_token, access_expires_at = self._encode_access_token(identity.id, role, session_id, now)
        pair = TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=session.expires_at,
            session_id=session_id,
        )
        return pair, session

    def audit_issue(self, session: Session) -> None:
        self.audit_trail.log_event(
            AuditEventType.TOKEN_ISSUED,
            "session",
            session.id,
            {'generation': session.generation, 'expires_at': session.expires_at},
            actor_id=session.identity_id,
            session_id=session.id
        )

    def issue(self, identity, deadline: Optional[float] = None) -> TokenPair:
        """
        Issue an access/refresh token pair for a new session

        Args:
            identity: Identity (anything with ``id`` and ``role``)
            deadline: Optional monotonic deadline checked before commit

        Returns:
            TokenPair for the new session
        """
        with self.storage.atomic():
            pair, session = self.open_session(identity)
            check_deadline(deadline)

        self.audit_issue(session)
        log_action(
            self.logger, "info", "Session opened",
            user_id=identity.id, action="token_issue", resource=f"session:{session.id}"
        )
        return pair

    # Validation

    def validate_access(self, token: str) -> Principal:
        """
        Validate an access token

        Raises:
            AuthError: EXPIRED, MALFORMED, REVOKED, or UNAVAILABLE when the
                revocation cache cannot answer (fail closed)
        """
        if not token:
            raise AuthError(AuthErrorCode.MALFORMED, "Missing token")
        try:
            payload = jwt.decode(
                token, self.secret, algorithms=[self.algorithm],
                options={'require': ['exp', 'iat', 'sub', 'sid', 'jti', 'role']}
            )
        except jwt.ExpiredSignatureError:
            raise AuthError(AuthErrorCode.EXPIRED, "Token expired")
        except jwt.InvalidTokenError:
            raise AuthError(AuthErrorCode.MALFORMED, "Invalid token")

        if payload.get('typ') != 'access':
            raise AuthError(AuthErrorCode.MALFORMED, "Not an access token")
        try:
            role = Role(payload['role'])
        except ValueError:
            raise AuthError(AuthErrorCode.MALFORMED, "Unknown role claim")

        try:
            revoked = self.revocation_cache.is_revoked(f"session:{payload['sid']}")
        except CacheUnavailable as e:
            self.logger.error(f"Access validation failed closed: {e}")
            raise AuthError(AuthErrorCode.UNAVAILABLE, "Authentication temporarily unavailable")
        if revoked:
            raise AuthError(AuthErrorCode.REVOKED, "Token revoked")

        return Principal(
            identity_id=payload['sub'],
            role=role,
            session_id=payload['sid'],
            token_id=payload['jti'],
            expires_at=datetime.fromtimestamp(payload['exp'], tz=timezone.utc),
        )

    # Rotation

    def _reject_rotation(self, session_id: Optional[str], identity_id: Optional[str],
                         code: AuthErrorCode, message: str) -> AuthError:
        self.audit_trail.log_event(
            AuditEventType.TOKEN_ROTATED,
            "session",
            session_id or "unknown",
            {'reason': code.value},
            actor_id=identity_id,
            session_id=session_id,
            outcome=AuditOutcome.FAILURE
        )
        return AuthError(code, message)

    def rotate(self, refresh_token: str, deadline: Optional[float] = None) -> TokenPair:
        """
        Exchange a refresh token for a new pair at generation + 1

        Raises:
            AuthError: MALFORMED, EXPIRED, REVOKED, or REUSE_DETECTED (the whole
                session chain is revoked before this is raised)
        """
        if not refresh_token or "." not in refresh_token:
            raise self._reject_rotation(None, None, AuthErrorCode.MALFORMED, "Malformed refresh token")

        presented_hash = hash_token(refresh_token)
        record_data = self.storage.load(self.tokens_table, presented_hash)
        if not record_data:
            raise self._reject_rotation(None, None, AuthErrorCode.MALFORMED, "Unknown refresh token")
        record = RefreshToken.from_dict(record_data)

        session_data = self.storage.load(self.sessions_table, record.session_id)
        if not session_data:
            raise self._reject_rotation(record.session_id, None, AuthErrorCode.REVOKED, "Session not found")
        session = Session.from_dict(session_data)

        if session.revoked:
            raise self._reject_rotation(session.id, session.identity_id, AuthErrorCode.REVOKED,
                                        "Session revoked")

        if record.generation != session.generation:
            self._handle_reuse(session, record.generation)
            raise AuthError(AuthErrorCode.REUSE_DETECTED, "Refresh token reuse detected")

        now = self._clock()
        if now >= record.expires_at:
            raise self._reject_rotation(session.id, session.identity_id, AuthErrorCode.EXPIRED,
                                        "Refresh token expired")

        new_token = self._new_refresh_token(session.id)
        new_hash = hash_token(new_token)
        new_generation = session.generation + 1

        with self.storage.atomic():
            won = self.storage.compare_and_set(
                self.sessions_table, session.id,
                expected={'generation': session.generation, 'revoked': False},
                updates={'generation': new_generation, 'current_token_hash': new_hash,
                         'updated_at': now.isoformat()}
            )
            if won:
                self.storage.compare_and_set(
                    self.tokens_table, presented_hash,
                    expected={'revoked': False},
                    updates={'revoked': True, 'updated_at': now.isoformat()}
                )
                new_record = RefreshToken(
                    id=new_hash,
                    created_at=now,
                    updated_at=now,
                    session_id=session.id,
                    generation=new_generation,
                    expires_at=session.expires_at,
                )
                if not self.storage.insert_if_absent(self.tokens_table, new_hash, new_record.to_dict()):
                    raise RuntimeError("Refresh token hash collision")
                check_deadline(deadline)

        if not won:
            # Another rotation consumed this generation first: same token presented twice
            self._handle_reuse(session, record.generation)
            raise AuthError(AuthErrorCode.REUSE_DETECTED, "Refresh token reuse detected")

        access_token, access_expires_at = self._encode_access_token(
            session.identity_id, session.role, session.id, now
        )

        self.audit_trail.log_event(
            AuditEventType.TOKEN_ROTATED,
            "session",
            session.id,
            {'from_generation': session.generation, 'to_generation': new_generation},
            actor_id=session.identity_id,
            session_id=session.id
        )

        return TokenPair(
            access_token=access_token,
            refresh_token=new_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=session.expires_at,
            session_id=session.id,
        )

    def _handle_reuse(self, session: Session, presented_generation: int) -> None:
        """Void the entire chain after a superseded token was presented"""
        self._void_session(session.id, "reuse_detected")

        log_action(
            self.logger, "warning", "Refresh token reuse detected, session chain revoked",
            user_id=session.identity_id, action="token_reuse", resource=f"session:{session.id}",
            extra={'presented_generation': presented_generation, 'current_generation': session.generation}
        )
        self.audit_trail.log_event(
            AuditEventType.TOKEN_REUSE_DETECTED,
            "session",
            session.id,
            {'presented_generation': presented_generation, 'current_generation': session.generation},
            actor_id=session.identity_id,
            session_id=session.id,
            outcome=AuditOutcome.DENIED
        )

    # Revocation

    def _void_session(self, session_id: str, reason: str) -> Tuple[Optional[Session], bool]:
        """
        Mark a session revoked and push the mark to the revocation cache

        Returns:
            (session, newly_revoked); session is None if it does not exist.
            The cache entry is refreshed even when the session was already revoked.
        """
        now = self._clock()
        newly_revoked = []

        def _mark(data: Dict[str, Any]) -> Dict[str, Any]:
            if not data.get('revoked'):
                data.update({'revoked': True, 'revoked_reason': reason,
                             'revoked_at': now.isoformat(), 'updated_at': now.isoformat()})
                newly_revoked.append(True)
            return data

        data = self.storage.update(self.sessions_table, session_id, _mark)
        if data is None:
            return None, False

        ttl = max(int(self.access_ttl.total_seconds()), 1)
        try:
            self.revocation_cache.revoke(f"session:{session_id}", ttl)
        except CacheUnavailable as e:
            self.logger.error(f"Session {session_id} revoked in storage but not in cache: {e}")
            raise AuthError(AuthErrorCode.UNAVAILABLE, "Revocation could not be propagated")
        return Session.from_dict(data), bool(newly_revoked)

    def revoke(self, session_id: str, actor_id: Optional[str] = None, reason: str = "logout") -> bool:
        """
        Void a session: its current and any future rotation generation

        Returns:
            False if the session does not exist or was already revoked
        """
        session, newly_revoked = self._void_session(session_id, reason)
        if session is None or not newly_revoked:
            return False

        self.audit_trail.log_event(
            AuditEventType.TOKEN_REVOKED,
            "session",
            session_id,
            {'reason': reason, 'generation': session.generation},
            actor_id=actor_id or session.identity_id,
            session_id=session_id
        )
        return True

    def revoke_identity_sessions(self, identity_id: str, actor_id: Optional[str] = None,
                                 reason: str = "identity_locked") -> int:
        """Revoke every live session of an identity; returns how many were revoked"""
        revoked = 0
        for data in self.storage.find(self.sessions_table, {'identity_id': identity_id, 'revoked': False}):
            if self.revoke(data['id'], actor_id=actor_id, reason=reason):
                revoked += 1
        return revoked

    def get_session(self, session_id: str) -> Optional[Session]:
        data = self.storage.load(self.sessions_table, session_id)
        return Session.from_dict(data) if data else None

    def list_sessions(self, identity_id: str) -> List[Session]:
        sessions = [Session.from_dict(d) for d in self.storage.find(self.sessions_table, {'identity_id': identity_id})]
        return sorted(sessions, key=lambda s: s.created_at)
