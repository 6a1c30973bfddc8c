"""
Identity Module

Identities are created by onboarding flows outside this service; this module is
the store the authentication core reads and guards. Credentials are salted
scrypt hashes compared in constant time.
"""

import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Any, List, Optional

from .audit import AuditTrail, AuditEventType
from .errors import ValidationError
from .rbac import Role
from .storage import StorageInterface, StorageRecord


class IdentityStatus(Enum):
    """Identity lifecycle status"""
    ACTIVE = "active"
    LOCKED = "locked"


@dataclass
class Identity(StorageRecord):
    """Authenticable principal with a single role"""
    email: str
    role: Role
    password_hash: str
    password_salt: str
    status: IdentityStatus = IdentityStatus.ACTIVE
    failed_login_attempts: int = 0
    first_failed_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None  # None while locked means locked until unlocked
    last_login: Optional[datetime] = None

    @property
    def is_locked(self) -> bool:
        return self.status == IdentityStatus.LOCKED

    def lock_active_at(self, now: datetime) -> bool:
        """Check whether the lock still holds at ``now``"""
        if not self.is_locked:
            return False
        return self.locked_until is None or now < self.locked_until

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Identity':
        data = dict(data)
        data['role'] = Role(data['role'])
        data['status'] = IdentityStatus(data['status'])
        for key in ('first_failed_at', 'locked_until', 'last_login'):
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        return super().from_dict(data)


def generate_salt() -> str:
    """Generate random salt for password hashing"""
    return secrets.token_hex(16)


def hash_password(password: str, salt: str) -> str:
    """Hash password with salt using scrypt"""
    return hashlib.scrypt(
        password.encode(),
        salt=salt.encode(),
        n=16384, r=8, p=1
    ).hex()


def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    """Constant-time comparison of a candidate password against a stored hash"""
    candidate = hash_password(password, salt)
    return hmac.compare_digest(candidate, expected_hash)


# Used for unknown e-mails so the response time does not reveal whether an identity exists
_DUMMY_SALT = generate_salt()
_DUMMY_HASH = hash_password(secrets.token_urlsafe(16), _DUMMY_SALT)


def burn_password_check(password: str) -> None:
    verify_password(password, _DUMMY_SALT, _DUMMY_HASH)


class IdentityManager:
    """Stores identities and applies guarded updates to them"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "identities"
        self.email_index = "identity_emails"
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    def create_identity(self, email: str, password: str, role: Role,
                        created_by: Optional[str] = None) -> Identity:
        """
        Create a new identity

        Raises:
            ValidationError: If the e-mail is malformed, already registered,
                or the password is empty
        """
        normalized = self._normalize_email(email)
        if "@" not in normalized or normalized.startswith("@") or normalized.endswith("@"):
            raise ValidationError("email", "Invalid e-mail address")
        if not password:
            raise ValidationError("password", "Password must not be empty")

        now = self._clock()
        salt = generate_salt()
        identity = Identity(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            email=normalized,
            role=role,
            password_hash=hash_password(password, salt),
            password_salt=salt,
        )

        with self.storage.atomic():
            if not self.storage.insert_if_absent(self.email_index, normalized, {'identity_id': identity.id}):
                raise ValidationError("email", "E-mail already registered")
            self.storage.save(self.table_name, identity.id, identity.to_dict())

        self.audit_trail.log_event(
            AuditEventType.IDENTITY_CREATED,
            "identity",
            identity.id,
            {'email': normalized, 'role': role.value},
            actor_id=created_by
        )
        return identity

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        """Get identity by ID"""
        data = self.storage.load(self.table_name, identity_id)
        if not data:
            return None
        return Identity.from_dict(data)

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        """Get identity by e-mail (case-insensitive)"""
        entry = self.storage.load(self.email_index, self._normalize_email(email))
        if not entry:
            return None
        return self.get_identity(entry['identity_id'])

    def list_identities(self, role: Optional[Role] = None) -> List[Identity]:
        """List identities, optionally filtered by role"""
        filters = {'role': role.value} if role else {}
        identities = [Identity.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        return sorted(identities, key=lambda i: i.email)

    def apply(self, identity_id: str, mutate: Callable[[Identity], None]) -> Optional[Identity]:
        """
        Exclusive read-modify-write of an identity.

        ``mutate`` changes the Identity in place; ``updated_at`` is refreshed.
        """
        def _mutate(data: Dict[str, Any]) -> Dict[str, Any]:
            identity = Identity.from_dict(data)
            mutate(identity)
            identity.updated_at = self._clock()
            return identity.to_dict()

        data = self.storage.update(self.table_name, identity_id, _mutate)
        return Identity.from_dict(data) if data else None

    def lock_identity(self, identity_id: str, actor_id: str,
                      until: Optional[datetime] = None) -> bool:
        """Lock an identity administratively (indefinitely unless ``until`` is given)"""
        def _lock(identity: Identity) -> None:
            identity.status = IdentityStatus.LOCKED
            identity.locked_until = until

        identity = self.apply(identity_id, _lock)
        if not identity:
            return False

        self.audit_trail.log_event(
            AuditEventType.IDENTITY_LOCKED,
            "identity",
            identity_id,
            {'reason': 'administrative', 'locked_until': until},
            actor_id=actor_id
        )
        return True

    def unlock_identity(self, identity_id: str, actor_id: str) -> bool:
        """Unlock an identity and reset its failure counter"""
        def _unlock(identity: Identity) -> None:
            identity.status = IdentityStatus.ACTIVE
            identity.locked_until = None
            identity.failed_login_attempts = 0
            identity.first_failed_at = None

        identity = self.apply(identity_id, _unlock)
        if not identity:
            return False

        self.audit_trail.log_event(
            AuditEventType.IDENTITY_UNLOCKED,
            "identity",
            identity_id,
            {},
            actor_id=actor_id
        )
        return True
