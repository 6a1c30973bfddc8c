"""
Role-Based Access Control (RBAC) Gate

Maps a validated identity and its role to an allow/deny decision. Roles form a
small closed set with no implied hierarchy: ``super_admin`` satisfies a
requirement only where it is listed explicitly. Denials are reported as False,
never raised, so callers can produce a uniform "forbidden" outcome.
"""

from enum import Enum
from typing import Dict, FrozenSet, Iterable


class Role(Enum):
    """Identity roles"""
    CLIENT = "client"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class Capability(Enum):
    """Operations guarded by the gate"""
    VIEW_OWN_ACCOUNTS = "view_own_accounts"
    CREATE_TRANSFER = "create_transfer"
    VIEW_OWN_TRANSACTIONS = "view_own_transactions"
    VIEW_ALL_TRANSACTIONS = "view_all_transactions"
    DECIDE_TRANSACTION = "decide_transaction"
    VIEW_ADMIN_DASHBOARD = "view_admin_dashboard"
    VIEW_AUDIT_LOG = "view_audit_log"
    MANAGE_IDENTITIES = "manage_identities"


STAFF_ROLES: FrozenSet[Role] = frozenset({Role.ADMIN, Role.SUPER_ADMIN})
CLIENT_ROLES: FrozenSet[Role] = frozenset({Role.CLIENT})

CAPABILITY_ROLES: Dict[Capability, FrozenSet[Role]] = {
    Capability.VIEW_OWN_ACCOUNTS: CLIENT_ROLES,
    Capability.CREATE_TRANSFER: CLIENT_ROLES,
    Capability.VIEW_OWN_TRANSACTIONS: CLIENT_ROLES,
    Capability.VIEW_ALL_TRANSACTIONS: STAFF_ROLES,
    Capability.DECIDE_TRANSACTION: STAFF_ROLES,
    Capability.VIEW_ADMIN_DASHBOARD: STAFF_ROLES,
    Capability.VIEW_AUDIT_LOG: frozenset({Role.SUPER_ADMIN}),
    Capability.MANAGE_IDENTITIES: frozenset({Role.SUPER_ADMIN}),
}


def parse_role(value) -> Role:
    """Convert a stored or claimed role value to a Role; raises ValueError if unknown"""
    if isinstance(value, Role):
        return value
    return Role(value)


def authorize(identity, required_roles: Iterable[Role]) -> bool:
    """
    Decide whether ``identity`` holds one of ``required_roles``.

    ``identity`` is anything with a ``role`` attribute (Identity, Principal).
    Unknown role values are denied.
    """
    if identity is None:
        return False
    try:
        role = parse_role(identity.role)
    except (AttributeError, ValueError):
        return False
    return role in frozenset(required_roles)


def authorize_capability(identity, capability: Capability) -> bool:
    """Decide whether ``identity`` may exercise ``capability``"""
    return authorize(identity, CAPABILITY_ROLES[capability])
