"""
Administrative endpoints: transaction review, decisions and audit
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from .dependencies import get_banking_system, guarded
from .schemas import AuditEventResponse, AuditIntegrityResponse, TransactionResponse
from ..errors import TxError, TxErrorCode, ValidationError
from ..rbac import CAPABILITY_ROLES, Capability
from ..system import BankingSystem
from ..tokens import Principal
from ..transactions import Decision, TransactionStatus


router = APIRouter()


@router.get("/dashboard")
def dashboard(
    principal: Principal = Depends(guarded(CAPABILITY_ROLES[Capability.VIEW_ADMIN_DASHBOARD])),
    system: BankingSystem = Depends(get_banking_system)
):
    """Transaction counts per status and pending volume"""
    return system.reporting_engine.admin_dashboard()


@router.get("/transactions", response_model=List[TransactionResponse])
def list_transactions(
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    principal: Principal = Depends(guarded(CAPABILITY_ROLES[Capability.VIEW_ALL_TRANSACTIONS])),
    system: BankingSystem = Depends(get_banking_system)
):
    """List all transactions, newest first, optionally filtered by status"""
    status_filter = None
    if status:
        try:
            status_filter = TransactionStatus(status)
        except ValueError:
            raise ValidationError("status", f"Unknown transaction status: {status}")

    transactions = system.transaction_engine.list_transactions(status=status_filter, limit=limit)
    return [TransactionResponse.from_transaction(t) for t in transactions]


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: str,
    principal: Principal = Depends(guarded(CAPABILITY_ROLES[Capability.VIEW_ALL_TRANSACTIONS])),
    system: BankingSystem = Depends(get_banking_system)
):
    """Get one transaction"""
    transaction = system.transaction_engine.get_transaction(transaction_id)
    if not transaction:
        raise TxError(TxErrorCode.NOT_FOUND, f"Transaction {transaction_id} not found")
    return TransactionResponse.from_transaction(transaction)


@router.put("/transactions/{transaction_id}/approve", response_model=TransactionResponse)
def approve_transaction(
    transaction_id: str,
    principal: Principal = Depends(guarded(CAPABILITY_ROLES[Capability.DECIDE_TRANSACTION])),
    system: BankingSystem = Depends(get_banking_system)
):
    """Approve a pending transaction; the response shows the settlement outcome"""
    transaction = system.transaction_engine.decide(transaction_id, principal, Decision.APPROVE)
    return TransactionResponse.from_transaction(transaction)


@router.put("/transactions/{transaction_id}/reject", response_model=TransactionResponse)
def reject_transaction(
    transaction_id: str,
    principal: Principal = Depends(guarded(CAPABILITY_ROLES[Capability.DECIDE_TRANSACTION])),
    system: BankingSystem = Depends(get_banking_system)
):
    """Reject a pending transaction and release its hold"""
    transaction = system.transaction_engine.decide(transaction_id, principal, Decision.REJECT)
    return TransactionResponse.from_transaction(transaction)


@router.get("/audit", response_model=List[AuditEventResponse])
def list_audit_events(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    principal: Principal = Depends(guarded(CAPABILITY_ROLES[Capability.VIEW_AUDIT_LOG])),
    system: BankingSystem = Depends(get_banking_system)
):
    """Most recent audit entries, in chain order"""
    if entity_type and entity_id:
        events = system.audit_trail.get_events_for_entity(entity_type, entity_id, limit=limit)
    else:
        events = system.audit_trail.get_all_events(limit=limit)
    return [AuditEventResponse.from_event(e) for e in events]


@router.get("/audit/verify", response_model=AuditIntegrityResponse)
def verify_audit_chain(
    principal: Principal = Depends(guarded(CAPABILITY_ROLES[Capability.VIEW_AUDIT_LOG])),
    system: BankingSystem = Depends(get_banking_system)
):
    """Recompute every hash in the audit chain"""
    return system.audit_trail.verify_integrity()


@router.post("/identities/{identity_id}/lock")
def lock_identity(
    identity_id: str,
    principal: Principal = Depends(guarded(CAPABILITY_ROLES[Capability.MANAGE_IDENTITIES])),
    system: BankingSystem = Depends(get_banking_system)
):
    """Lock an identity indefinitely and revoke its sessions"""
    if not system.auth_service.lock_identity(identity_id, actor_id=principal.id):
        raise HTTPException(status_code=404, detail="Identity not found")
    return {"identity_id": identity_id, "status": "locked"}


@router.post("/identities/{identity_id}/unlock")
def unlock_identity(
    identity_id: str,
    principal: Principal = Depends(guarded(CAPABILITY_ROLES[Capability.MANAGE_IDENTITIES])),
    system: BankingSystem = Depends(get_banking_system)
):
    """Lift a lock on an identity"""
    if not system.auth_service.unlock_identity(identity_id, actor_id=principal.id):
        raise HTTPException(status_code=404, detail="Identity not found")
    return {"identity_id": identity_id, "status": "active"}
