"""
Pydantic schemas for API requests and responses
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..accounts import Account
from ..audit import AuditEvent
from ..tokens import TokenPair
from ..transactions import Transaction


# Auth schemas
class LoginRequest(BaseModel):
    email: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: str

    @classmethod
    def from_pair(cls, pair: TokenPair) -> 'TokenResponse':
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            access_expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
            session_id=pair.session_id,
        )


class LoginResponse(TokenResponse):
    identity_id: str
    role: str


# Client schemas
class TransferRequest(BaseModel):
    from_account_id: str
    to_account_id: str
    amount: int = Field(..., description="Amount in minor units (cents)")
    idempotency_key: str = Field(..., description="Client-chosen key; retries reuse it")
    description: str = ""


class AccountResponse(BaseModel):
    id: str
    currency: str
    balance: int
    held: int
    available_balance: int

    @classmethod
    def from_account(cls, account: Account) -> 'AccountResponse':
        return cls(
            id=account.id,
            currency=account.currency,
            balance=account.balance,
            held=account.held,
            available_balance=account.available_balance,
        )


class TransactionResponse(BaseModel):
    id: str
    status: str
    initiator_id: str
    source_account_id: str
    destination_account_id: str
    amount: int
    currency: str
    idempotency_key: str
    description: str
    created_at: datetime
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> 'TransactionResponse':
        return cls(
            id=transaction.id,
            status=transaction.status.value,
            initiator_id=transaction.initiator_id,
            source_account_id=transaction.source_account_id,
            destination_account_id=transaction.destination_account_id,
            amount=transaction.amount,
            currency=transaction.currency,
            idempotency_key=transaction.idempotency_key,
            description=transaction.description,
            created_at=transaction.created_at,
            decided_by=transaction.decided_by,
            decided_at=transaction.decided_at,
            settled_at=transaction.settled_at,
            failure_reason=transaction.failure_reason,
        )


# Admin schemas
class AuditEventResponse(BaseModel):
    id: str
    created_at: datetime
    event_type: str
    entity_type: str
    entity_id: str
    outcome: str
    actor_id: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    current_hash: str

    @classmethod
    def from_event(cls, event: AuditEvent) -> 'AuditEventResponse':
        return cls(
            id=event.id,
            created_at=event.created_at,
            event_type=event.event_type.value,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            outcome=event.outcome.value,
            actor_id=event.actor_id,
            session_id=event.session_id,
            metadata=event.metadata,
            current_hash=event.current_hash,
        )


class AuditIntegrityResponse(BaseModel):
    valid: bool
    total_events: int
    hash_errors: List[Dict[str, Any]]
    chain_breaks: List[Dict[str, Any]]


class ErrorResponse(BaseModel):
    error: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
