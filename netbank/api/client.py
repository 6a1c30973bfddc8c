"""
Client endpoints: own accounts, own transactions and transfers
"""

from typing import List

from fastapi import APIRouter, Depends, Query, status

from .dependencies import get_banking_system, guarded, request_deadline
from .schemas import AccountResponse, TransactionResponse, TransferRequest
from ..rbac import CAPABILITY_ROLES, Capability
from ..system import BankingSystem
from ..tokens import Principal


router = APIRouter()


@router.get("/dashboard")
def dashboard(
    principal: Principal = Depends(guarded(CAPABILITY_ROLES[Capability.VIEW_OWN_ACCOUNTS])),
    system: BankingSystem = Depends(get_banking_system)
):
    """Accounts with balances and the most recent transactions"""
    return system.reporting_engine.client_dashboard(principal.id)


@router.get("/accounts", response_model=List[AccountResponse])
def list_accounts(
    principal: Principal = Depends(guarded(CAPABILITY_ROLES[Capability.VIEW_OWN_ACCOUNTS])),
    system: BankingSystem = Depends(get_banking_system)
):
    """List the caller's accounts"""
    accounts = system.account_manager.list_accounts(owner_id=principal.id)
    return [AccountResponse.from_account(a) for a in accounts]


@router.get("/transactions", response_model=List[TransactionResponse])
def list_transactions(
    limit: int = Query(50, ge=1, le=500),
    principal: Principal = Depends(guarded(CAPABILITY_ROLES[Capability.VIEW_OWN_TRANSACTIONS])),
    system: BankingSystem = Depends(get_banking_system)
):
    """Transactions touching any of the caller's accounts, newest first"""
    transactions = system.transaction_engine.list_for_identity(principal.id, limit=limit)
    return [TransactionResponse.from_transaction(t) for t in transactions]


@router.post("/payments/transfer", response_model=TransactionResponse,
             status_code=status.HTTP_201_CREATED)
def create_transfer(
    request: TransferRequest,
    principal: Principal = Depends(
        guarded(CAPABILITY_ROLES[Capability.CREATE_TRANSFER], rate_limited=True)
    ),
    system: BankingSystem = Depends(get_banking_system),
    deadline: float = Depends(request_deadline)
):
    """Submit a transfer for approval; retries with the same idempotency key are safe"""
    transaction = system.transaction_engine.create_transfer(
        principal,
        from_account_id=request.from_account_id,
        to_account_id=request.to_account_id,
        amount=request.amount,
        idempotency_key=request.idempotency_key,
        description=request.description,
        deadline=deadline
    )
    return TransactionResponse.from_transaction(transaction)
