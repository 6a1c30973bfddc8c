"""
Account Management Module

Accounts hold an integer balance in minor units plus the sum of holds placed by
pending transfers. Available balance is ``balance - held``. Every mutation is an
exclusive update; settlement applies the debit and the credit in one atomic block
so no intermediate state is observable.
"""

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .audit import AuditTrail, AuditEventType
from .errors import TxError, TxErrorCode, ValidationError
from .storage import StorageInterface, StorageRecord


CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")


@dataclass
class Account(StorageRecord):
    """Ledger account owned by an identity"""
    owner_id: str
    currency: str
    balance: int = 0  # Minor units
    held: int = 0     # Sum of holds for pending transfers

    @property
    def available_balance(self) -> int:
        return self.balance - self.held


class AccountManager:
    """Guarded access to account balances"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "accounts"
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def open_account(self, owner_id: str, currency: str, initial_balance: int = 0,
                     actor_id: Optional[str] = None) -> Account:
        """
        Open an account (onboarding helper)

        Raises:
            ValidationError: If the currency code or opening balance is invalid
        """
        if not CURRENCY_PATTERN.match(currency or ""):
            raise ValidationError("currency", "Currency must be a 3-letter ISO code")
        if not isinstance(initial_balance, int) or initial_balance < 0:
            raise ValidationError("initial_balance", "Opening balance must be a non-negative integer")

        now = self._clock()
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            currency=currency,
            balance=initial_balance,
        )
        self.storage.save(self.table_name, account.id, account.to_dict())

        self.audit_trail.log_event(
            AuditEventType.ACCOUNT_OPENED,
            "account",
            account.id,
            {'owner_id': owner_id, 'currency': currency, 'initial_balance': initial_balance},
            actor_id=actor_id
        )
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.table_name, account_id)
        if not data:
            return None
        return Account.from_dict(data)

    def list_accounts(self, owner_id: Optional[str] = None) -> List[Account]:
        """List accounts, optionally only those of one owner"""
        filters = {'owner_id': owner_id} if owner_id else {}
        accounts = [Account.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        return sorted(accounts, key=lambda a: a.created_at)

    def _require(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if not account:
            raise TxError(TxErrorCode.INVALID_ACCOUNT, f"Account {account_id} not found")
        return account

    def place_hold(self, account_id: str, amount: int) -> Account:
        """
        Reserve ``amount`` against the available balance

        Raises:
            TxError: INVALID_ACCOUNT, INSUFFICIENT_FUNDS
        """
        def _hold(data):
            account = Account.from_dict(data)
            if account.available_balance < amount:
                raise TxError(
                    TxErrorCode.INSUFFICIENT_FUNDS,
                    "Insufficient available balance",
                    {'account_id': account_id, 'available': account.available_balance, 'requested': amount}
                )
            data['held'] = account.held + amount
            data['updated_at'] = self._clock().isoformat()
            return data

        data = self.storage.update(self.table_name, account_id, _hold)
        if data is None:
            raise TxError(TxErrorCode.INVALID_ACCOUNT, f"Account {account_id} not found")
        return Account.from_dict(data)

    def release_hold(self, account_id: str, amount: int) -> Account:
        """Release a hold previously placed for ``amount``"""
        def _release(data):
            data['held'] = max(data['held'] - amount, 0)
            data['updated_at'] = self._clock().isoformat()
            return data

        data = self.storage.update(self.table_name, account_id, _release)
        if data is None:
            raise TxError(TxErrorCode.INVALID_ACCOUNT, f"Account {account_id} not found")
        return Account.from_dict(data)

    def settle(self, source_id: str, destination_id: str, amount: int) -> None:
        """
        Apply a held transfer: debit source (consuming its hold), credit destination.

        Both rows change in one atomic block; on any error neither changes.

        Raises:
            TxError: SETTLEMENT_FAILED with the reason in ``details``
        """
        with self.storage.atomic():
            source = self.get_account(source_id)
            destination = self.get_account(destination_id)
            if not source or not destination:
                raise TxError(TxErrorCode.SETTLEMENT_FAILED, "Account missing at settlement",
                              {'reason': 'invalid_account'})
            if source.currency != destination.currency:
                raise TxError(TxErrorCode.SETTLEMENT_FAILED, "Currency mismatch at settlement",
                              {'reason': 'currency_mismatch'})
            if source.balance < amount:
                raise TxError(TxErrorCode.SETTLEMENT_FAILED, "Insufficient funds at settlement",
                              {'reason': 'insufficient_funds', 'balance': source.balance, 'amount': amount})

            now = self._clock()
            source.balance -= amount
            source.held = max(source.held - amount, 0)
            source.updated_at = now
            destination.balance += amount
            destination.updated_at = now

            self.storage.save(self.table_name, source.id, source.to_dict())
            self.storage.save(self.table_name, destination.id, destination.to_dict())
