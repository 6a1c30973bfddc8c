"""
Transaction Engine Module

Owns the transfer/approval state machine:

    pending -> approved | rejected
    approved -> completed | failed

``rejected``, ``completed`` and ``failed`` are terminal and nothing re-enters
``pending``. A transfer is created in ``pending`` with a hold on the source
funds. Deciding it is a single compare-and-set on the status field, so among
concurrent deciders exactly one wins. Settlement of an approved transfer is a
separate atomic step that ends in ``completed`` or ``failed``; it is never
retried automatically.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from .accounts import AccountManager
from .audit import AuditTrail, AuditEventType, AuditOutcome
from .errors import TxError, TxErrorCode, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord
from .tokens import check_deadline


class TransactionStatus(Enum):
    """States of a transfer"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"


class Decision(Enum):
    """Administrator decision on a pending transfer"""
    APPROVE = "approve"
    REJECT = "reject"


ALLOWED_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({TransactionStatus.APPROVED, TransactionStatus.REJECTED}),
    TransactionStatus.APPROVED: frozenset({TransactionStatus.COMPLETED, TransactionStatus.FAILED}),
    TransactionStatus.REJECTED: frozenset(),
    TransactionStatus.COMPLETED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
}

TRANSITION_EVENTS = {
    TransactionStatus.APPROVED: AuditEventType.TRANSACTION_APPROVED,
    TransactionStatus.REJECTED: AuditEventType.TRANSACTION_REJECTED,
    TransactionStatus.COMPLETED: AuditEventType.TRANSACTION_COMPLETED,
    TransactionStatus.FAILED: AuditEventType.TRANSACTION_FAILED,
}

MAX_IDEMPOTENCY_KEY_LENGTH = 128


@dataclass
class Transaction(StorageRecord):
    """A transfer between two accounts of the same currency"""
    initiator_id: str
    source_account_id: str
    destination_account_id: str
    amount: int  # Minor units
    currency: str
    idempotency_key: str
    status: TransactionStatus = TransactionStatus.PENDING
    description: str = ""
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self.status]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        data = dict(data)
        data['status'] = TransactionStatus(data['status'])
        for key in ('decided_at', 'settled_at'):
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        return super().from_dict(data)


def check_transition(current: TransactionStatus, target: TransactionStatus) -> None:
    """Raise INVALID_TRANSITION unless ``current -> target`` is an edge of the state machine"""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise TxError(
            TxErrorCode.INVALID_TRANSITION,
            f"Cannot move transaction from {current.value} to {target.value}",
            {'from_status': current.value, 'to_status': target.value}
        )


class TransactionEngine:
    """Transfer creation, decision and settlement"""

    def __init__(self, storage: StorageInterface, account_manager: AccountManager,
                 audit_trail: AuditTrail, clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.account_manager = account_manager
        self.audit_trail = audit_trail
        self.table_name = "transactions"
        self.idempotency_table = "idempotency_keys"
        self.logger = get_logger("netbank.transactions")
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # Creation

    def create_transfer(
        self,
        identity,
        from_account_id: str,
        to_account_id: str,
        amount: int,
        idempotency_key: str,
        description: str = "",
        deadline: Optional[float] = None
    ) -> Transaction:
        """
        Create a pending transfer and hold the funds

        Re-submitting the same idempotency key with the same parameters returns
        the original transaction, whatever its current status.

        Args:
            identity: Initiating identity; must own ``from_account_id``
            from_account_id: Source account
            to_account_id: Destination account
            amount: Positive amount in minor units
            idempotency_key: Client-chosen key, unique across all transfers
            description: Free-text description
            deadline: Optional monotonic deadline checked before commit

        Returns:
            Transaction in PENDING state (or the original one on replay)

        Raises:
            ValidationError: Malformed amount or key
            TxError: INVALID_ACCOUNT, INSUFFICIENT_FUNDS, DUPLICATE_KEY
            OperationTimeout: Deadline expired; nothing was written
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("amount", "Amount must be a positive integer in minor units")
        if not idempotency_key or len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise ValidationError(
                "idempotency_key", f"Idempotency key must be 1-{MAX_IDEMPOTENCY_KEY_LENGTH} characters"
            )

        with self.storage.atomic():
            existing = self._find_by_idempotency_key(idempotency_key)
            if existing:
                return self._replay(existing, identity, from_account_id, to_account_id, amount)

            source = self.account_manager.get_account(from_account_id)
            destination = self.account_manager.get_account(to_account_id)
            if not source or source.owner_id != identity.id:
                raise TxError(TxErrorCode.INVALID_ACCOUNT, "Source account not found for this identity",
                              {'account_id': from_account_id})
            if not destination:
                raise TxError(TxErrorCode.INVALID_ACCOUNT, "Destination account not found",
                              {'account_id': to_account_id})
            if source.id == destination.id:
                raise TxError(TxErrorCode.INVALID_ACCOUNT, "Source and destination must differ")
            if source.currency != destination.currency:
                raise TxError(TxErrorCode.INVALID_ACCOUNT, "Accounts hold different currencies",
                              {'source_currency': source.currency, 'destination_currency': destination.currency})

            now = self._clock()
            transaction = Transaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                initiator_id=identity.id,
                source_account_id=source.id,
                destination_account_id=destination.id,
                amount=amount,
                currency=source.currency,
                idempotency_key=idempotency_key,
                description=description,
            )

            self.storage.insert_if_absent(self.idempotency_table, idempotency_key,
                                          {'transaction_id': transaction.id})
            self.account_manager.place_hold(source.id, amount)
            self.storage.save(self.table_name, transaction.id, transaction.to_dict())
            check_deadline(deadline)

        log_action(
            self.logger, "info", "Transfer created",
            user_id=identity.id, action="create_transfer", resource=f"transaction:{transaction.id}",
            extra={'amount': amount, 'currency': transaction.currency,
                   'from_account': source.id, 'to_account': destination.id}
        )
        self._audit_transition(transaction, None, TransactionStatus.PENDING, identity.id)
        return transaction

    def _replay(self, existing: Transaction, identity, from_account_id: str,
                to_account_id: str, amount: int) -> Transaction:
        same_request = (
            existing.initiator_id == identity.id and
            existing.source_account_id == from_account_id and
            existing.destination_account_id == to_account_id and
            existing.amount == amount
        )
        if not same_request:
            raise TxError(TxErrorCode.DUPLICATE_KEY,
                          "Idempotency key already used for a different transfer")
        return existing

    def _find_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        entry = self.storage.load(self.idempotency_table, idempotency_key)
        if not entry:
            return None
        return self.get_transaction(entry['transaction_id'])

    # Decision

    def decide(self, transaction_id: str, actor, outcome) -> Transaction:
        """
        Approve or reject a pending transfer

        Exactly one of any number of concurrent calls wins; the others get
        ALREADY_DECIDED. Approval proceeds straight to settlement, so the
        returned transaction is ``completed`` or ``failed``; rejection releases
        the hold and returns it ``rejected``.

        Args:
            transaction_id: Transaction to decide
            actor: Deciding identity (anything with ``id``)
            outcome: Decision or its string value ("approve" / "reject")

        Raises:
            ValidationError: Unknown outcome
            TxError: NOT_FOUND, ALREADY_DECIDED, INVALID_TRANSITION
        """
        try:
            decision = outcome if isinstance(outcome, Decision) else Decision(outcome)
        except ValueError:
            raise ValidationError("outcome", "Outcome must be 'approve' or 'reject'")

        transaction = self.get_transaction(transaction_id)
        if not transaction:
            raise TxError(TxErrorCode.NOT_FOUND, f"Transaction {transaction_id} not found")
        if transaction.status != TransactionStatus.PENDING:
            raise TxError(TxErrorCode.ALREADY_DECIDED, "Transaction already decided",
                          {'status': transaction.status.value})

        target = TransactionStatus.APPROVED if decision == Decision.APPROVE else TransactionStatus.REJECTED
        check_transition(transaction.status, target)

        now = self._clock().isoformat()
        with self.storage.atomic():
            decided = self.storage.compare_and_set(
                self.table_name, transaction_id,
                expected={'status': TransactionStatus.PENDING.value},
                updates={'status': target.value, 'decided_by': actor.id,
                         'decided_at': now, 'updated_at': now}
            )
            if decided and target == TransactionStatus.REJECTED:
                self.account_manager.release_hold(transaction.source_account_id, transaction.amount)

        if not decided:
            raise TxError(TxErrorCode.ALREADY_DECIDED, "Transaction already decided")

        transaction = Transaction.from_dict(decided)
        log_action(
            self.logger, "info", f"Transfer {target.value}",
            user_id=actor.id, action="decide_transfer", resource=f"transaction:{transaction_id}"
        )
        self._audit_transition(transaction, TransactionStatus.PENDING, target, actor.id)

        if target == TransactionStatus.REJECTED:
            return transaction
        return self._settle(transaction, actor.id)

    # Settlement

    def settle_transaction(self, transaction_id: str, actor_id: str) -> Transaction:
        """
        Settle an approved transfer that has not reached a terminal state

        Raises:
            TxError: NOT_FOUND, INVALID_TRANSITION if not in ``approved``
        """
        transaction = self.get_transaction(transaction_id)
        if not transaction:
            raise TxError(TxErrorCode.NOT_FOUND, f"Transaction {transaction_id} not found")
        check_transition(transaction.status, TransactionStatus.COMPLETED)
        return self._settle(transaction, actor_id)

    def resolve_stuck_approvals(self, older_than: timedelta = timedelta(minutes=5),
                                actor_id: str = "system") -> List[Transaction]:
        """
        Settle approved transfers left unresolved for longer than ``older_than``

        A transfer another resolver finished in the meantime is skipped.
        """
        cutoff = self._clock() - older_than
        resolved = []
        for transaction in self.list_transactions(status=TransactionStatus.APPROVED):
            if not transaction.decided_at or transaction.decided_at > cutoff:
                continue
            try:
                resolved.append(self.settle_transaction(transaction.id, actor_id))
            except TxError as e:
                self.logger.info(f"Skipping stuck approval {transaction.id}: {e.message}")
        return resolved

    def _settle(self, transaction: Transaction, actor_id: str) -> Transaction:
        approved = TransactionStatus.APPROVED.value
        try:
            with self.storage.atomic():
                self.account_manager.settle(
                    transaction.source_account_id,
                    transaction.destination_account_id,
                    transaction.amount
                )
                now = self._clock().isoformat()
                completed = self.storage.compare_and_set(
                    self.table_name, transaction.id,
                    expected={'status': approved},
                    updates={'status': TransactionStatus.COMPLETED.value,
                             'settled_at': now, 'updated_at': now}
                )
                if not completed:
                    # Someone else resolved it; undo our ledger writes
                    raise TxError(TxErrorCode.INVALID_TRANSITION, "Transaction no longer approved")
        except Exception as e:
            return self._fail_settlement(transaction, actor_id, e)

        log_action(
            self.logger, "info", "Transfer settled",
            user_id=actor_id, action="settle_transfer", resource=f"transaction:{transaction.id}",
            extra={'amount': transaction.amount, 'currency': transaction.currency}
        )
        settled = Transaction.from_dict(completed)
        self._audit_transition(settled, TransactionStatus.APPROVED, TransactionStatus.COMPLETED, actor_id)
        return settled

    def _fail_settlement(self, transaction: Transaction, actor_id: str, error: Exception) -> Transaction:
        if isinstance(error, TxError):
            reason = error.details.get('reason', error.code.value)
        else:
            reason = f"ledger_error: {error}"

        now = self._clock().isoformat()
        with self.storage.atomic():
            failed = self.storage.compare_and_set(
                self.table_name, transaction.id,
                expected={'status': TransactionStatus.APPROVED.value},
                updates={'status': TransactionStatus.FAILED.value,
                         'failure_reason': reason, 'updated_at': now}
            )
            if failed:
                self.account_manager.release_hold(transaction.source_account_id, transaction.amount)

        if not failed:
            # Lost the race to a concurrent settlement; report whatever it produced
            return self.get_transaction(transaction.id)

        self.logger.error(
            f"Settlement failed for transaction {transaction.id}: {reason}",
            exc_info=not isinstance(error, TxError),
            extra={'extra': {
                'transaction_id': transaction.id,
                'source_account_id': transaction.source_account_id,
                'destination_account_id': transaction.destination_account_id,
                'amount': transaction.amount,
                'currency': transaction.currency,
                'prior_status': TransactionStatus.APPROVED.value,
            }}
        )
        failed_transaction = Transaction.from_dict(failed)
        self._audit_transition(failed_transaction, TransactionStatus.APPROVED,
                               TransactionStatus.FAILED, actor_id, reason=reason)
        return failed_transaction

    # Audit

    def _audit_transition(self, transaction: Transaction, before: Optional[TransactionStatus],
                          after: TransactionStatus, actor_id: str,
                          reason: Optional[str] = None) -> None:
        metadata = {
            'from_status': before.value if before else None,
            'to_status': after.value,
            'amount': transaction.amount,
            'currency': transaction.currency,
            'source_account_id': transaction.source_account_id,
            'destination_account_id': transaction.destination_account_id,
        }
        if reason:
            metadata['reason'] = reason

        self.audit_trail.log_event(
            TRANSITION_EVENTS.get(after, AuditEventType.TRANSACTION_CREATED),
            "transaction",
            transaction.id,
            metadata,
            actor_id=actor_id,
            outcome=AuditOutcome.FAILURE if after == TransactionStatus.FAILED else AuditOutcome.SUCCESS
        )

    # Queries

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        data = self.storage.load(self.table_name, transaction_id)
        if not data:
            return None
        return Transaction.from_dict(data)

    def list_transactions(self, status: Optional[TransactionStatus] = None,
                          account_ids: Optional[List[str]] = None,
                          limit: Optional[int] = None) -> List[Transaction]:
        """
        List transactions, newest first

        Args:
            status: Only transactions in this status
            account_ids: Only transactions touching one of these accounts
            limit: Maximum number to return
        """
        filters = {'status': status.value} if status else {}
        transactions = [Transaction.from_dict(data) for data in self.storage.find(self.table_name, filters)]

        if account_ids is not None:
            wanted = set(account_ids)
            transactions = [
                t for t in transactions
                if t.source_account_id in wanted or t.destination_account_id in wanted
            ]

        transactions.sort(key=lambda t: t.created_at, reverse=True)
        if limit:
            transactions = transactions[:limit]
        return transactions

    def list_for_identity(self, identity_id: str, limit: Optional[int] = None) -> List[Transaction]:
        """Transactions touching any account owned by ``identity_id``"""
        account_ids = [a.id for a in self.account_manager.list_accounts(owner_id=identity_id)]
        return self.list_transactions(account_ids=account_ids, limit=limit)
