"""
Reporting Module

Read-only projections for dashboards. Nothing here writes.
"""

from collections import defaultdict
from typing import Any, Dict

from .accounts import AccountManager
from .audit import AuditTrail
from .transactions import TransactionEngine, TransactionStatus


class ReportingEngine:
    """Builds dashboard views from the account and transaction stores"""

    def __init__(self, account_manager: AccountManager, transaction_engine: TransactionEngine,
                 audit_trail: AuditTrail):
        self.account_manager = account_manager
        self.transaction_engine = transaction_engine
        self.audit_trail = audit_trail

    def client_dashboard(self, identity_id: str, recent: int = 10) -> Dict[str, Any]:
        """Accounts of one identity with balances, plus its most recent transactions"""
        accounts = self.account_manager.list_accounts(owner_id=identity_id)
        transactions = self.transaction_engine.list_for_identity(identity_id, limit=recent)

        totals: Dict[str, int] = defaultdict(int)
        for account in accounts:
            totals[account.currency] += account.balance

        return {
            'accounts': [
                {
                    'id': a.id,
                    'currency': a.currency,
                    'balance': a.balance,
                    'available_balance': a.available_balance,
                }
                for a in accounts
            ],
            'total_balance_by_currency': dict(totals),
            'recent_transactions': [
                {
                    'id': t.id,
                    'status': t.status.value,
                    'amount': t.amount,
                    'currency': t.currency,
                    'source_account_id': t.source_account_id,
                    'destination_account_id': t.destination_account_id,
                    'created_at': t.created_at.isoformat(),
                }
                for t in transactions
            ],
        }

    def admin_dashboard(self) -> Dict[str, Any]:
        """Transaction counts per status and pending volume per currency"""
        transactions = self.transaction_engine.list_transactions()

        counts = {status.value: 0 for status in TransactionStatus}
        pending_volume: Dict[str, int] = defaultdict(int)
        for transaction in transactions:
            counts[transaction.status.value] += 1
            if transaction.status == TransactionStatus.PENDING:
                pending_volume[transaction.currency] += transaction.amount

        return {
            'transaction_counts': counts,
            'total_transactions': len(transactions),
            'pending_volume_by_currency': dict(pending_volume),
            'audit_events': self.audit_trail.count_events(),
        }
