"""
Test suite for account management
"""

import pytest

from netbank.audit import AuditEventType
from netbank.errors import TxError, TxErrorCode, ValidationError


@pytest.fixture
def accounts(system):
    return system.account_manager


class TestOpenAccount:
    """Test account opening"""

    def test_open_account(self, system, accounts, client_identity):
        """Test a new account starts with its opening balance and no holds"""
        account = accounts.open_account(client_identity.id, "USD", 1000)

        assert account.balance == 1000
        assert account.held == 0
        assert account.available_balance == 1000
        assert accounts.get_account(account.id).owner_id == client_identity.id

        [event] = system.audit_trail.get_events_for_entity("account", account.id)
        assert event.event_type == AuditEventType.ACCOUNT_OPENED

    @pytest.mark.parametrize("currency", ["usd", "US", "DOLLAR", ""])
    def test_invalid_currency(self, accounts, client_identity, currency):
        """Test currencies must be 3-letter ISO codes"""
        with pytest.raises(ValidationError):
            accounts.open_account(client_identity.id, currency)

    def test_negative_opening_balance(self, accounts, client_identity):
        """Test a negative opening balance is rejected"""
        with pytest.raises(ValidationError):
            accounts.open_account(client_identity.id, "USD", -1)

    def test_list_by_owner(self, accounts, client_identity, admin_identity):
        """Test owner filtering"""
        mine = accounts.open_account(client_identity.id, "USD")
        accounts.open_account(admin_identity.id, "USD")

        assert [a.id for a in accounts.list_accounts(owner_id=client_identity.id)] == [mine.id]
        assert len(accounts.list_accounts()) == 2


class TestHolds:
    """Test holds against the available balance"""

    def test_hold_reduces_available(self, accounts, client_identity):
        """Test a hold keeps the balance but lowers what is available"""
        account = accounts.open_account(client_identity.id, "USD", 1000)
        held = accounts.place_hold(account.id, 300)

        assert held.balance == 1000
        assert held.available_balance == 700

    def test_hold_beyond_available(self, accounts, client_identity):
        """Test holds cannot exceed the available balance"""
        account = accounts.open_account(client_identity.id, "USD", 1000)
        accounts.place_hold(account.id, 800)

        with pytest.raises(TxError) as exc_info:
            accounts.place_hold(account.id, 300)
        assert exc_info.value.code == TxErrorCode.INSUFFICIENT_FUNDS
        assert accounts.get_account(account.id).held == 800

    def test_release_hold(self, accounts, client_identity):
        """Test releasing restores the available balance"""
        account = accounts.open_account(client_identity.id, "USD", 1000)
        accounts.place_hold(account.id, 300)

        assert accounts.release_hold(account.id, 300).available_balance == 1000

    def test_hold_on_missing_account(self, accounts):
        """Test holds on unknown accounts are INVALID_ACCOUNT"""
        with pytest.raises(TxError) as exc_info:
            accounts.place_hold("missing", 10)
        assert exc_info.value.code == TxErrorCode.INVALID_ACCOUNT


class TestSettle:
    """Test settlement"""

    def test_settle_moves_funds_and_consumes_hold(self, accounts, client_identity, admin_identity):
        """Test debit and credit are applied together"""
        source = accounts.open_account(client_identity.id, "USD", 1000)
        destination = accounts.open_account(admin_identity.id, "USD", 50)
        accounts.place_hold(source.id, 300)

        accounts.settle(source.id, destination.id, 300)

        source = accounts.get_account(source.id)
        destination = accounts.get_account(destination.id)
        assert source.balance == 700
        assert source.held == 0
        assert destination.balance == 350

    @pytest.mark.parametrize("setup,reason", [
        ("missing", "invalid_account"),
        ("currency", "currency_mismatch"),
        ("funds", "insufficient_funds"),
    ])
    def test_settle_failures_change_nothing(self, accounts, client_identity, admin_identity, setup, reason):
        """Test a failed settlement leaves both accounts untouched"""
        source = accounts.open_account(client_identity.id, "USD", 100)
        destination = accounts.open_account(admin_identity.id, "EUR" if setup == "currency" else "USD", 0)
        destination_id = "missing" if setup == "missing" else destination.id
        amount = 500 if setup == "funds" else 50

        with pytest.raises(TxError) as exc_info:
            accounts.settle(source.id, destination_id, amount)

        assert exc_info.value.code == TxErrorCode.SETTLEMENT_FAILED
        assert exc_info.value.details["reason"] == reason
        assert accounts.get_account(source.id).balance == 100
        assert accounts.get_account(destination.id).balance == 0
