"""
Tests for the Ledger Engine

Covers the operation state machine, atomicity of balance changes with their
ledger entries, error reporting and post-commit notifications.
"""

import threading
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest

from bank_ledger.accounts import AccountStatus, AccountStore
from bank_ledger.currency import Money, Currency
from bank_ledger.engine import LedgerEngine, OperationState, OperationType
from bank_ledger.errors import (
    AccountClosed, AccountExists, AccountNotFound, BalanceNotZero, Busy,
    Conflict, InsufficientFunds, InvalidAmount, SameAccount
)
from bank_ledger.identity import CallerIdentity
from bank_ledger.locking import AccountLockManager
from bank_ledger.notifications import LedgerEvent, NotificationDispatcher
from bank_ledger.storage import InMemoryStorage, StorageConflictError
from bank_ledger.transaction_log import EntryType, TransactionLog


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


CALLER = CallerIdentity(user_id="teller-7", email="teller@bank.example")


class EngineTestBase:
    """Shared engine setup over in-memory storage"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.accounts = AccountStore(self.storage)
        self.log = TransactionLog(self.storage)
        self.locks = AccountLockManager(timeout=0.5)
        self.dispatcher = Mock(spec=NotificationDispatcher)
        self.engine = LedgerEngine(self.accounts, self.log, self.locks, self.dispatcher)

    def open(self, name: str, balance: str = "0.00") -> str:
        account = self.engine.open_account(name, "Tester", f"{name.lower()}@example.com").account
        if Decimal(balance) > 0:
            self.engine.credit(account.id, balance)
        self.dispatcher.reset_mock()
        return account.id

    def events(self):
        return [c.args[0] for c in self.dispatcher.notify.call_args_list]


class TestEngineConstruction(EngineTestBase):

    def test_requires_shared_storage(self):
        with pytest.raises(ValueError):
            LedgerEngine(self.accounts, TransactionLog(InMemoryStorage()))

    def test_defaults(self):
        engine = LedgerEngine(self.accounts, self.log)
        assert engine.currency == Currency.USD
        assert engine.locks is not None
        engine.dispatcher.notify(Mock())


class TestOpenAccount(EngineTestBase):

    def test_open_account(self):
        result = self.engine.open_account("Ada", "Obi", "ada@example.com", initiated_by=CALLER)

        assert result.state == OperationState.COMMITTED
        assert result.states == [
            OperationState.VALIDATED, OperationState.APPLIED, OperationState.COMMITTED
        ]
        assert result.operation == OperationType.OPEN_ACCOUNT
        assert result.account.owner_id == "teller-7"
        assert self.engine.balance(result.account.id) == usd("0.00")

        [event] = self.events()
        assert event.event_type == LedgerEvent.ACCOUNT_CREATED
        assert event.account_id == result.account.id
        assert event.data['account_name'] == "Ada Obi"

    def test_explicit_owner(self):
        result = self.engine.open_account("Ada", "Obi", "ada@example.com", owner_id="cust-1")
        assert result.account.owner_id == "cust-1"

    def test_duplicate_email_rejected(self):
        self.engine.open_account("Ada", "Obi", "ada@example.com")
        self.dispatcher.reset_mock()

        with pytest.raises(AccountExists) as exc_info:
            self.engine.open_account("Ada", "Obi", "ADA@example.com")
        assert exc_info.value.state == "REJECTED"
        self.dispatcher.notify.assert_not_called()


class TestCreditDebit(EngineTestBase):

    def test_credit(self):
        x = self.open("X")
        result = self.engine.credit(x, Decimal("100.00"), initiated_by=CALLER)

        assert result.state == OperationState.COMMITTED
        assert result.states == [
            OperationState.VALIDATED, OperationState.APPLIED,
            OperationState.LOGGED, OperationState.COMMITTED
        ]
        assert result.balances == {x: usd("100.00")}
        [entry] = result.entries
        assert entry.entry_type == EntryType.CREDIT
        assert entry.amount == usd("100.00")
        assert entry.balance_after == usd("100.00")
        assert entry.initiated_by == "teller-7"
        assert entry.correlation_id == result.correlation_id
        assert self.engine.history(x) == [entry]

        [event] = self.events()
        assert event.event_type == LedgerEvent.ACCOUNT_CREDITED
        assert event.data['balance'] == "100.00"

    def test_debit(self):
        x = self.open("X", "100.00")
        result = self.engine.debit(x, "30.00")

        assert result.balances[x] == usd("70.00")
        assert result.entries[0].entry_type == EntryType.DEBIT
        assert self.events()[0].event_type == LedgerEvent.ACCOUNT_DEBITED

    def test_over_debit_leaves_balance_and_log_unchanged(self):
        """X=100.00, debit 150.00 -> InsufficientFunds, nothing changes"""
        x = self.open("X", "100.00")
        history_before = self.engine.history(x)

        with pytest.raises(InsufficientFunds) as exc_info:
            self.engine.debit(x, Decimal("150.00"))

        assert exc_info.value.state == "REJECTED"
        assert self.engine.balance(x) == usd("100.00")
        assert self.engine.history(x) == history_before
        self.dispatcher.notify.assert_not_called()

    def test_credit_closed_account(self):
        x = self.open("X")
        self.engine.close_account(x)
        history_before = self.engine.history(x)

        with pytest.raises(AccountClosed):
            self.engine.credit(x, "10.00")

        assert self.engine.balance(x) == usd("0.00")
        assert self.engine.history(x) == history_before

    @pytest.mark.parametrize("amount", [0, "-1.00", "1.001", 1.5, "abc"])
    def test_invalid_amount_rejected(self, amount):
        x = self.open("X", "10.00")
        with pytest.raises(InvalidAmount) as exc_info:
            self.engine.credit(x, amount)
        assert exc_info.value.state == "REJECTED"
        assert self.engine.balance(x) == usd("10.00")

    def test_missing_account(self):
        with pytest.raises(AccountNotFound):
            self.engine.debit("2026999999", "1.00")
        with pytest.raises(AccountNotFound):
            self.engine.balance("2026999999")
        with pytest.raises(AccountNotFound):
            self.engine.history("2026999999")

    def test_failed_operations_leave_no_lock_entries(self):
        for i in range(1000):
            with pytest.raises(AccountNotFound):
                self.engine.credit(f"missing-{i}", "1.00")
        assert self.locks.tracked() == 0

    def test_oversized_amount_rejected_as_invalid_amount(self):
        x = self.open("X", "10.00")
        with pytest.raises(InvalidAmount) as exc_info:
            self.engine.credit(x, "9" * 26)
        assert exc_info.value.state == "REJECTED"
        assert self.engine.balance(x) == usd("10.00")

    def test_balance_overflow_aborts_credit(self):
        x = self.open("X")
        record = self.storage.load("accounts", x)
        record['balance'] = "999999999999999999.00"
        self.storage.save("accounts", x, record)
        history_before = self.engine.history(x)

        with pytest.raises(InvalidAmount) as exc_info:
            self.engine.credit(x, "1.00")

        assert exc_info.value.state == "ABORTED"
        assert self.engine.balance(x) == usd("999999999999999999.00")
        assert self.engine.history(x) == history_before
        self.dispatcher.notify.assert_not_called()


class TestTransfer(EngineTestBase):

    def test_transfer_example(self):
        """X=100.00, Y=10.00, transfer 40.00 -> X=60.00, Y=50.00, two correlated entries"""
        x = self.open("X", "100.00")
        y = self.open("Y", "10.00")

        result = self.engine.transfer(x, y, Decimal("40.00"), initiated_by=CALLER)

        assert result.state == OperationState.COMMITTED
        assert self.engine.balance(x) == usd("60.00")
        assert self.engine.balance(y) == usd("50.00")
        assert result.balances == {x: usd("60.00"), y: usd("50.00")}

        debit_entry, credit_entry = result.entries
        assert (debit_entry.account_id, debit_entry.entry_type) == (x, EntryType.DEBIT)
        assert (credit_entry.account_id, credit_entry.entry_type) == (y, EntryType.CREDIT)
        assert debit_entry.correlation_id == credit_entry.correlation_id == result.correlation_id
        assert self.log.entries_for_correlation(result.correlation_id) == [debit_entry, credit_entry]
        assert debit_entry.description == f"Transfer to {y}"
        assert credit_entry.description == f"Transfer from {x}"

    def test_transfer_conserves_total(self):
        x = self.open("X", "100.00")
        y = self.open("Y", "10.00")
        before = self.engine.balance(x) + self.engine.balance(y)

        self.engine.transfer(x, y, "33.33")

        assert self.engine.balance(x) + self.engine.balance(y) == before

    def test_transfer_notifies_both_legs(self):
        x = self.open("X", "100.00")
        y = self.open("Y")
        result = self.engine.transfer(x, y, "40.00")

        events = self.events()
        assert [(e.event_type, e.account_id) for e in events] == [
            (LedgerEvent.ACCOUNT_DEBITED, x), (LedgerEvent.ACCOUNT_CREDITED, y)
        ]
        assert {e.correlation_id for e in events} == {result.correlation_id}

    def test_same_account(self):
        x = self.open("X", "100.00")
        with pytest.raises(SameAccount) as exc_info:
            self.engine.transfer(x, x, "1.00")
        assert exc_info.value.state == "REJECTED"

    def test_insufficient_funds(self):
        x = self.open("X", "10.00")
        y = self.open("Y")
        with pytest.raises(InsufficientFunds):
            self.engine.transfer(x, y, "10.01")
        assert self.engine.balance(x) == usd("10.00")
        assert self.engine.balance(y) == usd("0.00")
        assert self.engine.history(y) == []

    def test_destination_checked_first(self):
        x = self.open("X")
        with pytest.raises(AccountNotFound) as exc_info:
            self.engine.transfer(x, "2026999999", "40.00")
        assert exc_info.value.account_id == "2026999999"

    def test_closed_destination(self):
        x = self.open("X", "50.00")
        y = self.open("Y")
        self.engine.close_account(y)
        with pytest.raises(AccountClosed):
            self.engine.transfer(x, y, "10.00")
        assert self.engine.balance(x) == usd("50.00")

    def test_failure_after_validation_aborts_everything(self):
        """No partial credit and no orphan entry when logging fails"""
        x = self.open("X", "100.00")
        y = self.open("Y", "10.00")
        x_history = self.engine.history(x)
        y_history = self.engine.history(y)

        original_append = self.log.append
        calls = []

        def failing_append(entry):
            calls.append(entry)
            if len(calls) == 2:
                raise Conflict("simulated log failure", account_id=entry.account_id)
            return original_append(entry)

        with patch.object(self.log, "append", side_effect=failing_append):
            with pytest.raises(Conflict) as exc_info:
                self.engine.transfer(x, y, "40.00")

        assert exc_info.value.state == "ABORTED"
        assert self.engine.balance(x) == usd("100.00")
        assert self.engine.balance(y) == usd("10.00")
        assert self.engine.history(x) == x_history
        assert self.engine.history(y) == y_history
        self.dispatcher.notify.assert_not_called()

    def test_unexpected_error_after_validation_aborts(self):
        x = self.open("X", "100.00")

        with patch.object(self.log, "append", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                self.engine.debit(x, "10.00")

        assert self.engine.balance(x) == usd("100.00")
        assert self.engine.history(x)[-1].balance_after == usd("100.00")

    def test_commit_conflict_surfaces_as_conflict(self):
        x = self.open("X", "100.00")

        with patch.object(self.storage, "commit",
                          side_effect=StorageConflictError("write conflict")):
            with pytest.raises(Conflict) as exc_info:
                self.engine.debit(x, "10.00")

        assert exc_info.value.state == "ABORTED"
        assert not self.storage.in_transaction()
        assert self.engine.balance(x) == usd("100.00")

    def test_busy_when_account_locked(self):
        x = self.open("X", "100.00")
        y = self.open("Y")
        held = threading.Event()
        release = threading.Event()

        def holder():
            with self.locks.hold(y):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        assert held.wait(5)
        try:
            with pytest.raises(Busy) as exc_info:
                self.engine.transfer(x, y, "10.00")
            assert exc_info.value.state == "REJECTED"
        finally:
            release.set()
            thread.join(5)

        assert self.engine.balance(x) == usd("100.00")
        # Locks were released: the same transfer now succeeds
        self.engine.transfer(x, y, "10.00")
        assert self.engine.balance(y) == usd("10.00")


class TestNotificationsNeverUndoCommits(EngineTestBase):

    def test_dispatcher_failure_is_swallowed(self):
        x = self.open("X", "100.00")
        y = self.open("Y")
        self.dispatcher.notify.side_effect = RuntimeError("mail server down")

        result = self.engine.transfer(x, y, "40.00")

        assert result.state == OperationState.COMMITTED
        assert self.engine.balance(x) == usd("60.00")
        assert self.engine.balance(y) == usd("40.00")
        assert len(self.log.entries_for_correlation(result.correlation_id)) == 2

    def test_failure_is_logged(self):
        x = self.open("X")
        self.dispatcher.notify.side_effect = RuntimeError("mail server down")

        with patch("bank_ledger.engine.log_action") as log_action:
            self.engine.credit(x, "5.00")

        levels = [c.args[1] for c in log_action.call_args_list]
        assert "ERROR" in levels
        assert self.engine.balance(x) == usd("5.00")


class TestCloseAccount(EngineTestBase):

    def test_close_account(self):
        x = self.open("X")
        result = self.engine.close_account(x, initiated_by=CALLER)

        assert result.state == OperationState.COMMITTED
        assert result.account.status == AccountStatus.CLOSED
        [event] = self.events()
        assert event.event_type == LedgerEvent.ACCOUNT_CLOSED

    def test_close_with_balance_rejected(self):
        x = self.open("X", "0.01")
        with pytest.raises(BalanceNotZero) as exc_info:
            self.engine.close_account(x)
        assert exc_info.value.state == "REJECTED"
        assert self.engine.get_account(x).is_active

    def test_close_twice(self):
        x = self.open("X")
        self.engine.close_account(x)
        with pytest.raises(AccountClosed):
            self.engine.close_account(x)


class TestUpdateProfile(EngineTestBase):

    def test_update_profile(self):
        x = self.open("X", "25.00")
        result = self.engine.update_profile(
            x, last_name="Okafor", email="x.okafor@example.com", initiated_by=CALLER
        )

        assert result.state == OperationState.COMMITTED
        assert result.states == [
            OperationState.VALIDATED, OperationState.APPLIED, OperationState.COMMITTED
        ]
        assert result.operation == OperationType.UPDATE_PROFILE
        assert result.account.full_name == "X Okafor"
        assert result.balances == {x: usd("25.00")}
        assert self.accounts.find_by_email("x.okafor@example.com").id == x
        assert self.accounts.find_by_email("x@example.com") is None

        [event] = self.events()
        assert event.event_type == LedgerEvent.PROFILE_UPDATED
        assert event.data['email'] == "x.okafor@example.com"
        assert event.data['previous_email'] == "x@example.com"

    def test_taken_email_rejected(self):
        x = self.open("X")
        self.open("Y")

        with pytest.raises(AccountExists) as exc_info:
            self.engine.update_profile(x, email="Y@example.com")

        assert exc_info.value.state == "REJECTED"
        assert self.engine.get_account(x).email == "x@example.com"
        self.dispatcher.notify.assert_not_called()

    def test_closed_account_rejected(self):
        x = self.open("X")
        self.engine.close_account(x)
        self.dispatcher.reset_mock()

        with pytest.raises(AccountClosed) as exc_info:
            self.engine.update_profile(x, first_name="Xander")
        assert exc_info.value.state == "REJECTED"
        self.dispatcher.notify.assert_not_called()

    def test_write_failure_aborts_and_keeps_email_index(self):
        x = self.open("X")

        with patch.object(self.accounts, "_write", side_effect=Conflict("simulated write failure")):
            with pytest.raises(Conflict) as exc_info:
                self.engine.update_profile(x, email="new@example.com")

        assert exc_info.value.state == "ABORTED"
        assert self.accounts.find_by_email("x@example.com").id == x
        assert self.accounts.find_by_email("new@example.com") is None
        assert self.locks.tracked() == 0


class TestHistory(EngineTestBase):

    def test_history_oldest_first(self):
        x = self.open("X")
        y = self.open("Y")
        self.engine.credit(x, "100.00")
        self.engine.transfer(x, y, "25.00")
        self.engine.debit(x, "5.00")

        history = self.engine.history(x)
        assert [(e.entry_type, e.balance_after) for e in history] == [
            (EntryType.CREDIT, usd("100.00")),
            (EntryType.DEBIT, usd("75.00")),
            (EntryType.DEBIT, usd("70.00")),
        ]
        assert self.log.verify_integrity(x)['valid']
        assert self.log.verify_integrity(y)['valid']

    def test_error_details(self):
        x = self.open("X", "100.00")
        with pytest.raises(InsufficientFunds) as exc_info:
            self.engine.debit(x, "150.00")

        details = exc_info.value.to_dict()
        assert details['code'] == "INSUFFICIENT_FUNDS"
        assert details['state'] == "REJECTED"
        assert details['details']['account_id'] == x
