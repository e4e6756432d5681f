"""
Ledger Engine Module

Validates and applies credit, debit and transfer operations against the
Account Store, writing their ledger entries in the same unit of work.

Every operation walks one state machine:

    VALIDATED -> APPLIED -> LOGGED -> COMMITTED

A failure before VALIDATED ends in REJECTED; a failure after it ends in
ABORTED with the unit of work rolled back. Notifications are submitted only
after COMMITTED and can never undo it.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .accounts import Account, AccountStore
from .currency import Money, parse_amount
from .errors import BalanceNotZero, LedgerError, SameAccount
from .identity import CallerIdentity
from .locking import AccountLockManager
from .logging_config import get_logger, log_action
from .notifications import (
    EventPayload, LedgerEvent, NotificationDispatcher, NullNotificationDispatcher
)
from .storage import unit_of_work
from .transaction_log import EntryType, LedgerEntry, TransactionLog


class OperationState(Enum):
    """Lifecycle of one ledger operation"""
    VALIDATED = "VALIDATED"
    APPLIED = "APPLIED"
    LOGGED = "LOGGED"
    COMMITTED = "COMMITTED"
    REJECTED = "REJECTED"
    ABORTED = "ABORTED"


class OperationType(Enum):
    """Operations the engine performs"""
    OPEN_ACCOUNT = "open_account"
    CREDIT = "credit"
    DEBIT = "debit"
    TRANSFER = "transfer"
    CLOSE_ACCOUNT = "close_account"
    UPDATE_PROFILE = "update_profile"


@dataclass
class OperationResult:
    """Outcome and state trail of one ledger operation"""
    operation: OperationType
    correlation_id: str
    state: Optional[OperationState] = None
    states: List[OperationState] = field(default_factory=list)
    balances: Dict[str, Money] = field(default_factory=dict)
    entries: List[LedgerEntry] = field(default_factory=list)
    account: Optional[Account] = None

    def advance(self, state: OperationState) -> None:
        self.state = state
        self.states.append(state)

    @property
    def committed(self) -> bool:
        return self.state == OperationState.COMMITTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation.value,
            'state': self.state.value if self.state else None,
            'correlation_id': self.correlation_id,
            'balances': {k: str(v.amount) for k, v in self.balances.items()},
            'entries': [e.id for e in self.entries]
        }


def _user_id(initiated_by: Optional[CallerIdentity]) -> Optional[str]:
    return initiated_by.user_id if initiated_by else None


class LedgerEngine:
    """
    Applies balance mutations atomically with their ledger entries.

    All collaborators are passed in; the Account Store and Transaction Log
    must share one storage backend so a single unit of work spans both.
    """

    def __init__(
        self,
        accounts: AccountStore,
        log: TransactionLog,
        locks: Optional[AccountLockManager] = None,
        dispatcher: Optional[NotificationDispatcher] = None
    ):
        if accounts.storage is not log.storage:
            raise ValueError("Account store and transaction log must share one storage backend")
        self.accounts = accounts
        self.log = log
        self.storage = accounts.storage
        self.locks = locks or AccountLockManager()
        self.dispatcher = dispatcher or NullNotificationDispatcher()
        self.currency = accounts.currency
        self.logger = get_logger("ledger.engine")

    # Read paths

    def get_account(self, account_id: str) -> Account:
        return self.accounts.get(account_id)

    def balance(self, account_id: str) -> Money:
        """Committed balance of an account"""
        return self.accounts.get(account_id).balance

    def history(
        self,
        account_id: str,
        start: Optional[Union[date, datetime]] = None,
        end: Optional[Union[date, datetime]] = None
    ) -> List[LedgerEntry]:
        """Ledger entries of an account, oldest first, optionally within a date range"""
        self.accounts.get(account_id)
        return self.log.entries_for(account_id, start, end)

    # Operations

    def open_account(
        self,
        first_name: str,
        last_name: str,
        email: str,
        owner_id: Optional[str] = None,
        initiated_by: Optional[CallerIdentity] = None
    ) -> OperationResult:
        """
        Open an ACTIVE account with a zero balance

        The owner defaults to the calling identity.
        """
        result = OperationResult(OperationType.OPEN_ACCOUNT, str(uuid.uuid4()))
        email_key = (email or "").strip().lower()
        owner = owner_id or _user_id(initiated_by) or email_key
        # Serialise openings for the same e-mail
        email_lock = f"email:{email_key}"
        try:
            with self.locks.hold(email_lock):
                with unit_of_work(self.storage):
                    self.accounts.validate_holder(first_name, last_name, email)
                    result.advance(OperationState.VALIDATED)

                    account = self.accounts.open(owner, first_name, last_name, email)
                    result.account = account
                    result.balances[account.id] = account.balance
                    result.advance(OperationState.APPLIED)
            result.advance(OperationState.COMMITTED)
        except LedgerError as e:
            self._fail(result, e, initiated_by)
            raise
        except Exception:
            self._fail_unexpected(result, initiated_by)
            raise

        self._committed(result, initiated_by, resource=f"account:{account.id}",
                        extra={'email': account.email, 'owner_id': account.owner_id})
        self._notify([EventPayload(
            event_type=LedgerEvent.ACCOUNT_CREATED,
            account_id=account.id,
            correlation_id=result.correlation_id,
            data={
                'account_number': account.id,
                'account_name': account.full_name,
                'email': account.email,
                'balance': str(account.balance.amount),
                'currency': account.currency.code
            }
        )])
        return result

    def credit(
        self,
        account_id: str,
        amount: Any,
        description: Optional[str] = None,
        initiated_by: Optional[CallerIdentity] = None
    ) -> OperationResult:
        """Add funds to an account and record a CREDIT entry"""
        result = OperationResult(OperationType.CREDIT, str(uuid.uuid4()))
        try:
            money = parse_amount(amount, self.currency)
            with self.locks.hold(account_id):
                with unit_of_work(self.storage):
                    account = self.accounts.get(account_id)
                    self.accounts.ensure_active(account)
                    result.advance(OperationState.VALIDATED)

                    new_balance = self.accounts.credit(account_id, money)
                    result.balances[account_id] = new_balance
                    result.advance(OperationState.APPLIED)

                    entry = self._record(
                        account_id, EntryType.CREDIT, money, new_balance,
                        result.correlation_id, description or "Credit", initiated_by
                    )
                    result.entries.append(entry)
                    result.advance(OperationState.LOGGED)
            result.advance(OperationState.COMMITTED)
        except LedgerError as e:
            self._fail(result, e, initiated_by)
            raise
        except Exception:
            self._fail_unexpected(result, initiated_by)
            raise

        self._committed(result, initiated_by, resource=f"account:{account_id}",
                        extra={'amount': str(money.amount), 'balance': str(new_balance.amount)})
        self._notify([self._entry_event(LedgerEvent.ACCOUNT_CREDITED, entry, account)])
        return result

    def debit(
        self,
        account_id: str,
        amount: Any,
        description: Optional[str] = None,
        initiated_by: Optional[CallerIdentity] = None
    ) -> OperationResult:
        """Remove funds from an account and record a DEBIT entry"""
        result = OperationResult(OperationType.DEBIT, str(uuid.uuid4()))
        try:
            money = parse_amount(amount, self.currency)
            with self.locks.hold(account_id):
                with unit_of_work(self.storage):
                    account = self.accounts.get(account_id)
                    self.accounts.ensure_active(account)
                    self.accounts.ensure_funds(account, money)
                    result.advance(OperationState.VALIDATED)

                    new_balance = self.accounts.debit(account_id, money)
                    result.balances[account_id] = new_balance
                    result.advance(OperationState.APPLIED)

                    entry = self._record(
                        account_id, EntryType.DEBIT, money, new_balance,
                        result.correlation_id, description or "Debit", initiated_by
                    )
                    result.entries.append(entry)
                    result.advance(OperationState.LOGGED)
            result.advance(OperationState.COMMITTED)
        except LedgerError as e:
            self._fail(result, e, initiated_by)
            raise
        except Exception:
            self._fail_unexpected(result, initiated_by)
            raise

        self._committed(result, initiated_by, resource=f"account:{account_id}",
                        extra={'amount': str(money.amount), 'balance': str(new_balance.amount)})
        self._notify([self._entry_event(LedgerEvent.ACCOUNT_DEBITED, entry, account)])
        return result

    def transfer(
        self,
        source_id: str,
        dest_id: str,
        amount: Any,
        description: Optional[str] = None,
        initiated_by: Optional[CallerIdentity] = None
    ) -> OperationResult:
        """
        Move funds between two accounts

        Locks are taken in lexical order of account id. Both balance changes
        and both entries, linked by one correlation id, commit together.
        """
        result = OperationResult(OperationType.TRANSFER, str(uuid.uuid4()))
        try:
            if source_id == dest_id:
                raise SameAccount(source_id)
            money = parse_amount(amount, self.currency)

            with self.locks.hold(source_id, dest_id):
                with unit_of_work(self.storage):
                    destination = self.accounts.get(dest_id)
                    self.accounts.ensure_active(destination)
                    source = self.accounts.get(source_id)
                    self.accounts.ensure_active(source)
                    self.accounts.ensure_funds(source, money)
                    result.advance(OperationState.VALIDATED)

                    source_balance, dest_balance = self.accounts.transfer(source_id, dest_id, money)
                    result.balances[source_id] = source_balance
                    result.balances[dest_id] = dest_balance
                    result.advance(OperationState.APPLIED)

                    debit_entry = self._record(
                        source_id, EntryType.DEBIT, money, source_balance,
                        result.correlation_id,
                        description or f"Transfer to {dest_id}", initiated_by
                    )
                    credit_entry = self._record(
                        dest_id, EntryType.CREDIT, money, dest_balance,
                        result.correlation_id,
                        description or f"Transfer from {source_id}", initiated_by
                    )
                    result.entries.extend([debit_entry, credit_entry])
                    result.advance(OperationState.LOGGED)
            result.advance(OperationState.COMMITTED)
        except LedgerError as e:
            self._fail(result, e, initiated_by)
            raise
        except Exception:
            self._fail_unexpected(result, initiated_by)
            raise

        self._committed(result, initiated_by, resource=f"account:{source_id}->{dest_id}",
                        extra={'amount': str(money.amount),
                               'source_balance': str(source_balance.amount),
                               'destination_balance': str(dest_balance.amount)})
        self._notify([
            self._entry_event(LedgerEvent.ACCOUNT_DEBITED, debit_entry, source),
            self._entry_event(LedgerEvent.ACCOUNT_CREDITED, credit_entry, destination)
        ])
        return result

    def close_account(
        self,
        account_id: str,
        initiated_by: Optional[CallerIdentity] = None
    ) -> OperationResult:
        """Close an account; only allowed at zero balance"""
        result = OperationResult(OperationType.CLOSE_ACCOUNT, str(uuid.uuid4()))
        try:
            with self.locks.hold(account_id):
                with unit_of_work(self.storage):
                    account = self.accounts.get(account_id)
                    self.accounts.ensure_active(account)
                    if not account.balance.is_zero():
                        raise BalanceNotZero(account_id, account.balance.to_string())
                    result.advance(OperationState.VALIDATED)

                    account = self.accounts.close(account_id)
                    result.account = account
                    result.balances[account_id] = account.balance
                    result.advance(OperationState.APPLIED)
            result.advance(OperationState.COMMITTED)
        except LedgerError as e:
            self._fail(result, e, initiated_by)
            raise
        except Exception:
            self._fail_unexpected(result, initiated_by)
            raise

        self._committed(result, initiated_by, resource=f"account:{account_id}")
        self._notify([EventPayload(
            event_type=LedgerEvent.ACCOUNT_CLOSED,
            account_id=account_id,
            correlation_id=result.correlation_id,
            data={'account_number': account_id, 'account_name': account.full_name,
                  'email': account.email}
        )])
        return result

    def update_profile(
        self,
        account_id: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
        initiated_by: Optional[CallerIdentity] = None
    ) -> OperationResult:
        """
        Change the holder's name or e-mail on an ACTIVE account

        Fields left as None are unchanged. A new e-mail is locked the same
        way account opening locks it, so the two cannot claim one address.
        """
        result = OperationResult(OperationType.UPDATE_PROFILE, str(uuid.uuid4()))
        lock_ids = [account_id]
        if email is not None:
            lock_ids.append(f"email:{email.strip().lower()}")
        try:
            with self.locks.hold(*lock_ids):
                with unit_of_work(self.storage):
                    account = self.accounts.get(account_id)
                    self.accounts.ensure_active(account)
                    self.accounts.validate_update(account, first_name, last_name, email)
                    previous_email = account.email
                    result.advance(OperationState.VALIDATED)

                    account = self.accounts.update_holder(account_id, first_name, last_name, email)
                    result.account = account
                    result.balances[account_id] = account.balance
                    result.advance(OperationState.APPLIED)
            result.advance(OperationState.COMMITTED)
        except LedgerError as e:
            self._fail(result, e, initiated_by)
            raise
        except Exception:
            self._fail_unexpected(result, initiated_by)
            raise

        self._committed(result, initiated_by, resource=f"account:{account_id}",
                        extra={'email': account.email, 'previous_email': previous_email})
        self._notify([EventPayload(
            event_type=LedgerEvent.PROFILE_UPDATED,
            account_id=account_id,
            correlation_id=result.correlation_id,
            data={
                'account_number': account_id,
                'account_name': account.full_name,
                'email': account.email,
                'previous_email': previous_email
            }
        )])
        return result

    # Internals

    def _record(
        self,
        account_id: str,
        entry_type: EntryType,
        amount: Money,
        balance_after: Money,
        correlation_id: str,
        description: str,
        initiated_by: Optional[CallerIdentity]
    ) -> LedgerEntry:
        entry = self.log.create_entry(
            account_id, entry_type, amount, balance_after,
            correlation_id=correlation_id,
            description=description,
            initiated_by=_user_id(initiated_by)
        )
        self.log.append(entry)
        return entry

    def _entry_event(self, event_type: LedgerEvent, entry: LedgerEntry, account: Account) -> EventPayload:
        return EventPayload(
            event_type=event_type,
            account_id=entry.account_id,
            correlation_id=entry.correlation_id,
            data={
                'entry_id': entry.id,
                'account_name': account.full_name,
                'email': account.email,
                'amount': str(entry.amount.amount),
                'balance': str(entry.balance_after.amount),
                'currency': entry.amount.currency.code,
                'description': entry.description
            }
        )

    def _notify(self, events: List[EventPayload]) -> None:
        """Submit post-commit events; failures are logged and never raised"""
        for event in events:
            try:
                self.dispatcher.notify(event)
            except Exception as e:
                log_action(
                    self.logger, "ERROR",
                    f"Failed to submit {event.event_type.value} notification: {e}",
                    action="notification_failed",
                    resource=f"account:{event.account_id}",
                    correlation_id=event.correlation_id
                )

    def _committed(
        self,
        result: OperationResult,
        initiated_by: Optional[CallerIdentity],
        resource: str,
        extra: Optional[Dict[str, Any]] = None
    ) -> None:
        log_action(
            self.logger, "INFO",
            f"{result.operation.value} committed",
            user_id=_user_id(initiated_by),
            action=result.operation.value,
            resource=resource,
            correlation_id=result.correlation_id,
            extra=extra
        )

    def _fail(
        self,
        result: OperationResult,
        error: LedgerError,
        initiated_by: Optional[CallerIdentity]
    ) -> None:
        """Move the operation to REJECTED or ABORTED and log it"""
        if result.state is None:
            result.advance(OperationState.REJECTED)
            level = "WARNING"
        else:
            result.advance(OperationState.ABORTED)
            level = "ERROR"
        error.state = result.state.value

        log_action(
            self.logger, level,
            f"{result.operation.value} {result.state.value.lower()}: {error.message}",
            user_id=_user_id(initiated_by),
            action=result.operation.value,
            correlation_id=result.correlation_id,
            extra={'code': error.code, 'states': [s.value for s in result.states]}
        )

    def _fail_unexpected(
        self,
        result: OperationResult,
        initiated_by: Optional[CallerIdentity]
    ) -> None:
        if result.state is None:
            result.advance(OperationState.REJECTED)
        else:
            result.advance(OperationState.ABORTED)
        self.logger.exception(
            f"{result.operation.value} {result.state.value.lower()} by unexpected error "
            f"(correlation_id={result.correlation_id}, user={_user_id(initiated_by)})"
        )
