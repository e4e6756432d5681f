"""
Account Store Module

Owns account records and their balances. Every mutation runs inside one
storage unit of work and is written with a version check, so two writers can
never silently overwrite each other. Accounts are never deleted; closing an
account moves it to CLOSED.

The store does not lock accounts itself. Callers that need to serialise
concurrent operations (the ledger engine) hold the account locks around it.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from enum import Enum
import re
import secrets

from .currency import Money, Currency, parse_amount
from .errors import (
    AccountClosed, AccountExists, AccountNotFound, BalanceNotZero,
    Conflict, InsufficientFunds, InvalidRequest, SameAccount
)
from .storage import StorageInterface, StorageRecord, unit_of_work


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


@dataclass
class Account(StorageRecord):
    """Customer account holding a single-currency balance"""
    owner_id: str
    first_name: str
    last_name: str
    email: str
    balance: Money
    status: AccountStatus = AccountStatus.ACTIVE
    version: int = 1

    def __post_init__(self):
        if self.balance.is_negative():
            raise ValueError(f"Account {self.id} balance cannot be negative")

    @property
    def account_number(self) -> str:
        return self.id

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def currency(self) -> Currency:
        return self.balance.currency

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


class AccountStore:
    """
    Key/record store mapping account id to balance and metadata.

    The only owner of balance state.
    """

    def __init__(
        self,
        storage: StorageInterface,
        currency: Currency = Currency.USD,
        account_number_attempts: int = 10
    ):
        self.storage = storage
        self.currency = currency
        self.account_number_attempts = account_number_attempts
        self.accounts_table = "accounts"
        self.emails_table = "account_emails"

    # Reads

    def get(self, account_id: str) -> Account:
        """
        Get account by id

        Raises:
            AccountNotFound: If no such account exists
        """
        data = self.storage.load(self.accounts_table, account_id)
        if not data:
            raise AccountNotFound(account_id)
        return self._account_from_dict(data)

    def exists(self, account_id: str) -> bool:
        return self.storage.exists(self.accounts_table, account_id)

    def find_by_email(self, email: str) -> Optional[Account]:
        """Get the account registered for an e-mail address, if any"""
        index = self.storage.load(self.emails_table, email.strip().lower())
        if not index:
            return None
        return self.get(index['account_id'])

    def count(self) -> int:
        return self.storage.count(self.accounts_table)

    # Validation shared with the ledger engine

    def ensure_active(self, account: Account) -> None:
        if not account.is_active:
            raise AccountClosed(account.id)

    def ensure_funds(self, account: Account, amount: Money) -> None:
        if account.balance - amount < Money.zero(account.currency):
            raise InsufficientFunds(
                account.id, account.balance.to_string(), amount.to_string()
            )

    def validate_holder(self, first_name: str, last_name: str, email: str) -> str:
        """
        Check account holder details and e-mail uniqueness

        Returns:
            Normalised e-mail key

        Raises:
            InvalidRequest: If a name or the e-mail is missing or malformed
            AccountExists: If the e-mail already holds an account
        """
        email_key = self._check_details(first_name, last_name, email)
        if self.storage.exists(self.emails_table, email_key):
            raise AccountExists(email)
        return email_key

    def validate_update(
        self,
        account: Account,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None
    ) -> Tuple[str, str, str]:
        """
        Check new holder details for an existing account

        Fields left as None keep their current value. The e-mail may only
        move to an address no other account holds.

        Returns:
            (first name, last name, e-mail) after the update

        Raises:
            InvalidRequest, AccountExists
        """
        first = account.first_name if first_name is None else first_name
        last = account.last_name if last_name is None else last_name
        address = account.email if email is None else email

        email_key = self._check_details(first, last, address)
        if email_key != account.email.lower() and self.storage.exists(self.emails_table, email_key):
            raise AccountExists(address)
        return first.strip(), last.strip(), address.strip()

    def _check_details(self, first_name: str, last_name: str, email: str) -> str:
        if not first_name or not first_name.strip():
            raise InvalidRequest("First name is required", field="first_name")
        if not last_name or not last_name.strip():
            raise InvalidRequest("Last name is required", field="last_name")
        if not email or not EMAIL_PATTERN.match(email.strip()):
            raise InvalidRequest(f"Invalid e-mail address: {email!r}", field="email")
        return email.strip().lower()

    # Mutations

    def open(
        self,
        owner_id: str,
        first_name: str,
        last_name: str,
        email: str,
        account_number: Optional[str] = None
    ) -> Account:
        """
        Open a new ACTIVE account with a zero balance

        Args:
            owner_id: Caller identity that owns the account
            first_name: Account holder first name
            last_name: Account holder last name
            email: Account holder e-mail, unique across accounts
            account_number: Specific account number (generated if not provided)

        Raises:
            InvalidRequest: If holder details are missing or malformed
            AccountExists: If the e-mail already holds an account
            Conflict: If no free account number could be generated
        """
        with unit_of_work(self.storage):
            email_key = self.validate_holder(first_name, last_name, email)

            if account_number is None:
                account_number = self._generate_account_number()
            elif self.exists(account_number):
                raise Conflict(f"Account number {account_number} is already taken",
                               account_id=account_number)

            now = datetime.now(timezone.utc)
            account = Account(
                id=account_number,
                created_at=now,
                updated_at=now,
                owner_id=owner_id,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                email=email.strip(),
                balance=Money.zero(self.currency)
            )

            self.storage.save_versioned(
                self.emails_table, email_key,
                {"id": email_key, "account_id": account.id}, None
            )
            self.storage.save_versioned(
                self.accounts_table, account.id, self._account_to_dict(account), None
            )

        return account

    def credit(self, account_id: str, amount: Any) -> Money:
        """
        Add funds to an account

        Returns:
            New balance

        Raises:
            InvalidAmount, AccountNotFound, AccountClosed, Conflict
        """
        money = parse_amount(amount, self.currency)
        with unit_of_work(self.storage):
            account = self.get(account_id)
            self.ensure_active(account)
            account.balance = account.balance + money
            self._write(account)
        return account.balance

    def debit(self, account_id: str, amount: Any) -> Money:
        """
        Remove funds from an account

        Returns:
            New balance

        Raises:
            InvalidAmount, AccountNotFound, AccountClosed, InsufficientFunds, Conflict
        """
        money = parse_amount(amount, self.currency)
        with unit_of_work(self.storage):
            account = self.get(account_id)
            self.ensure_active(account)
            self.ensure_funds(account, money)
            account.balance = account.balance - money
            self._write(account)
        return account.balance

    def transfer(self, source_id: str, dest_id: str, amount: Any) -> Tuple[Money, Money]:
        """
        Move funds between two accounts in one unit of work

        Destination existence and status are checked before the source balance.

        Returns:
            (source balance, destination balance) after the transfer
        """
        if source_id == dest_id:
            raise SameAccount(source_id)
        money = parse_amount(amount, self.currency)

        with unit_of_work(self.storage):
            destination = self.get(dest_id)
            self.ensure_active(destination)
            source = self.get(source_id)
            self.ensure_active(source)
            self.ensure_funds(source, money)

            source.balance = source.balance - money
            destination.balance = destination.balance + money
            self._write(source)
            self._write(destination)

        return source.balance, destination.balance

    def close(self, account_id: str) -> Account:
        """
        Close an account; only allowed at zero balance

        Raises:
            AccountNotFound, AccountClosed, BalanceNotZero
        """
        with unit_of_work(self.storage):
            account = self.get(account_id)
            self.ensure_active(account)
            if not account.balance.is_zero():
                raise BalanceNotZero(account.id, account.balance.to_string())
            account.status = AccountStatus.CLOSED
            self._write(account)
        return account

    def update_holder(
        self,
        account_id: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None
    ) -> Account:
        """
        Change the holder's name or e-mail on an ACTIVE account

        A new e-mail moves the uniqueness index entry in the same unit of
        work, so the old address is free again once this commits.

        Raises:
            AccountNotFound, AccountClosed, InvalidRequest, AccountExists, Conflict
        """
        with unit_of_work(self.storage):
            account = self.get(account_id)
            self.ensure_active(account)
            first, last, address = self.validate_update(account, first_name, last_name, email)

            old_key = account.email.lower()
            new_key = address.lower()
            if new_key != old_key:
                self.storage.delete(self.emails_table, old_key)
                self.storage.save_versioned(
                    self.emails_table, new_key,
                    {"id": new_key, "account_id": account.id}, None
                )

            account.first_name = first
            account.last_name = last
            account.email = address
            self._write(account)
        return account

    def _write(self, account: Account) -> None:
        """Persist a mutated account, bumping its version"""
        expected = account.version
        account.version += 1
        account.updated_at = datetime.now(timezone.utc)
        self.storage.save_versioned(
            self.accounts_table, account.id, self._account_to_dict(account), expected
        )

    def _generate_account_number(self) -> str:
        """Current year followed by six random digits"""
        year = datetime.now(timezone.utc).year
        for _ in range(self.account_number_attempts):
            candidate = f"{year}{secrets.randbelow(1_000_000):06d}"
            if not self.exists(candidate):
                return candidate
        raise Conflict("Could not generate a free account number")

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        result = account.to_dict()
        result['balance'] = str(account.balance.amount)
        result['currency'] = account.balance.currency.code
        result['status'] = account.status.value
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner_id=data['owner_id'],
            first_name=data['first_name'],
            last_name=data['last_name'],
            email=data['email'],
            balance=Money(Decimal(data['balance']), Currency[data['currency']]),
            status=AccountStatus(data['status']),
            version=data['version']
        )
