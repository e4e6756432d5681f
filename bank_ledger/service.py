"""
Bank Service Module

Operation surface exposed to controllers. Wraps the ledger engine and turns
every ledger failure into a structured ``BankResponse`` with a response code,
so callers never see a generic failure for a known condition.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Type, Union

from .accounts import Account
from .engine import LedgerEngine, OperationResult
from .errors import (
    AccountClosed, AccountExists, AccountNotFound, BalanceNotZero, Busy,
    Conflict, InsufficientFunds, InvalidAmount, InvalidRequest, LedgerError,
    SameAccount
)
from .identity import CallerIdentity, IdentityProvider
from .transaction_log import LedgerEntry


class ResponseCode(Enum):
    """Response codes returned to controllers"""
    ACCOUNT_EXISTS = ("001", "This user already has an account created")
    ACCOUNT_CREATED = ("002", "Account has been successfully created")
    ACCOUNT_NOT_FOUND = ("003", "User with the provided account number does not exist")
    ACCOUNT_FOUND = ("004", "User account found")
    ACCOUNT_CREDITED = ("005", "User account was credited successfully")
    INSUFFICIENT_FUNDS = ("006", "Insufficient balance")
    ACCOUNT_DEBITED = ("007", "Account has been successfully debited")
    TRANSFER_SUCCESSFUL = ("008", "Transfer successful")
    ACCOUNT_CLOSED = ("009", "Account is closed")
    SAME_ACCOUNT = ("010", "Source and destination accounts are the same")
    INVALID_AMOUNT = ("011", "Invalid amount")
    BUSY = ("012", "Account is busy, try again")
    CONFLICT = ("013", "Account was changed by another request, try again")
    INVALID_REQUEST = ("014", "Invalid request")
    BALANCE_NOT_ZERO = ("015", "Account balance must be zero to close the account")
    ACCOUNT_CLOSED_SUCCESS = ("016", "Account has been closed")
    STATEMENT_GENERATED = ("017", "Transaction history retrieved")
    PROFILE_UPDATED = ("018", "Profile has been updated")

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message


SUCCESS_CODES = {
    ResponseCode.ACCOUNT_CREATED,
    ResponseCode.ACCOUNT_FOUND,
    ResponseCode.ACCOUNT_CREDITED,
    ResponseCode.ACCOUNT_DEBITED,
    ResponseCode.TRANSFER_SUCCESSFUL,
    ResponseCode.ACCOUNT_CLOSED_SUCCESS,
    ResponseCode.STATEMENT_GENERATED,
    ResponseCode.PROFILE_UPDATED,
}

ERROR_CODES: Dict[Type[LedgerError], ResponseCode] = {
    AccountExists: ResponseCode.ACCOUNT_EXISTS,
    AccountNotFound: ResponseCode.ACCOUNT_NOT_FOUND,
    InsufficientFunds: ResponseCode.INSUFFICIENT_FUNDS,
    AccountClosed: ResponseCode.ACCOUNT_CLOSED,
    SameAccount: ResponseCode.SAME_ACCOUNT,
    InvalidAmount: ResponseCode.INVALID_AMOUNT,
    Busy: ResponseCode.BUSY,
    Conflict: ResponseCode.CONFLICT,
    InvalidRequest: ResponseCode.INVALID_REQUEST,
    BalanceNotZero: ResponseCode.BALANCE_NOT_ZERO,
}


@dataclass
class AccountInfo:
    """Account summary returned with a response"""
    account_name: str
    account_number: str
    account_balance: Decimal
    currency: str

    @classmethod
    def from_account(cls, account: Account) -> 'AccountInfo':
        return cls(
            account_name=account.full_name,
            account_number=account.id,
            account_balance=account.balance.amount,
            currency=account.currency.code
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'account_name': self.account_name,
            'account_number': self.account_number,
            'account_balance': str(self.account_balance),
            'currency': self.currency
        }


@dataclass
class BankResponse:
    """Structured result of a service call"""
    response_code: ResponseCode
    response_message: str
    account_info: Optional[AccountInfo] = None
    correlation_id: Optional[str] = None
    transactions: Optional[List[Dict[str, Any]]] = None
    profile: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.response_code in SUCCESS_CODES

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'response_code': self.response_code.code,
            'response_message': self.response_message,
            'success': self.success,
        }
        if self.account_info:
            result['account_info'] = self.account_info.to_dict()
        if self.correlation_id:
            result['correlation_id'] = self.correlation_id
        if self.transactions is not None:
            result['transactions'] = self.transactions
        if self.profile is not None:
            result['profile'] = self.profile
        if self.error:
            result['error'] = self.error
        return result


def _profile_to_dict(account: Account) -> Dict[str, Any]:
    return {
        'account_number': account.id,
        'first_name': account.first_name,
        'last_name': account.last_name,
        'email': account.email,
        'owner_id': account.owner_id,
        'status': account.status.value,
        'created_at': account.created_at.isoformat()
    }


def _entry_to_dict(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        'id': entry.id,
        'account_number': entry.account_id,
        'transaction_type': entry.entry_type.value,
        'amount': str(entry.amount.amount),
        'balance_after': str(entry.balance_after.amount),
        'currency': entry.amount.currency.code,
        'timestamp': entry.created_at.isoformat(),
        'correlation_id': entry.correlation_id,
        'description': entry.description
    }


class BankService:
    """Controller-facing banking operations"""

    def __init__(self, engine: LedgerEngine, identity_provider: Optional[IdentityProvider] = None):
        self.engine = engine
        self.identity_provider = identity_provider

    def authenticate(self, token: str) -> CallerIdentity:
        """Resolve a bearer token through the configured identity provider"""
        if self.identity_provider is None:
            raise RuntimeError("No identity provider configured")
        return self.identity_provider.authenticate(token)

    def _error_response(self, error: LedgerError) -> BankResponse:
        code = ERROR_CODES.get(type(error), ResponseCode.INVALID_REQUEST)
        return BankResponse(
            response_code=code,
            response_message=error.message,
            error=error.to_dict()
        )

    def _account_response(self, code: ResponseCode, account: Account,
                          operation: Optional[OperationResult] = None) -> BankResponse:
        info = AccountInfo.from_account(account)
        if operation and account.id in operation.balances:
            # Balance as committed by this operation, not by a later one
            info.account_balance = operation.balances[account.id].amount
        return BankResponse(
            response_code=code,
            response_message=code.message,
            account_info=info,
            correlation_id=operation.correlation_id if operation else None
        )

    def create_account(
        self,
        first_name: str,
        last_name: str,
        email: str,
        caller: Optional[CallerIdentity] = None
    ) -> BankResponse:
        try:
            result = self.engine.open_account(first_name, last_name, email, initiated_by=caller)
        except LedgerError as e:
            return self._error_response(e)
        return self._account_response(ResponseCode.ACCOUNT_CREATED, result.account, result)

    def balance_enquiry(self, account_number: str) -> BankResponse:
        try:
            account = self.engine.get_account(account_number)
        except LedgerError as e:
            return self._error_response(e)
        return self._account_response(ResponseCode.ACCOUNT_FOUND, account)

    def name_enquiry(self, account_number: str) -> BankResponse:
        """Account holder name, without the balance"""
        try:
            account = self.engine.get_account(account_number)
        except LedgerError as e:
            return self._error_response(e)
        return BankResponse(
            response_code=ResponseCode.ACCOUNT_FOUND,
            response_message=account.full_name
        )

    def credit_account(self, account_number: str, amount: Any,
                       caller: Optional[CallerIdentity] = None) -> BankResponse:
        try:
            result = self.engine.credit(account_number, amount, initiated_by=caller)
            account = self.engine.get_account(account_number)
        except LedgerError as e:
            return self._error_response(e)
        return self._account_response(ResponseCode.ACCOUNT_CREDITED, account, result)

    def debit_account(self, account_number: str, amount: Any,
                      caller: Optional[CallerIdentity] = None) -> BankResponse:
        try:
            result = self.engine.debit(account_number, amount, initiated_by=caller)
            account = self.engine.get_account(account_number)
        except LedgerError as e:
            return self._error_response(e)
        return self._account_response(ResponseCode.ACCOUNT_DEBITED, account, result)

    def transfer(self, source_account_number: str, destination_account_number: str,
                 amount: Any, caller: Optional[CallerIdentity] = None) -> BankResponse:
        """Transfer funds; the response carries the source account"""
        try:
            result = self.engine.transfer(
                source_account_number, destination_account_number, amount, initiated_by=caller
            )
            account = self.engine.get_account(source_account_number)
        except LedgerError as e:
            return self._error_response(e)
        return self._account_response(ResponseCode.TRANSFER_SUCCESSFUL, account, result)

    def transaction_history(
        self,
        account_number: str,
        start: Optional[Union[date, datetime]] = None,
        end: Optional[Union[date, datetime]] = None
    ) -> BankResponse:
        """Bank statement: ledger entries oldest first, optionally within a date range"""
        try:
            account = self.engine.get_account(account_number)
            entries = self.engine.history(account_number, start, end)
        except LedgerError as e:
            return self._error_response(e)
        response = self._account_response(ResponseCode.STATEMENT_GENERATED, account)
        response.transactions = [_entry_to_dict(entry) for entry in entries]
        return response

    def close_account(self, account_number: str,
                      caller: Optional[CallerIdentity] = None) -> BankResponse:
        try:
            result = self.engine.close_account(account_number, initiated_by=caller)
        except LedgerError as e:
            return self._error_response(e)
        return self._account_response(ResponseCode.ACCOUNT_CLOSED_SUCCESS, result.account, result)

    def get_profile(self, account_number: str) -> BankResponse:
        """Account holder details"""
        try:
            account = self.engine.get_account(account_number)
        except LedgerError as e:
            return self._error_response(e)
        response = self._account_response(ResponseCode.ACCOUNT_FOUND, account)
        response.profile = _profile_to_dict(account)
        return response

    def update_profile(
        self,
        account_number: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
        caller: Optional[CallerIdentity] = None
    ) -> BankResponse:
        """Change holder name or e-mail; omitted fields are kept"""
        try:
            result = self.engine.update_profile(
                account_number, first_name, last_name, email, initiated_by=caller
            )
        except LedgerError as e:
            return self._error_response(e)
        response = self._account_response(ResponseCode.PROFILE_UPDATED, result.account, result)
        response.profile = _profile_to_dict(result.account)
        return response
