"""
Ledger Error Taxonomy

Every failure a caller can observe from the ledger is one of these types.
Each carries a stable ``code`` so callers can branch on it without parsing
messages, and ``to_dict`` for structured responses.
"""

from typing import Any, Dict, Iterable, Optional


class LedgerError(Exception):
    """Base class for all ledger failures reported to callers"""

    code = "LEDGER_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details
        # Terminal operation state, set by the ledger engine when it reports the failure
        self.state: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for structured responses"""
        result = {
            "code": self.code,
            "message": self.message,
            "type": self.__class__.__name__,
            "details": {k: str(v) for k, v in self.details.items() if v is not None},
        }
        if self.state:
            result["state"] = self.state
        return result


class AccountNotFound(LedgerError):
    """Account identifier does not exist"""

    code = "NOT_FOUND"

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found", account_id=account_id)
        self.account_id = account_id


class InvalidAmount(LedgerError):
    """Amount is not positive, not a decimal, or has the wrong scale"""

    code = "INVALID_AMOUNT"

    def __init__(self, message: str, amount: Any = None):
        super().__init__(message, amount=amount)
        self.amount = amount


class InsufficientFunds(LedgerError):
    """Debit would take the balance below zero"""

    code = "INSUFFICIENT_FUNDS"

    def __init__(self, account_id: str, balance: Any, amount: Any):
        super().__init__(
            f"Insufficient funds in account {account_id}: balance {balance}, requested {amount}",
            account_id=account_id, balance=balance, amount=amount
        )
        self.account_id = account_id
        self.balance = balance
        self.amount = amount


class AccountClosed(LedgerError):
    """Account status is CLOSED"""

    code = "ACCOUNT_CLOSED"

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} is closed", account_id=account_id)
        self.account_id = account_id


class SameAccount(LedgerError):
    """Transfer source and destination are the same account"""

    code = "SAME_ACCOUNT"

    def __init__(self, account_id: str):
        super().__init__(
            f"Cannot transfer from account {account_id} to itself", account_id=account_id
        )
        self.account_id = account_id


class Busy(LedgerError):
    """Account locks could not be acquired within the timeout"""

    code = "BUSY"

    def __init__(self, account_ids: Iterable[str], timeout: float):
        ids = list(account_ids)
        super().__init__(
            f"Timed out after {timeout}s waiting for account lock(s): {', '.join(ids)}",
            account_ids=",".join(ids), timeout=timeout
        )
        self.account_ids = ids
        self.timeout = timeout


class Conflict(LedgerError):
    """Underlying transactional write conflict"""

    code = "CONFLICT"

    def __init__(self, message: str, account_id: Optional[str] = None):
        super().__init__(message, account_id=account_id)
        self.account_id = account_id


class AccountExists(LedgerError):
    """An account is already registered for this e-mail"""

    code = "ACCOUNT_EXISTS"

    def __init__(self, email: str):
        super().__init__(f"An account already exists for {email}", email=email)
        self.email = email


class InvalidRequest(LedgerError):
    """Request field is missing or malformed"""

    code = "INVALID_REQUEST"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, field=field)
        self.field = field


class BalanceNotZero(LedgerError):
    """Account cannot be closed while it holds funds"""

    code = "BALANCE_NOT_ZERO"

    def __init__(self, account_id: str, balance: Any):
        super().__init__(
            f"Cannot close account {account_id} with non-zero balance {balance}",
            account_id=account_id, balance=balance
        )
        self.account_id = account_id
        self.balance = balance
