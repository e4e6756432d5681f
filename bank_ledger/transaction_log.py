"""
Transaction Log Module

Append-only record of balance-affecting operations, keyed by account.
Each account's entries form a SHA-256 hash chain with a strictly increasing
sequence number, so any edit or gap in the stored history is detectable.
"""

import hashlib
import json
import uuid
from datetime import date, datetime, time, timezone
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .currency import Money, Currency
from .errors import Conflict
from .storage import StorageInterface, StorageRecord, unit_of_work


class EntryType(Enum):
    """Direction of a ledger entry"""
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


@dataclass
class LedgerEntry(StorageRecord):
    """
    Immutable record of one balance change on one account
    """
    account_id: str
    entry_type: EntryType
    amount: Money
    balance_after: Money
    sequence: int
    previous_hash: str
    entry_hash: str = ""
    correlation_id: Optional[str] = None
    description: str = ""
    initiated_by: Optional[str] = None

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValueError("Ledger entry amount must be positive")
        if self.balance_after.is_negative():
            raise ValueError("Ledger entry balance cannot be negative")

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this entry
        Hash covers every field except entry_hash itself
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'account_id': self.account_id,
            'entry_type': self.entry_type.value,
            'amount': str(self.amount.amount),
            'balance_after': str(self.balance_after.amount),
            'currency': self.amount.currency.code,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'correlation_id': self.correlation_id,
            'description': self.description,
            'initiated_by': self.initiated_by
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the stored hash is correct"""
        return self.entry_hash == self.calculate_hash()

    @property
    def timestamp(self) -> datetime:
        return self.created_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = super().to_dict()
        result['entry_type'] = self.entry_type.value
        result['amount'] = str(self.amount.amount)
        result['balance_after'] = str(self.balance_after.amount)
        result['currency'] = self.amount.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        """Create LedgerEntry from its stored dictionary"""
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            entry_type=EntryType(data['entry_type']),
            amount=Money(Decimal(data['amount']), currency),
            balance_after=Money(Decimal(data['balance_after']), currency),
            sequence=data['sequence'],
            previous_hash=data['previous_hash'],
            entry_hash=data['entry_hash'],
            correlation_id=data.get('correlation_id'),
            description=data.get('description', ''),
            initiated_by=data.get('initiated_by')
        )


def _as_datetime(value: Union[date, datetime], end_of_day: bool) -> datetime:
    """Widen a calendar date to the first or last instant of that day (UTC)"""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.combine(value, time.max if end_of_day else time.min, tzinfo=timezone.utc)


class TransactionLog:
    """
    Append-only ledger entry log with one hash chain per account.

    The chain head of every account (last sequence and hash) is kept in its
    own table and written with a version check, so two units of work can
    never both append sequence N to the same account.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "ledger_entries"):
        self.storage = storage
        self.table_name = table_name
        self.heads_table = f"{table_name}_heads"

    def _head(self, account_id: str) -> Dict[str, Any]:
        head = self.storage.load(self.heads_table, account_id)
        if head is None:
            return {'id': account_id, 'sequence': 0, 'hash': "", 'version': None}
        return head

    def create_entry(
        self,
        account_id: str,
        entry_type: EntryType,
        amount: Money,
        balance_after: Money,
        correlation_id: Optional[str] = None,
        description: str = "",
        initiated_by: Optional[str] = None
    ) -> LedgerEntry:
        """
        Build the next entry of an account's chain (not yet appended)

        Call inside the unit of work that will append it.
        """
        head = self._head(account_id)
        now = datetime.now(timezone.utc)
        entry = LedgerEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            entry_type=entry_type,
            amount=amount,
            balance_after=balance_after,
            sequence=head['sequence'] + 1,
            previous_hash=head['hash'],
            correlation_id=correlation_id,
            description=description,
            initiated_by=initiated_by
        )
        entry.entry_hash = entry.calculate_hash()
        return entry

    def append(self, entry: LedgerEntry) -> str:
        """
        Append an entry to its account's chain

        Returns:
            The entry id

        Raises:
            ValueError: If the entry hash does not match its contents
            Conflict: If the id is already recorded or the entry does not
                extend the current chain head
        """
        if not entry.verify_hash():
            raise ValueError(f"Ledger entry {entry.id} hash does not match its contents")

        with unit_of_work(self.storage):
            if self.storage.exists(self.table_name, entry.id):
                raise Conflict(f"Ledger entry {entry.id} is already recorded",
                               account_id=entry.account_id)

            head = self._head(entry.account_id)
            if entry.sequence != head['sequence'] + 1 or entry.previous_hash != head['hash']:
                raise Conflict(
                    f"Ledger entry {entry.id} does not extend the chain of account "
                    f"{entry.account_id} (head at sequence {head['sequence']})",
                    account_id=entry.account_id
                )

            self.storage.save(self.table_name, entry.id, entry.to_dict())
            self.storage.save_versioned(
                self.heads_table,
                entry.account_id,
                {'id': entry.account_id, 'sequence': entry.sequence,
                 'hash': entry.entry_hash, 'version': entry.sequence},
                head['version']
            )

        return entry.id

    def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        data = self.storage.load(self.table_name, entry_id)
        if data:
            return LedgerEntry.from_dict(data)
        return None

    def entries_for(
        self,
        account_id: str,
        start: Optional[Union[date, datetime]] = None,
        end: Optional[Union[date, datetime]] = None
    ) -> List[LedgerEntry]:
        """
        Get an account's entries, oldest first

        Args:
            account_id: Account to read
            start: Earliest entry time or date (inclusive)
            end: Latest entry time or date (inclusive)
        """
        entries = [
            LedgerEntry.from_dict(data)
            for data in self.storage.find(self.table_name, {'account_id': account_id})
        ]

        if start is not None:
            start_at = _as_datetime(start, end_of_day=False)
            entries = [e for e in entries if e.created_at >= start_at]
        if end is not None:
            end_at = _as_datetime(end, end_of_day=True)
            entries = [e for e in entries if e.created_at <= end_at]

        entries.sort(key=lambda e: e.sequence)
        return entries

    def entries_for_correlation(self, correlation_id: str) -> List[LedgerEntry]:
        """Get the entries sharing a correlation id (both legs of a transfer)"""
        entries = [
            LedgerEntry.from_dict(data)
            for data in self.storage.find(self.table_name, {'correlation_id': correlation_id})
        ]
        # Debit leg first
        entries.sort(key=lambda e: (e.created_at, e.entry_type != EntryType.DEBIT))
        return entries

    def count(self, account_id: Optional[str] = None) -> int:
        if account_id is None:
            return self.storage.count(self.table_name)
        return len(self.storage.find(self.table_name, {'account_id': account_id}))

    def verify_integrity(self, account_id: str) -> Dict[str, Any]:
        """
        Verify the hash chain and sequence continuity of one account

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'account_id': account_id,
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': [],
            'sequence_gaps': []
        }

        entries = self.entries_for(account_id)
        result['total_entries'] = len(entries)

        previous_hash = ""
        expected_sequence = 1
        for entry in entries:
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'sequence': entry.sequence,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.entry_hash
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'sequence': entry.sequence,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            if entry.sequence != expected_sequence:
                result['valid'] = False
                result['sequence_gaps'].append({
                    'entry_id': entry.id,
                    'expected_sequence': expected_sequence,
                    'actual_sequence': entry.sequence
                })
            previous_hash = entry.entry_hash
            expected_sequence = entry.sequence + 1

        head = self._head(account_id)
        if head['sequence'] != len(entries) or head['hash'] != previous_hash:
            result['valid'] = False
            result['chain_breaks'].append({
                'entry_id': None,
                'sequence': head['sequence'],
                'expected_previous_hash': previous_hash,
                'actual_previous_hash': head['hash']
            })

        return result
