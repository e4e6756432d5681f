"""
Storage Backend Module

Provides the transactional storage interface the ledger runs on, with an
in-memory implementation (testing) and SQLite (persistence). Records are
JSON documents keyed by id; all monetary values are stored as Decimal strings.

A unit of work is opened with ``storage.atomic()``. Writes made inside it are
invisible to other threads until commit and are discarded on rollback.
Nested ``atomic()`` blocks join the enclosing unit of work.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import Conflict


class StorageError(Exception):
    """Storage backend failure"""
    pass


class StorageConflictError(StorageError):
    """A write could not be serialised against a concurrent writer"""
    pass


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        # Convert Decimal objects to strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    """Deep copy through JSON to prevent external mutation"""
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for transactional storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (insert or replace) a record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record; returns whether it existed"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose fields equal all filter values"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start a unit of work for the calling thread"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the calling thread's unit of work"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Discard the calling thread's unit of work"""
        pass

    @abstractmethod
    def in_transaction(self) -> bool:
        """Whether the calling thread has an open unit of work"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def save_versioned(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: Optional[int]
    ) -> None:
        """
        Save a record only if the stored copy is at ``expected_version``.

        ``expected_version=None`` means the record must not exist yet.

        Raises:
            StorageConflictError: If another writer got there first
        """
        with self.atomic():
            current = self.load(table, record_id)
            self._check_version(table, record_id, current, expected_version)
            self.save(table, record_id, data)

    @staticmethod
    def _check_version(
        table: str,
        record_id: str,
        current: Optional[Dict[str, Any]],
        expected_version: Optional[int]
    ) -> None:
        if expected_version is None:
            if current is not None:
                raise StorageConflictError(f"{table}/{record_id} already exists")
            return
        if current is None:
            raise StorageConflictError(f"{table}/{record_id} no longer exists")
        if current.get('version') != expected_version:
            raise StorageConflictError(
                f"{table}/{record_id} is at version {current.get('version')}, "
                f"expected {expected_version}"
            )

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations; joins an enclosing unit of work"""
        if self.in_transaction():
            yield
            return

        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        try:
            self.commit()
        except BaseException:
            # A failed commit must not leave the unit of work open
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Each thread buffers its unit of work; commit applies the buffer under the
    storage lock so readers see either all of it or none of it.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _pending(self) -> Optional[Dict[str, Dict[str, Dict[str, Any]]]]:
        return getattr(self._local, 'pending', None)

    def _view(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with this thread's pending writes"""
        with self._lock:
            self._ensure_table(table)
            rows = dict(self._data[table])
        pending = self._pending()
        if pending and table in pending:
            rows.update(pending[table])
        # None marks a record deleted in this unit of work
        return {k: v for k, v in rows.items() if v is not None}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        copied = _copy(data)
        pending = self._pending()
        if pending is not None:
            pending.setdefault(table, {})[record_id] = copied
            return
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = copied

    def save_versioned(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: Optional[int]
    ) -> None:
        """Versioned save; inside a unit of work the check is repeated at commit"""
        with self.atomic():
            self._check_version(table, record_id, self.load(table, record_id), expected_version)
            self.save(table, record_id, data)
            expectations = self._local.expectations
            # Keep the first expectation: it describes the committed state we started from
            expectations.setdefault((table, record_id), expected_version)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        pending = self._pending()
        if pending and record_id in pending.get(table, {}):
            record = pending[table][record_id]
            return _copy(record) if record is not None else None
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is not None:
                return _copy(record)
            return None

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory; inside a unit of work the delete is buffered"""
        pending = self._pending()
        if pending is not None:
            existed = self.exists(table, record_id)
            if existed:
                pending.setdefault(table, {})[record_id] = None
            return existed
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [_copy(record) for record in self._view(table).values()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [_copy(record) for record in self._view(table).values()
                if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._view(table))

    def begin_transaction(self) -> None:
        """Start buffering writes for the calling thread"""
        if self._pending() is None:
            self._local.pending = {}
            self._local.expectations = {}

    def commit(self) -> None:
        """Apply the calling thread's buffered writes atomically"""
        pending = self._pending()
        if pending is None:
            return
        expectations = self._local.expectations
        try:
            with self._lock:
                for (table, record_id), expected in expectations.items():
                    self._ensure_table(table)
                    self._check_version(
                        table, record_id, self._data[table].get(record_id), expected
                    )
                for table, rows in pending.items():
                    self._ensure_table(table)
                    for record_id, record in rows.items():
                        if record is None:
                            self._data[table].pop(record_id, None)
                        else:
                            self._data[table][record_id] = record
        finally:
            self._local.pending = None
            self._local.expectations = None

    def rollback(self) -> None:
        """Discard the calling thread's buffered writes"""
        self._local.pending = None
        self._local.expectations = None

    def in_transaction(self) -> bool:
        return self._pending() is not None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all committed data for debugging/inspection"""
        with self._lock:
            return _copy(self._data)


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    Each thread gets its own connection. Units of work use BEGIN IMMEDIATE so
    writers are serialised by SQLite itself; a writer that cannot get the
    database lock within ``timeout`` seconds fails with StorageConflictError.

    The write lock SQLite takes is database-wide and is held for the whole
    unit of work. Operations on disjoint accounts therefore still run one at
    a time on this backend; per-account locking only adds parallelism on
    backends with finer-grained write locks.
    """

    def __init__(self, db_path: Union[str, Path], timeout: float = 5.0):
        self.db_path = str(db_path)
        if self.db_path == ":memory:":
            raise ValueError("SQLiteStorage needs a database file; use InMemoryStorage for tests")
        self.timeout = timeout
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._lock = threading.RLock()

        # Enable WAL mode for better concurrent access
        conn = self._connection()
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")

    def _connection(self) -> sqlite3.Connection:
        """Connection owned by the calling thread"""
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            # isolation_level=None: transactions are opened explicitly in begin_transaction
            conn = sqlite3.connect(
                self.db_path, timeout=self.timeout,
                isolation_level=None, check_same_thread=False
            )
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            self._local.tables = set()
            with self._lock:
                self._connections.append(conn)
        return conn

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection().execute(sql, params)
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise StorageConflictError(f"Database is locked: {e}") from e
            raise

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        self._connection()
        if table in self._local.tables:
            return
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._local.tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        self._ensure_table(table)
        now = datetime.now(timezone.utc).isoformat()
        data_json = json.dumps(data, default=str)

        # Upsert keeps seq and created_at of the original row
        self._execute(f"""
            INSERT INTO {table} (id, data, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                data = excluded.data,
                updated_at = excluded.updated_at
        """, (record_id, data_json, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        self._ensure_table(table)
        row = self._execute(f"""
            SELECT data FROM {table} WHERE id = ?
        """, (record_id,)).fetchone()
        if row:
            return json.loads(row['data'])
        return None

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        self._ensure_table(table)
        cursor = self._execute(f"""
            DELETE FROM {table} WHERE id = ?
        """, (record_id,))
        return cursor.rowcount > 0

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        self._ensure_table(table)
        rows = self._execute(f"""
            SELECT data FROM {table} ORDER BY seq
        """).fetchall()
        return [json.loads(row['data']) for row in rows]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        self._ensure_table(table)
        row = self._execute(f"""
            SELECT 1 FROM {table} WHERE id = ? LIMIT 1
        """, (record_id,)).fetchone()
        return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSON field extraction"""
        self._ensure_table(table)
        if not filters:
            return self.load_all(table)

        conditions = []
        params = []
        for key, value in filters.items():
            conditions.append("json_extract(data, ?) = ?")
            params.extend([f"$.{key}", value])

        where_clause = " AND ".join(conditions)
        rows = self._execute(f"""
            SELECT data FROM {table}
            WHERE {where_clause}
            ORDER BY seq
        """, tuple(params)).fetchall()

        # json_extract is loose about types (1 == '1'); re-check exactly
        records = [json.loads(row['data']) for row in rows]
        return [record for record in records if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        self._ensure_table(table)
        row = self._execute(f"""
            SELECT COUNT(*) as count FROM {table}
        """).fetchone()
        return row['count']

    def begin_transaction(self) -> None:
        """Start a write transaction, taking the database write lock"""
        if not self._connection().in_transaction:
            self._execute("BEGIN IMMEDIATE")

    def commit(self) -> None:
        """Commit current transaction"""
        conn = self._connection()
        if not conn.in_transaction:
            return
        try:
            self._execute("COMMIT")
        except StorageConflictError:
            self.rollback()
            raise

    def rollback(self) -> None:
        """Rollback current transaction"""
        conn = self._connection()
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        # DDL issued inside the transaction was rolled back too
        self._local.tables = set()

    def in_transaction(self) -> bool:
        return self._connection().in_transaction

    def close(self) -> None:
        """Close all SQLite connections"""
        with self._lock:
            for conn in self._connections:
                conn.close()
            self._connections = []
        self._local = threading.local()


@contextmanager
def unit_of_work(storage: StorageInterface):
    """storage.atomic() that reports write conflicts to callers as Conflict"""
    try:
        with storage.atomic():
            yield
    except StorageConflictError as e:
        raise Conflict(str(e)) from e
