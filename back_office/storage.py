"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Every backend serializes access through one re-entrant lock. ``atomic()`` holds
that lock for the whole block, so read-modify-write sequences (sequence
allocation, uniqueness checks, request resolution) are linearizable within the
process and roll back as a unit on error.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import ConflictError


SEQUENCES_TABLE = "sequences"


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, datetime):
                result[key] = value.isoformat()
        return result


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete every record matching filters, returning how many went"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @property
    def transaction_depth(self) -> int:
        """Nesting depth of atomic() blocks held by the current owner of the lock"""
        return self._depth

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Re-entrant: nested blocks join the outermost one, which alone commits
        or rolls back.
        """
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self.begin_transaction()
            self._depth += 1
            try:
                yield
            except Exception:
                self._depth -= 1
                if outermost:
                    self.rollback()
                raise
            else:
                self._depth -= 1
                if outermost:
                    self.commit()

    def next_sequence(self, name: str) -> int:
        """Atomically increment and return the named counter (first value is 1)"""
        with self.atomic():
            row = self.load(SEQUENCES_TABLE, name)
            value = (int(row['value']) if row else 0) + 1
            self.save(SEQUENCES_TABLE, name, {'id': name, 'value': value})
            return value

    def save_unique(self, table: str, record_id: str, data: Dict[str, Any],
                    unique_fields: Dict[str, Any]) -> None:
        """
        Save a record unless another record already matches all unique_fields.

        The check and the write happen under the storage lock, so two
        concurrent writers cannot both pass the check.

        Raises:
            ConflictError: If a different record matches unique_fields
        """
        with self.atomic():
            for existing in self.find(table, unique_fields):
                if existing.get('id') != record_id:
                    fields = ", ".join(f"{k}={v}" for k, v in unique_fields.items())
                    raise ConflictError(f"Duplicate {table} record for {fields}")
            self.save(table, record_id, data)


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Transactions keep an undo log of the prior value of each record written
    or deleted, so begin and rollback cost is proportional to the records a
    transaction touches rather than to the size of the store.
    """

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._undo: Optional[Dict[Tuple[str, str], Optional[Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _remember(self, table: str, record_id: str) -> None:
        """Log the first prior value of a record touched inside a transaction"""
        if self._undo is not None and (table, record_id) not in self._undo:
            self._undo[(table, record_id)] = self._data[table].get(record_id)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._remember(table, record_id)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._remember(table, record_id)
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    @staticmethod
    def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        return all(key in record and record[key] == value for key, value in filters.items())

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                json.loads(json.dumps(record))
                for record in self._data[table].values()
                if self._matches(record, filters)
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete every record matching filters"""
        with self._lock:
            self._ensure_table(table)
            doomed = [rid for rid, record in self._data[table].items()
                      if self._matches(record, filters)]
            for record_id in doomed:
                self._remember(table, record_id)
                del self._data[table][record_id]
            return len(doomed)

    def begin_transaction(self) -> None:
        """Start an empty undo log"""
        with self._lock:
            self._undo = {}

    def commit(self) -> None:
        """Discard the undo log"""
        with self._lock:
            self._undo = None

    def rollback(self) -> None:
        """Put back every record touched since begin"""
        with self._lock:
            if self._undo is None:
                return
            for (table, record_id), previous in self._undo.items():
                if previous is None:
                    self._data[table].pop(record_id, None)
                else:
                    self._data[table][record_id] = previous
            self._undo = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage: one two-column table per record type

    Each row holds the record id and its JSON document. Rows keep their
    insertion order across updates (upserts preserve the rowid), and
    filters are evaluated by SQLite with ``json_extract``.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        # isolation_level=None: transactions are opened and closed explicitly
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False,
                                           isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._known_tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        if table in self._known_tables:
            return
        self._connection.execute(
            f"CREATE TABLE IF NOT EXISTS {table} (id TEXT PRIMARY KEY, data TEXT NOT NULL)"
        )
        self._known_tables.add(table)

    @staticmethod
    def _where(filters: Dict[str, Any]):
        """WHERE clause matching top-level keys of the JSON document"""
        if not filters:
            return "", ()
        clause = " AND ".join(f"json_extract(data, '$.{key}') = ?" for key in filters)
        return f"WHERE {clause}", tuple(filters.values())

    def _fetch(self, table: str, sql: str, params=()) -> List[sqlite3.Row]:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(sql, params).fetchall()

    def _execute(self, table: str, sql: str, params=()) -> int:
        """Run a write and return the number of rows it touched"""
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(sql, params).rowcount

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or update a record"""
        self._execute(
            table,
            f"INSERT INTO {table} (id, data) VALUES (?, ?) "
            f"ON CONFLICT(id) DO UPDATE SET data = excluded.data",
            (record_id, json.dumps(data, default=str))
        )

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        rows = self._fetch(table, f"SELECT data FROM {table} WHERE id = ?", (record_id,))
        return json.loads(rows[0]['data']) if rows else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        return self._execute(table, f"DELETE FROM {table} WHERE id = ?", (record_id,)) > 0

    def exists(self, table: str, record_id: str) -> bool:
        return bool(self._fetch(table, f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1",
                                (record_id,)))

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose JSON document matches every filter, in insertion order"""
        where, params = self._where(filters)
        rows = self._fetch(table, f"SELECT data FROM {table} {where} ORDER BY rowid", params)
        return [json.loads(row['data']) for row in rows]

    def count(self, table: str) -> int:
        return self._fetch(table, f"SELECT COUNT(*) FROM {table}")[0][0]

    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        where, params = self._where(filters)
        return self._execute(table, f"DELETE FROM {table} {where}", params)

    def begin_transaction(self) -> None:
        with self._lock:
            self._connection.execute("BEGIN IMMEDIATE")

    def commit(self) -> None:
        with self._lock:
            self._connection.execute("COMMIT")

    def rollback(self) -> None:
        with self._lock:
            self._connection.execute("ROLLBACK")
            # Tables created inside the transaction are gone too
            self._known_tables.clear()

    def close(self) -> None:
        """Close the SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory://`` gives InMemoryStorage; ``sqlite:///path.db`` or
    ``sqlite://:memory:`` gives SQLiteStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):])
    if database_url == "sqlite://:memory:":
        return SQLiteStorage(":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
