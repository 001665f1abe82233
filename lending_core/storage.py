"""
Storage Backend Module

Abstract storage interface with in-memory (testing) and SQLite (persistence)
implementations. Records are JSON documents keyed by id; all monetary values
are stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from datetime import datetime
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from contextlib import contextmanager


@dataclass
class StorageRecord:
    """Base class for stored aggregates"""
    id: str
    created_at: datetime
    updated_at: datetime


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

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
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
        except Exception:
            self.rollback()
            raise
        self.commit()


_MISSING = object()


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    The lock is held for one statement at a time. Transactions belong to the
    calling thread and keep an undo log of the records they wrote, so a
    rollback restores only those records and transactions on other threads
    are never blocked.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def _undo_log(self) -> Optional[Dict[Tuple[str, str], List[Any]]]:
        return getattr(self._local, 'undo', None)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        # JSON round trip copies and normalizes like a real backend would
        record = json.loads(json.dumps(data, default=str))
        with self._lock:
            records = self._table(table)
            undo = self._undo_log()
            if undo is not None:
                # [value before the transaction, value this transaction wrote last]
                entry = undo.setdefault((table, record_id), [records.get(record_id, _MISSING), None])
                entry[1] = record
            records[record_id] = record

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            record = self._table(table).get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table, in insertion order"""
        with self._lock:
            return [copy.deepcopy(record) for record in self._table(table).values()]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            return [copy.deepcopy(record) for record in self._table(table).values()
                    if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        """Start recording an undo log for this thread; nested calls join it"""
        depth = getattr(self._local, 'depth', 0)
        if depth == 0:
            self._local.undo = {}
        self._local.depth = depth + 1

    def commit(self) -> None:
        self._local.depth -= 1
        if self._local.depth == 0:
            self._local.undo = None

    def rollback(self) -> None:
        self._local.depth -= 1
        if self._local.depth > 0:
            return
        undo, self._local.undo = self._local.undo, None
        with self._lock:
            for (table, record_id), (before, written) in undo.items():
                records = self._table(table)
                # A record another thread has rewritten since is left alone
                if records.get(record_id) is not written:
                    continue
                if before is _MISSING:
                    del records[record_id]
                else:
                    records[record_id] = before


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    A database file gets one connection per thread, so transactions on
    different threads only meet at SQLite's own write lock. A ":memory:"
    database lives inside a single connection, which is shared and whose
    transactions are serialized by a lock.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 30.0):
        self.db_path = str(db_path)
        self.timeout = timeout
        self._shared = self.db_path == ":memory:"
        self._lock = threading.RLock()
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._tables: set = set()
        self._closed = False
        self._shared_connection = self._connect() if self._shared else None

        if not self._shared:
            # WAL lets readers continue while one thread writes
            self._connection.execute("PRAGMA journal_mode = WAL")

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
        connection = sqlite3.connect(self.db_path, timeout=self.timeout,
                                     check_same_thread=False, isolation_level=None)
        connection.row_factory = sqlite3.Row
        if not self._shared:
            connection.execute("PRAGMA synchronous = NORMAL")
        with self._lock:
            self._connections.append(connection)
        return connection

    @property
    def _connection(self) -> sqlite3.Connection:
        if self._closed:
            raise sqlite3.ProgrammingError("Cannot operate on a closed storage")
        if self._shared:
            return self._shared_connection
        connection = getattr(self._local, 'connection', None)
        if connection is None:
            connection = self._connect()
            self._local.connection = connection
        return connection

    @contextmanager
    def _statement(self):
        """Connection for one statement; the shared connection is used under the lock"""
        if self._shared:
            with self._lock:
                yield self._connection
        else:
            yield self._connection

    def _ensure_table(self, connection: sqlite3.Connection, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                data TEXT NOT NULL
            )
        """)
        # Only cache tables other connections can already see
        if getattr(self._local, 'depth', 0) == 0:
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or update a record, keeping its original insertion position"""
        data_json = json.dumps(data, default=str)
        with self._statement() as connection:
            self._ensure_table(connection, table)
            connection.execute(f"""
                INSERT INTO {table} (id, data) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET data = excluded.data
            """, (record_id, data_json))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._statement() as connection:
            self._ensure_table(connection, table)
            row = connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._statement() as connection:
            self._ensure_table(connection, table)
            cursor = connection.execute(f"SELECT data FROM {table} ORDER BY seq")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        with self._statement() as connection:
            self._ensure_table(connection, table)
            cursor = connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._statement() as connection:
            self._ensure_table(connection, table)
            cursor = connection.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()['count']

    def begin_transaction(self) -> None:
        """Start a write transaction on this thread; nested calls join the outer one"""
        if self._shared:
            self._lock.acquire()
        depth = getattr(self._local, 'depth', 0)
        if depth == 0:
            try:
                self._connection.execute("BEGIN IMMEDIATE")
            except Exception:
                if self._shared:
                    self._lock.release()
                raise
        self._local.depth = depth + 1

    def commit(self) -> None:
        self._local.depth -= 1
        try:
            if self._local.depth == 0:
                try:
                    self._connection.execute("COMMIT")
                except sqlite3.Error:
                    self._connection.execute("ROLLBACK")
                    raise
        finally:
            if self._shared:
                self._lock.release()

    def rollback(self) -> None:
        self._local.depth -= 1
        try:
            if self._local.depth == 0:
                self._connection.execute("ROLLBACK")
        finally:
            if self._shared:
                self._lock.release()

    def close(self) -> None:
        """Close every connection opened by this storage"""
        with self._lock:
            self._closed = True
            for connection in self._connections:
                connection.close()
            self._connections = []


def create_storage(backend: str = "memory", database_path: str = "lending.db") -> StorageInterface:
    """Build a storage backend by name ("memory" or "sqlite")"""
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(database_path)
    raise ValueError(f"Unknown storage backend: {backend}")
