"""
Storage Backend Module

Provides the abstract Repository interface used by the registry, verifier
and ledger, plus in-memory (testing) and SQLite (persistence) backends.
All monetary values are stored as Decimal strings.

Besides plain key/value access every backend supplies two atomic
primitives: insert-if-absent (identifier reservation) and
compare-and-swap on a per-record version counter (ledger appends).
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import StorageUnavailable


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


class StorageInterface(ABC):
    """Abstract interface for storage backends"""
    
    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (insert or overwrite) a record"""
        pass
    
    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass
    
    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
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
    def insert_if_absent(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """
        Atomically insert a record only if the key is free.
        
        Returns:
            True if this call created the record, False if the key was taken
        """
        pass
    
    @abstractmethod
    def delete_if_match(self, table: str, record_id: str, expected: Dict[str, Any]) -> bool:
        """Delete a record only if every expected field still has the given value"""
        pass
    
    @abstractmethod
    def load_versioned(self, table: str, record_id: str) -> Optional[Tuple[Dict[str, Any], int]]:
        """Load a record together with its version counter"""
        pass
    
    @abstractmethod
    def compare_and_swap(
        self,
        table: str,
        record_id: str,
        expected_version: int,
        data: Dict[str, Any]
    ) -> bool:
        """
        Replace a record if its version still equals expected_version.
        
        A successful swap increments the version by one.
        """
        pass
    
    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass
    
    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass
    
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
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""
    
    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._versions: Dict[str, Dict[str, int]] = {}
        self._lock = threading.RLock()
    
    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}
            self._versions[table] = {}
    
    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))
    
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = self._copy(data)
            self._versions[table][record_id] = self._versions[table].get(record_id, 0) + 1
    
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is not None:
                return self._copy(record)
            return None
    
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]
    
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                self._versions[table].pop(record_id, None)
                return True
            return False
    
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]
    
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                self._copy(record) for record in self._data[table].values()
                if _matches(record, filters)
            ]
    
    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])
    
    def insert_if_absent(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                return False
            self._data[table][record_id] = self._copy(data)
            self._versions[table][record_id] = 1
            return True
    
    def delete_if_match(self, table: str, record_id: str, expected: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None or not _matches(record, expected):
                return False
            return self.delete(table, record_id)
    
    def load_versioned(self, table: str, record_id: str) -> Optional[Tuple[Dict[str, Any], int]]:
        with self._lock:
            record = self.load(table, record_id)
            if record is None:
                return None
            return record, self._versions[table][record_id]
    
    def compare_and_swap(
        self,
        table: str,
        record_id: str,
        expected_version: int,
        data: Dict[str, Any]
    ) -> bool:
        with self._lock:
            self._ensure_table(table)
            if self._versions[table].get(record_id) != expected_version:
                return False
            self._data[table][record_id] = self._copy(data)
            self._versions[table][record_id] = expected_version + 1
            return True
    
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}
            self._versions[table] = {}
    
    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""
    
    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._in_transaction = False
        self._known_tables = set()
        
        try:
            # Set isolation_level to 'DEFERRED' to enable manual transaction control
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level='DEFERRED'
            )
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot open SQLite database {self.db_path}") from e
        self._connection.row_factory = sqlite3.Row
        
        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()
    
    @contextmanager
    def _guard(self):
        """Serialize access and surface driver errors as StorageUnavailable"""
        with self._lock:
            if self._connection is None:
                raise StorageUnavailable("SQLite storage is closed")
            try:
                yield self._connection
            except sqlite3.Error as e:
                if not self._in_transaction:
                    self._connection.rollback()
                raise StorageUnavailable(str(e)) from e
    
    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
        with self._guard() as conn:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    seq INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            # Insertion order index used by load_all and find
            conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_seq 
                ON {table}(seq)
            """)
            if not self._in_transaction:
                conn.commit()
            self._known_tables.add(table)
    
    def _commit(self, conn: sqlite3.Connection) -> None:
        # Only commit if not in transaction
        if not self._in_transaction:
            conn.commit()
    
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        self._ensure_table(table)
        now = datetime.now(timezone.utc).isoformat()
        data_json = json.dumps(data, default=str)
        with self._guard() as conn:
            cursor = conn.execute(f"""
                UPDATE {table} SET data = ?, version = version + 1, updated_at = ?
                WHERE id = ?
            """, (data_json, now, record_id))
            if cursor.rowcount == 0:
                conn.execute(f"""
                    INSERT INTO {table} (id, data, version, seq, created_at, updated_at)
                    VALUES (?, ?, 1, (SELECT COALESCE(MAX(seq), 0) + 1 FROM {table}), ?, ?)
                """, (record_id, data_json, now, now))
            self._commit(conn)
    
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        versioned = self.load_versioned(table, record_id)
        return versioned[0] if versioned else None
    
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        self._ensure_table(table)
        with self._guard() as conn:
            cursor = conn.execute(f"SELECT data FROM {table} ORDER BY seq")
            return [json.loads(row['data']) for row in cursor.fetchall()]
    
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        self._ensure_table(table)
        with self._guard() as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._commit(conn)
            return cursor.rowcount > 0
    
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        self._ensure_table(table)
        with self._guard() as conn:
            cursor = conn.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None
    
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]
    
    def count(self, table: str) -> int:
        """Count records in table"""
        self._ensure_table(table)
        with self._guard() as conn:
            cursor = conn.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']
    
    def insert_if_absent(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        self._ensure_table(table)
        now = datetime.now(timezone.utc).isoformat()
        with self._guard() as conn:
            cursor = conn.execute(f"""
                INSERT OR IGNORE INTO {table} (id, data, version, seq, created_at, updated_at)
                VALUES (?, ?, 1, (SELECT COALESCE(MAX(seq), 0) + 1 FROM {table}), ?, ?)
            """, (record_id, json.dumps(data, default=str), now, now))
            self._commit(conn)
            return cursor.rowcount == 1
    
    def delete_if_match(self, table: str, record_id: str, expected: Dict[str, Any]) -> bool:
        self._ensure_table(table)
        with self._guard() as conn:
            row = conn.execute(f"""
                SELECT data, version FROM {table} WHERE id = ?
            """, (record_id,)).fetchone()
            if row is None or not _matches(json.loads(row['data']), expected):
                return False
            cursor = conn.execute(f"""
                DELETE FROM {table} WHERE id = ? AND version = ?
            """, (record_id, row['version']))
            self._commit(conn)
            return cursor.rowcount == 1
    
    def load_versioned(self, table: str, record_id: str) -> Optional[Tuple[Dict[str, Any], int]]:
        self._ensure_table(table)
        with self._guard() as conn:
            row = conn.execute(f"""
                SELECT data, version FROM {table} WHERE id = ?
            """, (record_id,)).fetchone()
            if row is None:
                return None
            return json.loads(row['data']), row['version']
    
    def compare_and_swap(
        self,
        table: str,
        record_id: str,
        expected_version: int,
        data: Dict[str, Any]
    ) -> bool:
        self._ensure_table(table)
        now = datetime.now(timezone.utc).isoformat()
        with self._guard() as conn:
            cursor = conn.execute(f"""
                UPDATE {table} SET data = ?, version = version + 1, updated_at = ?
                WHERE id = ? AND version = ?
            """, (json.dumps(data, default=str), now, record_id, expected_version))
            self._commit(conn)
            return cursor.rowcount == 1
    
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        self._ensure_table(table)
        with self._guard() as conn:
            conn.execute(f"DELETE FROM {table}")
            self._commit(conn)
    
    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            if not self._in_transaction:
                # SQLite with isolation_level='DEFERRED' starts transactions implicitly
                self._in_transaction = True
    
    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False
    
    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False
    
    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL.
    
    Supported forms: ``memory://`` and ``sqlite:///path/to/file.db``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database_url: {database_url}")
