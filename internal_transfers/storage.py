"""
Ledger Storage Module

Provides the abstract ledger storage interface and implementations for
in-memory (testing), SQLite (single node) and PostgreSQL (production) stores.
Owns the durable representation of accounts and the append-only transfer
audit log. All monetary values are Decimal; no business rules live here.

Transaction state is tracked per calling thread, so one storage instance can
serve many concurrent transfers.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, asdict, replace
from enum import Enum
from pathlib import Path
from contextlib import contextmanager
import itertools
import sqlite3
import threading
import time

from .errors import (
    AccountNotFoundError, DuplicateAccountError, InvalidStateError,
    OperationTimeoutError, StorageFailureError
)
from .logging_config import get_logger


logger = get_logger("transfers.storage")


class TransferStatus(Enum):
    """Outcome of a transfer attempt"""
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class Account:
    """An account and its current balance"""
    account_id: int
    balance: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {"account_id": self.account_id, "balance": decimal_text(self.balance)}


@dataclass(frozen=True)
class TransactionRecord:
    """
    Immutable audit log entry for one transfer attempt.

    `id` and `created_at` are assigned by the store when the record is
    appended; records built by the engine leave them unset.
    """
    source_account_id: int
    destination_account_id: int
    amount: Decimal
    status: TransferStatus
    error_message: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == TransferStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary"""
        result = asdict(self)
        result['amount'] = decimal_text(self.amount)
        result['status'] = self.status.value
        result['created_at'] = self.created_at.isoformat() if self.created_at else None
        return result

    @classmethod
    def from_row(cls, row: Any) -> 'TransactionRecord':
        """Create instance from a database row mapping"""
        created_at = row['created_at']
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return cls(
            id=row['id'],
            created_at=created_at,
            source_account_id=row['source_account_id'],
            destination_account_id=row['destination_account_id'],
            amount=Decimal(str(row['amount'])),
            status=TransferStatus(row['status']),
            error_message=row['error_message']
        )


def _check_balance(account_id: int, balance: Decimal) -> None:
    if balance < 0:
        raise InvalidStateError(f"balance of account {account_id} cannot be negative: {balance}")


def _check_record(record: TransactionRecord) -> None:
    if record.amount <= 0:
        raise InvalidStateError(f"transaction amount must be positive: {record.amount}")
    if record.id is not None:
        raise InvalidStateError(f"transaction record {record.id} has already been appended")


def decimal_text(value: Decimal) -> str:
    """Fixed-point text form, never exponent notation"""
    return format(value, 'f')


def _lock_wait(timeout: Optional[float]) -> float:
    """Convert an optional timeout into the argument threading locks expect"""
    if timeout is None:
        return -1
    return max(timeout, 0)


class LedgerStorage(ABC):
    """Abstract interface for ledger storage backends"""

    dialect = "abstract"

    @abstractmethod
    def insert_account(self, account_id: int, initial_balance: Decimal,
                       timeout: Optional[float] = None) -> Account:
        """Insert a new account; DuplicateAccountError if the id exists"""
        pass

    @abstractmethod
    def read_balance(self, account_id: int, timeout: Optional[float] = None) -> Decimal:
        """Read the committed balance without locking"""
        pass

    @abstractmethod
    def read_balance_for_update(self, account_id: int) -> Decimal:
        """Read a balance inside the active transaction, holding the row's exclusive lock"""
        pass

    @abstractmethod
    def write_balance(self, account_id: int, new_balance: Decimal) -> None:
        """Overwrite a balance whose row lock the active transaction holds"""
        pass

    @abstractmethod
    def append_transaction_record(self, record: TransactionRecord) -> TransactionRecord:
        """Append an audit record and return the stored copy"""
        pass

    @abstractmethod
    def list_transaction_records(self, account_id: int,
                                 limit: Optional[int] = None) -> List[TransactionRecord]:
        """Audit records where the account is source or destination, newest first"""
        pass

    @abstractmethod
    def begin_transaction(self, timeout: Optional[float] = None) -> None:
        """Start a transaction for the calling thread"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the calling thread's transaction (no-op if none)"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the calling thread's transaction (no-op if none)"""
        pass

    @abstractmethod
    def in_transaction(self) -> bool:
        """Whether the calling thread has an active transaction"""
        pass

    @abstractmethod
    def applied_migrations(self) -> List[Dict[str, Any]]:
        """Schema migrations recorded as applied, ordered by version"""
        pass

    @abstractmethod
    def apply_migration(self, version: int, name: str, checksum: str,
                        statements: List[str]) -> None:
        """Run migration statements and record the version, atomically"""
        pass

    @abstractmethod
    def revert_migration(self, version: int, statements: List[str]) -> None:
        """Run rollback statements and forget the version, atomically"""
        pass

    @abstractmethod
    def clear_all(self) -> None:
        """Delete every account and audit record, keeping the schema"""
        pass

    def ping(self) -> None:
        """Raise StorageFailureError if the store is unreachable (default no-op)"""
        pass

    def close(self) -> None:
        """Close storage connections (default no-op)"""
        pass

    @contextmanager
    def atomic(self, timeout: Optional[float] = None):
        """Context manager for atomic operations"""
        self.begin_transaction(timeout)
        try:
            yield self
            self.commit()
        except Exception:
            self.rollback()
            raise


class _PendingTransaction:
    """Per-thread state of an in-memory transaction"""

    def __init__(self, timeout: Optional[float]):
        self.deadline = None if timeout is None else time.monotonic() + timeout
        self.locks: Dict[int, threading.Lock] = {}
        self.balances: Dict[int, Decimal] = {}
        self.records: List[TransactionRecord] = []

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()


class InMemoryLedgerStorage(LedgerStorage):
    """
    In-memory storage implementation for testing.

    Each account row has its own lock, held from read_balance_for_update
    until commit or rollback. Writes are staged per transaction and become
    visible to other threads only on commit.
    """

    dialect = "memory"

    def __init__(self):
        self._balances: Dict[int, Decimal] = {}
        self._row_locks: Dict[int, threading.Lock] = {}
        self._records: List[TransactionRecord] = []
        self._migrations: Dict[int, Dict[str, Any]] = {}
        self._sequence = itertools.count(1)
        self._lock = threading.RLock()
        self._local = threading.local()

    def _current(self) -> Optional[_PendingTransaction]:
        return getattr(self._local, 'tx', None)

    def _require_transaction(self) -> _PendingTransaction:
        tx = self._current()
        if tx is None:
            raise InvalidStateError("no active transaction")
        return tx

    def insert_account(self, account_id: int, initial_balance: Decimal,
                       timeout: Optional[float] = None) -> Account:
        """Insert an account into memory"""
        _check_balance(account_id, initial_balance)
        with self._lock:
            if account_id in self._balances:
                raise DuplicateAccountError(account_id)
            self._balances[account_id] = initial_balance
            self._row_locks[account_id] = threading.Lock()
        return Account(account_id=account_id, balance=initial_balance)

    def read_balance(self, account_id: int, timeout: Optional[float] = None) -> Decimal:
        """Read the committed balance"""
        with self._lock:
            if account_id not in self._balances:
                raise AccountNotFoundError(account_id)
            return self._balances[account_id]

    def read_balance_for_update(self, account_id: int) -> Decimal:
        """Lock the account row for the calling thread's transaction"""
        tx = self._require_transaction()
        if account_id in tx.locks:
            return tx.balances[account_id]

        with self._lock:
            row_lock = self._row_locks.get(account_id)
        if row_lock is None:
            raise AccountNotFoundError(account_id)

        if not row_lock.acquire(timeout=_lock_wait(tx.remaining())):
            raise OperationTimeoutError(f"timed out waiting for lock on account {account_id}")
        tx.locks[account_id] = row_lock

        with self._lock:
            balance = self._balances[account_id]
        tx.balances[account_id] = balance
        return balance

    def write_balance(self, account_id: int, new_balance: Decimal) -> None:
        """Stage a new balance in the calling thread's transaction"""
        tx = self._require_transaction()
        if account_id not in tx.locks:
            raise InvalidStateError(f"account {account_id} is not locked by this transaction")
        _check_balance(account_id, new_balance)
        tx.balances[account_id] = new_balance

    def append_transaction_record(self, record: TransactionRecord) -> TransactionRecord:
        """Append a record; staged until commit when inside a transaction"""
        _check_record(record)
        with self._lock:
            stored = replace(record, id=next(self._sequence), created_at=datetime.now(timezone.utc))
            tx = self._current()
            if tx is None:
                self._records.append(stored)
            else:
                tx.records.append(stored)
        return stored

    def list_transaction_records(self, account_id: int,
                                 limit: Optional[int] = None) -> List[TransactionRecord]:
        with self._lock:
            matches = [
                r for r in self._records
                if r.source_account_id == account_id or r.destination_account_id == account_id
            ]
        matches.sort(key=lambda r: r.id, reverse=True)
        if limit is not None:
            matches = matches[:limit]
        return matches

    def begin_transaction(self, timeout: Optional[float] = None) -> None:
        """Start a transaction for the calling thread"""
        if self._current() is not None:
            raise InvalidStateError("transaction already active")
        self._local.tx = _PendingTransaction(timeout)

    def commit(self) -> None:
        """Publish staged writes and release row locks"""
        tx = self._current()
        if tx is None:
            return
        try:
            with self._lock:
                self._balances.update(tx.balances)
                self._records.extend(tx.records)
        finally:
            self._release(tx)

    def rollback(self) -> None:
        """Discard staged writes and release row locks"""
        tx = self._current()
        if tx is None:
            return
        self._release(tx)

    def _release(self, tx: _PendingTransaction) -> None:
        self._local.tx = None
        for row_lock in tx.locks.values():
            row_lock.release()

    def in_transaction(self) -> bool:
        return self._current() is not None

    def applied_migrations(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(self._migrations[v]) for v in sorted(self._migrations)]

    def apply_migration(self, version: int, name: str, checksum: str,
                        statements: List[str]) -> None:
        # Nothing to create: the in-memory schema is implicit
        with self._lock:
            self._migrations[version] = {
                "version": version,
                "name": name,
                "checksum": checksum,
                "applied_at": datetime.now(timezone.utc).isoformat()
            }

    def revert_migration(self, version: int, statements: List[str]) -> None:
        with self._lock:
            self._migrations.pop(version, None)

    def clear_all(self) -> None:
        with self._lock:
            self._balances.clear()
            self._row_locks.clear()
            self._records.clear()


_MIGRATION_TABLE_SQLITE = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        checksum TEXT NOT NULL,
        applied_at TEXT NOT NULL
    )
"""


class SQLiteLedgerStorage(LedgerStorage):
    """
    SQLite storage implementation for persistence.

    SQLite has no row locks: transactions open with BEGIN IMMEDIATE and hold
    the database write lock until they finish, which serializes writers
    across threads and processes. The shared connection is guarded by a
    reentrant lock that the owning thread keeps for the whole transaction.

    File databases run in WAL mode and serve committed-state reads
    (read_balance, list_transaction_records) from a second, query-only
    connection, so those reads never wait for a transaction in progress.
    An in-memory database cannot be shared between connections and reads
    through the transaction connection instead.
    """

    dialect = "sqlite"

    def __init__(self, db_path: Union[str, Path] = ":memory:", busy_timeout: float = 5.0):
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        # Autocommit mode; transactions are opened explicitly
        self._connection = self._connect()
        self._lock = threading.RLock()
        self._owner: Optional[int] = None
        self._locked_rows: set = set()
        self._reader: Optional[sqlite3.Connection] = None
        self._read_lock = threading.Lock()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
            self._reader = self._connect()
            self._reader.execute("PRAGMA query_only = ON")

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=self.busy_timeout
        )
        connection.row_factory = sqlite3.Row
        return connection

    def _acquire(self, timeout: Optional[float]) -> None:
        if not self._lock.acquire(timeout=_lock_wait(timeout)):
            raise OperationTimeoutError("timed out waiting for the database connection")

    @staticmethod
    def _translate(exc: sqlite3.Error) -> Exception:
        message = str(exc)
        if isinstance(exc, sqlite3.IntegrityError):
            return InvalidStateError(message)
        if isinstance(exc, sqlite3.OperationalError) and ("locked" in message or "busy" in message):
            return OperationTimeoutError(message)
        return StorageFailureError(f"sqlite error: {message}")

    @contextmanager
    def _connection_for(self, timeout: Optional[float] = None):
        """Yield the shared connection while holding the connection lock"""
        self._acquire(timeout)
        try:
            yield self._connection
        except sqlite3.Error as e:
            raise self._translate(e) from e
        finally:
            self._lock.release()

    @contextmanager
    def _reader_for(self, timeout: Optional[float] = None):
        """Yield a connection that sees committed state only"""
        if self._reader is None:
            with self._connection_for(timeout) as conn:
                yield conn
            return
        if not self._read_lock.acquire(timeout=_lock_wait(timeout)):
            raise OperationTimeoutError("timed out waiting for the read connection")
        try:
            yield self._reader
        except sqlite3.Error as e:
            raise self._translate(e) from e
        finally:
            self._read_lock.release()

    def _is_owner(self) -> bool:
        return self._owner == threading.get_ident()

    def _require_transaction(self) -> None:
        if not self._is_owner():
            raise InvalidStateError("no active transaction")

    def insert_account(self, account_id: int, initial_balance: Decimal,
                       timeout: Optional[float] = None) -> Account:
        """Insert an account row"""
        _check_balance(account_id, initial_balance)
        with self._connection_for(timeout) as conn:
            try:
                conn.execute(
                    "INSERT INTO accounts (account_id, balance) VALUES (?, ?)",
                    (account_id, decimal_text(initial_balance))
                )
            except sqlite3.IntegrityError as e:
                if "UNIQUE" in str(e) or "PRIMARY KEY" in str(e):
                    raise DuplicateAccountError(account_id) from e
                raise
        return Account(account_id=account_id, balance=initial_balance)

    def read_balance(self, account_id: int, timeout: Optional[float] = None) -> Decimal:
        """Read the committed balance"""
        with self._reader_for(timeout) as conn:
            row = conn.execute(
                "SELECT balance FROM accounts WHERE account_id = ?", (account_id,)
            ).fetchone()
        if row is None:
            raise AccountNotFoundError(account_id)
        return Decimal(row['balance'])

    def read_balance_for_update(self, account_id: int) -> Decimal:
        """Read a balance; the IMMEDIATE transaction already holds the write lock"""
        self._require_transaction()
        with self._connection_for() as conn:
            row = conn.execute(
                "SELECT balance FROM accounts WHERE account_id = ?", (account_id,)
            ).fetchone()
        if row is None:
            raise AccountNotFoundError(account_id)
        self._locked_rows.add(account_id)
        return Decimal(row['balance'])

    def write_balance(self, account_id: int, new_balance: Decimal) -> None:
        self._require_transaction()
        if account_id not in self._locked_rows:
            raise InvalidStateError(f"account {account_id} is not locked by this transaction")
        _check_balance(account_id, new_balance)
        with self._connection_for() as conn:
            conn.execute(
                "UPDATE accounts SET balance = ? WHERE account_id = ?",
                (decimal_text(new_balance), account_id)
            )

    def append_transaction_record(self, record: TransactionRecord) -> TransactionRecord:
        _check_record(record)
        created_at = datetime.now(timezone.utc)
        with self._connection_for() as conn:
            cursor = conn.execute(
                """
                INSERT INTO transactions
                    (created_at, source_account_id, destination_account_id, amount, status, error_message)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (created_at.isoformat(), record.source_account_id, record.destination_account_id,
                 decimal_text(record.amount), record.status.value, record.error_message)
            )
            record_id = cursor.lastrowid
        return replace(record, id=record_id, created_at=created_at)

    def list_transaction_records(self, account_id: int,
                                 limit: Optional[int] = None) -> List[TransactionRecord]:
        with self._reader_for() as conn:
            rows = conn.execute(
                """
                SELECT * FROM transactions
                WHERE source_account_id = ? OR destination_account_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (account_id, account_id, -1 if limit is None else limit)
            ).fetchall()
        return [TransactionRecord.from_row(row) for row in rows]

    def begin_transaction(self, timeout: Optional[float] = None) -> None:
        """Start an IMMEDIATE transaction owned by the calling thread"""
        if self._is_owner():
            raise InvalidStateError("transaction already active")
        self._acquire(timeout)
        busy_ms = int((self.busy_timeout if timeout is None else timeout) * 1000)
        try:
            self._connection.execute(f"PRAGMA busy_timeout = {max(busy_ms, 0)}")
            self._connection.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            self._lock.release()
            raise self._translate(e) from e
        self._owner = threading.get_ident()
        self._locked_rows = set()

    def commit(self) -> None:
        """Commit current transaction"""
        if not self._is_owner():
            return
        try:
            self._connection.execute("COMMIT")
        except sqlite3.Error as e:
            if self._connection.in_transaction:
                self._connection.execute("ROLLBACK")
            raise self._translate(e) from e
        finally:
            self._finish()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if not self._is_owner():
            return
        try:
            if self._connection.in_transaction:
                self._connection.execute("ROLLBACK")
        except sqlite3.Error as e:
            raise StorageFailureError(f"rollback failed: {e}") from e
        finally:
            self._finish()

    def _finish(self) -> None:
        self._owner = None
        self._locked_rows = set()
        self._lock.release()

    def in_transaction(self) -> bool:
        return self._is_owner()

    def applied_migrations(self) -> List[Dict[str, Any]]:
        with self._connection_for() as conn:
            conn.execute(_MIGRATION_TABLE_SQLITE)
            rows = conn.execute("SELECT * FROM schema_migrations ORDER BY version").fetchall()
        return [dict(row) for row in rows]

    def apply_migration(self, version: int, name: str, checksum: str,
                        statements: List[str]) -> None:
        with self.atomic():
            with self._connection_for() as conn:
                conn.execute(_MIGRATION_TABLE_SQLITE)
                for statement in statements:
                    conn.execute(statement)
                conn.execute(
                    "INSERT INTO schema_migrations (version, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
                    (version, name, checksum, datetime.now(timezone.utc).isoformat())
                )

    def revert_migration(self, version: int, statements: List[str]) -> None:
        with self.atomic():
            with self._connection_for() as conn:
                for statement in statements:
                    conn.execute(statement)
                conn.execute("DELETE FROM schema_migrations WHERE version = ?", (version,))

    def clear_all(self) -> None:
        with self.atomic():
            with self._connection_for() as conn:
                conn.execute("DELETE FROM transactions")
                conn.execute("DELETE FROM accounts")

    def ping(self) -> None:
        with self._connection_for(self.busy_timeout) as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        """Close SQLite connections"""
        with self._read_lock:
            if self._reader:
                self._reader.close()
                self._reader = None
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


_MIGRATION_TABLE_POSTGRESQL = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        checksum TEXT NOT NULL,
        applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
"""


class _PostgreSQLTransaction:
    """Per-thread connection and cursor of an open PostgreSQL transaction"""

    def __init__(self, connection, cursor):
        self.connection = connection
        self.cursor = cursor
        self.locked_rows: set = set()


class PostgreSQLLedgerStorage(LedgerStorage):
    """
    PostgreSQL storage backend with ACID transaction support.

    Each transaction checks out its own pooled connection, so transfers on
    disjoint accounts run in parallel and transfers sharing an account
    serialize on SELECT ... FOR UPDATE row locks.
    """

    dialect = "postgresql"

    def __init__(self, connection_string: str, min_connections: int = 1, max_connections: int = 10):
        try:
            import psycopg2
            import psycopg2.errors
            import psycopg2.extras
            import psycopg2.pool
            self.psycopg2 = psycopg2
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                min_connections, max_connections, connection_string,
                cursor_factory=psycopg2.extras.RealDictCursor
            )
        except psycopg2.Error as e:
            raise StorageFailureError(f"could not connect to PostgreSQL: {e}") from e
        # The pool raises instead of waiting when exhausted
        self._slots = threading.BoundedSemaphore(max_connections)
        self._local = threading.local()

    def _translate(self, exc: Exception) -> Exception:
        errors = self.psycopg2.errors
        if isinstance(exc, (errors.LockNotAvailable, errors.QueryCanceled)):
            return OperationTimeoutError(str(exc).strip())
        if isinstance(exc, errors.CheckViolation):
            return InvalidStateError(str(exc).strip())
        return StorageFailureError(f"postgresql error: {str(exc).strip()}")

    def _checkout(self, timeout: Optional[float]):
        wait = None if timeout is None else max(timeout, 0)
        if not self._slots.acquire(timeout=wait):
            raise OperationTimeoutError("timed out waiting for a database connection")
        try:
            return self._pool.getconn()
        except self.psycopg2.Error as e:
            self._slots.release()
            raise StorageFailureError(f"could not obtain a database connection: {e}") from e

    def _checkin(self, connection, discard: bool = False) -> None:
        try:
            self._pool.putconn(connection, close=discard)
        finally:
            self._slots.release()

    def _rollback_quietly(self, connection) -> bool:
        """Roll back; returns False when the connection is unusable"""
        try:
            connection.rollback()
            return True
        except self.psycopg2.Error as e:
            logger.warning(f"Discarding PostgreSQL connection after failed rollback: {e}")
            return False

    @staticmethod
    def _set_timeouts(cursor, timeout: Optional[float]) -> None:
        if timeout is None:
            return
        millis = max(int(timeout * 1000), 1)
        cursor.execute(f"SET LOCAL lock_timeout = {millis}")
        cursor.execute(f"SET LOCAL statement_timeout = {millis}")

    @contextmanager
    def _session(self, timeout: Optional[float] = None):
        """Short transaction on a pooled connection, committed on exit"""
        connection = self._checkout(timeout)
        healthy = True
        try:
            with connection.cursor() as cursor:
                self._set_timeouts(cursor, timeout)
                yield cursor
            connection.commit()
        except self.psycopg2.Error as e:
            healthy = self._rollback_quietly(connection)
            raise self._translate(e) from e
        except Exception:
            healthy = self._rollback_quietly(connection)
            raise
        finally:
            self._checkin(connection, discard=not healthy)

    def _current(self) -> Optional[_PostgreSQLTransaction]:
        return getattr(self._local, 'tx', None)

    @contextmanager
    def _cursor(self, timeout: Optional[float] = None):
        """Cursor of the active transaction, or of a fresh short session"""
        tx = self._current()
        if tx is None:
            with self._session(timeout) as cursor:
                yield cursor
            return
        try:
            yield tx.cursor
        except self.psycopg2.Error as e:
            raise self._translate(e) from e

    def _require_transaction(self) -> _PostgreSQLTransaction:
        tx = self._current()
        if tx is None:
            raise InvalidStateError("no active transaction")
        return tx

    def insert_account(self, account_id: int, initial_balance: Decimal,
                       timeout: Optional[float] = None) -> Account:
        """Insert an account row"""
        _check_balance(account_id, initial_balance)
        with self._cursor(timeout) as cursor:
            try:
                cursor.execute(
                    "INSERT INTO accounts (account_id, balance) VALUES (%s, %s)",
                    (account_id, initial_balance)
                )
            except self.psycopg2.errors.UniqueViolation as e:
                raise DuplicateAccountError(account_id) from e
        return Account(account_id=account_id, balance=initial_balance)

    def read_balance(self, account_id: int, timeout: Optional[float] = None) -> Decimal:
        """Read the committed balance"""
        with self._cursor(timeout) as cursor:
            cursor.execute("SELECT balance FROM accounts WHERE account_id = %s", (account_id,))
            row = cursor.fetchone()
        if row is None:
            raise AccountNotFoundError(account_id)
        return row['balance']

    def read_balance_for_update(self, account_id: int) -> Decimal:
        """SELECT ... FOR UPDATE inside the active transaction"""
        tx = self._require_transaction()
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT balance FROM accounts WHERE account_id = %s FOR UPDATE", (account_id,)
            )
            row = cursor.fetchone()
        if row is None:
            raise AccountNotFoundError(account_id)
        tx.locked_rows.add(account_id)
        return row['balance']

    def write_balance(self, account_id: int, new_balance: Decimal) -> None:
        tx = self._require_transaction()
        if account_id not in tx.locked_rows:
            raise InvalidStateError(f"account {account_id} is not locked by this transaction")
        _check_balance(account_id, new_balance)
        with self._cursor() as cursor:
            cursor.execute(
                "UPDATE accounts SET balance = %s WHERE account_id = %s",
                (new_balance, account_id)
            )

    def append_transaction_record(self, record: TransactionRecord) -> TransactionRecord:
        _check_record(record)
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO transactions
                    (source_account_id, destination_account_id, amount, status, error_message)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING id, created_at
                """,
                (record.source_account_id, record.destination_account_id,
                 record.amount, record.status.value, record.error_message)
            )
            row = cursor.fetchone()
        return replace(record, id=row['id'], created_at=row['created_at'])

    def list_transaction_records(self, account_id: int,
                                 limit: Optional[int] = None) -> List[TransactionRecord]:
        query = """
            SELECT * FROM transactions
            WHERE source_account_id = %s OR destination_account_id = %s
            ORDER BY id DESC
        """
        params: List[Any] = [account_id, account_id]
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        with self._cursor() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [TransactionRecord.from_row(row) for row in rows]

    def begin_transaction(self, timeout: Optional[float] = None) -> None:
        """Start a transaction on a connection dedicated to the calling thread"""
        if self._current() is not None:
            raise InvalidStateError("transaction already active")
        connection = self._checkout(timeout)
        try:
            cursor = connection.cursor()
            # psycopg2 opens the transaction implicitly on first statement
            self._set_timeouts(cursor, timeout)
        except self.psycopg2.Error as e:
            healthy = self._rollback_quietly(connection)
            self._checkin(connection, discard=not healthy)
            raise self._translate(e) from e
        self._local.tx = _PostgreSQLTransaction(connection, cursor)

    def commit(self) -> None:
        """Commit current transaction"""
        tx = self._current()
        if tx is None:
            return
        healthy = True
        try:
            tx.connection.commit()
        except self.psycopg2.Error as e:
            healthy = self._rollback_quietly(tx.connection)
            raise self._translate(e) from e
        finally:
            self._finish(tx, healthy)

    def rollback(self) -> None:
        """Rollback current transaction"""
        tx = self._current()
        if tx is None:
            return
        healthy = self._rollback_quietly(tx.connection)
        self._finish(tx, healthy)

    def _finish(self, tx: _PostgreSQLTransaction, healthy: bool) -> None:
        self._local.tx = None
        try:
            tx.cursor.close()
        except self.psycopg2.Error:
            healthy = False
        self._checkin(tx.connection, discard=not healthy)

    def in_transaction(self) -> bool:
        return self._current() is not None

    def applied_migrations(self) -> List[Dict[str, Any]]:
        with self._session() as cursor:
            cursor.execute(_MIGRATION_TABLE_POSTGRESQL)
            cursor.execute("SELECT version, name, checksum, applied_at FROM schema_migrations ORDER BY version")
            rows = cursor.fetchall()
        return [dict(row) for row in rows]

    def apply_migration(self, version: int, name: str, checksum: str,
                        statements: List[str]) -> None:
        with self._session() as cursor:
            cursor.execute(_MIGRATION_TABLE_POSTGRESQL)
            for statement in statements:
                cursor.execute(statement)
            cursor.execute(
                "INSERT INTO schema_migrations (version, name, checksum) VALUES (%s, %s, %s)",
                (version, name, checksum)
            )

    def revert_migration(self, version: int, statements: List[str]) -> None:
        with self._session() as cursor:
            for statement in statements:
                cursor.execute(statement)
            cursor.execute("DELETE FROM schema_migrations WHERE version = %s", (version,))

    def clear_all(self) -> None:
        with self._session() as cursor:
            cursor.execute("TRUNCATE transactions, accounts RESTART IDENTITY")

    def ping(self) -> None:
        with self._session(timeout=2.0) as cursor:
            cursor.execute("SELECT 1")

    def close(self) -> None:
        """Close all pooled connections"""
        self._pool.closeall()


def create_storage(database_url: str, min_connections: int = 1, max_connections: int = 10,
                   busy_timeout: float = 5.0) -> LedgerStorage:
    """
    Build a storage backend from a database URL.

    Supported forms: ``memory://``, ``sqlite://`` (in-memory SQLite),
    ``sqlite:///relative/or/absolute.db`` and ``postgresql://...``.
    """
    if database_url in ("memory", "memory://"):
        return InMemoryLedgerStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteLedgerStorage(path or ":memory:", busy_timeout=busy_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLLedgerStorage(database_url, min_connections, max_connections)
    raise ValueError(f"Unsupported database URL: {database_url}")
