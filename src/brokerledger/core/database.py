"""
SQLCipher database initialization and connection management.

Provides the embedded (optionally encrypted) SQLite store for brokerledger.
Uses singleton pattern for connection management.

Thread Safety Notes:
- Uses check_same_thread=False for multi-threaded access
- Connections run in autocommit mode; every write goes through atomic()
- atomic() takes a per-connection re-entrant lock and opens BEGIN IMMEDIATE,
  so writers sharing a connection or a database file are serialized
- WAL mode is enabled for file databases
"""

from pathlib import Path
from typing import Dict, Optional
from contextlib import contextmanager
import logging
import threading

try:
    import sqlcipher3 as sqlite3
    HAS_SQLCIPHER = True
except ImportError:
    import sqlite3
    HAS_SQLCIPHER = False

# Driver-independent names for the errors callers catch
StorageError = sqlite3.Error
IntegrityError = sqlite3.IntegrityError

from brokerledger.core.exceptions import DatabaseError

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
-- Core Tables
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT UNIQUE NOT NULL,
    email TEXT,
    role TEXT DEFAULT 'viewer' CHECK(role IN ('admin', 'broker', 'accountant', 'viewer')),
    is_active BOOLEAN DEFAULT TRUE,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS companies (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT UNIQUE NOT NULL,
    company_type TEXT NOT NULL CHECK(company_type IN ('client', 'provider', 'both')),
    status TEXT DEFAULT 'pending_verification'
        CHECK(status IN ('active', 'inactive', 'blacklisted', 'pending_verification')),
    created_by INTEGER,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (created_by) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS brokers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS banks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bank_name TEXT NOT NULL,
    account_number TEXT NOT NULL,
    user_id INTEGER,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(bank_name, account_number),
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE RESTRICT
);

-- Commission schedules: one row per slab, owned by a company or a user
CREATE TABLE IF NOT EXISTS slabs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_type TEXT NOT NULL CHECK(owner_type IN ('company', 'user_client', 'user_provider')),
    owner_id INTEGER NOT NULL,
    position INTEGER NOT NULL,
    min_amount INTEGER NOT NULL CHECK(min_amount >= 0),
    max_amount INTEGER NOT NULL CHECK(max_amount >= 0),
    commission_rate TEXT NOT NULL,
    UNIQUE(owner_type, owner_id, position)
);

-- Statements (append-only)
CREATE TABLE IF NOT EXISTS statements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    file_name TEXT NOT NULL,
    file_type TEXT NOT NULL CHECK(file_type IN ('csv', 'xml')),
    statement_date DATE,
    status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'processed', 'failed')),
    error_message TEXT,
    total_amount TEXT NOT NULL DEFAULT '0',
    total_commission TEXT NOT NULL DEFAULT '0',
    ledger_year TEXT,
    ledger_month TEXT,
    uploaded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE RESTRICT
);

CREATE TABLE IF NOT EXISTS statement_transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    statement_id INTEGER NOT NULL,
    position INTEGER NOT NULL,
    date TEXT NOT NULL,
    company_name TEXT NOT NULL,
    bank_name TEXT NOT NULL,
    account_no TEXT NOT NULL,
    credit_amount TEXT NOT NULL,
    FOREIGN KEY (statement_id) REFERENCES statements(id) ON DELETE RESTRICT
);

CREATE TABLE IF NOT EXISTS company_summaries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    statement_id INTEGER NOT NULL,
    company_id INTEGER NOT NULL,
    company_name TEXT NOT NULL,
    total_amount TEXT NOT NULL,
    commission TEXT NOT NULL,
    slab_min_amount INTEGER NOT NULL,
    slab_max_amount INTEGER NOT NULL,
    slab_commission_rate TEXT NOT NULL,
    FOREIGN KEY (statement_id) REFERENCES statements(id) ON DELETE RESTRICT,
    FOREIGN KEY (company_id) REFERENCES companies(id) ON DELETE RESTRICT
);

-- Fingerprint index of every transaction of a processed statement
CREATE TABLE IF NOT EXISTS transaction_fingerprints (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    fingerprint TEXT NOT NULL,
    statement_id INTEGER NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(user_id, fingerprint),
    FOREIGN KEY (statement_id) REFERENCES statements(id) ON DELETE RESTRICT
);

-- Ledger: running totals plus the journal of every posting
CREATE TABLE IF NOT EXISTS ledger_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    year TEXT NOT NULL,
    month TEXT NOT NULL,
    amount TEXT NOT NULL DEFAULT '0',
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(user_id, year, month),
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE RESTRICT
);

CREATE TABLE IF NOT EXISTS ledger_postings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    year TEXT NOT NULL,
    month TEXT NOT NULL,
    delta TEXT NOT NULL,
    source TEXT NOT NULL CHECK(source IN ('advance', 'expense', 'statement', 'manual')),
    reference_id INTEGER,
    description TEXT,
    posted_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE RESTRICT
);

-- Ledger feeders
CREATE TABLE IF NOT EXISTS advances (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    amount TEXT NOT NULL,
    advance_type TEXT NOT NULL CHECK(advance_type IN ('given', 'received')),
    initial_type TEXT NOT NULL CHECK(initial_type IN ('given', 'received')),
    status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'returned')),
    counterparty_type TEXT NOT NULL CHECK(counterparty_type IN ('company', 'broker')),
    counterparty_id INTEGER NOT NULL,
    given_date DATE NOT NULL,
    updated_by INTEGER,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE RESTRICT
);

CREATE TABLE IF NOT EXISTS expenses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    amount TEXT NOT NULL,
    category TEXT NOT NULL,
    date DATE NOT NULL,
    company_id INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'approved', 'rejected')),
    approved_by INTEGER,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE RESTRICT,
    FOREIGN KEY (company_id) REFERENCES companies(id) ON DELETE RESTRICT
);

-- File-based bank statement reconciliation
CREATE TABLE IF NOT EXISTS bank_statements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bank_id INTEGER NOT NULL,
    file_name TEXT NOT NULL,
    file_type TEXT NOT NULL CHECK(file_type IN ('csv', 'xml')),
    file_path TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'processed', 'failed')),
    processed_data TEXT,
    error TEXT,
    uploaded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (bank_id) REFERENCES banks(id) ON DELETE RESTRICT
);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    table_name TEXT NOT NULL,
    record_id INTEGER NOT NULL,
    action TEXT NOT NULL CHECK(action IN ('INSERT','UPDATE','DELETE')),
    old_values TEXT,
    new_values TEXT,
    user_id INTEGER,
    ip_address TEXT,
    timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_slabs_owner ON slabs(owner_type, owner_id);
CREATE INDEX IF NOT EXISTS idx_statements_user ON statements(user_id);
CREATE INDEX IF NOT EXISTS idx_statements_status ON statements(status);
CREATE INDEX IF NOT EXISTS idx_statement_txn_statement ON statement_transactions(statement_id);
CREATE INDEX IF NOT EXISTS idx_company_summaries_statement ON company_summaries(statement_id);
CREATE INDEX IF NOT EXISTS idx_fingerprints_user ON transaction_fingerprints(user_id, fingerprint);
CREATE INDEX IF NOT EXISTS idx_ledger_entries_user ON ledger_entries(user_id, year);
CREATE INDEX IF NOT EXISTS idx_ledger_postings_user ON ledger_postings(user_id, year, month);
CREATE INDEX IF NOT EXISTS idx_advances_user ON advances(user_id);
CREATE INDEX IF NOT EXISTS idx_expenses_user ON expenses(user_id);
CREATE INDEX IF NOT EXISTS idx_expenses_status ON expenses(status);
CREATE INDEX IF NOT EXISTS idx_bank_statements_bank ON bank_statements(bank_id);
CREATE INDEX IF NOT EXISTS idx_audit_log_table ON audit_log(table_name, record_id);
CREATE INDEX IF NOT EXISTS idx_audit_log_user ON audit_log(user_id);

-- Append-only guards
CREATE TRIGGER IF NOT EXISTS statements_no_delete
BEFORE DELETE ON statements
BEGIN
    SELECT RAISE(ABORT, 'statements are append-only');
END;

CREATE TRIGGER IF NOT EXISTS statements_status_transition
BEFORE UPDATE OF status ON statements
WHEN OLD.status != 'pending'
BEGIN
    SELECT RAISE(ABORT, 'statement status is final once processed or failed');
END;

CREATE TRIGGER IF NOT EXISTS statement_transactions_immutable
BEFORE UPDATE ON statement_transactions
BEGIN
    SELECT RAISE(ABORT, 'statement transactions are immutable');
END;

CREATE TRIGGER IF NOT EXISTS company_summaries_immutable
BEFORE UPDATE ON company_summaries
BEGIN
    SELECT RAISE(ABORT, 'company summaries are immutable');
END;

CREATE TRIGGER IF NOT EXISTS ledger_entries_no_delete
BEFORE DELETE ON ledger_entries
BEGIN
    SELECT RAISE(ABORT, 'ledger entries are never deleted');
END;

CREATE TRIGGER IF NOT EXISTS ledger_postings_immutable
BEFORE UPDATE ON ledger_postings
BEGIN
    SELECT RAISE(ABORT, 'ledger postings are immutable');
END;

CREATE TRIGGER IF NOT EXISTS ledger_postings_no_delete
BEFORE DELETE ON ledger_postings
BEGIN
    SELECT RAISE(ABORT, 'ledger postings are immutable');
END;

-- Automatic audit logging of ledger and statement changes
CREATE TRIGGER IF NOT EXISTS audit_ledger_entries_insert
AFTER INSERT ON ledger_entries
BEGIN
    INSERT INTO audit_log (table_name, record_id, action, new_values, user_id, timestamp)
    VALUES (
        'ledger_entries',
        NEW.id,
        'INSERT',
        json_object('year', NEW.year, 'month', NEW.month, 'amount', NEW.amount),
        NEW.user_id,
        CURRENT_TIMESTAMP
    );
END;

CREATE TRIGGER IF NOT EXISTS audit_ledger_entries_update
AFTER UPDATE ON ledger_entries
BEGIN
    INSERT INTO audit_log (table_name, record_id, action, old_values, new_values, user_id, timestamp)
    VALUES (
        'ledger_entries',
        NEW.id,
        'UPDATE',
        json_object('year', OLD.year, 'month', OLD.month, 'amount', OLD.amount),
        json_object('year', NEW.year, 'month', NEW.month, 'amount', NEW.amount),
        NEW.user_id,
        CURRENT_TIMESTAMP
    );
END;

CREATE TRIGGER IF NOT EXISTS audit_statements_insert
AFTER INSERT ON statements
BEGIN
    INSERT INTO audit_log (table_name, record_id, action, new_values, user_id, timestamp)
    VALUES (
        'statements',
        NEW.id,
        'INSERT',
        json_object('file_name', NEW.file_name, 'status', NEW.status,
                    'error_message', NEW.error_message),
        NEW.user_id,
        CURRENT_TIMESTAMP
    );
END;

CREATE TRIGGER IF NOT EXISTS audit_statements_update
AFTER UPDATE ON statements
BEGIN
    INSERT INTO audit_log (table_name, record_id, action, old_values, new_values, user_id, timestamp)
    VALUES (
        'statements',
        NEW.id,
        'UPDATE',
        json_object('status', OLD.status, 'total_commission', OLD.total_commission),
        json_object('status', NEW.status, 'total_commission', NEW.total_commission),
        NEW.user_id,
        CURRENT_TIMESTAMP
    );
END;
"""


def connect(db_path: str, password: Optional[str] = None, timeout: float = 30.0) -> sqlite3.Connection:
    """
    Open a configured connection to a brokerledger database.

    Connections are opened in autocommit mode (isolation_level=None) so that
    transactions only ever start through atomic().

    Args:
        db_path: Path to database file or ":memory:"
        password: SQLCipher key (ignored when SQLCipher is unavailable)
        timeout: Seconds to wait on a locked database

    Returns:
        Database connection with the schema applied
    """
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(
        db_path,
        timeout=timeout,
        check_same_thread=False,
        isolation_level=None,
    )
    conn.row_factory = sqlite3.Row

    if HAS_SQLCIPHER and password:
        conn.execute(f"PRAGMA key = '{password}'")
        conn.execute("PRAGMA cipher_compatibility = 4")

    conn.execute("PRAGMA foreign_keys = ON")

    # WAL mode allows multiple readers and one writer simultaneously
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")

    conn.executescript(SCHEMA_SQL)
    return conn


_connection_locks: Dict[int, threading.RLock] = {}
_connection_locks_guard = threading.Lock()


def connection_lock(conn: sqlite3.Connection) -> threading.RLock:
    """Get the re-entrant write lock shared by every user of a connection."""
    key = id(conn)
    with _connection_locks_guard:
        lock = _connection_locks.get(key)
        if lock is None:
            lock = threading.RLock()
            _connection_locks[key] = lock
        return lock


def release_connection_lock(conn: sqlite3.Connection) -> None:
    """Forget the lock of a connection that is being closed."""
    with _connection_locks_guard:
        _connection_locks.pop(id(conn), None)


@contextmanager
def atomic(conn: sqlite3.Connection):
    """
    Unit of work: run the block inside one immediate-mode transaction.

    Nested calls on the same thread join the outer transaction, so services
    can be composed (e.g. the statement pipeline posting to the ledger)
    without committing half-way.

    Usage:
        with atomic(conn):
            conn.execute("INSERT INTO statements ...")
            aggregator.post(...)
        # Commits on success, rolls back on exception
    """
    lock = connection_lock(conn)
    with lock:
        if conn.in_transaction:
            yield conn
            return

        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.rollback()
            raise
        else:
            conn.commit()


class DatabaseManager:
    """
    Singleton manager for the brokerledger database connection.

    Usage:
        db = DatabaseManager()
        conn = db.init("/path/to/ledger.db", "password123")
        # Use connection...
        db.close()
    """

    _instance: Optional["DatabaseManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "DatabaseManager":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._connection = None
                    cls._instance._db_path = None
        return cls._instance

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the current database connection."""
        if self._connection is None:
            raise DatabaseError("Database not initialized. Call init() first.")
        return self._connection

    def init(self, db_path: str, password: Optional[str] = None) -> sqlite3.Connection:
        """
        Initialize the database.

        Args:
            db_path: Path to database file or ":memory:" for in-memory database
            password: Encryption password for SQLCipher

        Returns:
            Database connection

        Raises:
            DatabaseError: If initialization fails
        """
        try:
            self._db_path = db_path
            self._connection = connect(db_path, password)
            logger.debug(f"Database initialized at {db_path} (sqlcipher={HAS_SQLCIPHER})")
            return self._connection
        except Exception as e:
            raise DatabaseError(f"Failed to initialize database: {e}")

    @property
    def db_path(self) -> Optional[str]:
        return self._db_path

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute a SQL statement."""
        return self.connection.execute(sql, params)

    @contextmanager
    def transaction(self):
        """
        Context manager for atomic transactions on the managed connection.

        Raises:
            DatabaseError: If the transaction fails on a storage error
        """
        try:
            with atomic(self.connection) as conn:
                yield conn
        except sqlite3.Error as e:
            raise DatabaseError(f"Transaction failed: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            release_connection_lock(self._connection)
            self._connection.close()
            self._connection = None
            self._db_path = None

    def get_tables(self) -> list[str]:
        """Get list of all tables in database."""
        cursor = self.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        )
        return [row[0] for row in cursor.fetchall()]

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)."""
        with cls._lock:
            if cls._instance and cls._instance._connection:
                release_connection_lock(cls._instance._connection)
                cls._instance._connection.close()
            cls._instance = None


def get_connection() -> sqlite3.Connection:
    """Get the current database connection (convenience function)."""
    return DatabaseManager().connection
