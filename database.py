import logging
import os
import sqlite3
import tempfile
from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv

from errors import StoreError, StoreTimeoutError

# Make sure .env is loaded before LIBRARY_DB_FILE is read, whatever the import order.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE
# 2) per-process temp file
DATABASE_FILE = (
    os.environ.get("LIBRARY_DB_FILE")
    or os.path.join(tempfile.gettempdir(), f"circulation_{os.getpid()}.db")
)

DEFAULT_TIMEOUT = 10.0


def get_db_connection(db_file: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT) -> sqlite3.Connection:
    """Open a connection in autocommit mode; transactions are started explicitly.

    ``timeout`` bounds how long any statement waits on a locked database.
    """
    with translate_errors():
        conn = sqlite3.connect(db_file or DATABASE_FILE, timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def translate_errors() -> Iterator[None]:
    """Re-raise driver failures as store errors."""
    try:
        yield
    except sqlite3.OperationalError as e:
        message = str(e).lower()
        if "locked" in message or "busy" in message:
            raise StoreTimeoutError(f"store operation timed out: {e}") from e
        raise StoreError(f"store operation failed: {e}") from e
    except sqlite3.IntegrityError:
        # callers map constraint violations to domain errors
        raise
    except sqlite3.Error as e:
        raise StoreError(f"store operation failed: {e}") from e


@contextmanager
def atomic(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the block as one write transaction: commit on success, roll back on any exception.

    ``BEGIN IMMEDIATE`` takes the write lock up front so two writers never
    interleave their read-modify-write sequences.
    """
    with translate_errors():
        conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    try:
        with translate_errors():
            conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise


def create_tables(conn: sqlite3.Connection) -> None:
    """Create the document tables if they do not exist yet."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS books (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            isbn TEXT NOT NULL UNIQUE,
            authors TEXT NOT NULL DEFAULT '[]',
            publishers TEXT NOT NULL DEFAULT '[]',
            genres TEXT NOT NULL DEFAULT '[]',
            edition INTEGER NOT NULL DEFAULT 1,
            pages INTEGER NOT NULL DEFAULT 0,
            published_at TEXT,
            copies INTEGER NOT NULL DEFAULT 0,
            borrowed_copies INTEGER NOT NULL DEFAULT 0,
            version INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            CHECK (borrowed_copies >= 0 AND borrowed_copies <= copies)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS patrons (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT NOT NULL UNIQUE,
            category TEXT NOT NULL,
            password_hash TEXT,
            activated INTEGER NOT NULL DEFAULT 0,
            permissions TEXT NOT NULL DEFAULT '[]',
            version INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    # patron_id/book_id are plain references, nothing cascades
    conn.execute("""
        CREATE TABLE IF NOT EXISTS transactions (
            id TEXT PRIMARY KEY,
            patron_id TEXT NOT NULL,
            book_id TEXT NOT NULL,
            status TEXT NOT NULL CHECK (status IN ('borrowed', 'returned')),
            copies INTEGER NOT NULL DEFAULT 1,
            borrowed_at TEXT NOT NULL,
            due_date TEXT NOT NULL,
            returned_at TEXT,
            version INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    conn.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_patrons_name ON patrons(name)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_patron ON transactions(patron_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_pair ON transactions(patron_id, book_id, status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_due_date ON transactions(due_date)")


def initialize_database(db_file: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT) -> None:
    """Create the database file and its tables if needed."""
    conn = get_db_connection(db_file, timeout)
    try:
        with translate_errors():
            # WAL lets readers proceed while a workflow holds the write lock
            conn.execute("PRAGMA journal_mode=WAL;")
            with atomic(conn):
                create_tables(conn)
    finally:
        conn.close()
    logger.debug(f"Database initialised at {db_file or DATABASE_FILE}")
