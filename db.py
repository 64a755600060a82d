import os
import sqlite3
import time
from contextlib import contextmanager
from decimal import Decimal

DB_NAME = os.environ.get("DB_NAME", "game_store.db")

# Seconds a connection waits on another writer's lock before giving up.
LOCK_TIMEOUT = 5.0

# VM instructions between cancellation checks while a statement runs.
_PROGRESS_STEPS = 1000


class TransactionCancelled(Exception):
    """Raised when a transaction outlives its deadline."""


def _convert_numeric(value: bytes) -> Decimal:
    return Decimal(value.decode())


sqlite3.register_adapter(Decimal, str)
sqlite3.register_converter("NUMERIC", _convert_numeric)


def get_connection(db_name=None):
    """Return a connection to the SQLite database.

    Transactions are opened explicitly through read_only_tx / read_write_tx,
    so the driver's implicit BEGIN is turned off.
    """
    conn = sqlite3.connect(
        db_name or DB_NAME,
        timeout=LOCK_TIMEOUT,
        detect_types=sqlite3.PARSE_DECLTYPES,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_name=None):
    """Create tables if they do not exist."""
    conn = get_connection(db_name)
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript("""
            BEGIN;

            CREATE TABLE IF NOT EXISTS publishers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                country TEXT NOT NULL,
                vatin TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT NOT NULL UNIQUE,
                username TEXT NOT NULL UNIQUE,
                display_name TEXT NOT NULL,
                date_of_birth TEXT NOT NULL,
                country TEXT NOT NULL,
                vatin TEXT NOT NULL UNIQUE,
                balance NUMERIC NOT NULL DEFAULT 0 CHECK (balance >= 0),
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS games (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                publisher_id INTEGER NOT NULL,
                title TEXT NOT NULL,
                price NUMERIC NOT NULL CHECK (price >= 0),
                is_active INTEGER NOT NULL DEFAULT 0,
                release_date TEXT,
                age_rating TEXT NOT NULL DEFAULT '0',
                created_at TEXT NOT NULL,
                FOREIGN KEY (publisher_id) REFERENCES publishers(id)
            );

            CREATE TABLE IF NOT EXISTS users_carts (
                user_id INTEGER NOT NULL,
                game_id INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (user_id, game_id),
                FOREIGN KEY (user_id) REFERENCES users(id),
                FOREIGN KEY (game_id) REFERENCES games(id)
            );

            CREATE TABLE IF NOT EXISTS users_libraries (
                user_id INTEGER NOT NULL,
                game_id INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (user_id, game_id),
                FOREIGN KEY (user_id) REFERENCES users(id),
                FOREIGN KEY (game_id) REFERENCES games(id)
            );

            -- Invoices are append-only; user and publisher columns are
            -- snapshots taken at purchase time.
            CREATE TABLE IF NOT EXISTS invoices (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                user_display_name TEXT NOT NULL,
                user_email TEXT NOT NULL,
                user_country TEXT NOT NULL,
                user_vatin TEXT NOT NULL,
                tax_rate NUMERIC NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users(id)
            );

            CREATE TABLE IF NOT EXISTS invoice_lines (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                invoice_id INTEGER NOT NULL,
                game_id INTEGER NOT NULL,
                game_title TEXT NOT NULL,
                price NUMERIC NOT NULL,
                tax NUMERIC NOT NULL,
                publisher_name TEXT NOT NULL,
                publisher_country TEXT NOT NULL,
                publisher_vatin TEXT NOT NULL,
                FOREIGN KEY (invoice_id) REFERENCES invoices(id),
                FOREIGN KEY (game_id) REFERENCES games(id)
            );

            CREATE INDEX IF NOT EXISTS idx_invoices_user_id ON invoices(user_id);
            CREATE INDEX IF NOT EXISTS idx_invoice_lines_invoice_id ON invoice_lines(invoice_id);

            COMMIT;
        """)
    finally:
        conn.close()


def _install_deadline(conn, deadline):
    if deadline is None:
        return
    conn.set_progress_handler(lambda: int(time.monotonic() > deadline), _PROGRESS_STEPS)


def _check_deadline(deadline):
    if deadline is not None and time.monotonic() > deadline:
        raise TransactionCancelled("transaction deadline exceeded")


@contextmanager
def _transaction(conn, begin, timeout=None):
    """Open a transaction that commits only on a clean exit.

    Rollback is armed as soon as BEGIN succeeds, so any exception raised in
    the block, including cancellation, leaves no trace in the database.
    """
    deadline = time.monotonic() + timeout if timeout is not None else None
    _install_deadline(conn, deadline)
    try:
        conn.execute(begin)
        try:
            yield conn
            _check_deadline(deadline)
            conn.execute("COMMIT")
        finally:
            if conn.in_transaction:
                conn.set_progress_handler(None, 0)
                conn.execute("ROLLBACK")
    except sqlite3.OperationalError as e:
        if deadline is not None and "interrupted" in str(e):
            raise TransactionCancelled("transaction deadline exceeded") from e
        raise
    finally:
        conn.set_progress_handler(None, 0)


@contextmanager
def read_only_tx(conn, timeout=None):
    """Deferred transaction with writes refused by the engine."""
    conn.execute("PRAGMA query_only = ON")
    try:
        with _transaction(conn, "BEGIN DEFERRED", timeout) as tx:
            yield tx
    finally:
        conn.execute("PRAGMA query_only = OFF")


@contextmanager
def read_write_tx(conn, timeout=None):
    """Transaction holding the database write lock from BEGIN to COMMIT.

    No other writer can touch the rows read here until this one finishes,
    which rules out lost updates on balance and cart contents.
    """
    with _transaction(conn, "BEGIN IMMEDIATE", timeout) as tx:
        yield tx


if __name__ == "__main__":
    print("Initializing database...")
    init_db()
    print("Database setup complete.")
