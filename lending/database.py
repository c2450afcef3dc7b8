import logging
import os
import queue
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from .errors import DatabaseUnavailableError

logger = logging.getLogger(__name__)

MEMORY_DATABASE = ":memory:"


class Database:
    """Handle to the SQLite data store.

    The handle owns a small connection pool. Nothing is opened until
    ``connect()`` is called and everything is released by ``close()``, so the
    application (or a test) decides the lifecycle explicitly.

    Connections run in autocommit mode; multi-statement writes go through
    ``transaction()``, which issues ``BEGIN``/``COMMIT``/``ROLLBACK`` itself.
    """

    def __init__(self, path: str, pool_size: int = 5, timeout: float = 5.0) -> None:
        self.path = path
        self.timeout = timeout
        # An in-memory database only exists inside the connection that created it.
        self.pool_size = 1 if path == MEMORY_DATABASE else max(1, pool_size)
        self._pool: Optional[queue.Queue] = None

    # ------------------------- Lifecycle ------------------------- #
    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    def connect(self) -> "Database":
        if self._pool is not None:
            return self
        if self.path != MEMORY_DATABASE:
            directory = os.path.dirname(os.path.abspath(self.path))
            if not os.path.isdir(directory):
                raise DatabaseUnavailableError(f"Database directory does not exist: {directory}")
        pool: queue.Queue = queue.Queue(maxsize=self.pool_size)
        try:
            for _ in range(self.pool_size):
                pool.put(self._open_connection())
        except sqlite3.Error as exc:
            self._drain(pool)
            raise DatabaseUnavailableError(f"Cannot open database at {self.path}: {exc}") from exc
        self._pool = pool
        logger.info("Connected to database %s (pool size %d)", self.path, self.pool_size)
        return self

    def close(self) -> None:
        if self._pool is None:
            return
        self._drain(self._pool)
        self._pool = None
        logger.info("Database connection pool closed")

    def __enter__(self) -> "Database":
        return self.connect()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.path,
            timeout=self.timeout,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        if self.path != MEMORY_DATABASE:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    @staticmethod
    def _drain(pool: queue.Queue) -> None:
        while True:
            try:
                conn = pool.get_nowait()
            except queue.Empty:
                return
            conn.close()

    # ------------------------- Connections ------------------------- #
    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Borrow a pooled connection for the duration of the block."""
        if self._pool is None:
            raise DatabaseUnavailableError("Database is not connected")
        pool = self._pool
        overflow = False
        try:
            conn = pool.get_nowait()
        except queue.Empty:
            if self.path == MEMORY_DATABASE:
                conn = pool.get(timeout=self.timeout)
            else:
                # Pool exhausted: open a short-lived extra connection.
                conn = self._open_connection()
                overflow = True
        try:
            yield conn
        finally:
            if overflow:
                conn.close()
            else:
                pool.put_nowait(conn)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block as one write transaction; commit on success, roll back on any error."""
        with self.connection() as conn:
            # IMMEDIATE takes the write lock up front so two writers cannot
            # deadlock upgrading from a shared read lock.
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def ping(self) -> bool:
        if self._pool is None:
            return False
        try:
            with self.connection() as conn:
                conn.execute("SELECT 1")
            return True
        except (sqlite3.Error, queue.Empty):
            return False

    # ------------------------- Schema ------------------------- #
    def create_tables(self) -> None:
        """Create the schema if it does not exist yet."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)
        logger.debug("Database schema ensured")


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    first_name TEXT NOT NULL,
    last_name TEXT NOT NULL,
    phone TEXT,
    address TEXT,
    membership_type TEXT NOT NULL DEFAULT 'STANDARD'
        CHECK (membership_type IN ('STANDARD', 'PREMIUM', 'STUDENT', 'STAFF', 'ADMIN')),
    membership_date TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS authors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    bio TEXT,
    birth_year INTEGER
);

CREATE TABLE IF NOT EXISTS categories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    description TEXT
);

CREATE TABLE IF NOT EXISTS books (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    isbn TEXT NOT NULL UNIQUE,
    published_year INTEGER,
    description TEXT,
    total_copies INTEGER NOT NULL DEFAULT 1 CHECK (total_copies >= 0),
    available_copies INTEGER NOT NULL DEFAULT 1 CHECK (available_copies >= 0),
    author_id INTEGER REFERENCES authors(id),
    category_id INTEGER REFERENCES categories(id),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS borrow_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    book_id INTEGER NOT NULL REFERENCES books(id),
    borrowed_at TEXT NOT NULL,
    due_date TEXT NOT NULL,
    returned_at TEXT,
    status TEXT NOT NULL DEFAULT 'ACTIVE' CHECK (status IN ('ACTIVE', 'RETURNED')),
    fine_amount REAL NOT NULL DEFAULT 0 CHECK (fine_amount >= 0),
    CHECK ((status = 'RETURNED') = (returned_at IS NOT NULL))
);

CREATE INDEX IF NOT EXISTS idx_books_title ON books(title);
CREATE INDEX IF NOT EXISTS idx_books_author_id ON books(author_id);
CREATE INDEX IF NOT EXISTS idx_books_category_id ON books(category_id);
CREATE INDEX IF NOT EXISTS idx_borrow_records_user ON borrow_records(user_id, borrowed_at DESC);
CREATE INDEX IF NOT EXISTS idx_borrow_records_book_status ON borrow_records(book_id, status);
"""
