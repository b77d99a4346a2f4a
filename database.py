import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from config import settings

logger = logging.getLogger(__name__)


def get_db_connection(db_file: str, timeout: Optional[float] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode (``isolation_level=None``); multi-statement
    work goes through :meth:`Database.transaction`, which issues ``BEGIN IMMEDIATE``
    itself.
    """
    conn = sqlite3.connect(
        db_file,
        timeout=settings.database_timeout if timeout is None else timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    # Cascading deletes from books/users to loans depend on this
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


class Database:
    """Handle on one SQLite file, passed to every store."""

    def __init__(self, db_file: str, timeout: Optional[float] = None) -> None:
        self.db_file = db_file
        self.timeout = timeout

    def connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file, self.timeout)

    @contextmanager
    def connection(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Yield ``conn`` untouched when the caller owns one, otherwise a fresh
        connection that is closed on exit."""
        if conn is not None:
            yield conn
            return
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block under SQLite's write lock; commit on success, roll back on any error."""
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def ping(self) -> bool:
        try:
            with self.connection() as conn:
                conn.execute("SELECT 1")
            return True
        except sqlite3.Error:
            return False


def create_tables(db: Database) -> None:
    """Creates the necessary tables in the database if they don't exist."""
    with db.connection() as conn:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT UNIQUE NOT NULL,
                published_date TEXT,
                status TEXT NOT NULL DEFAULT 'AVAILABLE'
                    CHECK(status IN ('AVAILABLE', 'BORROWED'))
            );

            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL,
                role TEXT NOT NULL DEFAULT 'USER'
                    CHECK(role IN ('USER', 'ADMIN'))
            );

            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                book_id INTEGER NOT NULL REFERENCES books(id) ON DELETE CASCADE,
                loan_date TEXT NOT NULL DEFAULT CURRENT_DATE,
                return_date TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_books_title ON books(title);
            CREATE INDEX IF NOT EXISTS idx_books_author ON books(author);
            CREATE INDEX IF NOT EXISTS idx_loans_user_id ON loans(user_id);
            CREATE INDEX IF NOT EXISTS idx_loans_book_id ON loans(book_id);

            -- At most one active loan per book
            CREATE UNIQUE INDEX IF NOT EXISTS idx_loans_active_book
                ON loans(book_id) WHERE return_date IS NULL;
        """)


def seed_from_json(db: Database, path: str) -> int:
    """Load sample books, users and loans from a JSON file into an empty database.

    This is a one-time operation. It checks that the books table is empty
    and that the file exists before proceeding. Returns the number of books
    inserted.
    """
    if not os.path.exists(path):
        logger.warning(f"Seed file {path} does not exist, skipping")
        return 0

    with open(path, "r", encoding="utf-8") as f:
        data: Dict[str, List[Dict[str, Any]]] = json.load(f)

    with db.transaction() as conn:
        book_count = conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
        if book_count > 0:
            return 0  # Database already has data

        books = [
            (b["title"], b["author"], b["isbn"], b.get("published_date"), b.get("status", "AVAILABLE"))
            for b in data.get("books", [])
            if all(k in b for k in ("title", "author", "isbn"))
        ]
        conn.executemany(
            "INSERT INTO books (title, author, isbn, published_date, status) VALUES (?, ?, ?, ?, ?)",
            books,
        )
        conn.executemany(
            "INSERT INTO users (name, email, role) VALUES (?, ?, ?)",
            [(u["name"], u["email"], u.get("role", "USER")) for u in data.get("users", [])],
        )
        conn.executemany(
            "INSERT INTO loans (user_id, book_id, loan_date, return_date) VALUES (?, ?, ?, ?)",
            [(l["user_id"], l["book_id"], l["loan_date"], l.get("return_date")) for l in data.get("loans", [])],
        )

    logger.info(f"Seeded {len(books)} books from {path}")
    return len(books)


def initialize_database(db_file: Optional[str] = None, seed_file: Optional[str] = None) -> Database:
    """Initializes the database, creating tables and loading seed data if given."""
    db = Database(db_file or settings.database_file)
    create_tables(db)
    seed = seed_file or settings.seed_file
    if seed:
        seed_from_json(db, seed)
    return db
