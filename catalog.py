import sqlite3
from typing import List, Optional

from book import Book, BookStatus
from database import Database
from errors import NotFoundError

_BOOK_COLUMNS = "id, title, author, isbn, published_date, status"


class CatalogStore:
    """Book records.

    Every method takes an optional ``conn``; when given, the call joins the
    caller's transaction instead of opening its own connection.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def get_by_id(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Book]:
        with self.db.connection(conn) as c:
            row = c.execute(f"SELECT {_BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def get_by_isbn(self, isbn: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Book]:
        with self.db.connection(conn) as c:
            row = c.execute(f"SELECT {_BOOK_COLUMNS} FROM books WHERE isbn = ?", (isbn,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def list(self, title: Optional[str] = None, author: Optional[str] = None,
             conn: Optional[sqlite3.Connection] = None) -> List[Book]:
        """List books ordered by title, optionally filtered by case-insensitive substrings."""
        clauses, params = [], []
        if title:
            clauses.append("title LIKE ?")
            params.append(f"%{title}%")
        if author:
            clauses.append("author LIKE ?")
            params.append(f"%{author}%")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.db.connection(conn) as c:
            rows = c.execute(f"SELECT {_BOOK_COLUMNS} FROM books{where} ORDER BY title, id", params).fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def create(self, book: Book, conn: Optional[sqlite3.Connection] = None) -> Book:
        with self.db.connection(conn) as c:
            cursor = c.execute(
                "INSERT INTO books (title, author, isbn, published_date, status) VALUES (?, ?, ?, ?, ?)",
                (book.title, book.author, book.isbn,
                 book.published_date.isoformat() if book.published_date else None,
                 book.status.value),
            )
            book.id = cursor.lastrowid
        return book

    def update(self, book: Book, conn: Optional[sqlite3.Connection] = None) -> None:
        with self.db.connection(conn) as c:
            cursor = c.execute(
                "UPDATE books SET title = ?, author = ?, isbn = ?, published_date = ?, status = ? WHERE id = ?",
                (book.title, book.author, book.isbn,
                 book.published_date.isoformat() if book.published_date else None,
                 book.status.value, book.id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Book", book.id)

    def delete(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> None:
        with self.db.connection(conn) as c:
            cursor = c.execute("DELETE FROM books WHERE id = ?", (book_id,))
            if cursor.rowcount == 0:
                raise NotFoundError("Book", book_id)

    def set_status(self, book_id: int, status: BookStatus, conn: Optional[sqlite3.Connection] = None) -> None:
        """Unconditionally overwrite a book's status."""
        with self.db.connection(conn) as c:
            cursor = c.execute("UPDATE books SET status = ? WHERE id = ?", (BookStatus(status).value, book_id))
            if cursor.rowcount == 0:
                raise NotFoundError("Book", book_id)

    def compare_and_set_status(self, book_id: int, expected: BookStatus, new: BookStatus,
                               conn: Optional[sqlite3.Connection] = None) -> bool:
        """Move a book from ``expected`` to ``new`` in one conditional UPDATE.

        Returns False when the book is missing or its status is not ``expected``,
        i.e. another writer already moved it.
        """
        with self.db.connection(conn) as c:
            cursor = c.execute(
                "UPDATE books SET status = ? WHERE id = ? AND status = ?",
                (BookStatus(new).value, book_id, BookStatus(expected).value),
            )
            return cursor.rowcount == 1

    def count(self, status: Optional[BookStatus] = None, conn: Optional[sqlite3.Connection] = None) -> int:
        with self.db.connection(conn) as c:
            if status is None:
                return c.execute("SELECT COUNT(*) FROM books").fetchone()[0]
            return c.execute("SELECT COUNT(*) FROM books WHERE status = ?",
                             (BookStatus(status).value,)).fetchone()[0]
