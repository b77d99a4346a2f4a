import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from book import Book, BookStatus
from catalog import CatalogStore
from config import settings
from database import Database, initialize_database
from errors import ConflictError, InvalidInputError, NotFoundError, storage_errors
from ledger import LoanLedger
from lending import LoanLifecycleEngine
from membership import MembershipStore
from user import User, UserRole
from utils.validators import (DateValidator, EmailValidator, ISBNValidator, ValidationChain, is_non_empty,
                              is_positive_id)

logger = logging.getLogger(__name__)


def _is_status(value: Any, enum) -> bool:
    try:
        enum(value)
    except ValueError:
        return False
    return True


class Library:
    """Manages the catalog, the membership and the lending workflow.

    Owns the database handle and the three stores, and exposes the lending
    engine as ``library.loans``.
    """

    def __init__(self, db_file: Optional[str] = None, seed_file: Optional[str] = None,
                 today: Optional[Callable[[], date]] = None) -> None:
        self.db: Database = initialize_database(db_file or settings.database_file, seed_file)
        self.today = today or date.today
        self.catalog = CatalogStore(self.db)
        self.members = MembershipStore(self.db)
        self.ledger = LoanLedger(self.db)
        self.loans = LoanLifecycleEngine(
            self.db, self.catalog, self.members, self.ledger,
            logger=logging.getLogger("lending"),
            today=self.today,
        )

    # ------------------------- Books ------------------------- #
    def add_book(self, title: Optional[str], author: Optional[str], isbn: Optional[str],
                 published_date=None, status: Any = BookStatus.AVAILABLE) -> Book:
        """Admit a new book to the catalog. ISBN must be unique."""
        isbn = ISBNValidator.normalize_isbn(isbn)
        ValidationChain() \
            .check("title", lambda: is_non_empty(title), "Title cannot be null or empty.") \
            .check("author", lambda: is_non_empty(author), "Author cannot be null or empty.") \
            .check("isbn", lambda: ISBNValidator.is_valid_isbn(isbn), "Invalid ISBN format.") \
            .check("published_date", lambda: published_date is not None, "Published date cannot be null.") \
            .check("published_date", lambda: DateValidator.is_parseable(published_date),
                   "Published date must be a date in YYYY-MM-DD format.") \
            .check("published_date",
                   lambda: DateValidator.not_in_future(DateValidator.parse(published_date), self.today()),
                   "Invalid published date.") \
            .check("status", lambda: _is_status(status, BookStatus), "Invalid book status.") \
            .raise_first()

        logger.info(f"Attempting to add book with ISBN {isbn}")
        with storage_errors("add book", logger):
            if self.catalog.get_by_isbn(isbn) is not None:
                raise ConflictError(f"A book with ISBN {isbn} already exists.")
            book = self.catalog.create(Book(title=title, author=author, isbn=isbn,
                                            published_date=DateValidator.parse(published_date),
                                            status=status))
        logger.info(f"Book added successfully with ID: {book.id}")
        return book

    def get_book(self, book_id: int) -> Book:
        self._require_id(book_id, "Book")
        with storage_errors("fetch book", logger):
            book = self.catalog.get_by_id(book_id)
        if book is None:
            logger.warning(f"Book with ID {book_id} not found.")
            raise NotFoundError("Book", book_id)
        return book

    def find_book_by_isbn(self, isbn: str) -> Book:
        isbn = ISBNValidator.normalize_isbn(isbn)
        if not ISBNValidator.is_valid_isbn(isbn):
            raise InvalidInputError("Invalid ISBN format.", field="isbn")
        with storage_errors("fetch book", logger):
            book = self.catalog.get_by_isbn(isbn)
        if book is None:
            raise NotFoundError("Book", isbn, key="ISBN")
        return book

    def list_books(self, title: Optional[str] = None, author: Optional[str] = None) -> List[Book]:
        with storage_errors("list books", logger):
            return self.catalog.list(title=title, author=author)

    def update_book(self, book_id: int, *, title: Optional[str] = None, author: Optional[str] = None,
                    isbn: Optional[str] = None, published_date=None, status: Any = None) -> Book:
        """Merge the given fields into an existing book. Returns the updated book."""
        self._require_id(book_id, "Book")
        if isbn is not None:
            isbn = ISBNValidator.normalize_isbn(isbn)
        ValidationChain() \
            .check("title", lambda: title is None or is_non_empty(title), "Title cannot be empty.") \
            .check("author", lambda: author is None or is_non_empty(author), "Author cannot be empty.") \
            .check("isbn", lambda: isbn is None or ISBNValidator.is_valid_isbn(isbn), "Invalid ISBN format.") \
            .check("published_date", lambda: DateValidator.is_parseable(published_date),
                   "Published date must be a date in YYYY-MM-DD format.") \
            .check("published_date",
                   lambda: DateValidator.not_in_future(DateValidator.parse(published_date), self.today()),
                   "Invalid published date.") \
            .check("status", lambda: status is None or _is_status(status, BookStatus), "Invalid book status.") \
            .raise_first()

        with storage_errors("update book", logger):
            book = self.catalog.get_by_id(book_id)
            if book is None:
                logger.warning(f"Book with ID {book_id} not found for update.")
                raise NotFoundError("Book", book_id)
            if isbn is not None and isbn != book.isbn:
                if self.catalog.get_by_isbn(isbn) is not None:
                    raise ConflictError(f"A book with ISBN {isbn} already exists.")
                book.isbn = isbn
            if title is not None:
                book.title = title.strip()
            if author is not None:
                book.author = author.strip()
            if published_date is not None:
                book.published_date = DateValidator.parse(published_date)
            if status is not None:
                book.status = BookStatus(status)
            self.catalog.update(book)
        logger.info(f"Book updated successfully: {book!r}")
        return book

    def set_book_status(self, book_id: int, status: Any) -> Book:
        """Administrative override of a book's lending status.

        Bypasses the lending engine; used to correct data, not to lend.
        """
        self._require_id(book_id, "Book")
        if isinstance(status, str) and not isinstance(status, BookStatus):
            status = status.strip().upper()
        if not _is_status(status, BookStatus):
            raise InvalidInputError("Invalid status value. Allowed values are AVAILABLE or BORROWED.",
                                    field="status")
        new_status = BookStatus(status)
        with storage_errors("update book status", logger):
            self.catalog.set_status(book_id, new_status)
            book = self.catalog.get_by_id(book_id)
        logger.info(f"Book status updated for ID {book_id} to {new_status.value}")
        return book

    def remove_book(self, book_id: int) -> None:
        """Delete a book; its loans go with it."""
        self._require_id(book_id, "Book")
        with storage_errors("delete book", logger):
            self.catalog.delete(book_id)
        logger.info(f"Book with ID {book_id} deleted successfully.")

    # ------------------------- Users ------------------------- #
    def register_user(self, name: Optional[str], email: Optional[str], role: Any = UserRole.USER) -> User:
        ValidationChain() \
            .check("name", lambda: is_non_empty(name), "User name cannot be null or empty.") \
            .check("email", lambda: is_non_empty(email), "User email cannot be null or empty.") \
            .check("email", lambda: EmailValidator.is_valid_email(email), "Invalid email format.") \
            .check("role", lambda: _is_status(role, UserRole), "Invalid user role.") \
            .raise_first()

        with storage_errors("register user", logger):
            if self.members.get_by_email(email.strip()) is not None:
                raise ConflictError("Email is already in use.")
            user = self.members.create(User(name=name, email=email, role=role))
        logger.info(f"User registered with ID: {user.id}")
        return user

    def get_user(self, user_id: int) -> User:
        self._require_id(user_id, "User")
        with storage_errors("fetch user", logger):
            user = self.members.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    def find_user_by_email(self, email: str) -> User:
        if not EmailValidator.is_valid_email(email):
            raise InvalidInputError("Invalid email format.", field="email")
        with storage_errors("fetch user", logger):
            user = self.members.get_by_email(email.strip())
        if user is None:
            raise NotFoundError("User", email, key="email")
        return user

    def list_users(self) -> List[User]:
        with storage_errors("list users", logger):
            return self.members.list()

    def update_user(self, user_id: int, *, name: Optional[str] = None, email: Optional[str] = None,
                    role: Any = None) -> User:
        self._require_id(user_id, "User")
        ValidationChain() \
            .check("name", lambda: name is None or is_non_empty(name), "User name cannot be empty.") \
            .check("email", lambda: email is None or EmailValidator.is_valid_email(email),
                   "Invalid email format.") \
            .check("role", lambda: role is None or _is_status(role, UserRole), "Invalid user role.") \
            .raise_first()

        with storage_errors("update user", logger):
            user = self.members.get_by_id(user_id)
            if user is None:
                raise NotFoundError("User", user_id)
            if email is not None and email.strip() != user.email:
                if self.members.get_by_email(email.strip()) is not None:
                    raise ConflictError("Email is already in use by another user.")
                user.email = email.strip()
            if name is not None:
                user.name = name.strip()
            if role is not None:
                user.role = UserRole(role)
            self.members.update(user)
        logger.info(f"User updated successfully: {user!r}")
        return user

    def remove_user(self, user_id: int) -> None:
        """Delete a user; their loans go with them and books they still held become AVAILABLE."""
        self._require_id(user_id, "User")
        with storage_errors("delete user", logger):
            with self.db.transaction() as conn:
                for loan in self.ledger.list(user_id=user_id, active_only=True, conn=conn):
                    self.catalog.set_status(loan.book_id, BookStatus.AVAILABLE, conn=conn)
                self.members.delete(user_id, conn=conn)
        logger.info(f"User with ID {user_id} deleted successfully.")

    # ------------------------- Statistics ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        with storage_errors("compute statistics", logger):
            return {
                "total_books": self.catalog.count(),
                "available_books": self.catalog.count(BookStatus.AVAILABLE),
                "total_users": self.members.count(),
                "active_loans": self.ledger.count_active(),
            }

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None

    # ------------------------- Utilities ------------------------- #
    @staticmethod
    def _require_id(value: Any, entity: str) -> None:
        if not is_positive_id(value):
            raise InvalidInputError(f"{entity} ID must be a positive integer.", field=f"{entity.lower()}_id")

