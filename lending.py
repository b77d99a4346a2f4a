"""Loan lifecycle: issuing and returning books.

A book moves AVAILABLE -> BORROWED when a loan is issued and back when the
loan is returned; a loan moves ACTIVE -> RETURNED exactly once. The engine is
the only code that drives those transitions, and it does so with conditional
updates inside one write transaction so that concurrent requests for the same
book cannot both succeed.
"""
import logging
import sqlite3
from datetime import date
from typing import Callable, List, Optional

from book import BookStatus
from catalog import CatalogStore
from database import Database
from errors import ConflictError, InvalidInputError, NotFoundError, storage_errors
from ledger import LoanLedger
from loan import Loan
from membership import MembershipStore
from utils.validators import DateValidator, ValidationChain, is_positive_id


def _optional_id(value) -> bool:
    return value is None or is_positive_id(value)


class LoanLifecycleEngine:
    """Issue/return state machine over the catalog, membership and ledger stores."""

    def __init__(self, db: Database, catalog: CatalogStore, members: MembershipStore, ledger: LoanLedger,
                 logger: Optional[logging.Logger] = None,
                 today: Optional[Callable[[], date]] = None) -> None:
        self.db = db
        self.catalog = catalog
        self.members = members
        self.ledger = ledger
        self.logger = logger or logging.getLogger(__name__)
        self.today = today or date.today

    # ------------------------- Lifecycle ------------------------- #
    def issue_loan(self, user_id: int, book_id: int, loan_date=None, return_date=None) -> Loan:
        """Lend ``book_id`` to ``user_id``.

        Without ``return_date`` the book is flipped AVAILABLE -> BORROWED and an
        active loan is recorded, both in one transaction. With ``return_date``
        an already-closed loan is recorded (administrative back-entry) and the
        book's status is left alone, though it must still be AVAILABLE.

        Raises InvalidInputError, NotFoundError (user or book) or ConflictError
        when the book is not available, including when a concurrent issue won.
        """
        ValidationChain() \
            .check("user_id", lambda: is_positive_id(user_id), "User ID must be a positive integer.") \
            .check("book_id", lambda: is_positive_id(book_id), "Book ID must be a positive integer.") \
            .check("loan_date", lambda: DateValidator.is_parseable(loan_date),
                   "Loan date must be a date in YYYY-MM-DD format.") \
            .check("return_date", lambda: DateValidator.is_parseable(return_date),
                   "Return date must be a date in YYYY-MM-DD format.") \
            .check("return_date", lambda: self._dates_ordered(loan_date, return_date),
                   "Return date cannot be before the loan date.") \
            .raise_first()

        loan = Loan(
            user_id=user_id,
            book_id=book_id,
            loan_date=DateValidator.parse(loan_date) or self.today(),
            return_date=DateValidator.parse(return_date),
        )
        self.logger.info(f"Attempting to issue loan: {loan!r}")

        with storage_errors("issue loan", self.logger):
            with self.db.transaction() as conn:
                if self.members.get_by_id(user_id, conn=conn) is None:
                    raise NotFoundError("User", user_id)
                book = self.catalog.get_by_id(book_id, conn=conn)
                if book is None:
                    raise NotFoundError("Book", book_id)
                if loan.is_active:
                    if not self.catalog.compare_and_set_status(book_id, BookStatus.AVAILABLE,
                                                               BookStatus.BORROWED, conn=conn):
                        self._raise_unavailable(book_id, conn)
                elif book.status is not BookStatus.AVAILABLE:
                    self._raise_unavailable(book_id, conn)
                self.ledger.create(loan, conn=conn)

        self.logger.info(f"Loan issued successfully: {loan!r}")
        return loan

    def return_loan(self, loan_id: int, return_date=None) -> Loan:
        """Close an active loan and make its book AVAILABLE again."""
        ValidationChain() \
            .check("loan_id", lambda: is_positive_id(loan_id), "Loan ID must be a positive integer.") \
            .check("return_date", lambda: DateValidator.is_parseable(return_date),
                   "Return date must be a date in YYYY-MM-DD format.") \
            .raise_first()

        with storage_errors("return loan", self.logger):
            # The loan row, and so its book_id, is only trusted under the write lock
            with self.db.transaction() as conn:
                loan = self.ledger.get_by_id(loan_id, conn=conn)
                if loan is None:
                    raise NotFoundError("Loan", loan_id)
                if not loan.is_active:
                    raise self._already_returned(loan_id)

                returned_on = DateValidator.parse(return_date) or self.today()
                if returned_on < loan.loan_date:
                    raise InvalidInputError("Return date cannot be before the loan date.", field="return_date")

                if not self.ledger.close(loan_id, returned_on, conn=conn):
                    raise self._already_returned(loan_id)
                if not self.catalog.compare_and_set_status(loan.book_id, BookStatus.BORROWED,
                                                           BookStatus.AVAILABLE, conn=conn):
                    self.logger.warning(
                        f"Book with ID {loan.book_id} was not BORROWED while returning loan {loan_id}; "
                        f"forcing status to AVAILABLE"
                    )
                    self.catalog.set_status(loan.book_id, BookStatus.AVAILABLE, conn=conn)

        loan.return_date = returned_on
        self.logger.info(f"Loan returned successfully: {loan!r}")
        return loan

    # ------------------------- Administration ------------------------- #
    def get_loan(self, loan_id: int) -> Loan:
        ValidationChain() \
            .check("loan_id", lambda: is_positive_id(loan_id), "Loan ID must be a positive integer.") \
            .raise_first()
        with storage_errors("fetch loan", self.logger):
            loan = self.ledger.get_by_id(loan_id)
        if loan is None:
            raise NotFoundError("Loan", loan_id)
        return loan

    def list_loans(self, user_id: Optional[int] = None, book_id: Optional[int] = None,
                   active_only: bool = False) -> List[Loan]:
        ValidationChain() \
            .check("user_id", lambda: _optional_id(user_id), "User ID must be a positive integer.") \
            .check("book_id", lambda: _optional_id(book_id), "Book ID must be a positive integer.") \
            .raise_first()
        with storage_errors("list loans", self.logger):
            loans = self.ledger.list(user_id=user_id, book_id=book_id, active_only=active_only)
        self.logger.info(f"Fetched {len(loans)} loans (user_id={user_id}, book_id={book_id}, "
                         f"active_only={active_only})")
        return loans

    def update_loan(self, loan_id: int, user_id: Optional[int] = None, book_id: Optional[int] = None,
                    loan_date=None, return_date=None) -> Loan:
        """Correct a loan's clerical data.

        Changed user/book ids must exist. The availability state machine is not
        re-run: re-pointing a loan leaves both books' statuses as they are. A
        return date can only be corrected on a loan that is already returned;
        closing an active loan goes through :meth:`return_loan`.
        """
        ValidationChain() \
            .check("loan_id", lambda: is_positive_id(loan_id), "Loan ID must be a positive integer.") \
            .check("user_id", lambda: _optional_id(user_id), "User ID must be a positive integer.") \
            .check("book_id", lambda: _optional_id(book_id), "Book ID must be a positive integer.") \
            .check("loan_date", lambda: DateValidator.is_parseable(loan_date),
                   "Loan date must be a date in YYYY-MM-DD format.") \
            .check("return_date", lambda: DateValidator.is_parseable(return_date),
                   "Return date must be a date in YYYY-MM-DD format.") \
            .raise_first()

        with storage_errors("update loan", self.logger):
            # Read-modify-write under the write lock so a concurrent return is never overwritten
            with self.db.transaction() as conn:
                loan = self.ledger.get_by_id(loan_id, conn=conn)
                if loan is None:
                    raise NotFoundError("Loan", loan_id)

                if user_id is not None and user_id != loan.user_id:
                    if self.members.get_by_id(user_id, conn=conn) is None:
                        raise NotFoundError("User", user_id)
                    loan.user_id = user_id
                if book_id is not None and book_id != loan.book_id:
                    if self.catalog.get_by_id(book_id, conn=conn) is None:
                        raise NotFoundError("Book", book_id)
                    loan.book_id = book_id
                if loan_date is not None:
                    loan.loan_date = DateValidator.parse(loan_date)
                if return_date is not None:
                    if loan.is_active:
                        raise InvalidInputError(
                            f"Loan with ID {loan_id} is still active; return it instead of setting a return date.",
                            field="return_date",
                        )
                    loan.return_date = DateValidator.parse(return_date)

                if loan.return_date is not None and loan.return_date < loan.loan_date:
                    raise InvalidInputError("Return date cannot be before the loan date.", field="return_date")

                self.ledger.update(loan, conn=conn)

        self.logger.info(f"Loan updated successfully: {loan!r}")
        return loan

    def delete_loan(self, loan_id: int) -> None:
        """Remove a loan record. Deleting is not returning: book status is untouched."""
        ValidationChain() \
            .check("loan_id", lambda: is_positive_id(loan_id), "Loan ID must be a positive integer.") \
            .raise_first()
        with storage_errors("delete loan", self.logger):
            with self.db.transaction() as conn:
                loan = self.ledger.get_by_id(loan_id, conn=conn)
                if loan is None:
                    raise NotFoundError("Loan", loan_id)
                self.ledger.delete(loan_id, conn=conn)
        if loan.is_active:
            self.logger.info(f"Deleted active loan {loan_id}; book {loan.book_id} status left unchanged")
        else:
            self.logger.info(f"Loan with ID {loan_id} deleted successfully")

    # ------------------------- Helpers ------------------------- #
    def _dates_ordered(self, loan_date, return_date) -> bool:
        # Only meaningful once both parsed; the parse checks run first
        if return_date is None:
            return True
        start = DateValidator.parse(loan_date) or self.today()
        return DateValidator.parse(return_date) >= start

    def _raise_unavailable(self, book_id: int, conn: sqlite3.Connection) -> None:
        if self.catalog.get_by_id(book_id, conn=conn) is None:
            raise NotFoundError("Book", book_id)
        self.logger.warning(f"Book with ID {book_id} is not available for loan")
        raise ConflictError(f"Book with ID {book_id} is not available.")

    @staticmethod
    def _already_returned(loan_id: int) -> ConflictError:
        return ConflictError(f"Loan with ID {loan_id} has already been returned.")

