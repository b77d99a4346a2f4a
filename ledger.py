import sqlite3
from datetime import date
from typing import List, Optional

from database import Database
from errors import NotFoundError
from loan import Loan

_LOAN_COLUMNS = "id, user_id, book_id, loan_date, return_date"


class LoanLedger:
    """Loan records. The ledger is the only writer of the ``loans`` table."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def create(self, loan: Loan, conn: Optional[sqlite3.Connection] = None) -> Loan:
        with self.db.connection(conn) as c:
            cursor = c.execute(
                "INSERT INTO loans (user_id, book_id, loan_date, return_date) VALUES (?, ?, ?, ?)",
                (loan.user_id, loan.book_id, loan.loan_date.isoformat(),
                 loan.return_date.isoformat() if loan.return_date else None),
            )
            loan.id = cursor.lastrowid
        return loan

    def get_by_id(self, loan_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Loan]:
        with self.db.connection(conn) as c:
            row = c.execute(f"SELECT {_LOAN_COLUMNS} FROM loans WHERE id = ?", (loan_id,)).fetchone()
        return Loan.from_dict(dict(row)) if row else None

    def list(self, user_id: Optional[int] = None, book_id: Optional[int] = None, active_only: bool = False,
             conn: Optional[sqlite3.Connection] = None) -> List[Loan]:
        clauses, params = [], []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if book_id is not None:
            clauses.append("book_id = ?")
            params.append(book_id)
        if active_only:
            clauses.append("return_date IS NULL")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.db.connection(conn) as c:
            rows = c.execute(f"SELECT {_LOAN_COLUMNS} FROM loans{where} ORDER BY id", params).fetchall()
        return [Loan.from_dict(dict(row)) for row in rows]

    def update(self, loan: Loan, conn: Optional[sqlite3.Connection] = None) -> None:
        with self.db.connection(conn) as c:
            cursor = c.execute(
                "UPDATE loans SET user_id = ?, book_id = ?, loan_date = ?, return_date = ? WHERE id = ?",
                (loan.user_id, loan.book_id, loan.loan_date.isoformat(),
                 loan.return_date.isoformat() if loan.return_date else None, loan.id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Loan", loan.id)

    def close(self, loan_id: int, return_date: date, conn: Optional[sqlite3.Connection] = None) -> bool:
        """Set ``return_date`` only if the loan is still active. Returns whether it applied."""
        with self.db.connection(conn) as c:
            cursor = c.execute(
                "UPDATE loans SET return_date = ? WHERE id = ? AND return_date IS NULL",
                (return_date.isoformat(), loan_id),
            )
            return cursor.rowcount == 1

    def delete(self, loan_id: int, conn: Optional[sqlite3.Connection] = None) -> None:
        with self.db.connection(conn) as c:
            cursor = c.execute("DELETE FROM loans WHERE id = ?", (loan_id,))
            if cursor.rowcount == 0:
                raise NotFoundError("Loan", loan_id)

    def count_active(self, conn: Optional[sqlite3.Connection] = None) -> int:
        with self.db.connection(conn) as c:
            return c.execute("SELECT COUNT(*) FROM loans WHERE return_date IS NULL").fetchone()[0]
