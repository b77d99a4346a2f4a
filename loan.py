from __future__ import annotations

from datetime import date
from typing import Optional


def _as_date(value) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


class Loan:
    """One lending of one book to one user.

    A loan with ``return_date`` of ``None`` is active; setting it is the
    terminal transition.
    """

    def __init__(self, user_id: int, book_id: int, loan_date: date, return_date: date | None = None,
                 id: int | None = None) -> None:
        self.id = id
        self.user_id = user_id
        self.book_id = book_id
        self.loan_date = loan_date
        self.return_date = return_date

    @property
    def is_active(self) -> bool:
        return self.return_date is None

    def __repr__(self) -> str:
        return (f"Loan(id={self.id!r}, user_id={self.user_id!r}, book_id={self.book_id!r}, "
                f"loan_date={self.loan_date}, return_date={self.return_date})")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "loan_date": self.loan_date.isoformat(),
            "return_date": self.return_date.isoformat() if self.return_date else None,
        }

    @staticmethod
    def from_dict(data: dict) -> "Loan":
        return Loan(
            id=data.get("id"),
            user_id=data["user_id"],
            book_id=data["book_id"],
            loan_date=_as_date(data["loan_date"]),
            return_date=_as_date(data.get("return_date")),
        )
