from __future__ import annotations

from datetime import date
from enum import Enum


class BookStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    BORROWED = "BORROWED"


class Book:
    """Represents a single book in the catalog."""

    def __init__(self, title: str, author: str, isbn: str, published_date: date | None = None,
                 status: BookStatus | str = BookStatus.AVAILABLE, id: int | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip()
        self.published_date = published_date
        self.status = BookStatus(status)

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def __repr__(self) -> str:
        return f"Book(id={self.id!r}, isbn={self.isbn!r}, status={self.status.value})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "published_date": self.published_date.isoformat() if self.published_date else None,
            "status": self.status.value,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # SQLite hands dates back as ISO strings
        published = data.get("published_date")
        if isinstance(published, str):
            published = date.fromisoformat(published)
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            isbn=data["isbn"],
            published_date=published,
            status=data.get("status") or BookStatus.AVAILABLE,
        )
