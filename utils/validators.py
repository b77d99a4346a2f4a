import re
from datetime import date
from typing import Any, Callable, List, Optional, Tuple

from errors import InvalidInputError

ISBN13_PATTERN = re.compile(r"^\d{13}$")
EMAIL_PATTERN = re.compile(r"^[\w.%+-]+@[\w.-]+\.[a-zA-Z]{2,}$")


class ValidationChain:
    """Ordered list of named checks evaluated in a single pass.

    Each check is a zero-argument predicate so that later checks may rely on
    earlier ones having passed (e.g. comparing two dates only once both parsed).
    The first failing check becomes an :class:`InvalidInputError` tagged with
    the check's field name.

        ValidationChain() \\
            .check("user_id", lambda: is_positive_id(user_id), "User ID must be a positive integer.") \\
            .raise_first()
    """

    def __init__(self) -> None:
        self._checks: List[Tuple[str, Callable[[], bool], str]] = []

    def check(self, field: str, predicate: Callable[[], bool], message: str) -> "ValidationChain":
        self._checks.append((field, predicate, message))
        return self

    def first_error(self) -> Optional[InvalidInputError]:
        for field, predicate, message in self._checks:
            if not predicate():
                return InvalidInputError(message, field=field)
        return None

    def raise_first(self) -> None:
        error = self.first_error()
        if error is not None:
            raise error


def is_positive_id(value: Any) -> bool:
    # bool is an int subclass; True is not a usable id
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def is_non_empty(text: Optional[str]) -> bool:
    return text is not None and bool(text.strip())


class ISBNValidator:
    """Catalog ISBNs are stored as exactly 13 ASCII digits, no separators."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return re.sub(r"[\s-]", "", raw)

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        if not isbn:
            return False
        return bool(ISBN13_PATTERN.match(isbn))


class EmailValidator:

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        if not is_non_empty(email):
            return False
        return bool(EMAIL_PATTERN.match(email.strip()))


class DateValidator:
    """Parses caller-supplied dates: ``date`` objects or ISO ``YYYY-MM-DD`` strings."""

    @staticmethod
    def parse(value: Any) -> Optional[date]:
        """Return the parsed date, ``None`` for ``None``; raise ``ValueError`` otherwise."""
        if value is None:
            return None
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            return date.fromisoformat(value.strip())
        raise ValueError(f"unsupported date value: {value!r}")

    @staticmethod
    def is_parseable(value: Any) -> bool:
        try:
            DateValidator.parse(value)
        except ValueError:
            return False
        return True

    @staticmethod
    def not_in_future(value: Optional[date], today: date) -> bool:
        return value is None or value <= today
