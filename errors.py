"""Typed failures raised by the stores, the lending engine and the library facade.

Every failure carries an :class:`ErrorKind` so the request layer can map it to
a stable HTTP status without inspecting messages.
"""
from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from enum import Enum
from typing import Any, Iterator


class ErrorKind(str, Enum):
    INVALID_INPUT = "InvalidInput"
    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    INTERNAL = "Internal"


_STATUS_CODES = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INTERNAL: 500,
}


class LibraryError(Exception):
    """Base class for all domain failures."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self.kind]


class InvalidInputError(LibraryError):
    """Malformed or missing input. Always a client bug, never retried."""

    kind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(LibraryError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity: str, entity_id: Any, key: str = "ID") -> None:
        super().__init__(f"{entity} with {key} {entity_id} not found.")
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(LibraryError):
    """A state-machine precondition did not hold (or a concurrent writer won)."""

    kind = ErrorKind.CONFLICT


class InternalError(LibraryError):
    kind = ErrorKind.INTERNAL


@contextmanager
def storage_errors(action: str, logger: logging.Logger) -> Iterator[None]:
    """Re-raise sqlite failures as domain errors.

    Constraint violations (duplicate ISBN/email, a second active loan for one
    book) become ConflictError; anything else from the driver is InternalError.
    Domain errors raised inside the block pass through untouched.
    """
    try:
        yield
    except sqlite3.IntegrityError as e:
        logger.warning(f"Constraint violation during {action}: {e}")
        raise ConflictError(f"Could not {action}: it conflicts with an existing record.") from e
    except sqlite3.Error as e:
        logger.error(f"Storage failure during {action}: {e}")
        raise InternalError(f"Storage failure during {action}.") from e
