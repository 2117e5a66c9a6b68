"""Error taxonomy surfaced by every task store implementation.

Callers branch on ``TaskStoreError.kind`` rather than on message text, e.g. the
HTTP layer maps ``ErrorKind.NOT_FOUND`` to a 404 "Task not found" response.
"""

from __future__ import annotations

from enum import StrEnum
from uuid import UUID


class ErrorKind(StrEnum):
    CONFIGURATION = "configuration"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    SERIALIZATION = "serialization"
    TIMEOUT = "timeout"
    STORAGE = "storage"


class TaskStoreError(Exception):
    """A failed store operation tagged with its kind and the operation name."""

    def __init__(self, kind: ErrorKind, operation: str, message: str) -> None:
        super().__init__(f"{operation}: {message}")
        self.kind = kind
        self.operation = operation
        self.message = message

    @classmethod
    def not_found_by_rid(cls, external_id: UUID | str) -> TaskStoreError:
        return cls(ErrorKind.NOT_FOUND, "task not found", f"no task with rid {external_id}")

    @classmethod
    def not_found_by_key(cls, key: str) -> TaskStoreError:
        return cls(ErrorKind.NOT_FOUND, "task not found", f"no task with key {key}")

    @classmethod
    def conflict(cls, operation: str, key: str) -> TaskStoreError:
        return cls(ErrorKind.CONFLICT, operation, f"task key {key!r} already exists")

    @classmethod
    def missing_table(cls, operation: str) -> TaskStoreError:
        return cls(ErrorKind.STORAGE, operation, 'relation "task" does not exist')


class ParameterDecodeError(ValueError):
    """Raised when a stored parameter document is not a JSON array."""
