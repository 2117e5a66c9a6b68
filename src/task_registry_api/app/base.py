"""Storage interface for task definitions."""

from __future__ import annotations

from typing import Protocol
from uuid import UUID

from .models import Task, TaskDraft


class TaskStore(Protocol):
    def ensure_schema(self, *, timeout: float | None = None) -> None: ...

    def drop_schema(self, *, timeout: float | None = None) -> None: ...

    def schema_exists(self, *, timeout: float | None = None) -> bool: ...

    def insert_task(self, draft: TaskDraft, *, timeout: float | None = None) -> Task: ...

    def update_task(
        self,
        external_id: UUID,
        draft: TaskDraft,
        *,
        timeout: float | None = None,
    ) -> Task: ...

    def delete_task(self, external_id: UUID, *, timeout: float | None = None) -> None: ...

    def get_task(self, external_id: UUID, *, timeout: float | None = None) -> Task: ...

    def get_task_by_key(self, key: str, *, timeout: float | None = None) -> Task: ...

    def list_tasks(
        self,
        after_id: int = 0,
        limit: int = 10,
        *,
        timeout: float | None = None,
    ) -> list[Task]: ...

    def search_tasks(
        self,
        query: str,
        after_id: int = 0,
        limit: int = 10,
        *,
        timeout: float | None = None,
    ) -> list[Task]: ...


def check_page_args(after_id: int, limit: int) -> None:
    """Reject cursor/limit values no page query can honor."""
    if after_id < 0:
        raise ValueError("after_id must be >= 0")
    if limit <= 0:
        raise ValueError("limit must be > 0")
