"""In-process task store with the same contract as the PostgreSQL backend.

Rows are kept in their stored shape (parameter documents as JSON text), so
reads go through the same decode path as PostgreSQL rows do.
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from .base import check_page_args
from .codec import PARAMETER_FIELDS, encode_parameters, task_from_row
from .errors import TaskStoreError
from .models import Task, TaskDraft


class InMemoryTaskStore:
    """Dictionary-backed store used by tests and the ``memory`` backend."""

    def __init__(self, *, reset: bool = False) -> None:
        self._lock = threading.Lock()
        self._rows: dict[int, dict[str, Any]] | None = None
        self._next_id = 1
        self._last_timestamp = datetime.fromtimestamp(0, tz=UTC)
        if reset:
            self.drop_schema()
        self.ensure_schema()

    def ensure_schema(self, *, timeout: float | None = None) -> None:
        with self._lock:
            if self._rows is None:
                self._rows = {}

    def drop_schema(self, *, timeout: float | None = None) -> None:
        # Ids keep counting across drops so a recreated table never reuses one.
        with self._lock:
            self._rows = None

    def schema_exists(self, *, timeout: float | None = None) -> bool:
        with self._lock:
            return self._rows is not None

    def insert_task(self, draft: TaskDraft, *, timeout: float | None = None) -> Task:
        documents = _encode_documents(draft)
        with self._lock:
            rows = self._table("insert task")
            if self._find_by_key(rows, draft.key) is not None:
                raise TaskStoreError.conflict("insert task", draft.key)
            now = self._now()
            row = {
                "id": self._next_id,
                "rid": uuid4(),
                "key": draft.key,
                "name": draft.name,
                "description": draft.description,
                **documents,
                "created_at": now,
                "updated_at": now,
            }
            self._next_id += 1
            rows[row["id"]] = row
            return task_from_row(row)

    def update_task(
        self,
        external_id: UUID,
        draft: TaskDraft,
        *,
        timeout: float | None = None,
    ) -> Task:
        documents = _encode_documents(draft)
        with self._lock:
            rows = self._table("update task")
            current = self._find_by_rid(rows, external_id)
            if current is None:
                raise TaskStoreError.not_found_by_rid(external_id)
            holder = self._find_by_key(rows, draft.key)
            if holder is not None and holder["id"] != current["id"]:
                raise TaskStoreError.conflict("update task", draft.key)
            current.update(
                key=draft.key,
                name=draft.name,
                description=draft.description,
                updated_at=self._now(),
                **documents,
            )
            return task_from_row(current)

    def delete_task(self, external_id: UUID, *, timeout: float | None = None) -> None:
        with self._lock:
            rows = self._table("delete task")
            current = self._find_by_rid(rows, external_id)
            if current is None:
                raise TaskStoreError.not_found_by_rid(external_id)
            del rows[current["id"]]

    def get_task(self, external_id: UUID, *, timeout: float | None = None) -> Task:
        with self._lock:
            row = self._find_by_rid(self._table("select task"), external_id)
            if row is None:
                raise TaskStoreError.not_found_by_rid(external_id)
            return task_from_row(row)

    def get_task_by_key(self, key: str, *, timeout: float | None = None) -> Task:
        with self._lock:
            row = self._find_by_key(self._table("select task by key"), key)
            if row is None:
                raise TaskStoreError.not_found_by_key(key)
            return task_from_row(row)

    def list_tasks(
        self,
        after_id: int = 0,
        limit: int = 10,
        *,
        timeout: float | None = None,
    ) -> list[Task]:
        check_page_args(after_id, limit)
        with self._lock:
            rows = self._table("select all tasks")
            page = [rows[row_id] for row_id in sorted(rows) if row_id > after_id][:limit]
            return [task_from_row(row, lenient=True) for row in page]

    def search_tasks(
        self,
        query: str,
        after_id: int = 0,
        limit: int = 10,
        *,
        timeout: float | None = None,
    ) -> list[Task]:
        check_page_args(after_id, limit)
        needle = query.lower()
        with self._lock:
            rows = self._table("select tasks by search")
            before: datetime | None = None
            if after_id != 0:
                anchor = rows.get(after_id)
                if anchor is None:
                    return []
                before = anchor["created_at"]
            matches = [
                row
                for row in rows.values()
                if _matches(row, needle) and (before is None or row["created_at"] < before)
            ]
            matches.sort(key=lambda row: (row["created_at"], row["id"]), reverse=True)
            return [task_from_row(row, lenient=True) for row in matches[:limit]]

    def _table(self, operation: str) -> dict[int, dict[str, Any]]:
        if self._rows is None:
            raise TaskStoreError.missing_table(operation)
        return self._rows

    def _now(self) -> datetime:
        # Strictly increasing, so created_at cursors and updated_at refreshes
        # never tie even when two writes land in the same clock tick.
        now = datetime.now(tz=UTC)
        if now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    @staticmethod
    def _find_by_rid(rows: dict[int, dict[str, Any]], external_id: UUID) -> dict[str, Any] | None:
        return next((row for row in rows.values() if row["rid"] == external_id), None)

    @staticmethod
    def _find_by_key(rows: dict[int, dict[str, Any]], key: str) -> dict[str, Any] | None:
        return next((row for row in rows.values() if row["key"] == key), None)


def _matches(row: dict[str, Any], needle: str) -> bool:
    haystacks = (str(row["rid"]), row["key"], row["name"] or "", row["description"] or "")
    return any(needle in value.lower() for value in haystacks)


def _encode_documents(draft: TaskDraft) -> dict[str, str]:
    return {field: encode_parameters(field, getattr(draft, field)) for field in PARAMETER_FIELDS}
