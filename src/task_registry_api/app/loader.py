"""Bulk import/export of task definitions as JSON arrays.

The file format is the export shape: one object per task with ``key``,
``name``, ``description`` and the three parameter arrays. Ids and timestamps
are never exported; storage assigns fresh ones on import.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter, ValidationError

from .base import TaskStore
from .errors import TaskStoreError
from .models import Task, TaskExport

logger = logging.getLogger(__name__)

_EXPORT_LIST = TypeAdapter(list[TaskExport])


@dataclass
class LoadSummary:
    total: int = 0
    inserted: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)


def parse_task_array(payload: Any) -> list[TaskExport]:
    """Validate a decoded JSON value as a task array."""
    if not isinstance(payload, list):
        raise ValueError(f"Expected a JSON array of tasks, received {type(payload).__name__}")
    try:
        return _EXPORT_LIST.validate_python(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid task entry: {exc}") from exc


def import_tasks(entries: Iterable[TaskExport], store: TaskStore) -> LoadSummary:
    """Insert each entry; failures are collected per task and never abort the batch."""
    summary = LoadSummary()
    for entry in entries:
        summary.total += 1
        if not entry.key:
            summary.errors.append("Skipped task with empty key")
            continue
        try:
            inserted = store.insert_task(entry)
        except TaskStoreError as exc:
            logger.warning("task_import event=insert_failed key=%s error=%s", entry.key, exc)
            summary.errors.append(f"Failed to import task '{entry.key}': {exc}")
            continue
        summary.inserted += 1
        logger.info("task_import event=inserted key=%s name=%s", inserted.key, inserted.name)
    return summary


def load_tasks_from_json(path: str | Path, store: TaskStore) -> LoadSummary:
    """Startup bulk loader. Unreadable or malformed files raise."""
    file_path = Path(path)
    payload = json.loads(file_path.read_text(encoding="utf-8"))
    summary = import_tasks(parse_task_array(payload), store)
    logger.info(
        "task_import event=finished file=%s total=%s inserted=%s failed=%s",
        file_path,
        summary.total,
        summary.inserted,
        summary.failed,
    )
    return summary


def export_tasks(tasks: Iterable[Task]) -> list[dict[str, Any]]:
    """Strip ids and timestamps so the result can be re-imported elsewhere."""
    return [
        TaskExport.model_validate(task.model_dump(include=set(TaskExport.model_fields))).model_dump(
            mode="json"
        )
        for task in tasks
    ]


def iter_all_tasks(store: TaskStore, *, page_size: int = 100) -> Iterator[Task]:
    """Walk every task with keyset pages in insertion order."""
    after_id = 0
    while True:
        page = store.list_tasks(after_id, page_size)
        yield from page
        if len(page) < page_size:
            return
        after_id = page[-1].sequential_id
