"""PostgreSQL storage backend for task definitions.

Beginner terms:
- Keyset pagination: the next page starts after the last row seen (its id or
  created_at), not after an offset, so concurrent inserts cannot shift pages.
- JSONB: PostgreSQL JSON type used for the parameter documents.
- Deadline: one wall-clock budget per store call. Connecting, every statement
  and the commit all draw on it; whatever is running when it expires is
  cancelled and surfaces here as a timeout error.
- Row factory: returns query rows as dict-like objects instead of tuples.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from time import monotonic
from typing import Any
from uuid import UUID

import psycopg
from psycopg import errors as pg_errors
from psycopg.rows import dict_row

from .base import check_page_args
from .codec import PARAMETER_FIELDS, encode_parameters, task_from_row
from .errors import ErrorKind, TaskStoreError
from .models import Task, TaskDraft

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 10.0
TABLE_NAME = "task"
# Upper bound on the cancel request sent when a call runs out of time.
CANCEL_TIMEOUT_S = 1.0

# libpq enforces connect_timeout with a 2s floor, so connects run here and the
# caller waits on the future for exactly the time it has left.
_CONNECT_POOL = ThreadPoolExecutor(max_workers=8, thread_name_prefix="task-db-connect")

_COLUMNS = """
    id,
    rid,
    key,
    name,
    description,
    input_parameters,
    input_parameters_keyed,
    output_parameters,
    created_at,
    updated_at
"""

# gen_random_uuid() is built in from PostgreSQL 13 onwards.
_CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS task (
        id SERIAL PRIMARY KEY,
        rid UUID UNIQUE NOT NULL DEFAULT gen_random_uuid(),
        key VARCHAR(100) UNIQUE NOT NULL,
        name VARCHAR(120) DEFAULT '',
        description TEXT DEFAULT '',
        input_parameters JSONB NOT NULL DEFAULT '[]'::jsonb,
        input_parameters_keyed JSONB NOT NULL DEFAULT '[]'::jsonb,
        output_parameters JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    )
"""

_SET_STATEMENT_TIMEOUT_SQL = "SELECT set_config('statement_timeout', %s, false)"


class Deadline:
    """Monotonic expiry shared by every step of one store call."""

    def __init__(self, budget_s: float) -> None:
        self.budget_s = budget_s
        self.expires_at = monotonic() + budget_s

    def remaining(self) -> float:
        return self.expires_at - monotonic()

    def remaining_ms(self) -> int:
        """Whole milliseconds left; raises QueryCanceled once nothing is left."""
        remaining_ms = int(self.remaining() * 1000)
        if remaining_ms <= 0:
            raise pg_errors.QueryCanceled(
                f"store call exceeded its {self.budget_s:g}s budget"
            )
        return remaining_ms


class BoundedConnection:
    """A connection whose statements all run inside one call deadline.

    Every statement is preceded by lowering ``statement_timeout`` to the time
    left, and a watchdog timer cancels whatever is in flight (including a
    commit or a stalled network read) when the deadline passes.
    """

    def __init__(self, conn: Any, deadline: Deadline) -> None:
        self._conn = conn
        self.deadline = deadline
        self._watchdog: threading.Timer | None = None

    def __enter__(self) -> BoundedConnection:
        self._conn.__enter__()
        self._watchdog = threading.Timer(max(self.deadline.remaining(), 0.0), self._cancel)
        self._watchdog.daemon = True
        self._watchdog.start()
        return self

    def __exit__(self, *exc_info: Any) -> Any:
        if self._watchdog is not None:
            self._watchdog.cancel()
        return self._conn.__exit__(*exc_info)

    def execute(self, query: str, params: Any = None) -> Any:
        self._conn.execute(_SET_STATEMENT_TIMEOUT_SQL, (str(self.deadline.remaining_ms()),))
        return self._conn.execute(query, params)

    def commit(self) -> None:
        self.deadline.remaining_ms()
        self._conn.commit()

    def _cancel(self) -> None:
        logger.warning("task_store event=deadline_cancel budget_s=%s", self.deadline.budget_s)
        try:
            self._conn.cancel_safe(timeout=CANCEL_TIMEOUT_S)
        except psycopg.Error as exc:
            logger.warning("task_store event=cancel_failed error=%s", exc)


class Database:
    """Connection handle owned by the application and injected into stores.

    Every call opens its own short-lived connection; nothing is held between
    calls. ``timeout_s`` is the default wall-clock budget of one call.
    """

    def __init__(self, url: str, *, timeout_s: float = DEFAULT_TIMEOUT_S) -> None:
        if not url:
            raise TaskStoreError(
                ErrorKind.CONFIGURATION, "database connection validation", "database url is empty"
            )
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        self.url = url
        self.timeout_s = timeout_s

    def connect(self, timeout_s: float | None = None) -> BoundedConnection:
        """Open a connection whose whole use is bounded by ``timeout_s`` (or the default)."""
        deadline = Deadline(timeout_s if timeout_s is not None else self.timeout_s)
        remaining_ms = deadline.remaining_ms()
        future = _CONNECT_POOL.submit(
            psycopg.connect,
            self.url,
            row_factory=dict_row,
            connect_timeout=max(2, math.ceil(remaining_ms / 1000)),
            tcp_user_timeout=remaining_ms,
            options=f"-c statement_timeout={remaining_ms}",
        )
        try:
            conn = future.result(timeout=max(deadline.remaining(), 0.0))
        except FutureTimeoutError:
            future.add_done_callback(_close_abandoned)
            raise pg_errors.ConnectionTimeout(
                f"connection not established within {deadline.budget_s:g}s"
            ) from None
        return BoundedConnection(conn, deadline)

    def table_exists(self, name: str, *, timeout_s: float | None = None) -> bool:
        with self.connect(timeout_s) as conn:
            row = conn.execute(
                """
                SELECT EXISTS (
                    SELECT 1
                    FROM information_schema.tables
                    WHERE table_schema = ANY (current_schemas(false))
                      AND table_name = %s
                ) AS present
                """,
                (name,),
            ).fetchone()
        return bool(row and row["present"])


def _close_abandoned(future: Future) -> None:
    # A connect that finished after its caller gave up is closed unused.
    if not future.cancelled() and future.exception() is None:
        future.result().close()


@contextmanager
def _translate_errors(operation: str, *, key: str | None = None) -> Iterator[None]:
    """Re-raise driver failures as TaskStoreError tagged with ``operation``."""
    try:
        yield
    except TaskStoreError:
        raise
    except pg_errors.UniqueViolation as exc:
        raise TaskStoreError.conflict(operation, key or "") from exc
    except (pg_errors.QueryCanceled, pg_errors.ConnectionTimeout) as exc:
        raise TaskStoreError(ErrorKind.TIMEOUT, operation, str(exc)) from exc
    except psycopg.Error as exc:
        raise TaskStoreError(ErrorKind.STORAGE, operation, str(exc)) from exc


def _like_pattern(query: str) -> str:
    """Wrap ``query`` for ILIKE so it only ever matches as a literal substring."""
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class PostgresTaskStore:
    """Task definitions persisted in the PostgreSQL ``task`` table.

    No application-level locking: key uniqueness is enforced by the table's
    UNIQUE constraint and concurrent writers to one row race at the row level.
    """

    def __init__(self, database: Database | None, *, reset: bool = False) -> None:
        if database is None:
            raise TaskStoreError(
                ErrorKind.CONFIGURATION,
                "database connection validation",
                "database connection is missing",
            )
        self._database = database
        if reset:
            self.drop_schema()
        self.ensure_schema()

    # ---- schema lifecycle ----

    def ensure_schema(self, *, timeout: float | None = None) -> None:
        """Create the table and its indexes if they do not already exist."""
        with _translate_errors("create task table"), self._connect(timeout) as conn:
            conn.execute(_CREATE_TABLE_SQL)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_task_rid ON task(rid)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_task_name ON task(name)")
            conn.commit()
        logger.info("task_store event=schema_checked table=%s", TABLE_NAME)

    def drop_schema(self, *, timeout: float | None = None) -> None:
        with _translate_errors("drop task table"), self._connect(timeout) as conn:
            conn.execute("DROP TABLE IF EXISTS task")
            conn.commit()
        logger.info("task_store event=schema_dropped table=%s", TABLE_NAME)

    def schema_exists(self, *, timeout: float | None = None) -> bool:
        with _translate_errors("task table"):
            return self._database.table_exists(TABLE_NAME, timeout_s=timeout)

    # ---- single-row CRUD ----

    def insert_task(self, draft: TaskDraft, *, timeout: float | None = None) -> Task:
        """Insert a new row; storage assigns id, rid and both timestamps."""
        documents = _encode_documents(draft)
        with _translate_errors("insert task", key=draft.key), self._connect(timeout) as conn:
            row = conn.execute(
                f"""
                INSERT INTO task (
                    key,
                    name,
                    description,
                    input_parameters,
                    input_parameters_keyed,
                    output_parameters
                ) VALUES (%s, %s, %s, %s::jsonb, %s::jsonb, %s::jsonb)
                RETURNING {_COLUMNS}
                """,
                (draft.key, draft.name, draft.description, *documents),
            ).fetchone()
            conn.commit()
        if row is None:
            raise TaskStoreError(ErrorKind.STORAGE, "insert task", "no row returned")
        task = task_from_row(row)
        logger.debug(
            "task_store event=inserted id=%s rid=%s key=%s",
            task.sequential_id,
            task.external_id,
            task.key,
        )
        return task

    def update_task(
        self,
        external_id: UUID,
        draft: TaskDraft,
        *,
        timeout: float | None = None,
    ) -> Task:
        """Replace every mutable field of the row and refresh ``updated_at``."""
        documents = _encode_documents(draft)
        with _translate_errors("update task", key=draft.key), self._connect(timeout) as conn:
            row = conn.execute(
                f"""
                UPDATE task
                SET key = %s,
                    name = %s,
                    description = %s,
                    input_parameters = %s::jsonb,
                    input_parameters_keyed = %s::jsonb,
                    output_parameters = %s::jsonb,
                    updated_at = NOW()
                WHERE rid = %s
                RETURNING {_COLUMNS}
                """,
                (draft.key, draft.name, draft.description, *documents, external_id),
            ).fetchone()
            conn.commit()
        if row is None:
            raise TaskStoreError.not_found_by_rid(external_id)
        return task_from_row(row)

    def delete_task(self, external_id: UUID, *, timeout: float | None = None) -> None:
        with _translate_errors("delete task"), self._connect(timeout) as conn:
            cursor = conn.execute("DELETE FROM task WHERE rid = %s", (external_id,))
            deleted = cursor.rowcount
            conn.commit()
        if deleted == 0:
            raise TaskStoreError.not_found_by_rid(external_id)
        logger.debug("task_store event=deleted rid=%s", external_id)

    def get_task(self, external_id: UUID, *, timeout: float | None = None) -> Task:
        with _translate_errors("select task"), self._connect(timeout) as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM task WHERE rid = %s",
                (external_id,),
            ).fetchone()
        if row is None:
            raise TaskStoreError.not_found_by_rid(external_id)
        return task_from_row(row)

    def get_task_by_key(self, key: str, *, timeout: float | None = None) -> Task:
        with _translate_errors("select task by key"), self._connect(timeout) as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM task WHERE key = %s",
                (key,),
            ).fetchone()
        if row is None:
            raise TaskStoreError.not_found_by_key(key)
        return task_from_row(row)

    # ---- pages ----

    def list_tasks(
        self,
        after_id: int = 0,
        limit: int = 10,
        *,
        timeout: float | None = None,
    ) -> list[Task]:
        """Rows with id > ``after_id`` in ascending id order (0 = first page)."""
        check_page_args(after_id, limit)
        with _translate_errors("select all tasks"), self._connect(timeout) as conn:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS}
                FROM task
                WHERE id > %s
                ORDER BY id ASC
                LIMIT %s
                """,
                (after_id, limit),
            ).fetchall()
        return [task_from_row(row, lenient=True) for row in rows]

    def search_tasks(
        self,
        query: str,
        after_id: int = 0,
        limit: int = 10,
        *,
        timeout: float | None = None,
    ) -> list[Task]:
        """Newest-first rows whose rid, key, name or description contain ``query``.

        ``after_id`` is the id of the last row of the previous page; the next
        page holds rows created strictly before that row. An ``after_id`` that
        names no row yields an empty page.
        """
        check_page_args(after_id, limit)
        with _translate_errors("select tasks by search"), self._connect(timeout) as conn:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS}
                FROM task
                WHERE (task.rid::text ILIKE %(pattern)s
                       OR task.key ILIKE %(pattern)s
                       OR task.name ILIKE %(pattern)s
                       OR task.description ILIKE %(pattern)s)
                  AND (%(after_id)s = 0
                       OR task.created_at < (
                           SELECT t.created_at
                           FROM task AS t
                           WHERE t.id = %(after_id)s))
                ORDER BY task.created_at DESC, task.id DESC
                LIMIT %(limit)s
                """,
                {"pattern": _like_pattern(query), "after_id": after_id, "limit": limit},
            ).fetchall()
        return [task_from_row(row, lenient=True) for row in rows]

    def _connect(self, timeout: float | None) -> BoundedConnection:
        return self._database.connect(timeout)


def _encode_documents(draft: TaskDraft) -> tuple[str, str, str]:
    input_parameters, input_parameters_keyed, output_parameters = (
        encode_parameters(field, getattr(draft, field)) for field in PARAMETER_FIELDS
    )
    return input_parameters, input_parameters_keyed, output_parameters
