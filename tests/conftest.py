from __future__ import annotations

import os
import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from psycopg import errors as pg_errors

from task_registry_api.app import storage as storage_module
from task_registry_api.app.base import TaskStore
from task_registry_api.app.memory import InMemoryTaskStore
from task_registry_api.app.storage import BoundedConnection, Deadline
from task_registry_api.config.settings import Settings
from task_registry_api.main import create_app


def _postgres_store() -> TaskStore:
    if os.getenv("RUN_POSTGRES_INTEGRATION_TESTS") != "1":
        pytest.skip(
            "Set RUN_POSTGRES_INTEGRATION_TESTS=1 and TASK_REGISTRY_DATABASE_URL "
            "to run store tests against PostgreSQL."
        )
    database_url = os.getenv("TASK_REGISTRY_DATABASE_URL")
    if not database_url:
        pytest.skip("TASK_REGISTRY_DATABASE_URL is required for PostgreSQL store tests.")

    from task_registry_api.app.storage import Database, PostgresTaskStore

    return PostgresTaskStore(Database(database_url), reset=True)


@pytest.fixture(params=["memory", "postgres"])
def task_store(request: pytest.FixtureRequest) -> Iterator[TaskStore]:
    """The same contract tests run against every backend."""
    if request.param == "memory":
        yield InMemoryTaskStore()
        return
    store = _postgres_store()
    try:
        yield store
    finally:
        store.drop_schema()


@pytest.fixture
def memory_store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "storage_backend": "memory",
        "database_url": "",
        "task_json_path": "",
        "default_page_size": 10,
        "max_page_size": 100,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def client(memory_store: InMemoryTaskStore) -> Iterator[TestClient]:
    app = create_app(store=memory_store, settings_override=make_settings())
    with TestClient(app) as test_client:
        yield test_client


class FakeCursor:
    def __init__(self, rows: list[dict[str, Any]], rowcount: int) -> None:
        self._rows = rows
        self.rowcount = rowcount

    def fetchone(self) -> dict[str, Any] | None:
        return self._rows[0] if self._rows else None

    def fetchall(self) -> list[dict[str, Any]]:
        return list(self._rows)


class FakeClock:
    """Stands in for ``time.monotonic`` inside the storage module."""

    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeConnection:
    """Raw psycopg connection double; budget statements are recorded apart."""

    def __init__(self, database: FakeDatabase) -> None:
        self._database = database

    def __enter__(self) -> FakeConnection:
        return self

    def __exit__(self, *exc_info: object) -> bool:
        return False

    def execute(self, query: str, params: Any = None) -> FakeCursor:
        database = self._database
        if query.startswith("SELECT set_config('statement_timeout'"):
            database.statement_budgets.append(int(params[0]))
            return FakeCursor([], 0)
        database.executed.append((" ".join(query.split()), params))
        if database.clock is not None:
            database.clock.advance(database.statement_cost_s)
        if database.stall:
            if not database.cancelled.wait(5):
                raise AssertionError("statement was never cancelled")
            raise pg_errors.QueryCanceled("canceling statement due to user request")
        if database.error is not None:
            raise database.error
        return FakeCursor(database.rows, database.rowcount)

    def commit(self) -> None:
        self._database.commits += 1

    def cancel_safe(self, *, timeout: float = 30.0) -> None:
        self._database.cancelled.set()


class FakeDatabase:
    """Scripted stand-in for ``Database``: every statement returns ``rows``.

    Connections are wrapped in the real ``BoundedConnection`` so the call
    deadline logic runs against the fake.
    """

    def __init__(self) -> None:
        self.timeout_s = 10.0
        self.executed: list[tuple[str, Any]] = []
        self.statement_budgets: list[int] = []
        self.rows: list[dict[str, Any]] = []
        self.rowcount = 1
        self.error: Exception | None = None
        self.connect_error: Exception | None = None
        self.commits = 0
        self.timeouts: list[float | None] = []
        self.clock: FakeClock | None = None
        self.statement_cost_s = 0.0
        self.stall = False
        self.cancelled = threading.Event()

    def connect(self, timeout_s: float | None = None) -> BoundedConnection:
        self.timeouts.append(timeout_s)
        if self.connect_error is not None:
            raise self.connect_error
        deadline = Deadline(timeout_s if timeout_s is not None else self.timeout_s)
        return BoundedConnection(FakeConnection(self), deadline)

    def table_exists(self, name: str, *, timeout_s: float | None = None) -> bool:
        self.executed.append((f"table_exists {name}", None))
        if self.error is not None:
            raise self.error
        return bool(self.rows)


def make_row(**overrides: Any) -> dict[str, Any]:
    now = datetime.now(tz=UTC)
    row: dict[str, Any] = {
        "id": 1,
        "rid": uuid4(),
        "key": "resize_image",
        "name": "Resize image",
        "description": "",
        "input_parameters": [],
        "input_parameters_keyed": [],
        "output_parameters": [],
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


@pytest.fixture
def fake_database() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def row_factory():
    return make_row


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def fake_clock(monkeypatch: pytest.MonkeyPatch, fake_database: FakeDatabase) -> FakeClock:
    clock = FakeClock()
    monkeypatch.setattr(storage_module, "monotonic", clock)
    fake_database.clock = clock
    return clock
