"""FastAPI application wiring for the task registry.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Lifespan: startup/shutdown hook; the task store is built there when no store
  was injected, so importing this module never touches the database.
- app.state: a place to store shared runtime objects (settings, task store).
- rid: the external UUID of a task; ``lastId`` is the sequential id cursor.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse

from .app.base import TaskStore
from .app.errors import ErrorKind, TaskStoreError
from .app.loader import export_tasks, import_tasks, load_tasks_from_json
from .app.memory import InMemoryTaskStore
from .app.models import (
    CreateTaskRequest,
    DeleteTasksResponse,
    ImportTasksResponse,
    Task,
    TaskExport,
    UpdateTaskRequest,
)
from .app.storage import Database, PostgresTaskStore
from .config.settings import Settings, get_settings
from .logging_setup import configure_logging

logger = logging.getLogger(__name__)

_STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.SERIALIZATION: 422,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.CONFIGURATION: 500,
    ErrorKind.STORAGE: 500,
}


def build_store(settings: Settings) -> TaskStore:
    """Construct the configured backend; PostgreSQL needs a database URL."""
    if settings.storage_backend == "memory":
        return InMemoryTaskStore(reset=settings.reset_schema)
    database_url = settings.resolved_database_url()
    if not database_url:
        raise RuntimeError(
            "Missing database URL. Set TASK_REGISTRY_DATABASE_URL "
            "or DATABASE_URL before starting the app."
        )
    database = Database(database_url, timeout_s=settings.db_timeout_s)
    return PostgresTaskStore(database, reset=settings.reset_schema)


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    store_override: TaskStore | None,
) -> None:
    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "store"):
        app.state.store = store_override or build_store(settings)
        # Bulk-load once, right after the store is first attached.
        if settings.task_json_path:
            load_tasks_from_json(settings.task_json_path, app.state.store)


def create_app(
    *,
    store: TaskStore | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(app, settings=settings, store_override=store)
        yield

    app_lifespan = lifespan if store is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if store is not None:
        _ensure_runtime_state(app, settings=settings, store_override=store)

    def _get_task_store(request: Request) -> TaskStore:
        if not hasattr(request.app.state, "store"):
            _ensure_runtime_state(request.app, settings=settings, store_override=store)
        return request.app.state.store

    @app.exception_handler(TaskStoreError)
    async def task_store_error_handler(_: Request, exc: TaskStoreError) -> JSONResponse:
        status_code = _STATUS_BY_KIND.get(exc.kind, 500)
        if status_code >= 500:
            logger.error("task_store_error kind=%s error=%s", exc.kind, exc)
        detail = "Task not found" if exc.kind is ErrorKind.NOT_FOUND else str(exc)
        return JSONResponse(status_code=status_code, content={"detail": detail, "kind": exc.kind})

    # Multiple health endpoints map to the same function for compatibility with
    # different probes/load balancers.
    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/tasks", response_model=Task, status_code=201)
    def create_task(payload: CreateTaskRequest, request: Request) -> Task:
        return _get_task_store(request).insert_task(payload)

    @app.get("/tasks", response_model=list[Task])
    def list_tasks(
        request: Request,
        last_id: int = Query(default=0, ge=0, alias="lastId"),
        limit: int = Query(default=settings.default_page_size, ge=1, le=settings.max_page_size),
        search: str = "",
    ) -> list[Task]:
        task_store = _get_task_store(request)
        if search:
            return task_store.search_tasks(search, last_id, limit)
        return task_store.list_tasks(last_id, limit)

    @app.delete("/tasks", response_model=DeleteTasksResponse)
    def delete_tasks(
        request: Request,
        rid: list[str] | None = Query(default=None),
    ) -> JSONResponse:
        if not rid:
            raise HTTPException(status_code=400, detail="Missing task RID")
        task_store = _get_task_store(request)
        result = DeleteTasksResponse(deleted=0)
        for raw_rid in rid:
            try:
                task_store.delete_task(UUID(raw_rid))
            except ValueError as exc:
                result.errors.append(f"Invalid RID {raw_rid}: {exc}")
                continue
            except TaskStoreError as exc:
                result.errors.append(f"Failed to delete task {raw_rid}: {exc}")
                continue
            result.deleted += 1
        status_code = 207 if result.errors else 200
        return JSONResponse(status_code=status_code, content=result.model_dump())

    @app.get("/tasks/export")
    def export_selected_tasks(
        request: Request,
        rid: list[str] | None = Query(default=None),
    ) -> JSONResponse:
        if not rid:
            raise HTTPException(status_code=400, detail="Missing task RIDs")
        task_store = _get_task_store(request)
        found: list[Task] = []
        for raw_rid in rid:
            try:
                found.append(task_store.get_task(UUID(raw_rid)))
            except ValueError:
                logger.info("task_export event=skipped rid=%s reason=invalid", raw_rid)
            except TaskStoreError as exc:
                if exc.kind is not ErrorKind.NOT_FOUND:
                    raise
                logger.info("task_export event=skipped rid=%s reason=not_found", raw_rid)
        if not found:
            raise HTTPException(status_code=404, detail="No valid tasks found to export")
        return JSONResponse(
            content=export_tasks(found),
            headers={"Content-Disposition": "attachment; filename=tasks_export.json"},
        )

    @app.post("/tasks/import", response_model=ImportTasksResponse, status_code=201)
    def import_task_array(payload: list[TaskExport], request: Request) -> JSONResponse:
        if not payload:
            raise HTTPException(status_code=400, detail="No tasks found in JSON file")
        summary = import_tasks(payload, _get_task_store(request))
        result = ImportTasksResponse(imported=summary.inserted, errors=summary.errors)
        status_code = 207 if result.errors else 201
        return JSONResponse(status_code=status_code, content=result.model_dump())

    @app.get("/tasks/by-key/{key}", response_model=Task)
    def get_task_by_key(key: str, request: Request) -> Task:
        return _get_task_store(request).get_task_by_key(key)

    @app.get("/tasks/{rid}", response_model=Task)
    def get_task(rid: UUID, request: Request) -> Task:
        return _get_task_store(request).get_task(rid)

    @app.put("/tasks/{rid}", response_model=Task)
    def update_task(rid: UUID, payload: UpdateTaskRequest, request: Request) -> Task:
        return _get_task_store(request).update_task(rid, payload)

    @app.delete("/tasks/{rid}", status_code=204)
    def delete_task(rid: UUID, request: Request) -> Response:
        _get_task_store(request).delete_task(rid)
        return Response(status_code=204)

    return app


# Module-level app for `uvicorn task_registry_api.main:app`.
app = create_app()
