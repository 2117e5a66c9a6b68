"""Pydantic models shared across API, storage, and the JSON loader.

Terms used in this file:
- Task: a named, persisted definition of a runnable unit of work.
- Parameter document: one validation spec for a job parameter. The store keeps
  these as opaque JSON values, so they are typed as ``Any`` here.
- rid: the random external identifier callers use to address one task row.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

# Ordered validation specs, stored and returned verbatim.
ParameterDocuments = list[Any]


class TaskDraft(BaseModel):
    """Caller-supplied task fields, as accepted by insert and update."""

    # Column widths mirror the ``task`` table (VARCHAR(100) / VARCHAR(120)).
    key: str = Field(max_length=100)
    name: str = Field(default="", max_length=120)
    description: str = ""
    input_parameters: ParameterDocuments = Field(default_factory=list)
    input_parameters_keyed: ParameterDocuments = Field(default_factory=list)
    output_parameters: ParameterDocuments = Field(default_factory=list)


class Task(TaskDraft):
    """Stored task row returned by every store read."""

    # Insertion-order cursor for keyset pagination; never the public identifier.
    sequential_id: int
    external_id: UUID
    created_at: datetime
    updated_at: datetime


class TaskExport(TaskDraft):
    """Export/import file entry: the draft fields without ids or timestamps."""

    # Imports report empty keys per entry instead of rejecting the whole file.
    key: str = Field(default="", max_length=100)


class CreateTaskRequest(TaskDraft):
    """Request body for POST /tasks."""

    key: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1, max_length=120)


class UpdateTaskRequest(CreateTaskRequest):
    """Request body for PUT /tasks/{rid}; replaces every mutable field."""


class DeleteTasksResponse(BaseModel):
    deleted: int
    errors: list[str] = Field(default_factory=list)


class ImportTasksResponse(BaseModel):
    imported: int
    errors: list[str] = Field(default_factory=list)
