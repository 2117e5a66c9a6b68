"""JSON (de)serialization of the three parameter-document columns.

The documents are opaque validation specs owned by the job validator; only
their JSON form crosses the store boundary.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from .errors import ErrorKind, ParameterDecodeError, TaskStoreError
from .models import Task

logger = logging.getLogger(__name__)

PARAMETER_FIELDS = ("input_parameters", "input_parameters_keyed", "output_parameters")


def encode_parameters(field: str, value: list[Any] | None) -> str:
    """Encode one parameter sequence to JSON text for a JSONB column.

    Encoding happens here rather than through psycopg's ``Json`` adapter so a
    document that cannot be stored fails before any connection is opened.
    """
    try:
        text = json.dumps(value if value is not None else [], ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise TaskStoreError(ErrorKind.SERIALIZATION, f"marshal {field}", str(exc)) from exc
    # JSONB cannot hold \u0000 in any string.
    if _contains_nul(value):
        raise TaskStoreError(
            ErrorKind.SERIALIZATION, f"marshal {field}", "NUL character is not allowed"
        )
    return text


def _contains_nul(value: Any) -> bool:
    if isinstance(value, str):
        return "\x00" in value
    if isinstance(value, dict):
        return any(_contains_nul(key) or _contains_nul(item) for key, item in value.items())
    if isinstance(value, (list, tuple)):
        return any(_contains_nul(item) for item in value)
    return False


def decode_parameters(raw: Any) -> list[Any]:
    """Decode a stored parameter document.

    psycopg hands JSONB back already parsed; text and bytes are parsed here.
    A missing value reads as an empty sequence.
    """
    if raw is None:
        return []
    parsed = raw
    if isinstance(raw, (bytes, bytearray, memoryview)):
        raw = bytes(raw)
    if isinstance(raw, (str, bytes)):
        try:
            parsed = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ParameterDecodeError(f"invalid JSON: {exc}") from exc
    if not isinstance(parsed, list):
        raise ParameterDecodeError(f"expected a JSON array, got {type(parsed).__name__}")
    return parsed


def task_from_row(row: Mapping[str, Any], *, lenient: bool = False) -> Task:
    """Map one ``task`` row to the Task model.

    With ``lenient`` set (page reads), an undecodable parameter column is logged
    and read as ``[]`` so one corrupt row does not fail the page. Otherwise the
    failure surfaces as a serialization error.
    """
    documents: dict[str, list[Any]] = {}
    for field in PARAMETER_FIELDS:
        try:
            documents[field] = decode_parameters(row[field])
        except ParameterDecodeError as exc:
            if not lenient:
                raise TaskStoreError(
                    ErrorKind.SERIALIZATION, f"unmarshal {field}", str(exc)
                ) from exc
            logger.warning(
                "task_store event=decode_failed rid=%s field=%s error=%s",
                row["rid"],
                field,
                exc,
            )
            documents[field] = []
    return Task(
        sequential_id=int(row["id"]),
        external_id=row["rid"],
        key=row["key"],
        name=row["name"] or "",
        description=row["description"] or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        **documents,
    )
