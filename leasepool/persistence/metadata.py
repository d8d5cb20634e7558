from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, TypeVar

from pydantic import BaseModel, ValidationError

from leasepool.core.config import MIN_SUPPORTED_SCHEMA_VERSION, SCHEMA_VERSION
from leasepool.core.errors import RecordValidationError, SchemaMismatch


ModelT = TypeVar("ModelT", bound=BaseModel)
RowT = TypeVar("RowT")


def validate_record(model: type[ModelT], data: Any) -> ModelT:
    # Reject invalid values before any statement is issued.
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        messages = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'value'}: {err['msg']}" for err in exc.errors()
        )
        raise RecordValidationError(f"Invalid {model.__name__}: {messages}") from exc


def stamp_created(values: dict[str, Any], now: datetime) -> dict[str, Any]:
    return {
        **values,
        "schema_version": SCHEMA_VERSION,
        "created_time": now,
        "last_edit_time": now,
    }


def stamp_edited(values: dict[str, Any], now: datetime) -> dict[str, Any]:
    # created_time is never rewritten after the first insert.
    return {**values, "schema_version": SCHEMA_VERSION, "last_edit_time": now}


def check_schema_version(row: RowT) -> RowT:
    version = getattr(row, "schema_version", None)
    if version is None:
        return row
    if not MIN_SUPPORTED_SCHEMA_VERSION <= version <= SCHEMA_VERSION:
        raise SchemaMismatch(
            f"Schema version {version} is not supported. "
            f"Supported range is {MIN_SUPPORTED_SCHEMA_VERSION}-{SCHEMA_VERSION}"
        )
    return row


def check_schema_versions(rows: Iterable[RowT]) -> list[RowT]:
    return [check_schema_version(row) for row in rows]
