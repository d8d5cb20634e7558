from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import and_, or_
from sqlalchemy.sql import ColumnElement

from leasepool.core.errors import CursorError


CURSOR_VERSION = 1


@dataclass(frozen=True)
class SortField:
    # One keyset column; the last field of a sort must be unique within the scope.
    name: str
    column: ColumnElement[Any]
    direction: str = "asc"
    parser: Callable[[Any], Any] | None = None


def parse_datetime(value: Any) -> datetime:
    if not isinstance(value, str):
        raise CursorError("Cursor timestamp missing")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise CursorError("Cursor timestamp invalid") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def sort_token(sort_fields: list[SortField]) -> str:
    # Emit a stable sort token for cursor validation.
    return ",".join(f"-{field.name}" if field.direction == "desc" else field.name for field in sort_fields)


def _serialize_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    return value


def build_cursor_payload(
    *,
    scope: str,
    filter_key: str,
    sort_fields: list[SortField],
    row_values: dict[str, Any],
) -> dict[str, Any]:
    # Persist the last row's key values to build an opaque cursor token.
    return {
        "v": CURSOR_VERSION,
        "scope": scope,
        "filter": filter_key,
        "sort": sort_token(sort_fields),
        "values": {field.name: _serialize_value(row_values[field.name]) for field in sort_fields},
    }


def encode_cursor(payload: dict[str, Any], secret: str) -> str:
    # Sign cursor payloads to prevent client-side tampering.
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    encoded = base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")
    return f"{encoded}.{signature}"


def decode_cursor(token: str, secret: str) -> dict[str, Any]:
    # Verify cursor signatures and return the decoded payload.
    try:
        encoded, signature = token.split(".", 1)
    except ValueError as exc:
        raise CursorError("Invalid cursor format") from exc
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("utf-8"))
    except (ValueError, binascii.Error) as exc:
        raise CursorError("Invalid cursor encoding") from exc
    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise CursorError("Invalid cursor signature")
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CursorError("Invalid cursor payload") from exc
    if not isinstance(payload, dict):
        raise CursorError("Invalid cursor payload")
    return payload


def validate_cursor_payload(
    *,
    payload: dict[str, Any],
    expected_scope: str,
    expected_filter: str,
    sort_fields: list[SortField],
) -> dict[str, Any]:
    # Ensure cursor metadata matches the listing it is replayed against.
    if payload.get("v") != CURSOR_VERSION:
        raise CursorError("Cursor version mismatch")
    if payload.get("scope") != expected_scope:
        raise CursorError("Cursor scope mismatch")
    if payload.get("filter") != expected_filter:
        raise CursorError("Cursor filter mismatch")
    if payload.get("sort") != sort_token(sort_fields):
        raise CursorError("Cursor sort mismatch")
    values = payload.get("values")
    if not isinstance(values, dict):
        raise CursorError("Cursor values missing")
    parsed: dict[str, Any] = {}
    for field in sort_fields:
        if field.name not in values:
            raise CursorError(f"Cursor value missing: {field.name}")
        raw = values[field.name]
        parsed[field.name] = field.parser(raw) if field.parser else raw
    return parsed


def build_keyset_filter(sort_fields: list[SortField], values: dict[str, Any]) -> ColumnElement[bool]:
    # Build lexicographic "strictly after" filters for keyset paging.
    if not sort_fields:
        raise CursorError("Sort fields are required for cursor paging")

    def _compare(field: SortField) -> ColumnElement[bool]:
        value = values[field.name]
        return field.column > value if field.direction == "asc" else field.column < value

    conditions: list[ColumnElement[bool]] = []
    for idx, field in enumerate(sort_fields):
        prefix = [sort_fields[p].column == values[sort_fields[p].name] for p in range(idx)]
        conditions.append(and_(*prefix, _compare(field)))
    return or_(*conditions)
