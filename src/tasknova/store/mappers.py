"""Translate between backend rows (snake_case columns) and record documents (camelCase keys)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from .records import Record, RecordKind, parse_record

TABLE_NAMES: dict[RecordKind, str] = {
    RecordKind.TASK: "tasks",
    RecordKind.PROJECT: "projects",
    RecordKind.CLIENT: "clients",
    RecordKind.HABIT: "habits",
    RecordKind.FOLDER: "folders",
    RecordKind.CHAT_SESSION: "chat_sessions",
}

KIND_BY_TABLE: dict[str, RecordKind] = {table: kind for kind, table in TABLE_NAMES.items()}

# column -> document key
COLUMN_MAPS: dict[RecordKind, dict[str, str]] = {
    RecordKind.TASK: {
        "id": "id",
        "title": "title",
        "completed": "completed",
        "category": "category",
        "date": "date",
        "duration": "duration",
        "color": "color",
        "reminder": "reminder",
        "priority": "priority",
        "status_label": "statusLabel",
        "assignee": "assignee",
        "project_id": "projectId",
        "notes": "notes",
    },
    RecordKind.PROJECT: {
        "id": "id",
        "title": "title",
        "client_name": "client",
        "client_id": "clientId",
        "status": "status",
        "progress": "progress",
        "deadline": "deadline",
        "tags": "tags",
        "color": "color",
        "notes": "notes",
        "price": "price",
    },
    RecordKind.CLIENT: {
        "id": "id",
        "name": "name",
        "email": "email",
        "revenue": "revenue",
        "status": "status",
        "notes": "notes",
        "avatar": "avatar",
    },
    RecordKind.HABIT: {
        "id": "id",
        "title": "title",
        "streak": "streak",
        "completed_dates": "completedDates",
        "frequency": "frequency",
        "category": "category",
    },
    RecordKind.FOLDER: {
        "id": "id",
        "name": "name",
        "parent_id": "parentId",
        "color": "color",
        "client_id": "clientId",
    },
    RecordKind.CHAT_SESSION: {
        "id": "id",
        "title": "title",
        "messages": "messages",
        "last_modified": "lastModified",
    },
}

_DATETIME_COLUMNS = {"date", "deadline", "last_modified"}


def _as_utc(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def record_to_row(kind: RecordKind, record: Record, account_id: str) -> dict[str, Any]:
    """Build a column dict for `kind`. Datetimes stay datetimes for the SQL layer."""
    python_doc = record.model_dump(by_alias=True)
    json_doc = record.model_dump(mode="json", by_alias=True)
    row: dict[str, Any] = {"user_id": account_id}
    for column, key in COLUMN_MAPS[kind].items():
        source = python_doc if column in _DATETIME_COLUMNS else json_doc
        row[column] = source.get(key)
    return row


def row_to_record(kind: RecordKind, row: dict[str, Any]) -> Record:
    doc: dict[str, Any] = {}
    for column, key in COLUMN_MAPS[kind].items():
        if column in row:
            doc[key] = _as_utc(row[column])
    if kind is RecordKind.PROJECT:
        doc["price"] = float(doc.get("price") or 0)
        doc["tags"] = doc.get("tags") or []
        doc["client"] = doc.get("client") or ""
    elif kind is RecordKind.CLIENT:
        doc["revenue"] = float(doc.get("revenue") or 0)
    elif kind is RecordKind.HABIT:
        doc["completedDates"] = doc.get("completedDates") or []
    elif kind is RecordKind.CHAT_SESSION:
        doc["messages"] = doc.get("messages") or []
    return parse_record(kind, {k: v for k, v in doc.items() if v is not None})
