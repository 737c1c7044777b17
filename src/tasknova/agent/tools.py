"""Assistant tool declarations and parsing of model-produced tool calls."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..store.records import RecordKind


class ToolAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    TOGGLE = "TOGGLE"


TOOL_CREATE_TASK = "createTask"
TOOL_MANAGE_CLIENT = "manageClient"
TOOL_MANAGE_PROJECT = "manageProject"
TOOL_MANAGE_HABIT = "manageHabit"
TOOL_UPDATE_MEMORY = "updateMemory"

TOOL_KINDS: dict[str, RecordKind] = {
    TOOL_CREATE_TASK: RecordKind.TASK,
    TOOL_MANAGE_CLIENT: RecordKind.CLIENT,
    TOOL_MANAGE_PROJECT: RecordKind.PROJECT,
    TOOL_MANAGE_HABIT: RecordKind.HABIT,
}

TASK_CATEGORIES = {"PRODUCT", "CONTENT", "MONEY", "ADMIN", "MEETING"}
PRIORITIES = {"HIGH", "MEDIUM", "LOW"}
TASK_STATUSES = {"BACKLOG", "TODO", "IN_PROGRESS", "REVIEW", "DONE"}
CLIENT_STATUSES = {"ACTIVE", "INACTIVE"}
PROJECT_STATUSES = {"ACTIVE", "COMPLETED", "ARCHIVED"}
HABIT_FREQUENCIES = {"DAILY", "WEEKLY"}


def _function(name: str, description: str, properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


def _action(*values: str) -> dict[str, Any]:
    return {"type": "string", "enum": list(values)}


TOOL_DECLARATIONS: list[dict[str, Any]] = [
    _function(
        TOOL_CREATE_TASK,
        "Create, update, or delete a task or calendar event. Use UPDATE with status='DONE' to mark tasks as completed.",
        {
            "action": _action("CREATE", "UPDATE", "DELETE"),
            "id": {"type": "string", "description": "Task ID. Required for UPDATE/DELETE. If unknown, use the task Title."},
            "title": {"type": "string"},
            "date": {"type": "string", "description": "ISO date string (e.g. 2024-12-25T14:00:00) for the deadline or event start."},
            "category": {"type": "string", "enum": sorted(TASK_CATEGORIES)},
            "priority": {"type": "string", "enum": sorted(PRIORITIES)},
            "status": {"type": "string", "enum": ["TODO", "IN_PROGRESS", "REVIEW", "DONE"]},
        },
        ["action"],
    ),
    _function(
        TOOL_MANAGE_CLIENT,
        "Add, update, or delete a client.",
        {
            "action": _action("CREATE", "UPDATE", "DELETE"),
            "id": {"type": "string", "description": "Client ID. Required for UPDATE/DELETE. If unknown, use the client name."},
            "name": {"type": "string"},
            "email": {"type": "string"},
            "notes": {"type": "string"},
            "status": {"type": "string", "enum": sorted(CLIENT_STATUSES)},
        },
        ["action"],
    ),
    _function(
        TOOL_MANAGE_PROJECT,
        "Add, update, or delete a project.",
        {
            "action": _action("CREATE", "UPDATE", "DELETE"),
            "id": {"type": "string", "description": "Project ID. Required for UPDATE/DELETE. If unknown, use the project title."},
            "title": {"type": "string"},
            "clientName": {"type": "string"},
            "status": {"type": "string", "enum": sorted(PROJECT_STATUSES)},
            "price": {"type": "number"},
            "progress": {"type": "number"},
        },
        ["action"],
    ),
    _function(
        TOOL_MANAGE_HABIT,
        "Create, update, toggle, or delete a daily habit.",
        {
            "action": _action("CREATE", "UPDATE", "DELETE", "TOGGLE"),
            "id": {"type": "string", "description": "Habit ID. Required for UPDATE/DELETE/TOGGLE. If unknown, use the habit name."},
            "name": {"type": "string", "description": "Name of the habit (e.g. 'Morning Exercise')."},
            "frequency": {"type": "string", "enum": sorted(HABIT_FREQUENCIES)},
        },
        ["action"],
    ),
    _function(
        TOOL_UPDATE_MEMORY,
        "Save a new fact, preference, or context about the user to long-term memory.",
        {"memory": {"type": "string", "description": "The fact or preference to append to memory. Be concise."}},
        ["memory"],
    ),
]


@dataclass
class ToolCall:
    name: str
    args: dict[str, Any] | str
    call_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "args": self.args, "call_id": self.call_id}


@dataclass
class ToolIntent:
    tool: str
    action: ToolAction
    kind: RecordKind | None = None
    ref: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)
    client_name: str | None = None
    memory: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "action": self.action.value,
            "kind": self.kind.value if self.kind else None,
            "ref": self.ref,
            "fields": self.fields,
            "client_name": self.client_name,
        }


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _enum(data: dict[str, Any], key: str, allowed: set[str]) -> str | None:
    value = _text(data.get(key))
    if value is None:
        return None
    value = value.upper().replace(" ", "_")
    if value not in allowed:
        raise ValueError(f"{key} must be one of {sorted(allowed)}")
    return value


def _normalize_args(name: str, args: dict[str, Any]) -> dict[str, Any]:
    data = dict(args)

    parameters = data.get("parameters")
    if isinstance(parameters, dict):
        for key, value in parameters.items():
            data.setdefault(key, value)

    if "action" not in data and isinstance(data.get("operation"), str):
        data["action"] = data["operation"]
    if "id" not in data:
        for alias in ("recordId", "record_id", "taskId", "clientId", "projectId", "habitId"):
            if isinstance(data.get(alias), str):
                data["id"] = data[alias]
                break

    # Tasks, projects and habits are titled; clients are named. Models mix the two up.
    if name == TOOL_MANAGE_CLIENT:
        if "name" not in data and isinstance(data.get("title"), str):
            data["name"] = data["title"]
    elif "title" not in data and isinstance(data.get("name"), str):
        data["title"] = data["name"]

    if name == TOOL_MANAGE_PROJECT and "clientName" not in data:
        for alias in ("client_name", "client"):
            if isinstance(data.get(alias), str):
                data["clientName"] = data[alias]
                break
    return data


def _record_fields(name: str, data: dict[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    if name == TOOL_CREATE_TASK:
        if _text(data.get("title")):
            fields["title"] = _text(data.get("title"))
        if _text(data.get("date")):
            fields["date"] = _text(data.get("date"))
        category = _enum(data, "category", TASK_CATEGORIES)
        if category:
            fields["category"] = category
        priority = _enum(data, "priority", PRIORITIES)
        if priority:
            fields["priority"] = priority
        status = _enum(data, "status", TASK_STATUSES)
        if status:
            fields["status_label"] = status
            fields["completed"] = status == "DONE"
        duration = _number(data.get("duration"))
        if duration is not None and duration > 0:
            fields["duration"] = int(duration)
        if _text(data.get("notes")):
            fields["notes"] = _text(data.get("notes"))
    elif name == TOOL_MANAGE_CLIENT:
        for key in ("name", "email", "notes"):
            if _text(data.get(key)):
                fields[key] = _text(data.get(key))
        status = _enum(data, "status", CLIENT_STATUSES)
        if status:
            fields["status"] = status
        revenue = _number(data.get("revenue"))
        if revenue is not None:
            fields["revenue"] = revenue
    elif name == TOOL_MANAGE_PROJECT:
        if _text(data.get("title")):
            fields["title"] = _text(data.get("title"))
        status = _enum(data, "status", PROJECT_STATUSES)
        if status:
            fields["status"] = status
        price = _number(data.get("price"))
        if price is not None:
            fields["price"] = price
        progress = _number(data.get("progress"))
        if progress is not None:
            fields["progress"] = max(0, min(100, int(progress)))
        if _text(data.get("notes")):
            fields["notes"] = _text(data.get("notes"))
    elif name == TOOL_MANAGE_HABIT:
        if _text(data.get("title")):
            fields["title"] = _text(data.get("title"))
        frequency = _enum(data, "frequency", HABIT_FREQUENCIES)
        if frequency:
            fields["frequency"] = frequency
    return fields


def parse_tool_call(call: ToolCall) -> ToolIntent | str:
    """Parse a tool call into an intent, or return an error message for the model."""
    args = call.args
    if isinstance(args, str):
        try:
            args = json.loads(args) if args.strip() else {}
        except json.JSONDecodeError as exc:
            return f"Invalid JSON arguments: {exc}"
    if not isinstance(args, dict):
        return "Tool arguments must be a JSON object"

    data = _normalize_args(call.name, args)

    if call.name == TOOL_UPDATE_MEMORY:
        memory = _text(data.get("memory")) or _text(data.get("fact"))
        if memory is None:
            return "updateMemory requires 'memory' (string)"
        return ToolIntent(call.name, ToolAction.UPDATE, memory=memory)

    kind = TOOL_KINDS.get(call.name)
    if kind is None:
        return f"Unknown tool '{call.name}'"

    action_raw = _text(data.get("action"))
    if action_raw is None:
        return f"{call.name} requires 'action'"
    try:
        action = ToolAction(action_raw.upper())
    except ValueError:
        allowed = [a.value for a in ToolAction if a is not ToolAction.TOGGLE or kind is RecordKind.HABIT]
        return f"{call.name} action must be one of {', '.join(allowed)}"
    if action is ToolAction.TOGGLE and kind is not RecordKind.HABIT:
        return f"{call.name} does not support TOGGLE"

    try:
        fields = _record_fields(call.name, data)
    except ValueError as exc:
        return f"{call.name}: {exc}"

    label_key = "name" if kind is RecordKind.CLIENT else "title"
    if action is ToolAction.CREATE:
        if label_key not in fields:
            display = "name" if kind in (RecordKind.CLIENT, RecordKind.HABIT) else "title"
            return f"{call.name} CREATE requires '{display}'"
        ref = _text(data.get("id"))
    else:
        ref = _text(data.get("id")) or fields.get(label_key)
        if ref is None:
            return f"{call.name} {action.value} requires 'id'"

    return ToolIntent(
        call.name,
        action,
        kind=kind,
        ref=ref,
        fields=fields,
        client_name=_text(data.get("clientName")) if kind is RecordKind.PROJECT else None,
    )
