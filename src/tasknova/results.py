"""Action results and user-facing notices."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .errors import TaskNovaError


@dataclass
class ActionResult:
    success: bool
    message: str
    data: dict[str, Any] | None = None
    error_code: str | None = None
    error_category: str | None = None
    retriable: bool = False
    requires_reauth: bool = False
    cancelled: bool = False

    @classmethod
    def from_error(cls, exc: TaskNovaError, *, retriable: bool = False) -> "ActionResult":
        return cls(
            False,
            exc.user_message,
            data=dict(exc.data) or None,
            error_code=exc.error_code,
            error_category=exc.error_category,
            retriable=retriable,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "data": self.data,
        }
        if self.error_code:
            payload["error_code"] = self.error_code
            payload["error_category"] = self.error_category
            payload["retriable"] = self.retriable
        if self.requires_reauth:
            payload["requires_reauth"] = True
        if self.cancelled:
            payload["cancelled"] = True
        return payload


@dataclass
class Notice:
    level: str
    message: str
    code: str | None = None
    blocking: bool = False
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class NoticeBoard:
    """Collects toast-style messages for whatever UI is attached."""

    def __init__(self, limit: int = 100) -> None:
        self.limit = limit
        self._items: list[Notice] = []

    def info(self, message: str, code: str | None = None) -> Notice:
        return self._push(Notice("info", message, code))

    def warning(self, message: str, code: str | None = None) -> Notice:
        return self._push(Notice("warning", message, code))

    def error(self, message: str, code: str | None = None, *, blocking: bool = True) -> Notice:
        return self._push(Notice("error", message, code, blocking=blocking))

    def _push(self, notice: Notice) -> Notice:
        self._items.append(notice)
        if len(self._items) > self.limit:
            del self._items[: len(self._items) - self.limit]
        return notice

    def items(self) -> list[Notice]:
        return list(self._items)

    def drain(self) -> list[Notice]:
        items, self._items = self._items, []
        return items

    def has_code(self, code: str) -> bool:
        return any(n.code == code for n in self._items)
