"""Row-level change feed for the durable backend, scoped by account."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from .mappers import KIND_BY_TABLE
from .records import RecordKind


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class RealtimeEvent:
    event_type: ChangeType
    table: str
    account_id: str
    new: dict[str, Any] | None = None
    old_id: str | None = None

    @property
    def kind(self) -> RecordKind:
        return KIND_BY_TABLE[self.table]

    @property
    def record_id(self) -> str | None:
        if self.new is not None:
            return self.new.get("id")
        return self.old_id


RealtimeHandler = Callable[[RealtimeEvent], None]


class RealtimeChannel:
    """Delivers committed row changes to every subscriber of the owning account."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[RealtimeHandler]] = defaultdict(list)

    def subscribe(self, account_id: str, handler: RealtimeHandler) -> Callable[[], None]:
        self._subscribers[account_id].append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(account_id)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: RealtimeEvent) -> None:
        for handler in list(self._subscribers.get(event.account_id, ())):
            handler(event)

    def subscriber_count(self, account_id: str) -> int:
        return len(self._subscribers.get(account_id, ()))
