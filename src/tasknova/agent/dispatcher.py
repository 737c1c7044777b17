"""Executes assistant tool calls against the sync snapshot, one at a time."""

from __future__ import annotations

from datetime import date
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from ..ledger.service import AccountService
from ..logger import EventLogger
from ..metering.cancellation import CancellationToken
from ..results import ActionResult
from ..store.base import MutationOp
from ..store.records import RECORD_TYPES, Client, Habit, Record, RecordKind, utc_now
from ..sync.coordinator import SyncCoordinator
from .tools import ToolAction, ToolCall, ToolIntent, parse_tool_call

ResultSink = Callable[[ToolCall, dict[str, Any]], Awaitable[None]]

CREATE_DEFAULTS: dict[RecordKind, dict[str, Any]] = {
    RecordKind.TASK: {
        "category": "ADMIN",
        "priority": "MEDIUM",
        "status_label": "TODO",
        "duration": 60,
        "completed": False,
    },
    RecordKind.CLIENT: {"status": "ACTIVE", "revenue": 0.0},
    RecordKind.PROJECT: {"status": "ACTIVE", "progress": 0, "price": 0.0},
    RecordKind.HABIT: {"frequency": "DAILY", "streak": 0},
}


def _today() -> date:
    return utc_now().date()


class ToolCallDispatcher:
    def __init__(
        self,
        coordinator: SyncCoordinator,
        accounts: AccountService,
        *,
        logger: EventLogger,
        today: Callable[[], date] = _today,
    ) -> None:
        self.coordinator = coordinator
        self.accounts = accounts
        self.logger = logger
        self.today = today

    async def dispatch(
        self,
        calls: list[ToolCall],
        sink: ResultSink,
        cancel_token: CancellationToken | None = None,
    ) -> list[dict[str, Any]]:
        """Run calls in order; each result is sent before the next call starts."""
        results: list[dict[str, Any]] = []
        for call in calls:
            if cancel_token is not None and cancel_token.cancelled:
                self.logger.log("tool_calls_skipped", {"remaining": len(calls) - len(results)})
                break
            result = await self.execute(call)
            self.logger.log("tool_call", {"call": call.to_dict(), "result": result})
            await sink(call, result)
            results.append(result)
        return results

    async def execute(self, call: ToolCall) -> dict[str, Any]:
        intent = parse_tool_call(call)
        if isinstance(intent, str):
            return {"success": False, "error": intent}
        if intent.kind is None:
            return await self._remember(intent)
        if intent.action is ToolAction.CREATE:
            return await self._create(intent)
        existing = self.coordinator.resolve(intent.kind, intent.ref)
        if existing is None:
            return {"success": False, "error": "not found"}
        if intent.action is ToolAction.DELETE:
            outcome = await self.coordinator.apply_local_mutation(intent.kind, MutationOp.DELETE, record_id=existing.id)
            return self._response(outcome, existing.id)
        if intent.action is ToolAction.TOGGLE and isinstance(existing, Habit):
            toggled = existing.toggled(self.today())
            outcome = await self.coordinator.apply_local_mutation(intent.kind, MutationOp.UPDATE, toggled)
            response = self._response(outcome, existing.id)
            response["streak"] = toggled.streak
            return response
        return await self._update(intent, existing)

    async def _create(self, intent: ToolIntent) -> dict[str, Any]:
        kind = intent.kind
        payload = {**CREATE_DEFAULTS.get(kind, {}), **intent.fields}
        if intent.ref:
            if self.coordinator.get(kind, intent.ref) is not None:
                return {"success": False, "error": f"{kind.value} '{intent.ref}' already exists"}
            payload["id"] = intent.ref
        if kind is RecordKind.PROJECT:
            payload.update(self._client_link(intent.client_name))
        try:
            record = RECORD_TYPES[kind].model_validate(payload)
        except ValidationError as exc:
            return {"success": False, "error": f"invalid {kind.value}: {exc.errors()[0]['msg']}"}
        outcome = await self.coordinator.apply_local_mutation(kind, MutationOp.CREATE, record)
        return self._response(outcome, record.id)

    async def _update(self, intent: ToolIntent, existing: Record) -> dict[str, Any]:
        changes = dict(intent.fields)
        if intent.kind is RecordKind.PROJECT and intent.client_name:
            changes.update(self._client_link(intent.client_name))
        try:
            merged = type(existing).model_validate({**existing.model_dump(), **changes})
        except ValidationError as exc:
            return {"success": False, "error": f"invalid {intent.kind.value}: {exc.errors()[0]['msg']}"}
        outcome = await self.coordinator.apply_local_mutation(intent.kind, MutationOp.UPDATE, merged)
        return self._response(outcome, existing.id)

    def _client_link(self, client_name: str | None) -> dict[str, Any]:
        if not client_name:
            return {}
        client = self.coordinator.resolve(RecordKind.CLIENT, client_name)
        if isinstance(client, Client):
            return {"client": client.name, "client_id": client.id}
        return {"client": client_name}

    async def _remember(self, intent: ToolIntent) -> dict[str, Any]:
        account = self.coordinator.account
        if account is None:
            return {"success": False, "error": "no active account"}
        updated = await self.accounts.remember(account.id, intent.memory or "")
        account.ai_memory = updated.ai_memory
        return {"success": True, "memory": updated.ai_memory}

    @staticmethod
    def _response(outcome: ActionResult, record_id: str) -> dict[str, Any]:
        if outcome.success:
            return {"success": True, "recordId": record_id}
        if outcome.retriable:
            # Kept in the snapshot and queued for replay.
            return {"success": True, "recordId": record_id, "queued": True}
        return {"success": False, "error": outcome.message}
