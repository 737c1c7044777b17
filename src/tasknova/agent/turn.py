"""One assistant chat turn: charge, ask the model, run its tool calls, respond."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..config import FEATURE_CHAT_IGNITE, FEATURE_CHAT_NORMAL
from ..ledger.accounts import Account
from ..logger import EventLogger
from ..metering.cancellation import CancellationToken
from ..metering.gateway import MeteredActionGateway
from ..results import ActionResult
from ..store.base import MutationOp
from ..store.records import ChatMessage, ChatSession, RecordKind, utc_now
from ..sync.coordinator import SyncCoordinator
from .dispatcher import ToolCallDispatcher
from .model import ChatModel, ModelRequest
from .tools import ToolCall


class TurnState(str, Enum):
    SENT = "SENT"
    AWAITING_MODEL = "AWAITING_MODEL"
    TEXT_ONLY = "TEXT_ONLY"
    TOOL_CALLS_PENDING = "TOOL_CALLS_PENDING"
    EXECUTING_TOOLS = "EXECUTING_TOOLS"
    RESPONDED = "RESPONDED"
    DONE = "DONE"
    CANCELLED = "CANCELLED"


@dataclass
class ChatTurn:
    request_id: str
    text: str
    ignite: bool = False
    state: TurnState = TurnState.SENT
    history: list[TurnState] = field(default_factory=lambda: [TurnState.SENT])
    response_text: str | None = None
    tool_results: list[dict[str, Any]] = field(default_factory=list)
    result: ActionResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "state": self.state.value,
            "history": [state.value for state in self.history],
            "response_text": self.response_text,
            "tool_results": self.tool_results,
            "result": self.result.to_dict() if self.result else None,
        }


class ChatTurnRunner:
    def __init__(
        self,
        model: ChatModel,
        gateway: MeteredActionGateway,
        dispatcher: ToolCallDispatcher,
        coordinator: SyncCoordinator,
        *,
        logger: EventLogger,
        max_tool_rounds: int = 4,
    ) -> None:
        self.model = model
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.coordinator = coordinator
        self.logger = logger
        self.max_tool_rounds = max_tool_rounds

    def _move(self, turn: ChatTurn, state: TurnState) -> None:
        turn.state = state
        turn.history.append(state)
        self.logger.log("turn_state", {"request_id": turn.request_id, "state": state.value})

    async def run(
        self,
        account: Account,
        text: str,
        *,
        ignite: bool = False,
        image: str | None = None,
        context: str | None = None,
        session_id: str | None = None,
        cancel_token: CancellationToken | None = None,
        request_id: str | None = None,
    ) -> ChatTurn:
        """Charge the turn once, then converse. Tool calls ride on the turn's payment."""
        token = cancel_token or CancellationToken()
        turn = ChatTurn(request_id=request_id or uuid.uuid4().hex, text=text, ignite=ignite)
        feature = FEATURE_CHAT_IGNITE if ignite else FEATURE_CHAT_NORMAL
        request = ModelRequest(text=text, image=image, context=context, memory=account.ai_memory, ignite=ignite)

        async def effect() -> str:
            return await self._converse(turn, request, token, session_id)

        turn.result = await self.gateway.perform(account.id, None, feature, turn.request_id, effect, token)
        if turn.result.cancelled:
            turn.response_text = None
            self._move(turn, TurnState.CANCELLED)
        elif turn.result.success:
            self._move(turn, TurnState.DONE)
        return turn

    async def _converse(
        self,
        turn: ChatTurn,
        request: ModelRequest,
        token: CancellationToken,
        session_id: str | None,
    ) -> str:
        if session_id:
            await self._append(session_id, "user", request.text)

        self._move(turn, TurnState.AWAITING_MODEL)
        response = await self.model.send(request)
        token.raise_if_cancelled()

        if not response.tool_calls:
            self._move(turn, TurnState.TEXT_ONLY)
        else:
            self._move(turn, TurnState.TOOL_CALLS_PENDING)
            token.raise_if_cancelled()
            self._move(turn, TurnState.EXECUTING_TOOLS)
            rounds = 0
            while response.tool_calls and rounds < self.max_tool_rounds:
                rounds += 1
                turn.tool_results.extend(
                    await self.dispatcher.dispatch(response.tool_calls, self._sink, token)
                )
                token.raise_if_cancelled()
                response = await self.model.complete_tool_round()
                token.raise_if_cancelled()
            if response.tool_calls:
                self.logger.log(
                    "tool_rounds_exhausted",
                    {"request_id": turn.request_id, "dropped": len(response.tool_calls)},
                )

        self._move(turn, TurnState.RESPONDED)
        turn.response_text = response.text
        if session_id:
            await self._append(session_id, "model", response.text)
        return response.text

    async def _sink(self, call: ToolCall, result: dict[str, Any]) -> None:
        await self.model.send_tool_result(call, result)

    async def _append(self, session_id: str, role: str, text: str) -> None:
        existing = self.coordinator.get(RecordKind.CHAT_SESSION, session_id)
        message = ChatMessage(role=role, text=text)
        if isinstance(existing, ChatSession):
            session = existing.model_copy(
                update={"messages": [*existing.messages, message], "last_modified": utc_now()}
            )
            op = MutationOp.UPDATE
        else:
            session = ChatSession(id=session_id, title=text[:40] or "New chat", messages=[message])
            op = MutationOp.CREATE
        await self.coordinator.apply_local_mutation(RecordKind.CHAT_SESSION, op, session)
