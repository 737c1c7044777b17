from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

from tasknova.agent import (
    ChatTurnRunner,
    LiteLLMChatModel,
    ModelRequest,
    ModelResponse,
    ToolCall,
    ToolCallDispatcher,
    TurnState,
)
from tasknova.agent.model import IGNITE_PREFIX
from tasknova.config import FEATURE_CRUD_AI, FEATURE_IMAGE_GEN, LLMConfig, MeteringConfig
from tasknova.ledger import Account, AccountService, LedgerStore, LocalAccountRepository
from tasknova.logger import EventLogger
from tasknova.metering import CancellationToken, MeteredActionGateway
from tasknova.results import NoticeBoard
from tasknova.store import Client, LocalRecordStore, MemoryKeyValueStore, MutationOp, RecordKind
from tasknova.sync import SyncCoordinator

TODAY = date(2024, 1, 10)


class ScriptedModel:
    """Returns canned responses in order and records what it was sent."""

    def __init__(self, responses: list[ModelResponse], on_send=None) -> None:
        self.responses = list(responses)
        self.requests: list[ModelRequest] = []
        self.tool_results: list[tuple[str, dict]] = []
        self.on_send = on_send

    async def send(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        if self.on_send is not None:
            self.on_send()
        return self._next()

    async def send_tool_result(self, call: ToolCall, result: dict) -> None:
        self.tool_results.append((call.name, result))

    async def complete_tool_round(self) -> ModelResponse:
        return self._next()

    def _next(self) -> ModelResponse:
        if self.responses:
            return self.responses.pop(0)
        return ModelResponse("Done.")


@dataclass
class Harness:
    logger: EventLogger
    notices: NoticeBoard
    repo: LocalAccountRepository
    accounts: AccountService
    ledger: LedgerStore
    gateway: MeteredActionGateway
    coordinator: SyncCoordinator
    store: LocalRecordStore
    dispatcher: ToolCallDispatcher
    account: Account


async def _harness(tmp_path) -> Harness:
    logger = EventLogger(logs_dir=str(tmp_path / "logs"), run_id="agent")
    notices = NoticeBoard()
    kv = MemoryKeyValueStore()
    repo = LocalAccountRepository(kv)
    store = LocalRecordStore(kv)
    accounts = AccountService(repo, logger=logger)
    account = await accounts.register("Ada", "ada@example.com", records=store)
    ledger = LedgerStore(repo, logger=logger)
    gateway = MeteredActionGateway(ledger, MeteringConfig(), notices=notices, logger=logger)
    coordinator = SyncCoordinator(logger=logger, notices=notices)
    await coordinator.load(account, store)
    dispatcher = ToolCallDispatcher(coordinator, accounts, logger=logger, today=lambda: TODAY)
    return Harness(logger, notices, repo, accounts, ledger, gateway, coordinator, store, dispatcher, account)


def _runner(h: Harness, model: ScriptedModel) -> ChatTurnRunner:
    return ChatTurnRunner(model, h.gateway, h.dispatcher, h.coordinator, logger=h.logger)


def _call(name: str, call_id: str, /, **args) -> ToolCall:
    return ToolCall(name=name, args=args, call_id=call_id)


def test_create_then_update_by_title_in_one_turn(tmp_path) -> None:
    model = ScriptedModel(
        [
            ModelResponse(
                "",
                [
                    _call("createTask", "c1", action="CREATE", title="A"),
                    _call("createTask", "c2", action="UPDATE", id="A", status="DONE"),
                ],
            ),
            ModelResponse("Created A and marked it done."),
        ]
    )

    async def scenario():
        h = await _harness(tmp_path)
        turn = await _runner(h, model).run(h.account, "Add A and finish it", request_id="turn-1")
        await h.coordinator.settle()
        return h, turn, h.store.load_document(h.account.id), await h.ledger.balance(h.account.id)

    h, turn, persisted, balance = asyncio.run(scenario())
    first, second = turn.tool_results
    assert first["success"] and second["success"]
    assert first["recordId"] == second["recordId"]
    task = h.coordinator.get(RecordKind.TASK, first["recordId"])
    assert task.title == "A"
    assert task.completed
    assert task.status_label == "DONE"
    assert persisted[RecordKind.TASK][task.id].completed
    assert [name for name, _ in model.tool_results] == ["createTask", "createTask"]
    assert turn.response_text == "Created A and marked it done."
    assert turn.history == [
        TurnState.SENT,
        TurnState.AWAITING_MODEL,
        TurnState.TOOL_CALLS_PENDING,
        TurnState.EXECUTING_TOOLS,
        TurnState.RESPONDED,
        TurnState.DONE,
    ]
    assert balance == Decimal("9.90")


def test_text_only_turn_with_ignite(tmp_path) -> None:
    model = ScriptedModel([ModelResponse("- **Focus** on invoices")])

    async def scenario():
        h = await _harness(tmp_path)
        turn = await _runner(h, model).run(h.account, "Plan my week", ignite=True, context="3 tasks due")
        return turn, await h.ledger.balance(h.account.id)

    turn, balance = asyncio.run(scenario())
    assert TurnState.TEXT_ONLY in turn.history
    assert turn.state is TurnState.DONE
    assert balance == Decimal("9.40")
    prompt = model.requests[0].prompt()
    assert prompt.startswith(IGNITE_PREFIX)
    assert "[CURRENT APP STATE CONTEXT]:\n3 tasks due" in prompt


def test_stop_before_tools_runs_nothing_and_keeps_the_charge(tmp_path) -> None:
    token = CancellationToken()
    model = ScriptedModel(
        [ModelResponse("", [_call("createTask", "c1", action="CREATE", title="Never")])],
        on_send=token.cancel,
    )

    async def scenario():
        h = await _harness(tmp_path)
        turn = await _runner(h, model).run(h.account, "Add a task", cancel_token=token)
        return h, turn, await h.ledger.balance(h.account.id), await h.ledger.transactions(h.account.id)

    h, turn, balance, rows = asyncio.run(scenario())
    assert turn.state is TurnState.CANCELLED
    assert turn.result.cancelled
    assert turn.response_text is None
    assert turn.tool_results == []
    assert model.tool_results == []
    assert h.coordinator.resolve(RecordKind.TASK, "Never") is None
    assert balance == Decimal("9.90")
    assert len(rows) == 1


def test_insufficient_balance_never_reaches_the_model(tmp_path) -> None:
    model = ScriptedModel([ModelResponse("unreachable")])

    async def scenario():
        h = await _harness(tmp_path)
        h.account.tokens = Decimal("0.50")
        await h.repo.commit(h.account)
        turn = await _runner(h, model).run(h.account, "Go big", ignite=True)
        return h, turn

    h, turn = asyncio.run(scenario())
    assert model.requests == []
    assert turn.state is TurnState.SENT
    assert turn.result.error_code == "insufficient_balance"
    blocking = [n for n in h.notices.items() if n.blocking]
    assert blocking and blocking[0].code == "insufficient_balance"


def test_gateway_runs_effect_once_per_request(tmp_path) -> None:
    calls = {"count": 0}

    async def effect():
        calls["count"] += 1
        return "image-bytes"

    async def scenario():
        h = await _harness(tmp_path)
        first = await h.gateway.perform(h.account.id, None, FEATURE_IMAGE_GEN, "img-1", effect)
        second = await h.gateway.perform(h.account.id, None, FEATURE_IMAGE_GEN, "img-1", effect)
        return first, second, await h.ledger.balance(h.account.id)

    first, second, balance = asyncio.run(scenario())
    assert calls["count"] == 1
    assert first.success
    assert first.data["value"] == "image-bytes"
    assert second is first
    assert balance == Decimal("9.00")


def test_gateway_cancellation_before_and_after_charge(tmp_path) -> None:
    async def scenario():
        h = await _harness(tmp_path)
        early = CancellationToken()
        early.cancel()
        before = await h.gateway.perform(h.account.id, "0.05", FEATURE_CRUD_AI, "r-early", _noop, early)
        balance_before = await h.ledger.balance(h.account.id)

        late = CancellationToken()

        async def slow_effect():
            late.cancel()
            late.raise_if_cancelled()

        after = await h.gateway.perform(h.account.id, "0.05", FEATURE_CRUD_AI, "r-late", slow_effect, late)
        return before, balance_before, after, await h.ledger.balance(h.account.id)

    before, balance_before, after, balance_after = asyncio.run(scenario())
    assert before.cancelled
    assert balance_before == Decimal("10.00")
    assert after.cancelled
    assert balance_after == Decimal("9.95")


def test_gateway_reports_reauth_and_effect_errors(tmp_path) -> None:
    async def failing():
        raise RuntimeError("upstream exploded")

    async def scenario():
        h = await _harness(tmp_path)
        ghost = await h.gateway.perform("ghost", None, FEATURE_CRUD_AI, "g-1", _noop)
        broken = await h.gateway.perform(h.account.id, None, FEATURE_CRUD_AI, "b-1", failing)
        return ghost, broken, await h.ledger.balance(h.account.id)

    ghost, broken, balance = asyncio.run(scenario())
    assert ghost.requires_reauth
    assert ghost.error_code == "account_not_found"
    assert not broken.success
    assert broken.error_code == "runtime_error"
    assert balance == Decimal("9.95")


async def _noop():
    return None


def test_concurrent_repeats_share_one_effect(tmp_path) -> None:
    calls = {"count": 0}

    async def effect():
        calls["count"] += 1
        await asyncio.sleep(0)
        return "image-bytes"

    async def scenario():
        h = await _harness(tmp_path)
        first, second = await asyncio.gather(
            h.gateway.perform(h.account.id, None, FEATURE_IMAGE_GEN, "dbl", effect),
            h.gateway.perform(h.account.id, None, FEATURE_IMAGE_GEN, "dbl", effect),
        )
        return first, second, await h.ledger.transactions(h.account.id)

    first, second, rows = asyncio.run(scenario())
    assert calls["count"] == 1
    assert first.success
    assert second is first
    assert len(rows) == 1


def test_request_ids_are_scoped_per_account(tmp_path) -> None:
    calls: list[str] = []

    def effect_for(name: str):
        async def effect():
            calls.append(name)
            return name

        return effect

    async def scenario():
        h = await _harness(tmp_path)
        other = await h.accounts.register("Bob", "bob@example.com", records=h.store)
        mine = await h.gateway.perform(h.account.id, None, FEATURE_CRUD_AI, "shared", effect_for("ada"))
        theirs = await h.gateway.perform(other.id, None, FEATURE_CRUD_AI, "shared", effect_for("bob"))
        return mine, theirs, await h.ledger.balance(h.account.id), await h.ledger.balance(other.id)

    mine, theirs, ada_balance, bob_balance = asyncio.run(scenario())
    assert calls == ["ada", "bob"]
    assert mine.data["value"] == "ada"
    assert theirs.data["value"] == "bob"
    assert not theirs.data["duplicate_charge"]
    assert ada_balance == bob_balance == Decimal("9.95")


def test_completed_results_are_bounded(tmp_path) -> None:
    async def scenario():
        h = await _harness(tmp_path)
        gateway = MeteredActionGateway(h.ledger, MeteringConfig(), notices=h.notices, logger=h.logger, memo_size=2)
        for request_id in ("r1", "r2", "r3"):
            await gateway.perform(h.account.id, None, FEATURE_CRUD_AI, request_id, _noop)
        return h.account.id, gateway

    account_id, gateway = asyncio.run(scenario())
    assert list(gateway._completed) == [(account_id, "r2"), (account_id, "r3")]
    assert gateway._running == {}


def test_create_with_taken_id_reports_conflict(tmp_path) -> None:
    async def scenario():
        h = await _harness(tmp_path)
        result = await h.dispatcher.execute(
            _call("createTask", "c1", action="CREATE", id="welcome-task", title="Clobber")
        )
        return h, result

    h, result = asyncio.run(scenario())
    assert result == {"success": False, "error": "task 'welcome-task' already exists"}
    assert h.coordinator.get(RecordKind.TASK, "welcome-task").title == "Explore TaskNovaPro Features"


def test_habit_toggle_and_missing_reference(tmp_path) -> None:
    async def scenario():
        h = await _harness(tmp_path)
        created = await h.dispatcher.execute(_call("manageHabit", "h1", action="CREATE", name="Morning Exercise"))
        toggled = await h.dispatcher.execute(_call("manageHabit", "h2", action="TOGGLE", id="morning"))
        missing = await h.dispatcher.execute(_call("manageHabit", "h3", action="DELETE", id="Meditate"))
        return h, created, toggled, missing

    h, created, toggled, missing = asyncio.run(scenario())
    assert created["success"]
    assert toggled == {"success": True, "recordId": created["recordId"], "streak": 1}
    habit = h.coordinator.get(RecordKind.HABIT, created["recordId"])
    assert habit.completed_dates == ["2024-01-10"]
    assert missing == {"success": False, "error": "not found"}


def test_update_memory_appends_to_account(tmp_path) -> None:
    async def scenario():
        h = await _harness(tmp_path)
        result = await h.dispatcher.execute(_call("updateMemory", "m1", memory="Prefers morning meetings"))
        return h, result, await h.repo.get(h.account.id)

    h, result, stored = asyncio.run(scenario())
    assert result == {"success": True, "memory": "- Prefers morning meetings"}
    assert h.coordinator.account.ai_memory == "- Prefers morning meetings"
    assert stored.ai_memory == "- Prefers morning meetings"


def test_project_links_client_by_name(tmp_path) -> None:
    async def scenario():
        h = await _harness(tmp_path)
        await h.coordinator.apply_local_mutation(RecordKind.CLIENT, MutationOp.CREATE, Client(id="c1", name="Acme Corp"))
        linked = await h.dispatcher.execute(
            _call("manageProject", "p1", action="CREATE", title="Rebrand", clientName="acme", price="1500")
        )
        loose = await h.dispatcher.execute(
            _call("manageProject", "p2", action="CREATE", title="Side gig", client="Unknown LLC")
        )
        return h, linked, loose

    h, linked, loose = asyncio.run(scenario())
    project = h.coordinator.get(RecordKind.PROJECT, linked["recordId"])
    assert project.client == "Acme Corp"
    assert project.client_id == "c1"
    assert project.price == 1500.0
    other = h.coordinator.get(RecordKind.PROJECT, loose["recordId"])
    assert other.client == "Unknown LLC"
    assert other.client_id is None


def test_bad_tool_calls_are_reported_to_the_model(tmp_path) -> None:
    model = ScriptedModel(
        [
            ModelResponse(
                "",
                [
                    ToolCall(name="createTask", args="{broken", call_id="x1"),
                    _call("deleteEverything", "x2", action="DELETE"),
                ],
            ),
            ModelResponse("Sorry, something went wrong."),
        ]
    )

    async def scenario():
        h = await _harness(tmp_path)
        return await _runner(h, model).run(h.account, "Do something")

    turn = asyncio.run(scenario())
    assert turn.state is TurnState.DONE
    assert turn.tool_results[0]["error"].startswith("Invalid JSON arguments")
    assert turn.tool_results[1] == {"success": False, "error": "Unknown tool 'deleteEverything'"}


def test_chat_session_records_both_sides(tmp_path) -> None:
    model = ScriptedModel([ModelResponse("Here is your plan.")])

    async def scenario():
        h = await _harness(tmp_path)
        await _runner(h, model).run(h.account, "Plan my day", session_id="s1")
        await h.coordinator.settle()
        return h.store.load_document(h.account.id)

    persisted = asyncio.run(scenario())
    session = persisted[RecordKind.CHAT_SESSION]["s1"]
    assert session.title == "Plan my day"
    assert [(m.role, m.text) for m in session.messages] == [("user", "Plan my day"), ("model", "Here is your plan.")]


def test_litellm_model_parses_tool_calls(monkeypatch) -> None:
    captured: dict = {}

    async def fake_acompletion(**kwargs):
        captured.update(kwargs)
        tool_call = SimpleNamespace(
            id="call_1",
            function=SimpleNamespace(name="createTask", arguments=json.dumps({"action": "CREATE", "title": "A"})),
        )
        message = SimpleNamespace(content=None, tool_calls=[tool_call])
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    monkeypatch.setattr("tasknova.agent.model.litellm.acompletion", fake_acompletion)
    model = LiteLLMChatModel(LLMConfig(default_model="test/model"), memory="- likes lists")

    async def scenario():
        response = await model.send(ModelRequest(text="Add A"))
        await model.send_tool_result(response.tool_calls[0], {"success": True, "recordId": "t1"})
        return response

    response = asyncio.run(scenario())
    assert response.text == "One moment, processing changes..."
    assert response.tool_calls[0].name == "createTask"
    assert captured["model"] == "test/model"
    assert captured["tools"][0]["function"]["name"] == "createTask"
    assert "- likes lists" in model.messages[0]["content"]
    assert [m["role"] for m in model.messages] == ["system", "user", "assistant", "tool"]
    assert model.messages[-1]["tool_call_id"] == "call_1"
