from __future__ import annotations

import asyncio

from tasknova.errors import BackendUnavailable
from tasknova.ledger import Account
from tasknova.logger import EventLogger
from tasknova.results import NoticeBoard
from tasknova.store import (
    ChangeBus,
    ChangeType,
    Database,
    DurableRecordStore,
    LocalRecordStore,
    MemoryKeyValueStore,
    MirroredRecordStore,
    MutationOp,
    Project,
    RealtimeEvent,
    RecordKind,
    Task,
)
from tasknova.sync import SyncCoordinator


class FlakyDurableStore(DurableRecordStore):
    def __init__(self, database: Database) -> None:
        super().__init__(database)
        self.offline = False

    async def _run(self, fn):
        if self.offline:
            raise BackendUnavailable("connection refused")
        return await super()._run(fn)


def _account(account_id: str = "acct_1") -> Account:
    return Account(id=account_id, name="Ada", email=f"{account_id}@example.com")


def _coordinator(tmp_path, run_id: str = "sync") -> tuple[SyncCoordinator, EventLogger, NoticeBoard]:
    logger = EventLogger(logs_dir=str(tmp_path / "logs"), run_id=run_id)
    notices = NoticeBoard()
    return SyncCoordinator(logger=logger, notices=notices), logger, notices


def _durable() -> DurableRecordStore:
    database = Database("sqlite://")
    database.create_all()
    return DurableRecordStore(database)


def test_realtime_echo_of_own_insert_is_not_duplicated(tmp_path) -> None:
    coordinator, logger, _ = _coordinator(tmp_path)
    store = _durable()
    task = Task(id="t1", title="Ship")

    async def scenario():
        await coordinator.load(_account(), store)
        pending = coordinator.apply_local_mutation(RecordKind.TASK, MutationOp.CREATE, task)
        assert coordinator.get(RecordKind.TASK, "t1") == task
        result = await pending
        await coordinator.settle()
        return result

    result = asyncio.run(scenario())
    assert result.success
    assert coordinator.records_of(RecordKind.TASK) == [task]
    event_types = [e["event_type"] for e in logger.read_recent(50)]
    assert "remote_event_deferred" in event_types
    assert "remote_event_ignored" in event_types


def test_remote_events_merge_last_writer_wins(tmp_path) -> None:
    coordinator, _, _ = _coordinator(tmp_path)
    store = _durable()
    other_device = DurableRecordStore(store.database, store.channel)

    async def scenario():
        await coordinator.load(_account(), store)
        await other_device.create("acct_1", RecordKind.TASK, Task(id="t9", title="From phone"))
        after_insert = coordinator.get(RecordKind.TASK, "t9")
        await other_device.update("acct_1", RecordKind.TASK, Task(id="t9", title="Edited on phone", completed=True))
        after_update = coordinator.get(RecordKind.TASK, "t9")
        await other_device.delete("acct_1", RecordKind.TASK, "t9")
        return after_insert, after_update, coordinator.get(RecordKind.TASK, "t9")

    after_insert, after_update, after_delete = asyncio.run(scenario())
    assert after_insert.title == "From phone"
    assert after_update.title == "Edited on phone"
    assert after_update.completed
    assert after_delete is None


def test_events_for_other_accounts_are_ignored(tmp_path) -> None:
    coordinator, _, _ = _coordinator(tmp_path)
    store = _durable()

    async def scenario():
        await coordinator.load(_account(), store)
        coordinator.apply_remote_event(
            RealtimeEvent(ChangeType.INSERT, "tasks", "acct_2", new={"id": "tx", "title": "Not mine", "category": "ADMIN"})
        )

    asyncio.run(scenario())
    assert coordinator.records_of(RecordKind.TASK) == []


def test_remote_event_during_inflight_write_is_deferred_in_order(tmp_path) -> None:
    coordinator, _, _ = _coordinator(tmp_path)
    store = _durable()

    async def scenario():
        await coordinator.load(_account(), store)
        pending = coordinator.apply_local_mutation(RecordKind.TASK, MutationOp.CREATE, Task(id="t1", title="Mine"))
        coordinator.apply_remote_event(
            RealtimeEvent(
                ChangeType.UPDATE,
                "tasks",
                "acct_1",
                new={"id": "t1", "title": "Theirs", "category": "ADMIN", "completed": False, "duration": 60},
            )
        )
        deferred_title = coordinator.get(RecordKind.TASK, "t1").title
        await pending
        await coordinator.settle()
        return deferred_title

    deferred_title = asyncio.run(scenario())
    assert deferred_title == "Mine"
    assert coordinator.get(RecordKind.TASK, "t1").title == "Theirs"


def test_writes_to_one_record_are_chained(tmp_path) -> None:
    coordinator, _, _ = _coordinator(tmp_path)
    store = _durable()

    async def scenario():
        await coordinator.load(_account(), store)
        first = coordinator.apply_local_mutation(RecordKind.TASK, MutationOp.CREATE, Task(id="t1", title="Draft"))
        second = coordinator.apply_local_mutation(
            RecordKind.TASK, MutationOp.UPDATE, Task(id="t1", title="Final", completed=True)
        )
        results = await asyncio.gather(first, second)
        await coordinator.settle()
        return results, await store.list_all("acct_1")

    results, persisted = asyncio.run(scenario())
    assert all(result.success for result in results)
    assert persisted[RecordKind.TASK]["t1"].title == "Final"
    assert coordinator.get(RecordKind.TASK, "t1").completed


def test_local_delete_cascades_in_snapshot_immediately(tmp_path) -> None:
    coordinator, _, _ = _coordinator(tmp_path)
    store = LocalRecordStore(MemoryKeyValueStore())

    async def scenario():
        await store.create("acct_1", RecordKind.PROJECT, Project(id="p1", title="Site"))
        await store.create("acct_1", RecordKind.TASK, Task(id="t1", title="Wireframes", project_id="p1"))
        await coordinator.load(_account(), store)
        pending = coordinator.apply_local_mutation(RecordKind.PROJECT, MutationOp.DELETE, record_id="p1")
        snapshot_task = coordinator.get(RecordKind.TASK, "t1")
        result = await pending
        return snapshot_task, result, store.load_document("acct_1")

    snapshot_task, result, persisted = asyncio.run(scenario())
    assert snapshot_task.project_id is None
    assert result.success
    assert "p1" not in persisted[RecordKind.PROJECT]
    assert persisted[RecordKind.TASK]["t1"].project_id is None


def test_cross_tab_reload_keeps_inflight_records(tmp_path) -> None:
    coordinator, logger, _ = _coordinator(tmp_path)
    kv = MemoryKeyValueStore(ChangeBus())
    this_tab = LocalRecordStore(kv)
    other_tab = LocalRecordStore(kv)

    async def scenario():
        await coordinator.load(_account(), this_tab)
        pending = coordinator.apply_local_mutation(RecordKind.TASK, MutationOp.CREATE, Task(id="mine", title="Mine"))
        other_tab.upsert("acct_1", RecordKind.TASK, Task(id="theirs", title="Theirs"))
        during = sorted(coordinator.records[RecordKind.TASK])
        await pending
        return during, this_tab.load_document("acct_1")

    during, persisted = asyncio.run(scenario())
    assert during == ["mine", "theirs"]
    assert set(persisted[RecordKind.TASK]) == {"mine", "theirs"}
    assert set(coordinator.records[RecordKind.TASK]) == {"mine", "theirs"}
    reloads = [e for e in logger.read_recent(50) if e["event_type"] == "snapshot_reloaded"]
    assert len(reloads) == 1


def test_account_switch_discards_snapshot_and_subscriptions(tmp_path) -> None:
    coordinator, _, _ = _coordinator(tmp_path)
    store = _durable()

    async def scenario():
        await store.create("acct_1", RecordKind.TASK, Task(id="a", title="Alpha"))
        await store.create("acct_2", RecordKind.TASK, Task(id="b", title="Beta"))
        await coordinator.load(_account("acct_1"), store)
        await coordinator.load(_account("acct_2"), store)
        await store.create("acct_1", RecordKind.TASK, Task(id="late", title="Late alpha"))

    asyncio.run(scenario())
    assert coordinator.account_id == "acct_2"
    assert set(coordinator.records[RecordKind.TASK]) == {"b"}
    assert store.channel.subscriber_count("acct_1") == 0
    assert store.channel.subscriber_count("acct_2") == 1


def test_failed_durable_write_is_kept_and_replayed(tmp_path) -> None:
    coordinator, logger, notices = _coordinator(tmp_path)
    database = Database("sqlite://")
    database.create_all()
    durable = FlakyDurableStore(database)
    store = MirroredRecordStore(durable, LocalRecordStore(MemoryKeyValueStore()), notices=notices, logger=logger)

    async def scenario():
        await coordinator.load(_account(), store)
        durable.offline = True
        result = await coordinator.apply_local_mutation(RecordKind.TASK, MutationOp.CREATE, Task(id="t1", title="Offline"))
        queued = coordinator.offline_queue()
        stopped = await coordinator.flush_offline()
        durable.offline = False
        replayed = await coordinator.flush_offline()
        return result, queued, stopped, replayed, await durable.list_all("acct_1")

    result, queued, stopped, replayed, persisted = asyncio.run(scenario())
    assert not result.success
    assert result.retriable
    assert coordinator.get(RecordKind.TASK, "t1") is not None
    assert [change.record_id for change in queued] == ["t1"]
    assert stopped == 0
    assert replayed == 1
    assert "t1" in persisted[RecordKind.TASK]
    assert coordinator.offline_queue() == []
    assert notices.has_code("backend_unavailable")
    assert notices.has_code("offline_replayed")


def test_replay_drops_rejected_writes_and_keeps_going(tmp_path) -> None:
    coordinator, logger, notices = _coordinator(tmp_path)
    database = Database("sqlite://")
    database.create_all()
    durable = FlakyDurableStore(database)
    store = MirroredRecordStore(durable, LocalRecordStore(MemoryKeyValueStore()), notices=notices, logger=logger)

    async def scenario():
        await coordinator.load(_account(), store)
        await coordinator.apply_local_mutation(RecordKind.TASK, MutationOp.CREATE, Task(id="t1", title="Gone soon"))
        await coordinator.apply_local_mutation(RecordKind.TASK, MutationOp.CREATE, Task(id="t2", title="Draft"))
        durable.offline = True
        await coordinator.apply_local_mutation(RecordKind.TASK, MutationOp.UPDATE, Task(id="t1", title="Edited"))
        await coordinator.apply_local_mutation(RecordKind.TASK, MutationOp.UPDATE, Task(id="t2", title="Final"))
        durable.offline = False
        # Another device removes t1 while this one is offline.
        await durable.delete("acct_1", RecordKind.TASK, "t1")
        replayed = await coordinator.flush_offline()
        again = await coordinator.flush_offline()
        return replayed, again, await durable.list_all("acct_1")

    replayed, again, persisted = asyncio.run(scenario())
    assert replayed == 1
    assert again == 0
    assert coordinator.offline_queue() == []
    assert set(persisted[RecordKind.TASK]) == {"t2"}
    assert persisted[RecordKind.TASK]["t2"].title == "Final"
    assert notices.has_code("not_found")
    dropped = [e for e in logger.read_recent(100) if e["event_type"] == "offline_replay_dropped"]
    assert [e["record_id"] for e in dropped] == ["t1"]
