"""In-memory snapshot of one account's records, kept in step with its store.

Local mutations apply in two phases: the snapshot changes immediately and the
returned task persists the change. Remote changes (durable realtime rows, or
another process rewriting the local document) merge last-writer-wins by id.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Callable

from ..errors import BackendUnavailable, RecordConflict, RecordNotFound, TaskNovaError
from ..ledger.accounts import Account
from ..logger import EventLogger
from ..results import ActionResult, NoticeBoard
from ..store.base import Change, MutationOp, RecordStore, RecordsByKind, apply_changes, empty_records, plan_delete
from ..store.local import LocalRecordStore
from ..store.mappers import row_to_record
from ..store.realtime import ChangeType, RealtimeEvent
from ..store.records import Record, RecordKind

RecordKey = tuple[RecordKind, str]


class SyncCoordinator:
    def __init__(self, *, logger: EventLogger, notices: NoticeBoard) -> None:
        self.logger = logger
        self.notices = notices
        self.account: Account | None = None
        self.store: RecordStore | None = None
        self.records: RecordsByKind = empty_records()
        self.generation = 0
        self._inflight: dict[RecordKey, asyncio.Task] = {}
        self._deferred: dict[RecordKey, list[RealtimeEvent]] = defaultdict(list)
        self._offline: dict[str, list[Change]] = defaultdict(list)
        self._unsubscribe: list[Callable[[], None]] = []

    # ---- lifecycle ----

    @property
    def account_id(self) -> str | None:
        return self.account.id if self.account else None

    async def load(self, account: Account, store: RecordStore) -> RecordsByKind:
        """Discard any previous snapshot, then load and subscribe for ``account``."""
        self.unload()
        generation = self.generation
        records = await store.list_all(account.id)
        if generation != self.generation:
            # A newer load or unload won the race.
            return self.records
        self.account = account
        self.store = store
        self.records = records
        self._subscribe(account, store)
        self.logger.log(
            "snapshot_loaded",
            {"account_id": account.id, "store": store.name, "counts": self.counts()},
        )
        return records

    def unload(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        self.generation += 1
        self.account = None
        self.store = None
        self.records = empty_records()
        self._inflight = {}
        self._deferred = defaultdict(list)

    def _subscribe(self, account: Account, store: RecordStore) -> None:
        if isinstance(store, LocalRecordStore):
            key = store.document_key(account.id)
            self._unsubscribe.append(store.kv.bus.subscribe(key, self._on_document_changed))
            return
        channel = getattr(store, "channel", None)
        if channel is not None:
            self._unsubscribe.append(channel.subscribe(account.id, self.apply_remote_event))

    # ---- reads ----

    def records_of(self, kind: RecordKind) -> list[Record]:
        return list(self.records[kind].values())

    def get(self, kind: RecordKind, record_id: str) -> Record | None:
        return self.records[kind].get(record_id)

    def resolve(self, kind: RecordKind, ref: str | None) -> Record | None:
        """Exact id, then exact title or name, then a case-insensitive substring of it."""
        if not ref:
            return None
        bucket = self.records[kind]
        if ref in bucket:
            return bucket[ref]
        needle = ref.lower().strip()
        if not needle:
            return None
        partial = None
        for record in bucket.values():
            label = record.label.lower()
            if label == needle:
                return record
            if partial is None and needle in label:
                partial = record
        return partial

    def counts(self) -> dict[str, int]:
        return {kind.value: len(bucket) for kind, bucket in self.records.items()}

    def offline_queue(self, account_id: str | None = None) -> list[Change]:
        return list(self._offline.get(account_id or self.account_id or "", []))

    async def settle(self) -> None:
        """Wait until every pending write, including chained ones, has finished."""
        while self._inflight:
            await asyncio.wait(set(self._inflight.values()))

    # ---- local mutations ----

    def apply_local_mutation(
        self,
        kind: RecordKind,
        op: MutationOp,
        record: Record | None = None,
        *,
        record_id: str | None = None,
    ) -> asyncio.Task:
        """Update the snapshot now; the returned task persists and yields an ActionResult."""
        if self.account is None or self.store is None:
            raise RuntimeError("no account loaded")
        loop = asyncio.get_running_loop()
        target_id = record.id if record is not None else record_id
        if target_id is None:
            raise ValueError("record or record_id is required")

        if op is MutationOp.DELETE:
            changes = plan_delete(self.records, kind, target_id)
            if not changes:
                missing = RecordNotFound(kind.value, target_id)
                return loop.create_task(self._failed(missing))
        elif record is None:
            raise ValueError(f"{op.value} requires a record")
        else:
            changes = [Change(op, kind, target_id, record)]

        apply_changes(self.records, changes)
        self.logger.log(
            "local_mutation",
            {"account_id": self.account.id, "kind": kind.value, "op": op.value, "record_id": target_id},
        )

        keys = list(dict.fromkeys((change.kind, change.record_id) for change in changes))
        previous = [self._inflight[key] for key in keys if key in self._inflight]
        change = Change(op, kind, target_id, record)
        task = loop.create_task(self._persist(self.account.id, self.store, change, previous))
        for key in keys:
            self._inflight[key] = task
        generation = self.generation
        task.add_done_callback(lambda done: self._settled(keys, done, generation))
        return task

    async def _failed(self, exc: TaskNovaError) -> ActionResult:
        return ActionResult.from_error(exc)

    async def _persist(
        self,
        account_id: str,
        store: RecordStore,
        change: Change,
        previous: list[asyncio.Task],
    ) -> ActionResult:
        if previous:
            await asyncio.wait(previous)
        data = {"kind": change.kind.value, "op": change.op.value, "record_id": change.record_id}
        try:
            await store.apply(account_id, change)
        except BackendUnavailable as exc:
            self._offline[account_id].append(change)
            self.logger.log("write_failed", {**data, "account_id": account_id, "error": str(exc), "queued": True})
            self.notices.warning(exc.user_message, code=exc.error_code)
            return ActionResult.from_error(exc, retriable=True)
        except (RecordNotFound, RecordConflict) as exc:
            self.logger.log("write_failed", {**data, "account_id": account_id, "error": str(exc), "queued": False})
            return ActionResult.from_error(exc)
        self.logger.log("record_persisted", {**data, "account_id": account_id, "store": store.name})
        return ActionResult(True, f"{change.kind.value} {change.op.value}d", data=data)

    def _settled(self, keys: list[RecordKey], task: asyncio.Task, generation: int) -> None:
        if generation != self.generation:
            return
        for key in keys:
            if self._inflight.get(key) is not task:
                continue
            del self._inflight[key]
            for event in self._deferred.pop(key, []):
                self._merge(event)

    # ---- remote changes ----

    def apply_remote_event(self, event: RealtimeEvent) -> None:
        if self.account is None or event.account_id != self.account.id:
            return
        record_id = event.record_id
        if record_id is None:
            return
        key = (event.kind, record_id)
        if key in self._inflight:
            self._deferred[key].append(event)
            self.logger.log(
                "remote_event_deferred",
                {"table": event.table, "type": event.event_type.value, "record_id": record_id},
            )
            return
        self._merge(event)

    def _merge(self, event: RealtimeEvent) -> None:
        kind = event.kind
        record_id = event.record_id
        bucket = self.records[kind]
        info = {"table": event.table, "type": event.event_type.value, "record_id": record_id}

        if event.event_type is ChangeType.DELETE:
            if bucket.pop(record_id, None) is None:
                self.logger.log("remote_event_ignored", info)
                return
        elif event.event_type is ChangeType.INSERT and record_id in bucket:
            self.logger.log("remote_event_ignored", info)
            return
        elif event.new is not None:
            bucket[record_id] = row_to_record(kind, event.new)
        self.logger.log("remote_event_applied", info)

    def _on_document_changed(self, key: str, origin: str | None) -> None:
        store = self.store
        if self.account is None or not isinstance(store, LocalRecordStore):
            return
        if origin == store.origin:
            return
        fresh = store.load_document(self.account.id)
        for kind, record_id in self._inflight:
            mine = self.records[kind].get(record_id)
            if mine is None:
                fresh[kind].pop(record_id, None)
            else:
                fresh[kind][record_id] = mine
        self.records = fresh
        self.logger.log("snapshot_reloaded", {"account_id": self.account.id, "counts": self.counts()})

    # ---- offline replay ----

    async def flush_offline(self) -> int:
        """Replay queued writes in order. Stops while the backend is down; drops writes it rejects."""
        if self.account is None or self.store is None:
            return 0
        account_id = self.account.id
        queue = self._offline.get(account_id, [])
        replayed = dropped = 0
        while queue:
            change = queue[0]
            try:
                await self.store.apply(account_id, change)
            except BackendUnavailable as exc:
                self.logger.log("offline_replay_stopped", {"account_id": account_id, "error": str(exc)})
                break
            except (RecordNotFound, RecordConflict) as exc:
                self.logger.log(
                    "offline_replay_dropped",
                    {"account_id": account_id, "record_id": change.record_id, "error": str(exc)},
                )
                self.notices.warning(exc.user_message, code=exc.error_code)
                dropped += 1
            else:
                replayed += 1
            queue.pop(0)
        if not queue:
            self._offline.pop(account_id, None)
        if replayed or dropped:
            self.logger.log("offline_replayed", {"account_id": account_id, "count": replayed, "dropped": dropped})
        if replayed:
            self.notices.info(f"Synced {replayed} offline change(s).", code="offline_replayed")
        return replayed
