"""Durable relational record store with a realtime change feed."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import BackendUnavailable, RecordConflict, RecordNotFound
from .base import Change, MutationOp, RecordStore, RecordsByKind, empty_records, plan_delete
from .db import Database
from .mappers import TABLE_NAMES, record_to_row, row_to_record
from .realtime import ChangeType, RealtimeChannel, RealtimeEvent
from .records import Record, RecordKind
from .tables import ROW_MODELS, ROW_ORDERING, row_as_dict

T = TypeVar("T")

_CASCADE_KINDS = (RecordKind.TASK, RecordKind.PROJECT, RecordKind.FOLDER, RecordKind.CLIENT)


class DurableRecordStore(RecordStore):
    """Row-per-record store. SQL runs in a worker thread; events publish on the loop."""

    name = "durable"

    def __init__(self, database: Database, channel: RealtimeChannel | None = None) -> None:
        self.database = database
        self.channel = channel or RealtimeChannel()

    async def _run(self, fn: Callable[[Session], tuple[T, list[RealtimeEvent]]]) -> T:
        def work() -> tuple[T, list[RealtimeEvent]]:
            with self.database.session() as session:
                return fn(session)

        try:
            result, events = await asyncio.to_thread(work)
        except IntegrityError as exc:
            raise RecordConflict(f"durable backend rejected write: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            raise BackendUnavailable(f"durable backend error: {exc}") from exc
        for event in events:
            self.channel.publish(event)
        return result

    # ---- reads ----

    async def list_all(self, account_id: str) -> RecordsByKind:
        def fn(session: Session) -> tuple[RecordsByKind, list[RealtimeEvent]]:
            return self._load(session, account_id, tuple(RecordKind)), []

        return await self._run(fn)

    def _load(self, session: Session, account_id: str, kinds: tuple[RecordKind, ...]) -> RecordsByKind:
        records = empty_records()
        for kind in kinds:
            model = ROW_MODELS[kind]
            rows = session.query(model).filter(model.user_id == account_id).order_by(ROW_ORDERING[kind]).all()
            for row in rows:
                record = row_to_record(kind, row_as_dict(row))
                records[kind][record.id] = record
        return records

    # ---- writes ----

    def _event(self, change_type: ChangeType, kind: RecordKind, account_id: str, row: Any = None, old_id: str | None = None) -> RealtimeEvent:
        return RealtimeEvent(
            event_type=change_type,
            table=TABLE_NAMES[kind],
            account_id=account_id,
            new=row_as_dict(row) if row is not None else None,
            old_id=old_id,
        )

    def _write_row(self, session: Session, account_id: str, kind: RecordKind, record: Record, *, must_exist: bool) -> tuple[Record, RealtimeEvent]:
        model = ROW_MODELS[kind]
        values = record_to_row(kind, record, account_id)
        row = session.query(model).filter(model.id == record.id, model.user_id == account_id).one_or_none()
        if row is None:
            if must_exist:
                raise RecordNotFound(kind.value, record.id)
            row = model(**values)
            session.add(row)
            change_type = ChangeType.INSERT
        else:
            for column, value in values.items():
                setattr(row, column, value)
            change_type = ChangeType.UPDATE
        session.flush()
        return record, self._event(change_type, kind, account_id, row)

    async def create(self, account_id: str, kind: RecordKind, record: Record) -> Record:
        def fn(session: Session) -> tuple[Record, list[RealtimeEvent]]:
            saved, event = self._write_row(session, account_id, kind, record, must_exist=False)
            return saved, [event]

        return await self._run(fn)

    async def update(self, account_id: str, kind: RecordKind, record: Record) -> Record:
        def fn(session: Session) -> tuple[Record, list[RealtimeEvent]]:
            saved, event = self._write_row(session, account_id, kind, record, must_exist=True)
            return saved, [event]

        return await self._run(fn)

    async def delete(self, account_id: str, kind: RecordKind, record_id: str) -> list[Change]:
        def fn(session: Session) -> tuple[list[Change], list[RealtimeEvent]]:
            kinds = tuple(dict.fromkeys((kind, *_CASCADE_KINDS)))
            records = self._load(session, account_id, kinds)
            changes = plan_delete(records, kind, record_id)
            events: list[RealtimeEvent] = []
            for change in changes:
                model = ROW_MODELS[change.kind]
                row = session.query(model).filter(model.id == change.record_id, model.user_id == account_id).one_or_none()
                if row is None:
                    continue
                if change.op is MutationOp.DELETE:
                    session.delete(row)
                    events.append(self._event(ChangeType.DELETE, change.kind, account_id, old_id=change.record_id))
                elif change.record is not None:
                    for column, value in record_to_row(change.kind, change.record, account_id).items():
                        setattr(row, column, value)
                    session.flush()
                    events.append(self._event(ChangeType.UPDATE, change.kind, account_id, row))
            return changes, events

        return await self._run(fn)
