"""Record store contract and the cascade rules both backends share."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping

from .records import Record, RecordKind

RecordsByKind = dict[RecordKind, dict[str, Record]]


class MutationOp(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Change:
    op: MutationOp
    kind: RecordKind
    record_id: str
    record: Record | None = None


def empty_records() -> RecordsByKind:
    return {kind: {} for kind in RecordKind}


def plan_delete(records: Mapping[RecordKind, Mapping[str, Record]], kind: RecordKind, record_id: str) -> list[Change]:
    """Changes needed to delete one record without leaving dangling references."""
    if record_id not in records.get(kind, {}):
        return []
    changes = [Change(MutationOp.DELETE, kind, record_id)]
    doomed_projects: set[str] = set()

    if kind is RecordKind.PROJECT:
        doomed_projects.add(record_id)
    elif kind is RecordKind.CLIENT:
        for project in records.get(RecordKind.PROJECT, {}).values():
            owned = project.client_id == record_id or (project.client_id is None and project.client == record_id)
            if owned:
                doomed_projects.add(project.id)
                changes.append(Change(MutationOp.DELETE, RecordKind.PROJECT, project.id))
        for folder in records.get(RecordKind.FOLDER, {}).values():
            if folder.client_id == record_id:
                changes.append(
                    Change(
                        MutationOp.UPDATE,
                        RecordKind.FOLDER,
                        folder.id,
                        folder.model_copy(update={"client_id": None}),
                    )
                )

    if doomed_projects:
        for task in records.get(RecordKind.TASK, {}).values():
            if task.project_id in doomed_projects:
                changes.append(
                    Change(
                        MutationOp.UPDATE,
                        RecordKind.TASK,
                        task.id,
                        task.model_copy(update={"project_id": None}),
                    )
                )
    return changes


def apply_changes(records: RecordsByKind, changes: list[Change]) -> None:
    for change in changes:
        bucket = records.setdefault(change.kind, {})
        if change.op is MutationOp.DELETE:
            bucket.pop(change.record_id, None)
        elif change.record is not None:
            bucket[change.record_id] = change.record


class RecordStore:
    """CRUD contract implemented by the local and durable backends."""

    name = "base"

    async def list_all(self, account_id: str) -> RecordsByKind:
        raise NotImplementedError

    async def create(self, account_id: str, kind: RecordKind, record: Record) -> Record:
        raise NotImplementedError

    async def update(self, account_id: str, kind: RecordKind, record: Record) -> Record:
        raise NotImplementedError

    async def delete(self, account_id: str, kind: RecordKind, record_id: str) -> list[Change]:
        raise NotImplementedError

    async def apply(self, account_id: str, change: Change) -> list[Change]:
        if change.op is MutationOp.DELETE:
            return await self.delete(account_id, change.kind, change.record_id)
        if change.record is None:
            raise ValueError(f"{change.op.value} requires a record")
        if change.op is MutationOp.CREATE:
            saved = await self.create(account_id, change.kind, change.record)
        else:
            saved = await self.update(account_id, change.kind, change.record)
        return [Change(change.op, change.kind, saved.id, saved)]
