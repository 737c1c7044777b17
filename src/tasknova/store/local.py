"""Local fallback record store: one JSON document per account in a key-value store."""

from __future__ import annotations

import json
import uuid
from typing import Any

from pydantic import ValidationError

from ..errors import RecordNotFound
from .base import Change, MutationOp, RecordStore, RecordsByKind, apply_changes, empty_records, plan_delete
from .keyvalue import KeyValueStore
from .records import DOCUMENT_KEYS, Record, RecordKind, parse_record


class LocalRecordStore(RecordStore):
    name = "local"

    def __init__(self, kv: KeyValueStore, *, key_prefix: str = "tasknova_") -> None:
        self.kv = kv
        self.key_prefix = key_prefix
        # Tags this instance's writes so its own change notifications can be told apart.
        self.origin = uuid.uuid4().hex

    def document_key(self, account_id: str) -> str:
        return f"{self.key_prefix}data_{account_id}"

    def load_document(self, account_id: str) -> RecordsByKind:
        records = empty_records()
        raw = self.kv.get(self.document_key(account_id))
        if not raw:
            return records
        try:
            parsed: Any = json.loads(raw)
        except json.JSONDecodeError:
            return records
        if not isinstance(parsed, dict):
            return records
        for kind, doc_key in DOCUMENT_KEYS.items():
            items = parsed.get(doc_key)
            if not isinstance(items, list):
                continue
            for item in items:
                if not isinstance(item, dict):
                    continue
                try:
                    record = parse_record(kind, item)
                except ValidationError:
                    continue
                records[kind][record.id] = record
        return records

    def save_document(self, account_id: str, records: RecordsByKind) -> None:
        document = {
            doc_key: [record.to_document() for record in records.get(kind, {}).values()]
            for kind, doc_key in DOCUMENT_KEYS.items()
        }
        key = self.document_key(account_id)
        self.kv.set(key, json.dumps(document, ensure_ascii=True))
        self.kv.notify(key, self.origin)

    async def list_all(self, account_id: str) -> RecordsByKind:
        return self.load_document(account_id)

    async def create(self, account_id: str, kind: RecordKind, record: Record) -> Record:
        return self.upsert(account_id, kind, record)

    async def update(self, account_id: str, kind: RecordKind, record: Record) -> Record:
        records = self.load_document(account_id)
        if record.id not in records[kind]:
            raise RecordNotFound(kind.value, record.id)
        records[kind][record.id] = record
        self.save_document(account_id, records)
        return record

    def upsert(self, account_id: str, kind: RecordKind, record: Record) -> Record:
        records = self.load_document(account_id)
        records[kind][record.id] = record
        self.save_document(account_id, records)
        return record

    async def delete(self, account_id: str, kind: RecordKind, record_id: str) -> list[Change]:
        records = self.load_document(account_id)
        changes = plan_delete(records, kind, record_id)
        if changes:
            apply_changes(records, changes)
            self.save_document(account_id, records)
        return changes

    def mirror(self, account_id: str, changes: list[Change]) -> None:
        """Apply already-persisted changes from another backend as one document write."""
        if not changes:
            return
        records = self.load_document(account_id)
        for change in changes:
            if change.op is MutationOp.DELETE:
                apply_changes(records, plan_delete(records, change.kind, change.record_id) or [change])
            else:
                apply_changes(records, [change])
        self.save_document(account_id, records)

    def replace_all(self, account_id: str, records: RecordsByKind) -> None:
        self.save_document(account_id, records)
