"""Backend selection and the durable-plus-local-cache store used for signed-in accounts."""

from __future__ import annotations

from ..errors import BackendUnavailable
from ..logger import EventLogger
from ..results import NoticeBoard
from .base import Change, MutationOp, RecordStore, RecordsByKind
from .durable import DurableRecordStore
from .local import LocalRecordStore
from .records import Record, RecordKind


class MirroredRecordStore(RecordStore):
    """Writes go to the durable backend and are mirrored into the local cache.

    Reads fall back to the cache, with a warning, when the durable backend is
    unreachable. Failed writes still land in the cache so the optimistic state
    survives a reload; the caller decides whether to queue them for replay.
    """

    name = "durable"

    def __init__(
        self,
        primary: DurableRecordStore,
        cache: LocalRecordStore,
        *,
        notices: NoticeBoard,
        logger: EventLogger,
        mirror_writes: bool = True,
    ) -> None:
        self.primary = primary
        self.cache = cache
        self.notices = notices
        self.logger = logger
        self.mirror_writes = mirror_writes

    @property
    def channel(self):
        return self.primary.channel

    async def list_all(self, account_id: str) -> RecordsByKind:
        try:
            records = await self.primary.list_all(account_id)
        except BackendUnavailable as exc:
            self.logger.log("cache_fallback_read", {"account_id": account_id, "error": str(exc)})
            self.notices.warning(BackendUnavailable.user_message, code=BackendUnavailable.error_code)
            return await self.cache.list_all(account_id)
        if self.mirror_writes:
            self.cache.replace_all(account_id, records)
        return records

    async def _mirrored(self, account_id: str, change: Change) -> list[Change]:
        try:
            changes = await self.primary.apply(account_id, change)
        except BackendUnavailable:
            self.cache.mirror(account_id, [change])
            raise
        if self.mirror_writes:
            self.cache.mirror(account_id, changes)
        return changes

    async def create(self, account_id: str, kind: RecordKind, record: Record) -> Record:
        await self._mirrored(account_id, Change(MutationOp.CREATE, kind, record.id, record))
        return record

    async def update(self, account_id: str, kind: RecordKind, record: Record) -> Record:
        await self._mirrored(account_id, Change(MutationOp.UPDATE, kind, record.id, record))
        return record

    async def delete(self, account_id: str, kind: RecordKind, record_id: str) -> list[Change]:
        return await self._mirrored(account_id, Change(MutationOp.DELETE, kind, record_id))


def select_record_store(
    *,
    is_guest: bool,
    local: LocalRecordStore,
    durable: DurableRecordStore | None,
    notices: NoticeBoard,
    logger: EventLogger,
    mirror_writes: bool = True,
) -> RecordStore:
    """Guests (or deployments without a durable backend) always use the local store."""
    if is_guest or durable is None:
        return local
    return MirroredRecordStore(durable, local, notices=notices, logger=logger, mirror_writes=mirror_writes)
