"""Record store package exports."""

from .base import Change, MutationOp, RecordStore
from .db import Database
from .durable import DurableRecordStore
from .keyvalue import ChangeBus, FileKeyValueStore, KeyValueStore, MemoryKeyValueStore
from .local import LocalRecordStore
from .mirrored import MirroredRecordStore, select_record_store
from .realtime import ChangeType, RealtimeChannel, RealtimeEvent
from .records import (
    ChatMessage,
    ChatSession,
    Client,
    Folder,
    Habit,
    Project,
    Record,
    RecordKind,
    Task,
)

__all__ = [
    "Change",
    "ChangeBus",
    "ChangeType",
    "ChatMessage",
    "ChatSession",
    "Client",
    "Database",
    "DurableRecordStore",
    "FileKeyValueStore",
    "Folder",
    "Habit",
    "KeyValueStore",
    "LocalRecordStore",
    "MemoryKeyValueStore",
    "MirroredRecordStore",
    "MutationOp",
    "Project",
    "RealtimeChannel",
    "RealtimeEvent",
    "Record",
    "RecordKind",
    "RecordStore",
    "Task",
    "select_record_store",
]
