"""Domain record types shared by both record stores and the sync snapshot."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_record_id() -> str:
    return uuid.uuid4().hex


class RecordKind(str, Enum):
    TASK = "task"
    PROJECT = "project"
    CLIENT = "client"
    HABIT = "habit"
    FOLDER = "folder"
    CHAT_SESSION = "chat_session"


class Record(BaseModel):
    """Base record. Unknown keys from either backend are dropped, never carried."""

    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
        validate_assignment=True,
    )

    id: str = Field(default_factory=new_record_id)

    @property
    def label(self) -> str:
        return str(getattr(self, "title", None) or getattr(self, "name", None) or "")

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


TaskCategory = Literal["PRODUCT", "CONTENT", "MONEY", "ADMIN", "MEETING"]
Priority = Literal["HIGH", "MEDIUM", "LOW"]
StatusLabel = Literal["BACKLOG", "TODO", "IN_PROGRESS", "REVIEW", "DONE"]


class Task(Record):
    title: str
    completed: bool = False
    category: TaskCategory = "ADMIN"
    date: datetime = Field(default_factory=utc_now)
    duration: int = 60
    color: str | None = None
    reminder: int | None = None
    priority: Priority | None = None
    status_label: StatusLabel | None = None
    assignee: str | None = None
    project_id: str | None = None
    notes: str | None = None


class Project(Record):
    title: str
    client: str = ""
    client_id: str | None = None
    status: Literal["ACTIVE", "COMPLETED", "ARCHIVED"] = "ACTIVE"
    progress: int = Field(default=0, ge=0, le=100)
    deadline: datetime | None = None
    tags: list[str] = Field(default_factory=list)
    color: str = "#3b82f6"
    notes: str | None = None
    price: float = 0.0


class Client(Record):
    name: str
    email: str | None = None
    revenue: float = 0.0
    status: Literal["ACTIVE", "INACTIVE"] = "ACTIVE"
    notes: str | None = None
    avatar: str | None = None


class Habit(Record):
    title: str
    streak: int = 0
    completed_dates: list[str] = Field(default_factory=list)
    frequency: Literal["DAILY", "WEEKLY"] = "DAILY"
    category: Literal["HEALTH", "WORK", "MINDSET"] = "HEALTH"

    def toggled(self, today: date) -> "Habit":
        """Return a copy with `today` marked or unmarked and the streak recomputed."""
        day = today.isoformat()
        dates = [d for d in self.completed_dates if d != day]
        if len(dates) == len(self.completed_dates):
            dates.append(day)
        dates.sort()
        return self.model_copy(update={"completed_dates": dates, "streak": compute_streak(dates, today)})


def compute_streak(completed_dates: list[str], today: date) -> int:
    done = set(completed_dates)
    cursor = today if today.isoformat() in done else today - timedelta(days=1)
    streak = 0
    while cursor.isoformat() in done:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


class Folder(Record):
    name: str
    parent_id: str | None = None
    color: str | None = None
    client_id: str | None = None


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=new_record_id)
    role: Literal["user", "model"]
    text: str
    timestamp: datetime = Field(default_factory=utc_now)


class ChatSession(Record):
    title: str = "New chat"
    messages: list[ChatMessage] = Field(default_factory=list)
    last_modified: datetime = Field(default_factory=utc_now)


RECORD_TYPES: dict[RecordKind, type[Record]] = {
    RecordKind.TASK: Task,
    RecordKind.PROJECT: Project,
    RecordKind.CLIENT: Client,
    RecordKind.HABIT: Habit,
    RecordKind.FOLDER: Folder,
    RecordKind.CHAT_SESSION: ChatSession,
}

# Array names inside the local per-account document.
DOCUMENT_KEYS: dict[RecordKind, str] = {
    RecordKind.TASK: "tasks",
    RecordKind.PROJECT: "projects",
    RecordKind.CLIENT: "clients",
    RecordKind.HABIT: "habits",
    RecordKind.FOLDER: "folders",
    RecordKind.CHAT_SESSION: "chatSessions",
}


def parse_record(kind: RecordKind, payload: dict) -> Record:
    return RECORD_TYPES[kind].model_validate(payload)


def welcome_task() -> Task:
    return Task(
        id="welcome-task",
        title="Explore TaskNovaPro Features",
        completed=False,
        category="ADMIN",
        date=utc_now() + timedelta(hours=1),
        duration=30,
        color="#f97316",
        priority="HIGH",
        status_label="IN_PROGRESS",
        assignee="System",
    )
