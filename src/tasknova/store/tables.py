"""
Durable backend schema.
One row per record. Record ids are unique per owning account (user_id, id),
so two accounts may hold the same id.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from .records import RecordKind

Base = declarative_base()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Accounts and ledger
# =============================================================================

class AccountRow(Base):
    __tablename__ = "accounts"

    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False)
    email = Column(String(320), nullable=False, unique=True)
    tokens = Column(Numeric(12, 2), nullable=False, default=0)
    token_week_start = Column(DateTime(timezone=True))
    is_guest = Column(Boolean, nullable=False, default=False)
    ai_memory = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utc_now)


class LedgerTransactionRow(Base):
    __tablename__ = "ledger_transactions"
    __table_args__ = (UniqueConstraint("account_id", "request_id", name="uq_ledger_account_request"),)

    id = Column(String(64), primary_key=True)
    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    request_id = Column(String(200), nullable=False)
    feature = Column(String(50), nullable=False)
    cost = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utc_now)


# =============================================================================
# Domain records
# =============================================================================

class TaskRow(Base):
    __tablename__ = "tasks"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), primary_key=True, index=True)
    title = Column(Text, nullable=False)
    completed = Column(Boolean, nullable=False, default=False)
    category = Column(String(20), nullable=False)
    date = Column(DateTime(timezone=True))
    duration = Column(Integer, nullable=False, default=60)
    color = Column(String(32))
    reminder = Column(Integer)
    priority = Column(String(10))
    status_label = Column(String(20))
    assignee = Column(String(200))
    project_id = Column(String(64), index=True)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utc_now)


class ProjectRow(Base):
    __tablename__ = "projects"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), primary_key=True, index=True)
    client_id = Column(String(64), index=True)
    title = Column(Text, nullable=False)
    client_name = Column(String(200), nullable=False, default="")
    status = Column(String(20), nullable=False)
    price = Column(Float, nullable=False, default=0)
    progress = Column(Integer, nullable=False, default=0)
    tags = Column(JSON, nullable=False, default=list)
    color = Column(String(32), nullable=False)
    notes = Column(Text)
    deadline = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utc_now)


class ClientRow(Base):
    __tablename__ = "clients"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    email = Column(String(320))
    revenue = Column(Float, nullable=False, default=0)
    status = Column(String(20), nullable=False)
    notes = Column(Text)
    avatar = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utc_now)


class HabitRow(Base):
    __tablename__ = "habits"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    streak = Column(Integer, nullable=False, default=0)
    completed_dates = Column(JSON, nullable=False, default=list)
    frequency = Column(String(10), nullable=False)
    category = Column(String(20), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utc_now)


class FolderRow(Base):
    __tablename__ = "folders"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    parent_id = Column(String(64))
    color = Column(String(32))
    client_id = Column(String(64), index=True)
    created_at = Column(DateTime(timezone=True), default=_utc_now)


class ChatSessionRow(Base):
    __tablename__ = "chat_sessions"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    messages = Column(JSON, nullable=False, default=list)
    last_modified = Column(DateTime(timezone=True), default=_utc_now)
    created_at = Column(DateTime(timezone=True), default=_utc_now)


ROW_MODELS = {
    RecordKind.TASK: TaskRow,
    RecordKind.PROJECT: ProjectRow,
    RecordKind.CLIENT: ClientRow,
    RecordKind.HABIT: HabitRow,
    RecordKind.FOLDER: FolderRow,
    RecordKind.CHAT_SESSION: ChatSessionRow,
}

ROW_ORDERING = {
    RecordKind.TASK: TaskRow.date.asc(),
    RecordKind.PROJECT: ProjectRow.created_at.desc(),
    RecordKind.CLIENT: ClientRow.name.asc(),
    RecordKind.HABIT: HabitRow.created_at.asc(),
    RecordKind.FOLDER: FolderRow.name.asc(),
    RecordKind.CHAT_SESSION: ChatSessionRow.last_modified.desc(),
}


def row_as_dict(row) -> dict:
    return {column.name: getattr(row, column.name) for column in row.__table__.columns}
