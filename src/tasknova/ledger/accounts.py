"""Accounts, ledger transactions and the repositories that persist them."""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import AccountNotFound, BackendUnavailable, DuplicateEmail, DuplicateRequest
from ..store.db import Database
from ..store.keyvalue import KeyValueStore
from ..store.tables import AccountRow, LedgerTransactionRow

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class Account:
    id: str
    name: str
    email: str
    tokens: Decimal = Decimal("0.00")
    token_week_start: datetime | None = None
    is_guest: bool = False
    ai_memory: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "tokens": str(self.tokens),
            "token_week_start": self.token_week_start.isoformat() if self.token_week_start else None,
            "is_guest": self.is_guest,
            "ai_memory": self.ai_memory,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Account":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            email=str(data.get("email", "")),
            tokens=Decimal(str(data.get("tokens", "0"))),
            token_week_start=_parse_dt(data.get("token_week_start")),
            is_guest=bool(data.get("is_guest", False)),
            ai_memory=str(data.get("ai_memory") or ""),
        )


@dataclass(frozen=True)
class LedgerTransaction:
    account_id: str
    request_id: str
    feature: str
    cost: Decimal
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "request_id": self.request_id,
            "feature": self.feature,
            "cost": str(self.cost),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LedgerTransaction":
        return cls(
            id=str(data["id"]),
            account_id=str(data["account_id"]),
            request_id=str(data["request_id"]),
            feature=str(data["feature"]),
            cost=Decimal(str(data["cost"])),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
        )


class SessionState:
    """In-memory copy of the signed-in account for the current process."""

    def __init__(self, account: Account | None = None) -> None:
        self.account = account

    @property
    def account_id(self) -> str | None:
        return self.account.id if self.account else None

    def refresh(self, account: Account) -> bool:
        if self.account is None or self.account.id != account.id:
            return False
        # In place, so views holding the same object see the new balance.
        for item in fields(Account):
            setattr(self.account, item.name, getattr(account, item.name))
        return True


class AccountRepository:
    """Persistence contract for accounts and their ledger."""

    async def get(self, account_id: str) -> Account | None:
        raise NotImplementedError

    async def find_by_email(self, email: str) -> Account | None:
        raise NotImplementedError

    async def add(self, account: Account) -> None:
        raise NotImplementedError

    async def find_transaction(self, account_id: str, request_id: str) -> LedgerTransaction | None:
        raise NotImplementedError

    async def commit(self, account: Account, transaction: LedgerTransaction | None = None) -> None:
        """Persist the account and (optionally) one new transaction as a single write."""
        raise NotImplementedError

    async def transactions(self, account_id: str) -> list[LedgerTransaction]:
        raise NotImplementedError


class LocalAccountRepository(AccountRepository):
    """One document per account holding the account and its transaction list."""

    def __init__(self, kv: KeyValueStore, *, key_prefix: str = "tasknova_") -> None:
        self.kv = kv
        self.key_prefix = key_prefix

    def _key(self, account_id: str) -> str:
        return f"{self.key_prefix}account_{account_id}"

    def _load(self, account_id: str) -> dict[str, Any] | None:
        raw = self.kv.get(self._key(account_id))
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict) or not isinstance(data.get("account"), dict):
            return None
        return data

    async def get(self, account_id: str) -> Account | None:
        data = self._load(account_id)
        return Account.from_dict(data["account"]) if data else None

    async def find_by_email(self, email: str) -> Account | None:
        clean = email.lower().strip()
        prefix = f"{self.key_prefix}account_"
        for key in self.kv.keys():
            if not key.startswith(prefix):
                continue
            account = await self.get(key[len(prefix):])
            if account is not None and account.email.lower().strip() == clean:
                return account
        return None

    async def add(self, account: Account) -> None:
        if account.email and await self.find_by_email(account.email) is not None:
            raise DuplicateEmail()
        self.kv.set(self._key(account.id), json.dumps({"account": account.to_dict(), "transactions": []}))

    async def find_transaction(self, account_id: str, request_id: str) -> LedgerTransaction | None:
        data = self._load(account_id) or {}
        for item in data.get("transactions", []):
            if item.get("request_id") == request_id:
                return LedgerTransaction.from_dict(item)
        return None

    async def commit(self, account: Account, transaction: LedgerTransaction | None = None) -> None:
        data = self._load(account.id) or {"transactions": []}
        items = list(data.get("transactions", []))
        if transaction is not None:
            if any(item.get("request_id") == transaction.request_id for item in items):
                raise DuplicateRequest(transaction.request_id, account.tokens)
            items.append(transaction.to_dict())
        payload = {"account": account.to_dict(), "transactions": items}
        self.kv.set(self._key(account.id), json.dumps(payload))

    async def transactions(self, account_id: str) -> list[LedgerTransaction]:
        data = self._load(account_id) or {}
        return [LedgerTransaction.from_dict(item) for item in data.get("transactions", [])]


class SqlAccountRepository(AccountRepository):
    """Accounts and ledger rows in the durable backend; one SQL transaction per commit."""

    def __init__(self, database: Database) -> None:
        self.database = database

    async def _run(self, fn: Callable[[Session], T]) -> T:
        def work() -> T:
            with self.database.session() as session:
                return fn(session)

        try:
            return await asyncio.to_thread(work)
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            raise BackendUnavailable(f"durable backend error: {exc}") from exc

    @staticmethod
    def _to_account(row: AccountRow) -> Account:
        return Account(
            id=row.id,
            name=row.name,
            email=row.email,
            tokens=Decimal(str(row.tokens)),
            token_week_start=_parse_dt(row.token_week_start),
            is_guest=bool(row.is_guest),
            ai_memory=row.ai_memory or "",
        )

    @staticmethod
    def _to_transaction(row: LedgerTransactionRow) -> LedgerTransaction:
        return LedgerTransaction(
            id=row.id,
            account_id=row.account_id,
            request_id=row.request_id,
            feature=row.feature,
            cost=Decimal(str(row.cost)),
            created_at=_parse_dt(row.created_at) or utc_now(),
        )

    async def get(self, account_id: str) -> Account | None:
        def fn(session: Session) -> Account | None:
            row = session.get(AccountRow, account_id)
            return self._to_account(row) if row else None

        return await self._run(fn)

    async def find_by_email(self, email: str) -> Account | None:
        clean = email.lower().strip()

        def fn(session: Session) -> Account | None:
            row = session.query(AccountRow).filter(AccountRow.email == clean).one_or_none()
            return self._to_account(row) if row else None

        return await self._run(fn)

    async def add(self, account: Account) -> None:
        def fn(session: Session) -> None:
            session.add(
                AccountRow(
                    id=account.id,
                    name=account.name,
                    email=account.email,
                    tokens=account.tokens,
                    token_week_start=account.token_week_start,
                    is_guest=account.is_guest,
                    ai_memory=account.ai_memory,
                )
            )

        try:
            await self._run(fn)
        except IntegrityError as exc:
            raise DuplicateEmail() from exc

    async def find_transaction(self, account_id: str, request_id: str) -> LedgerTransaction | None:
        def fn(session: Session) -> LedgerTransaction | None:
            row = (
                session.query(LedgerTransactionRow)
                .filter(
                    LedgerTransactionRow.account_id == account_id,
                    LedgerTransactionRow.request_id == request_id,
                )
                .one_or_none()
            )
            return self._to_transaction(row) if row else None

        return await self._run(fn)

    async def commit(self, account: Account, transaction: LedgerTransaction | None = None) -> None:
        def fn(session: Session) -> None:
            row = session.get(AccountRow, account.id)
            if row is None:
                raise AccountNotFound(account.id)
            row.tokens = account.tokens
            row.token_week_start = account.token_week_start
            row.ai_memory = account.ai_memory
            if transaction is not None:
                session.add(
                    LedgerTransactionRow(
                        id=transaction.id,
                        account_id=transaction.account_id,
                        request_id=transaction.request_id,
                        feature=transaction.feature,
                        cost=transaction.cost,
                        created_at=transaction.created_at,
                    )
                )

        try:
            await self._run(fn)
        except IntegrityError as exc:
            raise DuplicateRequest(transaction.request_id if transaction else "", account.tokens) from exc

    async def transactions(self, account_id: str) -> list[LedgerTransaction]:
        def fn(session: Session) -> list[LedgerTransaction]:
            rows = (
                session.query(LedgerTransactionRow)
                .filter(LedgerTransactionRow.account_id == account_id)
                .order_by(LedgerTransactionRow.created_at.asc())
                .all()
            )
            return [self._to_transaction(row) for row in rows]

        return await self._run(fn)
