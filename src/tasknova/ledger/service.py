"""Account registration, guests and the user memory field."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Callable

from ..errors import AccountNotFound, DuplicateEmail
from ..logger import EventLogger
from ..store.base import RecordStore
from ..store.records import RecordKind, welcome_task
from .accounts import Account, AccountRepository, utc_now
from .ledger import current_week_anchor, to_tokens


class AccountService:
    def __init__(
        self,
        repository: AccountRepository,
        *,
        guest_repository: AccountRepository | None = None,
        weekly_grant: Decimal = Decimal("10.00"),
        logger: EventLogger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.guest_repository = guest_repository or repository
        self.weekly_grant = to_tokens(weekly_grant)
        self.logger = logger
        self.clock = clock

    def repository_for(self, account: Account) -> AccountRepository:
        return self.guest_repository if account.is_guest else self.repository

    def _new_account(self, name: str, email: str, *, is_guest: bool) -> Account:
        return Account(
            id=uuid.uuid4().hex,
            name=name.strip() or "User",
            email=email,
            tokens=self.weekly_grant,
            token_week_start=current_week_anchor(self.clock()),
            is_guest=is_guest,
        )

    async def _seed(self, account: Account, records: RecordStore | None) -> None:
        if records is not None:
            await records.create(account.id, RecordKind.TASK, welcome_task())

    async def register(self, name: str, email: str, *, records: RecordStore | None = None) -> Account:
        clean = email.lower().strip()
        if not clean:
            raise ValueError("email is required")
        if await self.repository.find_by_email(clean) is not None:
            raise DuplicateEmail()
        account = self._new_account(name, clean, is_guest=False)
        await self.repository.add(account)
        await self._seed(account, records)
        if self.logger is not None:
            self.logger.log("account_registered", {"account_id": account.id, "email": clean})
        return account

    async def create_guest(self, name: str = "Guest", *, records: RecordStore | None = None) -> Account:
        account = self._new_account(name or "Guest", "", is_guest=True)
        await self.guest_repository.add(account)
        await self._seed(account, records)
        if self.logger is not None:
            self.logger.log("guest_created", {"account_id": account.id})
        return account

    async def get(self, account_id: str) -> Account:
        account = await self.repository.get(account_id)
        if account is None and self.guest_repository is not self.repository:
            account = await self.guest_repository.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def remember(self, account_id: str, fact: str) -> Account:
        """Append one fact to the account's free-form AI memory."""
        account = await self.get(account_id)
        fact = fact.strip()
        if fact:
            line = f"- {fact}"
            account.ai_memory = f"{account.ai_memory}\n{line}" if account.ai_memory else line
            await self.repository_for(account).commit(account)
        return account
