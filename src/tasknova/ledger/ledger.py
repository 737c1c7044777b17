"""Token ledger: weekly grant, idempotent deductions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable

from ..errors import AccountNotFound, DuplicateRequest, InsufficientBalance
from ..logger import EventLogger
from .accounts import Account, AccountRepository, LedgerTransaction, SessionState, utc_now

CENT = Decimal("0.01")


def to_tokens(amount: Decimal | int | float | str) -> Decimal:
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def current_week_anchor(now: datetime | None = None) -> datetime:
    """Most recent Monday 00:00 UTC at or before ``now``."""
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    monday = now.date() - timedelta(days=now.weekday())
    return datetime(monday.year, monday.month, monday.day, tzinfo=timezone.utc)


@dataclass(frozen=True)
class DeductionResult:
    account_id: str
    request_id: str
    new_balance: Decimal
    duplicate: bool = False
    weekly_reset: bool = False
    transaction_id: str | None = None


class LedgerStore:
    def __init__(
        self,
        repository: AccountRepository,
        *,
        weekly_grant: Decimal = Decimal("10.00"),
        logger: EventLogger | None = None,
        session: SessionState | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.weekly_grant = to_tokens(weekly_grant)
        self.logger = logger
        self.session = session
        self.clock = clock
        # One deduction at a time per process; the repository commit is the atomic unit.
        self._lock = asyncio.Lock()

    def _log(self, event_type: str, data: dict) -> None:
        if self.logger is not None:
            self.logger.log(event_type, data)

    def _apply_weekly_reset(self, account: Account, anchor: datetime) -> bool:
        if account.token_week_start is not None and account.token_week_start >= anchor:
            return False
        account.tokens = self.weekly_grant
        account.token_week_start = anchor
        return True

    async def _persist(self, account: Account, transaction: LedgerTransaction | None = None) -> None:
        await self.repository.commit(account, transaction)
        if self.session is not None:
            self.session.refresh(account)

    async def check_and_deduct(
        self,
        account_id: str,
        cost: Decimal | int | float | str,
        feature: str,
        request_id: str,
    ) -> DeductionResult:
        amount = to_tokens(cost)
        if amount <= 0:
            raise ValueError(f"cost must be positive, got {amount}")

        async with self._lock:
            account = await self.repository.get(account_id)
            if account is None:
                raise AccountNotFound(account_id)

            anchor = current_week_anchor(self.clock())
            reset = self._apply_weekly_reset(account, anchor)
            if reset:
                self._log("weekly_reset", {"account_id": account_id, "week_start": anchor.isoformat()})

            existing = await self.repository.find_transaction(account_id, request_id)
            if existing is not None:
                if reset:
                    await self._persist(account)
                self._log("deduction_duplicate", {"account_id": account_id, "request_id": request_id})
                return DeductionResult(
                    account_id,
                    request_id,
                    to_tokens(account.tokens),
                    duplicate=True,
                    weekly_reset=reset,
                    transaction_id=existing.id,
                )

            if to_tokens(account.tokens) < amount:
                if reset:
                    await self._persist(account)
                self._log(
                    "deduction_refused",
                    {"account_id": account_id, "feature": feature, "cost": amount, "balance": account.tokens},
                )
                raise InsufficientBalance(account_id, to_tokens(account.tokens), amount)

            account.tokens = to_tokens(account.tokens - amount)
            transaction = LedgerTransaction(
                account_id=account_id,
                request_id=request_id,
                feature=feature,
                cost=amount,
                created_at=self.clock(),
            )
            try:
                await self._persist(account, transaction)
            except DuplicateRequest:
                # Committed elsewhere first; report that balance instead of ours.
                current = await self.repository.get(account_id)
                balance = to_tokens(current.tokens) if current else to_tokens(account.tokens + amount)
                return DeductionResult(account_id, request_id, balance, duplicate=True, weekly_reset=reset)

            self._log(
                "tokens_deducted",
                {
                    "account_id": account_id,
                    "feature": feature,
                    "cost": amount,
                    "request_id": request_id,
                    "new_balance": account.tokens,
                },
            )
            return DeductionResult(
                account_id,
                request_id,
                account.tokens,
                weekly_reset=reset,
                transaction_id=transaction.id,
            )

    async def balance(self, account_id: str) -> Decimal:
        """Stored balance; a pending weekly reset is reported but not written."""
        account = await self.repository.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        anchor = current_week_anchor(self.clock())
        if account.token_week_start is None or account.token_week_start < anchor:
            return self.weekly_grant
        return to_tokens(account.tokens)

    async def transactions(self, account_id: str) -> list[LedgerTransaction]:
        return await self.repository.transactions(account_id)
