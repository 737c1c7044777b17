"""Charge-then-act entry point for every paid feature."""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Awaitable, Callable

from ..config import MeteringConfig
from ..errors import AccountNotFound, BackendUnavailable, InsufficientBalance, TaskNovaError
from ..ledger.ledger import LedgerStore
from ..logger import EventLogger
from ..results import ActionResult, NoticeBoard
from .cancellation import CancellationToken, Cancelled

Effect = Callable[[], Awaitable[Any]]
RequestKey = tuple[str, str]


class MeteredActionGateway:
    """Deducts first, then runs the effect. An effect never runs unpaid.

    Results are remembered per (account, request id). A repeat of a request
    that is still running waits for it and gets the same result.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        metering: MeteringConfig,
        *,
        notices: NoticeBoard,
        logger: EventLogger,
        memo_size: int = 1024,
    ) -> None:
        self.ledger = ledger
        self.metering = metering
        self.notices = notices
        self.logger = logger
        self.memo_size = memo_size
        self._completed: OrderedDict[RequestKey, ActionResult] = OrderedDict()
        self._running: dict[RequestKey, asyncio.Future] = {}

    def cost_of(self, feature: str) -> Decimal:
        return self.metering.cost_for(feature)

    async def perform(
        self,
        account_id: str,
        cost: Decimal | str | None,
        feature: str,
        request_id: str,
        effect: Effect,
        cancel_token: CancellationToken | None = None,
    ) -> ActionResult:
        """Charge ``cost`` (or the feature's configured cost) once per ``request_id``, then run ``effect``."""
        key = (account_id, request_id)
        memo = self._completed.get(key)
        if memo is not None:
            self.logger.log("perform_duplicate", {"account_id": account_id, "request_id": request_id})
            return memo
        running = self._running.get(key)
        if running is not None:
            self.logger.log(
                "perform_duplicate",
                {"account_id": account_id, "request_id": request_id, "in_flight": True},
            )
            return await asyncio.shield(running)

        future = asyncio.get_running_loop().create_future()
        self._running[key] = future
        try:
            result, charged = await self._charge_and_run(
                account_id, cost, feature, request_id, effect, cancel_token
            )
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Marked retrieved; waiters (if any) still receive it.
            future.exception()
            raise
        else:
            if charged:
                self._remember(key, result)
            future.set_result(result)
            return result
        finally:
            self._running.pop(key, None)

    def _remember(self, key: RequestKey, result: ActionResult) -> None:
        self._completed[key] = result
        while len(self._completed) > self.memo_size:
            self._completed.popitem(last=False)

    async def _charge_and_run(
        self,
        account_id: str,
        cost: Decimal | str | None,
        feature: str,
        request_id: str,
        effect: Effect,
        cancel_token: CancellationToken | None,
    ) -> tuple[ActionResult, bool]:
        if cancel_token is not None and cancel_token.cancelled:
            return ActionResult(False, "Cancelled before it started.", cancelled=True), False

        amount = Decimal(str(cost)) if cost is not None else self.cost_of(feature)
        try:
            deduction = await self.ledger.check_and_deduct(account_id, amount, feature, request_id)
        except InsufficientBalance as exc:
            self.notices.error(exc.user_message, code=exc.error_code, blocking=True)
            return ActionResult.from_error(exc), False
        except AccountNotFound as exc:
            self.notices.error(exc.user_message, code=exc.error_code, blocking=True)
            result = ActionResult.from_error(exc)
            result.requires_reauth = True
            return result, False
        except BackendUnavailable as exc:
            self.notices.warning(exc.user_message, code=exc.error_code)
            return ActionResult.from_error(exc, retriable=True), False

        charge = {
            "feature": feature,
            "cost": str(amount),
            "request_id": request_id,
            "balance": str(deduction.new_balance),
            "duplicate_charge": deduction.duplicate,
        }

        if cancel_token is not None and cancel_token.cancelled:
            return self._cancelled(account_id, charge), True
        try:
            value = await effect()
        except Cancelled:
            return self._cancelled(account_id, charge), True
        except TaskNovaError as exc:
            self.logger.log("effect_failed", {"account_id": account_id, **charge, "error": str(exc)})
            result = ActionResult.from_error(exc)
            result.data = {**(result.data or {}), **charge}
            return result, True
        except Exception as exc:
            self.logger.log("effect_failed", {"account_id": account_id, **charge, "error": str(exc)})
            return ActionResult(False, f"effect error: {exc}", data=charge, error_code="runtime_error"), True
        if cancel_token is not None and cancel_token.cancelled:
            return self._cancelled(account_id, charge), True
        return ActionResult(True, f"{feature} completed", data={**charge, "value": value}), True

    def _cancelled(self, account_id: str, charge: dict[str, Any]) -> ActionResult:
        # Charges are not refunded; only the visible completion is dropped.
        self.logger.log("perform_cancelled", {"account_id": account_id, **charge})
        return ActionResult(False, "Cancelled.", data=charge, cancelled=True)
