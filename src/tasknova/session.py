"""Process-level wiring: storage, ledger, sync and the assistant for the signed-in account."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .agent.dispatcher import ToolCallDispatcher
from .agent.model import ChatModel, LiteLLMChatModel
from .agent.turn import ChatTurn, ChatTurnRunner
from .config import AppConfig
from .ledger.accounts import Account, LocalAccountRepository, SessionState, SqlAccountRepository
from .ledger.ledger import LedgerStore, current_week_anchor
from .ledger.service import AccountService
from .logger import EventLogger
from .metering.cancellation import CancellationToken
from .metering.gateway import Effect, MeteredActionGateway
from .results import ActionResult, NoticeBoard
from .store.base import RecordStore
from .store.db import Database
from .store.durable import DurableRecordStore
from .store.keyvalue import FileKeyValueStore, KeyValueStore
from .store.local import LocalRecordStore
from .store.mirrored import select_record_store
from .store.realtime import RealtimeChannel
from .sync.coordinator import SyncCoordinator


class AppSession:
    """Everything one running client needs, scoped to at most one account at a time."""

    def __init__(
        self,
        config: AppConfig,
        run_id: str | None = None,
        *,
        kv: KeyValueStore | None = None,
        database: Database | None = None,
        use_durable: bool = True,
        model: ChatModel | None = None,
    ) -> None:
        self.config = config
        self.run_id = run_id or datetime.now(timezone.utc).strftime("run_%Y%m%d_%H%M%S")
        self.logger = EventLogger(
            logs_dir=config.logging.logs_dir,
            run_id=self.run_id,
            event_file_name=config.logging.event_file_name,
        )
        self.notices = NoticeBoard()
        self.state = SessionState()

        data_dir = Path(config.storage.data_dir)
        self.kv = kv or FileKeyValueStore(data_dir / "local", on_warning=self._storage_warning)
        if database is None and use_durable and config.storage.durable_url:
            data_dir.mkdir(parents=True, exist_ok=True)
            database = Database(config.storage.durable_url)
        self.database = database
        if self.database is not None:
            self.database.create_all()

        prefix = config.storage.key_prefix
        self.channel = RealtimeChannel()
        self.local_records = LocalRecordStore(self.kv, key_prefix=prefix)
        self.durable_records = DurableRecordStore(self.database, self.channel) if self.database else None
        self.local_accounts = LocalAccountRepository(self.kv, key_prefix=prefix)
        self.sql_accounts = SqlAccountRepository(self.database) if self.database else None

        self.accounts = AccountService(
            self.sql_accounts or self.local_accounts,
            guest_repository=self.local_accounts,
            weekly_grant=config.ledger.weekly_grant,
            logger=self.logger,
        )
        self.ledger = self._ledger_for(self.local_accounts)
        self.coordinator = SyncCoordinator(logger=self.logger, notices=self.notices)
        self.gateway = MeteredActionGateway(self.ledger, config.metering, notices=self.notices, logger=self.logger)
        self.dispatcher = ToolCallDispatcher(self.coordinator, self.accounts, logger=self.logger)
        self.model = model or LiteLLMChatModel(config.llm)
        self.turns = ChatTurnRunner(self.model, self.gateway, self.dispatcher, self.coordinator, logger=self.logger)
        self.record_store: RecordStore | None = None

        self.logger.log(
            "session_initialized",
            {"run_id": self.run_id, "durable": self.database is not None, "data_dir": str(data_dir)},
        )

    # ---- wiring ----

    def _storage_warning(self, message: str) -> None:
        self.logger.log("storage_degraded", {"message": message})
        self.notices.warning("Local storage is full or unavailable. Changes are kept in memory only.", code="storage_degraded")

    def _ledger_for(self, repository) -> LedgerStore:
        return LedgerStore(
            repository,
            weekly_grant=self.config.ledger.weekly_grant,
            logger=self.logger,
            session=self.state,
        )

    def store_for(self, *, is_guest: bool) -> RecordStore:
        return select_record_store(
            is_guest=is_guest,
            local=self.local_records,
            durable=self.durable_records,
            notices=self.notices,
            logger=self.logger,
            mirror_writes=self.config.storage.mirror_writes,
        )

    @property
    def account(self) -> Account | None:
        return self.state.account

    def _require_account(self) -> Account:
        if self.state.account is None:
            raise RuntimeError("no account signed in")
        return self.state.account

    # ---- accounts ----

    async def register(self, name: str, email: str) -> Account:
        account = await self.accounts.register(name, email, records=self.store_for(is_guest=False))
        await self.switch_account(account)
        return account

    async def start_guest(self, name: str = "Guest") -> Account:
        account = await self.accounts.create_guest(name, records=self.store_for(is_guest=True))
        await self.switch_account(account)
        return account

    async def sign_in(self, account_id: str) -> Account:
        account = await self.accounts.get(account_id)
        await self.switch_account(account)
        return account

    async def switch_account(self, account: Account) -> None:
        """Drop everything tied to the previous account before loading the next one."""
        previous = self.state.account_id
        self.coordinator.unload()
        self.state.account = account
        self.ledger = self._ledger_for(self.accounts.repository_for(account))
        self.gateway.ledger = self.ledger
        self.record_store = self.store_for(is_guest=account.is_guest)
        await self.coordinator.load(account, self.record_store)
        if isinstance(self.model, LiteLLMChatModel):
            self.model.reset(account.ai_memory)
        self.logger.log(
            "account_switched",
            {"from": previous, "to": account.id, "guest": account.is_guest, "store": self.record_store.name},
        )

    def sign_out(self) -> None:
        self.coordinator.unload()
        self.state.account = None
        self.record_store = None

    # ---- metered actions ----

    async def chat(
        self,
        text: str,
        *,
        ignite: bool = False,
        image: str | None = None,
        context: str | None = None,
        session_id: str | None = None,
        cancel_token: CancellationToken | None = None,
        request_id: str | None = None,
    ) -> ChatTurn:
        account = self._require_account()
        return await self.turns.run(
            account,
            text,
            ignite=ignite,
            image=image,
            context=context,
            session_id=session_id,
            cancel_token=cancel_token,
            request_id=request_id,
        )

    async def perform(
        self,
        feature: str,
        effect: Effect,
        *,
        request_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ActionResult:
        account = self._require_account()
        return await self.gateway.perform(
            account.id,
            None,
            feature,
            request_id or uuid.uuid4().hex,
            effect,
            cancel_token,
        )

    # ---- status ----

    async def summary(self) -> dict[str, Any]:
        account = self.state.account
        if account is None:
            return {"run_id": self.run_id, "account": None, "log_path": str(self.logger.output_path)}
        transactions = await self.ledger.transactions(account.id)
        return {
            "run_id": self.run_id,
            "account": {
                "id": account.id,
                "name": account.name,
                "email": account.email,
                "is_guest": account.is_guest,
            },
            "balance": str(await self.ledger.balance(account.id)),
            "week_start": current_week_anchor().isoformat(),
            "store": self.record_store.name if self.record_store else None,
            "record_counts": self.coordinator.counts(),
            "ledger_entries": len(transactions),
            "offline_queue": len(self.coordinator.offline_queue()),
            "log_path": str(self.logger.output_path),
        }

    def close(self) -> None:
        self.sign_out()
        if self.database is not None:
            self.database.dispose()
