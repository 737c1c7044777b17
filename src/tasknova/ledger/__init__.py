"""Accounts and the token ledger."""

from .accounts import (
    Account,
    AccountRepository,
    LedgerTransaction,
    LocalAccountRepository,
    SessionState,
    SqlAccountRepository,
)
from .ledger import DeductionResult, LedgerStore, current_week_anchor, to_tokens
from .service import AccountService

__all__ = [
    "Account",
    "AccountRepository",
    "AccountService",
    "DeductionResult",
    "LedgerStore",
    "LedgerTransaction",
    "LocalAccountRepository",
    "SessionState",
    "SqlAccountRepository",
    "current_week_anchor",
    "to_tokens",
]
