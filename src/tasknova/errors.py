"""
Shared error types for the ledger, record stores and agent dispatch.
"""

from __future__ import annotations

from decimal import Decimal


class TaskNovaError(Exception):
    error_code = "error"
    error_category = "internal"
    user_message = "Something went wrong."

    def __init__(self, message: str | None = None, *, data: dict | None = None):
        super().__init__(message or self.user_message)
        self.data = data or {}


class InsufficientBalance(TaskNovaError):
    error_code = "insufficient_balance"
    error_category = "resource"
    user_message = "Not enough tokens for this action. Your balance resets every Monday."

    def __init__(self, account_id: str, balance: Decimal, cost: Decimal):
        super().__init__(
            f"account '{account_id}' has {balance} tokens, needs {cost}",
            data={"account_id": account_id, "balance": str(balance), "cost": str(cost)},
        )
        self.account_id = account_id
        self.balance = balance
        self.cost = cost


class AccountNotFound(TaskNovaError):
    error_code = "account_not_found"
    error_category = "session"
    user_message = "Your session is no longer valid. Please sign in again."

    def __init__(self, account_id: str):
        super().__init__(f"account '{account_id}' not found", data={"account_id": account_id})
        self.account_id = account_id


class RecordNotFound(TaskNovaError):
    error_code = "not_found"
    error_category = "resource"
    user_message = "not found"

    def __init__(self, kind: str, ref: str | None):
        super().__init__(f"{kind} '{ref}' not found", data={"kind": kind, "ref": ref})
        self.kind = kind
        self.ref = ref


class BackendUnavailable(TaskNovaError):
    """Raised when the durable store cannot be reached."""

    error_code = "backend_unavailable"
    error_category = "backend"
    user_message = "Cloud sync is unavailable. Working offline for now."


class DuplicateRequest(TaskNovaError):
    """Idempotency hit. Callers treat this as success."""

    error_code = "duplicate_request"
    error_category = "idempotency"
    user_message = "Already processed."

    def __init__(self, request_id: str, balance: Decimal):
        super().__init__(f"request '{request_id}' already charged", data={"request_id": request_id})
        self.request_id = request_id
        self.balance = balance


class DuplicateEmail(TaskNovaError):
    error_code = "duplicate_email"
    error_category = "validation"
    user_message = "An account with this email already exists."


class RecordConflict(TaskNovaError):
    """The durable backend rejected a write outright. Retrying will not help."""

    error_code = "record_conflict"
    error_category = "validation"
    user_message = "This change conflicts with saved data and was not synced."
