"""Cooperative cancellation shared between a user action and its effects."""

from __future__ import annotations


class Cancelled(Exception):
    """Raised at a suspension point after the user stopped the action."""


class CancellationToken:
    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "stopped by user") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise Cancelled(self.reason or "cancelled")
