"""Snapshot synchronisation between the UI state and the record stores."""

from .coordinator import SyncCoordinator

__all__ = ["SyncCoordinator"]
