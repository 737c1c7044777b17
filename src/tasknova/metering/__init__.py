"""Paid-feature metering."""

from .cancellation import CancellationToken, Cancelled
from .gateway import MeteredActionGateway

__all__ = ["CancellationToken", "Cancelled", "MeteredActionGateway"]
