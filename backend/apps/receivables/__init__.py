"""Receivables app module.

Mirrors BHB debtors and outbound receipts into the local store, links
receipts to customers and exposes the result to the portal.
"""

from .dto import CycleReport, PaymentStatus, SyncState, SyncSummary
from .errors import (
    ConfigurationError,
    DuplicateError,
    NotFoundError,
    ReceivablesError,
    RenumberError,
    SyncAlreadyRunningError,
    SyncTimeoutError,
    UpstreamError,
)

__all__ = [
    "CycleReport",
    "PaymentStatus",
    "SyncState",
    "SyncSummary",
    "ConfigurationError",
    "DuplicateError",
    "NotFoundError",
    "ReceivablesError",
    "RenumberError",
    "SyncAlreadyRunningError",
    "SyncTimeoutError",
    "UpstreamError",
]
