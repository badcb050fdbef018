"""Persistent schema and engine for the job store."""

from .engine import Database
from .models import (
    Base,
    FinancialDocument,
    MailboxConnection,
    ScanJob,
    ScanQueueItem,
    VendorCategoryMapping,
)

__all__ = [
    "Base",
    "Database",
    "FinancialDocument",
    "MailboxConnection",
    "ScanJob",
    "ScanQueueItem",
    "VendorCategoryMapping",
]
