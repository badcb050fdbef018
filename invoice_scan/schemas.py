"""Request/response schemas for the deep-scan and cron endpoints."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from invoice_scan.models import ScanStatus


class ScanJobOut(BaseModel):
    """Returned by start / pause / resume."""

    scan_job_id: UUID
    status: ScanStatus


class DiscoveryProgress(BaseModel):
    total_found: int
    is_complete: bool


class ProcessingProgress(BaseModel):
    total: int
    processed: int
    created: int
    skipped: int
    errors: int
    percent: int


class AIProgress(BaseModel):
    total: int
    processed: int
    skipped: int
    percent: int


class ScanStatusReport(BaseModel):
    """Progress of the active (or most recent) scan of an account.

    Only ``active`` is set when the account has never been scanned.
    """

    active: bool
    scan_job_id: UUID | None = None
    status: ScanStatus | None = None
    discovery: DiscoveryProgress | None = None
    processing: ProcessingProgress | None = None
    ai: AIProgress | None = None
    last_error: str | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None


class TickOutcomeOut(BaseModel):
    scan_job_id: UUID
    status: ScanStatus
    processed: int
    error: str | None = None


class TickOut(BaseModel):
    """Response of POST /cron/deep-scan."""

    dispatched: int
    processed: int
    jobs: list[TickOutcomeOut]


class SyncOut(BaseModel):
    """Response of POST /cron/mailbox-sync."""

    total: int


class QuickScanOut(BaseModel):
    """Response of POST /mailboxes/{mailbox_id}/quick-scan."""

    new_documents: int
    candidates: int
    ai_confirmed: int
    deferred: bool
