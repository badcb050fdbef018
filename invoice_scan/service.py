"""Deep scan lifecycle: start, status, pause and resume."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import UTC, date, datetime

import structlog

from .config import Settings
from .db.models import ScanJob
from .errors import InvalidScanStateError, MailboxNotFoundError, ScanJobNotFoundError
from .extractor import deep_scan_query
from .models import RUNNING_STATUSES, MailboxStatus, QueueCounts, QueueItemStatus, ScanStatus
from .schemas import AIProgress, DiscoveryProgress, ProcessingProgress, ScanStatusReport
from .store import ScanStore

logger = structlog.get_logger()


def today_utc() -> date:
    return datetime.now(UTC).date()


def years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # 29 February in a non-leap target year
        return day.replace(year=day.year - years, day=28)


def _percent(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return int(part * 100 / whole + 0.5)


def resume_status(job: ScanJob, counts: QueueCounts) -> ScanStatus:
    """Phase a paused job returns to.

    A job whose discovery never finished always goes back to DISCOVERING,
    even when items are already PENDING. Going to PROCESSING instead would
    mark discovery complete once the queue drained, so message pages not yet
    listed would never be queued. Discovery ends in PROCESSING and picks the
    pending items up from there. Once discovery is done the queue decides.
    """
    if not job.discovery_completed:
        return ScanStatus.DISCOVERING
    if counts.pending:
        return ScanStatus.PROCESSING
    if counts.regex_done_needing_ai or counts.count(QueueItemStatus.AI_PROCESSING):
        return ScanStatus.AI_PASS
    if job.discovery_cursor:
        return ScanStatus.DISCOVERING
    return ScanStatus.PROCESSING


def build_status_report(job: ScanJob | None) -> ScanStatusReport:
    if job is None:
        return ScanStatusReport(active=False)

    total_to_process = job.total_to_process or job.total_discovered
    status = ScanStatus(job.status)
    return ScanStatusReport(
        active=status in RUNNING_STATUSES,
        scan_job_id=job.id,
        status=status,
        discovery=DiscoveryProgress(
            total_found=job.total_discovered,
            is_complete=job.discovery_completed,
        ),
        processing=ProcessingProgress(
            total=total_to_process,
            processed=job.processed_count,
            created=job.documents_created,
            skipped=job.skipped_count,
            errors=job.error_count,
            percent=_percent(job.processed_count, total_to_process),
        ),
        ai=AIProgress(
            total=job.ai_total,
            processed=job.ai_processed,
            skipped=job.ai_skipped,
            percent=_percent(job.ai_processed, job.ai_total),
        ),
        last_error=job.last_error,
        started_at=job.created_at,
        updated_at=job.updated_at,
    )


class DeepScanService:
    """User-facing operations on deep scan jobs."""

    def __init__(
        self,
        store: ScanStore,
        settings: Settings,
        *,
        today: Callable[[], date] = today_utc,
    ) -> None:
        self._store = store
        self._settings = settings
        self._today = today

    async def start(self, mailbox_id: uuid.UUID) -> ScanJob:
        """Create a DISCOVERING job for the mailbox.

        Raises :class:`MailboxNotFoundError` for an unknown or disconnected
        mailbox and :class:`ScanAlreadyActiveError` when a non-terminal job
        (paused included) already exists.
        """
        mailbox = await self._store.get_mailbox(mailbox_id)
        if mailbox is None or mailbox.status != MailboxStatus.CONNECTED.value:
            raise MailboxNotFoundError(f"Mailbox {mailbox_id} not found or disconnected")

        after = years_before(self._today(), self._settings.scan.lookback_years).strftime("%Y/%m/%d")
        job = await self._store.create_scan_job(mailbox, query=deep_scan_query(after), after_date=after)
        logger.info(
            "scan_job_started",
            scan_job_id=str(job.id),
            mailbox_id=str(mailbox_id),
            account_id=str(mailbox.account_id),
            after_date=after,
        )
        return job

    async def status(self, account_id: uuid.UUID) -> ScanStatusReport:
        job = await self._store.get_running_scan_for_account(account_id)
        if job is None:
            job = await self._store.get_latest_scan_job(account_id)
        return build_status_report(job)

    async def _get(self, scan_job_id: uuid.UUID) -> ScanJob:
        job = await self._store.get_scan_job(scan_job_id)
        if job is None:
            raise ScanJobNotFoundError(f"Scan job {scan_job_id} not found")
        return job

    async def pause(self, scan_job_id: uuid.UUID) -> ScanStatus:
        job = await self._get(scan_job_id)
        if job.status not in {s.value for s in RUNNING_STATUSES}:
            raise InvalidScanStateError(f"Scan job {scan_job_id} is {job.status}, not running")
        if not await self._store.transition(job.id, RUNNING_STATUSES, ScanStatus.PAUSED):
            raise InvalidScanStateError(f"Scan job {scan_job_id} changed state while pausing")
        logger.info("scan_job_paused", scan_job_id=str(job.id), from_status=job.status)
        return ScanStatus.PAUSED

    async def resume(self, scan_job_id: uuid.UUID) -> ScanStatus:
        job = await self._get(scan_job_id)
        if job.status != ScanStatus.PAUSED.value:
            raise InvalidScanStateError(f"Scan job {scan_job_id} is {job.status}, not paused")
        counts = await self._store.queue_counts(job.id)
        target = resume_status(job, counts)
        fields = {}
        if target is ScanStatus.AI_PASS:
            # the regex pass may have drained without reaching its AI_PASS transition
            fields["ai_total"] = (
                counts.regex_done_needing_ai
                + counts.count(QueueItemStatus.AI_PROCESSING)
                + counts.count(QueueItemStatus.AI_DONE)
            )
        if not await self._store.transition(job.id, ScanStatus.PAUSED, target, **fields):
            raise InvalidScanStateError(f"Scan job {scan_job_id} changed state while resuming")
        logger.info("scan_job_resumed", scan_job_id=str(job.id), to_status=target.value)
        return target
