"""Deep scan orchestrator: discovery, regex pass, AI pass and the cron tick.

Every phase call is bounded by a wall-clock budget and checkpoints into
the :class:`~invoice_scan.store.ScanStore`; nothing survives in memory
between invocations.  ``run_tick`` dispatches exactly one phase call per
running job.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from datetime import timedelta

import httpx
import structlog

from .config import Settings
from .db.models import ScanJob
from .enrichment import EnrichmentClient
from .errors import ConfigurationError, DuplicateDocumentError, MailboxAPIError
from .extractor import ai_attachment, downloadable_attachments, extract_document, needs_ai
from .mailbox import MailboxClient, MailboxFactory
from .models import (
    AIBatchResult,
    AttachmentRef,
    ClaimedItem,
    DiscoveryResult,
    DocumentStatus,
    ExtractedInvoice,
    JobTickOutcome,
    QueueItemStatus,
    RegexBatchResult,
    ScanStatus,
    TickResult,
    VendorHint,
)
from .store import ScanStore

logger = structlog.get_logger()

_IMAGE_TYPES = {".png": "image/png", ".jpg": "image/jpeg", ".jpeg": "image/jpeg"}


def _image_mime_type(attachment: AttachmentRef) -> str:
    if attachment.mime_type.startswith("image/"):
        return attachment.mime_type
    for suffix, mime_type in _IMAGE_TYPES.items():
        if attachment.filename.lower().endswith(suffix):
            return mime_type
    return "image/jpeg"


def _is_pdf(attachment: AttachmentRef) -> bool:
    return attachment.mime_type == "application/pdf" or attachment.filename.lower().endswith(".pdf")


async def extract_attachment(
    enrichment: EnrichmentClient,
    attachment: AttachmentRef,
    data: bytes,
    hints: list[VendorHint] | None,
) -> ExtractedInvoice:
    """Route an attachment to the PDF or image extractor."""
    if _is_pdf(attachment):
        return await enrichment.extract_pdf(data, hints)
    return await enrichment.extract_image(data, _image_mime_type(attachment), hints)


class DeepScanRunner:
    """Runs bounded phase calls for deep scan jobs.

    Parameters
    ----------
    store:
        The job store; the only place scan state lives.
    mailbox_factory:
        Builds a :class:`MailboxClient` for a mailbox row; raises a
        :class:`ConfigurationError` when the connection is unusable.
    enrichment:
        AI client; when disabled the AI pass completes immediately.
    clock:
        Monotonic seconds; injectable so tests can exhaust the budget.
    """

    def __init__(
        self,
        store: ScanStore,
        mailbox_factory: MailboxFactory,
        enrichment: EnrichmentClient,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._mailbox_factory = mailbox_factory
        self._enrichment = enrichment
        self._settings = settings
        self._scan = settings.scan
        self._clock = clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _deadline(self) -> float:
        return self._clock() + self._scan.time_budget_seconds

    def _expired(self, deadline: float) -> bool:
        return self._clock() > deadline

    @property
    def _claim_timeout(self) -> timedelta:
        return timedelta(seconds=self._scan.claim_timeout_seconds)

    async def _client_for(self, job: ScanJob) -> MailboxClient:
        mailbox = await self._store.get_mailbox(job.mailbox_id)
        return self._mailbox_factory(mailbox)

    async def _advance_mailbox_cursor(self, job: ScanJob) -> None:
        """Point incremental sync at "now" once the scan has drained its set."""
        try:
            client = await self._client_for(job)
            cursor = await client.latest_cursor()
            await self._store.update_sync_cursor(job.mailbox_id, cursor)
            logger.info("mailbox_cursor_advanced", scan_job_id=str(job.id), mailbox_id=str(job.mailbox_id))
        except Exception:
            logger.warning("mailbox_cursor_advance_failed", scan_job_id=str(job.id), exc_info=True)

    async def _complete(self, job: ScanJob, expected: ScanStatus, **fields: object) -> bool:
        completed = await self._store.transition(job.id, expected, ScanStatus.COMPLETED, **fields)
        if completed:
            await self._advance_mailbox_cursor(job)
        return completed

    async def _load(self, scan_job_id: uuid.UUID, status: ScanStatus) -> ScanJob | None:
        job = await self._store.get_scan_job(scan_job_id)
        if job is None or job.status != status.value:
            return None
        return job

    # ------------------------------------------------------------------
    # Phase 1: discovery
    # ------------------------------------------------------------------

    async def discover(self, scan_job_id: uuid.UUID) -> DiscoveryResult:
        """Page through the remote query, queueing ids until exhausted or out of time."""
        job = await self._load(scan_job_id, ScanStatus.DISCOVERING)
        if job is None:
            return DiscoveryResult(done=True, found=0)

        deadline = self._deadline()
        client = await self._client_for(job)
        cursor = job.discovery_cursor
        found = 0

        while True:
            try:
                page = await client.list_messages(job.query, cursor, max_results=self._settings.gmail.page_size)
            except ConfigurationError:
                raise
            except (MailboxAPIError, httpx.HTTPError) as exc:
                logger.warning("discovery_page_failed", scan_job_id=str(job.id), error=str(exc))
                await self._store.record_job_error(job.id, str(exc))
                return DiscoveryResult(done=False, found=found)

            inserted = await self._store.insert_queue_items(job.id, page.ids)
            found += inserted
            cursor = page.next_page_token
            await self._store.update_scan_job(
                job.id,
                discovery_cursor=cursor,
                total_discovered=ScanJob.total_discovered + inserted,
            )
            logger.info(
                "discovery_page_stored",
                scan_job_id=str(job.id),
                listed=len(page.ids),
                inserted=inserted,
                has_next=cursor is not None,
            )

            if cursor is None:
                break
            if self._expired(deadline):
                return DiscoveryResult(done=False, found=found)

        total = (await self._store.queue_counts(job.id)).total
        if total == 0:
            finished = await self._complete(job, ScanStatus.DISCOVERING, discovery_completed=True)
        else:
            finished = await self._store.transition(
                job.id,
                ScanStatus.DISCOVERING,
                ScanStatus.PROCESSING,
                total_to_process=total,
                discovery_completed=True,
            )
        if not finished:
            # paused (or otherwise moved) while the last page was being stored
            logger.info("discovery_finish_preempted", scan_job_id=str(job.id), total=total)
            return DiscoveryResult(done=False, found=found)
        logger.info("discovery_complete", scan_job_id=str(job.id), total=total)
        return DiscoveryResult(done=True, found=found)

    # ------------------------------------------------------------------
    # Phase 2: regex pass
    # ------------------------------------------------------------------

    async def process_regex_batch(self, scan_job_id: uuid.UUID) -> RegexBatchResult:
        """Claim a batch of PENDING items and run deterministic extraction."""
        job = await self._load(scan_job_id, ScanStatus.PROCESSING)
        if job is None:
            return RegexBatchResult(done=True)

        deadline = self._deadline()
        await self._store.release_stale_claims(
            job.id,
            claimed=QueueItemStatus.PROCESSING,
            back_to=QueueItemStatus.PENDING,
            older_than=self._claim_timeout,
        )
        batch = await self._store.claim_pending(job.id, self._scan.regex_batch_size)
        if not batch:
            return await self._finish_regex_phase(job)

        result = RegexBatchResult()
        remaining = list(batch)
        try:
            client = await self._client_for(job)
            while remaining:
                if self._expired(deadline):
                    logger.info("regex_batch_out_of_time", scan_job_id=str(job.id), unprocessed=len(remaining))
                    break
                outcome = await self._process_regex_item(job, client, remaining[0])
                remaining.pop(0)
                result.processed += 1
                if outcome is QueueItemStatus.REGEX_DONE:
                    result.created += 1
                elif outcome is QueueItemStatus.DUPLICATE:
                    result.duplicates += 1
                elif outcome is QueueItemStatus.SKIPPED:
                    result.skipped += 1
                else:
                    result.errors += 1
        finally:
            await self._store.release_items([item.id for item in remaining], QueueItemStatus.PENDING)
            await self._store.increment_counters(
                job.id,
                processed_count=result.processed,
                documents_created=result.created,
                skipped_count=result.skipped + result.duplicates,
                error_count=result.errors,
            )

        logger.info(
            "regex_batch_processed",
            scan_job_id=str(job.id),
            processed=result.processed,
            created=result.created,
            skipped=result.skipped,
            duplicates=result.duplicates,
            errors=result.errors,
        )
        return result

    async def _process_regex_item(self, job: ScanJob, client: MailboxClient, item: ClaimedItem) -> QueueItemStatus:
        try:
            if await self._store.has_document(job.account_id, item.remote_message_id):
                await self._store.mark_item(item.id, QueueItemStatus.DUPLICATE)
                return QueueItemStatus.DUPLICATE

            message = await client.get_message(item.remote_message_id)
            candidate = extract_document(
                message,
                default_currency=self._settings.default_currency,
                vat_rate=self._settings.vat_rate,
            )
            if candidate is None:
                await self._store.mark_item(item.id, QueueItemStatus.SKIPPED)
                return QueueItemStatus.SKIPPED

            try:
                document_id = await self._store.create_document(job.account_id, job.mailbox_id, candidate)
            except DuplicateDocumentError:
                await self._store.mark_item(item.id, QueueItemStatus.DUPLICATE)
                return QueueItemStatus.DUPLICATE

            await self._store.mark_item(
                item.id,
                QueueItemStatus.REGEX_DONE,
                document_id=document_id,
                needs_ai=needs_ai(message),
            )
            return QueueItemStatus.REGEX_DONE
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.warning(
                "regex_item_failed",
                scan_job_id=str(job.id),
                remote_message_id=item.remote_message_id,
                error=str(exc),
            )
            await self._store.mark_item(item.id, QueueItemStatus.FAILED, error_message=str(exc))
            return QueueItemStatus.FAILED

    async def _finish_regex_phase(self, job: ScanJob) -> RegexBatchResult:
        counts = await self._store.queue_counts(job.id)
        if counts.pending or counts.count(QueueItemStatus.PROCESSING):
            # Another invocation still holds claims or just released some.
            return RegexBatchResult(done=False)

        if counts.regex_done_needing_ai:
            await self._store.transition(
                job.id,
                ScanStatus.PROCESSING,
                ScanStatus.AI_PASS,
                ai_total=counts.regex_done_needing_ai,
            )
            logger.info("regex_phase_complete", scan_job_id=str(job.id), needs_ai=counts.regex_done_needing_ai)
        else:
            await self._complete(job, ScanStatus.PROCESSING)
            logger.info("regex_phase_complete", scan_job_id=str(job.id), needs_ai=0)
        return RegexBatchResult(done=True)

    # ------------------------------------------------------------------
    # Phase 3: AI pass
    # ------------------------------------------------------------------

    async def process_ai_batch(self, scan_job_id: uuid.UUID) -> AIBatchResult:
        """Claim a small batch of needs-AI items and enrich their documents."""
        job = await self._load(scan_job_id, ScanStatus.AI_PASS)
        if job is None:
            return AIBatchResult(done=True)

        if not self._enrichment.enabled:
            logger.info("ai_pass_skipped", scan_job_id=str(job.id), reason="enrichment_disabled")
            await self._complete(job, ScanStatus.AI_PASS)
            return AIBatchResult(done=True)

        deadline = self._deadline()
        await self._store.release_stale_claims(
            job.id,
            claimed=QueueItemStatus.AI_PROCESSING,
            back_to=QueueItemStatus.REGEX_DONE,
            older_than=self._claim_timeout,
        )
        batch = await self._store.claim_for_ai(job.id, self._scan.ai_batch_size)
        if not batch:
            counts = await self._store.queue_counts(job.id)
            if counts.regex_done_needing_ai or counts.count(QueueItemStatus.AI_PROCESSING):
                return AIBatchResult(done=False)
            await self._complete(job, ScanStatus.AI_PASS)
            logger.info("ai_phase_complete", scan_job_id=str(job.id))
            return AIBatchResult(done=True)

        result = AIBatchResult()
        remaining = list(batch)
        try:
            client = await self._client_for(job)
            hints = await self._store.list_vendor_mappings(job.account_id, limit=self._scan.vendor_hint_limit)
            while remaining:
                if self._expired(deadline):
                    logger.info("ai_batch_out_of_time", scan_job_id=str(job.id), unprocessed=len(remaining))
                    break
                skipped = await self._process_ai_item(job, client, remaining[0], hints)
                remaining.pop(0)
                result.processed += 1
                if skipped:
                    result.ai_skipped += 1
        finally:
            await self._store.release_items([item.id for item in remaining], QueueItemStatus.REGEX_DONE)
            await self._store.increment_counters(
                job.id,
                ai_processed=result.processed,
                ai_skipped=result.ai_skipped,
            )

        logger.info(
            "ai_batch_processed",
            scan_job_id=str(job.id),
            processed=result.processed,
            ai_skipped=result.ai_skipped,
        )
        return result

    async def _process_ai_item(
        self,
        job: ScanJob,
        client: MailboxClient,
        item: ClaimedItem,
        hints: list[VendorHint],
    ) -> bool:
        """Enrich one item; returns True when the AI call was skipped on purpose."""
        try:
            if item.document_id is not None:
                document = await self._store.get_document(item.document_id)
                if document is not None and document.vendor_name:
                    known = await self._store.known_vendor_extraction(
                        job.account_id,
                        document.vendor_name,
                        min_documents=self._scan.known_vendor_min_documents,
                        min_confidence=self._scan.known_vendor_min_confidence,
                    )
                    if known is not None:
                        await self._store.update_document(
                            item.document_id,
                            vendor_name=known.vendor_name,
                            category=known.category,
                            status=DocumentStatus.PENDING.value,
                        )
                        await self._store.mark_item(item.id, QueueItemStatus.AI_DONE)
                        logger.debug("ai_known_vendor", scan_job_id=str(job.id), vendor=known.vendor_name)
                        return True

            message = await client.get_message(item.remote_message_id)
            attachments = downloadable_attachments(message)
            if not attachments:
                await self._store.mark_item(item.id, QueueItemStatus.AI_DONE)
                return False

            attachment = ai_attachment(
                message,
                min_bytes=self._scan.min_attachment_bytes,
                max_bytes=self._scan.max_attachment_bytes,
            )
            if attachment is None:
                logger.info(
                    "ai_attachments_out_of_band",
                    scan_job_id=str(job.id),
                    sizes=[att.size for att in attachments],
                )
                await self._store.mark_item(item.id, QueueItemStatus.AI_DONE)
                return True

            data = await client.get_attachment(message.id, attachment.attachment_id)
            extracted = await extract_attachment(self._enrichment, attachment, data, hints)
            if item.document_id is not None and extracted.confidence > self._scan.ai_min_confidence:
                await self._store.update_document(item.document_id, **self._document_updates(extracted))

            await self._store.mark_item(item.id, QueueItemStatus.AI_DONE)
            return False
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.warning(
                "ai_item_failed",
                scan_job_id=str(job.id),
                remote_message_id=item.remote_message_id,
                error=str(exc),
            )
            await self._store.mark_item(item.id, QueueItemStatus.AI_DONE, error_message=str(exc))
            return False

    def _document_updates(self, extracted: ExtractedInvoice) -> dict[str, object]:
        updates: dict[str, object] = {"confidence": extracted.confidence}
        if extracted.vendor_name:
            updates["vendor_name"] = extracted.vendor_name
        if extracted.amount_minor:
            updates["amount_minor"] = extracted.amount_minor
        if extracted.category:
            updates["category"] = extracted.category
        if extracted.confidence >= self._scan.ai_high_confidence:
            updates["status"] = DocumentStatus.PENDING.value
        else:
            updates["status"] = DocumentStatus.REVIEW.value
        return updates

    # ------------------------------------------------------------------
    # Orchestrator tick
    # ------------------------------------------------------------------

    async def run_tick(self) -> TickResult:
        """One pass over every non-terminal job: at most one phase call each."""
        jobs = await self._store.list_non_terminal_jobs()
        result = TickResult()

        for job in jobs:
            if job.status == ScanStatus.PAUSED.value:
                continue
            result.dispatched += 1
            outcome = await self._dispatch(job)
            result.processed += outcome.processed
            result.outcomes.append(outcome)

        if result.dispatched:
            logger.info("scan_tick_complete", dispatched=result.dispatched, processed=result.processed)
        return result

    async def _dispatch(self, job: ScanJob) -> JobTickOutcome:
        outcome = JobTickOutcome(scan_job_id=job.id, status=ScanStatus(job.status))
        try:
            if job.status == ScanStatus.DISCOVERING.value:
                outcome.processed = (await self.discover(job.id)).found
            elif job.status == ScanStatus.PROCESSING.value:
                outcome.processed = (await self.process_regex_batch(job.id)).processed
            elif job.status == ScanStatus.AI_PASS.value:
                outcome.processed = (await self.process_ai_batch(job.id)).processed
        except ConfigurationError as exc:
            await self._store.fail_job(job.id, str(exc))
            outcome.error = str(exc)
        except Exception as exc:
            logger.exception("scan_job_tick_failed", scan_job_id=str(job.id))
            await self._store.record_job_error(job.id, str(exc))
            outcome.error = str(exc)

        refreshed = await self._store.get_scan_job(job.id)
        if refreshed is not None:
            outcome.status = ScanStatus(refreshed.status)
        return outcome
