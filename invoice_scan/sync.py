"""Incremental mailbox sync.

Picks up messages added since the mailbox's saved history cursor, runs
the regex extractor on each (plus capped inline AI enrichment) and stores
new documents.  Stays out of the way of an active deep scan on the same
mailbox.  The onboarding quick scan lists recent months instead, with an
optional AI variant that classifies a batch of messages in one call.
"""

from __future__ import annotations

import math
import uuid
from collections.abc import Callable
from datetime import UTC, date, datetime

import structlog

from .config import Settings
from .db.models import MailboxConnection
from .deep_scan import extract_attachment
from .enrichment import EnrichmentClient
from .errors import ConfigurationError, CursorExpiredError, DuplicateDocumentError, MailboxNotFoundError
from .extractor import deep_scan_query, extract_amount, extract_document, extract_vendor, invoice_query
from .mailbox import MailboxClient, MailboxFactory, list_recent
from .models import (
    DocumentCandidate,
    DocumentType,
    EmailCandidate,
    EmailClassification,
    ExtractedInvoice,
    QuickScanResult,
    RemoteMessage,
    SyncResult,
    VendorHint,
)
from .service import today_utc
from .store import ScanStore

logger = structlog.get_logger()

_VENDOR_OVERRIDE_CONFIDENCE = 0.9
_QUICK_SCAN_TEXT_CHARS = 2000


def months_before(day: date, months: int) -> date:
    month_index = day.year * 12 + day.month - 1 - months
    year, month = divmod(month_index, 12)
    month += 1
    for candidate_day in (day.day, 30, 29, 28):
        try:
            return date(year, month, candidate_day)
        except ValueError:
            continue
    raise ValueError(f"Cannot shift {day} back {months} months")


def _email_candidate(index: int, message: RemoteMessage) -> EmailCandidate:
    return EmailCandidate(
        index=index,
        subject=message.subject,
        sender=message.sender,
        snippet=message.snippet,
        date=message.headers.get("date") or message.internal_date.date().isoformat(),
        attachment_names=[att.filename for att in message.attachments if att.filename],
    )


def _parse_issued_at(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.strptime(value[:10], "%Y-%m-%d").replace(tzinfo=UTC)
    except ValueError:
        return None


class IncrementalSync:
    """Cursor-based sync of new messages, one mailbox at a time."""

    def __init__(
        self,
        store: ScanStore,
        mailbox_factory: MailboxFactory,
        enrichment: EnrichmentClient,
        settings: Settings,
        *,
        today: Callable[[], date] = today_utc,
    ) -> None:
        self._store = store
        self._mailbox_factory = mailbox_factory
        self._enrichment = enrichment
        self._settings = settings
        self._config = settings.sync
        self._today = today

    async def sync_mailbox(self, mailbox_id: uuid.UUID, *, quick_scan: bool = False) -> SyncResult:
        """Sync one mailbox.

        With *quick_scan* the last few months are listed instead of the
        history delta, AI is not used and processing stops after a handful
        of documents.
        """
        mailbox = await self._store.get_mailbox(mailbox_id)
        if mailbox is None:
            raise MailboxNotFoundError(f"Mailbox {mailbox_id} not found")

        if await self._store.has_running_scan_for_mailbox(mailbox_id):
            logger.info("mailbox_sync_deferred", mailbox_id=str(mailbox_id), reason="deep_scan_active")
            return SyncResult(deferred=True)

        client = self._mailbox_factory(mailbox)
        message_ids = await self._candidate_ids(client, mailbox, quick_scan)
        use_ai = not quick_scan and self._enrichment.enabled
        hints = await self._store.list_vendor_mappings(mailbox.account_id) if use_ai else []

        result = SyncResult(candidates=len(message_ids))
        for message_id in message_ids:
            if quick_scan and result.new_documents >= self._config.quick_scan_document_limit:
                break
            if await self._store.has_document(mailbox.account_id, message_id):
                result.skipped_duplicate += 1
                continue

            result.processed += 1
            try:
                message = await client.get_message(message_id)
                candidate = extract_document(
                    message,
                    default_currency=self._settings.default_currency,
                    vat_rate=self._settings.vat_rate,
                )
                if candidate is None:
                    result.skipped_no_match += 1
                    continue

                if use_ai and result.ai_processed < self._config.ai_call_cap:
                    if await self._enrich(client, message, candidate, hints):
                        result.ai_processed += 1

                if not quick_scan:
                    await self._apply_vendor_override(mailbox.account_id, candidate)

                await self._store.create_document(mailbox.account_id, mailbox.id, candidate)
                result.new_documents += 1
            except DuplicateDocumentError:
                result.skipped_duplicate += 1
            except ConfigurationError:
                raise
            except Exception as exc:
                logger.warning(
                    "sync_message_failed",
                    mailbox_id=str(mailbox_id),
                    remote_message_id=message_id,
                    error=str(exc),
                )

        await self._advance_cursor(client, mailbox)
        logger.info(
            "mailbox_sync_complete",
            mailbox_id=str(mailbox_id),
            quick_scan=quick_scan,
            new_documents=result.new_documents,
            candidates=result.candidates,
            processed=result.processed,
            skipped_no_match=result.skipped_no_match,
            skipped_duplicate=result.skipped_duplicate,
            ai_processed=result.ai_processed,
        )
        return result

    async def sync_all(self) -> int:
        """Sync every connected mailbox; returns the number of new documents."""
        total = 0
        for mailbox in await self._store.list_connected_mailboxes():
            try:
                total += (await self.sync_mailbox(mailbox.id)).new_documents
            except Exception:
                logger.exception("mailbox_sync_failed", mailbox_id=str(mailbox.id))
        return total

    async def quick_scan_with_ai(self, mailbox_id: uuid.UUID) -> QuickScanResult:
        """Onboarding preview: one batch classification call picks the invoices.

        The first messages of the quick scan listing are classified by
        metadata; confirmed expenses become documents only when an amount
        can be found.  Falls back to the regex quick scan of
        :meth:`sync_mailbox` when AI is disabled.
        """
        if not self._enrichment.enabled:
            fallback = await self.sync_mailbox(mailbox_id, quick_scan=True)
            return QuickScanResult(
                new_documents=fallback.new_documents,
                candidates=fallback.candidates,
                deferred=fallback.deferred,
            )

        mailbox = await self._store.get_mailbox(mailbox_id)
        if mailbox is None:
            raise MailboxNotFoundError(f"Mailbox {mailbox_id} not found")

        if await self._store.has_running_scan_for_mailbox(mailbox_id):
            logger.info("quick_scan_deferred", mailbox_id=str(mailbox_id), reason="deep_scan_active")
            return QuickScanResult(deferred=True)

        client = self._mailbox_factory(mailbox)
        message_ids = await self._candidate_ids(client, mailbox, quick_scan=True)
        result = QuickScanResult(candidates=len(message_ids))
        if not message_ids:
            await self._advance_cursor(client, mailbox)
            logger.info("quick_scan_complete", mailbox_id=str(mailbox_id), new_documents=0, candidates=0)
            return result

        messages = await self._fetch_messages(client, message_ids[: self._config.quick_scan_classify_limit])
        try:
            classifications = await self._enrichment.classify_batch(
                [_email_candidate(index, message) for index, message in enumerate(messages)]
            )
        except Exception as exc:
            logger.warning("quick_scan_classification_failed", mailbox_id=str(mailbox_id), error=str(exc))
            return result

        confirmed = [
            c
            for c in classifications
            if c.is_invoice
            and c.confidence >= self._config.quick_scan_ai_min_confidence
            and 0 <= c.index < len(messages)
        ]
        result.ai_confirmed = len(confirmed)

        for classification in confirmed:
            if result.new_documents >= self._config.quick_scan_ai_document_limit:
                break
            message = messages[classification.index]
            if await self._store.has_document(mailbox.account_id, message.id):
                continue
            candidate = self._classified_document(message, classification)
            if candidate.amount_minor == 0:
                logger.info("quick_scan_no_amount", remote_message_id=message.id, vendor=candidate.vendor_name)
                continue
            try:
                await self._store.create_document(mailbox.account_id, mailbox.id, candidate)
            except DuplicateDocumentError:
                continue
            result.new_documents += 1

        await self._advance_cursor(client, mailbox)
        logger.info(
            "quick_scan_complete",
            mailbox_id=str(mailbox_id),
            new_documents=result.new_documents,
            candidates=result.candidates,
            classified=len(messages),
            ai_confirmed=result.ai_confirmed,
        )
        return result

    async def _fetch_messages(self, client: MailboxClient, message_ids: list[str]) -> list[RemoteMessage]:
        messages = []
        for message_id in message_ids:
            try:
                messages.append(await client.get_message(message_id))
            except ConfigurationError:
                raise
            except Exception as exc:
                logger.warning("quick_scan_fetch_failed", remote_message_id=message_id, error=str(exc))
        return messages

    def _classified_document(self, message: RemoteMessage, classification: EmailClassification) -> DocumentCandidate:
        """Document for an AI-confirmed message; amounts found in the text win over the model's."""
        body = (message.body_text or "")[:_QUICK_SCAN_TEXT_CHARS]
        default_currency = self._settings.default_currency
        amount_minor, currency = extract_amount(
            f"{message.subject} {message.snippet} {body}",
            default_currency=default_currency,
        )
        if amount_minor == 0:
            amount_minor = classification.amount_minor
            currency = classification.currency or default_currency

        vat_minor = None
        if amount_minor > 0 and currency == default_currency:
            vat_minor = math.floor(amount_minor * self._settings.vat_rate)

        return DocumentCandidate(
            remote_message_id=message.id,
            type=classification.type,
            vendor_name=classification.vendor_name or extract_vendor(message.sender),
            amount_minor=amount_minor,
            currency=currency,
            vat_minor=vat_minor,
            issued_at=message.internal_date,
            confidence=classification.confidence,
            raw_text=(body or message.snippet[:_QUICK_SCAN_TEXT_CHARS]) or None,
            category=classification.category,
        )

    async def _candidate_ids(
        self,
        client: MailboxClient,
        mailbox: MailboxConnection,
        quick_scan: bool,
    ) -> list[str]:
        if quick_scan:
            after = months_before(self._today(), self._config.quick_scan_months).strftime("%Y/%m/%d")
            return await list_recent(client, deep_scan_query(after), self._config.quick_scan_max_ids)

        if mailbox.sync_cursor:
            try:
                return await client.history_delta(mailbox.sync_cursor)
            except CursorExpiredError:
                logger.warning("sync_cursor_expired", mailbox_id=str(mailbox.id))

        return await list_recent(client, invoice_query(), self._config.fallback_recent_limit)

    async def _enrich(
        self,
        client: MailboxClient,
        message: RemoteMessage,
        candidate: DocumentCandidate,
        hints: list[VendorHint],
    ) -> bool:
        """Run one AI extraction; returns True if the AI client was called successfully."""
        try:
            if candidate.attachments:
                attachment = candidate.attachments[0]
                data = await client.get_attachment(message.id, attachment.attachment_id)
                extracted = await extract_attachment(self._enrichment, attachment, data, hints)
            elif candidate.raw_text:
                extracted = await self._enrichment.extract_text(candidate.raw_text, hints)
            else:
                return False
        except Exception as exc:
            # Keep the regex result.
            logger.warning("sync_ai_failed", remote_message_id=message.id, error=str(exc))
            return False

        if extracted.confidence > self._settings.scan.ai_min_confidence:
            self._merge(candidate, extracted)
        return True

    def _merge(self, candidate: DocumentCandidate, extracted: ExtractedInvoice) -> None:
        candidate.vendor_name = extracted.vendor_name or candidate.vendor_name
        candidate.amount_minor = extracted.amount_minor or candidate.amount_minor
        if extracted.vat_minor is not None:
            candidate.vat_minor = extracted.vat_minor
        candidate.category = extracted.category or candidate.category
        candidate.confidence = extracted.confidence
        candidate.type = DocumentType(extracted.type)
        issued_at = _parse_issued_at(extracted.issued_at)
        if issued_at is not None and issued_at.date() != self._today():
            candidate.issued_at = issued_at

    async def _apply_vendor_override(self, account_id: uuid.UUID, candidate: DocumentCandidate) -> None:
        mapping = await self._store.get_vendor_mapping(account_id, candidate.vendor_name)
        if mapping is not None:
            candidate.category = mapping.category
            candidate.confidence = max(candidate.confidence, _VENDOR_OVERRIDE_CONFIDENCE)

    async def _advance_cursor(self, client: MailboxClient, mailbox: MailboxConnection) -> None:
        try:
            cursor = await client.latest_cursor()
            await self._store.update_sync_cursor(mailbox.id, cursor)
        except Exception:
            logger.warning("sync_cursor_update_failed", mailbox_id=str(mailbox.id), exc_info=True)
