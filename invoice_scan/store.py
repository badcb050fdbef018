"""Persistent job store: scan jobs, the per-message work queue, documents,
mailbox cursors and learned vendor mappings.

All state of the deep scan lives here; the orchestrator keeps nothing in
memory between invocations.  Queue claims are atomic: on PostgreSQL they
use ``FOR UPDATE SKIP LOCKED``, elsewhere a versioned optimistic update
that re-selects and retries on conflict.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

import structlog
from sqlalchemy import case, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .db.engine import Database
from .db.models import (
    FinancialDocument,
    MailboxConnection,
    ScanJob,
    ScanQueueItem,
    VendorCategoryMapping,
    utcnow,
)
from .errors import DuplicateDocumentError, ScanAlreadyActiveError
from .models import (
    NON_TERMINAL_STATUSES,
    RUNNING_STATUSES,
    ClaimedItem,
    DocumentCandidate,
    DocumentStatus,
    MailboxStatus,
    QueueCounts,
    QueueItemStatus,
    ScanStatus,
    VendorHint,
)

logger = structlog.get_logger()

# Rows per multi-VALUES insert; keeps bind parameters well under driver limits.
_INSERT_CHUNK = 150

_SYNC = {"synchronize_session": False}

_COUNTER_COLUMNS = frozenset(
    {
        "total_discovered",
        "total_to_process",
        "processed_count",
        "documents_created",
        "skipped_count",
        "error_count",
        "ai_total",
        "ai_processed",
        "ai_skipped",
    }
)


def _values(statuses: Iterable[ScanStatus]) -> list[str]:
    return [s.value for s in statuses]


def normalize_vendor(name: str) -> str:
    return name.strip().lower()


class ScanStore:
    """Async repository over the scan schema."""

    def __init__(self, db: Database, *, error_text_limit: int = 500) -> None:
        self._db = db
        self._error_text_limit = error_text_limit

    def truncate_error(self, message: str) -> str:
        return message[: self._error_text_limit]

    def _insert(self, model):
        if self._db.dialect == "postgresql":
            return postgresql.insert(model)
        return sqlite.insert(model)

    # ------------------------------------------------------------------
    # Mailbox connections
    # ------------------------------------------------------------------

    async def create_mailbox(
        self,
        account_id: uuid.UUID,
        *,
        email_address: str | None = None,
        access_token: str | None = None,
        sync_cursor: str | None = None,
        status: MailboxStatus = MailboxStatus.CONNECTED,
    ) -> MailboxConnection:
        mailbox = MailboxConnection(
            account_id=account_id,
            email_address=email_address,
            access_token=access_token,
            sync_cursor=sync_cursor,
            status=status.value,
        )
        async with self._db.session() as session, session.begin():
            session.add(mailbox)
        return mailbox

    async def get_mailbox(self, mailbox_id: uuid.UUID) -> MailboxConnection | None:
        async with self._db.session() as session:
            return await session.get(MailboxConnection, mailbox_id)

    async def list_connected_mailboxes(self) -> Sequence[MailboxConnection]:
        async with self._db.session() as session:
            result = await session.execute(
                select(MailboxConnection)
                .where(
                    MailboxConnection.status == MailboxStatus.CONNECTED.value,
                    MailboxConnection.access_token.is_not(None),
                )
                .order_by(MailboxConnection.created_at)
            )
            return result.scalars().all()

    async def update_sync_cursor(self, mailbox_id: uuid.UUID, cursor: str) -> None:
        now = utcnow()
        async with self._db.session() as session, session.begin():
            await session.execute(
                update(MailboxConnection)
                .where(MailboxConnection.id == mailbox_id)
                .values(sync_cursor=cursor, last_sync_at=now, updated_at=now)
                .execution_options(**_SYNC)
            )

    # ------------------------------------------------------------------
    # Scan jobs
    # ------------------------------------------------------------------

    async def create_scan_job(
        self,
        mailbox: MailboxConnection,
        *,
        query: str,
        after_date: str | None = None,
    ) -> ScanJob:
        """Insert a new DISCOVERING job; reject if the mailbox already has one."""
        existing = await self.get_non_terminal_job_for_mailbox(mailbox.id)
        if existing is not None:
            raise ScanAlreadyActiveError(existing.id)

        job = ScanJob(
            account_id=mailbox.account_id,
            mailbox_id=mailbox.id,
            status=ScanStatus.DISCOVERING.value,
            query=query,
            after_date=after_date,
        )
        try:
            async with self._db.session() as session, session.begin():
                session.add(job)
        except IntegrityError as exc:
            # Lost a race with a concurrent start on the partial unique index.
            winner = await self.get_non_terminal_job_for_mailbox(mailbox.id)
            raise ScanAlreadyActiveError(winner.id if winner else None) from exc
        return job

    async def get_scan_job(self, scan_job_id: uuid.UUID) -> ScanJob | None:
        async with self._db.session() as session:
            return await session.get(ScanJob, scan_job_id)

    async def get_non_terminal_job_for_mailbox(self, mailbox_id: uuid.UUID) -> ScanJob | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(ScanJob)
                .where(
                    ScanJob.mailbox_id == mailbox_id,
                    ScanJob.status.in_(_values(NON_TERMINAL_STATUSES)),
                )
                .order_by(ScanJob.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def has_running_scan_for_mailbox(self, mailbox_id: uuid.UUID) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                select(ScanJob.id)
                .where(
                    ScanJob.mailbox_id == mailbox_id,
                    ScanJob.status.in_(_values(RUNNING_STATUSES)),
                )
                .limit(1)
            )
            return result.first() is not None

    async def get_running_scan_for_account(self, account_id: uuid.UUID) -> ScanJob | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(ScanJob)
                .where(
                    ScanJob.account_id == account_id,
                    ScanJob.status.in_(_values(RUNNING_STATUSES)),
                )
                .order_by(ScanJob.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_latest_scan_job(self, account_id: uuid.UUID) -> ScanJob | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(ScanJob)
                .where(ScanJob.account_id == account_id)
                .order_by(ScanJob.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_non_terminal_jobs(self) -> Sequence[ScanJob]:
        """All jobs the orchestrator must look at, oldest first."""
        async with self._db.session() as session:
            result = await session.execute(
                select(ScanJob)
                .where(ScanJob.status.in_(_values(NON_TERMINAL_STATUSES)))
                .order_by(ScanJob.created_at.asc())
            )
            return result.scalars().all()

    async def update_scan_job(self, scan_job_id: uuid.UUID, **fields: object) -> None:
        async with self._db.session() as session, session.begin():
            await session.execute(
                update(ScanJob)
                .where(ScanJob.id == scan_job_id)
                .values(**fields, updated_at=utcnow())
                .execution_options(**_SYNC)
            )

    async def increment_counters(self, scan_job_id: uuid.UUID, **deltas: int) -> None:
        """Add each delta to its counter column (``col = col + n``)."""
        unknown = set(deltas) - _COUNTER_COLUMNS
        if unknown:
            raise ValueError(f"Unknown scan job counters: {sorted(unknown)}")
        values = {
            name: getattr(ScanJob, name) + delta for name, delta in deltas.items() if delta
        }
        if not values:
            return
        await self.update_scan_job(scan_job_id, **values)

    async def transition(
        self,
        scan_job_id: uuid.UUID,
        expected: ScanStatus | Sequence[ScanStatus],
        target: ScanStatus,
        **fields: object,
    ) -> bool:
        """Move the job to *target* only if it is still in *expected*.

        Returns False when another actor (e.g. a pause request) changed the
        status first; the caller must then leave the job alone.
        """
        expected_values = [expected.value] if isinstance(expected, ScanStatus) else _values(expected)
        async with self._db.session() as session, session.begin():
            result = await session.execute(
                update(ScanJob)
                .where(ScanJob.id == scan_job_id, ScanJob.status.in_(expected_values))
                .values(status=target.value, updated_at=utcnow(), **fields)
                .execution_options(**_SYNC)
            )
        moved = result.rowcount == 1
        if moved:
            logger.info(
                "scan_job_transition",
                scan_job_id=str(scan_job_id),
                to_status=target.value,
            )
        return moved

    async def record_job_error(self, scan_job_id: uuid.UUID, message: str) -> None:
        await self.update_scan_job(scan_job_id, last_error=self.truncate_error(message))

    async def fail_job(self, scan_job_id: uuid.UUID, message: str) -> bool:
        failed = await self.transition(
            scan_job_id,
            NON_TERMINAL_STATUSES,
            ScanStatus.FAILED,
            last_error=self.truncate_error(message),
        )
        if failed:
            logger.warning("scan_job_failed", scan_job_id=str(scan_job_id), error=message)
        return failed

    # ------------------------------------------------------------------
    # Scan queue
    # ------------------------------------------------------------------

    async def insert_queue_items(self, scan_job_id: uuid.UUID, remote_message_ids: Iterable[str]) -> int:
        """Upsert message ids as PENDING items; returns how many were new."""
        unique_ids = list(dict.fromkeys(remote_message_ids))
        if not unique_ids:
            return 0

        inserted = 0
        now = utcnow()
        async with self._db.session() as session, session.begin():
            for start in range(0, len(unique_ids), _INSERT_CHUNK):
                rows = [
                    {
                        "id": uuid.uuid4(),
                        "scan_job_id": scan_job_id,
                        "remote_message_id": message_id,
                        "status": QueueItemStatus.PENDING.value,
                        "needs_ai": False,
                        "version": 0,
                        "created_at": now,
                        "updated_at": now,
                    }
                    for message_id in unique_ids[start : start + _INSERT_CHUNK]
                ]
                stmt = (
                    self._insert(ScanQueueItem)
                    .values(rows)
                    .on_conflict_do_nothing(index_elements=["scan_job_id", "remote_message_id"])
                    .returning(ScanQueueItem.id)
                )
                result = await session.execute(stmt)
                inserted += len(result.all())
        return inserted

    async def claim_pending(self, scan_job_id: uuid.UUID, limit: int) -> list[ClaimedItem]:
        """Claim up to *limit* PENDING items (→ PROCESSING) for this invocation."""
        return await self._claim(
            scan_job_id,
            source=QueueItemStatus.PENDING,
            target=QueueItemStatus.PROCESSING,
            limit=limit,
        )

    async def claim_for_ai(self, scan_job_id: uuid.UUID, limit: int) -> list[ClaimedItem]:
        """Claim up to *limit* REGEX_DONE items flagged needs-AI (→ AI_PROCESSING)."""
        return await self._claim(
            scan_job_id,
            source=QueueItemStatus.REGEX_DONE,
            target=QueueItemStatus.AI_PROCESSING,
            limit=limit,
            needs_ai=True,
        )

    async def _claim(
        self,
        scan_job_id: uuid.UUID,
        *,
        source: QueueItemStatus,
        target: QueueItemStatus,
        limit: int,
        needs_ai: bool | None = None,
    ) -> list[ClaimedItem]:
        if limit <= 0:
            return []

        conditions = [
            ScanQueueItem.scan_job_id == scan_job_id,
            ScanQueueItem.status == source.value,
        ]
        if needs_ai is not None:
            conditions.append(ScanQueueItem.needs_ai.is_(needs_ai))

        async with self._db.session() as session, session.begin():
            if self._db.dialect == "postgresql":
                rows = await self._claim_skip_locked(session, conditions, target, limit)
            else:
                rows = await self._claim_optimistic(session, conditions, target, limit)

        return [
            ClaimedItem(
                id=row.id,
                scan_job_id=row.scan_job_id,
                remote_message_id=row.remote_message_id,
                document_id=row.document_id,
            )
            for row in rows
        ]

    @staticmethod
    def _claimed_columns():
        return (
            ScanQueueItem.id,
            ScanQueueItem.scan_job_id,
            ScanQueueItem.remote_message_id,
            ScanQueueItem.document_id,
        )

    async def _claim_skip_locked(self, session: AsyncSession, conditions, target, limit):
        candidates = (
            select(ScanQueueItem.id)
            .where(*conditions)
            .order_by(ScanQueueItem.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await session.execute(
            update(ScanQueueItem)
            .where(ScanQueueItem.id.in_(candidates))
            .values(status=target.value, version=ScanQueueItem.version + 1, updated_at=utcnow())
            .returning(*self._claimed_columns())
            .execution_options(**_SYNC)
        )
        return result.all()

    async def _claim_optimistic(self, session: AsyncSession, conditions, target, limit):
        claimed = []
        while len(claimed) < limit:
            candidates = (
                await session.execute(
                    select(ScanQueueItem.id, ScanQueueItem.version)
                    .where(*conditions)
                    .order_by(ScanQueueItem.created_at)
                    .limit(limit - len(claimed))
                )
            ).all()
            if not candidates:
                break
            for item_id, version in candidates:
                result = await session.execute(
                    update(ScanQueueItem)
                    .where(
                        ScanQueueItem.id == item_id,
                        ScanQueueItem.version == version,
                        *conditions,
                    )
                    .values(status=target.value, version=version + 1, updated_at=utcnow())
                    .returning(*self._claimed_columns())
                    .execution_options(**_SYNC)
                )
                row = result.first()
                if row is not None:
                    claimed.append(row)
        return claimed

    async def release_items(self, item_ids: Sequence[uuid.UUID], status: QueueItemStatus) -> None:
        """Return claimed items to a re-claimable *status*."""
        if not item_ids:
            return
        async with self._db.session() as session, session.begin():
            await session.execute(
                update(ScanQueueItem)
                .where(ScanQueueItem.id.in_(list(item_ids)))
                .values(status=status.value, version=ScanQueueItem.version + 1, updated_at=utcnow())
                .execution_options(**_SYNC)
            )

    async def release_stale_claims(
        self,
        scan_job_id: uuid.UUID,
        *,
        claimed: QueueItemStatus,
        back_to: QueueItemStatus,
        older_than: timedelta,
    ) -> int:
        """Release claims abandoned by an invocation that was killed mid-batch."""
        cutoff: datetime = utcnow() - older_than
        async with self._db.session() as session, session.begin():
            result = await session.execute(
                update(ScanQueueItem)
                .where(
                    ScanQueueItem.scan_job_id == scan_job_id,
                    ScanQueueItem.status == claimed.value,
                    ScanQueueItem.updated_at < cutoff,
                )
                .values(status=back_to.value, version=ScanQueueItem.version + 1, updated_at=utcnow())
                .execution_options(**_SYNC)
            )
        released = result.rowcount or 0
        if released:
            logger.warning(
                "stale_claims_released",
                scan_job_id=str(scan_job_id),
                status=claimed.value,
                released=released,
            )
        return released

    async def mark_item(
        self,
        item_id: uuid.UUID,
        status: QueueItemStatus,
        *,
        needs_ai: bool | None = None,
        document_id: uuid.UUID | None = None,
        error_message: str | None = None,
    ) -> None:
        values: dict[str, object] = {"status": status.value, "updated_at": utcnow()}
        if needs_ai is not None:
            values["needs_ai"] = needs_ai
        if document_id is not None:
            values["document_id"] = document_id
        if error_message is not None:
            values["error_message"] = self.truncate_error(error_message)
        async with self._db.session() as session, session.begin():
            await session.execute(
                update(ScanQueueItem)
                .where(ScanQueueItem.id == item_id)
                .values(**values)
                .execution_options(**_SYNC)
            )

    async def queue_counts(self, scan_job_id: uuid.UUID) -> QueueCounts:
        async with self._db.session() as session:
            result = await session.execute(
                select(
                    ScanQueueItem.status,
                    func.count(),
                    func.sum(case((ScanQueueItem.needs_ai.is_(True), 1), else_=0)),
                )
                .where(ScanQueueItem.scan_job_id == scan_job_id)
                .group_by(ScanQueueItem.status)
            )
            rows = result.all()

        counts = QueueCounts()
        for status, count, needs_ai in rows:
            item_status = QueueItemStatus(status)
            counts.by_status[item_status] = count
            if item_status is QueueItemStatus.REGEX_DONE:
                counts.regex_done_needing_ai = int(needs_ai or 0)
        return counts

    async def get_queue_items(self, scan_job_id: uuid.UUID) -> Sequence[ScanQueueItem]:
        async with self._db.session() as session:
            result = await session.execute(
                select(ScanQueueItem)
                .where(ScanQueueItem.scan_job_id == scan_job_id)
                .order_by(ScanQueueItem.created_at)
            )
            return result.scalars().all()

    # ------------------------------------------------------------------
    # Financial documents
    # ------------------------------------------------------------------

    async def has_document(self, account_id: uuid.UUID, remote_message_id: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                select(FinancialDocument.id)
                .where(
                    FinancialDocument.account_id == account_id,
                    FinancialDocument.remote_message_id == remote_message_id,
                )
                .limit(1)
            )
            return result.first() is not None

    async def create_document(
        self,
        account_id: uuid.UUID,
        mailbox_id: uuid.UUID | None,
        candidate: DocumentCandidate,
        *,
        status: DocumentStatus = DocumentStatus.PENDING,
    ) -> uuid.UUID:
        """Insert a document; raises :class:`DuplicateDocumentError` on a repeat."""
        document = FinancialDocument(
            account_id=account_id,
            mailbox_id=mailbox_id,
            source="EMAIL",
            type=candidate.type.value,
            status=status.value,
            vendor_name=candidate.vendor_name,
            amount_minor=candidate.amount_minor,
            currency=candidate.currency,
            vat_minor=candidate.vat_minor,
            issued_at=candidate.issued_at,
            confidence=candidate.confidence,
            category=candidate.category,
            raw_text=candidate.raw_text,
            remote_message_id=candidate.remote_message_id,
        )
        try:
            async with self._db.session() as session, session.begin():
                session.add(document)
        except IntegrityError as exc:
            raise DuplicateDocumentError(candidate.remote_message_id) from exc
        return document.id

    async def get_document(self, document_id: uuid.UUID) -> FinancialDocument | None:
        async with self._db.session() as session:
            return await session.get(FinancialDocument, document_id)

    async def update_document(self, document_id: uuid.UUID, **fields: object) -> None:
        async with self._db.session() as session, session.begin():
            await session.execute(
                update(FinancialDocument)
                .where(FinancialDocument.id == document_id)
                .values(**fields, updated_at=utcnow())
                .execution_options(**_SYNC)
            )

    async def known_vendor_extraction(
        self,
        account_id: uuid.UUID,
        vendor_name: str,
        *,
        min_documents: int,
        min_confidence: float,
    ) -> VendorHint | None:
        """Most common (vendor, category) among high-confidence documents.

        Returns None unless that pair occurs at least *min_documents* times.
        """
        async with self._db.session() as session:
            result = await session.execute(
                select(
                    FinancialDocument.vendor_name,
                    FinancialDocument.category,
                    func.count().label("n"),
                )
                .where(
                    FinancialDocument.account_id == account_id,
                    func.lower(FinancialDocument.vendor_name) == normalize_vendor(vendor_name),
                    FinancialDocument.confidence >= min_confidence,
                    FinancialDocument.category.is_not(None),
                )
                .group_by(FinancialDocument.vendor_name, FinancialDocument.category)
                .order_by(func.count().desc())
                .limit(1)
            )
            row = result.first()
        if row is None or row.n < min_documents:
            return None
        return VendorHint(vendor_name=row.vendor_name, category=row.category)

    # ------------------------------------------------------------------
    # Learned vendor → category mappings
    # ------------------------------------------------------------------

    async def upsert_vendor_mapping(self, account_id: uuid.UUID, vendor_name: str, category: str) -> None:
        now = utcnow()
        stmt = self._insert(VendorCategoryMapping).values(
            id=uuid.uuid4(),
            account_id=account_id,
            vendor_name_normalized=normalize_vendor(vendor_name),
            vendor_name_original=vendor_name,
            category=category,
            correction_count=1,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["account_id", "vendor_name_normalized"],
            set_={
                "category": stmt.excluded.category,
                "vendor_name_original": stmt.excluded.vendor_name_original,
                "correction_count": VendorCategoryMapping.correction_count + 1,
                "updated_at": now,
            },
        )
        async with self._db.session() as session, session.begin():
            await session.execute(stmt)

    async def get_vendor_mapping(self, account_id: uuid.UUID, vendor_name: str) -> VendorHint | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(VendorCategoryMapping).where(
                    VendorCategoryMapping.account_id == account_id,
                    VendorCategoryMapping.vendor_name_normalized == normalize_vendor(vendor_name),
                )
            )
            mapping = result.scalar_one_or_none()
        if mapping is None:
            return None
        return VendorHint(vendor_name=mapping.vendor_name_original, category=mapping.category)

    async def list_vendor_mappings(self, account_id: uuid.UUID, *, limit: int | None = None) -> list[VendorHint]:
        """Learned mappings, most-corrected first."""
        stmt = (
            select(VendorCategoryMapping)
            .where(VendorCategoryMapping.account_id == account_id)
            .order_by(VendorCategoryMapping.correction_count.desc(), VendorCategoryMapping.updated_at.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._db.session() as session:
            result = await session.execute(stmt)
            mappings = result.scalars().all()
        return [VendorHint(vendor_name=m.vendor_name_original, category=m.category) for m in mappings]
