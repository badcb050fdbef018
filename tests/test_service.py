"""Tests for invoice_scan.service."""

from __future__ import annotations

import uuid
from datetime import date

import pytest

from invoice_scan.db.models import MailboxConnection, ScanJob
from invoice_scan.errors import (
    InvalidScanStateError,
    MailboxNotFoundError,
    ScanAlreadyActiveError,
    ScanJobNotFoundError,
)
from invoice_scan.extractor import deep_scan_query
from invoice_scan.models import MailboxStatus, QueueCounts, QueueItemStatus, ScanStatus
from invoice_scan.service import DeepScanService, build_status_report, resume_status, years_before
from invoice_scan.store import ScanStore
from tests.conftest import invoice_ids, make_message, pdf_attachment


def _job(**overrides) -> ScanJob:
    values = dict(discovery_completed=True, discovery_cursor=None)
    values.update(overrides)
    return ScanJob(**values)


class TestYearsBefore:
    def test_plain_date(self):
        assert years_before(date(2026, 3, 15), 3) == date(2023, 3, 15)

    def test_leap_day(self):
        assert years_before(date(2024, 2, 29), 1) == date(2023, 2, 28)


class TestResumeStatus:
    def test_unfinished_discovery(self):
        counts = QueueCounts(by_status={QueueItemStatus.PENDING: 10})
        assert resume_status(_job(discovery_completed=False), counts) is ScanStatus.DISCOVERING

    def test_pending_items(self):
        counts = QueueCounts(by_status={QueueItemStatus.PENDING: 3, QueueItemStatus.REGEX_DONE: 2})
        assert resume_status(_job(), counts) is ScanStatus.PROCESSING

    def test_items_waiting_for_ai(self):
        counts = QueueCounts(by_status={QueueItemStatus.REGEX_DONE: 2}, regex_done_needing_ai=1)
        assert resume_status(_job(), counts) is ScanStatus.AI_PASS

    def test_items_in_ai_processing(self):
        counts = QueueCounts(by_status={QueueItemStatus.AI_PROCESSING: 1})
        assert resume_status(_job(), counts) is ScanStatus.AI_PASS

    def test_cursor_left(self):
        assert resume_status(_job(discovery_cursor="500"), QueueCounts()) is ScanStatus.DISCOVERING

    def test_nothing_left(self):
        counts = QueueCounts(by_status={QueueItemStatus.REGEX_DONE: 4})
        assert resume_status(_job(), counts) is ScanStatus.PROCESSING


class TestBuildStatusReport:
    def test_no_job(self):
        report = build_status_report(None)
        assert report.active is False
        assert report.scan_job_id is None
        assert report.processing is None

    def test_progress(self):
        job = _job(
            id=uuid.uuid4(),
            status=ScanStatus.PROCESSING.value,
            total_discovered=3,
            total_to_process=3,
            processed_count=1,
            documents_created=1,
            skipped_count=0,
            error_count=0,
            ai_total=3,
            ai_processed=2,
            ai_skipped=1,
        )

        report = build_status_report(job)

        assert report.active is True
        assert report.status is ScanStatus.PROCESSING
        assert report.discovery.total_found == 3
        assert report.discovery.is_complete is True
        assert report.processing.percent == 33
        assert report.ai.percent == 67
        assert report.ai.skipped == 1

    def test_paused_is_not_active(self):
        job = _job(
            id=uuid.uuid4(),
            status=ScanStatus.PAUSED.value,
            total_discovered=0,
            total_to_process=0,
            processed_count=0,
            documents_created=0,
            skipped_count=0,
            error_count=0,
            ai_total=0,
            ai_processed=0,
            ai_skipped=0,
        )

        report = build_status_report(job)

        assert report.active is False
        assert report.processing.percent == 0
        assert report.ai.percent == 0


class TestStart:
    @pytest.mark.asyncio
    async def test_creates_discovering_job(self, service: DeepScanService, store: ScanStore, mailbox):
        job = await service.start(mailbox.id)

        loaded = await store.get_scan_job(job.id)
        assert loaded.status == ScanStatus.DISCOVERING.value
        assert loaded.after_date == "2023/03/15"
        assert loaded.query == deep_scan_query("2023/03/15")

    @pytest.mark.asyncio
    async def test_unknown_mailbox(self, service: DeepScanService, db):
        with pytest.raises(MailboxNotFoundError):
            await service.start(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_disconnected_mailbox(self, service: DeepScanService, store: ScanStore, account_id):
        disconnected = await store.create_mailbox(account_id, access_token="tok", status=MailboxStatus.DISCONNECTED)

        with pytest.raises(MailboxNotFoundError):
            await service.start(disconnected.id)

    @pytest.mark.asyncio
    async def test_rejects_second_scan(self, service: DeepScanService, mailbox):
        first = await service.start(mailbox.id)

        with pytest.raises(ScanAlreadyActiveError) as exc_info:
            await service.start(mailbox.id)
        assert exc_info.value.scan_job_id == first.id

    @pytest.mark.asyncio
    async def test_rejects_while_paused(self, service: DeepScanService, mailbox):
        first = await service.start(mailbox.id)
        await service.pause(first.id)

        with pytest.raises(ScanAlreadyActiveError):
            await service.start(mailbox.id)

    @pytest.mark.asyncio
    async def test_restart_after_failure(self, service: DeepScanService, store: ScanStore, mailbox):
        failed = await service.start(mailbox.id)
        await store.fail_job(failed.id, "token revoked")

        second = await service.start(mailbox.id)

        assert second.id != failed.id
        assert (await store.get_scan_job(failed.id)).status == ScanStatus.FAILED.value


class TestStatus:
    @pytest.mark.asyncio
    async def test_never_scanned(self, service: DeepScanService, account_id, db):
        report = await service.status(account_id)
        assert report.active is False
        assert report.scan_job_id is None

    @pytest.mark.asyncio
    async def test_running_scan(self, service: DeepScanService, store: ScanStore, mailbox, account_id):
        job = await service.start(mailbox.id)
        await store.insert_queue_items(job.id, invoice_ids(4))
        await store.update_scan_job(job.id, total_discovered=4)

        report = await service.status(account_id)

        assert report.active is True
        assert report.scan_job_id == job.id
        assert report.status is ScanStatus.DISCOVERING
        assert report.discovery.total_found == 4
        assert report.discovery.is_complete is False
        assert report.processing.total == 4
        assert report.started_at is not None

    @pytest.mark.asyncio
    async def test_prefers_running_over_latest(
        self, service: DeepScanService, store: ScanStore, mailbox: MailboxConnection, account_id
    ):
        running = await service.start(mailbox.id)
        other = await store.create_mailbox(account_id, access_token="tok-2")
        finished = await service.start(other.id)
        await store.transition(finished.id, ScanStatus.DISCOVERING, ScanStatus.COMPLETED)

        report = await service.status(account_id)

        assert report.scan_job_id == running.id

    @pytest.mark.asyncio
    async def test_latest_finished_scan(self, service: DeepScanService, store: ScanStore, mailbox, account_id):
        job = await service.start(mailbox.id)
        await store.fail_job(job.id, "token revoked")

        report = await service.status(account_id)

        assert report.active is False
        assert report.status is ScanStatus.FAILED
        assert report.last_error == "token revoked"


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_pause_running_job(self, service: DeepScanService, store: ScanStore, mailbox):
        job = await service.start(mailbox.id)

        assert await service.pause(job.id) is ScanStatus.PAUSED
        assert (await store.get_scan_job(job.id)).status == ScanStatus.PAUSED.value

    @pytest.mark.asyncio
    async def test_pause_unknown_job(self, service: DeepScanService, db):
        with pytest.raises(ScanJobNotFoundError):
            await service.pause(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_pause_twice(self, service: DeepScanService, mailbox):
        job = await service.start(mailbox.id)
        await service.pause(job.id)

        with pytest.raises(InvalidScanStateError):
            await service.pause(job.id)

    @pytest.mark.asyncio
    async def test_pause_finished_job(self, service: DeepScanService, store: ScanStore, mailbox):
        job = await service.start(mailbox.id)
        await store.transition(job.id, ScanStatus.DISCOVERING, ScanStatus.COMPLETED)

        with pytest.raises(InvalidScanStateError):
            await service.pause(job.id)

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, service: DeepScanService, mailbox):
        job = await service.start(mailbox.id)

        with pytest.raises(InvalidScanStateError):
            await service.resume(job.id)

    @pytest.mark.asyncio
    async def test_resume_unknown_job(self, service: DeepScanService, db):
        with pytest.raises(ScanJobNotFoundError):
            await service.resume(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_resume_into_processing(self, service: DeepScanService, store: ScanStore, mailbox):
        job = await service.start(mailbox.id)
        await store.insert_queue_items(job.id, invoice_ids(5))
        await store.transition(job.id, ScanStatus.DISCOVERING, ScanStatus.PROCESSING, discovery_completed=True)
        await service.pause(job.id)

        assert await service.resume(job.id) is ScanStatus.PROCESSING
        assert (await store.get_scan_job(job.id)).status == ScanStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_resume_into_ai_pass(self, service: DeepScanService, store: ScanStore, mailbox):
        job = await service.start(mailbox.id)
        await store.insert_queue_items(job.id, ["a"])
        [item] = await store.claim_pending(job.id, 1)
        await store.mark_item(item.id, QueueItemStatus.REGEX_DONE, needs_ai=True)
        await store.transition(job.id, ScanStatus.DISCOVERING, ScanStatus.AI_PASS, discovery_completed=True)
        await service.pause(job.id)

        assert await service.resume(job.id) is ScanStatus.AI_PASS

    @pytest.mark.asyncio
    async def test_pause_before_first_page_resumes_discovery(
        self, service: DeepScanService, runner, store: ScanStore, fake_mailbox, mailbox
    ):
        fake_mailbox.listing = invoice_ids(20)
        job = await service.start(mailbox.id)
        await service.pause(job.id)

        tick = await runner.run_tick()
        assert tick.dispatched == 0

        assert await service.resume(job.id) is ScanStatus.DISCOVERING
        await runner.run_tick()

        loaded = await store.get_scan_job(job.id)
        assert loaded.status == ScanStatus.PROCESSING.value
        assert loaded.total_to_process == 20
        assert (await store.queue_counts(job.id)).pending == 20

    @pytest.mark.asyncio
    async def test_pause_mid_discovery_rediscovers_without_duplicates(
        self, service: DeepScanService, runner, store: ScanStore, fake_mailbox, mailbox, settings, clock
    ):
        settings.gmail.page_size = 10
        clock.step = 30
        fake_mailbox.listing = invoice_ids(25)
        job = await service.start(mailbox.id)

        await runner.run_tick()
        assert (await store.get_scan_job(job.id)).discovery_cursor == "10"
        await service.pause(job.id)
        assert await service.resume(job.id) is ScanStatus.DISCOVERING
        clock.step = 0
        await runner.run_tick()

        loaded = await store.get_scan_job(job.id)
        assert loaded.status == ScanStatus.PROCESSING.value
        assert loaded.total_discovered == 25
        assert (await store.queue_counts(job.id)).total == 25

    @pytest.mark.asyncio
    async def test_resume_after_drained_regex_batch_sets_ai_total(
        self, service: DeepScanService, runner, store: ScanStore, fake_mailbox, mailbox
    ):
        ids = invoice_ids(2)
        for message_id in ids:
            fake_mailbox.messages[message_id] = make_message(message_id, attachments=[pdf_attachment()])
        job = await service.start(mailbox.id)
        await store.insert_queue_items(job.id, ids)
        await store.transition(
            job.id, ScanStatus.DISCOVERING, ScanStatus.PROCESSING, total_to_process=2, discovery_completed=True
        )

        # drains the queue; the AI_PASS transition only happens on the next call
        await runner.process_regex_batch(job.id)
        assert (await store.get_scan_job(job.id)).status == ScanStatus.PROCESSING.value
        assert (await store.queue_counts(job.id)).regex_done_needing_ai == 2
        await service.pause(job.id)

        assert await service.resume(job.id) is ScanStatus.AI_PASS
        assert (await store.get_scan_job(job.id)).ai_total == 2

        await runner.process_ai_batch(job.id)

        report = build_status_report(await store.get_scan_job(job.id))
        assert report.ai.total == 2
        assert report.ai.processed == 2
        assert report.ai.percent == 100

    @pytest.mark.asyncio
    async def test_resume_with_pending_items_finishes_discovery_first(
        self, service: DeepScanService, runner, store: ScanStore, fake_mailbox, mailbox, settings, clock
    ):
        settings.gmail.page_size = 10
        clock.step = 30
        fake_mailbox.listing = invoice_ids(25)
        job = await service.start(mailbox.id)
        await runner.run_tick()
        await service.pause(job.id)
        assert (await store.queue_counts(job.id)).pending == 10

        assert await service.resume(job.id) is ScanStatus.DISCOVERING
        clock.step = 0
        await runner.discover(job.id)

        loaded = await store.get_scan_job(job.id)
        assert loaded.status == ScanStatus.PROCESSING.value
        assert loaded.total_to_process == 25
