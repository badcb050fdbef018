"""Shared test fixtures for the invoice scan test suite."""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from datetime import UTC, date, datetime

import pytest

from invoice_scan.config import DatabaseConfig, RetryConfig, Settings
from invoice_scan.db.engine import Database
from invoice_scan.db.models import MailboxConnection
from invoice_scan.deep_scan import DeepScanRunner
from invoice_scan.errors import MailboxNotFoundError, MissingCredentialsError
from invoice_scan.models import (
    AttachmentRef,
    DocumentCandidate,
    DocumentType,
    EmailCandidate,
    EmailClassification,
    ExtractedInvoice,
    MailboxStatus,
    MessagePage,
    RemoteMessage,
    VendorHint,
)
from invoice_scan.service import DeepScanService
from invoice_scan.store import ScanStore
from invoice_scan.sync import IncrementalSync

TODAY = date(2026, 3, 15)


def _test_settings(tmp_path, **overrides) -> Settings:
    """Create Settings with test defaults (file-backed SQLite, fast retries)."""
    defaults = {
        "database": DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'scan.db'}"),
        "retry": RetryConfig(
            max_attempts=3,
            initial_wait_seconds=0.01,
            max_wait_seconds=0.02,
            multiplier=2.0,
        ),
        "cron_secret": "test-cron-secret",
        "log_json": False,
    }
    defaults.update(overrides)
    return Settings(**defaults)


# ------------------------------------------------------------------
# Fakes
# ------------------------------------------------------------------


class FakeMailbox:
    """In-memory mailbox. ``listing`` is paged like the remote API."""

    def __init__(self) -> None:
        self.listing: list[str] = []
        self.messages: dict[str, RemoteMessage] = {}
        self.attachments: dict[tuple[str, str], bytes] = {}
        self.history: list[str] = []
        self.history_error: Exception | None = None
        self.list_error: Exception | None = None
        self.get_errors: dict[str, Exception] = {}
        self.cursor = "9000"
        self.cursor_error: Exception | None = None
        self.list_calls: list[tuple[str, str | None, int]] = []
        self.get_calls: list[str] = []
        self.attachment_calls: list[tuple[str, str]] = []

    async def list_messages(
        self,
        query: str,
        page_token: str | None = None,
        max_results: int = 500,
    ) -> MessagePage:
        self.list_calls.append((query, page_token, max_results))
        if self.list_error is not None:
            raise self.list_error
        offset = int(page_token or 0)
        end = offset + max_results
        next_token = str(end) if end < len(self.listing) else None
        return MessagePage(ids=self.listing[offset:end], next_page_token=next_token)

    async def get_message(self, message_id: str) -> RemoteMessage:
        self.get_calls.append(message_id)
        if message_id in self.get_errors:
            raise self.get_errors[message_id]
        if message_id in self.messages:
            return self.messages[message_id]
        return make_message(message_id, subject="Lunch on Thursday?", sender="Dana <dana@example.com>")

    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        self.attachment_calls.append((message_id, attachment_id))
        return self.attachments.get((message_id, attachment_id), b"%PDF-1.4 fake")

    async def history_delta(self, cursor: str) -> list[str]:
        if self.history_error is not None:
            raise self.history_error
        return list(self.history)

    async def latest_cursor(self) -> str:
        if self.cursor_error is not None:
            raise self.cursor_error
        return self.cursor

    def factory(self, mailbox: MailboxConnection | None) -> FakeMailbox:
        """Same checks as the Gmail client factory."""
        if mailbox is None or mailbox.status != MailboxStatus.CONNECTED.value:
            raise MailboxNotFoundError("Mailbox connection not found or disconnected")
        if not mailbox.access_token:
            raise MissingCredentialsError(f"Mailbox {mailbox.id} has no access token")
        return self


class FakeEnrichment:
    """Records calls and returns a fixed extraction (or raises ``error``).

    Batch classification returns ``classifications`` as set by the test.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        result: ExtractedInvoice | None = None,
        error: Exception | None = None,
    ) -> None:
        self._enabled = enabled
        self.result = result or ExtractedInvoice(
            vendor_name="Acme Ltd",
            amount_minor=12_345,
            currency="ILS",
            vat_minor=2_098,
            issued_at="2026-01-10",
            category="תוכנה",
            confidence=0.9,
        )
        self.error = error
        self.calls: list[tuple[str, list[VendorHint] | None]] = []
        self.classifications: list[EmailClassification] = []
        self.classified: list[list[EmailCandidate]] = []

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _respond(self, kind: str, hints: list[VendorHint] | None) -> ExtractedInvoice:
        self.calls.append((kind, hints))
        if self.error is not None:
            raise self.error
        return self.result

    async def extract_text(self, text: str, hints: list[VendorHint] | None = None) -> ExtractedInvoice:
        return self._respond("text", hints)

    async def extract_image(
        self, data: bytes, mime_type: str, hints: list[VendorHint] | None = None
    ) -> ExtractedInvoice:
        return self._respond("image", hints)

    async def extract_pdf(self, data: bytes, hints: list[VendorHint] | None = None) -> ExtractedInvoice:
        return self._respond("pdf", hints)

    async def classify_batch(self, candidates: list[EmailCandidate]) -> list[EmailClassification]:
        self.classified.append(list(candidates))
        if self.error is not None:
            raise self.error
        return list(self.classifications)


class FakeClock:
    """Monotonic clock that advances by ``step`` on every read."""

    def __init__(self, step: float = 0.0) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        current = self.now
        self.now += self.step
        return current


# ------------------------------------------------------------------
# Sample message builders
# ------------------------------------------------------------------


def pdf_attachment(
    filename: str = "invoice-1001.pdf",
    *,
    size: int = 48_000,
    attachment_id: str = "att-1",
    mime_type: str = "application/pdf",
) -> AttachmentRef:
    return AttachmentRef(filename=filename, mime_type=mime_type, attachment_id=attachment_id, size=size)


def make_message(
    message_id: str,
    *,
    subject: str = "Your invoice from Acme",
    sender: str = '"Acme Ltd" <billing@acme.example>',
    snippet: str = "",
    body: str | None = "Total: ₪150.00",
    attachments: list[AttachmentRef] | None = None,
    internal_date: datetime | None = None,
) -> RemoteMessage:
    return RemoteMessage(
        id=message_id,
        thread_id=f"thread-{message_id}",
        headers={"subject": subject, "from": sender},
        snippet=snippet,
        internal_date=internal_date or datetime(2026, 2, 1, 9, 30, tzinfo=UTC),
        body_text=body,
        attachments=attachments or [],
    )


def make_candidate(
    message_id: str,
    *,
    vendor: str = "Bezeq",
    category: str | None = None,
    confidence: float = 0.85,
) -> DocumentCandidate:
    return DocumentCandidate(
        remote_message_id=message_id,
        type=DocumentType.INVOICE,
        vendor_name=vendor,
        amount_minor=15_000,
        currency="ILS",
        vat_minor=2_550,
        issued_at=datetime(2026, 1, 5, tzinfo=UTC),
        confidence=confidence,
        raw_text="Total: ₪150.00",
        category=category,
    )


def invoice_ids(count: int, prefix: str = "m") -> list[str]:
    return [f"{prefix}{i:04d}" for i in range(count)]


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return _test_settings(tmp_path)


@pytest.fixture
async def db(settings: Settings) -> AsyncIterator[Database]:
    database = Database(settings.database)
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
def store(db: Database, settings: Settings) -> ScanStore:
    return ScanStore(db, error_text_limit=settings.scan.error_text_limit)


@pytest.fixture
def account_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
async def mailbox(store: ScanStore, account_id: uuid.UUID) -> MailboxConnection:
    return await store.create_mailbox(
        account_id,
        email_address="owner@example.com",
        access_token="ya29.test-token",
    )


@pytest.fixture
def fake_mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def enrichment() -> FakeEnrichment:
    return FakeEnrichment()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runner(
    store: ScanStore,
    fake_mailbox: FakeMailbox,
    enrichment: FakeEnrichment,
    settings: Settings,
    clock: FakeClock,
) -> DeepScanRunner:
    return DeepScanRunner(store, fake_mailbox.factory, enrichment, settings, clock=clock)


@pytest.fixture
def service(store: ScanStore, settings: Settings) -> DeepScanService:
    return DeepScanService(store, settings, today=lambda: TODAY)


@pytest.fixture
def sync(
    store: ScanStore,
    fake_mailbox: FakeMailbox,
    enrichment: FakeEnrichment,
    settings: Settings,
) -> IncrementalSync:
    return IncrementalSync(store, fake_mailbox.factory, enrichment, settings, today=lambda: TODAY)
