"""Status enums and value types shared across the scan pipeline."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ScanStatus(str, Enum):
    """Lifecycle status of a deep scan job."""

    DISCOVERING = "DISCOVERING"
    PROCESSING = "PROCESSING"
    AI_PASS = "AI_PASS"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


#: Statuses in which the orchestrator dispatches work.
RUNNING_STATUSES = (ScanStatus.DISCOVERING, ScanStatus.PROCESSING, ScanStatus.AI_PASS)

#: Statuses that still count as "the" scan of a mailbox.
NON_TERMINAL_STATUSES = (*RUNNING_STATUSES, ScanStatus.PAUSED)


class QueueItemStatus(str, Enum):
    """Status of a single message in the scan queue."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DUPLICATE = "DUPLICATE"
    SKIPPED = "SKIPPED"
    REGEX_DONE = "REGEX_DONE"
    AI_PROCESSING = "AI_PROCESSING"
    AI_DONE = "AI_DONE"
    FAILED = "FAILED"


class DocumentStatus(str, Enum):
    PENDING = "PENDING"
    REVIEW = "REVIEW"


class DocumentType(str, Enum):
    INVOICE = "INVOICE"
    RECEIPT = "RECEIPT"
    SUBSCRIPTION = "SUBSCRIPTION"
    PAYMENT_CONFIRMATION = "PAYMENT_CONFIRMATION"


class MailboxStatus(str, Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"


# ------------------------------------------------------------------
# Remote mailbox data
# ------------------------------------------------------------------


@dataclass
class MessagePage:
    """One page of a remote message-id listing."""

    ids: list[str]
    next_page_token: str | None = None


@dataclass
class AttachmentRef:
    """An attachment as described by the message payload (not downloaded)."""

    filename: str
    mime_type: str
    attachment_id: str | None
    size: int = 0


@dataclass
class RemoteMessage:
    """A fully fetched remote message."""

    id: str
    thread_id: str
    headers: dict[str, str]
    snippet: str
    internal_date: datetime
    body_text: str | None = None
    attachments: list[AttachmentRef] = field(default_factory=list)
    label_ids: list[str] = field(default_factory=list)

    @property
    def subject(self) -> str:
        return self.headers.get("subject", "")

    @property
    def sender(self) -> str:
        return self.headers.get("from", "")


# ------------------------------------------------------------------
# Extraction results
# ------------------------------------------------------------------


@dataclass
class DocumentCandidate:
    """Result of the regex pass over one message."""

    remote_message_id: str
    type: DocumentType
    vendor_name: str
    amount_minor: int
    currency: str
    vat_minor: int | None
    issued_at: datetime
    confidence: float
    raw_text: str | None
    category: str | None = None
    attachments: list[AttachmentRef] = field(default_factory=list)


class ExtractedInvoice(BaseModel):
    """Best-guess structured extraction returned by the AI client."""

    vendor_name: str = Field(description="Vendor / company name")
    amount_minor: int = Field(default=0, description="Total in minor currency units")
    currency: str = Field(default="ILS", description="ISO currency code")
    vat_minor: int | None = Field(default=None, description="VAT in minor units, if listed")
    issued_at: str | None = Field(default=None, description="Issue date as YYYY-MM-DD")
    type: DocumentType = Field(default=DocumentType.INVOICE)
    category: str | None = Field(default=None, description="Expense category")
    confidence: float = Field(ge=0.0, le=1.0, description="Model confidence in the extraction")


class VendorHint(BaseModel):
    """A learned vendor→category mapping passed to the AI client."""

    vendor_name: str
    category: str


class EmailCandidate(BaseModel):
    """Message metadata sent to batch classification, numbered by ``index``."""

    index: int
    subject: str
    sender: str
    snippet: str = ""
    date: str = ""
    attachment_names: list[str] = Field(default_factory=list)


class EmailClassification(BaseModel):
    """Batch classification verdict for the candidate with the same ``index``."""

    index: int
    is_invoice: bool = False
    type: DocumentType = Field(default=DocumentType.INVOICE)
    vendor_name: str = ""
    amount_minor: int = Field(default=0, description="Total in minor units as seen in the metadata")
    currency: str = "ILS"
    category: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


# ------------------------------------------------------------------
# Queue / phase bookkeeping
# ------------------------------------------------------------------


@dataclass
class ClaimedItem:
    """A queue item exclusively assigned to the current invocation."""

    id: uuid.UUID
    scan_job_id: uuid.UUID
    remote_message_id: str
    document_id: uuid.UUID | None = None


@dataclass
class QueueCounts:
    """Per-status item counts for one scan job."""

    by_status: dict[QueueItemStatus, int] = field(default_factory=dict)
    regex_done_needing_ai: int = 0

    def count(self, status: QueueItemStatus) -> int:
        return self.by_status.get(status, 0)

    @property
    def pending(self) -> int:
        return self.count(QueueItemStatus.PENDING)

    @property
    def total(self) -> int:
        return sum(self.by_status.values())


@dataclass
class DiscoveryResult:
    done: bool
    found: int


@dataclass
class RegexBatchResult:
    processed: int = 0
    created: int = 0
    skipped: int = 0
    duplicates: int = 0
    errors: int = 0
    done: bool = False


@dataclass
class AIBatchResult:
    processed: int = 0
    ai_skipped: int = 0
    done: bool = False


@dataclass
class JobTickOutcome:
    scan_job_id: uuid.UUID
    status: ScanStatus
    processed: int = 0
    error: str | None = None


@dataclass
class TickResult:
    dispatched: int = 0
    processed: int = 0
    outcomes: list[JobTickOutcome] = field(default_factory=list)


@dataclass
class SyncResult:
    new_documents: int = 0
    candidates: int = 0
    processed: int = 0
    skipped_no_match: int = 0
    skipped_duplicate: int = 0
    ai_processed: int = 0
    deferred: bool = False


@dataclass
class QuickScanResult:
    new_documents: int = 0
    candidates: int = 0
    ai_confirmed: int = 0
    deferred: bool = False
