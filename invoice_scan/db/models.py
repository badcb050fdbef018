"""SQLAlchemy ORM models for mailboxes, scan jobs, the scan queue and documents."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class MailboxConnection(Base):
    __tablename__ = "mailbox_connections"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    provider: Mapped[str] = mapped_column(Text, nullable=False, default="GMAIL")
    email_address: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="CONNECTED")
    access_token: Mapped[str | None] = mapped_column(Text)
    sync_cursor: Mapped[str | None] = mapped_column(Text)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


_NON_TERMINAL_SQL = "status IN ('DISCOVERING', 'PROCESSING', 'AI_PASS', 'PAUSED')"


class ScanJob(Base):
    __tablename__ = "scan_jobs"
    __table_args__ = (
        Index("ix_scan_jobs_mailbox_status", "mailbox_id", "status"),
        # At most one non-terminal scan per mailbox.
        Index(
            "uq_scan_jobs_mailbox_non_terminal",
            "mailbox_id",
            unique=True,
            postgresql_where=text(_NON_TERMINAL_SQL),
            sqlite_where=text(_NON_TERMINAL_SQL),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    mailbox_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("mailbox_connections.id", ondelete="RESTRICT"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(Text, nullable=False, default="DISCOVERING")
    query: Mapped[str] = mapped_column(Text, nullable=False)
    after_date: Mapped[str | None] = mapped_column(Text)
    discovery_cursor: Mapped[str | None] = mapped_column(Text)
    discovery_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    total_discovered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_to_process: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    documents_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ai_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ai_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ai_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class ScanQueueItem(Base):
    __tablename__ = "scan_queue"
    __table_args__ = (
        UniqueConstraint("scan_job_id", "remote_message_id", name="uq_scan_queue_job_message"),
        Index("ix_scan_queue_job_status", "scan_job_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    scan_job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("scan_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    remote_message_id: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="PENDING")
    needs_ai: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    document_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    error_message: Mapped[str | None] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class FinancialDocument(Base):
    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("account_id", "remote_message_id", name="uq_documents_account_message"),
        Index("ix_documents_account_vendor", "account_id", "vendor_name"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    mailbox_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    source: Mapped[str] = mapped_column(Text, nullable=False, default="EMAIL")
    type: Mapped[str] = mapped_column(Text, nullable=False, default="INVOICE")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="PENDING")
    vendor_name: Mapped[str] = mapped_column(Text, nullable=False)
    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(Text, nullable=False)
    vat_minor: Mapped[int | None] = mapped_column(Integer)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    category: Mapped[str | None] = mapped_column(Text)
    raw_text: Mapped[str | None] = mapped_column(Text)
    remote_message_id: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class VendorCategoryMapping(Base):
    __tablename__ = "vendor_category_mappings"
    __table_args__ = (
        UniqueConstraint("account_id", "vendor_name_normalized", name="uq_vendor_mapping_account_vendor"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    vendor_name_normalized: Mapped[str] = mapped_column(Text, nullable=False)
    vendor_name_original: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    correction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
