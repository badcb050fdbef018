"""Invoice scan configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
Each concern has its own prefix; :class:`Settings` nests them.
"""

from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings


class DatabaseConfig(BaseSettings):
    """Job store database settings."""

    model_config = {"env_prefix": "DATABASE_"}

    url: str = Field(
        default="postgresql+asyncpg://localhost/invoice_scan",
        description="Async SQLAlchemy URL for the job store",
    )
    echo: bool = Field(default=False, description="Log emitted SQL")
    pool_size: int = Field(default=5, description="Connection pool size (ignored for SQLite)")
    max_overflow: int = Field(default=10, description="Pool overflow (ignored for SQLite)")


class GmailConfig(BaseSettings):
    """Gmail REST API settings."""

    model_config = {"env_prefix": "GMAIL_"}

    api_base_url: str = Field(
        default="https://gmail.googleapis.com/gmail/v1/users/me",
        description="Base URL of the Gmail user API",
    )
    timeout_seconds: float = Field(default=10.0, description="HTTP request timeout")
    page_size: int = Field(default=500, description="Message ids per list page (Gmail max 500)")


class RetryConfig(BaseSettings):
    """Retry / backoff settings driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=3, description="Maximum attempts per remote call")
    initial_wait_seconds: float = Field(default=0.5, description="Initial backoff wait in seconds")
    max_wait_seconds: float = Field(default=4.0, description="Maximum backoff wait in seconds")
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class AIConfig(BaseSettings):
    """AI enrichment settings. An empty API key disables enrichment."""

    model_config = {"env_prefix": "AI_"}

    api_key: SecretStr | None = Field(default=None, description="Anthropic API key")
    model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model used for document extraction",
    )
    max_tokens: int = Field(default=1024, description="Maximum tokens per extraction reply")
    timeout_seconds: float = Field(default=15.0, description="Per-request timeout")
    max_text_chars: int = Field(default=4000, description="Body text sent for text extraction")
    classify_max_tokens: int = Field(default=2048, description="Maximum tokens per batch classification reply")


class ScanConfig(BaseSettings):
    """Deep scan tuning knobs."""

    model_config = {"env_prefix": "SCAN_"}

    time_budget_seconds: float = Field(
        default=22.0,
        description="Wall-clock budget per invocation (host limit is 30s)",
    )
    regex_batch_size: int = Field(default=50, description="Items claimed per regex batch")
    ai_batch_size: int = Field(default=5, description="Items claimed per AI batch")
    claim_timeout_seconds: float = Field(
        default=300.0,
        description="Claims older than this are considered abandoned and released",
    )
    min_attachment_bytes: int = Field(default=5_000, description="Smaller attachments are decorative")
    max_attachment_bytes: int = Field(default=2_000_000, description="Larger attachments are unrelated assets")
    ai_min_confidence: float = Field(default=0.2, description="AI results below this are ignored")
    ai_high_confidence: float = Field(
        default=0.6,
        description="AI results at or above this keep status PENDING, below go to REVIEW",
    )
    known_vendor_min_documents: int = Field(
        default=3,
        description="Prior high-confidence documents needed to skip AI for a vendor",
    )
    known_vendor_min_confidence: float = Field(default=0.6, description="Confidence counted as high")
    vendor_hint_limit: int = Field(default=5, description="Learned vendor mappings sent as AI hints")
    lookback_years: int = Field(default=3, description="How far back a deep scan searches")
    error_text_limit: int = Field(default=500, description="Stored error messages are truncated to this")


class SyncConfig(BaseSettings):
    """Incremental sync settings."""

    model_config = {"env_prefix": "SYNC_"}

    ai_call_cap: int = Field(default=5, description="Maximum AI calls per sync run")
    fallback_recent_limit: int = Field(
        default=50,
        description="Recent ids listed when no usable cursor exists",
    )
    quick_scan_max_ids: int = Field(default=1000, description="Ids listed by a quick scan")
    quick_scan_months: int = Field(default=3, description="Quick scan window in months")
    quick_scan_document_limit: int = Field(default=3, description="Quick scan stops after this many documents")
    quick_scan_classify_limit: int = Field(default=30, description="Messages sent to one AI classification call")
    quick_scan_ai_min_confidence: float = Field(
        default=0.5,
        description="Classification confidence needed to keep an AI quick scan hit",
    )
    quick_scan_ai_document_limit: int = Field(default=5, description="AI quick scan stops after this many documents")


class Settings(BaseSettings):
    """Root configuration for the invoice scan service.

    Top-level fields use the ``INVOICE_SCAN_`` prefix; nested configs are
    populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "INVOICE_SCAN_"}

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=8000, description="Bind port")
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(default=True, description="Use JSON log output (True for prod, False for dev)")
    cron_secret: SecretStr | None = Field(
        default=None,
        description="Bearer token required by the /cron endpoints",
    )
    default_currency: str = Field(default="ILS", description="Currency assumed when none is detected")
    vat_rate: float = Field(default=0.17, description="VAT rate applied to amounts in the default currency")

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    gmail: GmailConfig = Field(default_factory=GmailConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    ai: AIConfig = Field(default_factory=AIConfig)
    scan: ScanConfig = Field(default_factory=ScanConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
