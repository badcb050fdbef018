"""Tests for invoice_scan.config."""

from __future__ import annotations

from invoice_scan.config import (
    AIConfig,
    DatabaseConfig,
    GmailConfig,
    RetryConfig,
    ScanConfig,
    Settings,
    SyncConfig,
)


class TestDatabaseConfig:
    def test_defaults(self):
        cfg = DatabaseConfig()
        assert cfg.url == "postgresql+asyncpg://localhost/invoice_scan"
        assert cfg.echo is False
        assert cfg.pool_size == 5

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///scan.db")
        monkeypatch.setenv("DATABASE_ECHO", "true")
        cfg = DatabaseConfig()
        assert cfg.url == "sqlite+aiosqlite:///scan.db"
        assert cfg.echo is True


class TestGmailConfig:
    def test_defaults(self):
        cfg = GmailConfig()
        assert cfg.api_base_url == "https://gmail.googleapis.com/gmail/v1/users/me"
        assert cfg.page_size == 500

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("GMAIL_PAGE_SIZE", "100")
        assert GmailConfig().page_size == 100


class TestRetryConfig:
    def test_defaults(self):
        cfg = RetryConfig()
        assert cfg.max_attempts == 3
        assert cfg.initial_wait_seconds == 0.5
        assert cfg.max_wait_seconds == 4.0
        assert cfg.multiplier == 2.0

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "7")
        assert RetryConfig().max_attempts == 7


class TestAIConfig:
    def test_disabled_by_default(self, monkeypatch):
        monkeypatch.delenv("AI_API_KEY", raising=False)
        assert AIConfig().api_key is None

    def test_api_key_is_secret(self, monkeypatch):
        monkeypatch.setenv("AI_API_KEY", "sk-test")
        cfg = AIConfig()
        assert cfg.api_key.get_secret_value() == "sk-test"
        assert "sk-test" not in repr(cfg)


class TestScanConfig:
    def test_defaults(self):
        cfg = ScanConfig()
        assert cfg.time_budget_seconds == 22.0
        assert cfg.regex_batch_size == 50
        assert cfg.ai_batch_size == 5
        assert cfg.min_attachment_bytes == 5_000
        assert cfg.max_attachment_bytes == 2_000_000
        assert cfg.ai_min_confidence == 0.2
        assert cfg.ai_high_confidence == 0.6
        assert cfg.known_vendor_min_documents == 3
        assert cfg.lookback_years == 3
        assert cfg.error_text_limit == 500

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SCAN_TIME_BUDGET_SECONDS", "10")
        monkeypatch.setenv("SCAN_REGEX_BATCH_SIZE", "20")
        cfg = ScanConfig()
        assert cfg.time_budget_seconds == 10.0
        assert cfg.regex_batch_size == 20


class TestSyncConfig:
    def test_defaults(self):
        cfg = SyncConfig()
        assert cfg.ai_call_cap == 5
        assert cfg.fallback_recent_limit == 50
        assert cfg.quick_scan_max_ids == 1000
        assert cfg.quick_scan_months == 3
        assert cfg.quick_scan_document_limit == 3


class TestSettings:
    def test_nested_defaults(self):
        cfg = Settings()
        assert isinstance(cfg.database, DatabaseConfig)
        assert isinstance(cfg.scan, ScanConfig)
        assert isinstance(cfg.sync, SyncConfig)
        assert cfg.default_currency == "ILS"
        assert cfg.vat_rate == 0.17

    def test_nested_overrides(self):
        cfg = Settings(
            port=9000,
            scan=ScanConfig(regex_batch_size=10),
            retry=RetryConfig(max_attempts=1),
        )
        assert cfg.port == 9000
        assert cfg.scan.regex_batch_size == 10
        assert cfg.retry.max_attempts == 1

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("INVOICE_SCAN_PORT", "9999")
        monkeypatch.setenv("INVOICE_SCAN_CRON_SECRET", "s3cret")
        monkeypatch.setenv("INVOICE_SCAN_LOG_JSON", "false")
        cfg = Settings()
        assert cfg.port == 9999
        assert cfg.cron_secret.get_secret_value() == "s3cret"
        assert cfg.log_json is False
