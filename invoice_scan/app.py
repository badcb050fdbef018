"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from invoice_scan.config import Settings
from invoice_scan.db.engine import Database
from invoice_scan.deep_scan import DeepScanRunner
from invoice_scan.enrichment import build_enrichment_client
from invoice_scan.mailbox import GmailClientFactory
from invoice_scan.service import DeepScanService
from invoice_scan.store import ScanStore
from invoice_scan.sync import IncrementalSync

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: database, Gmail client factory, AI client and components. Shutdown: dispose."""
    settings: Settings = app.state.settings
    db = Database(settings.database)
    await db.create_all()
    app.state.db = db
    logger.info("database_ready", dialect=db.dialect)

    mailboxes = GmailClientFactory(settings)
    await mailboxes.start()
    enrichment = build_enrichment_client(settings)

    store = ScanStore(db, error_text_limit=settings.scan.error_text_limit)
    app.state.service = DeepScanService(store, settings)
    app.state.runner = DeepScanRunner(store, mailboxes, enrichment, settings)
    app.state.sync = IncrementalSync(store, mailboxes, enrichment, settings)
    yield
    await mailboxes.stop()
    await db.close()
    logger.info("shutdown_complete")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build and return the FastAPI application."""
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="Invoice Scan",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    from invoice_scan.routers.cron import router as cron_router
    from invoice_scan.routers.deep_scan import router as deep_scan_router
    from invoice_scan.routers.mailboxes import router as mailboxes_router

    app.include_router(deep_scan_router)
    app.include_router(cron_router)
    app.include_router(mailboxes_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "invoice-scan"}

    return app
