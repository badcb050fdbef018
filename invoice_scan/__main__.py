"""Entry point for the invoice scan package.

Usage::

    python -m invoice_scan serve   # HTTP API (uvicorn)
    python -m invoice_scan tick    # one deep scan orchestrator pass
    python -m invoice_scan sync    # one incremental sync pass over all mailboxes
"""

from __future__ import annotations

import asyncio
import sys

import structlog
import uvicorn

from .config import Settings
from .logging import setup_logging

logger = structlog.get_logger()


async def _run_once(settings: Settings, mode: str) -> None:
    from .db.engine import Database
    from .deep_scan import DeepScanRunner
    from .enrichment import build_enrichment_client
    from .mailbox import GmailClientFactory
    from .store import ScanStore
    from .sync import IncrementalSync

    db = Database(settings.database)
    await db.create_all()
    mailboxes = GmailClientFactory(settings)
    await mailboxes.start()
    try:
        store = ScanStore(db, error_text_limit=settings.scan.error_text_limit)
        enrichment = build_enrichment_client(settings)
        if mode == "tick":
            result = await DeepScanRunner(store, mailboxes, enrichment, settings).run_tick()
            logger.info("tick_finished", dispatched=result.dispatched, processed=result.processed)
        else:
            total = await IncrementalSync(store, mailboxes, enrichment, settings).sync_all()
            logger.info("sync_finished", new_documents=total)
    finally:
        await mailboxes.stop()
        await db.close()


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in ("serve", "tick", "sync"):
        print("Usage: python -m invoice_scan <serve|tick|sync>", file=sys.stderr)
        sys.exit(1)

    mode = sys.argv[1]
    settings = Settings()
    setup_logging(json=settings.log_json, level=settings.log_level)

    if mode == "serve":
        uvicorn.run(
            "invoice_scan.app:create_app",
            factory=True,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
            log_config=None,
        )
    else:
        asyncio.run(_run_once(settings, mode))


if __name__ == "__main__":
    main()
