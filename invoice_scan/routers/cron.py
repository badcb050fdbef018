"""Scheduler-facing endpoints. Each call does one bounded unit of work."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from invoice_scan.deep_scan import DeepScanRunner
from invoice_scan.deps import get_runner, get_sync, require_cron_secret
from invoice_scan.schemas import SyncOut, TickOut, TickOutcomeOut
from invoice_scan.sync import IncrementalSync

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.post("/deep-scan", response_model=TickOut)
async def deep_scan_tick(runner: Annotated[DeepScanRunner, Depends(get_runner)]):
    result = await runner.run_tick()
    return TickOut(
        dispatched=result.dispatched,
        processed=result.processed,
        jobs=[
            TickOutcomeOut(
                scan_job_id=o.scan_job_id,
                status=o.status,
                processed=o.processed,
                error=o.error,
            )
            for o in result.outcomes
        ],
    )


@router.post("/mailbox-sync", response_model=SyncOut)
async def mailbox_sync(sync: Annotated[IncrementalSync, Depends(get_sync)]):
    return SyncOut(total=await sync.sync_all())
