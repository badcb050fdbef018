"""Mailbox endpoints used during onboarding."""

from __future__ import annotations

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from invoice_scan.deps import get_sync
from invoice_scan.errors import MailboxNotFoundError
from invoice_scan.schemas import QuickScanOut
from invoice_scan.sync import IncrementalSync

router = APIRouter(prefix="/mailboxes", tags=["mailboxes"])


@router.post("/{mailbox_id}/quick-scan", response_model=QuickScanOut)
async def quick_scan(
    mailbox_id: uuid.UUID,
    sync: Annotated[IncrementalSync, Depends(get_sync)],
):
    try:
        result = await sync.quick_scan_with_ai(mailbox_id)
    except MailboxNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return QuickScanOut(
        new_documents=result.new_documents,
        candidates=result.candidates,
        ai_confirmed=result.ai_confirmed,
        deferred=result.deferred,
    )
