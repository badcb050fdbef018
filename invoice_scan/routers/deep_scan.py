"""Deep scan lifecycle endpoints."""

from __future__ import annotations

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from invoice_scan.deps import get_service
from invoice_scan.errors import (
    InvalidScanStateError,
    MailboxNotFoundError,
    ScanAlreadyActiveError,
    ScanJobNotFoundError,
)
from invoice_scan.models import ScanStatus
from invoice_scan.schemas import ScanJobOut, ScanStatusReport
from invoice_scan.service import DeepScanService

router = APIRouter(prefix="/deep-scan", tags=["deep-scan"])


@router.post(
    "/mailboxes/{mailbox_id}/start",
    response_model=ScanJobOut,
    status_code=status.HTTP_201_CREATED,
)
async def start_scan(
    mailbox_id: uuid.UUID,
    service: Annotated[DeepScanService, Depends(get_service)],
):
    try:
        job = await service.start(mailbox_id)
    except MailboxNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ScanAlreadyActiveError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": "A scan is already active", "scan_job_id": str(exc.scan_job_id)},
        ) from exc
    return ScanJobOut(scan_job_id=job.id, status=ScanStatus(job.status))


@router.get("/accounts/{account_id}/status", response_model=ScanStatusReport)
async def scan_status(
    account_id: uuid.UUID,
    service: Annotated[DeepScanService, Depends(get_service)],
):
    return await service.status(account_id)


@router.post("/jobs/{job_id}/pause", response_model=ScanJobOut)
async def pause_scan(
    job_id: uuid.UUID,
    service: Annotated[DeepScanService, Depends(get_service)],
):
    try:
        new_status = await service.pause(job_id)
    except ScanJobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidScanStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return ScanJobOut(scan_job_id=job_id, status=new_status)


@router.post("/jobs/{job_id}/resume", response_model=ScanJobOut)
async def resume_scan(
    job_id: uuid.UUID,
    service: Annotated[DeepScanService, Depends(get_service)],
):
    try:
        new_status = await service.resume(job_id)
    except ScanJobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidScanStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return ScanJobOut(scan_job_id=job_id, status=new_status)
