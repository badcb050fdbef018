"""FastAPI dependency-injection helpers for the scan components."""

from __future__ import annotations

import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from invoice_scan.config import Settings
from invoice_scan.deep_scan import DeepScanRunner
from invoice_scan.service import DeepScanService
from invoice_scan.sync import IncrementalSync


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_service(request: Request) -> DeepScanService:
    return request.app.state.service


def get_runner(request: Request) -> DeepScanRunner:
    return request.app.state.runner


def get_sync(request: Request) -> IncrementalSync:
    return request.app.state.sync


async def require_cron_secret(
    settings: Annotated[Settings, Depends(get_settings)],
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Reject cron calls without ``Authorization: Bearer <cron_secret>``.

    Open when no secret is configured (local development).
    """
    if settings.cron_secret is None:
        return
    expected = f"Bearer {settings.cron_secret.get_secret_value()}"
    if not secrets.compare_digest(authorization or "", expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")
