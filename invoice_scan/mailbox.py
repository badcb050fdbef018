"""Mailbox client: the remote message source for discovery and sync.

:class:`GmailClient` talks to the Gmail REST API over a shared
``httpx.AsyncClient``; :class:`GmailClientFactory` owns that client and
hands out one :class:`GmailClient` per mailbox connection.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx
import structlog

from .config import GmailConfig, RetryConfig, Settings
from .db.models import MailboxConnection
from .errors import (
    CursorExpiredError,
    MailboxAPIError,
    MailboxAuthError,
    MailboxNotFoundError,
    MailboxTransientError,
    MissingCredentialsError,
)
from .models import AttachmentRef, MailboxStatus, MessagePage, RemoteMessage
from .retry import with_retry

logger = structlog.get_logger()

_RETRYABLE = (MailboxTransientError, httpx.TransportError)


class MailboxClient(Protocol):
    """What the orchestrator and incremental sync need from a mailbox."""

    async def list_messages(
        self,
        query: str,
        page_token: str | None = None,
        max_results: int = 500,
    ) -> MessagePage: ...

    async def get_message(self, message_id: str) -> RemoteMessage: ...

    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes: ...

    async def history_delta(self, cursor: str) -> list[str]: ...

    async def latest_cursor(self) -> str: ...


#: Builds a client for a mailbox connection (``None`` when the row is gone).
MailboxFactory = Callable[[MailboxConnection | None], MailboxClient]


async def list_recent(client: MailboxClient, query: str, limit: int) -> list[str]:
    """Up to *limit* ids for *query*, following pages as needed."""
    ids: list[str] = []
    token: str | None = None
    while len(ids) < limit:
        page = await client.list_messages(query, token, max_results=min(limit - len(ids), 500))
        ids.extend(page.ids)
        token = page.next_page_token
        if not token:
            break
    return ids[:limit]


def decode_base64url(data: str) -> bytes:
    """Decode Gmail's unpadded base64url payloads."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded)


def _decode_text(data: str | None) -> str | None:
    if not data:
        return None
    try:
        return decode_base64url(data).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return None


def _find_plain_text(payload: dict[str, Any]) -> str | None:
    """Depth-first search for the first text/plain body."""
    if payload.get("mimeType", "").startswith("text/plain"):
        text = _decode_text((payload.get("body") or {}).get("data"))
        if text is not None:
            return text
    for part in payload.get("parts") or []:
        text = _find_plain_text(part)
        if text is not None:
            return text
    return None


def _body_text(payload: dict[str, Any]) -> str | None:
    # Single-part messages carry the body on the payload itself.
    if not payload.get("parts"):
        return _decode_text((payload.get("body") or {}).get("data"))
    return _find_plain_text(payload)


def _collect_attachments(payload: dict[str, Any], out: list[AttachmentRef]) -> list[AttachmentRef]:
    for part in payload.get("parts") or []:
        filename = part.get("filename") or ""
        if filename:
            body = part.get("body") or {}
            out.append(
                AttachmentRef(
                    filename=filename,
                    mime_type=part.get("mimeType", "application/octet-stream"),
                    attachment_id=body.get("attachmentId"),
                    size=int(body.get("size") or 0),
                )
            )
        _collect_attachments(part, out)
    return out


def _retry_after(response: httpx.Response) -> float | None:
    # Only the delta-seconds form; HTTP-date values are ignored.
    try:
        return float(response.headers["retry-after"])
    except (KeyError, ValueError):
        return None


def parse_message(data: dict[str, Any]) -> RemoteMessage:
    """Convert a ``format=full`` Gmail message resource into a :class:`RemoteMessage`."""
    payload = data.get("payload") or {}
    headers = {h["name"].lower(): h["value"] for h in payload.get("headers") or []}
    internal_ms = int(data.get("internalDate") or 0)
    return RemoteMessage(
        id=data["id"],
        thread_id=data.get("threadId", ""),
        headers=headers,
        snippet=data.get("snippet", ""),
        internal_date=datetime.fromtimestamp(internal_ms / 1000, tz=UTC),
        body_text=_body_text(payload),
        attachments=_collect_attachments(payload, []),
        label_ids=list(data.get("labelIds") or []),
    )


class GmailClient:
    """Gmail REST adapter for one mailbox connection.

    Transport errors, 429 and 5xx are retried by tenacity; 401 raises
    :class:`MailboxAuthError` immediately.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        access_token: str,
        config: GmailConfig,
        retry_config: RetryConfig,
    ) -> None:
        self._http = http
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self._config = config
        self._get = with_retry(retry_config, retryable_exceptions=_RETRYABLE)(self._get_once)

    async def _get_once(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self._config.api_base_url}{path}"
        response = await self._http.get(url, params=params, headers=self._headers)
        if response.status_code == 401:
            raise MailboxAuthError(response.status_code, path, response.text)
        if response.status_code == 429 or response.status_code >= 500:
            raise MailboxTransientError(
                response.status_code, path, response.text, retry_after=_retry_after(response)
            )
        if response.status_code >= 400:
            raise MailboxAPIError(response.status_code, path, response.text)
        return response.json()

    async def list_messages(
        self,
        query: str,
        page_token: str | None = None,
        max_results: int = 500,
    ) -> MessagePage:
        params: dict[str, Any] = {"q": query, "maxResults": min(max_results, 500)}
        if page_token:
            params["pageToken"] = page_token
        data = await self._get("/messages", params)
        ids = [m["id"] for m in data.get("messages") or []]
        logger.debug("gmail_page_listed", count=len(ids), has_next=bool(data.get("nextPageToken")))
        return MessagePage(ids=ids, next_page_token=data.get("nextPageToken"))

    async def get_message(self, message_id: str) -> RemoteMessage:
        data = await self._get(f"/messages/{message_id}", {"format": "full"})
        return parse_message(data)

    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        data = await self._get(f"/messages/{message_id}/attachments/{attachment_id}")
        return decode_base64url(data.get("data", ""))

    async def history_delta(self, cursor: str) -> list[str]:
        """Ids of messages added since *cursor* (a Gmail historyId).

        Raises :class:`CursorExpiredError` when Gmail no longer knows the
        cursor (404, or a 400 complaining about the historyId).
        """
        ids: list[str] = []
        token: str | None = None
        while True:
            params: dict[str, Any] = {"startHistoryId": cursor, "historyTypes": "messageAdded"}
            if token:
                params["pageToken"] = token
            try:
                data = await self._get("/history", params)
            except (MailboxAuthError, MailboxTransientError):
                raise
            except MailboxAPIError as exc:
                if exc.status_code == 404 or "historyId" in exc.body:
                    raise CursorExpiredError(f"History cursor {cursor} is no longer valid") from exc
                raise
            for entry in data.get("history") or []:
                for added in entry.get("messagesAdded") or []:
                    ids.append(added["message"]["id"])
            token = data.get("nextPageToken")
            if not token:
                break
        return list(dict.fromkeys(ids))

    async def latest_cursor(self) -> str:
        data = await self._get("/profile")
        return str(data["historyId"])


class GmailClientFactory:
    """Owns the shared HTTP client and builds a :class:`GmailClient` per mailbox."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._http = httpx.AsyncClient(timeout=httpx.Timeout(self._settings.gmail.timeout_seconds))
        logger.info("gmail_client_factory_started", base_url=self._settings.gmail.api_base_url)

    async def stop(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.info("gmail_client_factory_stopped")

    def __call__(self, mailbox: MailboxConnection | None) -> GmailClient:
        if self._http is None:
            raise AssertionError("Client factory not started")
        if mailbox is None or mailbox.status != MailboxStatus.CONNECTED.value:
            raise MailboxNotFoundError("Mailbox connection not found or disconnected")
        if not mailbox.access_token:
            raise MissingCredentialsError(f"Mailbox {mailbox.id} has no access token")
        return GmailClient(
            self._http,
            mailbox.access_token,
            self._settings.gmail,
            self._settings.retry,
        )
