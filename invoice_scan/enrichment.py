"""AI enrichment client: structured extraction from text, images and PDFs,
and batch classification of message metadata for the AI quick scan.

The orchestrator and incremental sync only depend on the
:class:`EnrichmentClient` protocol.  :func:`build_enrichment_client` picks
the Anthropic-backed implementation when an API key is configured, and the
permanently disabled one otherwise.
"""

from __future__ import annotations

import base64
import json
import re
from typing import Any, Protocol

import structlog
from anthropic import AsyncAnthropic

from .config import AIConfig, Settings
from .models import DocumentType, EmailCandidate, EmailClassification, ExtractedInvoice, VendorHint

logger = structlog.get_logger()

BUILTIN_CATEGORIES = ("תוכנה", "חשבונות", "משרד", "ציוד", "נסיעות", "שיווק", "מקצועי", "כללי")
DEFAULT_CATEGORY = "כללי"
UNKNOWN_VENDOR = "Unknown"

_MAX_PROMPT_HINTS = 20

_SYSTEM_PROMPT = f"""You are an invoice/receipt data extractor. Extract structured data and return ONLY valid JSON, no markdown, no explanation.

Return exactly this shape:
{{
  "vendor_name": "string - the vendor/company name",
  "amount_minor": 0,
  "currency": "ILS",
  "vat_minor": null,
  "issued_at": "YYYY-MM-DD",
  "type": "INVOICE",
  "category": "{DEFAULT_CATEGORY}",
  "confidence": 0.8
}}

Rules:
- amount_minor is in minor currency units (agorot, cents). Example: 150.00 ILS = 15000
- vat_minor: if VAT is listed separately, extract it. Otherwise null.
- type: one of INVOICE, RECEIPT, SUBSCRIPTION, PAYMENT_CONFIRMATION
- category: one of {", ".join(BUILTIN_CATEGORIES)}
- issued_at: best guess date in YYYY-MM-DD, or null if unknown.
- confidence: 0-1, how confident you are in the extraction.
- If you truly cannot extract anything useful, return confidence 0.1 with best guesses."""

_CLASSIFICATION_PROMPT = f"""You classify a business mailbox for EXPENSE tracking. Find the emails that document money the business PAID to a vendor; they go to the accountant.

Reject (not an expense):
- income: payouts, payments received, customer orders
- alerts: billing or budget warnings, usage thresholds, expiry reminders
- failures: failed or declined payments, auto-recharge failures
- cancellations and non-renewal notices
- onboarding, welcome mails and feature announcements
- performance or analytics reports
- newsletters, promotions, shared files, meeting invites, security alerts, shipping updates

Accept (money paid by the business):
- invoices (חשבונית, חשבונית מס, tax invoice) and receipts (קבלה, אישור תשלום)
- SaaS and subscription charges, hosting and domain renewals
- ad spend receipts (not budget alerts)
- purchase confirmations and utility bills

Return ONLY a JSON array with one object per email, by index:
- expense: {{"index": N, "is_invoice": true, "type": "INVOICE|RECEIPT|SUBSCRIPTION|PAYMENT_CONFIRMATION", "vendor_name": "...", "amount_minor": 0, "currency": "ILS|USD|EUR", "category": "...", "confidence": 0.9}}
- not an expense: {{"index": N, "is_invoice": false}}

amount_minor is in minor units (agorot, cents): ₪150 = 15000, $20 = 2000. When the amount is not visible, use 0 and still mark a clear expense as an invoice.
Categories: {", ".join(BUILTIN_CATEGORIES)}"""

_CLASSIFY_SNIPPET_CHARS = 120

_FENCE = re.compile(r"```(?:json)?\s*")


class EnrichmentClient(Protocol):
    """Optional AI extraction capability."""

    @property
    def enabled(self) -> bool: ...

    async def extract_text(self, text: str, hints: list[VendorHint] | None = None) -> ExtractedInvoice: ...

    async def extract_image(
        self, data: bytes, mime_type: str, hints: list[VendorHint] | None = None
    ) -> ExtractedInvoice: ...

    async def extract_pdf(self, data: bytes, hints: list[VendorHint] | None = None) -> ExtractedInvoice: ...

    async def classify_batch(self, candidates: list[EmailCandidate]) -> list[EmailClassification]: ...


def build_system_prompt(hints: list[VendorHint] | None = None) -> str:
    """Extraction prompt, extended with learned vendor→category corrections."""
    if not hints:
        return _SYSTEM_PROMPT
    lines = [
        _SYSTEM_PROMPT,
        "",
        "IMPORTANT: The user has previously corrected categories for these vendors. "
        "Use these mappings when you encounter the same or similar vendor names:",
    ]
    lines.extend(f'- "{hint.vendor_name}" -> {hint.category}' for hint in hints[:_MAX_PROMPT_HINTS])
    custom = sorted({hint.category for hint in hints} - set(BUILTIN_CATEGORIES))
    if custom:
        lines.append(f"Additional custom categories this account uses: {', '.join(custom)}.")
    return "\n".join(lines)


def _to_int(value: Any) -> int | None:
    try:
        return round(float(value))
    except (TypeError, ValueError):
        return None


def _to_type(value: Any) -> DocumentType:
    try:
        return DocumentType(str(value).upper())
    except ValueError:
        return DocumentType.INVOICE


def _to_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.5
    return min(1.0, max(0.0, confidence))


def parse_extraction(text: str) -> ExtractedInvoice:
    """Leniently parse a model reply into an :class:`ExtractedInvoice`.

    Code fences are stripped and fields are coerced one by one.  A reply
    that is not a JSON object yields a 0.1-confidence best guess.
    """
    cleaned = _FENCE.sub("", text).strip()
    try:
        parsed = json.loads(cleaned)
        if not isinstance(parsed, dict):
            raise ValueError("extraction reply is not a JSON object")
    except ValueError:
        logger.warning("ai_reply_unparseable", reply=cleaned[:200])
        return ExtractedInvoice(vendor_name=UNKNOWN_VENDOR, category=DEFAULT_CATEGORY, confidence=0.1)

    issued_at = parsed.get("issued_at")
    return ExtractedInvoice(
        vendor_name=str(parsed.get("vendor_name") or UNKNOWN_VENDOR),
        amount_minor=_to_int(parsed.get("amount_minor")) or 0,
        currency=str(parsed.get("currency") or "ILS").upper(),
        vat_minor=_to_int(parsed.get("vat_minor")),
        issued_at=str(issued_at) if issued_at else None,
        type=_to_type(parsed.get("type") or DocumentType.INVOICE.value),
        category=str(parsed.get("category") or DEFAULT_CATEGORY),
        confidence=_to_confidence(parsed.get("confidence")),
    )


def format_candidates(candidates: list[EmailCandidate]) -> str:
    """One compact line per email for the classification prompt."""
    lines = []
    for candidate in candidates:
        line = f'{candidate.index}. From: "{candidate.sender}" | Subject: "{candidate.subject}"'
        if candidate.snippet:
            line += f' | Preview: "{candidate.snippet[:_CLASSIFY_SNIPPET_CHARS]}"'
        if candidate.attachment_names:
            line += f" | Attachments: {', '.join(candidate.attachment_names)}"
        if candidate.date:
            line += f" | Date: {candidate.date}"
        lines.append(line)
    return "\n".join(lines)


def parse_classifications(text: str, candidates: list[EmailCandidate]) -> list[EmailClassification]:
    """Leniently parse a batch classification reply.

    A reply that is not a JSON array marks every candidate as a
    non-invoice; entries without a usable index are dropped.
    """
    cleaned = _FENCE.sub("", text).strip()
    try:
        parsed = json.loads(cleaned)
        if not isinstance(parsed, list):
            raise ValueError("classification reply is not a JSON array")
    except ValueError:
        logger.warning("ai_classification_unparseable", reply=cleaned[:300])
        return [EmailClassification(index=candidate.index) for candidate in candidates]

    results = []
    for entry in parsed:
        if not isinstance(entry, dict):
            continue
        index = _to_int(entry.get("index"))
        if index is None:
            continue
        category = entry.get("category")
        results.append(
            EmailClassification(
                index=index,
                is_invoice=bool(entry.get("is_invoice")),
                type=_to_type(entry.get("type") or DocumentType.INVOICE.value),
                vendor_name=str(entry.get("vendor_name") or ""),
                amount_minor=max(_to_int(entry.get("amount_minor")) or 0, 0),
                currency=str(entry.get("currency") or "ILS").upper(),
                category=str(category) if category else DEFAULT_CATEGORY,
                confidence=_to_confidence(entry.get("confidence") or 0),
            )
        )
    return results


class AnthropicEnrichmentClient:
    """Extraction through the Anthropic Messages API."""

    def __init__(self, client: AsyncAnthropic, config: AIConfig) -> None:
        self._client = client
        self._config = config

    @property
    def enabled(self) -> bool:
        return True

    async def _reply(self, operation: str, system: str, content: str | list[dict[str, Any]], max_tokens: int) -> str:
        response = await self._client.messages.create(
            model=self._config.model,
            max_tokens=max_tokens,
            system=system,
            messages=[{"role": "user", "content": content}],
        )
        logger.info(
            "ai_usage",
            operation=operation,
            model=self._config.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return "".join(block.text for block in response.content if block.type == "text")

    async def _extract(self, operation: str, content: str | list[dict[str, Any]], hints) -> ExtractedInvoice:
        text = await self._reply(operation, build_system_prompt(hints), content, self._config.max_tokens)
        return parse_extraction(text)

    async def extract_text(self, text: str, hints: list[VendorHint] | None = None) -> ExtractedInvoice:
        prompt = f"Extract invoice data from this email:\n\n{text[: self._config.max_text_chars]}"
        return await self._extract("extract_text", prompt, hints)

    async def extract_image(
        self, data: bytes, mime_type: str, hints: list[VendorHint] | None = None
    ) -> ExtractedInvoice:
        content = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": mime_type,
                    "data": base64.standard_b64encode(data).decode("ascii"),
                },
            },
            {"type": "text", "text": "Extract invoice/receipt data from this image. Return JSON only."},
        ]
        return await self._extract("extract_image", content, hints)

    async def extract_pdf(self, data: bytes, hints: list[VendorHint] | None = None) -> ExtractedInvoice:
        content = [
            {
                "type": "document",
                "source": {
                    "type": "base64",
                    "media_type": "application/pdf",
                    "data": base64.standard_b64encode(data).decode("ascii"),
                },
            },
            {"type": "text", "text": "Extract invoice/receipt data from this PDF. Return JSON only."},
        ]
        return await self._extract("extract_pdf", content, hints)

    async def classify_batch(self, candidates: list[EmailCandidate]) -> list[EmailClassification]:
        """Classify a batch of messages by metadata in a single call."""
        if not candidates:
            return []
        prompt = f"Classify these {len(candidates)} emails:\n\n{format_candidates(candidates)}"
        text = await self._reply("classify_batch", _CLASSIFICATION_PROMPT, prompt, self._config.classify_max_tokens)
        return parse_classifications(text, candidates)


class DisabledEnrichmentClient:
    """Permanent "no AI" mode. Callers check :attr:`enabled` and skip."""

    @property
    def enabled(self) -> bool:
        return False

    async def extract_text(self, text: str, hints: list[VendorHint] | None = None) -> ExtractedInvoice:
        raise RuntimeError("AI enrichment is disabled")

    async def extract_image(
        self, data: bytes, mime_type: str, hints: list[VendorHint] | None = None
    ) -> ExtractedInvoice:
        raise RuntimeError("AI enrichment is disabled")

    async def extract_pdf(self, data: bytes, hints: list[VendorHint] | None = None) -> ExtractedInvoice:
        raise RuntimeError("AI enrichment is disabled")

    async def classify_batch(self, candidates: list[EmailCandidate]) -> list[EmailClassification]:
        raise RuntimeError("AI enrichment is disabled")


def build_enrichment_client(settings: Settings) -> AnthropicEnrichmentClient | DisabledEnrichmentClient:
    api_key = settings.ai.api_key.get_secret_value() if settings.ai.api_key else ""
    if not api_key:
        logger.info("ai_enrichment_disabled", reason="no_api_key")
        return DisabledEnrichmentClient()
    client = AsyncAnthropic(api_key=api_key, timeout=settings.ai.timeout_seconds, max_retries=1)
    logger.info("ai_enrichment_enabled", model=settings.ai.model)
    return AnthropicEnrichmentClient(client, settings.ai)
