"""Deterministic (regex) extraction of a financial document from a message.

Works on subject, snippet and plain-text body only; never touches the
network.  Returns ``None`` when the message carries no invoice signal.
"""

from __future__ import annotations

import math
import re

from .models import AttachmentRef, DocumentCandidate, DocumentType, RemoteMessage

#: Attachments the AI pass can read.
DOWNLOADABLE_EXTENSIONS = (".pdf", ".png", ".jpg", ".jpeg")

#: Attachments that count as an invoice signal on their own.
DOCUMENT_EXTENSIONS = (*DOWNLOADABLE_EXTENSIONS, ".xlsx", ".csv")

INVOICE_KEYWORDS = ("חשבונית", "invoice", "receipt", "קבלה", "payment", "תשלום", "billing", "הזמנה")

_SUBJECT_SIGNAL = re.compile(r"invoice|חשבונית|receipt|קבלה|payment|תשלום|billing|הזמנה|order|confirmation")
_INVOICE_FILENAME = re.compile(r"invoice|חשבונית|receipt|קבלה|bill|חשבון", re.IGNORECASE)
_SENDER_NAME = re.compile(r'^"?([^"<]+)"?\s*<')

_RECEIPT = re.compile(r"receipt|קבלה")
_SUBSCRIPTION = re.compile(r"subscription|מנוי")
_CONFIRMATION = re.compile(r"confirmation|אישור")

_NUMBER = r"([\d,]+\.?\d*)"

# Tried in order; the first plausible match wins.  ``None`` means the
# configured default currency.
_AMOUNT_PATTERNS: list[tuple[re.Pattern[str], str | None]] = [
    (re.compile(r"(?:₪|ILS|NIS)\s*" + _NUMBER), "ILS"),
    (re.compile(_NUMBER + r"\s*(?:₪|ILS|NIS)"), "ILS"),
    (re.compile(r"\$\s*" + _NUMBER), "USD"),
    (re.compile(_NUMBER + r"\s*USD", re.IGNORECASE), "USD"),
    (re.compile(r"€\s*" + _NUMBER), "EUR"),
    (re.compile(_NUMBER + r"\s*EUR", re.IGNORECASE), "EUR"),
    (re.compile(r'סה"כ[:\s]*' + _NUMBER), None),
    (re.compile(r"total[:\s]*" + _NUMBER, re.IGNORECASE), None),
]

_MAX_AMOUNT = 1_000_000
_RAW_TEXT_CHARS = 2000
_SEARCH_BODY_CHARS = 1000


def invoice_query() -> str:
    """Remote search query matching likely invoice messages."""
    return f"has:attachment OR subject:({' OR '.join(INVOICE_KEYWORDS)})"


def deep_scan_query(after_date: str) -> str:
    """:func:`invoice_query` restricted to messages after ``YYYY/MM/DD``."""
    return f"after:{after_date} ({invoice_query()})"


def extract_amount(text: str, *, default_currency: str = "ILS") -> tuple[int, str]:
    """Return ``(amount_minor, currency)``; ``(0, default_currency)`` when nothing fits."""
    for pattern, currency in _AMOUNT_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        try:
            value = float(match.group(1).replace(",", ""))
        except ValueError:
            continue
        if 0 < value < _MAX_AMOUNT:
            return round(value * 100), currency or default_currency
    return 0, default_currency


def extract_vendor(sender: str) -> str:
    match = _SENDER_NAME.match(sender)
    if match and match.group(1).strip():
        return match.group(1).strip()
    local = sender.split("@")[0]
    name = re.sub(r"[._-]", " ", local).strip()
    return name or "Unknown"


def classify_type(subject: str) -> DocumentType:
    lowered = subject.lower()
    if _RECEIPT.search(lowered):
        return DocumentType.RECEIPT
    if _SUBSCRIPTION.search(lowered):
        return DocumentType.SUBSCRIPTION
    if _CONFIRMATION.search(lowered):
        return DocumentType.PAYMENT_CONFIRMATION
    return DocumentType.INVOICE


def downloadable_attachments(message: RemoteMessage) -> list[AttachmentRef]:
    """PDF/image attachments that can actually be fetched."""
    return [
        att
        for att in message.attachments
        if att.attachment_id and att.filename.lower().endswith(DOWNLOADABLE_EXTENSIONS)
    ]


def within_size_band(attachment: AttachmentRef, *, min_bytes: int, max_bytes: int) -> bool:
    """Unknown size (0) passes; a known size must fall inside the band."""
    if attachment.size <= 0:
        return True
    return min_bytes <= attachment.size <= max_bytes


def needs_ai(message: RemoteMessage) -> bool:
    """True iff the message has a downloadable attachment.

    The size band is applied later, by the AI pass (:func:`ai_attachment`).
    """
    return bool(downloadable_attachments(message))


def ai_attachment(message: RemoteMessage, *, min_bytes: int, max_bytes: int) -> AttachmentRef | None:
    """First downloadable attachment inside the size band, if any."""
    for attachment in downloadable_attachments(message):
        if within_size_band(attachment, min_bytes=min_bytes, max_bytes=max_bytes):
            return attachment
    return None


def extract_document(
    message: RemoteMessage,
    *,
    default_currency: str = "ILS",
    vat_rate: float = 0.17,
) -> DocumentCandidate | None:
    subject = message.subject
    has_signal = bool(_SUBJECT_SIGNAL.search(subject.lower()))
    has_document_attachment = any(
        att.filename.lower().endswith(DOCUMENT_EXTENSIONS) for att in message.attachments
    )

    if not has_signal:
        # Attachment-only messages need an invoice-like filename.
        if not has_document_attachment:
            return None
        if not any(_INVOICE_FILENAME.search(att.filename) for att in message.attachments):
            return None

    body = message.body_text or ""
    search_text = f"{subject} {message.snippet} {body[:_SEARCH_BODY_CHARS]}"
    amount_minor, currency = extract_amount(search_text, default_currency=default_currency)

    vat_minor = None
    if amount_minor > 0 and currency == default_currency:
        vat_minor = math.floor(amount_minor * vat_rate)

    if has_signal and has_document_attachment:
        confidence = 0.85
    elif has_signal:
        confidence = 0.65
    else:
        confidence = 0.45

    return DocumentCandidate(
        remote_message_id=message.id,
        type=classify_type(subject),
        vendor_name=extract_vendor(message.sender),
        amount_minor=amount_minor,
        currency=currency,
        vat_minor=vat_minor,
        issued_at=message.internal_date,
        confidence=confidence,
        raw_text=body[:_RAW_TEXT_CHARS] if message.body_text else None,
        attachments=downloadable_attachments(message),
    )
