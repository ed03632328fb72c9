"""
Parsing and identity for raw RFC-822 emails.

An email's identity is its :class:`~freight_intake.schemas.Fingerprint`: the
first ``Message-ID`` header (when present) plus a SHA-256 over the
normalized ``From``/``To``/``Subject``/``Date`` headers and the plain-text
body.  The content hash is always computed so that re-sent copies with a
fresh Message-ID, or mail clients that omit it, are still recognised.
"""

import email
import html
import logging
import re
from email import policy
from email.message import EmailMessage, Message
from email.utils import parseaddr
from typing import Dict, List, Optional, Tuple

from freight_intake.schemas import Fingerprint
from freight_intake.utils.file_operations import hash_bytes

logger = logging.getLogger(__name__)

FINGERPRINT_HEADERS = ("from", "to", "subject", "date")


def parse_message(raw: bytes) -> EmailMessage:
    return email.message_from_bytes(raw, policy=policy.default)


def _header(message: Message, name: str) -> str:
    try:
        value = message.get(name)
    except (ValueError, TypeError, IndexError) as exc:
        logger.warning(f"Ignoring malformed {name} header: {exc}")
        return ""
    return str(value).strip() if value is not None else ""


def parse_headers(raw: bytes) -> Dict[str, str]:
    """Return the lower-cased headers used for identity and enrichment."""
    message = parse_message(raw)
    names = FINGERPRINT_HEADERS + ("cc", "reply-to", "message-id")
    return {name: _header(message, name) for name in names}


def _part_text(part: Message) -> str:
    try:
        content = part.get_content()
        if isinstance(content, bytes):
            return content.decode("utf-8", errors="replace")
        return content
    except (LookupError, KeyError, AttributeError):
        payload = part.get_payload(decode=True) or b""
        charset = part.get_content_charset() or "utf-8"
        try:
            return payload.decode(charset, errors="replace")
        except LookupError:
            return payload.decode("utf-8", errors="replace")


def html_to_text(markup: str) -> str:
    markup = re.sub(r"(?is)<(script|style).*?</\1>", " ", markup)
    markup = re.sub(r"(?i)<br\s*/?>|</p>|</div>|</tr>", "\n", markup)
    text = re.sub(r"<[^>]+>", " ", markup)
    return html.unescape(text)


def extract_plain_body(raw: bytes) -> str:
    """Return the text/plain body, or tag-stripped HTML when there is no plain part."""
    message = parse_message(raw)
    plain: List[str] = []
    markup: List[str] = []
    for part in message.walk():
        if part.get_content_maintype() == "multipart":
            continue
        if part.get_content_disposition() == "attachment":
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain":
            plain.append(_part_text(part))
        elif content_type == "text/html":
            markup.append(_part_text(part))

    if plain:
        return "\n".join(plain).strip()
    if markup:
        return html_to_text("\n".join(markup)).strip()
    return ""


def extract_attachments(raw: bytes) -> List[Tuple[str, str, bytes]]:
    """Return ``(filename, mime_type, payload)`` for each named attachment part."""
    message = parse_message(raw)
    attachments = []
    for part in message.walk():
        if part.get_content_maintype() == "multipart":
            continue
        filename = part.get_filename()
        if not filename:
            continue
        payload = part.get_payload(decode=True)
        if not payload:
            continue
        attachments.append((filename, part.get_content_type(), payload))
    return attachments


def extract_sender_email(from_header: Optional[str]) -> Optional[str]:
    _, address = parseaddr(from_header or "")
    return address.strip().lower() if "@" in address else None


def _normalize(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def fingerprint(
    raw: bytes,
    headers: Optional[Dict[str, str]] = None,
    plain_body: Optional[str] = None,
) -> Fingerprint:
    """Compute the identity of a raw email.

    *headers* and *plain_body* may be passed when the caller has already
    parsed them; otherwise they are derived from *raw*.
    """
    headers = headers if headers is not None else parse_headers(raw)
    body = plain_body if plain_body is not None else extract_plain_body(raw)

    message_id = _normalize(headers.get("message-id", "")) or None

    parts = [
        _normalize(headers.get("from", "")).lower(),
        _normalize(headers.get("to", "")).lower(),
        _normalize(headers.get("subject", "")),
        _normalize(headers.get("date", "")),
        _normalize(body),
    ]
    content_sha = hash_bytes("\n".join(parts).encode("utf-8"))
    return Fingerprint(message_id=message_id, content_sha=content_sha)
