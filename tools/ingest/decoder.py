"""Lead Sentinel — Gmail payload decoding.

Walks the nested body-part tree depth-first and concatenates every
text/plain leaf and every text/html leaf, in traversal order.
"""
import base64
import binascii
import logging
from datetime import datetime, timezone
from email.utils import parseaddr, parsedate_to_datetime
from typing import Dict, List, Optional, Tuple

from tools.ingest.models import InboundMessage

logger = logging.getLogger("sentinel.leads.decoder")


def decode_part_data(data: str) -> str:
    """Decode Gmail body data (base64url, padding often stripped) to text."""
    if not data:
        return ""
    # base64url → standard alphabet, then restore padding
    std = data.replace("-", "+").replace("_", "/")
    std += "=" * (-len(std) % 4)
    try:
        raw = base64.b64decode(std)
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Undecodable body part ({len(data)} chars): {e}")
        return ""
    return raw.decode("utf-8", errors="replace")


def extract_bodies(payload: Dict) -> Tuple[str, str]:
    """
    Return (plain, html) for a message payload.
    Providers split content across several parts of the same type, so every
    matching leaf is appended rather than stopping at the first one.
    """
    plain: List[str] = []
    html: List[str] = []

    def _walk(part: Dict):
        mime_type = (part.get("mimeType") or "").lower()
        data = (part.get("body") or {}).get("data")
        if data and not part.get("filename"):
            if mime_type == "text/plain":
                plain.append(decode_part_data(data))
            elif mime_type == "text/html":
                html.append(decode_part_data(data))
        for sub in part.get("parts") or []:
            _walk(sub)

    _walk(payload or {})
    return "".join(plain), "".join(html)


def get_header(headers: List[Dict], name: str) -> str:
    """Extract a specific header value (case-insensitive)."""
    name_lower = name.lower()
    for h in headers:
        if h.get("name", "").lower() == name_lower:
            return h.get("value", "")
    return ""


def _received_at(raw: Dict, headers: List[Dict]) -> Optional[datetime]:
    internal = raw.get("internalDate")
    if internal:
        try:
            return datetime.fromtimestamp(int(internal) / 1000, tz=timezone.utc)
        except (TypeError, ValueError):
            pass
    date_str = get_header(headers, "Date")
    if date_str:
        try:
            return parsedate_to_datetime(date_str)
        except (TypeError, ValueError):
            return None
    return None


def decode_message(raw: Dict) -> InboundMessage:
    """Turn a messages.get(format=full) response into an InboundMessage."""
    payload = raw.get("payload", {}) or {}
    headers = payload.get("headers", []) or []
    plain, html = extract_bodies(payload)

    reply_to_header = get_header(headers, "Reply-To")
    reply_to = parseaddr(reply_to_header)[1] if reply_to_header else None

    return InboundMessage(
        message_id=raw.get("id", ""),
        thread_id=raw.get("threadId", "") or raw.get("id", ""),
        sender=get_header(headers, "From"),
        subject=get_header(headers, "Subject"),
        to=get_header(headers, "To"),
        reply_to=reply_to or None,
        received_at=_received_at(raw, headers),
        plain_body=plain,
        html_body=html,
        label_ids=list(raw.get("labelIds", []) or []),
    )
