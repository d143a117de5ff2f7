"""MIME payload helpers — header lookup and plain-text body extraction.

Payloads follow the Gmail `format=full` shape:
    {mimeType, headers:[{name, value}], body:{data?, size}, parts:[...]}

Extraction order per level: direct body data, first text/plain part, first
text/html part (converted to text), then nested multipart parts, down to a
fixed depth. A candidate only counts when it is longer than the minimum
body length; otherwise the message snippet is used.
"""

import base64
import binascii
import html
import re

from ..config import settings

MAX_DEPTH = settings.mime_max_depth
MIN_BODY_LENGTH = settings.min_body_length


def extract_headers(payload: dict | None) -> dict:
    """Case-insensitive From/Subject/Date lookup. Missing headers → ''."""
    found = {"from": "", "subject": "", "date": ""}
    for header in (payload or {}).get("headers") or []:
        name = (header.get("name") or "").lower()
        if name in found and not found[name]:
            found[name] = header.get("value") or ""
    return found


def decode_body_data(data: str | None) -> str:
    """URL-safe base64 (padding optional) → UTF-8 text; undecodable input → ''."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, ValueError):
        return ""
    return raw.decode("utf-8", errors="replace")


def html_to_text(markup: str) -> str:
    """Strip script/style and tags, decode entities, collapse whitespace."""
    if not markup:
        return ""
    text = re.sub(r"<style[^>]*>.*?</style>", " ", markup, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<script[^>]*>.*?</script>", " ", text, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


def _usable(text: str) -> bool:
    return len(text.strip()) > MIN_BODY_LENGTH


def _part_text(parts: list[dict], mime_type: str) -> str:
    """First part of `mime_type` whose text is long enough; stubs are skipped."""
    for part in parts:
        if (part.get("mimeType") or "").lower() != mime_type:
            continue
        text = decode_body_data((part.get("body") or {}).get("data"))
        if mime_type == "text/html":
            text = html_to_text(text)
        if _usable(text):
            return text.strip()
    return ""


def _walk(payload: dict, depth: int) -> str:
    if depth > MAX_DEPTH:
        return ""

    direct = decode_body_data((payload.get("body") or {}).get("data"))
    if direct:
        if (payload.get("mimeType") or "").lower() == "text/html":
            direct = html_to_text(direct)
        if _usable(direct):
            return direct.strip()

    parts = payload.get("parts") or []
    if not parts:
        return ""

    plain = _part_text(parts, "text/plain")
    if plain:
        return plain

    rich = _part_text(parts, "text/html")
    if rich:
        return rich

    for part in parts:
        if part.get("parts"):
            nested = _walk(part, depth + 1)
            if nested:
                return nested
    return ""


def extract_body(message: dict) -> str:
    """Clean body text of a fetched message, falling back to its snippet."""
    text = _walk(message.get("payload") or {}, 1)
    if text:
        return text
    return html.unescape(message.get("snippet") or "").strip()
