"""
Reply body extraction.

Collects the plain and HTML content of an inbound message so it can be echoed
back, with fallbacks for messages whose MIME structure yields nothing usable.
"""

import html
import logging
import re

from ..common.models import ReplyBody
from .parser import DecodedMessage, DecodedPart

logger = logging.getLogger(__name__)

_HTML_TAG_PATTERN = re.compile(r"<[^>]*>", re.DOTALL)

SEGMENT_SEPARATOR = "\n\n"


def html_to_text(markup: str) -> str:
    """Strip tags, decode entity references and collapse whitespace."""
    without_tags = _HTML_TAG_PATTERN.sub(" ", markup)
    unescaped = html.unescape(without_tags)
    return " ".join(unescaped.split())


def extract_raw_body(data: bytes) -> str:
    """Return everything after the first blank line of the raw payload."""
    for separator in (b"\r\n\r\n", b"\n\n"):
        index = data.find(separator)
        if index >= 0:
            return data[index + len(separator):].decode("utf-8", errors="replace")
    return ""


def _decode_part(part: DecodedPart) -> str:
    """Decode part content with its declared charset."""
    charset = part.charset or "utf-8"
    try:
        return part.content.decode(charset, errors="replace")
    except LookupError:
        # Unknown charset name
        return part.content.decode("utf-8", errors="replace")


def extract_reply_body(message: DecodedMessage) -> ReplyBody:
    """
    Build the reply body from the decoded parts.

    text/plain and unlabeled parts feed the plain text, text/html parts feed
    the HTML; attachments and other media types are skipped. When the parts
    yield nothing, the raw body after the header block is used. Plain text is
    synthesized from the HTML when only HTML was found.

    Args:
        message: The decoded inbound message.

    Returns:
        ReplyBody whose plain text is non-empty whenever the message carried
        any textual content.
    """
    plain_segments: list[str] = []
    html_segments: list[str] = []

    for part in message.parts:
        if part.is_attachment:
            continue
        if not part.content:
            continue

        if part.content_type in ("", "text/plain"):
            plain_segments.append(_decode_part(part))
        elif part.content_type == "text/html":
            html_segments.append(_decode_part(part))

    body = ReplyBody(
        plain=SEGMENT_SEPARATOR.join(plain_segments),
        html=SEGMENT_SEPARATOR.join(html_segments),
    )

    if body.is_empty:
        raw_body = extract_raw_body(message.raw)
        logger.debug(
            "No usable body parts, falling back to raw body (%d chars)",
            len(raw_body),
        )
        if message.content_type == "text/html":
            body.html = raw_body
            body.plain = html_to_text(raw_body)
        else:
            body.plain = raw_body

    if not body.plain and body.html:
        body.plain = html_to_text(body.html)

    return body
