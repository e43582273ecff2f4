"""
Inbound message parser for the smtp-echo reply pipeline.

This module decodes the raw DATA payload into headers and an ordered list of
body parts, derives the threading headers for the reply, and picks the single
address the reply goes to.
"""

import email
import email.errors
import email.header
import email.utils
import logging
import re
from dataclasses import dataclass, field
from email.message import Message
from typing import Iterator, Optional

from ..common.exceptions import DecodeError, NoRecipientError
from ..common.models import ThreadMetadata

logger = logging.getLogger(__name__)

# A msg-id token: "<" id-left "@" id-right ">", loosely
_MSG_ID_PATTERN = re.compile(r"<([^<>\s]+)>")

# Folding whitespace: a line break followed by a space or tab
_FOLDING_PATTERN = re.compile(r"\r?\n(?=[ \t])")

# addr-spec without quoted local parts or domain literals
_ADDR_SPEC_PATTERN = re.compile(r"^[^@\s<>()\[\],;:\"\\]+@[^@\s<>()\[\],;:\"\\]+$")


@dataclass
class DecodedPart:
    """A single leaf body part."""

    headers: list[tuple[str, str]] = field(default_factory=list)
    content_type: str = ""
    content_disposition: str = ""
    charset: Optional[str] = None
    content: bytes = b""

    @property
    def is_attachment(self) -> bool:
        return self.content_disposition == "attachment"


@dataclass
class DecodedMessage:
    """A decoded inbound message."""

    headers: Message
    parts: list[DecodedPart] = field(default_factory=list)
    raw: bytes = b""

    @property
    def content_type(self) -> str:
        """Normalized top-level media type, empty when undeclared."""
        return normalize_media_type(self.headers.get("Content-Type", ""))


def normalize_media_type(content_type: Optional[str]) -> str:
    """Reduce a Content-Type value to a lower-cased type/subtype."""
    if not content_type:
        return ""
    return str(content_type).split(";", 1)[0].strip().lower()


def decode_header_value(header_value: Optional[str]) -> str:
    """Decode an email header value, handling folding and encoded words."""
    if not header_value:
        return ""

    header_value = _FOLDING_PATTERN.sub("", str(header_value))

    try:
        decoded_parts = email.header.decode_header(header_value)
        result_parts = []

        for content, charset in decoded_parts:
            if isinstance(content, bytes):
                try:
                    charset = charset or "utf-8"
                    result_parts.append(content.decode(charset, errors="replace"))
                except LookupError:
                    result_parts.append(content.decode("utf-8", errors="replace"))
            else:
                result_parts.append(content)

        return "".join(result_parts).strip()

    except email.errors.HeaderParseError as e:
        logger.warning("Failed to decode header: %s", str(e))
        return header_value.strip()


def is_valid_address(address: str) -> bool:
    """Check that a value is a bare local@domain address."""
    return bool(address) and bool(_ADDR_SPEC_PATTERN.match(address))


class EmailParser:
    """
    Parser for raw SMTP DATA payloads.

    Handles MIME multipart messages and transfer encodings (quoted-printable,
    base64) and returns the leaf parts in depth-first order.
    """

    def parse(self, raw_message: bytes) -> DecodedMessage:
        """
        Parse a raw email message.

        Args:
            raw_message: The raw email message as bytes.

        Returns:
            DecodedMessage with the top-level headers and leaf parts.

        Raises:
            DecodeError: If the message cannot be parsed.
        """
        if not raw_message or not raw_message.strip():
            raise DecodeError("Empty message payload")

        try:
            msg = email.message_from_bytes(raw_message)
        except Exception as e:
            logger.error("Failed to parse email: %s", str(e))
            raise DecodeError(f"Failed to parse email message: {e}") from e

        if not msg.keys():
            raise DecodeError(
                "Failed to parse email message: no header block",
                {"defects": [type(d).__name__ for d in msg.defects]},
            )

        parts = list(self._walk(msg))

        logger.debug(
            "Parsed email: message_id=%s, content_type=%s, parts=%d",
            msg.get("Message-ID", ""),
            normalize_media_type(msg.get("Content-Type", "")) or "(none)",
            len(parts),
        )

        return DecodedMessage(headers=msg, parts=parts, raw=raw_message)

    def _walk(self, part: Message) -> Iterator[DecodedPart]:
        """Yield leaf parts depth-first, descending into multipart containers."""
        if part.get_content_maintype() == "multipart":
            if not part.is_multipart():
                # Declared multipart but no usable boundary
                logger.debug("Multipart container without parts: %s", part.defects)
                return
            if part.get_content_disposition() == "attachment":
                return
            for child in part.get_payload():
                yield from self._walk(child)
            return

        yield DecodedPart(
            headers=list(part.items()),
            content_type=normalize_media_type(part.get("Content-Type", "")),
            content_disposition=part.get_content_disposition() or "",
            charset=part.get_content_charset(),
            content=self._get_payload_bytes(part),
        )

    def _get_payload_bytes(self, part: Message) -> bytes:
        """Get raw bytes payload from message part."""
        try:
            payload = part.get_payload(decode=True)
        except (ValueError, TypeError) as e:
            logger.warning("Failed to get payload bytes: %s", str(e))
            return b""
        if not isinstance(payload, bytes):
            return b""
        return payload


def extract_thread_metadata(headers: Message) -> ThreadMetadata:
    """
    Derive Subject, Message-ID and References for the reply.

    The current Message-ID, when present, is always the last reference.
    """
    subject = decode_header_value(headers.get("Subject", ""))

    message_id = ""
    match = _MSG_ID_PATTERN.search(str(headers.get("Message-ID", "")))
    if match:
        message_id = match.group(1)

    raw_references = " ".join(str(v) for v in headers.get_all("References", []))
    references = _MSG_ID_PATTERN.findall(raw_references)

    if message_id and (not references or references[-1] != message_id):
        references.append(message_id)

    return ThreadMetadata(
        subject=subject,
        message_id=message_id,
        references=tuple(references),
    )


def normalize_recipient_address(value: Optional[str]) -> str:
    """
    Normalize an envelope sender into a reply address.

    Returns an empty string when the value is not usable.
    """
    trimmed = (value or "").strip()
    if trimmed.startswith("<"):
        trimmed = trimmed[1:]
    if trimmed.endswith(">"):
        trimmed = trimmed[:-1]
    trimmed = trimmed.strip()
    if not trimmed:
        return ""

    addresses = email.utils.getaddresses([trimmed])
    if len(addresses) == 1 and is_valid_address(addresses[0][1]):
        return addresses[0][1]

    # Lenient fallback for envelope senders the address parser rejects
    if trimmed.count("@") == 1 and not any(c.isspace() for c in trimmed):
        return trimmed

    return ""


def select_reply_recipient(envelope_from: str, headers: Message) -> str:
    """
    Pick the address the reply is sent to.

    Precedence: envelope sender, then Reply-To, then From.

    Raises:
        NoRecipientError: If none of them yields an address.
    """
    recipient = normalize_recipient_address(envelope_from)
    if recipient:
        return recipient

    for key in ("Reply-To", "From"):
        values = headers.get_all(key, [])
        if not values:
            continue
        for _, address in email.utils.getaddresses([str(v) for v in values]):
            if is_valid_address(address):
                logger.debug("Reply recipient taken from %s header", key)
                return address

    raise NoRecipientError({"envelope_from": envelope_from})
