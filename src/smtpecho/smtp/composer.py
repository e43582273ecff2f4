"""
Reply composer for smtp-echo.

This module builds the outgoing MIME reply: threading headers, identity, a
fresh Message-ID and either a single text/plain part or a
multipart/alternative pair.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.nonmultipart import MIMENonMultipart
from email.mime.text import MIMEText
from email.policy import compat32
from email.utils import format_datetime, formataddr, make_msgid
from typing import Optional, Union

from ..__version__ import __version__
from ..common.exceptions import ComposeError
from ..common.models import ReplierIdentity, ReplyBody, ThreadMetadata
from .body import html_to_text
from .parser import is_valid_address

logger = logging.getLogger(__name__)

# compat32 keeps header values as written; only the line endings change
SMTP_COMPAT32 = compat32.clone(linesep="\r\n")

_HOSTNAME_PATTERN = re.compile(
    r"^(?=.{1,253}$)[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$"
)


@dataclass
class EmailRecipient:
    """Represents an email address with an optional display name."""

    email: str
    display_name: Optional[str] = None

    def to_string(self) -> str:
        """Convert to header format, encoding non-ASCII display names."""
        if self.display_name:
            return formataddr((self.display_name, self.email), charset="utf-8")
        return self.email

    @classmethod
    def parse(cls, value: str) -> "EmailRecipient":
        """
        Parse an email address string.

        Handles formats like:
        - "user@example.com"
        - "Display Name <user@example.com>"
        - '"Display Name" <user@example.com>'

        Args:
            value: Email address string.

        Returns:
            EmailRecipient instance.
        """
        value = value.strip()

        # Check for "Display Name <email>" format
        if "<" in value and value.endswith(">"):
            parts = value.rsplit("<", 1)
            display_name = parts[0].strip().strip('"').strip("'").strip()
            email = parts[1].rstrip(">").strip()
            return cls(email=email, display_name=display_name if display_name else None)

        # Plain email address
        return cls(email=value)


@dataclass
class ComposedReply:
    """Represents a composed reply ready for signing and sending."""

    message_id: str
    raw_data: bytes
    mime_message: Union[MIMEMultipart, MIMENonMultipart]
    sender: EmailRecipient
    recipient: str
    subject: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def normalize_reply_subject(subject: str) -> str:
    """Prefix the subject with "Re: " unless it already is a reply."""
    trimmed = subject.strip()
    if not trimmed:
        return "Re:"
    if trimmed.lower().startswith("re:"):
        return trimmed
    return f"Re: {trimmed}"


class EmailComposer:
    """
    Composes the MIME reply to an inbound message.

    This class handles:
    - Reply subject normalization
    - From/To headers from the configured identity and selected recipient
    - In-Reply-To and References threading headers
    - Message-ID generation qualified with the configured hostname
    - Single-part or multipart/alternative bodies
    """

    def __init__(
        self,
        identity: ReplierIdentity,
        default_charset: str = "utf-8",
        x_mailer: Optional[str] = None,
    ) -> None:
        """
        Initialize the email composer.

        Args:
            identity: The reply identity (hostname, From address and name).
            default_charset: Character set for text parts.
            x_mailer: Optional X-Mailer header value.
        """
        self.identity = identity
        self.default_charset = default_charset
        self.x_mailer = x_mailer or f"smtp-echo/{__version__}"

        logger.debug(
            "EmailComposer initialized with hostname=%s, from=%s",
            identity.hostname,
            identity.from_address,
        )

    def generate_message_id(self) -> str:
        """
        Generate a unique Message-ID.

        The configured hostname qualifies the ID; when it is not a usable
        domain, the local fully-qualified name is used instead.

        Returns:
            Message-ID string in format <unique-id@domain>.
        """
        hostname = self.identity.hostname.strip().rstrip(".")
        if hostname and _HOSTNAME_PATTERN.match(hostname):
            return make_msgid(domain=hostname)

        logger.debug("Hostname %r unusable for Message-ID, using default", hostname)
        return make_msgid()

    def _sender(self) -> EmailRecipient:
        """Build the From address from the identity."""
        sender = EmailRecipient.parse(self.identity.from_address)
        if not is_valid_address(sender.email):
            raise ComposeError(
                f"Invalid configured from_address: {self.identity.from_address!r}"
            )
        if self.identity.from_name:
            sender.display_name = self.identity.from_name
        return sender

    def _create_text_part(self, content: str, subtype: str = "plain") -> MIMEText:
        """Create a text MIME part."""
        return MIMEText(content, subtype, self.default_charset)

    def compose_reply(
        self,
        recipient: str,
        body: ReplyBody,
        meta: ThreadMetadata,
        date: Optional[datetime] = None,
    ) -> ComposedReply:
        """
        Compose the reply message.

        Args:
            recipient: The selected reply recipient (bare address).
            body: Plain and HTML content to echo.
            meta: Threading information from the inbound message.
            date: Optional custom date (defaults to now, UTC).

        Returns:
            ComposedReply instance.

        Raises:
            ComposeError: If the identity or recipient is malformed.
        """
        sender = self._sender()

        to_address = EmailRecipient.parse(recipient).email
        if not is_valid_address(to_address):
            raise ComposeError(f"Invalid recipient address: {recipient!r}")

        plain_body = body.plain
        html_body = body.html
        if not plain_body and not html_body:
            plain_body = "\n"

        msg: Union[MIMEMultipart, MIMEText]
        if not html_body:
            msg = self._create_text_part(plain_body, "plain")
        else:
            if not plain_body:
                plain_body = html_to_text(html_body) or "\n"
            msg = MIMEMultipart("alternative")
            msg.attach(self._create_text_part(plain_body, "plain"))
            msg.attach(self._create_text_part(html_body, "html"))

        subject = normalize_reply_subject(meta.subject)
        message_id = self.generate_message_id()

        # Set headers
        msg["Date"] = format_datetime(date or datetime.now(timezone.utc))
        msg["Subject"] = subject
        msg["From"] = sender.to_string()
        msg["To"] = to_address
        msg["Message-ID"] = message_id

        # Threading headers
        if meta.message_id:
            msg["In-Reply-To"] = f"<{meta.message_id}>"
        if meta.references:
            msg["References"] = " ".join(f"<{ref}>" for ref in meta.references)

        if "MIME-Version" not in msg:
            msg["MIME-Version"] = "1.0"

        if self.x_mailer:
            msg["X-Mailer"] = self.x_mailer

        raw_data = msg.as_bytes(policy=SMTP_COMPAT32)

        logger.debug(
            "Composed reply: message_id=%s, to=%s, multipart=%s, size=%d bytes",
            message_id,
            to_address,
            msg.is_multipart(),
            len(raw_data),
        )

        return ComposedReply(
            message_id=message_id,
            raw_data=raw_data,
            mime_message=msg,
            sender=sender,
            recipient=to_address,
            subject=subject,
        )
