"""
SMTP module for smtp-echo.

This module provides the inbound SMTP server, the reply pipeline (parsing,
body extraction, composition) and direct-to-MX delivery of the reply.
"""

from .body import extract_raw_body, extract_reply_body, html_to_text
from .composer import (
    ComposedReply,
    EmailComposer,
    EmailRecipient,
    normalize_reply_subject,
)
from .parser import (
    DecodedMessage,
    DecodedPart,
    EmailParser,
    extract_thread_metadata,
    normalize_recipient_address,
    select_reply_recipient,
)
from .receiver import (
    EchoController,
    EchoHandler,
    EchoReceiver,
    EchoSession,
    EchoSMTP,
    EnvelopeState,
    run_echo_server,
)
from .replier import Replier, create_replier
from .sender import (
    DeliveryTransport,
    MXRecord,
    MXResolver,
    SMTPDialer,
    SMTPSender,
    create_smtp_sender,
)

__all__ = [
    # Parser
    "DecodedMessage",
    "DecodedPart",
    "EmailParser",
    "extract_thread_metadata",
    "normalize_recipient_address",
    "select_reply_recipient",
    # Body
    "extract_raw_body",
    "extract_reply_body",
    "html_to_text",
    # Composer
    "ComposedReply",
    "EmailComposer",
    "EmailRecipient",
    "normalize_reply_subject",
    # Sender
    "DeliveryTransport",
    "MXRecord",
    "MXResolver",
    "SMTPDialer",
    "SMTPSender",
    "create_smtp_sender",
    # Replier
    "Replier",
    "create_replier",
    # Receiver
    "EchoController",
    "EchoHandler",
    "EchoReceiver",
    "EchoSession",
    "EchoSMTP",
    "EnvelopeState",
    "run_echo_server",
]
