"""
Echo reply pipeline.

The Replier turns one inbound message into one outbound reply: decode, pick
the recipient, extract the body, derive threading headers, compose, sign and
deliver. Every failure is raised to the caller unchanged.
"""

import logging
from typing import TYPE_CHECKING, Optional

from ..common.models import CancelScope, InboundMessage, ReplierIdentity
from ..crypto.dkim import MessageSigner, build_signer
from .body import extract_reply_body
from .composer import ComposedReply, EmailComposer
from .parser import EmailParser, extract_thread_metadata, select_reply_recipient
from .sender import DeliveryTransport, create_smtp_sender

if TYPE_CHECKING:
    from ..common.config import Settings

logger = logging.getLogger(__name__)


class Replier:
    """
    Sends one echo reply per inbound message.

    A Replier holds no per-message state and is shared by every SMTP
    session.
    """

    def __init__(
        self,
        identity: ReplierIdentity,
        transport: DeliveryTransport,
        signer: MessageSigner,
        parser: Optional[EmailParser] = None,
        composer: Optional[EmailComposer] = None,
    ) -> None:
        """
        Initialize the replier.

        Args:
            identity: Who the replies come from.
            transport: Delivers the finished reply.
            signer: Signs the composed reply, or passes it through.
            parser: Inbound message parser.
            composer: Reply composer, built from the identity by default.
        """
        self.identity = identity
        self.transport = transport
        self.signer = signer
        self.parser = parser or EmailParser()
        self.composer = composer or EmailComposer(identity)

    def build_reply(self, inbound: InboundMessage) -> ComposedReply:
        """
        Decode an inbound message and compose the reply to it.

        Raises:
            DecodeError: If the payload cannot be parsed.
            NoRecipientError: If no reply address can be derived.
            ComposeError: If the reply cannot be assembled.
        """
        decoded = self.parser.parse(inbound.data)
        recipient = select_reply_recipient(inbound.envelope_from, decoded.headers)
        body = extract_reply_body(decoded)
        meta = extract_thread_metadata(decoded.headers)
        return self.composer.compose_reply(recipient, body, meta)

    async def echo(
        self,
        inbound: InboundMessage,
        scope: Optional[CancelScope] = None,
    ) -> None:
        """
        Send the echo reply for an inbound message.

        Args:
            inbound: The message received in one DATA phase.
            scope: Optional cancel scope for the delivery.

        Raises:
            SMTPEchoError: The first failure of any stage.
        """
        reply = self.build_reply(inbound)
        message = self.signer.sign(reply.raw_data)

        await self.transport.deliver(reply.recipient, message, scope)

        logger.info("sent echo reply to=%s bytes=%d", reply.recipient, len(message))


def create_replier(settings: "Settings") -> Replier:
    """
    Build a Replier from validated settings.

    Raises:
        SigningKeyError: If DKIM is configured with an unusable key.
    """
    identity = settings.identity()
    return Replier(
        identity=identity,
        transport=create_smtp_sender(settings),
        signer=build_signer(settings.dkim),
    )
