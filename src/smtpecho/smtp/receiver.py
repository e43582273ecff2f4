"""
SMTP receiver module for smtp-echo.

This module provides the inbound SMTP server built on aiosmtpd. Every message
accepted in a DATA phase is handed to the Replier, and the outcome of the echo
decides the reply to DATA.
"""

import asyncio
import logging
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Iterator, Optional

from aiosmtpd.controller import Controller
from aiosmtpd.smtp import SMTP, Envelope, Session

from ..common.exceptions import (
    ComposeError,
    DecodeError,
    DeliveryCancelledError,
    DeliveryFailure,
    NoRecipientError,
    NoRecipientsError,
    SignError,
    SMTPServerError,
)
from ..common.models import CancelScope, InboundMessage
from .replier import Replier

if TYPE_CHECKING:
    from ..common.config import Settings

logger = logging.getLogger(__name__)

SESSION_ATTRIBUTE = "echo_session"


@dataclass(frozen=True)
class EnvelopeState:
    """Sender and recipients collected so far on one connection."""

    sender: str = ""
    recipients: tuple[str, ...] = ()


class EchoSession:
    """
    Per-connection SMTP transaction state.

    The envelope is an immutable record; each command swaps in a new one.
    """

    def __init__(self, replier: Replier, delivery_timeout: Optional[float] = None) -> None:
        self.replier = replier
        self.delivery_timeout = delivery_timeout
        self.state = EnvelopeState()

    def mail(self, address: str) -> None:
        """Start a new transaction with the given sender."""
        self.state = EnvelopeState(sender=address)

    def rcpt(self, address: str) -> None:
        self.state = replace(self.state, recipients=self.state.recipients + (address,))

    def reset(self) -> None:
        self.state = EnvelopeState()

    def logout(self) -> None:
        self.reset()

    def _create_scope(self) -> CancelScope:
        if self.delivery_timeout:
            return CancelScope.with_timeout(self.delivery_timeout)
        return CancelScope()

    async def data(self, content: bytes) -> None:
        """
        Echo the message received in the DATA phase.

        The transaction is reset afterwards, whatever the outcome.

        Raises:
            NoRecipientsError: If no RCPT was accepted.
            SMTPEchoError: If the echo fails.
        """
        state = self.state
        if not state.recipients:
            raise NoRecipientsError()

        inbound = InboundMessage(
            envelope_from=state.sender,
            recipients=state.recipients,
            data=content,
        )

        try:
            await self.replier.echo(inbound, self._create_scope())
        finally:
            self.reset()

        logger.info(
            "echoed message from=%s recipients=%d bytes=%d",
            state.sender,
            len(state.recipients),
            len(content),
        )


class EchoSMTP(SMTP):
    """
    aiosmtpd protocol whose idle timer can be paused.

    The read timeout only applies while waiting for the client. While the
    echo reply for a DATA phase is being sent the client is waiting on us.
    """

    @contextmanager
    def idle_timer_paused(self) -> Iterator[None]:
        """Stop the idle timer for the duration of the block."""
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
        try:
            yield
        finally:
            # connection_lost() clears the transport
            if self.transport is not None:
                self._reset_timeout()


class EchoController(Controller):
    """Controller that serves connections with EchoSMTP."""

    def factory(self) -> EchoSMTP:
        return EchoSMTP(self.handler, **self.SMTP_kwargs)


class EchoHandler:
    """
    aiosmtpd handler that answers every message with an echo reply.

    Errors raised by the Replier are mapped to SMTP replies here.
    """

    def __init__(self, replier: Replier, delivery_timeout: Optional[float] = None) -> None:
        """
        Initialize the handler.

        Args:
            replier: Shared reply pipeline.
            delivery_timeout: Seconds one echo may spend starting host attempts.
        """
        self.replier = replier
        self.delivery_timeout = delivery_timeout

    def get_session(self, session: Session) -> EchoSession:
        """Return the EchoSession attached to an aiosmtpd session."""
        echo_session = getattr(session, SESSION_ATTRIBUTE, None)
        if echo_session is None:
            echo_session = EchoSession(self.replier, self.delivery_timeout)
            setattr(session, SESSION_ATTRIBUTE, echo_session)
        return echo_session

    async def handle_MAIL(
        self,
        server: SMTP,
        session: Session,
        envelope: Envelope,
        address: str,
        mail_options: list[str],
    ) -> str:
        """Handle MAIL FROM command."""
        self.get_session(session).mail(address)

        envelope.mail_from = address
        envelope.mail_options.extend(mail_options)

        logger.debug("MAIL FROM: %s", address)
        return "250 2.1.0 OK"

    async def handle_RCPT(
        self,
        server: SMTP,
        session: Session,
        envelope: Envelope,
        address: str,
        rcpt_options: list[str],
    ) -> str:
        """Handle RCPT TO command. Every recipient is accepted."""
        self.get_session(session).rcpt(address)

        envelope.rcpt_tos.append(address)
        envelope.rcpt_options.extend(rcpt_options)

        logger.debug("RCPT TO: %s", address)
        return "250 2.1.5 OK"

    async def handle_DATA(
        self,
        server: SMTP,
        session: Session,
        envelope: Envelope,
    ) -> str:
        """
        Handle DATA command.

        Sends the echo reply before answering, so the client learns whether
        the reply went out.
        """
        content = envelope.original_content or envelope.content or b""
        if isinstance(content, str):
            content = content.encode("utf-8", errors="surrogateescape")

        logger.info(
            "Message received: from=%s, to=%s, size=%d",
            envelope.mail_from,
            envelope.rcpt_tos,
            len(content),
        )

        if isinstance(server, EchoSMTP):
            paused = server.idle_timer_paused()
        else:
            paused = nullcontext()

        try:
            with paused:
                await self.get_session(session).data(content)
        except NoRecipientsError as e:
            logger.warning("Rejecting DATA: %s", e)
            return "503 5.5.1 Error: need RCPT command"
        except DecodeError as e:
            logger.warning("Rejecting message: %s", e)
            return "550 5.6.0 Message content rejected"
        except NoRecipientError as e:
            logger.warning("Rejecting message: %s", e)
            return "550 5.1.7 Unable to determine reply recipient"
        except (ComposeError, SignError) as e:
            logger.error("Failed to build echo reply: %s", e)
            return "451 4.3.0 Temporary failure building reply"
        except DeliveryCancelledError as e:
            logger.error("Echo delivery cancelled: %s", e)
            return "451 4.4.7 Delivery time expired"
        except DeliveryFailure as e:
            logger.error("Echo delivery failed: %s", e)
            return "451 4.4.0 Unable to deliver reply"
        except Exception as e:
            logger.exception("Error processing message: %s", e)
            return "451 4.3.0 Temporary server error"

        return "250 2.0.0 OK: echo reply sent"

    async def handle_RSET(
        self,
        server: SMTP,
        session: Session,
        envelope: Envelope,
    ) -> str:
        self.get_session(session).reset()
        return "250 OK"

    async def handle_QUIT(
        self,
        server: SMTP,
        session: Session,
        envelope: Envelope,
    ) -> str:
        self.get_session(session).logout()
        return "221 Bye"


class EchoReceiver:
    """
    Async SMTP server for receiving messages to echo.

    Features:
    - Listens on configurable host and port (default 25)
    - Enforces a maximum message size
    - Drops idle connections after the read timeout
    - One echo reply per accepted message
    """

    def __init__(
        self,
        replier: Replier,
        host: str = "0.0.0.0",
        port: int = 25,
        hostname: Optional[str] = None,
        max_message_size: int = 10 * 1024 * 1024,
        read_timeout: float = 30,
        delivery_timeout: Optional[float] = None,
    ) -> None:
        """
        Initialize the SMTP receiver.

        Args:
            replier: Reply pipeline shared by every connection.
            host: Host address to bind to.
            port: Port to listen on.
            hostname: SMTP server hostname for the banner and EHLO reply.
            max_message_size: Maximum message size in bytes.
            read_timeout: Idle connection timeout in seconds.
            delivery_timeout: Seconds one echo may spend starting host attempts.
        """
        self.replier = replier
        self.host = host
        self.port = port
        self.hostname = hostname or "localhost"
        self.max_message_size = max_message_size
        self.read_timeout = read_timeout
        self.delivery_timeout = delivery_timeout

        self._controller: Optional[EchoController] = None
        self._running = False

    @classmethod
    def from_settings(cls, settings: "Settings", replier: Replier) -> "EchoReceiver":
        """
        Create an EchoReceiver from application settings.

        Args:
            settings: Validated settings.
            replier: The reply pipeline.

        Returns:
            Configured EchoReceiver instance.
        """
        return cls(
            replier=replier,
            host=settings.listen_host,
            port=settings.listen_port,
            hostname=settings.hostname,
            max_message_size=settings.max_message_bytes,
            read_timeout=settings.read_timeout,
            delivery_timeout=settings.delivery_timeout,
        )

    def create_handler(self) -> EchoHandler:
        return EchoHandler(self.replier, self.delivery_timeout)

    async def start(self) -> None:
        """
        Start the SMTP server.

        Raises:
            SMTPServerError: If the server fails to start.
        """
        if self._running:
            logger.warning("SMTP receiver already running")
            return

        try:
            self._controller = EchoController(
                self.create_handler(),
                hostname=self.host,
                port=self.port,
                server_hostname=self.hostname,
                data_size_limit=self.max_message_size,
                timeout=self.read_timeout,
            )
            self._controller.start()
            self._running = True

            logger.info(
                "SMTP echo server started on %s:%d (hostname: %s)",
                self.host,
                self.port,
                self.hostname,
            )

        except Exception as e:
            self._controller = None
            logger.error("Failed to start SMTP receiver: %s", str(e))
            raise SMTPServerError(
                f"Failed to start SMTP receiver: {e}",
                details={"host": self.host, "port": self.port},
            ) from e

    async def stop(self) -> None:
        """Stop the SMTP server."""
        if not self._running:
            return

        try:
            if self._controller:
                self._controller.stop()
        except Exception as e:
            logger.error("Error stopping SMTP receiver: %s", str(e))
        finally:
            self._controller = None
            self._running = False

        logger.info("SMTP echo server stopped")

    async def __aenter__(self) -> "EchoReceiver":
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.stop()

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._running

    @property
    def address(self) -> tuple[str, int]:
        """Get the server address."""
        return (self.host, self.port)


async def run_echo_server(
    settings: "Settings",
    replier: Replier,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Run the echo server until the stop event is set.

    Args:
        settings: Validated settings.
        replier: The reply pipeline.
        stop_event: Event that ends the server; waits forever when omitted.
    """
    receiver = EchoReceiver.from_settings(settings, replier)
    stop_event = stop_event or asyncio.Event()

    async with receiver:
        logger.info("SMTP echo server running. Press Ctrl+C to stop.")
        await stop_event.wait()
        logger.info("SMTP echo server shutting down...")
