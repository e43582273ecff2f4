"""Tests for the inbound SMTP session handling."""

import asyncio
from types import SimpleNamespace

import aiosmtplib
import pytest
from aiosmtpd.smtp import Envelope

from conftest import RecordingTransport, build_message, free_port
from smtpecho.common.exceptions import (
    ComposeError,
    DecodeError,
    DeliveryCancelledError,
    DeliveryError,
    NoRecipientError,
    NoRecipientsError,
    SignError,
)
from smtpecho.common.models import CancelScope
from smtpecho.crypto.dkim import UnsignedPolicy
from smtpecho.smtp.receiver import EchoHandler, EchoReceiver, EchoSession, EnvelopeState
from smtpecho.smtp.replier import Replier


class StubReplier:
    """Replier stand-in that records calls or raises a fixed error."""

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def echo(self, inbound, scope=None):
        self.calls.append((inbound, scope))
        if self.error is not None:
            raise self.error


class SlowTransport(RecordingTransport):
    """Recording transport that takes a while to deliver."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    async def deliver(self, recipient, message, scope=None):
        await asyncio.sleep(self.delay)
        return await super().deliver(recipient, message, scope)

class TestEchoSession:
    def test_envelope_records_are_replaced(self):
        session = EchoSession(StubReplier())
        initial = session.state

        session.mail("env@example.net")
        after_mail = session.state
        session.rcpt("a@example.org")
        session.rcpt("b@example.org")

        assert initial == EnvelopeState()
        assert after_mail == EnvelopeState(sender="env@example.net")
        assert session.state == EnvelopeState(
            sender="env@example.net",
            recipients=("a@example.org", "b@example.org"),
        )

    def test_mail_starts_a_new_envelope(self):
        session = EchoSession(StubReplier())
        session.mail("one@example.net")
        session.rcpt("a@example.org")

        session.mail("two@example.net")

        assert session.state == EnvelopeState(sender="two@example.net")

    def test_reset_and_logout(self):
        session = EchoSession(StubReplier())
        session.mail("env@example.net")
        session.rcpt("a@example.org")

        session.reset()
        assert session.state == EnvelopeState()

        session.mail("env@example.net")
        session.logout()
        assert session.state == EnvelopeState()

    @pytest.mark.asyncio
    async def test_data_requires_recipient(self):
        replier = StubReplier()
        session = EchoSession(replier)
        session.mail("env@example.net")

        with pytest.raises(NoRecipientsError):
            await session.data(b"Subject: x\r\n\r\n")
        assert replier.calls == []

    @pytest.mark.asyncio
    async def test_data_echoes_and_resets(self):
        replier = StubReplier()
        session = EchoSession(replier, delivery_timeout=60)
        session.mail("env@example.net")
        session.rcpt("a@example.org")

        await session.data(b"Subject: x\r\n\r\nbody")

        inbound, scope = replier.calls[0]
        assert inbound.envelope_from == "env@example.net"
        assert inbound.recipients == ("a@example.org",)
        assert inbound.data == b"Subject: x\r\n\r\nbody"
        assert isinstance(scope, CancelScope)
        assert scope.deadline is not None
        assert not scope.cancelled
        assert session.state == EnvelopeState()

    @pytest.mark.asyncio
    async def test_data_resets_after_failure(self):
        session = EchoSession(StubReplier(error=DecodeError("bad")))
        session.mail("env@example.net")
        session.rcpt("a@example.org")

        with pytest.raises(DecodeError):
            await session.data(b"garbage")
        assert session.state == EnvelopeState()


class TestEchoHandler:
    async def run_transaction(self, handler, content=b"Subject: x\r\n\r\nbody"):
        server = SimpleNamespace()
        session = SimpleNamespace()
        envelope = Envelope()

        assert await handler.handle_MAIL(server, session, envelope, "env@example.net", []) == (
            "250 2.1.0 OK"
        )
        assert await handler.handle_RCPT(server, session, envelope, "a@example.org", []) == (
            "250 2.1.5 OK"
        )
        envelope.content = content
        envelope.original_content = content
        return await handler.handle_DATA(server, session, envelope)

    @pytest.mark.asyncio
    async def test_success(self):
        replier = StubReplier()
        status = await self.run_transaction(EchoHandler(replier))

        assert status == "250 2.0.0 OK: echo reply sent"
        assert replier.calls[0][0].envelope_from == "env@example.net"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,code",
        [
            (DecodeError("bad"), "550 5.6.0"),
            (NoRecipientError(), "550 5.1.7"),
            (ComposeError("bad identity"), "451 4.3.0"),
            (SignError("bad key"), "451 4.3.0"),
            (DeliveryError("env@example.net", ["a: data: boom"]), "451 4.4.0"),
            (DeliveryCancelledError("env@example.net", []), "451 4.4.7"),
            (RuntimeError("unexpected"), "451 4.3.0"),
        ],
    )
    async def test_error_mapping(self, error, code):
        status = await self.run_transaction(EchoHandler(StubReplier(error=error)))

        assert status.startswith(code)

    @pytest.mark.asyncio
    async def test_data_without_rcpt(self):
        handler = EchoHandler(StubReplier())
        envelope = Envelope()
        envelope.content = b"Subject: x\r\n\r\n"

        status = await handler.handle_DATA(SimpleNamespace(), SimpleNamespace(), envelope)

        assert status.startswith("503 5.5.1")

    @pytest.mark.asyncio
    async def test_rset_and_quit_reset_the_session(self):
        handler = EchoHandler(StubReplier())
        server, session, envelope = SimpleNamespace(), SimpleNamespace(), Envelope()

        await handler.handle_MAIL(server, session, envelope, "env@example.net", [])
        assert await handler.handle_RSET(server, session, envelope) == "250 OK"
        assert handler.get_session(session).state == EnvelopeState()

        await handler.handle_MAIL(server, session, envelope, "env@example.net", [])
        assert await handler.handle_QUIT(server, session, envelope) == "221 Bye"
        assert handler.get_session(session).state == EnvelopeState()

    def test_one_echo_session_per_connection(self):
        handler = EchoHandler(StubReplier())
        first, second = SimpleNamespace(), SimpleNamespace()

        assert handler.get_session(first) is handler.get_session(first)
        assert handler.get_session(first) is not handler.get_session(second)


class TestEchoReceiver:
    @pytest.mark.asyncio
    async def test_end_to_end_echo(self, identity):
        transport = RecordingTransport()
        replier = Replier(identity, transport, UnsignedPolicy())
        port = free_port()
        receiver = EchoReceiver(
            replier,
            host="127.0.0.1",
            port=port,
            hostname="echo.example.org",
            delivery_timeout=30,
        )

        async with receiver:
            assert receiver.is_running
            assert receiver.address == ("127.0.0.1", port)

            await aiosmtplib.send(
                build_message({"From": "from@example.net", "Subject": "Ping"}),
                sender="env@example.net",
                recipients=["echo@example.org"],
                hostname="127.0.0.1",
                port=port,
                start_tls=False,
            )

        assert not receiver.is_running
        assert len(transport.deliveries) == 1
        assert transport.deliveries[0][0] == "env@example.net"
        assert b"Subject: Re: Ping" in transport.deliveries[0][1]

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, identity):
        receiver = EchoReceiver(Replier(identity, RecordingTransport(), UnsignedPolicy()))

        await receiver.stop()

        assert not receiver.is_running

    @pytest.mark.asyncio
    async def test_slow_echo_outlasts_read_timeout(self, identity):
        transport = SlowTransport(delay=2.5)
        port = free_port()
        receiver = EchoReceiver(
            Replier(identity, transport, UnsignedPolicy()),
            host="127.0.0.1",
            port=port,
            hostname="echo.example.org",
            read_timeout=1,
        )

        async with receiver:
            errors, response = await aiosmtplib.send(
                build_message({"From": "from@example.net", "Subject": "Slow"}),
                sender="env@example.net",
                recipients=["echo@example.org"],
                hostname="127.0.0.1",
                port=port,
                start_tls=False,
                timeout=10,
            )

        assert errors == {}
        assert "echo reply sent" in response
        assert len(transport.deliveries) == 1
