"""
Pytest fixtures for smtp-echo tests.

This module provides common fixtures and network-free fakes used across test
modules: a recording delivery transport, a canned MX resolver and a dialer
handing out scripted SMTP clients.
"""

import socket
from typing import Optional

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from smtpecho.common.exceptions import ResolutionError
from smtpecho.common.models import CancelScope, DeliveryResult, ReplierIdentity
from smtpecho.smtp.sender import MXRecord


@pytest.fixture
def identity() -> ReplierIdentity:
    return ReplierIdentity(
        hostname="echo.example.org",
        from_address="echo@example.org",
        mail_from="bounce@example.org",
        from_name="Echo Bot",
    )


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def rsa_key_file(tmp_path, rsa_private_key):
    """PEM-encoded RSA private key on disk."""
    path = tmp_path / "dkim.pem"
    path.write_bytes(
        rsa_private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    return path


@pytest.fixture
def ec_key_file(tmp_path):
    """PEM-encoded EC private key on disk."""
    key = ec.generate_private_key(ec.SECP256R1())
    path = tmp_path / "dkim-ec.pem"
    path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    return path


class RecordingTransport:
    """Delivery transport that records what it was asked to send."""

    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.deliveries: list[tuple[str, bytes]] = []
        self.scopes: list[Optional[CancelScope]] = []

    async def deliver(
        self,
        recipient: str,
        message: bytes,
        scope: Optional[CancelScope] = None,
    ) -> DeliveryResult:
        self.scopes.append(scope)
        if self.error is not None:
            raise self.error
        self.deliveries.append((recipient, message))
        return DeliveryResult(recipient=recipient, mx_host="mx.test")


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


class FakeResolver:
    """MX resolver returning canned answers."""

    def __init__(
        self,
        records: Optional[list[MXRecord]] = None,
        error: Optional[ResolutionError] = None,
    ) -> None:
        self.records = records or []
        self.error = error
        self.lookups: list[str] = []

    async def resolve(self, domain: str) -> list[MXRecord]:
        self.lookups.append(domain)
        if self.error is not None:
            raise self.error
        return sorted(self.records)


class FakeSMTPClient:
    """Scripted stand-in for a connected aiosmtplib client."""

    def __init__(
        self,
        host: str,
        fail_stage: Optional[str] = None,
        fail_error: Optional[Exception] = None,
    ) -> None:
        self.host = host
        self.fail_stage = fail_stage
        self.fail_error = fail_error
        self.calls: list[tuple] = []
        self.closed = False

    def _run(self, stage: str, *args) -> None:
        self.calls.append((stage, *args))
        if stage == self.fail_stage:
            if self.fail_error is not None:
                raise self.fail_error
            raise OSError(f"{stage} refused by {self.host}")

    async def ehlo(self, *, hostname: Optional[str] = None) -> None:
        self._run("ehlo", hostname)

    async def mail(self, sender: str) -> None:
        self._run("mail", sender)

    async def rcpt(self, recipient: str) -> None:
        self._run("rcpt", recipient)

    async def data(self, message: bytes) -> None:
        self._run("data", message)

    async def quit(self) -> None:
        self._run("quit")

    def close(self) -> None:
        self.closed = True


class FakeDialer:
    """
    Dialer handing out FakeSMTPClient instances.

    Hosts listed in starttls_fails or plain_fails refuse the respective
    connection; fail_stages maps a host to the SMTP stage that fails, and
    fail_errors optionally names the exception raised there.
    """

    def __init__(
        self,
        starttls_fails: tuple[str, ...] = (),
        plain_fails: tuple[str, ...] = (),
        fail_stages: Optional[dict[str, str]] = None,
        fail_errors: Optional[dict[str, Exception]] = None,
    ) -> None:
        self.starttls_fails = set(starttls_fails)
        self.plain_fails = set(plain_fails)
        self.fail_stages = fail_stages or {}
        self.fail_errors = fail_errors or {}
        self.dials: list[tuple[str, str]] = []
        self.clients: list[FakeSMTPClient] = []

    def _client(self, host: str) -> FakeSMTPClient:
        client = FakeSMTPClient(
            host, self.fail_stages.get(host), self.fail_errors.get(host)
        )
        self.clients.append(client)
        return client

    async def dial_starttls(self, host: str) -> FakeSMTPClient:
        self.dials.append(("starttls", host))
        if host in self.starttls_fails:
            raise OSError("certificate verify failed")
        return self._client(host)

    async def dial_plain(self, host: str) -> FakeSMTPClient:
        self.dials.append(("plain", host))
        if host in self.plain_fails:
            raise ConnectionRefusedError("connection refused")
        return self._client(host)

    @property
    def hosts_tried(self) -> list[str]:
        hosts: list[str] = []
        for _, host in self.dials:
            if host not in hosts:
                hosts.append(host)
        return hosts


def build_message(
    headers: dict[str, str],
    body: str = "hello\r\n",
) -> bytes:
    """Assemble a raw RFC 5322 message with CRLF line endings."""
    lines = [f"{name}: {value}" for name, value in headers.items()]
    return ("\r\n".join(lines) + "\r\n\r\n" + body).encode("utf-8")


def free_port() -> int:
    """Return a localhost TCP port that is currently unused."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
