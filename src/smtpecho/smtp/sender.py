"""
SMTP Sender module for smtp-echo.

This module delivers a composed reply directly to the recipient's mail
exchangers: MX record lookup, STARTTLS with an optional plaintext fallback,
and sequential failover across candidate hosts. There are no retries, queues
or delivery history; a failed echo is reported to the caller.
"""

import asyncio
import logging
import ssl
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Protocol

import aiosmtplib
import dns.resolver
from dns.exception import DNSException

from ..common.exceptions import (
    AddressError,
    DeliveryCancelledError,
    DeliveryError,
    ResolutionError,
)
from ..common.models import CancelScope, DeliveryAttempt, DeliveryResult, TLSPolicy

if TYPE_CHECKING:
    from ..common.config import Settings

logger = logging.getLogger(__name__)


class HostAttemptError(Exception):
    """One candidate host failed; the message describes where."""


@dataclass
class MXRecord:
    """Represents an MX record with priority and host."""

    priority: int
    host: str
    port: int = 25

    def __lt__(self, other: "MXRecord") -> bool:
        """Compare MX records by priority (lower is better)."""
        return self.priority < other.priority


class MXResolver:
    """Looks up the mail exchangers of a domain with dnspython."""

    def __init__(
        self,
        timeout: float = 30,
        nameserver: Optional[str] = None,
        port: int = 25,
    ) -> None:
        """
        Initialize the resolver.

        Args:
            timeout: Lifetime of one lookup in seconds.
            nameserver: Optional DNS server address to query instead of the
                system resolvers.
            port: SMTP port recorded on the returned records.
        """
        self.timeout = timeout
        self.nameserver = nameserver
        self.port = port
        self._resolver: Optional[dns.resolver.Resolver] = None

    @property
    def resolver(self) -> dns.resolver.Resolver:
        """Get or create DNS resolver."""
        if self._resolver is None:
            self._resolver = dns.resolver.Resolver()
            if self.nameserver:
                self._resolver.nameservers = [self.nameserver]
            self._resolver.lifetime = self.timeout
        return self._resolver

    async def resolve(self, domain: str) -> list[MXRecord]:
        """
        Get MX records for a domain, sorted by priority.

        Records with equal priority keep the order the resolver returned.

        Args:
            domain: The domain to look up.

        Returns:
            List of MXRecord objects, possibly empty.

        Raises:
            ResolutionError: If the lookup fails.
        """
        logger.debug("Looking up MX records for domain: %s", domain)

        try:
            # Run DNS query in thread pool to avoid blocking
            loop = asyncio.get_running_loop()
            answers = await loop.run_in_executor(
                None, lambda: self.resolver.resolve(domain, "MX")
            )
        except dns.resolver.NXDOMAIN:
            raise ResolutionError(domain, "domain does not exist")
        except dns.resolver.NoAnswer:
            raise ResolutionError(domain, "no MX records")
        except DNSException as e:
            raise ResolutionError(domain, str(e) or type(e).__name__)

        mx_records = [
            MXRecord(
                priority=rdata.preference,
                host=str(rdata.exchange).rstrip("."),
                port=self.port,
            )
            for rdata in answers
        ]
        mx_records.sort()

        logger.debug(
            "Found %d MX records for %s: %s",
            len(mx_records),
            domain,
            [(r.priority, r.host) for r in mx_records],
        )
        return mx_records


class SMTPDialer:
    """Opens outbound SMTP connections to a candidate host."""

    def __init__(
        self,
        hostname: str,
        port: int = 25,
        timeout: float = 30,
    ) -> None:
        """
        Initialize the dialer.

        Args:
            hostname: Local hostname for EHLO.
            port: Remote SMTP port.
            timeout: Per-operation timeout in seconds.
        """
        self.hostname = hostname
        self.port = port
        self.timeout = timeout

    def _create_ssl_context(self) -> ssl.SSLContext:
        """Create a verifying TLS context (TLS 1.2 or later)."""
        ssl_context = ssl.create_default_context()
        ssl_context.minimum_version = ssl.TLSVersion.TLSv1_2
        return ssl_context

    def _create_client(self, host: str) -> aiosmtplib.SMTP:
        return aiosmtplib.SMTP(
            hostname=host,
            port=self.port,
            timeout=self.timeout,
            local_hostname=self.hostname,
            start_tls=False,
        )

    async def dial_starttls(self, host: str) -> aiosmtplib.SMTP:
        """
        Connect and upgrade the session with STARTTLS.

        Certificates and the server hostname are verified.

        Returns:
            A connected client that has completed EHLO over TLS.
        """
        smtp = self._create_client(host)
        try:
            await smtp.connect()
            await smtp.ehlo(hostname=self.hostname)
            await smtp.starttls(tls_context=self._create_ssl_context())
            await smtp.ehlo(hostname=self.hostname)
        except BaseException:
            smtp.close()
            raise
        return smtp

    async def dial_plain(self, host: str) -> aiosmtplib.SMTP:
        """Connect without encryption."""
        smtp = self._create_client(host)
        try:
            await smtp.connect()
        except BaseException:
            smtp.close()
            raise
        return smtp


class DeliveryTransport(Protocol):
    """Anything that can deliver a finished reply to one recipient."""

    async def deliver(
        self,
        recipient: str,
        message: bytes,
        scope: Optional[CancelScope] = None,
    ) -> DeliveryResult:
        ...


def _describe_error(error: BaseException) -> str:
    """Format an exception for the delivery failure log."""
    text = str(error)
    return text or type(error).__name__


def recipient_domain(address: str) -> str:
    """
    Return the domain of an address.

    Raises:
        AddressError: If the local part or the domain is missing.
    """
    at_index = address.rfind("@")
    if at_index <= 0 or at_index == len(address) - 1:
        raise AddressError(address)
    return address[at_index + 1:]


class SMTPSender:
    """
    SMTP sender for direct-to-MX delivery.

    This class handles:
    - MX record lookup with fallback to the domain itself
    - STARTTLS with plaintext fallback under the opportunistic policy
    - Sequential failover across hosts, first success wins
    - Aggregated failure reporting
    """

    def __init__(
        self,
        hostname: str,
        mail_from: str,
        resolver: Optional[MXResolver] = None,
        dialer: Optional[SMTPDialer] = None,
        tls_policy: TLSPolicy = TLSPolicy.OPPORTUNISTIC,
    ) -> None:
        """
        Initialize the SMTP sender.

        Args:
            hostname: Local hostname for HELO/EHLO.
            mail_from: Envelope sender used in MAIL FROM.
            resolver: MX resolver, defaults to the system resolvers.
            dialer: Connection factory for candidate hosts.
            tls_policy: Whether plaintext is allowed after STARTTLS fails.
        """
        self.hostname = hostname
        self.mail_from = mail_from
        self.resolver = resolver or MXResolver()
        self.dialer = dialer or SMTPDialer(hostname)
        self.tls_policy = tls_policy

        logger.info(
            "SMTPSender initialized with hostname=%s, mail_from=%s, tls_policy=%s",
            hostname,
            mail_from,
            tls_policy.value,
        )

    async def get_target_hosts(self, domain: str) -> tuple[list[str], Optional[str]]:
        """
        Work out which hosts to try for a domain.

        Returns:
            (hosts in order, recorded resolution failure or None)
        """
        try:
            mx_records = await self.resolver.resolve(domain)
        except ResolutionError as e:
            logger.warning(
                "MX lookup failed for %s, trying the domain directly: %s",
                domain,
                e.reason,
            )
            return [domain], f"mx lookup: {e}"

        if not mx_records:
            logger.info("No MX records for %s, trying the domain directly", domain)
            return [domain], f"mx lookup: no MX records for '{domain}'"

        return [mx.host for mx in mx_records], None

    async def _connect(self, host: str) -> tuple[aiosmtplib.SMTP, bool]:
        """
        Connect to a host, falling back to plaintext when allowed.

        Returns:
            (client, whether the session is encrypted)
        """
        try:
            return await self.dialer.dial_starttls(host), True
        except Exception as tls_error:
            if self.tls_policy is TLSPolicy.REQUIRE:
                raise HostAttemptError(
                    f"starttls failed ({_describe_error(tls_error)})"
                ) from tls_error

            logger.debug("STARTTLS failed on %s: %s", host, tls_error)
            try:
                return await self.dialer.dial_plain(host), False
            except Exception as plain_error:
                raise HostAttemptError(
                    f"starttls failed ({_describe_error(tls_error)}), "
                    f"plain failed ({_describe_error(plain_error)})"
                ) from plain_error

    async def _send_to_host(self, host: str, recipient: str, message: bytes) -> None:
        """
        Run one SMTP transaction against a host.

        Raises:
            HostAttemptError: With a stage-labelled description of the failure.
        """
        smtp, encrypted = await self._connect(host)
        try:
            stage = "helo/ehlo failed"
            try:
                if not encrypted:
                    await smtp.ehlo(hostname=self.hostname)
                stage = "mail from"
                await smtp.mail(self.mail_from)
                stage = "rcpt to"
                await smtp.rcpt(recipient)
                stage = "data"
                await smtp.data(message)
                stage = "quit smtp session"
                await smtp.quit()
            except Exception as e:
                raise HostAttemptError(f"{stage}: {_describe_error(e)}") from e
        finally:
            smtp.close()

    async def deliver(
        self,
        recipient: str,
        message: bytes,
        scope: Optional[CancelScope] = None,
    ) -> DeliveryResult:
        """
        Deliver a message to a single recipient.

        Args:
            recipient: Bare recipient address.
            message: The final message bytes.
            scope: Optional cancel scope checked before each host attempt.

        Returns:
            DeliveryResult naming the host that accepted the message.

        Raises:
            AddressError: If the recipient has no usable domain.
            DeliveryCancelledError: If the scope fired before a host accepted.
            DeliveryError: If every candidate host failed.
        """
        domain = recipient_domain(recipient)
        hosts, resolution_error = await self.get_target_hosts(domain)

        failures: list[str] = []
        if resolution_error:
            failures.append(resolution_error)

        attempts: list[DeliveryAttempt] = []
        for host in hosts:
            if scope is not None and scope.cancelled:
                logger.warning("Delivery to %s cancelled before trying %s", recipient, host)
                raise DeliveryCancelledError(recipient, failures, attempts)

            logger.info("Trying %s for %s", host, recipient)
            try:
                await self._send_to_host(host, recipient, message)
            except HostAttemptError as e:
                attempt = DeliveryAttempt(host=host, error=str(e))
                attempts.append(attempt)
                failures.append(attempt.describe())
                logger.warning("Delivery to %s via %s failed: %s", recipient, host, e)
                continue

            attempts.append(DeliveryAttempt(host=host))
            logger.info("Delivered to %s via %s", recipient, host)
            return DeliveryResult(
                recipient=recipient,
                mx_host=host,
                attempts=attempts,
                resolution_error=resolution_error,
            )

        raise DeliveryError(recipient, failures, attempts)


# Factory function
def create_smtp_sender(settings: "Settings") -> SMTPSender:
    """
    Factory function to create an SMTPSender from settings.

    Args:
        settings: Validated application settings.

    Returns:
        Configured SMTPSender instance.
    """
    return SMTPSender(
        hostname=settings.hostname,
        mail_from=settings.reply.mail_from,
        resolver=MXResolver(timeout=settings.write_timeout, port=settings.delivery_port),
        dialer=SMTPDialer(
            hostname=settings.hostname,
            port=settings.delivery_port,
            timeout=settings.write_timeout,
        ),
        tls_policy=settings.tls_policy,
    )
