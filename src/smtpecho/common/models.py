"""
Data models shared by the smtp-echo reply pipeline.

These are plain value objects passed between the parser, composer, signer and
sender. Records created per message are immutable; the identity is built once
at startup and shared read-only by every SMTP session.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class TLSPolicy(str, Enum):
    """How outbound delivery treats a failed STARTTLS negotiation."""

    OPPORTUNISTIC = "opportunistic"
    REQUIRE = "require"


@dataclass(frozen=True)
class InboundMessage:
    """A message received during one SMTP DATA phase."""

    envelope_from: str
    recipients: tuple[str, ...]
    data: bytes


@dataclass(frozen=True)
class ThreadMetadata:
    """Threading information derived from the inbound headers."""

    subject: str = ""
    message_id: str = ""
    references: tuple[str, ...] = ()


@dataclass
class ReplyBody:
    """Plain and HTML content echoed back in the reply."""

    plain: str = ""
    html: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.plain and not self.html


@dataclass(frozen=True)
class ReplierIdentity:
    """Who the replies come from."""

    hostname: str
    from_address: str
    mail_from: str
    from_name: Optional[str] = None


@dataclass(frozen=True)
class DeliveryAttempt:
    """Outcome of trying one candidate host."""

    host: str
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def describe(self) -> str:
        """Format the attempt for the aggregated delivery error."""
        if self.error is None:
            return f"{self.host}: delivered"
        return f"{self.host}: {self.error}"


@dataclass
class DeliveryResult:
    """Result of a successful delivery."""

    recipient: str
    mx_host: str
    attempts: list[DeliveryAttempt] = field(default_factory=list)
    resolution_error: Optional[str] = None


class CancelScope:
    """
    Cancellation and deadline signal for one echo-through-delivery call.

    The delivery engine checks the scope between host attempts only. An
    attempt already in flight is bounded by the SMTP client's own timeout.
    """

    def __init__(self, deadline: Optional[float] = None) -> None:
        """
        Initialize the scope.

        Args:
            deadline: Optional time.monotonic() value after which the scope
                counts as cancelled.
        """
        self.deadline = deadline
        self._cancelled = False

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancelScope":
        """Create a scope that expires after the given number of seconds."""
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline
