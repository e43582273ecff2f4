"""
Custom exceptions for smtp-echo.

This module defines the error taxonomy used by the reply pipeline. Every
failure of a single echo is terminal for that message: it is raised to the
SMTP handler, logged there and turned into a rejection of the DATA command.
"""

from typing import Any, Optional


class SMTPEchoError(Exception):
    """Base exception for all smtp-echo errors."""

    def __init__(self, message: str,
                 details: Optional[dict[str, Any]] = None) -> None:
        """
        Initialize the base exception.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with additional error details.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - Details: {self.details}"
        return self.message


# Configuration Exceptions
class ConfigurationError(SMTPEchoError):
    """Base exception for configuration-related errors."""


class MissingConfigError(ConfigurationError):
    """Raised when a required configuration value is missing."""

    def __init__(
        self, config_key: str, details: Optional[dict[str, Any]] = None
    ) -> None:
        """
        Initialize missing config error.

        Args:
            config_key: The missing configuration key.
            details: Optional dictionary with additional error details.
        """
        super().__init__(
            f"Missing required configuration: '{config_key}'", details)
        self.config_key = config_key


class InvalidConfigError(ConfigurationError):
    """Raised when a configuration value is invalid."""

    def __init__(
        self,
        config_key: str,
        value: Any,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Initialize invalid config error.

        Args:
            config_key: The configuration key with invalid value.
            value: The invalid value.
            reason: Optional reason why the value is invalid.
            details: Optional dictionary with additional error details.
        """
        message = f"Invalid configuration value for '{config_key}': {value}"
        if reason:
            message += f" - {reason}"
        super().__init__(message, details)
        self.config_key = config_key
        self.value = value
        self.reason = reason


# Message Exceptions
class MessageError(SMTPEchoError):
    """Base exception for errors while turning a message into a reply."""


class DecodeError(MessageError):
    """Raised when the inbound payload cannot be parsed."""


class NoRecipientError(MessageError):
    """Raised when no reply recipient can be derived from the message."""

    def __init__(self, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__("Unable to determine reply recipient", details)


class ComposeError(MessageError):
    """Raised when the reply cannot be assembled."""


# Signing Exceptions
class SignError(SMTPEchoError):
    """Raised when DKIM signing is enabled but fails."""


class SigningKeyError(SignError):
    """Raised when the DKIM private key is unreadable or unsupported."""


# Delivery Exceptions
class DeliveryFailure(SMTPEchoError):
    """Base exception for outbound delivery errors."""


class AddressError(DeliveryFailure):
    """Raised when a recipient address has no usable domain."""

    def __init__(
        self, address: str, details: Optional[dict[str, Any]] = None
    ) -> None:
        super().__init__(f"Recipient address missing domain: {address!r}", details)
        self.address = address


class ResolutionError(DeliveryFailure):
    """Raised when the MX lookup for a domain fails."""

    def __init__(
        self,
        domain: str,
        reason: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Initialize resolution error.

        Args:
            domain: The domain that was looked up.
            reason: Why the lookup failed.
            details: Optional dictionary with additional error details.
        """
        super().__init__(f"MX lookup failed for '{domain}': {reason}", details)
        self.domain = domain
        self.reason = reason


class DeliveryError(DeliveryFailure):
    """Raised when every candidate host failed to accept the reply."""

    def __init__(
        self,
        recipient: str,
        failures: list[str],
        attempts: Optional[list[Any]] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Initialize delivery error.

        Args:
            recipient: The intended recipient of the reply.
            failures: Ordered failure details, resolution failure first.
            attempts: The DeliveryAttempt records of each host tried.
            details: Optional dictionary with additional error details.
        """
        message = f"Delivery failed for {recipient}"
        if failures:
            message += f": {' | '.join(failures)}"
        super().__init__(message, details)
        self.recipient = recipient
        self.failures = list(failures)
        self.attempts = list(attempts or [])


class DeliveryCancelledError(DeliveryError):
    """Raised when the cancel scope fires before a host accepted the reply."""

    def __init__(
        self,
        recipient: str,
        failures: list[str],
        attempts: Optional[list[Any]] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            recipient, failures + ["delivery cancelled"], attempts, details
        )


# Inbound SMTP Exceptions
class SMTPServerError(SMTPEchoError):
    """Raised when the inbound SMTP server fails to start."""


class NoRecipientsError(SMTPEchoError):
    """Raised when DATA is issued before any RCPT."""

    def __init__(self) -> None:
        super().__init__("At least one recipient is required")
