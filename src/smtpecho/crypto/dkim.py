"""
DKIM (DomainKeys Identified Mail) signing for smtp-echo.

This module signs outgoing replies with an rsa-sha256 DKIM signature using
relaxed/relaxed canonicalization. Whether replies are signed at all is decided
once at startup by build_signer(); the rest of the pipeline only sees the
MessageSigner interface.
"""

import base64
import hashlib
import logging
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Protocol

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from ..common.exceptions import SignError, SigningKeyError

if TYPE_CHECKING:
    from ..common.config import DKIMSettings

logger = logging.getLogger(__name__)

_WSP_RUN = re.compile(r"[ \t]+")
_WSP_RUN_BYTES = re.compile(rb"[ \t]+")
_LINE_ENDING = re.compile(rb"\r?\n")


class MessageSigner(Protocol):
    """Anything that turns a composed message into the bytes to transmit."""

    def sign(self, message: bytes) -> bytes:
        ...


class UnsignedPolicy:
    """Signing disabled: messages are transmitted as composed."""

    def sign(self, message: bytes) -> bytes:
        return message


@dataclass
class DKIMSignature:
    """DKIM signature components."""

    version: str = "1"
    algorithm: str = "rsa-sha256"
    domain: str = ""
    selector: str = ""
    identifier: Optional[str] = None
    canonicalization: str = "relaxed/relaxed"
    signed_headers: list[str] = field(default_factory=list)
    body_hash: str = ""
    signature: str = ""
    timestamp: Optional[int] = None

    def to_header(self) -> str:
        """Convert signature to DKIM-Signature header value."""
        parts = [
            f"v={self.version}",
            f"a={self.algorithm}",
            f"c={self.canonicalization}",
            f"d={self.domain}",
            f"s={self.selector}",
        ]

        if self.identifier:
            parts.append(f"i={self.identifier}")
        if self.timestamp:
            parts.append(f"t={self.timestamp}")

        parts.append(f"h={':'.join(self.signed_headers)}")
        parts.append(f"bh={self.body_hash}")
        parts.append(f"b={self.signature}")

        return "; ".join(parts)


def split_message(message: bytes) -> tuple[list[tuple[str, str]], bytes]:
    """
    Split a message into raw header fields and body.

    Line endings are normalized to CRLF. Header values keep their folding.

    Returns:
        ([(name, raw_value), ...], body)
    """
    message = _LINE_ENDING.sub(b"\r\n", message)
    if message.startswith(b"\r\n"):
        head, body = b"", message[2:]
    elif b"\r\n\r\n" in message:
        head, body = message.split(b"\r\n\r\n", 1)
    else:
        head, body = message, b""

    fields: list[tuple[str, str]] = []
    for line in head.decode("utf-8", errors="surrogateescape").split("\r\n"):
        if line[:1] in (" ", "\t") and fields:
            name, value = fields[-1]
            fields[-1] = (name, f"{value}\r\n{line}")
        elif ":" in line:
            name, value = line.split(":", 1)
            fields.append((name, value))

    return fields, body


def canonicalize_header_relaxed(name: str, value: str) -> str:
    """Relaxed header canonicalization (RFC 6376 section 3.4.2)."""
    value = value.replace("\r\n", "").replace("\n", "")
    value = _WSP_RUN.sub(" ", value).strip()
    return f"{name.strip().lower()}:{value}\r\n"


def canonicalize_body_relaxed(body: bytes) -> bytes:
    """Relaxed body canonicalization (RFC 6376 section 3.4.4)."""
    lines = _LINE_ENDING.sub(b"\r\n", body).split(b"\r\n")
    lines = [_WSP_RUN_BYTES.sub(b" ", line).rstrip(b" ") for line in lines]

    while lines and lines[-1] == b"":
        lines.pop()

    if not lines:
        return b""
    return b"\r\n".join(lines) + b"\r\n"


class DKIMSigner:
    """
    DKIM signer for outgoing replies.

    The private key is loaded once at construction and must be an RSA key;
    the signer is then shared read-only by every SMTP session.
    """

    # Headers that are signed when present
    DEFAULT_SIGNED_HEADERS = [
        "from",
        "to",
        "subject",
        "date",
        "message-id",
        "in-reply-to",
        "references",
        "mime-version",
        "content-type",
        "content-transfer-encoding",
        "x-mailer",
    ]

    ALGORITHM = "rsa-sha256"
    CANONICALIZATION = "relaxed/relaxed"

    def __init__(
        self,
        domain: str,
        selector: str,
        private_key_path: Optional[str] = None,
        private_key_pem: Optional[bytes] = None,
        identifier: Optional[str] = None,
    ) -> None:
        """
        Initialize the DKIM signer.

        Args:
            domain: The signing domain (d= tag).
            selector: The DKIM selector (s= tag).
            private_key_path: Path to PEM-encoded private key file.
            private_key_pem: PEM-encoded private key bytes.
            identifier: Optional agent or user identifier (i= tag).

        Raises:
            SigningKeyError: If the key is missing, unreadable or not RSA.
        """
        self.domain = domain
        self.selector = selector
        self.identifier = identifier or None

        self._private_key = self._load_private_key(private_key_pem, private_key_path)

        logger.info(
            "Initialized DKIM signer for domain=%s, selector=%s",
            domain,
            selector,
        )

    def _load_private_key(
        self,
        private_key_pem: Optional[bytes],
        private_key_path: Optional[str],
    ) -> RSAPrivateKey:
        """Load the private key and check that it is RSA."""
        if private_key_pem is None and private_key_path:
            try:
                with open(private_key_path, "rb") as f:
                    private_key_pem = f.read()
            except OSError as e:
                raise SigningKeyError(f"Failed to read DKIM private key: {e}")

        if not private_key_pem:
            raise SigningKeyError("No private key provided for DKIM signing")

        try:
            key = serialization.load_pem_private_key(private_key_pem, password=None)
        except (ValueError, TypeError) as e:
            raise SigningKeyError(f"Failed to parse DKIM private key: {e}")

        if not isinstance(key, RSAPrivateKey):
            raise SigningKeyError(
                f"Unsupported DKIM key type {type(key).__name__}: use RSA private key",
                {"path": private_key_path},
            )

        return key

    def _select_headers(self, fields: list[tuple[str, str]]) -> list[tuple[str, str]]:
        """Pick the signed headers, taking the last instance of each name."""
        present = {name.strip().lower() for name, _ in fields}
        if "from" not in present:
            raise SignError("Message has no From header to sign")

        selected = []
        for header_name in self.DEFAULT_SIGNED_HEADERS:
            if header_name not in present:
                continue
            for name, value in reversed(fields):
                if name.strip().lower() == header_name:
                    selected.append((header_name, value))
                    break
        return selected

    def sign(self, message: bytes) -> bytes:
        """
        Sign a message and prepend the DKIM-Signature header.

        Args:
            message: The composed message bytes.

        Returns:
            The signed message with the DKIM-Signature header first.

        Raises:
            SignError: If signing fails.
        """
        try:
            fields, body = split_message(message)
            headers = self._select_headers(fields)

            body_hash = base64.b64encode(
                hashlib.sha256(canonicalize_body_relaxed(body)).digest()
            ).decode("ascii")

            sig = DKIMSignature(
                algorithm=self.ALGORITHM,
                domain=self.domain,
                selector=self.selector,
                identifier=self.identifier,
                canonicalization=self.CANONICALIZATION,
                signed_headers=[name for name, _ in headers],
                body_hash=body_hash,
                timestamp=int(time.time()),
            )

            # The signature header itself is signed with an empty b= value
            # and without its trailing CRLF
            data_to_sign = "".join(
                canonicalize_header_relaxed(name, value) for name, value in headers
            )
            data_to_sign += canonicalize_header_relaxed(
                "dkim-signature", sig.to_header()
            ).rstrip("\r\n")

            signature = self._private_key.sign(
                data_to_sign.encode("utf-8", errors="surrogateescape"),
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
            sig.signature = base64.b64encode(signature).decode("ascii")
            header_line = f"DKIM-Signature: {sig.to_header()}\r\n".encode("ascii")

        except SignError:
            raise
        except Exception as e:
            raise SignError(f"Failed to sign message with DKIM: {e}") from e

        logger.debug(
            "Generated DKIM signature for domain=%s, selector=%s, headers=%s",
            self.domain,
            self.selector,
            sig.signed_headers,
        )

        return header_line + message


def build_signer(settings: Optional["DKIMSettings"]) -> MessageSigner:
    """
    Turn the optional signing configuration into a signer.

    Args:
        settings: The DKIM section of the configuration, or None.

    Returns:
        A DKIMSigner when signing is configured, UnsignedPolicy otherwise.

    Raises:
        SigningKeyError: If the configured key cannot be used.
    """
    if settings is None:
        logger.info("DKIM signing disabled")
        return UnsignedPolicy()

    return DKIMSigner(
        domain=settings.domain,
        selector=settings.selector,
        private_key_path=settings.private_key_path,
        identifier=settings.identifier,
    )
