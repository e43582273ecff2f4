"""
Cryptography modules for smtp-echo.

This package provides DKIM signing of outgoing replies.
"""

from .dkim import (
    DKIMSignature,
    DKIMSigner,
    MessageSigner,
    UnsignedPolicy,
    build_signer,
    canonicalize_body_relaxed,
    canonicalize_header_relaxed,
)

__all__ = [
    "DKIMSignature",
    "DKIMSigner",
    "MessageSigner",
    "UnsignedPolicy",
    "build_signer",
    "canonicalize_body_relaxed",
    "canonicalize_header_relaxed",
]
