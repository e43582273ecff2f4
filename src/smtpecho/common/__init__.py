"""
Shared building blocks for smtp-echo.

Configuration, the error taxonomy and the value objects passed between the
reply pipeline stages.
"""

from .config import (
    DKIMSettings,
    LoggingSettings,
    ReplySettings,
    Settings,
    get_settings,
    reload_settings,
)
from .models import (
    CancelScope,
    DeliveryAttempt,
    DeliveryResult,
    InboundMessage,
    ReplierIdentity,
    ReplyBody,
    ThreadMetadata,
    TLSPolicy,
)

__all__ = [
    # Configuration
    "DKIMSettings",
    "LoggingSettings",
    "ReplySettings",
    "Settings",
    "get_settings",
    "reload_settings",
    # Models
    "CancelScope",
    "DeliveryAttempt",
    "DeliveryResult",
    "InboundMessage",
    "ReplierIdentity",
    "ReplyBody",
    "ThreadMetadata",
    "TLSPolicy",
]
