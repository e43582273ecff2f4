"""smtp-echo - a diagnostic mail responder."""

from smtpecho.__version__ import (
    __description__,
    __license__,
    __title__,
    __version__,
    __version_info__,
)

__all__ = [
    "__version__",
    "__version_info__",
    "__title__",
    "__description__",
    "__license__",
]
