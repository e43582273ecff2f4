"""Version information for smtp-echo."""

__version__ = "0.1.0"
__version_info__ = tuple(int(x) for x in __version__.split("."))

# Release information
__title__ = "smtp-echo"
__description__ = "Diagnostic SMTP responder that echoes messages back to their sender"
__license__ = "MIT"
