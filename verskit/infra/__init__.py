"""Internal machinery: HTTP and the SSH-over-TLS transport."""

from .http import (
    BearerAuth,
    HttpClient,
    HttpError,
)
from .protocols import (
    CommandResult,
    Session,
    SessionOpener,
)
from .ssh import EphemeralKey, ShellSession, SSHSession

__all__ = [
    "BearerAuth",
    "HttpClient",
    "HttpError",
    "CommandResult",
    "Session",
    "SessionOpener",
    "EphemeralKey",
    "ShellSession",
    "SSHSession",
]
