"""Error taxonomy shared by the codec, tunnel and connect pipeline."""

from __future__ import annotations


class ConnectionModelError(RuntimeError):
    """Base class for every error raised by mongoconn."""


class ParseError(ConnectionModelError):
    """Raised when a connection string is syntactically malformed."""


class ValidationError(ConnectionModelError):
    """Raised when a field value or a combination of fields is invalid.

    ``field`` names the offending descriptor field (camelCase) or URI option,
    ``expected`` describes the accepted type or range when one applies.
    Messages never include the rejected value itself, so a mistyped password
    cannot leak through an error dialog or a log line.
    """

    def __init__(self, field: str, reason: str, *, expected: str | None = None) -> None:
        self.field = field
        self.reason = reason
        self.expected = expected
        message = f"{field}: {reason}"
        if expected:
            message = f"{message} (expected {expected})"
        super().__init__(message)


class DnsResolutionError(ConnectionModelError):
    """Raised when the SRV/TXT lookup for a ``mongodb+srv`` host fails."""

    def __init__(self, hostname: str, reason: str) -> None:
        self.hostname = hostname
        self.reason = reason
        super().__init__(f"Failed to resolve '{hostname}': {reason}")


class TlsMaterialError(ConnectionModelError):
    """Raised when a CA, certificate or key file cannot be read."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Unable to read TLS file '{path}': {reason}")


class TunnelError(ConnectionModelError):
    """Base class for SSH tunnel failures."""


class TunnelStartupError(TunnelError):
    """SSH session could not be established or the forward was refused."""


class TunnelTimeoutError(TunnelError):
    """SSH handshake or port-forward negotiation exceeded its timeout."""


class TunnelListenError(TunnelError):
    """The local forwarding listener could not be bound."""


class ConnectError(ConnectionModelError):
    """Wraps a failure reported by the database driver while connecting."""


__all__ = [
    "ConnectError",
    "ConnectionModelError",
    "DnsResolutionError",
    "ParseError",
    "TlsMaterialError",
    "TunnelError",
    "TunnelListenError",
    "TunnelStartupError",
    "TunnelTimeoutError",
    "ValidationError",
]
