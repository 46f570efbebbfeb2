"""MongoDB connection descriptors, connection strings and SSH-tunnelled connects."""

from __future__ import annotations

from .config import Settings, load_settings
from .connect import Connection, Task, TaskState, TaskStatus, connect
from .driver_options import Credentials, DriverOptions, build_driver_options
from .errors import (
    ConnectError,
    ConnectionModelError,
    DnsResolutionError,
    ParseError,
    TlsMaterialError,
    TunnelError,
    TunnelListenError,
    TunnelStartupError,
    TunnelTimeoutError,
    ValidationError,
)
from .models import ConnectionDescriptor, Host
from .srv import DnsPythonResolver, SrvResolver, SrvTarget
from .tunnel import SshTunnel, TunnelState, open_tunnel
from .types import AuthMechanism, AuthStrategy, SshTunnelMode, SslMethod
from .uri import is_uri, parse_uri, serialize_uri, to_safe_uri
from .validation import validate_descriptor

__version__ = "0.1.0"

__all__ = [
    "AuthMechanism",
    "AuthStrategy",
    "ConnectError",
    "Connection",
    "ConnectionDescriptor",
    "ConnectionModelError",
    "Credentials",
    "DnsPythonResolver",
    "DnsResolutionError",
    "DriverOptions",
    "Host",
    "ParseError",
    "Settings",
    "SrvResolver",
    "SrvTarget",
    "SshTunnel",
    "SshTunnelMode",
    "SslMethod",
    "Task",
    "TaskState",
    "TaskStatus",
    "TlsMaterialError",
    "TunnelError",
    "TunnelListenError",
    "TunnelStartupError",
    "TunnelState",
    "TunnelTimeoutError",
    "ValidationError",
    "build_driver_options",
    "connect",
    "is_uri",
    "load_settings",
    "open_tunnel",
    "parse_uri",
    "serialize_uri",
    "to_safe_uri",
    "validate_descriptor",
]
