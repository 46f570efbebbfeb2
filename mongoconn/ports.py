"""Local port helpers for the SSH tunnel listener."""

from __future__ import annotations

import errno
import socket

_ATTEMPTS = 16


def find_free_port(address: str | None = None) -> int:
    """Return a TCP port that is free on ``address`` right now.

    Without an address the port must be free on every local IPv4 and IPv6
    address, so any configured listen address can bind it. The port is
    released before returning; another process may grab it before the tunnel
    binds, and callers surface that as a listen error.
    """

    if address is not None:
        family = socket.getaddrinfo(address, 0, type=socket.SOCK_STREAM)[0][0]
        return _bind(family, address, 0)
    for _ in range(_ATTEMPTS):
        port = _bind(socket.AF_INET, "", 0)
        if _ipv6_free(port):
            return port
    raise OSError(errno.EADDRINUSE, "no local port is free on both IPv4 and IPv6")


def _bind(family: int, address: str, port: int) -> int:
    with socket.socket(family, socket.SOCK_STREAM) as sock:
        if family == socket.AF_INET6:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        sock.bind((address, port))
        return int(sock.getsockname()[1])


def _ipv6_free(port: int) -> bool:
    if not socket.has_ipv6:
        return True
    try:
        _bind(socket.AF_INET6, "::", port)
    except OSError as exc:
        if exc.errno == errno.EADDRINUSE:
            return False
        # IPv6 disabled on this host.
        return True
    return True


__all__ = ["find_free_port"]
