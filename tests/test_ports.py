"""Tests for local port allocation."""

from __future__ import annotations

import socket

import pytest

from mongoconn import ports
from mongoconn.ports import find_free_port


@pytest.mark.parametrize("listen_address", ["127.0.0.1", "0.0.0.0"])
def test_default_port_binds_on_any_ipv4_address(listen_address: str) -> None:
    port = find_free_port()

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((listen_address, port))


def test_explicit_address_is_probed() -> None:
    port = find_free_port("127.0.0.1")

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", port))


def test_skips_ports_taken_on_ipv6(monkeypatch: pytest.MonkeyPatch) -> None:
    taken: list[int] = []

    def _taken_once(port: int) -> bool:
        if not taken:
            taken.append(port)
            return False
        return True

    monkeypatch.setattr(ports, "_ipv6_free", _taken_once)

    port = find_free_port()

    assert len(taken) == 1
    assert port > 0
