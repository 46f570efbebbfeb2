"""SSH tunnel manager forwarding a local listener to the database host."""

from __future__ import annotations

import asyncio
from enum import Enum
import logging
from typing import Any, Callable

import asyncssh

from .config import Settings
from .errors import TunnelListenError, TunnelStartupError, TunnelTimeoutError
from .models import ConnectionDescriptor
from .types import SshTunnelMode
from .validation import reveal

LOG = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


class TunnelState(str, Enum):
    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    FORWARDING = "FORWARDING"
    LISTENING = "LISTENING"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"
    FAILED = "FAILED"


StateListener = Callable[[TunnelState], None]


class SshTunnel:
    """Authenticated SSH session plus a local listener bridging to the target.

    Every accepted local socket gets its own direct-tcpip channel. ``close``
    may be called any number of times from any state.
    """

    def __init__(
        self,
        descriptor: ConnectionDescriptor,
        *,
        settings: Settings | None = None,
        on_state: StateListener | None = None,
    ) -> None:
        if descriptor.ssh_tunnel is SshTunnelMode.NONE:
            raise ValueError("descriptor does not configure an SSH tunnel")
        self._descriptor = descriptor
        self._settings = settings or Settings()
        self._on_state = on_state
        self._state = TunnelState.IDLE
        self._closing = False
        self._conn: Any = None
        self._server: asyncio.AbstractServer | None = None
        self._bridges: set[asyncio.Task[Any]] = set()
        self._local_address = self._settings.ssh_local_address
        self._local_port = int(descriptor.ssh_tunnel_bind_to_local_port or 0)
        self._target = (descriptor.hostname, descriptor.port)

    @property
    def state(self) -> TunnelState:
        return self._state

    @property
    def local_address(self) -> str:
        return self._local_address

    @property
    def local_port(self) -> int:
        return self._local_port

    async def start(self) -> None:
        """Connect, probe the forward and start listening locally."""

        if self._state is not TunnelState.IDLE:
            raise RuntimeError(f"tunnel already started ({self._state.value})")
        try:
            await self._connect()
            self._abort_if_closing()
            await self._probe_forward()
            self._abort_if_closing()
            await self._listen()
            self._abort_if_closing()
        except BaseException:
            if not self._closing:
                self._set_state(TunnelState.FAILED)
            await self._teardown()
            raise
        self._set_state(TunnelState.LISTENING)

    async def close(self) -> None:
        """Stop accepting, end the SSH session and drop running bridges."""

        if self._state is TunnelState.CLOSED:
            return
        self._closing = True
        self._set_state(TunnelState.CLOSING)
        await self._teardown()
        self._set_state(TunnelState.CLOSED)

    def _abort_if_closing(self) -> None:
        if self._closing:
            raise TunnelStartupError("SSH tunnel was closed while starting")

    async def _connect(self) -> None:
        descriptor = self._descriptor
        self._set_state(TunnelState.CONNECTING)
        kwargs: dict[str, Any] = {
            "port": descriptor.ssh_tunnel_port,
            "username": descriptor.ssh_tunnel_username,
            "known_hosts": self._settings.ssh_known_hosts,
        }
        if descriptor.ssh_tunnel is SshTunnelMode.USER_PASSWORD:
            kwargs["password"] = reveal(descriptor.ssh_tunnel_password)
            kwargs["client_keys"] = ()
        else:
            kwargs["client_keys"] = [descriptor.ssh_tunnel_identity_file]
            if descriptor.ssh_tunnel_passphrase is not None:
                kwargs["passphrase"] = reveal(descriptor.ssh_tunnel_passphrase)
        host = descriptor.ssh_tunnel_hostname
        try:
            self._conn = await asyncio.wait_for(
                asyncssh.connect(host, **kwargs),
                timeout=self._settings.ssh_connect_timeout,
            )
        except asyncio.TimeoutError:
            raise TunnelTimeoutError(f"Timed out connecting to SSH host '{host}'") from None
        except (asyncssh.Error, OSError) as exc:
            raise TunnelStartupError(f"Unable to open SSH session to '{host}': {exc}") from exc

    async def _probe_forward(self) -> None:
        self._set_state(TunnelState.FORWARDING)
        host, port = self._target
        try:
            _, writer = await asyncio.wait_for(
                self._conn.open_connection(host, port),
                timeout=self._settings.ssh_forward_timeout,
            )
        except asyncio.TimeoutError:
            raise TunnelTimeoutError(f"Timed out while waiting for forward to {host}:{port}") from None
        except (asyncssh.Error, OSError) as exc:
            raise TunnelStartupError(f"SSH host refused forward to {host}:{port}: {exc}") from exc
        writer.close()

    async def _listen(self) -> None:
        try:
            self._server = await asyncio.start_server(
                self._handle_client,
                host=self._local_address,
                port=self._local_port,
            )
        except OSError as exc:
            raise TunnelListenError(
                f"Unable to listen on {self._local_address}:{self._local_port}: {exc.strerror or exc}"
            ) from exc
        sockets = self._server.sockets or ()
        if sockets:
            self._local_port = int(sockets[0].getsockname()[1])

    async def _handle_client(self, local_reader: asyncio.StreamReader, local_writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._bridges.add(task)
        host, port = self._target
        try:
            try:
                remote_reader, remote_writer = await self._conn.open_connection(host, port)
            except (asyncssh.Error, OSError) as exc:
                LOG.warning(
                    "Failed to open forwarded channel",
                    extra={"target": f"{host}:{port}", "error": str(exc)},
                )
                local_writer.close()
                return
            LOG.debug("Tunnel pipeline created", extra={"target": f"{host}:{port}"})
            await asyncio.gather(
                _pipe(local_reader, remote_writer),
                _pipe(remote_reader, local_writer),
            )
        finally:
            if task is not None:
                self._bridges.discard(task)

    async def _teardown(self) -> None:
        if self._server is not None:
            self._server.close()
            self._server = None
        for task in tuple(self._bridges):
            task.cancel()
        self._bridges.clear()
        if self._conn is not None:
            conn, self._conn = self._conn, None
            conn.close()
            await conn.wait_closed()

    def _set_state(self, state: TunnelState) -> None:
        if state is self._state:
            return
        LOG.debug(
            "SSH tunnel state changed",
            extra={"from_state": self._state.value, "to_state": state.value, "ssh_host": self._descriptor.ssh_tunnel_hostname},
        )
        self._state = state
        if self._on_state is not None:
            self._on_state(state)


async def _pipe(reader: Any, writer: Any) -> None:
    try:
        while True:
            chunk = await reader.read(_CHUNK_SIZE)
            if not chunk:
                break
            writer.write(chunk)
            await writer.drain()
    except (ConnectionError, asyncssh.Error) as exc:
        LOG.debug("Tunnel pipe closed", extra={"error": str(exc)})
    finally:
        writer.close()


async def open_tunnel(
    descriptor: ConnectionDescriptor,
    *,
    settings: Settings | None = None,
    on_state: StateListener | None = None,
) -> SshTunnel | None:
    """Start the tunnel described by ``descriptor``; ``None`` when mode is NONE."""

    if descriptor.ssh_tunnel is SshTunnelMode.NONE:
        return None
    tunnel = SshTunnel(descriptor, settings=settings, on_state=on_state)
    await tunnel.start()
    return tunnel


__all__ = ["SshTunnel", "StateListener", "TunnelState", "open_tunnel"]
