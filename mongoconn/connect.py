"""Connect pipeline: SSH tunnel, driver options, driver client."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Any, Awaitable, Callable

from .config import Settings
from .connections import ClientFactory, ClientHandle, PyMongoClientFactory
from .driver_options import DriverOptions, build_driver_options
from .models import ConnectionDescriptor
from .srv import SrvResolver
from .tunnel import SshTunnel, open_tunnel
from .types import SshTunnelMode
from .uri import parse_uri

LOG = logging.getLogger(__name__)


class Task(str, Enum):
    CREATE_SSH_TUNNEL = "Create SSH Tunnel"
    LOAD_DRIVER_OPTIONS = "Load driver options"
    CONNECT_TO_MONGODB = "Connect to MongoDB"


class TaskState(str, Enum):
    PENDING = "PENDING"
    SKIPPED = "SKIPPED"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"


@dataclass(frozen=True, slots=True)
class TaskStatus:
    """Progress event emitted at each pipeline step transition."""

    task: Task
    state: TaskState
    reason: str | None = None


ProgressCallback = Callable[[TaskStatus], None]
TunnelFactory = Callable[..., Awaitable["SshTunnel | None"]]


@dataclass(slots=True)
class Connection:
    """Live client plus the options and tunnel it was created with."""

    descriptor: ConnectionDescriptor
    options: DriverOptions
    handle: ClientHandle
    tunnel: SshTunnel | None = None
    _pending: set[asyncio.Task[Any]] = field(default_factory=set, init=False, repr=False)

    @property
    def client(self) -> Any:
        return self.handle.client

    async def close(self) -> None:
        """Close the client, then the tunnel."""

        try:
            await self.handle.close()
        finally:
            if self.tunnel is not None:
                await self.tunnel.close()
            for task in tuple(self._pending):
                await task

    async def __aenter__(self) -> Connection:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _schedule_tunnel_close(self, loop: asyncio.AbstractEventLoop) -> None:
        if self.tunnel is None:
            return

        def _spawn() -> None:
            assert self.tunnel is not None
            LOG.debug("Client disconnected, shutting down SSH tunnel")
            task = loop.create_task(self.tunnel.close())
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        loop.call_soon_threadsafe(_spawn)


class _Progress:
    def __init__(self, callback: ProgressCallback | None) -> None:
        self._callback = callback

    def report(self, task: Task, state: TaskState, reason: str | None = None) -> None:
        LOG.debug("Connect task %s", state.value.lower(), extra={"task": task.value, "reason": reason})
        if self._callback is not None:
            self._callback(TaskStatus(task=task, state=state, reason=reason))


async def connect(
    target: ConnectionDescriptor | str,
    *,
    client_factory: ClientFactory | None = None,
    tunnel_factory: TunnelFactory | None = None,
    resolver: SrvResolver | None = None,
    progress: ProgressCallback | None = None,
    settings: Settings | None = None,
) -> Connection:
    """Open the tunnel (if any), build driver options and connect the driver.

    When option building or the driver connect fails, the tunnel is closed
    before the original error propagates unchanged.
    """

    settings = settings or Settings()
    if isinstance(target, str):
        descriptor = await parse_uri(target, resolver=resolver, settings=settings)
    else:
        descriptor = target
    client_factory = client_factory or PyMongoClientFactory(ping=settings.driver_ping)
    tunnel_factory = tunnel_factory or open_tunnel
    reporter = _Progress(progress)

    tunnel = await _create_tunnel(descriptor, tunnel_factory, reporter, settings)
    try:
        reporter.report(Task.LOAD_DRIVER_OPTIONS, TaskState.PENDING)
        try:
            options = await build_driver_options(descriptor, tunnel=tunnel)
        except Exception as exc:
            reporter.report(Task.LOAD_DRIVER_OPTIONS, TaskState.ERROR, str(exc))
            raise
        reporter.report(Task.LOAD_DRIVER_OPTIONS, TaskState.COMPLETE)

        loop = asyncio.get_running_loop()
        connection: Connection | None = None

        def _on_client_close() -> None:
            if connection is not None:
                connection._schedule_tunnel_close(loop)

        reporter.report(Task.CONNECT_TO_MONGODB, TaskState.PENDING)
        try:
            handle = await client_factory.connect(options, on_close=_on_client_close if tunnel else None)
        except Exception as exc:
            reporter.report(Task.CONNECT_TO_MONGODB, TaskState.ERROR, str(exc))
            raise
        reporter.report(Task.CONNECT_TO_MONGODB, TaskState.COMPLETE)
    except BaseException:
        if tunnel is not None:
            LOG.debug("Connect failed, shutting down SSH tunnel")
            await tunnel.close()
        raise

    connection = Connection(descriptor=descriptor, options=options, handle=handle, tunnel=tunnel)
    return connection


async def _create_tunnel(
    descriptor: ConnectionDescriptor,
    tunnel_factory: TunnelFactory,
    reporter: _Progress,
    settings: Settings,
) -> SshTunnel | None:
    reporter.report(Task.CREATE_SSH_TUNNEL, TaskState.PENDING)
    if descriptor.ssh_tunnel is SshTunnelMode.NONE:
        reporter.report(Task.CREATE_SSH_TUNNEL, TaskState.SKIPPED, "The selected SSH Tunnel mode is NONE.")
        return None
    try:
        tunnel = await tunnel_factory(descriptor, settings=settings)
    except Exception as exc:
        reporter.report(Task.CREATE_SSH_TUNNEL, TaskState.ERROR, str(exc))
        raise
    reporter.report(Task.CREATE_SSH_TUNNEL, TaskState.COMPLETE)
    return tunnel


__all__ = [
    "Connection",
    "ProgressCallback",
    "Task",
    "TaskState",
    "TaskStatus",
    "connect",
]
