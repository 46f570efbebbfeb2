"""Driver client factories used by the connect pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import tempfile
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

from pymongo import AsyncMongoClient
from pymongo.errors import PyMongoError
from pymongo.monitoring import TopologyClosedEvent, TopologyDescriptionChangedEvent, TopologyListener, TopologyOpenedEvent

from .driver_options import DriverOptions
from .errors import ConnectError

LOG = logging.getLogger(__name__)

CloseCallback = Callable[[], None]

# Flat option name -> pymongo keyword for values passed through unchanged.
_PYMONGO_NAMES: Mapping[str, str] = {
    "replicaSet": "replicaSet",
    "readPreference": "readPreference",
    "maxStalenessSeconds": "maxStalenessSeconds",
    "readConcernLevel": "readConcernLevel",
    "w": "w",
    "wTimeoutMS": "wTimeoutMS",
    "journal": "journal",
    "minPoolSize": "minPoolSize",
    "maxPoolSize": "maxPoolSize",
    "connectTimeoutMS": "connectTimeoutMS",
    "socketTimeoutMS": "socketTimeoutMS",
    "serverSelectionTimeoutMS": "serverSelectionTimeoutMS",
    "heartbeatFrequencyMS": "heartbeatFrequencyMS",
    "localThresholdMS": "localThresholdMS",
    "maxIdleTimeMS": "maxIdleTimeMS",
    "waitQueueTimeoutMS": "waitQueueTimeoutMS",
    "compressors": "compressors",
    "zlibCompressionLevel": "zlibCompressionLevel",
    "appName": "appname",
    "retryWrites": "retryWrites",
    "uuidRepresentation": "uuidRepresentation",
    "directConnection": "directConnection",
}


@runtime_checkable
class ClientHandle(Protocol):
    """Live driver client owned by one connection."""

    @property
    def client(self) -> Any: ...

    async def close(self) -> None: ...


@runtime_checkable
class ClientFactory(Protocol):
    """Protocol implemented by driver client factories."""

    async def connect(self, options: DriverOptions, *, on_close: CloseCallback | None = None) -> ClientHandle:
        """Create a client from ``options`` and confirm the server answers."""


class _CloseListener(TopologyListener):
    """Invokes a callback once the client's topology shuts down."""

    def __init__(self, callback: CloseCallback) -> None:
        self._callback = callback

    def opened(self, event: TopologyOpenedEvent) -> None:
        return None

    def description_changed(self, event: TopologyDescriptionChangedEvent) -> None:
        return None

    def closed(self, event: TopologyClosedEvent) -> None:
        LOG.debug("Driver topology closed", extra={"topology_id": str(event.topology_id)})
        self._callback()


@dataclass(slots=True)
class PyMongoClientHandle:
    """AsyncMongoClient plus the scratch directory holding its TLS files."""

    client: AsyncMongoClient
    tls_dir: tempfile.TemporaryDirectory[str] | None = None
    _closed: bool = field(default=False, init=False)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.client.close()
        finally:
            if self.tls_dir is not None:
                self.tls_dir.cleanup()


class PyMongoClientFactory:
    """Client factory backed by pymongo's asyncio client."""

    def __init__(self, *, ping: bool = True) -> None:
        self._ping = ping

    async def connect(self, options: DriverOptions, *, on_close: CloseCallback | None = None) -> PyMongoClientHandle:
        tls_dir: tempfile.TemporaryDirectory[str] | None = None
        if any(isinstance(value, (bytes, list)) and key.startswith("ssl") for key, value in options.options.items()):
            tls_dir = tempfile.TemporaryDirectory(prefix="mongoconn-tls-")
        kwargs = pymongo_kwargs(options, Path(tls_dir.name) if tls_dir is not None else None)
        if on_close is not None:
            kwargs["event_listeners"] = [_CloseListener(on_close)]
        try:
            client: AsyncMongoClient = AsyncMongoClient(options.url, **kwargs)
        except (PyMongoError, ValueError, TypeError) as exc:
            if tls_dir is not None:
                tls_dir.cleanup()
            raise ConnectError(f"Invalid driver options: {exc}") from exc
        handle = PyMongoClientHandle(client=client, tls_dir=tls_dir)
        try:
            await client.aconnect()
            if self._ping:
                await client.admin.command("ping")
        except PyMongoError as exc:
            await handle.close()
            raise ConnectError(f"Failed to connect to MongoDB: {exc}") from exc
        LOG.debug("Driver connected", extra={"url": options.url})
        return handle


def pymongo_kwargs(options: DriverOptions, tls_dir: Path | None = None) -> dict[str, Any]:
    """Translate flat driver options into ``AsyncMongoClient`` keyword arguments.

    In-memory TLS material is written below ``tls_dir``; pymongo only accepts
    file paths.
    """

    flat = options.options
    kwargs: dict[str, Any] = {}
    for name, keyword in _PYMONGO_NAMES.items():
        if name in flat:
            kwargs[keyword] = flat[name]
    if "readPreferenceTags" in flat:
        kwargs["readPreferenceTags"] = [
            ",".join(f"{key}:{value}" for key, value in group.items()) for group in flat["readPreferenceTags"]
        ]

    kwargs["tls"] = bool(flat.get("ssl"))
    if kwargs["tls"]:
        if flat.get("sslValidate") is False:
            kwargs["tlsAllowInvalidCertificates"] = True
        elif flat.get("checkServerIdentity") is False:
            kwargs["tlsAllowInvalidHostnames"] = True
    if tls_dir is not None:
        authorities = flat.get("sslCA")
        if authorities:
            bundle = authorities if isinstance(authorities, bytes) else b"\n".join(authorities)
            kwargs["tlsCAFile"] = _spool(tls_dir / "ca.pem", bundle)
        if flat.get("sslKey"):
            cert = flat.get("sslCert") or b""
            key = flat["sslKey"]
            pem = key if cert == key else b"\n".join(part for part in (cert, key) if part)
            kwargs["tlsCertificateKeyFile"] = _spool(tls_dir / "client.pem", pem)
    if flat.get("sslPass"):
        kwargs["tlsCertificateKeyFilePassword"] = flat["sslPass"]

    credentials = options.credentials
    if credentials is not None:
        if credentials.username is not None:
            kwargs["username"] = credentials.username
        if credentials.password is not None:
            kwargs["password"] = credentials.password
        if credentials.source is not None:
            kwargs["authSource"] = credentials.source
        if credentials.mechanism is not None:
            kwargs["authMechanism"] = credentials.mechanism
        if credentials.mechanism_properties:
            kwargs["authMechanismProperties"] = dict(credentials.mechanism_properties)
    return kwargs


def _spool(path: Path, data: bytes) -> str:
    path.write_bytes(data)
    path.chmod(0o600)
    return str(path)


__all__ = [
    "ClientFactory",
    "ClientHandle",
    "PyMongoClientFactory",
    "PyMongoClientHandle",
    "pymongo_kwargs",
]
