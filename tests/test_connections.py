"""Tests for the pymongo client factory."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from bson import ObjectId
import pytest
from pymongo.errors import ServerSelectionTimeoutError
from pymongo.monitoring import TopologyClosedEvent

from mongoconn.connections import PyMongoClientFactory, pymongo_kwargs
from mongoconn.driver_options import Credentials, DriverOptions
from mongoconn.errors import ConnectError


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _FakeAdmin:
    def __init__(self, error: Exception | None) -> None:
        self._error = error
        self.commands: list[str] = []

    async def command(self, name: str) -> dict[str, Any]:
        self.commands.append(name)
        if self._error is not None:
            raise self._error
        return {"ok": 1.0}


class _FakeClient:
    instances: list["_FakeClient"] = []
    ping_error: Exception | None = None

    def __init__(self, url: str, **kwargs: Any) -> None:
        self.url = url
        self.kwargs = kwargs
        self.connected = False
        self.closed = False
        self.admin = _FakeAdmin(self.ping_error)
        _FakeClient.instances.append(self)

    async def aconnect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_client(monkeypatch: pytest.MonkeyPatch) -> type[_FakeClient]:
    monkeypatch.setattr(_FakeClient, "instances", [])
    monkeypatch.setattr(_FakeClient, "ping_error", None)
    monkeypatch.setattr("mongoconn.connections.AsyncMongoClient", _FakeClient)
    return _FakeClient


def test_kwargs_translate_flat_options() -> None:
    options = DriverOptions(
        url="mongodb://db1:27017,db2:27017/",
        options={
            "ssl": True,
            "sslValidate": True,
            "checkServerIdentity": False,
            "replicaSet": "rs0",
            "readPreference": "secondary",
            "readPreferenceTags": [{"dc": "ny", "rack": "1"}, {}],
            "appName": "Reports",
            "compressors": ["snappy", "zlib"],
        },
        credentials=Credentials(
            mechanism="GSSAPI",
            username="svc@EXAMPLE.COM",
            source="$external",
            mechanism_properties={"SERVICE_NAME": "mongodb"},
        ),
    )

    kwargs = pymongo_kwargs(options)

    assert kwargs["tls"] is True
    assert kwargs["tlsAllowInvalidHostnames"] is True
    assert "tlsAllowInvalidCertificates" not in kwargs
    assert kwargs["replicaSet"] == "rs0"
    assert kwargs["readPreferenceTags"] == ["dc:ny,rack:1", ""]
    assert kwargs["appname"] == "Reports"
    assert kwargs["compressors"] == ["snappy", "zlib"]
    assert kwargs["username"] == "svc@EXAMPLE.COM"
    assert "password" not in kwargs
    assert kwargs["authSource"] == "$external"
    assert kwargs["authMechanism"] == "GSSAPI"
    assert kwargs["authMechanismProperties"] == {"SERVICE_NAME": "mongodb"}


def test_unvalidated_tls_allows_invalid_certificates() -> None:
    options = DriverOptions(url="mongodb://localhost:27017/", options={"ssl": True, "sslValidate": False})

    kwargs = pymongo_kwargs(options)

    assert kwargs["tlsAllowInvalidCertificates"] is True
    assert "tlsAllowInvalidHostnames" not in kwargs


def test_tls_material_is_spooled_to_files(tmp_path: Path) -> None:
    options = DriverOptions(
        url="mongodb://localhost:27017/",
        options={
            "ssl": True,
            "sslCA": [b"first-ca", b"second-ca"],
            "sslCert": b"cert",
            "sslKey": b"key",
            "sslPass": "keypass",
        },
    )

    kwargs = pymongo_kwargs(options, tmp_path)

    assert Path(kwargs["tlsCAFile"]).read_bytes() == b"first-ca\nsecond-ca"
    assert Path(kwargs["tlsCertificateKeyFile"]).read_bytes() == b"cert\nkey"
    assert kwargs["tlsCertificateKeyFilePassword"] == "keypass"
    assert Path(kwargs["tlsCAFile"]).stat().st_mode & 0o777 == 0o600


def test_combined_pem_is_written_once(tmp_path: Path) -> None:
    options = DriverOptions(
        url="mongodb://localhost:27017/",
        options={"ssl": True, "sslCert": b"combined", "sslKey": b"combined"},
    )

    kwargs = pymongo_kwargs(options, tmp_path)

    assert Path(kwargs["tlsCertificateKeyFile"]).read_bytes() == b"combined"


@pytest.mark.anyio
async def test_factory_connects_pings_and_cleans_up(fake_client: type[_FakeClient]) -> None:
    options = DriverOptions(
        url="mongodb://localhost:27017/",
        options={"ssl": True, "sslCA": b"ca", "directConnection": True},
    )

    handle = await PyMongoClientFactory().connect(options)

    client = fake_client.instances[0]
    assert client.url == "mongodb://localhost:27017/"
    assert client.connected is True
    assert client.admin.commands == ["ping"]
    assert client.kwargs["directConnection"] is True
    ca_file = Path(client.kwargs["tlsCAFile"])
    assert ca_file.read_bytes() == b"ca"

    await handle.close()
    await handle.close()

    assert client.closed is True
    assert not ca_file.exists()


@pytest.mark.anyio
async def test_factory_skips_ping_when_disabled(fake_client: type[_FakeClient]) -> None:
    options = DriverOptions(url="mongodb://localhost:27017/", options={"ssl": False})

    handle = await PyMongoClientFactory(ping=False).connect(options)

    assert fake_client.instances[0].admin.commands == []
    assert handle.tls_dir is None


@pytest.mark.anyio
async def test_driver_failure_raises_connect_error(fake_client: type[_FakeClient]) -> None:
    error = ServerSelectionTimeoutError("localhost:27017: connection refused")
    fake_client.ping_error = error
    options = DriverOptions(url="mongodb://localhost:27017/", options={"ssl": False})

    with pytest.raises(ConnectError) as excinfo:
        await PyMongoClientFactory().connect(options)

    assert excinfo.value.__cause__ is error
    assert fake_client.instances[0].closed is True


@pytest.mark.anyio
async def test_close_listener_forwards_topology_close(fake_client: type[_FakeClient]) -> None:
    closed: list[bool] = []
    options = DriverOptions(url="mongodb://localhost:27017/", options={"ssl": False})

    await PyMongoClientFactory().connect(options, on_close=lambda: closed.append(True))

    (listener,) = fake_client.instances[0].kwargs["event_listeners"]
    listener.closed(TopologyClosedEvent(ObjectId()))
    assert closed == [True]
