"""Build the option set handed to the database driver for one connect attempt."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Any, Mapping, Protocol

from .errors import TlsMaterialError
from .models import ConnectionDescriptor, Host
from .types import AuthStrategy, SslMethod
from .uri import host_url

LOG = logging.getLogger(__name__)


class TunnelHandle(Protocol):
    """Local end of a forwarded tunnel."""

    @property
    def local_address(self) -> str: ...

    @property
    def local_port(self) -> int: ...

    async def close(self) -> None: ...


@dataclass(frozen=True, slots=True)
class Credentials:
    """Authentication settings kept apart from the flat option map."""

    mechanism: str | None
    username: str | None
    password: str | None = field(default=None, repr=False)
    source: str | None = None
    mechanism_properties: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DriverOptions:
    """Resolved options for a single connect attempt; never persisted."""

    url: str
    options: Mapping[str, Any]
    credentials: Credentials | None = field(default=None, repr=False)

    def describe(self) -> dict[str, Any]:
        """Loggable view of the options: TLS buffers reduced to their sizes."""

        summary: dict[str, Any] = {}
        for key, value in self.options.items():
            if isinstance(value, bytes):
                summary[key] = f"<{len(value)} bytes>"
            elif isinstance(value, list) and value and all(isinstance(item, bytes) for item in value):
                summary[key] = [f"<{len(item)} bytes>" for item in value]
            elif key == "sslPass":
                summary[key] = "******"
            else:
                summary[key] = value
        return summary


# Flattened TLS flags: (ssl, sslValidate, checkServerIdentity).
_SSL_FLAGS: Mapping[SslMethod, tuple[bool, bool | None, bool | None]] = {
    SslMethod.NONE: (False, None, None),
    SslMethod.UNVALIDATED: (True, False, False),
    SslMethod.SYSTEMCA: (True, True, True),
    SslMethod.SERVER: (True, True, True),
    SslMethod.ALL: (True, True, True),
    SslMethod.IFAVAILABLE: (True, True, False),
}

# Descriptor attribute -> driver option name for plain pass-through values.
_PASSTHROUGH = (
    ("replica_set", "replicaSet"),
    ("read_concern_level", "readConcernLevel"),
    ("max_staleness_seconds", "maxStalenessSeconds"),
    ("w", "w"),
    ("w_timeout_ms", "wTimeoutMS"),
    ("journal", "journal"),
    ("min_pool_size", "minPoolSize"),
    ("max_pool_size", "maxPoolSize"),
    ("connect_timeout_ms", "connectTimeoutMS"),
    ("socket_timeout_ms", "socketTimeoutMS"),
    ("server_selection_timeout_ms", "serverSelectionTimeoutMS"),
    ("heartbeat_frequency_ms", "heartbeatFrequencyMS"),
    ("local_threshold_ms", "localThresholdMS"),
    ("max_idle_time_ms", "maxIdleTimeMS"),
    ("wait_queue_timeout_ms", "waitQueueTimeoutMS"),
    ("zlib_compression_level", "zlibCompressionLevel"),
    ("app_name", "appName"),
    ("retry_writes", "retryWrites"),
    ("uuid_representation", "uuidRepresentation"),
    ("direct_connection", "directConnection"),
)


async def build_driver_options(
    descriptor: ConnectionDescriptor,
    *,
    tunnel: TunnelHandle | None = None,
) -> DriverOptions:
    """Resolve ``descriptor`` into driver options, reading TLS files into memory.

    When ``tunnel`` is given the URL targets its local listener instead of the
    descriptor's hosts.
    """

    options: dict[str, Any] = {}
    ssl, validate, check_identity = _SSL_FLAGS[descriptor.ssl_method]
    options["ssl"] = ssl
    if validate is not None:
        options["sslValidate"] = validate
    if check_identity is not None:
        options["checkServerIdentity"] = check_identity
    options.update(await _read_tls_material(descriptor))

    options["readPreference"] = descriptor.read_preference.value
    if descriptor.read_preference_tags:
        options["readPreferenceTags"] = [dict(group) for group in descriptor.read_preference_tags]
    if descriptor.compressors:
        options["compressors"] = sorted(item.value for item in descriptor.compressors)
    for attr, name in _PASSTHROUGH:
        value = getattr(descriptor, attr)
        if value is None:
            continue
        options[name] = getattr(value, "value", value)
    if (
        len(descriptor.hosts) == 1
        and not descriptor.is_srv_record
        and descriptor.replica_set is None
        and descriptor.direct_connection is None
    ):
        options["directConnection"] = True

    if tunnel is not None:
        hosts = [Host(host=tunnel.local_address, port=tunnel.local_port)]
        url = host_url(hosts, database=descriptor.database)
    else:
        url = host_url(descriptor.hosts, srv=descriptor.is_srv_record, database=descriptor.database)
    result = DriverOptions(url=url, options=options, credentials=_credentials(descriptor))
    LOG.debug("Built driver options", extra={"url": url, "options": result.describe()})
    return result


def _credentials(descriptor: ConnectionDescriptor) -> Credentials | None:
    strategy = descriptor.auth_strategy
    if strategy is AuthStrategy.NONE:
        return None
    mechanism = descriptor.driver_auth_mechanism
    secret = descriptor.password
    properties: dict[str, Any] = {}
    if strategy is AuthStrategy.KERBEROS:
        properties["SERVICE_NAME"] = descriptor.kerberos_service_name
        if descriptor.kerberos_service_realm:
            properties["SERVICE_REALM"] = descriptor.kerberos_service_realm
        if descriptor.kerberos_canonicalize_hostname:
            properties["CANONICALIZE_HOST_NAME"] = True
    return Credentials(
        mechanism=mechanism.value if mechanism is not None else None,
        username=descriptor.username,
        password=secret.get_secret_value() if secret is not None else None,
        source=descriptor.auth_source,
        mechanism_properties=properties,
    )


async def _read_tls_material(descriptor: ConnectionDescriptor) -> dict[str, Any]:
    material: dict[str, Any] = {}
    if descriptor.ssl_ca:
        authorities = list(await asyncio.gather(*(_read_file(path) for path in descriptor.ssl_ca)))
        material["sslCA"] = authorities[0] if len(authorities) == 1 else authorities
    if descriptor.ssl_cert:
        material["sslCert"] = await _read_file(descriptor.ssl_cert[0])
    if descriptor.ssl_key:
        material["sslKey"] = await _read_file(descriptor.ssl_key[0])
    if descriptor.ssl_pass is not None:
        material["sslPass"] = descriptor.ssl_pass.get_secret_value()
    return material


async def _read_file(path: str) -> bytes:
    try:
        return await asyncio.to_thread(Path(path).expanduser().read_bytes)
    except OSError as exc:
        raise TlsMaterialError(path, exc.strerror or str(exc)) from exc


__all__ = ["Credentials", "DriverOptions", "TunnelHandle", "build_driver_options"]
