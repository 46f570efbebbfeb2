"""DNS seedlist discovery for ``mongodb+srv`` connection strings."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Protocol, Sequence, runtime_checkable
from urllib.parse import parse_qsl

import dns.asyncresolver
import dns.exception
import dns.resolver

from .errors import DnsResolutionError, ValidationError

LOG = logging.getLogger(__name__)

SRV_SERVICE_PREFIX = "_mongodb._tcp."
TXT_ALLOWED_OPTIONS = frozenset({"authsource", "replicaset"})


@dataclass(frozen=True, slots=True)
class SrvTarget:
    """Host/port pair advertised by one SRV record."""

    host: str
    port: int


@dataclass(frozen=True, slots=True)
class SrvLookup:
    """Outcome of a seedlist lookup: the hosts plus TXT-provided options."""

    targets: tuple[SrvTarget, ...]
    txt_options: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class SrvResolver(Protocol):
    """Capability used by the URI codec to resolve SRV and TXT records."""

    async def resolve_srv(self, name: str) -> Sequence[SrvTarget]:
        """Return the targets of the SRV records published for ``name``."""

    async def resolve_txt(self, name: str) -> Sequence[str]:
        """Return the TXT strings published for ``name`` (empty when none)."""


class DnsPythonResolver:
    """SrvResolver backed by dnspython's asyncio resolver."""

    def __init__(self, resolver: dns.asyncresolver.Resolver | None = None, *, lifetime: float = 10.0) -> None:
        if resolver is None:
            resolver = dns.asyncresolver.Resolver()
            resolver.lifetime = lifetime
        self._resolver = resolver

    async def resolve_srv(self, name: str) -> Sequence[SrvTarget]:
        answer = await self._resolver.resolve(name, "SRV")
        return [SrvTarget(host=str(record.target).rstrip("."), port=int(record.port)) for record in answer]

    async def resolve_txt(self, name: str) -> Sequence[str]:
        try:
            answer = await self._resolver.resolve(name, "TXT")
        except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
            return []
        try:
            return [b"".join(record.strings).decode() for record in answer]
        except UnicodeDecodeError:
            raise DnsResolutionError(name, "TXT record is not valid UTF-8") from None


async def lookup_seedlist(hostname: str, resolver: SrvResolver | None = None) -> SrvLookup:
    """Resolve the seedlist and TXT options published for ``hostname``.

    Raises ``DnsResolutionError`` when the lookup fails or yields nothing, and
    when a target lies outside the SRV name's parent domain.
    """

    resolver = resolver or DnsPythonResolver()
    LOG.debug("Resolving SRV seedlist", extra={"hostname": hostname})
    try:
        targets = tuple(await resolver.resolve_srv(SRV_SERVICE_PREFIX + hostname))
        txt_records = list(await resolver.resolve_txt(hostname))
    except DnsResolutionError:
        raise
    except (dns.exception.DNSException, OSError) as exc:
        raise DnsResolutionError(hostname, str(exc) or type(exc).__name__) from exc
    if not targets:
        raise DnsResolutionError(hostname, "no SRV records found")
    parent = _parent_domain(hostname)
    for target in targets:
        if not _in_domain(target.host, parent):
            raise DnsResolutionError(hostname, f"SRV target '{target.host}' is not within '{parent}'")
    if len(txt_records) > 1:
        raise DnsResolutionError(hostname, "multiple TXT records found")
    txt_options = _parse_txt(txt_records[0]) if txt_records else {}
    LOG.debug(
        "Resolved SRV seedlist",
        extra={"hostname": hostname, "targets": len(targets), "txt_options": sorted(txt_options)},
    )
    return SrvLookup(targets=targets, txt_options=txt_options)


def _parse_txt(record: str) -> dict[str, str]:
    options: dict[str, str] = {}
    for key, value in parse_qsl(record, keep_blank_values=True):
        if key.lower() not in TXT_ALLOWED_OPTIONS:
            raise ValidationError(key, "option is not allowed in a TXT record", expected="authSource or replicaSet")
        options[key] = value
    return options


def _parent_domain(hostname: str) -> str:
    parts = hostname.lower().rstrip(".").split(".")
    if len(parts) < 3:
        raise DnsResolutionError(hostname, "SRV hostnames need at least three labels")
    return ".".join(parts[1:])


def _in_domain(host: str, parent: str) -> bool:
    host = host.lower().rstrip(".")
    return host.endswith("." + parent)


__all__ = [
    "DnsPythonResolver",
    "SrvLookup",
    "SrvResolver",
    "SrvTarget",
    "lookup_seedlist",
]
