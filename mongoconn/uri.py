"""Connection string codec: ``mongodb://`` / ``mongodb+srv://`` <-> descriptor."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Any, Callable, Mapping
from urllib.parse import quote, unquote

from .config import Settings
from .errors import ParseError, ValidationError
from .models import ConnectionDescriptor, Host
from .srv import SrvResolver, lookup_seedlist
from .types import (
    DEFAULT_KERBEROS_SERVICE_NAME,
    DEFAULT_PORT,
    EXTERNAL_AUTH_SOURCE,
    AuthMechanism,
    AuthStrategy,
    Compressor,
    ReadConcernLevel,
    ReadPreference,
    SslMethod,
    UuidRepresentation,
)

LOG = logging.getLogger(__name__)

SCHEME = "mongodb://"
SRV_SCHEME = "mongodb+srv://"
MASK = "******"

# encodeURIComponent leaves exactly these characters alone.
_COMPONENT_SAFE = "-_.!~*'()"
# Option values keep separators and paths readable (`$external`, `a:b,c:d`, `/ca.pem`).
_VALUE_SAFE = _COMPONENT_SAFE + "$:,/"
# One item of a list-valued option; its separators must stay encoded.
_ITEM_SAFE = _COMPONENT_SAFE + "$/"

# Options split on their separators before percent-decoding.
_LIST_OPTIONS = ("readPreferenceTags", "authMechanismProperties", "tlsCAFile")

_LEADING_OPTIONS = (
    "replicaSet",
    "readPreference",
    "appname",
    "authSource",
    "authMechanism",
    "authMechanismProperties",
    "compressors",
    "zlibCompressionLevel",
)

_KERBEROS_PROPERTIES = ("SERVICE_NAME", "SERVICE_REALM", "CANONICALIZE_HOST_NAME")


def _integer(minimum: int | None = None, maximum: int | None = None) -> Callable[[str, str], int]:
    if minimum is not None and maximum is not None:
        expected = f"integer between {minimum} and {maximum}"
    elif minimum is not None:
        expected = f"integer >= {minimum}"
    else:
        expected = "integer"

    def convert(key: str, value: str) -> int:
        try:
            number = int(value)
        except ValueError:
            raise ValidationError(key, "not an integer", expected=expected) from None
        if (minimum is not None and number < minimum) or (maximum is not None and number > maximum):
            raise ValidationError(key, "out of range", expected=expected)
        return number

    return convert


def _boolean(key: str, value: str) -> bool:
    lowered = value.lower()
    if lowered not in ("true", "false"):
        raise ValidationError(key, "not a boolean", expected="true or false")
    return lowered == "true"


def _choice(enum: type[Enum], *, case_sensitive: bool = True) -> Callable[[str, str], Any]:
    members = {member.value if case_sensitive else member.value.lower(): member for member in enum}
    expected = ", ".join(member.value for member in enum)

    def convert(key: str, value: str) -> Any:
        member = members.get(value if case_sensitive else value.lower())
        if member is None:
            raise ValidationError(key, "unsupported value", expected=expected)
        return member

    return convert


def _text(key: str, value: str) -> str:
    if not value:
        raise ValidationError(key, "must not be empty", expected="non-empty string")
    return value


def _write_concern(key: str, value: str) -> int | str:
    _text(key, value)
    return int(value) if value.isdigit() else value


def _compressors(key: str, value: str) -> list[Compressor]:
    convert = _choice(Compressor)
    return [convert(key, token.strip()) for token in value.split(",") if token.strip()]


def _retry_writes(key: str, value: str) -> bool:
    # Anything other than the literal "true" disables retryable writes.
    return value == "true"


def _decode(value: str) -> str:
    try:
        return unquote(value, errors="strict")
    except UnicodeDecodeError:
        raise ParseError("Invalid percent-encoding in connection string") from None


def _read_preference_tags(key: str, raw: str) -> list[dict[str, str]]:
    """Split a still-encoded tag set list, then decode each name and value."""

    groups: list[dict[str, str]] = []
    for group in raw.split(";"):
        tags: dict[str, str] = {}
        for pair in filter(None, group.split(",")):
            name, sep, tag = pair.partition(":")
            if not sep or not name:
                raise ValidationError(key, "malformed tag", expected="name:value pairs")
            tags[_decode(name)] = _decode(tag)
        groups.append(tags)
    return groups


# URI option -> (descriptor field alias, converter).
_FIELD_OPTIONS: Mapping[str, tuple[str, Callable[[str, str], Any]]] = {
    "replicaSet": ("replicaSet", _text),
    "readPreference": ("readPreference", _choice(ReadPreference)),
    "maxStalenessSeconds": ("maxStalenessSeconds", _integer(-1)),
    "readConcernLevel": ("readConcernLevel", _choice(ReadConcernLevel)),
    "w": ("w", _write_concern),
    "wtimeoutMS": ("wTimeoutMS", _integer(0)),
    "journal": ("journal", _boolean),
    "minPoolSize": ("minPoolSize", _integer(0)),
    "maxPoolSize": ("maxPoolSize", _integer(0)),
    "connectTimeoutMS": ("connectTimeoutMS", _integer(0)),
    "socketTimeoutMS": ("socketTimeoutMS", _integer(0)),
    "serverSelectionTimeoutMS": ("serverSelectionTimeoutMS", _integer(0)),
    "heartbeatFrequencyMS": ("heartbeatFrequencyMS", _integer(0)),
    "localThresholdMS": ("localThresholdMS", _integer(0)),
    "maxIdleTimeMS": ("maxIdleTimeMS", _integer(0)),
    "waitQueueTimeoutMS": ("waitQueueTimeoutMS", _integer(0)),
    "compressors": ("compressors", _compressors),
    "zlibCompressionLevel": ("zlibCompressionLevel", _integer(-1, 9)),
    "appname": ("appName", _text),
    "retryWrites": ("retryWrites", _retry_writes),
    "uuidRepresentation": ("uuidRepresentation", _choice(UuidRepresentation, case_sensitive=False)),
    "directConnection": ("directConnection", _boolean),
}

_SPECIAL_OPTIONS = (
    "readPreferenceTags",
    "authSource",
    "authMechanism",
    "authMechanismProperties",
    "gssapiServiceName",
    "ssl",
    "tlsAllowInvalidCertificates",
    "tlsCAFile",
    "tlsCertificateFile",
    "tlsCertificateKeyFile",
    "tlsCertificateKeyFilePassword",
)

_OPTION_ALIASES: dict[str, str] = {name.lower(): name for name in (*_FIELD_OPTIONS, *_SPECIAL_OPTIONS)}
_OPTION_ALIASES.update({"j": "journal", "wtimeout": "wtimeoutMS", "tls": "ssl"})


@dataclass(slots=True)
class _UriParts:
    srv: bool
    username: str | None
    password: str | None
    hosts: list[dict[str, Any]]
    database: str | None
    options: dict[str, str] = field(default_factory=dict)
    tags: list[dict[str, str]] = field(default_factory=list)


def is_uri(text: str) -> bool:
    """Return whether ``text`` looks like a MongoDB connection string."""

    return text.startswith((SCHEME, SRV_SCHEME))


async def parse_uri(
    uri: str,
    *,
    resolver: SrvResolver | None = None,
    settings: Settings | None = None,
) -> ConnectionDescriptor:
    """Parse a connection string into a validated descriptor.

    ``mongodb+srv`` strings are checked against DNS through ``resolver``; a
    TXT record may supply ``authSource``/``replicaSet`` unless the query
    string already sets them.
    """

    settings = settings or Settings()
    parts = _split(uri.strip())
    if parts.srv:
        lookup = await lookup_seedlist(parts.hosts[0]["host"], resolver)
        for key, value in lookup.txt_options.items():
            name = _OPTION_ALIASES[key.lower()]
            if name in parts.options:
                LOG.debug("Query option overrides TXT record", extra={"option": name})
                continue
            parts.options[name] = value

    attributes: dict[str, Any] = {
        "hosts": parts.hosts,
        "isSrvRecord": parts.srv,
        "database": parts.database,
    }
    for name, value in parts.options.items():
        if name in _FIELD_OPTIONS:
            alias, convert = _FIELD_OPTIONS[name]
            attributes[alias] = convert(name, value)
    if parts.tags:
        attributes["readPreferenceTags"] = parts.tags
    attributes.update(_auth_attributes(parts, settings))
    attributes.update(_tls_attributes(parts))
    return ConnectionDescriptor(**attributes)


def serialize_uri(descriptor: ConnectionDescriptor) -> str:
    """Render ``descriptor`` as a connection string, credentials included."""

    return _render(descriptor, mask=False)


def to_safe_uri(descriptor: ConnectionDescriptor) -> str:
    """Render ``descriptor`` with every password replaced by ``******``."""

    return _render(descriptor, mask=True)


def host_url(hosts: list[Host], *, srv: bool = False, database: str | None = None) -> str:
    """Credential-free connection string naming only ``hosts`` and ``database``."""

    scheme = SRV_SCHEME if srv else SCHEME
    seeds = ",".join(_format_host(host, srv) for host in hosts)
    path = quote(database, safe=_COMPONENT_SAFE) if database else ""
    return f"{scheme}{seeds}/{path}"


def _split(uri: str) -> _UriParts:
    if uri.startswith(SRV_SCHEME):
        srv, rest = True, uri[len(SRV_SCHEME):]
    elif uri.startswith(SCHEME):
        srv, rest = False, uri[len(SCHEME):]
    else:
        raise ParseError("Invalid scheme, expected connection string to start with 'mongodb://' or 'mongodb+srv://'")

    rest, _, query = rest.partition("?")
    username = password = None
    if "@" in rest:
        if rest.count("@") > 1:
            raise ParseError("Unescaped '@' in connection string; percent-encode credentials")
        userinfo, rest = rest.split("@")
        username, password = _split_userinfo(userinfo)
    seeds, slash, path = rest.partition("/")
    if "/" in path:
        raise ParseError("Unescaped '/' in database name")
    database = _decode(path) if slash and path else None
    if not seeds:
        raise ParseError("Connection string must name at least one host")
    hosts = [_parse_host(entry) for entry in seeds.split(",")]
    if srv:
        if len(hosts) != 1:
            raise ParseError("mongodb+srv connection strings accept exactly one hostname")
        if ":" in seeds and not seeds.startswith("["):
            raise ParseError("mongodb+srv connection strings cannot specify a port")

    parts = _UriParts(srv=srv, username=username, password=password, hosts=hosts, database=database)
    _collect_options(parts, query)
    return parts


def _split_userinfo(userinfo: str) -> tuple[str, str | None]:
    if "/" in userinfo:
        raise ParseError("Unescaped '/' in credentials; percent-encode credentials")
    if userinfo.count(":") > 1:
        raise ParseError("Unescaped ':' in credentials; percent-encode credentials")
    raw_user, _, raw_password = userinfo.partition(":")
    username = _decode(raw_user)
    if not username:
        raise ParseError("Credentials must include a username")
    return username, _decode(raw_password) or None


def _parse_host(entry: str) -> dict[str, Any]:
    if not entry:
        raise ParseError("Empty host in connection string")
    if entry.startswith("["):
        name, bracket, remainder = entry[1:].partition("]")
        if not bracket or not name or (remainder and not remainder.startswith(":")):
            raise ParseError("Malformed IPv6 host")
        port = remainder[1:] if remainder else None
    else:
        if entry.count(":") > 1:
            raise ParseError("IPv6 hosts must be enclosed in brackets")
        name, sep, raw_port = entry.partition(":")
        port = raw_port if sep else None
        name = _decode(name)
    if not name:
        raise ParseError("Empty host in connection string")
    if port is None:
        return {"host": name, "port": DEFAULT_PORT}
    if not port.isdigit():
        raise ParseError("Port must be a number")
    number = int(port)
    if not 1 <= number <= 65535:
        raise ValidationError("port", "out of range", expected="integer between 1 and 65535")
    return {"host": name, "port": number}


def _collect_options(parts: _UriParts, query: str) -> None:
    for item in query.replace("&amp;", "&").split("&"):
        if not item:
            continue
        raw_key, sep, raw_value = item.partition("=")
        key = _decode(raw_key)
        if not sep:
            raise ValidationError(key, "option has no value", expected="key=value")
        name = _OPTION_ALIASES.get(key.lower())
        if name is None:
            raise ValidationError(key, "unknown connection string option")
        if name == "readPreferenceTags":
            parts.tags.extend(_read_preference_tags(key, raw_value))
            continue
        value = raw_value if name in _LIST_OPTIONS else _decode(raw_value)
        previous = parts.options.get(name)
        if previous is not None and previous != value:
            raise ValidationError(key, f"conflicts with an earlier value for {name}")
        parts.options[name] = value


def _mechanism_properties(parts: _UriParts) -> dict[str, str]:
    properties: dict[str, str] = {}
    raw = parts.options.get("authMechanismProperties")
    if raw:
        for pair in raw.split(","):
            name, sep, value = pair.partition(":")
            if not sep or name not in _KERBEROS_PROPERTIES:
                raise ValidationError(
                    "authMechanismProperties",
                    "unsupported property",
                    expected=", ".join(_KERBEROS_PROPERTIES),
                )
            properties[name] = _decode(value)
    service_name = parts.options.get("gssapiServiceName")
    if service_name is not None:
        if properties.get("SERVICE_NAME", service_name) != service_name:
            raise ValidationError("gssapiServiceName", "conflicts with authMechanismProperties SERVICE_NAME")
        properties["SERVICE_NAME"] = service_name
    return properties


def _auth_attributes(parts: _UriParts, settings: Settings) -> dict[str, Any]:
    options = parts.options
    mechanism = None
    if "authMechanism" in options:
        mechanism = _choice(AuthMechanism)("authMechanism", options["authMechanism"])
    properties = _mechanism_properties(parts)
    if properties and mechanism is not AuthMechanism.GSSAPI:
        raise ValidationError("authMechanismProperties", "only applies to GSSAPI", expected="authMechanism=GSSAPI")
    auth_source = options.get("authSource")

    if mechanism is None and parts.username is None:
        if auth_source is not None:
            LOG.debug("Ignoring authSource without credentials", extra={"auth_source": auth_source})
        return {"authStrategy": AuthStrategy.NONE}

    if mechanism in (None, AuthMechanism.SCRAM_SHA_1, AuthMechanism.SCRAM_SHA_256):
        return {
            "authStrategy": AuthStrategy.MONGODB,
            "authMechanism": mechanism or settings.default_auth_mechanism,
            "mongodbUsername": parts.username,
            "mongodbPassword": parts.password,
            "mongodbDatabaseName": auth_source or parts.database,
        }

    if auth_source is not None and auth_source != EXTERNAL_AUTH_SOURCE:
        raise ValidationError("authSource", f"must be $external for {mechanism.value}", expected=EXTERNAL_AUTH_SOURCE)
    if mechanism is AuthMechanism.PLAIN:
        return {
            "authStrategy": AuthStrategy.LDAP,
            "ldapUsername": parts.username,
            "ldapPassword": parts.password,
        }
    if mechanism is AuthMechanism.MONGODB_X509:
        if parts.password is not None:
            raise ValidationError("password", "does not apply to MONGODB-X509")
        return {"authStrategy": AuthStrategy.X509, "x509Username": parts.username}
    canonicalize = properties.get("CANONICALIZE_HOST_NAME")
    return {
        "authStrategy": AuthStrategy.KERBEROS,
        "kerberosPrincipal": parts.username,
        "kerberosPassword": parts.password,
        "kerberosServiceName": properties.get("SERVICE_NAME"),
        "kerberosServiceRealm": properties.get("SERVICE_REALM"),
        "kerberosCanonicalizeHostname": (
            _boolean("CANONICALIZE_HOST_NAME", canonicalize) if canonicalize is not None else False
        ),
    }


def _tls_attributes(parts: _UriParts) -> dict[str, Any]:
    options = parts.options
    ssl = options.get("ssl")
    if ssl is not None and ssl.lower() not in ("true", "false", "prefer"):
        raise ValidationError("ssl", "unsupported value", expected="true, false or prefer")
    ssl = ssl.lower() if ssl is not None else None
    allow_invalid = _boolean("tlsAllowInvalidCertificates", options.get("tlsAllowInvalidCertificates", "false"))
    ca_files = [_decode(path) for path in options.get("tlsCAFile", "").split(",") if path]
    key_file = options.get("tlsCertificateKeyFile")
    cert_file = options.get("tlsCertificateFile")
    key_password = options.get("tlsCertificateKeyFilePassword")
    has_files = bool(ca_files or key_file or cert_file)

    if ssl == "false" and (has_files or allow_invalid):
        raise ValidationError("ssl", "TLS options require ssl=true", expected="true")
    if ssl == "prefer" and (has_files or allow_invalid):
        raise ValidationError("ssl", "prefer cannot be combined with other TLS options", expected="true")
    if allow_invalid and has_files:
        raise ValidationError("tlsAllowInvalidCertificates", "cannot be combined with certificate files")
    if (cert_file or key_password) and not key_file:
        raise ValidationError("tlsCertificateKeyFile", "required with tlsCertificateFile or a key password")

    attributes: dict[str, Any] = {}
    if ssl == "prefer":
        method = SslMethod.IFAVAILABLE
    elif key_file:
        method = SslMethod.ALL
        attributes.update(sslCert=[cert_file or key_file], sslKey=[key_file], sslPass=key_password)
    elif ca_files:
        method = SslMethod.SERVER
    elif allow_invalid:
        method = SslMethod.UNVALIDATED
    elif ssl == "true" or (ssl is None and parts.srv):
        method = SslMethod.SYSTEMCA
    else:
        method = SslMethod.NONE
    if ca_files:
        attributes["sslCA"] = ca_files
    attributes["sslMethod"] = method
    return attributes


def _format_host(host: Host, srv: bool) -> str:
    if host.host.startswith("/"):
        return quote(host.host, safe="")
    if srv:
        return host.host
    name = f"[{host.host}]" if ":" in host.host else host.host
    return f"{name}:{host.port}"


def _component(value: str) -> str:
    return quote(value, safe=_COMPONENT_SAFE)


def _item(value: str) -> str:
    return quote(value, safe=_ITEM_SAFE)


def _encode_value(name: str, value: str) -> str:
    # List-valued options arrive with each item already encoded.
    if name in _LIST_OPTIONS:
        return value
    return quote(value, safe=_VALUE_SAFE)


def _userinfo(descriptor: ConnectionDescriptor, mask: bool) -> str:
    username = descriptor.username
    if username is None:
        return ""
    secret = descriptor.password
    user = _component(username)
    if secret is not None:
        return f"{user}:{MASK if mask else _component(secret.get_secret_value())}@"
    if descriptor.auth_strategy is AuthStrategy.KERBEROS:
        return f"{user}:@"
    return f"{user}@"


def _option_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _auth_options(descriptor: ConnectionDescriptor) -> dict[str, str]:
    strategy = descriptor.auth_strategy
    options: dict[str, str] = {}
    if strategy is AuthStrategy.NONE:
        return options
    if strategy is AuthStrategy.MONGODB:
        options["authSource"] = descriptor.auth_source or ""
        if descriptor.auth_mechanism is not None:
            options["authMechanism"] = descriptor.auth_mechanism.value
        return options
    if strategy is not AuthStrategy.X509:
        options["authSource"] = EXTERNAL_AUTH_SOURCE
    mechanism = descriptor.driver_auth_mechanism
    if mechanism is not None:
        options["authMechanism"] = mechanism.value
    if strategy is AuthStrategy.KERBEROS:
        properties = [f"SERVICE_NAME:{_item(descriptor.kerberos_service_name or DEFAULT_KERBEROS_SERVICE_NAME)}"]
        if descriptor.kerberos_service_realm:
            properties.append(f"SERVICE_REALM:{_item(descriptor.kerberos_service_realm)}")
        if descriptor.kerberos_canonicalize_hostname:
            properties.append("CANONICALIZE_HOST_NAME:true")
        options["authMechanismProperties"] = ",".join(properties)
    return options


def _tls_options(descriptor: ConnectionDescriptor, mask: bool) -> tuple[str, dict[str, str]]:
    method = descriptor.ssl_method
    options: dict[str, str] = {}
    if method is SslMethod.NONE:
        return "false", options
    if method is SslMethod.IFAVAILABLE:
        return "prefer", options
    if method is SslMethod.UNVALIDATED:
        options["tlsAllowInvalidCertificates"] = "true"
    if descriptor.ssl_ca:
        options["tlsCAFile"] = ",".join(_item(path) for path in descriptor.ssl_ca)
    if descriptor.ssl_key:
        key = descriptor.ssl_key[0]
        options["tlsCertificateKeyFile"] = key
        if descriptor.ssl_cert and descriptor.ssl_cert[0] != key:
            options["tlsCertificateFile"] = descriptor.ssl_cert[0]
    if descriptor.ssl_pass is not None:
        options["tlsCertificateKeyFilePassword"] = MASK if mask else descriptor.ssl_pass.get_secret_value()
    return "true", options


def _render(descriptor: ConnectionDescriptor, *, mask: bool) -> str:
    options: dict[str, str] = {}
    for name, (alias, _) in _FIELD_OPTIONS.items():
        value = getattr(descriptor, _attribute(alias))
        if value is None or value == frozenset():
            continue
        if name == "compressors":
            options[name] = ",".join(sorted(item.value for item in value))
        else:
            options[name] = _option_value(value)
    options["readPreference"] = descriptor.read_preference.value
    if descriptor.read_preference_tags:
        options["readPreferenceTags"] = ";".join(
            ",".join(f"{_item(name)}:{_item(tag)}" for name, tag in group.items())
            for group in descriptor.read_preference_tags
        )
    options.update(_auth_options(descriptor))
    ssl, tls_options = _tls_options(descriptor, mask)
    options.update(tls_options)

    ordered = [name for name in _LEADING_OPTIONS if name in options]
    ordered += sorted((name for name in options if name not in _LEADING_OPTIONS), key=str.lower)
    pairs = [f"{name}={_encode_value(name, options[name])}" for name in ordered]
    pairs.append(f"ssl={ssl}")

    scheme = SRV_SCHEME if descriptor.is_srv_record else SCHEME
    seeds = ",".join(_format_host(host, descriptor.is_srv_record) for host in descriptor.hosts)
    path = _component(descriptor.database) if descriptor.database else ""
    return f"{scheme}{_userinfo(descriptor, mask)}{seeds}/{path}?{'&'.join(pairs)}"


_ALIAS_TO_ATTRIBUTE = {
    (info.alias or name): name for name, info in ConnectionDescriptor.model_fields.items()
}


def _attribute(alias: str) -> str:
    return _ALIAS_TO_ATTRIBUTE[alias]


__all__ = [
    "MASK",
    "host_url",
    "is_uri",
    "parse_uri",
    "serialize_uri",
    "to_safe_uri",
]
