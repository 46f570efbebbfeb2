"""Connection descriptor: the validated record needed to reach a deployment."""

from __future__ import annotations

from typing import Any, Mapping

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import ValidationError
from .ports import find_free_port
from .types import (
    DEFAULT_AUTH_SOURCE,
    DEFAULT_KERBEROS_SERVICE_NAME,
    DEFAULT_PORT,
    DEFAULT_SSH_PORT,
    EXTERNAL_AUTH_SOURCE,
    SCRAM_MECHANISMS,
    STRATEGY_MECHANISMS,
    AuthMechanism,
    AuthStrategy,
    Compressor,
    ReadConcernLevel,
    ReadPreference,
    SshTunnelMode,
    SslMethod,
    UuidRepresentation,
)
from .validation import CREDENTIAL_FIELDS, is_populated, reveal, validate_descriptor

SECRET_FIELDS = (
    "mongodb_password",
    "ldap_password",
    "kerberos_password",
    "ssl_pass",
    "ssh_tunnel_password",
    "ssh_tunnel_passphrase",
)

# Pre-camelCase attribute names still found in saved profiles.
_LEGACY_KEYS: Mapping[str, str] = {
    "ssl_private_key_password": "sslPass",
    "authentication": "authStrategy",
    "ssl": "sslMethod",
    "ns": "database",
    "appname": "appName",
}

# Values filled in for a strategy when the caller leaves them out.
_STRATEGY_DEFAULTS: Mapping[AuthStrategy, Mapping[str, str]] = {
    AuthStrategy.MONGODB: {"mongodbDatabaseName": DEFAULT_AUTH_SOURCE},
    AuthStrategy.KERBEROS: {"kerberosServiceName": DEFAULT_KERBEROS_SERVICE_NAME},
}


class Host(BaseModel):
    """One ``host:port`` seed of the deployment."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(min_length=1)
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)

    def __str__(self) -> str:
        if ":" in self.host and not self.host.startswith("/"):
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


class ConnectionDescriptor(BaseModel):
    """Everything needed to reach and authenticate against a MongoDB deployment.

    Instances are immutable; use :meth:`with_changes` to derive a modified,
    re-validated copy. Construction accepts camelCase aliases, snake_case
    attribute names and the legacy underscore keys of older saved profiles.
    Any problem surfaces as :class:`mongoconn.errors.ValidationError`.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    hosts: list[Host] = Field(default_factory=lambda: [Host(host="localhost")], min_length=1)
    is_srv_record: bool = False
    database: str | None = None

    auth_strategy: AuthStrategy = AuthStrategy.NONE
    auth_mechanism: AuthMechanism | None = None
    mongodb_username: str | None = None
    mongodb_password: SecretStr | None = None
    mongodb_database_name: str | None = None
    ldap_username: str | None = None
    ldap_password: SecretStr | None = None
    x509_username: str | None = None
    kerberos_principal: str | None = None
    kerberos_password: SecretStr | None = None
    kerberos_service_name: str | None = None
    kerberos_service_realm: str | None = None
    kerberos_canonicalize_hostname: bool = False

    ssl_method: SslMethod = SslMethod.NONE
    ssl_ca: list[str] = Field(default_factory=list, alias="sslCA")
    ssl_cert: list[str] = Field(default_factory=list)
    ssl_key: list[str] = Field(default_factory=list)
    ssl_pass: SecretStr | None = None

    replica_set: str | None = None
    read_preference: ReadPreference = ReadPreference.PRIMARY
    read_preference_tags: list[dict[str, str]] = Field(default_factory=list)
    max_staleness_seconds: int | None = Field(default=None, ge=-1)
    read_concern_level: ReadConcernLevel | None = None
    w: int | str | None = None
    w_timeout_ms: int | None = Field(default=None, ge=0, alias="wTimeoutMS")
    journal: bool | None = None
    min_pool_size: int | None = Field(default=None, ge=0)
    max_pool_size: int | None = Field(default=None, ge=0)
    connect_timeout_ms: int | None = Field(default=None, ge=0, alias="connectTimeoutMS")
    socket_timeout_ms: int | None = Field(default=None, ge=0, alias="socketTimeoutMS")
    server_selection_timeout_ms: int | None = Field(default=None, ge=0, alias="serverSelectionTimeoutMS")
    heartbeat_frequency_ms: int | None = Field(default=None, ge=0, alias="heartbeatFrequencyMS")
    local_threshold_ms: int | None = Field(default=None, ge=0, alias="localThresholdMS")
    max_idle_time_ms: int | None = Field(default=None, ge=0, alias="maxIdleTimeMS")
    wait_queue_timeout_ms: int | None = Field(default=None, ge=0, alias="waitQueueTimeoutMS")
    compressors: frozenset[Compressor] = frozenset()
    zlib_compression_level: int | None = Field(default=None, ge=-1, le=9)
    app_name: str | None = None
    retry_writes: bool | None = None
    uuid_representation: UuidRepresentation | None = None
    direct_connection: bool | None = None

    ssh_tunnel: SshTunnelMode = SshTunnelMode.NONE
    ssh_tunnel_hostname: str | None = None
    ssh_tunnel_port: int = Field(default=DEFAULT_SSH_PORT, ge=1, le=65535)
    ssh_tunnel_username: str | None = None
    ssh_tunnel_password: SecretStr | None = None
    ssh_tunnel_identity_file: str | None = None
    ssh_tunnel_passphrase: SecretStr | None = None
    ssh_tunnel_bind_to_local_port: int | None = Field(default=None, ge=1, le=65535)

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except PydanticValidationError as exc:
            raise _translate_error(exc) from None

    @classmethod
    def from_attributes(cls, attributes: Mapping[str, Any]) -> "ConnectionDescriptor":
        """Build a descriptor from a raw attribute mapping (form data, storage)."""

        return cls(**dict(attributes))

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        return _normalize_attributes(cls, data)

    @field_validator("ssl_ca", "ssl_cert", "ssl_key", mode="before")
    @classmethod
    def _paths_to_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("ssh_tunnel_identity_file", mode="before")
    @classmethod
    def _single_identity_file(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return value[0] if value else None
        return value

    @field_validator("compressors", mode="before")
    @classmethod
    def _split_compressors(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [token.strip() for token in value.split(",") if token.strip()]
        return value

    @field_validator("w", mode="before")
    @classmethod
    def _numeric_w(cls, value: Any) -> Any:
        if isinstance(value, str) and value.isdigit():
            return int(value)
        return value

    @model_validator(mode="after")
    def _check_rules(self) -> "ConnectionDescriptor":
        validate_descriptor(self)
        return self

    @field_serializer("compressors")
    def _serialize_compressors(self, value: frozenset[Compressor]) -> list[str]:
        return sorted(item.value for item in value)

    @property
    def hostname(self) -> str:
        """Host of the first seed (the SRV name in SRV mode)."""

        return self.hosts[0].host

    @property
    def port(self) -> int:
        return self.hosts[0].port

    @property
    def driver_auth_mechanism(self) -> AuthMechanism | None:
        """Mechanism handed to the driver; ``None`` lets the driver negotiate."""

        if self.auth_strategy is AuthStrategy.MONGODB:
            return self.auth_mechanism
        return STRATEGY_MECHANISMS.get(self.auth_strategy)

    @property
    def auth_source(self) -> str | None:
        """Database the credentials are checked against."""

        if self.auth_strategy is AuthStrategy.NONE:
            return None
        if self.auth_strategy is AuthStrategy.MONGODB:
            return self.mongodb_database_name or DEFAULT_AUTH_SOURCE
        return EXTERNAL_AUTH_SOURCE

    @property
    def username(self) -> str | None:
        return {
            AuthStrategy.MONGODB: self.mongodb_username,
            AuthStrategy.LDAP: self.ldap_username,
            AuthStrategy.X509: self.x509_username,
            AuthStrategy.KERBEROS: self.kerberos_principal,
        }.get(self.auth_strategy)

    @property
    def password(self) -> SecretStr | None:
        return {
            AuthStrategy.MONGODB: self.mongodb_password,
            AuthStrategy.LDAP: self.ldap_password,
            AuthStrategy.KERBEROS: self.kerberos_password,
        }.get(self.auth_strategy)

    def with_changes(self, **updates: Any) -> "ConnectionDescriptor":
        """Return a re-validated copy with ``updates`` applied.

        Keys may be snake_case or camelCase. Defaults that were filled in for
        the previous auth strategy are dropped when the strategy changes.
        """

        data = self.model_dump(by_alias=True, exclude_defaults=True, round_trip=True)
        aliases = _field_aliases(type(self))
        changes = {aliases.get(key, key): value for key, value in updates.items()}
        new_strategy = _coerce(AuthStrategy, changes.get("authStrategy", self.auth_strategy))
        if new_strategy is not self.auth_strategy:
            for key, default in _STRATEGY_DEFAULTS.get(self.auth_strategy, {}).items():
                if key not in changes and data.get(key) == default:
                    data.pop(key, None)
        data.update(changes)
        return type(self)(**data)

    def to_safe_dict(self) -> dict[str, Any]:
        """CamelCase mapping safe for display or storage: secrets are omitted."""

        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude=set(SECRET_FIELDS),
            exclude_none=True,
        )


def _field_aliases(model: type[BaseModel]) -> dict[str, str]:
    return {name: info.alias or name for name, info in model.model_fields.items()}


def _coerce(enum: type[Any], value: Any) -> Any:
    if isinstance(value, enum):
        return value
    try:
        return enum(value)
    except ValueError:
        return None


def _is_blank(value: Any) -> bool:
    return value is None or reveal(value) == ""


def _normalize_attributes(model: type[BaseModel], raw: Mapping[str, Any]) -> dict[str, Any]:
    """Fold aliases and legacy keys into one canonical camelCase mapping."""

    aliases = _field_aliases(model)
    known = set(aliases.values())
    data: dict[str, Any] = {}
    fallbacks: dict[str, Any] = {}
    legacy_host: dict[str, Any] = {}
    for key, value in raw.items():
        if _is_blank(value):
            continue
        if key in known:
            data[key] = value
        elif key in aliases:
            fallbacks.setdefault(aliases[key], value)
        elif key in _LEGACY_KEYS:
            fallbacks.setdefault(_LEGACY_KEYS[key], value)
        elif key in ("hostname", "port"):
            legacy_host[key] = value
        else:
            data[key] = value
    for key, value in fallbacks.items():
        data.setdefault(key, value)
    if legacy_host and "hosts" not in data:
        data["hosts"] = [
            {
                "host": legacy_host.get("hostname", "localhost"),
                "port": legacy_host.get("port", DEFAULT_PORT),
            }
        ]

    strategy_value = data.get("authStrategy")
    if isinstance(strategy_value, str) and strategy_value in {m.value for m in SCRAM_MECHANISMS}:
        data["authStrategy"] = AuthStrategy.MONGODB
        data.setdefault("authMechanism", strategy_value)
    mechanism = _coerce(AuthMechanism, data.get("authMechanism"))
    if "authStrategy" not in data and mechanism is not None:
        for strategy, implied in STRATEGY_MECHANISMS.items():
            if implied is mechanism:
                data["authStrategy"] = strategy
        if mechanism in SCRAM_MECHANISMS:
            data["authStrategy"] = AuthStrategy.MONGODB
    if "authStrategy" not in data:
        for strategy, fields in CREDENTIAL_FIELDS.items():
            if any(is_populated(reveal(data.get(name))) for _, name in fields):
                data["authStrategy"] = strategy
                break
    strategy = _coerce(AuthStrategy, data.get("authStrategy", AuthStrategy.NONE))
    if strategy in STRATEGY_MECHANISMS and mechanism is STRATEGY_MECHANISMS[strategy]:
        data.pop("authMechanism", None)
    for key, default in _STRATEGY_DEFAULTS.get(strategy, {}).items():
        data.setdefault(key, default)

    mode = _coerce(SshTunnelMode, data.get("sshTunnel", SshTunnelMode.NONE))
    if mode not in (None, SshTunnelMode.NONE) and "sshTunnelBindToLocalPort" not in data:
        data["sshTunnelBindToLocalPort"] = find_free_port()
    return data


def _translate_error(exc: PydanticValidationError) -> ValidationError:
    """Convert pydantic's report into a field-named error without input values."""

    error = exc.errors(include_url=False, include_input=False)[0]
    location = error.get("loc") or ("descriptor",)
    field = str(location[0])
    if error.get("type") == "extra_forbidden":
        return ValidationError(field, "unknown field")
    expected = (error.get("ctx") or {}).get("expected")
    return ValidationError(field, str(error.get("msg", "invalid value")), expected=expected)


__all__ = ["ConnectionDescriptor", "Host", "SECRET_FIELDS"]
