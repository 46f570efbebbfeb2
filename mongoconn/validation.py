"""Cross-field rules enforced on every ConnectionDescriptor.

Rules run in declaration order and the first violation wins, so callers get a
single, stable ``ValidationError`` naming the camelCase field at fault.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping, Sequence

from .errors import ValidationError
from .types import (
    DEFAULT_PORT,
    EXTERNAL_AUTH_SOURCE,
    SCRAM_MECHANISMS,
    AuthStrategy,
    SshTunnelMode,
    SslMethod,
)

if TYPE_CHECKING:
    from .models import ConnectionDescriptor

# Python attribute name -> public (camelCase) field name, per credential family.
CREDENTIAL_FIELDS: Mapping[AuthStrategy, Sequence[tuple[str, str]]] = {
    AuthStrategy.MONGODB: (
        ("mongodb_username", "mongodbUsername"),
        ("mongodb_password", "mongodbPassword"),
        ("mongodb_database_name", "mongodbDatabaseName"),
        ("auth_mechanism", "authMechanism"),
    ),
    AuthStrategy.LDAP: (
        ("ldap_username", "ldapUsername"),
        ("ldap_password", "ldapPassword"),
    ),
    AuthStrategy.X509: (("x509_username", "x509Username"),),
    AuthStrategy.KERBEROS: (
        ("kerberos_principal", "kerberosPrincipal"),
        ("kerberos_password", "kerberosPassword"),
        ("kerberos_service_name", "kerberosServiceName"),
        ("kerberos_service_realm", "kerberosServiceRealm"),
        ("kerberos_canonicalize_hostname", "kerberosCanonicalizeHostname"),
    ),
}

REQUIRED_FIELDS: Mapping[AuthStrategy, Sequence[tuple[str, str]]] = {
    AuthStrategy.NONE: (),
    AuthStrategy.MONGODB: (
        ("mongodb_username", "mongodbUsername"),
        ("mongodb_password", "mongodbPassword"),
    ),
    AuthStrategy.LDAP: (
        ("ldap_username", "ldapUsername"),
        ("ldap_password", "ldapPassword"),
    ),
    AuthStrategy.X509: (("x509_username", "x509Username"),),
    AuthStrategy.KERBEROS: (("kerberos_principal", "kerberosPrincipal"),),
}

_SSL_PATH_FIELDS = (("ssl_ca", "sslCA"), ("ssl_cert", "sslCert"), ("ssl_key", "sslKey"))


def is_populated(value: Any) -> bool:
    """Whether a field counts as supplied (``False``/blank/empty mean absent)."""

    if value is None or value is False:
        return False
    if isinstance(value, (str, list, tuple, set, frozenset, dict)):
        return bool(value)
    return True


def validate_descriptor(descriptor: "ConnectionDescriptor") -> None:
    """Raise the first rule violation found on ``descriptor``."""

    _validate_hosts(descriptor)
    _validate_auth(descriptor)
    _validate_ssl(descriptor)
    _validate_ssh(descriptor)
    _validate_options(descriptor)


def _validate_hosts(descriptor: "ConnectionDescriptor") -> None:
    if descriptor.is_srv_record:
        if len(descriptor.hosts) != 1:
            raise ValidationError("hosts", "SRV records resolve exactly one hostname")
        if descriptor.hosts[0].port != DEFAULT_PORT:
            raise ValidationError("hosts", "SRV hostnames cannot carry a port")


def _validate_auth(descriptor: "ConnectionDescriptor") -> None:
    strategy = descriptor.auth_strategy
    for attr, name in REQUIRED_FIELDS[strategy]:
        if not is_populated(reveal(getattr(descriptor, attr))):
            raise ValidationError(name, f"{name} field is required when authStrategy is {strategy.value}")
    for family, fields in CREDENTIAL_FIELDS.items():
        if family is strategy:
            continue
        for attr, name in fields:
            if is_populated(reveal(getattr(descriptor, attr))):
                raise ValidationError(name, f"{name} field does not apply when authStrategy is {strategy.value}")
    mechanism = descriptor.auth_mechanism
    if strategy is AuthStrategy.MONGODB and mechanism is not None and mechanism not in SCRAM_MECHANISMS:
        raise ValidationError(
            "authMechanism",
            f"{mechanism.value} does not apply when authStrategy is MONGODB",
            expected="SCRAM-SHA-1 or SCRAM-SHA-256",
        )
    if strategy is AuthStrategy.MONGODB and descriptor.mongodb_database_name == EXTERNAL_AUTH_SOURCE:
        raise ValidationError("mongodbDatabaseName", "$external is reserved for LDAP, X509 and KERBEROS")


def _validate_ssl(descriptor: "ConnectionDescriptor") -> None:
    method = descriptor.ssl_method
    paths = {name: getattr(descriptor, attr) for attr, name in _SSL_PATH_FIELDS}
    for name in ("sslCert", "sslKey"):
        if len(paths[name]) > 1:
            raise ValidationError(name, "accepts a single file path")
    if method in (SslMethod.NONE, SslMethod.IFAVAILABLE, SslMethod.UNVALIDATED, SslMethod.SYSTEMCA):
        for name, value in paths.items():
            if value:
                raise ValidationError(name, f"{name} field does not apply when sslMethod is {method.value}")
    elif method is SslMethod.SERVER:
        if not paths["sslCA"]:
            raise ValidationError("sslCA", "sslCA field is required when sslMethod is SERVER")
        for name in ("sslCert", "sslKey"):
            if paths[name]:
                raise ValidationError(name, f"{name} field does not apply when sslMethod is SERVER")
    elif method is SslMethod.ALL:
        for name in ("sslCert", "sslKey"):
            if not paths[name]:
                raise ValidationError(name, f"{name} field is required when sslMethod is ALL")
    if descriptor.ssl_pass is not None and not paths["sslKey"]:
        raise ValidationError("sslPass", "sslPass field only applies to an encrypted sslKey")


def _validate_ssh(descriptor: "ConnectionDescriptor") -> None:
    mode = descriptor.ssh_tunnel
    if mode is SshTunnelMode.NONE:
        return
    if descriptor.is_srv_record:
        raise ValidationError("sshTunnel", "an SSH tunnel needs an explicit host, not an SRV record")
    for attr, name in (
        ("ssh_tunnel_hostname", "sshTunnelHostname"),
        ("ssh_tunnel_port", "sshTunnelPort"),
        ("ssh_tunnel_username", "sshTunnelUsername"),
    ):
        if not is_populated(getattr(descriptor, attr)):
            raise ValidationError(name, f"{name} field is required when sshTunnel is {mode.value}")
    if mode is SshTunnelMode.USER_PASSWORD:
        if not is_populated(reveal(descriptor.ssh_tunnel_password)):
            raise ValidationError("sshTunnelPassword", "sshTunnelPassword field is required when sshTunnel is USER_PASSWORD")
        if descriptor.ssh_tunnel_identity_file:
            raise ValidationError("sshTunnelIdentityFile", "sshTunnelIdentityFile field does not apply when sshTunnel is USER_PASSWORD")
    else:
        if not descriptor.ssh_tunnel_identity_file:
            raise ValidationError("sshTunnelIdentityFile", "sshTunnelIdentityFile field is required when sshTunnel is IDENTITY_FILE")
        if descriptor.ssh_tunnel_password is not None:
            raise ValidationError("sshTunnelPassword", "sshTunnelPassword field does not apply when sshTunnel is IDENTITY_FILE")


def _validate_options(descriptor: "ConnectionDescriptor") -> None:
    if (
        descriptor.min_pool_size is not None
        and descriptor.max_pool_size
        and descriptor.min_pool_size > descriptor.max_pool_size
    ):
        raise ValidationError("minPoolSize", "must not exceed maxPoolSize")


def reveal(value: Any) -> Any:
    """Unwrap a pydantic ``SecretStr`` so emptiness checks see the real value."""

    getter = getattr(value, "get_secret_value", None)
    if getter is not None:
        return getter()
    return value


__all__ = ["CREDENTIAL_FIELDS", "REQUIRED_FIELDS", "is_populated", "reveal", "validate_descriptor"]
