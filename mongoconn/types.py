"""Enumerations and constants shared by the descriptor, codec and builders."""

from __future__ import annotations

from enum import Enum

DEFAULT_PORT = 27017
DEFAULT_AUTH_SOURCE = "admin"
EXTERNAL_AUTH_SOURCE = "$external"
DEFAULT_KERBEROS_SERVICE_NAME = "mongodb"
DEFAULT_SSH_PORT = 22


class AuthStrategy(str, Enum):
    """Credential family used to authenticate against the deployment."""

    NONE = "NONE"
    MONGODB = "MONGODB"
    LDAP = "LDAP"
    X509 = "X509"
    KERBEROS = "KERBEROS"


class AuthMechanism(str, Enum):
    """Values accepted by the ``authMechanism`` connection string option."""

    SCRAM_SHA_1 = "SCRAM-SHA-1"
    SCRAM_SHA_256 = "SCRAM-SHA-256"
    PLAIN = "PLAIN"
    MONGODB_X509 = "MONGODB-X509"
    GSSAPI = "GSSAPI"


class SslMethod(str, Enum):
    """How transport encryption is negotiated and validated."""

    NONE = "NONE"
    SYSTEMCA = "SYSTEMCA"
    IFAVAILABLE = "IFAVAILABLE"
    UNVALIDATED = "UNVALIDATED"
    SERVER = "SERVER"
    ALL = "ALL"


class SshTunnelMode(str, Enum):
    """SSH jump host authentication mode."""

    NONE = "NONE"
    USER_PASSWORD = "USER_PASSWORD"
    IDENTITY_FILE = "IDENTITY_FILE"


class ReadPreference(str, Enum):
    PRIMARY = "primary"
    PRIMARY_PREFERRED = "primaryPreferred"
    SECONDARY = "secondary"
    SECONDARY_PREFERRED = "secondaryPreferred"
    NEAREST = "nearest"


class ReadConcernLevel(str, Enum):
    LOCAL = "local"
    AVAILABLE = "available"
    MAJORITY = "majority"
    LINEARIZABLE = "linearizable"
    SNAPSHOT = "snapshot"


class Compressor(str, Enum):
    SNAPPY = "snappy"
    ZLIB = "zlib"


class UuidRepresentation(str, Enum):
    UNSPECIFIED = "unspecified"
    STANDARD = "standard"
    PYTHON_LEGACY = "pythonLegacy"
    JAVA_LEGACY = "javaLegacy"
    CSHARP_LEGACY = "csharpLegacy"


# Mechanisms a MONGODB (password) strategy may pin explicitly.
SCRAM_MECHANISMS = frozenset({AuthMechanism.SCRAM_SHA_1, AuthMechanism.SCRAM_SHA_256})

# Mechanism implied by each non-password strategy.
STRATEGY_MECHANISMS: dict[AuthStrategy, AuthMechanism] = {
    AuthStrategy.LDAP: AuthMechanism.PLAIN,
    AuthStrategy.X509: AuthMechanism.MONGODB_X509,
    AuthStrategy.KERBEROS: AuthMechanism.GSSAPI,
}


__all__ = [
    "AuthMechanism",
    "AuthStrategy",
    "Compressor",
    "DEFAULT_AUTH_SOURCE",
    "DEFAULT_KERBEROS_SERVICE_NAME",
    "DEFAULT_PORT",
    "DEFAULT_SSH_PORT",
    "EXTERNAL_AUTH_SOURCE",
    "ReadConcernLevel",
    "ReadPreference",
    "SCRAM_MECHANISMS",
    "STRATEGY_MECHANISMS",
    "SshTunnelMode",
    "SslMethod",
    "UuidRepresentation",
]
