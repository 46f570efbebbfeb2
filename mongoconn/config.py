"""Runtime settings loading helpers."""

from __future__ import annotations

from pathlib import Path
from typing import Literal, get_args

import tomllib

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .types import AuthMechanism

LogLevel = Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"]
LOG_LEVELS: tuple[str, ...] = get_args(LogLevel)

CONFIG_FILE = Path.home() / ".config" / "mongoconn" / "config.toml"

_DEFAULT_MECHANISMS = (AuthMechanism.SCRAM_SHA_1, AuthMechanism.SCRAM_SHA_256)


class Settings(BaseModel):
    """Tunables shared by the codec, the tunnel and the connect pipeline."""

    default_auth_mechanism: AuthMechanism | None = None
    ssh_connect_timeout: float = Field(default=15.0, gt=0)
    ssh_forward_timeout: float = Field(default=5.0, gt=0)
    ssh_local_address: str = "127.0.0.1"
    ssh_known_hosts: str | None = None
    driver_ping: bool = True
    log_level: LogLevel = "WARNING"

    def with_overrides(self, **updates: object) -> Settings:
        """Return a copy with the given fields replaced."""

        return self.model_validate({**self.model_dump(), **updates})


def load_settings(path: Path | None = None) -> Settings:
    """Load settings from disk; fall back to defaults if missing or malformed."""

    try:
        data = _read_config_file(path or CONFIG_FILE)
    except FileNotFoundError:
        return Settings()
    except (tomllib.TOMLDecodeError, OSError):
        return Settings()
    try:
        return Settings(**data)
    except PydanticValidationError:
        return Settings()


def _read_config_file(path: Path) -> dict[str, object]:
    with path.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    mechanism = raw.get("default_auth_mechanism")
    if isinstance(mechanism, str) and mechanism in {item.value for item in _DEFAULT_MECHANISMS}:
        data["default_auth_mechanism"] = mechanism
    ssh = raw.get("ssh")
    if isinstance(ssh, dict):
        for key in ("connect_timeout", "forward_timeout"):
            value = ssh.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                data[f"ssh_{key}"] = float(value)
        for key in ("local_address", "known_hosts"):
            value = ssh.get(key)
            if isinstance(value, str):
                data[f"ssh_{key}"] = value
    driver_ping = raw.get("driver_ping")
    if isinstance(driver_ping, bool):
        data["driver_ping"] = driver_ping
    log_level = raw.get("log_level")
    if isinstance(log_level, str):
        data["log_level"] = log_level.upper()
    return data


__all__ = ["CONFIG_FILE", "LOG_LEVELS", "LogLevel", "Settings", "load_settings"]
