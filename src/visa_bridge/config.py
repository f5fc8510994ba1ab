"""Configuration loading utilities for the VISA bridge."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml


BACKENDS = ("visa", "usbtmc")


@dataclass(slots=True)
class ServerSettings:
    """Configuration for the TCP listener."""

    host: str = "0.0.0.0"
    port: int = 12345
    concurrent: bool = False


@dataclass(slots=True)
class InstrumentSettings:
    """How the single bridged instrument is located and opened.

    ``resource`` pins a descriptor and skips discovery; otherwise the first
    instrument whose identity contains ``key`` (case-insensitively) is used.
    """

    backend: str = "visa"
    key: Optional[str] = None
    resource: Optional[str] = None
    query: str = "?*INSTR"
    identity_command: str = "*IDN?"
    visa_library: str = ""
    timeout_ms: Optional[int] = 5000


@dataclass(slots=True)
class BridgeSettings:
    """Wire-level texts and limits of the command bridge."""

    read_size: int = 2048
    acknowledgment: str = "Command sent"
    write_error: str = "Error writing command"
    read_error: str = "Error reading response"
    internal_error: str = "Error processing request"


@dataclass(slots=True)
class Config:
    """Top-level configuration container."""

    server: ServerSettings = field(default_factory=ServerSettings)
    instrument: InstrumentSettings = field(default_factory=InstrumentSettings)
    bridge: BridgeSettings = field(default_factory=BridgeSettings)


class ConfigurationError(RuntimeError):
    """Raised when configuration parsing fails."""


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Configuration file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in configuration file: {path}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError("Configuration root must be a mapping")

    return data


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = raw.get(name, {})
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"{name} section must be a mapping")
    return section


def _optional_str(value: Any, name: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigurationError(f"{name} must be a string")
    return value or None


def _str(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise ConfigurationError(f"{name} must be a string, got {value!r}")
    return value


def _bool(value: Any, name: str) -> bool:
    # bool("false") is True; YAML already turns true/false/yes/no into bools.
    if not isinstance(value, bool):
        raise ConfigurationError(f"{name} must be true or false, got {value!r}")
    return value


def _int(value: Any, name: str, minimum: int = 0) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc
    if number < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {number}")
    return number


def parse_config_dict(raw: Mapping[str, Any]) -> Config:
    """Parse configuration from an in-memory mapping."""

    if not isinstance(raw, Mapping):
        raise ConfigurationError("Configuration root must be a mapping")

    server_raw = _section(raw, "server")
    port = _int(server_raw.get("port", 12345), "server.port")
    if port > 65535:
        raise ConfigurationError(f"server.port out of range: {port}")
    server = ServerSettings(
        host=_str(server_raw.get("host", "0.0.0.0"), "server.host"),
        port=port,
        concurrent=_bool(server_raw.get("concurrent", False), "server.concurrent"),
    )

    instrument_raw = _section(raw, "instrument")
    backend = _str(instrument_raw.get("backend", "visa"), "instrument.backend").lower()
    if backend not in BACKENDS:
        raise ConfigurationError(
            f"instrument.backend must be one of {', '.join(BACKENDS)}, got {backend!r}"
        )
    timeout_raw = instrument_raw.get("timeout_ms", 5000)
    instrument = InstrumentSettings(
        backend=backend,
        key=_optional_str(instrument_raw.get("key"), "instrument.key"),
        resource=_optional_str(instrument_raw.get("resource"), "instrument.resource"),
        query=_str(instrument_raw.get("query", "?*INSTR"), "instrument.query"),
        identity_command=_str(
            instrument_raw.get("identity_command", "*IDN?"), "instrument.identity_command"
        ),
        visa_library=_optional_str(instrument_raw.get("visa_library"), "instrument.visa_library") or "",
        timeout_ms=None if timeout_raw is None else _int(timeout_raw, "instrument.timeout_ms"),
    )

    bridge_raw = _section(raw, "bridge")
    bridge = BridgeSettings(
        read_size=_int(bridge_raw.get("read_size", 2048), "bridge.read_size", minimum=1),
        acknowledgment=_str(bridge_raw.get("acknowledgment", "Command sent"), "bridge.acknowledgment"),
        write_error=_str(bridge_raw.get("write_error", "Error writing command"), "bridge.write_error"),
        read_error=_str(bridge_raw.get("read_error", "Error reading response"), "bridge.read_error"),
        internal_error=_str(bridge_raw.get("internal_error", "Error processing request"), "bridge.internal_error"),
    )

    return Config(server=server, instrument=instrument, bridge=bridge)


def validate_config(config: Config) -> Config:
    """Check cross-field requirements that only matter once overrides are applied."""

    if not config.instrument.key and not config.instrument.resource:
        raise ConfigurationError(
            "Either instrument.key or instrument.resource must be configured"
        )
    return config


def load_config(path: Optional[Path]) -> Config:
    """Load configuration from a YAML file, or return defaults when *path* is None."""

    if path is None:
        return Config()
    raw = _load_yaml(path)
    return parse_config_dict(raw)


def config_to_dict(config: Config) -> Dict[str, Any]:
    """Convert a Config instance back into a serialisable mapping."""

    return {
        "server": {
            "host": config.server.host,
            "port": config.server.port,
            "concurrent": config.server.concurrent,
        },
        "instrument": {
            "backend": config.instrument.backend,
            "key": config.instrument.key,
            "resource": config.instrument.resource,
            "query": config.instrument.query,
            "identity_command": config.instrument.identity_command,
            "visa_library": config.instrument.visa_library,
            "timeout_ms": config.instrument.timeout_ms,
        },
        "bridge": {
            "read_size": config.bridge.read_size,
            "acknowledgment": config.bridge.acknowledgment,
            "write_error": config.bridge.write_error,
            "read_error": config.bridge.read_error,
            "internal_error": config.bridge.internal_error,
        },
    }


def dump_config(config: Config) -> str:
    """Render *config* as YAML text."""

    return yaml.safe_dump(config_to_dict(config), sort_keys=False)
