"""Configuration loading for the Ascot gateway."""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older interpreters
    import tomli as tomllib  # type: ignore


CONFIG_ENV_PREFIX = "ASCOT_GATEWAY_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1

DEFAULT_SCHEME = "http"
# Well-known URI where devices publish their capability manifest.
WELL_KNOWN_URI = "/.well-known/ascot"
SERVICE_TYPE = "_ascot._tcp.local."


def _default_db_path() -> Path:
    base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return base / "ascot-gateway" / "devices.sqlite3"


@dataclass(frozen=True)
class ManualDevice:
    """User-specified device announcement used instead of (or next to) mDNS."""

    port: int
    addresses: Sequence[str]
    scheme: Optional[str] = None
    path: Optional[str] = None
    properties: Optional[Mapping[str, str]] = None


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_key: Optional[str] = None
    api_docs: bool = True
    db_path: Path = _default_db_path()
    discovery_enabled: bool = True
    discovery_interval: float = 60.0
    discovery_service_type: str = SERVICE_TYPE
    discovery_browse_timeout: float = 1.0
    discovery_default_scheme: str = DEFAULT_SCHEME
    discovery_default_path: str = WELL_KNOWN_URI
    manual_devices: Sequence[ManualDevice] = ()
    manifest_request_timeout: float = 5.0
    manifest_max_concurrency: int = 8
    subsystem_failure_threshold: int = 5
    subsystem_failure_cooldown: float = 15.0
    backoff_base: float = 0.5
    backoff_factor: float = 2.0
    backoff_max: float = 30.0
    log_format: str = "plain"
    log_level: str = "INFO"
    discovery_log_level: Optional[str] = None
    api_log_level: Optional[str] = None
    migrate_only: bool = False
    dry_run: bool = False
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    def logging_dict(self) -> Dict[str, Any]:
        """Return a sanitized mapping suitable for structured logging."""

        manual_devices = [
            {
                "port": device.port,
                "addresses": list(device.addresses),
                "scheme": device.scheme,
                "path": device.path,
            }
            for device in self.manual_devices
        ]
        return {
            "config_version": self.config_version,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "api_key": "***REDACTED***" if self.api_key else None,
            "api_docs": self.api_docs,
            "db_path": str(self.db_path),
            "discovery_enabled": self.discovery_enabled,
            "discovery_interval": self.discovery_interval,
            "discovery_service_type": self.discovery_service_type,
            "discovery_browse_timeout": self.discovery_browse_timeout,
            "discovery_default_scheme": self.discovery_default_scheme,
            "discovery_default_path": self.discovery_default_path,
            "manual_devices": manual_devices,
            "manifest_request_timeout": self.manifest_request_timeout,
            "manifest_max_concurrency": self.manifest_max_concurrency,
            "subsystem_failure_threshold": self.subsystem_failure_threshold,
            "subsystem_failure_cooldown": self.subsystem_failure_cooldown,
            "backoff_base": self.backoff_base,
            "backoff_factor": self.backoff_factor,
            "backoff_max": self.backoff_max,
            "log_format": self.log_format,
            "log_level": self.log_level,
            "discovery_log_level": self.discovery_log_level,
            "api_log_level": self.api_log_level,
            "migrate_only": self.migrate_only,
            "dry_run": self.dry_run,
        }

    @classmethod
    def from_sources(cls, cli_args: Optional[Iterable[str]] = None) -> "Config":
        """Load configuration from defaults, file, env, and CLI (in that order)."""

        args = _parse_cli(cli_args)
        env_path = os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG")
        file_config = _load_file_config(
            args.config or (_coerce_path(env_path) if env_path else None)
        )
        env_config = _load_env_config(CONFIG_ENV_PREFIX)
        cli_config = _cli_overrides(args)

        config = cls()
        config = _apply_mapping(config, file_config)
        config = _apply_mapping(config, env_config)
        config = _apply_mapping(config, cli_config)
        return config


def _validate_config(config: Config) -> None:
    _validate_version(config.config_version)
    _validate_range("api_port", config.api_port, 1, 65535)
    _validate_range("discovery_interval", config.discovery_interval, 1.0, 86400.0)
    _validate_range("discovery_browse_timeout", config.discovery_browse_timeout, 0.1, 120.0)
    _validate_range("manifest_request_timeout", config.manifest_request_timeout, 0.1, 120.0)
    _validate_range("manifest_max_concurrency", config.manifest_max_concurrency, 1, 1024)
    _validate_range("subsystem_failure_threshold", config.subsystem_failure_threshold, 1, 1000)
    _validate_range("subsystem_failure_cooldown", config.subsystem_failure_cooldown, 0.0, 3600.0)
    _validate_range("backoff_base", config.backoff_base, 0.0, 60.0)
    _validate_range("backoff_factor", config.backoff_factor, 1.0, 10.0)
    _validate_range("backoff_max", config.backoff_max, 0.1, 3600.0)
    if config.log_format not in {"plain", "json"}:
        raise ValueError(f"log_format must be 'plain' or 'json'; got {config.log_format}.")
    if not config.discovery_default_path.startswith("/"):
        raise ValueError(
            f"discovery_default_path must start with '/'; got {config.discovery_default_path}."
        )
    for device in config.manual_devices:
        _validate_range("manual_devices.port", device.port, 1, 65535)
        if not device.addresses:
            raise ValueError("manual_devices entries require at least one address.")
    for field_name, value in (
        ("log_level", config.log_level),
        ("discovery_log_level", config.discovery_log_level),
        ("api_log_level", config.api_log_level),
    ):
        _validate_log_level_value(value, field_name)


def _validate_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade the gateway."
        )


def _validate_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")


def _validate_log_level_value(value: Optional[str], name: str) -> None:
    if value is None:
        return
    allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if value.upper() not in allowed:
        raise ValueError(f"{name} must be one of {sorted(allowed)}; got {value}.")


def _parse_cli(cli_args: Optional[Iterable[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ascot-gateway",
        description="Discover Ascot devices and expose their controls.",
    )
    log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    parser.add_argument("--config", type=Path, help="Path to TOML config file.")
    parser.add_argument("--api-host", type=str, help="Interface the HTTP API binds to.")
    parser.add_argument("--api-port", type=int, help="TCP port for the HTTP API server.")
    parser.add_argument(
        "--api-key",
        type=str,
        help="API key required via X-API-Key or Authorization: ApiKey <key>.",
    )
    parser.add_argument(
        "--no-api-docs",
        action="store_true",
        help="Disable interactive API docs.",
    )
    parser.add_argument("--db-path", type=Path, help="Path to the SQLite database file.")
    parser.add_argument(
        "--no-discovery",
        action="store_true",
        help="Disable mDNS browsing; only manual devices are probed.",
    )
    parser.add_argument(
        "--discovery-interval",
        type=float,
        help="Seconds between discovery passes.",
    )
    parser.add_argument(
        "--discovery-service-type",
        type=str,
        help="mDNS service type browsed for devices.",
    )
    parser.add_argument(
        "--discovery-browse-timeout",
        type=float,
        help="Seconds spent collecting mDNS announcements per pass.",
    )
    parser.add_argument(
        "--discovery-default-scheme",
        type=str,
        help="URI scheme used when a device does not advertise one.",
    )
    parser.add_argument(
        "--discovery-default-path",
        type=str,
        help="Manifest path used when a device does not advertise one.",
    )
    parser.add_argument(
        "--manual-device",
        action="append",
        dest="manual_devices",
        help="Manually announce a device as port=<port>,addresses=<ip>;<ip>,scheme=<s>,path=<p>",
    )
    parser.add_argument(
        "--manifest-request-timeout",
        type=float,
        help="Seconds to wait for a single manifest request.",
    )
    parser.add_argument(
        "--manifest-max-concurrency",
        type=int,
        help="Maximum devices probed concurrently.",
    )
    parser.add_argument(
        "--subsystem-failure-threshold",
        type=int,
        help="Consecutive failures before subsystem attempts are temporarily suppressed.",
    )
    parser.add_argument(
        "--subsystem-failure-cooldown",
        type=float,
        help="Seconds to pause a subsystem after repeated failures.",
    )
    parser.add_argument("--log-format", choices=["plain", "json"], help="Logging format.")
    parser.add_argument("--log-level", choices=log_levels, help="Log verbosity level.")
    parser.add_argument(
        "--discovery-log-level", choices=log_levels, help="Log verbosity for discovery."
    )
    parser.add_argument("--api-log-level", choices=log_levels, help="Log verbosity for the API.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Skip mDNS browsing; only manual devices are probed.",
    )
    parser.add_argument(
        "--migrate-only",
        action="store_true",
        help="Run database migrations and exit without starting services.",
    )
    parser.add_argument(
        "--config-version",
        type=int,
        help="Version of the configuration schema being supplied.",
    )
    return parser.parse_args(args=cli_args)


def _load_file_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("rb") as f:
        parsed = tomllib.load(f)
    if not isinstance(parsed, Mapping):
        raise ValueError("Configuration file must contain a TOML table.")
    return {k.replace("-", "_"): v for k, v in parsed.items()}


def _load_env_config(prefix: str) -> Dict[str, Any]:
    mapping: Dict[str, Any] = {}
    for field in Config.__dataclass_fields__:
        env_key = f"{prefix}{field}".upper()
        if env_key in os.environ:
            mapping[field] = os.environ[env_key]
    return mapping


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    flags = ("config", "no_api_docs", "no_discovery", "dry_run", "migrate_only")
    mapping = {k: v for k, v in vars(args).items() if k not in flags and v is not None}
    if args.no_api_docs:
        mapping["api_docs"] = False
    if args.no_discovery:
        mapping["discovery_enabled"] = False
    if args.dry_run:
        mapping["dry_run"] = True
    if args.migrate_only:
        mapping["migrate_only"] = True
    return mapping


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key == "db_path":
            data[key] = _coerce_path(value)
        elif key in {
            "api_port",
            "manifest_max_concurrency",
            "subsystem_failure_threshold",
            "config_version",
        }:
            data[key] = int(value)
        elif key in {
            "discovery_interval",
            "discovery_browse_timeout",
            "manifest_request_timeout",
            "subsystem_failure_cooldown",
            "backoff_base",
            "backoff_factor",
            "backoff_max",
        }:
            data[key] = float(value)
        elif key == "log_format":
            data[key] = str(value).lower()
        elif key in {"log_level", "discovery_log_level", "api_log_level"}:
            data[key] = str(value).upper()
        elif key == "discovery_default_scheme":
            data[key] = str(value).lower()
        elif key in {"api_docs", "discovery_enabled", "migrate_only", "dry_run"}:
            data[key] = _coerce_bool(value)
        elif key == "manual_devices":
            data[key] = _coerce_manual_devices(value)
        elif key in Config.__dataclass_fields__:
            data[key] = value
    return replace(config, **data)


def _coerce_path(value: Any) -> Path:
    return value if isinstance(value, Path) else Path(str(value)).expanduser()


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_manual_devices(value: Any) -> Sequence[ManualDevice]:
    if value is None:
        return ()
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return (_manual_from_str(value),)
        return _coerce_manual_devices(parsed)

    if isinstance(value, ManualDevice):
        return (value,)
    if isinstance(value, Mapping):
        return (_manual_from_mapping(value),)

    if isinstance(value, Iterable):
        devices: List[ManualDevice] = []
        for item in value:
            if isinstance(item, ManualDevice):
                devices.append(item)
            elif isinstance(item, Mapping):
                devices.append(_manual_from_mapping(item))
            elif isinstance(item, str):
                devices.extend(_coerce_manual_devices(item))
            else:
                raise ValueError("Unsupported manual device entry")
        return tuple(devices)

    raise ValueError("Unsupported manual_devices configuration")


def _manual_from_mapping(value: Mapping[str, Any]) -> ManualDevice:
    if "port" not in value or "addresses" not in value:
        raise ValueError("Manual devices require 'port' and 'addresses' fields")
    addresses = value["addresses"]
    if isinstance(addresses, str):
        addresses = [part.strip() for part in addresses.split(";") if part.strip()]
    properties = value.get("properties")
    return ManualDevice(
        port=int(value["port"]),
        addresses=tuple(str(address) for address in addresses),
        scheme=str(value["scheme"]) if value.get("scheme") is not None else None,
        path=str(value["path"]) if value.get("path") is not None else None,
        properties=(
            {str(k): str(v) for k, v in properties.items()}
            if isinstance(properties, Mapping)
            else None
        ),
    )


_PAIR = re.compile(r"(?P<key>[^=]+)=(?P<value>.+)")


def _manual_from_str(value: str) -> ManualDevice:
    parts = [part.strip() for part in value.split(",") if part.strip()]
    mapping: Dict[str, Any] = {}
    for part in parts:
        match = _PAIR.match(part)
        if not match:
            raise ValueError(
                "Manual device arguments must be key=value pairs separated by commas"
            )
        mapping[match.group("key").strip()] = match.group("value").strip()
    return _manual_from_mapping(mapping)


def load_config(cli_args: Optional[Iterable[str]] = None) -> Config:
    """Public helper used by the entrypoint."""

    try:
        return Config.from_sources(cli_args)
    except Exception as exc:  # pragma: no cover - defensive logging path
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise
