"""Configuration loading for the Hue bridge sync service."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Optional

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older interpreters
    import tomli as tomllib  # type: ignore


CONFIG_ENV_PREFIX = "HUE_SYNC_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1

_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    bridge_host: str = ""
    bridge_port: int = 443
    application_key: Optional[str] = None
    verify_tls: bool = False
    request_timeout: float = 10.0
    snapshot_stagger: float = 0.4
    snapshot_button_extra_delay: float = 1.0
    snapshot_retries: int = 3
    snapshot_retry_delay: float = 1.0
    initial_snapshot_delay: float = 0.3
    resync_debounce: float = 1.0
    metadata_max_concurrent: int = 4
    metadata_fetch_spacing: float = 0.02
    rename_verify_delay: float = 0.7
    rename_verify_attempts: int = 3
    multi_press_window: float = 1.2
    multi_press_reset_gap: float = 0.5
    dial_reset_delay: float = 0.2
    stream_fast_retries: int = 5
    stream_fast_retry_delay: float = 2.0
    stream_retry_interval: float = 10.0
    poll_interval: float = 60.0
    poll_interval_stream_down: float = 1.0
    sync_backoff_base: float = 1.0
    sync_backoff_factor: float = 2.0
    sync_backoff_max: float = 30.0
    api_enabled: bool = True
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    api_key: Optional[str] = None
    api_bearer_token: Optional[str] = None
    api_docs: bool = True
    subsystem_failure_threshold: int = 5
    subsystem_failure_cooldown: float = 15.0
    log_format: str = "plain"
    log_level: str = "INFO"
    sync_log_level: Optional[str] = None
    stream_log_level: Optional[str] = None
    api_log_level: Optional[str] = None
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    @property
    def bridge_base_url(self) -> str:
        if self.bridge_port == 443:
            return f"https://{self.bridge_host}"
        return f"https://{self.bridge_host}:{self.bridge_port}"

    def logging_dict(self) -> Dict[str, Any]:
        """Return a sanitized mapping suitable for structured logging."""

        masked_keys = {
            "application_key": "***REDACTED***" if self.application_key else None,
            "api_key": "***REDACTED***" if self.api_key else None,
            "api_bearer_token": "***REDACTED***" if self.api_bearer_token else None,
        }
        base: Dict[str, Any] = {
            field: getattr(self, field)
            for field in self.__dataclass_fields__
            if field not in masked_keys
        }
        base.update(masked_keys)
        return base

    @classmethod
    def from_sources(cls, cli_args: Optional[Iterable[str]] = None) -> "Config":
        """Load configuration from defaults, file, env, and CLI (in that order)."""

        args = _parse_cli(cli_args)
        file_config = _load_file_config(
            args.config
            or _coerce_path(os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG"))
            or None
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
    _validate_range("bridge_port", config.bridge_port, 1, 65535)
    _validate_range("api_port", config.api_port, 1, 65535)
    _validate_range("request_timeout", config.request_timeout, 0.1, 300.0)
    _validate_range("snapshot_stagger", config.snapshot_stagger, 0.0, 60.0)
    _validate_range("snapshot_button_extra_delay", config.snapshot_button_extra_delay, 0.0, 60.0)
    _validate_range("snapshot_retries", config.snapshot_retries, 1, 20)
    _validate_range("snapshot_retry_delay", config.snapshot_retry_delay, 0.0, 60.0)
    _validate_range("initial_snapshot_delay", config.initial_snapshot_delay, 0.0, 60.0)
    _validate_range("resync_debounce", config.resync_debounce, 0.0, 60.0)
    _validate_range("metadata_max_concurrent", config.metadata_max_concurrent, 1, 64)
    _validate_range("metadata_fetch_spacing", config.metadata_fetch_spacing, 0.0, 10.0)
    _validate_range("rename_verify_delay", config.rename_verify_delay, 0.0, 60.0)
    _validate_range("rename_verify_attempts", config.rename_verify_attempts, 1, 20)
    _validate_range("multi_press_window", config.multi_press_window, 0.01, 10.0)
    _validate_range("multi_press_reset_gap", config.multi_press_reset_gap, 0.0, 10.0)
    _validate_range("dial_reset_delay", config.dial_reset_delay, 0.0, 10.0)
    _validate_range("stream_fast_retries", config.stream_fast_retries, 0, 100)
    _validate_range("stream_fast_retry_delay", config.stream_fast_retry_delay, 0.0, 300.0)
    _validate_range("stream_retry_interval", config.stream_retry_interval, 1.0, 3600.0)
    _validate_range("poll_interval", config.poll_interval, 0.1, 86400.0)
    _validate_range("poll_interval_stream_down", config.poll_interval_stream_down, 0.1, 86400.0)
    _validate_range("sync_backoff_base", config.sync_backoff_base, 0.0, 300.0)
    _validate_range("sync_backoff_factor", config.sync_backoff_factor, 1.0, 10.0)
    _validate_range("sync_backoff_max", config.sync_backoff_max, 0.1, 3600.0)
    _validate_range("subsystem_failure_threshold", config.subsystem_failure_threshold, 1, 1000)
    _validate_range("subsystem_failure_cooldown", config.subsystem_failure_cooldown, 0.0, 3600.0)
    if config.log_format not in {"plain", "json"}:
        raise ValueError(f"log_format must be 'plain' or 'json'; got {config.log_format}.")
    for field_name, value in (
        ("log_level", config.log_level),
        ("sync_log_level", config.sync_log_level),
        ("stream_log_level", config.stream_log_level),
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
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade the service."
        )


def _validate_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")


def _validate_log_level_value(value: Optional[str], name: str) -> None:
    if value is None:
        return
    if value.upper() not in _LOG_LEVELS:
        raise ValueError(f"{name} must be one of {sorted(_LOG_LEVELS)}; got {value}.")


def _parse_cli(cli_args: Optional[Iterable[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="hue-bridge-sync",
        description="Mirror a Hue bridge resource graph into a local model.",
    )
    parser.add_argument("--config", type=Path, help="Path to TOML config file.")
    parser.add_argument("--bridge-host", type=str, help="Hostname or IP of the Hue bridge.")
    parser.add_argument("--bridge-port", type=int, help="HTTPS port of the Hue bridge.")
    parser.add_argument(
        "--application-key",
        type=str,
        help="Hue application key sent as the hue-application-key header.",
    )
    parser.add_argument(
        "--verify-tls",
        action="store_true",
        help="Verify the bridge TLS certificate (bridges ship self-signed certificates).",
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        help="Seconds to wait for a single bridge request.",
    )
    parser.add_argument(
        "--snapshot-stagger",
        type=float,
        help="Seconds between starting consecutive resource type fetches.",
    )
    parser.add_argument(
        "--snapshot-retries",
        type=int,
        help="Attempts for a secondary resource type before the cycle is degraded.",
    )
    parser.add_argument(
        "--snapshot-retry-delay",
        type=float,
        help="Base delay multiplied by the attempt number between snapshot retries.",
    )
    parser.add_argument(
        "--resync-debounce",
        type=float,
        help="Seconds to coalesce topology changes before a full resync.",
    )
    parser.add_argument(
        "--metadata-max-concurrent",
        type=int,
        help="Maximum concurrent lazy device metadata fetches.",
    )
    parser.add_argument(
        "--stream-retry-interval",
        type=float,
        help="Seconds between event stream reconnects after the fast retries are spent.",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        help="Seconds between full snapshot cycles while the event stream is healthy.",
    )
    parser.add_argument(
        "--poll-interval-stream-down",
        type=float,
        help="Seconds between full snapshot cycles while the event stream is down.",
    )
    parser.add_argument(
        "--api-host",
        type=str,
        help="Interface for the HTTP/API server.",
    )
    parser.add_argument(
        "--api-port",
        type=int,
        help="TCP port for the HTTP/API server.",
    )
    parser.add_argument(
        "--no-api",
        action="store_true",
        help="Do not start the HTTP/API server.",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        help="API key required via X-API-Key or Authorization: ApiKey <key>.",
    )
    parser.add_argument(
        "--api-bearer-token",
        type=str,
        help="Bearer token required via Authorization: Bearer <token>.",
    )
    parser.add_argument(
        "--no-api-docs",
        action="store_true",
        help="Disable interactive API docs.",
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
    parser.add_argument(
        "--log-format",
        choices=["plain", "json"],
        help="Structured logging format.",
    )
    parser.add_argument(
        "--log-level",
        choices=_LOG_LEVELS,
        help="Log verbosity level.",
    )
    parser.add_argument(
        "--sync-log-level",
        choices=_LOG_LEVELS,
        help="Log verbosity for snapshot and reconciliation.",
    )
    parser.add_argument(
        "--stream-log-level",
        choices=_LOG_LEVELS,
        help="Log verbosity for the event stream.",
    )
    parser.add_argument(
        "--api-log-level",
        choices=_LOG_LEVELS,
        help="Log verbosity for API server.",
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
    mapping = {
        k: v
        for k, v in vars(args).items()
        if k not in ("config", "no_api", "no_api_docs", "verify_tls") and v is not None
    }
    if args.verify_tls:
        mapping["verify_tls"] = True
    if args.no_api:
        mapping["api_enabled"] = False
    if args.no_api_docs:
        mapping["api_docs"] = False
    return mapping


_INT_FIELDS = {
    "bridge_port",
    "api_port",
    "snapshot_retries",
    "metadata_max_concurrent",
    "rename_verify_attempts",
    "stream_fast_retries",
    "subsystem_failure_threshold",
    "config_version",
}
_BOOL_FIELDS = {"verify_tls", "api_enabled", "api_docs"}
_LEVEL_FIELDS = {"log_level", "sync_log_level", "stream_log_level", "api_log_level"}


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None or key not in Config.__dataclass_fields__:
            continue
        if key in _INT_FIELDS:
            data[key] = int(value)
        elif key in _BOOL_FIELDS:
            data[key] = _coerce_bool(value)
        elif key in _LEVEL_FIELDS:
            data[key] = str(value).upper()
        elif key == "log_format":
            data[key] = str(value).lower()
        elif isinstance(Config.__dataclass_fields__[key].default, float):
            data[key] = float(value)
        else:
            data[key] = value
    return replace(config, **data)


def _coerce_path(value: Any) -> Optional[Path]:
    if value is None:
        return None
    return value if isinstance(value, Path) else Path(str(value)).expanduser()


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def load_config(cli_args: Optional[Iterable[str]] = None) -> Config:
    """Public helper used by the entrypoint."""

    try:
        return Config.from_sources(cli_args)
    except Exception as exc:  # pragma: no cover - defensive logging path
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise
