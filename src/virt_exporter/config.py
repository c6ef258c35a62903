"""Configuration loading and validation for virt_exporter."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

METRIC_CATEGORIES = (
    "domain_info",
    "cpu",
    "memory",
    "disk",
    "network",
    "device",
    "host",
)

DEFAULT_CONFIG_PATHS = (
    Path("virt_exporter.yaml"),
    Path("/etc/virt-exporter/config.yaml"),
)

BACKOFF_POLICIES = ("linear", "exponential")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(ValueError):
    """Raised when the configuration file or its values are invalid."""


@dataclass
class LibvirtConfig:
    """Management connection settings."""

    uri: str = "qemu:///system"
    reconnect_attempts: int = 3
    reconnect_backoff_seconds: float = 1.0
    backoff: str = "exponential"


@dataclass
class WebConfig:
    """HTTP surface settings."""

    listen_address: str = ":9177"
    telemetry_path: str = "/metrics"


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"


@dataclass
class CollectionConfig:
    """Scrape scheduling and concurrency settings."""

    interval_seconds: float = 15.0
    timeout_seconds: float = 10.0
    max_concurrent: int = 10


@dataclass
class MetricsConfig:
    """Which metric categories are collected and which static labels are added."""

    enabled: list[str] = field(default_factory=lambda: list(METRIC_CATEGORIES))
    extra_labels: dict[str, str] = field(default_factory=dict)


@dataclass
class OtelExporterConfig:
    """OpenTelemetry push settings, used when ``mode`` is ``online``."""

    endpoint: str = "http://localhost:4318"
    service_name: str = "virt-exporter"
    headers: dict[str, str] = field(default_factory=dict)
    export_interval_ms: int = 15000


@dataclass
class ExporterConfig:
    """Top-level virt_exporter configuration."""

    mode: str = "local"
    libvirt: LibvirtConfig = field(default_factory=LibvirtConfig)
    web: WebConfig = field(default_factory=WebConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    collection: CollectionConfig = field(default_factory=CollectionConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    otel: OtelExporterConfig = field(default_factory=OtelExporterConfig)

    def validate(self) -> None:
        """Raise :class:`ConfigError` if any value is unusable."""
        self._check_types()
        if self.mode not in ("local", "online"):
            raise ConfigError(f"unknown mode {self.mode!r}")
        if not self.libvirt.uri:
            raise ConfigError("libvirt.uri cannot be empty")
        if self.libvirt.reconnect_attempts < 1:
            raise ConfigError("libvirt.reconnect_attempts must be at least 1")
        if self.libvirt.reconnect_backoff_seconds < 0:
            raise ConfigError("libvirt.reconnect_backoff_seconds cannot be negative")
        if self.libvirt.backoff not in BACKOFF_POLICIES:
            raise ConfigError(f"unknown backoff policy {self.libvirt.backoff!r}")
        if self.logging.level.upper() not in LOG_LEVELS:
            raise ConfigError(f"unknown log level {self.logging.level!r}")
        if not self.web.listen_address:
            raise ConfigError("web.listen_address cannot be empty")
        parse_listen_address(self.web.listen_address)
        if not self.web.telemetry_path.startswith("/"):
            raise ConfigError("web.telemetry_path must start with '/'")
        if self.collection.interval_seconds <= 0:
            raise ConfigError("collection.interval_seconds must be positive")
        if self.collection.timeout_seconds <= 0:
            raise ConfigError("collection.timeout_seconds must be positive")
        if self.collection.max_concurrent < 1:
            raise ConfigError("collection.max_concurrent must be at least 1")
        unknown = [c for c in self.metrics.enabled if c not in METRIC_CATEGORIES]
        if unknown:
            raise ConfigError(f"unknown metric categories: {', '.join(unknown)}")

    def _check_types(self) -> None:
        if not isinstance(self.mode, str):
            raise ConfigError(f"mode must be a string, got {self.mode!r}")
        for name in ("libvirt", "web", "logging", "collection", "metrics", "otel"):
            section = getattr(self, name)
            defaults = type(section)()
            for f in fields(section):
                value = getattr(section, f.name)
                expected = type(getattr(defaults, f.name))
                if not _is_type(value, expected):
                    raise ConfigError(
                        f"{name}.{f.name} must be {_TYPE_NAMES[expected]}, got {value!r}"
                    )


_TYPE_NAMES = {bool: "a boolean", str: "a string", int: "an integer", float: "a number", list: "a list", dict: "a mapping"}


def _is_type(value: Any, expected: type) -> bool:
    if isinstance(value, bool):
        return expected is bool
    if expected is float:
        return isinstance(value, (int, float))
    return isinstance(value, expected)


def parse_listen_address(address: str) -> tuple[str, int]:
    """Split ``host:port`` (host may be empty) into its parts."""
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ConfigError(f"invalid listen address {address!r}")
    return host.strip("[]"), int(port)


def _merge_dict(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *source* into *target*."""
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge_dict(target[key], value)
        else:
            target[key] = value
    return target


_ENV_MAP: dict[str, tuple[str, ...]] = {
    "VIRT_EXPORTER_MODE": ("mode",),
    "VIRT_EXPORTER_LIBVIRT_URI": ("libvirt", "uri"),
    "VIRT_EXPORTER_LISTEN_ADDRESS": ("web", "listen_address"),
    "VIRT_EXPORTER_TELEMETRY_PATH": ("web", "telemetry_path"),
    "VIRT_EXPORTER_LOG_LEVEL": ("logging", "level"),
    "VIRT_EXPORTER_COLLECTION_INTERVAL": ("collection", "interval_seconds"),
    "VIRT_EXPORTER_COLLECTION_TIMEOUT": ("collection", "timeout_seconds"),
    "VIRT_EXPORTER_OTEL_ENDPOINT": ("otel", "endpoint"),
}

_FLOAT_KEYS = {"interval_seconds", "timeout_seconds"}


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides using the VIRT_EXPORTER_ prefix."""
    for env_key, path in _ENV_MAP.items():
        value = os.environ.get(env_key)
        if value is None:
            continue
        obj = data
        for part in path[:-1]:
            obj = obj.setdefault(part, {})
        final_key = path[-1]
        if final_key in _FLOAT_KEYS:
            try:
                obj[final_key] = float(value)
            except ValueError as exc:
                raise ConfigError(f"{env_key} must be a number, got {value!r}") from exc
        else:
            obj[final_key] = value
    return data


def _section(cls: type, data: Any) -> Any:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"section for {cls.__name__} must be a mapping")
    return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


def _dict_to_config(data: dict[str, Any]) -> ExporterConfig:
    """Convert a raw dictionary to an :class:`ExporterConfig`."""
    metrics = _section(MetricsConfig, data.get("metrics"))
    labels = metrics.extra_labels or {}
    if isinstance(labels, dict):
        labels = {str(k): str(v) for k, v in labels.items()}
    metrics.extra_labels = labels
    return ExporterConfig(
        mode=data.get("mode", "local"),
        libvirt=_section(LibvirtConfig, data.get("libvirt")),
        web=_section(WebConfig, data.get("web")),
        logging=_section(LoggingConfig, data.get("logging")),
        collection=_section(CollectionConfig, data.get("collection")),
        metrics=metrics,
        otel=_section(OtelExporterConfig, data.get("otel")),
    )


def load_config(
    path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> ExporterConfig:
    """Load configuration from a YAML file with environment and CLI overrides.

    When *path* is None the first existing file among
    ``./virt_exporter.yaml`` and ``/etc/virt-exporter/config.yaml`` is used,
    falling back to built-in defaults. An explicit *path* must exist.
    *overrides* (typically from command line flags) win over both the file
    and the environment.
    """
    data: dict[str, Any] = {}
    if path is None:
        candidates = [p for p in DEFAULT_CONFIG_PATHS if p.exists()]
        path = candidates[0] if candidates else None
    else:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"config file {path} does not exist")

    if path is not None:
        with open(path, encoding="utf-8") as fh:
            try:
                loaded = yaml.safe_load(fh)
            except yaml.YAMLError as exc:
                raise ConfigError(f"cannot parse {path}: {exc}") from exc
            if isinstance(loaded, dict):
                data = loaded

    data = _apply_env_overrides(data)
    if overrides:
        _merge_dict(data, overrides)
    cfg = _dict_to_config(data)
    cfg.validate()
    return cfg
