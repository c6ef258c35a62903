"""Tests for the configuration module."""

import os
import tempfile

import pytest
import yaml

from virt_exporter.config import (
    METRIC_CATEGORIES,
    ConfigError,
    ExporterConfig,
    load_config,
    parse_listen_address,
)


def _write_yaml(data) -> str:
    with tempfile.NamedTemporaryFile("w", suffix=".yaml", delete=False) as fh:
        yaml.dump(data, fh)
        return fh.name


def test_defaults_without_file(monkeypatch, tmp_path):
    """With no config file anywhere, built-in defaults apply."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("virt_exporter.config.DEFAULT_CONFIG_PATHS", (tmp_path / "missing.yaml",))
    cfg = load_config()
    assert isinstance(cfg, ExporterConfig)
    assert cfg.mode == "local"
    assert cfg.libvirt.uri == "qemu:///system"
    assert cfg.web.listen_address == ":9177"
    assert cfg.web.telemetry_path == "/metrics"
    assert cfg.collection.timeout_seconds == 10.0
    assert cfg.collection.max_concurrent == 10
    assert cfg.metrics.enabled == list(METRIC_CATEGORIES)
    assert cfg.metrics.extra_labels == {}


def test_explicit_missing_file_is_an_error():
    with pytest.raises(ConfigError):
        load_config("/tmp/nonexistent_virt_exporter.yaml")


def test_load_config_from_yaml():
    """Loading from a YAML file populates values."""
    path = _write_yaml({
        "mode": "online",
        "libvirt": {"uri": "qemu+ssh://hv01/system", "reconnect_attempts": 5, "backoff": "linear"},
        "web": {"listen_address": "127.0.0.1:9100"},
        "collection": {"timeout_seconds": 3, "max_concurrent": 2},
        "metrics": {"enabled": ["domain_info", "host"], "extra_labels": {"dc": "par1", "rack": 7}},
        "otel": {"endpoint": "http://otel:4318"},
        "unknown_section": {"ignored": True},
    })
    try:
        cfg = load_config(path)
        assert cfg.mode == "online"
        assert cfg.libvirt.uri == "qemu+ssh://hv01/system"
        assert cfg.libvirt.reconnect_attempts == 5
        assert cfg.libvirt.backoff == "linear"
        assert cfg.web.listen_address == "127.0.0.1:9100"
        assert cfg.collection.max_concurrent == 2
        assert cfg.metrics.enabled == ["domain_info", "host"]
        assert cfg.metrics.extra_labels == {"dc": "par1", "rack": "7"}
        assert cfg.otel.endpoint == "http://otel:4318"
    finally:
        os.unlink(path)


def test_env_override():
    """Environment variables override YAML values."""
    path = _write_yaml({"libvirt": {"uri": "qemu:///session"}})
    try:
        os.environ["VIRT_EXPORTER_LIBVIRT_URI"] = "test:///default"
        os.environ["VIRT_EXPORTER_COLLECTION_TIMEOUT"] = "2.5"
        cfg = load_config(path)
        assert cfg.libvirt.uri == "test:///default"
        assert cfg.collection.timeout_seconds == 2.5
    finally:
        os.environ.pop("VIRT_EXPORTER_LIBVIRT_URI", None)
        os.environ.pop("VIRT_EXPORTER_COLLECTION_TIMEOUT", None)
        os.unlink(path)


def test_overrides_win_over_env_and_file():
    path = _write_yaml({"web": {"telemetry_path": "/file"}})
    try:
        os.environ["VIRT_EXPORTER_TELEMETRY_PATH"] = "/env"
        cfg = load_config(path, overrides={"web": {"telemetry_path": "/flag"}})
        assert cfg.web.telemetry_path == "/flag"
        # untouched keys of the same section survive the merge
        assert cfg.web.listen_address == ":9177"
    finally:
        os.environ.pop("VIRT_EXPORTER_TELEMETRY_PATH", None)
        os.unlink(path)


@pytest.mark.parametrize("data", [
    {"mode": "push"},
    {"libvirt": {"uri": ""}},
    {"libvirt": {"reconnect_attempts": 0}},
    {"libvirt": {"backoff": "random"}},
    {"web": {"telemetry_path": "metrics"}},
    {"web": {"listen_address": "nowhere"}},
    {"collection": {"timeout_seconds": 0}},
    {"collection": {"max_concurrent": 0}},
    {"metrics": {"enabled": ["cpu", "gpu"]}},
    {"logging": {"level": "chatty"}},
])
def test_invalid_values_rejected(data):
    path = _write_yaml(data)
    try:
        with pytest.raises(ConfigError):
            load_config(path)
    finally:
        os.unlink(path)


@pytest.mark.parametrize("data, key", [
    ({"collection": {"timeout_seconds": "10s"}}, "collection.timeout_seconds"),
    ({"collection": {"max_concurrent": 2.5}}, "collection.max_concurrent"),
    ({"libvirt": {"reconnect_attempts": True}}, "libvirt.reconnect_attempts"),
    ({"libvirt": {"uri": 42}}, "libvirt.uri"),
    ({"metrics": {"enabled": "cpu"}}, "metrics.enabled"),
    ({"metrics": {"extra_labels": ["site"]}}, "metrics.extra_labels"),
    ({"mode": 1}, "mode"),
])
def test_wrong_types_rejected(data, key):
    path = _write_yaml(data)
    try:
        with pytest.raises(ConfigError, match=key):
            load_config(path)
    finally:
        os.unlink(path)


def test_integer_accepted_for_seconds():
    path = _write_yaml({"collection": {"timeout_seconds": 3, "interval_seconds": 30}})
    try:
        cfg = load_config(path)
    finally:
        os.unlink(path)
    assert cfg.collection.timeout_seconds == 3
    assert cfg.collection.interval_seconds == 30


def test_bad_env_number():
    os.environ["VIRT_EXPORTER_COLLECTION_INTERVAL"] = "soon"
    try:
        with pytest.raises(ConfigError):
            load_config(overrides={})
    finally:
        os.environ.pop("VIRT_EXPORTER_COLLECTION_INTERVAL", None)


def test_parse_listen_address():
    assert parse_listen_address(":9177") == ("", 9177)
    assert parse_listen_address("0.0.0.0:80") == ("0.0.0.0", 80)
    assert parse_listen_address("[::1]:9177") == ("::1", 9177)
    with pytest.raises(ConfigError):
        parse_listen_address("9177")
