"""Tests for the Prometheus and OpenTelemetry surfaces."""

import socket
from wsgiref.util import setup_testing_defaults

import pytest

pytest.importorskip("libvirt")

from prometheus_client import generate_latest  # noqa: E402
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily  # noqa: E402
from prometheus_client.parser import text_string_to_metric_families  # noqa: E402

from virt_exporter.collector.base import MetricKind, MetricSample, counter, gauge  # noqa: E402
from virt_exporter.collector.orchestrator import CollectionOrchestrator  # noqa: E402
from virt_exporter.config import ExporterConfig, LibvirtConfig, OtelExporterConfig  # noqa: E402
from virt_exporter.connection import ConnectionGuardian  # noqa: E402
from virt_exporter.exporter.prometheus import build_registry, make_app, serve, to_families  # noqa: E402

from .fakes import FakeConnection, FakeDomain, ScriptedOpener  # noqa: E402


def _orchestrator(domains):
    cfg = ExporterConfig()
    cfg.libvirt = LibvirtConfig(uri="test:///default", reconnect_attempts=1, reconnect_backoff_seconds=0)
    guardian = ConnectionGuardian(cfg.libvirt, opener=ScriptedOpener(FakeConnection(domains)))
    guardian.connect()
    return CollectionOrchestrator(cfg, guardian)


def _call(app, path):
    environ = {}
    setup_testing_defaults(environ)
    environ["PATH_INFO"] = path
    captured = {}

    def start_response(status, headers, exc_info=None):
        captured["status"] = status
        captured["headers"] = dict(headers)

    body = b"".join(app(environ, start_response))
    return captured["status"], captured["headers"], body


class TestToFamilies:
    def test_kinds_are_preserved(self):
        descriptors = [
            counter("libvirt_vm_cpu_time_seconds_total", "CPU time", ("domain", "uuid"), "s"),
            gauge("libvirt_vm_vcpus", "vCPUs"),
        ]
        samples = [
            MetricSample("libvirt_vm_cpu_time_seconds_total", 5.0, "s",
                         {"domain": "a", "uuid": "u1"}, "CPU time", MetricKind.COUNTER),
            MetricSample("libvirt_vm_vcpus", 2, "", {"domain": "a", "uuid": "u1"}, "vCPUs"),
            MetricSample("libvirt_vm_vcpus", 4, "", {"domain": "b", "uuid": "u2"}, "vCPUs"),
        ]
        families = {f.name: f for f in to_families(samples, descriptors)}

        assert isinstance(families["libvirt_vm_cpu_time_seconds"], CounterMetricFamily)
        assert isinstance(families["libvirt_vm_vcpus"], GaugeMetricFamily)
        assert [s.value for s in families["libvirt_vm_vcpus"].samples] == [2, 4]

    def test_label_order_follows_descriptor(self):
        descriptors = [gauge("libvirt_vm_disk_capacity_bytes", "size", ("domain", "uuid", "device"))]
        sample = MetricSample(
            "libvirt_vm_disk_capacity_bytes", 1.0, "bytes",
            {"device": "vda", "uuid": "u1", "domain": "a"},
        )
        (family,) = to_families([sample], descriptors)
        assert list(family.samples[0].labels) == ["domain", "uuid", "device"]

    def test_undeclared_metric_keeps_its_labels(self):
        sample = MetricSample("custom_metric", 1.0, "", {"site": "x"})
        (family,) = to_families([sample], [])
        assert family.samples[0].labels == {"site": "x"}


def test_registry_renders_a_scrape():
    orchestrator = _orchestrator([FakeDomain("alpha")])
    text = generate_latest(build_registry(orchestrator)).decode("utf-8")
    families = {f.name: f for f in text_string_to_metric_families(text)}

    assert 'libvirt_vm_running{domain="alpha",uuid="uuid-alpha"} 1.0' in text
    assert "libvirt_exporter_up 1.0" in text
    read_bytes = families["libvirt_vm_disk_read_bytes"]
    assert read_bytes.type == "counter"
    (sample,) = [s for s in read_bytes.samples if s.name == "libvirt_vm_disk_read_bytes_total"]
    assert sample.labels == {"domain": "alpha", "uuid": "uuid-alpha", "device": "vda"}
    assert sample.value == 4096


class TestWsgiApp:
    def test_metrics_path(self):
        app = make_app(_orchestrator([FakeDomain("alpha")]), "/custom")
        status, _headers, body = _call(app, "/custom")
        assert status.startswith("200")
        assert b"libvirt_vm_status" in body

    def test_landing_page_links_metrics(self):
        app = make_app(_orchestrator([]), "/custom")
        status, headers, body = _call(app, "/")
        assert status.startswith("200")
        assert headers["Content-Type"].startswith("text/html")
        assert b'href="/custom"' in body

    def test_unknown_path(self):
        app = make_app(_orchestrator([]))
        status, _headers, _body = _call(app, "/nope")
        assert status.startswith("404")


@pytest.mark.parametrize(
    "host, family",
    [("127.0.0.1", socket.AF_INET), ("::1", socket.AF_INET6)],
)
def test_serve_binds_the_address_family_of_the_host(host, family):
    try:
        server = serve(make_app(_orchestrator([])), host, 0)
    except OSError as exc:
        pytest.skip(f"cannot bind {host}: {exc}")
    try:
        assert server.socket.family == family
        assert server.server_port > 0
    finally:
        server.server_close()


class TestOtelExporter:
    def _metric_names(self, reader):
        data = reader.get_metrics_data()
        return {
            metric.name: metric
            for rm in data.resource_metrics
            for sm in rm.scope_metrics
            for metric in sm.metrics
        }

    def test_export_records_gauges_and_counters(self):
        from opentelemetry.sdk.metrics.export import InMemoryMetricReader

        from virt_exporter.exporter.otel import OtelExporter

        reader = InMemoryMetricReader()
        exporter = OtelExporter(OtelExporterConfig(), reader=reader)
        try:
            exporter.export(_orchestrator([FakeDomain("alpha")]).collect_once())
            metrics = self._metric_names(reader)
        finally:
            exporter.shutdown()

        assert "libvirt_vm_running" in metrics
        assert "libvirt_vm_disk_read_bytes_total" in metrics
        points = list(metrics["libvirt_vm_disk_read_bytes_total"].data.data_points)
        assert points[0].value == 4096
        assert dict(points[0].attributes)["device"] == "vda"

    def test_counter_series_follow_latest_scrape(self):
        from opentelemetry.sdk.metrics.export import InMemoryMetricReader

        from virt_exporter.exporter.otel import OtelExporter

        reader = InMemoryMetricReader()
        exporter = OtelExporter(OtelExporterConfig(), reader=reader)
        labels = {"domain": "a", "uuid": "u1"}
        try:
            exporter.export([MetricSample(
                "libvirt_vm_cpu_time_seconds_total", 1.0, "s", labels, kind=MetricKind.COUNTER,
            )])
            exporter.export([MetricSample(
                "libvirt_vm_cpu_time_seconds_total", 3.0, "s", labels, kind=MetricKind.COUNTER,
            )])
            metrics = self._metric_names(reader)
        finally:
            exporter.shutdown()

        points = list(metrics["libvirt_vm_cpu_time_seconds_total"].data.data_points)
        assert [p.value for p in points] == [3.0]

    def test_gauge_series_of_vanished_domains_are_dropped(self):
        from opentelemetry.sdk.metrics.export import InMemoryMetricReader

        from virt_exporter.exporter.otel import OtelExporter

        def running(domain, value):
            return MetricSample(
                "libvirt_vm_running", value, "", {"domain": domain, "uuid": f"uuid-{domain}"},
            )

        reader = InMemoryMetricReader()
        exporter = OtelExporter(OtelExporterConfig(), reader=reader)
        try:
            exporter.export([running("a", 1), running("b", 1)])
            first = self._metric_names(reader)
            exporter.export([running("a", 0)])
            second = self._metric_names(reader)
        finally:
            exporter.shutdown()

        before = {dict(p.attributes)["domain"]: p.value for p in first["libvirt_vm_running"].data.data_points}
        after = {dict(p.attributes)["domain"]: p.value for p in second["libvirt_vm_running"].data.data_points}
        assert before == {"a": 1, "b": 1}
        assert after == {"a": 0}


def test_exporter_sink_skips_empty_scrapes():
    from virt_exporter.exporter.base import BaseExporter

    class Recorder(BaseExporter):
        def __init__(self):
            self.batches = []

        def export(self, samples):
            self.batches.append(samples)

        def shutdown(self):
            pass

    recorder = Recorder()
    sample = MetricSample("libvirt_exporter_up", 1.0, "", {})
    recorder([])
    recorder([sample])
    assert recorder.batches == [[sample]]
