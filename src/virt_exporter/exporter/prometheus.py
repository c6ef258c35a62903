"""Prometheus exposition: bridges scrapes to prometheus_client and serves HTTP."""

from __future__ import annotations

import html
import logging
from typing import Any, Callable, Iterable, Iterator
from wsgiref.simple_server import WSGIRequestHandler, make_server

from prometheus_client import CollectorRegistry, make_wsgi_app
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric
from prometheus_client.exposition import ThreadingWSGIServer, _get_best_family

from ..collector.base import MetricDescriptor, MetricKind, MetricSample
from ..collector.orchestrator import CollectionOrchestrator

logger = logging.getLogger(__name__)

_LANDING_PAGE = """<html>
<head><title>libvirt exporter</title></head>
<body>
<h1>libvirt exporter</h1>
<p><a href="{path}">Metrics</a></p>
</body>
</html>
"""


def _family(name: str, kind: MetricKind, description: str, labels: list[str]) -> Metric:
    cls = CounterMetricFamily if kind is MetricKind.COUNTER else GaugeMetricFamily
    return cls(name, description or name, labels=labels)


def to_families(
    samples: Iterable[MetricSample],
    descriptors: Iterable[MetricDescriptor],
) -> list[Metric]:
    """Group samples into metric families, keeping the counter/gauge kind.

    Label order follows the descriptor; samples of undeclared metrics use
    their own label order.
    """
    declared = {d.name: d for d in descriptors}
    families: dict[str, tuple[Metric, list[str]]] = {}
    for s in samples:
        entry = families.get(s.name)
        if entry is None:
            desc = declared.get(s.name)
            label_names = list(desc.labels) if desc is not None else list(s.labels)
            entry = (_family(s.name, s.kind, s.description, label_names), label_names)
            families[s.name] = entry
        family, label_names = entry
        family.add_metric([s.labels.get(label, "") for label in label_names], s.value)
    return [family for family, _ in families.values()]


class ScrapeCollector:
    """prometheus_client collector that runs one scrape per collection."""

    def __init__(self, orchestrator: CollectionOrchestrator) -> None:
        self._orchestrator = orchestrator

    def describe(self) -> Iterator[Metric]:
        for desc in self._orchestrator.describe():
            yield _family(desc.name, desc.kind, desc.description, list(desc.labels))

    def collect(self) -> Iterator[Metric]:
        samples = self._orchestrator.collect_once()
        yield from to_families(samples, self._orchestrator.describe())


def build_registry(orchestrator: CollectionOrchestrator) -> CollectorRegistry:
    registry = CollectorRegistry()
    registry.register(ScrapeCollector(orchestrator))
    return registry


def make_app(
    orchestrator: CollectionOrchestrator,
    telemetry_path: str = "/metrics",
) -> Callable[[dict[str, Any], Callable[..., Any]], Iterable[bytes]]:
    """WSGI app serving metrics on *telemetry_path* and a landing page on ``/``."""
    metrics_app = make_wsgi_app(build_registry(orchestrator))
    landing = _LANDING_PAGE.format(path=html.escape(telemetry_path, quote=True)).encode("utf-8")

    def app(environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        path = environ.get("PATH_INFO") or "/"
        if path == telemetry_path:
            return metrics_app(environ, start_response)
        if path == "/":
            start_response("200 OK", [("Content-Type", "text/html; charset=utf-8")])
            return [landing]
        start_response("404 Not Found", [("Content-Type", "text/plain; charset=utf-8")])
        return [b"Not Found\n"]

    return app


class _LoggingHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)


def serve(app: Callable[..., Any], host: str, port: int) -> ThreadingWSGIServer:
    """Bind a threading WSGI server. The caller runs ``serve_forever``.

    An empty *host* listens on all IPv4 addresses; IPv6 literals bind an
    IPv6 socket.
    """

    class _Server(ThreadingWSGIServer):
        pass

    _Server.address_family, addr = _get_best_family(host or "0.0.0.0", port)
    server = make_server(addr, port, app, _Server, handler_class=_LoggingHandler)
    logger.info("Listening on %s port %d", addr, server.server_port)
    return server
