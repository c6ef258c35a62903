"""OpenTelemetry exporter – pushes scrape results via OTLP/HTTP."""

from __future__ import annotations

import logging
import threading
from typing import Any, Iterable

from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.metrics import CallbackOptions, Observation
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import SERVICE_NAME, Resource

from .. import __version__
from ..collector.base import MetricKind, MetricSample
from ..config import OtelExporterConfig
from .base import BaseExporter

logger = logging.getLogger(__name__)


class OtelExporter(BaseExporter):
    """Exports scrape results to an OpenTelemetry endpoint.

    Every metric is an observable instrument (a counter for cumulative
    libvirt values, a gauge otherwise) whose callback reports the most
    recent :meth:`export`. Series absent from that scrape, such as those
    of a deleted domain, stop being reported. The SDK's reader flushes
    them to the configured OTLP/HTTP endpoint.
    """

    def __init__(self, config: OtelExporterConfig, reader: MetricReader | None = None) -> None:
        self._config = config
        resource = Resource.create({SERVICE_NAME: config.service_name})

        if reader is None:
            exporter_kwargs: dict[str, Any] = {
                "endpoint": f"{config.endpoint.rstrip('/')}/v1/metrics",
            }
            if config.headers:
                exporter_kwargs["headers"] = config.headers
            reader = PeriodicExportingMetricReader(
                OTLPMetricExporter(**exporter_kwargs),
                export_interval_millis=config.export_interval_ms,
            )
        self._provider = MeterProvider(resource=resource, metric_readers=[reader])
        self._meter = self._provider.get_meter("virt_exporter", __version__)
        self._instruments: dict[str, Any] = {}
        self._snapshot: dict[str, dict[tuple[tuple[str, str], ...], float]] = {}
        self._lock = threading.Lock()

        logger.info(
            "OTLP push to %s every %dms (service=%s)",
            config.endpoint,
            config.export_interval_ms,
            config.service_name,
        )

    def _observe(self, name: str) -> Any:
        def callback(_options: CallbackOptions) -> Iterable[Observation]:
            with self._lock:
                values = list(self._snapshot.get(name, {}).items())
            return [Observation(value, dict(attrs)) for attrs, value in values]

        return callback

    def _ensure_instrument(self, sample: MetricSample) -> None:
        if sample.name in self._instruments:
            return
        if sample.kind is MetricKind.COUNTER:
            create = self._meter.create_observable_counter
        else:
            create = self._meter.create_observable_gauge
        self._instruments[sample.name] = create(
            name=sample.name,
            callbacks=[self._observe(sample.name)],
            unit=sample.unit,
            description=sample.description,
        )

    def export(self, samples: list[MetricSample]) -> None:
        snapshot: dict[str, dict[tuple[tuple[str, str], ...], float]] = {}
        for s in samples:
            self._ensure_instrument(s)
            snapshot.setdefault(s.name, {})[tuple(sorted(s.labels.items()))] = s.value
        # each scrape is a full snapshot; series missing from it are gone
        with self._lock:
            self._snapshot = snapshot

    def shutdown(self) -> None:
        self._provider.shutdown()
        logger.info("OTLP exporter shut down")
