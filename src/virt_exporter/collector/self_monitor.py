"""Exporter self-monitoring collector."""

from __future__ import annotations

import psutil

from .. import __version__
from ..connection import Session
from ..state import ExporterState
from .base import HostCollector, MetricSample, counter, gauge


class SelfMonitorCollector(HostCollector):
    """Reports the exporter's own health once per scrape.

    Runs last in every scrape, after the orchestrator has recorded
    duration, domain count and per-collector outcomes in the shared
    :class:`ExporterState`. It is the only collector that also runs when
    the scrape failed, so *session* may be None.
    """

    descriptors = (
        gauge("libvirt_exporter_up", "1 if the last scrape reached a live libvirt connection", ()),
        gauge("libvirt_exporter_last_scrape_timestamp_seconds", "Unix time of the last scrape", (), "s"),
        gauge("libvirt_exporter_scrape_duration_seconds", "Duration of the last scrape", (), "s"),
        counter("libvirt_exporter_scrapes_total", "Scrapes performed", ()),
        counter("libvirt_exporter_scrape_errors_total", "Scrapes or collection units that failed", ()),
        counter("libvirt_exporter_reconnects_total", "Times the libvirt connection was re-established", ()),
        gauge("libvirt_exporter_domains_discovered", "Domains found by the last scrape", ()),
        counter("libvirt_exporter_cache_hits_total", "Cache hits", ()),
        counter("libvirt_exporter_cache_misses_total", "Cache misses", ()),
        gauge("libvirt_exporter_collector_success", "1 if the collector ran without errors", ("collector",)),
        gauge("libvirt_exporter_collector_duration_seconds", "Time spent in the collector", ("collector",), "s"),
        gauge("libvirt_exporter_build_info", "Exporter build information", ("version",)),
        gauge("libvirt_exporter_process_resident_memory_bytes", "Resident memory of the exporter", (), "bytes"),
        counter("libvirt_exporter_process_cpu_seconds_total", "CPU time used by the exporter", (), "s"),
    )

    def __init__(self, state: ExporterState) -> None:
        super().__init__()
        self._state = state
        self._process = psutil.Process()

    @property
    def name(self) -> str:
        return "exporter"

    def collect_host(self, session: Session | None) -> list[MetricSample]:
        st = self._state.snapshot()
        up = st.up and session is not None and session.is_alive()
        samples = [
            self.sample("libvirt_exporter_up", 1 if up else 0, {}),
            self.sample("libvirt_exporter_last_scrape_timestamp_seconds", st.last_scrape_timestamp, {}),
            self.sample("libvirt_exporter_scrape_duration_seconds", st.last_scrape_duration, {}),
            self.sample("libvirt_exporter_scrapes_total", st.scrapes_total, {}),
            self.sample("libvirt_exporter_scrape_errors_total", st.scrape_errors_total, {}),
            self.sample("libvirt_exporter_reconnects_total", st.reconnects_total, {}),
            self.sample("libvirt_exporter_domains_discovered", st.domains_discovered, {}),
            self.sample("libvirt_exporter_cache_hits_total", st.cache_hits_total, {}),
            self.sample("libvirt_exporter_cache_misses_total", st.cache_misses_total, {}),
            self.sample("libvirt_exporter_build_info", 1, {"version": __version__}),
        ]
        for name, status in st.collectors.items():
            labels = {"collector": name}
            samples.append(self.sample("libvirt_exporter_collector_success", 1 if status.success else 0, labels))
            samples.append(self.sample("libvirt_exporter_collector_duration_seconds", status.duration_seconds, labels))

        try:
            with self._process.oneshot():
                rss = self._process.memory_info().rss
                cpu = self._process.cpu_times()
        except psutil.Error:
            return samples
        samples.append(self.sample("libvirt_exporter_process_resident_memory_bytes", rss, {}))
        samples.append(self.sample("libvirt_exporter_process_cpu_seconds_total", cpu.user + cpu.system, {}))
        return samples
