"""Collection orchestrator: runs one scrape across all collectors."""

from __future__ import annotations

import collections
import concurrent.futures
import logging
import threading
import time
from typing import Callable, Iterable

from ..config import ExporterConfig
from ..connection import ConnectionGuardian, Session
from ..discovery import DeviceDiscoverer
from ..domains import DomainEnumerator, DomainHandle
from ..errors import ConnectionUnavailable, DomainReleased, EnumerationFailed
from ..state import ExporterState
from .base import BaseCollector, MetricDescriptor, MetricSample
from .cpu import CpuCollector
from .device import DeviceCollector
from .disk import DiskCollector
from .domain_info import DomainInfoCollector
from .host import HostInfoCollector
from .memory import MemoryCollector
from .network import NetworkCollector
from .self_monitor import SelfMonitorCollector

logger = logging.getLogger(__name__)

# how often a waiting scrape checks for cancellation and overdue units
_POLL_SECONDS = 0.05


def build_collectors(
    enabled: Iterable[str],
    discoverer: DeviceDiscoverer,
) -> dict[str, BaseCollector]:
    """Instantiate the enabled collectors, in fixed registry order."""
    factories: dict[str, Callable[[], BaseCollector]] = {
        "domain_info": DomainInfoCollector,
        "cpu": CpuCollector,
        "memory": MemoryCollector,
        "disk": lambda: DiskCollector(discoverer),
        "network": lambda: NetworkCollector(discoverer),
        "device": DeviceCollector,
        "host": HostInfoCollector,
    }
    wanted = set(enabled)
    return {name: factory() for name, factory in factories.items() if name in wanted}


class _UnitResult:
    """Records and timings produced by one domain's unit of work."""

    def __init__(self) -> None:
        self.samples: list[MetricSample] = []
        self.durations: dict[str, float] = {}
        self.failed: set[str] = set()
        self.started: float | None = None


class CollectionOrchestrator:
    """Drives scrapes: connection check, enumeration, parallel collection.

    :meth:`collect_once` is the scrape trigger used by the HTTP surface.
    Scrapes are serialized; a second caller blocks until the running
    scrape finishes. For push mode, register sinks via :meth:`add_sink`
    and call :meth:`start` / :meth:`stop`.
    """

    def __init__(
        self,
        config: ExporterConfig,
        guardian: ConnectionGuardian,
        state: ExporterState | None = None,
        enumerator: DomainEnumerator | None = None,
        discoverer: DeviceDiscoverer | None = None,
        collectors: dict[str, BaseCollector] | None = None,
    ) -> None:
        self._config = config
        self._guardian = guardian
        self._state = state if state is not None else ExporterState()
        self._enumerator = enumerator or DomainEnumerator()
        discoverer = discoverer or DeviceDiscoverer()
        if collectors is None:
            collectors = build_collectors(config.metrics.enabled, discoverer)
        self._collectors = collectors
        self._self_monitor = SelfMonitorCollector(self._state)
        self._extra_labels = dict(config.metrics.extra_labels)

        self._scrape_lock = threading.Lock()
        self._sinks: list[Callable[[list[MetricSample]], None]] = []
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    @property
    def state(self) -> ExporterState:
        return self._state

    @property
    def collectors(self) -> dict[str, BaseCollector]:
        return self._collectors

    def _domain_collectors(self) -> list[BaseCollector]:
        return [c for c in self._collectors.values() if c.scope == "domain"]

    def _host_collectors(self) -> list[BaseCollector]:
        return [c for c in self._collectors.values() if c.scope == "host"]

    def describe(self) -> list[MetricDescriptor]:
        """Every metric this orchestrator can emit. Needs no connection."""
        result: list[MetricDescriptor] = []
        for collector in [*self._collectors.values(), self._self_monitor]:
            for desc in collector.describe():
                extra = tuple(k for k in self._extra_labels if k not in desc.labels)
                result.append(MetricDescriptor(desc.name, desc.kind, desc.labels + extra, desc.description, desc.unit))
        return result

    # ------------------------------------------------------------------
    # scrape
    # ------------------------------------------------------------------

    def collect_once(self, cancel: threading.Event | None = None) -> list[MetricSample]:
        """Run one full scrape and return its records.

        Returns only self-monitoring records (with ``up`` 0) when the
        connection or the domain listing fails, and an empty list when
        *cancel* is set before the scrape completes. A cancelled scrape is
        still recorded in the self-monitoring state, as down.
        """
        with self._scrape_lock:
            started = time.monotonic()
            self._state.record_scrape(time.time())
            for collector in [*self._collectors.values(), self._self_monitor]:
                collector.reset()

            result = _UnitResult()
            session: Session | None = None
            domain_count = 0
            up = False
            cancelled = False
            try:
                reconnects_before = self._guardian.reconnects
                session = self._guardian.ensure_live()
                if self._guardian.reconnects > reconnects_before:
                    self._state.record_reconnect()

                with self._enumerator.scrape(session) as domains:
                    domain_count = len(domains)
                    self._collect_domains(session, domains, result, cancel)
                    cancelled = cancel is not None and cancel.is_set()
                    if not cancelled:
                        for collector in self._host_collectors():
                            self._run_collector(collector, session, None, result)
                up = not cancelled
            except (ConnectionUnavailable, EnumerationFailed) as exc:
                logger.error("Scrape failed: %s", exc)
                self._state.record_error()
                result = _UnitResult()
                session = None

            duration = time.monotonic() - started
            self._state.finish_scrape(up, duration, domain_count)
            for collector in self._collectors.values():
                success = up and collector.name not in result.failed and collector.failures == 0
                self._state.record_collector(
                    collector.name, success, result.durations.get(collector.name, 0.0)
                )
            if cancelled:
                logger.info("Scrape cancelled, discarding partial results")
                return []

            samples = result.samples
            samples.extend(self._self_monitor.collect(session, None))
            return self._with_extra_labels(samples)

    def _collect_domains(
        self,
        session: Session,
        domains: list[DomainHandle],
        result: _UnitResult,
        cancel: threading.Event | None,
    ) -> None:
        """Run one unit per domain, at most ``max_concurrent`` at a time.

        A unit is only submitted when a slot is free, and its deadline
        counts from the moment its worker starts. A unit that overruns is
        abandoned: it gives up its slot, its records are dropped and every
        domain collector is marked failed for this scrape. The pool has a
        thread per domain, so queued units still start while abandoned ones
        stay blocked.
        """
        collectors = self._domain_collectors()
        if not domains or not collectors:
            return
        timeout = self._config.collection.timeout_seconds
        limit = self._config.collection.max_concurrent
        queue = collections.deque(domains)
        running: dict[concurrent.futures.Future[None], tuple[DomainHandle, _UnitResult]] = {}
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=len(domains),
            thread_name_prefix="virt-exporter-scrape",
        )
        try:
            while queue or running:
                if cancel is not None and cancel.is_set():
                    return
                while queue and len(running) < limit:
                    domain = queue.popleft()
                    unit = _UnitResult()
                    future = executor.submit(self._collect_domain, collectors, session, domain, unit)
                    running[future] = (domain, unit)

                done, _ = concurrent.futures.wait(
                    running, timeout=_POLL_SECONDS, return_when=concurrent.futures.FIRST_COMPLETED
                )
                for future in done:
                    domain, unit = running.pop(future)
                    self._merge_unit(future, domain, unit, collectors, result)

                now = time.monotonic()
                for future, (domain, unit) in list(running.items()):
                    if future.done() or unit.started is None or now - unit.started <= timeout:
                        continue
                    del running[future]
                    logger.warning(
                        "Collection for %s (%s) timed out after %.1fs", domain.name, domain.uuid, timeout
                    )
                    self._state.record_error()
                    result.failed.update(c.name for c in collectors)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _merge_unit(
        self,
        future: concurrent.futures.Future[None],
        domain: DomainHandle,
        unit: _UnitResult,
        collectors: list[BaseCollector],
        result: _UnitResult,
    ) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Collection for %s (%s) crashed: %r", domain.name, domain.uuid, exc)
            self._state.record_error()
            result.failed.update(c.name for c in collectors)
            return
        result.samples.extend(unit.samples)
        result.failed.update(unit.failed)
        for name, elapsed in unit.durations.items():
            result.durations[name] = result.durations.get(name, 0.0) + elapsed

    def _collect_domain(
        self,
        collectors: list[BaseCollector],
        session: Session,
        domain: DomainHandle,
        unit: _UnitResult,
    ) -> None:
        unit.started = time.monotonic()
        for collector in collectors:
            self._run_collector(collector, session, domain, unit)

    def _run_collector(
        self,
        collector: BaseCollector,
        session: Session,
        domain: DomainHandle | None,
        unit: _UnitResult,
    ) -> None:
        started = time.monotonic()
        try:
            unit.samples.extend(collector.collect(session, domain))
        except DomainReleased:
            # an abandoned unit kept running past its timeout
            logger.debug("Collector %s outlived its scrape", collector.name)
        except Exception:
            target = f"{domain.name} ({domain.uuid})" if domain is not None else session.uri
            logger.exception("Collector %s failed for %s", collector.name, target)
            self._state.record_error()
            unit.failed.add(collector.name)
        finally:
            elapsed = time.monotonic() - started
            unit.durations[collector.name] = unit.durations.get(collector.name, 0.0) + elapsed

    def _with_extra_labels(self, samples: list[MetricSample]) -> list[MetricSample]:
        if not self._extra_labels:
            return samples
        for s in samples:
            for key, value in self._extra_labels.items():
                s.labels.setdefault(key, value)
        return samples

    # ------------------------------------------------------------------
    # push mode
    # ------------------------------------------------------------------

    def add_sink(self, sink: Callable[[list[MetricSample]], None]) -> None:
        """Register a callback to receive every scrape's samples."""
        self._sinks.append(sink)

    def _run(self) -> None:
        """Background thread loop."""
        while not self._stop_event.is_set():
            samples = self.collect_once(cancel=self._stop_event)
            if samples:
                for sink in self._sinks:
                    try:
                        sink(samples)
                    except Exception:
                        logger.exception("Sink failed")
            self._stop_event.wait(self._config.collection.interval_seconds)

    def start(self) -> None:
        """Start scraping in the background on the configured interval."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="virt-exporter-push", daemon=True)
        self._thread.start()
        logger.info(
            "Background collection started (interval=%.1fs)", self._config.collection.interval_seconds
        )

    def stop(self) -> None:
        """Stop background scraping."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Background collection stopped")
