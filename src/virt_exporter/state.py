"""Process-wide self-monitoring state."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field


@dataclass
class CollectorStatus:
    """Outcome of one collector in the most recent scrape."""

    success: bool = True
    duration_seconds: float = 0.0


@dataclass
class ExporterState:
    """Counters and last-scrape facts about the exporter itself.

    One instance lives for the whole process and is shared by reference
    with the self-monitoring collector. Counters only reset on restart.
    """

    scrapes_total: int = 0
    scrape_errors_total: int = 0
    reconnects_total: int = 0
    cache_hits_total: int = 0
    cache_misses_total: int = 0
    last_scrape_timestamp: float = 0.0
    last_scrape_duration: float = 0.0
    domains_discovered: int = 0
    up: bool = False
    collectors: dict[str, CollectorStatus] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_scrape(self, timestamp: float) -> None:
        with self._lock:
            self.scrapes_total += 1
            self.last_scrape_timestamp = timestamp

    def record_error(self, count: int = 1) -> None:
        with self._lock:
            self.scrape_errors_total += count

    def record_reconnect(self) -> None:
        with self._lock:
            self.reconnects_total += 1

    def record_collector(self, name: str, success: bool, duration_seconds: float) -> None:
        with self._lock:
            self.collectors[name] = CollectorStatus(success, duration_seconds)

    def finish_scrape(self, up: bool, duration_seconds: float, domains: int) -> None:
        with self._lock:
            self.up = up
            self.last_scrape_duration = duration_seconds
            self.domains_discovered = domains

    def snapshot(self) -> ExporterState:
        """Consistent copy for reporting."""
        with self._lock:
            return ExporterState(
                scrapes_total=self.scrapes_total,
                scrape_errors_total=self.scrape_errors_total,
                reconnects_total=self.reconnects_total,
                cache_hits_total=self.cache_hits_total,
                cache_misses_total=self.cache_misses_total,
                last_scrape_timestamp=self.last_scrape_timestamp,
                last_scrape_duration=self.last_scrape_duration,
                domains_discovered=self.domains_discovered,
                up=self.up,
                collectors=dict(self.collectors),
            )
