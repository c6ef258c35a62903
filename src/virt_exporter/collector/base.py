"""Base interface for libvirt metric collectors."""

from __future__ import annotations

import abc
import enum
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

import libvirt

from ..connection import Session
from ..domains import DomainHandle
from ..errors import is_domain_gone, is_unsupported

logger = logging.getLogger(__name__)

DOMAIN_LABELS = ("domain", "uuid")


class MetricKind(str, enum.Enum):
    """Monotonic counter or point-in-time gauge."""

    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass(frozen=True)
class MetricDescriptor:
    """Static schema of one metric a collector may emit."""

    name: str
    kind: MetricKind
    labels: tuple[str, ...] = ()
    description: str = ""
    unit: str = ""


@dataclass
class MetricSample:
    """A single metric data point."""

    name: str
    value: float
    unit: str
    labels: dict[str, str]
    description: str = ""
    kind: MetricKind = MetricKind.GAUGE


def gauge(name: str, description: str, labels: tuple[str, ...] = DOMAIN_LABELS, unit: str = "") -> MetricDescriptor:
    return MetricDescriptor(name, MetricKind.GAUGE, labels, description, unit)


def counter(name: str, description: str, labels: tuple[str, ...] = DOMAIN_LABELS, unit: str = "") -> MetricDescriptor:
    return MetricDescriptor(name, MetricKind.COUNTER, labels, description, unit)


class BaseCollector(abc.ABC):
    """Abstract base class for metric collectors.

    Collectors keep only their descriptors and a per-scrape failure count
    as state. ``reset`` is called by the orchestrator at the start of
    every scrape.
    """

    #: ``"domain"`` collectors run once per domain, ``"host"`` once per scrape.
    scope = "domain"
    descriptors: tuple[MetricDescriptor, ...] = ()

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._failures = 0
        self._by_name = {d.name: d for d in self.descriptors}

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Collector name used in configuration and output."""

    @abc.abstractmethod
    def collect(self, session: Session, domain: DomainHandle | None) -> list[MetricSample]:
        """Collect metrics for *domain* (or for the host when scope is ``host``)."""

    def describe(self) -> list[MetricDescriptor]:
        return list(self.descriptors)

    def reset(self) -> None:
        with self._lock:
            self._failures = 0

    @property
    def failures(self) -> int:
        """Unexpected per-call failures seen since the last reset."""
        return self._failures

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1

    def sample(
        self,
        name: str,
        value: float,
        labels: dict[str, str],
    ) -> MetricSample:
        """Build a sample for a declared metric."""
        desc = self._by_name[name]
        return MetricSample(
            name=name,
            value=float(value),
            unit=desc.unit,
            labels=labels,
            description=desc.description,
            kind=desc.kind,
        )

    def call(self, target: str, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run one management API call, returning None if it failed.

        Domain-gone races are swallowed silently and unsupported calls are
        skipped. Anything else is logged with *target*
        and *operation* and counted as a failure.
        """
        try:
            return fn(*args)
        except libvirt.libvirtError as exc:
            if is_domain_gone(exc):
                return None
            if is_unsupported(exc):
                logger.debug("%s: %s not supported for %s", self.name, operation, target)
                return None
            logger.warning("%s: %s failed for %s: %s", self.name, operation, target, exc)
            self.record_failure()
            return None


class DomainCollector(BaseCollector):
    """Collector invoked once per enumerated domain."""

    scope = "domain"
    #: When True, non-running domains produce no records.
    running_only = False

    def collect(self, session: Session, domain: DomainHandle | None) -> list[MetricSample]:
        if domain is None:
            return []
        if self.running_only and not domain.running:
            return []
        return self.collect_domain(session, domain)

    @abc.abstractmethod
    def collect_domain(self, session: Session, domain: DomainHandle) -> list[MetricSample]:
        """Collect records for one domain."""

    def domain_call(self, domain: DomainHandle, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        return self.call(f"{domain.name} ({domain.uuid})", operation, fn, *args)


class HostCollector(BaseCollector):
    """Collector that emits at most once per scrape.

    The first ``collect`` after ``reset`` claims the scrape; later calls in
    the same scrape return nothing.
    """

    scope = "host"

    def __init__(self) -> None:
        super().__init__()
        self._collected = False

    def reset(self) -> None:
        super().reset()
        with self._lock:
            self._collected = False

    def _claim(self) -> bool:
        with self._lock:
            if self._collected:
                return False
            self._collected = True
            return True

    def collect(self, session: Session, domain: DomainHandle | None = None) -> list[MetricSample]:
        if not self._claim():
            return []
        return self.collect_host(session)

    @abc.abstractmethod
    def collect_host(self, session: Session) -> list[MetricSample]:
        """Collect host-level records."""

