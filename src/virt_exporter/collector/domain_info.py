"""Domain identity and lifecycle collector."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from urllib.parse import urlparse

import psutil

from ..connection import Session
from ..domains import DomainHandle
from .base import DomainCollector, MetricSample, counter, gauge

logger = logging.getLogger(__name__)

QEMU_PID_DIR = Path("/run/libvirt/qemu")


def is_local_qemu(uri: str) -> bool:
    """True for ``qemu:///system``-style URIs that address this machine."""
    parsed = urlparse(uri)
    return parsed.scheme.startswith("qemu") and not parsed.hostname


def qemu_boot_time(name: str, pid_dir: Path = QEMU_PID_DIR) -> float | None:
    """Start time of a domain's QEMU process, or None if unknown."""
    try:
        pid = int((pid_dir / f"{name}.pid").read_text().strip())
        return psutil.Process(pid).create_time()
    except (OSError, ValueError, psutil.Error):
        return None


class DomainInfoCollector(DomainCollector):
    """Emits one identity record set for every domain, running or not."""

    descriptors = (
        gauge("libvirt_vm_status", "Domain state code (1=running, 3=paused, 5=shutoff, ...)"),
        gauge("libvirt_vm_running", "1 if the domain is running, 0 otherwise"),
        gauge("libvirt_vm_persistent", "1 if the domain has a persistent definition"),
        gauge("libvirt_vm_autostart", "1 if the domain starts with the host"),
        gauge("libvirt_vm_managed_save", "1 if the domain has a managed save image"),
        gauge("libvirt_vm_memory_max_bytes", "Maximum memory allowed for the domain", unit="bytes"),
        gauge("libvirt_vm_memory_current_bytes", "Memory currently assigned to the domain", unit="bytes"),
        gauge("libvirt_vm_vcpus", "Number of virtual CPUs assigned"),
        counter("libvirt_vm_cpu_time_seconds_total", "CPU time consumed by the domain", unit="s"),
        gauge("libvirt_vm_uptime_seconds", "Seconds since the domain was started", unit="s"),
    )

    def __init__(self, pid_dir: Path = QEMU_PID_DIR) -> None:
        super().__init__()
        self._pid_dir = pid_dir

    @property
    def name(self) -> str:
        return "domain_info"

    def collect_domain(self, session: Session, domain: DomainHandle) -> list[MetricSample]:
        labels = domain.labels
        samples = [
            self.sample("libvirt_vm_status", domain.state, labels),
            self.sample("libvirt_vm_running", 1 if domain.running else 0, labels),
        ]

        dom = domain.dom
        for metric, operation, fn in (
            ("libvirt_vm_persistent", "isPersistent", dom.isPersistent),
            ("libvirt_vm_autostart", "autostart", dom.autostart),
        ):
            value = self.domain_call(domain, operation, fn)
            if value is not None:
                samples.append(self.sample(metric, 1 if value else 0, labels))

        managed = self.domain_call(domain, "hasManagedSaveImage", dom.hasManagedSaveImage, 0)
        if managed is not None:
            samples.append(self.sample("libvirt_vm_managed_save", 1 if managed else 0, labels))

        info = self.domain_call(domain, "info", dom.info)
        if info is not None:
            _state, max_mem_kib, mem_kib, nr_vcpus, cpu_time_ns = info[:5]
            samples.append(self.sample("libvirt_vm_memory_max_bytes", max_mem_kib * 1024, labels))
            samples.append(self.sample("libvirt_vm_memory_current_bytes", mem_kib * 1024, labels))
            samples.append(self.sample("libvirt_vm_vcpus", nr_vcpus, labels))
            samples.append(self.sample("libvirt_vm_cpu_time_seconds_total", cpu_time_ns / 1e9, labels))

        if domain.running and is_local_qemu(session.uri):
            booted = qemu_boot_time(domain.name, self._pid_dir)
            if booted is not None:
                samples.append(self.sample("libvirt_vm_uptime_seconds", max(0.0, time.time() - booted), labels))

        return samples
