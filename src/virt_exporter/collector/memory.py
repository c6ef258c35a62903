"""Balloon and memory statistics collector."""

from __future__ import annotations

from ..connection import Session
from ..domains import DomainHandle
from .base import DomainCollector, MetricSample, counter, gauge

# memoryStats() key -> (metric, multiplier). Sizes are reported in KiB.
_MEMORY_STATS = {
    "actual": ("libvirt_vm_memory_balloon_bytes", 1024),
    "unused": ("libvirt_vm_memory_unused_bytes", 1024),
    "available": ("libvirt_vm_memory_available_bytes", 1024),
    "usable": ("libvirt_vm_memory_usable_bytes", 1024),
    "rss": ("libvirt_vm_memory_rss_bytes", 1024),
    "disk_caches": ("libvirt_vm_memory_disk_caches_bytes", 1024),
    "swap_in": ("libvirt_vm_memory_swap_in_bytes_total", 1024),
    "swap_out": ("libvirt_vm_memory_swap_out_bytes_total", 1024),
    "major_fault": ("libvirt_vm_memory_major_faults_total", 1),
    "minor_fault": ("libvirt_vm_memory_minor_faults_total", 1),
}


class MemoryCollector(DomainCollector):
    """Collects balloon driver statistics for running domains.

    Only the keys the guest reports are emitted; a guest without a
    balloon driver typically reports ``actual`` and ``rss`` alone.
    """

    running_only = True
    descriptors = (
        gauge("libvirt_vm_memory_balloon_bytes", "Current balloon size", unit="bytes"),
        gauge("libvirt_vm_memory_unused_bytes", "Memory left unused by the guest", unit="bytes"),
        gauge("libvirt_vm_memory_available_bytes", "Memory visible to the guest", unit="bytes"),
        gauge("libvirt_vm_memory_usable_bytes", "Memory the guest can reclaim without swapping", unit="bytes"),
        gauge("libvirt_vm_memory_rss_bytes", "Resident set size of the domain process on the host", unit="bytes"),
        gauge("libvirt_vm_memory_disk_caches_bytes", "Guest memory used by disk caches", unit="bytes"),
        counter("libvirt_vm_memory_swap_in_bytes_total", "Memory swapped in by the guest", unit="bytes"),
        counter("libvirt_vm_memory_swap_out_bytes_total", "Memory swapped out by the guest", unit="bytes"),
        counter("libvirt_vm_memory_major_faults_total", "Major page faults in the guest"),
        counter("libvirt_vm_memory_minor_faults_total", "Minor page faults in the guest"),
    )

    @property
    def name(self) -> str:
        return "memory"

    def collect_domain(self, session: Session, domain: DomainHandle) -> list[MetricSample]:
        stats = self.domain_call(domain, "memoryStats", domain.dom.memoryStats)
        if not stats:
            return []
        labels = domain.labels
        samples: list[MetricSample] = []
        for key, (metric, multiplier) in _MEMORY_STATS.items():
            if key in stats:
                samples.append(self.sample(metric, stats[key] * multiplier, labels))
        return samples
