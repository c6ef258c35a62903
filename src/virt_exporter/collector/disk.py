"""Block device I/O collector."""

from __future__ import annotations

import logging
from typing import Any

import libvirt

from ..connection import Session
from ..discovery import DeviceDiscoverer
from ..domains import DomainHandle
from ..errors import is_domain_gone
from .base import DOMAIN_LABELS, DomainCollector, MetricSample, counter, gauge

logger = logging.getLogger(__name__)

DISK_LABELS = DOMAIN_LABELS + ("device",)

# blockStatsFlags() key -> (metric, divisor); times are in nanoseconds
_FLAG_STATS = {
    "rd_bytes": ("libvirt_vm_disk_read_bytes_total", 1),
    "wr_bytes": ("libvirt_vm_disk_write_bytes_total", 1),
    "rd_operations": ("libvirt_vm_disk_read_ops_total", 1),
    "wr_operations": ("libvirt_vm_disk_write_ops_total", 1),
    "flush_operations": ("libvirt_vm_disk_flush_ops_total", 1),
    "rd_total_times": ("libvirt_vm_disk_read_time_seconds_total", 1e9),
    "wr_total_times": ("libvirt_vm_disk_write_time_seconds_total", 1e9),
    "flush_total_times": ("libvirt_vm_disk_flush_time_seconds_total", 1e9),
    "errs": ("libvirt_vm_disk_errors_total", 1),
}


def _legacy_stats(stats: Any) -> dict[str, int]:
    """Map the blockStats() tuple onto blockStatsFlags() key names."""
    rd_req, rd_bytes, wr_req, wr_bytes, errs = stats
    result = {
        "rd_operations": rd_req,
        "rd_bytes": rd_bytes,
        "wr_operations": wr_req,
        "wr_bytes": wr_bytes,
    }
    # -1 means the hypervisor does not track errors
    if errs >= 0:
        result["errs"] = errs
    return result


class DiskCollector(DomainCollector):
    """Collects per-device block statistics for running domains."""

    running_only = True
    descriptors = (
        counter("libvirt_vm_disk_read_bytes_total", "Bytes read from the device", DISK_LABELS, "bytes"),
        counter("libvirt_vm_disk_write_bytes_total", "Bytes written to the device", DISK_LABELS, "bytes"),
        counter("libvirt_vm_disk_read_ops_total", "Read requests completed", DISK_LABELS),
        counter("libvirt_vm_disk_write_ops_total", "Write requests completed", DISK_LABELS),
        counter("libvirt_vm_disk_flush_ops_total", "Flush requests completed", DISK_LABELS),
        counter("libvirt_vm_disk_read_time_seconds_total", "Time spent on reads", DISK_LABELS, "s"),
        counter("libvirt_vm_disk_write_time_seconds_total", "Time spent on writes", DISK_LABELS, "s"),
        counter("libvirt_vm_disk_flush_time_seconds_total", "Time spent on flushes", DISK_LABELS, "s"),
        counter("libvirt_vm_disk_errors_total", "I/O errors reported for the device", DISK_LABELS),
        gauge("libvirt_vm_disk_capacity_bytes", "Logical size of the device", DISK_LABELS, "bytes"),
        gauge("libvirt_vm_disk_allocation_bytes", "Host storage allocated to the device", DISK_LABELS, "bytes"),
        gauge("libvirt_vm_disk_physical_bytes", "Physical size of the backing image", DISK_LABELS, "bytes"),
        gauge("libvirt_vm_disk_block_job_active", "1 if a block job runs on the device", DISK_LABELS),
        gauge("libvirt_vm_disk_block_job_progress_ratio", "Block job progress between 0 and 1", DISK_LABELS),
    )

    def __init__(self, discoverer: DeviceDiscoverer) -> None:
        super().__init__()
        self._discoverer = discoverer

    @property
    def name(self) -> str:
        return "disk"

    def _stats(self, domain: DomainHandle, device: str) -> dict[str, int] | None:
        try:
            return dict(domain.dom.blockStatsFlags(device, 0))
        except libvirt.libvirtError as exc:
            if is_domain_gone(exc):
                return None
            logger.debug("blockStatsFlags(%s) unavailable for %s, using blockStats: %s", device, domain.name, exc)
        legacy = self.domain_call(domain, f"blockStats({device})", domain.dom.blockStats, device)
        return _legacy_stats(legacy) if legacy is not None else None

    def collect_domain(self, session: Session, domain: DomainHandle) -> list[MetricSample]:
        samples: list[MetricSample] = []
        for device in self._discoverer.discover_disks(domain):
            labels = {**domain.labels, "device": device}

            stats = self._stats(domain, device)
            if stats is not None:
                for key, (metric, divisor) in _FLAG_STATS.items():
                    if key in stats:
                        samples.append(self.sample(metric, stats[key] / divisor, labels))

            info = self.domain_call(domain, f"blockInfo({device})", domain.dom.blockInfo, device, 0)
            if info is not None:
                capacity, allocation, physical = info[:3]
                samples.append(self.sample("libvirt_vm_disk_capacity_bytes", capacity, labels))
                samples.append(self.sample("libvirt_vm_disk_allocation_bytes", allocation, labels))
                samples.append(self.sample("libvirt_vm_disk_physical_bytes", physical, labels))

            job = self.domain_call(domain, f"blockJobInfo({device})", domain.dom.blockJobInfo, device, 0)
            if job is not None:
                samples.append(self.sample("libvirt_vm_disk_block_job_active", 1 if job else 0, labels))
                if job and job.get("end"):
                    samples.append(self.sample(
                        "libvirt_vm_disk_block_job_progress_ratio",
                        job.get("cur", 0) / job["end"],
                        labels,
                    ))
        return samples
