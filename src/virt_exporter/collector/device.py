"""Device, snapshot and background job inventory collector."""

from __future__ import annotations

import libvirt

from ..connection import Session
from ..discovery import parse_descriptor
from ..domains import DomainHandle
from .base import DomainCollector, MetricSample, gauge

_HOSTDEV_METRICS = {
    "pci": "libvirt_vm_pci_devices",
    "usb": "libvirt_vm_usb_devices",
    "mdev": "libvirt_vm_mdev_devices",
}


class DeviceCollector(DomainCollector):
    """Reports device inventory from the domain descriptor plus snapshot counts.

    Inventory and snapshots are read for every domain. Job progress is
    only queried for running domains.
    """

    descriptors = (
        gauge("libvirt_vm_has_tpm", "1 if the domain has a TPM device"),
        gauge("libvirt_vm_has_rng", "1 if the domain has a random number generator device"),
        gauge("libvirt_vm_pci_devices", "PCI host devices passed through to the domain"),
        gauge("libvirt_vm_usb_devices", "USB host devices passed through to the domain"),
        gauge("libvirt_vm_mdev_devices", "Mediated devices assigned to the domain"),
        gauge("libvirt_vm_snapshot_count", "Number of snapshots of the domain"),
        gauge("libvirt_vm_job_type", "Type of the active background job (0=none, 1=bounded, 2=unbounded)"),
        gauge("libvirt_vm_job_elapsed_seconds", "Time the active job has been running", unit="s"),
        gauge("libvirt_vm_job_data_remaining_bytes", "Data left to process by the active job", unit="bytes"),
        gauge("libvirt_vm_job_progress_ratio", "Progress of a bounded job between 0 and 1"),
    )

    @property
    def name(self) -> str:
        return "device"

    def collect_domain(self, session: Session, domain: DomainHandle) -> list[MetricSample]:
        labels = domain.labels
        dom = domain.dom
        samples: list[MetricSample] = []

        xml = self.domain_call(domain, "XMLDesc", dom.XMLDesc, 0)
        root = parse_descriptor(xml) if xml is not None else None
        if root is not None:
            samples.append(self.sample("libvirt_vm_has_tpm", 1 if root.xpath("./devices/tpm") else 0, labels))
            samples.append(self.sample("libvirt_vm_has_rng", 1 if root.xpath("./devices/rng") else 0, labels))
            for dev_type, metric in _HOSTDEV_METRICS.items():
                count = len(root.xpath("./devices/hostdev[@type=$t]", t=dev_type))
                samples.append(self.sample(metric, count, labels))

        snapshots = self.domain_call(domain, "snapshotNum", dom.snapshotNum, 0)
        if snapshots is not None:
            samples.append(self.sample("libvirt_vm_snapshot_count", snapshots, labels))

        if domain.running:
            samples.extend(self._job(domain))
        return samples

    def _job(self, domain: DomainHandle) -> list[MetricSample]:
        info = self.domain_call(domain, "jobInfo", domain.dom.jobInfo)
        if not info:
            return []
        labels = domain.labels
        job_type, elapsed_ms = info[0], info[1]
        data_total, data_processed, data_remaining = info[3], info[4], info[5]
        samples = [self.sample("libvirt_vm_job_type", job_type, labels)]
        if job_type == libvirt.VIR_DOMAIN_JOB_NONE:
            return samples
        samples.append(self.sample("libvirt_vm_job_elapsed_seconds", elapsed_ms / 1000.0, labels))
        samples.append(self.sample("libvirt_vm_job_data_remaining_bytes", data_remaining, labels))
        if job_type == libvirt.VIR_DOMAIN_JOB_BOUNDED and data_total > 0:
            samples.append(self.sample("libvirt_vm_job_progress_ratio", data_processed / data_total, labels))
        return samples
