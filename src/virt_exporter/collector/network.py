"""Network interface I/O collector."""

from __future__ import annotations

from ..connection import Session
from ..discovery import DeviceDiscoverer
from ..domains import DomainHandle
from .base import DOMAIN_LABELS, DomainCollector, MetricSample, counter

INTERFACE_LABELS = DOMAIN_LABELS + ("interface",)

# Field order of the interfaceStats() tuple.
_FIELDS = (
    ("libvirt_vm_network_rx_bytes_total", "Bytes received", "bytes"),
    ("libvirt_vm_network_rx_packets_total", "Packets received", ""),
    ("libvirt_vm_network_rx_errors_total", "Receive errors", ""),
    ("libvirt_vm_network_rx_drops_total", "Received packets dropped", ""),
    ("libvirt_vm_network_tx_bytes_total", "Bytes transmitted", "bytes"),
    ("libvirt_vm_network_tx_packets_total", "Packets transmitted", ""),
    ("libvirt_vm_network_tx_errors_total", "Transmit errors", ""),
    ("libvirt_vm_network_tx_drops_total", "Transmitted packets dropped", ""),
)


class NetworkCollector(DomainCollector):
    """Collects per-interface traffic counters for running domains."""

    running_only = True
    descriptors = tuple(
        counter(name, description, INTERFACE_LABELS, unit) for name, description, unit in _FIELDS
    )

    def __init__(self, discoverer: DeviceDiscoverer) -> None:
        super().__init__()
        self._discoverer = discoverer

    @property
    def name(self) -> str:
        return "network"

    def collect_domain(self, session: Session, domain: DomainHandle) -> list[MetricSample]:
        samples: list[MetricSample] = []
        for iface in self._discoverer.discover_interfaces(domain):
            stats = self.domain_call(domain, f"interfaceStats({iface})", domain.dom.interfaceStats, iface)
            if stats is None:
                continue
            labels = {**domain.labels, "interface": iface}
            for (metric, _description, _unit), value in zip(_FIELDS, stats):
                # -1 means the driver does not track this counter
                if value >= 0:
                    samples.append(self.sample(metric, value, labels))
        return samples
