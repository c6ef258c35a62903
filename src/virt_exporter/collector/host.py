"""Connection and host level collector."""

from __future__ import annotations

import logging
from typing import Any

import libvirt
import psutil

from ..connection import Session
from ..discovery import parse_descriptor
from .base import HostCollector, MetricSample, counter, gauge
from .domain_info import is_local_qemu

logger = logging.getLogger(__name__)

_POOL_STATES = {
    libvirt.VIR_STORAGE_POOL_INACTIVE: "inactive",
    libvirt.VIR_STORAGE_POOL_BUILDING: "building",
    libvirt.VIR_STORAGE_POOL_RUNNING: "running",
    libvirt.VIR_STORAGE_POOL_DEGRADED: "degraded",
    libvirt.VIR_STORAGE_POOL_INACCESSIBLE: "inaccessible",
}

_POOL = ("pool",)
_NETWORK = ("network",)
_IFACE = ("interface",)


class HostInfoCollector(HostCollector):
    """Emits connection, hypervisor and host inventory records once per scrape."""

    descriptors = (
        gauge("libvirt_connection_alive", "1 if the management connection answers", ()),
        gauge("libvirt_active_domains", "Number of running domains", ()),
        gauge("libvirt_inactive_domains", "Number of defined but inactive domains", ()),
        gauge("libvirt_host_name", "Hostname reported by the hypervisor host", ("hostname",)),
        gauge("libvirt_host_driver_type", "Hypervisor driver of the connection", ("driver",)),
        gauge("libvirt_host_libvirt_version", "libvirt library version (major * 1e6 + minor * 1e3 + release)", ()),
        gauge("libvirt_host_hypervisor_version", "Hypervisor version (major * 1e6 + minor * 1e3 + release)", ()),
        gauge("libvirt_host_cpu_count", "Active physical CPUs on the host", ()),
        counter("libvirt_host_cpu_time_seconds_total", "Host CPU time by mode", ("mode",), "s"),
        gauge("libvirt_host_memory_total_bytes", "Physical memory of the host", (), "bytes"),
        gauge("libvirt_host_memory_free_bytes", "Free memory on the host", (), "bytes"),
        gauge("libvirt_storage_pool_info", "Storage pool metadata", ("pool", "type", "state")),
        gauge("libvirt_storage_pool_capacity_bytes", "Storage pool capacity", _POOL, "bytes"),
        gauge("libvirt_storage_pool_allocation_bytes", "Storage pool allocation", _POOL, "bytes"),
        gauge("libvirt_storage_pool_available_bytes", "Storage pool free space", _POOL, "bytes"),
        gauge("libvirt_storage_pool_volumes", "Volumes in an active storage pool", _POOL),
        gauge("libvirt_network_info", "Virtual network metadata", ("network", "bridge")),
        gauge("libvirt_network_active", "1 if the virtual network is active", _NETWORK),
        counter("libvirt_host_interface_rx_bytes_total", "Bytes received on a host interface", _IFACE, "bytes"),
        counter("libvirt_host_interface_tx_bytes_total", "Bytes sent on a host interface", _IFACE, "bytes"),
        counter("libvirt_host_interface_rx_packets_total", "Packets received on a host interface", _IFACE),
        counter("libvirt_host_interface_tx_packets_total", "Packets sent on a host interface", _IFACE),
    )

    @property
    def name(self) -> str:
        return "host"

    def _call(self, session: Session, operation: str, fn: Any, *args: Any) -> Any:
        return self.call(session.uri, operation, fn, *args)

    def collect_host(self, session: Session) -> list[MetricSample]:
        conn = session.conn
        samples = [self.sample("libvirt_connection_alive", 1 if session.is_alive() else 0, {})]

        for metric, operation, fn in (
            ("libvirt_active_domains", "numOfDomains", conn.numOfDomains),
            ("libvirt_inactive_domains", "numOfDefinedDomains", conn.numOfDefinedDomains),
            ("libvirt_host_libvirt_version", "getLibVersion", conn.getLibVersion),
            ("libvirt_host_hypervisor_version", "getVersion", conn.getVersion),
            ("libvirt_host_memory_free_bytes", "getFreeMemory", conn.getFreeMemory),
        ):
            value = self._call(session, operation, fn)
            if value is not None:
                samples.append(self.sample(metric, value, {}))

        hostname = self._call(session, "getHostname", conn.getHostname)
        if hostname:
            samples.append(self.sample("libvirt_host_name", 1, {"hostname": hostname}))
        driver = self._call(session, "getType", conn.getType)
        if driver:
            samples.append(self.sample("libvirt_host_driver_type", 1, {"driver": driver}))

        info = self._call(session, "getInfo", conn.getInfo)
        if info is not None:
            # [model, memory MiB, cpus, mhz, nodes, sockets, cores, threads]
            samples.append(self.sample("libvirt_host_cpu_count", info[2], {}))
            samples.append(self.sample("libvirt_host_memory_total_bytes", info[1] * 1024 * 1024, {}))

        cpu_stats = self._call(session, "getCPUStats", conn.getCPUStats, libvirt.VIR_NODE_CPU_STATS_ALL_CPUS, 0)
        if cpu_stats:
            for mode, value in sorted(cpu_stats.items()):
                samples.append(self.sample("libvirt_host_cpu_time_seconds_total", value / 1e9, {"mode": mode}))

        samples.extend(self._storage_pools(session))
        samples.extend(self._networks(session))
        if is_local_qemu(session.uri):
            samples.extend(self._host_interfaces(session))
        return samples

    def _storage_pools(self, session: Session) -> list[MetricSample]:
        pools = self._call(session, "listAllStoragePools", session.conn.listAllStoragePools, 0)
        samples: list[MetricSample] = []
        for pool in pools or []:
            name = self._call(session, "storagePool.name", pool.name)
            info = self._call(session, f"storagePool.info({name})", pool.info)
            if name is None or info is None:
                continue
            state, capacity, allocation, available = info[:4]
            xml = self._call(session, f"storagePool.XMLDesc({name})", pool.XMLDesc, 0)
            root = parse_descriptor(xml) if xml else None
            pool_type = root.get("type", "") if root is not None else ""
            labels = {"pool": name}
            samples.append(self.sample(
                "libvirt_storage_pool_info",
                1,
                {"pool": name, "type": pool_type, "state": _POOL_STATES.get(state, "unknown")},
            ))
            samples.append(self.sample("libvirt_storage_pool_capacity_bytes", capacity, labels))
            samples.append(self.sample("libvirt_storage_pool_allocation_bytes", allocation, labels))
            samples.append(self.sample("libvirt_storage_pool_available_bytes", available, labels))
            if state == libvirt.VIR_STORAGE_POOL_RUNNING:
                volumes = self._call(session, f"storagePool.numOfVolumes({name})", pool.numOfVolumes)
                if volumes is not None:
                    samples.append(self.sample("libvirt_storage_pool_volumes", volumes, labels))
        return samples

    def _networks(self, session: Session) -> list[MetricSample]:
        networks = self._call(session, "listAllNetworks", session.conn.listAllNetworks, 0)
        samples: list[MetricSample] = []
        for net in networks or []:
            name = self._call(session, "network.name", net.name)
            if name is None:
                continue
            active = self._call(session, f"network.isActive({name})", net.isActive)
            bridge = self._call(session, f"network.bridgeName({name})", net.bridgeName)
            samples.append(self.sample("libvirt_network_info", 1, {"network": name, "bridge": bridge or ""}))
            if active is not None:
                samples.append(self.sample("libvirt_network_active", 1 if active else 0, {"network": name}))
        return samples

    def _host_interfaces(self, session: Session) -> list[MetricSample]:
        """Traffic of the host interfaces libvirt manages, read from the local kernel."""
        ifaces = self._call(
            session,
            "listAllInterfaces",
            session.conn.listAllInterfaces,
            libvirt.VIR_CONNECT_LIST_INTERFACES_ACTIVE,
        )
        if not ifaces:
            return []
        counters = psutil.net_io_counters(pernic=True)
        samples: list[MetricSample] = []
        for iface in ifaces:
            name = self._call(session, "interface.name", iface.name)
            nio = counters.get(name) if name else None
            if nio is None:
                continue
            labels = {"interface": name}
            samples.append(self.sample("libvirt_host_interface_rx_bytes_total", nio.bytes_recv, labels))
            samples.append(self.sample("libvirt_host_interface_tx_bytes_total", nio.bytes_sent, labels))
            samples.append(self.sample("libvirt_host_interface_rx_packets_total", nio.packets_recv, labels))
            samples.append(self.sample("libvirt_host_interface_tx_packets_total", nio.packets_sent, labels))
        return samples
