"""Discovery of a domain's block devices and network interfaces.

Names come from the domain's hardware descriptor (its XML definition).
When the descriptor cannot be fetched or declares nothing, a fixed list of
conventional names is probed against the statistics API and only names
that answer are kept.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

import libvirt
from lxml import etree

from .domains import DomainHandle

logger = logging.getLogger(__name__)


def _series(prefix: str, suffixes: Iterable[object]) -> list[str]:
    return [f"{prefix}{s}" for s in suffixes]


DISK_CANDIDATES: tuple[str, ...] = tuple(
    _series("vd", "abcdef")
    + _series("sd", "abcdef")
    + _series("hd", "abcd")
    + [f"nvme{i}n1" for i in range(3)]
    + _series("xvd", "abcd")
)

INTERFACE_CANDIDATES: tuple[str, ...] = tuple(
    _series("eth", range(6))
    + _series("ens", range(3, 9))
    + _series("enp0s", range(3, 9))
    + _series("eno", range(1, 5))
    + _series("vnet", range(6))
    + ["eth0.1", "eth0.2", "eth1.1", "eth1.2"]
    + _series("br", range(3))
    + ["virbr0", "virbr1", "wlan0", "wlan1", "wlp0s3", "wlp0s4"]
)


def _unique(names: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for name in names:
        if name and name not in seen:
            seen.add(name)
            result.append(name)
    return result


def parse_descriptor(xml: str) -> Any:
    """Parse a domain XML document, returning None if it is malformed."""
    try:
        return etree.fromstring(xml.encode("utf-8"))
    except etree.XMLSyntaxError as exc:
        logger.debug("Malformed domain descriptor: %s", exc)
        return None


def disk_targets(root: Any) -> list[str]:
    return _unique(root.xpath("./devices/disk/target/@dev"))


def interface_targets(root: Any) -> list[str]:
    return _unique(root.xpath("./devices/interface/target/@dev"))


class DeviceDiscoverer:
    """Finds the disk and interface names of a domain.

    Results are ordered and duplicate-free. Nothing is cached: every call
    reads the descriptor again, so a scrape always sees current hardware.
    """

    def __init__(
        self,
        disk_candidates: Iterable[str] = DISK_CANDIDATES,
        interface_candidates: Iterable[str] = INTERFACE_CANDIDATES,
    ) -> None:
        self._disk_candidates = tuple(disk_candidates)
        self._interface_candidates = tuple(interface_candidates)

    def descriptor(self, domain: DomainHandle) -> Any:
        """Fetch and parse the domain's descriptor, or None on failure."""
        try:
            xml = domain.dom.XMLDesc(0)
        except libvirt.libvirtError as exc:
            logger.debug("Cannot fetch descriptor for %s (%s): %s", domain.name, domain.uuid, exc)
            return None
        return parse_descriptor(xml)

    def discover_disks(self, domain: DomainHandle) -> list[str]:
        root = self.descriptor(domain)
        if root is not None:
            names = disk_targets(root)
            if names:
                return names
        return self._probe(domain, "disks", self._disk_candidates, domain.dom.blockStats)

    def discover_interfaces(self, domain: DomainHandle) -> list[str]:
        root = self.descriptor(domain)
        if root is not None:
            names = interface_targets(root)
            if names:
                return names
        return self._probe(domain, "interfaces", self._interface_candidates, domain.dom.interfaceStats)

    @staticmethod
    def _probe(
        domain: DomainHandle,
        kind: str,
        candidates: Iterable[str],
        stats_call: Callable[[str], Any],
    ) -> list[str]:
        found: list[str] = []
        for name in candidates:
            try:
                stats_call(name)
            except libvirt.libvirtError:
                continue
            found.append(name)
        if found:
            logger.debug("Probed %s for %s: %s", kind, domain.name, found)
        return _unique(found)
