"""Per-scrape domain enumeration with scoped handle release."""

from __future__ import annotations

import contextlib
import logging
from typing import Any, Iterator

import libvirt

from .connection import Session
from .errors import DomainReleased, EnumerationFailed

logger = logging.getLogger(__name__)

_STATE_NAMES = {
    libvirt.VIR_DOMAIN_NOSTATE: "nostate",
    libvirt.VIR_DOMAIN_RUNNING: "running",
    libvirt.VIR_DOMAIN_BLOCKED: "blocked",
    libvirt.VIR_DOMAIN_PAUSED: "paused",
    libvirt.VIR_DOMAIN_SHUTDOWN: "shutdown",
    libvirt.VIR_DOMAIN_SHUTOFF: "shutoff",
    libvirt.VIR_DOMAIN_CRASHED: "crashed",
    libvirt.VIR_DOMAIN_PMSUSPENDED: "pmsuspended",
}


def state_name(state: int) -> str:
    return _STATE_NAMES.get(state, "unknown")


class DomainHandle:
    """A borrowed reference to one domain, valid for a single scrape.

    ``name``, ``uuid`` and ``state`` are read once at enumeration time and
    reused for every record emitted for the domain in that scrape.
    """

    def __init__(self, dom: Any, name: str, uuid: str, state: int) -> None:
        self._dom = dom
        self.name = name
        self.uuid = uuid
        self.state = state

    @property
    def dom(self) -> Any:
        if self._dom is None:
            raise DomainReleased(f"domain {self.name} used after release")
        return self._dom

    @property
    def running(self) -> bool:
        return self.state == libvirt.VIR_DOMAIN_RUNNING

    @property
    def released(self) -> bool:
        return self._dom is None

    @property
    def labels(self) -> dict[str, str]:
        return {"domain": self.name, "uuid": self.uuid}

    def release(self) -> None:
        self._dom = None

    def __repr__(self) -> str:
        return f"DomainHandle({self.name!r}, {self.uuid!r}, {state_name(self.state)})"


class DomainEnumerator:
    """Lists every defined domain, running or not."""

    flags = libvirt.VIR_CONNECT_LIST_DOMAINS_ACTIVE | libvirt.VIR_CONNECT_LIST_DOMAINS_INACTIVE

    def list_domains(self, session: Session) -> list[DomainHandle]:
        try:
            domains = session.conn.listAllDomains(self.flags)
        except libvirt.libvirtError as exc:
            raise EnumerationFailed(f"listing domains on {session.uri} failed: {exc}") from exc

        handles: list[DomainHandle] = []
        for dom in domains:
            try:
                name = dom.name()
                uuid = dom.UUIDString()
                state, _reason = dom.state()
            except libvirt.libvirtError as exc:
                # undefined between listing and lookup
                logger.debug("Skipping domain that vanished during enumeration: %s", exc)
                continue
            handles.append(DomainHandle(dom, name, uuid, state))
        return handles

    @contextlib.contextmanager
    def scrape(self, session: Session) -> Iterator[list[DomainHandle]]:
        """Yield this scrape's handles and release all of them on exit."""
        handles = self.list_domains(session)
        try:
            yield handles
        finally:
            for handle in handles:
                handle.release()
