"""Exception types and libvirt error classification."""

from __future__ import annotations

import libvirt


class VirtExporterError(Exception):
    """Base class for exporter errors."""


class ConnectionUnavailable(VirtExporterError):
    """No live management session could be established within the retry budget."""


class EnumerationFailed(VirtExporterError):
    """The domain listing call failed."""


class DomainReleased(VirtExporterError):
    """A domain handle was used after its scrape scope ended."""


def _error_code(exc: BaseException) -> int | None:
    if not isinstance(exc, libvirt.libvirtError):
        return None
    return exc.get_error_code()


def is_domain_gone(exc: BaseException) -> bool:
    """Return True when *exc* means the domain stopped or vanished mid-scrape.

    These are expected races between enumeration and a detailed query and
    are never reported as failures.
    """
    return _error_code(exc) in (
        libvirt.VIR_ERR_OPERATION_INVALID,
        libvirt.VIR_ERR_NO_DOMAIN,
    )


def is_unsupported(exc: BaseException) -> bool:
    """Return True when the driver does not implement the requested call."""
    return _error_code(exc) in (
        libvirt.VIR_ERR_NO_SUPPORT,
        libvirt.VIR_ERR_ARGUMENT_UNSUPPORTED,
    )
