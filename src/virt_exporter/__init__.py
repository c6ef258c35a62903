"""virt_exporter - Prometheus exporter for libvirt domains and hosts."""

__version__ = "0.3.0"
