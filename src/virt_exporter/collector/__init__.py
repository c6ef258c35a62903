"""Metric collectors for libvirt domains and hosts."""
