"""vCPU and CPU scheduling collector."""

from __future__ import annotations

from ..connection import Session
from ..domains import DomainHandle
from .base import DOMAIN_LABELS, DomainCollector, MetricSample, counter, gauge

_SCHED_PARAMS = {
    "cpu_shares": "libvirt_vm_cpu_shares",
    "vcpu_period": "libvirt_vm_vcpu_period_microseconds",
    "vcpu_quota": "libvirt_vm_vcpu_quota_microseconds",
}


class CpuCollector(DomainCollector):
    """Collects vCPU counts and CPU time for running domains."""

    running_only = True
    descriptors = (
        gauge("libvirt_vm_vcpu_max", "Maximum number of vCPUs the domain may use"),
        gauge("libvirt_vm_vcpu_current", "Number of vCPUs currently online"),
        counter("libvirt_vm_cpu_time_nanoseconds_total", "Total CPU time used by the domain", unit="ns"),
        counter("libvirt_vm_cpu_user_time_nanoseconds_total", "CPU time spent in user mode", unit="ns"),
        counter("libvirt_vm_cpu_system_time_nanoseconds_total", "CPU time spent in kernel mode", unit="ns"),
        counter(
            "libvirt_vm_vcpu_time_nanoseconds_total",
            "CPU time used by each vCPU",
            labels=DOMAIN_LABELS + ("vcpu",),
            unit="ns",
        ),
        gauge("libvirt_vm_cpu_shares", "Relative CPU weight of the domain"),
        gauge("libvirt_vm_vcpu_period_microseconds", "vCPU bandwidth enforcement period", unit="us"),
        gauge("libvirt_vm_vcpu_quota_microseconds", "vCPU bandwidth quota per period, -1 if unlimited", unit="us"),
    )

    @property
    def name(self) -> str:
        return "cpu"

    def collect_domain(self, session: Session, domain: DomainHandle) -> list[MetricSample]:
        labels = domain.labels
        dom = domain.dom
        samples: list[MetricSample] = []

        max_vcpus = self.domain_call(domain, "maxVcpus", dom.maxVcpus)
        if max_vcpus is not None:
            samples.append(self.sample("libvirt_vm_vcpu_max", max_vcpus, labels))

        vcpus = self.domain_call(domain, "vcpus", dom.vcpus)
        if vcpus is not None:
            vcpu_info = vcpus[0]
            samples.append(self.sample("libvirt_vm_vcpu_current", len(vcpu_info), labels))
            for number, _state, cpu_time, _cpu in vcpu_info:
                samples.append(self.sample(
                    "libvirt_vm_vcpu_time_nanoseconds_total",
                    cpu_time,
                    {**labels, "vcpu": str(number)},
                ))

        stats = self.domain_call(domain, "getCPUStats", dom.getCPUStats, True)
        if stats:
            total = stats[0]
            if "cpu_time" in total:
                samples.append(self.sample("libvirt_vm_cpu_time_nanoseconds_total", total["cpu_time"], labels))
            # user/system are only reported when the cgroup exposes them
            if total.get("user_time", 0) > 0:
                samples.append(self.sample("libvirt_vm_cpu_user_time_nanoseconds_total", total["user_time"], labels))
            if total.get("system_time", 0) > 0:
                samples.append(self.sample("libvirt_vm_cpu_system_time_nanoseconds_total", total["system_time"], labels))

        params = self.domain_call(domain, "schedulerParameters", dom.schedulerParameters)
        if params:
            for key, metric in _SCHED_PARAMS.items():
                if key in params:
                    samples.append(self.sample(metric, params[key], labels))

        return samples
