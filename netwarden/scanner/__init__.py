"""Scanner package: probes, presets and the bounded-concurrency scan engine."""

from .engine import ConcurrencyLimits, ScanBudget, ScanJob, scan_hosts, start_scan
from .fingerprinting import grab_banner, identify_service
from .ip_utils import expand_targets
from .ports import PORT_PRESETS, resolve_ports
from .probe import tcp_probe, udp_probe

__all__ = [
    "ConcurrencyLimits",
    "PORT_PRESETS",
    "ScanBudget",
    "ScanJob",
    "expand_targets",
    "grab_banner",
    "identify_service",
    "resolve_ports",
    "scan_hosts",
    "start_scan",
    "tcp_probe",
    "udp_probe",
]
