"""One scan cycle end to end: scan, classify, track history, detect anomalies, record."""

from __future__ import annotations

from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
import logging
from pathlib import Path
import threading
import time
from typing import Any
import uuid

from netwarden.analytics.baseline import build_baseline, detect_anomalies
from netwarden.analytics.history import HistoryTracker
from netwarden.config import BaselineConfig, ScanConfig
from netwarden.errors import InsufficientData
from netwarden.export.logging import append_cycle_summary
from netwarden.intel.classify import classify_all
from netwarden.models import AnomalyFinding, Baseline, ChangeEvent, Device, ScanResult, ThreatFinding, utc_now
from netwarden.scanner.engine import ConcurrencyLimits, ScanBudget, scan_hosts
from netwarden.scanner.ip_utils import expand_targets
from netwarden.scanner.ports import resolve_ports
from netwarden.scanner.probe import Probe, tcp_probe, udp_probe
from netwarden.storage import record_scan_history, record_threat_findings
from netwarden.storage.history_store import HistoryStore

logger = logging.getLogger(__name__)

RETAINED_CYCLES = 200


@dataclass(slots=True)
class CycleReport:
    cycle_id: str
    started_at: datetime
    duration: float
    results: list[ScanResult] = field(default_factory=list)
    findings: list[ThreatFinding] = field(default_factory=list)
    anomalies: list[AnomalyFinding] = field(default_factory=list)
    changes: list[ChangeEvent] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return any(result.cancelled for result in self.results)

    def summary(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at.isoformat(),
            "duration": round(self.duration, 3),
            "hosts": len(self.results),
            "open_ports": sum(len(result.open_ports) for result in self.results),
            "findings": len(self.findings),
            "anomalies": len(self.anomalies),
            "changes": len(self.changes),
            "cancelled": self.cancelled,
        }


class ScanCycleRunner:
    """Runs scan cycles against a fixed configuration and keeps state between them."""

    def __init__(
        self,
        scan_config: ScanConfig,
        *,
        baseline_config: BaselineConfig | None = None,
        history: HistoryTracker | None = None,
        store: HistoryStore | None = None,
        probe: Probe | None = None,
        persist: bool = True,
        audit_log_path: str | Path | None = None,
    ) -> None:
        self.scan_config = scan_config.validate()
        self.baseline_config = (baseline_config or BaselineConfig()).validate()
        self.store = store
        self.history = history or HistoryTracker(store=store)
        self.probe = probe or (udp_probe if scan_config.protocol == "udp" else tcp_probe)
        self.persist = persist
        self.audit_log_path = audit_log_path
        self.budget = ScanBudget(scan_config.max_probes_per_minute) if scan_config.max_probes_per_minute else None
        self.baseline: Baseline | None = store.load_baseline(self.baseline_config.network_id) if store else None
        self._recent: deque[list[ScanResult]] = deque(maxlen=RETAINED_CYCLES)
        self._lock = threading.Lock()

    def run(
        self,
        hosts: Sequence[Device | str] | None = None,
        *,
        cancel_event: threading.Event | None = None,
        cycle_id: str | None = None,
    ) -> CycleReport:
        """Run one cycle; cycles on the same runner never overlap."""
        targets: Sequence[Device | str] = hosts if hosts else expand_targets(self.scan_config.targets)
        ports = resolve_ports(self.scan_config.ports)
        cycle = cycle_id or uuid.uuid4().hex
        started_at = utc_now()
        started = time.perf_counter()

        with self._lock:
            results = scan_hosts(
                targets,
                ports,
                limits=ConcurrencyLimits(self.scan_config.max_hosts, self.scan_config.max_ports_per_host),
                timeout=self.scan_config.timeout,
                probe=self.probe,
                cancel_event=cancel_event,
                cycle_id=cycle,
                grab_banners=self.scan_config.grab_banners,
                budget=self.budget,
                protocol=self.scan_config.protocol,
            )
            findings = classify_all(results, trusted_hosts=self.scan_config.trusted_hosts)
            changes = self.history.record_cycle(results, cycle_id=cycle)
            anomalies: list[AnomalyFinding] = []
            if self.baseline is not None:
                anomalies = detect_anomalies(
                    results,
                    self.baseline,
                    low_frequency_threshold=self.baseline_config.low_frequency_threshold,
                )
            self._recent.append(results)

        report = CycleReport(
            cycle_id=cycle,
            started_at=started_at,
            duration=time.perf_counter() - started,
            results=results,
            findings=findings,
            anomalies=anomalies,
            changes=changes,
        )
        if self.baseline is None and len(self._recent) >= self.baseline_config.min_scans:
            self.rebuild_baseline()
        self._record(report, port_count=len(ports))
        logger.info("Cycle %s complete: %s", cycle, report.summary())
        return report

    def _record(self, report: CycleReport, *, port_count: int) -> None:
        if not self.persist:
            return
        summary = report.summary()
        record_scan_history(report.cycle_id, self.scan_config.protocol, summary)
        record_threat_findings(report.cycle_id, [finding.to_dict() for finding in report.findings])
        append_cycle_summary(
            cycle_id=report.cycle_id,
            host_count=summary["hosts"],
            port_count=port_count,
            open_port_count=summary["open_ports"],
            finding_count=summary["findings"],
            anomaly_count=summary["anomalies"],
            change_count=summary["changes"],
            duration_seconds=report.duration,
            cancelled=report.cancelled,
            path=self.audit_log_path,
        )

    def rebuild_baseline(self) -> Baseline | None:
        """Learn a new baseline from retained cycles; keeps the old one when history is too short."""
        with self._lock:
            history = [result for results in self._recent for result in results]
        try:
            baseline = build_baseline(
                history,
                self.baseline_config.training_window,
                network_id=self.baseline_config.network_id,
                min_scans=self.baseline_config.min_scans,
            )
        except InsufficientData as exc:
            logger.info("Baseline not rebuilt: %s", exc)
            return self.baseline
        self.baseline = baseline
        if self.store is not None:
            self.store.save_baseline(baseline)
        return baseline
