"""Command-line entry point: discover, scan, report, history and schedule."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
import time
from typing import Any

from netwarden.analytics.history import HistoryTracker
from netwarden.analytics.timeline import normalize_timeline_rows
from netwarden.config import (
    apply_overrides,
    load_baseline_config,
    load_discovery_config,
    load_history_config,
    load_scan_config,
)
from netwarden.cycle import ScanCycleRunner
from netwarden.discovery.coordinator import DiscoveryCoordinator
from netwarden.errors import NetwardenError
from netwarden.export.inventory import export_inventory
from netwarden.export.logging import read_audit_log
from netwarden.export.reports import export_markdown_report
from netwarden.export.timeline import export_session_to_xlsx
from netwarden.export.writers import build_scan_document, export_json_document
from netwarden.scheduler.jobs import build_scheduler, get_schedule_events, schedule_scan_cycle
from netwarden.storage import list_scan_history, list_threat_findings
from netwarden.storage.history_store import HistoryStore

logger = logging.getLogger("netwarden")


def _emit(payload: dict[str, Any], output: str | None) -> None:
    if output:
        target = export_json_document(output, payload)
        print(target)
        return
    json.dump(payload, sys.stdout, indent=2, ensure_ascii=False, default=str)
    sys.stdout.write("\n")


def _history_tracker(store: HistoryStore) -> HistoryTracker:
    config = load_history_config()
    tracker = HistoryTracker(
        max_snapshots_per_device=config.max_snapshots_per_device,
        max_change_events=config.max_change_events,
        grace_period=config.grace_period,
        max_cycles=config.max_cycles,
        store=store if config.persist else None,
    )
    tracker.load()
    return tracker


def _cmd_discover(args: argparse.Namespace) -> int:
    config = apply_overrides(
        load_discovery_config(),
        {
            "subnets": args.subnet or None,
            "mdns": False if args.no_mdns else None,
            "sweep": False if args.no_sweep else None,
            "listen_seconds": args.listen,
            "max_devices": args.max_devices,
            "online_vendor_lookup": True if args.online_vendors else None,
        },
    )
    coordinator = DiscoveryCoordinator()
    with coordinator.start_discovery(config) as session:
        devices = session.collect()
        stats = session.stats.to_dict()
    if args.inventory:
        print(export_inventory(devices, args.inventory))
    _emit({"device_count": len(devices), "stats": stats, "devices": [device.to_dict() for device in devices]}, args.output)
    return 0


def _cmd_scan(args: argparse.Namespace) -> int:
    config = apply_overrides(
        load_scan_config(),
        {
            "targets": args.targets,
            "ports": args.ports,
            "protocol": "udp" if args.udp else None,
            "timeout": args.timeout,
            "max_hosts": args.max_hosts,
            "max_ports_per_host": args.max_ports,
            "grab_banners": True if args.banners else None,
            "trusted_hosts": args.trusted or None,
        },
    )
    store = HistoryStore()
    runner = ScanCycleRunner(
        config,
        baseline_config=load_baseline_config(),
        history=_history_tracker(store),
        store=store,
        persist=not args.no_persist,
    )

    cancel_event = threading.Event()
    try:
        report = runner.run(cancel_event=cancel_event)
    except KeyboardInterrupt:
        cancel_event.set()
        raise

    if args.report:
        print(export_markdown_report(args.report, report.results, report.findings, anomalies=report.anomalies, changes=report.changes))
    if args.xlsx:
        print(
            export_session_to_xlsx(
                args.xlsx,
                results=report.results,
                findings=report.findings,
                anomalies=report.anomalies,
                timeline_rows=normalize_timeline_rows(report.changes),
            )
        )
    _emit(build_scan_document(report.results, report.findings, report.anomalies, report.changes), args.output)
    return 1 if args.fail_on is not None and any(f.severity >= args.fail_on for f in report.findings) else 0


def _cmd_report(args: argparse.Namespace) -> int:
    payload = {
        "scan_history": list_scan_history(args.limit),
        "findings": list_threat_findings(args.limit, cycle_id=args.cycle),
        "audit": read_audit_log(limit=args.limit),
    }
    _emit(payload, args.output)
    return 0


def _cmd_history(args: argparse.Namespace) -> int:
    tracker = _history_tracker(HistoryStore())
    keys = [args.device] if args.device else tracker.device_keys
    payload = {
        "devices": [tracker.device_statistics(key) for key in keys],
        "changes": normalize_timeline_rows(tracker.events(device_key=args.device)),
    }
    _emit(payload, args.output)
    return 0


def _cmd_schedule(args: argparse.Namespace) -> int:
    config = apply_overrides(load_scan_config(), {"targets": args.targets, "ports": args.ports})
    store = HistoryStore()
    runner = ScanCycleRunner(config, baseline_config=load_baseline_config(), history=_history_tracker(store), store=store)
    scheduler = build_scheduler()
    schedule_scan_cycle(scheduler, runner, interval_minutes=args.interval, run_immediately=True)
    scheduler.start()
    logger.info("Scanning every %s minute(s); press Ctrl-C to stop", args.interval)
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        scheduler.shutdown(wait=True)
    _emit({"events": get_schedule_events()}, None)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="netwarden", description="LAN discovery, port scanning and threat classification")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="-v for info, -vv for debug logging")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_d = sub.add_parser("discover", help="Discover devices via mDNS and subnet sweeps")
    p_d.add_argument("--subnet", action="append", help="CIDR to sweep (repeatable); default is the local subnet")
    p_d.add_argument("--no-mdns", action="store_true")
    p_d.add_argument("--no-sweep", action="store_true")
    p_d.add_argument("--listen", type=float, default=None, help="Seconds to listen for mDNS answers")
    p_d.add_argument("--max-devices", type=int, default=None)
    p_d.add_argument("--online-vendors", action="store_true", help="Resolve unknown OUIs online")
    p_d.add_argument("--inventory", default=None, help="Also write a device inventory JSON here")
    p_d.add_argument("--output", "-o", default=None, help="Output JSON file")

    p_s = sub.add_parser("scan", help="Run one scan cycle")
    p_s.add_argument("targets", nargs="+", help="Hosts, CIDR blocks or a.b.c.d-e ranges")
    p_s.add_argument("--ports", "-p", default=None, help="Preset name or list such as 22,80,8000-8010")
    p_s.add_argument("--udp", action="store_true")
    p_s.add_argument("--timeout", type=float, default=None)
    p_s.add_argument("--max-hosts", type=int, default=None)
    p_s.add_argument("--max-ports", type=int, default=None)
    p_s.add_argument("--banners", action="store_true", help="Grab banners from open TCP ports")
    p_s.add_argument("--trusted", action="append", help="Host allowed to run DHCP (repeatable)")
    p_s.add_argument("--no-persist", action="store_true", help="Do not write scan history or the audit log")
    p_s.add_argument("--report", default=None, help="Write a Markdown report here")
    p_s.add_argument("--xlsx", default=None, help="Write an XLSX workbook here")
    p_s.add_argument("--fail-on", type=float, default=None, help="Exit 1 when a finding reaches this severity")
    p_s.add_argument("--output", "-o", default=None, help="Output JSON file")

    p_r = sub.add_parser("report", help="Show stored scan history, findings and audit log")
    p_r.add_argument("--limit", type=int, default=25)
    p_r.add_argument("--cycle", default=None, help="Only findings from this cycle")
    p_r.add_argument("--output", "-o", default=None)

    p_h = sub.add_parser("history", help="Show device statistics and change events")
    p_h.add_argument("--device", default=None, help="Device key, e.g. mac:AA:BB:CC:DD:EE:FF")
    p_h.add_argument("--output", "-o", default=None)

    p_c = sub.add_parser("schedule", help="Run scan cycles on an interval until interrupted")
    p_c.add_argument("targets", nargs="+")
    p_c.add_argument("--ports", "-p", default=None)
    p_c.add_argument("--interval", type=float, default=60.0, help="Minutes between cycles")
    return parser


COMMANDS = {
    "discover": _cmd_discover,
    "scan": _cmd_scan,
    "report": _cmd_report,
    "history": _cmd_history,
    "schedule": _cmd_schedule,
}


def main(argv: list[str] | None = None) -> int:
    """Application entrypoint."""
    args = build_parser().parse_args(argv)
    level = logging.WARNING - 10 * min(2, args.verbose)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        return COMMANDS[args.cmd](args)
    except NetwardenError as exc:
        logger.error("%s", exc)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
