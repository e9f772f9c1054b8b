from __future__ import annotations

import json

import pandas as pd

from conftest import at, make_device, make_result
from netwarden.analytics.timeline import (
    bucket_events_by_time,
    build_heatmap_matrix,
    filter_timeline_events,
    normalize_timeline_rows,
)
from netwarden.export.inventory import build_inventory
from netwarden.export.logging import append_audit_record, append_cycle_summary, read_audit_log
from netwarden.export.reports import render_markdown_report
from netwarden.export.timeline import export_findings_to_csv, export_session_to_xlsx, export_timeline_to_csv
from netwarden.export.writers import export_scan_document
from netwarden.intel.classify import classify_all
from netwarden.models import AnomalyFinding, AnomalyType, ChangeEvent, ChangeType

CHANGES = [
    ChangeEvent(change_type=ChangeType.DEVICE_JOINED, device_key="mac:02:00:00:00:00:01", timestamp=at(0), details="New device"),
    ChangeEvent(change_type=ChangeType.PORT_OPENED, device_key="mac:02:00:00:00:00:01", timestamp=at(90), details="Port 23 opened", port=23),
    ChangeEvent(change_type=ChangeType.PORT_OPENED, device_key="host:10.0.0.9", timestamp=at(95), details="Port 80 opened", port=80),
]


def _session():
    results = [
        make_result(make_device("10.0.0.1", mac="02:00:00:00:00:01"), open_ports=[23], closed_ports=[22]),
        make_result(make_device("10.0.0.9"), open_ports=[80]),
    ]
    anomalies = [
        AnomalyFinding(type=AnomalyType.UNUSUAL_PORT_ACTIVITY, severity=6, description="Port 23 open", detected_at=at(90))
    ]
    return results, classify_all(results), anomalies


def test_timeline_rows_filters_and_buckets():
    rows = normalize_timeline_rows(
        [CHANGES[2], CHANGES[0], CHANGES[1].to_dict()],
        schedule_overlays=[{"cycle_id": "c9", "job_id": "nightly"}],
    )

    assert [row["change_type"] for row in rows] == ["device-joined", "port-opened", "port-opened"]
    assert len(filter_timeline_events(rows, change_types=[ChangeType.PORT_OPENED])) == 2
    assert len(filter_timeline_events(rows, device_key="02:00:00")) == 2
    assert len(filter_timeline_events(rows, since=at(92))) == 1

    buckets = bucket_events_by_time(rows, bucket="hour")
    assert [(bucket["total"], bucket["port-opened"]) for bucket in buckets] == [(1, 0), (2, 2)]

    matrix, weekdays, hours = build_heatmap_matrix(rows)
    assert sum(map(sum, matrix)) == 3
    assert len(weekdays) == 7 and len(hours) == 24


def test_json_document_contains_every_section(tmp_path):
    results, findings, anomalies = _session()

    target = export_scan_document(tmp_path / "out" / "scan.json", results, findings, anomalies, CHANGES)

    payload = json.loads(target.read_text(encoding="utf-8"))
    assert payload["host_count"] == 2
    assert payload["results"][0]["statuses"] == {"22": "closed", "23": "open"}
    assert {finding["severity"] for finding in payload["findings"]} == {9.0, 5.3}
    assert payload["anomalies"][0]["type"] == "unusual-port-activity"
    assert len(payload["changes"]) == 3


def test_csv_and_xlsx_exports(tmp_path):
    results, findings, anomalies = _session()
    rows = normalize_timeline_rows(CHANGES)

    findings_csv = pd.read_csv(export_findings_to_csv(findings, tmp_path / "findings.csv"))
    assert list(findings_csv["severity"]) == [9.0, 5.3]

    timeline_csv = pd.read_csv(export_timeline_to_csv(rows, tmp_path / "timeline.csv"))
    assert len(timeline_csv) == 3

    workbook = export_session_to_xlsx(
        tmp_path / "session.xlsx", results=results, findings=findings, anomalies=anomalies, timeline_rows=rows
    )
    sheets = pd.read_excel(workbook, sheet_name=None)
    assert set(sheets) == {"ports", "findings", "anomalies", "timeline"}
    assert len(sheets["ports"]) == 3


def test_markdown_report_lists_findings_and_changes():
    results, findings, anomalies = _session()

    report = render_markdown_report(results, findings, anomalies=anomalies, changes=CHANGES, generated_at=at(0))

    assert report.startswith("# Network security report")
    assert "- Hosts scanned: 2" in report
    assert "| 9.0 | critical | 10.0.0.1 | 23 | unencrypted-transport |" in report
    assert "## Anomalies" in report
    assert "port-opened" in report


def test_inventory_attaches_risk_to_devices():
    results, findings, anomalies = _session()

    inventory = build_inventory([result.device for result in results], findings=findings, anomalies=anomalies)

    by_ip = {entry["ip"]: entry for entry in inventory["devices"]}
    assert by_ip["10.0.0.1"]["risk_level"] == "critical"
    assert by_ip["10.0.0.9"]["max_severity"] == 5.3
    assert inventory["anomaly_count"] == 1


def test_audit_log_appends_and_skips_corrupt_lines(tmp_path):
    path = tmp_path / "audit.jsonl"
    append_cycle_summary(
        cycle_id="c1",
        host_count=2,
        port_count=27,
        open_port_count=3,
        finding_count=2,
        anomaly_count=0,
        change_count=1,
        duration_seconds=1.23456,
        path=path,
    )
    with path.open("a", encoding="utf-8") as handle:
        handle.write("{not json\n")
    append_audit_record({"kind": "note"}, path)

    records = read_audit_log(path)
    assert [record["kind"] for record in records] == ["scan_cycle", "note"]
    assert records[0]["duration_seconds"] == 1.235
    assert "timestamp" in records[1]
    assert read_audit_log(path, limit=1)[0]["kind"] == "note"
