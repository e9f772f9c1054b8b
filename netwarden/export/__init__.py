"""Export utilities: audit log, JSON documents, spreadsheets, inventory and reports."""

from .inventory import build_inventory, export_inventory
from .logging import append_audit_record, append_cycle_summary, read_audit_log
from .reports import export_markdown_report, render_markdown_report
from .timeline import export_findings_to_csv, export_session_to_xlsx, export_timeline_to_csv
from .writers import build_scan_document, export_json_document, export_scan_document

__all__ = [
    "append_audit_record",
    "append_cycle_summary",
    "read_audit_log",
    "build_inventory",
    "export_inventory",
    "build_scan_document",
    "export_json_document",
    "export_scan_document",
    "export_findings_to_csv",
    "export_session_to_xlsx",
    "export_timeline_to_csv",
    "export_markdown_report",
    "render_markdown_report",
]
