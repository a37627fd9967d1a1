"""Flat-file exports: per-run results and filtered audit entries."""

from __future__ import annotations

import csv
import io
import logging
from datetime import UTC, datetime
from pathlib import Path

from .audit import AuditLogEntry
from .processor import DeviceResult

logger = logging.getLogger(__name__)

RUN_EXPORT_BASE_COLUMNS = ["DeviceName", "DeviceId", "Status", "Timestamp"]

AUDIT_EXPORT_COLUMNS = [
    "EventId",
    "Timestamp",
    "EventType",
    "Severity",
    "DeviceName",
    "Attribute",
    "OldValue",
    "NewValue",
    "Success",
    "DurationMs",
    "ErrorMessage",
    "CorrelationId",
    "Description",
    "Source",
    "MachineName",
]


def export_file_name(prefix: str, when: datetime) -> str:
    """<prefix>-<yyyyMMdd-HHmmss>.csv"""
    return f"{prefix}-{when.strftime('%Y%m%d-%H%M%S')}.csv"


def run_export_columns(attributes: list[str]) -> list[str]:
    columns = list(RUN_EXPORT_BASE_COLUMNS)
    for attribute in attributes:
        columns.extend([f"{attribute}_Outcome", f"{attribute}_Value", f"{attribute}_Source"])
    return columns


def write_run_export(
    directory: Path,
    prefix: str,
    results: list[DeviceResult],
    attributes: list[str],
    when: datetime | None = None,
) -> Path:
    """Write one row per device with the outcome of each mapping.

    Raises:
        OSError: If the directory cannot be created or the file cannot be written.
    """
    when = when or datetime.now(UTC)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / export_file_name(prefix, when)

    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=run_export_columns(attributes))
        writer.writeheader()
        for result in results:
            row = {
                "DeviceName": result.device_name,
                "DeviceId": result.device_object_id,
                "Status": "Success" if result.success else "Failed",
                "Timestamp": result.started_at.isoformat(),
            }
            for mapping in result.mappings:
                row[f"{mapping.attribute}_Outcome"] = mapping.outcome.value
                row[f"{mapping.attribute}_Value"] = mapping.new_value or ""
                row[f"{mapping.attribute}_Source"] = mapping.source.value if mapping.source else ""
            writer.writerow(row)

    logger.info(
        "Exported reconciliation results",
        extra={"path": str(path), "devices": len(results)},
    )
    return path


def audit_entries_to_csv(entries: list[AuditLogEntry]) -> str:
    """Render audit entries as CSV text with a header row."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(AUDIT_EXPORT_COLUMNS)
    for entry in entries:
        writer.writerow(
            [
                entry.event_id,
                entry.timestamp.isoformat(),
                entry.event_type.value,
                entry.severity.value,
                entry.device_name or "",
                entry.attribute or "",
                entry.old_value or "",
                entry.new_value or "",
                str(entry.success).lower(),
                "" if entry.duration_ms is None else entry.duration_ms,
                entry.error_message or "",
                entry.correlation_id or "",
                entry.description,
                entry.source,
                entry.machine_name,
            ]
        )
    return buffer.getvalue()
