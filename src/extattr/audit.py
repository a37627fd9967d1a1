"""Append-only audit trail for reconciliation decisions and system events.

Every decision point in the engine produces an AuditLogEntry. Entries are:
- mirrored to the structured log immediately,
- kept in a bounded in-memory window of recent entries for fast queries,
- buffered and flushed in batches to one JSON-lines file per calendar day,
- pushed to subscribed observers (best effort).

DESIGN:
- The store is an explicitly owned resource: the process creates one, starts its
  flush task, and stops it on shutdown (final flush included).
- Recording never raises. An audit failure is logged and swallowed so it can
  never abort the reconciliation path that produced it.
- A failed flush keeps its batch pending; the next timer tick retries it.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import socket
import threading
import uuid
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from .config import AuditConfig

logger = logging.getLogger(__name__)

AUDIT_SOURCE = "ExtensionAttributeSync"
AUDIT_FILE_PREFIX = "audit-"
AUDIT_FILE_SUFFIX = ".jsonl"

# Pending entries kept while flushes fail, as a multiple of buffer_size
MAX_PENDING_BUFFERS = 10


class AuditEventType(str, Enum):
    """Kinds of audited events."""

    SYSTEM_STARTUP = "SystemStartup"
    SYSTEM_SHUTDOWN = "SystemShutdown"
    DEVICE_PROCESSING_STARTED = "DeviceProcessingStarted"
    DEVICE_PROCESSING_COMPLETED = "DeviceProcessingCompleted"
    DEVICE_PROCESSING_FAILED = "DeviceProcessingFailed"
    EXTENSION_ATTRIBUTE_UPDATED = "ExtensionAttributeUpdated"
    EXTENSION_ATTRIBUTE_UNCHANGED = "ExtensionAttributeUnchanged"
    EXTENSION_ATTRIBUTE_UPDATE_FAILED = "ExtensionAttributeUpdateFailed"
    CONFIGURATION_CHANGED = "ConfigurationChanged"
    NOTIFICATION_SENT = "NotificationSent"
    NOTIFICATION_FAILED = "NotificationFailed"
    USER_ACTION = "UserAction"
    PERFORMANCE_METRIC = "PerformanceMetric"
    DATA_EXPORT = "DataExport"


class AuditSeverity(str, Enum):
    """Severity of an audited event."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


DEFAULT_SEVERITY: dict[AuditEventType, AuditSeverity] = {
    AuditEventType.SYSTEM_STARTUP: AuditSeverity.LOW,
    AuditEventType.SYSTEM_SHUTDOWN: AuditSeverity.LOW,
    AuditEventType.DEVICE_PROCESSING_STARTED: AuditSeverity.LOW,
    AuditEventType.DEVICE_PROCESSING_COMPLETED: AuditSeverity.LOW,
    AuditEventType.DEVICE_PROCESSING_FAILED: AuditSeverity.HIGH,
    AuditEventType.EXTENSION_ATTRIBUTE_UPDATED: AuditSeverity.MEDIUM,
    AuditEventType.EXTENSION_ATTRIBUTE_UNCHANGED: AuditSeverity.LOW,
    AuditEventType.EXTENSION_ATTRIBUTE_UPDATE_FAILED: AuditSeverity.HIGH,
    AuditEventType.CONFIGURATION_CHANGED: AuditSeverity.HIGH,
    AuditEventType.NOTIFICATION_SENT: AuditSeverity.LOW,
    AuditEventType.NOTIFICATION_FAILED: AuditSeverity.MEDIUM,
    AuditEventType.USER_ACTION: AuditSeverity.MEDIUM,
    AuditEventType.PERFORMANCE_METRIC: AuditSeverity.LOW,
    AuditEventType.DATA_EXPORT: AuditSeverity.LOW,
}

_HOSTNAME = socket.gethostname()


@dataclass(frozen=True)
class AuditLogEntry:
    """One immutable audit record.

    Attributes:
        event_type: What happened
        severity: How important it is
        timestamp: When it happened (UTC)
        event_id: Unique identifier
        device_name: Device display name, if device-scoped
        attribute: Extension attribute name, if attribute-scoped
        old_value: Stored value before the decision
        new_value: Resolved (or written) value
        success: Whether the operation succeeded
        duration_ms: Elapsed time of the operation
        error_message: Failure detail
        correlation_id: Identifier shared by all entries of one run or request
        description: Human-readable summary
        source: Emitting component
        machine_name: Host that produced the entry
        additional_data: Free-form structured context
    """

    event_type: AuditEventType
    severity: AuditSeverity
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    device_name: str | None = None
    attribute: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    success: bool = True
    duration_ms: float | None = None
    error_message: str | None = None
    correlation_id: str | None = None
    description: str = ""
    source: str = AUDIT_SOURCE
    machine_name: str = _HOSTNAME
    additional_data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "device_name": self.device_name,
            "attribute": self.attribute,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "success": self.success,
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "correlation_id": self.correlation_id,
            "description": self.description,
            "source": self.source,
            "machine_name": self.machine_name,
            "additional_data": self.additional_data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditLogEntry:
        """Create from dictionary."""
        timestamp = datetime.fromisoformat(data["timestamp"])
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        return cls(
            event_id=data["event_id"],
            timestamp=timestamp,
            event_type=AuditEventType(data["event_type"]),
            severity=AuditSeverity(data["severity"]),
            device_name=data.get("device_name"),
            attribute=data.get("attribute"),
            old_value=data.get("old_value"),
            new_value=data.get("new_value"),
            success=data.get("success", True),
            duration_ms=data.get("duration_ms"),
            error_message=data.get("error_message"),
            correlation_id=data.get("correlation_id"),
            description=data.get("description", ""),
            source=data.get("source", AUDIT_SOURCE),
            machine_name=data.get("machine_name", ""),
            additional_data=data.get("additional_data") or {},
        )


@dataclass(frozen=True)
class AuditSummary:
    """Aggregate statistics over a time window of audit entries."""

    total_events: int
    event_type_counts: dict[str, int]
    severity_counts: dict[str, int]
    success_rate: float
    devices_processed: int
    attributes_updated: int
    failed_operations: int
    average_duration_ms: float
    from_date: datetime | None = None
    to_date: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_events": self.total_events,
            "event_type_counts": self.event_type_counts,
            "severity_counts": self.severity_counts,
            "success_rate": self.success_rate,
            "devices_processed": self.devices_processed,
            "attributes_updated": self.attributes_updated,
            "failed_operations": self.failed_operations,
            "average_duration_ms": self.average_duration_ms,
            "from_date": self.from_date.isoformat() if self.from_date else None,
            "to_date": self.to_date.isoformat() if self.to_date else None,
        }


# Observers receive every logged entry; may be sync or async callables
AuditObserver = Callable[[AuditLogEntry], Any]


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def audit_file_name(day: date) -> str:
    return f"{AUDIT_FILE_PREFIX}{day.isoformat()}{AUDIT_FILE_SUFFIX}"


def summarize_entries(
    entries: list[AuditLogEntry],
    from_date: datetime | None = None,
    to_date: datetime | None = None,
) -> AuditSummary:
    """Compute summary statistics for a list of entries."""
    total = len(entries)
    type_counts = Counter(e.event_type.value for e in entries)
    severity_counts = Counter(e.severity.value for e in entries)
    successes = sum(1 for e in entries if e.success)
    devices = {e.device_name.lower() for e in entries if e.device_name}
    updated = sum(
        1
        for e in entries
        if e.event_type == AuditEventType.EXTENSION_ATTRIBUTE_UPDATED and e.success
    )
    durations = [e.duration_ms for e in entries if e.duration_ms is not None]

    return AuditSummary(
        total_events=total,
        event_type_counts=dict(type_counts),
        severity_counts=dict(severity_counts),
        success_rate=round(successes / total * 100, 2) if total else 0.0,
        devices_processed=len(devices),
        attributes_updated=updated,
        failed_operations=total - successes,
        average_duration_ms=round(sum(durations) / len(durations), 2) if durations else 0.0,
        from_date=from_date,
        to_date=to_date,
    )


class AuditStore:
    """Buffered, file-backed audit store with a recent-entries window.

    Usage:
        store = AuditStore(config.audit)
        store.start()
        await store.log_system_event(AuditEventType.SYSTEM_STARTUP, "Worker started")
        ...
        await store.stop()
    """

    def __init__(self, config: AuditConfig) -> None:
        self._directory = Path(config.directory)
        self._buffer_size = config.buffer_size
        self._max_pending = config.buffer_size * MAX_PENDING_BUFFERS
        self._flush_interval = config.flush_interval_seconds

        # Guards _pending and _recent; device tasks append concurrently
        self._lock = threading.Lock()
        self._pending: list[AuditLogEntry] = []
        self._recent: deque[AuditLogEntry] = deque(maxlen=config.recent_capacity)

        self._flush_lock = asyncio.Lock()
        self._flush_failed = False
        self._flush_task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._observers: list[AuditObserver] = []

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic flush task on the running loop."""
        if self._flush_task is not None and not self._flush_task.done():
            return
        self._stopping.clear()
        self._flush_task = asyncio.create_task(self._flush_loop(), name="audit-flush")
        logger.info(
            "Audit store started",
            extra={
                "audit_dir": str(self._directory),
                "flush_interval_seconds": self._flush_interval,
                "buffer_size": self._buffer_size,
            },
        )

    async def stop(self) -> None:
        """Stop the periodic flush task and flush what is still pending."""
        self._stopping.set()
        if self._flush_task is not None:
            await self._flush_task
            self._flush_task = None
        await self.flush()
        logger.info("Audit store stopped")

    async def _flush_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._flush_interval)
            except TimeoutError:
                pass
            if self._stopping.is_set():
                break
            self._flush_failed = False
            await self.flush()

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def subscribe(self, observer: AuditObserver) -> None:
        """Register a real-time observer for every logged entry."""
        self._observers.append(observer)

    def unsubscribe(self, observer: AuditObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    async def log(self, entry: AuditLogEntry) -> None:
        """Record an entry. Never raises."""
        try:
            self._mirror(entry)

            with self._lock:
                self._pending.append(entry)
                self._recent.append(entry)
                dropped = self._trim_pending_locked()
                buffer_full = len(self._pending) >= self._buffer_size
            self._report_dropped(dropped)

            # After a failed flush, wait for the next tick instead of retrying per entry
            if buffer_full and not self._flush_failed:
                await self.flush()

            await self._notify(entry)
        except Exception as e:
            logger.error(
                "Failed to record audit entry",
                extra={"event_id": entry.event_id, "error": str(e)},
            )

    def _mirror(self, entry: AuditLogEntry) -> None:
        level = logging.INFO
        if not entry.success or entry.severity in (AuditSeverity.HIGH, AuditSeverity.CRITICAL):
            level = logging.WARNING
        logger.log(
            level,
            f"Audit: {entry.event_type.value}",
            extra={
                "audit_event_id": entry.event_id,
                "audit_event_type": entry.event_type.value,
                "audit_severity": entry.severity.value,
                "device_name": entry.device_name,
                "attribute": entry.attribute,
                "old_value": entry.old_value,
                "new_value": entry.new_value,
                "success": entry.success,
                "duration_ms": entry.duration_ms,
                "error": entry.error_message,
                "correlation_id": entry.correlation_id,
            },
        )

    async def _notify(self, entry: AuditLogEntry) -> None:
        for observer in list(self._observers):
            try:
                result = observer(entry)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "Audit observer failed",
                    extra={"event_id": entry.event_id, "error": str(e)},
                )

    async def flush(self) -> int:
        """Write pending entries to the day files.

        Returns:
            Number of entries written. On failure the batch stays pending.
        """
        async with self._flush_lock:
            with self._lock:
                batch = self._pending
                self._pending = []

            if not batch:
                return 0

            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, self._write_batch, batch)
            except (OSError, TypeError, ValueError) as e:
                with self._lock:
                    self._pending[:0] = batch
                    dropped = self._trim_pending_locked()
                self._report_dropped(dropped)
                self._flush_failed = True
                logger.error(
                    "Audit flush failed, will retry on next tick",
                    extra={"entries": len(batch), "error": str(e)},
                )
                return 0

            self._flush_failed = False
            logger.debug("Flushed audit entries", extra={"entries": len(batch)})
            return len(batch)

    def _trim_pending_locked(self) -> int:
        """Drop the oldest pending entries beyond the cap. Caller holds _lock.

        Dropped entries stay in the recent window.
        """
        overflow = len(self._pending) - self._max_pending
        if overflow <= 0:
            return 0
        del self._pending[:overflow]
        return overflow

    def _report_dropped(self, dropped: int) -> None:
        if dropped:
            logger.error(
                "Audit buffer full, dropped oldest unflushed entries",
                extra={"dropped": dropped, "max_pending": self._max_pending},
            )

    def _write_batch(self, batch: list[AuditLogEntry]) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)

        by_day: dict[date, list[str]] = {}
        for entry in batch:
            line = json.dumps(entry.to_dict(), default=str)
            by_day.setdefault(entry.timestamp.astimezone(UTC).date(), []).append(line)

        for day, lines in sorted(by_day.items()):
            with open(self._directory / audit_file_name(day), "a", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")

    # -------------------------------------------------------------------------
    # Emitters
    # -------------------------------------------------------------------------

    async def log_device_processing(
        self,
        device_name: str,
        attribute: str | None,
        old_value: str | None,
        new_value: str | None,
        success: bool,
        *,
        event_type: AuditEventType | None = None,
        duration_ms: float | None = None,
        error_message: str | None = None,
        correlation_id: str | None = None,
        description: str = "",
        additional_data: dict[str, Any] | None = None,
    ) -> None:
        if event_type is None:
            event_type = (
                AuditEventType.EXTENSION_ATTRIBUTE_UPDATED
                if success
                else AuditEventType.EXTENSION_ATTRIBUTE_UPDATE_FAILED
            )
        await self.log(
            AuditLogEntry(
                event_type=event_type,
                severity=DEFAULT_SEVERITY[event_type],
                device_name=device_name,
                attribute=attribute,
                old_value=old_value,
                new_value=new_value,
                success=success,
                duration_ms=duration_ms,
                error_message=error_message,
                correlation_id=correlation_id,
                description=description,
                additional_data=additional_data or {},
            )
        )

    async def log_system_event(
        self,
        event_type: AuditEventType,
        description: str,
        *,
        severity: AuditSeverity | None = None,
        success: bool = True,
        error_message: str | None = None,
        duration_ms: float | None = None,
        correlation_id: str | None = None,
        additional_data: dict[str, Any] | None = None,
    ) -> None:
        await self.log(
            AuditLogEntry(
                event_type=event_type,
                severity=severity or DEFAULT_SEVERITY[event_type],
                success=success,
                error_message=error_message,
                duration_ms=duration_ms,
                correlation_id=correlation_id,
                description=description,
                additional_data=additional_data or {},
            )
        )

    async def log_user_action(
        self,
        action: str,
        user: str,
        *,
        device_name: str | None = None,
        success: bool = True,
        error_message: str | None = None,
        correlation_id: str | None = None,
        additional_data: dict[str, Any] | None = None,
    ) -> None:
        data = {"action": action, "user": user}
        data.update(additional_data or {})
        await self.log(
            AuditLogEntry(
                event_type=AuditEventType.USER_ACTION,
                severity=DEFAULT_SEVERITY[AuditEventType.USER_ACTION],
                device_name=device_name,
                success=success,
                error_message=error_message,
                correlation_id=correlation_id,
                description=f"User action: {action}",
                additional_data=data,
            )
        )

    async def log_performance_metric(
        self,
        operation: str,
        duration_ms: float,
        *,
        correlation_id: str | None = None,
        additional_data: dict[str, Any] | None = None,
    ) -> None:
        data: dict[str, Any] = {"operation": operation}
        data.update(additional_data or {})
        await self.log(
            AuditLogEntry(
                event_type=AuditEventType.PERFORMANCE_METRIC,
                severity=DEFAULT_SEVERITY[AuditEventType.PERFORMANCE_METRIC],
                duration_ms=duration_ms,
                correlation_id=correlation_id,
                description=f"Performance metric: {operation}",
                additional_data=data,
            )
        )

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    def recent(self, limit: int | None = None) -> list[AuditLogEntry]:
        """Most recent entries from memory, newest first."""
        with self._lock:
            entries = list(self._recent)
        entries.reverse()
        return entries[:limit] if limit is not None else entries

    async def query(
        self,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        event_type: AuditEventType | None = None,
        device_name: str | None = None,
    ) -> list[AuditLogEntry]:
        """Merged view of in-memory and on-disk entries, filtered, newest first.

        device_name matches case-insensitively as a substring.
        """
        from_date = as_utc(from_date)
        to_date = as_utc(to_date)

        loop = asyncio.get_running_loop()
        stored = await loop.run_in_executor(None, self._read_files, from_date, to_date)

        with self._lock:
            in_memory = list(self._recent) + list(self._pending)

        merged: dict[str, AuditLogEntry] = {}
        for entry in stored + in_memory:
            merged.setdefault(entry.event_id, entry)

        wanted_device = device_name.lower() if device_name else None
        results = [
            entry
            for entry in merged.values()
            if (from_date is None or entry.timestamp >= from_date)
            and (to_date is None or entry.timestamp <= to_date)
            and (event_type is None or entry.event_type == event_type)
            and (
                wanted_device is None
                or (entry.device_name is not None and wanted_device in entry.device_name.lower())
            )
        ]
        results.sort(key=lambda e: e.timestamp, reverse=True)
        return results

    async def summarize(
        self,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> AuditSummary:
        entries = await self.query(from_date=from_date, to_date=to_date)
        return summarize_entries(entries, from_date, to_date)

    def _day_files(self, from_date: datetime | None, to_date: datetime | None) -> list[Path]:
        if not self._directory.exists():
            return []

        if from_date is None:
            files = sorted(self._directory.glob(f"{AUDIT_FILE_PREFIX}*{AUDIT_FILE_SUFFIX}"))
            if to_date is None:
                return files
            last_day = to_date.astimezone(UTC).date()
            return [f for f in files if f.name <= audit_file_name(last_day)]

        first_day = from_date.astimezone(UTC).date()
        last_day = (to_date or datetime.now(UTC)).astimezone(UTC).date()
        paths = []
        day = first_day
        while day <= last_day:
            path = self._directory / audit_file_name(day)
            if path.exists():
                paths.append(path)
            day += timedelta(days=1)
        return paths

    def _read_files(
        self, from_date: datetime | None, to_date: datetime | None
    ) -> list[AuditLogEntry]:
        entries: list[AuditLogEntry] = []
        for path in self._day_files(from_date, to_date):
            try:
                with open(path, encoding="utf-8") as f:
                    for line_number, line in enumerate(f, start=1):
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            entries.append(AuditLogEntry.from_dict(json.loads(line)))
                        except (ValueError, KeyError, TypeError) as e:
                            logger.warning(
                                "Skipping malformed audit line",
                                extra={"file": path.name, "line": line_number, "error": str(e)},
                            )
            except OSError as e:
                logger.error(
                    "Failed to read audit file",
                    extra={"file": str(path), "error": str(e)},
                )
        return entries
