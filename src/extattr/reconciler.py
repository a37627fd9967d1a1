"""Reconciliation orchestrator.

One reconciliation run:
1. Validate the mapping configuration (fatal, before any network call)
2. Enumerate every device in the cloud directory, following continuation pages
3. Reconcile each device under a bounded concurrency pool
4. Aggregate batch statistics and audit the outcome
5. Export per-device results and raise an alert when failures cross the threshold

Single-device entry points reuse the same DeviceProcessor without enumeration.

Failure isolation: a device task catches everything it raises and is counted as
failed. Apart from configuration errors, a run reports failures through counters
and audit entries and never raises.

Cancellation: the run-level event is checked when a device task is admitted.
Devices not yet admitted are skipped; admitted devices finish normally.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .audit import AuditEventType, AuditSeverity, AuditStore
from .clients import CloudDirectory, DirectoryService, EndpointManagement
from .config import Config, ConfigurationError
from .export import write_run_export
from .models import AttributeMapping, DeviceIdentity, find_duplicate_targets
from .notifications import Notifier
from .processor import DeviceProcessor, DeviceResult
from .resilience import ResiliencePolicy
from .resolver import ValueResolver

logger = logging.getLogger(__name__)


@dataclass
class BatchRunStats:
    """Aggregated outcome of one reconciliation run."""

    correlation_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    elapsed_ms: float = 0.0
    total_devices: int = 0
    processed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    cancelled: bool = False
    error: str | None = None
    export_path: str | None = None
    device_results: list[DeviceResult] = field(default_factory=list, repr=False)

    @property
    def succeeded_count(self) -> int:
        return self.processed_count - self.failed_count

    @property
    def success(self) -> bool:
        return self.error is None and not self.cancelled and self.failed_count == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "elapsed_ms": self.elapsed_ms,
            "total_devices": self.total_devices,
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "cancelled": self.cancelled,
            "error": self.error,
            "export_path": self.export_path,
        }


class Reconciler:
    """Runs reconciliation over all devices, on demand or on an interval."""

    def __init__(
        self,
        config: Config,
        mappings: list[AttributeMapping],
        cloud_directory: CloudDirectory,
        audit: AuditStore,
        *,
        directory: DirectoryService | None = None,
        endpoint_management: EndpointManagement | None = None,
        resilience: ResiliencePolicy | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self._config = config
        self._mappings = list(mappings)
        self._cloud_directory = cloud_directory
        self._audit = audit
        self._directory = directory
        self._endpoint_management = endpoint_management
        self._resilience = resilience or ResiliencePolicy(config.resilience)
        self._notifier = notifier

        self._processor = DeviceProcessor(
            config=config,
            mappings=self._mappings,
            cloud_directory=cloud_directory,
            resolver=ValueResolver(directory, endpoint_management),
            resilience=self._resilience,
            audit=audit,
        )

        self._shutdown_event = asyncio.Event()

    @property
    def config(self) -> Config:
        return self._config

    @property
    def audit(self) -> AuditStore:
        return self._audit

    @property
    def processor(self) -> DeviceProcessor:
        return self._processor

    @property
    def resilience(self) -> ResiliencePolicy:
        return self._resilience

    # -------------------------------------------------------------------------
    # Worker loop
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Run reconciliation at the configured interval until shutdown.

        Raises:
            ConfigurationError: If the mapping configuration is invalid.
        """
        logger.info(
            "Starting reconciler",
            extra={
                "mappings": len(self._mappings),
                "enabled_mappings": len(self._processor.enabled_mappings),
                "max_concurrency": self._config.max_concurrency,
                "interval_seconds": self._config.reconcile_interval_seconds,
            },
        )

        self._audit.start()
        await self._audit.log_system_event(
            AuditEventType.SYSTEM_STARTUP,
            "Extension attribute synchronizer started",
            additional_data={"interval_seconds": self._config.reconcile_interval_seconds},
        )

        try:
            while not self._shutdown_event.is_set():
                await self.reconcile_all()

                # Wait for next cycle or shutdown
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self._config.reconcile_interval_seconds,
                    )
                except TimeoutError:
                    pass
        finally:
            await self._audit.log_system_event(
                AuditEventType.SYSTEM_SHUTDOWN,
                "Extension attribute synchronizer stopped",
            )
            await self._audit.stop()

        logger.info("Reconciler shutdown complete")

    def shutdown(self) -> None:
        """Signal the reconciler to stop; also cancels admission in a running batch."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    # -------------------------------------------------------------------------
    # Full reconciliation
    # -------------------------------------------------------------------------

    async def run_reconciliation(self) -> int:
        """Reconcile every device. Returns the number of devices processed."""
        stats = await self.reconcile_all()
        return stats.processed_count

    async def reconcile_all(self, cancel_event: asyncio.Event | None = None) -> BatchRunStats:
        """Reconcile every device and return the batch statistics.

        Args:
            cancel_event: Run-level cancellation; defaults to the shutdown event.

        Raises:
            ConfigurationError: If the mapping configuration is invalid.
        """
        cancel = cancel_event or self._shutdown_event
        stats = BatchRunStats(correlation_id=str(uuid.uuid4()))
        start = time.monotonic()

        await self.validate_configuration(stats.correlation_id)

        logger.info(
            "Starting reconciliation run",
            extra={"correlation_id": stats.correlation_id},
        )

        try:
            devices = await self._enumerate_devices()
        except Exception as e:
            stats.error = f"Device enumeration failed: {type(e).__name__}: {e}"
            self._finish(stats, start)
            await self._audit.log_system_event(
                AuditEventType.DEVICE_PROCESSING_FAILED,
                "Reconciliation aborted: device enumeration failed",
                severity=AuditSeverity.CRITICAL,
                success=False,
                error_message=stats.error,
                duration_ms=stats.elapsed_ms,
                correlation_id=stats.correlation_id,
            )
            self._log_result(stats)
            return stats

        stats.total_devices = len(devices)
        semaphore = asyncio.Semaphore(self._config.max_concurrency)

        async def run_device(device: DeviceIdentity) -> DeviceResult | None:
            async with semaphore:
                if cancel.is_set():
                    stats.skipped_count += 1
                    return None
                result = await self._process_isolated(device, stats.correlation_id)
                stats.processed_count += 1
                if not result.success:
                    stats.failed_count += 1
                return result

        results = await asyncio.gather(*(run_device(device) for device in devices))
        stats.device_results = [r for r in results if r is not None]
        stats.cancelled = stats.skipped_count > 0
        self._finish(stats, start)

        await self._audit_completion(stats)
        await self._export(stats)
        await self._notify_if_needed(stats)

        self._log_result(stats)
        return stats

    async def validate_configuration(self, correlation_id: str | None = None) -> None:
        """Validate mappings and data source settings.

        Raises:
            ConfigurationError: With every violation found.
        """
        errors: list[str] = []

        if not self._mappings:
            errors.append("No extension attribute mappings are configured")

        duplicates = find_duplicate_targets(self._mappings)
        if duplicates:
            errors.append(f"Duplicate extension attribute mappings: {', '.join(duplicates)}")

        sources = self._config.data_sources
        if not sources.any_enabled:
            errors.append("No data source is enabled")
        if sources.enable_directory and self._directory is None:
            errors.append("Directory source is enabled but no directory client is configured")
        if sources.enable_endpoint_management and self._endpoint_management is None:
            errors.append(
                "Endpoint management source is enabled but no endpoint management client "
                "is configured"
            )

        if not errors:
            return

        message = "Invalid reconciliation configuration:\n  - " + "\n  - ".join(errors)
        await self._audit.log_system_event(
            AuditEventType.CONFIGURATION_CHANGED,
            "Configuration validation failed",
            success=False,
            error_message=message,
            correlation_id=correlation_id,
        )
        raise ConfigurationError(message)

    async def _enumerate_devices(self) -> list[DeviceIdentity]:
        devices: list[DeviceIdentity] = []
        next_link: str | None = None
        pages = 0

        while True:
            link = next_link
            page = await self._resilience.execute(
                lambda: self._cloud_directory.list_devices_page(self._config.page_size, link),
                operation_name="List devices",
            )
            pages += 1
            devices.extend(page.devices)
            next_link = page.next_link
            if not next_link:
                break

        logger.info("Enumerated devices", extra={"devices": len(devices), "pages": pages})
        return devices

    async def _process_isolated(
        self, device: DeviceIdentity, correlation_id: str
    ) -> DeviceResult:
        try:
            return await self._processor.process(device, correlation_id)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error(
                "Device processing failed",
                extra={"device": device.name, "error": error},
            )
            await self._audit.log_device_processing(
                device.name,
                None,
                None,
                None,
                False,
                event_type=AuditEventType.DEVICE_PROCESSING_FAILED,
                error_message=error,
                correlation_id=correlation_id,
            )
            return DeviceResult(device_name=device.name, device_object_id=device.id, error=error)

    def _finish(self, stats: BatchRunStats, start: float) -> None:
        stats.finished_at = datetime.now(UTC)
        stats.elapsed_ms = round((time.monotonic() - start) * 1000, 2)

    async def _audit_completion(self, stats: BatchRunStats) -> None:
        summary = stats.to_dict()
        if stats.cancelled:
            await self._audit.log_system_event(
                AuditEventType.DEVICE_PROCESSING_FAILED,
                f"Reconciliation cancelled: {stats.skipped_count} device(s) skipped",
                success=False,
                error_message="Run cancelled before all devices were admitted",
                duration_ms=stats.elapsed_ms,
                correlation_id=stats.correlation_id,
                additional_data=summary,
            )
        else:
            await self._audit.log_system_event(
                AuditEventType.DEVICE_PROCESSING_COMPLETED,
                f"Reconciliation completed: {stats.processed_count} processed, "
                f"{stats.failed_count} failed",
                success=stats.failed_count == 0,
                duration_ms=stats.elapsed_ms,
                correlation_id=stats.correlation_id,
                additional_data=summary,
            )

        await self._audit.log_performance_metric(
            "FullReconciliation",
            stats.elapsed_ms,
            correlation_id=stats.correlation_id,
            additional_data={
                "total_devices": stats.total_devices,
                "processed_count": stats.processed_count,
                "failed_count": stats.failed_count,
            },
        )

    async def _export(self, stats: BatchRunStats) -> None:
        export = self._config.export
        if export.path is None:
            return

        attributes = [m.target_attribute for m in self._processor.enabled_mappings]
        loop = asyncio.get_running_loop()
        try:
            path = await loop.run_in_executor(
                None,
                write_run_export,
                export.path,
                export.file_prefix,
                stats.device_results,
                attributes,
                stats.finished_at,
            )
        except OSError as e:
            logger.error("Result export failed", extra={"path": str(export.path), "error": str(e)})
            await self._audit.log_system_event(
                AuditEventType.DATA_EXPORT,
                "Result export failed",
                success=False,
                error_message=str(e),
                correlation_id=stats.correlation_id,
            )
            return

        stats.export_path = str(path)
        await self._audit.log_system_event(
            AuditEventType.DATA_EXPORT,
            f"Exported {len(stats.device_results)} device result(s)",
            correlation_id=stats.correlation_id,
            additional_data={"path": str(path)},
        )

    async def _notify_if_needed(self, stats: BatchRunStats) -> None:
        threshold = self._config.notifications.failure_threshold
        if self._notifier is None or stats.failed_count < threshold:
            return

        title = "Extension attribute reconciliation failures"
        message = (
            f"{stats.failed_count} of {stats.processed_count} device(s) failed "
            f"(threshold {threshold})."
        )
        facts = {
            "Failed devices": stats.failed_count,
            "Processed devices": stats.processed_count,
            "Correlation id": stats.correlation_id,
        }
        try:
            await self._notifier.notify(title, message, facts)
        except Exception as e:
            logger.error("Failure alert could not be sent", extra={"error": str(e)})
            await self._audit.log_system_event(
                AuditEventType.NOTIFICATION_FAILED,
                title,
                success=False,
                error_message=str(e),
                correlation_id=stats.correlation_id,
            )
            return

        await self._audit.log_system_event(
            AuditEventType.NOTIFICATION_SENT,
            title,
            correlation_id=stats.correlation_id,
            additional_data={"failed_count": stats.failed_count},
        )

    # -------------------------------------------------------------------------
    # Single-device entry points
    # -------------------------------------------------------------------------

    async def process_device_by_name(
        self, display_name: str, requested_by: str = "cli"
    ) -> DeviceResult | None:
        """Reconcile one device looked up by display name.

        Returns:
            The device result, or None if no such device exists.

        Raises:
            ConfigurationError: If the mapping configuration is invalid.
        """
        return await self._process_on_demand(
            action="ProcessDeviceByName",
            key=display_name,
            requested_by=requested_by,
            fetch=lambda: self._cloud_directory.get_device_by_name(display_name),
        )

    async def process_device_by_id(
        self, device_object_id: str, requested_by: str = "cli"
    ) -> DeviceResult | None:
        """Reconcile one device looked up by directory object id."""
        return await self._process_on_demand(
            action="ProcessDeviceById",
            key=device_object_id,
            requested_by=requested_by,
            fetch=lambda: self._cloud_directory.get_device(device_object_id),
        )

    async def _process_on_demand(
        self,
        action: str,
        key: str,
        requested_by: str,
        fetch: Any,
    ) -> DeviceResult | None:
        correlation_id = str(uuid.uuid4())
        start = time.monotonic()

        await self.validate_configuration(correlation_id)
        await self._audit.log_user_action(
            action,
            requested_by,
            device_name=key,
            correlation_id=correlation_id,
        )

        try:
            device = await self._resilience.execute(fetch, operation_name=f"Get device {key}")
        except Exception as e:
            await self._audit.log_user_action(
                action,
                requested_by,
                device_name=key,
                success=False,
                error_message=f"Device lookup failed: {e}",
                correlation_id=correlation_id,
            )
            raise

        if device is None:
            logger.warning("Device not found", extra={"device": key})
            await self._audit.log_user_action(
                action,
                requested_by,
                device_name=key,
                success=False,
                error_message="Device not found",
                correlation_id=correlation_id,
            )
            return None

        result = await self._process_isolated(device, correlation_id)

        await self._audit.log_performance_metric(
            action,
            round((time.monotonic() - start) * 1000, 2),
            correlation_id=correlation_id,
            additional_data={"device_name": device.name, "success": result.success},
        )
        return result

    def _log_result(self, stats: BatchRunStats) -> None:
        """Log run result with structured data."""
        extra = stats.to_dict()
        if stats.error is not None:
            logger.error("Reconciliation failed", extra=extra)
        elif stats.cancelled:
            logger.warning("Reconciliation cancelled", extra=extra)
        elif stats.failed_count > 0:
            logger.warning("Reconciliation completed with failures", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
