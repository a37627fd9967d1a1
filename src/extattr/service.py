"""Operational API over the reconciler and the audit store.

OperationsService is what front ends (the CLI, a web layer) call. Every request
is recorded as a UserAction audit entry. build_service() wires the production
collaborators from a validated Config.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from azure.core.credentials import TokenCredential

from .audit import AuditEventType, AuditLogEntry, AuditStore, AuditSummary
from .config import Config
from .directory import LdapDirectoryService
from .export import audit_entries_to_csv
from .graph import GraphCloudDirectory, GraphEndpointManagement, GraphTransport
from .mapping_loader import load_mappings
from .notifications import WebhookNotifier
from .processor import DeviceResult
from .reconciler import BatchRunStats, Reconciler
from .security import get_managed_identity_credential

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_PAGE_SIZE = 50
MAX_AUDIT_PAGE_SIZE = 1000

# Endpoint management lookups are not covered by the resilience policy
ENDPOINT_MANAGEMENT_RETRY_TOTAL = 3

EVENT_TYPE_DESCRIPTIONS: dict[AuditEventType, str] = {
    AuditEventType.SYSTEM_STARTUP: "Synchronizer started",
    AuditEventType.SYSTEM_SHUTDOWN: "Synchronizer stopped",
    AuditEventType.DEVICE_PROCESSING_STARTED: "Device reconciliation started",
    AuditEventType.DEVICE_PROCESSING_COMPLETED: "Device or run reconciliation completed",
    AuditEventType.DEVICE_PROCESSING_FAILED: "Device or run reconciliation failed",
    AuditEventType.EXTENSION_ATTRIBUTE_UPDATED: "Extension attribute written",
    AuditEventType.EXTENSION_ATTRIBUTE_UNCHANGED: "Extension attribute already up to date",
    AuditEventType.EXTENSION_ATTRIBUTE_UPDATE_FAILED: "Extension attribute could not be resolved or written",
    AuditEventType.CONFIGURATION_CHANGED: "Configuration validated or rejected",
    AuditEventType.NOTIFICATION_SENT: "Alert delivered",
    AuditEventType.NOTIFICATION_FAILED: "Alert delivery failed",
    AuditEventType.USER_ACTION: "Operator request",
    AuditEventType.PERFORMANCE_METRIC: "Timing measurement",
    AuditEventType.DATA_EXPORT: "Results or audit entries exported",
}


@dataclass(frozen=True)
class AuditPage:
    """One page of audit entries, newest first."""

    entries: list[AuditLogEntry]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.total else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
            "entries": [entry.to_dict() for entry in self.entries],
        }


class OperationsService:
    """On-demand operations and audit access."""

    def __init__(
        self,
        reconciler: Reconciler,
        *,
        requested_by: str = "cli",
        directory: LdapDirectoryService | None = None,
    ) -> None:
        self._reconciler = reconciler
        self._audit: AuditStore = reconciler.audit
        self._requested_by = requested_by
        self._directory = directory

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    async def process_device_by_name(self, display_name: str) -> DeviceResult | None:
        return await self._reconciler.process_device_by_name(display_name, self._requested_by)

    async def process_device_by_id(self, device_object_id: str) -> DeviceResult | None:
        return await self._reconciler.process_device_by_id(device_object_id, self._requested_by)

    async def run_reconciliation(self) -> BatchRunStats:
        await self._audit.log_user_action("RunReconciliation", self._requested_by)
        return await self._reconciler.reconcile_all()

    async def get_audit_logs(
        self,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        event_type: AuditEventType | None = None,
        device_name: str | None = None,
        page: int = 1,
        page_size: int = DEFAULT_AUDIT_PAGE_SIZE,
    ) -> AuditPage:
        """Filtered audit entries, paginated.

        Raises:
            ValueError: If page or page_size is out of range.
        """
        if page < 1:
            raise ValueError("page must be at least 1")
        if not 1 <= page_size <= MAX_AUDIT_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_AUDIT_PAGE_SIZE}")

        await self._audit.log_user_action(
            "GetAuditLogs",
            self._requested_by,
            device_name=device_name,
            additional_data=_filter_data(from_date, to_date, event_type, page=page, page_size=page_size),
        )

        entries = await self._audit.query(from_date, to_date, event_type, device_name)
        start = (page - 1) * page_size
        return AuditPage(
            entries=entries[start : start + page_size],
            total=len(entries),
            page=page,
            page_size=page_size,
        )

    async def get_audit_summary(
        self,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> AuditSummary:
        await self._audit.log_user_action(
            "GetAuditSummary",
            self._requested_by,
            additional_data=_filter_data(from_date, to_date, None),
        )
        return await self._audit.summarize(from_date, to_date)

    async def export_audit_logs(
        self,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        event_type: AuditEventType | None = None,
        device_name: str | None = None,
    ) -> str:
        """Filtered audit entries as CSV text."""
        await self._audit.log_user_action(
            "ExportAuditLogs",
            self._requested_by,
            device_name=device_name,
            additional_data=_filter_data(from_date, to_date, event_type, export_format="CSV"),
        )
        entries = await self._audit.query(from_date, to_date, event_type, device_name)
        csv_text = audit_entries_to_csv(entries)

        await self._audit.log_system_event(
            AuditEventType.DATA_EXPORT,
            f"Exported {len(entries)} audit entries",
            additional_data={"entries": len(entries), "format": "CSV"},
        )
        return csv_text

    @staticmethod
    def list_event_types() -> list[dict[str, str]]:
        return [
            {"value": event_type.value, "description": EVENT_TYPE_DESCRIPTIONS[event_type]}
            for event_type in AuditEventType
        ]

    async def close(self) -> None:
        """Flush audit entries and release connections."""
        await self._audit.flush()
        if self._directory is not None:
            self._directory.close()


def _filter_data(
    from_date: datetime | None,
    to_date: datetime | None,
    event_type: AuditEventType | None,
    **extra: Any,
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "from": from_date.isoformat() if from_date else None,
        "to": to_date.isoformat() if to_date else None,
        "event_type": event_type.value if event_type else None,
    }
    data.update(extra)
    return data


def build_service(
    config: Config,
    *,
    credential: TokenCredential | None = None,
    requested_by: str = "cli",
) -> OperationsService:
    """Wire production collaborators.

    Raises:
        MappingLoadError: If the mapping declaration is invalid.
        SecretlessViolationError: If credential secrets are in the environment.
    """
    mappings = load_mappings(config.mappings_file)
    credential = credential or get_managed_identity_credential()
    timeout = config.resilience.timeout_seconds

    cloud_directory = GraphCloudDirectory(
        GraphTransport.create(credential, config.graph_base_url, timeout_seconds=timeout)
    )

    endpoint_management = None
    if config.data_sources.enable_endpoint_management:
        endpoint_management = GraphEndpointManagement(
            GraphTransport.create(
                credential,
                config.graph_base_url,
                timeout_seconds=timeout,
                retry_total=ENDPOINT_MANAGEMENT_RETRY_TOTAL,
            )
        )

    directory = None
    if config.data_sources.enable_directory:
        directory = LdapDirectoryService(config.directory, timeout_seconds=timeout)

    notifier = None
    if config.notifications.webhook_url:
        notifier = WebhookNotifier(config.notifications.webhook_url)

    reconciler = Reconciler(
        config,
        mappings,
        cloud_directory,
        AuditStore(config.audit),
        directory=directory,
        endpoint_management=endpoint_management,
        notifier=notifier,
    )

    logger.info(
        "Service initialized",
        extra={
            "mappings": len(mappings),
            "directory_enabled": directory is not None,
            "endpoint_management_enabled": endpoint_management is not None,
            "alerts_enabled": notifier is not None,
            "export_enabled": config.export.path is not None,
        },
    )
    return OperationsService(reconciler, requested_by=requested_by, directory=directory)
