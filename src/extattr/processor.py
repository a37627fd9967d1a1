"""Per-device reconciliation.

A DeviceProcessor evaluates every enabled mapping for one device, in declaration
order: resolve, decide, write back when the value differs, and record exactly one
audit entry per mapping before moving to the next. A failing mapping never stops
its siblings; the device is successful only when no mapping failed or stayed
unresolved.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .audit import AuditEventType, AuditStore
from .clients import CloudDirectory
from .config import Config
from .decision import DecisionKind, decide, values_equal
from .models import AttributeMapping, DataSourceType, DeviceIdentity
from .resilience import ResiliencePolicy
from .resolver import ValueResolver

logger = logging.getLogger(__name__)


class MappingOutcome(str, Enum):
    UPDATED = "Updated"
    UNCHANGED = "Unchanged"
    UNRESOLVED = "Unresolved"
    FAILED = "Failed"


@dataclass(frozen=True)
class MappingResult:
    """Outcome of one mapping on one device."""

    attribute: str
    outcome: MappingOutcome
    old_value: str | None = None
    new_value: str | None = None
    source: DataSourceType | None = None
    error: str | None = None
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.outcome in (MappingOutcome.UPDATED, MappingOutcome.UNCHANGED)


@dataclass
class DeviceResult:
    """Outcome of reconciling one device."""

    device_name: str
    device_object_id: str
    mappings: list[MappingResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    duration_ms: float = 0.0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None and all(m.success for m in self.mappings)

    @property
    def updated_count(self) -> int:
        return sum(1 for m in self.mappings if m.outcome == MappingOutcome.UPDATED)

    @property
    def failed_attributes(self) -> list[str]:
        return [m.attribute for m in self.mappings if not m.success]

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_name": self.device_name,
            "device_object_id": self.device_object_id,
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
            "error": self.error,
            "mappings": [
                {
                    "attribute": m.attribute,
                    "outcome": m.outcome.value,
                    "old_value": m.old_value,
                    "new_value": m.new_value,
                    "source": m.source.value if m.source else None,
                    "error": m.error,
                }
                for m in self.mappings
            ],
        }


def filter_enabled_mappings(config: Config, mappings: list[AttributeMapping]) -> list[AttributeMapping]:
    """Mappings whose data source is globally enabled, in declaration order."""
    enabled = {
        DataSourceType.DIRECTORY: config.data_sources.enable_directory,
        DataSourceType.ENDPOINT_MANAGEMENT: config.data_sources.enable_endpoint_management,
    }
    return [m for m in mappings if enabled[m.data_source]]


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 2)


class DeviceProcessor:
    """Reconciles the extension attributes of one device at a time."""

    def __init__(
        self,
        config: Config,
        mappings: list[AttributeMapping],
        cloud_directory: CloudDirectory,
        resolver: ValueResolver,
        resilience: ResiliencePolicy,
        audit: AuditStore,
    ) -> None:
        self._config = config
        self._mappings = filter_enabled_mappings(config, mappings)
        self._cloud_directory = cloud_directory
        self._resolver = resolver
        self._resilience = resilience
        self._audit = audit

    @property
    def enabled_mappings(self) -> list[AttributeMapping]:
        return list(self._mappings)

    async def process(
        self, device: DeviceIdentity, correlation_id: str | None = None
    ) -> DeviceResult:
        """Reconcile all enabled mappings for one device.

        Mapping failures are captured in the result; only cancellation propagates.
        """
        start = time.monotonic()
        result = DeviceResult(device_name=device.name, device_object_id=device.id)

        if not self._mappings:
            logger.debug("No enabled mappings", extra={"device": device.name})
            return result

        await self._audit.log_device_processing(
            device.name,
            None,
            None,
            None,
            True,
            event_type=AuditEventType.DEVICE_PROCESSING_STARTED,
            correlation_id=correlation_id,
            description=f"Processing {len(self._mappings)} mapping(s)",
            additional_data={"device_object_id": device.id},
        )

        for mapping in self._mappings:
            mapping_result = await self._process_mapping(device, mapping, correlation_id)
            result.mappings.append(mapping_result)

        result.duration_ms = _elapsed_ms(start)

        if result.success:
            await self._audit.log_device_processing(
                device.name,
                None,
                None,
                None,
                True,
                event_type=AuditEventType.DEVICE_PROCESSING_COMPLETED,
                duration_ms=result.duration_ms,
                correlation_id=correlation_id,
                description=f"Updated {result.updated_count} attribute(s)",
            )
        else:
            await self._audit.log_device_processing(
                device.name,
                None,
                None,
                None,
                False,
                event_type=AuditEventType.DEVICE_PROCESSING_FAILED,
                duration_ms=result.duration_ms,
                correlation_id=correlation_id,
                error_message=f"Failed attributes: {', '.join(result.failed_attributes)}",
            )

        logger.info(
            "Device processed",
            extra={
                "device": device.name,
                "success": result.success,
                "updated": result.updated_count,
                "failed": len(result.failed_attributes),
                "duration_ms": result.duration_ms,
            },
        )
        return result

    async def _process_mapping(
        self,
        device: DeviceIdentity,
        mapping: AttributeMapping,
        correlation_id: str | None,
    ) -> MappingResult:
        start = time.monotonic()
        attribute = mapping.target_attribute
        old_value = device.current_value(attribute)
        new_value: str | None = None
        error: str | None = None

        try:
            resolved = await self._resolver.resolve(device, mapping)
            new_value = resolved.final
            decision = decide(old_value, resolved.final)

            if decision.kind == DecisionKind.UNRESOLVED:
                outcome = MappingOutcome.UNRESOLVED
                error = resolved.error or (
                    f"No value for {mapping.source_attribute} from "
                    f"{mapping.data_source.value} and no default configured"
                )
                logger.warning(
                    "Mapping unresolved",
                    extra={"device": device.name, "attribute": attribute, "error": error},
                )
            elif decision.kind == DecisionKind.NO_OP:
                outcome = MappingOutcome.UNCHANGED
            else:
                assert decision.new_value is not None
                error = await self._write(device, attribute, decision.new_value)
                outcome = MappingOutcome.FAILED if error else MappingOutcome.UPDATED
        except Exception as e:
            outcome = MappingOutcome.FAILED
            error = f"{type(e).__name__}: {e}"
            logger.error(
                "Mapping failed",
                extra={"device": device.name, "attribute": attribute, "error": error},
            )

        result = MappingResult(
            attribute=attribute,
            outcome=outcome,
            old_value=old_value,
            new_value=new_value,
            source=mapping.data_source,
            error=error,
            duration_ms=_elapsed_ms(start),
        )
        await self._audit_mapping(device, result, correlation_id)
        return result

    async def _write(self, device: DeviceIdentity, attribute: str, value: str) -> str | None:
        """Write through the resilience policy.

        Returns:
            None on success, otherwise the failure detail.
        """
        written = await self._resilience.execute(
            lambda: self._cloud_directory.set_extension_attribute(device.id, attribute, value),
            operation_name=f"Set {attribute}",
        )
        if written is None:
            return "Cloud directory did not confirm the write"

        if self._config.verify_writes:
            stored = await self._resilience.execute(
                lambda: self._cloud_directory.get_extension_attribute(device.id, attribute),
                operation_name=f"Verify {attribute}",
            )
            if not values_equal(stored, value):
                return f"Verification failed: expected '{value}', read back '{stored}'"

        return None

    async def _audit_mapping(
        self, device: DeviceIdentity, result: MappingResult, correlation_id: str | None
    ) -> None:
        if result.outcome == MappingOutcome.UPDATED:
            event_type = AuditEventType.EXTENSION_ATTRIBUTE_UPDATED
        elif result.outcome == MappingOutcome.UNCHANGED:
            event_type = AuditEventType.EXTENSION_ATTRIBUTE_UNCHANGED
        else:
            event_type = AuditEventType.EXTENSION_ATTRIBUTE_UPDATE_FAILED

        await self._audit.log_device_processing(
            device.name,
            result.attribute,
            result.old_value,
            result.new_value,
            result.success,
            event_type=event_type,
            duration_ms=result.duration_ms,
            error_message=result.error,
            correlation_id=correlation_id,
            description=result.outcome.value,
            additional_data={
                "data_source": result.source.value if result.source else None,
                "outcome": result.outcome.value,
            },
        )
