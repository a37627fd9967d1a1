"""Value resolution for one (device, mapping) pair.

Resolution reads the raw value from the mapping's data source, substitutes the
mapping default when the source has no value, and applies optional regex
extraction. Lookups report their outcome as a Lookup result (found, not found,
error) instead of raising, and resolve() itself never raises: every failure
degrades to the mapping default and is recorded on the ResolvedValue.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from .clients import DirectoryService, EndpointManagement
from .models import (
    AttributeMapping,
    DataSourceType,
    DeviceIdentity,
    ManagedDevice,
    read_managed_device_property,
)

logger = logging.getLogger(__name__)


class LookupStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class Lookup:
    """Outcome of reading one source attribute."""

    status: LookupStatus
    value: str | None = None
    reason: str | None = None

    @classmethod
    def found(cls, value: str) -> Lookup:
        return cls(LookupStatus.FOUND, value=value)

    @classmethod
    def not_found(cls, reason: str | None = None) -> Lookup:
        return cls(LookupStatus.NOT_FOUND, reason=reason)

    @classmethod
    def error(cls, reason: str) -> Lookup:
        return cls(LookupStatus.ERROR, reason=reason)

    @classmethod
    def of(cls, value: str | None) -> Lookup:
        """Found for a non-empty value, NotFound otherwise."""
        return cls.found(value) if value else cls.not_found()


@dataclass(frozen=True)
class ResolvedValue:
    """Result of resolving one mapping for one device.

    Attributes:
        raw: Value read from the data source (None when not found or on error)
        extracted: Regex extraction result (None when no regex or no match)
        final: Value to reconcile against the stored attribute
        source_used: Data source consulted
        error: Lookup failure detail, if the lookup failed
        used_default: Whether final came from the mapping default
    """

    raw: str | None
    extracted: str | None
    final: str | None
    source_used: DataSourceType
    error: str | None = None
    used_default: bool = False

    @property
    def resolved(self) -> bool:
        return bool(self.final)


def extract_value(value: str, pattern: re.Pattern[str], capture_group: int | None) -> str | None:
    """Apply regex extraction.

    capture_group None selects the first participating group, or the whole match
    when the pattern has no groups. 0 selects the whole match, N selects group N.

    Returns:
        Extracted text, or None when the pattern does not match.
    """
    match = pattern.search(value)
    if match is None:
        return None

    if capture_group is not None:
        return match.group(capture_group)

    for index in range(1, pattern.groups + 1):
        group = match.group(index)
        if group is not None:
            return group
    return match.group(0)


class ValueResolver:
    """Resolves mapping values from the on-prem directory or endpoint management."""

    def __init__(
        self,
        directory: DirectoryService | None = None,
        endpoint_management: EndpointManagement | None = None,
    ) -> None:
        self._directory = directory
        self._endpoint_management = endpoint_management

    async def resolve(self, device: DeviceIdentity, mapping: AttributeMapping) -> ResolvedValue:
        """Resolve the value a device's target attribute should hold. Never raises."""
        try:
            lookup = await self.lookup(device, mapping)
        except Exception as e:
            lookup = Lookup.error(f"{type(e).__name__}: {e}")

        if lookup.status == LookupStatus.ERROR:
            logger.warning(
                "Source lookup failed, falling back to default",
                extra={
                    "device": device.name,
                    "attribute": mapping.target_attribute,
                    "source_attribute": mapping.source_attribute,
                    "data_source": mapping.data_source.value,
                    "error": lookup.reason,
                },
            )

        raw = lookup.value if lookup.status == LookupStatus.FOUND else None
        default = mapping.default_value or None

        candidate = raw
        used_default = False
        if not candidate:
            candidate = default
            used_default = candidate is not None

        extracted = None
        final = candidate
        pattern = mapping.compiled_regex
        if pattern is not None and candidate:
            try:
                extracted = extract_value(candidate, pattern, mapping.capture_group)
            except (IndexError, re.error) as e:
                logger.warning(
                    "Regex extraction failed",
                    extra={"device": device.name, "regex": mapping.regex, "error": str(e)},
                )
                extracted = None

            if extracted:
                final = extracted
            else:
                # An unmatched value counts as unavailable
                final = default
                used_default = default is not None
                logger.debug(
                    "Regex did not match, using default",
                    extra={
                        "device": device.name,
                        "attribute": mapping.target_attribute,
                        "regex": mapping.regex,
                        "value": candidate,
                    },
                )

        return ResolvedValue(
            raw=raw,
            extracted=extracted,
            final=final,
            source_used=mapping.data_source,
            error=lookup.reason if lookup.status == LookupStatus.ERROR else None,
            used_default=used_default,
        )

    async def lookup(self, device: DeviceIdentity, mapping: AttributeMapping) -> Lookup:
        """Read the raw source value for a mapping."""
        if mapping.data_source == DataSourceType.DIRECTORY:
            return await self._lookup_directory(device, mapping)
        return await self._lookup_endpoint_management(device, mapping)

    async def _lookup_directory(self, device: DeviceIdentity, mapping: AttributeMapping) -> Lookup:
        if self._directory is None:
            return Lookup.error("directory source is not configured")
        if not device.display_name:
            return Lookup.not_found("device has no display name")

        value = await self._directory.get_computer_attribute(
            device.display_name, mapping.source_attribute
        )
        return Lookup.of(value)

    async def _lookup_endpoint_management(
        self, device: DeviceIdentity, mapping: AttributeMapping
    ) -> Lookup:
        if self._endpoint_management is None:
            return Lookup.error("endpoint management source is not configured")

        managed = await self._find_managed_device(device)
        if managed is None:
            return Lookup.not_found("no managed device record")

        if mapping.use_hardware_info:
            info = await self._endpoint_management.get_hardware_info(managed.id)
            lowered = {key.lower(): value for key, value in info.items()}
            return Lookup.of(lowered.get(mapping.source_attribute.lower()))

        try:
            value = read_managed_device_property(managed, mapping.source_attribute)
        except KeyError:
            return Lookup.error(f"unknown managed device property '{mapping.source_attribute}'")
        return Lookup.of(value)

    async def _find_managed_device(self, device: DeviceIdentity) -> ManagedDevice | None:
        assert self._endpoint_management is not None

        managed = None
        if device.device_id:
            managed = await self._endpoint_management.get_device_by_external_id(device.device_id)
        if managed is None and device.display_name:
            managed = await self._endpoint_management.get_device_by_name(device.display_name)
        return managed
