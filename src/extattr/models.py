"""Domain models for mapping declarations and device records.

Mapping declarations are pydantic models so YAML input is validated at the
boundary (fail fast, fail loudly). Device records returned by the external
directories are plain dataclasses; they are read fresh on every run and never
persisted by the synchronizer.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

from .config import MAX_EXTENSION_ATTRIBUTE_INDEX

EXTENSION_ATTRIBUTE_PATTERN = re.compile(r"^extensionattribute(\d{1,2})$", re.IGNORECASE)


def normalize_extension_attribute(name: str) -> str:
    """Return the canonical spelling of an extension attribute name.

    Graph exposes extensionAttribute1..extensionAttribute15 on device objects.
    Any casing of that name is accepted and normalized to the Graph spelling.

    Raises:
        ValueError: If the name is not an extension attribute.
    """
    match = EXTENSION_ATTRIBUTE_PATTERN.match(name.strip())
    if match is None:
        raise ValueError(f"'{name}' is not an extension attribute name (extensionAttribute1-15)")

    index = int(match.group(1))
    if not 1 <= index <= MAX_EXTENSION_ATTRIBUTE_INDEX:
        raise ValueError(
            f"'{name}' is out of range: extension attributes are numbered "
            f"1-{MAX_EXTENSION_ATTRIBUTE_INDEX}"
        )
    return f"extensionAttribute{index}"


class DataSourceType(str, Enum):
    """Systems a mapping can read its source value from."""

    DIRECTORY = "Directory"
    ENDPOINT_MANAGEMENT = "EndpointManagement"


# Names used by older mapping files
_DATA_SOURCE_ALIASES: dict[str, DataSourceType] = {
    "directory": DataSourceType.DIRECTORY,
    "activedirectory": DataSourceType.DIRECTORY,
    "ad": DataSourceType.DIRECTORY,
    "endpointmanagement": DataSourceType.ENDPOINT_MANAGEMENT,
    "intune": DataSourceType.ENDPOINT_MANAGEMENT,
}


# =============================================================================
# Mapping Declarations
# =============================================================================


class AttributeMapping(BaseModel):
    """One target extension attribute fed from one source attribute."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    target_attribute: str = Field(
        validation_alias=AliasChoices("extensionAttribute", "targetAttribute", "target_attribute"),
        min_length=1,
    )
    source_attribute: str = Field(alias="sourceAttribute", min_length=1)
    data_source: DataSourceType = Field(alias="dataSource")
    regex: str | None = None
    # None: first successful group (whole match without groups); 0: whole match
    capture_group: int | None = Field(None, alias="captureGroup", ge=0)
    default_value: str | None = Field(None, alias="defaultValue")
    use_hardware_info: bool = Field(False, alias="useHardwareInfo")

    @field_validator("target_attribute")
    @classmethod
    def validate_target(cls, v: str) -> str:
        return normalize_extension_attribute(v)

    @field_validator("data_source", mode="before")
    @classmethod
    def validate_data_source(cls, v: Any) -> Any:
        if isinstance(v, str):
            resolved = _DATA_SOURCE_ALIASES.get(v.replace("_", "").replace("-", "").lower())
            if resolved is None:
                valid = [s.value for s in DataSourceType]
                raise ValueError(f"dataSource must be one of {valid}")
            return resolved
        return v

    @field_validator("regex")
    @classmethod
    def validate_regex(cls, v: str | None) -> str | None:
        if v is None or v == "":
            return None
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid regex '{v}': {e}") from e
        return v

    @model_validator(mode="after")
    def validate_capture_group(self) -> AttributeMapping:
        if self.capture_group is not None:
            if self.regex is None:
                raise ValueError("captureGroup requires regex")
            groups = re.compile(self.regex).groups
            if self.capture_group > groups:
                raise ValueError(
                    f"captureGroup {self.capture_group} exceeds the {groups} group(s) in regex"
                )
        return self

    @property
    def compiled_regex(self) -> re.Pattern[str] | None:
        # re caches compiled patterns; frozen models cannot hold one
        return re.compile(self.regex) if self.regex else None

    def describe(self) -> str:
        return (
            f"{self.target_attribute} <- {self.source_attribute} "
            f"(source: {self.data_source.value}, regex: {self.regex or 'none'}, "
            f"default: {self.default_value or 'none'})"
        )


class MappingSet(BaseModel):
    """The full mapping declaration, loaded once at startup."""

    model_config = {"extra": "ignore", "frozen": True}

    mappings: list[AttributeMapping] = Field(default_factory=list)

    @field_validator("mappings")
    @classmethod
    def validate_unique_targets(cls, v: list[AttributeMapping]) -> list[AttributeMapping]:
        duplicates = find_duplicate_targets(v)
        if duplicates:
            raise ValueError(f"duplicate extension attribute mappings: {', '.join(duplicates)}")
        return v


def find_duplicate_targets(mappings: list[AttributeMapping]) -> list[str]:
    """Return target attributes declared more than once, in declaration order."""
    seen: set[str] = set()
    duplicates: list[str] = []
    for mapping in mappings:
        key = mapping.target_attribute.lower()
        if key in seen and mapping.target_attribute not in duplicates:
            duplicates.append(mapping.target_attribute)
        seen.add(key)
    return duplicates


# =============================================================================
# Device Records
# =============================================================================


@dataclass(frozen=True)
class DeviceIdentity:
    """A device object in the cloud identity directory.

    Attributes:
        id: Directory object id (used for reads and writes)
        display_name: Device display name (used for source lookups)
        device_id: Source-system device identifier (Entra deviceId)
        extension_attributes: Current value of each extension attribute
        trust_type: Join type (ServerAd, AzureAd, Workplace)
    """

    id: str
    display_name: str | None = None
    device_id: str | None = None
    extension_attributes: dict[str, str | None] = field(default_factory=dict)
    trust_type: str | None = None

    @property
    def name(self) -> str:
        return self.display_name or "Unknown"

    def current_value(self, attribute: str) -> str | None:
        """Current value of an extension attribute, matched case-insensitively."""
        wanted = attribute.lower()
        for key, value in self.extension_attributes.items():
            if key.lower() == wanted:
                return value
        return None

    @classmethod
    def from_graph(cls, data: dict[str, Any]) -> DeviceIdentity:
        """Build from a Graph device resource."""
        attributes = data.get("extensionAttributes") or {}
        return cls(
            id=data["id"],
            display_name=data.get("displayName"),
            device_id=data.get("deviceId"),
            extension_attributes={
                key: (str(value) if value is not None else None)
                for key, value in attributes.items()
            },
            trust_type=data.get("trustType"),
        )


@dataclass(frozen=True)
class DevicePage:
    """One page of a device enumeration."""

    devices: list[DeviceIdentity]
    next_link: str | None = None


@dataclass(frozen=True)
class ManagedDevice:
    """A device record in the endpoint management service."""

    id: str
    device_name: str | None = None
    azure_ad_device_id: str | None = None
    operating_system: str | None = None
    os_version: str | None = None
    manufacturer: str | None = None
    model: str | None = None
    serial_number: str | None = None
    compliance_state: str | None = None
    management_agent: str | None = None
    owner_type: str | None = None
    user_principal_name: str | None = None
    enrolled_date_time: str | None = None
    last_sync_date_time: str | None = None
    wifi_mac_address: str | None = None
    ethernet_mac_address: str | None = None
    imei: str | None = None
    meid: str | None = None
    phone_number: str | None = None
    subscriber_carrier: str | None = None
    total_storage_space_in_bytes: int | None = None
    free_storage_space_in_bytes: int | None = None
    is_encrypted: bool | None = None

    @classmethod
    def from_graph(cls, data: dict[str, Any]) -> ManagedDevice:
        """Build from a Graph managedDevice resource."""
        return cls(
            id=data["id"],
            device_name=data.get("deviceName"),
            azure_ad_device_id=data.get("azureADDeviceId"),
            operating_system=data.get("operatingSystem"),
            os_version=data.get("osVersion"),
            manufacturer=data.get("manufacturer"),
            model=data.get("model"),
            serial_number=data.get("serialNumber"),
            compliance_state=data.get("complianceState"),
            management_agent=data.get("managementAgent"),
            owner_type=data.get("managedDeviceOwnerType"),
            user_principal_name=data.get("userPrincipalName"),
            enrolled_date_time=data.get("enrolledDateTime"),
            last_sync_date_time=data.get("lastSyncDateTime"),
            wifi_mac_address=data.get("wiFiMacAddress"),
            ethernet_mac_address=data.get("ethernetMacAddress"),
            imei=data.get("imei"),
            meid=data.get("meid"),
            phone_number=data.get("phoneNumber"),
            subscriber_carrier=data.get("subscriberCarrier"),
            total_storage_space_in_bytes=data.get("totalStorageSpaceInBytes"),
            free_storage_space_in_bytes=data.get("freeStorageSpaceInBytes"),
            is_encrypted=data.get("isEncrypted"),
        )


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "True" if value else "False"
    return str(value)


def _timestamp(value: str | None, fmt: str) -> str | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value).strftime(fmt)
    except ValueError:
        return None


_KB = 1024
_MB = 1024 * 1024
_GB = 1024 * 1024 * 1024


def format_storage_size(size_bytes: int | None) -> str | None:
    """Human-readable size with two decimals, e.g. "237.87 GB"."""
    if not size_bytes or size_bytes <= 0:
        return None
    if size_bytes >= _GB:
        return f"{size_bytes / _GB:.2f} GB"
    if size_bytes >= _MB:
        return f"{size_bytes / _MB:.2f} MB"
    if size_bytes >= _KB:
        return f"{size_bytes / _KB:.2f} KB"
    return f"{size_bytes} B"


def format_storage_size_gb(size_bytes: int | None) -> str | None:
    """Whole gigabytes, e.g. "238"."""
    if not size_bytes or size_bytes <= 0:
        return None
    return f"{size_bytes / _GB:.0f}"


# Source attribute name (lower-cased) -> accessor on ManagedDevice.
# Built once; mapping source attributes are looked up here instead of by reflection.
MANAGED_DEVICE_PROPERTIES: dict[str, Callable[[ManagedDevice], str | None]] = {
    "id": lambda d: d.id,
    "devicename": lambda d: d.device_name,
    "azureaddeviceid": lambda d: d.azure_ad_device_id,
    "operatingsystem": lambda d: d.operating_system,
    "osversion": lambda d: d.os_version,
    "operatingsystemversion": lambda d: d.os_version,
    "manufacturer": lambda d: d.manufacturer,
    "model": lambda d: d.model,
    "serialnumber": lambda d: d.serial_number,
    "compliancestate": lambda d: d.compliance_state,
    "managementagent": lambda d: d.management_agent,
    "manageddeviceownertype": lambda d: d.owner_type,
    "ownertype": lambda d: d.owner_type,
    "userprincipalname": lambda d: d.user_principal_name,
    "enrolleddatetime": lambda d: d.enrolled_date_time,
    "lastsyncdatetime": lambda d: d.last_sync_date_time,
    "wifimacaddress": lambda d: d.wifi_mac_address,
    "ethernetmacaddress": lambda d: d.ethernet_mac_address,
    "imei": lambda d: d.imei,
    "meid": lambda d: d.meid,
    "phonenumber": lambda d: d.phone_number,
    "subscribercarrier": lambda d: d.subscriber_carrier,
    "totalstoragespaceinbytes": lambda d: _text(d.total_storage_space_in_bytes),
    "freestoragespaceinbytes": lambda d: _text(d.free_storage_space_in_bytes),
    "isencrypted": lambda d: _text(d.is_encrypted),
    # Derived values
    "deviceid": lambda d: d.id,
    "lastsyncdate": lambda d: _timestamp(d.last_sync_date_time, "%Y-%m-%d"),
    "lastsynctime": lambda d: _timestamp(d.last_sync_date_time, "%H:%M:%S"),
    "lastsyncfull": lambda d: _timestamp(d.last_sync_date_time, "%Y-%m-%d %H:%M:%S"),
    "enrolleddate": lambda d: _timestamp(d.enrolled_date_time, "%Y-%m-%d"),
    "totalstorage": lambda d: format_storage_size(d.total_storage_space_in_bytes),
    "totalstoragegb": lambda d: format_storage_size_gb(d.total_storage_space_in_bytes),
    "freestorage": lambda d: format_storage_size(d.free_storage_space_in_bytes),
    "freestoragegb": lambda d: format_storage_size_gb(d.free_storage_space_in_bytes),
}


def read_managed_device_property(device: ManagedDevice, name: str) -> str | None:
    """Read a managed device property by its (case-insensitive) source name.

    Raises:
        KeyError: If the property name is not known.
    """
    accessor = MANAGED_DEVICE_PROPERTIES[name.lower()]
    return accessor(device)
