"""Interfaces of the external systems the synchronizer talks to.

The engine depends only on these protocols. Production implementations live in
graph.py (cloud directory, endpoint management) and directory.py (on-prem
directory); tests substitute in-memory fakes.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .models import DeviceIdentity, DevicePage, ManagedDevice


@runtime_checkable
class CloudDirectory(Protocol):
    """Cloud identity directory holding device objects and their extension attributes."""

    async def list_devices_page(
        self, page_size: int, next_link: str | None = None
    ) -> DevicePage: ...

    async def get_device(self, device_object_id: str) -> DeviceIdentity | None: ...

    async def get_device_by_name(self, display_name: str) -> DeviceIdentity | None: ...

    async def get_extension_attribute(self, device_object_id: str, name: str) -> str | None: ...

    async def set_extension_attribute(
        self, device_object_id: str, name: str, value: str
    ) -> str | None:
        """Write an attribute. Returns the written value, or None on failure."""
        ...


@runtime_checkable
class EndpointManagement(Protocol):
    """Endpoint management service holding managed-device records."""

    async def get_device_by_name(self, device_name: str) -> ManagedDevice | None: ...

    async def get_device_by_external_id(self, device_id: str) -> ManagedDevice | None: ...

    async def get_hardware_info(self, managed_device_id: str) -> dict[str, str | None]: ...


@runtime_checkable
class DirectoryService(Protocol):
    """On-premises directory holding computer objects."""

    async def get_computer_attribute(self, dn_or_cn: str, attribute: str) -> str:
        """Read one attribute of a computer object.

        Returns "" when the object or attribute does not exist.

        Raises:
            ValueError: If the name or attribute is malformed.
        """
        ...
