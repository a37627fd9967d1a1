"""Microsoft Graph clients for devices and managed devices.

Both clients use an azure-core pipeline authenticated with a bearer token from
the managed identity. The pipeline is synchronous; each request runs in the
default executor so the event loop is never blocked. A cancelled attempt cannot
stop its executor thread, so socket timeouts are set just below the attempt
timeout.

Error contract:
- 404 maps to None (object does not exist)
- any other non-2xx status raises HttpResponseError, which the resilience
  layer classifies as transient or fatal

The cloud directory pipeline carries no retry policy of its own: retries for
those calls belong to ResiliencePolicy.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any
from urllib.parse import quote

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    HeadersPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest, HttpResponse

from .config import DEFAULT_CALL_TIMEOUT_SECONDS, DEFAULT_GRAPH_BASE_URL
from .models import DeviceIdentity, DevicePage, ManagedDevice

logger = logging.getLogger(__name__)

GRAPH_SCOPE = "https://graph.microsoft.com/.default"
USER_AGENT = "extattr/1.0"

DEVICE_SELECT = "id,displayName,deviceId,extensionAttributes,trustType"

# Preferred trust type when several devices share a display name
PREFERRED_TRUST_TYPE = "ServerAd"

# Socket timeouts end before the per-attempt wait_for bound so a thread
# abandoned by a timed-out attempt does not outlive the attempt by much
TRANSPORT_TIMEOUT_MARGIN_SECONDS = 1.0


def odata_quote(value: str) -> str:
    """Quote a string literal for an OData $filter."""
    return "'" + value.replace("'", "''") + "'"


def transport_timeout(timeout_seconds: float) -> float:
    """Socket timeout for a request bounded by timeout_seconds per attempt."""
    return timeout_seconds - min(TRANSPORT_TIMEOUT_MARGIN_SECONDS, timeout_seconds / 2)


def _path_segment(value: str) -> str:
    return quote(value, safe="")


def _scalar_text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, bool):
        return "True" if value else "False"
    return str(value)


class GraphTransport:
    """Thin async wrapper over a synchronous azure-core pipeline."""

    def __init__(
        self,
        client: PipelineClient,
        timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._timeout_seconds = transport_timeout(timeout_seconds)

    @classmethod
    def create(
        cls,
        credential: TokenCredential,
        base_url: str = DEFAULT_GRAPH_BASE_URL,
        *,
        timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        retry_total: int = 0,
    ) -> GraphTransport:
        policies: list[Any] = [
            HeadersPolicy({"ConsistencyLevel": "eventual", "Accept": "application/json"}),
            UserAgentPolicy(base_user_agent=USER_AGENT),
        ]
        if retry_total:
            policies.append(RetryPolicy(retry_total=retry_total))
        policies.append(BearerTokenCredentialPolicy(credential, GRAPH_SCOPE))

        return cls(PipelineClient(base_url=base_url, policies=policies), timeout_seconds)

    async def send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> HttpResponse | None:
        """Send a request. Returns None on 404.

        Raises:
            HttpResponseError: On any other non-success status.
        """
        request = HttpRequest(method, url, params=params, json=json)
        send = functools.partial(
            self._client.send_request,
            request,
            connection_timeout=self._timeout_seconds,
            read_timeout=self._timeout_seconds,
        )

        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, send)

        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response

    async def get_json(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any] | None:
        response = await self.send("GET", url, params=params)
        if response is None:
            return None
        return response.json()


class GraphCloudDirectory:
    """Device objects in Entra ID via Microsoft Graph."""

    def __init__(self, transport: GraphTransport, api_version: str = "v1.0") -> None:
        self._transport = transport
        self._devices_url = f"/{api_version}/devices"

    async def list_devices_page(self, page_size: int, next_link: str | None = None) -> DevicePage:
        if next_link:
            data = await self._transport.get_json(next_link)
        else:
            data = await self._transport.get_json(
                self._devices_url,
                params={"$top": page_size, "$select": DEVICE_SELECT},
            )

        data = data or {}
        devices = [DeviceIdentity.from_graph(item) for item in data.get("value", [])]
        return DevicePage(devices=devices, next_link=data.get("@odata.nextLink"))

    async def get_device(self, device_object_id: str) -> DeviceIdentity | None:
        data = await self._transport.get_json(
            f"{self._devices_url}/{_path_segment(device_object_id)}",
            params={"$select": DEVICE_SELECT},
        )
        return DeviceIdentity.from_graph(data) if data else None

    async def get_device_by_name(self, display_name: str) -> DeviceIdentity | None:
        data = await self._transport.get_json(
            self._devices_url,
            params={
                "$filter": f"displayName eq {odata_quote(display_name)}",
                "$select": DEVICE_SELECT,
            },
        )
        matches = [DeviceIdentity.from_graph(item) for item in (data or {}).get("value", [])]
        if not matches:
            return None

        if len(matches) > 1:
            logger.warning(
                "Multiple devices share a display name",
                extra={"device": display_name, "matches": len(matches)},
            )
            for device in matches:
                if (device.trust_type or "").lower() == PREFERRED_TRUST_TYPE.lower():
                    return device
        return matches[0]

    async def get_extension_attribute(self, device_object_id: str, name: str) -> str | None:
        data = await self._transport.get_json(
            f"{self._devices_url}/{_path_segment(device_object_id)}",
            params={"$select": "extensionAttributes"},
        )
        if not data:
            return None
        return DeviceIdentity.from_graph({"id": device_object_id, **data}).current_value(name)

    async def set_extension_attribute(
        self, device_object_id: str, name: str, value: str
    ) -> str | None:
        response = await self._transport.send(
            "PATCH",
            f"{self._devices_url}/{_path_segment(device_object_id)}",
            json={"extensionAttributes": {name: value}},
        )
        if response is None:
            logger.warning(
                "Device disappeared before write",
                extra={"device_object_id": device_object_id, "attribute": name},
            )
            return None
        return value


class GraphEndpointManagement:
    """Managed devices in Intune via Microsoft Graph."""

    def __init__(self, transport: GraphTransport) -> None:
        self._transport = transport
        self._managed_devices_url = "/v1.0/deviceManagement/managedDevices"
        # hardwareInformation is only selectable on the beta endpoint
        self._hardware_url = "/beta/deviceManagement/managedDevices"

    async def _find_one(self, filter_expression: str) -> ManagedDevice | None:
        data = await self._transport.get_json(
            self._managed_devices_url,
            params={"$filter": filter_expression, "$top": 1},
        )
        items = (data or {}).get("value", [])
        return ManagedDevice.from_graph(items[0]) if items else None

    async def get_device_by_name(self, device_name: str) -> ManagedDevice | None:
        return await self._find_one(f"deviceName eq {odata_quote(device_name)}")

    async def get_device_by_external_id(self, device_id: str) -> ManagedDevice | None:
        return await self._find_one(f"azureADDeviceId eq {odata_quote(device_id)}")

    async def get_hardware_info(self, managed_device_id: str) -> dict[str, str | None]:
        data = await self._transport.get_json(
            f"{self._hardware_url}/{_path_segment(managed_device_id)}",
            params={"$select": "id,hardwareInformation"},
        )
        hardware = (data or {}).get("hardwareInformation") or {}
        return {
            key.lower(): _scalar_text(value)
            for key, value in hardware.items()
            if not isinstance(value, (dict, list))
        }
