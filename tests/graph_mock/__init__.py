"""In-memory fakes of the external systems for testing.

This package provides stand-ins for Microsoft Graph (cloud directory and
endpoint management) and the on-premises directory so the engine can be
exercised without network access.

Key Features:
- In-memory device state with paging and recorded writes
- In-flight call counting for concurrency assertions
- Error injection per device, per attribute, or per call
- Managed Identity credential simulation

Usage:
    from graph_mock import FakeCloudDirectory, FakeDirectoryService, make_device

    cloud = FakeCloudDirectory([make_device("PC-1", extensionAttribute1="old")])
    directory = FakeDirectoryService({("PC-1", "location"): "Zurich"})

    reconciler = Reconciler(config, mappings, cloud, audit, directory=directory)
    await reconciler.reconcile_all()

    assert cloud.writes == [("dev-PC-1", "extensionAttribute1", "Zurich")]
"""

from .cloud import FakeCloudDirectory, make_device, make_devices
from .config import make_config, make_resilience
from .credential import MockManagedIdentityCredential, create_mock_credential
from .errors import make_http_error
from .sources import FakeDirectoryService, FakeEndpointManagement, make_managed_device

__all__ = [
    "FakeCloudDirectory",
    "FakeDirectoryService",
    "FakeEndpointManagement",
    "MockManagedIdentityCredential",
    "create_mock_credential",
    "make_config",
    "make_device",
    "make_devices",
    "make_http_error",
    "make_managed_device",
    "make_resilience",
]
