"""Security enforcement for secretless authentication.

The synchronizer authenticates to Microsoft Graph with a managed identity only:
- NO client secrets, certificates, or passwords in the environment
- ManagedIdentityCredential is the ONLY credential type handed to clients

A detected credential variable is fatal at startup (exit code 2).
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate secret-based authentication
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
    "GRAPH_CLIENT_SECRET",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "SECURITY VIOLATION: {env_var} is set.\n"
    "The extension attribute synchronizer authenticates with a managed identity only.\n"
    "Remove every credential variable from the environment, assign a managed identity\n"
    "to the host, and grant it Device.ReadWrite.All and\n"
    "DeviceManagementManagedDevices.Read.All on Microsoft Graph."
)


class SecretlessViolationError(Exception):
    """Raised when a credential secret is present in the environment.

    The synchronizer MUST NOT start when this is raised.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Refuse to run with credential secrets in the environment.

    Raises:
        SecretlessViolationError: If any forbidden variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.info(
        "Secretless architecture verified",
        extra={
            "security_event": "secretless_verified",
            "credential_type": "ManagedIdentity",
        },
    )


def get_managed_identity_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Get a ManagedIdentityCredential after verifying the environment is secretless.

    Args:
        client_id: Client id of a user-assigned identity. Falls back to AZURE_CLIENT_ID,
            then to the system-assigned identity.

    Raises:
        SecretlessViolationError: If credential environment variables are detected.
    """
    enforce_secretless_architecture()

    client_id = client_id or os.environ.get("AZURE_CLIENT_ID") or None
    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()
