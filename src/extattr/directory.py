"""On-premises directory lookups over LDAP.

Computer objects are located by common name (the cloud device display name) or
by distinguished name. The ldap3 connection is synchronous and not safe for
concurrent use, so searches are serialized behind a lock and run in the
default executor.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from typing import Any

import ldap3
from ldap3.core.exceptions import LDAPException, LDAPInvalidDnError
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import parse_dn

from .config import DEFAULT_CALL_TIMEOUT_SECONDS, DirectoryServiceConfig

logger = logging.getLogger(__name__)

ATTRIBUTE_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9-]*$")


def split_computer_identity(dn_or_cn: str) -> tuple[str, str | None]:
    """Split a computer identity into (cn, search_base).

    A bare name is a common name searched under the configured base. A
    distinguished name must start with CN=; the rest of it is the search base.

    Raises:
        ValueError: If the input is empty or not a valid computer DN.
    """
    value = (dn_or_cn or "").strip()
    if not value:
        raise ValueError("Computer name cannot be empty")

    if "=" not in value:
        return value, None

    try:
        components = parse_dn(value)
    except LDAPInvalidDnError as e:
        raise ValueError(f"Invalid distinguished name '{value}': {e}") from e

    if not components or components[0][0].lower() != "cn":
        raise ValueError(f"Distinguished name must start with CN=: '{value}'")

    cn = components[0][1]
    base = ",".join(f"{attr}={val}" for attr, val, _ in components[1:])
    return cn, base or None


def _first_text(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class LdapDirectoryService:
    """Reads computer object attributes from Active Directory."""

    def __init__(
        self,
        config: DirectoryServiceConfig,
        timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
    ) -> None:
        if not config.server_uri:
            raise ValueError("Directory server URI is required")
        self._config = config
        self._timeout_seconds = timeout_seconds
        self._lock = threading.Lock()
        self._connection: ldap3.Connection | None = None

    def _connect(self) -> ldap3.Connection:
        server = ldap3.Server(
            self._config.server_uri,
            get_info=ldap3.NONE,
            connect_timeout=int(self._timeout_seconds),
        )
        if self._config.use_kerberos:
            connection = ldap3.Connection(
                server,
                authentication=ldap3.SASL,
                sasl_mechanism=ldap3.KERBEROS,
                auto_bind=True,
                read_only=True,
                receive_timeout=int(self._timeout_seconds),
            )
        else:
            connection = ldap3.Connection(
                server,
                auto_bind=True,
                read_only=True,
                receive_timeout=int(self._timeout_seconds),
            )

        logger.info(
            "Connected to directory",
            extra={"server": self._config.server_uri, "kerberos": self._config.use_kerberos},
        )
        return connection

    def _read_attribute(self, dn_or_cn: str, attribute: str) -> str:
        if not attribute or not ATTRIBUTE_NAME_PATTERN.match(attribute):
            raise ValueError(f"Invalid attribute name: '{attribute}'")

        cn, base = split_computer_identity(dn_or_cn)
        search_filter = f"(&(objectClass=computer)(cn={escape_filter_chars(cn)}))"

        with self._lock:
            if self._connection is None:
                self._connection = self._connect()
            try:
                self._connection.search(
                    search_base=base or self._config.base_dn,
                    search_filter=search_filter,
                    search_scope=ldap3.SUBTREE,
                    attributes=[attribute],
                    size_limit=1,
                )
            except LDAPException:
                # Force a reconnect on the next lookup
                self._close_locked()
                raise
            response = list(self._connection.response or [])

        for entry in response:
            if entry.get("type") != "searchResEntry":
                continue
            attributes = entry.get("attributes") or {}
            for key, value in attributes.items():
                if key.lower() == attribute.lower():
                    return _first_text(value)
            return ""

        logger.debug("Computer not found in directory", extra={"computer": cn})
        return ""

    async def get_computer_attribute(self, dn_or_cn: str, attribute: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read_attribute, dn_or_cn, attribute)

    def _close_locked(self) -> None:
        if self._connection is not None:
            try:
                self._connection.unbind()
            except LDAPException as e:
                logger.debug("Directory unbind failed", extra={"error": str(e)})
            self._connection = None

    def close(self) -> None:
        with self._lock:
            self._close_locked()
