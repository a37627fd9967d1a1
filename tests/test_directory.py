"""Tests for the LDAP directory service."""

from __future__ import annotations

from collections.abc import Generator
from unittest.mock import MagicMock, patch

import pytest
from ldap3.core.exceptions import LDAPSocketOpenError

from extattr.config import DirectoryServiceConfig
from extattr.directory import LdapDirectoryService, split_computer_identity

BASE_DN = "DC=example,DC=com"


def search_result(attributes: dict[str, object]) -> list[dict[str, object]]:
    return [
        {"type": "searchResRef", "uri": ["ldap://other.example.com/"]},
        {"type": "searchResEntry", "dn": "CN=PC-1,OU=Workstations," + BASE_DN, "attributes": attributes},
    ]


@pytest.fixture
def connection_cls() -> Generator[MagicMock, None, None]:
    with patch("extattr.directory.ldap3.Server"), patch("extattr.directory.ldap3.Connection") as mock:
        yield mock


@pytest.fixture
def service() -> LdapDirectoryService:
    return LdapDirectoryService(
        DirectoryServiceConfig(server_uri="ldaps://dc.example.com", base_dn=BASE_DN)
    )


class TestSplitComputerIdentity:
    """Tests for split_computer_identity."""

    def test_bare_name(self) -> None:
        """Test a common name searches the configured base."""
        assert split_computer_identity(" PC-1 ") == ("PC-1", None)

    def test_distinguished_name(self) -> None:
        """Test a DN is split into its CN and parent container."""
        cn, base = split_computer_identity("CN=PC-1,OU=Workstations,DC=example,DC=com")

        assert cn == "PC-1"
        assert base == "OU=Workstations,DC=example,DC=com"

    def test_dn_must_start_with_cn(self) -> None:
        """Test an OU is not a computer identity."""
        with pytest.raises(ValueError, match="CN="):
            split_computer_identity("OU=Workstations,DC=example,DC=com")

    def test_empty(self) -> None:
        """Test an empty identity is rejected."""
        with pytest.raises(ValueError):
            split_computer_identity("   ")


class TestLdapDirectoryService:
    """Tests for LdapDirectoryService."""

    def test_server_uri_required(self) -> None:
        """Test construction without a server."""
        with pytest.raises(ValueError):
            LdapDirectoryService(DirectoryServiceConfig(base_dn=BASE_DN))

    @pytest.mark.asyncio
    async def test_reads_attribute(self, service: LdapDirectoryService, connection_cls: MagicMock) -> None:
        """Test the search request and the first value of the attribute."""
        connection = connection_cls.return_value
        connection.response = search_result({"physicalDeliveryOfficeName": ["Zurich", "Geneva"]})

        value = await service.get_computer_attribute("PC-1", "physicalDeliveryOfficeName")

        assert value == "Zurich"
        kwargs = connection.search.call_args.kwargs
        assert kwargs["search_base"] == BASE_DN
        assert kwargs["search_filter"] == "(&(objectClass=computer)(cn=PC-1))"
        assert kwargs["attributes"] == ["physicalDeliveryOfficeName"]

    @pytest.mark.asyncio
    async def test_filter_value_is_escaped(
        self, service: LdapDirectoryService, connection_cls: MagicMock
    ) -> None:
        """Test filter metacharacters in a name cannot alter the filter."""
        connection = connection_cls.return_value
        connection.response = []

        await service.get_computer_attribute("PC*)(cn=*", "description")

        search_filter = connection.search.call_args.kwargs["search_filter"]
        assert search_filter == r"(&(objectClass=computer)(cn=PC\2a\29\28cn=\2a))"

    @pytest.mark.asyncio
    async def test_dn_searches_parent_container(
        self, service: LdapDirectoryService, connection_cls: MagicMock
    ) -> None:
        """Test a DN narrows the search base."""
        connection = connection_cls.return_value
        connection.response = []

        await service.get_computer_attribute("CN=PC-1,OU=Workstations,DC=example,DC=com", "description")

        assert connection.search.call_args.kwargs["search_base"] == "OU=Workstations,DC=example,DC=com"

    @pytest.mark.asyncio
    async def test_not_found_is_empty(self, service: LdapDirectoryService, connection_cls: MagicMock) -> None:
        """Test a missing computer or attribute yields an empty string."""
        connection = connection_cls.return_value
        connection.response = []
        assert await service.get_computer_attribute("PC-9", "description") == ""

        connection.response = search_result({})
        assert await service.get_computer_attribute("PC-1", "description") == ""

    @pytest.mark.asyncio
    async def test_bytes_value_is_decoded(
        self, service: LdapDirectoryService, connection_cls: MagicMock
    ) -> None:
        """Test binary attribute values are returned as text."""
        connection_cls.return_value.response = search_result({"description": [b"Lab"]})

        assert await service.get_computer_attribute("PC-1", "description") == "Lab"

    @pytest.mark.asyncio
    async def test_invalid_attribute_name(
        self, service: LdapDirectoryService, connection_cls: MagicMock
    ) -> None:
        """Test attribute names are validated before searching."""
        with pytest.raises(ValueError, match="Invalid attribute"):
            await service.get_computer_attribute("PC-1", "description)(cn=*")

        connection_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_reconnects_after_failure(
        self, service: LdapDirectoryService, connection_cls: MagicMock
    ) -> None:
        """Test a failed search drops the connection and the next call reconnects."""
        broken = MagicMock()
        broken.search.side_effect = LDAPSocketOpenError("connection reset")
        healthy = MagicMock()
        healthy.response = search_result({"description": ["Lab"]})
        connection_cls.side_effect = [broken, healthy]

        with pytest.raises(LDAPSocketOpenError):
            await service.get_computer_attribute("PC-1", "description")
        value = await service.get_computer_attribute("PC-1", "description")

        assert value == "Lab"
        assert connection_cls.call_count == 2
        broken.unbind.assert_called_once()

    @pytest.mark.asyncio
    async def test_connection_is_reused(self, service: LdapDirectoryService, connection_cls: MagicMock) -> None:
        """Test one bind serves many lookups."""
        connection_cls.return_value.response = []

        await service.get_computer_attribute("PC-1", "description")
        await service.get_computer_attribute("PC-2", "description")

        assert connection_cls.call_count == 1

    def test_close_unbinds(self, service: LdapDirectoryService, connection_cls: MagicMock) -> None:
        """Test close() releases the connection."""
        connection_cls.return_value.response = []
        service._read_attribute("PC-1", "description")

        service.close()
        service.close()

        connection_cls.return_value.unbind.assert_called_once()

    def test_simple_bind_without_kerberos(self, connection_cls: MagicMock) -> None:
        """Test Kerberos can be turned off."""
        service = LdapDirectoryService(
            DirectoryServiceConfig(server_uri="ldap://dc.example.com", base_dn=BASE_DN, use_kerberos=False)
        )
        connection_cls.return_value.response = []

        service._read_attribute("PC-1", "description")

        assert "sasl_mechanism" not in connection_cls.call_args.kwargs
