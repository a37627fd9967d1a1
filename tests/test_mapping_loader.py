"""Tests for mapping declaration loading."""

from pathlib import Path

import pytest

from extattr.config import MAX_MAPPINGS_FILE_SIZE_BYTES
from extattr.mapping_loader import MappingLoadError, load_mappings, parse_mappings
from extattr.models import DataSourceType

FLAT_MAPPINGS = """
mappings:
  - extensionAttribute: extensionAttribute1
    sourceAttribute: physicalDeliveryOfficeName
    dataSource: Directory
    defaultValue: Unknown
  - extensionAttribute: extensionAttribute3
    sourceAttribute: operatingSystemVersion
    dataSource: EndpointManagement
    regex: '(\\d+\\.\\d+\\.\\d+)'
"""

WRAPPED_MAPPINGS = """
apiVersion: extattr/v1
kind: ExtensionAttributeMappings
metadata:
  name: workstations
spec:
  mappings:
    - extensionAttribute: extensionAttribute5
      sourceAttribute: serialNumber
      dataSource: Intune
"""


class TestParseMappings:
    """Tests for parse_mappings."""

    def test_flat_layout(self) -> None:
        """Test the flat mappings layout keeps declaration order."""
        mappings = parse_mappings(FLAT_MAPPINGS)

        assert [m.target_attribute for m in mappings] == ["extensionAttribute1", "extensionAttribute3"]
        assert mappings[0].default_value == "Unknown"
        assert mappings[1].data_source == DataSourceType.ENDPOINT_MANAGEMENT
        assert mappings[1].regex == r"(\d+\.\d+\.\d+)"

    def test_wrapped_layout(self) -> None:
        """Test the apiVersion/kind/spec wrapper."""
        mappings = parse_mappings(WRAPPED_MAPPINGS)

        assert len(mappings) == 1
        assert mappings[0].target_attribute == "extensionAttribute5"
        assert mappings[0].data_source == DataSourceType.ENDPOINT_MANAGEMENT

    def test_bare_list(self) -> None:
        """Test a top-level list of mappings."""
        mappings = parse_mappings(
            "- {extensionAttribute: extensionAttribute2, sourceAttribute: model, dataSource: Intune}"
        )

        assert mappings[0].source_attribute == "model"

    def test_empty_document(self) -> None:
        """Test that an empty mappings list loads as empty."""
        assert parse_mappings("mappings: []") == []

    def test_invalid_yaml(self) -> None:
        """Test that malformed YAML raises MappingLoadError."""
        with pytest.raises(MappingLoadError) as exc_info:
            parse_mappings("mappings: [unclosed", source="broken.yaml")

        assert "Invalid YAML in broken.yaml" in str(exc_info.value)

    def test_scalar_document(self) -> None:
        """Test that a scalar document is rejected."""
        with pytest.raises(MappingLoadError):
            parse_mappings("just a string")

    def test_validation_errors_are_listed(self) -> None:
        """Test that validation failures name the offending field."""
        content = """
mappings:
  - extensionAttribute: extensionAttribute99
    sourceAttribute: location
    dataSource: Directory
"""
        with pytest.raises(MappingLoadError) as exc_info:
            parse_mappings(content)

        message = str(exc_info.value)
        assert "Validation failed" in message
        assert "mappings.0" in message


class TestLoadMappings:
    """Tests for load_mappings."""

    def test_load_from_file(self, tmp_path: Path) -> None:
        """Test loading a mappings file."""
        path = tmp_path / "mappings.yaml"
        path.write_text(FLAT_MAPPINGS)

        assert len(load_mappings(path)) == 2

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a missing file raises MappingLoadError."""
        with pytest.raises(MappingLoadError) as exc_info:
            load_mappings(tmp_path / "absent.yaml")

        assert "not found" in str(exc_info.value)

    def test_oversized_file(self, tmp_path: Path) -> None:
        """Test that files over the size limit are rejected before reading."""
        path = tmp_path / "huge.yaml"
        path.write_text("#" * (MAX_MAPPINGS_FILE_SIZE_BYTES + 1))

        with pytest.raises(MappingLoadError) as exc_info:
            load_mappings(path)

        assert "exceeds maximum size" in str(exc_info.value)
