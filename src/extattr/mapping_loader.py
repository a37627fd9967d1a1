"""Mapping declaration loading with validation.

Mappings are read once at startup and are immutable for the process lifetime.
File size is checked before reading and all input is validated at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_MAPPINGS_FILE_SIZE_BYTES
from .models import AttributeMapping, MappingSet

logger = logging.getLogger(__name__)


class MappingLoadError(Exception):
    """Raised when the mapping declaration cannot be loaded or fails validation."""

    pass


def load_mappings(path: Path) -> list[AttributeMapping]:
    """Load and validate the mapping declaration from YAML.

    Accepted layouts:
        mappings: [...]                      # flat
        apiVersion/kind/metadata/spec:       # Kubernetes-style wrapper
          mappings: [...]
        [...]                                # bare list

    Args:
        path: Path to the YAML file.

    Returns:
        Mappings in declaration order.

    Raises:
        MappingLoadError: If the file is missing, too large, malformed, or invalid.
    """
    if not path.exists():
        raise MappingLoadError(f"Mappings file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise MappingLoadError(f"Failed to stat mappings file {path}: {e}") from e

    if file_size > MAX_MAPPINGS_FILE_SIZE_BYTES:
        raise MappingLoadError(
            f"Mappings file exceeds maximum size of {MAX_MAPPINGS_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise MappingLoadError(f"Failed to read mappings file {path}: {e}") from e

    return parse_mappings(content, source=str(path))


def parse_mappings(content: str, source: str = "<string>") -> list[AttributeMapping]:
    """Parse and validate a YAML mapping declaration.

    Raises:
        MappingLoadError: If the content is malformed or invalid.
    """
    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise MappingLoadError(f"Invalid YAML in {source}: {e}") from e

    if isinstance(raw_data, list):
        raw_data = {"mappings": raw_data}

    if not isinstance(raw_data, dict):
        raise MappingLoadError(f"Mappings file must contain a YAML mapping or list: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise MappingLoadError(f"Spec section must be a mapping: {source}")
    else:
        spec_data = raw_data

    try:
        mapping_set = MappingSet.model_validate(spec_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")

        error_list = "\n".join(errors)
        raise MappingLoadError(f"Validation failed for {source}:\n{error_list}") from e

    logger.info(
        "Loaded %d extension attribute mappings from %s",
        len(mapping_set.mappings),
        source,
    )
    for mapping in mapping_set.mappings:
        logger.debug("Mapping: %s", mapping.describe())

    return list(mapping_set.mappings)
