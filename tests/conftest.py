"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for graph_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))


@pytest.fixture
def audit_dir(tmp_path: Path) -> Path:
    """Directory for audit day files."""
    return tmp_path / "audit"
