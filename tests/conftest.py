"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path

import pytest

# src for the actuator package, tests for azure_mock
_root = Path(__file__).parent
for _path in (_root.parent / "src", _root):
    sys.path.insert(0, str(_path))

from azure_mock import MockAzureContext  # noqa: E402


@pytest.fixture
def mock_azure() -> MockAzureContext:
    """Fresh in-memory Azure and cluster API services with an empty journal."""
    return MockAzureContext()
