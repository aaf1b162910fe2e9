"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for store_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

import pytest  # noqa: E402

from tinkerbell_provider.config import Config  # noqa: E402
from tinkerbell_provider.store import InMemoryStore  # noqa: E402


@pytest.fixture
def store() -> InMemoryStore:
    """Empty in-memory store."""
    return InMemoryStore()


@pytest.fixture
def config() -> Config:
    """Configuration with default metadata IP and image lookup."""
    return Config()
