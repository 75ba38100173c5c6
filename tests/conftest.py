"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock and azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from converge.config import EngineConfig  # noqa: E402
from converge.state import LocalFileBackend, StateStore  # noqa: E402
from provider_mock import MockProvider  # noqa: E402


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "converge.state.json"


@pytest.fixture
def store(state_path: Path) -> StateStore:
    return StateStore(
        LocalFileBackend(state_path),
        lock_timeout_seconds=0.2,
        poll_interval_seconds=0.01,
    )


@pytest.fixture
def engine_config(state_path: Path) -> EngineConfig:
    """Fast-retry configuration for engine tests."""
    return EngineConfig(
        state_path=state_path,
        lock_timeout_seconds=0.2,
        max_workers=4,
        max_retries=2,
        retry_backoff_base_seconds=0.0,
        retry_backoff_max_seconds=0.0,
    )
