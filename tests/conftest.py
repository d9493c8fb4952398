"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for gcp_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from gcp_mock import MockCloudState  # noqa: E402

from gproj.config import MIN_POLL_INTERVAL_MS, CallingConvention, Config  # noqa: E402
from gproj.models import ProjectSpec  # noqa: E402


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep GPROJ_* variables from the developer's shell out of tests."""
    for key in (
        "GPROJ_CACHE_DIR",
        "GPROJ_SPEC",
        "GPROJ_POLL_INTERVAL_MS",
        "GPROJ_CREATE_TIMEOUT",
        "GPROJ_RUN_TIMEOUT",
        "GPROJ_LOG_FORMAT",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Apply-convention config with a private cache and the fastest polling."""
    return Config(cache_dir=tmp_path / "cache", poll_interval_ms=MIN_POLL_INTERVAL_MS)


@pytest.fixture
def sync_config(tmp_path: Path) -> Config:
    return Config(
        cache_dir=tmp_path / "cache",
        poll_interval_ms=MIN_POLL_INTERVAL_MS,
        convention=CallingConvention.SYNC,
    )


@pytest.fixture
def cloud_state() -> MockCloudState:
    return MockCloudState()


@pytest.fixture
def spec() -> ProjectSpec:
    return ProjectSpec(
        name="Data Platform",
        id="data-platform-4821",
        labels={"team": "data"},
        apis=["compute", "storage.googleapis.com"],
        billing="enable",
    )
