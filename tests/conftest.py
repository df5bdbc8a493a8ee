"""
Shared pytest fixtures.
These fixtures are available to all test files automatically.
"""

import time
from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from src.backend.core.app import create_app
from src.backend.core.config import Config, DatabaseConfig, DevelopmentConfig, HackRFConfig
from src.backend.core.dependencies import ServiceManager, set_service_manager
from src.backend.models.database import SpatialSignalStore
from src.backend.models.schemas import SignalRecord, SpectrumFrame


def pytest_configure(config):
    """Register custom pytest markers for test categorization."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test (<100ms, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (real subprocesses or services)"
    )
    config.addinivalue_line("markers", "property: mark test as property-based test (hypothesis)")
    config.addinivalue_line("markers", "slow: mark test as slow (>1s execution time)")


def pytest_collection_modifyitems(config, items):
    """Add markers to test items based on their location."""
    for item in items:
        path = str(item.fspath)
        if "unit" in path:
            item.add_marker(pytest.mark.unit)
        elif "integration" in path:
            item.add_marker(pytest.mark.integration)
        elif "property" in path:
            item.add_marker(pytest.mark.property)


@pytest.fixture
def store(tmp_path: Path) -> Generator[SpatialSignalStore, None, None]:
    """Signal store backed by a throwaway database file."""
    signal_store = SpatialSignalStore(tmp_path / "signals.db")
    yield signal_store
    signal_store.close()


@pytest.fixture
def make_signal():
    """Factory for SignalRecords with sensible defaults."""
    counter = {"n": 0}

    def _make(**overrides) -> SignalRecord:
        counter["n"] += 1
        values = {
            "id": f"sig-{counter['n']}",
            "timestamp": 1_700_000_000.0,
            "lat": 37.7749,
            "lon": -122.4194,
            "power": -45.0,
            "frequency": 2437.4,
        }
        values.update(overrides)
        return SignalRecord(**values)

    return _make


@pytest.fixture
def make_frame():
    """Factory for SpectrumFrames laid out as 0.5 MHz bins from ``start_mhz``."""

    def _make(
        bins: list[float],
        start_mhz: float = 2449.0,
        timestamp: float | None = None,
        target: float | None = None,
    ) -> SpectrumFrame:
        return SpectrumFrame(
            frequency_start_hz=start_mhz * 1e6,
            frequency_end_hz=(start_mhz + 0.5 * len(bins)) * 1e6,
            bin_count=len(bins),
            bins=tuple(bins),
            sample_rate=20e6,
            timestamp=time.time() if timestamp is None else timestamp,
            target_frequency_mhz=target,
        )

    return _make


@pytest.fixture
def fast_hackrf_config() -> HackRFConfig:
    """Sweep settings tuned for driving the simulated HackRF in tests."""
    return HackRFConfig(
        HACKRF_PROBE_BEFORE_START=False,
        HACKRF_PROBE_TIMEOUT_S=2.0,
        HACKRF_STARTUP_DETECTION_S=5.0,
        HACKRF_HEALTH_TIMEOUT_S=5.0,
        HACKRF_STOP_GRACE_S=1.0,
        HACKRF_DATA_TIMEOUT_S=60.0,
        HACKRF_WATCHDOG_INTERVAL_S=30.0,
        HACKRF_RESTART_BASE_DELAY_S=0.01,
        HACKRF_RESTART_MAX_DELAY_S=0.05,
        HACKRF_STRAY_PROCESS_NAMES=[],
    )


@pytest.fixture
def api_client(tmp_path: Path, fast_hackrf_config: HackRFConfig) -> Generator[TestClient, None, None]:
    """Application client backed by a throwaway store and the simulated HackRF."""
    config = Config(
        hackrf=fast_hackrf_config,
        database=DatabaseConfig(DB_PATH=str(tmp_path / "api.db"), DB_RECORD_FLUSH_INTERVAL_S=0.1),
        development=DevelopmentConfig(DEV_MOCK_SDR=True),
    )
    set_service_manager(ServiceManager(config))
    try:
        with TestClient(create_app()) as client:
            yield client
    finally:
        set_service_manager(None)
