"""Property-based tests for sweep helpers, aggregation and flight analysis."""

import hypothesis.strategies as st
import pytest
from hypothesis import given

from src.backend.hal.hackrf_sweep import (
    MAX_FREQUENCY_MHZ,
    MIN_FREQUENCY_MHZ,
    normalize_frequency,
    sweep_range_mhz,
)
from src.backend.services.flight_path_analyzer import FlightPathAnalyzer, FlightPoint
from src.backend.services.signal_aggregator import SignalAggregator
from src.backend.utils.backoff import RestartBackoff, RestartBackoffConfig
from tests.property.strategies import spectrum_frames, valid_frequencies_mhz


class TestFrequencyHelpers:
    @given(mhz=st.floats(min_value=0.001, max_value=1e5))
    def test_units_agree(self, mhz):
        assert normalize_frequency({"value": mhz * 1000, "unit": "kHz"}) == pytest.approx(mhz)
        assert normalize_frequency({"value": mhz / 1000, "unit": "GHz"}) == pytest.approx(mhz)

    @given(center=valid_frequencies_mhz, span=st.floats(min_value=0.0, max_value=100.0))
    def test_sweep_range_inside_device_limits(self, center, span):
        low, high = sweep_range_mhz(center, span)
        assert MIN_FREQUENCY_MHZ <= low < high <= MAX_FREQUENCY_MHZ


class TestAggregatorInvariants:
    @given(
        frames=st.lists(spectrum_frames(), min_size=1, max_size=20),
        min_power=st.floats(min_value=-100.0, max_value=-20.0),
    )
    def test_detections_respect_threshold_and_counts(self, frames, min_power):
        aggregator = SignalAggregator(min_power_dbm=min_power, active_window_s=1e9)
        for frame in sorted(frames, key=lambda f: f.timestamp):
            aggregator.add_spectrum_data(frame)

        detections = aggregator.get_aggregated_signals()
        assert aggregator.frames_processed == len(frames)
        for detection in detections:
            assert detection.power >= min_power
            assert detection.first_seen <= detection.last_seen
            assert 1 <= detection.count <= len(frames)


class TestBackoffInvariants:
    @given(crashes=st.integers(min_value=1, max_value=12))
    def test_delay_grows_and_stays_capped(self, crashes):
        backoff = RestartBackoff(
            RestartBackoffConfig(base_delay_s=0.5, max_delay_s=8.0, max_crashes=20),
            clock=lambda: 0.0,
        )
        delays = [backoff.record_crash() for _ in range(crashes)]
        assert delays == sorted(delays)
        assert all(0.5 <= d <= 8.0 for d in delays)


flight_points = st.builds(
    FlightPoint,
    timestamp=st.floats(min_value=0.0, max_value=1e5),
    lat=st.floats(min_value=-60.0, max_value=60.0),
    lon=st.floats(min_value=-170.0, max_value=170.0),
    altitude=st.floats(min_value=0.0, max_value=500.0),
    battery=st.one_of(st.none(), st.floats(min_value=0.0, max_value=100.0)),
)


class TestFlightAnalysisInvariants:
    @given(path=st.lists(flight_points, max_size=15))
    def test_analysis_never_raises(self, path):
        path = sorted(path, key=lambda p: p.timestamp)
        analysis = FlightPathAnalyzer().analyze(path, [])

        assert sum(len(cell.altitudes) for cell in analysis.coverage_map) == len(path)
        efficiency = analysis.flight_efficiency
        assert efficiency.total_distance >= 0
        assert 0 <= efficiency.redundant_path_percentage <= 100
        assert all(0 <= h.intensity <= 1 for h in analysis.signal_hotspots)

    @given(lat=st.floats(min_value=-80.0, max_value=80.0), lon=st.floats(min_value=-179.0, max_value=179.0))
    def test_point_falls_inside_its_cell(self, lat, lon):
        analyzer = FlightPathAnalyzer()
        bounds = analyzer.cell_bounds(analyzer.cell_index(lat, lon))
        assert bounds.min_lat - 1e-9 <= lat < bounds.max_lat + 1e-9
        assert bounds.min_lon - 1e-9 <= lon < bounds.max_lon + 1e-9
