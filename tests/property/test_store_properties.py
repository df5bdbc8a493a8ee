"""Property-based tests for the spatial signal store."""

import math
import tempfile
from pathlib import Path

import hypothesis.strategies as st
import pytest
from hypothesis import given

from src.backend.models.database import SpatialSignalStore
from src.backend.models.schemas import SignalRecord, SpatialQuery
from src.backend.utils.geo import haversine_distance

from tests.property.strategies import signal_records, valid_latitudes, valid_longitudes, valid_powers


def fresh_store() -> tuple[tempfile.TemporaryDirectory, SpatialSignalStore]:
    tmpdir = tempfile.TemporaryDirectory()
    return tmpdir, SpatialSignalStore(Path(tmpdir.name) / "signals.db")


class TestDeviceAggregates:
    """Rolling device statistics match a recomputation from the signals."""

    @given(
        powers=st.lists(st.floats(min_value=-49.9, max_value=-40.1), min_size=1, max_size=30),
        split=st.integers(min_value=0, max_value=30),
    )
    def test_mean_is_independent_of_batching(self, powers, split):
        tmpdir, store = fresh_store()
        with tmpdir:
            records = [
                SignalRecord(id=f"s{i}", timestamp=1000.0 + i, lat=10.0, lon=20.0, power=p, frequency=2437.0)
                for i, p in enumerate(powers)
            ]
            split = min(split, len(records))
            store.store_signals_batch(records[:split])
            store.store_signals_batch(records[split:])

            (device_id,) = {store.prepare_signal(r).device_id for r in records}
            device = store.get_device(device_id)
            assert device.signal_count == len(powers)
            assert device.avg_power == pytest.approx(sum(powers) / len(powers))
            assert device.first_seen == 1000.0
            assert device.last_seen == 1000.0 + len(powers) - 1
            store.close()

    @given(
        frequencies=st.lists(st.floats(min_value=2437.0, max_value=2437.99), min_size=1, max_size=20)
    )
    def test_frequency_range_covers_every_signal(self, frequencies):
        tmpdir, store = fresh_store()
        with tmpdir:
            store.store_signals_batch(
                [
                    SignalRecord(id=f"s{i}", timestamp=1.0, lat=0.0, lon=0.0, power=-45.0, frequency=f)
                    for i, f in enumerate(frequencies)
                ]
            )
            device = store.get_device("unknown_2437_-50")
            assert device.freq_min == min(frequencies)
            assert device.freq_max == max(frequencies)
            store.close()


class TestGrid:
    @given(lat=valid_latitudes, lon=valid_longitudes, scale=st.sampled_from([100, 1000, 10000]))
    def test_cell_contains_point(self, lat, lon, scale):
        tmpdir = tempfile.TemporaryDirectory()
        with tmpdir:
            store = SpatialSignalStore(Path(tmpdir.name) / "grid.db", grid_scale=scale)
            grid_lat, grid_lon = store.grid_cell(lat, lon)
            assert grid_lat <= lat * scale < grid_lat + 1
            assert grid_lon <= lon * scale < grid_lon + 1
            store.close()


class TestRadiusQuery:
    """Radius queries agree with a brute-force distance scan."""

    @given(
        center_lat=valid_latitudes,
        center_lon=valid_longitudes,
        radius_m=st.floats(min_value=1.0, max_value=20000.0),
        offsets=st.lists(
            st.tuples(
                st.floats(min_value=-0.3, max_value=0.3), st.floats(min_value=-0.3, max_value=0.3)
            ),
            min_size=1,
            max_size=25,
        ),
    )
    def test_matches_brute_force(self, center_lat, center_lon, radius_m, offsets):
        tmpdir, store = fresh_store()
        with tmpdir:
            records = [
                SignalRecord(
                    id=f"s{i}",
                    timestamp=1000.0,
                    lat=center_lat + dlat,
                    lon=center_lon + dlon,
                    power=-45.0,
                    frequency=2437.0,
                )
                for i, (dlat, dlon) in enumerate(offsets)
            ]
            store.store_signals_batch(records)

            found = {
                s.id
                for s in store.find_signals_in_radius(
                    SpatialQuery(center_lat, center_lon, radius_m, limit=1000)
                )
            }
            expected = {
                r.id
                for r in records
                if haversine_distance(center_lat, center_lon, r.lat, r.lon) <= radius_m
            }
            assert found == expected
            store.close()

    @given(records=st.lists(signal_records(), min_size=1, max_size=10, unique_by=lambda r: r.id))
    def test_results_newest_first(self, records):
        tmpdir, store = fresh_store()
        with tmpdir:
            store.store_signals_batch(records)
            record = records[0]
            results = store.find_signals_in_radius(SpatialQuery(record.lat, record.lon, 1e6))
            stamps = [s.timestamp for s in results]
            assert stamps == sorted(stamps, reverse=True)
            assert record.id in {s.id for s in results}
            store.close()


class TestStatistics:
    @given(powers=st.lists(valid_powers, min_size=1, max_size=20))
    def test_power_bounds(self, powers):
        tmpdir, store = fresh_store()
        with tmpdir:
            store.store_signals_batch(
                [
                    SignalRecord(id=f"s{i}", timestamp=100.0, lat=0.0, lon=0.0, power=p, frequency=915.0)
                    for i, p in enumerate(powers)
                ]
            )
            stats = store.get_statistics(time_window_s=10.0, now=105.0)
            assert stats.total_signals == len(powers)
            assert stats.min_power == min(powers)
            assert stats.max_power == max(powers)
            assert math.isclose(stats.avg_power, sum(powers) / len(powers), abs_tol=1e-9)
            store.close()
