"""Tests for the signal recording service."""

import asyncio

import pytest

from src.backend.core.config import DatabaseConfig
from src.backend.core.exceptions import StoreIOError
from src.backend.models.database import SpatialSignalStore
from src.backend.models.schemas import SignalRecord, SpatialQuery, SweepEvent, SweepEventType
from src.backend.services.event_bus import EventBus
from src.backend.services.signal_recorder import MAX_PENDING_BATCHES, SignalRecorder

LAT, LON = 37.7749, -122.4194


@pytest.fixture
def config():
    return DatabaseConfig(
        DB_RECORD_FLUSH_INTERVAL_S=60.0,
        DB_CLEANUP_INTERVAL_S=3600.0,
        DB_RECORD_BATCH_SIZE=100,
        DB_RECORD_MIN_POWER_DBM=-80.0,
        DB_RETENTION_S=100.0,
    )


@pytest.fixture
async def recorder(store, config):
    recorder = SignalRecorder(store, EventBus(), config)
    yield recorder
    await recorder.stop()


def spectrum_event(frame) -> SweepEvent:
    return SweepEvent(SweepEventType.SPECTRUM, frame.to_dict(), frame=frame)


class TestRecordFrame:
    """Test turning frame peaks into records."""

    def test_needs_a_position(self, recorder, make_frame):
        assert recorder.record_frame(make_frame([-90.0, -40.0])) is None
        assert recorder.frames_without_position == 1
        assert recorder.pending == 0

    def test_records_peak_bin(self, recorder, make_frame):
        recorder.set_position(LAT, LON, 120.0)
        record = recorder.record_frame(make_frame([-90.0, -40.0, -70.0], timestamp=50.0, target=2450.0))

        assert record is not None
        assert record.frequency == pytest.approx(2449.75)
        assert record.power == -40.0
        assert (record.lat, record.lon, record.altitude) == (LAT, LON, 120.0)
        assert record.timestamp == 50.0
        assert record.metadata == {"bin_width_hz": 500000.0, "target_frequency_mhz": 2450.0}
        assert recorder.pending == 1

    def test_weak_peak_is_ignored(self, recorder, make_frame):
        recorder.set_position(LAT, LON)
        assert recorder.record_frame(make_frame([-95.0, -81.0])) is None
        assert recorder.pending == 0

    @pytest.mark.parametrize(
        "position",
        [(95.0, 0.0, 0.0), (0.0, -181.0, 0.0), (float("nan"), 0.0, 0.0), (0.0, 0.0, float("inf"))],
    )
    def test_invalid_position_is_rejected(self, recorder, make_frame, position):
        recorder.set_position(*position)
        assert recorder.record_frame(make_frame([-40.0])) is None
        assert recorder.frames_bad_position == 1
        assert recorder.pending == 0

    def test_position_provider(self, store, make_frame):
        recorder = SignalRecorder(store, EventBus(), position_provider=lambda: (1.0, 2.0, 3.0))
        record = recorder.record_frame(make_frame([-40.0]))
        assert (record.lat, record.lon, record.altitude) == (1.0, 2.0, 3.0)

    def test_buffer_is_bounded(self, store, make_frame):
        config = DatabaseConfig(DB_RECORD_BATCH_SIZE=2)
        recorder = SignalRecorder(store, EventBus(), config)
        recorder.set_position(LAT, LON)
        for _ in range(2 * MAX_PENDING_BATCHES + 5):
            recorder.record_frame(make_frame([-40.0]))
        assert recorder.pending == 2 * MAX_PENDING_BATCHES


class TestFlush:
    """Test batch writes to the store."""

    async def test_flush_writes_batch(self, recorder, store, make_frame):
        recorder.set_position(LAT, LON)
        for _ in range(3):
            recorder.record_frame(make_frame([-40.0]))

        assert await recorder.flush() == 3
        assert recorder.pending == 0
        assert recorder.records_stored == 3
        assert store.count_signals() == 3
        assert await recorder.flush() == 0

    async def test_failed_flush_keeps_records(self, tmp_path, make_frame):
        broken = SpatialSignalStore(tmp_path / "broken.db")
        broken.close()
        recorder = SignalRecorder(broken, EventBus())
        recorder.set_position(LAT, LON)
        first = recorder.record_frame(make_frame([-40.0]))
        recorder.record_frame(make_frame([-41.0]))

        with pytest.raises(StoreIOError):
            await recorder.flush()

        assert recorder.pending == 2
        assert recorder.records_stored == 0
        assert recorder._pending[0] is first


    async def test_unstorable_record_does_not_sink_batch(self, recorder, store, make_frame):
        recorder.set_position(LAT, LON)
        recorder.record_frame(make_frame([-40.0]))
        recorder._pending.append(
            SignalRecord(id="bad", timestamp=1.0, lat=LAT, lon=LON, power=float("nan"), frequency=2450.0)
        )

        assert await recorder.flush() == 1
        assert recorder.records_rejected == 1
        assert recorder.pending == 0
        assert store.count_signals() == 1


class TestLifecycle:
    """Test the bus-driven recording loop."""

    async def test_records_published_frames(self, recorder, store, make_frame):
        recorder.set_position(LAT, LON)
        await recorder.start()
        assert recorder.running

        await recorder.bus.publish(spectrum_event(make_frame([-40.0, -90.0])))
        await recorder.bus.publish(SweepEvent(SweepEventType.STATUS, {"state": "running"}))
        await asyncio.sleep(0.05)
        await recorder.stop()

        assert not recorder.running
        assert recorder.bus.subscriber_count == 0
        assert store.count_signals() == 1
        (signal,) = store.find_signals_in_radius(SpatialQuery(LAT, LON, 10.0))
        assert signal.power == -40.0

    async def test_full_batch_flushes_immediately(self, store, make_frame):
        config = DatabaseConfig(DB_RECORD_BATCH_SIZE=2, DB_RECORD_FLUSH_INTERVAL_S=60.0)
        recorder = SignalRecorder(store, EventBus(), config)
        recorder.set_position(LAT, LON)
        await recorder.start()
        try:
            for power in (-40.0, -41.0):
                await recorder.bus.publish(spectrum_event(make_frame([power])))
            await asyncio.sleep(0.2)
            assert store.count_signals() == 2
        finally:
            await recorder.stop()

    async def test_bad_fix_does_not_stop_recording(self, recorder, store, make_frame):
        await recorder.start()

        recorder.set_position(95.0, 0.0)
        await recorder.bus.publish(spectrum_event(make_frame([-40.0])))
        await asyncio.sleep(0.05)
        recorder.set_position(LAT, LON)
        await recorder.bus.publish(spectrum_event(make_frame([-41.0])))
        await asyncio.sleep(0.05)

        assert all(not task.done() for task in recorder._tasks)
        await recorder.stop()

        assert recorder.frames_bad_position == 1
        assert store.count_signals() == 1

    async def test_start_twice(self, recorder):
        await recorder.start()
        await recorder.start()
        assert recorder.bus.subscriber_count == 1


class TestRetention:
    """Test periodic cleanup of old records."""

    async def test_run_retention(self, recorder, store, make_signal):
        store.store_signals_batch(
            [make_signal(timestamp=1000.0), make_signal(timestamp=1950.0, frequency=915.0)]
        )

        result = await recorder.run_retention(now=2000.0)

        assert result.signals_deleted == 1
        assert recorder.last_cleanup is result
        assert store.count_signals() == 1
