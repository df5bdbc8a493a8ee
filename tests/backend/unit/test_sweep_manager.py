"""
Tests for the sweep supervisor.

These drive the real subprocess plumbing against the simulated HackRF tools
in ``src.backend.hal.mock_hackrf``.
"""

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import replace

import psutil
import pytest

from src.backend.core.exceptions import SweepErrorKind
from src.backend.hal.mock_hackrf import mock_command
from src.backend.models.schemas import SweepEvent, SweepEventType, SweepState
from src.backend.services.event_bus import Subscription
from src.backend.services.sweep_manager import SweepManager
from src.backend.utils.backoff import RestartState


@pytest.fixture
async def make_manager(fast_hackrf_config):
    """Factory for managers wired to the mock tools. Shut down after the test."""
    managers: list[SweepManager] = []

    def _make(*sweep_flags: str, info_flags: tuple[str, ...] = (), **overrides) -> SweepManager:
        manager = SweepManager(
            replace(fast_hackrf_config, **overrides),
            sweep_command=mock_command("sweep", *sweep_flags),
            info_command=mock_command("info", *info_flags),
        )
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        await manager.shutdown()


async def wait_for_event(
    sub: Subscription,
    predicate: Callable[[SweepEvent], bool] = lambda e: True,
    timeout: float = 10.0,
) -> SweepEvent:
    async def _scan() -> SweepEvent:
        while True:
            event = await sub.get()
            assert event is not None, "subscription closed"
            if predicate(event):
                return event

    return await asyncio.wait_for(_scan(), timeout=timeout)


def drain(sub: Subscription) -> list[SweepEvent]:
    events = []
    while (event := sub.get_nowait()) is not None:
        events.append(event)
    return events


class TestStartStop:
    """Test the normal sweep lifecycle."""

    async def test_spectrum_flows_until_stop(self, make_manager):
        manager = make_manager()
        sub = manager.subscribe(maxsize=10000, overflow="drop_oldest", topics={SweepEventType.SPECTRUM})

        assert await manager.start_cycle([2450], 1000)
        assert manager.state == SweepState.RUNNING

        event = await wait_for_event(sub)
        assert event.frame is not None
        assert event.frame.target_frequency_mhz == 2450.0
        assert 2440e6 <= event.frame.frequency_start_hz < 2460e6
        assert "peak_frequency_mhz" in event.data
        assert manager.get_status().frames_received >= 1

        await manager.stop_sweep()
        assert manager.state == SweepState.IDLE
        assert manager.get_status().current_frequency_mhz is None

        drain(sub)
        await asyncio.sleep(0.3)
        assert sub.pending() == 0

    async def test_status_events_follow_lifecycle(self, make_manager):
        manager = make_manager()
        sub = manager.subscribe(topics={SweepEventType.STATUS})

        assert await manager.start_cycle([2450], 1000)
        await manager.stop_sweep()

        states = [event.data["state"] for event in drain(sub)]
        assert states == ["initializing", "running", "stopping", "idle"]

    async def test_second_start_is_rejected(self, make_manager):
        manager = make_manager()
        assert await manager.start_cycle([2450], 1000)
        assert not await manager.start_cycle([915], 1000)
        assert manager.get_status().current_frequency_mhz == 2450.0

    async def test_stop_when_idle_is_noop(self, make_manager):
        manager = make_manager()
        await manager.stop_sweep()
        assert manager.state == SweepState.IDLE

    async def test_cycle_config_announced(self, make_manager):
        manager = make_manager()
        sub = manager.subscribe(topics={SweepEventType.CYCLE_CONFIG})

        assert await manager.start_cycle([2450, {"value": 915, "unit": "MHz"}], 2000)

        event = await wait_for_event(sub)
        assert event.data == {
            "frequencies": [2450.0, 915.0],
            "cycle_time_ms": 2000.0,
            "total_cycle_time_ms": 4000.0,
            "switching_time_ms": 500.0,
            "is_cycling": True,
            "lap": 0,
        }
        assert manager.get_sweep_config().is_cycling

    @pytest.mark.parametrize(
        "frequencies,cycle_time_ms",
        [
            ([], 1000),
            ([2450], 0),
            ([2450], -5),
            ([2450], float("nan")),
            ([99999], 1000),
            (["abc"], 1000),
        ],
    )
    async def test_invalid_config_reports_error(self, make_manager, frequencies, cycle_time_ms):
        manager = make_manager()
        sub = manager.subscribe(topics={SweepEventType.ERROR})

        assert not await manager.start_cycle(frequencies, cycle_time_ms)
        assert manager.state == SweepState.IDLE

        event = await wait_for_event(sub, timeout=1.0)
        assert event.data["type"] == SweepErrorKind.INVALID_CONFIG.value


class TestCycling:
    """Test multi-frequency cycling."""

    @pytest.mark.slow
    async def test_switches_and_completes_a_lap(self, make_manager):
        manager = make_manager()
        sub = manager.subscribe(
            maxsize=10000,
            overflow="drop_oldest",
            topics={SweepEventType.STATUS_CHANGE, SweepEventType.SPECTRUM, SweepEventType.CYCLE_CONFIG},
        )

        assert await manager.start_cycle([2450, 915], 300)

        switching = await wait_for_event(
            sub,
            lambda e: e.type == SweepEventType.STATUS_CHANGE and e.data.get("status") == "switching",
        )
        assert switching.data["next_frequency"] == 915.0

        retuned = await wait_for_event(
            sub, lambda e: e.type == SweepEventType.SPECTRUM and e.frame.target_frequency_mhz == 915.0
        )
        assert 905e6 <= retuned.frame.frequency_start_hz < 925e6

        lap = await wait_for_event(
            sub, lambda e: e.type == SweepEventType.CYCLE_CONFIG and e.data["lap"] == 1
        )
        assert lap.data["frequencies"] == [2450.0, 915.0]
        assert manager.get_status().cycle_index >= 1

        await manager.stop_sweep()
        assert manager.state == SweepState.IDLE


class TestFailures:
    """Test classification of device and subprocess failures."""

    async def test_probe_without_device_enters_error(self, make_manager):
        manager = make_manager(info_flags=("--no-device",), HACKRF_PROBE_BEFORE_START=True)
        sub = manager.subscribe(topics={SweepEventType.ERROR})

        assert not await manager.start_cycle([2450], 1000)
        assert manager.state == SweepState.ERROR

        event = await wait_for_event(sub, timeout=1.0)
        assert event.data["type"] == SweepErrorKind.DEVICE_UNAVAILABLE.value
        assert "no device found" in event.data["message"]
        assert manager.backoff.crash_count() == 1

        # ERROR is only left through force_cleanup
        assert not await manager.start_cycle([2450], 1000)
        await manager.stop_sweep()
        assert manager.state == SweepState.ERROR

        await manager.force_cleanup()
        assert manager.state == SweepState.IDLE
        assert manager.get_status().error is None

    async def test_busy_device(self, make_manager):
        manager = make_manager("--busy")
        sub = manager.subscribe(topics={SweepEventType.ERROR})

        assert not await manager.start_cycle([2450], 1000)
        assert manager.state == SweepState.ERROR

        event = await wait_for_event(sub)
        assert event.data["type"] == SweepErrorKind.DEVICE_UNAVAILABLE.value
        assert manager.backoff.crash_count() == 1

    async def test_crash_while_running(self, make_manager):
        manager = make_manager("--crash-after", "3", "--crash-code", "139")
        sub = manager.subscribe(topics={SweepEventType.ERROR})

        await manager.start_cycle([2450], 1000)

        event = await wait_for_event(sub)
        assert event.data["type"] == SweepErrorKind.SUBPROCESS_CRASH.value
        assert manager.state == SweepState.ERROR
        assert manager.backoff.crash_count() == 1

        await manager.force_cleanup()
        assert manager.state == SweepState.IDLE

    async def test_corrupt_records_are_skipped(self, make_manager):
        manager = make_manager("--garbage-every", "1")
        sub = manager.subscribe(maxsize=10000, overflow="drop_oldest", topics={SweepEventType.SPECTRUM})

        assert await manager.start_cycle([2450], 1000)
        await wait_for_event(sub)
        await wait_for_event(sub)

        assert manager.corrupt_records >= 1
        assert manager.state == SweepState.RUNNING

    async def test_restarts_suspended_after_repeated_crashes(self, make_manager):
        manager = make_manager("--busy", HACKRF_MAX_CRASHES=1)

        assert not await manager.start_cycle([2450], 1000)
        await manager.force_cleanup()

        sub = manager.subscribe(topics={SweepEventType.ERROR})
        assert not await manager.start_cycle([2450], 1000)
        assert manager.state == SweepState.IDLE

        event = await wait_for_event(sub, timeout=1.0)
        assert "suspended" in event.data["message"]
        assert event.data["details"]["retry_after_s"] > 0

    async def test_failed_starts_are_rate_limited(self, make_manager):
        manager = make_manager(
            info_flags=("--no-device",), HACKRF_PROBE_BEFORE_START=True, HACKRF_MAX_CRASHES=2
        )

        for _ in range(2):
            assert not await manager.start_cycle([2450], 1000)
            await manager.force_cleanup()

        assert manager.backoff.crash_count() == 2
        assert manager.backoff.get_state() == RestartState.EXHAUSTED
        assert not await manager.start_cycle([2450], 1000)
        assert manager.state == SweepState.IDLE

    async def test_silent_process_trips_watchdog(self, make_manager):
        manager = make_manager(
            "--hang",
            HACKRF_STARTUP_DETECTION_S=0.2,
            HACKRF_WATCHDOG_INTERVAL_S=0.1,
            HACKRF_DATA_TIMEOUT_S=0.3,
        )
        sub = manager.subscribe(topics={SweepEventType.ERROR})

        assert await manager.start_cycle([2450], 1000)
        assert manager.state == SweepState.RUNNING

        event = await wait_for_event(sub, timeout=5.0)
        assert event.data["type"] == SweepErrorKind.TIMEOUT.value
        assert manager.state == SweepState.ERROR

    async def test_missing_binary(self, fast_hackrf_config):
        manager = SweepManager(fast_hackrf_config, sweep_command=["/nonexistent/hackrf_sweep"])
        assert not await manager.start_cycle([2450], 1000)
        assert manager.state == SweepState.ERROR
        assert manager.backoff.crash_count() == 1
        await manager.shutdown()


class TestForceCleanup:
    """Test unconditional teardown."""

    async def test_idempotent_when_idle(self, make_manager):
        manager = make_manager()
        await manager.force_cleanup()
        await manager.force_cleanup()
        assert manager.state == SweepState.IDLE

    async def test_kills_running_sweep(self, make_manager):
        manager = make_manager()
        spectrum = manager.subscribe(maxsize=10000, overflow="drop_oldest", topics={SweepEventType.SPECTRUM})
        changes = manager.subscribe(topics={SweepEventType.STATUS_CHANGE})

        assert await manager.start_cycle([2450], 1000)
        await wait_for_event(spectrum)

        await manager.force_cleanup()
        await manager.force_cleanup()
        assert manager.state == SweepState.IDLE
        assert manager.get_sweep_config() is None

        event = await wait_for_event(changes, timeout=1.0)
        assert event.data == {"status": "stopped", "forced": True}

        drain(spectrum)
        await asyncio.sleep(0.3)
        assert spectrum.pending() == 0

    async def test_shutdown_closes_subscribers(self, make_manager):
        manager = make_manager()
        sub = manager.subscribe()
        await manager.shutdown()
        assert sub.closed
        assert [event async for event in sub] == []


class TestHealth:
    """Test the bounded hardware probe."""

    async def test_healthy_device(self, make_manager):
        result = await make_manager().check_health()
        assert result.healthy
        assert result.error_kind is None
        assert result.frames_received > 0
        assert result.exit_code == 0

    async def test_no_device(self, make_manager):
        result = await make_manager("--no-device").check_health()
        assert not result.healthy
        assert result.error_kind == SweepErrorKind.DEVICE_UNAVAILABLE
        assert result.detail == "No HackRF boards found."

    async def test_hung_device_times_out(self, make_manager):
        result = await make_manager("--hang", HACKRF_HEALTH_TIMEOUT_S=0.5).check_health()
        assert not result.healthy
        assert result.error_kind == SweepErrorKind.TIMEOUT

    async def test_start_waits_for_running_probe(self, make_manager):
        manager = make_manager("--startup-delay", "1.5")
        peak = 0

        async def count_sweep_processes():
            nonlocal peak
            me = psutil.Process()
            while True:
                running = 0
                for child in me.children(recursive=True):
                    with contextlib.suppress(psutil.Error):
                        if "sweep" in child.cmdline():
                            running += 1
                peak = max(peak, running)
                await asyncio.sleep(0.05)

        sampler = asyncio.create_task(count_sweep_processes())
        try:
            health_task = asyncio.create_task(manager.check_health())
            await asyncio.sleep(0.1)
            started = await manager.start_cycle([2450], 5000)
            result = await health_task
        finally:
            sampler.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sampler

        assert started
        assert result.healthy
        assert result.exit_code == 0
        assert peak == 1

    async def test_reports_running_session(self, make_manager):
        manager = make_manager()
        assert await manager.start_cycle([2450], 1000)

        result = await manager.check_health()
        assert result.healthy
        assert result.detail == "sweep session active"
