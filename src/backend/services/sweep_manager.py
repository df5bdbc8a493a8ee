"""
Sweep supervisor for the hackrf_sweep subprocess.

Owns one sweep subprocess at a time, cycles it through the configured
frequency list, parses its output into SpectrumFrame events and publishes
spectrum/status/cycle_config/status_change/error events on an EventBus.

State machine::

    IDLE -> INITIALIZING -> RUNNING -> STOPPING -> IDLE
      any state -> ERROR on subprocess failure
      ERROR -> IDLE only through force_cleanup()

Hardware faults never propagate to the caller: they are classified, moved
into the ERROR state and reported as ``error`` events.
"""

import asyncio
import logging
import math
import time
from collections import deque
from collections.abc import Iterable
from dataclasses import replace
from typing import Any

import psutil
from prometheus_client import Counter, Gauge

from src.backend.core.config import HackRFConfig
from src.backend.core.exceptions import (
    ArgosException,
    DataCorruptionError,
    DeviceUnavailableError,
    HardwareError,
    InvalidConfigError,
    StateTransitionError,
    SweepErrorKind,
    SweepTimeoutError,
    hardware_error,
)
from src.backend.hal.hackrf_sweep import (
    MAX_FREQUENCY_MHZ,
    MAX_LINE_BYTES,
    MIN_FREQUENCY_MHZ,
    build_sweep_args,
    classify_exit,
    classify_stderr,
    kill_stray_processes,
    normalize_frequencies,
    parse_sweep_line,
    probe_device,
    signal_strength_category,
    terminate_process_tree,
)
from src.backend.models.schemas import (
    HealthResult,
    SpectrumFrame,
    SweepConfig,
    SweepEvent,
    SweepEventType,
    SweepState,
    SweepStatus,
)
from src.backend.services.event_bus import EventBus, OverflowPolicy, Subscription
from src.backend.utils.backoff import RestartBackoff, RestartBackoffConfig, RestartState
from src.backend.utils.logging import log_info, log_warning

logger = logging.getLogger(__name__)

FRAMES_PUBLISHED = Counter("argos_sweep_frames_total", "Spectrum frames published")
RECORDS_CORRUPT = Counter(
    "argos_sweep_corrupt_records_total", "Sweep output records dropped as corrupt"
)
SWEEP_ERRORS = Counter("argos_sweep_errors_total", "Classified sweep errors", ["kind"])
SWEEP_STATE = Gauge("argos_sweep_state", "1 for the current sweep state", ["state"])

ALLOWED_TRANSITIONS: dict[SweepState, set[SweepState]] = {
    SweepState.IDLE: {SweepState.INITIALIZING, SweepState.ERROR},
    SweepState.INITIALIZING: {SweepState.RUNNING, SweepState.STOPPING, SweepState.ERROR},
    SweepState.RUNNING: {SweepState.STOPPING, SweepState.ERROR},
    SweepState.STOPPING: {SweepState.IDLE, SweepState.ERROR},
    SweepState.ERROR: set(),
}

HEALTH_PROBE_CENTER_MHZ = 2450.0
HEALTH_PROBE_SPAN_MHZ = 5.0


class SweepManager:
    """Supervises the sweep subprocess and fans its output out to subscribers."""

    def __init__(
        self,
        config: HackRFConfig | None = None,
        sweep_command: list[str] | None = None,
        info_command: list[str] | None = None,
        bus: EventBus | None = None,
    ):
        """
        Initialize the sweep manager.

        Args:
            config: Sweep hardware configuration
            sweep_command: argv prefix for the sweep binary, overrides config
            info_command: argv prefix for the device probe, overrides config
            bus: Event bus to publish on, one is created when omitted
        """
        self.config = config or HackRFConfig()
        self._sweep_command = sweep_command or self.config.sweep_command()
        self._info_command = info_command or self.config.info_command()
        self.bus = bus or EventBus(self.config.HACKRF_SUBSCRIBER_QUEUE_SIZE)

        self._status = SweepStatus()
        self._sweep_config: SweepConfig | None = None
        self._lock = asyncio.Lock()

        # Bumped on stop/cleanup so in-flight work from an old session bails out
        self._session = 0
        self._delivering = False
        self._switching = False

        self._process: asyncio.subprocess.Process | None = None
        self._process_tasks: list[asyncio.Task] = []
        self._cycle_task: asyncio.Task | None = None
        self._watchdog_task: asyncio.Task | None = None
        self._first_data: asyncio.Event | None = None
        self._stderr_tail: deque[str] = deque(maxlen=20)
        self._pending_error: tuple[SweepErrorKind, str] | None = None

        self.corrupt_records = 0
        self._backoff = RestartBackoff(
            RestartBackoffConfig(
                base_delay_s=self.config.HACKRF_RESTART_BASE_DELAY_S,
                max_delay_s=self.config.HACKRF_RESTART_MAX_DELAY_S,
                max_crashes=self.config.HACKRF_MAX_CRASHES,
                window_s=self.config.HACKRF_CRASH_WINDOW_S,
            ),
            name="hackrf_sweep",
        )
        self._update_state_gauge()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> SweepState:
        return self._status.state

    @property
    def backoff(self) -> RestartBackoff:
        return self._backoff

    def get_status(self) -> SweepStatus:
        """Snapshot of the current status."""
        return replace(self._status)

    def get_sweep_config(self) -> SweepConfig | None:
        return self._sweep_config

    def subscribe(
        self,
        maxsize: int | None = None,
        overflow: OverflowPolicy = "block",
        topics: set[SweepEventType] | None = None,
    ) -> Subscription:
        """Attach a subscriber. Detach with ``subscription.close()``."""
        return self.bus.subscribe(maxsize=maxsize, overflow=overflow, topics=topics)

    async def start_cycle(self, frequencies: Iterable[Any], cycle_time_ms: float) -> bool:
        """
        Start sweeping ``frequencies`` with ``cycle_time_ms`` dwell per entry.

        Returns:
            True when the sweep reached RUNNING. False when already active, in
            ERROR, the configuration is invalid, restarts are suspended by the
            crash backoff, or the device failed to start.
        """
        async with self._lock:
            state = self._status.state
            if state in (SweepState.RUNNING, SweepState.INITIALIZING, SweepState.STOPPING):
                logger.warning(f"Sweep start ignored, manager is {state.value}")
                return False
            if state == SweepState.ERROR:
                logger.warning("Sweep start refused, force_cleanup() required after error")
                return False

            frequencies_mhz = [
                f
                for f in normalize_frequencies(frequencies)
                if MIN_FREQUENCY_MHZ <= f <= MAX_FREQUENCY_MHZ
            ]
            try:
                cycle_time = float(cycle_time_ms)
            except (TypeError, ValueError):
                cycle_time = float("nan")
            if not frequencies_mhz or not math.isfinite(cycle_time) or cycle_time <= 0:
                await self._emit_error(
                    InvalidConfigError(
                        "Invalid sweep configuration",
                        {"frequencies": len(frequencies_mhz), "cycle_time_ms": cycle_time_ms},
                    )
                )
                return False

            if self._backoff.get_state() == RestartState.EXHAUSTED:
                await self._emit_error(
                    DeviceUnavailableError(
                        "Sweep restarts suspended after repeated crashes",
                        {"retry_after_s": round(self._backoff.retry_after(), 1)},
                    )
                )
                return False

            session = self._session
            delay = self._backoff.remaining_delay()
            if delay > 0:
                log_warning(logger, "Delaying sweep start after crash", delay_s=f"{delay:.1f}")
                await asyncio.sleep(delay)
                if session != self._session:
                    return False

            sweep_config = SweepConfig(tuple(frequencies_mhz), cycle_time)
            self._sweep_config = sweep_config
            self._status = SweepStatus(total_frequencies=len(frequencies_mhz))
            self.corrupt_records = 0
            self._transition(SweepState.INITIALIZING)
            await self._emit_status()

            if self.config.HACKRF_PROBE_BEFORE_START:
                probe = await probe_device(self._info_command, self.config.HACKRF_PROBE_TIMEOUT_S)
                if session != self._session:
                    return False
                if not probe.available:
                    self._backoff.record_crash()
                    await self._fail(
                        hardware_error(
                            probe.error_kind or SweepErrorKind.DEVICE_UNAVAILABLE,
                            f"Sweep device unavailable: {probe.detail}",
                            {"probe": probe.detail},
                        ),
                        session,
                    )
                    return False

            self._status.start_time = time.time()
            await self._emit(SweepEventType.CYCLE_CONFIG, {**sweep_config.to_dict(), "lap": 0})

            if not await self._launch(0, session):
                return False
            if session != self._session or self._status.state != SweepState.INITIALIZING:
                return False

            self._transition(SweepState.RUNNING)
            await self._emit_status()
            if sweep_config.is_cycling:
                self._cycle_task = asyncio.create_task(self._cycle_loop(session))
            self._watchdog_task = asyncio.create_task(self._watchdog_loop(session))

            log_info(
                logger,
                "Sweep started",
                frequencies=list(sweep_config.frequencies_mhz),
                cycle_time_ms=cycle_time,
            )
            return True

    async def stop_sweep(self) -> None:
        """Stop the sweep. No spectrum events are published after this returns."""
        async with self._lock:
            state = self._status.state
            if state == SweepState.IDLE:
                return
            if state == SweepState.ERROR:
                logger.warning("Sweep is in error state, use force_cleanup()")
                return

            self._delivering = False
            self._session += 1
            self._transition(SweepState.STOPPING)
            await self._emit_status()

            await self._cancel_background()
            await self._stop_process(self.config.HACKRF_STOP_GRACE_S)

            self._status.current_frequency_mhz = None
            self._transition(SweepState.IDLE)
            await self._emit_status()
            await self._emit(SweepEventType.STATUS_CHANGE, {"status": "stopped"})
            logger.info("Sweep stopped")

    async def force_cleanup(self) -> None:
        """
        Kill everything and return to IDLE from any state.

        Does not wait for the manager lock, so it also interrupts a start in
        progress. Safe to call repeatedly.
        """
        previous = self._status.state
        self._session += 1
        self._delivering = False

        await self._cancel_background()
        await self._stop_process(grace_s=0)
        stray = kill_stray_processes(self.config.HACKRF_STRAY_PROCESS_NAMES)

        self._sweep_config = None
        self._status = SweepStatus()
        self._pending_error = None
        self._update_state_gauge()

        if previous != SweepState.IDLE:
            await self._emit_status()
            await self._emit(SweepEventType.STATUS_CHANGE, {"status": "stopped", "forced": True})
        log_info(logger, "Sweep force cleanup complete", previous=previous.value, stray_killed=stray)

    async def check_health(self) -> HealthResult:
        """
        Run a bounded single-sweep probe and classify the outcome.

        Holds the manager lock for the whole probe so a sweep cannot be
        started alongside it. While a session owns the device the probe is
        skipped and the running process is reported instead. The probe
        process is always killed.
        """
        async with self._lock:
            if self._status.state in (
                SweepState.RUNNING,
                SweepState.INITIALIZING,
                SweepState.STOPPING,
            ):
                alive = self._process is not None and self._process.returncode is None
                return HealthResult(
                    healthy=alive or self._switching,
                    error_kind=None if alive or self._switching else SweepErrorKind.SUBPROCESS_CRASH,
                    detail="sweep session active",
                    frames_received=self._status.frames_received,
                )
            return await self._probe_sweep()

    async def _probe_sweep(self) -> HealthResult:
        started = time.perf_counter()
        args = build_sweep_args(
            HEALTH_PROBE_CENTER_MHZ,
            span_mhz=HEALTH_PROBE_SPAN_MHZ,
            bin_width_hz=self.config.HACKRF_HEALTH_BIN_WIDTH_HZ,
            lna_gain=self.config.HACKRF_LNA_GAIN,
            vga_gain=self.config.HACKRF_VGA_GAIN,
            num_sweeps=1,
        )
        command = [*self._sweep_command, *args]
        timeout = self.config.HACKRF_HEALTH_TIMEOUT_S

        def elapsed_ms() -> float:
            return (time.perf_counter() - started) * 1000

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            return HealthResult(
                False, SweepErrorKind.DEVICE_UNAVAILABLE, f"{command[0]}: {e}", elapsed_ms()
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            return HealthResult(
                False, SweepErrorKind.TIMEOUT, f"probe sweep exceeded {timeout}s", elapsed_ms()
            )
        finally:
            await terminate_process_tree(process, grace_s=0)

        frames = 0
        for line in stdout.decode(errors="replace").splitlines():
            try:
                parse_sweep_line(line)
                frames += 1
            except DataCorruptionError:
                continue

        stderr_text = stderr.decode(errors="replace")
        kind = classify_stderr(stderr_text)
        detail = stderr_text.strip().splitlines()[-1] if stderr_text.strip() else ""
        if kind is None:
            kind, detail = classify_exit(process.returncode, stderr_text)
        if kind is None and frames == 0:
            kind, detail = SweepErrorKind.SUBPROCESS_CRASH, "probe sweep returned no data"

        result = HealthResult(
            healthy=kind is None,
            error_kind=kind,
            detail=detail if kind else f"{frames} record(s) received",
            duration_ms=elapsed_ms(),
            frames_received=frames,
            exit_code=process.returncode,
        )
        log_info(logger, "Health probe finished", healthy=result.healthy, detail=result.detail)
        return result

    async def shutdown(self) -> None:
        """Application teardown: kill the sweep and close every subscription."""
        await self.force_cleanup()
        self.bus.close_all()

    # ------------------------------------------------------------------
    # State and events
    # ------------------------------------------------------------------

    def _transition(self, new_state: SweepState) -> None:
        current = self._status.state
        if new_state not in ALLOWED_TRANSITIONS[current]:
            raise StateTransitionError(
                f"Invalid sweep transition {current.value} -> {new_state.value}"
            )
        self._status.state = new_state
        self._update_state_gauge()
        logger.debug(f"Sweep state {current.value} -> {new_state.value}")

    def _update_state_gauge(self) -> None:
        for state in SweepState:
            SWEEP_STATE.labels(state.value).set(1 if state == self._status.state else 0)

    async def _emit(
        self, event_type: SweepEventType, data: dict[str, Any], frame: SpectrumFrame | None = None
    ) -> None:
        await self.bus.publish(SweepEvent(type=event_type, data=data, frame=frame))

    async def _emit_status(self) -> None:
        await self._emit(SweepEventType.STATUS, self._status.to_dict())

    async def _emit_error(self, error: ArgosException) -> None:
        kind = error.kind or SweepErrorKind.SUBPROCESS_CRASH
        SWEEP_ERRORS.labels(kind.value).inc()
        logger.error(f"Sweep error [{kind.value}]: {error.message}")
        await self._emit(
            SweepEventType.ERROR,
            {
                "message": error.message,
                "type": kind.value,
                "timestamp": time.time(),
                "details": error.details,
            },
        )

    async def _fail(self, error: HardwareError, session: int) -> None:
        """Move the current session into ERROR and report why."""
        if session != self._session or self._status.state == SweepState.ERROR:
            return

        self._delivering = False
        self._status.error = error.message
        self._transition(SweepState.ERROR)

        await self._cancel_background()
        await self._stop_process(grace_s=0)

        await self._emit_error(error)
        await self._emit_status()
        await self._emit(SweepEventType.STATUS_CHANGE, {"status": "error", "error": error.message})

    # ------------------------------------------------------------------
    # Subprocess handling
    # ------------------------------------------------------------------

    async def _launch(self, index: int, session: int) -> bool:
        """Spawn the sweep for entry ``index`` and wait for startup."""
        assert self._sweep_config is not None
        frequency = self._sweep_config.frequencies_mhz[index]
        command = [
            *self._sweep_command,
            *build_sweep_args(
                frequency,
                span_mhz=self.config.HACKRF_SPAN_MHZ,
                bin_width_hz=self.config.HACKRF_BIN_WIDTH_HZ,
                lna_gain=self.config.HACKRF_LNA_GAIN,
                vga_gain=self.config.HACKRF_VGA_GAIN,
            ),
        ]

        self._stderr_tail.clear()
        self._pending_error = None
        first_data = asyncio.Event()
        self._first_data = first_data

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=MAX_LINE_BYTES,
            )
        except OSError as e:
            self._backoff.record_crash()
            await self._fail(
                DeviceUnavailableError(f"Cannot start sweep process: {e}", {"command": command[0]}),
                session,
            )
            return False

        if session != self._session:
            await terminate_process_tree(process, grace_s=0)
            return False

        self._process = process
        self._status.current_frequency_mhz = frequency
        self._status.frequency_index = index
        self._delivering = True

        exit_task = asyncio.create_task(self._watch_exit(process, session))
        self._process_tasks = [
            asyncio.create_task(self._read_stdout(process, frequency, session)),
            asyncio.create_task(self._read_stderr(process, session)),
            exit_task,
        ]
        log_info(logger, "Sweep process started", pid=process.pid, frequency_mhz=frequency)

        data_task = asyncio.create_task(first_data.wait())
        try:
            await asyncio.wait(
                {data_task, exit_task},
                timeout=self.config.HACKRF_STARTUP_DETECTION_S,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            data_task.cancel()

        if session != self._session or self._status.state == SweepState.ERROR:
            return False
        if not first_data.is_set():
            logger.info("No sweep data inside startup window, assuming sweep is running")
        return True

    async def _stop_process(self, grace_s: float) -> None:
        """Detach and terminate the current sweep process and its tasks."""
        process, tasks = self._process, self._process_tasks
        self._process, self._process_tasks = None, []

        if process is not None:
            returncode = await terminate_process_tree(process, grace_s=grace_s)
            logger.debug(f"Sweep process {process.pid} exited with {returncode}")

        current = asyncio.current_task()
        pending = [t for t in tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _cancel_background(self) -> None:
        current = asyncio.current_task()
        tasks = [
            t
            for t in (self._cycle_task, self._watchdog_task)
            if t is not None and t is not current and not t.done()
        ]
        self._cycle_task = self._watchdog_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _read_stdout(
        self, process: asyncio.subprocess.Process, frequency: float, session: int
    ) -> None:
        assert process.stdout is not None
        while True:
            try:
                line = await process.stdout.readline()
            except ValueError:
                # Line longer than the stream limit
                self.corrupt_records += 1
                RECORDS_CORRUPT.inc()
                logger.warning("Discarded oversized sweep record")
                continue
            if not line:
                return
            if session != self._session or not self._delivering:
                continue

            text = line.decode(errors="replace").strip()
            if not text:
                continue
            try:
                frame = parse_sweep_line(
                    text,
                    sample_rate=self.config.HACKRF_SAMPLE_RATE,
                    target_frequency_mhz=frequency,
                )
            except DataCorruptionError as e:
                self.corrupt_records += 1
                RECORDS_CORRUPT.inc()
                logger.debug(f"Skipping corrupt sweep record: {e}")
                continue

            self._status.last_data_time = frame.timestamp
            self._status.frames_received += 1
            if self._first_data is not None:
                self._first_data.set()

            peak = frame.peak()
            data = frame.to_dict()
            if peak is not None:
                data["peak_frequency_mhz"], data["peak_power"] = peak
                data["signal_strength"] = signal_strength_category(peak[1])
            FRAMES_PUBLISHED.inc()
            await self._emit(SweepEventType.SPECTRUM, data, frame=frame)

    async def _read_stderr(self, process: asyncio.subprocess.Process, session: int) -> None:
        assert process.stderr is not None
        while True:
            try:
                line = await process.stderr.readline()
            except ValueError:
                continue
            if not line:
                return
            text = line.decode(errors="replace").strip()
            if not text:
                continue

            self._stderr_tail.append(text)
            kind = classify_stderr(text)
            if kind is None:
                logger.debug(f"hackrf_sweep: {text}")
                continue

            logger.error(f"hackrf_sweep reported: {text}")
            if session == self._session and self._pending_error is None:
                self._pending_error = (kind, text)
                # Exit watcher reports the failure with this classification
                await terminate_process_tree(process, grace_s=0)

    async def _watch_exit(self, process: asyncio.subprocess.Process, session: int) -> None:
        returncode = await process.wait()
        if process is not self._process or session != self._session:
            return

        # Let the stderr reader drain so classification sees the last lines
        readers = [t for t in self._process_tasks if t is not asyncio.current_task()]
        if readers:
            await asyncio.wait(readers, timeout=1.0)
        if process is not self._process or session != self._session:
            return

        if self._pending_error is not None:
            kind, detail = self._pending_error
        else:
            kind, detail = classify_exit(returncode, "\n".join(self._stderr_tail))
            if kind is None:
                kind, detail = SweepErrorKind.SUBPROCESS_CRASH, "sweep process exited unexpectedly"

        self._backoff.record_crash()
        await self._fail(
            hardware_error(
                kind,
                f"Sweep process failed: {detail}",
                {
                    "returncode": returncode,
                    "frequency_mhz": self._status.current_frequency_mhz,
                    "stderr": list(self._stderr_tail),
                },
            ),
            session,
        )

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    async def _cycle_loop(self, session: int) -> None:
        """Dwell on each entry, retune, and announce every new lap."""
        sweep_config = self._sweep_config
        assert sweep_config is not None
        count = len(sweep_config.frequencies_mhz)
        index = self._status.frequency_index

        while session == self._session:
            await asyncio.sleep(sweep_config.cycle_time_ms / 1000)
            if session != self._session or self._status.state != SweepState.RUNNING:
                return

            next_index = (index + 1) % count
            next_frequency = sweep_config.frequencies_mhz[next_index]
            await self._emit(
                SweepEventType.STATUS_CHANGE,
                {"status": "switching", "next_frequency": next_frequency},
            )

            self._switching = True
            try:
                await self._stop_process(self.config.HACKRF_STOP_GRACE_S)
                await asyncio.sleep(sweep_config.switching_time_ms / 1000)
                if session != self._session:
                    return
                if next_index == 0:
                    self._status.cycle_index += 1
                    await self._emit(
                        SweepEventType.CYCLE_CONFIG,
                        {**sweep_config.to_dict(), "lap": self._status.cycle_index},
                    )
                launched = await self._launch(next_index, session)
            finally:
                self._switching = False

            if not launched:
                return
            index = next_index
            await self._emit_status()

    async def _watchdog_loop(self, session: int) -> None:
        """Detect stalled output and warn on memory pressure."""
        interval = self.config.HACKRF_WATCHDOG_INTERVAL_S
        while session == self._session:
            await asyncio.sleep(interval)
            if session != self._session or self._status.state != SweepState.RUNNING:
                return
            if self._switching:
                continue

            last = self._status.last_data_time or self._status.start_time or time.time()
            silence = time.time() - last
            if silence > self.config.HACKRF_DATA_TIMEOUT_S:
                self._backoff.record_crash()
                await self._fail(
                    SweepTimeoutError(
                        f"No sweep data for {silence:.0f}s",
                        {"frequency_mhz": self._status.current_frequency_mhz},
                    ),
                    session,
                )
                return

            memory = psutil.virtual_memory()
            if memory.percent >= self.config.HACKRF_MEMORY_WARNING_PERCENT:
                log_warning(
                    logger,
                    "System memory pressure during sweep",
                    percent=memory.percent,
                    available_mb=memory.available // (1024 * 1024),
                )
