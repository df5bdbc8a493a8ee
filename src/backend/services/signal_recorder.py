"""Signal recording service.

Persists the strongest bin of each spectrum frame into the spatial signal
store, tagged with the platform position at the time it was heard, and runs
periodic retention over the stored history.
"""

import asyncio
import contextlib
import logging
import math
import time
import uuid
from collections import deque
from collections.abc import Callable

from src.backend.core.config import DatabaseConfig
from src.backend.core.exceptions import ArgosException, DataCorruptionError, StoreIOError
from src.backend.models.database import SpatialSignalStore
from src.backend.models.schemas import (
    CleanupResult,
    SignalRecord,
    SpectrumFrame,
    SweepEventType,
)
from src.backend.services.event_bus import EventBus, Subscription
from src.backend.utils.logging import log_error, log_info

logger = logging.getLogger(__name__)

# (lat, lon, altitude) or None while no position fix is available
PositionProvider = Callable[[], tuple[float, float, float] | None]

# Pending records kept across failed flushes, in batches
MAX_PENDING_BATCHES = 10


class SignalRecorder:
    """Buffers frame peaks as SignalRecords and flushes them in batches."""

    def __init__(
        self,
        store: SpatialSignalStore,
        bus: EventBus,
        config: DatabaseConfig | None = None,
        position_provider: PositionProvider | None = None,
    ):
        """Initialize the recorder.

        Args:
            store: Destination signal store
            bus: Event bus carrying spectrum events
            config: Database settings for batching and retention
            position_provider: Returns the current position; defaults to the
                last value given to set_position()
        """
        self.store = store
        self.bus = bus
        self.config = config or DatabaseConfig()
        self._position_provider = position_provider or self._last_position
        self._position: tuple[float, float, float] | None = None

        self._pending: deque[SignalRecord] = deque(
            maxlen=self.config.DB_RECORD_BATCH_SIZE * MAX_PENDING_BATCHES
        )
        self._subscription: Subscription | None = None
        self._tasks: list[asyncio.Task] = []
        self._flush_lock = asyncio.Lock()

        self.running = False
        self.records_stored = 0
        self.frames_without_position = 0
        self.frames_bad_position = 0
        self.records_rejected = 0
        self.last_cleanup: CleanupResult | None = None

    def set_position(self, lat: float, lon: float, altitude: float = 0.0) -> None:
        self._position = (lat, lon, altitude)

    def _last_position(self) -> tuple[float, float, float] | None:
        return self._position

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def start(self) -> None:
        """Subscribe to spectrum events and start the flush and retention tasks."""
        if self.running:
            logger.warning("Signal recorder already running")
            return
        # Recording must never slow the sweep loop down
        self._subscription = self.bus.subscribe(
            overflow="drop_oldest", topics={SweepEventType.SPECTRUM}
        )
        self.running = True
        self._tasks = [
            asyncio.create_task(self._consume_loop(self._subscription)),
            asyncio.create_task(self._flush_loop()),
            asyncio.create_task(self._retention_loop()),
        ]
        log_info(
            logger,
            "Signal recorder started",
            batch_size=self.config.DB_RECORD_BATCH_SIZE,
            retention_s=self.config.DB_RETENTION_S,
        )

    async def stop(self) -> None:
        """Stop recording and flush whatever is still buffered."""
        if not self.running:
            return
        self.running = False
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        await self.flush()
        logger.info(f"Signal recorder stopped, {self.records_stored} records stored")

    def record_frame(self, frame: SpectrumFrame) -> SignalRecord | None:
        """
        Buffer the frame's peak bin as a SignalRecord.

        Returns the buffered record, or None when the peak is below the
        recording threshold or no position is known.
        """
        peak = frame.peak()
        if peak is None:
            return None
        frequency_mhz, power = peak
        if power < self.config.DB_RECORD_MIN_POWER_DBM:
            return None

        position = self._position_provider()
        if position is None:
            self.frames_without_position += 1
            return None
        lat, lon, altitude = position
        if not _valid_position(lat, lon, altitude):
            self.frames_bad_position += 1
            logger.warning(f"Ignoring frame peak at invalid position ({lat}, {lon}, {altitude})")
            return None

        record = SignalRecord(
            id=uuid.uuid4().hex,
            timestamp=frame.timestamp,
            lat=lat,
            lon=lon,
            altitude=altitude,
            power=power,
            frequency=frequency_mhz,
            metadata={
                "bin_width_hz": frame.bin_width_hz,
                "target_frequency_mhz": frame.target_frequency_mhz,
            },
        )
        self._pending.append(record)
        return record

    async def flush(self) -> int:
        """Write buffered records to the store. Returns the number inserted."""
        async with self._flush_lock:
            if not self._pending:
                return 0
            batch = self._drop_unstorable(list(self._pending))
            self._pending.clear()
            if not batch:
                return 0
            try:
                inserted = await asyncio.to_thread(self.store.store_signals_batch, batch)
            except StoreIOError:
                # Put the batch back ahead of anything buffered meanwhile
                self._pending.extendleft(reversed(batch))
                raise
            self.records_stored += inserted
            logger.debug(f"Flushed {inserted} signal record(s)")
            return inserted

    def _drop_unstorable(self, batch: list[SignalRecord]) -> list[SignalRecord]:
        """Remove records the store would reject so they cannot sink the batch."""
        valid = []
        for record in batch:
            try:
                self.store.prepare_signal(record)
            except DataCorruptionError as e:
                self.records_rejected += 1
                log_error(logger, "Dropping unstorable signal record", error=str(e), id=record.id)
                continue
            valid.append(record)
        return valid

    async def run_retention(self, now: float | None = None) -> CleanupResult:
        """Delete stored signals older than the retention period."""
        result = await asyncio.to_thread(
            self.store.cleanup_old_data, self.config.DB_RETENTION_S, None, now
        )
        self.last_cleanup = result
        log_info(
            logger,
            "Retention pass complete",
            signals_deleted=result.signals_deleted,
            devices_deleted=result.devices_deleted,
        )
        return result

    async def _consume_loop(self, subscription: Subscription) -> None:
        async for event in subscription:
            if event.frame is None:
                continue
            self.record_frame(event.frame)
            if len(self._pending) >= self.config.DB_RECORD_BATCH_SIZE:
                await self._flush_logged()

    async def _flush_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.config.DB_RECORD_FLUSH_INTERVAL_S)
            await self._flush_logged()

    async def _retention_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.config.DB_CLEANUP_INTERVAL_S)
            try:
                await self.run_retention(now=time.time())
            except StoreIOError as e:
                log_error(logger, "Retention pass failed", error=str(e))

    async def _flush_logged(self) -> None:
        try:
            await self.flush()
        except StoreIOError as e:
            log_error(logger, "Signal flush failed, records kept for retry", error=str(e), pending=self.pending)
        except ArgosException as e:
            log_error(logger, "Signal flush failed", error=str(e), pending=self.pending)


def _valid_position(lat: float, lon: float, altitude: float) -> bool:
    if not all(isinstance(v, int | float) and math.isfinite(v) for v in (lat, lon, altitude)):
        return False
    return -90 <= lat <= 90 and -180 <= lon <= 180
