"""
Service dependency injection and lifecycle management.
Provides centralized service initialization and dependency resolution.
"""

import asyncio
import contextlib
import logging
from datetime import datetime
from typing import Any

from src.backend.core.config import Config, get_config
from src.backend.core.exceptions import ArgosException
from src.backend.hal.mock_hackrf import mock_command
from src.backend.models.database import SpatialSignalStore
from src.backend.models.schemas import SweepEventType
from src.backend.services.event_bus import EventBus, Subscription
from src.backend.services.flight_path_analyzer import FlightPathAnalyzer
from src.backend.services.signal_aggregator import SignalAggregator
from src.backend.services.signal_recorder import SignalRecorder
from src.backend.services.sweep_manager import SweepManager

logger = logging.getLogger(__name__)


class ServiceManager:
    """Manages service lifecycle and dependencies."""

    def __init__(self, config: Config | None = None):
        self.config = config or get_config()
        self.services: dict[str, Any] = {}
        self.startup_order = [
            "store",
            "bus",
            "sweep_manager",
            "aggregator",
            "recorder",
            "flight_analyzer",
        ]
        self.initialized = False
        self.startup_time: datetime | None = None
        self._aggregator_subscription: Subscription | None = None
        self._aggregator_task: asyncio.Task | None = None

    async def initialize_services(self) -> None:
        """Initialize all services in dependency order."""
        if self.initialized:
            logger.warning("Services already initialized")
            return

        self.startup_time = datetime.now()
        logger.info("Starting service initialization...")

        try:
            logger.info("Initializing signal store...")
            db = self.config.database
            self.services["store"] = await asyncio.to_thread(
                SpatialSignalStore, db.DB_PATH, db.DB_GRID_SCALE, db.DB_ENABLE_WAL
            )

            self.services["bus"] = EventBus(self.config.hackrf.HACKRF_SUBSCRIBER_QUEUE_SIZE)

            logger.info("Initializing sweep manager...")
            if self.config.development.DEV_MOCK_SDR:
                logger.warning("DEV_MOCK_SDR enabled, sweeping the simulated HackRF")
                self.services["sweep_manager"] = SweepManager(
                    self.config.hackrf,
                    sweep_command=mock_command("sweep"),
                    info_command=mock_command("info"),
                    bus=self.services["bus"],
                )
            else:
                self.services["sweep_manager"] = SweepManager(
                    self.config.hackrf, bus=self.services["bus"]
                )

            logger.info("Initializing signal aggregator...")
            signal = self.config.signal
            self.services["aggregator"] = SignalAggregator(
                tolerance_mhz=signal.SIGNAL_TOLERANCE_MHZ,
                min_power_dbm=signal.SIGNAL_MIN_POWER_DBM,
                active_window_s=signal.SIGNAL_ACTIVE_WINDOW_S,
            )
            self._aggregator_subscription = self.services["bus"].subscribe(
                overflow="drop_oldest", topics={SweepEventType.SPECTRUM}
            )
            self._aggregator_task = asyncio.create_task(
                self._feed_aggregator(self._aggregator_subscription)
            )

            logger.info("Initializing signal recorder...")
            self.services["recorder"] = SignalRecorder(
                self.services["store"], self.services["bus"], self.config.database
            )
            await self.services["recorder"].start()

            self.services["flight_analyzer"] = FlightPathAnalyzer(self.config.analytics)
        except ArgosException as e:
            logger.critical(f"Service initialization failed: {e}")
            await self.shutdown_services()
            raise

        self.initialized = True
        startup_duration = (datetime.now() - self.startup_time).total_seconds()
        logger.info(f"All services initialized successfully in {startup_duration:.2f} seconds")

    async def _feed_aggregator(self, subscription: Subscription) -> None:
        aggregator: SignalAggregator = self.services["aggregator"]
        async for event in subscription:
            frame = event.frame
            if frame is None:
                continue
            if frame.target_frequency_mhz != aggregator.target_frequency_mhz:
                aggregator.set_target(frame.target_frequency_mhz)
            aggregator.add_spectrum_data(frame)

    async def shutdown_services(self) -> None:
        """Shutdown all services in reverse order."""
        logger.info("Starting service shutdown...")

        if self._aggregator_subscription is not None:
            self._aggregator_subscription.close()
            self._aggregator_subscription = None
        if self._aggregator_task is not None:
            self._aggregator_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._aggregator_task
            self._aggregator_task = None

        for service_name in reversed(self.startup_order):
            service = self.services.get(service_name)
            if service is None:
                continue
            try:
                if service_name == "recorder":
                    await service.stop()
                elif service_name == "sweep_manager":
                    await service.shutdown()
                elif service_name == "bus":
                    service.close_all()
                elif service_name == "store":
                    service.close()
                logger.info(f"Shutdown {service_name} service")
            except ArgosException as e:
                logger.error(f"Error shutting down {service_name}: {e}")

        self.services.clear()
        self.initialized = False
        logger.info("All services shutdown complete")

    async def get_service_health(self) -> dict[str, Any]:
        """Get aggregated health status of all services."""
        health_status: dict[str, Any] = {
            "status": "healthy",
            "initialized": self.initialized,
            "startup_time": self.startup_time.isoformat() if self.startup_time else None,
            "services": {},
        }

        if not self.initialized:
            health_status["status"] = "not_initialized"
            return health_status

        sweep_status = self.services["sweep_manager"].get_status()
        health_status["services"]["sweep_manager"] = {
            "status": "error" if sweep_status.state.value == "error" else "healthy",
            "state": sweep_status.state.value,
            "frames_received": sweep_status.frames_received,
            "restart": self.services["sweep_manager"].backoff.get_status(),
        }

        recorder: SignalRecorder = self.services["recorder"]
        health_status["services"]["recorder"] = {
            "status": "healthy" if recorder.running else "stopped",
            "records_stored": recorder.records_stored,
            "pending": recorder.pending,
        }

        try:
            signal_count = await asyncio.to_thread(self.services["store"].count_signals)
            health_status["services"]["store"] = {"status": "healthy", "signals": signal_count}
        except ArgosException as e:
            logger.error(f"Error getting health for store: {e}")
            health_status["services"]["store"] = {"status": "error", "error": str(e)}

        unhealthy = [
            name
            for name, service in health_status["services"].items()
            if service["status"] in ("error", "stopped")
        ]
        if unhealthy:
            health_status["status"] = (
                "degraded" if len(unhealthy) < len(health_status["services"]) else "unhealthy"
            )
        return health_status

    def get_service(self, name: str) -> Any | None:
        """Get a service instance by name."""
        return self.services.get(name)


# Global service manager instance
_service_manager: ServiceManager | None = None


def get_service_manager() -> ServiceManager:
    """Get or create the global service manager instance."""
    global _service_manager
    if _service_manager is None:
        _service_manager = ServiceManager()
    return _service_manager


def set_service_manager(manager: ServiceManager | None) -> None:
    """Replace the global service manager (None resets it)."""
    global _service_manager
    _service_manager = manager


async def _initialized_service(name: str) -> Any:
    manager = get_service_manager()
    if not manager.initialized:
        await manager.initialize_services()
    return manager.get_service(name)


async def get_signal_store() -> SpatialSignalStore:
    """Dependency injection for the signal store."""
    return await _initialized_service("store")


async def get_sweep_manager() -> SweepManager:
    """Dependency injection for the sweep manager."""
    return await _initialized_service("sweep_manager")


async def get_signal_aggregator() -> SignalAggregator:
    """Dependency injection for the signal aggregator."""
    return await _initialized_service("aggregator")


async def get_signal_recorder() -> SignalRecorder:
    """Dependency injection for the signal recorder."""
    return await _initialized_service("recorder")


async def get_flight_analyzer() -> FlightPathAnalyzer:
    """Dependency injection for the flight path analyzer."""
    return await _initialized_service("flight_analyzer")
