"""Data models and schemas for the ARGOS backend."""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from src.backend.core.exceptions import SweepErrorKind


class SweepState(str, Enum):
    """Sweep supervisor lifecycle states."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class SweepEventType(str, Enum):
    """Event topics published by the sweep supervisor."""

    SPECTRUM = "spectrum"
    STATUS = "status"
    CYCLE_CONFIG = "cycle_config"
    STATUS_CHANGE = "status_change"
    ERROR = "error"


@dataclass(frozen=True)
class SweepFrequency:
    """A requested sweep centre frequency."""

    value: float
    unit: str = "MHz"  # Hz, kHz, MHz or GHz


@dataclass(frozen=True)
class SweepConfig:
    """Frequencies and dwell for one sweep session. Immutable once started."""

    frequencies_mhz: tuple[float, ...]
    cycle_time_ms: float  # Dwell per frequency entry

    @property
    def is_cycling(self) -> bool:
        return len(self.frequencies_mhz) > 1

    @property
    def total_cycle_time_ms(self) -> float:
        return self.cycle_time_ms * len(self.frequencies_mhz)

    @property
    def switching_time_ms(self) -> float:
        """Settle time between retunes, clamped to 0.5-3 s."""
        return min(3000.0, max(500.0, self.cycle_time_ms * 0.25))

    def to_dict(self) -> dict[str, Any]:
        return {
            "frequencies": list(self.frequencies_mhz),
            "cycle_time_ms": self.cycle_time_ms,
            "total_cycle_time_ms": self.total_cycle_time_ms,
            "switching_time_ms": self.switching_time_ms,
            "is_cycling": self.is_cycling,
        }


@dataclass
class SweepStatus:
    """Sweep supervisor status. Mutated only by the SweepManager."""

    state: SweepState = SweepState.IDLE
    current_frequency_mhz: float | None = None
    cycle_index: int = 0  # Completed laps through the frequency list
    frequency_index: int = 0
    total_frequencies: int = 0
    start_time: float | None = None
    last_data_time: float | None = None
    frames_received: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass(frozen=True)
class SpectrumFrame:
    """One parsed sweep record: a contiguous run of power bins."""

    frequency_start_hz: float
    frequency_end_hz: float
    bin_count: int
    bins: tuple[float, ...]  # dB per bin
    sample_rate: float
    timestamp: float  # Epoch seconds
    target_frequency_mhz: float | None = None

    @property
    def bin_width_hz(self) -> float:
        if self.bin_count <= 0:
            return 0.0
        return (self.frequency_end_hz - self.frequency_start_hz) / self.bin_count

    def bin_frequency_mhz(self, index: int) -> float:
        """Centre frequency of bin ``index`` in MHz."""
        return (self.frequency_start_hz + (index + 0.5) * self.bin_width_hz) / 1e6

    def peak(self) -> tuple[float, float] | None:
        """(frequency MHz, power dB) of the strongest bin."""
        if not self.bins:
            return None
        index = max(range(len(self.bins)), key=self.bins.__getitem__)
        return self.bin_frequency_mhz(index), self.bins[index]

    def to_dict(self) -> dict[str, Any]:
        return {
            "frequency_start_hz": self.frequency_start_hz,
            "frequency_end_hz": self.frequency_end_hz,
            "bin_count": self.bin_count,
            "bins": list(self.bins),
            "sample_rate": self.sample_rate,
            "timestamp": self.timestamp,
            "target_frequency_mhz": self.target_frequency_mhz,
        }


@dataclass
class SweepEvent:
    """Event delivered to sweep subscribers."""

    type: SweepEventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    frame: SpectrumFrame | None = None  # Set on spectrum events


@dataclass
class HealthResult:
    """Outcome of a bounded hardware probe."""

    healthy: bool
    error_kind: SweepErrorKind | None = None
    detail: str = ""
    duration_ms: float = 0.0
    frames_received: int = 0
    exit_code: int | None = None
    checked_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["error_kind"] = self.error_kind.value if self.error_kind else None
        return data


@dataclass
class SignalDetection:
    """Ephemeral aggregated signal near a target frequency."""

    frequency_mhz: float
    power: float  # dBm, strongest observation
    first_seen: float
    last_seen: float
    count: int = 1  # Frames the detection was observed in


@dataclass
class SignalRecord:
    """A persisted observation of an emission at a place and time."""

    id: str
    timestamp: float
    lat: float
    lon: float
    power: float  # dBm
    frequency: float  # MHz
    source: str = "hackrf"
    altitude: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)
    device_id: str | None = None
    grid_lat: int | None = None
    grid_lon: int | None = None


@dataclass
class DeviceRecord:
    """Rolling statistics for signals attributed to one approximate emitter."""

    id: str
    type: str
    first_seen: float
    last_seen: float
    avg_power: float
    freq_min: float
    freq_max: float
    signal_count: int
    last_lat: float
    last_lon: float


@dataclass
class RelationshipRecord:
    """Co-occurrence edge between two devices."""

    source_device_id: str
    target_device_id: str
    type: str = "co_occurrence"
    strength: float = 1.0
    first_seen: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    id: int | None = None


@dataclass
class SpatialQuery:
    """Radius/time query against the signal store."""

    lat: float
    lon: float
    radius_m: float
    start_time: float | None = None
    end_time: float | None = None
    limit: int = 1000


@dataclass
class Bounds:
    """Lat/lon bounding box."""

    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def contains(self, lat: float, lon: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lon <= lon <= self.max_lon


@dataclass
class StoreStatistics:
    """Aggregate view over recent stored signals."""

    time_window_s: float
    total_signals: int = 0
    unique_devices: int = 0
    avg_power: float | None = None
    min_power: float | None = None
    max_power: float | None = None
    min_frequency: float | None = None
    max_frequency: float | None = None
    frequency_bands: list[float] = field(default_factory=list)  # 100 MHz bands
    relationship_count: int = 0


@dataclass
class CleanupResult:
    """Rows removed or refreshed by a retention pass."""

    signals_deleted: int = 0
    devices_deleted: int = 0
    devices_refreshed: int = 0
    relationships_deleted: int = 0
