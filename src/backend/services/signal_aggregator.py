"""
Live signal aggregation near a target frequency.

Merges repeated bins of the same emission across spectrum frames into stable
SignalDetection records. Intended for a single owner: callers sharing an
instance across tasks or threads must synchronise externally.
"""

import logging
import math

import numpy as np

from src.backend.core.exceptions import InvalidConfigError
from src.backend.models.schemas import SignalDetection, SpectrumFrame

logger = logging.getLogger(__name__)


class SignalAggregator:
    """Deduplicates spectrum bins into detections around a target frequency."""

    def __init__(
        self,
        target_frequency_mhz: float | None = None,
        tolerance_mhz: float = 1.0,
        min_power_dbm: float = -80.0,
        active_window_s: float = 10.0,
    ):
        """
        Initialize the aggregator.

        Args:
            target_frequency_mhz: Frequency of interest; None considers every bin
            tolerance_mhz: Match window around the target and between detections
            min_power_dbm: Bins weaker than this are ignored
            active_window_s: A detection only absorbs bins seen within this many
                seconds of its last observation

        Raises:
            InvalidConfigError: tolerance or window is not positive
        """
        _require_positive("tolerance_mhz", tolerance_mhz)
        _require_positive("active_window_s", active_window_s)
        self.target_frequency_mhz = target_frequency_mhz
        self.tolerance_mhz = tolerance_mhz
        self.min_power_dbm = min_power_dbm
        self.active_window_s = active_window_s

        self._detections: list[SignalDetection] = []
        self.frames_processed = 0
        self.malformed_frames = 0

    def set_target(self, frequency_mhz: float | None, tolerance_mhz: float | None = None) -> None:
        """Change the frequency of interest, flushing detections if it moved."""
        if tolerance_mhz is not None:
            _require_positive("tolerance_mhz", tolerance_mhz)
            self.tolerance_mhz = tolerance_mhz
        if frequency_mhz != self.target_frequency_mhz:
            self.flush()
            self.target_frequency_mhz = frequency_mhz

    def add_spectrum_data(self, frame: SpectrumFrame) -> None:
        """
        Fold one frame into the open detections.

        Each detection counts a frame at most once: bins of one frame that
        match the same detection merge into a single observation carrying
        the strongest power. Malformed frames are skipped.
        """
        powers = self._validated_bins(frame)
        if powers is None:
            self.malformed_frames += 1
            logger.debug("Skipping malformed spectrum frame")
            return
        self.frames_processed += 1

        width_hz = (frame.frequency_end_hz - frame.frequency_start_hz) / len(powers)
        freqs_mhz = (frame.frequency_start_hz + (np.arange(len(powers)) + 0.5) * width_hz) / 1e6

        mask = powers >= self.min_power_dbm
        if self.target_frequency_mhz is not None:
            mask &= np.abs(freqs_mhz - self.target_frequency_mhz) <= self.tolerance_mhz
        if not mask.any():
            return

        # detection index -> (power, frequency) of its strongest bin this frame
        observed: dict[int, tuple[float, float]] = {}
        for freq, power in zip(freqs_mhz[mask].tolist(), powers[mask].tolist(), strict=True):
            index = self._find_match(freq, frame.timestamp, observed)
            if index is None:
                self._detections.append(
                    SignalDetection(
                        frequency_mhz=freq,
                        power=power,
                        first_seen=frame.timestamp,
                        last_seen=frame.timestamp,
                        count=0,
                    )
                )
                index = len(self._detections) - 1
            best = observed.get(index)
            if best is None or power > best[0]:
                observed[index] = (power, freq)

        for index, (power, freq) in observed.items():
            detection = self._detections[index]
            detection.count += 1
            detection.last_seen = max(detection.last_seen, frame.timestamp)
            if detection.count == 1 or power > detection.power:
                detection.power = power
                detection.frequency_mhz = freq

    def get_aggregated_signals(
        self,
        target_frequency_mhz: float | None = None,
        tolerance_mhz: float | None = None,
    ) -> list[SignalDetection]:
        """
        Detections within ``tolerance_mhz`` of the target, in open order.

        Both arguments default to the aggregator's own target and tolerance.
        The list is not sorted by power.
        """
        target = self.target_frequency_mhz if target_frequency_mhz is None else target_frequency_mhz
        tolerance = self.tolerance_mhz if tolerance_mhz is None else tolerance_mhz
        _require_positive("tolerance_mhz", tolerance)
        if target is None:
            return list(self._detections)
        return [d for d in self._detections if abs(d.frequency_mhz - target) <= tolerance]

    def flush(self) -> list[SignalDetection]:
        """Drop every open detection and return them."""
        flushed, self._detections = self._detections, []
        if flushed:
            logger.debug(f"Flushed {len(flushed)} signal detection(s)")
        return flushed

    def get_signal_persistence(self, detection: SignalDetection) -> float:
        """Seconds between first and last observation."""
        return detection.last_seen - detection.first_seen

    def matches_target(self, detection: SignalDetection) -> bool:
        if self.target_frequency_mhz is None:
            return False
        return abs(detection.frequency_mhz - self.target_frequency_mhz) <= self.tolerance_mhz

    def _find_match(
        self, frequency_mhz: float, timestamp: float, observed: dict[int, tuple[float, float]]
    ) -> int | None:
        for index, detection in enumerate(self._detections):
            if abs(detection.frequency_mhz - frequency_mhz) > self.tolerance_mhz:
                continue
            # Detections already seen in this frame are active by definition
            if index in observed or timestamp - detection.last_seen <= self.active_window_s:
                return index
        return None

    @staticmethod
    def _validated_bins(frame: SpectrumFrame) -> np.ndarray | None:
        try:
            if not frame.bins or frame.bin_count != len(frame.bins):
                return None
            if not (math.isfinite(frame.frequency_start_hz) and math.isfinite(frame.frequency_end_hz)):
                return None
            if frame.frequency_end_hz <= frame.frequency_start_hz:
                return None
            if not math.isfinite(frame.timestamp):
                return None
            powers = np.asarray(frame.bins, dtype=float)
        except (AttributeError, TypeError, ValueError):
            return None
        if not np.all(np.isfinite(powers)):
            return None
        return powers


def _require_positive(name: str, value: float) -> None:
    if value is None or not math.isfinite(value) or value <= 0:
        raise InvalidConfigError(f"{name} must be positive, got {value}")
