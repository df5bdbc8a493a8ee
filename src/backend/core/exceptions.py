"""
Custom exception classes for the ARGOS system.

Every error surfaced by the sweep supervisor, the aggregator or the spatial
store derives from ArgosException so callers can catch the whole family.
"""

from enum import Enum


class SweepErrorKind(str, Enum):
    """Error classification carried on ``error`` events and health results."""

    DEVICE_UNAVAILABLE = "device_unavailable"
    SUBPROCESS_CRASH = "subprocess_crash"
    TIMEOUT = "timeout"
    INVALID_CONFIG = "invalid_config"
    DATA_CORRUPTION = "data_corruption"
    STORE_IO = "store_io"


class ArgosException(Exception):
    """Base exception for all ARGOS custom exceptions."""

    kind: SweepErrorKind | None = None

    def __init__(self, message: str = "", details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class HardwareError(ArgosException):
    """Exception raised for sweep hardware errors."""

    pass


class DeviceUnavailableError(HardwareError):
    """Sweep device absent, busy or not accessible."""

    kind = SweepErrorKind.DEVICE_UNAVAILABLE


class SubprocessCrashError(HardwareError):
    """Sweep subprocess died or reported a fatal driver error."""

    kind = SweepErrorKind.SUBPROCESS_CRASH


class SweepTimeoutError(HardwareError):
    """A bounded hardware operation did not finish in time."""

    kind = SweepErrorKind.TIMEOUT


class InvalidConfigError(ArgosException, ValueError):
    """Exception raised for invalid sweep or aggregation parameters."""

    kind = SweepErrorKind.INVALID_CONFIG


class DataCorruptionError(ArgosException):
    """Exception raised when a sweep output record cannot be parsed."""

    kind = SweepErrorKind.DATA_CORRUPTION


class StoreIOError(ArgosException):
    """Exception raised when the signal store fails to read or write."""

    kind = SweepErrorKind.STORE_IO


class ConfigurationError(ArgosException):
    """Exception raised for configuration errors."""

    pass


class StateTransitionError(ArgosException):
    """Exception raised for invalid state transitions."""

    pass


HARDWARE_ERRORS: dict[SweepErrorKind, type[HardwareError]] = {
    SweepErrorKind.DEVICE_UNAVAILABLE: DeviceUnavailableError,
    SweepErrorKind.SUBPROCESS_CRASH: SubprocessCrashError,
    SweepErrorKind.TIMEOUT: SweepTimeoutError,
}


def hardware_error(
    kind: SweepErrorKind, message: str, details: dict | None = None
) -> HardwareError:
    """Build the HardwareError subclass for a classified sweep failure."""
    return HARDWARE_ERRORS.get(kind, SubprocessCrashError)(message, details)
