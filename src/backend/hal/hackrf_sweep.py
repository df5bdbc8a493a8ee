"""
hackrf_sweep / hackrf_info command-line collaborator.

Builds sweep invocations, parses the CSV-like sweep output into
SpectrumFrame objects, classifies stderr and exit codes into error kinds and
owns subprocess tree termination.
"""

import asyncio
import logging
import math
import os
import re
import signal
import time
from collections.abc import Iterable
from dataclasses import dataclass

import psutil

from src.backend.core.exceptions import DataCorruptionError, SweepErrorKind
from src.backend.models.schemas import SpectrumFrame, SweepFrequency

logger = logging.getLogger(__name__)

MIN_FREQUENCY_MHZ = 1
MAX_FREQUENCY_MHZ = 7250
MAX_LINE_BYTES = 1024 * 1024

UNIT_SCALE_TO_MHZ = {
    "hz": 1e-6,
    "khz": 1e-3,
    "mhz": 1.0,
    "ghz": 1e3,
}

# Driver messages meaning the board cannot be reached
DEVICE_UNAVAILABLE_MARKERS = (
    "No HackRF boards found",
    "hackrf_open() failed",
    "Resource busy",
    "Permission denied",
    "libusb_open() failed",
)

# Driver messages meaning a running sweep has died
CRASH_MARKERS = (
    "USB error",
    "hackrf_is_streaming() failed",
    "hackrf_start_rx() failed",
)

_FIELD_SPLIT = re.compile(r"[,\s]+")


@dataclass
class ProbeResult:
    """Outcome of a hackrf_info probe."""

    available: bool
    error_kind: SweepErrorKind | None = None
    detail: str = ""
    serial: str | None = None


def normalize_frequency(frequency: float | int | SweepFrequency | dict) -> float | None:
    """
    Convert a requested frequency to MHz.

    Bare numbers are MHz. Returns None for unknown units and for
    non-positive or non-finite values.
    """
    if isinstance(frequency, SweepFrequency):
        value, unit = frequency.value, frequency.unit
    elif isinstance(frequency, dict):
        value, unit = frequency.get("value"), frequency.get("unit", "MHz")
    else:
        value, unit = frequency, "MHz"

    try:
        value = float(value)
    except (TypeError, ValueError):
        return None

    scale = UNIT_SCALE_TO_MHZ.get(str(unit).lower())
    if scale is None:
        logger.warning(f"Unknown frequency unit: {unit}")
        return None

    mhz = value * scale
    if not math.isfinite(mhz) or mhz <= 0:
        return None
    return mhz


def normalize_frequencies(frequencies: Iterable) -> list[float]:
    """Normalise a frequency list to MHz, dropping invalid entries."""
    normalized = []
    for frequency in frequencies:
        mhz = normalize_frequency(frequency)
        if mhz is None:
            logger.warning(f"Dropping invalid sweep frequency: {frequency!r}")
            continue
        normalized.append(mhz)
    return normalized


def sweep_range_mhz(center_mhz: float, span_mhz: float) -> tuple[int, int]:
    """Integer MHz range around ``center_mhz`` clamped to the device limits."""
    low = max(MIN_FREQUENCY_MHZ, math.floor(center_mhz - span_mhz))
    high = min(MAX_FREQUENCY_MHZ, math.ceil(center_mhz + span_mhz))
    if high <= low:
        high = min(MAX_FREQUENCY_MHZ, low + 1)
        low = high - 1
    return low, high


def build_sweep_args(
    center_mhz: float,
    span_mhz: float = 10.0,
    bin_width_hz: int = 20000,
    lna_gain: int = 32,
    vga_gain: int = 20,
    num_sweeps: int | None = None,
) -> list[str]:
    """Arguments appended to the hackrf_sweep command."""
    low, high = sweep_range_mhz(center_mhz, span_mhz)
    args = [
        "-f",
        f"{low}:{high}",
        "-g",
        str(vga_gain),
        "-l",
        str(lna_gain),
        "-w",
        str(bin_width_hz),
    ]
    if num_sweeps is not None:
        args += ["-N", str(num_sweeps)]
    return args


def parse_sweep_line(
    line: str,
    sample_rate: float = 20e6,
    target_frequency_mhz: float | None = None,
    timestamp: float | None = None,
) -> SpectrumFrame:
    """
    Parse one hackrf_sweep output record.

    Format: ``date, time, hz_low, hz_high, hz_bin_width, num_samples, dB, dB, ...``

    Raises:
        DataCorruptionError: record is truncated or not numeric
    """
    if len(line) > MAX_LINE_BYTES:
        raise DataCorruptionError("Sweep record exceeds line buffer", {"length": len(line)})

    parts = [p for p in _FIELD_SPLIT.split(line.strip()) if p]
    if len(parts) < 7:
        raise DataCorruptionError("Truncated sweep record", {"fields": len(parts)})

    try:
        freq_low = float(parts[2])
        freq_high = float(parts[3])
        bins = tuple(float(p) for p in parts[6:])
    except ValueError as e:
        raise DataCorruptionError(f"Non-numeric sweep field: {e}", {"line": line[:120]}) from e

    if not (math.isfinite(freq_low) and math.isfinite(freq_high)) or freq_high <= freq_low:
        raise DataCorruptionError(
            "Invalid sweep frequency range", {"low": freq_low, "high": freq_high}
        )

    return SpectrumFrame(
        frequency_start_hz=freq_low,
        frequency_end_hz=freq_high,
        bin_count=len(bins),
        bins=bins,
        sample_rate=sample_rate,
        timestamp=time.time() if timestamp is None else timestamp,
        target_frequency_mhz=target_frequency_mhz,
    )


def signal_strength_category(power_db: float) -> str:
    if power_db < -90:
        return "No Signal"
    if power_db < -70:
        return "Very Weak"
    if power_db < -50:
        return "Weak"
    if power_db < -30:
        return "Moderate"
    if power_db < -10:
        return "Strong"
    return "Very Strong"


def classify_stderr(text: str) -> SweepErrorKind | None:
    """Error kind implied by driver output, or None for benign output."""
    if any(marker in text for marker in DEVICE_UNAVAILABLE_MARKERS):
        return SweepErrorKind.DEVICE_UNAVAILABLE
    if any(marker in text for marker in CRASH_MARKERS):
        return SweepErrorKind.SUBPROCESS_CRASH
    return None


def classify_exit(returncode: int | None, stderr_text: str = "") -> tuple[SweepErrorKind | None, str]:
    """
    Map a sweep process exit to an error kind and description.

    Returns (None, "clean exit") for a zero exit code.
    """
    if returncode == 0:
        return None, "clean exit"
    if returncode == 124:
        return SweepErrorKind.TIMEOUT, "process timed out"
    if returncode in (137, -signal.SIGKILL):
        return SweepErrorKind.SUBPROCESS_CRASH, "process killed, likely out of memory"
    if returncode in (139, -signal.SIGSEGV):
        return SweepErrorKind.SUBPROCESS_CRASH, "segmentation fault in sweep driver"

    stderr_kind = classify_stderr(stderr_text)
    if stderr_kind is not None:
        return stderr_kind, stderr_text.strip().splitlines()[-1] if stderr_text.strip() else ""
    if returncode == 1:
        return SweepErrorKind.SUBPROCESS_CRASH, "general device error"
    return SweepErrorKind.SUBPROCESS_CRASH, f"process exited with code {returncode}"


async def terminate_process_tree(
    process: asyncio.subprocess.Process, grace_s: float = 2.0
) -> int | None:
    """
    Stop a process started with ``start_new_session=True`` and every descendant.

    SIGTERM to the process group, wait up to ``grace_s``, then SIGKILL.
    Descendants found through psutil are killed as well so nothing is orphaned.

    Returns:
        The process return code
    """
    descendants: list[psutil.Process] = []
    if process.returncode is None:
        try:
            descendants = psutil.Process(process.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            descendants = []

        sig = signal.SIGTERM if grace_s > 0 else signal.SIGKILL
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            process.send_signal(sig)

        try:
            await asyncio.wait_for(process.wait(), timeout=grace_s if grace_s > 0 else 1.0)
        except TimeoutError:
            logger.warning(f"Process {process.pid} ignored SIGTERM, sending SIGKILL")
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            except PermissionError:
                process.kill()
            await process.wait()

    for child in descendants:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            continue
    if descendants:
        psutil.wait_procs(descendants, timeout=1.0)

    return process.returncode


def kill_stray_processes(names: Iterable[str]) -> int:
    """Kill leftover sweep processes by exact name. Returns the number killed."""
    wanted = set(names)
    if not wanted:
        return 0

    own_pid = os.getpid()
    killed = []
    for proc in psutil.process_iter(["pid", "name"]):
        if proc.info["pid"] == own_pid or proc.info["name"] not in wanted:
            continue
        try:
            proc.kill()
            killed.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug(f"Could not kill stray process {proc.info['pid']}: {e}")
    if killed:
        psutil.wait_procs(killed, timeout=1.0)
        logger.warning(f"Killed {len(killed)} stray sweep process(es)")
    return len(killed)


async def probe_device(info_command: list[str], timeout_s: float = 3.0) -> ProbeResult:
    """Run hackrf_info with a hard timeout and classify the board state."""
    try:
        process = await asyncio.create_subprocess_exec(
            *info_command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except (FileNotFoundError, PermissionError) as e:
        return ProbeResult(False, SweepErrorKind.DEVICE_UNAVAILABLE, f"{info_command[0]}: {e}")

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_s)
    except TimeoutError:
        await terminate_process_tree(process, grace_s=0)
        return ProbeResult(False, SweepErrorKind.TIMEOUT, f"device probe timed out after {timeout_s}s")

    output = stdout.decode(errors="replace") + stderr.decode(errors="replace")
    if "Serial number" in output:
        match = re.search(r"Serial number:\s*(\S+)", output)
        return ProbeResult(True, detail="device available", serial=match.group(1) if match else None)
    if "Resource busy" in output:
        return ProbeResult(False, SweepErrorKind.DEVICE_UNAVAILABLE, "device busy")
    if "No HackRF boards found" in output:
        return ProbeResult(False, SweepErrorKind.DEVICE_UNAVAILABLE, "no device found")

    kind = classify_stderr(output) or SweepErrorKind.DEVICE_UNAVAILABLE
    return ProbeResult(False, kind, output.strip()[:200] or f"probe exited with {process.returncode}")
