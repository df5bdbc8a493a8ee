"""
Unit tests for the hackrf_sweep command-line helpers.
"""

import signal

import pytest

from src.backend.core.exceptions import DataCorruptionError, SweepErrorKind
from src.backend.hal.hackrf_sweep import (
    MAX_LINE_BYTES,
    build_sweep_args,
    classify_exit,
    classify_stderr,
    normalize_frequencies,
    normalize_frequency,
    parse_sweep_line,
    probe_device,
    signal_strength_category,
    sweep_range_mhz,
)
from src.backend.hal.mock_hackrf import mock_command
from src.backend.models.schemas import SweepFrequency

SAMPLE_LINE = (
    "2024-01-15, 12:30:45.123456, 2400000000, 2405000000, 1000000.00, 20, "
    "-70.5, -65.2, -40.1, -68.0, -72.3"
)


class TestParseSweepLine:
    """Test sweep output parsing."""

    def test_parses_record(self):
        frame = parse_sweep_line(SAMPLE_LINE, target_frequency_mhz=2402.0, timestamp=10.0)

        assert frame.frequency_start_hz == 2400000000
        assert frame.frequency_end_hz == 2405000000
        assert frame.bin_count == 5
        assert frame.bins == (-70.5, -65.2, -40.1, -68.0, -72.3)
        assert frame.timestamp == 10.0
        assert frame.target_frequency_mhz == 2402.0
        assert frame.bin_width_hz == 1_000_000

    def test_peak(self):
        frame = parse_sweep_line(SAMPLE_LINE)
        frequency, power = frame.peak()
        assert frequency == pytest.approx(2402.5)
        assert power == -40.1

    @pytest.mark.parametrize(
        "line",
        [
            "",
            "2024-01-15, 12:30:45, 2400000000, 2405000000, 1000000.00, 20",
            "2024-01-15, 12:30:45, abc, 2405000000, 1000000.00, 20, -70.0",
            "2024-01-15, 12:30:45, 2405000000, 2400000000, 1000000.00, 20, -70.0",
            "2024-01-15, 12:30:45, 2400000000, 2405000000, 1000000.00, 20, -70.0, oops",
            "corrupted,,record",
        ],
    )
    def test_corrupt_records_raise(self, line):
        with pytest.raises(DataCorruptionError):
            parse_sweep_line(line)

    def test_oversized_record_raises(self):
        with pytest.raises(DataCorruptionError):
            parse_sweep_line("x" * (MAX_LINE_BYTES + 1))


class TestFrequencies:
    """Test frequency normalisation and sweep arguments."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (2450, 2450.0),
            (2450.5, 2450.5),
            (SweepFrequency(2.45, "GHz"), 2450.0),
            ({"value": 433920, "unit": "kHz"}, 433.92),
            ({"value": 915000000, "unit": "Hz"}, 915.0),
            ({"value": 100}, 100.0),
        ],
    )
    def test_normalize(self, value, expected):
        assert normalize_frequency(value) == pytest.approx(expected)

    @pytest.mark.parametrize(
        "value",
        [0, -5, float("nan"), "abc", {"value": 10, "unit": "furlong"}, {"unit": "MHz"}],
    )
    def test_normalize_rejects(self, value):
        assert normalize_frequency(value) is None

    def test_normalize_list_drops_invalid(self):
        assert normalize_frequencies([2450, -1, {"value": 1, "unit": "GHz"}]) == [2450.0, 1000.0]

    def test_sweep_range(self):
        assert sweep_range_mhz(2450.0, 10.0) == (2440, 2460)
        assert sweep_range_mhz(2450.5, 5.0) == (2445, 2456)

    def test_sweep_range_clamped(self):
        assert sweep_range_mhz(3.0, 10.0) == (1, 13)
        assert sweep_range_mhz(7245.0, 10.0) == (7235, 7250)

    def test_build_args(self):
        assert build_sweep_args(2450.0, span_mhz=5, bin_width_hz=1000000, lna_gain=16, vga_gain=8) == [
            "-f",
            "2445:2455",
            "-g",
            "8",
            "-l",
            "16",
            "-w",
            "1000000",
        ]

    def test_build_args_single_sweep(self):
        assert build_sweep_args(2450.0, num_sweeps=1)[-2:] == ["-N", "1"]


class TestClassification:
    """Test stderr and exit code classification."""

    @pytest.mark.parametrize(
        "text,kind",
        [
            ("No HackRF boards found.", SweepErrorKind.DEVICE_UNAVAILABLE),
            ("hackrf_open() failed: Resource busy (-1000)", SweepErrorKind.DEVICE_UNAVAILABLE),
            ("USB error: LIBUSB_ERROR_IO", SweepErrorKind.SUBPROCESS_CRASH),
            ("Sweeping from 2440 MHz to 2460 MHz", None),
        ],
    )
    def test_stderr(self, text, kind):
        assert classify_stderr(text) == kind

    @pytest.mark.parametrize(
        "code,kind",
        [
            (0, None),
            (124, SweepErrorKind.TIMEOUT),
            (137, SweepErrorKind.SUBPROCESS_CRASH),
            (-signal.SIGKILL, SweepErrorKind.SUBPROCESS_CRASH),
            (139, SweepErrorKind.SUBPROCESS_CRASH),
            (-signal.SIGSEGV, SweepErrorKind.SUBPROCESS_CRASH),
            (1, SweepErrorKind.SUBPROCESS_CRASH),
            (42, SweepErrorKind.SUBPROCESS_CRASH),
        ],
    )
    def test_exit_codes(self, code, kind):
        assert classify_exit(code)[0] == kind

    def test_exit_uses_stderr_hint(self):
        kind, detail = classify_exit(1, "call hackrf_open\nNo HackRF boards found.")
        assert kind == SweepErrorKind.DEVICE_UNAVAILABLE
        assert detail == "No HackRF boards found."

    @pytest.mark.parametrize(
        "power,category",
        [(-95, "No Signal"), (-75, "Very Weak"), (-55, "Weak"), (-35, "Moderate"), (-15, "Strong"), (-5, "Very Strong")],
    )
    def test_signal_strength_category(self, power, category):
        assert signal_strength_category(power) == category


class TestProbeDevice:
    """Test hackrf_info probing against the simulated device."""

    async def test_available(self):
        result = await probe_device(mock_command("info"), timeout_s=10.0)
        assert result.available
        assert result.serial == "0000000000000000a06063c8234e925f"

    async def test_no_device(self):
        result = await probe_device(mock_command("info", "--no-device"), timeout_s=10.0)
        assert not result.available
        assert result.error_kind == SweepErrorKind.DEVICE_UNAVAILABLE
        assert result.detail == "no device found"

    async def test_busy(self):
        result = await probe_device(mock_command("info", "--busy"), timeout_s=10.0)
        assert result.error_kind == SweepErrorKind.DEVICE_UNAVAILABLE
        assert result.detail == "device busy"

    async def test_timeout(self):
        result = await probe_device(mock_command("info", "--hang"), timeout_s=0.5)
        assert result.error_kind == SweepErrorKind.TIMEOUT

    async def test_missing_binary(self):
        result = await probe_device(["/nonexistent/hackrf_info"], timeout_s=1.0)
        assert result.error_kind == SweepErrorKind.DEVICE_UNAVAILABLE
