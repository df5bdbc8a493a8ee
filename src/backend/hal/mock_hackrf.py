"""
Mock hackrf_sweep / hackrf_info for development and tests without hardware.

Runs as a script (``python mock_hackrf.py sweep -f 423:444 ...``) and mimics
the output format and failure modes of the real tools. It only imports the
standard library and numpy so it can be launched by file path.
"""

import argparse
import os
import signal
import sys
import time
from datetime import datetime
from pathlib import Path

import numpy as np

SEGMENT_HZ = 5_000_000
MAX_BINS_PER_LINE = 256


def mock_command(tool: str, *extra: str) -> list[str]:
    """Argv prefix that runs this module as ``tool`` ("sweep" or "info")."""
    return [sys.executable, str(Path(__file__).resolve()), tool, *extra]


def _sweep_lines(low_mhz: int, high_mhz: int, bin_width: int, rng: np.random.Generator):
    """Yield one sweep worth of hackrf_sweep records."""
    emitter_hz = (low_mhz + high_mhz) / 2 * 1e6
    now = datetime.now()
    date = now.strftime("%Y-%m-%d")
    clock = now.strftime("%H:%M:%S.%f")
    start = low_mhz * 1_000_000
    stop = high_mhz * 1_000_000
    while start < stop:
        end = min(start + SEGMENT_HZ, stop)
        bin_count = max(1, min(MAX_BINS_PER_LINE, int((end - start) // bin_width)))
        width = (end - start) / bin_count
        powers = rng.normal(-85.0, 3.0, bin_count)
        if start <= emitter_hz < end:
            powers[int((emitter_hz - start) // width)] = -40.0 + rng.normal(0.0, 1.0)
        values = ", ".join(f"{p:.2f}" for p in powers)
        yield f"{date}, {clock}, {start}, {end}, {width:.2f}, {bin_count * 2}, {values}"
        start = end


def run_sweep(args: argparse.Namespace) -> int:
    if args.no_device:
        print("hackrf_open() failed: HACKRF_ERROR_NOT_FOUND (-5)", file=sys.stderr)
        print("No HackRF boards found.", file=sys.stderr, flush=True)
        return 1
    if args.busy:
        print("hackrf_open() failed: Resource busy (-1000)", file=sys.stderr, flush=True)
        return 1

    if args.startup_delay:
        time.sleep(args.startup_delay)
    if args.hang:
        while True:
            time.sleep(1.0)

    low, high = (int(float(v)) for v in args.freq_range.split(":"))
    rng = np.random.default_rng()
    print("call hackrf_set_sample_rate(20000000 Hz/20.000 MHz)", file=sys.stderr)
    print(f"Sweeping from {low} MHz to {high} MHz", file=sys.stderr, flush=True)

    lines_written = 0
    sweeps = 0
    while args.num_sweeps is None or sweeps < args.num_sweeps:
        for line in _sweep_lines(low, high, args.bin_width, rng):
            print(line, flush=True)
            lines_written += 1
            if args.garbage_every and lines_written % args.garbage_every == 0:
                print("corrupted,,record", flush=True)
            if args.crash_after is not None and lines_written >= args.crash_after:
                print("USB error: LIBUSB_ERROR_IO", file=sys.stderr, flush=True)
                if args.crash_code < 0:
                    os.kill(os.getpid(), -args.crash_code)
                os._exit(args.crash_code)
        sweeps += 1
        time.sleep(args.interval)
    return 0


def run_info(args: argparse.Namespace) -> int:
    print("hackrf_info version: mock")
    print("libhackrf version: mock (0.8)")
    if args.no_device:
        print("No HackRF boards found.", flush=True)
        return 1
    if args.busy:
        print("hackrf_open() failed: Resource busy (-1000)", file=sys.stderr, flush=True)
        return 1
    if args.hang:
        while True:
            time.sleep(1.0)
    print("Found HackRF")
    print("Index: 0")
    print("Serial number: 0000000000000000a06063c8234e925f")
    print("Board ID Number: 2 (HackRF One)")
    print("Firmware Version: mock (API:1.08)", flush=True)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mock HackRF command-line tools")
    sub = parser.add_subparsers(dest="tool", required=True)

    for name in ("sweep", "info"):
        tool = sub.add_parser(name)
        tool.add_argument("--no-device", action="store_true")
        tool.add_argument("--busy", action="store_true")
        tool.add_argument("--hang", action="store_true")

    sweep = sub.choices["sweep"]
    sweep.add_argument("-f", dest="freq_range", default="2400:2420")
    sweep.add_argument("-g", dest="vga_gain", type=int, default=20)
    sweep.add_argument("-l", dest="lna_gain", type=int, default=32)
    sweep.add_argument("-w", dest="bin_width", type=int, default=1_000_000)
    sweep.add_argument("-N", dest="num_sweeps", type=int, default=None)
    sweep.add_argument("--interval", type=float, default=0.05)
    sweep.add_argument("--startup-delay", type=float, default=0.0)
    sweep.add_argument("--crash-after", type=int, default=None)
    sweep.add_argument("--crash-code", type=int, default=139)
    sweep.add_argument("--garbage-every", type=int, default=0)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))
    try:
        if args.tool == "sweep":
            return run_sweep(args)
        return run_info(args)
    except BrokenPipeError:
        return 0


if __name__ == "__main__":
    sys.exit(main())
