"""
Scooter Telemetry - Command Line Entry Point

Offline decoding and field scanning of hex captures, live BLE sessions
and active request sweeps.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from .communication.aggregator import TelemetryAggregator
from .communication.ble_transport import BleTransport
from .communication.calibration import (
    CalibrationError,
    DEFAULT_PROFILE,
    DeviceProfile,
    available_profiles,
    get_profile,
    load_profile,
    save_profile,
)
from .communication.decoder import TelemetryDecoder
from .communication.frames import EXTENDED_FRAME_SIZE, MAIN_FRAME_SIZE, FrameKind, RawFrame
from .communication.telemetry import TelemetrySnapshot
from .communication.transport_base import TransportError
from .controllers.session import TelemetrySession
from .diagnostics.command_scanner import CommandScanner, SweepPhase, build_sweep
from .diagnostics.context import DiagnosticContext
from .diagnostics.scanner import CalibrationTarget, scan_many, suggest_layout
from .utils.logger import setup_logger

logger = logging.getLogger(__name__)

LAYOUT_KINDS = {
    MAIN_FRAME_SIZE: FrameKind.MAIN_TELEMETRY_8,
    EXTENDED_FRAME_SIZE: FrameKind.EXTENDED_TELEMETRY_16,
}


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="scooter-telemetry",
        description="Scooter BLE telemetry decoder and field scanner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s decode capture.txt                       # Decode a hex capture
  %(prog)s decode capture.txt --profile m0robot-legacy
  %(prog)s scan capture.txt --odometer 1234 --battery 87 --frame-size 16
  %(prog)s discover                                 # List BLE devices
  %(prog)s live AA:BB:CC:DD:EE:FF --duration 60     # Live session
  %(prog)s sweep AA:BB:CC:DD:EE:FF --phase subopcode  # Find answered requests
"""
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--log-dir", type=Path, metavar="DIR", help="Log directory")

    subparsers = parser.add_subparsers(dest="command", required=True)

    decode = subparsers.add_parser("decode", help="Decode a hex capture file")
    decode.add_argument("file", type=Path, help="Capture file, one frame per line")
    _add_profile_args(decode)

    scan = subparsers.add_parser("scan", help="Search captured frames for known values")
    scan.add_argument("file", type=Path, help="Capture file, one frame per line")
    scan.add_argument("--odometer", type=float, metavar="KM", help="Odometer reading")
    scan.add_argument("--battery", type=float, metavar="PCT", help="Battery percentage")
    scan.add_argument("--voltage", type=float, metavar="V", help="Battery voltage")
    scan.add_argument("--temperature", type=float, metavar="C", help="Controller temperature")
    scan.add_argument("--speed", type=float, metavar="KMH", help="Speed")
    scan.add_argument("--ride-minutes", type=int, metavar="MIN", help="Total ride time")
    scan.add_argument("--frame-size", type=int, metavar="N", help="Only scan frames of this length")
    scan.add_argument("--save-profile", type=Path, metavar="PATH",
                      help="Save a profile with the stable offsets (needs --frame-size 8 or 16)")

    live = subparsers.add_parser("live", help="Run a live BLE telemetry session")
    live.add_argument("address", help="Device address")
    live.add_argument("--duration", type=float, metavar="SEC", help="Stop after this many seconds")
    _add_profile_args(live)

    sweep = subparsers.add_parser("sweep", help="Send a request sweep and list which requests were answered")
    sweep.add_argument("address", help="Device address")
    sweep.add_argument("--phase", action="append", choices=[p.value for p in SweepPhase],
                       help="Phase to run (repeatable, default: all)")
    sweep.add_argument("--interval", type=float, metavar="SEC",
                       help="Wait after each request (default: polling interval)")

    discover = subparsers.add_parser("discover", help="List nearby BLE devices")
    discover.add_argument("--timeout", type=float, default=5.0, metavar="SEC", help="Scan duration")

    return parser.parse_args(argv)


def _add_profile_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--profile", default=DEFAULT_PROFILE.name, choices=available_profiles(),
                       help="Built-in calibration profile")
    group.add_argument("--profile-file", type=Path, metavar="PATH", help="Calibration profile JSON file")


def _resolve_profile(args) -> DeviceProfile:
    if getattr(args, "profile_file", None):
        return load_profile(args.profile_file)
    return get_profile(args.profile)


def read_capture(path: Path) -> list[RawFrame]:
    """
    Read a hex capture file.

    Blank lines and lines starting with '#' are skipped; lines that are
    not valid hex are logged and skipped.
    """
    frames = []
    with open(path, "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            text = line.strip()
            if not text or text.startswith("#"):
                continue
            try:
                frames.append(RawFrame.from_hex(text, received_at=float(line_number)))
            except ValueError as e:
                logger.warning(f"{path}:{line_number}: skipped ({e})")
    return frames


def format_snapshot(snapshot: TelemetrySnapshot) -> str:
    """Multi-line text rendering of a snapshot."""
    lines = [
        f"Speed:          {snapshot.speed:.1f} km/h",
        f"Battery:        {snapshot.battery_percent:.0f} %  {snapshot.voltage:.1f} V  "
        f"{snapshot.current:.2f} A  {snapshot.power:.0f} W",
        f"Temperature:    {snapshot.temperature:.0f} C (battery {snapshot.battery_temperature:.0f} C)",
        f"Odometer:       {snapshot.odometer_km:.1f} km (trip {snapshot.trip_distance_km:.1f} km)",
        f"Ride time:      {snapshot.ride_time_str}",
        f"Connected:      {'yes' if snapshot.is_connected else 'no'}",
    ]
    if snapshot.has_errors:
        lines.append("Errors:         " + "; ".join(snapshot.get_error_descriptions()))
    return "\n".join(lines)


# ============================================================================
# Commands
# ============================================================================

def cmd_decode(args) -> int:
    profile = _resolve_profile(args)
    frames = read_capture(args.file)

    diagnostics = DiagnosticContext(max_frames=max(len(frames), 1))
    decoder = TelemetryDecoder(profile, diagnostics)
    aggregator = TelemetryAggregator(diagnostics=diagnostics)

    print(f"Profile: {profile.name}")
    for frame in frames:
        diagnostics.record_frame(frame.data, frame.kind, frame.received_at)
        kind, update = decoder.decode_frame(frame)
        changed = aggregator.apply(update) if not update.is_empty else False
        fields = ", ".join(f"{u.field.value}={u.value}" for u in update) or "-"
        print(f"{kind.value:<22} {frame.hex:<48} {fields}{' *' if changed else ''}")

    print()
    print(format_snapshot(aggregator.snapshot))
    print()
    print(diagnostics.report().format())
    return 0


def cmd_scan(args) -> int:
    target = CalibrationTarget(
        odometer_km=args.odometer,
        battery_percent=args.battery,
        voltage=args.voltage,
        temperature=args.temperature,
        speed=args.speed,
        total_ride_minutes=args.ride_minutes,
    )
    if not target.probes():
        print("At least one reference value is required", file=sys.stderr)
        return 2
    if args.save_profile and args.frame_size not in LAYOUT_KINDS:
        print("--save-profile needs --frame-size 8 or 16", file=sys.stderr)
        return 2

    report = scan_many(read_capture(args.file), target, frame_size=args.frame_size)

    sizes = ", ".join(f"{size}B x{count}" for size, count in sorted(report.frame_sizes.items()))
    print(f"Frames scanned: {report.frame_count} ({sizes or 'none'})")
    for telemetry_field, tallies in report.tallies.items():
        ranked = ", ".join(
            f"@{t.offset}/{t.width}B {t.hits} hits ({t.exact_hits} exact)" for t in tallies[:3]
        )
        print(f"  {telemetry_field.value:<16} {ranked or 'no match'}")
    for recommendation in report.recommendations:
        print(f"- {recommendation}")

    if args.save_profile:
        layout = suggest_layout(report)
        if not layout.fields:
            print("No stable offset found, profile not saved", file=sys.stderr)
            return 1
        profile = DEFAULT_PROFILE.with_frame_layout(
            LAYOUT_KINDS[args.frame_size], layout, name=args.save_profile.stem
        )
        save_profile(profile, args.save_profile)
        print(f"Profile saved: {args.save_profile}")
    return 0


async def _run_live(args) -> int:
    profile = _resolve_profile(args)
    session = TelemetrySession(BleTransport(), profile=profile)
    session.add_update_callback(
        lambda s: print(f"{s.speed:5.1f} km/h  {s.battery_percent:3.0f} %  {s.voltage:5.1f} V  "
                        f"{s.temperature:3.0f} C  {s.odometer_km:8.1f} km")
    )

    if not await session.connect(args.address):
        print(f"Could not connect to {args.address}", file=sys.stderr)
        return 1

    try:
        if args.duration:
            await asyncio.sleep(args.duration)
        else:
            while session.is_active:
                await asyncio.sleep(1.0)
    finally:
        await session.stop()

    print()
    print(format_snapshot(session.snapshot))
    print()
    print(session.report().format())
    return 0


async def _run_sweep(args) -> int:
    transport = BleTransport()
    scanner = CommandScanner(transport.send, response_window=args.interval, diagnostics=DiagnosticContext())
    transport.set_data_callback(scanner.on_frame)
    phases = [SweepPhase(p) for p in args.phase] if args.phase else None

    try:
        await transport.connect(args.address)
    except TransportError as e:
        print(f"Could not connect to {args.address}: {e}", file=sys.stderr)
        return 1

    try:
        report = await scanner.run(build_sweep(phases))
    finally:
        await transport.disconnect()

    print(report.format())
    return 0 if report.answered else 1


async def _run_discover(args) -> int:
    devices = await BleTransport.discover(timeout=args.timeout)
    if not devices:
        print("No devices found")
        return 1
    for device in devices:
        rssi = f"{device.rssi} dBm" if device.rssi is not None else "-"
        marker = " *" if device.is_scooter else ""
        print(f"{device.address}  {rssi:>8}  {device.name or '(unnamed)'}{marker}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main application entry point."""
    args = parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    setup_logger(log_level, log_dir=args.log_dir)

    try:
        if args.command == "decode":
            return cmd_decode(args)
        if args.command == "scan":
            return cmd_scan(args)
        if args.command == "live":
            return asyncio.run(_run_live(args))
        if args.command == "discover":
            return asyncio.run(_run_discover(args))
        if args.command == "sweep":
            return asyncio.run(_run_sweep(args))
    except CalibrationError as e:
        print(f"Calibration error: {e}", file=sys.stderr)
        return 2
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    return 2


if __name__ == "__main__":
    sys.exit(main())
