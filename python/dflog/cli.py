"""dflog command-line tool."""

from __future__ import annotations

import argparse
import csv
import logging
import os
import sys

from .loader import LoaderOptions, LoadResult, load_file
from .series import MemorySink
from .timesync import TimeSyncConfig


def _options(args: argparse.Namespace) -> LoaderOptions:
    return LoaderOptions(
        timesync=TimeSyncConfig(leap_seconds=args.leap_seconds),
        synchronize_time=not args.no_timesync,
        apply_multipliers=not args.raw,
    )


def _load(args: argparse.Namespace) -> tuple[LoadResult, MemorySink]:
    sink = MemorySink()
    result = load_file(args.file, sink, _options(args))
    if not result.ok:
        print(f"Error: {result.error}", file=sys.stderr)
        sys.exit(1)
    return result, sink


def cmd_info(args: argparse.Namespace) -> None:
    """Print summary info about a log file."""
    result, sink = _load(args)
    stats = result.stats

    print(f"File:       {args.file}")
    print(f"Size:       {os.path.getsize(args.file):,} bytes")
    print(f"Records:    {stats.records:,} ({stats.format_records} FMT)")
    print(f"Skipped:    {stats.skipped_bytes:,} bytes, "
          f"{stats.tail_bytes} trailing, {stats.unknown_ids} unknown ids")
    if stats.rejected_formats or stats.decode_errors:
        print(f"Errors:     {stats.rejected_formats} rejected FMT, "
              f"{stats.decode_errors} decode errors")
    if result.time_offset is not None:
        print(f"Time offset: {result.time_offset:.6f} s")
    else:
        print("Time offset: (none, log time)")
    if result.skipped_messages:
        print(f"No TimeUS:  {', '.join(result.skipped_messages)}")

    print(f"\nSeries ({len(sink)}):")
    print(f"  {'Name':<32s}  {'Samples':>8s}  Unit")
    print(f"  {'-' * 32}  {'-' * 8}  {'-' * 8}")
    for name in sink.names():
        s = sink[name]
        print(f"  {name:<32s}  {len(s):8,}  {s.unit or ''}")


def cmd_formats(args: argparse.Namespace) -> None:
    """Print the message formats defined in a log file."""
    result, _ = _load(args)
    registry = result.registry
    for msg_id in sorted(registry.formats):
        fmt = registry.formats[msg_id]
        units = registry.format_units(msg_id)
        print(f"[{msg_id:3d}] {fmt.name:<4s} format={fmt.type_codes} length={fmt.length}")
        offsets = fmt.layout.offsets
        for i in range(fmt.field_count):
            unit = units.unit_char(i) if units else None
            mult = units.multiplier_char(i) if units else None
            offset = str(offsets[i]) if i < len(offsets) else "?"
            print(f"        {fmt.labels[i]:16s} type={fmt.type_codes[i]} "
                  f"offset={offset:>3s} unit={unit or '-'} mult={mult or '-'}")
        print()


def cmd_dump(args: argparse.Namespace) -> None:
    """Dump samples of selected (or all) series."""
    _, sink = _load(args)
    names = args.series or sink.names()
    for name in names:
        if name not in sink:
            print(f"Error: no series {name}", file=sys.stderr)
            continue
        for t, v in sink[name]:
            print(f"[{t:17.6f}] {name} = {v}")


def cmd_export(args: argparse.Namespace) -> None:
    """Write all series to a long-format CSV (name, timestamp, value)."""
    _, sink = _load(args)
    with open(args.output, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["series", "timestamp", "value"])
        for name in sink.names():
            for t, v in sink[name]:
                writer.writerow([name, repr(t), repr(v)])


def main() -> None:
    parser = argparse.ArgumentParser(prog="dflog", description="DataFlash log tool")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--leap-seconds", type=int, default=TimeSyncConfig.leap_seconds,
                        help="GPS-UTC leap seconds used for time sync")
    parser.add_argument("--no-timesync", action="store_true",
                        help="Keep log-local timestamps")
    parser.add_argument("--raw", action="store_true",
                        help="Do not apply FMTU multipliers")
    sub = parser.add_subparsers(dest="command")

    p_info = sub.add_parser("info", help="Show summary info about a log file")
    p_info.add_argument("file", help="Path to .bin log file")

    p_formats = sub.add_parser("formats", help="Show message formats")
    p_formats.add_argument("file", help="Path to .bin log file")

    p_dump = sub.add_parser("dump", help="Dump series samples")
    p_dump.add_argument("file", help="Path to .bin log file")
    p_dump.add_argument("--series", action="append", help="Series name, e.g. /GPS/Alt")

    p_export = sub.add_parser("export", help="Export series to CSV")
    p_export.add_argument("file", help="Path to .bin log file")
    p_export.add_argument("output", help="CSV file to write")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    if args.command == "info":
        cmd_info(args)
    elif args.command == "formats":
        cmd_formats(args)
    elif args.command == "dump":
        cmd_dump(args)
    elif args.command == "export":
        cmd_export(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
