#!/usr/bin/env python3
"""aonui: fetch GFS wind data and arrange it in the order Tawhiri expects.

Commands:
    sync     fetch wind data from the GFS servers
    extract  extract binary data from a GRIB2 message into Tawhiri order
    info     print information on GRIB2 files
    inv      filter and sort GRIB2 inventories into Tawhiri order
    reorder  re-order a GRIB2 file into Tawhiri order

Run "aonui help tawhiri" for a description of Tawhiri order.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Callable, List

from aonui_logging import configure_logging
from gfs_errors import AonuiError
from gfs_sources import GFS_HALF_DEGREE, GFS_QUARTER_DEGREE
from inventory import format_inventory
from reorder import extract_binary, ordered_inventory, read_run_info, reorder_composite
from sync_pipeline import DEFAULT_MAX_RUNS, sync_source

LOGGER = logging.getLogger("aonui.cli")

TAWHIRI_HELP = """\
The Tawhiri predictor treats the wind data as a large five-dimensional array of
floating point values in a particular order.

The data should be ordered into a C-style array with dimensions forecast hour,
pressure, parameter, latitude and longitude. "C-style" here meaning that
adjacent records in the file correspond to changes in longitude.

Longitudes are ordered West-to-East and latitudes are ordered South-to-North.
Parameters are in the order HGT, UGRD, VGRD. Pressures are in decreasing
numerical order. (This is so that the first pressure corresponds to the lowest
geo-potential height.) Forecast hours are in increasing numerical order.
"""

HELP_TOPICS = {"tawhiri": TAWHIRI_HELP}

_CLEANUP_FUNCS: List[Callable[[], None]] = []
_CLEANUP_GUARD = threading.Lock()


def register_cleanup(func: Callable[[], None]) -> None:
    with _CLEANUP_GUARD:
        _CLEANUP_FUNCS.append(func)


def run_cleanup() -> None:
    with _CLEANUP_GUARD:
        funcs = list(_CLEANUP_FUNCS)
        _CLEANUP_FUNCS.clear()
    for func in funcs:
        try:
            func()
        except OSError as exc:
            LOGGER.warning("Cleanup failed error=%s", exc)


def _handle_signal(signum, frame) -> None:
    LOGGER.warning("Captured %s, cleaning up", signal.Signals(signum).name)
    run_cleanup()
    logging.shutdown()
    # In-flight downloads are abandoned; process exit releases their sockets.
    os._exit(128 + signum)


def install_signal_handlers() -> None:
    signal.signal(signal.SIGINT, _handle_signal)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handle_signal)


def cmd_sync(args: argparse.Namespace) -> int:
    source = GFS_QUARTER_DEGREE if args.highres else GFS_HALF_DEGREE
    base_dir = Path(args.basedir)
    try:
        path = sync_source(source, base_dir, max_runs=args.maxruns, register_cleanup=register_cleanup)
    except AonuiError as exc:
        LOGGER.error("%s", exc)
        return 1
    LOGGER.info("Synced %s", path)
    return 0


def cmd_reorder(args: argparse.Namespace) -> int:
    try:
        reorder_composite(args.ingrib, args.outgrib)
    except (AonuiError, OSError) as exc:
        LOGGER.error("error: %s", exc)
        return 1
    return 0


def cmd_extract(args: argparse.Namespace) -> int:
    try:
        extract_binary(args.ingrib, args.outbin, tmp_dir=args.tmpdir or None, register_cleanup=register_cleanup)
    except FileExistsError as exc:
        LOGGER.error("%s", exc)
        return 1
    except (AonuiError, OSError) as exc:
        LOGGER.error("error: %s", exc)
        return 1
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    try:
        info = read_run_info(args.gribfile)
    except (AonuiError, OSError) as exc:
        LOGGER.error("error: %s", exc)
        return 1
    if args.json:
        print(json.dumps(info.to_json_dict()))
    else:
        for line in info.to_lines():
            print(line)
    return 0


def cmd_inv(args: argparse.Namespace) -> int:
    try:
        items = ordered_inventory(args.gribfile, sort=not args.nosort, filter_invalid=not args.nofilter)
    except (AonuiError, OSError) as exc:
        LOGGER.error("error: failed to parse grib2: %s", exc)
        return 1
    for line in format_inventory(items):
        print(line)
    return 0


def cmd_help(args: argparse.Namespace) -> int:
    if not args.topic:
        print(__doc__)
        return 0
    text = HELP_TOPICS.get(args.topic)
    if text is None:
        print(f"Unknown help topic {args.topic!r}. Run 'aonui help'.", file=sys.stderr)
        return 2
    print(text)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aonui", description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    sub = parser.add_subparsers(dest="command", required=True)

    p_sync = sub.add_parser(
        "sync",
        help="fetch wind data from the GFS",
        description=(
            "Fetch the pressure-level wind and height records of the newest complete GFS run "
            "into BASEDIR/gfs.YYYYMMDDHH.grib2. Records are written in download order; "
            "use reorder or extract to obtain Tawhiri order."
        ),
    )
    p_sync.add_argument("--basedir", default=".", help="directory to download data to")
    p_sync.add_argument("--highres", action="store_true", help="download 0.25deg data as opposed to 0.5deg")
    p_sync.add_argument(
        "--maxruns",
        type=int,
        default=DEFAULT_MAX_RUNS,
        help="maximum number of runs to examine before giving up",
    )
    p_sync.set_defaults(func=cmd_sync)

    p_extract = sub.add_parser("extract", help="extract binary data from a GRIB2 message into Tawhiri order")
    p_extract.add_argument("--tmpdir", default="", help="directory to store temporary files in")
    p_extract.add_argument("ingrib")
    p_extract.add_argument("outbin")
    p_extract.set_defaults(func=cmd_extract)

    p_info = sub.add_parser("info", help="print information on GRIB2 files")
    p_info.add_argument("--json", action="store_true", help="dump information in JSON format")
    p_info.add_argument("gribfile")
    p_info.set_defaults(func=cmd_info)

    p_inv = sub.add_parser("inv", help="filter and sort GRIB2 inventories into Tawhiri order")
    p_inv.add_argument("--nosort", action="store_true", help='do not sort inventory into "Tawhiri order"')
    p_inv.add_argument("--nofilter", action="store_true", help="do not remove non-Tawhiri items")
    p_inv.add_argument("gribfile")
    p_inv.set_defaults(func=cmd_inv)

    p_reorder = sub.add_parser("reorder", help="re-order a GRIB2 file into Tawhiri order")
    p_reorder.add_argument("ingrib")
    p_reorder.add_argument("outgrib")
    p_reorder.set_defaults(func=cmd_reorder)

    p_help = sub.add_parser("help", help="show help on a topic (tawhiri)")
    p_help.add_argument("topic", nargs="?")
    p_help.set_defaults(func=cmd_help)

    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging()
    install_signal_handlers()
    try:
        return int(args.func(args))
    finally:
        run_cleanup()


if __name__ == "__main__":
    sys.exit(main())
