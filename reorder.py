from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, List

import numpy as np

from gfs_errors import ReorderError
from inventory import InventoryItem
from tawhiri import RunInfo, summarize, tawhiri_order
from wgrib2 import Wgrib2

COPY_BUFFER_SIZE = 1024 * 1024
LOGGER = logging.getLogger("aonui.reorder")


def ordered_inventory(
    source: str | Path,
    sort: bool = True,
    filter_invalid: bool = True,
    tool: Wgrib2 | None = None,
) -> List[InventoryItem]:
    tool = tool or Wgrib2()
    return tawhiri_order(tool.inventory(source), filter_invalid=filter_invalid, sort=sort)


def _copy_span(src, dst, length: int) -> None:
    remaining = length
    while remaining > 0:
        chunk = src.read(min(COPY_BUFFER_SIZE, remaining))
        if not chunk:
            raise ReorderError(f"Unexpected end of input with {remaining} byte(s) left to copy")
        dst.write(chunk)
        remaining -= len(chunk)


def reorder_composite(source: str | Path, dest: str | Path, tool: Wgrib2 | None = None) -> List[InventoryItem]:
    """Write the Tawhiri records of ``source`` to ``dest`` in Tawhiri order.

    GRIB2 messages can be concatenated freely, so copying each record's byte
    span yields a valid file. Records Tawhiri does not use are dropped.
    """
    items = ordered_inventory(source, tool=tool)
    LOGGER.info("Re-ordering records=%d source=%s dest=%s", len(items), source, dest)
    try:
        with open(source, "rb") as src, open(dest, "wb") as dst:
            for item in items:
                src.seek(item.offset)
                _copy_span(src, dst, item.extent)
    except OSError as exc:
        raise ReorderError(f"Error re-ordering {source}: {exc}") from exc
    return items


def extract_binary(
    source: str | Path,
    dest: str | Path,
    tmp_dir: str | Path | None = None,
    tool: Wgrib2 | None = None,
    register_cleanup: Callable[[Callable[[], None]], None] | None = None,
) -> None:
    dest = Path(dest)
    if dest.exists():
        raise FileExistsError(f"Not overwriting existing file {dest}")
    tool = tool or Wgrib2()
    tmp_dir = Path(tmp_dir) if tmp_dir else dest.resolve().parent

    fd, tmp_name = tempfile.mkstemp(prefix=f"{dest.name}.reordered.grib2.", dir=tmp_dir)
    os.close(fd)
    if register_cleanup is not None:
        register_cleanup(lambda: Path(tmp_name).unlink(missing_ok=True))
    try:
        LOGGER.info("Re-ordering input GRIB source=%s tmp=%s", source, tmp_name)
        reorder_composite(source, tmp_name, tool=tool)
        # Offsets must describe the re-ordered file, not the source.
        items = tool.inventory(tmp_name)
        LOGGER.info("Expanding records=%d dest=%s", len(items), dest)
        tool.expand(items, tmp_name, dest)
    finally:
        LOGGER.info("Removing %s", tmp_name)
        Path(tmp_name).unlink(missing_ok=True)


def read_run_info(source: str | Path, tool: Wgrib2 | None = None) -> RunInfo:
    tool = tool or Wgrib2()
    items = ordered_inventory(source, tool=tool)
    if not items:
        raise ReorderError(f"Empty GRIB: {source}")
    # Every record of a run shares one grid; only the first is inspected.
    shapes = tool.grid_shapes(items[:1], source)
    if not shapes:
        raise ReorderError(f"No grids in GRIB: {source}")
    return summarize(items, width=shapes[0].columns, height=shapes[0].rows)


def load_extracted(path: str | Path, info: RunInfo) -> np.ndarray:
    """Memory-map an extracted file as (forecast hour, pressure, parameter, lat, lon)."""
    shape = (
        len(info.forecast_hours),
        len(info.pressures),
        len(info.parameters),
        info.height,
        info.width,
    )
    expected = int(np.prod(shape)) * np.dtype(np.float32).itemsize
    actual = Path(path).stat().st_size
    if actual != expected:
        raise ValueError(f"Extracted file {path} has {actual} bytes, expected {expected} for shape {shape}")
    return np.memmap(path, dtype=np.float32, mode="r", shape=shape)

