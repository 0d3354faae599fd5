from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

from gfs_errors import Wgrib2Error
from inventory import InventoryItem, format_inventory, parse_inventory

WGRIB2_COMMAND = os.getenv("WGRIB2_COMMAND", "wgrib2")
LOGGER = logging.getLogger("aonui.wgrib2")

_SHAPE_RE = re.compile(r"^\((\d+) x (\d+)\)$")


@dataclass(frozen=True)
class GridShape:
    columns: int
    rows: int


def parse_grid_shapes(lines: Sequence[str]) -> List[GridShape]:
    """Parse ``wgrib2 -nxny`` output, whose third field reads "(NX x NY)"."""
    shapes: List[GridShape] = []
    for line in lines:
        if not line.strip():
            continue
        fields = line.split(":")
        if len(fields) < 3:
            raise Wgrib2Error(f"Too few fields in wgrib2 shape output: {line!r}")
        match = _SHAPE_RE.match(fields[2])
        if match is None:
            raise Wgrib2Error(f"Shape field has wrong format: {fields[2]!r}")
        shapes.append(GridShape(columns=int(match.group(1)), rows=int(match.group(2))))
    return shapes


class Wgrib2:
    """Thin wrapper around the wgrib2 executable.

    The command is looked up on PATH at each invocation. Inventories passed in
    are written to wgrib2's standard input in short inventory format, which
    selects both the records it processes and their order.
    """

    def __init__(self, command: str | None = None) -> None:
        self.command = command or WGRIB2_COMMAND

    def _run(self, args: List[str], stdin_lines: Sequence[str] | None = None) -> str:
        cmd = [self.command, *args]
        stdin_text = "".join(f"{line}\n" for line in stdin_lines) if stdin_lines is not None else None
        LOGGER.debug("Running %s", " ".join(cmd))
        try:
            proc = subprocess.run(cmd, input=stdin_text, check=False, capture_output=True, text=True)
        except FileNotFoundError as exc:
            raise Wgrib2Error(f"wgrib2 executable not found: {self.command}") from exc
        if proc.stderr:
            LOGGER.info("wgrib2 stderr: %s", proc.stderr.strip())
        if proc.returncode != 0:
            raise Wgrib2Error(f"wgrib2 exited with status {proc.returncode}: {proc.stderr.strip()}")
        return proc.stdout

    def inventory(self, path: str | Path) -> List[InventoryItem]:
        total_length = Path(path).stat().st_size
        output = self._run(["-s", str(path)])
        return parse_inventory(output.splitlines(), total_length)

    def expand(self, items: Sequence[InventoryItem], source: str | Path, dest: str | Path) -> None:
        """Dump ``items`` from ``source`` as headerless native-order floats into ``dest``.

        Values within a record run West-to-East, South-to-North.
        """
        self._run(["-i", "-no_header", "-bin", str(dest), str(source)], format_inventory(items))

    def grid_shapes(self, items: Sequence[InventoryItem], source: str | Path) -> List[GridShape]:
        output = self._run(["-i", "-nxny", str(source)], format_inventory(items))
        return parse_grid_shapes(output.splitlines())
