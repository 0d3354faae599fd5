"""Ordering and filtering of inventories into the layout Tawhiri expects.

The Tawhiri predictor reads wind data as a C-style five-dimensional array of
floats with axes forecast hour, pressure, parameter, latitude and longitude.
Forecast hours increase, pressures decrease (so the first pressure is the
lowest geopotential height) and parameters come in the order HGT, UGRD, VGRD.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Sequence, Tuple

from inventory import InventoryItem

PARAM_ORDER = ("HGT", "UGRD", "VGRD")
OTHER_PARAM_INDEX = len(PARAM_ORDER)
ANALYSIS_TYPE_NAME = "anl"

_FORECAST_TYPE_RE = re.compile(r"^([+-]?\d+) hour fcst$")
_PRESSURE_LAYER_RE = re.compile(r"^([+-]?\d+) mb$")


@dataclass(frozen=True)
class TawhiriItem:
    item: InventoryItem
    forecast_hour: int
    pressure: int
    param_index: int
    is_valid: bool


@dataclass(frozen=True)
class RunInfo:
    width: int
    height: int
    parameters: List[str]
    pressures: List[int]
    forecast_hours: List[int]
    run_time: datetime

    def to_json_dict(self) -> dict:
        return {
            "width": self.width,
            "height": self.height,
            "parameters": list(self.parameters),
            "pressures": list(self.pressures),
            "forecastHours": list(self.forecast_hours),
            "runTime": self.run_time.strftime("%Y-%m-%dT%H:%M:%SZ"),
        }

    def to_lines(self) -> List[str]:
        return [
            f"NX={self.width}",
            f"NY={self.height}",
            f"NPARAM={len(self.parameters)}",
            f"NPRESSURE={len(self.pressures)}",
            f"NFCSTHOUR={len(self.forecast_hours)}",
            "PRESSURES=" + ",".join(str(p) for p in self.pressures),
            "FCSTHOURS=" + ",".join(str(h) for h in self.forecast_hours),
            f"RUNTIME={self.run_time.strftime('%Y%m%d%H')}",
        ]


def _param_index(parameters: Sequence[str]) -> int:
    if not parameters:
        return OTHER_PARAM_INDEX
    try:
        return PARAM_ORDER.index(parameters[0])
    except ValueError:
        return OTHER_PARAM_INDEX


def _parse_forecast_hour(type_name: str) -> Tuple[int, bool]:
    if type_name == ANALYSIS_TYPE_NAME:
        return 0, True
    match = _FORECAST_TYPE_RE.match(type_name)
    if match is None:
        return 0, False
    return int(match.group(1)), True


def _parse_pressure(layer_name: str) -> Tuple[int, bool]:
    match = _PRESSURE_LAYER_RE.match(layer_name)
    if match is None:
        return 0, False
    return int(match.group(1)), True


def classify(item: InventoryItem) -> TawhiriItem:
    forecast_hour, fcst_ok = _parse_forecast_hour(item.type_name)
    pressure, pressure_ok = _parse_pressure(item.layer_name)
    return TawhiriItem(
        item=item,
        forecast_hour=forecast_hour,
        pressure=pressure,
        param_index=_param_index(item.parameters),
        is_valid=fcst_ok and pressure_ok,
    )


def to_tawhiris(items: Iterable[InventoryItem]) -> List[TawhiriItem]:
    return [classify(item) for item in items]


def from_tawhiris(items: Iterable[TawhiriItem]) -> List[InventoryItem]:
    return [tw.item for tw in items]


def tawhiri_key(tw: TawhiriItem) -> Tuple[int, int, int, int]:
    # All invalid items share one key so a stable sort keeps their relative order.
    if not tw.is_valid:
        return (1, 0, 0, 0)
    return (0, tw.forecast_hour, -tw.pressure, tw.param_index)


def compare(a: TawhiriItem, b: TawhiriItem) -> int:
    """Three-way comparison in Tawhiri order: negative when ``a`` sorts first."""
    key_a, key_b = tawhiri_key(a), tawhiri_key(b)
    if key_a < key_b:
        return -1
    if key_a > key_b:
        return 1
    return 0


def tawhiri_less(a: TawhiriItem, b: TawhiriItem) -> bool:
    return compare(a, b) < 0


def tawhiri_order(
    items: Iterable[InventoryItem],
    filter_invalid: bool = True,
    sort: bool = True,
) -> List[InventoryItem]:
    tws = to_tawhiris(items)
    if filter_invalid:
        tws = [tw for tw in tws if tw.is_valid]
    if sort:
        tws = sorted(tws, key=tawhiri_key)
    return from_tawhiris(tws)


def summarize(items: Sequence[InventoryItem], width: int, height: int) -> RunInfo:
    """Collate the axes of a Tawhiri-ordered inventory.

    The run time is taken from the first item; every record of a run is
    assumed to share it.
    """
    if not items:
        raise ValueError("Cannot summarize an empty inventory")

    forecast_hours = set()
    pressures = set()
    parameters = set()
    for tw in to_tawhiris(items):
        if not tw.is_valid:
            continue
        forecast_hours.add(tw.forecast_hour)
        pressures.add(tw.pressure)
        parameters.update(tw.item.parameters)

    return RunInfo(
        width=int(width),
        height=int(height),
        parameters=sorted(parameters, key=lambda name: (_param_index([name]), name)),
        pressures=sorted(pressures, reverse=True),
        forecast_hours=sorted(forecast_hours),
        run_time=items[0].when,
    )
