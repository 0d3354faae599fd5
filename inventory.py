from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Sequence

from gfs_errors import InvalidDateField, MalformedInventory, UnexpectedSubrecord

INVENTORY_MIN_FIELDS = 7
PARAMS_OF_INTEREST = ("HGT", "UGRD", "VGRD")
PRESSURE_LAYER_SUFFIX = " mb"
LOGGER = logging.getLogger("aonui.inventory")

_DATE_FIELD_RE = re.compile(r"^d=(\d{4})(\d{2})(\d{2})(\d{2})$")


@dataclass
class InventoryItem:
    """One record of a wgrib2 "short" inventory, extended with its byte extent.

    Records published as ``N.1``, ``N.2``, ... (e.g. wind components stored as
    one record pair) are collapsed into a single item whose ``parameters``
    lists every sub-record's parameter in file order.
    """

    record_number: int
    offset: int
    when: datetime
    parameters: List[str]
    layer_name: str
    type_name: str
    field_average_count: int = 0
    extent: int = field(default=0)


def parse_date_field(value: str) -> datetime:
    match = _DATE_FIELD_RE.match(value)
    if not match:
        raise InvalidDateField(f"Invalid date field format: {value!r}")
    year, month, day, hour = (int(part) for part in match.groups())
    try:
        return datetime(year, month, day, hour, tzinfo=timezone.utc)
    except ValueError as exc:
        raise InvalidDateField(f"Invalid date field value: {value!r}") from exc


def _parse_int(value: str, what: str, line_no: int) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise MalformedInventory(f"Invalid {what} {value!r} on inventory line {line_no}") from exc


def _parse_record_id(value: str, line_no: int) -> tuple[int, int]:
    parts = value.split(".")
    if len(parts) > 2:
        raise MalformedInventory(f"Invalid record number {value!r} on inventory line {line_no}")
    record = _parse_int(parts[0], "record number", line_no)
    sub_record = _parse_int(parts[1], "sub-record number", line_no) if len(parts) > 1 else 1
    return record, sub_record


def _extent(item: InventoryItem, end: int, line_no: int | None) -> int:
    extent = end - item.offset
    if extent < 0:
        where = f"inventory line {line_no}" if line_no is not None else "end of file"
        raise MalformedInventory(
            f"Record {item.record_number} at offset {item.offset} has negative extent {extent} (ends at {where})"
        )
    return extent


def parse_inventory(lines: Iterable[str], total_length: int) -> List[InventoryItem]:
    """Parse a wgrib2 short inventory.

    ``total_length`` is the size in bytes of the GRIB2 file the inventory
    describes; it fixes the extent of the final record. Each item is only
    emitted once the offset of the following item is known.
    """
    inventory: List[InventoryItem] = []
    last_item: InventoryItem | None = None

    for line_no, raw_line in enumerate(lines, start=1):
        line = raw_line.rstrip("\r\n")
        if not line.strip():
            continue

        fields = line.split(":")
        if len(fields) < INVENTORY_MIN_FIELDS:
            raise MalformedInventory(
                f"Inventory line {line_no} has {len(fields)} field(s), expected at least {INVENTORY_MIN_FIELDS}"
            )

        record, sub_record = _parse_record_id(fields[0], line_no)
        offset = _parse_int(fields[1], "offset", line_no)
        when = parse_date_field(fields[2])
        field_average_count = _parse_int(fields[6], "field average count", line_no) if fields[6] else 0

        if sub_record <= 1:
            item = InventoryItem(
                record_number=record,
                offset=offset,
                when=when,
                parameters=[fields[3]],
                layer_name=fields[4],
                type_name=fields[5],
                field_average_count=field_average_count,
            )
            if last_item is not None:
                last_item.extent = _extent(last_item, item.offset, line_no)
                inventory.append(last_item)
            last_item = item
        else:
            if last_item is None:
                raise UnexpectedSubrecord(f"Unexpected sub-record {fields[0]!r} on inventory line {line_no}")
            last_item.parameters.append(fields[3])

    if last_item is not None:
        last_item.extent = _extent(last_item, total_length, None)
        inventory.append(last_item)

    LOGGER.debug("Parsed inventory items=%d total_length=%d", len(inventory), total_length)
    return inventory


def format_inventory_item(item: InventoryItem) -> List[str]:
    """Format an item back into short inventory lines, one per parameter."""
    lines: List[str] = []
    fac = str(item.field_average_count) if item.field_average_count else ""
    when = item.when.strftime("%Y%m%d%H")
    for idx, param in enumerate(item.parameters):
        sub_record = f".{idx + 1}" if len(item.parameters) > 1 else ""
        lines.append(
            f"{item.record_number}{sub_record}:{item.offset}:d={when}:{param}:"
            f"{item.layer_name}:{item.type_name}:{fac}"
        )
    return lines


def format_inventory(items: Iterable[InventoryItem]) -> List[str]:
    return [line for item in items for line in format_inventory_item(item)]


def select_records(
    inventory: Sequence[InventoryItem],
    interested_parameters: Iterable[str] = PARAMS_OF_INTEREST,
    layer_suffix: str | None = PRESSURE_LAYER_SUFFIX,
) -> List[InventoryItem]:
    """Pick the records worth downloading from a dataset.

    Only wind and geopotential height on pressure levels are wanted, i.e.
    layer names of the form "XXX mb". Pass ``layer_suffix=None`` to keep all
    layers.
    """
    wanted = set(interested_parameters)
    selected: List[InventoryItem] = []
    for item in inventory:
        if not wanted.intersection(item.parameters):
            continue
        if layer_suffix is not None and not item.layer_name.endswith(layer_suffix):
            continue
        selected.append(item)
    return selected


def total_extent(items: Iterable[InventoryItem]) -> int:
    return sum(item.extent for item in items)
