from __future__ import annotations

import os
import re
import threading
from pathlib import Path
from typing import Dict, List

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from aonui_logging import configure_logging
from gfs_errors import AonuiError
from gfs_sources import SOURCES
from inventory import format_inventory_item
from reorder import ordered_inventory, read_run_info
from sync_pipeline import RUN_FILE_SUFFIX
from tawhiri import classify
from wgrib2 import Wgrib2

DATA_DIR = Path(os.getenv("AONUI_DATA_DIR", "."))
RUN_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9._-]+$")

LOGGER = configure_logging().getChild("app")

app = FastAPI(title="aonui GFS run browser")


def _allowed_cors_origins() -> List[str]:
    if os.getenv("AONUI_ALLOW_ALL_CORS", "").strip() == "1":
        return ["*"]
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [v.strip() for v in raw.split(",") if v.strip()]
    return [
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["GET"],
    allow_headers=["*"],
)

wgrib2_tool = Wgrib2()
_INFO_CACHE: Dict[tuple, Dict[str, object]] = {}
_INFO_CACHE_GUARD = threading.Lock()


def _run_path(identifier: str) -> Path:
    if not RUN_IDENTIFIER_RE.match(identifier) or identifier.startswith("."):
        raise HTTPException(status_code=400, detail=f"Invalid run identifier: {identifier}")
    path = DATA_DIR / f"{identifier}{RUN_FILE_SUFFIX}"
    if not path.is_file():
        raise HTTPException(status_code=404, detail=f"Unknown run: {identifier}")
    return path


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/sources")
def sources() -> Dict[str, object]:
    return {
        "sources": [
            {
                "name": src.name,
                "display_name": src.display_name,
                "root_url": src.root_url,
                "max_forecast_hour": src.max_forecast_hour,
                "min_datasets": src.min_datasets,
            }
            for src in SOURCES.values()
        ]
    }


@app.get("/api/runs")
def runs() -> Dict[str, object]:
    payload = []
    for path in sorted(DATA_DIR.glob(f"*{RUN_FILE_SUFFIX}"), key=lambda p: p.name, reverse=True):
        identifier = path.name[: -len(RUN_FILE_SUFFIX)]
        stat = path.stat()
        payload.append({"identifier": identifier, "bytes": int(stat.st_size)})
    return {"data_dir": str(DATA_DIR), "runs": payload}


@app.get("/api/runs/{identifier}/info")
def run_info(identifier: str) -> Dict[str, object]:
    path = _run_path(identifier)
    stat = path.stat()
    # Scanning a whole run is slow; reuse the result until the file changes.
    cache_key = (str(path), stat.st_size, stat.st_mtime_ns)
    with _INFO_CACHE_GUARD:
        cached = _INFO_CACHE.get(cache_key)
    if cached is not None:
        return cached

    try:
        info = read_run_info(path, tool=wgrib2_tool)
    except AonuiError as exc:
        LOGGER.warning("Run info failed identifier=%s error=%s", identifier, exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    payload = {"identifier": identifier, **info.to_json_dict()}
    with _INFO_CACHE_GUARD:
        _INFO_CACHE[cache_key] = payload
    return payload


@app.get("/api/runs/{identifier}/inventory")
def run_inventory(
    identifier: str,
    sort: bool = Query(True),
    filter: bool = Query(True),
) -> Dict[str, object]:
    path = _run_path(identifier)
    try:
        items = ordered_inventory(path, sort=bool(sort), filter_invalid=bool(filter), tool=wgrib2_tool)
    except AonuiError as exc:
        LOGGER.warning("Run inventory failed identifier=%s error=%s", identifier, exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    records = []
    for item in items:
        tw = classify(item)
        records.append(
            {
                "record": item.record_number,
                "offset": item.offset,
                "extent": item.extent,
                "parameters": list(item.parameters),
                "layer": item.layer_name,
                "type": item.type_name,
                "forecast_hour": tw.forecast_hour if tw.is_valid else None,
                "pressure": tw.pressure if tw.is_valid else None,
                "lines": format_inventory_item(item),
            }
        )
    return {"identifier": identifier, "count": len(records), "records": records}
