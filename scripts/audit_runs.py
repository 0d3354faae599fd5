#!/usr/bin/env python3
from __future__ import annotations

import json

from gfs_sources import SOURCES, discover_datasets, discover_runs, sort_runs_newest_first


def main(max_runs: int = 4) -> None:
    rows = []
    for source in SOURCES.values():
        try:
            runs = sort_runs_newest_first(discover_runs(source))
        except Exception as exc:  # pragma: no cover - diagnostics script
            rows.append({"source": source.name, "status": "unreachable", "error": f"{type(exc).__name__}: {exc}"})
            continue

        for run in runs[:max_runs]:
            try:
                datasets = discover_datasets(run)
            except Exception as exc:  # pragma: no cover - diagnostics script
                rows.append({"source": source.name, "run": run.identifier, "status": "error", "error": str(exc)})
                continue
            limit = source.max_forecast_hour
            wanted = [ds for ds in datasets if not (limit > 0 and ds.forecast_hour > limit)]
            rows.append(
                {
                    "source": source.name,
                    "run": run.identifier,
                    "datasets": len(datasets),
                    "wanted": len(wanted),
                    "min_datasets": source.min_datasets,
                    "status": "complete" if len(datasets) >= source.min_datasets else "incomplete",
                }
            )

    incomplete = [r for r in rows if r.get("status") != "complete"]
    print(f"total={len(rows)} incomplete={len(incomplete)}")
    for row in rows:
        print(json.dumps(row))


if __name__ == "__main__":
    main()
