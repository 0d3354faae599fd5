from __future__ import annotations

import logging
import os
import queue
import shutil
import tempfile
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, List, Sequence

import requests

from gfs_errors import AonuiError, NetworkFailure, NoRunsDownloaded, TooFewDatasets
from gfs_sources import (
    DataSource,
    Dataset,
    Run,
    discover_datasets,
    discover_runs,
    fetch_inventory,
    fetch_records,
    sort_runs_newest_first,
)
from inventory import PARAMS_OF_INTEREST, select_records, total_extent

MAX_SIMULTANEOUS_DOWNLOADS = int(os.getenv("AONUI_MAX_DOWNLOADS", "5"))
DATASET_RETRY_SLEEP_SECONDS = float(os.getenv("AONUI_DATASET_RETRY_SLEEP", "10"))
DEFAULT_MAX_RUNS = 3
RUN_FILE_SUFFIX = ".grib2"
TEMP_FILE_PREFIX = "dataset-"
COPY_BUFFER_SIZE = 1024 * 1024
LOGGER = logging.getLogger("aonui.sync_pipeline")

_DONE = object()


def format_byte_count(count: float) -> str:
    count = int(count)
    if count < 2 << 10:
        return f"{count}B"
    if count < 2 << 20:
        return f"{count >> 10}KiB"
    if count < 2 << 30:
        return f"{count >> 20}MiB"
    return f"{count >> 30}GiB"


class TemporaryFileSet:
    """Temporary files created during one sync attempt, removable as a unit.

    Safe to use from several download threads at once.
    """

    def __init__(self, base_dir: str | Path, prefix: str = TEMP_FILE_PREFIX) -> None:
        self.base_dir = Path(base_dir)
        self.prefix = prefix
        self._files: List[Path] = []
        self._guard = threading.Lock()
        self._closed = False

    def __enter__(self) -> "TemporaryFileSet":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        with self._guard:
            return self._closed

    def __len__(self) -> int:
        with self._guard:
            return len(self._files)

    @property
    def paths(self) -> List[Path]:
        with self._guard:
            return list(self._files)

    def create(self) -> Path:
        # Creation and registration happen under the lock so close() cannot miss a file.
        with self._guard:
            if self._closed:
                raise ValueError(f"Temporary file set in {self.base_dir} is closed")
            fd, name = tempfile.mkstemp(prefix=self.prefix, dir=self.base_dir)
            os.close(fd)
            path = Path(name)
            self._files.append(path)
        return path

    def remove(self, path: str | Path, missing_ok: bool = False) -> None:
        path = Path(path)
        with self._guard:
            if path in self._files:
                self._files.remove(path)
            elif not missing_ok:
                raise ValueError(f"Temporary file was not created by this set: {path}")
            else:
                return
        path.unlink(missing_ok=True)

    def remove_all(self) -> None:
        with self._guard:
            files, self._files = self._files, []
        for path in files:
            try:
                path.unlink(missing_ok=True)
            except OSError:
                LOGGER.warning("Failed to remove temporary file path=%s", path)
        if files:
            LOGGER.debug("Removed temporary files count=%d", len(files))

    def close(self) -> None:
        """Remove every file and refuse to create more."""
        with self._guard:
            self._closed = True
        self.remove_all()


class DownloadSlots:
    """Counting permit pool bounding how many datasets download at once."""

    def __init__(self, capacity: int = MAX_SIMULTANEOUS_DOWNLOADS) -> None:
        self.capacity = max(1, int(capacity))
        self._semaphore = threading.BoundedSemaphore(self.capacity)

    def __enter__(self) -> "DownloadSlots":
        self._semaphore.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._semaphore.release()


def fetch_dataset(
    dataset: Dataset,
    output: BinaryIO,
    params_of_interest: Iterable[str] = PARAMS_OF_INTEREST,
    session: requests.Session | None = None,
) -> int:
    inventory = fetch_inventory(dataset, session=session)
    items = select_records(inventory, params_of_interest)
    if not items:
        LOGGER.info("No items to fetch dataset=%s", dataset.identifier)
        return 0

    LOGGER.info(
        "Fetching %d records from %s (%s)",
        len(items),
        dataset.identifier,
        format_byte_count(total_extent(items)),
    )
    return fetch_records(dataset, items, output, session=session)


def _download_dataset(
    dataset: Dataset,
    temp_files: TemporaryFileSet,
    slots: DownloadSlots,
    completed: queue.Queue,
    retry_sleep: float,
    params_of_interest: Sequence[str],
    session: requests.Session | None,
) -> None:
    with slots:
        attempts = dataset.run.source.fetch_strategy.attempts
        for attempt in range(1, attempts + 1):
            if temp_files.closed:
                LOGGER.info("Sync abandoned, not fetching %s", dataset.identifier)
                return
            LOGGER.info("Fetching %s (try %d of %d)", dataset.identifier, attempt, attempts)
            tmp_path: Path | None = None
            try:
                # Each attempt starts over in a fresh file; partial downloads are never resumed.
                tmp_path = temp_files.create()
                with open(tmp_path, "wb") as output:
                    fetch_dataset(dataset, output, params_of_interest, session=session)
            except (AonuiError, OSError) as exc:
                LOGGER.warning("Error fetching dataset=%s attempt=%d/%d error=%s", dataset.identifier, attempt, attempts, exc)
                if tmp_path is not None:
                    temp_files.remove(tmp_path, missing_ok=True)
                if attempt < attempts:
                    time.sleep(retry_sleep)
                continue
            completed.put(tmp_path)
            return

    LOGGER.error("Failed to download %s", dataset.identifier)


def _signal_when_done(futures: List[Future], completed: queue.Queue) -> None:
    # Failed datasets never reach the queue, so completion is tracked on the futures.
    wait(futures)
    for future in futures:
        if future.cancelled():
            continue
        exc = future.exception()
        if exc is not None:
            LOGGER.error("Dataset download task crashed error=%s", exc)
    completed.put(_DONE)


def _append_file(src_path: Path, output: BinaryIO) -> None:
    with open(src_path, "rb") as src:
        shutil.copyfileobj(src, output, COPY_BUFFER_SIZE)


def sync_run(
    run: Run,
    dest_path: str | Path,
    slots: DownloadSlots | None = None,
    temp_dir: str | Path | None = None,
    retry_sleep: float = DATASET_RETRY_SLEEP_SECONDS,
    params_of_interest: Sequence[str] = PARAMS_OF_INTEREST,
    session: requests.Session | None = None,
    register_cleanup: Callable[[Callable[[], None]], None] | None = None,
) -> Path:
    """Download the wanted records of every dataset in ``run`` into ``dest_path``.

    Datasets are appended in the order their downloads finish; run the file
    through reorder_composite to obtain Tawhiri order. A dataset that fails
    every attempt is left out of the output.
    """
    dest_path = Path(dest_path)
    LOGGER.info("Fetching data for run at %s", run.when.isoformat())

    datasets = discover_datasets(run, session=session)
    LOGGER.info("Run has %d dataset(s)", len(datasets))
    if len(datasets) < run.source.min_datasets:
        raise TooFewDatasets(run.identifier, len(datasets), run.source.min_datasets)

    max_hour = run.source.max_forecast_hour
    wanted = [ds for ds in datasets if not (max_hour > 0 and ds.forecast_hour > max_hour)]

    slots = slots or DownloadSlots()
    temp_dir = Path(temp_dir) if temp_dir else dest_path.parent
    completed: queue.Queue = queue.Queue()
    downloaded = 0

    with TemporaryFileSet(temp_dir, TEMP_FILE_PREFIX) as temp_files:
        if register_cleanup is not None:
            register_cleanup(temp_files.close)

        LOGGER.info("Fetching run to %s", dest_path)
        fetch_start = time.monotonic()
        executor = ThreadPoolExecutor(max_workers=slots.capacity, thread_name_prefix="dataset-fetch")
        try:
            with open(dest_path, "wb") as output:
                futures = [
                    executor.submit(
                        _download_dataset,
                        dataset,
                        temp_files,
                        slots,
                        completed,
                        retry_sleep,
                        params_of_interest,
                        session,
                    )
                    for dataset in wanted
                ]
                threading.Thread(
                    target=_signal_when_done,
                    args=(futures, completed),
                    name="dataset-barrier",
                    daemon=True,
                ).start()

                while True:
                    tmp_path = completed.get()
                    if tmp_path is _DONE:
                        break
                    try:
                        _append_file(tmp_path, output)
                        downloaded += 1
                    except OSError as exc:
                        LOGGER.error("Error copying temporary file path=%s error=%s", tmp_path, exc)
                    finally:
                        temp_files.remove(tmp_path, missing_ok=True)
                written = output.tell()
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    if wanted and downloaded == 0:
        raise NetworkFailure(f"No datasets could be downloaded for run {run.identifier}")

    duration = max(time.monotonic() - fetch_start, 1e-6)
    LOGGER.info(
        "Downloaded datasets=%d/%d bytes=%s speed=%s/sec",
        downloaded,
        len(wanted),
        format_byte_count(written),
        format_byte_count(written / duration),
    )
    return dest_path


def run_file_path(base_dir: str | Path, run: Run) -> Path:
    return Path(base_dir) / f"{run.identifier}{RUN_FILE_SUFFIX}"


def sync_latest(
    runs: Sequence[Run],
    base_dir: str | Path,
    max_runs: int = DEFAULT_MAX_RUNS,
    **sync_kwargs,
) -> Path:
    """Sync the first run of ``runs[:max_runs]`` that downloads successfully.

    ``runs`` should be ordered newest first. Runs already on disk are skipped
    and a run that fails falls back to the next, older one.
    """
    for run in list(runs)[: max(0, int(max_runs))]:
        dest_path = run_file_path(base_dir, run)
        if dest_path.exists():
            LOGGER.info("Not overwriting %s", dest_path)
            continue

        try:
            sync_run(run, dest_path, **sync_kwargs)
        except (AonuiError, OSError) as exc:
            LOGGER.error("Error syncing run=%s error=%s", run.identifier, exc)
            if dest_path.exists():
                LOGGER.info("Removing %s", dest_path)
                dest_path.unlink(missing_ok=True)
            continue

        LOGGER.info("Run downloaded successfully run=%s path=%s", run.identifier, dest_path)
        return dest_path

    raise NoRunsDownloaded("No runs were downloaded")


def sync_source(
    source: DataSource,
    base_dir: str | Path,
    max_runs: int = DEFAULT_MAX_RUNS,
    session: requests.Session | None = None,
    **sync_kwargs,
) -> Path:
    runs = sort_runs_newest_first(discover_runs(source, session=session))
    return sync_latest(runs, base_dir, max_runs=max_runs, session=session, **sync_kwargs)
