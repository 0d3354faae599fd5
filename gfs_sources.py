from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import BinaryIO, Callable, Dict, List, Sequence
from urllib.parse import urljoin, urlsplit, urlunsplit

import requests
from bs4 import BeautifulSoup
from bs4.element import Tag
from urllib3.exceptions import ReadTimeoutError

from gfs_errors import FetchTimeout, MissingLength, NetworkFailure, RetriesExhausted
from inventory import InventoryItem, parse_inventory

DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_SLEEP_SECONDS = 30.0
DEFAULT_FETCH_TIMEOUT_SECONDS = float(os.getenv("AONUI_FETCH_TIMEOUT", "900"))
RANGE_CHUNK_SIZE = 131072
USER_AGENT = os.getenv("AONUI_USER_AGENT", "aonui/1.0 (GFS wind data sync)")
LOGGER = logging.getLogger("aonui.gfs_sources")


@dataclass(frozen=True)
class FetchStrategy:
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_sleep: float = DEFAULT_RETRY_SLEEP_SECONDS
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS

    @property
    def attempts(self) -> int:
        return max(int(self.max_retries), 1)


DEFAULT_FETCH_STRATEGY = FetchStrategy()


@dataclass(frozen=True)
class DataSource:
    name: str
    display_name: str
    root_url: str
    run_pattern: str
    dataset_pattern: str
    fetch_strategy: FetchStrategy = DEFAULT_FETCH_STRATEGY
    max_forecast_hour: int = 0
    min_datasets: int = 0


@dataclass(frozen=True)
class RunFields:
    year: int = 0
    month: int = 0
    day: int = 0
    hour: int = 0


@dataclass(frozen=True)
class DatasetFields:
    run_hour: int = 0
    type_id: str = ""
    fcst_hour: int = 0


@dataclass(frozen=True)
class Run:
    source: DataSource
    identifier: str
    url: str
    when: datetime


@dataclass(frozen=True)
class Dataset:
    run: Run
    identifier: str
    url: str
    type_identifier: str
    forecast_hour: int

    @property
    def inventory_url(self) -> str:
        # The short inventory is assumed to live beside the dataset with ".idx" appended.
        parts = urlsplit(self.url)
        return urlunsplit(parts._replace(path=parts.path + ".idx"))


GFS_QUARTER_DEGREE = DataSource(
    name="gfs-quarter-degree",
    display_name="GFS 0.25 degree",
    root_url="http://www.ftp.ncep.noaa.gov/data/nccf/com/gfs/para/",
    run_pattern=r"^gfs\.(?P<year>\d{4})(?P<month>\d{2})(?P<day>\d{2})(?P<hour>\d{2})$",
    dataset_pattern=r"^gfs\.t(?P<runHour>\d{2})z\.(?P<typeId>pgrb2b?)\.0p25\.f(?P<fcstHour>\d+)$",
    min_datasets=146,
)

GFS_HALF_DEGREE = DataSource(
    name="gfs-half-degree",
    display_name="GFS 0.5 degree",
    root_url="http://www.ftp.ncep.noaa.gov/data/nccf/com/gfs/prod/",
    run_pattern=r"^gfs\.(?P<year>\d{4})(?P<month>\d{2})(?P<day>\d{2})(?P<hour>\d{2})$",
    dataset_pattern=r"^gfs\.t(?P<runHour>\d{2})z.(?P<typeId>pgrb2b?f)(?P<fcstHour>\d+)$",
    max_forecast_hour=200,
    min_datasets=186,
)

SOURCES: Dict[str, DataSource] = {src.name: src for src in (GFS_HALF_DEGREE, GFS_QUARTER_DEGREE)}


def get_source(name: str) -> DataSource:
    source = SOURCES.get(name)
    if source is None:
        raise ValueError(f"Unknown data source: {name}")
    return source


def fetch_with_retries(
    url: str,
    strategy: FetchStrategy,
    session: requests.Session | None = None,
    method: str = "GET",
    stream: bool = False,
) -> requests.Response:
    """Issue a request, retrying until the server answers HTTP 200.

    The delay between attempts is fixed; the server's failures are short
    maintenance windows rather than congestion.
    """
    requester = session if session is not None else requests
    attempts = strategy.attempts
    last_error: object = None
    for attempt in range(1, attempts + 1):
        LOGGER.info("Fetching %s url=%s attempt=%d/%d", method, url, attempt, attempts)
        try:
            response = requester.request(
                method,
                url,
                headers={"User-Agent": USER_AGENT},
                stream=stream,
                timeout=strategy.fetch_timeout,
            )
        except requests.RequestException as exc:
            last_error = exc
            LOGGER.warning("Request failed url=%s attempt=%d/%d error=%s", url, attempt, attempts, exc)
        else:
            if response.status_code == 200:
                return response
            last_error = f"HTTP {response.status_code}"
            LOGGER.warning(
                "Unexpected status url=%s attempt=%d/%d status=%s", url, attempt, attempts, response.status_code
            )
            response.close()

        if attempt < attempts:
            time.sleep(strategy.retry_sleep)

    raise RetriesExhausted(url, attempts, last_error)


def walk_tree(node, visitor: Callable[[object], None]) -> None:
    """Visit ``node`` and then each of its descendants depth-first in document order."""
    visitor(node)
    for child in getattr(node, "children", ()):
        walk_tree(child, visitor)


def fetch_index(url: str, strategy: FetchStrategy, session: requests.Session | None = None) -> BeautifulSoup:
    response = fetch_with_retries(url, strategy, session=session)
    try:
        return BeautifulSoup(response.text, "html.parser")
    finally:
        response.close()


def _matching_links(doc, pattern: re.Pattern, base_url: str) -> List[tuple[str, str, re.Match]]:
    links: List[tuple[str, str, re.Match]] = []

    def _visit(node) -> None:
        if not isinstance(node, Tag) or node.name != "a":
            return
        href = node.get("href")
        if not href:
            return
        identifier = str(href).rstrip("/")
        match = pattern.search(identifier)
        if match is None:
            return
        links.append((identifier, urljoin(base_url, str(href)), match))

    walk_tree(doc, _visit)
    return links


def _group_int(groups: Dict[str, str | None], name: str) -> int:
    value = groups.get(name)
    try:
        return int(value) if value is not None else 0
    except ValueError:
        return 0


def run_fields_from_match(match: re.Match) -> RunFields:
    groups = match.groupdict()
    return RunFields(
        year=_group_int(groups, "year"),
        month=_group_int(groups, "month"),
        day=_group_int(groups, "day"),
        hour=_group_int(groups, "hour"),
    )


def dataset_fields_from_match(match: re.Match) -> DatasetFields:
    groups = match.groupdict()
    return DatasetFields(
        run_hour=_group_int(groups, "runHour"),
        type_id=groups.get("typeId") or "",
        fcst_hour=_group_int(groups, "fcstHour"),
    )


def discover_runs(source: DataSource, session: requests.Session | None = None) -> List[Run]:
    """List the runs advertised in the source's root index.

    Partially uploaded runs are listed too; check the dataset count before
    trusting one. Runs are returned in index document order.
    """
    pattern = re.compile(source.run_pattern)
    doc = fetch_index(source.root_url, source.fetch_strategy, session=session)

    runs: List[Run] = []
    for identifier, url, match in _matching_links(doc, pattern, source.root_url):
        fields = run_fields_from_match(match)
        try:
            when = datetime(fields.year, fields.month, fields.day, fields.hour, tzinfo=timezone.utc)
        except ValueError:
            LOGGER.warning("Skipping run with invalid date identifier=%s fields=%s", identifier, fields)
            continue
        runs.append(Run(source=source, identifier=identifier, url=url, when=when))

    LOGGER.info("Discovered runs source=%s count=%d", source.name, len(runs))
    return runs


def discover_datasets(run: Run, session: requests.Session | None = None) -> List[Dataset]:
    pattern = re.compile(run.source.dataset_pattern)
    doc = fetch_index(run.url, run.source.fetch_strategy, session=session)

    datasets: List[Dataset] = []
    for identifier, url, match in _matching_links(doc, pattern, run.url):
        fields = dataset_fields_from_match(match)
        if fields.run_hour != run.when.hour:
            # Listings caught mid-update can carry files from another cycle.
            LOGGER.warning(
                "Dataset run hour does not match run identifier=%s dataset_hour=%d run_hour=%d",
                identifier,
                fields.run_hour,
                run.when.hour,
            )
            continue
        datasets.append(
            Dataset(
                run=run,
                identifier=identifier,
                url=url,
                type_identifier=fields.type_id,
                forecast_hour=fields.fcst_hour,
            )
        )

    LOGGER.info("Discovered datasets run=%s count=%d", run.identifier, len(datasets))
    return datasets


def sort_runs_newest_first(runs: Sequence[Run]) -> List[Run]:
    return sorted(runs, key=lambda run: run.when, reverse=True)


def fetch_inventory(dataset: Dataset, session: requests.Session | None = None) -> List[InventoryItem]:
    strategy = dataset.run.source.fetch_strategy

    # The inventory does not record the final record's length; the dataset size gives it.
    head = fetch_with_retries(dataset.url, strategy, session=session, method="HEAD")
    try:
        raw_length = head.headers.get("Content-Length")
    finally:
        head.close()
    try:
        total_length = int(raw_length) if raw_length is not None else -1
    except ValueError:
        total_length = -1
    if total_length < 0:
        raise MissingLength(f"Server did not give Content-Length for dataset {dataset.url}")

    response = fetch_with_retries(dataset.inventory_url, strategy, session=session)
    try:
        return parse_inventory(response.text.splitlines(), total_length)
    finally:
        response.close()


def _is_read_timeout(exc: requests.ConnectionError) -> bool:
    # iter_content reports a stalled body as ConnectionError wrapping urllib3's ReadTimeoutError.
    causes = [*exc.args, exc.__cause__, exc.__context__]
    return any(isinstance(cause, ReadTimeoutError) for cause in causes)


def build_range_header(items: Sequence[InventoryItem]) -> str:
    # Ranges are inclusive at both ends.
    specs = [f"{item.offset}-{item.offset + item.extent - 1}" for item in items]
    return "bytes=" + ",".join(specs)


def fetch_records(
    dataset: Dataset,
    items: Sequence[InventoryItem],
    output: BinaryIO,
    strategy: FetchStrategy | None = None,
    session: requests.Session | None = None,
) -> int:
    """Download the byte ranges of ``items`` from a dataset into ``output``.

    A single multi-range request is made and the server must answer 206. The
    whole transfer is bound to ``strategy.fetch_timeout``; when the deadline
    passes the connection is closed and FetchTimeout raised.
    """
    if not items:
        return 0
    strategy = strategy or dataset.run.source.fetch_strategy
    requester = session if session is not None else requests
    deadline = time.monotonic() + strategy.fetch_timeout

    try:
        response = requester.get(
            dataset.url,
            headers={"Range": build_range_header(items), "User-Agent": USER_AGENT},
            stream=True,
            timeout=strategy.fetch_timeout,
        )
    except requests.Timeout as exc:
        raise FetchTimeout(f"Timed out requesting records from {dataset.url}") from exc
    except requests.RequestException as exc:
        raise NetworkFailure(f"Error requesting records from {dataset.url}: {exc}") from exc

    written = 0
    try:
        if response.status_code != 206:
            raise NetworkFailure(f"Expected HTTP partial content from {dataset.url}, got {response.status_code}")
        for chunk in response.iter_content(chunk_size=RANGE_CHUNK_SIZE):
            if time.monotonic() > deadline:
                raise FetchTimeout(
                    f"Fetch of {dataset.url} exceeded {strategy.fetch_timeout:.0f}s after {written} bytes"
                )
            if chunk:
                output.write(chunk)
                written += len(chunk)
    except requests.Timeout as exc:
        raise FetchTimeout(f"Timed out reading records from {dataset.url}") from exc
    except requests.ConnectionError as exc:
        if _is_read_timeout(exc):
            raise FetchTimeout(f"Stalled reading records from {dataset.url}") from exc
        raise NetworkFailure(f"Error reading records from {dataset.url}: {exc}") from exc
    except requests.RequestException as exc:
        raise NetworkFailure(f"Error reading records from {dataset.url}: {exc}") from exc
    finally:
        response.close()

    LOGGER.debug("Fetched records dataset=%s count=%d bytes=%d", dataset.identifier, len(items), written)
    return written
