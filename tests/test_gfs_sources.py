import dataclasses
import io
import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock, call, patch

import requests
from urllib3.exceptions import ReadTimeoutError

from gfs_errors import FetchTimeout, MissingLength, NetworkFailure, RetriesExhausted
from gfs_sources import (
    GFS_HALF_DEGREE,
    Dataset,
    FetchStrategy,
    Run,
    build_range_header,
    discover_datasets,
    discover_runs,
    fetch_inventory,
    fetch_records,
    fetch_with_retries,
    get_source,
    sort_runs_newest_first,
    walk_tree,
)
from inventory import parse_inventory

ROOT_URL = "http://example.test/data/gfs/prod/"

ROOT_INDEX = """<html><head><title>Index</title></head><body><pre>
<a href="../">Parent Directory</a>
<a href="gfs.2014110100/">gfs.2014110100/</a>
<a href="gdas.2014110100/">gdas.2014110100/</a>
<div><p><a href="gfs.2014110106/">gfs.2014110106/</a></p></div>
<a name="no-href">anchor</a>
</pre></body></html>"""

RUN_INDEX = """<html><body><table>
<tr><td><a href="gfs.t06z.pgrb2f00">gfs.t06z.pgrb2f00</a></td></tr>
<tr><td><a href="gfs.t06z.pgrb2f00.idx">gfs.t06z.pgrb2f00.idx</a></td></tr>
<tr><td><a href="gfs.t06z.pgrb2bf03">gfs.t06z.pgrb2bf03</a></td></tr>
<tr><td><a href="gfs.t00z.pgrb2f03">gfs.t00z.pgrb2f03</a></td></tr>
<tr><td><a href="gfs.t06z.pgrb2f204">gfs.t06z.pgrb2f204</a></td></tr>
</table></body></html>"""


def _response(status_code=200, text="", headers=None, chunks=None):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.headers = headers or {}
    response.iter_content.return_value = iter(chunks or [])
    return response


def _raising_iter(chunks, error):
    yield from chunks
    raise error


def _source(max_retries=1, retry_sleep=0.0, fetch_timeout=5.0):
    return dataclasses.replace(
        GFS_HALF_DEGREE,
        root_url=ROOT_URL,
        fetch_strategy=FetchStrategy(max_retries=max_retries, retry_sleep=retry_sleep, fetch_timeout=fetch_timeout),
    )


def _run(source=None, hour=6):
    source = source or _source()
    return Run(
        source=source,
        identifier=f"gfs.20141101{hour:02d}",
        url=f"{ROOT_URL}gfs.20141101{hour:02d}/",
        when=datetime(2014, 11, 1, hour, tzinfo=timezone.utc),
    )


def _dataset(run=None, name="gfs.t06z.pgrb2f00", forecast_hour=0):
    run = run or _run()
    return Dataset(run=run, identifier=name, url=run.url + name, type_identifier="pgrb2f", forecast_hour=forecast_hour)


class FetchWithRetriesTests(unittest.TestCase):
    def test_always_failing_endpoint_exhausts_retries(self):
        session = MagicMock()
        session.request.return_value = _response(status_code=500)
        strategy = FetchStrategy(max_retries=3, retry_sleep=7.5, fetch_timeout=5.0)
        with patch("gfs_sources.time.sleep") as mocked_sleep:
            with self.assertRaises(RetriesExhausted) as ctx:
                fetch_with_retries("http://example.test/x", strategy, session=session)
        self.assertEqual(session.request.call_count, 3)
        self.assertEqual(mocked_sleep.call_args_list, [call(7.5), call(7.5)])
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertIsInstance(ctx.exception, NetworkFailure)

    def test_recovers_after_transient_failures(self):
        ok = _response(status_code=200, text="hello")
        session = MagicMock()
        session.request.side_effect = [requests.ConnectionError("reset"), _response(status_code=503), ok]
        strategy = FetchStrategy(max_retries=5, retry_sleep=1.0, fetch_timeout=5.0)
        with patch("gfs_sources.time.sleep") as mocked_sleep:
            response = fetch_with_retries("http://example.test/x", strategy, session=session)
        self.assertIs(response, ok)
        self.assertEqual(mocked_sleep.call_count, 2)

    def test_partial_content_is_not_success(self):
        session = MagicMock()
        session.request.return_value = _response(status_code=206)
        with patch("gfs_sources.time.sleep"):
            with self.assertRaises(RetriesExhausted):
                fetch_with_retries("http://example.test/x", FetchStrategy(2, 0.0, 1.0), session=session)

    def test_zero_retries_still_makes_one_attempt(self):
        session = MagicMock()
        session.request.return_value = _response(status_code=404)
        with patch("gfs_sources.time.sleep") as mocked_sleep:
            with self.assertRaises(RetriesExhausted):
                fetch_with_retries("http://example.test/x", FetchStrategy(0, 1.0, 1.0), session=session)
        self.assertEqual(session.request.call_count, 1)
        mocked_sleep.assert_not_called()

    def test_timeout_and_method_passed_through(self):
        session = MagicMock()
        session.request.return_value = _response(status_code=200)
        fetch_with_retries("http://example.test/x", FetchStrategy(1, 0.0, 42.0), session=session, method="HEAD")
        args, kwargs = session.request.call_args
        self.assertEqual(args, ("HEAD", "http://example.test/x"))
        self.assertEqual(kwargs["timeout"], 42.0)


class DiscoveryTests(unittest.TestCase):
    def test_walk_tree_visits_depth_first_in_document_order(self):
        class Node:
            def __init__(self, name, children=()):
                self.name = name
                self.children = list(children)

        root = Node("a", [Node("b", [Node("c")]), Node("d")])
        seen = []
        walk_tree(root, lambda node: seen.append(node.name))
        self.assertEqual(seen, ["a", "b", "c", "d"])

    def test_discover_runs_matches_anchors_in_document_order(self):
        session = MagicMock()
        session.request.return_value = _response(text=ROOT_INDEX)
        runs = discover_runs(_source(), session=session)
        self.assertEqual([run.identifier for run in runs], ["gfs.2014110100", "gfs.2014110106"])
        self.assertEqual(runs[0].url, ROOT_URL + "gfs.2014110100/")
        self.assertEqual(runs[1].when, datetime(2014, 11, 1, 6, tzinfo=timezone.utc))
        self.assertEqual(runs[1].when.minute, 0)

    def test_discover_runs_propagates_fetch_failure(self):
        session = MagicMock()
        session.request.return_value = _response(status_code=500)
        with self.assertRaises(RetriesExhausted):
            discover_runs(_source(), session=session)

    def test_discover_datasets_drops_run_hour_mismatch(self):
        session = MagicMock()
        session.request.return_value = _response(text=RUN_INDEX)
        run = _run()
        datasets = discover_datasets(run, session=session)
        self.assertEqual(
            [(ds.identifier, ds.type_identifier, ds.forecast_hour) for ds in datasets],
            [
                ("gfs.t06z.pgrb2f00", "pgrb2f", 0),
                ("gfs.t06z.pgrb2bf03", "pgrb2bf", 3),
                ("gfs.t06z.pgrb2f204", "pgrb2f", 204),
            ],
        )
        self.assertEqual(datasets[0].url, run.url + "gfs.t06z.pgrb2f00")
        self.assertIs(datasets[0].run, run)

    def test_sort_runs_newest_first(self):
        runs = [_run(hour=0), _run(hour=12), _run(hour=6)]
        self.assertEqual([r.when.hour for r in sort_runs_newest_first(runs)], [12, 6, 0])

    def test_get_source_rejects_unknown_name(self):
        self.assertIs(get_source("gfs-half-degree"), GFS_HALF_DEGREE)
        with self.assertRaises(ValueError):
            get_source("ecmwf")


class InventoryFetchTests(unittest.TestCase):
    def test_inventory_url_appends_idx_to_path(self):
        ds = Dataset(
            run=_run(),
            identifier="f00",
            url="http://example.test/a/f00?x=1",
            type_identifier="t",
            forecast_hour=0,
        )
        self.assertEqual(ds.inventory_url, "http://example.test/a/f00.idx?x=1")

    def test_fetch_inventory_uses_content_length_for_last_extent(self):
        idx = "1:0:d=2014110106:HGT:850 mb:anl:\n2:200:d=2014110106:UGRD:850 mb:anl:\n"
        session = MagicMock()
        session.request.side_effect = [
            _response(headers={"Content-Length": "400"}),
            _response(text=idx),
        ]
        ds = _dataset()
        items = fetch_inventory(ds, session=session)
        self.assertEqual([(i.offset, i.extent) for i in items], [(0, 200), (200, 200)])
        first, second = session.request.call_args_list
        self.assertEqual(first.args, ("HEAD", ds.url))
        self.assertEqual(second.args, ("GET", ds.url + ".idx"))

    def test_fetch_inventory_requires_content_length(self):
        session = MagicMock()
        session.request.return_value = _response(headers={})
        with self.assertRaises(MissingLength):
            fetch_inventory(_dataset(), session=session)
        self.assertEqual(session.request.call_count, 1)


class FetchRecordsTests(unittest.TestCase):
    def setUp(self):
        idx = ["1:0:d=2014110106:HGT:850 mb:anl:", "2:200:d=2014110106:UGRD:850 mb:anl:"]
        self.items = parse_inventory(idx, 400)

    def test_range_header_is_inclusive_and_comma_joined(self):
        self.assertEqual(build_range_header(self.items), "bytes=0-199,200-399")

    def test_streams_partial_content_to_output(self):
        response = _response(status_code=206, chunks=[b"abc", b"", b"def"])
        session = MagicMock()
        session.get.return_value = response
        output = io.BytesIO()
        written = fetch_records(_dataset(), self.items, output, session=session)
        self.assertEqual(written, 6)
        self.assertEqual(output.getvalue(), b"abcdef")
        self.assertEqual(session.get.call_args.kwargs["headers"]["Range"], "bytes=0-199,200-399")
        self.assertTrue(session.get.call_args.kwargs["stream"])
        response.close.assert_called_once()

    def test_full_content_response_is_an_error(self):
        session = MagicMock()
        session.get.return_value = _response(status_code=200, chunks=[b"everything"])
        output = io.BytesIO()
        with self.assertRaises(NetworkFailure):
            fetch_records(_dataset(), self.items, output, session=session)
        self.assertEqual(output.getvalue(), b"")

    def test_no_items_makes_no_request(self):
        session = MagicMock()
        self.assertEqual(fetch_records(_dataset(), [], io.BytesIO(), session=session), 0)
        session.get.assert_not_called()

    def test_deadline_closes_transfer(self):
        response = _response(status_code=206, chunks=[b"abc", b"def", b"ghi"])
        session = MagicMock()
        session.get.return_value = response
        strategy = FetchStrategy(max_retries=1, retry_sleep=0.0, fetch_timeout=10.0)
        output = io.BytesIO()
        with patch("gfs_sources.time.monotonic", side_effect=[0.0, 1.0, 11.0]):
            with self.assertRaises(FetchTimeout):
                fetch_records(_dataset(), self.items, output, strategy=strategy, session=session)
        self.assertEqual(output.getvalue(), b"abc")
        response.close.assert_called_once()

    def test_connection_error_becomes_network_failure(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(NetworkFailure):
            fetch_records(_dataset(), self.items, io.BytesIO(), session=session)

    def test_socket_timeout_becomes_fetch_timeout(self):
        session = MagicMock()
        session.get.side_effect = requests.ReadTimeout("slow")
        with self.assertRaises(FetchTimeout):
            fetch_records(_dataset(), self.items, io.BytesIO(), session=session)

    def test_stalled_body_becomes_fetch_timeout(self):
        response = _response(status_code=206)
        stalled = requests.ConnectionError(ReadTimeoutError(None, _dataset().url, "Read timed out."))
        response.iter_content.return_value = _raising_iter([b"abc"], stalled)
        session = MagicMock()
        session.get.return_value = response
        output = io.BytesIO()
        with self.assertRaises(FetchTimeout):
            fetch_records(_dataset(), self.items, output, session=session)
        self.assertEqual(output.getvalue(), b"abc")
        response.close.assert_called_once()

    def test_dropped_body_stays_network_failure(self):
        response = _response(status_code=206)
        response.iter_content.return_value = _raising_iter([], requests.ConnectionError("reset by peer"))
        session = MagicMock()
        session.get.return_value = response
        with self.assertRaises(NetworkFailure) as ctx:
            fetch_records(_dataset(), self.items, io.BytesIO(), session=session)
        self.assertNotIsInstance(ctx.exception, FetchTimeout)


if __name__ == "__main__":
    unittest.main()
