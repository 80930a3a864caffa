from unittest.mock import patch

import pytest

from collection_ledger.extractors.logs import ChainLogScanner, iter_ranges
from collection_ledger.handlers.dlq import DeadLetterQueue
from collection_ledger.utils.http import HttpError

from conftest import ALICE, BOB, CONTRACT, FakeRpc, nft_log, tx_hash


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("collection_ledger.extractors.logs.time.sleep"):
        yield


def spread_logs(blocks):
    return [nft_log(i, ALICE, BOB, block=b, tx=tx_hash(i)) for i, b in enumerate(blocks, start=1)]


def test_iter_ranges_is_inclusive_and_ascending():
    assert list(iter_ranges(10, 34, 10)) == [(10, 19), (20, 29), (30, 34)]
    assert list(iter_ranges(5, 5, 10)) == [(5, 5)]
    assert list(iter_ranges(6, 5, 10)) == []


def test_scan_queries_one_range_per_batch():
    rpc = FakeRpc(spread_logs([100, 150, 199, 250]))
    scanner = ChainLogScanner(rpc, batch_blocks=100, sleep_seconds=0)

    events = list(scanner.scan_transfers(CONTRACT, 100, 299))

    assert rpc.calls == [(100, 199), (200, 299)]
    assert [e.block_number for e in events] == [100, 150, 199, 250]
    assert scanner.gaps == []


def test_failing_range_is_halved_until_it_fits():
    rpc = FakeRpc(spread_logs([0, 499, 500, 1999]))
    rpc.fail_wider_than = 500
    scanner = ChainLogScanner(rpc, batch_blocks=2000, sleep_seconds=0)

    events = list(scanner.scan_transfers(CONTRACT, 0, 1999))

    assert sorted(e.block_number for e in events) == [0, 499, 500, 1999]
    assert scanner.gaps == []
    assert (0, 999) in rpc.calls
    assert (0, 499) in rpc.calls
    assert (1500, 1999) in rpc.calls


def test_unrecoverable_block_becomes_a_gap(tmp_path):
    rpc = FakeRpc(spread_logs([10, 13, 15]))
    rpc.fail_blocks = {13}
    dlq = DeadLetterQueue(str(tmp_path / "dlq"))
    scanner = ChainLogScanner(rpc, batch_blocks=8, min_batch_blocks=1, sleep_seconds=0, dlq=dlq)

    events = list(scanner.scan_transfers(CONTRACT, 8, 23))

    assert [e.block_number for e in events] == [10, 15]
    assert scanner.gaps == [(13, 13)]
    entries = dlq.entries()
    assert len(entries) == 1
    assert entries[0]["record"] == {"stage": "get_logs", "from_block": 13, "to_block": 13}
    assert entries[0]["error_type"] == "RpcError"


def test_min_batch_width_bounds_the_split():
    rpc = FakeRpc(spread_logs([3]))
    rpc.fail_blocks = {3}
    scanner = ChainLogScanner(rpc, batch_blocks=16, min_batch_blocks=4, sleep_seconds=0)

    assert list(scanner.scan_transfers(CONTRACT, 0, 15)) == []
    assert scanner.gaps == [(0, 3)]


def test_bad_request_is_skipped_without_splitting():
    rpc = FakeRpc(spread_logs([1]))
    rpc.error = HttpError(400, "", "Bad Request")
    scanner = ChainLogScanner(rpc, batch_blocks=100, sleep_seconds=0)

    assert list(scanner.scan_transfers(CONTRACT, 0, 99)) == []
    assert rpc.calls == [(0, 99)]
    assert scanner.gaps == [(0, 99)]


def test_retryable_http_error_triggers_split():
    rpc = FakeRpc([])
    rpc.error = HttpError(503, "", "Service Unavailable")
    scanner = ChainLogScanner(rpc, batch_blocks=4, sleep_seconds=0)

    list(scanner.scan_transfers(CONTRACT, 0, 3))

    assert rpc.calls == [(0, 3), (0, 1), (0, 0), (1, 1), (2, 3), (2, 2), (3, 3)]
    assert scanner.gaps == [(0, 0), (1, 1), (2, 2), (3, 3)]


def test_removed_logs_are_skipped():
    logs = spread_logs([1, 2])
    logs[0]["removed"] = True
    scanner = ChainLogScanner(FakeRpc(logs), batch_blocks=10, sleep_seconds=0)

    assert [e.block_number for e in scanner.scan_transfers(CONTRACT, 0, 9)] == [2]
