from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple
from unittest.mock import Mock, patch

import pytest

from collection_ledger.config import ChainSettings
from collection_ledger.extractors.rpc import RpcError, from_hex
from collection_ledger.extractors.transactions import TransactionDetails
from collection_ledger.loaders.ledger import Ledger
from collection_ledger.transformers.transfers import TRANSFER_TOPIC


CONTRACT = "0x" + "c0" * 20
WRAPPED = "0x" + "77" * 20
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b0" * 20
CAROL = "0x" + "ca" * 20
TREASURY = "0x" + "fe" * 20


def tx_hash(n: int) -> str:
    return "0x" + format(n, "064x")


def pad_address(address: str) -> str:
    return "0x" + "0" * 24 + address[2:]


def nft_log(token_id: int, sender: str, receiver: str, block: int, tx: str, log_index: int = 0, **extra) -> Dict:
    log = {
        "address": CONTRACT,
        "topics": [TRANSFER_TOPIC, pad_address(sender), pad_address(receiver), "0x" + format(token_id, "064x")],
        "data": "0x",
        "blockNumber": hex(block),
        "transactionHash": tx,
        "logIndex": hex(log_index),
    }
    log.update(extra)
    return log


def erc20_log(sender: str, receiver: str, value: int, token: str = WRAPPED) -> Dict:
    return {
        "address": token,
        "topics": [TRANSFER_TOPIC, pad_address(sender), pad_address(receiver)],
        "data": "0x" + format(value, "064x"),
    }


def response(status=200, body=None):
    resp = Mock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.reason = "reason"
    resp.json.return_value = body if body is not None else {}
    return resp


def sale_item(sale_id, token_id, ts, price=1.5):
    return {
        "saleId": sale_id,
        "token": {"tokenId": str(token_id)},
        "price": {"amount": {"native": price}},
        "timestamp": ts,
        "buyer": "0x" + "B0" * 20,
        "seller": "0x" + "A1" * 20,
        "txHash": "0x" + format(token_id, "064x"),
    }


class FakeRpc:
    """In-memory getLogs provider; ``fail_wider_than`` and ``fail_blocks``
    simulate range-limit errors."""

    def __init__(self, logs: Optional[List[Dict]] = None, head: int = 0) -> None:
        self.logs = list(logs or [])
        self.head = head
        self.fail_wider_than: Optional[int] = None
        self.fail_blocks: Set[int] = set()
        self.error: Optional[Exception] = None
        self.calls: List[Tuple[int, int]] = []

    def safe_block_number(self, confirmations: int = 0) -> int:
        return self.head - confirmations

    def get_logs(self, address, topics, from_block, to_block):
        self.calls.append((from_block, to_block))
        if self.error is not None:
            raise self.error
        if self.fail_wider_than is not None and to_block - from_block + 1 > self.fail_wider_than:
            raise RpcError("eth_getLogs", -32005, "query returned more than 10000 results")
        if any(from_block <= block <= to_block for block in self.fail_blocks):
            raise RpcError("eth_getLogs", -32000, "internal error")
        return [
            log for log in self.logs
            if log["address"] == address and from_block <= from_hex(log["blockNumber"]) <= to_block
        ]


class FakeInspector:
    def __init__(self, details: Optional[Dict[str, TransactionDetails]] = None, errors: Optional[Dict[str, Exception]] = None) -> None:
        self.details = dict(details or {})
        self.errors = dict(errors or {})
        self.inspected: List[str] = []

    def inspect(self, tx_hash: str) -> TransactionDetails:
        self.inspected.append(tx_hash)
        if tx_hash in self.errors:
            raise self.errors[tx_hash]
        return self.details[tx_hash]


def details(tx: str, value: int = 0, block: int = 1, logs: Optional[List[Dict]] = None,
            when: datetime = datetime(2024, 3, 1, 12, 0, 0)) -> TransactionDetails:
    return TransactionDetails(tx_hash=tx, native_value=value, block_number=block, block_timestamp=when, receipt_logs=logs or [])


@pytest.fixture
def ledger():
    ledger = Ledger.from_url("sqlite://")
    ledger.create_all()
    return ledger


@pytest.fixture
def chain():
    return ChainSettings(
        rpc_url="http://rpc.invalid",
        contract_address=CONTRACT,
        wrapped_token_address=WRAPPED,
        deploy_block=100,
        batch_blocks=10,
        checkpoint_every_blocks=50,
        log_sleep=0,
        tx_sleep=0,
    )


@pytest.fixture
def sleep():
    with patch("collection_ledger.utils.http.time.sleep") as mocked:
        yield mocked
