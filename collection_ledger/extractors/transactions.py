import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

from collection_ledger.extractors.rpc import RpcClient, from_hex


@dataclass
class TransactionDetails:
    tx_hash: str
    native_value: int
    block_number: int
    block_timestamp: datetime
    receipt_logs: List[Dict[str, Any]] = field(default_factory=list)


def block_datetime(block: Dict[str, Any]) -> datetime:
    """Naive UTC datetime for a block's ``timestamp``."""
    seconds = from_hex(block.get("timestamp"))
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


class TransactionInspector:
    """Transaction, receipt and containing block for one hash.

    Calls are spaced by ``sleep_seconds``; any failure propagates so the
    caller can skip just this transaction.
    """

    def __init__(self, rpc: RpcClient, sleep_seconds: float = 0.2) -> None:
        self.rpc = rpc
        self.sleep_seconds = sleep_seconds

    def _pause(self) -> None:
        if self.sleep_seconds:
            time.sleep(self.sleep_seconds)

    def inspect(self, tx_hash: str) -> TransactionDetails:
        tx = self.rpc.get_transaction(tx_hash)
        self._pause()
        receipt = self.rpc.get_transaction_receipt(tx_hash)
        self._pause()
        block_number = from_hex(tx.get("blockNumber") or receipt.get("blockNumber"))
        block = self.rpc.get_block(block_number)
        self._pause()
        return TransactionDetails(
            tx_hash=tx_hash.lower(),
            native_value=from_hex(tx.get("value")),
            block_number=block_number,
            block_timestamp=block_datetime(block),
            receipt_logs=list(receipt.get("logs") or []),
        )
