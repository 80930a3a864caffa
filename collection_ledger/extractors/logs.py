import logging
import time
from typing import Iterator, List, Optional, Tuple

from collection_ledger.extractors.rpc import RpcClient, RpcError
from collection_ledger.handlers.dlq import DeadLetterQueue
from collection_ledger.transformers.transfers import TRANSFER_TOPIC, TransferEvent, decode_nft_transfer
from collection_ledger.utils.http import HttpError


logger = logging.getLogger(__name__)


def iter_ranges(start: int, end: int, size: int) -> Iterator[Tuple[int, int]]:
    """Inclusive ``(from, to)`` windows of at most ``size`` blocks, ascending."""
    size = max(size, 1)
    for lo in range(start, end + 1, size):
        yield lo, min(lo + size - 1, end)


class ChainLogScanner:
    """Fetches Transfer logs for one contract in bounded sub-ranges.

    A failing sub-range is halved and retried down to ``min_batch_blocks``;
    what still fails is logged, dead-lettered and recorded in ``gaps`` and
    the scan moves on. Delivery is at-least-once across resumed runs.
    """

    def __init__(
        self,
        rpc: RpcClient,
        batch_blocks: int = 2000,
        min_batch_blocks: int = 1,
        sleep_seconds: float = 0.5,
        dlq: Optional[DeadLetterQueue] = None,
    ) -> None:
        self.rpc = rpc
        self.batch_blocks = max(batch_blocks, 1)
        self.min_batch_blocks = max(min_batch_blocks, 1)
        self.sleep_seconds = sleep_seconds
        self.dlq = dlq
        self.gaps: List[Tuple[int, int]] = []

    def scan_transfers(self, contract_address: str, from_block: int, to_block: int) -> Iterator[TransferEvent]:
        return self.scan(contract_address, TRANSFER_TOPIC, from_block, to_block)

    def scan(
        self,
        contract_address: str,
        event_topic: str,
        from_block: int,
        to_block: int,
    ) -> Iterator[TransferEvent]:
        self.gaps = []
        if from_block > to_block:
            return
        ranges = list(iter_ranges(from_block, to_block, self.batch_blocks))
        for index, (lo, hi) in enumerate(ranges):
            yield from self._scan_range(contract_address, event_topic, lo, hi)
            if index < len(ranges) - 1 and self.sleep_seconds:
                time.sleep(self.sleep_seconds)

    def _scan_range(self, contract_address: str, event_topic: str, lo: int, hi: int) -> Iterator[TransferEvent]:
        try:
            logs = self.rpc.get_logs(contract_address, [event_topic], lo, hi)
        except HttpError as exc:
            if not exc.retryable:
                self._record_gap(lo, hi, exc)
                return
            yield from self._split(contract_address, event_topic, lo, hi, exc)
            return
        except RpcError as exc:
            yield from self._split(contract_address, event_topic, lo, hi, exc)
            return

        logger.debug("Blocks %d-%d: %d logs", lo, hi, len(logs))
        for log in logs:
            if log.get("removed"):
                continue
            event = decode_nft_transfer(log)
            if event is not None:
                yield event

    def _split(self, contract_address: str, event_topic: str, lo: int, hi: int, error: Exception) -> Iterator[TransferEvent]:
        width = hi - lo + 1
        if width <= self.min_batch_blocks:
            self._record_gap(lo, hi, error)
            return
        mid = lo + width // 2 - 1
        logger.warning("getLogs %d-%d failed (%s), splitting at %d", lo, hi, error, mid)
        if self.sleep_seconds:
            time.sleep(self.sleep_seconds)
        yield from self._scan_range(contract_address, event_topic, lo, mid)
        yield from self._scan_range(contract_address, event_topic, mid + 1, hi)

    def _record_gap(self, lo: int, hi: int, error: Exception) -> None:
        logger.error("Skipping blocks %d-%d after error: %s (backfill manually)", lo, hi, error)
        self.gaps.append((lo, hi))
        if self.dlq is not None:
            self.dlq.send(
                record={"stage": "get_logs", "from_block": lo, "to_block": hi},
                error=error,
            )
