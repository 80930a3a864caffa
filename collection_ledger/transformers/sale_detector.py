"""On-chain sale detection from NFT Transfer events.

There is no explicit "sale" event on chain, so a transfer is treated as a sale
when its transaction carried value: either native currency on the
transaction itself, or wrapped-currency ERC-20 transfers in the receipt that
move funds from a buyer or to a seller. Everything else (gifts, wallet moves)
is dropped. The heuristic lives in :func:`infer_sale_price`; the batching
machinery around it does not depend on its details.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Sequence

from collection_ledger.extractors.transactions import TransactionDetails, TransactionInspector
from collection_ledger.handlers.dlq import DeadLetterQueue
from collection_ledger.transformers.sales import SaleRecord, wei_to_native
from collection_ledger.transformers.transfers import TransferEvent, decode_erc20_transfer


logger = logging.getLogger(__name__)

NATIVE_TAG = "onchain"
WRAPPED_TAG = "onchain_wrapped"


@dataclass(frozen=True)
class PriceInference:
    total_wei: int
    price_per_token_wei: int
    marketplace: str


def group_by_transaction(events: Iterable[TransferEvent]) -> "OrderedDict[str, List[TransferEvent]]":
    """Sale candidates grouped by tx hash, in first-seen order.

    Mints and events without a receiver or token id are not sale candidates.
    A transfer seen twice (overlapping resumed scans) is kept once.
    """
    groups: "OrderedDict[str, List[TransferEvent]]" = OrderedDict()
    seen = set()
    for event in events:
        if event.is_mint or not event.to_address or not event.transaction_hash:
            continue
        key = (event.transaction_hash, event.log_index, event.token_id)
        if key in seen:
            continue
        seen.add(key)
        groups.setdefault(event.transaction_hash, []).append(event)
    return groups


def collapse_hops(transfers: Sequence[TransferEvent]) -> List[TransferEvent]:
    """One movement per token: a token routed A -> escrow -> B inside one
    transaction becomes A -> B. Hops are ordered by log index."""
    hops: "OrderedDict[int, List[TransferEvent]]" = OrderedDict()
    for event in sorted(transfers, key=lambda t: t.log_index):
        hops.setdefault(event.token_id, []).append(event)
    collapsed = []
    for chain in hops.values():
        first, last = chain[0], chain[-1]
        collapsed.append(replace(first, to_address=last.to_address, log_index=last.log_index))
    return collapsed


def wrapped_payment_total(
    receipt_logs: Sequence[Dict],
    wrapped_token_address: str,
    buyers: Iterable[str],
    sellers: Iterable[str],
) -> int:
    buyers = set(buyers)
    sellers = set(sellers)
    total = 0
    for log in receipt_logs:
        if str(log.get("address", "")).lower() != wrapped_token_address:
            continue
        decoded = decode_erc20_transfer(log)
        if decoded is None:
            continue
        sender, receiver, value = decoded
        if sender in buyers or receiver in sellers:
            total += value
    return total


def infer_sale_price(
    tx: TransactionDetails,
    transfers: Sequence[TransferEvent],
    wrapped_token_address: str,
) -> Optional[PriceInference]:
    """Price policy for one transaction; ``None`` means "not a sale".

    Native value wins; otherwise wrapped-token payments from a buyer or to a
    seller are summed (fee transfers to third parties are ignored). The total
    is split evenly across the distinct tokens moved, truncating the
    remainder. ``transfers`` should already be collapsed per token.
    """
    if not transfers:
        return None
    count = len({t.token_id for t in transfers})

    if tx.native_value > 0:
        total, tag = tx.native_value, NATIVE_TAG
    else:
        total = wrapped_payment_total(
            tx.receipt_logs,
            wrapped_token_address.lower(),
            buyers=(t.to_address for t in transfers),
            sellers=(t.from_address for t in transfers),
        )
        tag = WRAPPED_TAG

    per_token = total // count
    if per_token <= 0:
        return None
    return PriceInference(total_wei=total, price_per_token_wei=per_token, marketplace=tag)


def build_sale_records(tx: TransactionDetails, transfers: Sequence[TransferEvent], inference: PriceInference) -> List[SaleRecord]:
    price = wei_to_native(inference.price_per_token_wei)
    return [
        SaleRecord(
            token_id=t.token_id,
            price=price,
            sold_at=tx.block_timestamp,
            buyer_address=t.to_address,
            seller_address=t.from_address,
            transaction_hash=t.transaction_hash,
            marketplace=inference.marketplace,
        )
        for t in transfers
    ]


class SaleDetector:
    def __init__(
        self,
        inspector: TransactionInspector,
        wrapped_token_address: str,
        dlq: Optional[DeadLetterQueue] = None,
    ) -> None:
        self.inspector = inspector
        self.wrapped_token_address = wrapped_token_address.lower()
        self.dlq = dlq
        self.failed: List[str] = []

    def detect(self, events: Iterable[TransferEvent]) -> List[SaleRecord]:
        groups = group_by_transaction(events)
        logger.info("Inspecting %d transactions with transfers", len(groups))
        sales: List[SaleRecord] = []
        for processed, (tx_hash, transfers) in enumerate(groups.items(), start=1):
            if processed % 100 == 0:
                logger.info("Processing tx %d/%d", processed, len(groups))
            try:
                tx = self.inspector.inspect(tx_hash)
            except Exception as exc:
                logger.error("Error inspecting tx %s: %s", tx_hash, exc)
                self.failed.append(tx_hash)
                if self.dlq is not None:
                    self.dlq.send(
                        record={"stage": "inspect", "tx_hash": tx_hash},
                        error=exc,
                        context={"token_ids": [t.token_id for t in transfers], "block": transfers[0].block_number},
                    )
                continue

            transfers = collapse_hops(transfers)
            inference = infer_sale_price(tx, transfers, self.wrapped_token_address)
            if inference is None:
                logger.debug("tx %s moved %d token(s) without payment, not a sale", tx_hash, len(transfers))
                continue
            sales.extend(build_sale_records(tx, transfers, inference))

        logger.info("Detected %d sales", len(sales))
        return sales
