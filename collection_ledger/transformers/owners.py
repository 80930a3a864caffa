from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Set, Tuple

from collection_ledger.transformers.transfers import TransferEvent


@dataclass
class OwnerFold:
    """Result of replaying one batch of transfers.

    ``owners`` maps token id to ``(owner_address, block_number)`` of the
    latest transfer seen; ``transfer_counts`` counts transfers per token.
    """

    owners: Dict[int, Tuple[str, int]] = field(default_factory=dict)
    transfer_counts: Dict[int, int] = field(default_factory=dict)
    last_block: Optional[int] = None
    seen: Set[Tuple[str, int, int]] = field(default_factory=set, repr=False)

    def owner_of(self, token_id: int) -> Optional[str]:
        entry = self.owners.get(token_id)
        return entry[0] if entry else None

    def __len__(self) -> int:
        return len(self.owners)


def fold_owners(events: Iterable[TransferEvent], fold: Optional[OwnerFold] = None) -> OwnerFold:
    """Last-writer-wins replay by ``(block_number, log_index)``.

    Duplicate deliveries of one log are counted once and arrival order never
    decides the winner. Pass ``fold`` to continue an
    accumulator across ascending windows.
    """
    fold = fold if fold is not None else OwnerFold()
    for event in sorted(events, key=lambda e: (e.block_number, e.log_index)):
        if not event.to_address:
            continue
        key = (event.transaction_hash, event.log_index, event.token_id)
        if key in fold.seen:
            continue
        fold.seen.add(key)
        current = fold.owners.get(event.token_id)
        if current is None or event.block_number >= current[1]:
            fold.owners[event.token_id] = (event.to_address, event.block_number)
        fold.transfer_counts[event.token_id] = fold.transfer_counts.get(event.token_id, 0) + 1
        if fold.last_block is None or event.block_number > fold.last_block:
            fold.last_block = event.block_number
    return fold
