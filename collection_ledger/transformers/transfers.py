"""Decoding of ``Transfer(address,address,uint256)`` logs.

ERC-721 and ERC-20 share the same event signature; they differ only in
whether the third argument is indexed (token id in ``topics[3]``) or carried
in ``data`` (amount).
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from eth_abi import decode as abi_decode
from eth_utils import keccak

from collection_ledger.extractors.rpc import from_hex


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
TRANSFER_SIGNATURE = "Transfer(address,address,uint256)"
TRANSFER_TOPIC = f"0x{keccak(text=TRANSFER_SIGNATURE).hex()}".lower()


@dataclass(frozen=True)
class TransferEvent:
    token_id: int
    from_address: str
    to_address: str
    block_number: int
    transaction_hash: str
    log_index: int = 0

    @property
    def is_mint(self) -> bool:
        return self.from_address == ZERO_ADDRESS


def _topic_bytes(topic: str) -> bytes:
    return bytes.fromhex(topic[2:] if topic.startswith("0x") else topic)


def decode_topic(abi_type: str, topic: str) -> Any:
    value = abi_decode([abi_type], _topic_bytes(topic))[0]
    if isinstance(value, str):
        return value.lower()
    return value


def _is_transfer(log: Dict[str, Any], topic_count: int) -> bool:
    topics = log.get("topics") or []
    return len(topics) == topic_count and str(topics[0]).lower() == TRANSFER_TOPIC


def decode_nft_transfer(log: Dict[str, Any]) -> Optional[TransferEvent]:
    if not _is_transfer(log, 4):
        return None
    topics = log["topics"]
    return TransferEvent(
        token_id=int(decode_topic("uint256", topics[3])),
        from_address=decode_topic("address", topics[1]),
        to_address=decode_topic("address", topics[2]),
        block_number=from_hex(log.get("blockNumber")),
        transaction_hash=str(log.get("transactionHash", "")).lower(),
        log_index=from_hex(log.get("logIndex")),
    )


def decode_erc20_transfer(log: Dict[str, Any]) -> Optional[Tuple[str, str, int]]:
    """Return ``(sender, receiver, value)`` for an ERC-20 Transfer log."""
    if not _is_transfer(log, 3):
        return None
    topics = log["topics"]
    data = log.get("data") or "0x"
    if data in ("0x", ""):
        value = 0
    else:
        value = abi_decode(["uint256"], _topic_bytes(data))[0]
    return decode_topic("address", topics[1]), decode_topic("address", topics[2]), int(value)
