"""Checkpoint stores: last fully processed block / timestamp per pipeline.

``set`` must only be called once the batch's ledger writes are durable.
Values never move backwards; a regressing ``set`` is ignored.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.engine import Engine

from collection_ledger.loaders.models import SyncState, utcnow
from collection_ledger.transformers.sales import parse_timestamp


logger = logging.getLogger(__name__)

OWNERS_LAST_BLOCK = "owners_last_block"
SALES_ONCHAIN_LAST_BLOCK = "sales_onchain_last_block"
SALES_LAST_SYNCED = "sales_last_synced"


def _sort_key(value: str):
    # Block numbers compare numerically, timestamps as UTC instants.
    if value.isdigit():
        return (0, int(value), "")
    parsed = parse_timestamp(value)
    return (1, 0, parsed.isoformat(timespec="microseconds") if parsed else value)


def is_regression(current: Optional[str], new: str) -> bool:
    if current is None:
        return False
    return _sort_key(new) < _sort_key(current)


class CheckpointStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Stored value for ``key``, or ``None`` before the first write."""

    @abstractmethod
    def _write(self, key: str, value: str) -> None:
        """Persist ``value`` unconditionally; ``set`` does the ordering check."""

    def set(self, key: str, value) -> None:
        value = str(value)
        current = self.get(key)
        if is_regression(current, value):
            logger.warning("Refusing to move checkpoint %s back from %s to %s", key, current, value)
            return
        self._write(key, value)
        logger.info("Checkpoint %s -> %s", key, value)

    def get_block(self, key: str) -> Optional[int]:
        value = self.get(key)
        return int(value) if value is not None else None


class MemoryCheckpointStore(CheckpointStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.values: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    def _write(self, key: str, value: str) -> None:
        self.values[key] = value


class FileCheckpointStore(CheckpointStore):
    """JSON state file, rewritten in full on every update."""

    def __init__(self, path: str = "state.json") -> None:
        self.path = Path(path)

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError:
            logger.error("State file %s is not valid JSON, starting from scratch", self.path)
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def _write(self, key: str, value: str) -> None:
        state = self._load()
        state[key] = value
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(state, indent=2, sort_keys=True))
        tmp.replace(self.path)


class SqlCheckpointStore(CheckpointStore):
    """``sync_state`` key/value table living next to the ledger."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, key: str) -> Optional[str]:
        with self.engine.connect() as conn:
            return conn.execute(select(SyncState.value).where(SyncState.key == key)).scalar_one_or_none()

    def _write(self, key: str, value: str) -> None:
        table = SyncState.__table__
        with self.engine.begin() as conn:
            updated = conn.execute(
                table.update().where(table.c.key == key).values(value=value, updated_at=utcnow())
            ).rowcount
            if not updated:
                conn.execute(table.insert().values(key=key, value=value, updated_at=utcnow()))
