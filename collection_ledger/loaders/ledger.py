import logging
from dataclasses import asdict, is_dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import pandas as pd
from sqlalchemy import create_engine, delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from collection_ledger.loaders.models import (
    Base,
    CollectionStatsSnapshot,
    RarityRank,
    Sale,
    Token,
    TokenOwner,
    TokenSaleStats,
    utcnow,
)
from collection_ledger.transformers.aggregates import compute_rarity_ranks, compute_sale_stats
from collection_ledger.transformers.owners import OwnerFold
from collection_ledger.transformers.sales import SaleRecord, frame_to_rows, sales_frame


logger = logging.getLogger(__name__)

IN_CLAUSE_CHUNK = 500


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite") and (url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url):
        return create_engine(url, poolclass=StaticPool, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def chunked(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    size = max(size, 1)
    for i in range(0, len(items), size):
        yield items[i:i + size]


class Ledger:
    """Idempotent writer (and read access) for the sales/ownership ledger."""

    def __init__(self, engine: Engine, sale_chunk_size: int = 100, owner_chunk_size: int = 500) -> None:
        self.engine = engine
        self.sale_chunk_size = sale_chunk_size
        self.owner_chunk_size = owner_chunk_size

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "Ledger":
        return cls(make_engine(url), **kwargs)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def _insert(self, model):
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            return postgresql.insert(model)
        if dialect == "sqlite":
            return sqlite.insert(model)
        raise NotImplementedError(f"Upserts are not implemented for dialect {dialect}")

    # Writes

    def insert_sales(self, records: Iterable[SaleRecord]) -> int:
        """Insert new sales; rows colliding on ``(transaction_hash, token_id)``
        or ``source_id`` are skipped. Returns the number inserted."""
        df = sales_frame(records)
        if df.empty:
            return 0
        rows = frame_to_rows(df)
        inserted = 0
        with self.engine.begin() as conn:
            for chunk in chunked(rows, self.sale_chunk_size):
                stmt = self._insert(Sale).values(list(chunk)).on_conflict_do_nothing()
                inserted += max(conn.execute(stmt).rowcount, 0)
        logger.info("Inserted %d new sales (%d duplicates skipped)", inserted, len(rows) - inserted)
        return inserted

    def update_owners(self, fold: OwnerFold, with_counts: bool = False) -> int:
        """Flush an owner fold. An existing row set at a higher block wins.

        ``with_counts`` writes absolute transfer counts and is only meant for
        a full rescan from the deploy block.
        """
        rows = [
            {
                "token_id": token_id,
                "owner_address": owner,
                "last_block": block,
                "transfer_count": fold.transfer_counts.get(token_id, 0) if with_counts else 0,
            }
            for token_id, (owner, block) in sorted(fold.owners.items())
        ]
        if not rows:
            return 0
        table = TokenOwner.__table__
        with self.engine.begin() as conn:
            for chunk in chunked(rows, self.owner_chunk_size):
                stmt = self._insert(TokenOwner).values(list(chunk))
                updates = {
                    "owner_address": stmt.excluded.owner_address,
                    "last_block": stmt.excluded.last_block,
                }
                if with_counts:
                    updates["transfer_count"] = stmt.excluded.transfer_count
                stmt = stmt.on_conflict_do_update(
                    index_elements=[table.c.token_id],
                    set_=updates,
                    where=table.c.last_block <= stmt.excluded.last_block,
                )
                conn.execute(stmt)
        logger.info("Updated owners for %d tokens", len(rows))
        return len(rows)

    def recompute_sale_stats(self, token_ids: Iterable[int]) -> int:
        """Rebuild stats rows for ``token_ids`` from their full sale history."""
        ids = sorted(set(int(t) for t in token_ids))
        if not ids:
            return 0
        written = 0
        with self.engine.begin() as conn:
            for chunk in chunked(ids, IN_CLAUSE_CHUNK):
                result = conn.execute(
                    select(Sale.id, Sale.token_id, Sale.price, Sale.sold_at).where(Sale.token_id.in_(chunk))
                )
                frame = pd.DataFrame([dict(row) for row in result.mappings()], columns=["id", "token_id", "price", "sold_at"])
                stats = compute_sale_stats(frame)
                conn.execute(delete(TokenSaleStats).where(TokenSaleStats.token_id.in_(chunk)))
                if stats:
                    conn.execute(self._insert(TokenSaleStats).values(stats))
                written += len(stats)
        logger.info("Recomputed sale stats for %d tokens", written)
        return written

    def recompute_rarity_ranks(self) -> int:
        """Replace the whole rank table from ``tokens.score``."""
        with self.engine.begin() as conn:
            query = select(Token.token_id, Token.score).where(Token.score.is_not(None))
            ranks = compute_rarity_ranks({row.token_id: row.score for row in conn.execute(query)})
            conn.execute(delete(RarityRank))
            rows = [{"token_id": token_id, "rank": rank} for token_id, rank in sorted(ranks.items())]
            for chunk in chunked(rows, self.owner_chunk_size):
                conn.execute(self._insert(RarityRank).values(list(chunk)))
        logger.info("Ranked %d tokens", len(ranks))
        return len(ranks)

    def record_collection_stats(self, summary: Any, captured_at: Optional[datetime] = None) -> None:
        values = asdict(summary) if is_dataclass(summary) else dict(summary)
        columns = {c.name for c in CollectionStatsSnapshot.__table__.columns}
        row = {k: v for k, v in values.items() if k in columns and k != "id"}
        row["captured_at"] = captured_at or utcnow()
        with self.engine.begin() as conn:
            conn.execute(self._insert(CollectionStatsSnapshot).values(row))

    def upsert_token_scores(self, scores: Dict[int, float]) -> None:
        """Seed ``tokens.score``; normally done by the metadata import."""
        if not scores:
            return
        rows = [{"token_id": token_id, "score": score} for token_id, score in sorted(scores.items())]
        with self.engine.begin() as conn:
            for chunk in chunked(rows, self.owner_chunk_size):
                stmt = self._insert(Token).values(list(chunk))
                stmt = stmt.on_conflict_do_update(index_elements=[Token.__table__.c.token_id], set_={"score": stmt.excluded.score})
                conn.execute(stmt)

    # Reads

    def sales(self, token_id: Optional[int] = None) -> List[Dict[str, Any]]:
        query = select(Sale.__table__).order_by(Sale.id)
        if token_id is not None:
            query = query.where(Sale.token_id == token_id)
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(query).mappings()]

    def owners(self) -> Dict[int, str]:
        with self.engine.connect() as conn:
            return {row.token_id: row.owner_address for row in conn.execute(select(TokenOwner.token_id, TokenOwner.owner_address))}

    def owner_rows(self) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(select(TokenOwner.__table__).order_by(TokenOwner.token_id)).mappings()]

    def sale_stats(self) -> Dict[int, Dict[str, Any]]:
        with self.engine.connect() as conn:
            return {row["token_id"]: dict(row) for row in conn.execute(select(TokenSaleStats.__table__)).mappings()}

    def token_scores(self) -> Dict[int, float]:
        query = select(Token.token_id, Token.score).where(Token.score.is_not(None))
        with self.engine.connect() as conn:
            return {row.token_id: row.score for row in conn.execute(query)}

    def rarity_ranks(self) -> Dict[int, int]:
        with self.engine.connect() as conn:
            return {row.token_id: row.rank for row in conn.execute(select(RarityRank.token_id, RarityRank.rank))}

    def collection_stats(self) -> List[Dict[str, Any]]:
        query = select(CollectionStatsSnapshot.__table__).order_by(CollectionStatsSnapshot.captured_at)
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(query).mappings()]
