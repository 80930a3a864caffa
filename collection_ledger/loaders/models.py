"""Ledger tables. The dashboard reads them; only the sync jobs write."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class Price(TypeDecorator):
    """NUMERIC(38, 18) on real databases. SQLite has no decimal storage and
    rounds NUMERIC through a float, so there the exact text is stored."""

    impl = Numeric(38, 18)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(80))
        return dialect.type_descriptor(Numeric(38, 18))

    def process_bind_param(self, value, dialect):
        if value is None or dialect.name != "sqlite":
            return value
        return str(Decimal(str(value)))

    def process_result_value(self, value, dialect):
        if value is None or dialect.name != "sqlite":
            return value
        return Decimal(value)


PRICE = Price()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class Sale(Base):
    __tablename__ = "sales"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_id: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(PRICE, nullable=False)
    sold_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    buyer_address: Mapped[Optional[str]] = mapped_column(String(42))
    seller_address: Mapped[Optional[str]] = mapped_column(String(42))
    transaction_hash: Mapped[Optional[str]] = mapped_column(String(66))
    marketplace: Mapped[str] = mapped_column(String(50), nullable=False)
    source_id: Mapped[Optional[str]] = mapped_column(String(200))

    __table_args__ = (
        UniqueConstraint("transaction_hash", "token_id", name="uq_sales_tx_token"),
        UniqueConstraint("source_id", name="uq_sales_source_id"),
        Index("ix_sales_token_sold_at", "token_id", "sold_at"),
    )


class TokenOwner(Base):
    __tablename__ = "token_owners"

    token_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    owner_address: Mapped[str] = mapped_column(String(42), nullable=False)
    last_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transfer_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Token(Base):
    """Reference data from the metadata import; ``score`` feeds rarity."""

    __tablename__ = "tokens"

    token_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    score: Mapped[Optional[float]] = mapped_column(Numeric(20, 6, asdecimal=False))


class TokenSaleStats(Base):
    __tablename__ = "token_sale_stats"

    token_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    sale_count: Mapped[int] = mapped_column(Integer, nullable=False)
    last_sale_price: Mapped[Decimal] = mapped_column(PRICE, nullable=False)
    last_sale_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    max_sale_price: Mapped[Decimal] = mapped_column(PRICE, nullable=False)
    max_sale_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class RarityRank(Base):
    __tablename__ = "rarity_ranks"

    token_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)


class SyncState(Base):
    __tablename__ = "sync_state"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class CollectionStatsSnapshot(Base):
    __tablename__ = "collection_stats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    captured_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    floor_price: Mapped[Optional[Decimal]] = mapped_column(PRICE)
    volume_24h: Mapped[Optional[Decimal]] = mapped_column(PRICE)
    volume_7d: Mapped[Optional[Decimal]] = mapped_column(PRICE)
    volume_30d: Mapped[Optional[Decimal]] = mapped_column(PRICE)
    volume_all_time: Mapped[Optional[Decimal]] = mapped_column(PRICE)
    total_sales: Mapped[Optional[int]] = mapped_column(Integer)
    total_holders: Mapped[Optional[int]] = mapped_column(Integer)
