import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
import pandera as pa
from pandera import Check, Column
from pandera.errors import SchemaError, SchemaErrors


logger = logging.getLogger(__name__)

NATIVE_DECIMALS = 18
SALE_COLUMNS = [
    "token_id",
    "price",
    "sold_at",
    "buyer_address",
    "seller_address",
    "transaction_hash",
    "marketplace",
    "source_id",
]


@dataclass(frozen=True)
class SaleRecord:
    token_id: int
    price: Decimal
    sold_at: datetime
    buyer_address: Optional[str]
    seller_address: Optional[str]
    transaction_hash: Optional[str]
    marketplace: str
    source_id: Optional[str] = None


def _is_non_negative_decimal(series: pd.Series) -> pd.Series:
    return series.map(lambda value: isinstance(value, Decimal) and value >= 0)


SALE_SCHEMA = pa.DataFrameSchema(
    {
        "token_id": Column(int, Check.ge(0)),
        "price": Column(object, Check(_is_non_negative_decimal)),
        "sold_at": Column("datetime64[ns]", coerce=True),
        "buyer_address": Column(str, Check.str_matches(r"^0x[a-f0-9]+$"), nullable=True),
        "seller_address": Column(str, Check.str_matches(r"^0x[a-f0-9]+$"), nullable=True),
        "transaction_hash": Column(str, Check.str_matches(r"^0x[a-f0-9]{64}$"), nullable=True),
        "marketplace": Column(str),
        "source_id": Column(str, nullable=True),
    }
)


def wei_to_native(wei: int, decimals: int = NATIVE_DECIMALS) -> Decimal:
    """Exact fixed-point conversion, e.g. ``10**18`` wei -> ``Decimal("1")``."""
    return Decimal(int(wei)).scaleb(-decimals)


def validate_sales(df: pd.DataFrame) -> pd.DataFrame:
    """Rows that pass ``SALE_SCHEMA``; failing rows are logged and dropped."""
    try:
        return SALE_SCHEMA.validate(df, lazy=True)
    except SchemaErrors as exc:
        logger.warning("Sale batch has %d schema failure(s), validating row by row", len(exc.failure_cases))
    valid = []
    for position in range(len(df)):
        row = df.iloc[[position]]
        try:
            valid.append(SALE_SCHEMA.validate(row))
        except SchemaError as exc:
            record = row.iloc[0]
            logger.warning(
                "Dropping invalid sale token=%s tx=%s source=%s: %s",
                record["token_id"], record["transaction_hash"], record["source_id"], exc,
            )
    if not valid:
        return pd.DataFrame(columns=SALE_COLUMNS)
    return pd.concat(valid, ignore_index=True)


def sales_frame(records: Iterable[SaleRecord]) -> pd.DataFrame:
    """Validated frame of sale rows, deduplicated inside the batch."""
    rows = [asdict(record) for record in records]
    if not rows:
        return pd.DataFrame(columns=SALE_COLUMNS)
    df = validate_sales(pd.DataFrame(rows, columns=SALE_COLUMNS))
    if df.empty:
        return df

    has_tx = df["transaction_hash"].notna()
    df = df[~(has_tx & df.duplicated(subset=["transaction_hash", "token_id"]))]
    has_source = df["source_id"].notna()
    df = df[~(has_source & df.duplicated(subset=["source_id"]))]
    return df.reset_index(drop=True)


def frame_to_rows(df: pd.DataFrame) -> List[Dict[str, Any]]:
    rows = []
    for row in df.to_dict("records"):
        sold_at = row["sold_at"]
        row["sold_at"] = sold_at.to_pydatetime() if isinstance(sold_at, pd.Timestamp) else sold_at
        for key in ("buyer_address", "seller_address", "transaction_hash", "source_id"):
            if pd.isna(row[key]):
                row[key] = None
        row["token_id"] = int(row["token_id"])
        rows.append(row)
    return rows


# Marketplace payload mapping

def dig(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value), 10)
    except ValueError:
        return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Unix seconds or ISO-8601 -> naive UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _address(value: Any) -> Optional[str]:
    return value.lower() if isinstance(value, str) and value else None


def sale_from_marketplace(item: Dict[str, Any], marketplace: str) -> Optional[SaleRecord]:
    token_id = to_int(dig(item, "token", "tokenId"))
    price = to_decimal(dig(item, "price", "amount", "native"))
    sold_at = parse_timestamp(item.get("timestamp") or item.get("createdAt"))
    if token_id is None or price is None or sold_at is None:
        logger.warning("Skipping unparseable marketplace sale: %s", item.get("saleId") or item.get("id") or item)
        return None
    source_id = item.get("saleId") or item.get("id")
    return SaleRecord(
        token_id=token_id,
        price=price,
        sold_at=sold_at,
        buyer_address=_address(item.get("buyer") or item.get("to")),
        seller_address=_address(item.get("seller") or item.get("from")),
        transaction_hash=_address(item.get("txHash")),
        marketplace=marketplace,
        source_id=str(source_id) if source_id else None,
    )
