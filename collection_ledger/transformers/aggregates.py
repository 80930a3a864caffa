from typing import Dict, List, Mapping

import pandas as pd


STATS_COLUMNS = [
    "token_id",
    "sale_count",
    "last_sale_price",
    "last_sale_date",
    "max_sale_price",
    "max_sale_date",
]


def compute_sale_stats(sales: pd.DataFrame) -> List[Dict]:
    """Per-token sale statistics from ledger rows.

    ``sales`` needs ``id``, ``token_id``, ``price`` and ``sold_at`` columns;
    ``id`` is the insertion order. The last sale is the row with the latest
    ``sold_at`` (ties: latest inserted); the max sale is the row with the
    highest price (ties: earliest inserted).
    """
    if sales.empty:
        return []
    df = sales[["id", "token_id", "price", "sold_at"]].copy()
    df["price"] = df["price"].astype(object)

    by_time = df.sort_values(["token_id", "sold_at", "id"], kind="mergesort")
    last = by_time.groupby("token_id", sort=True).tail(1).set_index("token_id")

    # Decimal prices are object dtype; rank them via a stable python sort.
    ordered = sorted(df.itertuples(index=False), key=lambda r: (r.token_id, -r.price, r.id))
    best = {}
    for row in ordered:
        best.setdefault(row.token_id, row)

    counts = df.groupby("token_id", sort=True).size()
    stats = []
    for token_id, count in counts.items():
        last_row = last.loc[token_id]
        max_row = best[token_id]
        stats.append(
            {
                "token_id": int(token_id),
                "sale_count": int(count),
                "last_sale_price": last_row["price"],
                "last_sale_date": pd.Timestamp(last_row["sold_at"]).to_pydatetime(),
                "max_sale_price": max_row.price,
                "max_sale_date": pd.Timestamp(max_row.sold_at).to_pydatetime(),
            }
        )
    return stats


def compute_rarity_ranks(scores: Mapping[int, float]) -> Dict[int, int]:
    """RANK() over score descending: ``1 + #tokens with a strictly greater
    score``. Ties share a rank and the following rank skips, so
    ``[95, 80, 80, 80, 70]`` ranks as ``[1, 2, 2, 2, 5]``."""
    if not scores:
        return {}
    series = pd.Series(scores, dtype="float64")
    ranks = series.rank(method="min", ascending=False)
    return {int(token_id): int(rank) for token_id, rank in ranks.items()}
