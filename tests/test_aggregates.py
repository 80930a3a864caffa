from datetime import datetime
from decimal import Decimal

import pandas as pd

from collection_ledger.transformers.aggregates import compute_rarity_ranks, compute_sale_stats


def ranks_in_order(scores):
    ranks = compute_rarity_ranks(dict(enumerate(scores, start=1)))
    return [ranks[i] for i in range(1, len(scores) + 1)]


def test_rank_distinct_scores():
    assert ranks_in_order([50, 80, 30, 95, 70]) == [4, 2, 5, 1, 3]


def test_rank_ties_share_and_skip():
    assert ranks_in_order([90, 80, 80, 70, 80]) == [1, 2, 2, 5, 2]
    assert ranks_in_order([95, 80, 80, 80, 70]) == [1, 2, 2, 2, 5]


def test_rank_all_equal():
    assert ranks_in_order([12.5, 12.5, 12.5]) == [1, 1, 1]


def test_rank_empty():
    assert compute_rarity_ranks({}) == {}


def sales_df(rows):
    return pd.DataFrame(rows, columns=["id", "token_id", "price", "sold_at"])


def test_sale_stats_per_token():
    jan, feb, mar = datetime(2024, 1, 1), datetime(2024, 2, 1), datetime(2024, 3, 1)
    df = sales_df([
        (1, 10, Decimal("2.5"), jan),
        (2, 10, Decimal("9"), feb),
        (3, 10, Decimal("4"), mar),
        (4, 11, Decimal("1"), feb),
    ])
    stats = {row["token_id"]: row for row in compute_sale_stats(df)}

    assert stats[10]["sale_count"] == 3
    assert stats[10]["last_sale_price"] == Decimal("4")
    assert stats[10]["last_sale_date"] == mar
    assert stats[10]["max_sale_price"] == Decimal("9")
    assert stats[10]["max_sale_date"] == feb
    assert stats[11]["sale_count"] == 1
    assert stats[11]["last_sale_price"] == stats[11]["max_sale_price"] == Decimal("1")


def test_sale_stats_tie_breaks():
    same_time = datetime(2024, 5, 5, 5, 5)
    df = sales_df([
        (7, 1, Decimal("3"), datetime(2024, 1, 1)),
        (8, 1, Decimal("3"), same_time),
        (9, 1, Decimal("2"), same_time),
    ])
    [stats] = compute_sale_stats(df)

    # latest sold_at tie -> later insertion; max price tie -> earlier insertion
    assert stats["last_sale_price"] == Decimal("2")
    assert stats["max_sale_date"] == datetime(2024, 1, 1)


def test_sale_stats_empty():
    assert compute_sale_stats(sales_df([])) == []
