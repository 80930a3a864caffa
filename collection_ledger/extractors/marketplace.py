import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional

from collection_ledger.config import ConfigError, MarketplaceSettings
from collection_ledger.transformers.sales import SaleRecord, dig, sale_from_marketplace, to_decimal, to_int
from collection_ledger.utils.http import HttpClient, HttpError


logger = logging.getLogger(__name__)

SALES_ENDPOINT = "/sales/v6"
COLLECTIONS_ENDPOINT = "/collections/v7"
ASKS_ENDPOINT = "/orders/asks/v5"


class MarketplaceApiError(HttpError):
    """Raised with the final ``status`` and the endpoint path."""


@dataclass
class SalesPage:
    records: List[SaleRecord] = field(default_factory=list)
    next_cursor: Optional[str] = None


@dataclass
class CollectionSummary:
    floor_price: Optional[Decimal] = None
    volume_24h: Optional[Decimal] = None
    volume_7d: Optional[Decimal] = None
    volume_30d: Optional[Decimal] = None
    volume_all_time: Optional[Decimal] = None
    total_sales: Optional[int] = None
    total_holders: Optional[int] = None


def parse_collection_summary(payload: Any) -> CollectionSummary:
    """Accepts ``{"collections": [{...}]}`` as well as a bare collection object."""
    collections = dig(payload, "collections")
    col = collections[0] if isinstance(collections, list) and collections else payload
    if not isinstance(col, dict):
        return CollectionSummary()
    floor = dig(col, "floorAsk", "price", "amount", "native")
    if floor is None:
        floor = col.get("floorPrice")
    return CollectionSummary(
        floor_price=to_decimal(floor),
        volume_24h=to_decimal(dig(col, "volume", "1day")),
        volume_7d=to_decimal(dig(col, "volume", "7day")),
        volume_30d=to_decimal(dig(col, "volume", "30day")),
        volume_all_time=to_decimal(dig(col, "volume", "allTime")),
        total_sales=to_int(col.get("salesCount")),
        total_holders=to_int(col.get("ownerCount")),
    )


class MarketplaceClient:
    """Bearer-authenticated client for the marketplace's activity API.

    429 and 5xx responses are retried with 1s, 2s, ... backoff, at most
    ``max_retries`` calls in total; anything else non-2xx fails at once.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        collection: str,
        contract_address: str = "",
        tag: str = "magiceden",
        page_size: int = 100,
        page_sleep: float = 0.6,
        max_retries: int = 3,
        base_delay: float = 1.0,
        rate_limit_per_second: float = 5.0,
    ) -> None:
        if not api_key:
            raise ConfigError("Marketplace API key is not set (ME_BEARER_TOKEN)")
        if not collection:
            raise ConfigError("Marketplace collection slug is not set (ME_COLLECTION_SLUG)")
        self.collection = collection
        self.contract_address = contract_address.lower()
        self.tag = tag
        self.page_size = page_size
        self.page_sleep = page_sleep
        self.http = HttpClient(
            base_url,
            rate_limit_per_second=rate_limit_per_second,
            max_retries=max_retries,
            base_delay=base_delay,
            headers={"Authorization": f"Bearer {api_key}"},
        )
        self.http.error_class = MarketplaceApiError

    @classmethod
    def from_settings(cls, settings: MarketplaceSettings) -> "MarketplaceClient":
        return cls(
            settings.base_url,
            settings.api_key,
            settings.collection,
            contract_address=settings.contract_address,
            tag=settings.tag,
            page_size=settings.page_size,
            page_sleep=settings.page_sleep,
            max_retries=settings.max_retries,
            base_delay=settings.base_delay,
        )

    def list_recent_sales(self, page_size: Optional[int] = None, cursor: Optional[str] = None) -> SalesPage:
        params: Dict[str, Any] = {
            "collection": self.collection,
            "limit": page_size or self.page_size,
            "sortBy": "time",
            "sortDirection": "desc",
        }
        if cursor:
            params["continuation"] = cursor
        body = self.http.get(SALES_ENDPOINT, params=params) or {}
        records = []
        for item in body.get("sales") or []:
            record = sale_from_marketplace(item, self.tag)
            if record is not None:
                records.append(record)
        return SalesPage(records=records, next_cursor=body.get("continuation") or None)

    def iter_pages_since(self, last_synced: Optional[datetime], page_size: Optional[int] = None) -> Iterator[List[SaleRecord]]:
        """Pages of sales strictly newer than ``last_synced``, newest first.

        Stops at the first page without a cursor or as soon as a sale at or
        before ``last_synced`` shows up. A failing page raises
        :class:`MarketplaceApiError` after the earlier pages were yielded.
        """
        cursor = None
        pages = 0
        while True:
            page = self.list_recent_sales(page_size, cursor)
            pages += 1
            fresh = [r for r in page.records if last_synced is None or r.sold_at > last_synced]
            yield fresh
            if len(fresh) < len(page.records) or not page.next_cursor:
                logger.info("Read %d marketplace page(s)", pages)
                return
            cursor = page.next_cursor
            if self.page_sleep:
                time.sleep(self.page_sleep)

    def iter_sales_since(self, last_synced: Optional[datetime], page_size: Optional[int] = None) -> Iterator[SaleRecord]:
        for page in self.iter_pages_since(last_synced, page_size):
            yield from page

    def get_floor_price(self) -> Optional[Decimal]:
        if not self.contract_address:
            return None
        body = self.http.get(
            ASKS_ENDPOINT,
            params={"contracts": self.contract_address, "status": "active", "sortBy": "price", "limit": 1},
        ) or {}
        orders = body.get("orders") or []
        if not orders:
            return None
        return to_decimal(dig(orders[0], "price", "amount", "native"))

    def get_collection_summary(self) -> CollectionSummary:
        summary = parse_collection_summary(self.http.get(COLLECTIONS_ENDPOINT, params={"id": self.collection}))
        if summary.floor_price is None:
            summary.floor_price = self.get_floor_price()
        return summary
