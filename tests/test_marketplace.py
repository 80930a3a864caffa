from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

import pytest
import requests

from collection_ledger.config import ConfigError
from collection_ledger.extractors.marketplace import MarketplaceApiError, MarketplaceClient, parse_collection_summary

from conftest import response, sale_item


BASE_URL = "https://api.example.test/v3/rtp/berachain"


@pytest.fixture
def client():
    return MarketplaceClient(BASE_URL, "secret", "mibera333", contract_address="0x" + "c0" * 20, page_sleep=0)


def backoff_delays(sleep_mock):
    # Rate-limit pauses are sub-second; backoff delays are whole seconds here.
    return [c.args[0] for c in sleep_mock.call_args_list if c.args[0] >= 1.0]


def test_missing_api_key_is_a_config_error():
    with pytest.raises(ConfigError):
        MarketplaceClient(BASE_URL, "", "mibera333")


def test_bearer_header_is_sent(client):
    assert client.http.session.headers["Authorization"] == "Bearer secret"


def test_persistent_429_raises_after_three_calls(client, sleep):
    with patch.object(client.http.session, "request", return_value=response(429)) as request:
        with pytest.raises(MarketplaceApiError) as excinfo:
            client.list_recent_sales()
    assert request.call_count == 3
    assert excinfo.value.status == 429
    assert excinfo.value.endpoint == "/sales/v6"
    assert backoff_delays(sleep) == [1.0, 2.0]


def test_429_then_success_takes_two_calls(client, sleep):
    pages = [response(429), response(200, {"sales": [sale_item("s1", 7, 1700000000)]})]
    with patch.object(client.http.session, "request", side_effect=pages) as request:
        page = client.list_recent_sales()
    assert request.call_count == 2
    assert [r.token_id for r in page.records] == [7]
    assert backoff_delays(sleep) == [1.0]


def test_server_error_is_retried(client, sleep):
    pages = [response(503), response(502), response(200, {"sales": []})]
    with patch.object(client.http.session, "request", side_effect=pages) as request:
        page = client.list_recent_sales()
    assert request.call_count == 3
    assert page.records == []


def test_connection_error_is_retried(client, sleep):
    pages = [requests.ConnectionError("reset"), response(200, {"sales": []})]
    with patch.object(client.http.session, "request", side_effect=pages) as request:
        client.list_recent_sales()
    assert request.call_count == 2


def test_404_fails_after_one_call(client, sleep):
    with patch.object(client.http.session, "request", return_value=response(404)) as request:
        with pytest.raises(MarketplaceApiError) as excinfo:
            client.get_collection_summary()
    assert request.call_count == 1
    assert excinfo.value.status == 404
    assert backoff_delays(sleep) == []


def test_sales_are_mapped_to_records(client, sleep):
    body = {"sales": [sale_item("s1", 42, 1700000000, price="2.25"), {"saleId": "broken"}]}
    with patch.object(client.http.session, "request", return_value=response(200, body)):
        page = client.list_recent_sales(page_size=50)

    assert len(page.records) == 1
    record = page.records[0]
    assert record.token_id == 42
    assert record.price == Decimal("2.25")
    assert record.sold_at == datetime(2023, 11, 14, 22, 13, 20)
    assert record.buyer_address == "0x" + "b0" * 20
    assert record.seller_address == "0x" + "a1" * 20
    assert record.marketplace == "magiceden"
    assert record.source_id == "s1"
    assert page.next_cursor is None


def test_cursor_is_forwarded_verbatim(client, sleep):
    pages = [
        response(200, {"sales": [sale_item("s2", 2, 1700000200)], "continuation": "YWJj+/=="}),
        response(200, {"sales": [sale_item("s1", 1, 1700000100)]}),
    ]
    with patch.object(client.http.session, "request", side_effect=pages) as request:
        records = list(client.iter_sales_since(None))

    assert request.call_count == 2
    first_params = request.call_args_list[0].kwargs["params"]
    second_params = request.call_args_list[1].kwargs["params"]
    assert "continuation" not in first_params
    assert second_params["continuation"] == "YWJj+/=="
    assert first_params["sortBy"] == "time"
    assert first_params["sortDirection"] == "desc"
    assert first_params["collection"] == "mibera333"
    assert [r.source_id for r in records] == ["s2", "s1"]


def test_iteration_stops_at_checkpoint(client, sleep):
    last_synced = datetime(2023, 11, 14, 22, 15, 0)
    page = {
        "sales": [
            sale_item("new", 3, 1700000200),
            sale_item("old", 2, 1700000100),
        ],
        "continuation": "more",
    }
    with patch.object(client.http.session, "request", return_value=response(200, page)) as request:
        records = list(client.iter_sales_since(last_synced))

    assert request.call_count == 1
    assert [r.source_id for r in records] == ["new"]


def test_pages_are_yielded_before_a_later_page_fails(client, sleep):
    pages = [
        response(200, {"sales": [sale_item("s2", 2, 1700000200)], "continuation": "next"}),
        response(503),
        response(503),
        response(503),
    ]
    with patch.object(client.http.session, "request", side_effect=pages):
        iterator = client.iter_pages_since(None)
        first = next(iterator)
        with pytest.raises(MarketplaceApiError) as excinfo:
            next(iterator)

    assert [r.source_id for r in first] == ["s2"]
    assert excinfo.value.status == 503
    assert excinfo.value.endpoint == "/sales/v6"


def test_summary_from_collections_array():
    payload = {
        "collections": [
            {
                "floorAsk": {"price": {"amount": {"native": 4.2}}},
                "volume": {"1day": 10, "7day": 70.5, "30day": "300", "allTime": 12345.25},
                "salesCount": "812",
                "ownerCount": 1999,
            }
        ]
    }
    summary = parse_collection_summary(payload)
    assert summary.floor_price == Decimal("4.2")
    assert summary.volume_24h == Decimal("10")
    assert summary.volume_7d == Decimal("70.5")
    assert summary.volume_30d == Decimal("300")
    assert summary.volume_all_time == Decimal("12345.25")
    assert summary.total_sales == 812
    assert summary.total_holders == 1999


def test_summary_from_flat_shape_with_missing_fields():
    summary = parse_collection_summary({"floorPrice": "3.5", "ownerCount": 10})
    assert summary.floor_price == Decimal("3.5")
    assert summary.total_holders == 10
    assert summary.volume_24h is None
    assert summary.total_sales is None


def test_summary_falls_back_to_lowest_ask(client, sleep):
    pages = [
        response(200, {"collections": [{"volume": {"1day": 1}}]}),
        response(200, {"orders": [{"price": {"amount": {"native": 5.75}}}]}),
    ]
    with patch.object(client.http.session, "request", side_effect=pages) as request:
        summary = client.get_collection_summary()

    assert summary.floor_price == Decimal("5.75")
    assert request.call_args_list[1].kwargs["params"]["status"] == "active"
