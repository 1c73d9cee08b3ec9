"""Tests for ingest.lib.datakinds module."""

import asyncio
from datetime import date
from unittest.mock import AsyncMock

import pytest

from ingest.lib.datakinds import (
    DEFAULT_DATA_KINDS,
    DataKind,
    LookbackWindow,
    extract_records,
    parse_data_kinds,
)
from ingest.lib.errors import ConfigurationError, ValidationFailureError
from ingest.lib.sink import MemorySink

PRICES = DataKind(
    name="stock_prices",
    endpoint="/historical-price-full/{entity}",
    table="stock_prices",
    data_path="historical",
    date_window=True,
)

INCOME = DataKind(
    name="income_statements",
    endpoint="/income-statement/{entity}",
    table="income_statements",
    period="quarter",
    params={"limit": 4},
)


class TestExtractRecords:
    def test_list_response(self):
        assert extract_records([{"a": 1}, "junk"]) == [{"a": 1}]

    def test_nested_path(self):
        data = {"symbol": "AAPL", "historical": [{"date": "2026-01-02"}]}
        assert extract_records(data, "historical") == [{"date": "2026-01-02"}]

    def test_missing_path_is_empty(self):
        assert extract_records({"symbol": "AAPL"}, "historical") == []

    def test_single_object_is_one_record(self):
        assert extract_records({"date": "2026-01-02"}) == [{"date": "2026-01-02"}]
        assert extract_records({}) == []
        assert extract_records(None) == []

    def test_unexpected_shape(self):
        with pytest.raises(ValidationFailureError):
            extract_records("oops")


class TestDataKind:
    def test_key_fields_include_period_when_set(self):
        assert PRICES.key_fields == ("symbol", "date")
        assert INCOME.key_fields == ("symbol", "date", "period")

    def test_request_params(self):
        window = LookbackWindow.last_days(7, today=date(2026, 1, 10))
        assert PRICES.request_params(window) == {"from": "2026-01-03", "to": "2026-01-10"}
        assert INCOME.request_params(window) == {"limit": 4, "period": "quarter"}

    def test_prepare_stamps_entity_and_drops_undated(self):
        rows = INCOME.prepare("AAPL", [{"date": "2025-12-31", "revenue": 1}, {"revenue": 2}])
        assert rows == [{"date": "2025-12-31", "revenue": 1, "symbol": "AAPL", "period": "quarter"}]

    def test_load_fetches_and_upserts(self):
        governor = AsyncMock()
        governor.make_request.return_value = {
            "symbol": "AAPL",
            "historical": [
                {"date": "2026-01-02", "close": 1.0},
                {"date": "2026-01-03", "close": 2.0},
            ],
        }
        sink = MemorySink()
        window = LookbackWindow(date(2026, 1, 1), date(2026, 1, 5))

        written = asyncio.run(PRICES.load("AAPL", governor, sink, window))

        assert written == 2
        governor.make_request.assert_awaited_once_with(
            "/historical-price-full/AAPL", {"from": "2026-01-01", "to": "2026-01-05"}
        )
        assert {r["symbol"] for r in sink.rows("stock_prices")} == {"AAPL"}

    def test_load_with_no_records_skips_sink(self):
        governor = AsyncMock()
        governor.make_request.return_value = []
        sink = MemorySink()

        assert asyncio.run(INCOME.load("AAPL", governor, sink)) == 0
        assert sink.writes == 0

    def test_default_kinds_have_entity_placeholder(self):
        assert all("{entity}" in k.endpoint for k in DEFAULT_DATA_KINDS)
        assert len({k.name for k in DEFAULT_DATA_KINDS}) == len(DEFAULT_DATA_KINDS)


class TestParseDataKinds:
    def test_valid_entries(self):
        kinds = parse_data_kinds(
            [
                {"name": "quotes", "endpoint": "/quote/{entity}", "table": "quotes", "timestamp_field": "timestamp"},
                {"name": "prices", "endpoint": "/historical-price-full/{entity}", "table": "prices", "date_window": True},
            ]
        )
        assert [k.name for k in kinds] == ["quotes", "prices"]
        assert kinds[0].key_fields == ("symbol", "timestamp")

    def test_collects_all_issues(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_data_kinds(
                [
                    {"name": "a", "endpoint": "/quote", "table": "t"},
                    {"name": "b", "table": "t"},
                    {"name": "c", "endpoint": "/x/{entity}", "table": "t", "colour": "red"},
                    "nope",
                ]
            )
        issues = exc_info.value.issues
        assert len(issues) == 4
        assert any("{entity}" in i for i in issues)
        assert any("missing: endpoint" in i for i in issues)
        assert any("colour" in i for i in issues)

    def test_duplicate_names(self):
        entry = {"name": "a", "endpoint": "/x/{entity}", "table": "t"}
        with pytest.raises(ConfigurationError):
            parse_data_kinds([entry, dict(entry)])

    def test_not_a_list(self):
        with pytest.raises(ConfigurationError):
            parse_data_kinds({"name": "a"})
