"""Tests for Polymarket record parsing and the provider's pagination."""

from datetime import datetime
from unittest.mock import AsyncMock

import aiohttp
import pytest

from wallet_pnl.database.models import MarketStatus, TradeSide
from wallet_pnl.errors import MalformedTradeError, UpstreamError
from wallet_pnl.platforms.polymarket import (
    TRADES_PAGE_SIZE, PolymarketProvider,
    assign_sequences, drop_duplicate_records, parse_market, parse_position, parse_side, parse_timestamp, parse_trade_item,
)

WALLET = "0x" + "a" * 40


def _trade_item(**overrides):
    item = {
        "transactionHash": "0xABC123",
        "conditionId": "0xcond",
        "timestamp": 1736949600,
        "side": "BUY",
        "price": 0.42,
        "size": 25,
        "outcomeIndex": 1,
        "title": "Will it rain?",
    }
    item.update(overrides)
    return item


@pytest.fixture
def provider():
    return PolymarketProvider({'data_api_url': 'https://data.test/', 'clob_url': 'https://clob.test'})


class TestParseTimestamp:
    def test_seconds_and_milliseconds_agree(self):
        assert parse_timestamp(1736949600) == parse_timestamp(1736949600000)
        assert parse_timestamp("1736949600") == datetime(2025, 1, 15, 14, 0, 0)

    def test_iso_with_offset_is_normalized_to_utc(self):
        assert parse_timestamp("2025-01-15T16:00:00+02:00") == datetime(2025, 1, 15, 14, 0, 0)
        assert parse_timestamp("2025-01-15T14:00:00Z") == datetime(2025, 1, 15, 14, 0, 0)

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            parse_timestamp(None)


class TestParseTrade:
    def test_valid_record(self):
        trade = parse_trade_item(_trade_item())
        assert trade.tx_hash == "0xabc123"
        assert trade.side == TradeSide.BUY
        assert trade.outcome == 1
        assert trade.log_index is None
        assert trade.cost == pytest.approx(10.5)
        assert trade.market_title == "Will it rain?"

    def test_sell_cost_is_negative(self):
        trade = parse_trade_item(_trade_item(side="SELL"))
        assert trade.cost == pytest.approx(-10.5)

    @pytest.mark.parametrize("missing", ["transactionHash", "conditionId", "timestamp", "price"])
    def test_missing_required_field(self, missing):
        item = _trade_item()
        del item[missing]
        with pytest.raises(MalformedTradeError):
            parse_trade_item(item)

    @pytest.mark.parametrize("overrides", [
        {"size": 0},
        {"price": 1.5},
        {"side": "HOLD"},
        {"fee": -1},
        {"price": "abc"},
    ])
    def test_invalid_values(self, overrides):
        with pytest.raises(MalformedTradeError):
            parse_trade_item(_trade_item(**overrides))

    def test_non_object_record_rejected(self):
        with pytest.raises(MalformedTradeError):
            parse_trade_item(["0xabc", 0.5])

    def test_parse_side_variants(self):
        assert parse_side("sell") == TradeSide.SELL
        assert parse_side("MARKET_BUY") == TradeSide.BUY


class TestAssignSequences:
    def test_fills_missing_log_index_deterministically(self):
        a = parse_trade_item(_trade_item(price=0.5, size=10))
        b = parse_trade_item(_trade_item(price=0.4, size=10))
        c = parse_trade_item(_trade_item(transactionHash="0xother"))

        assign_sequences([a, b, c])
        first = (a.log_index, b.log_index)
        a.log_index = b.log_index = None
        assign_sequences([b, a])

        assert sorted(first) == [0, 1]
        assert (a.log_index, b.log_index) == first
        assert c.log_index == 0

    def test_explicit_log_index_untouched(self):
        t = parse_trade_item(_trade_item(logIndex=7))
        assign_sequences([t])
        assert t.log_index == 7

    def test_repeated_record_kept_once(self):
        copies = [parse_trade_item(_trade_item()) for _ in range(2)]
        other = parse_trade_item(_trade_item(price=0.4))

        unique = assign_sequences(drop_duplicate_records(copies + [other]))

        assert len(unique) == 2
        assert sorted(t.log_index for t in unique) == [0, 1]


class TestParseMarket:
    def test_resolved_market(self):
        market = parse_market({
            "condition_id": "0xcond",
            "question": "Will it rain?",
            "closed": True,
            "tokens": [
                {"token_id": "t0", "outcome": "Yes", "winner": False},
                {"token_id": "t1", "outcome": "No", "winner": True},
            ],
        })
        assert market.status == MarketStatus.RESOLVED
        assert market.resolution_prices == [0.0, 1.0]
        assert market.outcomes[1] == {"name": "No", "index": 1, "token_id": "t1"}

    def test_closed_without_winner(self):
        market = parse_market({"condition_id": "0xc", "closed": True, "tokens": [{"outcome": "Yes"}]})
        assert market.status == MarketStatus.CLOSED
        assert market.resolution_prices is None

    def test_open_market(self):
        market = parse_market({"condition_id": "0xc", "active": True, "accepting_orders": True, "tokens": []})
        assert market.status == MarketStatus.OPEN

    def test_missing_id(self):
        assert parse_market({"question": "?"}) is None


class TestParsePosition:
    def test_fields(self):
        pos = parse_position({
            "conditionId": "0xcond", "outcome": "No", "size": "12.5", "avgPrice": 0.3,
            "initialValue": 3.75, "currentValue": 5.0, "cashPnl": 1.25,
        })
        assert pos.outcome == 1
        assert pos.size == 12.5
        assert pos.cash_pnl == 1.25


class TestProvider:
    async def test_fetch_trades_paginates_and_counts_malformed(self, provider):
        full_page = [_trade_item(transactionHash=f"0x{i:04x}") for i in range(TRADES_PAGE_SIZE)]
        last_page = [_trade_item(transactionHash="0xlast"), {"conditionId": "0xcond"}]
        provider._request = AsyncMock(side_effect=[full_page, last_page])

        batch = await provider.fetch_trades(WALLET, since=datetime(2025, 1, 1))

        assert provider._request.await_count == 2
        assert provider._request.await_args_list[1].kwargs["params"]["offset"] == TRADES_PAGE_SIZE
        assert len(batch.trades) == TRADES_PAGE_SIZE + 1
        assert len(batch.malformed) == 1
        assert batch.fetched == TRADES_PAGE_SIZE + 2
        assert all(t.log_index == 0 for t in batch.trades)

    async def test_fetch_trades_applies_window(self, provider):
        provider._request = AsyncMock(return_value=[
            _trade_item(transactionHash="0xold", timestamp=1600000000),
            _trade_item(transactionHash="0xnew"),
        ])

        batch = await provider.fetch_trades(WALLET, since=datetime(2025, 1, 1))

        assert [t.tx_hash for t in batch.trades] == ["0xnew"]

    async def test_request_wraps_client_errors(self, provider):
        provider._get_json = AsyncMock(side_effect=aiohttp.ClientError("boom"))

        with pytest.raises(UpstreamError):
            await provider.fetch_trades(WALLET, since=datetime(2025, 1, 1))

    async def test_fetch_markets_skips_failures(self, provider):
        async def _request(url, params=None):
            if url.endswith("/bad"):
                raise UpstreamError("HTTP 500")
            return {"condition_id": url.rsplit("/", 1)[-1], "question": "Q", "tokens": []}

        provider._request = AsyncMock(side_effect=_request)

        markets = await provider.fetch_markets(["good", "bad"])

        assert list(markets) == ["good"]

    async def test_fetch_prices_uses_midpoint(self, provider):
        provider._request = AsyncMock(side_effect=[{"mid": "0.61"}, None])

        prices = await provider.fetch_prices(["t0", "t1"])

        assert prices == {"t0": 0.61}
        assert provider._request.await_args_list[0].args[0] == "https://clob.test/midpoint"

    async def test_base_urls_normalized(self, provider):
        assert provider.data_api_url == "https://data.test"

    async def test_record_repeated_across_pages_counted_once(self, provider):
        # A trade landing between requests pushes the last record of page one
        # onto the head of page two
        first_page = [_trade_item(transactionHash=f"0x{i:04x}") for i in range(TRADES_PAGE_SIZE)]
        second_page = [first_page[-1].copy(), _trade_item(transactionHash="0xtail")]
        provider._request = AsyncMock(side_effect=[first_page, second_page])

        batch = await provider.fetch_trades(WALLET, since=datetime(2025, 1, 1))

        assert len(batch.trades) == TRADES_PAGE_SIZE + 1
        keys = {(t.tx_hash, t.log_index) for t in batch.trades}
        assert len(keys) == len(batch.trades)

    async def test_paging_stops_once_past_window(self, provider):
        old_page = [
            _trade_item(transactionHash=f"0x{i:04x}", timestamp=1736949600 - i * 3600)
            for i in range(TRADES_PAGE_SIZE)
        ]
        provider._request = AsyncMock(side_effect=[old_page, AssertionError("fetched too far back")])

        batch = await provider.fetch_trades(WALLET, since=datetime(2025, 1, 15))

        assert provider._request.await_count == 1
        assert all(t.block_time >= datetime(2025, 1, 15) for t in batch.trades)
        assert len(batch.trades) == 15

    async def test_undecodable_body_is_upstream_error(self, provider):
        provider._get_json = AsyncMock(side_effect=ValueError("Expecting value: line 1 column 1"))

        with pytest.raises(UpstreamError):
            await provider.fetch_trades(WALLET, since=datetime(2025, 1, 1))

    async def test_non_list_payload_is_upstream_error(self, provider):
        provider._request = AsyncMock(return_value="<html>maintenance</html>")

        with pytest.raises(UpstreamError):
            await provider.fetch_trades(WALLET, since=datetime(2025, 1, 1))

    async def test_non_object_items_counted_as_malformed(self, provider):
        provider._request = AsyncMock(return_value=[_trade_item(), "garbage", 42])

        batch = await provider.fetch_trades(WALLET, since=datetime(2025, 1, 1))

        assert len(batch.trades) == 1
        assert len(batch.malformed) == 2
