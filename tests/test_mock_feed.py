"""Tests for the in-memory mock provider."""

from datetime import datetime, timedelta

from wallet_pnl.database.models import MarketStatus, TradeSide
from wallet_pnl.platforms.mock_feed import MOCK_MARKETS, MockProvider

WALLET = "0x" + "a" * 40


class TestGeneratedHistory:
    async def test_same_seed_same_history(self):
        a = MockProvider({'generate_trades': True, 'seed': 7})
        b = MockProvider({'generate_trades': True, 'seed': 7})

        first = await a.fetch_trades(WALLET, datetime(2000, 1, 1))
        second = await b.fetch_trades(WALLET, datetime(2000, 1, 1))

        assert [t.tx_hash for t in first.trades] == [t.tx_hash for t in second.trades]
        assert len(first.trades) == 20

    async def test_history_never_sells_more_than_held(self):
        provider = MockProvider({'generate_trades': True, 'trades_per_wallet': 60})
        batch = await provider.fetch_trades(WALLET, datetime(2000, 1, 1))

        held = {}
        for t in batch.trades:
            key = (t.condition_id, t.outcome)
            held[key] = held.get(key, 0.0) + (t.size if t.side == TradeSide.BUY else -t.size)
            assert held[key] >= 0


class TestSeeding:
    async def test_since_filter(self, make_raw_trade):
        provider = MockProvider()
        now = datetime(2025, 1, 15, 14, 0)
        provider.add_trade(WALLET, make_raw_trade(block_time=now - timedelta(days=2)))
        provider.add_trade(WALLET, make_raw_trade(block_time=now))

        batch = await provider.fetch_trades(WALLET.upper().replace("0X", "0x"), now - timedelta(days=1))

        assert len(batch.trades) == 1
        assert provider.fetch_count == 1

    async def test_resolve_market(self):
        provider = MockProvider()
        cid = MOCK_MARKETS[0]["condition_id"]

        provider.resolve_market(cid, 1)
        markets = await provider.fetch_markets([cid, "0xunknown"])

        assert list(markets) == [cid]
        assert markets[cid].status == MarketStatus.RESOLVED
        assert markets[cid].resolution_prices == [0.0, 1.0]

    async def test_prices_only_for_known_tokens(self):
        provider = MockProvider()
        provider.set_price("t0", 0.3)
        assert await provider.fetch_prices(["t0", "t1"]) == {"t0": 0.3}
