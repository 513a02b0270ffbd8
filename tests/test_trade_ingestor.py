"""Tests for trade ingestion: dedup, watermark and failure isolation."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import delete, func, select

from wallet_pnl.database.models import Market, TrackedWallet, Trade, TradeSide, utcnow
from wallet_pnl.errors import UpstreamError
from wallet_pnl.ingestion.trade_ingestor import TradeIngestor
from wallet_pnl.platforms.base import TradeBatch
from wallet_pnl.platforms.polymarket import PolymarketProvider

WALLET = "0x" + "a" * 40
OTHER_WALLET = "0x" + "b" * 40


@pytest.fixture
def ingestor(db, provider):
    return TradeIngestor(db, [provider], fetch_timeout=1)


def _recent(minutes: int = 0) -> datetime:
    return utcnow() - timedelta(days=1) + timedelta(minutes=minutes)


async def _trade_count(db, wallet_id=None):
    stmt = select(func.count(Trade.id))
    if wallet_id is not None:
        stmt = stmt.where(Trade.wallet_id == wallet_id)
    async with db.session() as session:
        return (await session.execute(stmt)).scalar_one()


async def _reload(db, wallet_id):
    async with db.session() as session:
        return await session.get(TrackedWallet, wallet_id)


class TestDedup:
    async def test_inserts_new_trades(self, db, ingestor, provider, wallet, make_raw_trade):
        w = await wallet()
        for i in range(3):
            provider.add_trade(WALLET, make_raw_trade(block_time=_recent(i)))

        result = await ingestor.ingest_wallet(w)

        assert result.fetched == 3
        assert result.inserted == 3
        assert result.duplicates == 0
        assert not result.failed
        assert await _trade_count(db) == 3

    async def test_second_run_finds_nothing_new(self, db, ingestor, provider, wallet, make_raw_trade):
        w = await wallet()
        for i in range(3):
            provider.add_trade(WALLET, make_raw_trade(block_time=_recent(i)))
        await ingestor.ingest_wallet(w)

        result = await ingestor.ingest_wallet(await _reload(db, w.id))

        assert result.inserted == 0
        assert result.duplicates == 3
        assert await _trade_count(db) == 3

    async def test_same_tx_different_log_index_kept(self, db, ingestor, provider, wallet, make_raw_trade):
        w = await wallet()
        provider.add_trade(WALLET, make_raw_trade(tx_hash="0xsame", log_index=0, block_time=_recent()))
        provider.add_trade(WALLET, make_raw_trade(tx_hash="0xsame", log_index=1, block_time=_recent()))
        provider.add_trade(WALLET, make_raw_trade(tx_hash="0xsame", log_index=1, block_time=_recent()))

        result = await ingestor.ingest_wallet(w)

        assert result.inserted == 2
        assert result.duplicates == 1

    async def test_placeholder_market_created(self, db, ingestor, provider, wallet, make_raw_trade):
        w = await wallet()
        provider.add_trade(WALLET, make_raw_trade(
            condition_id="0xunseen", market_title="Unseen market", block_time=_recent(),
        ))

        await ingestor.ingest_wallet(w)

        async with db.session() as session:
            m = (await session.execute(
                select(Market).where(Market.condition_id == "0xunseen")
            )).scalar_one()
        assert m.title == "Unseen market"
        assert m.has_outcome(0) and m.has_outcome(1)

    async def test_record_repeated_by_upstream_stored_once(self, db, wallet):
        w = await wallet()
        item = {
            "transactionHash": "0xrepeat",
            "conditionId": "0xcond-test",
            "timestamp": int(_recent().replace(tzinfo=timezone.utc).timestamp()),
            "side": "BUY",
            "price": 0.4,
            "size": 10,
            "outcomeIndex": 0,
        }
        upstream = PolymarketProvider({})
        upstream._request = AsyncMock(return_value=[item, dict(item)])
        ingestor = TradeIngestor(db, [upstream], fetch_timeout=1)

        result = await ingestor.ingest_wallet(w)

        assert result.inserted == 1
        assert await _trade_count(db) == 1

    async def test_stored_cost_is_signed(self, db, ingestor, provider, wallet, make_raw_trade):
        w = await wallet()
        provider.add_trade(WALLET, make_raw_trade(side=TradeSide.BUY, price=0.4, size=10, block_time=_recent(0)))
        provider.add_trade(WALLET, make_raw_trade(side=TradeSide.SELL, price=0.5, size=4, block_time=_recent(1)))

        await ingestor.ingest_wallet(w)

        async with db.session() as session:
            costs = (await session.execute(select(Trade.cost).order_by(Trade.block_time))).scalars().all()
        assert costs == [pytest.approx(4.0), pytest.approx(-2.0)]


class TestCrashRecovery:
    async def test_lost_tail_is_refetched(self, db, ingestor, provider, wallet, make_raw_trade):
        w = await wallet()
        for i in range(4):
            provider.add_trade(WALLET, make_raw_trade(block_time=_recent(i)))
        await ingestor.ingest_wallet(w)

        # Simulate a crash that lost the last two inserts but kept the watermark
        async with db.session() as session:
            newest = (await session.execute(
                select(Trade.id).order_by(Trade.block_time.desc()).limit(2)
            )).scalars().all()
            await session.execute(delete(Trade).where(Trade.id.in_(newest)))

        result = await ingestor.ingest_wallet(await _reload(db, w.id))

        assert result.inserted == 2
        assert await _trade_count(db) == 4


class TestErrors:
    async def test_malformed_records_counted(self, db, ingestor, provider, wallet, make_raw_trade):
        w = await wallet()
        provider.add_trade(WALLET, make_raw_trade(block_time=_recent()))
        provider.add_malformed(WALLET, "trade 0xbad is missing a condition id")

        result = await ingestor.ingest_wallet(w)

        assert result.fetched == 2
        assert result.inserted == 1
        assert len(result.errors) == 1
        assert "malformed" in result.errors[0]
        assert not result.failed

    async def test_failing_wallet_does_not_stop_others(self, db, ingestor, provider, wallet, make_raw_trade):
        w1 = await wallet(WALLET)
        w2 = await wallet(OTHER_WALLET)
        provider.add_trade(OTHER_WALLET, make_raw_trade(block_time=_recent()))
        provider.failing_wallets[WALLET] = UpstreamError("HTTP 500")

        summary = await ingestor.ingest_all([w1, w2])

        assert summary.failed_wallets == [WALLET]
        assert summary.total_new == 1
        assert summary.total_errors == 1
        assert await _trade_count(db, w2.id) == 1

    async def test_failed_fetch_keeps_watermark(self, db, ingestor, provider, wallet):
        w = await wallet()
        provider.failing_wallets[WALLET] = UpstreamError("connection reset")

        result = await ingestor.ingest_wallet(w)

        assert result.failed
        reloaded = await _reload(db, w.id)
        assert reloaded.last_trade_at is None
        assert reloaded.last_synced_at is None

    async def test_timeout_marks_wallet_failed(self, db, wallet):
        w = await wallet()
        slow = MagicMock()
        slow.name = "slow"

        async def _hang(*args, **kwargs):
            await asyncio.sleep(5)
            return TradeBatch()

        slow.fetch_trades = AsyncMock(side_effect=_hang)
        ingestor = TradeIngestor(db, [slow], fetch_timeout=0.05)

        result = await ingestor.ingest_wallet(w)

        assert result.failed
        assert "timed out" in result.errors[0]

    async def test_partial_sources_store_but_hold_watermark(self, db, provider, wallet, make_raw_trade):
        w = await wallet()
        provider.add_trade(WALLET, make_raw_trade(block_time=_recent()))
        broken = MagicMock()
        broken.name = "broken"
        broken.fetch_trades = AsyncMock(side_effect=UpstreamError("HTTP 502"))
        ingestor = TradeIngestor(db, [provider, broken], fetch_timeout=1)

        result = await ingestor.ingest_wallet(w)

        assert result.failed
        assert result.inserted == 1
        assert (await _reload(db, w.id)).last_trade_at is None

    async def test_unexpected_source_error_does_not_stop_others(self, db, ingestor, provider, wallet, make_raw_trade):
        w1 = await wallet(WALLET)
        w2 = await wallet(OTHER_WALLET)
        provider.add_trade(OTHER_WALLET, make_raw_trade(block_time=_recent()))
        provider.failing_wallets[WALLET] = ValueError("Expecting value: line 1 column 1 (char 0)")

        summary = await ingestor.ingest_all([w1, w2])

        assert summary.failed_wallets == [WALLET]
        assert "Expecting value" in summary.results[0].errors[0]
        assert await _trade_count(db, w2.id) == 1
        assert (await _reload(db, w1.id)).last_trade_at is None


class TestWatermark:
    async def test_watermark_is_newest_committed_trade(self, db, ingestor, provider, wallet, make_raw_trade):
        w = await wallet()
        newest = _recent(30)
        provider.add_trade(WALLET, make_raw_trade(block_time=_recent(0)))
        provider.add_trade(WALLET, make_raw_trade(block_time=newest))
        provider.add_trade(WALLET, make_raw_trade(block_time=_recent(10)))

        result = await ingestor.ingest_wallet(w)

        assert result.watermark == newest
        assert (await _reload(db, w.id)).last_trade_at == newest

    async def test_window_starts_behind_watermark(self, ingestor):
        w = TrackedWallet(address=WALLET, last_trade_at=datetime(2025, 1, 15, 12, 0))
        assert ingestor.fetch_window(w) == datetime(2025, 1, 15, 10, 0)

    async def test_initial_window_for_new_wallet(self, ingestor):
        w = TrackedWallet(address=WALLET)
        start = ingestor.fetch_window(w)
        assert utcnow() - start >= timedelta(days=89)

    async def test_trades_older_than_window_ignored(self, db, ingestor, provider, wallet, make_raw_trade):
        w = await wallet()
        provider.add_trade(WALLET, make_raw_trade(block_time=utcnow() - timedelta(days=200)))
        provider.add_trade(WALLET, make_raw_trade(block_time=_recent()))

        result = await ingestor.ingest_wallet(w)

        assert result.inserted == 1
