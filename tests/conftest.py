"""
Shared test fixtures for the wallet PnL test suite.
All tests run offline with in-memory SQLite and the mock provider.
"""

import asyncio
from datetime import datetime

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from wallet_pnl.config import default_config
from wallet_pnl.database.db import Database
from wallet_pnl.database.models import (
    Base, Market, MarketStatus, Position, PriceSample, Trade, TradeSide,
)
from wallet_pnl.platforms.base import RawTrade
from wallet_pnl.platforms.mock_feed import MockProvider

WALLET = "0x" + "a" * 40
OTHER_WALLET = "0x" + "b" * 40
CONDITION = "0xcond-test"
T0 = datetime(2025, 1, 15, 14, 0, 0)


@pytest.fixture
async def db():
    """
    Create an in-memory async SQLite database for testing.
    Each test gets a completely fresh database.
    """
    database = Database.__new__(Database)
    database.db_path = ":memory:"
    database.db_url = "sqlite+aiosqlite://"
    database.write_lock = asyncio.Lock()

    database.async_engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with database.async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    database.AsyncSessionLocal = async_sessionmaker(
        database.async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    database._async_initialized = True

    yield database

    await database.async_engine.dispose()


@pytest.fixture
def config():
    """Default config with short waits so lock tests finish quickly."""
    cfg = default_config()
    cfg['sync']['lock_timeout_seconds'] = 0.05
    cfg['sync']['fetch_timeout_seconds'] = 1
    return cfg


@pytest.fixture
def provider():
    """Mock provider with no generated history."""
    return MockProvider({'generate_trades': False})


@pytest.fixture
def make_raw_trade():
    """Factory for RawTrade instances with unique transaction hashes."""
    _counter = [0]

    def _factory(**overrides):
        _counter[0] += 1
        defaults = {
            "tx_hash": f"0xtx{_counter[0]:060d}",
            "log_index": 0,
            "block_time": T0,
            "condition_id": CONDITION,
            "outcome": 0,
            "side": TradeSide.BUY,
            "price": 0.40,
            "size": 10.0,
            "fee": 0.0,
        }
        defaults.update(overrides)
        return RawTrade(**defaults)

    return _factory


@pytest.fixture
def wallet(db):
    """Coroutine factory creating a tracked wallet and returning it."""
    async def _factory(address: str = WALLET, alias=None):
        async with db.session() as session:
            return await db.get_or_create_wallet(session, address, alias)

    return _factory


@pytest.fixture
def market(db):
    """Coroutine factory creating a Yes/No market."""
    async def _factory(condition_id: str = CONDITION, **overrides):
        defaults = {
            "title": "Will the test pass?",
            "outcomes": [
                {"name": "Yes", "index": 0, "token_id": f"{condition_id}-yes"},
                {"name": "No", "index": 1, "token_id": f"{condition_id}-no"},
            ],
        }
        defaults.update(overrides)
        async with db.session() as session:
            return await db.get_or_create_market(session, condition_id, **defaults)

    return _factory


@pytest.fixture
def add_trade(db):
    """Coroutine factory inserting a Trade row directly."""
    _counter = [0]

    async def _factory(wallet_id, market_id, side=TradeSide.BUY, price=0.40, size=10.0,
                       outcome=0, block_time=T0, fee=0.0):
        _counter[0] += 1
        cost = price * size if side == TradeSide.BUY else -price * size
        trade = Trade(
            wallet_id=wallet_id,
            market_id=market_id,
            tx_hash=f"0xdirect{_counter[0]:058d}",
            log_index=0,
            block_time=block_time,
            outcome=outcome,
            side=side,
            price=price,
            size=size,
            cost=cost,
            fee=fee,
        )
        async with db.session() as session:
            session.add(trade)
        return trade

    return _factory


@pytest.fixture
def get_position(db):
    """Coroutine returning the stored position for a tuple (or None)."""
    async def _get(wallet_id, market_id, outcome=0):
        async with db.session() as session:
            return (await session.execute(
                select(Position).where(
                    Position.wallet_id == wallet_id,
                    Position.market_id == market_id,
                    Position.outcome == outcome,
                )
            )).scalar_one_or_none()

    return _get


@pytest.fixture
def add_price_sample(db):
    async def _factory(source, symbol, price, observed_at, asset_id=None):
        async with db.session() as session:
            session.add(PriceSample(
                source=source,
                symbol=symbol,
                asset_id=asset_id,
                price=price,
                observed_at=observed_at,
            ))

    return _factory


@pytest.fixture
def set_market_status(db):
    """Force a market into a status without going through the lifecycle sync."""
    async def _set(market_id, status: MarketStatus, resolution_prices=None):
        async with db.session() as session:
            m = await session.get(Market, market_id)
            m.status = status
            m.resolution_prices = resolution_prices

    return _set
