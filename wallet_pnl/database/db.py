"""
Database initialization and session management.
"""

import asyncio
from typing import List, Optional
from contextlib import asynccontextmanager

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from loguru import logger

from .models import Base, Market, MarketStatus, TrackedWallet, utcnow


DEFAULT_OUTCOMES = [{"name": "Yes", "index": 0}, {"name": "No", "index": 1}]


def normalize_address(address: str) -> str:
    return address.strip().lower()


class Database:
    """Async database connection and session management"""

    def __init__(self, db_path: str = "wallet_pnl.db"):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or full connection URL
        """
        if db_path.startswith("sqlite"):
            self.db_path = db_path.split(":///", 1)[-1]
        else:
            self.db_path = db_path
        self.db_url = f"sqlite+aiosqlite:///{self.db_path}"

        self.async_engine = None
        self.AsyncSessionLocal = None
        self._async_initialized = False

        # SQLite allows a single writer; batch writers take this lock
        self.write_lock = asyncio.Lock()

    async def initialize(self):
        """Initialize async database connection and create tables"""
        if self._async_initialized:
            return

        self.async_engine = create_async_engine(self.db_url, echo=False)

        async with self.async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.AsyncSessionLocal = async_sessionmaker(
            self.async_engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        self._async_initialized = True
        logger.info(f"Database initialized at {self.db_path}")

    async def close(self):
        """Close async database connection"""
        if self.async_engine:
            await self.async_engine.dispose()
            self._async_initialized = False

    @asynccontextmanager
    async def session(self):
        """Get an async database session with automatic commit/rollback"""
        if not self._async_initialized:
            await self.initialize()

        async with self.AsyncSessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(f"Database error: {e}")
                raise

    async def get_or_create_wallet(
        self,
        session: AsyncSession,
        address: str,
        alias: Optional[str] = None,
    ) -> TrackedWallet:
        """Get existing tracked wallet or create a new one"""
        address = normalize_address(address)
        result = await session.execute(
            select(TrackedWallet).where(TrackedWallet.address == address)
        )
        wallet = result.scalar_one_or_none()

        if not wallet:
            wallet = TrackedWallet(address=address, alias=alias)
            session.add(wallet)
            await session.flush()
            logger.debug(f"Tracking new wallet: {address[:10]}...")
        elif alias is not None:
            wallet.alias = alias

        return wallet

    async def get_wallet_by_address(
        self,
        session: AsyncSession,
        address: str,
    ) -> Optional[TrackedWallet]:
        result = await session.execute(
            select(TrackedWallet).where(TrackedWallet.address == normalize_address(address))
        )
        return result.scalar_one_or_none()

    async def list_wallets(self) -> List[TrackedWallet]:
        """All tracked wallets, oldest first"""
        async with self.session() as session:
            result = await session.execute(select(TrackedWallet).order_by(TrackedWallet.id))
            return list(result.scalars().all())

    async def get_or_create_market(
        self,
        session: AsyncSession,
        condition_id: str,
        title: Optional[str] = None,
        **kwargs
    ) -> Market:
        """
        Get existing market or create a placeholder.

        Placeholders get Yes/No outcomes until the lifecycle sync pulls
        real metadata.
        """
        result = await session.execute(
            select(Market).where(Market.condition_id == condition_id)
        )
        market = result.scalar_one_or_none()

        if not market:
            market = Market(
                condition_id=condition_id,
                title=title or f"Market {condition_id[:16]}...",
                status=kwargs.pop("status", MarketStatus.OPEN),
                outcomes=kwargs.pop("outcomes", None) or list(DEFAULT_OUTCOMES),
                **kwargs
            )
            session.add(market)
            await session.flush()
            logger.debug(f"Created market: {market.title[:30]}...")
        else:
            for key, value in kwargs.items():
                if hasattr(market, key) and value is not None:
                    setattr(market, key, value)
            market.updated_at = utcnow()

        return market


# Global database instance
_db: Optional[Database] = None


def get_db() -> Database:
    """Get the global database instance"""
    global _db
    if _db is None:
        _db = Database()
    return _db


async def init_db(db_path: str = "wallet_pnl.db") -> Database:
    """Initialize the global database with custom path"""
    global _db
    _db = Database(db_path)
    await _db.initialize()
    return _db
