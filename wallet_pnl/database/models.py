"""
Database models for the wallet PnL ledger
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime,
    ForeignKey, Text, JSON, Enum as SQLEnum, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite stores datetimes without tz)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MarketStatus(str, Enum):
    """Market lifecycle status"""
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    RESOLVED = "RESOLVED"


class TradeSide(str, Enum):
    """Trade direction"""
    BUY = "BUY"
    SELL = "SELL"


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class PnlSource(str, Enum):
    """Where a position's PnL figures came from"""
    COMPUTED = "COMPUTED"   # Replayed from our own trade ledger
    IMPORTED = "IMPORTED"   # Overwritten with venue-reported figures


class TrackedWallet(Base):
    """Monitored wallet address"""
    __tablename__ = "tracked_wallets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    address = Column(String(255), unique=True, nullable=False)
    alias = Column(String(255), nullable=True)

    # Newest block_time committed for this wallet. Bounds incremental re-fetching.
    last_trade_at = Column(DateTime, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    trades = relationship("Trade", back_populates="wallet")
    positions = relationship("Position", back_populates="wallet")

    def __repr__(self):
        return f"<TrackedWallet {self.address[:10]}... ({self.alias or '-'})>"

    @property
    def label(self) -> str:
        return self.alias or f"{self.address[:10]}..."


class Market(Base):
    """Prediction market, keyed by condition id"""
    __tablename__ = "markets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    condition_id = Column(String(255), unique=True, nullable=False)

    title = Column(String(1000), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(SQLEnum(MarketStatus), default=MarketStatus.OPEN, nullable=False)

    # [{"name": "Yes", "index": 0, "token_id": "..."}, ...]
    outcomes = Column(JSON, nullable=False, default=list)

    end_time = Column(DateTime, nullable=True)

    # One payout per outcome, populated only once RESOLVED
    resolution_prices = Column(JSON, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    extra_data = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    trades = relationship("Trade", back_populates="market")
    positions = relationship("Position", back_populates="market")

    __table_args__ = (
        Index('idx_market_status', 'status'),
    )

    def __repr__(self):
        return f"<Market {self.title[:30]}... ({self.status.value})>"

    @property
    def outcome_indices(self) -> List[int]:
        return [int(o.get("index", i)) for i, o in enumerate(self.outcomes or [])]

    def has_outcome(self, index: int) -> bool:
        return index in self.outcome_indices

    def outcome_token_id(self, index: int) -> Optional[str]:
        for i, outcome in enumerate(self.outcomes or []):
            if int(outcome.get("index", i)) == index:
                return outcome.get("token_id")
        return None

    def resolution_price_for(self, index: int) -> Optional[float]:
        """Payout for an outcome, or None if the market has not resolved"""
        if self.status != MarketStatus.RESOLVED or not self.resolution_prices:
            return None
        if index < 0 or index >= len(self.resolution_prices):
            return None
        return float(self.resolution_prices[index])


class Trade(Base):
    """Immutable execution event. id doubles as insertion order."""
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, autoincrement=True)

    wallet_id = Column(Integer, ForeignKey("tracked_wallets.id"), nullable=False)
    market_id = Column(Integer, ForeignKey("markets.id"), nullable=False)

    # Natural dedup key
    tx_hash = Column(String(255), nullable=False)
    log_index = Column(Integer, nullable=False, default=0)

    block_time = Column(DateTime, nullable=False)
    block_number = Column(Integer, nullable=True)

    outcome = Column(Integer, nullable=False)
    side = Column(SQLEnum(TradeSide), nullable=False)
    price = Column(Float, nullable=False)  # 0-1 for prediction markets
    size = Column(Float, nullable=False)
    cost = Column(Float, nullable=False)  # +price*size for BUY, -price*size for SELL
    fee = Column(Float, nullable=False, default=0.0)

    source = Column(String(50), nullable=True)
    raw_data = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    # Relationships
    wallet = relationship("TrackedWallet", back_populates="trades")
    market = relationship("Market", back_populates="trades")

    __table_args__ = (
        UniqueConstraint('tx_hash', 'log_index', name='uq_trade_tx_log'),
        Index('idx_trade_wallet_time', 'wallet_id', 'block_time'),
        Index('idx_trade_tuple', 'wallet_id', 'market_id', 'outcome'),
    )

    def __repr__(self):
        return f"<Trade {self.side.value} {self.size:.2f}@{self.price:.3f} tx={self.tx_hash[:10]}...>"


class Position(Base):
    """
    Reconciled holding of one wallet in one (market, outcome).
    Only the latest state is kept; snapshots carry history.
    """
    __tablename__ = "positions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_id = Column(Integer, ForeignKey("tracked_wallets.id"), nullable=False)
    market_id = Column(Integer, ForeignKey("markets.id"), nullable=False)
    outcome = Column(Integer, nullable=False)

    # Signed: negative when short
    shares = Column(Float, default=0.0, nullable=False)
    avg_entry_price = Column(Float, nullable=True)
    realized_pnl = Column(Float, default=0.0, nullable=False)
    unrealized_pnl = Column(Float, default=0.0, nullable=False)
    total_cost = Column(Float, default=0.0, nullable=False)
    total_fees = Column(Float, default=0.0, nullable=False)
    mark_price = Column(Float, nullable=True)

    status = Column(SQLEnum(PositionStatus), default=PositionStatus.OPEN, nullable=False)
    pnl_source = Column(SQLEnum(PnlSource), default=PnlSource.COMPUTED, nullable=False)

    # Last applied trade (Trade.id) and its block_time
    last_trade_id = Column(Integer, default=0, nullable=False)
    last_trade_time = Column(DateTime, nullable=True)

    settled_at = Column(DateTime, nullable=True)
    last_updated = Column(DateTime, default=utcnow, onupdate=utcnow)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    wallet = relationship("TrackedWallet", back_populates="positions")
    market = relationship("Market", back_populates="positions")

    __table_args__ = (
        UniqueConstraint('wallet_id', 'market_id', 'outcome', name='uq_position_tuple'),
        Index('idx_position_wallet_status', 'wallet_id', 'status'),
    )

    def __repr__(self):
        return f"<Position w={self.wallet_id} m={self.market_id}:{self.outcome} shares={self.shares:.2f} {self.status.value}>"

    @property
    def total_pnl(self) -> float:
        return (self.realized_pnl or 0.0) + (self.unrealized_pnl or 0.0)


class ParkedTrade(Base):
    """Trade skipped by reconciliation because applying it would corrupt state"""
    __tablename__ = "parked_trades"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trade_id = Column(Integer, ForeignKey("trades.id"), unique=True, nullable=False)
    wallet_id = Column(Integer, nullable=False)
    market_id = Column(Integer, nullable=False)
    outcome = Column(Integer, nullable=False)
    reason = Column(String(500), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_parked_tuple', 'wallet_id', 'market_id', 'outcome'),
    )

    def __repr__(self):
        return f"<ParkedTrade trade={self.trade_id} {self.reason[:40]}>"


class Snapshot(Base):
    """Point-in-time wallet valuation. Append only."""
    __tablename__ = "snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_id = Column(Integer, ForeignKey("tracked_wallets.id"), nullable=False)
    timestamp = Column(DateTime, default=utcnow, nullable=False)

    equity = Column(Float, default=0.0)
    realized_pnl = Column(Float, default=0.0)
    unrealized_pnl = Column(Float, default=0.0)
    total_value = Column(Float, default=0.0)
    volume_30d = Column(Float, default=0.0)
    open_positions = Column(Integer, default=0)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_snapshot_wallet_time', 'wallet_id', 'timestamp'),
    )

    def __repr__(self):
        return f"<Snapshot w={self.wallet_id} equity={self.equity:.2f} @ {self.timestamp}>"


class PriceSample(Base):
    """Price observation written by upstream feed collectors"""
    __tablename__ = "price_samples"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String(50), nullable=False)  # BINANCE, POLYMARKET, CHAINLINK...
    symbol = Column(String(255), nullable=False)
    condition_id = Column(String(255), nullable=True)
    asset_id = Column(String(255), nullable=True)
    side = Column(String(10), nullable=True)
    price = Column(Float, nullable=False)
    observed_at = Column(DateTime, nullable=False)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_price_source_symbol_time', 'source', 'symbol', 'observed_at'),
        Index('idx_price_asset_time', 'asset_id', 'observed_at'),
    )

    def __repr__(self):
        return f"<PriceSample {self.source}:{self.symbol} {self.price} @ {self.observed_at}>"


class SyncStatus(Base):
    """Last-run bookkeeping per sync job"""
    __tablename__ = "sync_status"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_type = Column(String(50), unique=True, nullable=False)
    last_run_at = Column(DateTime, nullable=True)
    last_success = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    is_running = Column(Boolean, default=False)
    items_processed = Column(Integer, default=0)
    last_result = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<SyncStatus {self.job_type} running={self.is_running}>"
