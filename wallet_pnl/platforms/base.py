"""
Base provider interface for upstream venue data
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from wallet_pnl.database.models import MarketStatus, TradeSide


@dataclass
class RawTrade:
    """Standardized trade event from any upstream source"""
    tx_hash: str
    log_index: Optional[int]
    block_time: datetime
    condition_id: str
    outcome: int
    side: TradeSide
    price: float
    size: float
    fee: float = 0.0
    block_number: Optional[int] = None

    # Optional market metadata carried by the trade record
    market_title: Optional[str] = None
    market_slug: Optional[str] = None

    source: Optional[str] = None
    raw_data: Optional[dict] = None

    @property
    def dedup_key(self) -> tuple:
        return (self.tx_hash, self.log_index)

    @property
    def cost(self) -> float:
        """Signed notional: cash out for BUY, cash in for SELL"""
        notional = self.price * self.size
        return notional if self.side == TradeSide.BUY else -notional

    def __repr__(self):
        return (
            f"<RawTrade {self.side.value} {self.size:.2f}@{self.price:.3f} "
            f"{self.condition_id[:12]}...:{self.outcome} tx={self.tx_hash[:10]}...>"
        )


@dataclass
class TradeBatch:
    """Trades fetched for one wallet plus the records that failed to parse"""
    trades: List[RawTrade] = field(default_factory=list)
    malformed: List[str] = field(default_factory=list)

    @property
    def fetched(self) -> int:
        return len(self.trades) + len(self.malformed)


@dataclass
class RawMarket:
    """Standardized market metadata"""
    condition_id: str
    title: str
    status: MarketStatus
    outcomes: List[dict] = field(default_factory=list)
    description: Optional[str] = None
    end_time: Optional[datetime] = None
    resolution_prices: Optional[List[float]] = None


@dataclass
class RawPosition:
    """Venue-reported position with the venue's own PnL figures"""
    condition_id: str
    outcome: int
    size: float
    avg_price: float
    initial_value: float
    current_value: float
    cash_pnl: float
    asset: Optional[str] = None
    outcome_name: Optional[str] = None
    percent_pnl: float = 0.0
    market_title: Optional[str] = None


class DataProvider(ABC):
    """Abstract upstream data provider (trades, markets, prices, positions)"""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def fetch_trades(
        self,
        address: str,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> TradeBatch:
        """
        Fetch trades for a wallet executed within [since, until].

        Records that cannot be normalized are reported in `malformed`
        rather than raised.

        Raises:
            UpstreamError: on network/timeout/HTTP failure
        """
        pass

    @abstractmethod
    async def fetch_markets(self, condition_ids: List[str]) -> Dict[str, RawMarket]:
        """Fetch metadata for the given markets, keyed by condition id"""
        pass

    @abstractmethod
    async def fetch_prices(self, token_ids: List[str]) -> Dict[str, float]:
        """Fetch current prices keyed by outcome token id"""
        pass

    @abstractmethod
    async def fetch_positions(self, address: str) -> List[RawPosition]:
        """Fetch venue-reported positions for a wallet"""
        pass

    async def close(self):
        """Release any network resources"""
        pass
