"""
Mock upstream provider for development and testing.

Serves trades, markets, prices and positions from in-memory tables so the
full sync pipeline can run without network access:
  fetch -> ingest -> reconcile -> revalue -> snapshot
"""

import random
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from loguru import logger

from wallet_pnl.database.models import MarketStatus, TradeSide, utcnow
from .base import DataProvider, RawMarket, RawPosition, RawTrade, TradeBatch


# Static mock markets with far-future end times
MOCK_MARKETS = [
    {
        "condition_id": "0xmock-bitcoin-150k-2026",
        "title": "Will Bitcoin reach $150,000 in 2026?",
        "end_time": datetime(2026, 12, 31, 23, 59),
    },
    {
        "condition_id": "0xmock-fed-cut-2027",
        "title": "Will the Fed cut rates in March 2027?",
        "end_time": datetime(2027, 3, 18, 18, 0),
    },
    {
        "condition_id": "0xmock-super-bowl-2027",
        "title": "Will the NFC team win Super Bowl 2027?",
        "end_time": datetime(2027, 2, 14, 23, 59),
    },
]


def mock_wallet(rng: random.Random) -> str:
    """Generate an Ethereum-style wallet address"""
    return "0x" + "".join(rng.choices("0123456789abcdef", k=40))


def mock_tx_hash(rng: random.Random) -> str:
    return "0x" + "".join(rng.choices("0123456789abcdef", k=64))


class MockProvider(DataProvider):
    """
    Deterministic in-memory provider.

    Tests seed it directly with `add_trade`, `set_market`, `set_price` and
    `set_positions`. With `generate_trades` set, a seeded RNG produces a
    reproducible trade history for every wallet it is asked about.
    """

    def __init__(self, config: Optional[dict] = None):
        config = config or {}

        self.seed = config.get('seed', 42)
        self.generate_trades = config.get('generate_trades', False)
        self.trades_per_wallet = config.get('trades_per_wallet', 20)

        self._trades: Dict[str, List[RawTrade]] = {}
        self._malformed: Dict[str, List[str]] = {}
        self._markets: Dict[str, RawMarket] = {}
        self._prices: Dict[str, float] = {}
        self._positions: Dict[str, List[RawPosition]] = {}

        # Addresses whose fetches raise, for failure-isolation tests
        self.failing_wallets: Dict[str, Exception] = {}
        self.fetch_count = 0

        for m in MOCK_MARKETS:
            self.set_market(RawMarket(
                condition_id=m["condition_id"],
                title=m["title"],
                status=MarketStatus.OPEN,
                outcomes=[
                    {"name": "Yes", "index": 0, "token_id": f"{m['condition_id']}-yes"},
                    {"name": "No", "index": 1, "token_id": f"{m['condition_id']}-no"},
                ],
                end_time=m["end_time"],
            ))

    @property
    def name(self) -> str:
        return "mock"

    # ==================== Seeding ====================

    def add_trade(self, address: str, trade: RawTrade):
        trade.source = trade.source or self.name
        self._trades.setdefault(address.lower(), []).append(trade)

    def add_malformed(self, address: str, reason: str):
        self._malformed.setdefault(address.lower(), []).append(reason)

    def set_market(self, market: RawMarket):
        self._markets[market.condition_id] = market

    def resolve_market(self, condition_id: str, winning_outcome: int):
        market = self._markets[condition_id]
        market.status = MarketStatus.RESOLVED
        market.resolution_prices = [
            1.0 if i == winning_outcome else 0.0 for i in range(len(market.outcomes) or 2)
        ]

    def set_price(self, token_id: str, price: float):
        self._prices[token_id] = price

    def set_positions(self, address: str, positions: List[RawPosition]):
        self._positions[address.lower()] = positions

    # ==================== DataProvider ====================

    async def fetch_trades(
        self,
        address: str,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> TradeBatch:
        address = address.lower()
        self.fetch_count += 1

        if address in self.failing_wallets:
            raise self.failing_wallets[address]

        if self.generate_trades and address not in self._trades:
            self._trades[address] = self._generate_history(address)

        trades = [
            t for t in self._trades.get(address, [])
            if t.block_time >= since and (until is None or t.block_time <= until)
        ]
        logger.debug(f"Mock provider returning {len(trades)} trades for {address[:10]}...")
        return TradeBatch(trades=list(trades), malformed=list(self._malformed.get(address, [])))

    async def fetch_markets(self, condition_ids: List[str]) -> Dict[str, RawMarket]:
        return {cid: self._markets[cid] for cid in condition_ids if cid in self._markets}

    async def fetch_prices(self, token_ids: List[str]) -> Dict[str, float]:
        return {tid: self._prices[tid] for tid in token_ids if tid in self._prices}

    async def fetch_positions(self, address: str) -> List[RawPosition]:
        address = address.lower()
        if address in self.failing_wallets:
            raise self.failing_wallets[address]
        return list(self._positions.get(address, []))

    # ==================== Generation ====================

    def _generate_history(self, address: str) -> List[RawTrade]:
        """Long-only random walk per market, reproducible per address"""
        rng = random.Random(f"{self.seed}:{address}")
        start = utcnow() - timedelta(days=7)
        holdings: Dict[tuple, float] = {}
        trades = []

        for i in range(self.trades_per_wallet):
            market = rng.choice(MOCK_MARKETS)
            outcome = rng.choice([0, 1])
            key = (market["condition_id"], outcome)
            held = holdings.get(key, 0.0)

            side = TradeSide.SELL if held > 0 and rng.random() < 0.35 else TradeSide.BUY
            size = round(rng.uniform(5, 200), 2)
            if side == TradeSide.SELL:
                size = min(size, held)
            price = round(rng.uniform(0.05, 0.95), 3)

            holdings[key] = held + size if side == TradeSide.BUY else held - size
            trades.append(RawTrade(
                tx_hash=mock_tx_hash(rng),
                log_index=0,
                block_time=start + timedelta(minutes=17 * i),
                condition_id=market["condition_id"],
                outcome=outcome,
                side=side,
                price=price,
                size=size,
                fee=round(price * size * 0.001, 6),
                market_title=market["title"],
                source=self.name,
            ))

        return trades
