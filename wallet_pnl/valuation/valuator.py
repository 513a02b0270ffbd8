"""
Mark-to-market valuation and resolution settlement.

Open positions are marked at the best price available for their outcome:
the resolution price once the market has resolved, otherwise the most
recent stored price sample, otherwise a live quote from the provider.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.db import Database
from ..database.models import Market, MarketStatus, Position, PositionStatus, PriceSample, utcnow
from ..errors import UpstreamError
from ..platforms.base import DataProvider
from ..positions.ledger import settle
from ..positions.reconciler import load_state, store_state
from ..sync.locks import WalletLocks, position_key

logger = logging.getLogger(__name__)


def sample_key(condition_id: str, outcome: int) -> str:
    """Symbol used for price samples that carry no token id"""
    return f"{condition_id}:{outcome}"


@dataclass
class ValuationSummary:
    positions_valued: int = 0
    positions_without_price: int = 0


@dataclass
class SettlementResult:
    market_id: int
    positions_settled: int = 0
    realized_pnl: float = 0.0


class MarkToMarketValuator:
    """Computes unrealized PnL and runs the resolution settlement sweep"""

    def __init__(
        self,
        db: Database,
        provider: Optional[DataProvider] = None,
        locks: Optional[WalletLocks] = None,
    ):
        self.db = db
        self.provider = provider
        self.locks = locks or WalletLocks()

    # ==================== Prices ====================

    async def latest_sample(
        self,
        session: AsyncSession,
        market: Market,
        outcome: int,
    ) -> Optional[float]:
        """Most recent stored price for an outcome"""
        keys = [sample_key(market.condition_id, outcome)]
        token_id = market.outcome_token_id(outcome)
        if token_id:
            keys.append(token_id)

        result = await session.execute(
            select(PriceSample.price)
            .where(or_(PriceSample.asset_id.in_(keys), PriceSample.symbol.in_(keys)))
            .order_by(PriceSample.observed_at.desc(), PriceSample.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def mark_prices(
        self,
        session: AsyncSession,
        outcomes: Iterable[Tuple[Market, int]],
    ) -> Dict[Tuple[int, int], Optional[float]]:
        """Mark price per (market_id, outcome); None where nothing is known"""
        marks: Dict[Tuple[int, int], Optional[float]] = {}
        missing: Dict[str, Tuple[int, int]] = {}

        for market, outcome in outcomes:
            key = (market.id, outcome)
            if key in marks:
                continue

            if market.status == MarketStatus.RESOLVED:
                marks[key] = market.resolution_price_for(outcome)
                continue

            marks[key] = await self.latest_sample(session, market, outcome)
            token_id = market.outcome_token_id(outcome)
            if marks[key] is None and token_id:
                missing[token_id] = key

        if missing and self.provider is not None:
            try:
                quotes = await self.provider.fetch_prices(list(missing))
            except UpstreamError as e:
                logger.warning(f"Live price fetch failed, {len(missing)} outcomes left unpriced: {e}")
                quotes = {}
            for token_id, price in quotes.items():
                if token_id in missing:
                    marks[missing[token_id]] = price

        return marks

    async def mark_price(self, market: Market, outcome: int) -> Optional[float]:
        """Mark price for a single outcome"""
        async with self.db.session() as session:
            marks = await self.mark_prices(session, [(market, outcome)])
        return marks[(market.id, outcome)]

    # ==================== Revaluation ====================

    async def revalue_wallet(self, wallet_id: int) -> ValuationSummary:
        return await self.revalue_all([wallet_id])

    async def revalue_all(self, wallet_ids: Optional[Iterable[int]] = None) -> ValuationSummary:
        """unrealized = shares x (mark - avg) for every OPEN position"""
        summary = ValuationSummary()

        async with self.db.session() as session:
            stmt = select(Position).where(Position.status == PositionStatus.OPEN)
            if wallet_ids is not None:
                stmt = stmt.where(Position.wallet_id.in_(list(wallet_ids)))
            positions = list((await session.execute(stmt)).scalars().all())
            if not positions:
                return summary

            market_ids = {p.market_id for p in positions}
            markets = {
                m.id: m for m in (await session.execute(
                    select(Market).where(Market.id.in_(market_ids))
                )).scalars().all()
            }
            marks = await self.mark_prices(
                session, [(markets[p.market_id], p.outcome) for p in positions],
            )

            for position in positions:
                mark = marks.get((position.market_id, position.outcome))
                if mark is None:
                    summary.positions_without_price += 1
                    position.mark_price = None
                    position.unrealized_pnl = 0.0
                    continue
                position.mark_price = mark
                position.unrealized_pnl = (position.shares or 0.0) * (mark - (position.avg_entry_price or 0.0))
                position.last_updated = utcnow()
                summary.positions_valued += 1

        logger.info(
            f"Revalued {summary.positions_valued} positions "
            f"({summary.positions_without_price} without price)"
        )
        return summary

    # ==================== Settlement ====================

    async def open_position_keys(self, condition_id: str) -> List[Tuple]:
        """Lock keys of the OPEN positions in a market"""
        async with self.db.session() as session:
            rows = (await session.execute(
                select(Position.wallet_id, Position.market_id, Position.outcome)
                .join(Market, Market.id == Position.market_id)
                .where(
                    Market.condition_id == condition_id,
                    Position.status == PositionStatus.OPEN,
                )
            )).all()
        return [position_key(*row) for row in rows]

    def settle_position(self, position: Position, market: Market) -> Optional[float]:
        """
        Close one position at its outcome's resolution price.

        Returns the realized PnL it added, or None when the market carries
        no price for the outcome. The caller holds the position's lock.
        """
        price = market.resolution_price_for(position.outcome)
        if price is None:
            logger.warning(
                f"No resolution price for outcome {position.outcome} of {market.condition_id[:16]}..."
            )
            return None

        before = load_state(position)
        after = settle(before, price)
        position.mark_price = price
        store_state(position, after)
        position.settled_at = utcnow()
        return after.realized_pnl - before.realized_pnl

    async def settle_positions(self, session: AsyncSession, market: Market) -> SettlementResult:
        """
        Close every OPEN position in a RESOLVED market at its resolution price.

        Runs inside the caller's transaction so the sweep commits together
        with the status change that triggered it. The caller takes the
        position locks from `open_position_keys` before opening that
        transaction.
        """
        result = SettlementResult(market_id=market.id)
        if market.status != MarketStatus.RESOLVED:
            return result

        positions = (await session.execute(
            select(Position).where(
                Position.market_id == market.id,
                Position.status == PositionStatus.OPEN,
            )
        )).scalars().all()

        for position in positions:
            realized = self.settle_position(position, market)
            if realized is None:
                continue
            result.positions_settled += 1
            result.realized_pnl += realized

        if result.positions_settled:
            logger.info(
                f"Settled {result.positions_settled} positions in {market.title[:40]} "
                f"(realized {result.realized_pnl:+.2f})"
            )
        return result

    async def settle_market(self, market_id: int) -> SettlementResult:
        async with self.db.session() as session:
            market = await session.get(Market, market_id)
            if market is None:
                return SettlementResult(market_id=market_id)
            condition_id = market.condition_id

        keys = await self.open_position_keys(condition_id)
        async with self.locks.hold_many(keys):
            async with self.db.session() as session:
                market = await session.get(Market, market_id)
                return await self.settle_positions(session, market)
