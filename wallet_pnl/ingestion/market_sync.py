"""
Market lifecycle sync.
Refreshes market metadata and drives settlement when a market resolves.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select

from ..database.db import Database
from ..database.models import Market, MarketStatus, utcnow
from ..errors import UpstreamError
from ..platforms.base import DataProvider, RawMarket
from ..valuation.valuator import MarkToMarketValuator

logger = logging.getLogger(__name__)


@dataclass
class MarketSyncResult:
    markets_updated: int = 0
    markets_resolved: int = 0
    positions_settled: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "marketsUpdated": self.markets_updated,
            "marketsResolved": self.markets_resolved,
            "positionsSettled": self.positions_settled,
            "errors": list(self.errors),
        }


class MarketLifecycleSync:
    """
    Keeps stored markets in step with the upstream catalog.

    Key responsibilities:
    - Upsert title, outcomes, end time and status by condition id
    - Treat RESOLVED as terminal
    - Run the settlement sweep once, on the transition into RESOLVED
    """

    def __init__(
        self,
        db: Database,
        provider: DataProvider,
        valuator: MarkToMarketValuator,
    ):
        self.db = db
        self.provider = provider
        self.valuator = valuator

    async def unresolved_condition_ids(self) -> List[str]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Market.condition_id)
                .where(Market.status != MarketStatus.RESOLVED)
                .order_by(Market.id)
            )
            return list(result.scalars().all())

    async def sync_markets(self, condition_ids: Optional[List[str]] = None) -> MarketSyncResult:
        """
        Refresh the given markets, or every market not yet resolved.

        Upstream failures are recorded in the result, never raised.
        """
        result = MarketSyncResult()

        if condition_ids is None:
            condition_ids = await self.unresolved_condition_ids()
        if not condition_ids:
            return result

        try:
            fetched = await self.provider.fetch_markets(condition_ids)
        except UpstreamError as e:
            logger.warning(f"Market metadata fetch failed: {e}")
            result.errors.append(f"fetch failed: {e}")
            return result

        for condition_id in condition_ids:
            raw = fetched.get(condition_id)
            if raw is None:
                continue
            await self._apply(raw, result)

        logger.info(
            f"Market sync: {result.markets_updated} updated, "
            f"{result.markets_resolved} resolved, {result.positions_settled} positions settled"
        )
        return result

    async def _apply(self, raw: RawMarket, result: MarketSyncResult):
        """Upsert one market; settlement shares the transaction"""
        keys = []
        if raw.status == MarketStatus.RESOLVED:
            keys = await self.valuator.open_position_keys(raw.condition_id)

        async with self.valuator.locks.hold_many(keys):
            await self._apply_locked(raw, result)

    async def _apply_locked(self, raw: RawMarket, result: MarketSyncResult):
        async with self.db.session() as session:
            market = (await session.execute(
                select(Market).where(Market.condition_id == raw.condition_id)
            )).scalar_one_or_none()
            if market is None:
                market = await self.db.get_or_create_market(session, raw.condition_id, title=raw.title)

            prior_status = market.status

            market.title = raw.title or market.title
            if raw.description is not None:
                market.description = raw.description
            if raw.outcomes:
                market.outcomes = raw.outcomes
            if raw.end_time is not None:
                market.end_time = raw.end_time
            market.updated_at = utcnow()
            result.markets_updated += 1

            if prior_status == MarketStatus.RESOLVED:
                if raw.status != MarketStatus.RESOLVED:
                    logger.warning(
                        f"Ignoring {raw.status.value} for resolved market {raw.condition_id[:16]}..."
                    )
                return

            if raw.status != MarketStatus.RESOLVED:
                market.status = raw.status
                return

            prices = raw.resolution_prices or []
            if len(prices) != len(market.outcomes or []):
                msg = (
                    f"{raw.condition_id}: resolution vector has {len(prices)} prices "
                    f"for {len(market.outcomes or [])} outcomes"
                )
                logger.error(f"Not resolving market {msg}")
                result.errors.append(msg)
                return

            market.status = MarketStatus.RESOLVED
            market.resolution_prices = [float(p) for p in prices]
            market.resolved_at = utcnow()
            await session.flush()

            settlement = await self.valuator.settle_positions(session, market)
            result.markets_resolved += 1
            result.positions_settled += settlement.positions_settled
            logger.info(f"Market resolved: {market.title[:50]} -> {market.resolution_prices}")
