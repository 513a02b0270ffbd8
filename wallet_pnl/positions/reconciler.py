"""
Position reconciler.

Folds newly ingested trades into Position rows, one (wallet, market,
outcome) tuple at a time, using the weighted-average ledger. Each tuple is
processed under its own lock and inside a single transaction, so a partially
applied state transition is never visible.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from wallet_pnl.database.db import Database
from wallet_pnl.database.models import (
    Market, MarketStatus, ParkedTrade, PnlSource, Position, PositionStatus, Trade, utcnow,
)
from wallet_pnl.errors import IntegrityViolation, SyncLockTimeout
from wallet_pnl.sync.locks import WalletLocks, position_key
from .ledger import (
    LedgerState, apply_fill, holding_from_shares, settle, unrealized_pnl,
)

logger = logging.getLogger(__name__)


@dataclass
class TupleResult:
    """Outcome of reconciling one (wallet, market, outcome)"""
    wallet_id: int
    market_id: int
    outcome: int
    created: bool = False
    updated: bool = False
    applied: int = 0
    parked: int = 0
    recovered: int = 0
    replayed: bool = False


@dataclass
class ReconcileSummary:
    total_updated: int = 0
    total_created: int = 0
    total_parked: int = 0
    total_recovered: int = 0
    errors: List[str] = field(default_factory=list)

    def add(self, result: TupleResult):
        if result.created:
            self.total_created += 1
        elif result.updated:
            self.total_updated += 1
        self.total_parked += result.parked
        self.total_recovered += result.recovered

    def merge(self, other: "ReconcileSummary"):
        self.total_updated += other.total_updated
        self.total_created += other.total_created
        self.total_parked += other.total_parked
        self.total_recovered += other.total_recovered
        self.errors.extend(other.errors)

    def to_dict(self) -> dict:
        return {
            "totalUpdated": self.total_updated,
            "totalCreated": self.total_created,
            "totalParked": self.total_parked,
            "totalRecovered": self.total_recovered,
            "errors": list(self.errors),
        }


def load_state(position: Optional[Position]) -> LedgerState:
    """Ledger state stored on a position row (Flat for a missing row)"""
    if position is None:
        return LedgerState()
    return LedgerState(
        holding=holding_from_shares(position.shares or 0.0, position.avg_entry_price),
        realized_pnl=position.realized_pnl or 0.0,
        total_cost=position.total_cost or 0.0,
        total_fees=position.total_fees or 0.0,
    )


def store_state(position: Position, state: LedgerState):
    """Write a ledger state back onto a position row"""
    position.shares = state.signed_shares
    position.avg_entry_price = state.avg_price
    position.realized_pnl = state.realized_pnl
    position.total_cost = state.total_cost
    position.total_fees = state.total_fees
    position.status = PositionStatus.OPEN if state.is_open else PositionStatus.CLOSED
    position.unrealized_pnl = unrealized_pnl(state, position.mark_price)
    position.last_updated = utcnow()


class PositionReconciler:
    """
    Applies trades to positions in (block_time, id) order.

    Trades that would corrupt a position (a SELL beyond the held shares
    under the long-only model, an outcome the market does not have) are
    parked in `parked_trades` and skipped. `retry_parked` re-evaluates them,
    typically after market metadata has been refreshed.
    """

    def __init__(
        self,
        db: Database,
        allow_short: bool = False,
        locks: Optional[WalletLocks] = None,
    ):
        self.db = db
        self.allow_short = allow_short
        self.locks = locks or WalletLocks()

    # ==================== Public API ====================

    async def reconcile_tuple(self, wallet_id: int, market_id: int, outcome: int) -> TupleResult:
        """Apply every unapplied trade on one tuple"""
        async with self.locks.hold(position_key(wallet_id, market_id, outcome)):
            return await self._reconcile_once(wallet_id, market_id, outcome)

    async def reconcile_wallet(self, wallet_id: int) -> ReconcileSummary:
        """Reconcile every tuple of a wallet that has unapplied trades"""
        summary = ReconcileSummary()
        for market_id, outcome in await self._pending_tuples(wallet_id):
            await self._run_tuple(
                summary, self.reconcile_tuple, wallet_id, market_id, outcome,
            )

        if summary.total_created or summary.total_updated:
            logger.info(
                f"Wallet {wallet_id}: {summary.total_created} positions created, "
                f"{summary.total_updated} updated, {summary.total_parked} trades parked"
            )
        return summary

    async def reconcile_all(self, wallet_ids: Iterable[int]) -> ReconcileSummary:
        summary = ReconcileSummary()
        for wallet_id in wallet_ids:
            summary.merge(await self.reconcile_wallet(wallet_id))
        return summary

    async def retry_parked(self, wallet_ids: Optional[Iterable[int]] = None) -> ReconcileSummary:
        """Re-evaluate parked trades, clearing those that now apply"""
        stmt = select(ParkedTrade.wallet_id, ParkedTrade.market_id, ParkedTrade.outcome).distinct()
        if wallet_ids is not None:
            stmt = stmt.where(ParkedTrade.wallet_id.in_(list(wallet_ids)))

        async with self.db.session() as session:
            tuples = [tuple(row) for row in (await session.execute(stmt)).all()]

        summary = ReconcileSummary()
        for wallet_id, market_id, outcome in tuples:
            await self._run_tuple(
                summary, self._retry_parked_tuple, wallet_id, market_id, outcome,
            )

        if summary.total_recovered:
            logger.info(f"Recovered {summary.total_recovered} parked trades")
        return summary

    # ==================== Internals ====================

    async def _run_tuple(self, summary: ReconcileSummary, fn, wallet_id, market_id, outcome):
        try:
            summary.add(await fn(wallet_id, market_id, outcome))
        except (IntegrityError, IntegrityViolation, SyncLockTimeout) as e:
            msg = f"wallet {wallet_id} market {market_id} outcome {outcome}: {e}"
            logger.error(f"Reconciliation failed for {msg}")
            summary.errors.append(msg)

    async def _pending_tuples(self, wallet_id: int) -> List[Tuple[int, int]]:
        """(market_id, outcome) pairs with trades past the position watermark"""
        stmt = (
            select(Trade.market_id, Trade.outcome)
            .outerjoin(
                Position,
                and_(
                    Position.wallet_id == Trade.wallet_id,
                    Position.market_id == Trade.market_id,
                    Position.outcome == Trade.outcome,
                ),
            )
            .where(
                Trade.wallet_id == wallet_id,
                Trade.id > func.coalesce(Position.last_trade_id, 0),
            )
            .distinct()
            .order_by(Trade.market_id, Trade.outcome)
        )
        async with self.db.session() as session:
            return [tuple(row) for row in (await session.execute(stmt)).all()]

    async def _load_tuple(self, session, wallet_id, market_id, outcome):
        position = (await session.execute(
            select(Position).where(
                Position.wallet_id == wallet_id,
                Position.market_id == market_id,
                Position.outcome == outcome,
            )
        )).scalar_one_or_none()
        market = await session.get(Market, market_id)
        return position, market

    async def _tuple_trades(self, session, wallet_id, market_id, outcome, after_id: int = 0) -> List[Trade]:
        result = await session.execute(
            select(Trade)
            .where(
                Trade.wallet_id == wallet_id,
                Trade.market_id == market_id,
                Trade.outcome == outcome,
                Trade.id > after_id,
            )
            .order_by(Trade.block_time, Trade.id)
        )
        return list(result.scalars().all())

    async def _parked_ids(self, session, wallet_id, market_id, outcome) -> Dict[int, ParkedTrade]:
        result = await session.execute(
            select(ParkedTrade).where(
                ParkedTrade.wallet_id == wallet_id,
                ParkedTrade.market_id == market_id,
                ParkedTrade.outcome == outcome,
            )
        )
        return {p.trade_id: p for p in result.scalars().all()}

    def _park(self, session, trade: Trade, reason: str):
        logger.warning(f"Parking trade {trade.id} (tx {trade.tx_hash[:10]}...): {reason}")
        session.add(ParkedTrade(
            trade_id=trade.id,
            wallet_id=trade.wallet_id,
            market_id=trade.market_id,
            outcome=trade.outcome,
            reason=reason[:500],
        ))

    async def _apply_trades(
        self,
        session,
        state: LedgerState,
        trades: List[Trade],
        market: Market,
        parked: Dict[int, ParkedTrade],
        result: TupleResult,
    ) -> LedgerState:
        """
        Fold trades into state.

        Trades that do not apply are parked (once). Previously parked trades
        that now apply have their park row removed.
        """
        for trade in trades:
            try:
                if not market.has_outcome(trade.outcome):
                    raise IntegrityViolation(
                        f"outcome {trade.outcome} not in market {market.condition_id[:16]}..."
                    )
                state = apply_fill(
                    state, trade.side, trade.price, trade.size, trade.fee or 0.0, self.allow_short,
                )
            except IntegrityViolation as e:
                if trade.id not in parked:
                    self._park(session, trade, str(e))
                    result.parked += 1
                continue

            result.applied += 1
            recovered = parked.pop(trade.id, None)
            if recovered is not None:
                await session.delete(recovered)
                result.recovered += 1

        return state

    async def _replay(self, session, position: Position, market: Market, parked, result: TupleResult) -> LedgerState:
        """Rebuild the tuple from its full trade history"""
        result.replayed = True
        trades = await self._tuple_trades(session, position.wallet_id, position.market_id, position.outcome)
        state = await self._apply_trades(session, LedgerState(), trades, market, parked, result)

        if market.status == MarketStatus.RESOLVED:
            state = self._settle(position, market, state)
        else:
            position.settled_at = None

        if trades:
            self._advance_watermark(position, trades)
        return state

    def _settle(self, position: Position, market: Market, state: LedgerState) -> LedgerState:
        price = market.resolution_price_for(position.outcome)
        if price is None:
            return state
        position.mark_price = price
        position.settled_at = position.settled_at or utcnow()
        return settle(state, price)

    @staticmethod
    def _advance_watermark(position: Position, trades: List[Trade]):
        position.last_trade_id = max(position.last_trade_id or 0, max(t.id for t in trades))
        newest = max(t.block_time for t in trades)
        if position.last_trade_time is None or newest > position.last_trade_time:
            position.last_trade_time = newest

    def _new_position(self, session, wallet_id: int, market_id: int, outcome: int) -> Position:
        position = Position(
            wallet_id=wallet_id,
            market_id=market_id,
            outcome=outcome,
            shares=0.0,
            realized_pnl=0.0,
            unrealized_pnl=0.0,
            total_cost=0.0,
            total_fees=0.0,
            pnl_source=PnlSource.COMPUTED,
            last_trade_id=0,
        )
        session.add(position)
        return position

    @retry(
        retry=retry_if_exception_type((OperationalError, IntegrityError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, max=2),
        reraise=True,
    )
    async def _reconcile_once(self, wallet_id: int, market_id: int, outcome: int) -> TupleResult:
        result = TupleResult(wallet_id, market_id, outcome)

        async with self.db.session() as session:
            position, market = await self._load_tuple(session, wallet_id, market_id, outcome)
            if market is None:
                raise IntegrityViolation(f"market {market_id} does not exist")

            watermark = position.last_trade_id if position else 0
            new_trades = await self._tuple_trades(session, wallet_id, market_id, outcome, watermark)
            if not new_trades:
                return result

            resolved = market.status == MarketStatus.RESOLVED
            imported = position is not None and position.pnl_source == PnlSource.IMPORTED
            out_of_order = (
                position is not None
                and position.last_trade_time is not None
                and new_trades[0].block_time < position.last_trade_time
            )
            was_settled = position is not None and position.settled_at is not None

            if position is None:
                position = self._new_position(session, wallet_id, market_id, outcome)
                result.created = True
            else:
                result.updated = True

            parked = await self._parked_ids(session, wallet_id, market_id, outcome)

            if not imported and (out_of_order or was_settled or resolved):
                state = await self._replay(session, position, market, parked, result)
            else:
                # Imported figures have no trade history behind them, so new
                # trades always go on top incrementally
                state = await self._apply_trades(
                    session, load_state(position), new_trades, market, parked, result,
                )
                if resolved:
                    state = self._settle(position, market, state)
                self._advance_watermark(position, new_trades)

            store_state(position, state)

        logger.debug(
            f"Reconciled w={wallet_id} m={market_id}:{outcome} "
            f"applied={result.applied} parked={result.parked} replayed={result.replayed}"
        )
        return result

    @retry(
        retry=retry_if_exception_type((OperationalError, IntegrityError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, max=2),
        reraise=True,
    )
    async def _retry_parked_once(self, wallet_id: int, market_id: int, outcome: int) -> TupleResult:
        result = TupleResult(wallet_id, market_id, outcome)

        async with self.db.session() as session:
            position, market = await self._load_tuple(session, wallet_id, market_id, outcome)
            parked = await self._parked_ids(session, wallet_id, market_id, outcome)
            if market is None or not parked:
                return result

            if position is None:
                position = self._new_position(session, wallet_id, market_id, outcome)
                result.created = True
            else:
                result.updated = True

            if position.pnl_source == PnlSource.IMPORTED:
                trades = list((await session.execute(
                    select(Trade)
                    .where(Trade.id.in_(list(parked)))
                    .order_by(Trade.block_time, Trade.id)
                )).scalars().all())
                state = await self._apply_trades(
                    session, load_state(position), trades, market, parked, result,
                )
            else:
                state = await self._replay(session, position, market, parked, result)

            store_state(position, state)

        return result

    async def _retry_parked_tuple(self, wallet_id: int, market_id: int, outcome: int) -> TupleResult:
        async with self.locks.hold(position_key(wallet_id, market_id, outcome)):
            return await self._retry_parked_once(wallet_id, market_id, outcome)
