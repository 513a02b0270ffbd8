"""
Snapshot recorder.
Captures an append-only, point-in-time valuation per wallet for trend charts.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from ..database.db import Database
from ..database.models import Position, PositionStatus, Snapshot, Trade, utcnow

logger = logging.getLogger(__name__)

# Snapshot timestamps per wallet are strictly increasing by at least this much
MIN_SNAPSHOT_STEP = timedelta(microseconds=1)


@dataclass
class SnapshotSummary:
    total_created: int = 0
    total_errors: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "totalCreated": self.total_created,
            "totalErrors": self.total_errors,
        }


class SnapshotRecorder:
    """Sums each wallet's positions into an immutable Snapshot row"""

    def __init__(self, db: Database, volume_window_days: int = 30):
        self.db = db
        self.volume_window = timedelta(days=volume_window_days)

    async def record_wallet(self, wallet_id: int, at: Optional[datetime] = None) -> Snapshot:
        """
        Persist a snapshot for one wallet.

        equity = realized + unrealized over every position
        total_value = shares x mark over open positions (avg entry when unpriced)
        """
        at = at or utcnow()

        async with self.db.session() as session:
            positions = (await session.execute(
                select(Position).where(Position.wallet_id == wallet_id)
            )).scalars().all()

            realized = sum(p.realized_pnl or 0.0 for p in positions)
            unrealized = sum(p.unrealized_pnl or 0.0 for p in positions)
            open_positions = [p for p in positions if p.status == PositionStatus.OPEN]
            total_value = sum(
                (p.shares or 0.0) * (p.mark_price if p.mark_price is not None else (p.avg_entry_price or 0.0))
                for p in open_positions
            )

            volume = (await session.execute(
                select(func.coalesce(func.sum(func.abs(Trade.cost)), 0.0)).where(
                    Trade.wallet_id == wallet_id,
                    Trade.block_time >= at - self.volume_window,
                )
            )).scalar_one()

            previous = (await session.execute(
                select(func.max(Snapshot.timestamp)).where(Snapshot.wallet_id == wallet_id)
            )).scalar_one_or_none()
            if previous is not None and at <= previous:
                at = previous + MIN_SNAPSHOT_STEP

            snapshot = Snapshot(
                wallet_id=wallet_id,
                timestamp=at,
                equity=realized + unrealized,
                realized_pnl=realized,
                unrealized_pnl=unrealized,
                total_value=total_value,
                volume_30d=float(volume or 0.0),
                open_positions=len(open_positions),
            )
            session.add(snapshot)

        logger.debug(f"Snapshot wallet {wallet_id}: equity {snapshot.equity:+.2f}")
        return snapshot

    async def record_all(self, wallet_ids: Optional[Iterable[int]] = None) -> SnapshotSummary:
        """Snapshot every wallet (or the given ones); one failure never stops the rest"""
        if wallet_ids is None:
            wallet_ids = [w.id for w in await self.db.list_wallets()]

        summary = SnapshotSummary()
        at = utcnow()
        for wallet_id in wallet_ids:
            try:
                await self.record_wallet(wallet_id, at)
                summary.total_created += 1
            except IntegrityError as e:
                summary.total_errors += 1
                summary.errors.append(f"wallet {wallet_id}: {e}")
                logger.error(f"Snapshot failed for wallet {wallet_id}: {e}")

        logger.info(f"Recorded {summary.total_created} snapshots ({summary.total_errors} errors)")
        return summary

    async def get_wallet_snapshots(
        self,
        wallet_id: int,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 500,
    ) -> List[Snapshot]:
        """Snapshots for charting, oldest first"""
        stmt = select(Snapshot).where(Snapshot.wallet_id == wallet_id)
        if since is not None:
            stmt = stmt.where(Snapshot.timestamp >= since)
        if until is not None:
            stmt = stmt.where(Snapshot.timestamp <= until)

        async with self.db.session() as session:
            rows = (await session.execute(
                stmt.order_by(Snapshot.timestamp.desc()).limit(limit)
            )).scalars().all()
        return list(reversed(rows))
