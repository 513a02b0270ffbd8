"""
Sync orchestrator.

Sequences ingestion, market lifecycle, reconciliation, valuation and
snapshots into one full sync run, and offers the authoritative import that
replaces computed PnL with venue-reported figures. The two never touch the
same wallet at the same time: both hold the wallet's advisory lock.
"""

import asyncio
import logging
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from sqlalchemy import delete, func, select

from ..database.db import Database
from ..database.models import (
    Market, MarketStatus, ParkedTrade, PnlSource, Position, PositionStatus, SyncStatus,
    TrackedWallet, Trade, utcnow,
)
from ..errors import SyncInProgress, SyncLockTimeout, UpstreamError
from ..ingestion.market_sync import MarketLifecycleSync, MarketSyncResult
from ..ingestion.trade_ingestor import IngestSummary, TradeIngestor
from ..platforms.base import DataProvider, RawPosition
from ..positions.reconciler import PositionReconciler, ReconcileSummary
from ..snapshots.recorder import SnapshotRecorder, SnapshotSummary
from ..valuation.valuator import MarkToMarketValuator, ValuationSummary
from .locks import WalletLocks, position_key

logger = logging.getLogger(__name__)

JOB_FULL_SYNC = "full_sync"
JOB_IMPORT = "authoritative_import"

# Venue positions smaller than this are reported as closed
IMPORT_DUST_SHARES = 0.001


@dataclass
class FullSyncResult:
    duration_ms: int = 0
    trades: IngestSummary = field(default_factory=IngestSummary)
    positions: ReconcileSummary = field(default_factory=ReconcileSummary)
    markets: MarketSyncResult = field(default_factory=MarketSyncResult)
    valuation: ValuationSummary = field(default_factory=ValuationSummary)
    snapshots: SnapshotSummary = field(default_factory=SnapshotSummary)
    skipped_wallets: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "duration": self.duration_ms,
            "trades": self.trades.to_dict(),
            "positions": self.positions.to_dict(),
            "markets": self.markets.to_dict(),
            "valuation": {
                "positionsValued": self.valuation.positions_valued,
                "positionsWithoutPrice": self.valuation.positions_without_price,
            },
            "snapshots": self.snapshots.to_dict(),
            "skippedWallets": list(self.skipped_wallets),
        }


@dataclass
class WalletImportResult:
    wallet: str
    positions_imported: int = 0
    positions_settled: int = 0
    total_cash_pnl: float = 0.0
    total_initial_value: float = 0.0
    total_current_value: float = 0.0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "positionsImported": self.positions_imported,
            "positionsSettled": self.positions_settled,
            "totalCashPnl": self.total_cash_pnl,
            "totalInitialValue": self.total_initial_value,
            "totalCurrentValue": self.total_current_value,
            "errors": list(self.errors),
        }


@dataclass
class ImportResult:
    duration_ms: int = 0
    wallets: List[WalletImportResult] = field(default_factory=list)
    snapshots: SnapshotSummary = field(default_factory=SnapshotSummary)

    def to_dict(self) -> dict:
        return {
            "duration": self.duration_ms,
            "wallets": {w.wallet: w.to_dict() for w in self.wallets},
            "snapshots": self.snapshots.to_dict(),
        }


class SyncOrchestrator:
    """
    Runs the ledger pipeline end to end.

    Full sync order:
        ingest trades -> market lifecycle (settlement sweeps) -> reconcile
        -> retry parked trades -> revalue -> snapshots
    """

    def __init__(
        self,
        db: Database,
        provider: DataProvider,
        config: dict,
        sources: Optional[Sequence[DataProvider]] = None,
    ):
        """
        Args:
            db: Database instance
            provider: Upstream provider for markets, prices and positions
            config: Full application config (uses `sync`, `reconcile`)
            sources: Trade sources; defaults to [provider]
        """
        sync_config = config.get('sync', {})
        reconcile_config = config.get('reconcile', {})

        self.db = db
        self.provider = provider
        self.interval = sync_config.get('interval_seconds', 120)
        self.snapshot_interval = sync_config.get('snapshot_interval_seconds', 900)
        self.fetch_timeout = sync_config.get('fetch_timeout_seconds', 60)
        self.max_parallel = sync_config.get('max_parallel_wallets', 4)

        self.wallet_locks = WalletLocks(default_timeout=sync_config.get('lock_timeout_seconds', 30))
        self.position_locks = WalletLocks()

        self.ingestor = TradeIngestor(
            db,
            sources or [provider],
            fetch_timeout=self.fetch_timeout,
            reorg_lookback_minutes=sync_config.get('reorg_lookback_minutes', 120),
            initial_sync_days=sync_config.get('initial_sync_days', 90),
        )
        self.valuator = MarkToMarketValuator(db, provider, locks=self.position_locks)
        self.market_sync = MarketLifecycleSync(db, provider, self.valuator)
        self.reconciler = PositionReconciler(
            db,
            allow_short=reconcile_config.get('allow_short', False),
            locks=self.position_locks,
        )
        self.snapshots = SnapshotRecorder(db)

        self._running: set = set()
        self._last_snapshot_at: Optional[float] = None

    # ==================== Job bookkeeping ====================

    def is_running(self, job_type: Optional[str] = None) -> bool:
        if job_type is None:
            return bool(self._running)
        return job_type in self._running

    async def _mark_started(self, job_type: str):
        if job_type in self._running:
            raise SyncInProgress(f"{job_type} is already running")
        self._running.add(job_type)
        await self._save_status(job_type, is_running=True)

    async def _save_status(
        self,
        job_type: str,
        is_running: bool,
        result: Optional[dict] = None,
        items: int = 0,
        error: Optional[str] = None,
    ):
        async with self.db.session() as session:
            status = (await session.execute(
                select(SyncStatus).where(SyncStatus.job_type == job_type)
            )).scalar_one_or_none()
            if status is None:
                status = SyncStatus(job_type=job_type)
                session.add(status)

            status.is_running = is_running
            if is_running:
                status.last_run_at = utcnow()
                return

            status.items_processed = items
            if result is not None:
                status.last_result = result
            status.last_error = error
            if error is None:
                status.last_success = utcnow()

    async def get_status(self) -> dict:
        """Last run, last result and in-progress flag per job"""
        async with self.db.session() as session:
            rows = (await session.execute(select(SyncStatus))).scalars().all()

        jobs = {}
        for row in rows:
            jobs[row.job_type] = {
                "lastRunAt": row.last_run_at.isoformat() if row.last_run_at else None,
                "lastSuccess": row.last_success.isoformat() if row.last_success else None,
                "lastError": row.last_error,
                "isRunning": row.job_type in self._running,
                "itemsProcessed": row.items_processed,
                "lastResult": row.last_result,
            }

        last_runs = [j["lastRunAt"] for j in jobs.values() if j["lastRunAt"]]
        return {
            "isRunning": self.is_running(),
            "lastRunAt": max(last_runs) if last_runs else None,
            "jobs": jobs,
        }

    async def _lock_wallets(
        self,
        stack: AsyncExitStack,
        wallets: List[TrackedWallet],
        skipped: List[str],
    ) -> List[TrackedWallet]:
        """Take the advisory lock for each wallet; skip those held elsewhere"""
        locked = []
        for wallet in wallets:
            try:
                await stack.enter_async_context(self.wallet_locks.hold(("wallet", wallet.id)))
            except SyncLockTimeout as e:
                logger.warning(f"Skipping {wallet.label} this run: {e}")
                skipped.append(wallet.address)
                continue
            locked.append(wallet)
        return locked

    # ==================== Full sync ====================

    async def run_full_sync(self, record_snapshots: bool = True) -> FullSyncResult:
        """
        One full reconciliation pass over every tracked wallet.

        Per-item failures end up in the result. Storage errors propagate
        after the failure is recorded in sync_status.
        """
        await self._mark_started(JOB_FULL_SYNC)
        started = time.monotonic()
        result = FullSyncResult()

        try:
            wallets = await self.db.list_wallets()
            logger.info(f"Full sync starting for {len(wallets)} wallets")

            async with AsyncExitStack() as stack:
                locked = await self._lock_wallets(stack, wallets, result.skipped_wallets)
                wallet_ids = [w.id for w in locked]

                result.trades = await self.ingestor.ingest_all(locked, self.max_parallel)
                result.markets = await self.market_sync.sync_markets()
                result.positions = await self.reconciler.reconcile_all(wallet_ids)
                result.positions.merge(await self.reconciler.retry_parked(wallet_ids))
                result.valuation = await self.valuator.revalue_all(wallet_ids)
                if record_snapshots:
                    result.snapshots = await self.snapshots.record_all(wallet_ids)
                    self._last_snapshot_at = time.monotonic()

            result.duration_ms = int((time.monotonic() - started) * 1000)
            await self._save_status(
                JOB_FULL_SYNC,
                is_running=False,
                result=result.to_dict(),
                items=result.trades.total_new,
            )
        except Exception as e:
            await self._save_status(JOB_FULL_SYNC, is_running=False, error=repr(e))
            raise
        finally:
            self._running.discard(JOB_FULL_SYNC)

        logger.info(
            f"Full sync done in {result.duration_ms}ms: "
            f"{result.trades.total_new} new trades, "
            f"{result.positions.total_created} positions created, "
            f"{result.positions.total_updated} updated, "
            f"{result.markets.markets_resolved} markets resolved"
        )
        return result

    # ==================== Authoritative import ====================

    async def run_authoritative_import(self) -> ImportResult:
        """Overwrite computed positions with venue-reported figures"""
        await self._mark_started(JOB_IMPORT)
        started = time.monotonic()
        result = ImportResult()

        try:
            wallets = await self.db.list_wallets()
            imported_ids = []

            for wallet in wallets:
                try:
                    async with self.wallet_locks.hold(("wallet", wallet.id)):
                        wallet_result = await self._import_wallet(wallet)
                except SyncLockTimeout as e:
                    wallet_result = WalletImportResult(wallet=wallet.address, errors=[str(e)])
                result.wallets.append(wallet_result)
                if wallet_result.positions_imported:
                    imported_ids.append(wallet.id)

            if imported_ids:
                result.snapshots = await self.snapshots.record_all(imported_ids)

            result.duration_ms = int((time.monotonic() - started) * 1000)
            await self._save_status(
                JOB_IMPORT,
                is_running=False,
                result=result.to_dict(),
                items=sum(w.positions_imported for w in result.wallets),
            )
        except Exception as e:
            await self._save_status(JOB_IMPORT, is_running=False, error=repr(e))
            raise
        finally:
            self._running.discard(JOB_IMPORT)

        logger.info(
            f"Import done in {result.duration_ms}ms: "
            f"{sum(w.positions_imported for w in result.wallets)} positions "
            f"across {len(result.wallets)} wallets"
        )
        return result

    async def _import_wallet(self, wallet: TrackedWallet) -> WalletImportResult:
        result = WalletImportResult(wallet=wallet.address)

        try:
            positions = await asyncio.wait_for(
                self.provider.fetch_positions(wallet.address),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError:
            result.errors.append(f"position fetch timed out after {self.fetch_timeout}s")
            return result
        except UpstreamError as e:
            result.errors.append(str(e))
            return result

        async with self.db.session() as session:
            market_ids = {}
            for raw in positions:
                if raw.condition_id not in market_ids:
                    market = await self.db.get_or_create_market(
                        session, raw.condition_id, title=raw.market_title,
                    )
                    market_ids[raw.condition_id] = market.id

        keys = [position_key(wallet.id, market_ids[raw.condition_id], raw.outcome) for raw in positions]
        async with self.position_locks.hold_many(keys):
            async with self.db.session() as session:
                for raw in positions:
                    market = await session.get(Market, market_ids[raw.condition_id])
                    if await self._import_position(session, wallet.id, market, raw):
                        result.positions_settled += 1
                    result.positions_imported += 1
                    result.total_cash_pnl += raw.cash_pnl
                    result.total_initial_value += raw.initial_value
                    result.total_current_value += raw.current_value

        logger.info(
            f"Imported {result.positions_imported} positions for {wallet.label} "
            f"(cash PnL {result.total_cash_pnl:+.2f})"
        )
        return result

    async def _import_position(self, session, wallet_id: int, market: Market, raw: RawPosition) -> bool:
        """Overwrite one position with venue figures; True if it was settled"""
        position = (await session.execute(
            select(Position).where(
                Position.wallet_id == wallet_id,
                Position.market_id == market.id,
                Position.outcome == raw.outcome,
            )
        )).scalar_one_or_none()
        if position is None:
            position = Position(wallet_id=wallet_id, market_id=market.id, outcome=raw.outcome)
            session.add(position)

        is_open = raw.size > IMPORT_DUST_SHARES
        position.shares = raw.size if is_open else 0.0
        position.avg_entry_price = raw.avg_price if is_open else None
        position.realized_pnl = raw.cash_pnl
        position.unrealized_pnl = raw.current_value - raw.initial_value if is_open else 0.0
        position.total_cost = raw.initial_value
        position.total_fees = 0.0
        position.mark_price = raw.current_value / raw.size if is_open else None
        position.status = PositionStatus.OPEN if is_open else PositionStatus.CLOSED
        position.settled_at = None
        position.pnl_source = PnlSource.IMPORTED
        position.last_updated = utcnow()

        # Trades already known are reflected in the venue figures
        newest_id, newest_time = (await session.execute(
            select(func.max(Trade.id), func.max(Trade.block_time)).where(
                Trade.wallet_id == wallet_id,
                Trade.market_id == market.id,
                Trade.outcome == raw.outcome,
            )
        )).one()
        position.last_trade_id = newest_id or 0
        position.last_trade_time = newest_time
        await session.execute(
            delete(ParkedTrade).where(
                ParkedTrade.wallet_id == wallet_id,
                ParkedTrade.market_id == market.id,
                ParkedTrade.outcome == raw.outcome,
            )
        )

        # Unredeemed shares in a resolved market: the sweep already ran
        # for this market, so settle the row here
        if is_open and market.status == MarketStatus.RESOLVED:
            return self.valuator.settle_position(position, market) is not None
        return False

    # ==================== Scheduler ====================

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None):
        """Full sync every `interval` seconds, snapshots on their own cadence"""
        stop_event = stop_event or asyncio.Event()
        logger.info(
            f"Sync worker started (sync every {self.interval}s, "
            f"snapshots every {self.snapshot_interval}s)"
        )

        while not stop_event.is_set():
            snapshot_due = (
                self._last_snapshot_at is None
                or time.monotonic() - self._last_snapshot_at >= self.snapshot_interval
            )
            try:
                await self.run_full_sync(record_snapshots=snapshot_due)
            except SyncInProgress as e:
                logger.warning(f"Skipping scheduled sync: {e}")
            except Exception as e:
                logger.error(f"Scheduled sync failed: {e!r}")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Sync worker stopped")
