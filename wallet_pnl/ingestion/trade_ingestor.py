"""
Trade ingestor for tracked wallets.
Fetches fills from the upstream sources and stores each one exactly once.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError

from ..database.db import Database
from ..database.models import TrackedWallet, Trade, utcnow
from ..errors import UpstreamError
from ..platforms.base import DataProvider, RawTrade

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Counts for one wallet's ingest"""
    wallet: str
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    errors: List[str] = field(default_factory=list)
    failed: bool = False
    watermark: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "wallet": self.wallet,
            "fetched": self.fetched,
            "inserted": self.inserted,
            "duplicates": self.duplicates,
            "errors": list(self.errors),
        }


@dataclass
class IngestSummary:
    total_found: int = 0
    total_new: int = 0
    total_errors: int = 0
    failed_wallets: List[str] = field(default_factory=list)
    results: List[IngestResult] = field(default_factory=list)

    def add(self, result: IngestResult):
        self.results.append(result)
        self.total_found += result.fetched
        self.total_new += result.inserted
        self.total_errors += len(result.errors)
        if result.failed:
            self.failed_wallets.append(result.wallet)

    def to_dict(self) -> dict:
        return {
            "totalFound": self.total_found,
            "totalNew": self.total_new,
            "totalErrors": self.total_errors,
        }


class TradeIngestor:
    """
    Pull trades per wallet and insert the unseen ones.

    Supports:
    - Several upstream sources merged into one ordered batch
    - Idempotent insertion keyed on (tx_hash, log_index)
    - A per-wallet watermark that only moves past committed trades
    """

    def __init__(
        self,
        db: Database,
        sources: Sequence[DataProvider],
        fetch_timeout: float = 60.0,
        reorg_lookback_minutes: int = 120,
        initial_sync_days: int = 90,
    ):
        """
        Initialize the ingestor.

        Args:
            db: Database instance
            sources: Upstream providers queried for every wallet
            fetch_timeout: Seconds allowed per source fetch
            reorg_lookback_minutes: Re-fetch overlap behind the watermark
            initial_sync_days: History pulled for a wallet with no watermark
        """
        self.db = db
        self.sources = list(sources)
        self.fetch_timeout = fetch_timeout
        self.reorg_lookback = timedelta(minutes=reorg_lookback_minutes)
        self.initial_window = timedelta(days=initial_sync_days)

    def fetch_window(self, wallet: TrackedWallet, since: Optional[datetime] = None) -> datetime:
        """Start of the fetch window for a wallet"""
        if since is not None:
            return since
        if wallet.last_trade_at is not None:
            return wallet.last_trade_at - self.reorg_lookback
        return utcnow() - self.initial_window

    async def fetch(
        self,
        wallet: TrackedWallet,
        since: Optional[datetime] = None,
    ) -> Tuple[List[RawTrade], List[str], List[str]]:
        """
        Query every source for the wallet.

        Returns:
            (trades sorted by execution order, malformed record errors,
             source failures)
        """
        window_start = self.fetch_window(wallet, since)
        trades: List[RawTrade] = []
        malformed: List[str] = []
        failures: List[str] = []

        for source in self.sources:
            try:
                batch = await asyncio.wait_for(
                    source.fetch_trades(wallet.address, window_start),
                    timeout=self.fetch_timeout,
                )
            except asyncio.TimeoutError:
                failures.append(f"{source.name}: timed out after {self.fetch_timeout:.0f}s")
                continue
            except UpstreamError as e:
                failures.append(f"{source.name}: {e}")
                continue
            except Exception as e:
                logger.exception(f"Unexpected error from {source.name} for {wallet.label}")
                failures.append(f"{source.name}: {e!r}")
                continue

            trades.extend(batch.trades)
            malformed.extend(f"malformed record: {reason}" for reason in batch.malformed)

        trades.sort(key=lambda t: (t.block_time, t.tx_hash, t.log_index or 0))
        return trades, malformed, failures

    async def persist(
        self,
        wallet_id: int,
        trades: List[RawTrade],
        result: IngestResult,
        advance_watermark: bool = True,
    ):
        """
        Insert trades and move the wallet watermark in one transaction.

        If any insert fails the whole batch rolls back with the watermark,
        so the tail is re-fetched on the next run rather than skipped.
        """
        inserted = duplicates = 0

        async with self.db.write_lock:
            async with self.db.session() as session:
                wallet = await session.get(TrackedWallet, wallet_id)
                markets = {}

                for trade in trades:
                    market = markets.get(trade.condition_id)
                    if market is None:
                        market = await self.db.get_or_create_market(
                            session, trade.condition_id, title=trade.market_title,
                        )
                        markets[trade.condition_id] = market

                    if await self._insert(session, wallet_id, market.id, trade):
                        inserted += 1
                    else:
                        duplicates += 1

                if advance_watermark:
                    if trades:
                        newest = trades[-1].block_time
                        if wallet.last_trade_at is None or newest > wallet.last_trade_at:
                            wallet.last_trade_at = newest
                    wallet.last_synced_at = utcnow()
                watermark = wallet.last_trade_at

        # Counted only once the transaction has committed
        result.inserted += inserted
        result.duplicates += duplicates
        result.watermark = watermark

    async def _insert(self, session, wallet_id: int, market_id: int, trade: RawTrade) -> bool:
        """INSERT .. ON CONFLICT DO NOTHING; True if a row was written"""
        stmt = (
            sqlite_insert(Trade)
            .values(
                wallet_id=wallet_id,
                market_id=market_id,
                tx_hash=trade.tx_hash,
                log_index=trade.log_index or 0,
                block_time=trade.block_time,
                block_number=trade.block_number,
                outcome=trade.outcome,
                side=trade.side,
                price=trade.price,
                size=trade.size,
                cost=trade.cost,
                fee=trade.fee or 0.0,
                source=trade.source,
                raw_data=trade.raw_data,
                created_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["tx_hash", "log_index"])
        )
        res = await session.execute(stmt)
        return res.rowcount > 0

    async def ingest_wallet(
        self,
        wallet: TrackedWallet,
        since: Optional[datetime] = None,
    ) -> IngestResult:
        """
        Fetch and store new trades for one wallet.

        Upstream failures mark the wallet failed for this run; trades from
        sources that did answer are still stored, but the watermark only
        advances when every source answered.
        """
        result = IngestResult(wallet=wallet.address)

        trades, malformed, failures = await self.fetch(wallet, since)
        result.fetched = len(trades) + len(malformed)
        result.errors.extend(malformed)

        if failures:
            result.failed = True
            result.errors.extend(failures)
            for failure in failures:
                logger.warning(f"Fetch failed for {wallet.label}: {failure}")

        if trades or not failures:
            try:
                await self.persist(wallet.id, trades, result, advance_watermark=not failures)
            except IntegrityError as e:
                result.failed = True
                result.errors.append(f"batch rolled back: {e.orig}")
                logger.error(f"Storing trades failed for {wallet.label}: {e}")

        if result.inserted:
            logger.info(
                f"Ingested {wallet.label}: {result.fetched} fetched, "
                f"{result.inserted} new, {result.duplicates} known"
            )
        return result

    async def ingest_all(
        self,
        wallets: Sequence[TrackedWallet],
        max_parallel: int = 4,
    ) -> IngestSummary:
        """Ingest many wallets; one wallet failing never stops the others"""
        semaphore = asyncio.Semaphore(max_parallel)

        async def _one(wallet: TrackedWallet) -> IngestResult:
            async with semaphore:
                return await self.ingest_wallet(wallet)

        summary = IngestSummary()
        for result in await asyncio.gather(*(_one(w) for w in wallets)):
            summary.add(result)

        logger.info(
            f"Ingest run: {summary.total_found} found, {summary.total_new} new, "
            f"{len(summary.failed_wallets)} wallets failed"
        )
        return summary
