"""
Lag correlation between two independently sampled price feeds.

For every sample of the derived series (e.g. a prediction-market price)
the nearest sample of the reference series (e.g. spot BTC) is found with a
single forward-moving pointer. Pairs further apart than the tolerance are
dropped. Positive lag means the derived feed trails the reference.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import select

from ..database.db import Database
from ..database.models import PriceSample, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_MS = 60_000
DEFAULT_WINDOW = timedelta(hours=1)


@dataclass(frozen=True)
class Sample:
    timestamp: datetime
    price: float
    symbol: str = ""


@dataclass
class LagPoint:
    timestamp: datetime
    reference_price: float
    derived_price: float
    derived_symbol: str
    lag_ms: int
    price_diff: float

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "referencePrice": self.reference_price,
            "derivedPrice": self.derived_price,
            "derivedSymbol": self.derived_symbol,
            "lagMs": self.lag_ms,
            "priceDiff": self.price_diff,
        }


@dataclass
class LagStats:
    total: int = 0
    avg_lag_ms: int = 0
    min_lag_ms: int = 0
    max_lag_ms: int = 0
    median_lag_ms: float = 0
    time_from: Optional[datetime] = None
    time_to: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "avgLagMs": self.avg_lag_ms,
            "minLagMs": self.min_lag_ms,
            "maxLagMs": self.max_lag_ms,
            "medianLagMs": self.median_lag_ms,
            "timeRange": {
                "from": self.time_from.isoformat() if self.time_from else None,
                "to": self.time_to.isoformat() if self.time_to else None,
            },
        }


@dataclass
class LagReport:
    lag_data: List[LagPoint] = field(default_factory=list)
    stats: LagStats = field(default_factory=LagStats)

    def to_dict(self) -> dict:
        return {
            "lagData": [p.to_dict() for p in self.lag_data],
            "stats": self.stats.to_dict(),
        }


def _ms(delta: timedelta) -> int:
    return round(delta.total_seconds() * 1000)


def median(values: Sequence[float]) -> float:
    """Middle value; mean of the two middle values for an even count"""
    ordered = sorted(values)
    n = len(ordered)
    if n == 0:
        return 0
    mid = n // 2
    if n % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


def summarize(points: Sequence[LagPoint]) -> LagStats:
    if not points:
        return LagStats()
    lags = [p.lag_ms for p in points]
    return LagStats(
        total=len(points),
        avg_lag_ms=round(sum(lags) / len(lags)),
        min_lag_ms=min(lags),
        max_lag_ms=max(lags),
        median_lag_ms=median(lags),
        time_from=points[0].timestamp,
        time_to=points[-1].timestamp,
    )


def correlate(
    reference: Sequence[Sample],
    derived: Sequence[Sample],
    tolerance_ms: int = DEFAULT_TOLERANCE_MS,
) -> LagReport:
    """
    Match each derived sample to its nearest reference sample.

    Both series must be sorted by timestamp ascending. Runs in
    O(len(reference) + len(derived)). On a distance tie the earlier
    reference sample wins. Matches more than `tolerance_ms` away are
    excluded from the report and its statistics.
    """
    points: List[LagPoint] = []
    if not reference:
        return LagReport(points, summarize(points))

    tolerance = timedelta(milliseconds=tolerance_ms)
    i = 0
    last = len(reference) - 1

    for sample in derived:
        # Advance to the last reference sample at or before this one
        while i < last and reference[i + 1].timestamp <= sample.timestamp:
            i += 1

        closest = reference[i]
        distance = abs(sample.timestamp - closest.timestamp)
        if i < last:
            following = reference[i + 1]
            d2 = abs(following.timestamp - sample.timestamp)
            if d2 < distance:
                closest, distance = following, d2

        if distance > tolerance:
            continue

        points.append(LagPoint(
            timestamp=sample.timestamp,
            reference_price=closest.price,
            derived_price=sample.price,
            derived_symbol=sample.symbol,
            lag_ms=_ms(sample.timestamp - closest.timestamp),
            price_diff=abs(sample.price - closest.price),
        ))

    return LagReport(points, summarize(points))


class LagAnalyzer:
    """Loads both series from stored price samples and correlates them"""

    def __init__(self, db: Database, config: Optional[dict] = None):
        config = config or {}
        reference = config.get('reference', {})
        derived = config.get('derived', {})

        self.db = db
        self.tolerance_ms = config.get('tolerance_ms', DEFAULT_TOLERANCE_MS)
        self.reference_source = reference.get('source', 'BINANCE')
        self.reference_symbol = reference.get('symbol', 'BTCUSDT')
        self.derived_source = derived.get('source', 'POLYMARKET')
        self.derived_symbols = list(derived.get('symbols', ['POLY_BTC_15M_UP', 'POLY_BTC_15M_DOWN']))

    async def _load(self, session, source: str, symbols: List[str], start: datetime, end: datetime) -> List[Sample]:
        result = await session.execute(
            select(PriceSample)
            .where(
                PriceSample.source == source,
                PriceSample.symbol.in_(symbols),
                PriceSample.observed_at >= start,
                PriceSample.observed_at <= end,
            )
            .order_by(PriceSample.observed_at, PriceSample.id)
        )
        return [Sample(r.observed_at, r.price, r.symbol) for r in result.scalars().all()]

    async def query(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> dict:
        """Lag report for [start, end], defaulting to the last hour"""
        end = end or utcnow()
        start = start or end - DEFAULT_WINDOW

        async with self.db.session() as session:
            reference = await self._load(
                session, self.reference_source, [self.reference_symbol], start, end,
            )
            derived = await self._load(
                session, self.derived_source, self.derived_symbols, start, end,
            )

        report = correlate(reference, derived, self.tolerance_ms)
        logger.info(
            f"Lag query {start:%H:%M:%S}-{end:%H:%M:%S}: {len(reference)} reference, "
            f"{len(derived)} derived, {report.stats.total} matched"
        )
        return report.to_dict()
