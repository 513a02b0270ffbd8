"""
Ingestion pipeline for the wallet PnL ledger.
Handles fetching wallet trades and keeping market metadata current.
"""

from .trade_ingestor import TradeIngestor, IngestResult, IngestSummary
from .market_sync import MarketLifecycleSync, MarketSyncResult

__all__ = [
    "TradeIngestor",
    "IngestResult",
    "IngestSummary",
    "MarketLifecycleSync",
    "MarketSyncResult",
]
