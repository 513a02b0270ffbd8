from .models import (
    TrackedWallet, Market, Trade, Position, ParkedTrade, Snapshot,
    PriceSample, SyncStatus, MarketStatus, TradeSide, PositionStatus, PnlSource,
)
from .db import Database, get_db, init_db

__all__ = [
    'TrackedWallet', 'Market', 'Trade', 'Position', 'ParkedTrade', 'Snapshot',
    'PriceSample', 'SyncStatus',
    'MarketStatus', 'TradeSide', 'PositionStatus', 'PnlSource',
    'Database', 'get_db', 'init_db',
]
