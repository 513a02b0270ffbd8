from .ledger import (
    Flat, Long, Short, FLAT, Fill, LedgerState, SHARE_EPSILON,
    apply_fill, settle, unrealized_pnl, replay,
)
from .reconciler import PositionReconciler, ReconcileSummary, TupleResult

__all__ = [
    'Flat', 'Long', 'Short', 'FLAT', 'Fill', 'LedgerState', 'SHARE_EPSILON',
    'apply_fill', 'settle', 'unrealized_pnl', 'replay',
    'PositionReconciler', 'ReconcileSummary', 'TupleResult',
]
