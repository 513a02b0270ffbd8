"""
Sync orchestration: full reconciliation runs, authoritative imports and
the advisory locks that keep them apart.

Import the orchestrator from `wallet_pnl.sync.orchestrator`; the position
reconciler depends on the locks here, so this package stays import-light.
"""

from .locks import WalletLocks

__all__ = ['WalletLocks']
