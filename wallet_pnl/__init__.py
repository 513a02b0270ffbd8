"""
Wallet PnL ledger: trade ingestion, position reconciliation and
mark-to-market valuation for prediction-market wallets.
"""

__version__ = "0.1.0"
