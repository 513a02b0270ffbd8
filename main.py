#!/usr/bin/env python3
"""
Wallet PnL - Prediction Market Position Ledger

Tracks realized and unrealized PnL for monitored wallets by ingesting their
trades, reconciling positions and marking them to market.

Usage:
    python main.py sync                  # One full sync run
    python main.py worker                # Sync on a schedule
    python main.py -c my.yaml status     # Custom config
"""

from wallet_pnl.cli import main


if __name__ == "__main__":
    main()
