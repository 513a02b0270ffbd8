"""
Command line interface for the wallet PnL ledger.

Usage:
    wallet-pnl sync                         # One full sync run
    wallet-pnl import                       # Overwrite PnL with venue figures
    wallet-pnl worker                       # Scheduled sync loop
    wallet-pnl status                       # Last run per job
    wallet-pnl lag --from ... --to ...      # Price feed lag report
    wallet-pnl add-wallet 0xabc --alias me  # Track a wallet
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime
from typing import Optional

from loguru import logger

from .analysis.lag_correlator import LagAnalyzer
from .config import load_config
from .database.db import Database, init_db
from .errors import ConfigError, LedgerError
from .platforms import DataProvider, create_provider
from .platforms.polymarket import parse_timestamp
from .sync.orchestrator import SyncOrchestrator


class LedgerApp:
    """
    Wires config, storage and the upstream provider together.

    Owns:
    - Logging setup
    - Database lifecycle
    - The sync orchestrator
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Args:
            config_path: Path to YAML configuration file
        """
        self.config = load_config(config_path)

        self.db: Optional[Database] = None
        self.provider: Optional[DataProvider] = None
        self.orchestrator: Optional[SyncOrchestrator] = None

    async def initialize(self):
        """Initialize all components"""
        self._setup_logging()

        db_path = self.config['database']['path']
        self.db = await init_db(db_path)

        self.provider = create_provider(self.config)
        logger.info(f"Using {self.provider.name} provider")

        self.orchestrator = SyncOrchestrator(self.db, self.provider, self.config)

    def _setup_logging(self):
        """Configure loguru for the app and stdlib logging for services"""
        log_config = self.config.get('logging', {})
        level = log_config.get('level', 'INFO')

        # Remove default handler
        logger.remove()

        # Add console handler
        logger.add(
            sys.stderr,
            level=level,
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
        )

        # Add file handler if configured
        log_file = log_config.get('file')
        if log_file:
            logger.add(
                log_file,
                level=level,
                rotation="10 MB",
                retention="7 days"
            )

        logging.basicConfig(
            level=getattr(logging, str(level).upper(), logging.INFO),
            format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
            datefmt='%H:%M:%S',
            stream=sys.stderr,
        )
        # Reduce noise from other loggers
        logging.getLogger("aiohttp").setLevel(logging.WARNING)
        logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    async def close(self):
        if self.provider:
            await self.provider.close()
        if self.db:
            await self.db.close()


def _print(data):
    print(json.dumps(data, indent=2, default=str))


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parse_timestamp(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid time {value!r}: {e}")


async def _run_worker(app: LedgerApp):
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    await app.orchestrator.run_forever(stop_event)


async def _add_wallet(app: LedgerApp, address: str, alias: Optional[str]) -> dict:
    async with app.db.session() as session:
        wallet = await app.db.get_or_create_wallet(session, address, alias)
        return {"id": wallet.id, "address": wallet.address, "alias": wallet.alias}


async def run_command(args: argparse.Namespace) -> int:
    app = LedgerApp(args.config)
    try:
        await app.initialize()

        if args.command == 'sync':
            _print((await app.orchestrator.run_full_sync()).to_dict())
        elif args.command == 'import':
            _print((await app.orchestrator.run_authoritative_import()).to_dict())
        elif args.command == 'worker':
            await _run_worker(app)
        elif args.command == 'status':
            _print(await app.orchestrator.get_status())
        elif args.command == 'lag':
            analyzer = LagAnalyzer(app.db, app.config.get('lag', {}))
            _print(await analyzer.query(args.start, args.end))
        elif args.command == 'add-wallet':
            _print(await _add_wallet(app, args.address, args.alias))
        return 0
    except LedgerError as e:
        logger.error(str(e))
        return 1
    finally:
        await app.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Wallet PnL - prediction market position ledger"
    )
    parser.add_argument(
        '--config', '-c',
        default=None,
        help='Path to configuration file'
    )

    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('sync', help='Run one full sync')
    sub.add_parser('import', help='Import venue-reported positions and PnL')
    sub.add_parser('worker', help='Run scheduled syncs until interrupted')
    sub.add_parser('status', help='Show sync job status')

    lag = sub.add_parser('lag', help='Lag between reference and derived price feeds')
    lag.add_argument('--from', dest='start', type=_parse_time, default=None,
                     help='Window start (ISO-8601 or unix time, default: 1h ago)')
    lag.add_argument('--to', dest='end', type=_parse_time, default=None,
                     help='Window end (default: now)')

    add = sub.add_parser('add-wallet', help='Track a wallet address')
    add.add_argument('address')
    add.add_argument('--alias', default=None)

    return parser


def main(argv=None):
    """Main entry point"""
    args = build_parser().parse_args(argv)
    try:
        sys.exit(asyncio.run(run_command(args)))
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)
