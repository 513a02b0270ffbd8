"""
Configuration loading: defaults, YAML file, then environment overrides.
"""

import copy
import os
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from loguru import logger

from .errors import ConfigError

PROVIDER_TYPES = ("mock", "polymarket")


def default_config() -> dict:
    """Return default configuration"""
    return {
        'database': {
            'path': 'wallet_pnl.db',
        },
        'provider': {
            'type': 'mock',
            'data_api_url': 'https://data-api.polymarket.com',
            'clob_url': 'https://clob.polymarket.com',
            'request_timeout': 30,
            'mock': {
                'seed': 42,
                'generate_trades': True,
                'trades_per_wallet': 20,
            },
        },
        'sync': {
            'interval_seconds': 120,
            'snapshot_interval_seconds': 900,
            'reorg_lookback_minutes': 120,
            'initial_sync_days': 90,
            'fetch_timeout_seconds': 60,
            'max_parallel_wallets': 4,
            'lock_timeout_seconds': 30,
        },
        'reconcile': {
            'allow_short': False,
        },
        'lag': {
            'tolerance_ms': 60000,
            'reference': {'source': 'BINANCE', 'symbol': 'BTCUSDT'},
            'derived': {
                'source': 'POLYMARKET',
                'symbols': ['POLY_BTC_15M_UP', 'POLY_BTC_15M_DOWN'],
            },
        },
        'logging': {
            'level': 'INFO',
        },
    }


def _deep_merge(base: dict, override: dict) -> dict:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def apply_env_overrides(config: dict) -> dict:
    """Apply environment variable overrides to config"""
    if os.getenv('DATABASE_PATH'):
        config['database']['path'] = os.getenv('DATABASE_PATH')

    if os.getenv('DATA_PROVIDER'):
        config['provider']['type'] = os.getenv('DATA_PROVIDER')
    if os.getenv('POLYMARKET_DATA_API'):
        config['provider']['data_api_url'] = os.getenv('POLYMARKET_DATA_API')
    if os.getenv('POLYMARKET_CLOB_API'):
        config['provider']['clob_url'] = os.getenv('POLYMARKET_CLOB_API')

    try:
        if os.getenv('SYNC_INTERVAL_SECONDS'):
            config['sync']['interval_seconds'] = int(os.getenv('SYNC_INTERVAL_SECONDS'))
        if os.getenv('REORG_LOOKBACK_MINUTES'):
            config['sync']['reorg_lookback_minutes'] = int(os.getenv('REORG_LOOKBACK_MINUTES'))
        if os.getenv('INITIAL_SYNC_DAYS'):
            config['sync']['initial_sync_days'] = int(os.getenv('INITIAL_SYNC_DAYS'))
    except ValueError as e:
        raise ConfigError(f"Invalid numeric environment override: {e}") from e

    if os.getenv('ALLOW_SHORT_POSITIONS'):
        config['reconcile']['allow_short'] = _env_bool(os.getenv('ALLOW_SHORT_POSITIONS'))

    if os.getenv('LOG_LEVEL'):
        config['logging']['level'] = os.getenv('LOG_LEVEL')

    return config


def validate_config(config: dict) -> dict:
    """Raise ConfigError if the configuration cannot drive a run"""
    if not config.get('database', {}).get('path'):
        raise ConfigError("database.path is required")

    provider_type = config.get('provider', {}).get('type')
    if provider_type not in PROVIDER_TYPES:
        raise ConfigError(
            f"Unknown provider type {provider_type!r}, expected one of {PROVIDER_TYPES}"
        )

    sync = config.get('sync', {})
    for key in ('interval_seconds', 'snapshot_interval_seconds', 'fetch_timeout_seconds',
                'max_parallel_wallets', 'lock_timeout_seconds'):
        if sync.get(key, 0) <= 0:
            raise ConfigError(f"sync.{key} must be positive")
    if sync.get('reorg_lookback_minutes', 0) < 0 or sync.get('initial_sync_days', 0) < 0:
        raise ConfigError("sync lookback windows must not be negative")

    if config.get('lag', {}).get('tolerance_ms', 0) <= 0:
        raise ConfigError("lag.tolerance_ms must be positive")

    return config


def load_config(config_path: Optional[str] = None) -> dict:
    """Load configuration from YAML file, .env and environment"""
    load_dotenv()

    config = default_config()

    if config_path:
        config_file = Path(config_path)
        if not config_file.exists():
            logger.warning(f"Config file not found: {config_path}, using defaults")
        else:
            with open(config_file) as f:
                loaded = yaml.safe_load(f) or {}
            if not isinstance(loaded, dict):
                raise ConfigError(f"Config file {config_path} must contain a mapping")
            _deep_merge(config, copy.deepcopy(loaded))

    config = apply_env_overrides(config)
    return validate_config(config)
