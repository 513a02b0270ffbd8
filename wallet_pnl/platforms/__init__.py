from wallet_pnl.errors import ConfigError
from .base import DataProvider, RawTrade, RawMarket, RawPosition, TradeBatch
from .polymarket import PolymarketProvider
from .mock_feed import MockProvider


def create_provider(config: dict) -> DataProvider:
    """Build the upstream provider named by config['provider']['type']"""
    provider_config = config.get('provider', {})
    provider_type = provider_config.get('type', 'mock')

    if provider_type == 'polymarket':
        return PolymarketProvider(provider_config)
    if provider_type == 'mock':
        return MockProvider(provider_config.get('mock', {}))

    raise ConfigError(f"Unknown provider type: {provider_type}")


__all__ = [
    'DataProvider', 'RawTrade', 'RawMarket', 'RawPosition', 'TradeBatch',
    'PolymarketProvider', 'MockProvider', 'create_provider',
]
