from .valuator import MarkToMarketValuator, ValuationSummary, SettlementResult

__all__ = ['MarkToMarketValuator', 'ValuationSummary', 'SettlementResult']
