from .lag_correlator import (
    Sample, LagPoint, LagStats, LagReport, LagAnalyzer, correlate, median,
)

__all__ = [
    'Sample', 'LagPoint', 'LagStats', 'LagReport', 'LagAnalyzer', 'correlate', 'median',
]
