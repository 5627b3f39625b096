"""
Data Ingestion Module
=====================

Market data source interface and multi-source price aggregation.
"""

from .market_data import MarketDataSource, SnapshotHistory, AggregatedMarketData

__all__ = ['MarketDataSource', 'SnapshotHistory', 'AggregatedMarketData']
