"""
Multi-Source Market Data Aggregator
===================================

Polls redundant price sources concurrently and merges them into one
snapshot:
- Stale quotes (older than max_price_age_ms) are dropped
- Outliers further than max_deviation from the median are dropped
- The remaining prices are averaged (arithmetic mean)
- Snapshots are kept in a bounded, time-ordered history
"""

import asyncio
from collections import deque
from typing import Deque, Dict, List, Optional, Protocol, Sequence

import numpy as np
from loguru import logger

from ..models import MarketSnapshot
from ..utils.clock import SystemClock
from ..utils.config import MarketDataConfig
from ..utils.events import PRICE_UPDATE, EventEmitter


class MarketDataSource(Protocol):
    """One price provider. Returns None when it has nothing to report."""

    name: str

    async def get_current_price(self) -> Optional[MarketSnapshot]:
        ...


class SnapshotHistory:
    """Bounded snapshot history with non-decreasing timestamps"""

    def __init__(self, maxlen: int = 1000):
        self.snapshots: Deque[MarketSnapshot] = deque(maxlen=maxlen)
        self.dropped = 0

    def __len__(self) -> int:
        return len(self.snapshots)

    @property
    def latest(self) -> Optional[MarketSnapshot]:
        return self.snapshots[-1] if self.snapshots else None

    def append(self, snapshot: MarketSnapshot) -> bool:
        """Add a snapshot; one older than the newest held is dropped"""
        latest = self.latest
        if latest is not None and snapshot.timestamp_ms < latest.timestamp_ms:
            self.dropped += 1
            logger.warning(f"Dropping out-of-order snapshot from {snapshot.source}: "
                           f"{snapshot.timestamp_ms} < {latest.timestamp_ms}")
            return False
        self.snapshots.append(snapshot)
        return True

    def prices(self) -> np.ndarray:
        return np.array([s.mid_price for s in self.snapshots], dtype=float)


class AggregatedMarketData:
    """
    Aggregates MarketDataSources into a single feed.

    It is itself a MarketDataSource, so the orchestrator polls it like any
    single provider.
    """

    name = "aggregated"

    def __init__(self,
                 sources: Sequence[MarketDataSource],
                 settings: Optional[MarketDataConfig] = None,
                 clock=None):
        if not sources:
            raise ValueError("at least one market data source is required")

        self.sources = list(sources)
        self.settings = settings or MarketDataConfig()
        self.clock = clock or SystemClock()
        self.history = SnapshotHistory(self.settings.history_size)
        self.events = EventEmitter([PRICE_UPDATE], owner="market_data")

        self.stats = {
            'polls': 0,
            'source_errors': 0,
            'stale_dropped': 0,
            'outliers_dropped': 0,
            'empty_polls': 0,
            'last_dispersion': 0.0,
        }

        logger.info(f"Market data aggregator initialized with {len(self.sources)} sources: "
                    f"{[getattr(s, 'name', type(s).__name__) for s in self.sources]}")

    def add_callback(self, event_type: str, callback) -> None:
        self.events.add_callback(event_type, callback)

    @property
    def latest(self) -> Optional[MarketSnapshot]:
        return self.history.latest

    async def get_current_price(self) -> Optional[MarketSnapshot]:
        """Poll every source and return the aggregated snapshot, or None"""
        self.stats['polls'] += 1
        results = await asyncio.gather(*(s.get_current_price() for s in self.sources),
                                       return_exceptions=True)

        quotes: List[MarketSnapshot] = []
        for source, result in zip(self.sources, results):
            if isinstance(result, Exception):
                self.stats['source_errors'] += 1
                logger.error(f"{getattr(source, 'name', type(source).__name__)} price error: {result}")
            elif result is not None:
                quotes.append(result)

        snapshot = self.aggregate(quotes)
        if snapshot is None:
            self.stats['empty_polls'] += 1
            logger.warning("No usable prices from any source")
            return None

        if self.history.append(snapshot):
            self.events.emit(PRICE_UPDATE, snapshot)
        return snapshot

    def aggregate(self, quotes: Sequence[MarketSnapshot]) -> Optional[MarketSnapshot]:
        """Merge per-source snapshots into one; None when nothing usable remains"""
        now = self.clock.now_ms()

        fresh = [q for q in quotes if now - q.timestamp_ms < self.settings.max_price_age_ms]
        self.stats['stale_dropped'] += len(quotes) - len(fresh)
        if not fresh:
            return None

        prices = np.array([q.mid_price for q in fresh], dtype=float)
        median = float(np.median(prices))
        keep = np.abs(prices - median) / median <= self.settings.max_deviation
        kept = [q for q, k in zip(fresh, keep) if k]
        outliers = len(fresh) - len(kept)
        if outliers:
            self.stats['outliers_dropped'] += outliers
            logger.warning(f"Dropped {outliers} outlier price(s) vs median {median:.4f}")

        kept_prices = prices[keep]
        mid_price = float(np.mean(kept_prices))
        self.stats['last_dispersion'] = float(np.std(kept_prices) / mid_price)

        return MarketSnapshot(
            mid_price=mid_price,
            timestamp_ms=max(q.timestamp_ms for q in kept),
            volatility=float(np.mean([q.volatility for q in kept])),
            volume_24h=float(sum(q.volume_24h for q in kept)),
            price_change_24h=float(np.mean([q.price_change_24h for q in kept])),
            bid_ask_spread=float(np.mean([q.bid_ask_spread for q in kept])),
            source=self.name,
        )

    def get_market_stats(self) -> Dict:
        """Get aggregate feed statistics"""
        latest = self.latest
        prices = self.history.prices()
        return {
            'current_price': latest.mid_price if latest else None,
            'last_update_ms': latest.timestamp_ms if latest else None,
            'sources': len(self.sources),
            'history_length': len(self.history),
            'price_range': float(prices.max() - prices.min()) if prices.size else 0.0,
            'out_of_order_dropped': self.history.dropped,
            **self.stats,
        }
