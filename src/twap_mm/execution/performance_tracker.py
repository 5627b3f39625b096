"""
Execution Performance Tracker
=============================

Running record of executed slices and finished orders, with fill-quality
metrics (slippage vs target, fees, slice PnL) and pandas export.
"""

from collections import deque
from typing import Deque, Dict, Optional

import numpy as np
import pandas as pd

from ..models import FillResult, OrderDirection
from ..utils.logger import get_logger


class ExecutionPerformanceTracker:
    """
    Tracks execution quality:
    - Fill count, traded volume and notional
    - Fees and slice PnL
    - Slippage against each slice's target price
    - Order outcomes (completed / failed / cancelled)
    """

    def __init__(self, max_fills: int = 10000):
        self.logger = get_logger('performance_tracker')

        self.fills: Deque[Dict] = deque(maxlen=max_fills)
        self.orders: Deque[Dict] = deque(maxlen=max_fills)

        self.total_fills = 0
        self.total_volume = 0.0
        self.total_notional = 0.0
        self.total_fees = 0.0
        self.total_pnl = 0.0
        self.order_outcomes = {'completed': 0, 'failed': 0, 'cancelled': 0}

    def record_fill(self, fill: FillResult, target_price: float) -> Dict:
        """Add one executed slice"""
        # Positive slippage = worse than target for either side
        if fill.direction is OrderDirection.BUY:
            slippage = (fill.price - target_price) / target_price
        else:
            slippage = (target_price - fill.price) / target_price

        record = {
            'timestamp_ms': fill.timestamp_ms,
            'order_id': fill.order_id,
            'part_index': fill.part_index,
            'side': fill.direction.value,
            'size': fill.size,
            'price': fill.price,
            'target_price': target_price,
            'slippage_bps': slippage * 10_000,
            'fees': fill.fees,
            'pnl': fill.pnl,
            'base_after': fill.inventory.base_asset,
            'quote_after': fill.inventory.quote_asset,
        }
        self.fills.append(record)

        self.total_fills += 1
        self.total_volume += fill.size
        self.total_notional += fill.size * fill.price
        self.total_fees += fill.fees
        self.total_pnl += fill.pnl

        self.logger.debug(f"Fill recorded: {fill.order_id}#{fill.part_index} {fill.direction.value} "
                          f"{fill.size:.4f} @ {fill.price:.4f}, slippage {record['slippage_bps']:.2f}bps")
        return record

    def record_order(self, order_id: str, outcome: str, summary: Optional[Dict] = None) -> None:
        """Add one finished order ('completed', 'failed' or 'cancelled')"""
        if outcome not in self.order_outcomes:
            raise ValueError(f"unknown order outcome '{outcome}'")
        self.order_outcomes[outcome] += 1
        self.orders.append({'order_id': order_id, 'outcome': outcome, **(summary or {})})

    def average_slippage_bps(self) -> float:
        if not self.fills:
            return 0.0
        return float(np.mean([f['slippage_bps'] for f in self.fills]))

    def get_current_performance(self) -> Dict:
        """Get aggregate execution metrics"""
        vwap = self.total_notional / self.total_volume if self.total_volume > 0 else None
        return {
            'total_fills': self.total_fills,
            'total_volume': self.total_volume,
            'total_notional': self.total_notional,
            'vwap': vwap,
            'total_fees': self.total_fees,
            'total_pnl': self.total_pnl,
            'avg_slippage_bps': self.average_slippage_bps(),
            'orders': dict(self.order_outcomes),
        }

    def to_dataframe(self) -> pd.DataFrame:
        """Export fills to a pandas DataFrame indexed by fill time"""
        fills_df = pd.DataFrame(list(self.fills))
        if fills_df.empty:
            return fills_df
        fills_df['datetime'] = pd.to_datetime(fills_df['timestamp_ms'], unit='ms')
        return fills_df.set_index('datetime')

    def reset(self) -> None:
        self.logger.info("Resetting execution metrics")
        self.fills.clear()
        self.orders.clear()
        self.total_fills = 0
        self.total_volume = 0.0
        self.total_notional = 0.0
        self.total_fees = 0.0
        self.total_pnl = 0.0
        self.order_outcomes = {'completed': 0, 'failed': 0, 'cancelled': 0}
