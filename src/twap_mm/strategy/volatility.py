"""
EWMA Volatility Estimator
=========================

Online RiskMetrics-style variance of log returns, annualized and blended into
the running sigma so quotes do not whipsaw on a single observation.
"""

import math
from collections import deque
from typing import Deque, Optional, Tuple

import numpy as np
from loguru import logger

from ..exceptions import InvalidParameter
from ..utils.config import VolatilityConfig

SECONDS_PER_YEAR = 365 * 24 * 60 * 60


class VolatilityEstimator:
    """
    Annualized volatility from a rolling price history.

    var_t = decay * var_{t-1} + (1 - decay) * r_t^2 with r_t = ln(P_t / P_{t-1}).
    Until ``min_samples`` prices are held the seeded sigma is returned as-is.
    """

    def __init__(self, initial_sigma: float = 0.2, settings: Optional[VolatilityConfig] = None):
        self.settings = settings or VolatilityConfig()
        if initial_sigma < 0 or not math.isfinite(initial_sigma):
            raise InvalidParameter(f"initial_sigma must be >= 0, got {initial_sigma}")

        self.initial_sigma = float(initial_sigma)
        self.sigma = self.initial_sigma
        self.ewma_var: Optional[float] = None
        self.price_history: Deque[Tuple[float, int]] = deque(maxlen=self.settings.history_size)

        self.stats = {
            'observations': 0,
            'vol_updates': 0,
            'dropped_out_of_order': 0,
        }

    @property
    def sample_count(self) -> int:
        return len(self.price_history)

    def observe(self, price: float, timestamp_ms: int) -> float:
        """
        Add one price and return the current sigma.

        Out-of-order timestamps are dropped; the history stays non-decreasing.
        """
        price = float(price)
        if not (price > 0 and math.isfinite(price)):
            raise InvalidParameter(f"price must be positive, got {price}")

        if self.price_history and timestamp_ms < self.price_history[-1][1]:
            self.stats['dropped_out_of_order'] += 1
            logger.warning(f"Dropping out-of-order price at {timestamp_ms} "
                           f"(last {self.price_history[-1][1]})")
            return self.sigma

        if self.price_history:
            prev_price = self.price_history[-1][0]
            log_return = math.log(price / prev_price)
            squared_return = log_return * log_return

            if self.ewma_var is None:
                self.ewma_var = squared_return
            else:
                decay = self.settings.decay
                self.ewma_var = decay * self.ewma_var + (1.0 - decay) * squared_return

        self.price_history.append((price, int(timestamp_ms)))
        self.stats['observations'] += 1

        if self.ewma_var is not None and len(self.price_history) >= self.settings.min_samples:
            self._blend()

        return self.sigma

    def _blend(self) -> None:
        annualized = math.sqrt(self.ewma_var * self._periods_per_year())
        smoothing = self.settings.smoothing
        blended = self.sigma * (1.0 - smoothing) + annualized * smoothing
        self.sigma = float(np.clip(blended, self.settings.min_volatility, self.settings.max_volatility))
        self.stats['vol_updates'] += 1

    def _periods_per_year(self) -> float:
        interval = self.settings.sample_interval_sec
        if interval is None:
            timestamps = np.array([ts for _, ts in self.price_history], dtype=float)
            spacing = np.diff(timestamps)
            spacing = spacing[spacing > 0]
            # Median spacing in seconds, 1s floor for bursts of equal timestamps
            interval = max(float(np.median(spacing)) / 1000.0, 1.0) if spacing.size else 1.0
        return SECONDS_PER_YEAR / interval

    def reset(self) -> None:
        self.sigma = self.initial_sigma
        self.ewma_var = None
        self.price_history.clear()
        for key in self.stats:
            self.stats[key] = 0
        logger.info("Volatility estimator reset")
