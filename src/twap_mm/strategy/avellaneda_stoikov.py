"""
Avellaneda-Stoikov Market Making Model
======================================

Reservation price, optimal spread and order-arrival intensities from
"High-frequency trading in a limit order book" (Avellaneda & Stoikov, 2008),
with a bounded tanh inventory skew and a 5% safety band around mid.
"""

import math
from typing import Dict, Optional

from loguru import logger

from ..exceptions import InvalidParameter, InvalidTimeRange
from ..models import InventoryState, MarketSnapshot, ModelParameters, Quote
from ..utils.config import ModelConfig, VolatilityConfig
from .volatility import VolatilityEstimator

# Never quote further than this from mid
MAX_QUOTE_DEVIATION = 0.05
# Inventory skew is capped at this share of sigma
INVENTORY_SKEW_SHARE = 0.1


class AvellanedaStoikovModel:
    """
    Quote engine.

    Core Components:
    - Online EWMA volatility (the only parameter that changes by itself)
    - Inventory-aware reservation price
    - Optimal spread = risk term + liquidity term
    - Exponential fill-intensity diagnostics per side

    ``compute_quote`` reads the current sigma but never changes model state,
    so identical inputs always give identical quotes.
    """

    def __init__(self,
                 params: Optional[ModelParameters] = None,
                 initial_sigma: float = 0.2,
                 target_inventory: float = 0.0,
                 estimator: Optional[VolatilityEstimator] = None,
                 volatility_settings: Optional[VolatilityConfig] = None):

        self.params = params or ModelParameters()
        if initial_sigma < 0:
            raise InvalidParameter(f"initial_sigma must be >= 0, got {initial_sigma}")

        self.target_inventory = float(target_inventory)
        self.estimator = estimator or VolatilityEstimator(initial_sigma, volatility_settings)

        self.last_snapshot: Optional[MarketSnapshot] = None

        logger.info(f"Avellaneda-Stoikov model initialized: gamma={self.params.risk_aversion}, "
                    f"k={self.params.liquidity_param}, A={self.params.arrival_intensity}, "
                    f"T={self.params.time_horizon}, sigma={self.sigma:.4f}")

    @classmethod
    def from_config(cls,
                    model_config: ModelConfig,
                    volatility_config: Optional[VolatilityConfig] = None) -> "AvellanedaStoikovModel":
        params = ModelParameters(
            risk_aversion=model_config.risk_aversion,
            liquidity_param=model_config.liquidity_param,
            arrival_intensity=model_config.arrival_intensity,
            time_horizon=model_config.time_horizon,
        )
        return cls(params,
                   initial_sigma=model_config.initial_volatility,
                   target_inventory=model_config.target_inventory,
                   volatility_settings=volatility_config)

    @property
    def sigma(self) -> float:
        return self.estimator.sigma

    def update_market(self, snapshot: MarketSnapshot) -> float:
        """Feed one observation to the volatility estimator; returns sigma"""
        self.last_snapshot = snapshot
        return self.estimator.observe(snapshot.mid_price, snapshot.timestamp_ms)

    def reservation_price(self, mid_price: float, inventory: float, time_to_maturity: float) -> float:
        """
        r = S - (gamma * sigma^2 * (T - t) * q) / 2
        """
        gamma = self.params.risk_aversion
        inventory_penalty = (gamma * self.sigma ** 2 * time_to_maturity * inventory) / 2.0
        return mid_price - inventory_penalty

    def optimal_spread(self, time_to_maturity: float) -> float:
        """
        delta = gamma * sigma^2 * (T - t) + (2 / gamma) * ln(1 + gamma / k)

        First term: inventory risk. Second term: liquidity (adverse selection).
        """
        gamma = self.params.risk_aversion
        k = self.params.liquidity_param
        risk_component = gamma * self.sigma ** 2 * time_to_maturity
        liquidity_component = (2.0 / gamma) * math.log(1.0 + gamma / k)
        return risk_component + liquidity_component

    def inventory_adjustment(self, inventory: float) -> float:
        """Soft push toward target inventory, bounded by 10% of sigma"""
        imbalance = inventory - self.target_inventory
        return math.tanh(2.0 * imbalance) * (self.sigma * INVENTORY_SKEW_SHARE)

    def arrival_intensities(self, mid_price: float, bid_price: float, ask_price: float) -> Dict[str, float]:
        """lambda = A * exp(-k * distance from mid), per side"""
        A = self.params.arrival_intensity
        k = self.params.liquidity_param
        return {
            'bid': A * math.exp(-k * (mid_price - bid_price)),
            'ask': A * math.exp(-k * (ask_price - mid_price)),
        }

    def compute_quote(self,
                      mid_price: float,
                      inventory: float,
                      elapsed: float,
                      horizon: Optional[float] = None,
                      timestamp_ms: int = 0) -> Quote:
        """
        Generate bid/ask quotes.

        Args:
            mid_price: Current mid price S
            inventory: Base-asset inventory q
            elapsed: Time t since the start of the horizon
            horizon: Horizon T (defaults to the model's time_horizon)
            timestamp_ms: Stamp recorded on the quote

        Returns:
            Quote

        Raises:
            InvalidTimeRange: unless 0 <= t <= T
        """
        T = self.params.time_horizon if horizon is None else float(horizon)
        t = float(elapsed)
        if not (0.0 <= t <= T):
            raise InvalidTimeRange(f"elapsed time {t} outside [0, {T}]")
        if not (mid_price > 0):
            raise InvalidParameter(f"mid_price must be positive, got {mid_price}")

        time_to_maturity = T - t
        S = float(mid_price)
        q = float(inventory)

        reservation = self.reservation_price(S, q, time_to_maturity)
        spread = self.optimal_spread(time_to_maturity)
        half_spread = spread / 2.0
        # A negative adjustment may narrow the quote down to the reservation
        # price but never cross it
        adjustment = max(self.inventory_adjustment(q), -half_spread)
        offset = half_spread + adjustment

        bid_price = reservation - offset
        ask_price = reservation + offset

        # Safety band: protects against parameter blow-up. Both sides are
        # clipped into the band so an ordered pair stays ordered.
        floor_price = S * (1.0 - MAX_QUOTE_DEVIATION)
        cap_price = S * (1.0 + MAX_QUOTE_DEVIATION)
        if bid_price < floor_price or ask_price > cap_price:
            logger.debug(f"Quote clamped to safety band: bid={bid_price:.4f}, ask={ask_price:.4f}, mid={S:.4f}")
        bid_price = min(max(bid_price, floor_price), cap_price)
        ask_price = min(max(ask_price, floor_price), cap_price)

        intensities = self.arrival_intensities(S, bid_price, ask_price)

        return Quote(
            reservation_price=reservation,
            optimal_spread=spread,
            bid_price=bid_price,
            ask_price=ask_price,
            bid_intensity=intensities['bid'],
            ask_intensity=intensities['ask'],
            inventory_adjustment=adjustment,
            generated_at=int(timestamp_ms),
            mid_price=S,
            volatility=self.sigma,
        )

    def expected_pnl(self, quote: Quote, inventory: float, horizon: float = 0.01) -> float:
        """Spread capture from both sides minus the inventory risk penalty over ``horizon``"""
        S = quote.mid_price
        bid_profit = (S - quote.bid_price) * quote.bid_intensity * horizon
        ask_profit = (quote.ask_price - S) * quote.ask_intensity * horizon
        inventory_risk = -0.5 * self.params.risk_aversion * (self.sigma * inventory) ** 2 * horizon
        return bid_profit + ask_profit + inventory_risk

    def get_diagnostics(self, inventory: Optional[InventoryState] = None) -> Dict:
        """Get current parameters and estimator state"""
        return {
            'parameters': {
                'gamma': self.params.risk_aversion,
                'sigma': self.sigma,
                'T': self.params.time_horizon,
                'k': self.params.liquidity_param,
                'A': self.params.arrival_intensity,
            },
            'state': {
                'inventory': inventory.base_asset if inventory else None,
                'target_inventory': self.target_inventory,
                'mid_price': self.last_snapshot.mid_price if self.last_snapshot else None,
                'timestamp_ms': self.last_snapshot.timestamp_ms if self.last_snapshot else None,
            },
            'estimator': {
                **self.estimator.stats,
                'ewma_var': self.estimator.ewma_var,
                'price_history_length': self.estimator.sample_count,
            },
        }
