"""
TWAP Market Maker Configuration
"""

import os
import logging
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, ValidationError, model_validator
from dotenv import load_dotenv

from ..exceptions import InvalidParameter

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


class ModelConfig(BaseModel):
    """Avellaneda-Stoikov model parameters"""
    risk_aversion: float = Field(default=0.1, gt=0, description="Risk aversion gamma")
    liquidity_param: float = Field(default=1.5, gt=0, description="Order book liquidity k")
    arrival_intensity: float = Field(default=100.0, gt=0, description="Order arrival intensity A")
    time_horizon: float = Field(default=1.0, gt=0, description="Normalized time horizon T")
    initial_volatility: float = Field(default=0.2, ge=0, description="Seed annualized volatility")
    target_inventory: float = Field(default=0.0, description="Inventory the quotes push toward")

    # One full horizon T of wall-clock time (1 hour)
    horizon_duration_ms: int = Field(default=3_600_000, gt=0, description="Wall-clock length of T")


class VolatilityConfig(BaseModel):
    """Online EWMA volatility estimation"""
    decay: float = Field(default=0.94, gt=0, lt=1, description="RiskMetrics EWMA decay lambda")
    sample_interval_sec: Optional[float] = Field(default=5.0, gt=0,
                                                 description="Sampling interval; None infers it from timestamps")
    smoothing: float = Field(default=0.1, gt=0, le=1, description="Weight of a new estimate vs the prior")
    min_volatility: float = Field(default=0.01, ge=0, description="Lower clamp (annualized)")
    max_volatility: float = Field(default=1.0, gt=0, description="Upper clamp (annualized)")
    min_samples: int = Field(default=50, ge=2, description="Prices needed before re-estimating")
    history_size: int = Field(default=1000, ge=2, description="Rolling price history length")

    @model_validator(mode="after")
    def _check_band(self):
        if self.min_volatility > self.max_volatility:
            raise ValueError("min_volatility must not exceed max_volatility")
        return self


class RiskConfig(BaseModel):
    """Risk limits and circuit breakers"""
    max_daily_loss: float = Field(default=1000.0, gt=0, description="Daily loss limit (quote currency)")
    max_position_size: float = Field(default=10.0, gt=0, description="Absolute base-asset position limit")
    max_order_size: float = Field(default=1.0, gt=0, description="Largest order accepted")
    min_order_size: float = Field(default=0.01, gt=0, description="Smallest order recommended")
    max_slippage: float = Field(default=0.005, ge=0, lt=1, description="Max |target - mid| / mid")
    max_drawdown: float = Field(default=0.1, gt=0, le=1, description="Max (peak - value) / peak")
    max_spread: float = Field(default=0.01, gt=0, description="Max market bid/ask spread (fraction)")
    max_data_age_ms: int = Field(default=30_000, gt=0, description="Market data staleness threshold")
    flash_crash_threshold: float = Field(default=-0.2, lt=0, description="24h change that halts trading")
    high_volatility_warning: float = Field(default=0.1, gt=0, description="Volatility that only logs a warning")
    estimated_slippage: float = Field(default=0.002, ge=0, description="Slippage assumed for PnL projection")
    warning_fraction: float = Field(default=0.8, gt=0, le=1, description="Share of a limit that logs a warning")

    @model_validator(mode="after")
    def _check_order_bounds(self):
        if self.min_order_size > self.max_order_size:
            raise ValueError("min_order_size must not exceed max_order_size")
        return self


class ExecutionConfig(BaseModel):
    """TWAP slicing and scheduling"""
    min_order_size: float = Field(default=0.01, gt=0, description="Smallest slice")
    max_order_size: float = Field(default=1.0, gt=0, description="Largest slice")
    lot_size: float = Field(default=0.001, gt=0, description="Slice size increment")
    inter_part_delay_ms: int = Field(default=1000, ge=0, description="Pause after each executed slice")
    poisson_arrivals: bool = Field(default=False, description="Random slice spacing instead of even")
    arrival_rate_per_sec: Optional[float] = Field(default=None, gt=0,
                                                  description="Poisson rate; None keeps the nominal mean spacing")
    min_spacing_fraction: float = Field(default=0.5, ge=0, le=1,
                                        description="Floor on Poisson spacing as a share of the nominal interval")
    random_seed: Optional[int] = Field(default=None, description="Seed for reproducible Poisson schedules")

    @model_validator(mode="after")
    def _check_slice_bounds(self):
        if self.min_order_size > self.max_order_size:
            raise ValueError("min_order_size must not exceed max_order_size")
        return self


class OrchestratorConfig(BaseModel):
    """Quote regeneration and order triggers"""
    symbol: str = Field(default="ETH/USDT", description="Traded pair")
    quote_interval_ms: int = Field(default=10_000, gt=0, description="Minimum time between quotes")
    market_data_interval_ms: int = Field(default=5_000, gt=0, description="Market data polling period")
    order_duration_ms: int = Field(default=300_000, gt=0, description="TWAP duration per order")
    max_order_parts: int = Field(default=10, ge=1, description="Slices per order")
    reservation_move_threshold: float = Field(default=0.005, gt=0, description="Reservation move that triggers an order")
    spread_change_threshold: float = Field(default=0.1, gt=0, description="Spread change that triggers an order")
    order_interval_ms: int = Field(default=300_000, gt=0, description="Max quiet time before an order")
    mean_reversion_threshold: float = Field(default=0.002, gt=0, description="Reservation vs quote-mid deviation")
    target_base_ratio: float = Field(default=0.5, ge=0, le=1, description="Target base share of portfolio value")
    rebalance_band: float = Field(default=0.1, ge=0, lt=1, description="Dead band around the target ratio")
    min_sell_inventory: float = Field(default=0.1, ge=0, description="Base needed for a mean-reversion sell")
    min_buy_funds_fraction: float = Field(default=0.1, ge=0, description="Quote funds needed, as price multiple")
    rejection_cooldown_ms: int = Field(default=60_000, ge=0, description="Pause after a risk rejection")
    shutdown_timeout_ms: int = Field(default=30_000, ge=0, description="Drain wait for active orders on stop")


class MarketDataConfig(BaseModel):
    """Multi-source price aggregation"""
    max_price_age_ms: int = Field(default=60_000, gt=0, description="Drop source prices older than this")
    max_deviation: float = Field(default=0.02, gt=0, description="Outlier cut vs the median price")
    history_size: int = Field(default=1000, ge=1, description="Snapshots retained")


ENV_OVERRIDES = {
    "RISK_AVERSION": ("model", "risk_aversion", float),
    "TIME_HORIZON": ("model", "time_horizon", float),
    "LIQUIDITY_PARAM": ("model", "liquidity_param", float),
    "ARRIVAL_INTENSITY": ("model", "arrival_intensity", float),
    "MAX_DAILY_LOSS": ("risk", "max_daily_loss", float),
    "MAX_POSITION_SIZE": ("risk", "max_position_size", float),
    "MAX_ORDER_SIZE": ("risk", "max_order_size", float),
    "MIN_ORDER_SIZE": ("risk", "min_order_size", float),
    "MAX_SLIPPAGE": ("risk", "max_slippage", float),
    "MAX_DRAWDOWN": ("risk", "max_drawdown", float),
    "LOT_SIZE": ("execution", "lot_size", float),
    "QUOTE_INTERVAL_MS": ("orchestrator", "quote_interval_ms", int),
    "ORDER_DURATION_MS": ("orchestrator", "order_duration_ms", int),
    "MAX_ORDER_PARTS": ("orchestrator", "max_order_parts", int),
}


class Config:
    """Main configuration class"""

    SECTIONS = {
        "model": ModelConfig,
        "volatility": VolatilityConfig,
        "risk": RiskConfig,
        "execution": ExecutionConfig,
        "orchestrator": OrchestratorConfig,
        "market_data": MarketDataConfig,
    }

    def __init__(self, **sections: Dict[str, Any]):
        unknown = set(sections) - set(self.SECTIONS)
        if unknown:
            raise InvalidParameter(f"Unknown config sections: {sorted(unknown)}")

        try:
            self.model = ModelConfig(**sections.get("model", {}))
            self.volatility = VolatilityConfig(**sections.get("volatility", {}))
            self.risk = RiskConfig(**sections.get("risk", {}))
            self.execution = ExecutionConfig(**sections.get("execution", {}))
            self.orchestrator = OrchestratorConfig(**sections.get("orchestrator", {}))
            self.market_data = MarketDataConfig(**sections.get("market_data", {}))
        except ValidationError as e:
            raise InvalidParameter(f"Invalid configuration: {e}") from e

        # Order size limits are shared by risk checks and slicing
        if self.execution.max_order_size > self.risk.max_order_size:
            logger.warning(f"execution.max_order_size ({self.execution.max_order_size}) exceeds "
                           f"risk.max_order_size ({self.risk.max_order_size}); orders will be rejected")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "Config":
        """Build a config from defaults plus the documented environment variables"""
        environ = os.environ if environ is None else environ
        sections: Dict[str, Dict[str, Any]] = {}

        for env_name, (section, field, cast) in ENV_OVERRIDES.items():
            raw = environ.get(env_name)
            if raw is None or raw == "":
                continue
            try:
                value = cast(raw)
            except ValueError as e:
                raise InvalidParameter(f"{env_name}={raw!r} is not a valid {cast.__name__}") from e
            sections.setdefault(section, {})[field] = value

        return cls(**sections)

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name).model_dump() for name in self.SECTIONS}

    def summary(self) -> Dict[str, Any]:
        """Short view for startup logs"""
        return {
            "symbol": self.orchestrator.symbol,
            "quote_interval_ms": self.orchestrator.quote_interval_ms,
            "order_duration_ms": self.orchestrator.order_duration_ms,
            "risk_aversion": self.model.risk_aversion,
            "min_order_size": self.execution.min_order_size,
            "max_order_size": self.execution.max_order_size,
            "max_daily_loss": self.risk.max_daily_loss,
            "max_position_size": self.risk.max_position_size,
        }


# Global configuration instance (defaults only; use Config.from_env() in applications)
config = Config()
