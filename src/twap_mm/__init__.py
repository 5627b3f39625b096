"""
TWAP Market Maker
=================

Automated market making and order execution: Avellaneda-Stoikov quotes with
online volatility re-estimation, TWAP slicing of large orders, and a risk
manager with circuit breakers gating every order.

Project Structure:
- twap_mm.strategy: Avellaneda-Stoikov model, volatility estimator, risk manager
- twap_mm.execution: TWAP scheduler, inventory ledger, execution backends
- twap_mm.data_ingestion: Multi-source market data aggregation
- twap_mm.live_trading: Orchestrator tying the components together
- twap_mm.utils: Configuration, logging, events and clock
"""

__version__ = "1.0.0"

from .exceptions import (
    TradingError,
    InvalidParameter,
    InvalidTimeRange,
    InvalidOrder,
    InvalidStateTransition,
    RiskRejected,
    RiskConstraint,
    StaleData,
    MarketConditionError,
    EmergencyStop,
    ExecutionError
)
from .models import (
    MarketSnapshot,
    InventoryState,
    ModelParameters,
    Quote,
    OrderIntent,
    OrderDirection,
    PartSpec,
    PartStatus,
    ExecutionPlan,
    ExecutionReport,
    FillResult,
    OrderState,
    RiskState,
    TradingStatus
)
from .strategy import AvellanedaStoikovModel, VolatilityEstimator, RiskManager
from .execution import (
    ExecutionScheduler,
    InventoryLedger,
    PaperExecutionBackend,
    StaticBalanceProvider
)
from .data_ingestion import AggregatedMarketData
from .live_trading import TradingOrchestrator
from .utils.config import Config

__all__ = [
    "TradingError",
    "InvalidParameter",
    "InvalidTimeRange",
    "InvalidOrder",
    "InvalidStateTransition",
    "RiskRejected",
    "RiskConstraint",
    "StaleData",
    "MarketConditionError",
    "EmergencyStop",
    "ExecutionError",
    "MarketSnapshot",
    "InventoryState",
    "ModelParameters",
    "Quote",
    "OrderIntent",
    "OrderDirection",
    "PartSpec",
    "PartStatus",
    "ExecutionPlan",
    "ExecutionReport",
    "FillResult",
    "OrderState",
    "RiskState",
    "TradingStatus",
    "AvellanedaStoikovModel",
    "VolatilityEstimator",
    "RiskManager",
    "ExecutionScheduler",
    "InventoryLedger",
    "PaperExecutionBackend",
    "StaticBalanceProvider",
    "AggregatedMarketData",
    "TradingOrchestrator",
    "Config"
]
