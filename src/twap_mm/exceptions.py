"""
Error taxonomy for quoting, risk and execution.

Construction-time problems are fatal (``InvalidParameter``); caller errors
reject a single call (``InvalidTimeRange``, ``InvalidOrder``); risk rejections
are expected and frequent (``RiskRejected`` and its subclasses); backend
failures mark a slice failed (``ExecutionError``).
"""

from enum import Enum
from typing import Optional


class RiskConstraint(Enum):
    """Order validation checks, in evaluation order"""
    TRADING_HALTED = "trading_halted"
    ORDER_SIZE = "order_size"
    POSITION_SIZE = "position_size"
    DAILY_LOSS = "daily_loss"
    SPREAD = "spread"
    STALE_DATA = "stale_data"
    FLASH_CRASH = "flash_crash"
    SLIPPAGE = "slippage"


class TradingError(Exception):
    """Base class for every error raised by the engine"""


class InvalidParameter(TradingError, ValueError):
    """Model, risk or config parameter out of its valid range"""


class InvalidTimeRange(TradingError, ValueError):
    """Quote requested outside 0 <= t <= T"""


class InvalidOrder(TradingError, ValueError):
    """Malformed order intent or unsliceable order"""


class InvalidStateTransition(TradingError):
    """A slice or order left a terminal state"""


class RiskRejected(TradingError):
    """Order refused by the risk manager; nothing was placed"""

    def __init__(self, reason: str, constraint: RiskConstraint):
        super().__init__(reason)
        self.reason = reason
        self.constraint = constraint

    def __str__(self) -> str:
        return f"[{self.constraint.value}] {self.reason}"


class StaleData(RiskRejected):
    """Market data older than the staleness threshold"""

    def __init__(self, reason: str):
        super().__init__(reason, RiskConstraint.STALE_DATA)


class MarketConditionError(RiskRejected):
    """Market too wide or crashing to trade"""


class EmergencyStop(RiskRejected):
    """Trading halted by a circuit breaker until a manual reset"""

    def __init__(self, reason: str):
        super().__init__(reason, RiskConstraint.TRADING_HALTED)


class ExecutionError(TradingError):
    """Execution backend could not fill a slice"""

    def __init__(self, reason: str, reference: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.reference = reference
