"""
Value Types
===========

Immutable snapshots shared between pricing, risk and execution. Updates build
a new instance with ``dataclasses.replace`` and swap the reference.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Optional, Tuple

from .exceptions import InvalidOrder, InvalidParameter, InvalidStateTransition


class OrderDirection(Enum):
    """Order direction enumeration"""
    BUY = "buy"
    SELL = "sell"

    @property
    def sign(self) -> int:
        return 1 if self is OrderDirection.BUY else -1


class PartStatus(Enum):
    """Slice status enumeration"""
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"
    SKIPPED = "skipped"


class OrderState(Enum):
    """TWAP order lifecycle"""
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderState.COMPLETED, OrderState.FAILED, OrderState.CANCELLED)


class TradingStatus(Enum):
    """Circuit breaker state"""
    NORMAL = "normal"
    PAUSED = "paused"
    EMERGENCY_STOPPED = "emergency_stopped"


@dataclass(frozen=True)
class MarketSnapshot:
    """One market observation"""
    mid_price: float
    timestamp_ms: int
    volatility: float = 0.0
    volume_24h: float = 0.0
    price_change_24h: float = 0.0
    bid_ask_spread: float = 0.0
    source: str = "unknown"

    def __post_init__(self):
        if not (self.mid_price > 0 and math.isfinite(self.mid_price)):
            raise InvalidParameter(f"mid_price must be positive, got {self.mid_price}")
        if self.volatility < 0:
            raise InvalidParameter(f"volatility must be >= 0, got {self.volatility}")


@dataclass(frozen=True)
class InventoryState:
    """Holdings: base asset (may be short) and quote currency"""
    base_asset: float = 0.0
    quote_asset: float = 0.0

    def __post_init__(self):
        if self.quote_asset < 0:
            raise InvalidParameter(f"quote_asset must be >= 0, got {self.quote_asset}")

    def value(self, price: float) -> float:
        """Portfolio value in quote currency"""
        return self.base_asset * price + self.quote_asset

    def base_ratio(self, price: float) -> Optional[float]:
        """Share of portfolio value held in the base asset"""
        total = self.value(price)
        if total <= 0:
            return None
        return (self.base_asset * price) / total


@dataclass(frozen=True)
class ModelParameters:
    """Avellaneda-Stoikov constants"""
    risk_aversion: float = 0.1
    liquidity_param: float = 1.5
    arrival_intensity: float = 100.0
    time_horizon: float = 1.0

    def __post_init__(self):
        for name in ("risk_aversion", "liquidity_param", "arrival_intensity", "time_horizon"):
            value = getattr(self, name)
            if not (value > 0 and math.isfinite(value)):
                raise InvalidParameter(f"{name} must be > 0, got {value}")


@dataclass(frozen=True)
class Quote:
    """Generated Avellaneda-Stoikov quote"""
    reservation_price: float
    optimal_spread: float
    bid_price: float
    ask_price: float
    bid_intensity: float
    ask_intensity: float
    inventory_adjustment: float
    generated_at: int
    mid_price: float = 0.0
    volatility: float = 0.0

    @property
    def spread(self) -> float:
        return self.ask_price - self.bid_price

    @property
    def midprice(self) -> float:
        return (self.bid_price + self.ask_price) / 2.0


@dataclass(frozen=True)
class OrderIntent:
    """Request to work an order over time"""
    id: str
    direction: OrderDirection
    total_size: float
    target_price: float
    duration_ms: int
    max_parts: int = 1

    def __post_init__(self):
        if not self.id:
            raise InvalidOrder("order id must not be empty")
        if not isinstance(self.direction, OrderDirection):
            try:
                object.__setattr__(self, "direction", OrderDirection(self.direction))
            except ValueError as e:
                raise InvalidOrder(f"unknown direction {self.direction!r}") from e
        if not (self.total_size > 0 and math.isfinite(self.total_size)):
            raise InvalidOrder(f"total_size must be > 0, got {self.total_size}")
        if not (self.target_price > 0 and math.isfinite(self.target_price)):
            raise InvalidOrder(f"target_price must be > 0, got {self.target_price}")
        if self.duration_ms <= 0:
            raise InvalidOrder(f"duration_ms must be > 0, got {self.duration_ms}")
        if self.max_parts < 1:
            raise InvalidOrder(f"max_parts must be >= 1, got {self.max_parts}")


@dataclass(frozen=True)
class ExecutionReport:
    """Backend confirmation of one slice"""
    executed_price: float
    executed_size: float
    fees_paid: float = 0.0
    reference: Optional[str] = None


@dataclass(frozen=True)
class PartSpec:
    """One scheduled slice of a TWAP order"""
    part_index: int
    size: float
    scheduled_time: int
    target_price: float
    status: PartStatus = PartStatus.PENDING
    executed_price: Optional[float] = None
    executed_size: Optional[float] = None
    fees_paid: float = 0.0
    reference: Optional[str] = None
    completed_at: Optional[int] = None
    error: Optional[str] = None

    def _transition(self, status: PartStatus, **changes) -> "PartSpec":
        if self.status is not PartStatus.PENDING:
            raise InvalidStateTransition(
                f"part {self.part_index} is {self.status.value}, cannot become {status.value}"
            )
        return replace(self, status=status, **changes)

    def mark_executed(self, report: ExecutionReport, at_ms: int) -> "PartSpec":
        return self._transition(
            PartStatus.EXECUTED,
            executed_price=report.executed_price,
            executed_size=report.executed_size,
            fees_paid=report.fees_paid,
            reference=report.reference,
            completed_at=at_ms,
        )

    def mark_failed(self, reason: str, at_ms: int) -> "PartSpec":
        return self._transition(PartStatus.FAILED, error=reason, completed_at=at_ms)

    def mark_skipped(self, reason: str, at_ms: int) -> "PartSpec":
        return self._transition(PartStatus.SKIPPED, error=reason, completed_at=at_ms)


@dataclass(frozen=True)
class ExecutionPlan:
    """Ordered slices for one order"""
    order_id: str
    parts: Tuple[PartSpec, ...]
    created_at: int
    end_time: int

    @property
    def total_size(self) -> float:
        return sum(part.size for part in self.parts)

    @property
    def executed_parts(self) -> Tuple[PartSpec, ...]:
        return tuple(p for p in self.parts if p.status is PartStatus.EXECUTED)

    @property
    def is_finished(self) -> bool:
        return all(p.status is not PartStatus.PENDING for p in self.parts)

    def next_pending(self) -> Optional[PartSpec]:
        for part in self.parts:
            if part.status is PartStatus.PENDING:
                return part
        return None

    def with_part(self, part: PartSpec) -> "ExecutionPlan":
        parts = list(self.parts)
        parts[part.part_index] = part
        return replace(self, parts=tuple(parts))


@dataclass(frozen=True)
class FillResult:
    """Executed slice as seen by the risk manager"""
    order_id: str
    part_index: int
    direction: OrderDirection
    size: float
    price: float
    fees: float
    pnl: float
    inventory: InventoryState
    mark_price: float
    timestamp_ms: int


@dataclass(frozen=True)
class RiskState:
    """Process-wide risk counters"""
    daily_pnl: float = 0.0
    current_position: float = 0.0
    peak_portfolio_value: float = 0.0
    emergency_stop: bool = False
    trading_paused: bool = False
    last_reset_date: Optional[date] = None

    @property
    def status(self) -> TradingStatus:
        if self.emergency_stop:
            return TradingStatus.EMERGENCY_STOPPED
        if self.trading_paused:
            return TradingStatus.PAUSED
        return TradingStatus.NORMAL


@dataclass(frozen=True)
class RiskAlert:
    """Structured alert with a risk snapshot"""
    timestamp_ms: int
    category: str
    message: str
    state: RiskState = field(default_factory=RiskState)
