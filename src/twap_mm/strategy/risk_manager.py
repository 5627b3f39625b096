"""
Risk Management System
======================

Pre-trade order validation, post-fill risk accounting and circuit breakers.

States:
- NORMAL: orders accepted
- PAUSED: position limit breached; ``resume_trading()`` clears it
- EMERGENCY_STOPPED: daily loss or drawdown breached; only
  ``reset_emergency_stop()`` clears it

Nothing ever returns to NORMAL on its own.
"""

from collections import deque
from dataclasses import replace
from typing import Deque, Dict, Optional

from loguru import logger

from ..exceptions import (
    EmergencyStop,
    MarketConditionError,
    RiskConstraint,
    RiskRejected,
    StaleData,
)
from ..models import (
    FillResult,
    InventoryState,
    MarketSnapshot,
    OrderDirection,
    OrderIntent,
    RiskAlert,
    RiskState,
    TradingStatus,
)
from ..utils.clock import SystemClock
from ..utils.config import RiskConfig
from ..utils.events import EMERGENCY_STOP, RISK_ALERT, STATUS_CHANGE, EventEmitter

# Utilization above which recommended sizes shrink
SIZE_REDUCTION_UTILIZATION = 0.6
LOSS_SIZE_FACTOR = 0.5
POSITION_SIZE_FACTOR = 0.7
VOLATILITY_SIZE_THRESHOLD = 0.05


class RiskManager:
    """
    Gatekeeper for every order.

    Features:
    - Sequential, short-circuit order validation with typed rejections
    - Daily PnL with wall-clock date rollover
    - Monotonic peak portfolio value and drawdown tracking
    - Pause / emergency-stop circuit breakers
    - Risk-scaled order size recommendation
    - Structured alerts with a state snapshot

    The state is a frozen ``RiskState``; every change builds a new one and
    swaps the reference, so observers never see a half-updated snapshot.
    """

    def __init__(self, limits: Optional[RiskConfig] = None, clock=None, max_alerts: int = 1000):
        self.limits = limits or RiskConfig()
        self.clock = clock or SystemClock()

        self.state = RiskState(last_reset_date=self.clock.today())
        self.current_drawdown = 0.0
        self.last_portfolio_value: Optional[float] = None

        self.alerts: Deque[RiskAlert] = deque(maxlen=max_alerts)
        self.events = EventEmitter([RISK_ALERT, EMERGENCY_STOP, STATUS_CHANGE], owner="risk_manager")

        self.stats = {
            'orders_validated': 0,
            'orders_rejected': 0,
            'fills_processed': 0,
            'emergency_stops': 0,
            'pauses': 0,
            'daily_resets': 0,
        }

        logger.info(f"RiskManager initialized with limits: max_daily_loss={self.limits.max_daily_loss}, "
                    f"max_position_size={self.limits.max_position_size}, "
                    f"max_order_size={self.limits.max_order_size}, max_slippage={self.limits.max_slippage}")

    def add_callback(self, event_type: str, callback) -> None:
        self.events.add_callback(event_type, callback)

    @property
    def status(self) -> TradingStatus:
        return self.state.status

    def is_trading_allowed(self) -> bool:
        return self.state.status is TradingStatus.NORMAL

    # ------------------------------------------------------------------
    # Pre-trade validation
    # ------------------------------------------------------------------

    def validate_order(self,
                       intent: OrderIntent,
                       inventory: InventoryState,
                       snapshot: MarketSnapshot) -> None:
        """
        Check an order against every limit, stopping at the first violation.

        Order of checks: trading allowed, order size, resulting position,
        projected daily PnL, market spread, data staleness, flash crash,
        slippage vs mid.

        Raises:
            RiskRejected: (or a subclass) naming the violated constraint.
                Only the daily rollover may change state.
        """
        self._reset_daily_if_needed()

        try:
            self._check_order(intent, inventory, snapshot)
        except RiskRejected as e:
            self.stats['orders_rejected'] += 1
            logger.warning(f"Order {intent.id} rejected: {e}")
            self._alert("ORDER_REJECTED", f"{intent.id}: {e}")
            raise

        self.stats['orders_validated'] += 1
        logger.debug(f"Order {intent.id} passed risk validation")

    def _check_order(self, intent: OrderIntent, inventory: InventoryState, snapshot: MarketSnapshot) -> None:
        limits = self.limits

        if self.state.emergency_stop:
            raise EmergencyStop("Trading not allowed - emergency stop active")
        if self.state.trading_paused:
            raise RiskRejected("Trading not allowed - trading paused", RiskConstraint.TRADING_HALTED)

        if intent.total_size > limits.max_order_size:
            raise RiskRejected(f"Order size {intent.total_size} exceeds maximum {limits.max_order_size}",
                               RiskConstraint.ORDER_SIZE)

        new_position = inventory.base_asset + intent.direction.sign * intent.total_size
        if abs(new_position) > limits.max_position_size:
            raise RiskRejected(f"New position {new_position:.4f} would exceed maximum {limits.max_position_size}",
                               RiskConstraint.POSITION_SIZE)

        estimated_pnl = self.estimate_order_pnl(intent, snapshot)
        if self.state.daily_pnl + estimated_pnl < -limits.max_daily_loss:
            raise RiskRejected(f"Order would exceed daily loss limit: current {self.state.daily_pnl:.2f}, "
                               f"estimated {estimated_pnl:.2f}", RiskConstraint.DAILY_LOSS)

        self._check_market_conditions(snapshot)

        slippage = abs(intent.target_price - snapshot.mid_price) / snapshot.mid_price
        if slippage > limits.max_slippage:
            raise RiskRejected(f"Expected slippage {slippage * 100:.2f}% exceeds maximum "
                               f"{limits.max_slippage * 100:.2f}%", RiskConstraint.SLIPPAGE)

    def _check_market_conditions(self, snapshot: MarketSnapshot) -> None:
        limits = self.limits

        if snapshot.volatility > limits.high_volatility_warning:
            # High volatility is tradable, just noisy
            logger.warning(f"High volatility detected: {snapshot.volatility:.4f}")

        if snapshot.bid_ask_spread > limits.max_spread:
            raise MarketConditionError(f"Bid-ask spread too wide: {snapshot.bid_ask_spread * 100:.2f}%",
                                       RiskConstraint.SPREAD)

        age_ms = self.clock.now_ms() - snapshot.timestamp_ms
        if age_ms >= limits.max_data_age_ms:
            raise StaleData(f"Market data too stale: {age_ms}ms old")

        if snapshot.price_change_24h < limits.flash_crash_threshold:
            raise MarketConditionError(f"Extreme market conditions: 24h change "
                                       f"{snapshot.price_change_24h * 100:.1f}%", RiskConstraint.FLASH_CRASH)

    def estimate_order_pnl(self, intent: OrderIntent, snapshot: MarketSnapshot) -> float:
        """Conservative cost of crossing: the assumed slippage on the full size, always <= 0"""
        return -intent.total_size * snapshot.mid_price * self.limits.estimated_slippage

    # ------------------------------------------------------------------
    # Post-fill accounting
    # ------------------------------------------------------------------

    def update_risk_metrics(self, fill: FillResult) -> RiskState:
        """
        Account one executed slice and fire circuit breakers.

        Daily loss and drawdown breaches stop trading; a position breach
        pauses it. Warnings are logged at ``warning_fraction`` of a limit.
        """
        position_delta = fill.size if fill.direction is OrderDirection.BUY else -fill.size
        portfolio_value = fill.inventory.value(fill.mark_price)
        peak = max(self.state.peak_portfolio_value, portfolio_value)

        self.state = replace(
            self.state,
            daily_pnl=self.state.daily_pnl + fill.pnl,
            current_position=self.state.current_position + position_delta,
            peak_portfolio_value=peak,
        )
        self.last_portfolio_value = portfolio_value
        self.current_drawdown = self.calculate_drawdown(portfolio_value)
        self.stats['fills_processed'] += 1

        self._check_risk_limits()

        logger.debug(f"Risk metrics updated: daily_pnl={self.state.daily_pnl:.4f}, "
                     f"position={self.state.current_position:.4f}, value={portfolio_value:.2f}, "
                     f"drawdown={self.current_drawdown:.4f}")
        return self.state

    def calculate_drawdown(self, portfolio_value: float) -> float:
        peak = self.state.peak_portfolio_value
        if peak <= 0:
            return 0.0
        return (peak - portfolio_value) / peak

    def _check_risk_limits(self) -> None:
        limits = self.limits

        # Fills from orders still in flight keep arriving after a breach
        if self.state.emergency_stop:
            return

        if self.state.daily_pnl < -limits.max_daily_loss:
            self.activate_emergency_stop(f"Daily loss limit exceeded: {self.state.daily_pnl:.2f}")
            return

        if self.current_drawdown > limits.max_drawdown:
            self.activate_emergency_stop(f"Maximum drawdown exceeded: {self.current_drawdown:.2%}")
            return

        if abs(self.state.current_position) > limits.max_position_size:
            if self.state.trading_paused:
                return
            self.pause_trading(f"Position size limit exceeded: {self.state.current_position:.4f}")
            return

        if self.state.daily_pnl < -limits.max_daily_loss * limits.warning_fraction:
            logger.warning(f"Approaching daily loss limit: {self.state.daily_pnl:.2f}")
        if self.current_drawdown > limits.max_drawdown * limits.warning_fraction:
            logger.warning(f"Approaching maximum drawdown: {self.current_drawdown:.2%}")

    # ------------------------------------------------------------------
    # Circuit breakers
    # ------------------------------------------------------------------

    def activate_emergency_stop(self, reason: str) -> None:
        """Halt all new orders until ``reset_emergency_stop``"""
        self._set_state(emergency_stop=True, trading_paused=True)
        self.stats['emergency_stops'] += 1
        logger.critical(f"EMERGENCY STOP TRIGGERED: {reason}")
        self._alert("EMERGENCY_STOP", reason)
        self.events.emit(EMERGENCY_STOP, reason)

    def pause_trading(self, reason: str) -> None:
        self._set_state(trading_paused=True)
        self.stats['pauses'] += 1
        logger.warning(f"Trading paused: {reason}")
        self._alert("TRADING_PAUSED", reason)

    def resume_trading(self) -> bool:
        """
        Clear a pause. Has no effect while an emergency stop is active.

        Returns:
            True if trading is allowed afterwards
        """
        if self.state.emergency_stop:
            logger.warning("Cannot resume trading: emergency stop active, reset it first")
            return False
        self._set_state(trading_paused=False)
        logger.info("Trading resumed")
        return True

    def reset_emergency_stop(self) -> None:
        self._set_state(emergency_stop=False, trading_paused=False)
        logger.info("Emergency stop reset")

    def _set_state(self, **changes) -> None:
        previous = self.state.status
        self.state = replace(self.state, **changes)
        if self.state.status is not previous:
            self.events.emit(STATUS_CHANGE, self.state.status)

    # ------------------------------------------------------------------
    # Daily rollover
    # ------------------------------------------------------------------

    def _reset_daily_if_needed(self) -> None:
        today = self.clock.today()
        if today != self.state.last_reset_date:
            logger.info(f"New day detected ({today}), resetting daily PnL")
            self.reset_daily(today)

    def reset_daily(self, today=None) -> None:
        """Zero daily PnL; breaker flags are left untouched"""
        self.state = replace(self.state, daily_pnl=0.0, last_reset_date=today or self.clock.today())
        self.stats['daily_resets'] += 1

    # ------------------------------------------------------------------
    # Sizing and reporting
    # ------------------------------------------------------------------

    def recommend_position_size(self,
                                base_size: float,
                                volatility: float,
                                inventory: Optional[InventoryState] = None) -> float:
        """
        Scale an order size down with current risk usage.

        Factors compound: x0.5 above 60% daily loss utilization, x0.7 above
        60% position utilization, x(1 - volatility) above 5% volatility.
        The result is clamped to [min_order_size, max_order_size].
        """
        limits = self.limits
        size = base_size

        loss_utilization = max(0.0, -self.state.daily_pnl) / limits.max_daily_loss
        if loss_utilization > SIZE_REDUCTION_UTILIZATION:
            size *= LOSS_SIZE_FACTOR
            logger.debug(f"Reducing size for daily loss utilization {loss_utilization:.0%}")

        position = inventory.base_asset if inventory is not None else self.state.current_position
        position_utilization = abs(position) / limits.max_position_size
        if position_utilization > SIZE_REDUCTION_UTILIZATION:
            size *= POSITION_SIZE_FACTOR
            logger.debug(f"Reducing size for position utilization {position_utilization:.0%}")

        if volatility > VOLATILITY_SIZE_THRESHOLD:
            size *= max(0.0, 1.0 - volatility)
            logger.debug(f"Reducing size for volatility {volatility:.4f}")

        return min(max(size, limits.min_order_size), limits.max_order_size)

    def get_risk_status(self) -> Dict:
        """Get current risk state and utilization"""
        limits = self.limits
        state = self.state
        return {
            'status': state.status.value,
            'emergency_stop': state.emergency_stop,
            'trading_paused': state.trading_paused,
            'daily_pnl': state.daily_pnl,
            'daily_loss_utilization': max(0.0, -state.daily_pnl) / limits.max_daily_loss,
            'current_position': state.current_position,
            'position_utilization': abs(state.current_position) / limits.max_position_size,
            'peak_portfolio_value': state.peak_portfolio_value,
            'portfolio_value': self.last_portfolio_value,
            'drawdown': self.current_drawdown,
            'drawdown_utilization': self.current_drawdown / limits.max_drawdown,
            'last_reset_date': state.last_reset_date.isoformat() if state.last_reset_date else None,
            'alerts': len(self.alerts),
            'limits': {
                'max_daily_loss': limits.max_daily_loss,
                'max_position_size': limits.max_position_size,
                'max_order_size': limits.max_order_size,
                'max_slippage': limits.max_slippage,
                'max_drawdown': limits.max_drawdown,
            },
            'stats': dict(self.stats),
        }

    def _alert(self, category: str, message: str) -> RiskAlert:
        alert = RiskAlert(timestamp_ms=self.clock.now_ms(), category=category, message=message, state=self.state)
        self.alerts.append(alert)
        logger.info(f"RISK ALERT [{category}]: {message}")
        self.events.emit(RISK_ALERT, alert)
        return alert
