"""Unit tests for RiskManager validation, accounting and circuit breakers."""

from datetime import timedelta

import pytest

from conftest import make_snapshot
from twap_mm.exceptions import (
    EmergencyStop,
    MarketConditionError,
    RiskConstraint,
    RiskRejected,
    StaleData,
)
from twap_mm.models import FillResult, InventoryState, OrderDirection, OrderIntent, TradingStatus
from twap_mm.strategy.risk_manager import RiskManager
from twap_mm.utils.config import RiskConfig
from twap_mm.utils.events import EMERGENCY_STOP, RISK_ALERT


def make_intent(size=0.5, direction=OrderDirection.BUY, target=3400.0, order_id="o-1"):
    return OrderIntent(id=order_id, direction=direction, total_size=size, target_price=target,
                       duration_ms=300_000, max_parts=10)


def make_fill(direction=OrderDirection.BUY, size=0.1, pnl=0.0, base=1.0, quote=10_000.0, price=3400.0):
    return FillResult(order_id="o-1", part_index=0, direction=direction, size=size, price=price,
                      fees=0.0, pnl=pnl, inventory=InventoryState(base, quote), mark_price=price,
                      timestamp_ms=0)


@pytest.fixture
def manager(clock):
    return RiskManager(RiskConfig(), clock=clock)


@pytest.fixture
def flat():
    return InventoryState(base_asset=0.0, quote_asset=10_000.0)


class TestValidateOrder:
    """Sequential checks, first failure wins."""

    def test_valid_order_passes(self, manager, clock, flat):
        manager.validate_order(make_intent(), flat, make_snapshot(clock))

        assert manager.stats['orders_validated'] == 1

    def test_oversized_order_rejected_without_state_change(self, manager, clock, flat):
        before = manager.state

        with pytest.raises(RiskRejected) as exc_info:
            manager.validate_order(make_intent(size=1.5), flat, make_snapshot(clock))

        assert exc_info.value.constraint is RiskConstraint.ORDER_SIZE
        assert manager.state == before
        assert flat == InventoryState(0.0, 10_000.0)

    def test_flash_crash_rejected(self, manager, clock, flat):
        with pytest.raises(MarketConditionError) as exc_info:
            manager.validate_order(make_intent(), flat, make_snapshot(clock, price_change_24h=-0.25))

        assert exc_info.value.constraint is RiskConstraint.FLASH_CRASH

    def test_order_size_checked_before_flash_crash(self, manager, clock, flat):
        with pytest.raises(RiskRejected) as exc_info:
            manager.validate_order(make_intent(size=2.0), flat, make_snapshot(clock, price_change_24h=-0.25))

        assert exc_info.value.constraint is RiskConstraint.ORDER_SIZE

    def test_position_limit(self, manager, clock):
        inventory = InventoryState(base_asset=9.8, quote_asset=0.0)

        with pytest.raises(RiskRejected) as exc_info:
            manager.validate_order(make_intent(size=0.5), inventory, make_snapshot(clock))

        assert exc_info.value.constraint is RiskConstraint.POSITION_SIZE

    def test_sell_reduces_position(self, manager, clock):
        inventory = InventoryState(base_asset=9.8, quote_asset=0.0)

        manager.validate_order(make_intent(size=0.5, direction=OrderDirection.SELL), inventory,
                               make_snapshot(clock))

    def test_daily_loss_projection(self, clock, flat):
        manager = RiskManager(RiskConfig(max_daily_loss=5.0), clock=clock)

        # 0.5 * 3400 * 0.002 = 3.4 of projected cost on top of -2
        manager.update_risk_metrics(make_fill(pnl=-2.0, base=0.0))
        with pytest.raises(RiskRejected) as exc_info:
            manager.validate_order(make_intent(size=0.5), flat, make_snapshot(clock))

        assert exc_info.value.constraint is RiskConstraint.DAILY_LOSS

    def test_wide_spread(self, manager, clock, flat):
        with pytest.raises(MarketConditionError) as exc_info:
            manager.validate_order(make_intent(), flat, make_snapshot(clock, bid_ask_spread=0.02))

        assert exc_info.value.constraint is RiskConstraint.SPREAD

    def test_stale_data(self, manager, clock, flat):
        snapshot = make_snapshot(clock)
        clock.advance(30_000)

        with pytest.raises(StaleData) as exc_info:
            manager.validate_order(make_intent(), flat, snapshot)

        assert exc_info.value.constraint is RiskConstraint.STALE_DATA

    def test_slippage(self, manager, clock, flat):
        with pytest.raises(RiskRejected) as exc_info:
            manager.validate_order(make_intent(target=3420.0), flat, make_snapshot(clock))

        assert exc_info.value.constraint is RiskConstraint.SLIPPAGE

    def test_rejection_emits_alert(self, manager, clock, flat):
        alerts = []
        manager.add_callback(RISK_ALERT, alerts.append)

        with pytest.raises(RiskRejected):
            manager.validate_order(make_intent(size=1.5), flat, make_snapshot(clock))

        assert len(alerts) == 1
        assert alerts[0].category == "ORDER_REJECTED"
        assert alerts[0].timestamp_ms == clock.now_ms()
        assert manager.stats['orders_rejected'] == 1

    def test_rejection_message_names_constraint(self, manager, clock, flat):
        with pytest.raises(RiskRejected, match=r"\[order_size\]"):
            manager.validate_order(make_intent(size=1.5), flat, make_snapshot(clock))


class TestCircuitBreakers:
    """State machine transitions after fills and manual controls."""

    def test_daily_loss_breach_stops_until_reset(self, manager, clock, flat):
        stops = []
        manager.add_callback(EMERGENCY_STOP, stops.append)

        manager.update_risk_metrics(make_fill(pnl=-1_500.0))

        assert manager.status is TradingStatus.EMERGENCY_STOPPED
        assert len(stops) == 1
        for _ in range(20):
            assert not manager.is_trading_allowed()
            with pytest.raises(EmergencyStop):
                manager.validate_order(make_intent(), flat, make_snapshot(clock))

        manager.reset_emergency_stop()
        assert manager.is_trading_allowed()

    def test_fills_after_stop_do_not_stop_again(self, manager):
        stops = []
        manager.add_callback(EMERGENCY_STOP, stops.append)

        for _ in range(3):
            manager.update_risk_metrics(make_fill(pnl=-1_500.0))

        assert len(stops) == 1
        assert manager.stats['emergency_stops'] == 1
        assert [a.category for a in manager.alerts].count("EMERGENCY_STOP") == 1
        assert manager.stats['fills_processed'] == 3

    def test_repeated_position_breach_pauses_once(self, manager):
        for _ in range(3):
            manager.update_risk_metrics(make_fill(size=11.0, base=11.0, quote=0.0))

        assert manager.status is TradingStatus.PAUSED
        assert manager.stats['pauses'] == 1

    def test_resume_does_not_clear_emergency_stop(self, manager):
        manager.activate_emergency_stop("test")

        assert manager.resume_trading() is False
        assert manager.status is TradingStatus.EMERGENCY_STOPPED

    def test_position_breach_pauses(self, manager, clock, flat):
        manager.update_risk_metrics(make_fill(size=11.0, base=11.0, quote=0.0))

        assert manager.status is TradingStatus.PAUSED
        with pytest.raises(RiskRejected) as exc_info:
            manager.validate_order(make_intent(direction=OrderDirection.SELL), flat, make_snapshot(clock))
        assert exc_info.value.constraint is RiskConstraint.TRADING_HALTED

        assert manager.resume_trading() is True
        assert manager.status is TradingStatus.NORMAL

    def test_drawdown_breach(self, manager):
        manager.update_risk_metrics(make_fill(base=0.0, quote=10_000.0))
        manager.update_risk_metrics(make_fill(base=0.0, quote=8_500.0))

        assert manager.current_drawdown == pytest.approx(0.15)
        assert manager.status is TradingStatus.EMERGENCY_STOPPED

    def test_peak_is_monotonic(self, manager):
        manager.update_risk_metrics(make_fill(base=0.0, quote=10_000.0))
        manager.update_risk_metrics(make_fill(base=0.0, quote=9_500.0))

        assert manager.state.peak_portfolio_value == 10_000.0
        assert manager.current_drawdown == pytest.approx(0.05)
        assert manager.is_trading_allowed()

    def test_position_accumulates_by_direction(self, manager):
        manager.update_risk_metrics(make_fill(direction=OrderDirection.BUY, size=0.3))
        manager.update_risk_metrics(make_fill(direction=OrderDirection.SELL, size=0.1))

        assert manager.state.current_position == pytest.approx(0.2)

    def test_new_day_resets_daily_pnl(self, manager, clock, flat):
        manager.update_risk_metrics(make_fill(pnl=-100.0))
        assert manager.state.daily_pnl == -100.0

        clock.fixed_today = clock.today() + timedelta(days=1)
        manager.validate_order(make_intent(), flat, make_snapshot(clock))

        assert manager.state.daily_pnl == 0.0
        assert manager.state.last_reset_date == clock.fixed_today

    def test_new_day_keeps_emergency_stop(self, manager, clock, flat):
        manager.update_risk_metrics(make_fill(pnl=-1_500.0))
        clock.fixed_today = clock.today() + timedelta(days=1)

        with pytest.raises(EmergencyStop):
            manager.validate_order(make_intent(), flat, make_snapshot(clock))
        assert manager.state.daily_pnl == 0.0


class TestRecommendPositionSize:
    """Independent size reductions compound, then clamp."""

    def test_no_reduction(self, manager, flat):
        assert manager.recommend_position_size(0.5, 0.01, flat) == pytest.approx(0.5)

    def test_high_volatility(self, manager, flat):
        assert manager.recommend_position_size(0.5, 0.2, flat) == pytest.approx(0.4)

    def test_compounded_factors(self, manager):
        manager.update_risk_metrics(make_fill(pnl=-700.0))
        inventory = InventoryState(base_asset=7.0, quote_asset=0.0)

        size = manager.recommend_position_size(1.0, 0.1, inventory)

        assert size == pytest.approx(1.0 * 0.5 * 0.7 * 0.9)

    def test_clamped(self, manager, flat):
        assert manager.recommend_position_size(5.0, 0.0, flat) == 1.0
        assert manager.recommend_position_size(0.001, 0.0, flat) == 0.01


class TestRiskStatus:
    """Reporting."""

    def test_status_snapshot(self, manager):
        manager.update_risk_metrics(make_fill(pnl=-100.0, size=2.0))
        status = manager.get_risk_status()

        assert status['status'] == 'normal'
        assert status['daily_loss_utilization'] == pytest.approx(0.1)
        assert status['position_utilization'] == pytest.approx(0.2)
        assert status['limits']['max_order_size'] == 1.0
