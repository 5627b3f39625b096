"""Unit tests for TWAP planning and the asyncio execution loop."""

import asyncio
import math

import pytest

from conftest import START_MS, BlockingBackend, ScriptedBackend
from twap_mm.exceptions import InvalidOrder, InvalidParameter, InvalidStateTransition
from twap_mm.execution.backends import PaperExecutionBackend, StaticBalanceProvider
from twap_mm.execution.inventory import InventoryLedger
from twap_mm.execution.twap_executor import ExecutionScheduler, next_arrival_delay_ms
from twap_mm.models import (
    ExecutionReport,
    InventoryState,
    OrderDirection,
    OrderIntent,
    OrderState,
    PartSpec,
    PartStatus,
    Quote,
)
from twap_mm.strategy.risk_manager import RiskManager
from twap_mm.utils.config import ExecutionConfig
from twap_mm.utils.events import ORDER_CANCELLED, ORDER_COMPLETED, ORDER_FAILED, ORDER_STARTED, PART_EXECUTED


def make_intent(order_id="twap-1", size=1.0, direction=OrderDirection.BUY, target=3400.0,
                duration_ms=300_000, max_parts=10):
    return OrderIntent(id=order_id, direction=direction, total_size=size, target_price=target,
                       duration_ms=duration_ms, max_parts=max_parts)


def make_quote(adjustment):
    return Quote(reservation_price=3400.0, optimal_spread=1.3, bid_price=3399.35, ask_price=3400.65,
                 bid_intensity=37.7, ask_intensity=37.7, inventory_adjustment=adjustment, generated_at=0)


def make_scheduler(clock, backend=None, settings=None, **kwargs):
    ledger = kwargs.pop('ledger', InventoryLedger(InventoryState(0.0, 10_000.0)))
    return ExecutionScheduler(
        backend or ScriptedBackend(clock),
        ledger=ledger,
        settings=settings or ExecutionConfig(inter_part_delay_ms=1000),
        clock=clock,
        **kwargs,
    )


async def run_order(scheduler, intent, quote=None):
    order = await scheduler.submit_order(intent, quote)
    return await scheduler.wait_for(order.id)


class TestPlanning:
    """Part count, sizing and release times."""

    def test_even_split(self, clock):
        plan = make_scheduler(clock).build_plan(make_intent(), start_ms=0)

        assert len(plan.parts) == 10
        assert all(p.size == pytest.approx(0.1) for p in plan.parts)
        assert [p.scheduled_time for p in plan.parts] == [i * 30_000 for i in range(10)]
        assert plan.end_time == 300_000
        assert all(p.status is PartStatus.PENDING for p in plan.parts)

    def test_part_count_limited_by_min_size(self, clock):
        plan = make_scheduler(clock).build_plan(make_intent(size=0.035), start_ms=0)

        assert len(plan.parts) == 3
        assert plan.total_size == pytest.approx(0.035)
        assert all(p.size >= 0.01 - 1e-12 for p in plan.parts)

    def test_order_below_min_size_rejected(self, clock):
        with pytest.raises(InvalidOrder, match="min_order_size"):
            make_scheduler(clock).build_plan(make_intent(size=0.005), start_ms=0)

    def test_order_at_min_size_is_one_part(self, clock):
        plan = make_scheduler(clock).build_plan(make_intent(size=0.01), start_ms=0)

        assert len(plan.parts) == 1
        assert plan.parts[0].size == pytest.approx(0.01)

    def test_unsliceable_order_rejected(self, clock):
        with pytest.raises(InvalidOrder):
            make_scheduler(clock).build_plan(make_intent(size=11.0))

    def test_sizes_sum_to_total(self, clock):
        scheduler = make_scheduler(clock)
        for size in (0.37, 1.0, 2.5, 9.999):
            plan = scheduler.build_plan(make_intent(size=size), start_ms=0)
            assert plan.total_size == pytest.approx(size)
            assert all(0.01 - 1e-9 <= p.size <= 1.0 + 1e-9 for p in plan.parts)

    @pytest.mark.parametrize("adjustment,first", [(0.5, 0.105), (-0.5, 0.095), (5.0, 0.11), (-5.0, 0.09)])
    def test_inventory_skew(self, clock, adjustment, first):
        plan = make_scheduler(clock).build_plan(make_intent(), make_quote(adjustment), start_ms=0)

        assert plan.parts[0].size == pytest.approx(first)
        assert plan.total_size == pytest.approx(1.0)

    def test_lot_rounding(self, clock):
        plan = make_scheduler(clock).build_plan(make_intent(size=0.5, max_parts=3), start_ms=0)

        for part in plan.parts[:-1]:
            assert part.size == pytest.approx(round(part.size / 0.001) * 0.001)

    def test_poisson_reproducible_with_seed(self, clock):
        settings = ExecutionConfig(poisson_arrivals=True, random_seed=42)
        first = make_scheduler(clock, settings=settings).build_plan(make_intent(), start_ms=0)
        second = make_scheduler(clock, settings=settings).build_plan(make_intent(), start_ms=0)

        assert [p.scheduled_time for p in first.parts] == [p.scheduled_time for p in second.parts]

    def test_poisson_spacing_floor(self, clock):
        settings = ExecutionConfig(poisson_arrivals=True, random_seed=7)
        plan = make_scheduler(clock, settings=settings).build_plan(make_intent(), start_ms=0)
        times = [p.scheduled_time for p in plan.parts]

        assert times[0] == 0
        assert all(b - a >= 15_000 for a, b in zip(times, times[1:]))

    @pytest.mark.parametrize("seed", range(200))
    def test_poisson_times_stay_inside_window(self, clock, seed):
        settings = ExecutionConfig(poisson_arrivals=True, random_seed=seed)
        plan = make_scheduler(clock, settings=settings).build_plan(make_intent(), start_ms=0)
        times = [p.scheduled_time for p in plan.parts]

        assert times[-1] <= 270_000 < plan.end_time
        assert all(b - a >= 15_000 for a, b in zip(times, times[1:]))


class TestArrivalDelay:
    """Poisson inter-arrival helper."""

    def test_exponential_draw(self):
        delay = next_arrival_delay_ms(30_000, 1.0 / 30.0, math.exp(-1.0))

        assert delay == pytest.approx(30_000)

    def test_floor(self):
        assert next_arrival_delay_ms(30_000, 1.0, 1.0) == 15_000

    @pytest.mark.parametrize("u,intensity", [(0.0, 1.0), (1.5, 1.0), (0.5, 0.0)])
    def test_invalid(self, u, intensity):
        with pytest.raises(InvalidParameter):
            next_arrival_delay_ms(30_000, intensity, u)


class TestExecution:
    """Running orders end to end on a fake clock."""

    def test_full_run(self, clock):
        scheduler = make_scheduler(clock)
        events = []
        scheduler.add_callback(ORDER_STARTED, lambda d: events.append(('started', d)))
        scheduler.add_callback(PART_EXECUTED, lambda d: events.append(('part', d)))
        scheduler.add_callback(ORDER_COMPLETED, lambda d: events.append(('completed', d)))

        order = asyncio.run(run_order(scheduler, make_intent()))

        assert order.state is OrderState.COMPLETED
        assert order.executed_size == pytest.approx(1.0)
        assert order.average_price == pytest.approx(3400.0)
        assert scheduler.inventory.base_asset == pytest.approx(1.0)
        assert scheduler.inventory.quote_asset == pytest.approx(6_600.0)
        assert [kind for kind, _ in events] == ['started'] + ['part'] * 10 + ['completed']
        assert [d['part_index'] for kind, d in events if kind == 'part'] == list(range(10))
        assert events[-1][1]['parts_executed'] == 10
        assert clock.now <= START_MS + 300_000

    @pytest.mark.parametrize("seed", range(20))
    def test_poisson_order_fills_completely(self, clock, seed):
        settings = ExecutionConfig(poisson_arrivals=True, random_seed=seed, inter_part_delay_ms=0)
        scheduler = make_scheduler(clock, settings=settings)

        order = asyncio.run(run_order(scheduler, make_intent()))

        assert order.state is OrderState.COMPLETED
        assert order.executed_size == pytest.approx(order.intent.total_size)
        assert order.summary()['parts_skipped'] == 0
        assert all(p.status is PartStatus.EXECUTED for p in order.plan.parts)

    def test_parts_released_on_schedule(self, clock):
        scheduler = make_scheduler(clock)
        order = asyncio.run(run_order(scheduler, make_intent()))

        for part in order.plan.parts:
            assert part.completed_at >= part.scheduled_time

    def test_failure_fails_order_without_retry(self, clock):
        backend = ScriptedBackend(clock, fail_on_calls=[3])
        scheduler = make_scheduler(clock, backend)
        failures = []
        scheduler.add_callback(ORDER_FAILED, failures.append)

        order = asyncio.run(run_order(scheduler, make_intent()))

        statuses = [p.status for p in order.plan.parts]
        assert order.state is OrderState.FAILED
        assert statuses[:2] == [PartStatus.EXECUTED] * 2
        assert statuses[2] is PartStatus.FAILED
        assert statuses[3:] == [PartStatus.SKIPPED] * 7
        assert len(backend.calls) == 3
        assert failures[0]['part_index'] == 2
        assert "venue rejected" in order.error
        assert scheduler.inventory.base_asset == pytest.approx(0.2)

    def test_cancel_after_second_part(self, clock):
        scheduler = make_scheduler(clock)
        cancelled = []
        scheduler.add_callback(ORDER_CANCELLED, cancelled.append)

        def cancel_after_second(data):
            if data['part_index'] == 1:
                scheduler.cancel_order(data['order_id'])

        scheduler.add_callback(PART_EXECUTED, cancel_after_second)
        order = asyncio.run(run_order(scheduler, make_intent()))

        assert order.state is OrderState.CANCELLED
        assert len(order.plan.executed_parts) == 2
        assert all(p.status is PartStatus.SKIPPED for p in order.plan.parts[2:])
        assert cancelled[0]['parts_skipped'] == 8
        assert scheduler.cancel_order(order.id) is False

    def test_end_time_skips_remaining_parts(self, clock):
        backend = ScriptedBackend(clock, advance_ms=100_000)
        scheduler = make_scheduler(clock, backend)

        order = asyncio.run(run_order(scheduler, make_intent()))

        assert order.state is OrderState.COMPLETED
        assert len(order.plan.executed_parts) == 3
        assert order.summary()['parts_skipped'] == 7
        assert order.executed_size == pytest.approx(0.3)

    def test_slice_pnl_includes_fees(self, clock):
        scheduler = make_scheduler(clock, ScriptedBackend(clock, fee_rate=0.001, price_offset=-1.0))

        order = asyncio.run(run_order(scheduler, make_intent(size=0.1, max_parts=1)))

        # Bought 1.0 below target, paid 0.1 * 3399 * 0.001 in fees
        assert order.total_pnl == pytest.approx(0.1 * 1.0 - 0.1 * 3399.0 * 0.001)
        assert order.total_fees == pytest.approx(0.3399)

    def test_sell_updates_inventory(self, clock):
        ledger = InventoryLedger(InventoryState(2.0, 0.0))
        scheduler = make_scheduler(clock, ledger=ledger)

        asyncio.run(run_order(scheduler, make_intent(direction=OrderDirection.SELL, size=0.5, max_parts=5)))

        assert scheduler.inventory.base_asset == pytest.approx(1.5)
        assert scheduler.inventory.quote_asset == pytest.approx(1_700.0)

    def test_fills_reach_risk_manager_and_tracker(self, clock):
        risk = RiskManager(clock=clock)
        scheduler = make_scheduler(clock, risk_manager=risk)

        asyncio.run(run_order(scheduler, make_intent()))

        assert risk.stats['fills_processed'] == 10
        assert risk.state.current_position == pytest.approx(1.0)
        assert scheduler.tracker.total_fills == 10
        assert scheduler.tracker.order_outcomes['completed'] == 1


class TestBalanceProvider:
    """Holdings come from the provider when one is configured."""

    def test_sync_after_each_part(self, clock):
        provider = StaticBalanceProvider(InventoryState(5.0, 100.0))
        scheduler = make_scheduler(clock, balance_provider=provider)

        asyncio.run(run_order(scheduler, make_intent(size=0.3, max_parts=3)))

        assert provider.polls == 3
        assert scheduler.inventory == InventoryState(5.0, 100.0)
        assert scheduler.ledger.stats['balance_syncs'] == 3
        assert scheduler.ledger.stats['fills_applied'] == 0

    def test_poll_failure_applies_fill_locally(self, clock):
        class BrokenProvider:
            async def get_balances(self):
                raise ConnectionError("rpc down")

        scheduler = make_scheduler(clock, balance_provider=BrokenProvider())
        order = asyncio.run(run_order(scheduler, make_intent(size=0.2, max_parts=2)))

        assert order.state is OrderState.COMPLETED
        assert scheduler.inventory.base_asset == pytest.approx(0.2)


class TestLifecycle:
    """Duplicate ids, waiting and shutdown drain."""

    def test_duplicate_active_id(self, clock):
        scheduler = make_scheduler(clock, BlockingBackend())

        async def main():
            await scheduler.submit_order(make_intent())
            with pytest.raises(InvalidOrder):
                await scheduler.submit_order(make_intent())

        asyncio.run(main())

    def test_finished_id_can_be_reused(self, clock):
        scheduler = make_scheduler(clock)

        async def main():
            await run_order(scheduler, make_intent(size=0.1, max_parts=1))
            return await run_order(scheduler, make_intent(size=0.1, max_parts=1))

        assert asyncio.run(main()).state is OrderState.COMPLETED

    def test_wait_for_timeout_leaves_order_running(self, clock):
        scheduler = make_scheduler(clock, BlockingBackend())

        async def main():
            order = await scheduler.submit_order(make_intent())
            with pytest.raises(asyncio.TimeoutError):
                await scheduler.wait_for(order.id, timeout=0.01)
            return order

        order = asyncio.run(main())
        assert order.state is OrderState.ACTIVE

    def test_drain_reports_abandoned_orders(self, clock):
        backend = BlockingBackend()
        scheduler = make_scheduler(clock, backend)

        async def main():
            await scheduler.submit_order(make_intent())
            return await scheduler.drain(0.01)

        assert asyncio.run(main()) == ["twap-1"]
        assert backend.calls == 1

    def test_drain_with_nothing_active(self, clock):
        assert asyncio.run(make_scheduler(clock).drain(0.01)) == []

    def test_cancel_unknown_order(self, clock):
        assert make_scheduler(clock).cancel_order("nope") is False

    def test_terminal_part_cannot_change(self):
        part = PartSpec(part_index=0, size=0.1, scheduled_time=0, target_price=3400.0)
        executed = part.mark_executed(ExecutionReport(3400.0, 0.1), 10)

        with pytest.raises(InvalidStateTransition):
            executed.mark_failed("late", 20)
        with pytest.raises(InvalidStateTransition):
            executed.mark_executed(ExecutionReport(3400.0, 0.1), 20)

    def test_execution_stats(self, clock):
        scheduler = make_scheduler(clock)
        asyncio.run(run_order(scheduler, make_intent()))

        stats = scheduler.get_execution_stats()

        assert stats['parts_executed'] == 10
        assert stats['total_volume'] == pytest.approx(1.0)
        assert stats['average_part_size'] == pytest.approx(0.1)
        assert stats['orders_by_state']['completed'] == 1
        assert stats['active_orders'] == 0


class TestPaperBackend:
    """Local fills."""

    def test_slippage_against_trader(self):
        backend = PaperExecutionBackend(fee_rate=0.001, slippage=0.001)

        buy = asyncio.run(backend.execute_part(OrderDirection.BUY, 0.5, 1000.0))
        sell = asyncio.run(backend.execute_part(OrderDirection.SELL, 0.5, 1000.0))

        assert buy.executed_price == pytest.approx(1001.0)
        assert sell.executed_price == pytest.approx(999.0)
        assert buy.fees_paid == pytest.approx(0.5 * 1001.0 * 0.001)
        assert [buy.reference, sell.reference] == ["paper-1", "paper-2"]
