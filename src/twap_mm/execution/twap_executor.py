"""
TWAP Execution Engine
=====================

Slices an order into parts spread over its duration and works them one at a
time on the event loop.

Order lifecycle: PENDING -> ACTIVE -> {COMPLETED, FAILED, CANCELLED}

Per order, a part's result (inventory swap, risk update, tracker record and
``part_executed`` event) is fully processed before the next part is sent.
Orders run as independent asyncio tasks; they share only the inventory ledger
and the risk manager, both updated by whole-snapshot swaps.
"""

import asyncio
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from ..exceptions import ExecutionError, InvalidOrder, InvalidParameter
from ..models import (
    ExecutionPlan,
    ExecutionReport,
    FillResult,
    InventoryState,
    OrderDirection,
    OrderIntent,
    OrderState,
    PartSpec,
    PartStatus,
    Quote,
)
from ..utils.clock import SystemClock
from ..utils.config import ExecutionConfig
from ..utils.events import (
    ORDER_CANCELLED,
    ORDER_COMPLETED,
    ORDER_FAILED,
    ORDER_STARTED,
    PART_EXECUTED,
    EventEmitter,
)
from ..utils.logger import get_logger
from .backends import BalanceProvider, OrderExecutionBackend
from .inventory import InventoryLedger
from .performance_tracker import ExecutionPerformanceTracker

# Inventory skew scales part sizes by at most +/-10%
SKEW_SCALE = 0.1
MAX_SKEW = 0.1


def next_arrival_delay_ms(nominal_interval_ms: float,
                          intensity_per_sec: float,
                          u: float,
                          min_spacing_fraction: float = 0.5) -> float:
    """
    Poisson inter-arrival time for the next slice.

    delay = -ln(u) / intensity, floored at ``min_spacing_fraction`` of the
    nominal interval to avoid rapid-fire execution.

    Args:
        nominal_interval_ms: Even-spacing interval (duration / parts)
        intensity_per_sec: Arrival rate lambda
        u: Uniform draw in (0, 1]

    Returns:
        Delay in milliseconds
    """
    if not (0.0 < u <= 1.0):
        raise InvalidParameter(f"uniform draw must be in (0, 1], got {u}")
    if intensity_per_sec <= 0:
        raise InvalidParameter(f"arrival intensity must be > 0, got {intensity_per_sec}")

    delay_ms = -math.log(u) / intensity_per_sec * 1000.0
    return max(delay_ms, min_spacing_fraction * nominal_interval_ms)


@dataclass
class TWAPOrder:
    """Runtime state of one order; owned by its execution task"""
    intent: OrderIntent
    plan: ExecutionPlan
    state: OrderState = OrderState.PENDING
    started_at: Optional[int] = None
    ended_at: Optional[int] = None
    cancel_requested: bool = False
    executed_size: float = 0.0
    total_fees: float = 0.0
    total_pnl: float = 0.0
    error: Optional[str] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def id(self) -> str:
        return self.intent.id

    @property
    def average_price(self) -> Optional[float]:
        executed = self.plan.executed_parts
        total_size = sum(p.executed_size for p in executed)
        if total_size <= 0:
            return None
        return sum(p.executed_price * p.executed_size for p in executed) / total_size

    def summary(self) -> Dict:
        """Aggregate execution statistics"""
        counts = {status.value: 0 for status in PartStatus}
        for part in self.plan.parts:
            counts[part.status.value] += 1

        elapsed_ms = None
        if self.started_at is not None and self.ended_at is not None:
            elapsed_ms = self.ended_at - self.started_at

        return {
            'order_id': self.id,
            'state': self.state.value,
            'direction': self.intent.direction.value,
            'total_size': self.intent.total_size,
            'executed_size': self.executed_size,
            'average_price': self.average_price,
            'total_fees': self.total_fees,
            'total_pnl': self.total_pnl,
            'elapsed_ms': elapsed_ms,
            'parts': len(self.plan.parts),
            'parts_executed': counts[PartStatus.EXECUTED.value],
            'parts_failed': counts[PartStatus.FAILED.value],
            'parts_skipped': counts[PartStatus.SKIPPED.value],
            'error': self.error,
        }


class ExecutionScheduler:
    """
    TWAP executor.

    Features:
    - Part count bounded by max_parts and min_order_size
    - Inventory-skew part sizing from the latest quote, rounded to lot size
    - Even or Poisson (seeded numpy Generator) release times
    - Cooperative cancellation and end-time cut-off
    - No automatic retry: a failed part fails its order
    - Shutdown drain with a timeout; unfinished orders are reported, not killed
    """

    def __init__(self,
                 backend: OrderExecutionBackend,
                 ledger: Optional[InventoryLedger] = None,
                 risk_manager=None,
                 settings: Optional[ExecutionConfig] = None,
                 clock=None,
                 balance_provider: Optional[BalanceProvider] = None,
                 tracker: Optional[ExecutionPerformanceTracker] = None):

        self.backend = backend
        self.ledger = ledger or InventoryLedger()
        self.risk_manager = risk_manager
        self.settings = settings or ExecutionConfig()
        self.clock = clock or SystemClock()
        self.balance_provider = balance_provider
        self.tracker = tracker or ExecutionPerformanceTracker()
        self.logger = get_logger('twap_executor')

        self.rng = np.random.default_rng(self.settings.random_seed)

        self.orders: Dict[str, TWAPOrder] = {}
        self.execution_history: List[Dict] = []

        self.events = EventEmitter(
            [ORDER_STARTED, PART_EXECUTED, ORDER_COMPLETED, ORDER_FAILED, ORDER_CANCELLED],
            owner="twap_executor",
        )

        self.logger.info(f"TWAP executor initialized: parts {self.settings.min_order_size}-"
                         f"{self.settings.max_order_size}, lot {self.settings.lot_size}, "
                         f"{'poisson' if self.settings.poisson_arrivals else 'even'} spacing")

    def add_callback(self, event_type: str, callback) -> None:
        self.events.add_callback(event_type, callback)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def build_plan(self,
                   intent: OrderIntent,
                   quote: Optional[Quote] = None,
                   start_ms: Optional[int] = None) -> ExecutionPlan:
        """
        Slice an order.

        Args:
            intent: Order to slice
            quote: Latest quote; its inventory adjustment skews part sizes
            start_ms: First release time (defaults to now)

        Returns:
            ExecutionPlan with all parts PENDING

        Raises:
            InvalidOrder: if the total is below min_order_size or cannot fit
                in max_parts slices of at most max_order_size
        """
        s = self.settings
        start_ms = self.clock.now_ms() if start_ms is None else int(start_ms)

        if intent.total_size > intent.max_parts * s.max_order_size + 1e-12:
            raise InvalidOrder(f"Order {intent.id}: {intent.total_size} cannot be split into "
                               f"{intent.max_parts} parts of at most {s.max_order_size}")

        if intent.total_size < s.min_order_size - 1e-12:
            raise InvalidOrder(f"Order {intent.id}: {intent.total_size} is below "
                               f"min_order_size {s.min_order_size}")

        n_parts = min(intent.max_parts, int(math.floor(intent.total_size / s.min_order_size + 1e-9)))
        n_parts = max(n_parts, 1)
        if intent.total_size / n_parts > s.max_order_size + 1e-12:
            raise InvalidOrder(f"Order {intent.id}: {intent.total_size} needs parts above "
                               f"max_order_size {s.max_order_size}")

        sizes = self._part_sizes(intent.total_size, n_parts, quote)
        times = self._release_times(start_ms, intent.duration_ms, n_parts)

        parts = tuple(
            PartSpec(part_index=i, size=size, scheduled_time=scheduled, target_price=intent.target_price)
            for i, (size, scheduled) in enumerate(zip(sizes, times))
        )
        plan = ExecutionPlan(order_id=intent.id, parts=parts, created_at=start_ms,
                             end_time=start_ms + intent.duration_ms)

        self.logger.debug(f"Plan for {intent.id}: {n_parts} parts, sizes={[round(x, 6) for x in sizes]}")
        return plan

    def _part_sizes(self, total: float, n_parts: int, quote: Optional[Quote]) -> List[float]:
        s = self.settings

        skew = quote.inventory_adjustment * SKEW_SCALE if quote is not None else 0.0
        factor = 1.0 + float(np.clip(skew, -MAX_SKEW, MAX_SKEW))

        target = total / n_parts * factor
        target = round(target / s.lot_size) * s.lot_size
        target = min(max(target, s.min_order_size), s.max_order_size)

        # Each part stays within [min, max] and leaves a remainder the
        # remaining parts can still cover; the last part takes the residual.
        sizes = []
        remaining = total
        for i in range(n_parts):
            left = n_parts - i - 1
            if left == 0:
                size = remaining
            else:
                upper = min(s.max_order_size, remaining - left * s.min_order_size)
                lower = max(s.min_order_size, remaining - left * s.max_order_size)
                size = min(max(target, lower), upper)
            sizes.append(size)
            remaining -= size
        return sizes

    def _release_times(self, start_ms: int, duration_ms: int, n_parts: int) -> List[int]:
        s = self.settings
        nominal = duration_ms / n_parts

        if not s.poisson_arrivals:
            return [start_ms + int(round(i * nominal)) for i in range(n_parts)]

        intensity = s.arrival_rate_per_sec or 1000.0 / nominal
        floor_ms = s.min_spacing_fraction * nominal
        delays = []
        for _ in range(n_parts - 1):
            u = 1.0 - self.rng.random()
            delays.append(next_arrival_delay_ms(nominal, intensity, u, s.min_spacing_fraction))

        # The last release must stay at or before start + (n-1) * nominal, so
        # only the part of each gap above the spacing floor is compressed.
        excess = sum(d - floor_ms for d in delays)
        allowed = (n_parts - 1) * (nominal - floor_ms)
        scale = allowed / excess if excess > allowed else 1.0
        if scale < 1.0:
            self.logger.debug(f"Poisson gaps compressed by {scale:.3f} to fit {duration_ms}ms")

        times = [start_ms]
        offset = 0.0
        for delay in delays:
            offset += floor_ms + (delay - floor_ms) * scale
            times.append(start_ms + int(round(offset)))
        return times

    # ------------------------------------------------------------------
    # Order lifecycle
    # ------------------------------------------------------------------

    async def submit_order(self, intent: OrderIntent, quote: Optional[Quote] = None) -> TWAPOrder:
        """
        Plan an order and start its execution task.

        Raises:
            InvalidOrder: duplicate active id or unsliceable order
        """
        existing = self.orders.get(intent.id)
        if existing is not None and not existing.state.is_terminal:
            raise InvalidOrder(f"Order {intent.id} is already active")

        plan = self.build_plan(intent, quote)
        order = TWAPOrder(intent=intent, plan=plan)
        self.orders[intent.id] = order

        order.state = OrderState.ACTIVE
        order.started_at = self.clock.now_ms()
        order.task = asyncio.create_task(self._run(order), name=f"twap-{intent.id}")

        self.logger.info(f"Order {intent.id} started: {intent.direction.value} {intent.total_size} "
                         f"in {len(plan.parts)} parts over {intent.duration_ms}ms")
        self.events.emit(ORDER_STARTED, {
            'order_id': intent.id,
            'direction': intent.direction.value,
            'total_size': intent.total_size,
            'parts': len(plan.parts),
            'plan': plan,
            'estimated_completion': plan.end_time,
        })
        return order

    async def _run(self, order: TWAPOrder) -> None:
        try:
            await self._execution_loop(order)
        except Exception as e:
            self.logger.exception(f"Execution loop for {order.id} crashed: {e}")
            if not order.state.is_terminal:
                self._fail_order(order, None, f"internal error: {e}")

    async def _execution_loop(self, order: TWAPOrder) -> None:
        while True:
            if order.cancel_requested:
                self._cancel(order)
                return

            part = order.plan.next_pending()
            if part is None:
                self._complete(order)
                return

            now = self.clock.now_ms()
            if now >= order.plan.end_time:
                self._skip_remaining(order, "TWAP end time elapsed")
                self._complete(order)
                return

            if now < part.scheduled_time:
                wake_at = min(part.scheduled_time, order.plan.end_time)
                await self.clock.sleep((wake_at - now) / 1000.0)
                continue

            try:
                report = await self.backend.execute_part(order.intent.direction, part.size, part.target_price)
            except ExecutionError as e:
                self._fail_order(order, part, e.reason)
                return
            except Exception as e:
                self.logger.exception(f"Backend error on {order.id}#{part.part_index}")
                self._fail_order(order, part, str(e))
                return

            await self._record_execution(order, part, report)

            if order.plan.next_pending() is not None and self.settings.inter_part_delay_ms > 0:
                await self.clock.sleep(self.settings.inter_part_delay_ms / 1000.0)

    async def _record_execution(self, order: TWAPOrder, part: PartSpec, report: ExecutionReport) -> None:
        now = self.clock.now_ms()
        executed = part.mark_executed(report, now)
        order.plan = order.plan.with_part(executed)

        balances = None
        if self.balance_provider is not None:
            try:
                balances = await self.balance_provider.get_balances()
            except Exception as e:
                self.logger.error(f"Balance poll failed after {order.id}#{part.part_index}, "
                                  f"applying fill locally: {e}")

        # From here to the event nothing yields to the loop
        direction = order.intent.direction
        if balances is not None:
            inventory = self.ledger.sync(balances)
        else:
            inventory = self.ledger.apply_fill(direction, report.executed_size,
                                               report.executed_price, report.fees_paid)

        pnl = self.slice_pnl(direction, part.target_price, report)
        order.executed_size += report.executed_size
        order.total_fees += report.fees_paid
        order.total_pnl += pnl

        fill = FillResult(
            order_id=order.id,
            part_index=part.part_index,
            direction=direction,
            size=report.executed_size,
            price=report.executed_price,
            fees=report.fees_paid,
            pnl=pnl,
            inventory=inventory,
            mark_price=report.executed_price,
            timestamp_ms=now,
        )
        if self.risk_manager is not None:
            self.risk_manager.update_risk_metrics(fill)
        self.tracker.record_fill(fill, part.target_price)

        self.execution_history.append({
            'order_id': order.id,
            'part_index': part.part_index,
            'timestamp_ms': now,
            'direction': direction.value,
            'price': report.executed_price,
            'size': report.executed_size,
            'fees': report.fees_paid,
            'pnl': pnl,
        })

        self.logger.info(f"Order {order.id} part {part.part_index + 1}/{len(order.plan.parts)}: "
                         f"{direction.value} {report.executed_size:.4f} @ {report.executed_price:.4f}")
        self.events.emit(PART_EXECUTED, {
            'order_id': order.id,
            'part_index': part.part_index,
            'executed_price': report.executed_price,
            'executed_size': report.executed_size,
            'fees_paid': report.fees_paid,
            'pnl': pnl,
            'reference': report.reference,
            'inventory': inventory,
        })

    @staticmethod
    def slice_pnl(direction: OrderDirection, target_price: float, report: ExecutionReport) -> float:
        """Price improvement vs the target, net of fees"""
        if direction is OrderDirection.BUY:
            edge = target_price - report.executed_price
        else:
            edge = report.executed_price - target_price
        return edge * report.executed_size - report.fees_paid

    def _skip_remaining(self, order: TWAPOrder, reason: str) -> None:
        now = self.clock.now_ms()
        for part in order.plan.parts:
            if part.status is PartStatus.PENDING:
                order.plan = order.plan.with_part(part.mark_skipped(reason, now))

    def _complete(self, order: TWAPOrder) -> None:
        order.state = OrderState.COMPLETED
        order.ended_at = self.clock.now_ms()
        summary = order.summary()
        self.tracker.record_order(order.id, 'completed', summary)

        avg = summary['average_price']
        self.logger.info(f"Order {order.id} completed in {summary['elapsed_ms']}ms: "
                         f"{summary['executed_size']:.4f} filled"
                         + (f" @ {avg:.4f}" if avg is not None else ""))
        self.events.emit(ORDER_COMPLETED, summary)

    def _fail_order(self, order: TWAPOrder, part: Optional[PartSpec], reason: str) -> None:
        now = self.clock.now_ms()
        if part is not None:
            order.plan = order.plan.with_part(part.mark_failed(reason, now))
        self._skip_remaining(order, f"order failed: {reason}")

        order.state = OrderState.FAILED
        order.ended_at = now
        order.error = reason
        summary = order.summary()
        self.tracker.record_order(order.id, 'failed', summary)

        part_index = part.part_index if part is not None else None
        self.logger.error(f"Order {order.id} failed at part {part_index}: {reason}")
        self.events.emit(ORDER_FAILED, {**summary, 'part_index': part_index})

    def _cancel(self, order: TWAPOrder) -> None:
        self._skip_remaining(order, "order cancelled")
        order.state = OrderState.CANCELLED
        order.ended_at = self.clock.now_ms()
        summary = order.summary()
        self.tracker.record_order(order.id, 'cancelled', summary)

        self.logger.info(f"Order {order.id} cancelled after {summary['parts_executed']} parts")
        self.events.emit(ORDER_CANCELLED, summary)

    def cancel_order(self, order_id: str) -> bool:
        """
        Request cancellation; honoured at the order's next tick.

        Returns:
            False if the order is unknown or already finished
        """
        order = self.orders.get(order_id)
        if order is None or order.state.is_terminal:
            return False
        order.cancel_requested = True
        self.logger.info(f"Cancellation requested for {order_id}")
        return True

    # ------------------------------------------------------------------
    # Waiting and shutdown
    # ------------------------------------------------------------------

    async def wait_for(self, order_id: str, timeout: Optional[float] = None) -> TWAPOrder:
        """Wait for an order to finish; raises ``asyncio.TimeoutError`` on timeout"""
        order = self.orders[order_id]
        if order.task is not None and not order.task.done():
            await asyncio.wait_for(asyncio.shield(order.task), timeout)
        return order

    async def drain(self, timeout_s: float) -> List[str]:
        """
        Wait up to ``timeout_s`` for active orders to finish.

        Returns:
            Ids of orders still running; they are abandoned, not cancelled
        """
        tasks = [o.task for o in self.active_orders if o.task is not None]
        if tasks:
            await asyncio.wait(tasks, timeout=timeout_s)

        abandoned = [o.id for o in self.active_orders]
        for order_id in abandoned:
            self.logger.warning(f"Order {order_id} still running after {timeout_s}s drain, abandoning")
        return abandoned

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_order(self, order_id: str) -> Optional[TWAPOrder]:
        return self.orders.get(order_id)

    @property
    def active_orders(self) -> List[TWAPOrder]:
        return [o for o in self.orders.values() if not o.state.is_terminal]

    @property
    def inventory(self) -> InventoryState:
        return self.ledger.state

    def get_execution_stats(self) -> Dict:
        """Get execution statistics"""
        parts_executed = len(self.execution_history)
        total_volume = sum(trade['size'] for trade in self.execution_history)

        states: Dict[str, int] = {state.value: 0 for state in OrderState}
        for order in self.orders.values():
            states[order.state.value] += 1

        return {
            'parts_executed': parts_executed,
            'total_volume': total_volume,
            'total_fees': sum(trade['fees'] for trade in self.execution_history),
            'total_pnl': sum(trade['pnl'] for trade in self.execution_history),
            'average_part_size': total_volume / parts_executed if parts_executed else 0.0,
            'active_orders': len(self.active_orders),
            'orders_by_state': states,
            'current_inventory': self.ledger.to_dict(),
        }
