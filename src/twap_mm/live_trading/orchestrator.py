"""
Trading Orchestrator
====================

Wires market data into the pricing model, regenerates quotes, decides when
and which way to trade, and hands risk-approved orders to the TWAP executor.

Data flow:
    market data -> model (+ volatility) -> quote -> order decision
    -> risk validation -> TWAP executor -> fills -> inventory / risk
"""

import asyncio
from typing import Any, Dict, List, Optional

from ..exceptions import InvalidOrder, RiskRejected, StaleData
from ..execution.backends import BalanceProvider, OrderExecutionBackend
from ..execution.inventory import InventoryLedger
from ..execution.twap_executor import ExecutionScheduler, TWAPOrder
from ..models import InventoryState, MarketSnapshot, OrderDirection, OrderIntent, Quote
from ..strategy.avellaneda_stoikov import AvellanedaStoikovModel
from ..strategy.risk_manager import RiskManager
from ..utils.clock import SystemClock
from ..utils.config import Config, ModelConfig, OrchestratorConfig
from ..utils.events import (
    EMERGENCY_STOP,
    ORDER_CANCELLED,
    ORDER_COMPLETED,
    ORDER_FAILED,
    ORDER_REJECTED,
    ORDER_STARTED,
    PART_EXECUTED,
    PRICE_UPDATE,
    QUOTE_UPDATED,
    RISK_ALERT,
    STATUS_CHANGE,
    EventEmitter,
)
from ..utils.logger import get_logger

EXECUTOR_EVENTS = [ORDER_STARTED, PART_EXECUTED, ORDER_COMPLETED, ORDER_FAILED, ORDER_CANCELLED]
RISK_EVENTS = [RISK_ALERT, EMERGENCY_STOP, STATUS_CHANGE]


class TradingOrchestrator:
    """
    Main trading loop that coordinates:
    - Market data polling and quote regeneration
    - Threshold-based order triggers
    - Mean-reversion / rebalancing order direction
    - Risk-scaled order sizing and validation
    - TWAP submission, cooldown after rejections, graceful shutdown
    """

    def __init__(self,
                 model: AvellanedaStoikovModel,
                 risk_manager: RiskManager,
                 scheduler: ExecutionScheduler,
                 market_data=None,
                 settings: Optional[OrchestratorConfig] = None,
                 model_settings: Optional[ModelConfig] = None,
                 clock=None):

        self.model = model
        self.risk_manager = risk_manager
        self.scheduler = scheduler
        self.market_data = market_data
        self.settings = settings or OrchestratorConfig()
        self.horizon_duration_ms = (model_settings or ModelConfig()).horizon_duration_ms
        self.clock = clock or SystemClock()
        self.logger = get_logger('orchestrator')

        # Trading state
        self.is_running = False
        self.started_at: Optional[int] = None
        self.horizon_start_ms: Optional[int] = None
        self.current_quote: Optional[Quote] = None
        self.last_snapshot: Optional[MarketSnapshot] = None
        self.last_quote_time: Optional[int] = None
        self.last_order_time: Optional[int] = None
        self.cooldown_until: Optional[int] = None
        self.order_counter = 0

        self._market_task: Optional[asyncio.Task] = None
        self._quote_task: Optional[asyncio.Task] = None

        self.stats = {
            'total_orders': 0,
            'successful_orders': 0,
            'failed_orders': 0,
            'rejected_orders': 0,
            'quotes_generated': 0,
            'total_volume': 0.0,
            'total_pnl': 0.0,
        }

        self.events = EventEmitter(
            [QUOTE_UPDATED, ORDER_REJECTED, PRICE_UPDATE] + EXECUTOR_EVENTS + RISK_EVENTS,
            owner="orchestrator",
        )
        self.events.forward(self.scheduler.events, EXECUTOR_EVENTS)
        self.events.forward(self.risk_manager.events, RISK_EVENTS)
        market_events = getattr(self.market_data, 'events', None)
        if market_events is not None:
            self.events.forward(market_events, [PRICE_UPDATE])

        self.scheduler.add_callback(ORDER_COMPLETED, self._on_order_completed)
        self.scheduler.add_callback(ORDER_FAILED, self._on_order_failed)

        self.logger.info(f"Trading orchestrator initialized for {self.settings.symbol}: "
                         f"quote every {self.settings.quote_interval_ms}ms, "
                         f"orders {self.settings.max_order_parts} parts over {self.settings.order_duration_ms}ms")

    @classmethod
    def from_config(cls,
                    cfg: Config,
                    backend: OrderExecutionBackend,
                    market_data=None,
                    balance_provider: Optional[BalanceProvider] = None,
                    initial_inventory: Optional[InventoryState] = None,
                    clock=None) -> "TradingOrchestrator":
        """Build the full component graph from one Config"""
        clock = clock or SystemClock()
        model = AvellanedaStoikovModel.from_config(cfg.model, cfg.volatility)
        risk_manager = RiskManager(cfg.risk, clock=clock)
        scheduler = ExecutionScheduler(
            backend,
            ledger=InventoryLedger(initial_inventory),
            risk_manager=risk_manager,
            settings=cfg.execution,
            clock=clock,
            balance_provider=balance_provider,
        )
        return cls(model, risk_manager, scheduler, market_data,
                   settings=cfg.orchestrator, model_settings=cfg.model, clock=clock)

    def add_callback(self, event_type: str, callback) -> None:
        """Add callback for specific events"""
        self.events.add_callback(event_type, callback)

    def remove_callback(self, event_type: str, callback) -> None:
        self.events.remove_callback(event_type, callback)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start market data polling and the quote timer"""
        if self.is_running:
            self.logger.warning("Orchestrator already running")
            return

        self.logger.info("Starting TWAP market maker...")
        self.is_running = True
        self.started_at = self.clock.now_ms()
        if self.horizon_start_ms is None:
            self.horizon_start_ms = self.started_at

        if self.market_data is not None:
            self._market_task = asyncio.create_task(self._market_data_loop(), name="market-data")
        self._start_quote_loop()
        self.events.emit(STATUS_CHANGE, "started")

    async def stop(self) -> List[str]:
        """
        Stop the loops and drain active orders.

        Returns:
            Ids of orders still running after the drain timeout
        """
        if not self.is_running:
            self.logger.warning("Orchestrator not running")
            return []

        self.logger.info("Stopping TWAP market maker...")
        self.is_running = False

        tasks = [t for t in (self._market_task, self._quote_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._market_task = None
        self._quote_task = None

        abandoned = await self.scheduler.drain(self.settings.shutdown_timeout_ms / 1000.0)
        if abandoned:
            self.logger.warning(f"Stopped with {len(abandoned)} order(s) still running: {abandoned}")
        else:
            self.logger.info("Stopped cleanly, no active orders")
        self.events.emit(STATUS_CHANGE, "stopped")
        return abandoned

    def _start_quote_loop(self) -> None:
        if self._quote_task is None or self._quote_task.done():
            self._quote_task = asyncio.create_task(self._quote_loop(), name="quote-timer")

    def _stop_quote_loop(self) -> None:
        if self._quote_task is not None:
            self._quote_task.cancel()
            self._quote_task = None
            self.logger.info("Quote generation stopped")

    async def _market_data_loop(self) -> None:
        interval = self.settings.market_data_interval_ms / 1000.0
        while self.is_running:
            try:
                snapshot = await self.market_data.get_current_price()
                if snapshot is not None:
                    await self.handle_market_update(snapshot)
            except Exception as e:
                self.logger.error(f"Error in market data loop: {e}")
            await self.clock.sleep(interval)

    async def _quote_loop(self) -> None:
        interval = self.settings.quote_interval_ms / 1000.0
        while self.is_running:
            await self.clock.sleep(interval)
            if self.last_snapshot is None or not self.quote_due(self.clock.now_ms()):
                continue
            try:
                await self.refresh_quote(self.last_snapshot)
            except Exception as e:
                self.logger.error(f"Error in quote generation: {e}")

    # ------------------------------------------------------------------
    # Market updates and quoting
    # ------------------------------------------------------------------

    async def handle_market_update(self, snapshot: MarketSnapshot) -> Optional[TWAPOrder]:
        """
        Feed one observation; regenerate the quote once quote_interval_ms
        has passed since the last one.

        Returns:
            The order started on this update, if any
        """
        self.last_snapshot = snapshot
        self.model.update_market(snapshot)

        if not self.quote_due(self.clock.now_ms()):
            return None
        return await self.refresh_quote(snapshot)

    def quote_due(self, now_ms: int) -> bool:
        """True once quote_interval_ms has passed since the last quote"""
        if self.last_quote_time is None:
            return True
        return now_ms - self.last_quote_time >= self.settings.quote_interval_ms

    async def refresh_quote(self, snapshot: MarketSnapshot) -> Optional[TWAPOrder]:
        """Regenerate the quote and start an order if a trigger fires"""
        previous = self.current_quote
        quote = self.generate_quote(snapshot)

        if not self.should_create_order(quote, previous):
            return None
        return await self.evaluate_order_creation(quote, snapshot)

    def elapsed_in_horizon(self, now_ms: int) -> float:
        """Position within the rolling horizon window, scaled to [0, T)"""
        if self.horizon_start_ms is None:
            self.horizon_start_ms = now_ms
        elapsed_ms = (now_ms - self.horizon_start_ms) % self.horizon_duration_ms
        return elapsed_ms / self.horizon_duration_ms * self.model.params.time_horizon

    def generate_quote(self, snapshot: MarketSnapshot) -> Quote:
        now = self.clock.now_ms()
        inventory = self.scheduler.inventory
        quote = self.model.compute_quote(
            snapshot.mid_price,
            inventory.base_asset,
            self.elapsed_in_horizon(now),
            timestamp_ms=now,
        )

        self.current_quote = quote
        self.last_quote_time = now
        self.stats['quotes_generated'] += 1

        self.logger.debug(f"Quote: r={quote.reservation_price:.4f} spread={quote.optimal_spread:.6f} "
                          f"bid={quote.bid_price:.4f} ask={quote.ask_price:.4f}")
        self.events.emit(QUOTE_UPDATED, quote)
        return quote

    def should_create_order(self, quote: Quote, previous: Optional[Quote]) -> bool:
        """Any trigger suffices: reservation move, spread change or order interval"""
        if previous is None:
            return True

        s = self.settings
        price_change = abs(quote.reservation_price - previous.reservation_price) / previous.reservation_price
        if price_change > s.reservation_move_threshold:
            self.logger.info(f"Reservation price moved {price_change:.2%}")
            return True

        if previous.optimal_spread > 0:
            spread_change = abs(quote.optimal_spread - previous.optimal_spread) / previous.optimal_spread
            if spread_change > s.spread_change_threshold:
                self.logger.info(f"Optimal spread changed {spread_change:.2%}")
                return True

        if self.last_order_time is None or self.clock.now_ms() - self.last_order_time > s.order_interval_ms:
            self.logger.debug("Time-based order trigger")
            return True

        return False

    # ------------------------------------------------------------------
    # Order decisions
    # ------------------------------------------------------------------

    def determine_order_direction(self, quote: Quote, inventory: InventoryState) -> Optional[OrderDirection]:
        """
        Mean reversion toward the quote mid first, then rebalancing toward
        the target base share of portfolio value. None means no order.
        """
        s = self.settings
        reservation = quote.reservation_price
        quote_mid = quote.midprice

        deviation = (reservation - quote_mid) / quote_mid
        if deviation > s.mean_reversion_threshold:
            if inventory.base_asset > s.min_sell_inventory:
                return OrderDirection.SELL
        elif deviation < -s.mean_reversion_threshold:
            if inventory.quote_asset > reservation * s.min_buy_funds_fraction:
                return OrderDirection.BUY

        ratio = inventory.base_ratio(reservation)
        if ratio is None:
            return None
        if ratio < s.target_base_ratio - s.rebalance_band:
            return OrderDirection.BUY
        if ratio > s.target_base_ratio + s.rebalance_band:
            return OrderDirection.SELL
        return None

    def calculate_base_order_size(self, quote: Quote, snapshot: MarketSnapshot) -> float:
        """Smaller in volatile markets, larger when the spread is wide"""
        execution = self.scheduler.settings
        size = execution.min_order_size

        if snapshot.volatility:
            size *= max(0.5, 1.0 - snapshot.volatility * 2.0)

        spread_ratio = quote.optimal_spread / quote.reservation_price
        if spread_ratio > 0.001:
            size *= min(2.0, 1.0 + spread_ratio * 100.0)

        return min(max(size, execution.min_order_size), execution.max_order_size)

    def in_cooldown(self, now_ms: Optional[int] = None) -> bool:
        now_ms = self.clock.now_ms() if now_ms is None else now_ms
        return self.cooldown_until is not None and now_ms < self.cooldown_until

    async def evaluate_order_creation(self, quote: Quote, snapshot: MarketSnapshot) -> Optional[TWAPOrder]:
        now = self.clock.now_ms()
        if self.in_cooldown(now):
            self.logger.debug(f"Order evaluation paused for {self.cooldown_until - now}ms after a rejection")
            return None

        inventory = self.scheduler.inventory
        direction = self.determine_order_direction(quote, inventory)
        if direction is None:
            self.logger.debug("No order direction determined")
            return None

        base_size = self.calculate_base_order_size(quote, snapshot)
        size = self.risk_manager.recommend_position_size(base_size, snapshot.volatility, inventory)
        target_price = quote.bid_price if direction is OrderDirection.BUY else quote.ask_price

        intent = OrderIntent(
            id=self._next_order_id("twap"),
            direction=direction,
            total_size=size,
            target_price=target_price,
            duration_ms=self.settings.order_duration_ms,
            max_parts=self.settings.max_order_parts,
        )

        try:
            self.risk_manager.validate_order(intent, inventory, snapshot)
        except RiskRejected as e:
            self.cooldown_until = now + self.settings.rejection_cooldown_ms
            self._reject(intent, e)
            self.logger.info(f"Pausing order creation for {self.settings.rejection_cooldown_ms}ms")
            return None

        return await self._submit(intent, quote)

    async def execute_manual_order(self,
                                   direction,
                                   total_size: float,
                                   target_price: Optional[float] = None,
                                   duration_ms: Optional[int] = None,
                                   max_parts: Optional[int] = None,
                                   order_id: Optional[str] = None) -> str:
        """
        Validate and submit an order outside the automatic triggers.

        Risk rejections propagate to the caller; no cooldown is started.

        Returns:
            Order id
        """
        snapshot = self.last_snapshot
        if snapshot is None:
            raise StaleData("No market data available for manual order")

        intent = OrderIntent(
            id=order_id or self._next_order_id("manual"),
            direction=direction,
            total_size=total_size,
            target_price=target_price if target_price is not None else snapshot.mid_price,
            duration_ms=duration_ms or self.settings.order_duration_ms,
            max_parts=max_parts or self.settings.max_order_parts,
        )
        self.logger.info(f"Executing manual order {intent.id}: {intent.direction.value} {intent.total_size}")

        try:
            self.risk_manager.validate_order(intent, self.scheduler.inventory, snapshot)
        except RiskRejected as e:
            self._reject(intent, e)
            raise

        order = await self._submit(intent, self.current_quote, raise_errors=True)
        return order.id

    async def _submit(self, intent: OrderIntent, quote: Optional[Quote], raise_errors: bool = False) -> Optional[TWAPOrder]:
        try:
            order = await self.scheduler.submit_order(intent, quote)
        except InvalidOrder as e:
            self.stats['rejected_orders'] += 1
            self.logger.error(f"Order {intent.id} could not be scheduled: {e}")
            self.events.emit(ORDER_REJECTED, {'order_id': intent.id, 'reason': str(e), 'constraint': None})
            if raise_errors:
                raise
            return None

        self.stats['total_orders'] += 1
        self.last_order_time = self.clock.now_ms()
        self.logger.info(f"Created TWAP order {intent.id}: {intent.direction.value} {intent.total_size:.4f} "
                         f"@ {intent.target_price:.4f}")
        return order

    def _reject(self, intent: OrderIntent, error: RiskRejected) -> None:
        self.stats['rejected_orders'] += 1
        self.logger.warning(f"Order {intent.id} rejected by risk manager: {error}")
        self.events.emit(ORDER_REJECTED, {
            'order_id': intent.id,
            'reason': error.reason,
            'constraint': error.constraint.value,
        })

    def _next_order_id(self, prefix: str) -> str:
        self.order_counter += 1
        return f"{prefix}_{self.order_counter}_{self.clock.now_ms()}"

    def _on_order_completed(self, summary: Dict[str, Any]) -> None:
        self.stats['successful_orders'] += 1
        self.stats['total_volume'] += summary['executed_size']
        self.stats['total_pnl'] += summary['total_pnl']

    def _on_order_failed(self, summary: Dict[str, Any]) -> None:
        self.stats['failed_orders'] += 1
        self.stats['total_pnl'] += summary['total_pnl']

    # ------------------------------------------------------------------
    # Controls and status
    # ------------------------------------------------------------------

    def emergency_stop(self, reason: str = "Manual emergency stop") -> None:
        """Halt new orders and quoting; running orders are left to finish"""
        self.logger.critical(f"EMERGENCY STOP: {reason}")
        self.risk_manager.activate_emergency_stop(reason)
        self._stop_quote_loop()

    def reset_emergency_stop(self) -> None:
        self.logger.info("Resetting emergency stop")
        self.risk_manager.reset_emergency_stop()
        self.cooldown_until = None
        if self.is_running:
            self._start_quote_loop()

    def get_status(self) -> Dict[str, Any]:
        """Get current orchestrator status"""
        now = self.clock.now_ms()
        total = self.stats['total_orders']
        quote = self.current_quote
        return {
            'is_running': self.is_running,
            'uptime_ms': now - self.started_at if self.started_at is not None else 0,
            'symbol': self.settings.symbol,
            'stats': {
                **self.stats,
                'average_order_size': self.stats['total_volume'] / total if total else 0.0,
                'success_rate': self.stats['successful_orders'] / total * 100 if total else 0.0,
            },
            'active_orders': [o.id for o in self.scheduler.active_orders],
            'in_cooldown': self.in_cooldown(now),
            'current_quote': {
                'reservation_price': quote.reservation_price,
                'optimal_spread': quote.optimal_spread,
                'bid_price': quote.bid_price,
                'ask_price': quote.ask_price,
                'generated_at': quote.generated_at,
            } if quote else None,
            'last_quote_time': self.last_quote_time,
            'volatility': self.model.sigma,
            'risk_status': self.risk_manager.get_risk_status(),
            'inventory': self.scheduler.ledger.to_dict(),
            'execution': self.scheduler.get_execution_stats(),
        }
