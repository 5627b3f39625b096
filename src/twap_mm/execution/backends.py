"""
Execution and balance collaborators.

The scheduler only depends on the two protocols below. Chain or venue
specifics live behind them; the paper implementations fill locally and are
used for dry runs and tests.
"""

from typing import List, Optional, Protocol

from ..exceptions import ExecutionError
from ..models import ExecutionReport, InventoryState, OrderDirection
from ..utils.logger import get_logger


class OrderExecutionBackend(Protocol):
    """Places one slice and reports the fill."""

    async def execute_part(self,
                           direction: OrderDirection,
                           size: float,
                           target_price: float) -> ExecutionReport:
        """Execute a slice or raise ``ExecutionError``."""
        ...


class BalanceProvider(Protocol):
    """Source of truth for holdings, polled after each execution."""

    async def get_balances(self) -> InventoryState:
        ...


class PaperExecutionBackend:
    """
    Deterministic local fills.

    Each slice fills completely at ``target_price`` moved against the trader
    by ``slippage``; fees are ``fee_rate`` of the notional.
    """

    def __init__(self, fee_rate: float = 0.001, slippage: float = 0.0):
        if fee_rate < 0 or slippage < 0:
            raise ValueError("fee_rate and slippage must be >= 0")
        self.fee_rate = fee_rate
        self.slippage = slippage
        self.fills: List[ExecutionReport] = []
        self.logger = get_logger('paper_backend')

    async def execute_part(self,
                           direction: OrderDirection,
                           size: float,
                           target_price: float) -> ExecutionReport:
        if size <= 0:
            raise ExecutionError(f"cannot execute non-positive size {size}")
        if target_price <= 0:
            raise ExecutionError(f"cannot execute at non-positive price {target_price}")

        price = target_price * (1.0 + direction.sign * self.slippage)
        report = ExecutionReport(
            executed_price=price,
            executed_size=size,
            fees_paid=price * size * self.fee_rate,
            reference=f"paper-{len(self.fills) + 1}",
        )
        self.fills.append(report)
        self.logger.debug(f"Paper fill {report.reference}: {direction.value} {size:.4f} @ {price:.4f}")
        return report


class StaticBalanceProvider:
    """Balances held in memory; ``set_balances`` stands in for an external change"""

    def __init__(self, inventory: Optional[InventoryState] = None):
        self.inventory = inventory or InventoryState()
        self.polls = 0

    def set_balances(self, inventory: InventoryState) -> None:
        self.inventory = inventory

    async def get_balances(self) -> InventoryState:
        self.polls += 1
        return self.inventory
