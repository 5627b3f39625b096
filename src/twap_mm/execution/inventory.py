"""
Inventory Ledger
================

Holds the current ``InventoryState``. Every change builds a complete new
snapshot and swaps the reference in one assignment, so concurrent order
loops on the same event loop never observe a partial update.
"""

from typing import Dict, Optional

from ..models import InventoryState, OrderDirection
from ..utils.logger import get_logger


class InventoryLedger:
    """Current holdings, replaced wholesale on every fill or balance poll"""

    def __init__(self, initial: Optional[InventoryState] = None):
        self._state = initial or InventoryState()
        self.logger = get_logger('inventory')
        self.stats = {
            'fills_applied': 0,
            'balance_syncs': 0,
            'quote_clamps': 0,
        }

    @property
    def state(self) -> InventoryState:
        return self._state

    def swap(self, new_state: InventoryState) -> InventoryState:
        """Replace the snapshot; returns the previous one"""
        previous = self._state
        self._state = new_state
        return previous

    def sync(self, balances: InventoryState) -> InventoryState:
        """Adopt balances reported by a ``BalanceProvider``"""
        self.stats['balance_syncs'] += 1
        self.swap(balances)
        return balances

    def project_fill(self,
                     direction: OrderDirection,
                     size: float,
                     price: float,
                     fees: float = 0.0) -> InventoryState:
        """
        Holdings after a fill, without applying it.

        Buys spend ``size * price + fees`` of quote; sells receive
        ``size * price - fees``. A quote balance driven below zero is
        clamped to zero and logged.
        """
        current = self._state
        notional = size * price
        if direction is OrderDirection.BUY:
            base = current.base_asset + size
            quote = current.quote_asset - notional - fees
        else:
            base = current.base_asset - size
            quote = current.quote_asset + notional - fees

        if quote < 0:
            self.stats['quote_clamps'] += 1
            self.logger.warning(f"Quote balance would go negative ({quote:.4f}) after "
                                f"{direction.value} {size:.4f} @ {price:.4f}; clamping to 0")
            quote = 0.0

        return InventoryState(base_asset=base, quote_asset=quote)

    def apply_fill(self,
                   direction: OrderDirection,
                   size: float,
                   price: float,
                   fees: float = 0.0) -> InventoryState:
        new_state = self.project_fill(direction, size, price, fees)
        self.swap(new_state)
        self.stats['fills_applied'] += 1
        return new_state

    def to_dict(self) -> Dict[str, float]:
        return {'base_asset': self._state.base_asset, 'quote_asset': self._state.quote_asset}
