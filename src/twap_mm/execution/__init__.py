"""
Execution Module
================

TWAP slicing and scheduling, inventory ledger, execution collaborators
and fill-quality tracking.
"""

from .backends import (
    OrderExecutionBackend,
    BalanceProvider,
    PaperExecutionBackend,
    StaticBalanceProvider
)
from .inventory import InventoryLedger
from .performance_tracker import ExecutionPerformanceTracker
from .twap_executor import ExecutionScheduler, TWAPOrder, next_arrival_delay_ms

__all__ = [
    'OrderExecutionBackend',
    'BalanceProvider',
    'PaperExecutionBackend',
    'StaticBalanceProvider',
    'InventoryLedger',
    'ExecutionPerformanceTracker',
    'ExecutionScheduler',
    'TWAPOrder',
    'next_arrival_delay_ms'
]
