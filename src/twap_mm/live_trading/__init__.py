"""
Live Trading Module
===================

Orchestration of quoting, risk validation and TWAP execution.
"""

from .orchestrator import TradingOrchestrator

__all__ = ['TradingOrchestrator']
