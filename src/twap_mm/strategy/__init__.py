"""
Market Making Strategy Module
=============================

Avellaneda-Stoikov quoting with online volatility re-estimation and the
risk manager that gates every order.
"""

from .volatility import VolatilityEstimator
from .avellaneda_stoikov import AvellanedaStoikovModel
from .risk_manager import RiskManager

__all__ = [
    'VolatilityEstimator',
    'AvellanedaStoikovModel',
    'RiskManager',
]
