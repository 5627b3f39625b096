"""
Utilities Module
================

Configuration, logging, event dispatch and time helpers.
"""

from .config import config, Config
from .clock import SystemClock
from .events import EventEmitter

__all__ = ['config', 'Config', 'SystemClock', 'EventEmitter']
