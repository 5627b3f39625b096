"""
Observer list with synchronous dispatch.

Each component owns one emitter with a fixed set of event names. Callbacks run
in registration order inside ``emit``; a raising callback is logged and does
not stop the remaining callbacks.
"""

from typing import Any, Callable, Dict, Iterable, List
from loguru import logger


QUOTE_UPDATED = "quote_updated"
ORDER_STARTED = "order_started"
PART_EXECUTED = "part_executed"
ORDER_COMPLETED = "order_completed"
ORDER_FAILED = "order_failed"
ORDER_CANCELLED = "order_cancelled"
ORDER_REJECTED = "order_rejected"
RISK_ALERT = "risk_alert"
EMERGENCY_STOP = "emergency_stop"
PRICE_UPDATE = "price_update"
STATUS_CHANGE = "status_change"


class EventEmitter:
    """Named callback lists, dispatched synchronously"""

    def __init__(self, event_types: Iterable[str], owner: str = ""):
        self.owner = owner
        self.callbacks: Dict[str, List[Callable[[Any], None]]] = {
            event_type: [] for event_type in event_types
        }

    @property
    def event_types(self) -> List[str]:
        return list(self.callbacks)

    def add_callback(self, event_type: str, callback: Callable[[Any], None]) -> None:
        """Add callback for specific events"""
        if event_type not in self.callbacks:
            raise ValueError(f"{self.owner or 'emitter'} has no event '{event_type}'")
        self.callbacks[event_type].append(callback)

    # Short alias
    on = add_callback

    def remove_callback(self, event_type: str, callback: Callable[[Any], None]) -> None:
        if event_type in self.callbacks and callback in self.callbacks[event_type]:
            self.callbacks[event_type].remove(callback)

    def emit(self, event_type: str, data: Any = None) -> None:
        """Emit event to all registered callbacks"""
        for callback in list(self.callbacks.get(event_type, [])):
            try:
                callback(data)
            except Exception as e:
                logger.error(f"Callback error for {self.owner}.{event_type}: {e}")

    def forward(self, source: "EventEmitter", event_types: Iterable[str]) -> None:
        """Re-emit ``source`` events of the given names from this emitter"""
        for event_type in event_types:
            source.add_callback(event_type, self._forwarder(event_type))

    def _forwarder(self, event_type: str) -> Callable[[Any], None]:
        def _forward(data: Any) -> None:
            self.emit(event_type, data)
        return _forward
