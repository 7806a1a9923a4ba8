import threading
from typing import Type, Callable, List, Dict, Any
from smallmp4.domain.events import Event


class EventBus:
    """A simple synchronous event bus for decoupled communication."""

    def __init__(self):
        self._subscribers: Dict[Type[Event], List[Callable[[Any], None]]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[Event], callback: Callable[[Any], None]):
        """Subscribes a callback to an event type and all of its subclasses."""
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)

    def publish(self, event: Event):
        """Publishes an event to all interested subscribers."""
        with self._lock:
            callbacks = [
                cb
                for event_type, subscribers in self._subscribers.items()
                if isinstance(event, event_type)
                for cb in subscribers
            ]
        for callback in callbacks:
            callback(event)
