import logging
import threading
from typing import Type, Callable, List, Dict, Any, Optional
from convq.domain.events import Event

class EventBus:
    """A synchronous, thread-safe event bus for decoupled communication.

    Callbacks run on the publishing thread. A subscription to a base class
    (e.g. ``JobEvent``) receives every subclass event as well. A failing
    subscriber is logged and does not prevent delivery to the others.
    """

    def __init__(self):
        self._subscribers: Dict[Type[Event], List[Callable[[Any], None]]] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def subscribe(self, event_type: Type[Event], callback: Optional[Callable[[Any], None]] = None):
        """Subscribes a callback to a specific event type. Can be used as a decorator.

        Returns an unsubscribe function when called with a callback.
        """
        if callback is None:
            def decorator(func: Callable[[Any], None]):
                self.subscribe(event_type, func)
                return func
            return decorator

        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)

        def unsubscribe():
            self.unsubscribe(event_type, callback)
        return unsubscribe

    def unsubscribe(self, event_type: Type[Event], callback: Callable[[Any], None]) -> bool:
        with self._lock:
            callbacks = self._subscribers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)
                return True
        return False

    def publish(self, event: Event):
        """Publishes an event to all interested subscribers."""
        with self._lock:
            targets = [
                callback
                for event_type in type(event).__mro__
                for callback in self._subscribers.get(event_type, ())
            ]
        for callback in targets:
            try:
                callback(event)
            except Exception:
                self.logger.exception(f"Subscriber {callback!r} failed on {type(event).__name__}")
