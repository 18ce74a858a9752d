import logging
import threading
from typing import Type, Callable, List, Dict, Any, Optional
from vcheck.domain.events import Event

logger = logging.getLogger(__name__)


class EventBus:
    """A simple synchronous, thread-safe event bus for decoupled communication.

    Subscribing to a base event class receives every subclass event as well,
    so an observer can attach to a whole family (e.g. ``FileEvent``).
    """

    def __init__(self):
        self._subscribers: Dict[Type[Event], List[Callable[[Any], None]]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[Event], callback: Optional[Callable[[Any], None]] = None):
        """Subscribes a callback to a specific event type. Can be used as a decorator."""
        if callback is None:
            def decorator(func: Callable[[Any], None]):
                self.subscribe(event_type, func)
                return func
            return decorator

        with self._lock:
            if event_type not in self._subscribers:
                self._subscribers[event_type] = []
            self._subscribers[event_type].append(callback)
        return callback

    def unsubscribe(self, event_type: Type[Event], callback: Callable[[Any], None]) -> None:
        """Detaches a callback. Unknown callbacks are ignored."""
        with self._lock:
            callbacks = self._subscribers.get(event_type)
            if not callbacks:
                return
            try:
                callbacks.remove(callback)
            except ValueError:
                return
            if not callbacks:
                del self._subscribers[event_type]

    def subscriber_count(self, event_type: Type[Event]) -> int:
        with self._lock:
            return len(self._subscribers.get(event_type, []))

    def publish(self, event: Event):
        """Publishes an event to all interested subscribers.

        Callbacks registered at publish time are called in order; one failing
        subscriber does not stop delivery to the others.
        """
        with self._lock:
            targets: List[Callable[[Any], None]] = []
            for event_type in type(event).__mro__:
                targets.extend(self._subscribers.get(event_type, ()))

        for callback in targets:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Event subscriber failed for {type(event).__name__}")
