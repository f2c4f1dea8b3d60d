"""Host event bus carrying decoded NMEA 2000 messages."""

from typing import Any, Callable, Dict, List
import structlog

logger = structlog.get_logger(__name__)

# Outbound message notifications published by the host
ANALYZER_OUT = "N2KAnalyzerOut"
JSON_OUT = "nmea2000JsonOut"

OUTBOUND_EVENTS = (ANALYZER_OUT, JSON_OUT)

Handler = Callable[[Any], None]


class EventBus:
    """Synchronous publish/subscribe bus keyed by event name."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """
        Subscribe a handler to an event.

        Args:
            event: Event name
            handler: Called with the event payload

        Returns:
            A callable that removes the subscription; safe to call twice
        """
        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            self.off(event, handler)

        return unsubscribe

    def off(self, event: str, handler: Handler) -> None:
        """Remove a handler; no-op if it is not subscribed."""
        handlers = self._handlers.get(event)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._handlers[event]

    def emit(self, event: str, payload: Any) -> int:
        """
        Deliver a payload to every handler of an event.

        Handlers run in subscription order. A handler that raises is logged
        and the remaining handlers still run.

        Returns:
            Number of handlers called
        """
        handlers = list(self._handlers.get(event, ()))
        for handler in handlers:
            try:
                handler(payload)
            except Exception as e:
                logger.error("Event handler failed",
                             event_name=event,
                             handler=getattr(handler, "__qualname__", repr(handler)),
                             error=str(e),
                             exc_info=True)
        return len(handlers)

    def listener_count(self, event: str) -> int:
        """Number of handlers subscribed to an event."""
        return len(self._handlers.get(event, ()))
