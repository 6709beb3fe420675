"""
Event Bus - in-process notifications.
Engines emit after a change is committed; listeners (audit, UI refresh,
reconciliation jobs) subscribe without the engines importing them.
"""

from typing import Callable, Dict, List, Any, Optional
import logging

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], None]


class EventBus:
    """
    Synchronous publish/subscribe. Handlers run in registration order on the
    emitting thread; a failing handler is logged and skipped.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}

    def on(self, event_name: str, handler: Handler):
        """Register handler for event_name. It receives the event_data dict."""
        self._handlers.setdefault(event_name, []).append(handler)
        logger.debug(f"Registered handler for event '{event_name}': {getattr(handler, '__name__', handler)}")

    def off(self, event_name: str, handler: Handler) -> bool:
        """Unregister handler. Returns False if it was not registered."""
        handlers = self._handlers.get(event_name, [])
        if handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def emit(self, event_name: str, event_data: Optional[Dict[str, Any]] = None) -> int:
        """
        Emit an event to all registered handlers.
        Returns how many handlers completed without raising.
        """
        if event_data is None:
            event_data = {}

        logger.debug(f"Emitting event '{event_name}' with data: {event_data}")

        completed = 0
        # Snapshot so a handler may unregister itself mid-emit
        for handler in list(self._handlers.get(event_name, [])):
            try:
                handler(event_data)
                completed += 1
            except Exception as e:
                logger.error(f"Error in handler {getattr(handler, '__name__', handler)} for event '{event_name}': {e}")
        return completed

    def clear(self):
        """Clear all handlers (useful for testing)."""
        self._handlers.clear()


# Singleton instance
bus = EventBus()


# =============================================================================
# STANDARD EVENTS
# =============================================================================

# Selection
EVENT_RECIPIENTS_PREVIEWED = 'recipients_previewed'

# Credit ledger
EVENT_CREDITS_RESERVED = 'credits_reserved'
EVENT_CREDITS_SETTLED = 'credits_settled'
EVENT_CREDITS_GRANTED = 'credits_granted'

# Auto-nudge
EVENT_BUCKET_CREATED = 'bucket_created'

# Delivery callbacks
EVENT_CLIENT_UNSUBSCRIBED = 'client_unsubscribed'
EVENT_SMS_DELIVERED = 'sms_delivered'
EVENT_SMS_FAILED = 'sms_failed'

ALL_EVENTS = (
    EVENT_RECIPIENTS_PREVIEWED,
    EVENT_CREDITS_RESERVED, EVENT_CREDITS_SETTLED, EVENT_CREDITS_GRANTED,
    EVENT_BUCKET_CREATED,
    EVENT_CLIENT_UNSUBSCRIBED, EVENT_SMS_DELIVERED, EVENT_SMS_FAILED,
)
