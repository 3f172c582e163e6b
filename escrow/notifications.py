"""
Trade event notifications.

Delivery (email, push, UI) is outside this service: events are logged, kept
in a bounded in-memory feed, and handed to registered handlers.
"""

import logging
import threading
from collections import deque
from typing import Callable, Dict, List, Optional, Any

from .core import now_ms, new_id
from .models import Trade

log = logging.getLogger(__name__)

EVENTS = (
    "trade_created",
    "deposit_detected",
    "payment_sent",
    "release_ready",
    "escrow_released",
    "dispute_opened",
    "dispute_updated",
    "trade_cancelled",
    "status_changed",
)


class NotificationService:
    """Event feed with handler registry."""

    def __init__(self, max_events: int = 1000):
        self._lock = threading.Lock()
        self._events = deque(maxlen=max_events)
        self._handlers: Dict[str, List[Callable]] = {event: [] for event in EVENTS}
        self._handlers["*"] = []

    def on(self, event: str, handler: Callable):
        """Register event handler. "*" receives every event."""
        if event in self._handlers:
            self._handlers[event].append(handler)

    def off(self, event: str, handler: Callable):
        """Remove event handler."""
        if event in self._handlers and handler in self._handlers[event]:
            self._handlers[event].remove(handler)

    def _emit(self, event: str, record: Dict[str, Any]):
        for handler in self._handlers.get(event, []) + self._handlers["*"]:
            try:
                handler(record)
            except Exception as e:
                log.error(f"Handler error for {event}: {e}")

    def notify(self, user_id: str, event: str, message: str,
               trade_id: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        record = {
            "id": new_id("ntf"),
            "user_id": user_id,
            "event": event,
            "trade_id": trade_id,
            "message": message,
            "data": data or {},
            "created_at": now_ms(),
        }
        with self._lock:
            self._events.append(record)
        log.info(f"Notify {user_id} [{event}] trade={trade_id}: {message}")
        self._emit(event, record)
        return record

    def notify_trade_participants(self, trade: Trade, event: str, message: str,
                                  exclude: Optional[str] = None,
                                  data: Optional[Dict[str, Any]] = None) -> int:
        """Notify buyer and seller, skipping `exclude` (usually the actor)."""
        sent = 0
        for user_id in (trade.buyer_id, trade.seller_id):
            if user_id == exclude:
                continue
            self.notify(user_id, event, message, trade_id=trade.trade_id, data=data)
            sent += 1
        return sent

    def recent(self, user_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            events = [e for e in self._events if user_id is None or e["user_id"] == user_id]
        return list(reversed(events))[:limit]

    def count(self, event: Optional[str] = None, trade_id: Optional[str] = None) -> int:
        with self._lock:
            return sum(
                1 for e in self._events
                if (event is None or e["event"] == event)
                and (trade_id is None or e["trade_id"] == trade_id)
            )
