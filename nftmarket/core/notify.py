"""
Notifications - best-effort side channel for market events.

Events are dispatched after an operation commits. A notifier that raises is
logged at WARNING and otherwise ignored; a failed email never undoes a sale.
"""

import threading
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from nftmarket.utils.logger import get_logger

logger = get_logger("notify")


class EventType(str, Enum):
    """Kinds of market events."""
    ITEM_LISTED = "item_listed"
    AUCTION_CREATED = "auction_created"
    LISTING_CANCELLED = "listing_cancelled"
    ITEM_SOLD = "item_sold"
    BID_PLACED = "bid_placed"
    OUTBID = "outbid"
    AUCTION_ENDED = "auction_ended"
    OFFER_MADE = "offer_made"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_REFUNDED = "offer_refunded"


@dataclass
class MarketEvent:
    """
    A committed state change worth telling someone about.

    Attributes:
        event_type: What happened
        item_id: Item concerned
        recipients: Addresses to notify (seller, buyer, outbid bidder, ...)
        timestamp: Unix seconds
        data: Event-specific details (amounts, counterparties)
    """
    event_type: EventType
    item_id: Optional[int]
    recipients: List[str]
    timestamp: int
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["event_type"] = self.event_type.value
        return d


class Notifier:
    """Delivery channel for market events. Subclasses override ``notify``."""

    def notify(self, event: MarketEvent) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Writes events to the log instead of sending mail."""

    def notify(self, event: MarketEvent) -> None:
        to = ", ".join(r[:10] for r in event.recipients)
        logger.info(f"[{event.event_type.value}] item={event.item_id} to={to} {event.data}")


class CollectingNotifier(Notifier):
    """Keeps every event in memory."""

    def __init__(self):
        self.events: List[MarketEvent] = []
        self._lock = threading.Lock()

    def notify(self, event: MarketEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: EventType) -> List[MarketEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


class CallbackNotifier(Notifier):
    """Routes events to callbacks registered per event type."""

    def __init__(self):
        self._callbacks: Dict[EventType, List[Callable[[MarketEvent], None]]] = {}

    def on(self, event_type: EventType, callback: Callable[[MarketEvent], None]) -> None:
        self._callbacks.setdefault(event_type, []).append(callback)

    def notify(self, event: MarketEvent) -> None:
        for callback in self._callbacks.get(event.event_type, []):
            callback(event)


def dispatch(notifier: Optional[Notifier], events: List[MarketEvent]) -> int:
    """
    Deliver events, swallowing delivery failures.

    Returns:
        Number of events delivered
    """
    if notifier is None:
        return 0

    delivered = 0
    for event in events:
        try:
            notifier.notify(event)
            delivered += 1
        except Exception as e:
            logger.warning(f"Notification {event.event_type.value} for item {event.item_id} failed: {e}")
    return delivered
