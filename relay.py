"""
In-memory real-time relay.

Subscribers (SSE streams) register an asyncio.Queue for a set of channels.
Publishing is best-effort and at-most-once: nothing is buffered for absent
subscribers and a failed hand-off is logged, never raised. Clients treat a
pushed event as a hint and re-fetch the order to get the authoritative state.
"""

import asyncio
import logging
import threading
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

from fastapi.encoders import jsonable_encoder

from database import now_utc
from schemas import OrderEvent

logger = logging.getLogger(__name__)

RIDERS_CHANNEL = "riders"

ORDER_STATUS_UPDATE = "orderStatusUpdate"
RIDER_ASSIGNED = "riderAssigned"
NEW_ORDER_AVAILABLE = "newOrderAvailable"
WALLET_UPDATED = "wallet_updated"
NEW_ORDER = "newOrder"
RIDER_LOCATION_UPDATE = "riderLocationUpdate"

MAX_QUEUE_SIZE = 100


def order_channel(order_id) -> str:
    return f"order-{order_id}"


def restaurant_channel(restaurant_id) -> str:
    return f"restaurant-{restaurant_id}"


def rider_channel(rider_id) -> str:
    return f"rider-{rider_id}"


def user_channel(user_id) -> str:
    return f"user-{user_id}"


def order_channels(order: dict) -> List[str]:
    """Channels interested in an order: the order itself, its restaurant and
    customer, and its rider (or every rider while nobody holds it)."""
    channels = [
        order_channel(order["_id"]),
        restaurant_channel(order["restaurant_id"]),
        user_channel(order["customer_id"]),
    ]
    if order.get("rider_id"):
        channels.append(rider_channel(order["rider_id"]))
    else:
        channels.append(RIDERS_CHANNEL)
    return channels


def order_payload(order: dict) -> Dict[str, Any]:
    return {
        "orderId": str(order["_id"]),
        "orderNumber": order.get("order_number"),
        "status": order.get("status"),
        "restaurantId": order.get("restaurant_id"),
        "riderId": order.get("rider_id"),
        "totalPrice": order.get("total"),
        "updatedAt": order.get("updated_at"),
    }


def _put(queue: asyncio.Queue, message: Dict[str, Any]) -> None:
    # runs on the subscriber's loop; the queue may have filled since publish checked it
    try:
        queue.put_nowait(message)
    except asyncio.QueueFull:
        logger.warning("Dropped %s on %s: subscriber queue is full", message.get("event"), message.get("channel"))


class EventRelay:
    def __init__(self, max_queue_size: int = MAX_QUEUE_SIZE):
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[str, List[tuple]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, channels: Iterable[str]) -> asyncio.Queue:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        with self._lock:
            for channel in channels:
                self._subscribers[channel].append((loop, queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            for channel in list(self._subscribers):
                remaining = [s for s in self._subscribers[channel] if s[1] is not queue]
                if remaining:
                    self._subscribers[channel] = remaining
                else:
                    del self._subscribers[channel]

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, []))

    def publish(self, channel: str, event: str, data: Dict[str, Any]) -> int:
        """Hand the event to every current subscriber of `channel`.

        Returns how many subscribers it was handed to.
        """
        message = jsonable_encoder(OrderEvent(channel=channel, event=event, data=data, ts=now_utc()))
        with self._lock:
            targets = list(self._subscribers.get(channel, []))
        delivered = 0
        for loop, queue in targets:
            if queue.full():
                logger.warning("Dropped %s on %s: subscriber queue is full", event, channel)
                continue
            try:
                if loop is not None and loop.is_running():
                    loop.call_soon_threadsafe(_put, queue, message)
                else:
                    queue.put_nowait(message)
                delivered += 1
            except (asyncio.QueueFull, RuntimeError) as exc:
                logger.warning("Dropped %s on %s: %s", event, channel, exc)
        return delivered

    def fan_out(self, channels: Iterable[str], event: str, data: Dict[str, Any]) -> int:
        return sum(self.publish(channel, event, data) for channel in channels)

    # Helpers used by the order workflow

    def order_updated(self, order: dict, event: str = ORDER_STATUS_UPDATE,
                      extra: Optional[Dict[str, Any]] = None) -> int:
        data = order_payload(order)
        if extra:
            data.update(extra)
        return self.fan_out(order_channels(order), event, data)

    def wallet_updated(self, entry: dict) -> int:
        channel = {
            "rider": rider_channel,
            "restaurant": restaurant_channel,
            "customer": user_channel,
        }[entry["entity_type"]](entry["entity_id"])
        return self.publish(channel, WALLET_UPDATED, {
            "entityType": entry["entity_type"],
            "entityId": entry["entity_id"],
            "type": entry["event_type"],
            "amount": entry["amount"],
            "direction": entry["direction"],
            "orderId": entry.get("order_id"),
            "balanceAfter": entry.get("balance_after"),
        })


relay = EventRelay()


def get_relay() -> EventRelay:
    return relay
