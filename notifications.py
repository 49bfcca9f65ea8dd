"""
Outbound notifications for order events.

Messages are not sent from here directly: each one is written to the
orderevent outbox, which the messaging gateway drains and forwards over
WhatsApp, and pushed to any open dashboard stream of the tenant.
Delivery is best effort. A failed notification never undoes the order
change that triggered it.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Protocol, Tuple

from pymongo.database import Database

from database import create_document
from schemas import OrderEvent

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    'pending': 'received and waiting for confirmation',
    'confirmed': 'confirmed',
    'preparing': 'being prepared',
    'delivering': 'out for delivery',
    'completed': 'delivered. Enjoy your meal!',
    'cancelled': 'cancelled',
}


class Notifier(Protocol):
    def notify(self, tenant_id: str, phone: str, text: str, event: Dict[str, Any]) -> bool:
        ...


# In-memory broadcaster for SSE per tenant (real-time only, not persisted)
tenant_streams: Dict[str, List[Tuple[asyncio.AbstractEventLoop, asyncio.Queue]]] = defaultdict(list)


def broadcast_event(tenant_id: str, event: Dict[str, Any]) -> None:
    for loop, queue in list(tenant_streams.get(tenant_id, [])):
        if loop.is_closed():
            continue
        # producers run in worker threads, the queue belongs to the stream's event loop
        loop.call_soon_threadsafe(_offer, queue, event)


def _offer(queue: asyncio.Queue, event: Dict[str, Any]) -> None:
    try:
        queue.put_nowait(event)
    except asyncio.QueueFull:
        logger.warning("Dropping order event for a slow dashboard stream")


class OutboxNotifier:
    """Default notifier: orderevent outbox + live dashboard broadcast."""

    def __init__(self, db: Database):
        self.db = db

    def notify(self, tenant_id: str, phone: str, text: str, event: Dict[str, Any]) -> bool:
        record = OrderEvent(tenant_id=tenant_id, phone=phone, message=text, **event)
        create_document(self.db, "orderevent", record)
        broadcast_event(tenant_id, record.model_dump())
        return True


def new_order_message(order: Dict[str, Any]) -> str:
    lines = [
        f"New order {order['order_number']}",
        f"Customer: {order['customer']['name']} ({order['customer']['phone']})",
    ]
    for item in order["items"]:
        lines.append(f"- {item['quantity']}x {item['name']}")
    lines.append(f"Total: {order['total']:.2f} ({order['payment_method']})")
    return "\n".join(lines)


def status_change_message(order: Dict[str, Any]) -> str:
    label = STATUS_LABELS.get(order["status"], order["status"])
    return f"Hi {order['customer']['name']}! Your order {order['order_number']} is {label}"


def send_best_effort(notifier: Notifier, tenant_id: str, phone: str, text: str,
                     event: Dict[str, Any]) -> bool:
    """Call the notifier, logging instead of raising when delivery fails."""
    if not phone:
        logger.warning("No destination phone for %s notification of tenant %s", event.get("type"), tenant_id)
        return False
    try:
        delivered = notifier.notify(tenant_id, phone, text, event)
    except Exception:
        logger.exception(
            "Notification failed for tenant %s order %s", tenant_id, event.get("order_number")
        )
        return False
    if not delivered:
        logger.warning("Notification not delivered for tenant %s order %s", tenant_id, event.get("order_number"))
    return bool(delivered)
