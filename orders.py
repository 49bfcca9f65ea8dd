"""
Order core: validation, creation, status lifecycle, rating and notes.

Every read and write is scoped by tenant_id. Status changes go through a
compare-and-swap on the status the caller observed, so two admins racing on
the same order cannot both win from the same starting point.
"""

import logging
import math
import os
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from catalog import CatalogLookup, ProductInfo
from database import store_errors, to_object_id, to_utc_naive, utcnow
from errors import (
    InvalidTransitionError,
    OrderNotFoundError,
    OrderNumberConflictError,
    StatusConflictError,
    ValidationError,
)
from notifications import Notifier, new_order_message, send_best_effort, status_change_message
from order_numbers import OrderNumberAllocator
from pricing import price_order
from schemas import ORDER_STATUSES, PAYMENT_METHODS, OrderCreate, OrderItem

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, tuple] = {
    'pending': ('confirmed', 'cancelled'),
    'confirmed': ('preparing', 'cancelled'),
    'preparing': ('delivering', 'completed', 'cancelled'),
    'delivering': ('completed', 'cancelled'),
    'completed': (),
    'cancelled': (),
}

# option names the chat-bot uses for pizza sizes when no explicit size is sent
SIZE_OPTION_HINTS = ('tamanho', 'tam', 'size')

DEFAULT_NUMBER_RETRIES = int(os.getenv("ORDER_NUMBER_MAX_RETRIES", 5))
MAX_PAGE_SIZE = 100


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, ())


def render_notes(note_log: List[Dict[str, Any]]) -> str:
    return "\n".join(
        f"[{entry['at'].isoformat()}] {entry['author']}: {entry['text']}" for entry in note_log or []
    )


def serialize_order(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(doc)
    out["id"] = str(out.pop("_id"))
    out["notes"] = render_notes(out.get("note_log", []))
    return out


def _selected_size(item: OrderItem) -> Optional[str]:
    if item.size:
        return item.size
    for opt in item.options:
        name = (opt.name or "").lower()
        if any(hint in name for hint in SIZE_OPTION_HINTS):
            return opt.name
    return None


class OrderService:
    def __init__(self, db: Database, notifier: Optional[Notifier] = None,
                 catalog: Optional[CatalogLookup] = None,
                 clock: Callable[[], datetime] = utcnow,
                 number_retries: int = DEFAULT_NUMBER_RETRIES):
        self.db = db
        self.orders = db["order"]
        self.notifier = notifier
        self.catalog = catalog or CatalogLookup(db)
        self.numbers = OrderNumberAllocator(db)
        self.clock = clock
        self.number_retries = number_retries

    # ---------------------- Creation ----------------------
    def validate(self, tenant_id: str, payload: OrderCreate) -> None:
        """Raise ValidationError for the first failing precondition."""
        if not payload.items:
            raise ValidationError("Order must contain at least one item", fields=["items"])

        customer = payload.customer
        missing = [f"customer.{name}" for name in ("name", "phone")
                   if not (getattr(customer, name) or "").strip()]
        if missing:
            raise ValidationError("Customer data incomplete", fields=missing)

        for index, item in enumerate(payload.items):
            if not item.product_id:
                continue
            product = self.catalog.find_product(tenant_id, item.product_id)
            if product is None or not product.available:
                raise ValidationError(
                    f"Product {item.name} not found or unavailable",
                    fields=[f"items.{index}.product_id"],
                )
            self._check_size(product, item, index)

        if payload.payment_method not in PAYMENT_METHODS:
            raise ValidationError(
                f"Payment method must be one of: {', '.join(PAYMENT_METHODS)}",
                fields=["payment_method"],
            )
        if payload.change_for is not None and payload.payment_method != 'cash':
            raise ValidationError("change_for is only allowed for cash payments", fields=["change_for"])

    def _check_size(self, product: ProductInfo, item: OrderItem, index: int) -> None:
        size = _selected_size(item)
        if size is None:
            return
        # option-name guessing only applies to pizzas; an explicit size is always checked
        if item.size is None and product.product_type != 'pizza':
            return
        if not product.has_size(size):
            field = "size" if item.size else "options"
            raise ValidationError(f"Invalid size for {product.name}: {size}", fields=[f"items.{index}.{field}"])

    @store_errors
    def create_order(self, tenant: Dict[str, Any], payload: OrderCreate) -> Dict[str, Any]:
        tenant_id = str(tenant["_id"])
        self.validate(tenant_id, payload)
        pricing = price_order(payload.items, payload.delivery_fee)

        now = self.clock()
        note_log = []
        if payload.notes and payload.notes.strip():
            note_log.append({"at": now, "author": payload.customer.name, "text": payload.notes.strip()})

        for attempt in range(1, self.number_retries + 1):
            doc = {
                "tenant_id": tenant_id,
                "order_number": self.numbers.allocate(tenant_id, now.date()),
                "status": "pending",
                "customer": payload.customer.model_dump(),
                "items": [item.model_dump() for item in payload.items],
                "payment_method": payload.payment_method,
                "change_for": payload.change_for,
                "delivery_fee": payload.delivery_fee or 0,
                "subtotal": pricing.subtotal,
                "total": pricing.total,
                "rating": None,
                "note_log": note_log,
                "created_at": now,
                "updated_at": now,
            }
            try:
                self.orders.insert_one(doc)
                break
            except DuplicateKeyError:
                logger.warning("Order number %s already taken for tenant %s (attempt %d)",
                               doc["order_number"], tenant_id, attempt)
                self.numbers.resync(tenant_id, now.date())
        else:
            raise OrderNumberConflictError(tenant_id, self.number_retries)

        logger.info("Order %s created for tenant %s (total %.2f)", doc["order_number"], tenant_id, doc["total"])
        owner_phone = (tenant.get("contact") or {}).get("phone")
        self._notify(tenant_id, owner_phone, new_order_message(doc),
                     {"type": "new_order", "order_number": doc["order_number"], "status": "pending"})
        return serialize_order(doc)

    # ---------------------- Reads ----------------------
    def _load_order(self, tenant_id: str, order_id: str) -> Dict[str, Any]:
        oid = to_object_id(order_id)
        doc = self.orders.find_one({"_id": oid, "tenant_id": tenant_id}) if oid else None
        if doc is None:
            raise OrderNotFoundError(order_id)
        return doc

    @store_errors
    def get_order(self, tenant_id: str, order_id: str) -> Dict[str, Any]:
        return serialize_order(self._load_order(tenant_id, order_id))

    @store_errors
    def get_order_status(self, tenant_id: str, order_number: str) -> Dict[str, Any]:
        doc = self.orders.find_one(
            {"tenant_id": tenant_id, "order_number": order_number},
            {"order_number": 1, "status": 1, "customer.name": 1, "created_at": 1, "updated_at": 1},
        )
        if doc is None:
            raise OrderNotFoundError(order_number)
        return {
            "order_number": doc["order_number"],
            "status": doc["status"],
            "customer_name": doc["customer"]["name"],
            "created_at": doc.get("created_at"),
            "updated_at": doc.get("updated_at"),
        }

    @store_errors
    def list_orders(self, tenant_id: str, status: Optional[str] = None, phone: Optional[str] = None,
                    date_from: Optional[datetime] = None, date_to: Optional[datetime] = None,
                    page: int = 1, limit: int = 10) -> Dict[str, Any]:
        if status is not None and status not in ORDER_STATUSES:
            raise ValidationError(f"Unknown status '{status}'", fields=["status"])
        page = max(1, page)
        limit = min(max(1, limit), MAX_PAGE_SIZE)

        filt: Dict[str, Any] = {"tenant_id": tenant_id}
        if status:
            filt["status"] = status
        if phone:
            filt["customer.phone"] = phone
        if date_from or date_to:
            filt["created_at"] = {}
            if date_from:
                filt["created_at"]["$gte"] = to_utc_naive(date_from)
            if date_to:
                filt["created_at"]["$lte"] = to_utc_naive(date_to)

        cursor = (self.orders.find(filt)
                  .sort([("created_at", DESCENDING), ("order_number", DESCENDING)])
                  .skip((page - 1) * limit)
                  .limit(limit))
        orders = [serialize_order(doc) for doc in cursor]
        total = self.orders.count_documents(filt)
        return {
            "orders": orders,
            "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
        }

    # ---------------------- Lifecycle ----------------------
    @store_errors
    def update_status(self, tenant_id: str, order_id: str, target: str) -> Dict[str, Any]:
        if target not in ORDER_STATUSES:
            raise ValidationError(f"Unknown status '{target}'", fields=["status"])
        order = self._load_order(tenant_id, order_id)
        current = order["status"]
        if not can_transition(current, target):
            raise InvalidTransitionError(current, target)

        now = self.clock()
        result = self.orders.update_one(
            {"_id": order["_id"], "tenant_id": tenant_id, "status": current},
            {"$set": {"status": target, "updated_at": now}},
        )
        if result.matched_count == 0:
            raise StatusConflictError(order["order_number"], current)

        order.update(status=target, updated_at=now)
        logger.info("Order %s of tenant %s: %s -> %s", order["order_number"], tenant_id, current, target)
        self._notify(tenant_id, order["customer"]["phone"], status_change_message(order),
                     {"type": "status_changed", "order_number": order["order_number"], "status": target})
        return serialize_order(order)

    @store_errors
    def rate_order(self, tenant_id: str, order_number: str, rating: Any,
                   comment: Optional[str] = None) -> Dict[str, Any]:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be a number between 1 and 5", fields=["rating"])
        order = self.orders.find_one({"tenant_id": tenant_id, "order_number": order_number})
        if order is None:
            raise OrderNotFoundError(order_number)
        if order["status"] != 'completed':
            raise ValidationError("Only completed orders can be rated", fields=["status"])

        now = self.clock()
        update: Dict[str, Any] = {"$set": {"rating": rating, "updated_at": now}}
        if comment and comment.strip():
            update["$push"] = {"note_log": {"at": now, "author": order["customer"]["name"],
                                            "text": f"Customer rating: {comment.strip()}"}}
        self.orders.update_one({"_id": order["_id"], "tenant_id": tenant_id}, update)
        logger.info("Order %s of tenant %s rated %d", order_number, tenant_id, rating)
        return {"order_number": order_number, "rating": rating}

    @store_errors
    def append_note(self, tenant_id: str, order_id: str, text: Optional[str],
                    author: Optional[str] = None) -> Dict[str, Any]:
        if not text or not text.strip():
            raise ValidationError("Note must not be empty", fields=["note"])
        oid = to_object_id(order_id)
        if oid is None:
            raise OrderNotFoundError(order_id)

        now = self.clock()
        entry = {"at": now, "author": author or "staff", "text": text.strip()}
        updated = self.orders.find_one_and_update(
            {"_id": oid, "tenant_id": tenant_id},
            {"$push": {"note_log": entry}, "$set": {"updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise OrderNotFoundError(order_id)
        return {"order_number": updated["order_number"], "notes": render_notes(updated["note_log"])}

    def _notify(self, tenant_id: str, phone: Optional[str], text: str, event: Dict[str, Any]) -> None:
        if self.notifier is None:
            return
        send_best_effort(self.notifier, tenant_id, phone, text, event)
