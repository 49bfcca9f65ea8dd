"""Per tenant, per day order numbers: ORD-YYYYMMDD-NNN.

The sequence lives in a counter document keyed by tenant and day and is
bumped with a single find_one_and_update($inc). Numbers handed out are
never given back, so an aborted creation leaves a gap but never a duplicate.
"""

import logging
import re
import threading
from datetime import date
from typing import Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from errors import OrderNumberConflictError

logger = logging.getLogger(__name__)

ORDER_NUMBER_RE = re.compile(r"^ORD-(\d{8})-(\d+)$")
COUNTER_COLLECTION = "ordercounter"
MAX_UPSERT_ATTEMPTS = 3
LOCK_STRIPES = 64


def day_key(day: date) -> str:
    return day.strftime("%Y%m%d")


def format_order_number(day: date, sequence: int) -> str:
    return f"ORD-{day_key(day)}-{sequence:03d}"


def parse_sequence(order_number: str) -> Optional[int]:
    """Trailing sequence of an order number, None when it is not one of ours."""
    match = ORDER_NUMBER_RE.match(order_number or "")
    if not match:
        return None
    return int(match.group(2))


class OrderNumberAllocator:
    """Hands out order numbers from the ordercounter collection.

    The $inc is atomic in MongoDB, which keeps separate API processes apart.
    Within one process, allocations for the same tenant/day additionally go
    through a lock so worker threads queue instead of racing on the upsert.
    """

    # fixed stripe count; unrelated keys may share a lock
    _locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def __init__(self, db: Database):
        self.db = db
        self.counters = db[COUNTER_COLLECTION]

    @classmethod
    def _lock_for(cls, key: str) -> threading.Lock:
        return cls._locks[hash(key) % LOCK_STRIPES]

    def allocate(self, tenant_id: str, day: date) -> str:
        key = f"{tenant_id}:{day_key(day)}"
        with self._lock_for(key):
            for attempt in range(1, MAX_UPSERT_ATTEMPTS + 1):
                try:
                    counter = self.counters.find_one_and_update(
                        {"_id": key},
                        {"$inc": {"seq": 1}, "$setOnInsert": {"tenant_id": tenant_id, "day": day_key(day)}},
                        upsert=True,
                        return_document=ReturnDocument.AFTER,
                    )
                    break
                except DuplicateKeyError:
                    # two first-of-the-day upserts met; the loser just increments the winner's doc
                    logger.debug("Counter upsert race on %s (attempt %d)", key, attempt)
            else:
                raise OrderNumberConflictError(tenant_id, MAX_UPSERT_ATTEMPTS)
        return format_order_number(day, counter["seq"])

    def resync(self, tenant_id: str, day: date) -> int:
        """Raise the counter to the greatest order number already stored for the day.

        Orders numbered before the counter existed (or imported) would
        otherwise collide with freshly allocated numbers.
        """
        prefix = f"ORD-{day_key(day)}-"
        # compared numerically: past 999 the zero padding no longer sorts
        cursor = self.db["order"].find(
            {"tenant_id": tenant_id, "order_number": {"$regex": f"^{re.escape(prefix)}"}},
            {"order_number": 1},
        )
        highest = max((parse_sequence(doc["order_number"]) or 0 for doc in cursor), default=0)
        key = f"{tenant_id}:{day_key(day)}"
        self.counters.update_one(
            {"_id": key},
            {"$max": {"seq": highest}, "$setOnInsert": {"tenant_id": tenant_id, "day": day_key(day)}},
            upsert=True,
        )
        logger.info("Order counter %s resynced to %d", key, highest)
        return highest
