"""
MongoDB access for the ordering backend.

Collections (lowercased schema class name, see schemas.py):
- tenant, category, catalog  -> read-only here, owned by the admin panel
- order                      -> orders, written only through orders.OrderService
- ordercounter               -> per tenant/day order-number sequences
- orderevent                 -> notification outbox
"""

import functools
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from errors import DependencyError

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
DATABASE_TIMEOUT_MS = int(os.getenv("DATABASE_TIMEOUT_MS", 5000))

client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    # every round trip is bounded by DATABASE_TIMEOUT_MS
    client = MongoClient(
        DATABASE_URL,
        serverSelectionTimeoutMS=DATABASE_TIMEOUT_MS,
        connectTimeoutMS=DATABASE_TIMEOUT_MS,
        timeoutMS=DATABASE_TIMEOUT_MS,
    )
    db = client[DATABASE_NAME]


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise DependencyError("Database not configured")
    return db


def utcnow() -> datetime:
    """Current time as naive UTC, the way MongoDB hands datetimes back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_object_id(id_str: Union[str, ObjectId]) -> Optional[ObjectId]:
    """Parse an id, returning None when it is not a valid ObjectId."""
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        return None


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id as str."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def ensure_indexes(database: Database) -> None:
    """Create the indexes the order core relies on. Safe to call repeatedly."""
    orders = database["order"]
    orders.create_index([("tenant_id", ASCENDING), ("order_number", ASCENDING)], unique=True)
    orders.create_index([("tenant_id", ASCENDING), ("status", ASCENDING)])
    orders.create_index([("tenant_id", ASCENDING), ("customer.phone", ASCENDING)])
    orders.create_index([("tenant_id", ASCENDING), ("created_at", DESCENDING)])


def store_errors(func: Callable) -> Callable:
    """Turn driver failures (unreachable server, timeouts) into DependencyError."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except PyMongoError as exc:
            logger.error("Database failure in %s: %s", func.__name__, exc)
            raise DependencyError() from exc

    return wrapper
