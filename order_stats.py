"""
Order statistics for the admin dashboard.

Everything is recomputed per request from the orders committed in the
window. Grouping runs in MongoDB as a single $facet aggregation; only the
grouped product rows are joined with the catalog here, at read time, so
renamed or deleted catalog entries are reported under their current name
or the "No category" / "custom" buckets.
"""

import calendar
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pymongo.database import Database

from catalog import CatalogLookup
from database import store_errors, to_utc_naive, utcnow
from errors import ValidationError
from schemas import ORDER_STATUSES

logger = logging.getLogger(__name__)

PERIODS = ('today', 'week', 'month', 'custom')
NO_CATEGORY = ("no-category", "No category")
CUSTOM_PRODUCT = "custom"
TOP_PRODUCTS = 20
TOP_OPTIONS = 10
TOP_CUSTOMERS = 20

_PROJECTION = {
    "order_number": 1, "status": 1, "customer": 1, "items": 1,
    "payment_method": 1, "total": 1, "created_at": 1,
}


def _months_back(moment: datetime, months: int) -> datetime:
    year, month = divmod(moment.year * 12 + moment.month - 1 - months, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def parse_bound(value: Optional[str], end: bool = False, field: Optional[str] = None) -> Optional[datetime]:
    """ISO date or datetime. A bare date used as an end bound covers the whole day."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid date: {value}", fields=[field or ("end_date" if end else "start_date")])
    if end and len(value) == 10:
        parsed = parsed.replace(hour=23, minute=59, second=59, microsecond=999000)
    return to_utc_naive(parsed)


def resolve_period(period: Optional[str] = 'today', start_date: Optional[str] = None,
                   end_date: Optional[str] = None, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Translate a named window (today, week, month, custom) into [start, end]."""
    now = now or utcnow()
    end = now
    if period == 'week':
        start = now - timedelta(days=7)
    elif period == 'month':
        start = _months_back(now, 1)
    elif period == 'custom':
        start = parse_bound(start_date) or _months_back(now, 1)
        end = parse_bound(end_date, end=True) or now
    else:
        # unknown names fall back to today, like the dashboard default
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if start > end:
        raise ValidationError("start_date must not be after end_date", fields=["start_date", "end_date"])
    return start, end


def _money(value: Optional[float]) -> float:
    return round(value or 0, 2)


def overview_pipeline(tenant_id: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
    """One $facet pass over the window; every breakdown is grouped by the store."""
    items = [{"$unwind": "$items"}]
    return [
        {"$match": {"tenant_id": tenant_id, "created_at": {"$gte": start, "$lte": end}}},
        {"$project": _PROJECTION},
        {"$sort": {"created_at": 1}},
        {"$facet": {
            "totals": [
                {"$group": {
                    "_id": None,
                    "count": {"$sum": 1},
                    "total": {"$sum": "$total"},
                    "average": {"$avg": "$total"},
                    "min": {"$min": "$total"},
                    "max": {"$max": "$total"},
                }},
            ],
            "by_status": [
                {"$group": {"_id": "$status", "count": {"$sum": 1}, "total": {"$sum": "$total"}}},
            ],
            "by_day": [
                {"$group": {
                    "_id": {"$dateToString": {"format": "%Y-%m-%d", "date": "$created_at"}},
                    "count": {"$sum": 1},
                    "total": {"$sum": "$total"},
                }},
                {"$sort": {"_id": 1}},
            ],
            "by_payment_method": [
                {"$group": {"_id": "$payment_method", "count": {"$sum": 1}, "total": {"$sum": "$total"}}},
                {"$sort": {"total": -1}},
            ],
            "products": items + [
                {"$group": {
                    "_id": {"product_id": {"$ifNull": ["$items.product_id", CUSTOM_PRODUCT]},
                            "name": "$items.name"},
                    "quantity": {"$sum": "$items.quantity"},
                    "revenue": {"$sum": {"$multiply": ["$items.quantity", "$items.unit_price"]}},
                }},
                {"$sort": {"quantity": -1, "revenue": -1}},
            ],
            "options": items + [
                {"$unwind": "$items.options"},
                {"$group": {
                    "_id": "$items.options.name",
                    "quantity": {"$sum": "$items.quantity"},
                    "revenue": {"$sum": {"$multiply": [
                        "$items.quantity", {"$ifNull": ["$items.options.price", 0]},
                    ]}},
                }},
                {"$sort": {"quantity": -1, "revenue": -1}},
                {"$limit": TOP_OPTIONS},
            ],
            "customers": [
                {"$group": {
                    "_id": "$customer.phone",
                    "name": {"$last": "$customer.name"},
                    "order_count": {"$sum": 1},
                    "total_spent": {"$sum": "$total"},
                    "last_order": {"$max": "$created_at"},
                }},
                {"$sort": {"order_count": -1, "total_spent": -1}},
                {"$limit": TOP_CUSTOMERS},
            ],
            "frequency": [
                {"$group": {"_id": "$customer.phone", "order_count": {"$sum": 1}}},
                {"$group": {"_id": "$order_count", "customer_count": {"$sum": 1}}},
                {"$sort": {"_id": 1}},
            ],
        }},
    ]


class OrderStatistics:
    def __init__(self, db: Database, catalog: Optional[CatalogLookup] = None):
        self.db = db
        self.catalog = catalog or CatalogLookup(db)

    @store_errors
    def overview(self, tenant_id: str, start: datetime, end: datetime) -> Dict[str, Any]:
        start, end = to_utc_naive(start), to_utc_naive(end)
        facets = next(iter(self.db["order"].aggregate(overview_pipeline(tenant_id, start, end))), {})

        product_rows = facets.get("products", [])
        sold_ids = {row["_id"]["product_id"] for row in product_rows} - {CUSTOM_PRODUCT}
        products = self.catalog.products_by_ids(tenant_id, sold_ids)
        categories = self.catalog.categories_by_ids(
            tenant_id, {p.category_id for p in products.values() if p.category_id}
        )
        frequency = [
            {"order_count": row["_id"], "customer_count": row["customer_count"]}
            for row in facets.get("frequency", [])
        ]
        logger.debug("Statistics for tenant %s from %s to %s", tenant_id, start, end)

        stats: Dict[str, Any] = {"period": {"start": start, "end": end}}
        stats.update(self._totals(facets.get("totals", [])))
        stats["by_status"] = self._by_status(facets.get("by_status", []))
        stats["sales_by_day"] = [
            {"date": row["_id"], "count": row["count"], "total": _money(row["total"])}
            for row in facets.get("by_day", [])
        ]
        stats["sales_by_payment_method"] = [
            {"payment_method": row["_id"], "count": row["count"], "total": _money(row["total"])}
            for row in facets.get("by_payment_method", [])
        ]
        stats["sales_by_category"] = self._by_category(product_rows, products, categories)
        stats["product_ranking"] = [
            {"product_id": row["_id"]["product_id"], "product_name": row["_id"]["name"],
             "quantity": row["quantity"], "revenue": _money(row["revenue"])}
            for row in product_rows[:TOP_PRODUCTS]
        ]
        stats["option_ranking"] = [
            {"option_name": row["_id"], "quantity": row["quantity"], "revenue": _money(row["revenue"])}
            for row in facets.get("options", [])
        ]
        stats["customer_ranking"] = [self._customer(row) for row in facets.get("customers", [])]
        stats["unique_customers"] = sum(row["customer_count"] for row in frequency)
        stats["frequency_distribution"] = frequency
        stats["product_summary"] = self._product_summary(tenant_id, sold_ids, products)
        return stats

    @staticmethod
    def _totals(rows: List[dict]) -> Dict[str, Any]:
        row = rows[0] if rows else None
        if not row or not row["count"]:
            return {"total_orders": 0, "total_sales": 0, "average_ticket": 0, "min_ticket": 0, "max_ticket": 0}
        return {
            "total_orders": row["count"],
            "total_sales": _money(row["total"]),
            "average_ticket": _money(row["average"]),
            "min_ticket": _money(row["min"]),
            "max_ticket": _money(row["max"]),
        }

    @staticmethod
    def _by_status(rows: List[dict]) -> Dict[str, Dict[str, Any]]:
        out = {status: {"count": 0, "total": 0.0} for status in ORDER_STATUSES}
        for row in rows:
            out[row["_id"]] = {"count": row["count"], "total": _money(row["total"])}
        return out

    @staticmethod
    def _by_category(product_rows, products, categories) -> List[Dict[str, Any]]:
        # product groups are few; their catalog category is resolved here
        groups: Dict[Tuple[str, str], Dict[str, float]] = defaultdict(lambda: {"count": 0, "total": 0.0})
        for row in product_rows:
            product = products.get(row["_id"]["product_id"])
            cat_id = product.category_id if product else None
            key = (cat_id, categories[cat_id]) if cat_id in categories else NO_CATEGORY
            groups[key]["count"] += row["quantity"]
            groups[key]["total"] += row["revenue"]
        rows = [
            {"category_id": cid, "category_name": name, "count": g["count"], "total": _money(g["total"])}
            for (cid, name), g in groups.items()
        ]
        return sorted(rows, key=lambda r: r["total"], reverse=True)

    @staticmethod
    def _customer(row: Dict[str, Any]) -> Dict[str, Any]:
        total_spent = _money(row["total_spent"])
        return {
            "phone": row["_id"],
            "name": row.get("name"),
            "order_count": row["order_count"],
            "total_spent": total_spent,
            "average_ticket": _money(total_spent / row["order_count"]),
            "last_order": row["last_order"],
        }

    def _product_summary(self, tenant_id: str, sold_ids, products) -> Dict[str, Any]:
        available = self.catalog.count_available(tenant_id)
        sold = sum(1 for pid in sold_ids if pid in products and products[pid].available)
        not_sold = round((available - sold) / available * 100, 2) if available else 0
        return {"total_products": available, "products_sold": sold, "not_sold_percentage": not_sold}
