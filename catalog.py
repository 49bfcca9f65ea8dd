"""Read-only lookups over the catalog and category collections."""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from pymongo.database import Database

from database import to_object_id


@dataclass
class ProductInfo:
    id: str
    name: str
    available: bool
    product_type: str = "standard"
    category_id: Optional[str] = None
    size_options: List[dict] = field(default_factory=list)

    def has_size(self, size_name: str) -> bool:
        wanted = (size_name or "").strip().lower()
        return any((s.get("name") or "").strip().lower() == wanted for s in self.size_options)


def _product_from_doc(doc: dict) -> ProductInfo:
    return ProductInfo(
        id=str(doc["_id"]),
        name=doc.get("name", ""),
        available=bool(doc.get("available", True)),
        product_type=doc.get("product_type", "standard"),
        category_id=str(doc["category_id"]) if doc.get("category_id") else None,
        size_options=[
            {"name": sp.get("size_name"), "price": sp.get("price", 0)}
            for sp in doc.get("sizes_prices") or []
        ],
    )


class CatalogLookup:
    def __init__(self, db: Database):
        self.db = db

    def find_product(self, tenant_id: str, product_id: str) -> Optional[ProductInfo]:
        oid = to_object_id(product_id)
        if oid is None:
            return None
        doc = self.db["catalog"].find_one({"_id": oid, "tenant_id": tenant_id})
        return _product_from_doc(doc) if doc else None

    def products_by_ids(self, tenant_id: str, product_ids: Iterable[str]) -> Dict[str, ProductInfo]:
        oids = [oid for oid in (to_object_id(p) for p in set(product_ids)) if oid is not None]
        if not oids:
            return {}
        docs = self.db["catalog"].find({"_id": {"$in": oids}, "tenant_id": tenant_id})
        return {str(d["_id"]): _product_from_doc(d) for d in docs}

    def categories_by_ids(self, tenant_id: str, category_ids: Iterable[str]) -> Dict[str, str]:
        """Category id -> name."""
        oids = [oid for oid in (to_object_id(c) for c in set(category_ids)) if oid is not None]
        if not oids:
            return {}
        docs = self.db["category"].find({"_id": {"$in": oids}, "tenant_id": tenant_id}, {"name": 1})
        return {str(d["_id"]): d.get("name", "") for d in docs}

    def count_available(self, tenant_id: str) -> int:
        return self.db["catalog"].count_documents({"tenant_id": tenant_id, "available": True})
