"""Read-time lookups across collections.

Documents keep references as id strings; these helpers resolve them when a
response or a price calculation needs the referenced data.
"""
import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo.database import Database

import pricing
from database import serialize


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower())
    return slug.strip("-")


def lookup_category(database: Database, category_id: Optional[str]) -> Optional[dict]:
    if not category_id or not ObjectId.is_valid(category_id):
        return None
    cat = database["category"].find_one({"_id": ObjectId(category_id)})
    if not cat:
        return None
    return {"id": str(cat["_id"]), "name": cat["name"], "slug": cat["slug"]}


def lookup_products(database: Database, product_ids: Iterable[str]) -> Dict[str, dict]:
    oids = [ObjectId(pid) for pid in set(product_ids) if ObjectId.is_valid(pid)]
    if not oids:
        return {}
    return {str(p["_id"]): p for p in database["product"].find({"_id": {"$in": oids}})}


def lookup_user(database: Database, user_id: Optional[str]) -> Optional[dict]:
    if not user_id or not ObjectId.is_valid(user_id):
        return None
    user = database["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        return None
    return {"id": str(user["_id"]), "name": user.get("name"), "email": user.get("email"),
            "phone": user.get("phone")}


def active_promotions(database: Database, product: dict, when: Optional[datetime] = None) -> List[dict]:
    """Promotions running at ``when`` for the product or its category."""
    when = when or datetime.utcnow()
    targets = [{"target_type": "product", "target_id": str(product["_id"])}]
    if product.get("category_id"):
        targets.append({"target_type": "category", "target_id": product["category_id"]})
    return list(database["promotion"].find({
        "is_active": True,
        "starts_at": {"$lte": when},
        "ends_at": {"$gte": when},
        "$or": targets,
    }))


def resolved_unit_price(database: Database, product: dict, when: Optional[datetime] = None) -> float:
    return pricing.unit_price(product, active_promotions(database, product, when))


def product_summary(product: dict) -> dict:
    return {
        "id": str(product["_id"]),
        "name": product.get("name"),
        "price": product.get("price"),
        "promo_price": product.get("promo_price"),
        "images": product.get("images", []),
        "stock": product.get("stock", 0),
    }


def public_product(product: dict) -> dict:
    """Product as shown to shoppers: no stock audit trail."""
    return serialize(product, exclude=("stock_movements",))
