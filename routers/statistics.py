"""Read-only sales figures for the admin dashboard."""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pymongo.database import Database

import pricing
from catalog import lookup_category, lookup_products
from database import get_db
from routers import ok
from schemas import OrderStatus
from security import Capability, require

router = APIRouter(prefix="/statistics", tags=["statistics"],
                   dependencies=[Depends(require(Capability.view_statistics))])

SOLD = [OrderStatus.shipped.value, OrderStatus.delivered.value]


def _sales_per_product(db: Database, limit: Optional[int] = None) -> list:
    pipeline = [
        {"$match": {"status": {"$in": SOLD}}},
        {"$unwind": "$items"},
        {"$group": {
            "_id": "$items.product_id",
            "name": {"$first": "$items.name"},
            "quantity": {"$sum": "$items.quantity"},
            "revenue": {"$sum": "$items.line_total"},
        }},
        {"$sort": {"quantity": -1}},
    ]
    if limit:
        pipeline.append({"$limit": limit})
    return list(db["order"].aggregate(pipeline))


@router.get("/general")
def general(db: Database = Depends(get_db)):
    orders = db["order"]
    total = orders.count_documents({})
    delivered = orders.count_documents({"status": OrderStatus.delivered.value})
    revenue = sum(o["total"] for o in orders.find({"status": OrderStatus.delivered.value}, {"total": 1}))
    by_status = {s.value: orders.count_documents({"status": s.value}) for s in OrderStatus}
    return ok({
        "total_orders": total,
        "delivered_orders": delivered,
        "revenue": pricing.round_money(revenue),
        "unique_customers": len(orders.distinct("user_id")),
        "orders_by_status": by_status,
        "conversion_rate": round(delivered / total * 100, 2) if total else 0,
    })


@router.get("/best-sellers")
def best_sellers(limit: int = Query(5, ge=1, le=50), db: Database = Depends(get_db)):
    rows = _sales_per_product(db, limit)
    return ok([{
        "product_id": row["_id"],
        "name": row["name"],
        "quantity": row["quantity"],
        "revenue": pricing.round_money(row["revenue"]),
    } for row in rows])


@router.get("/sales-by-category")
def sales_by_category(db: Database = Depends(get_db)):
    rows = _sales_per_product(db)
    products = lookup_products(db, [row["_id"] for row in rows])
    buckets = {}
    for row in rows:
        product = products.get(row["_id"])
        category_id = product.get("category_id") if product else None
        bucket = buckets.setdefault(category_id, {"quantity": 0, "revenue": 0.0})
        bucket["quantity"] += row["quantity"]
        bucket["revenue"] += row["revenue"]

    grand_total = sum(b["revenue"] for b in buckets.values())
    result = []
    for category_id, bucket in buckets.items():
        category = lookup_category(db, category_id)
        result.append({
            "category_id": category_id,
            "name": category["name"] if category else "Uncategorised",
            "quantity": bucket["quantity"],
            "revenue": pricing.round_money(bucket["revenue"]),
            "share": round(bucket["revenue"] / grand_total * 100, 2) if grand_total else 0,
        })
    result.sort(key=lambda r: r["revenue"], reverse=True)
    return ok(result)


@router.get("/monthly-sales")
def monthly_sales(year: Optional[int] = Query(None, ge=2000, le=2100), db: Database = Depends(get_db)):
    year = year or datetime.utcnow().year
    months = [{"month": m, "orders": 0, "revenue": 0.0} for m in range(1, 13)]
    cursor = db["order"].find({
        "created_at": {"$gte": datetime(year, 1, 1), "$lt": datetime(year + 1, 1, 1)},
        "status": {"$ne": OrderStatus.cancelled.value},
    }, {"created_at": 1, "total": 1})
    for order in cursor:
        bucket = months[order["created_at"].month - 1]
        bucket["orders"] += 1
        bucket["revenue"] += order["total"]
    for bucket in months:
        bucket["revenue"] = pricing.round_money(bucket["revenue"])
    return ok({"year": year, "months": months})
