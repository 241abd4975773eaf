import logging
import math
import re
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from pymongo.database import Database

import inventory
from catalog import lookup_category, public_product, resolved_unit_price
from database import create_document, find_by_id, get_db
from errors import BusinessRuleError, DuplicateError, InvalidInputError
from routers import ok
from schemas import DeactivationReason, MovementType, Product, Review, StockMovement
from security import Capability, RequestContext, get_current_user, require

log = logging.getLogger("shop.products")

router = APIRouter(prefix="/products", tags=["products"])

SORTS = {
    "price_asc": ("price", 1),
    "price_desc": ("price", -1),
    "rating": ("rating", -1),
    "newest": ("created_at", -1),
}


class ProductIn(BaseModel):
    name: str
    description: str
    price: float = Field(..., ge=0)
    promo_price: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0, le=100)
    images: List[str] = Field(..., min_length=1)
    stock: int = Field(..., ge=0)
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    category_id: str

    @field_validator("name", "description")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    promo_price: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0, le=100)
    images: Optional[List[str]] = None
    stock: Optional[int] = Field(None, ge=0)
    category_id: Optional[str] = None
    is_active: Optional[bool] = None


class ReviewIn(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str

    @field_validator("comment")
    @classmethod
    def comment_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Comment is required")
        return v.strip()


class RestockIn(BaseModel):
    quantity: int = Field(..., ge=1)
    reference: Optional[str] = None
    comment: Optional[str] = None


class AdjustStockIn(BaseModel):
    stock: int = Field(..., ge=0)
    reason: Optional[str] = None


class StockSettingsIn(BaseModel):
    low_stock_threshold: int = Field(..., ge=0)


class ReserveIn(BaseModel):
    quantity: int = Field(1, ge=1)


def product_out(db: Database, product: dict, with_price: bool = False) -> dict:
    out = public_product(product)
    out["category"] = lookup_category(db, product.get("category_id"))
    if with_price:
        out["current_price"] = resolved_unit_price(db, product)
    return out


# Listing and search

@router.get("")
def list_products(category: Optional[str] = None, min_price: Optional[float] = None,
                  max_price: Optional[float] = None, in_stock: bool = False, on_sale: bool = False,
                  sort: Optional[str] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                  db: Database = Depends(get_db)):
    filt = {"is_active": True}
    if category:
        filt["category_id"] = category
    price_cond = {}
    if min_price is not None:
        price_cond["$gte"] = min_price
    if max_price is not None:
        price_cond["$lte"] = max_price
    if price_cond:
        filt["price"] = price_cond
    if in_stock:
        filt["stock"] = {"$gt": 0}
    if on_sale:
        filt["$or"] = [{"discount": {"$gt": 0}}, {"promo_price": {"$ne": None}}]
    if sort and sort not in SORTS:
        raise InvalidInputError(f"Unknown sort '{sort}'")
    field, direction = SORTS.get(sort or "newest")

    total = db["product"].count_documents(filt)
    cursor = db["product"].find(filt).sort(field, direction).skip((page - 1) * limit).limit(limit)
    items = [product_out(db, p) for p in cursor]
    return ok({"items": items, "total": total, "page": page, "pages": math.ceil(total / limit)})


@router.get("/search")
def search_products(q: str = "", limit: int = Query(10, ge=1, le=100), db: Database = Depends(get_db)):
    if not q.strip():
        raise InvalidInputError("A search term is required")
    pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
    cursor = db["product"].find({
        "is_active": True,
        "$or": [{"name": pattern}, {"description": pattern}],
    }).limit(limit)
    return ok([product_out(db, p) for p in cursor])


@router.get("/low-stock")
def low_stock(_: RequestContext = Depends(require(Capability.manage_catalog)), db: Database = Depends(get_db)):
    items = [product_out(db, p) for p in db["product"].find().sort("stock", 1) if inventory.is_low_stock(p)]
    return ok(items)


@router.get("/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return ok(product_out(db, find_by_id(db, "product", product_id, "Product"), with_price=True))


# Admin catalog management

@router.post("", status_code=201)
def create_product(payload: ProductIn, ctx: RequestContext = Depends(require(Capability.manage_catalog)),
                   db: Database = Depends(get_db)):
    find_by_id(db, "category", payload.category_id, "Category")
    data = payload.model_dump(exclude_none=True)
    product = Product(**data)
    doc = product.model_dump()
    if product.stock > 0:
        doc["stock_movements"] = [StockMovement(
            type=MovementType.entry, quantity=product.stock, previous_stock=0, new_stock=product.stock,
            reference="initial stock", user_id=ctx.user_id,
        ).model_dump()]
    else:
        doc["is_active"] = False
        doc["deactivation_reason"] = DeactivationReason.out_of_stock.value
    pid = create_document(db, "product", doc)
    log.info("Product %s created by %s", pid, ctx.user_id)
    return ok(product_out(db, find_by_id(db, "product", pid, "Product")), "Product created")


@router.put("/{product_id}")
def update_product(product_id: str, payload: ProductUpdate,
                   ctx: RequestContext = Depends(require(Capability.manage_catalog)),
                   db: Database = Depends(get_db)):
    product = find_by_id(db, "product", product_id, "Product")
    update = payload.model_dump(exclude_unset=True)
    new_stock = update.pop("stock", None)
    if update.get("category_id"):
        find_by_id(db, "category", update["category_id"], "Category")
    for key in ("name", "description", "price", "images", "category_id", "is_active"):
        if key in update and update[key] is None:
            update.pop(key)

    if "is_active" in update:
        stock_after = new_stock if new_stock is not None else product.get("stock", 0)
        if update["is_active"]:
            if stock_after == 0:
                raise BusinessRuleError("Cannot activate a product with no stock")
            update["deactivation_reason"] = None
        else:
            update["deactivation_reason"] = DeactivationReason.admin.value

    update["updated_at"] = datetime.utcnow()
    db["product"].update_one({"_id": product["_id"]}, {"$set": update})
    product = find_by_id(db, "product", product_id, "Product")
    if new_stock is not None and new_stock != product.get("stock", 0):
        product = inventory.adjust_stock(db, product, new_stock, reference="product update",
                                         user_id=ctx.user_id)
    return ok(product_out(db, product))


# Reviews

@router.post("/{product_id}/reviews", status_code=201)
def add_review(product_id: str, payload: ReviewIn, ctx: RequestContext = Depends(get_current_user),
               db: Database = Depends(get_db)):
    product = find_by_id(db, "product", product_id, "Product")
    reviews = product.get("reviews", [])
    if any(r.get("user_id") == ctx.user_id for r in reviews):
        raise DuplicateError("You have already reviewed this product")
    review = Review(user_id=ctx.user_id, name=ctx.user.get("name", ""), rating=payload.rating,
                    comment=payload.comment).model_dump()
    ratings = [r["rating"] for r in reviews] + [review["rating"]]
    db["product"].update_one({"_id": product["_id"]}, {
        "$push": {"reviews": review},
        "$set": {"rating": round(sum(ratings) / len(ratings), 2), "rating_count": len(ratings)},
    })
    return ok(product_out(db, find_by_id(db, "product", product_id, "Product")), "Review added")


# Stock

@router.post("/{product_id}/restock")
def restock_product(product_id: str, payload: RestockIn,
                    ctx: RequestContext = Depends(require(Capability.manage_catalog)),
                    db: Database = Depends(get_db)):
    product = find_by_id(db, "product", product_id, "Product")
    product = inventory.restock(db, product, payload.quantity, reference=payload.reference,
                                comment=payload.comment, user_id=ctx.user_id)
    return ok(product_out(db, product), "Product restocked")


@router.put("/{product_id}/adjust-stock")
def adjust_stock(product_id: str, payload: AdjustStockIn,
                 ctx: RequestContext = Depends(require(Capability.manage_catalog)),
                 db: Database = Depends(get_db)):
    product = find_by_id(db, "product", product_id, "Product")
    product = inventory.adjust_stock(db, product, payload.stock, reference="manual adjustment",
                                     comment=payload.reason, user_id=ctx.user_id)
    return ok(product_out(db, product), "Stock adjusted")


@router.put("/{product_id}/stock-settings")
def stock_settings(product_id: str, payload: StockSettingsIn,
                   _: RequestContext = Depends(require(Capability.manage_catalog)),
                   db: Database = Depends(get_db)):
    product = find_by_id(db, "product", product_id, "Product")
    db["product"].update_one({"_id": product["_id"]}, {"$set": {
        "low_stock_threshold": payload.low_stock_threshold,
        "updated_at": datetime.utcnow(),
    }})
    return ok(product_out(db, find_by_id(db, "product", product_id, "Product")))


@router.get("/{product_id}/stock-history")
def stock_history(product_id: str, _: RequestContext = Depends(require(Capability.manage_catalog)),
                  db: Database = Depends(get_db)):
    product = find_by_id(db, "product", product_id, "Product")
    movements = sorted(product.get("stock_movements", []), key=lambda m: m["created_at"], reverse=True)
    return ok({
        "product_id": product_id,
        "stock": product.get("stock", 0),
        "low_stock_threshold": product.get("low_stock_threshold", 0),
        "is_low_stock": inventory.is_low_stock(product),
        "movements": movements,
    })


@router.post("/{product_id}/reserve")
def reserve_stock(product_id: str, payload: ReserveIn, ctx: RequestContext = Depends(get_current_user),
                  db: Database = Depends(get_db)):
    product = find_by_id(db, "product", product_id, "Product")
    product = inventory.take_stock(db, product, payload.quantity, MovementType.reservation,
                                   reference=f"reservation by {ctx.user_id}", user_id=ctx.user_id)
    return ok({"product_id": product_id, "reserved": payload.quantity, "stock": product["stock"]},
              "Stock reserved")
