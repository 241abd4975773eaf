import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo.database import Database

import pricing
from catalog import active_promotions
from database import create_document, find_by_id, get_db, serialize
from errors import CouponError, DuplicateError, InvalidInputError
from rate_limit import rate_limit
from routers import ok
from schemas import Promotion, PromotionDiscount, TargetType, UtcDatetime
from security import Capability, RequestContext, require

log = logging.getLogger("shop.promotions")

router = APIRouter(prefix="/promotions", tags=["promotions"], dependencies=[Depends(rate_limit("promotions"))])


class PromotionIn(BaseModel):
    name: str
    target_type: TargetType
    target_id: str
    discount_type: PromotionDiscount
    discount_value: float = Field(..., ge=0)
    starts_at: UtcDatetime
    ends_at: UtcDatetime
    is_active: bool = True
    promo_code: Optional[str] = None
    description: Optional[str] = None


class PromotionUpdate(BaseModel):
    name: Optional[str] = None
    target_type: Optional[TargetType] = None
    target_id: Optional[str] = None
    discount_type: Optional[PromotionDiscount] = None
    discount_value: Optional[float] = Field(None, ge=0)
    starts_at: Optional[UtcDatetime] = None
    ends_at: Optional[UtcDatetime] = None
    is_active: Optional[bool] = None
    promo_code: Optional[str] = None
    description: Optional[str] = None


class ApplyCodeRequest(BaseModel):
    product_id: str
    promo_code: str


def _check_promotion(db: Database, data: dict, exclude_id=None) -> dict:
    """Validate a full promotion document; returns it with the code normalised."""
    find_by_id(db, data["target_type"], data["target_id"], data["target_type"].capitalize())
    if data["ends_at"] <= data["starts_at"]:
        raise InvalidInputError("End date must be after start date")
    value = data["discount_value"]
    if data["discount_type"] == PromotionDiscount.percentage and not 0 < value <= 100:
        raise InvalidInputError("Percentage must be between 0 and 100")
    if data["discount_type"] == PromotionDiscount.amount and value <= 0:
        raise InvalidInputError("Discount amount must be positive")

    code = (data.get("promo_code") or "").strip().upper() or None
    if code:
        filt = {"promo_code": code}
        if exclude_id is not None:
            filt["_id"] = {"$ne": exclude_id}
        if db["promotion"].find_one(filt):
            raise DuplicateError("This promo code is already in use")
    data["promo_code"] = code
    return data


# Public price resolution

@router.get("/product/{product_id}")
def product_promotions(product_id: str, db: Database = Depends(get_db)):
    product = find_by_id(db, "product", product_id, "Product")
    promotions = active_promotions(db, product)
    resolved = pricing.resolve_price(product["price"], promotions)
    resolved["best_promotion"] = serialize(resolved["best_promotion"])
    resolved["promotions"] = [serialize(p) for p in promotions]
    return ok(resolved)


@router.post("/apply-code")
def apply_code(payload: ApplyCodeRequest, db: Database = Depends(get_db)):
    product = find_by_id(db, "product", payload.product_id, "Product")
    promo = db["promotion"].find_one({"promo_code": payload.promo_code.strip().upper()})
    if not promo:
        raise CouponError("Invalid promo code")
    if not pricing.promotion_is_valid_at(promo, datetime.utcnow()):
        raise CouponError("This promo code is not active")
    targets_product = promo["target_type"] == TargetType.product and promo["target_id"] == payload.product_id
    targets_category = (promo["target_type"] == TargetType.category
                        and promo["target_id"] == product.get("category_id"))
    if not (targets_product or targets_category):
        raise CouponError("This promo code does not apply to this product")

    price = pricing.round_money(pricing.discounted_price(product["price"], promo["discount_type"],
                                                         promo["discount_value"]))
    return ok({
        "original_price": product["price"],
        "price": price,
        "discount": pricing.round_money(product["price"] - price),
        "promotion": serialize(promo),
    })


# Admin management

@router.get("")
def list_promotions(active: Optional[bool] = None,
                    _: RequestContext = Depends(require(Capability.manage_promotions)),
                    db: Database = Depends(get_db)):
    filt = {}
    if active is not None:
        filt["is_active"] = active
    return ok([serialize(p) for p in db["promotion"].find(filt).sort("starts_at", -1)])


@router.get("/{promotion_id}")
def get_promotion(promotion_id: str, _: RequestContext = Depends(require(Capability.manage_promotions)),
                  db: Database = Depends(get_db)):
    return ok(serialize(find_by_id(db, "promotion", promotion_id, "Promotion")))


@router.post("", status_code=201)
def create_promotion(payload: PromotionIn, ctx: RequestContext = Depends(require(Capability.manage_promotions)),
                     db: Database = Depends(get_db)):
    data = _check_promotion(db, Promotion(**payload.model_dump()).model_dump())
    pid = create_document(db, "promotion", data)
    log.info("Promotion %s created by %s", pid, ctx.user_id)
    return ok(serialize(find_by_id(db, "promotion", pid, "Promotion")), "Promotion created")


@router.put("/{promotion_id}")
def update_promotion(promotion_id: str, payload: PromotionUpdate,
                     _: RequestContext = Depends(require(Capability.manage_promotions)),
                     db: Database = Depends(get_db)):
    promo = find_by_id(db, "promotion", promotion_id, "Promotion")
    changes = payload.model_dump(exclude_unset=True)
    merged = {k: v for k, v in promo.items() if k != "_id"}
    merged.update({k: v for k, v in changes.items() if v is not None or k in ("promo_code", "description")})
    data = _check_promotion(db, Promotion(**merged).model_dump(), exclude_id=promo["_id"])
    data["updated_at"] = datetime.utcnow()
    db["promotion"].update_one({"_id": promo["_id"]}, {"$set": data})
    return ok(serialize(find_by_id(db, "promotion", promotion_id, "Promotion")))


@router.delete("/{promotion_id}")
def delete_promotion(promotion_id: str, ctx: RequestContext = Depends(require(Capability.manage_promotions)),
                     db: Database = Depends(get_db)):
    promo = find_by_id(db, "promotion", promotion_id, "Promotion")
    db["promotion"].delete_one({"_id": promo["_id"]})
    log.info("Promotion %s deleted by %s", promotion_id, ctx.user_id)
    return ok(message="Promotion deleted")
