import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field, field_validator
from pymongo.database import Database

from catalog import lookup_user, slugify
from database import create_document, find_by_id, get_db, serialize
from errors import BusinessRuleError, DuplicateError, InvalidInputError
from routers import ok
from schemas import Category, Coupon, CouponType, OrderStatus, Product, Promotion, Role, User, UtcDatetime
from security import Capability, RequestContext, hash_password, public_user, require

log = logging.getLogger("shop.admin")

router = APIRouter(prefix="/admin", tags=["admin"])

admin_only = require(Capability.manage_users)

OPEN_STATUSES = [OrderStatus.pending.value, OrderStatus.shipped.value]


class CourierIn(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: str

    @field_validator("name", "phone")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()


class CourierUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    is_active: Optional[bool] = None


class PasswordReset(BaseModel):
    password: str = Field(..., min_length=6)


class CouponIn(BaseModel):
    code: str
    description: str
    discount_type: CouponType = CouponType.percentage
    value: float = Field(..., ge=0)
    min_amount: float = Field(0, ge=0)
    starts_at: Optional[UtcDatetime] = None
    ends_at: UtcDatetime
    max_uses: Optional[int] = Field(None, ge=1)
    is_active: bool = True


class CouponUpdate(BaseModel):
    description: Optional[str] = None
    discount_type: Optional[CouponType] = None
    value: Optional[float] = Field(None, ge=0)
    min_amount: Optional[float] = Field(None, ge=0)
    starts_at: Optional[UtcDatetime] = None
    ends_at: Optional[UtcDatetime] = None
    max_uses: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None


def _courier(db: Database, courier_id: str) -> dict:
    user = find_by_id(db, "user", courier_id, "Courier")
    if user.get("role") != Role.courier:
        raise InvalidInputError("This user is not a courier")
    return user


def _check_coupon(data: dict) -> None:
    if data["ends_at"] <= data["starts_at"]:
        raise InvalidInputError("End date must be after start date")
    if data["discount_type"] == CouponType.percentage and not 0 < data["value"] <= 100:
        raise InvalidInputError("Percentage must be between 0 and 100")
    if data["discount_type"] == CouponType.fixed and data["value"] <= 0:
        raise InvalidInputError("Coupon value must be positive")


# Couriers

@router.post("/couriers", status_code=201)
def create_courier(payload: CourierIn, ctx: RequestContext = Depends(admin_only), db: Database = Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise DuplicateError("Email already registered")
    courier = User(name=payload.name, email=email, hashed_password=hash_password(payload.password),
                   phone=payload.phone, role=Role.courier, is_verified=True)
    cid = create_document(db, "user", courier)
    log.info("Courier %s created by %s", cid, ctx.user_id)
    return ok(public_user(find_by_id(db, "user", cid, "Courier")), "Courier created")


@router.get("/couriers")
def list_couriers(_: RequestContext = Depends(admin_only), db: Database = Depends(get_db)):
    couriers = db["user"].find({"role": Role.courier.value}).sort("name", 1)
    return ok([public_user(c) for c in couriers])


@router.get("/couriers/{courier_id}")
def get_courier(courier_id: str, _: RequestContext = Depends(admin_only), db: Database = Depends(get_db)):
    courier = _courier(db, courier_id)
    orders = db["order"].find({"courier_id": courier_id}).sort("created_at", -1)
    return ok({**public_user(courier), "orders": [serialize(o) for o in orders]})


@router.put("/couriers/{courier_id}")
def update_courier(courier_id: str, payload: CourierUpdate, _: RequestContext = Depends(admin_only),
                   db: Database = Depends(get_db)):
    courier = _courier(db, courier_id)
    update = payload.model_dump(exclude_none=True)
    if "email" in update:
        update["email"] = update["email"].lower()
        if update["email"] != courier.get("email") and db["user"].find_one({"email": update["email"]}):
            raise DuplicateError("Email already in use")
    update["updated_at"] = datetime.utcnow()
    db["user"].update_one({"_id": courier["_id"]}, {"$set": update})
    return ok(public_user(find_by_id(db, "user", courier_id, "Courier")))


@router.put("/couriers/{courier_id}/reset-password")
def reset_courier_password(courier_id: str, payload: PasswordReset, _: RequestContext = Depends(admin_only),
                           db: Database = Depends(get_db)):
    courier = _courier(db, courier_id)
    db["user"].update_one({"_id": courier["_id"]}, {"$set": {
        "hashed_password": hash_password(payload.password),
        "login_attempts": 0,
        "lock_until": None,
        "updated_at": datetime.utcnow(),
    }})
    return ok(message="Password reset")


@router.delete("/couriers/{courier_id}")
def delete_courier(courier_id: str, ctx: RequestContext = Depends(admin_only), db: Database = Depends(get_db)):
    courier = _courier(db, courier_id)
    open_orders = db["order"].count_documents({"courier_id": courier_id, "status": {"$in": OPEN_STATUSES}})
    if open_orders:
        raise BusinessRuleError("This courier still has orders in progress", assigned_orders=open_orders)
    db["order"].update_many({"courier_id": courier_id}, {"$set": {"courier_id": None}})
    db["user"].delete_one({"_id": courier["_id"]})
    log.info("Courier %s deleted by %s", courier_id, ctx.user_id)
    return ok(message="Courier deleted")


@router.get("/delivery-stats")
def delivery_stats(_: RequestContext = Depends(admin_only), db: Database = Depends(get_db)):
    pipeline = [
        {"$match": {"status": OrderStatus.delivered.value, "courier_id": {"$ne": None}}},
        {"$group": {"_id": "$courier_id", "total_deliveries": {"$sum": 1}, "total_amount": {"$sum": "$total"}}},
        {"$sort": {"total_deliveries": -1}},
        {"$limit": 5},
    ]
    top = []
    for row in db["order"].aggregate(pipeline):
        courier = lookup_user(db, row["_id"])
        top.append({
            "courier_id": row["_id"],
            "name": courier["name"] if courier else None,
            "total_deliveries": row["total_deliveries"],
            "total_amount": round(row["total_amount"], 2),
        })
    return ok({
        "total_couriers": db["user"].count_documents({"role": Role.courier.value}),
        "active_couriers": db["user"].count_documents({"role": Role.courier.value, "is_active": True}),
        "top_couriers": top,
    })


# Coupons

@router.get("/coupons")
def list_coupons(_: RequestContext = Depends(admin_only), db: Database = Depends(get_db)):
    return ok([serialize(c) for c in db["coupon"].find().sort("created_at", -1)])


@router.get("/coupons/{coupon_id}")
def get_coupon(coupon_id: str, _: RequestContext = Depends(admin_only), db: Database = Depends(get_db)):
    return ok(serialize(find_by_id(db, "coupon", coupon_id, "Coupon")))


@router.post("/coupons", status_code=201)
def create_coupon(payload: CouponIn, ctx: RequestContext = Depends(admin_only), db: Database = Depends(get_db)):
    code = payload.code.strip().upper()
    if not code:
        raise InvalidInputError("Coupon code is required")
    if db["coupon"].find_one({"code": code}):
        raise DuplicateError("This coupon code already exists")
    data = payload.model_dump(exclude_none=True)
    data["code"] = code
    coupon = Coupon(**data).model_dump()
    _check_coupon(coupon)
    cid = create_document(db, "coupon", coupon)
    log.info("Coupon %s created by %s", code, ctx.user_id)
    return ok(serialize(find_by_id(db, "coupon", cid, "Coupon")), "Coupon created")


@router.put("/coupons/{coupon_id}")
def update_coupon(coupon_id: str, payload: CouponUpdate, _: RequestContext = Depends(admin_only),
                  db: Database = Depends(get_db)):
    coupon = find_by_id(db, "coupon", coupon_id, "Coupon")
    update = payload.model_dump(exclude_unset=True)
    update = {k: v for k, v in update.items() if v is not None or k == "max_uses"}
    merged = Coupon(**{**{k: v for k, v in coupon.items() if k != "_id"}, **update}).model_dump()
    _check_coupon(merged)
    merged.pop("used_count")
    merged["updated_at"] = datetime.utcnow()
    db["coupon"].update_one({"_id": coupon["_id"]}, {"$set": merged})
    return ok(serialize(find_by_id(db, "coupon", coupon_id, "Coupon")))


@router.delete("/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, ctx: RequestContext = Depends(admin_only), db: Database = Depends(get_db)):
    coupon = find_by_id(db, "coupon", coupon_id, "Coupon")
    db["coupon"].delete_one({"_id": coupon["_id"]})
    log.info("Coupon %s deleted by %s", coupon["code"], ctx.user_id)
    return ok(message="Coupon deleted")


# Optional: seed a demo catalog
@router.post("/seed")
def seed_catalog(_: RequestContext = Depends(admin_only), db: Database = Depends(get_db)):
    if db["product"].count_documents({}) > 0:
        return ok({"seeded": False}, "Products already exist")
    category_ids = {}
    for name, description in [
        ("Pain Relief", "Analgesics and anti-inflammatories"),
        ("Vitamins", "Daily supplements"),
        ("Skin Care", "Creams, balms and sun protection"),
    ]:
        existing = db["category"].find_one({"slug": slugify(name)})
        if existing:
            category_ids[name] = str(existing["_id"])
        else:
            category_ids[name] = create_document(db, "category", Category(name=name, slug=slugify(name),
                                                                          description=description))
    samples = [
        ("Paracetamol 500mg", "Box of 16 tablets for pain and fever.", 3.5, 120, "Pain Relief"),
        ("Ibuprofen 400mg", "Box of 20 coated tablets.", 5.9, 80, "Pain Relief"),
        ("Vitamin C 1000mg", "30 effervescent tablets.", 7.2, 60, "Vitamins"),
        ("SPF 50 Sun Cream", "Water resistant, 50 ml.", 14.9, 40, "Skin Care"),
    ]
    product_ids = []
    for name, description, price, stock, category in samples:
        product = Product(name=name, description=description, price=price, stock=stock,
                          category_id=category_ids[category])
        product_ids.append(create_document(db, "product", product))

    now = datetime.utcnow()
    promotions = [
        Promotion(name="Vitamin week", target_type="category", target_id=category_ids["Vitamins"],
                  discount_type="percentage", discount_value=20, starts_at=now, ends_at=now + timedelta(days=30),
                  description="20% off every vitamin"),
        Promotion(name="Sun cream offer", target_type="product", target_id=product_ids[3],
                  discount_type="amount", discount_value=3, starts_at=now, ends_at=now + timedelta(days=14),
                  promo_code="SUN3", description="3 off the sun cream"),
    ]
    for promo in promotions:
        create_document(db, "promotion", promo)
    log.info("Seeded %s categories, %s products", len(category_ids), len(product_ids))
    return ok({"seeded": True, "categories": len(category_ids), "products": len(product_ids),
               "promotions": len(promotions)})
