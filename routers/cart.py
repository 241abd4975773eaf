import logging
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo.database import Database

import pricing
from catalog import lookup_products, product_summary, resolved_unit_price
from database import create_document, find_by_id, get_db, serialize
from errors import BusinessRuleError, CouponError, InsufficientStockError, NotFoundError
from rate_limit import rate_limit
from routers import ok
from schemas import Cart
from security import Capability, RequestContext, require

log = logging.getLogger("shop.cart")

router = APIRouter(prefix="/cart", tags=["cart"], dependencies=[Depends(rate_limit("cart"))])


class AddItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class UpdateItemRequest(BaseModel):
    quantity: int = Field(..., ge=0)


class CouponRequest(BaseModel):
    code: str


class SyncItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class SyncRequest(BaseModel):
    items: List[SyncItem]


def load_cart(db: Database, user_id: str) -> dict:
    cart = db["cart"].find_one({"user_id": user_id})
    if cart is None:
        create_document(db, "cart", Cart(user_id=user_id))
        cart = db["cart"].find_one({"user_id": user_id})
    return cart


def _revalidate_coupon(db: Database, cart: dict) -> None:
    """Keep the cart discount in line with what checkout will accept."""
    code = cart.get("coupon_code")
    if not code:
        return
    coupon = db["coupon"].find_one({"code": code})
    amount = pricing.subtotal(cart.get("items", []))
    reason = None
    if coupon is None:
        reason = "This coupon no longer exists"
    else:
        try:
            pricing.check_coupon(coupon, amount, datetime.utcnow())
        except CouponError as e:
            reason = e.message
    if reason:
        log.info("Dropping coupon %s from cart %s: %s", code, cart["_id"], reason)
        cart.update({"coupon_code": None, "discount_rate": 0, "coupon_removed": reason})
        return
    cart["discount_rate"] = pricing.coupon_rate(coupon, amount)


def save_cart(db: Database, cart: dict) -> dict:
    _revalidate_coupon(db, cart)
    pricing.recompute_cart(cart)
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {
        "items": cart["items"],
        "coupon_code": cart.get("coupon_code"),
        "discount_rate": cart.get("discount_rate", 0),
        "subtotal": cart["subtotal"],
        "total": cart["total"],
        "updated_at": datetime.utcnow(),
    }})
    return cart


def cart_out(db: Database, cart: dict) -> dict:
    out = serialize(cart)
    products = lookup_products(db, [it["product_id"] for it in cart.get("items", [])])
    items = []
    for it in cart.get("items", []):
        product = products.get(it["product_id"])
        items.append({
            **it,
            "line_total": pricing.round_money(it["unit_price"] * it["quantity"]),
            "product": product_summary(product) if product else None,
        })
    out["items"] = items
    return out


def _sellable_product(db: Database, product_id: str, quantity: int) -> dict:
    product = find_by_id(db, "product", product_id, "Product")
    if not product.get("is_active", True):
        raise BusinessRuleError("This product is not available", product_id=product_id)
    if product.get("stock", 0) < quantity:
        raise InsufficientStockError(product["name"], product.get("stock", 0))
    return product


@router.get("")
def get_cart(ctx: RequestContext = Depends(require(Capability.shop)), db: Database = Depends(get_db)):
    return ok(cart_out(db, load_cart(db, ctx.user_id)))


@router.post("")
def add_item(payload: AddItemRequest, ctx: RequestContext = Depends(require(Capability.shop)),
             db: Database = Depends(get_db)):
    cart = load_cart(db, ctx.user_id)
    line = next((it for it in cart["items"] if it["product_id"] == payload.product_id), None)
    wanted = payload.quantity + (line["quantity"] if line else 0)
    product = _sellable_product(db, payload.product_id, wanted)
    price = resolved_unit_price(db, product)
    if line:
        line["quantity"] = wanted
        line["unit_price"] = price
    else:
        cart["items"].append({"product_id": payload.product_id, "quantity": wanted, "unit_price": price})
    save_cart(db, cart)
    return ok(cart_out(db, cart), "Product added to cart")


@router.delete("")
def clear(ctx: RequestContext = Depends(require(Capability.shop)), db: Database = Depends(get_db)):
    cart = save_cart(db, pricing.clear_cart(load_cart(db, ctx.user_id)))
    return ok(cart_out(db, cart), "Cart cleared")


@router.post("/coupon")
def apply_coupon(payload: CouponRequest, ctx: RequestContext = Depends(require(Capability.shop)),
                 db: Database = Depends(get_db)):
    cart = load_cart(db, ctx.user_id)
    if not cart["items"]:
        raise BusinessRuleError("Your cart is empty")
    code = payload.code.strip().upper()
    coupon = db["coupon"].find_one({"code": code})
    if not coupon:
        raise CouponError("Invalid coupon code")
    subtotal = pricing.subtotal(cart["items"])
    pricing.check_coupon(coupon, subtotal, datetime.utcnow())
    cart["coupon_code"] = code
    cart["discount_rate"] = pricing.coupon_rate(coupon, subtotal)
    save_cart(db, cart)
    log.info("Coupon %s applied to cart of %s", code, ctx.user_id)
    return ok(cart_out(db, cart), "Coupon applied")


@router.delete("/coupon")
def remove_coupon(ctx: RequestContext = Depends(require(Capability.shop)), db: Database = Depends(get_db)):
    cart = load_cart(db, ctx.user_id)
    cart["coupon_code"] = None
    cart["discount_rate"] = 0
    save_cart(db, cart)
    return ok(cart_out(db, cart), "Coupon removed")


@router.put("/sync")
def sync_cart(payload: SyncRequest, ctx: RequestContext = Depends(require(Capability.shop)),
              db: Database = Depends(get_db)):
    wanted = {}
    for item in payload.items:
        wanted[item.product_id] = wanted.get(item.product_id, 0) + item.quantity
    items = []
    for product_id, quantity in wanted.items():
        product = _sellable_product(db, product_id, quantity)
        items.append({"product_id": product_id, "quantity": quantity,
                      "unit_price": resolved_unit_price(db, product)})
    cart = load_cart(db, ctx.user_id)
    cart["items"] = items
    save_cart(db, cart)
    return ok(cart_out(db, cart), "Cart synchronised")


@router.put("/{product_id}")
def update_item(product_id: str, payload: UpdateItemRequest, ctx: RequestContext = Depends(require(Capability.shop)),
                db: Database = Depends(get_db)):
    cart = load_cart(db, ctx.user_id)
    line = next((it for it in cart["items"] if it["product_id"] == product_id), None)
    if line is None:
        raise NotFoundError("Cart item", product_id)
    if payload.quantity == 0:
        cart["items"].remove(line)
    else:
        product = _sellable_product(db, product_id, payload.quantity)
        line["quantity"] = payload.quantity
        line["unit_price"] = resolved_unit_price(db, product)
    save_cart(db, cart)
    return ok(cart_out(db, cart))


@router.delete("/{product_id}")
def remove_item(product_id: str, ctx: RequestContext = Depends(require(Capability.shop)),
                db: Database = Depends(get_db)):
    cart = load_cart(db, ctx.user_id)
    remaining = [it for it in cart["items"] if it["product_id"] != product_id]
    if len(remaining) == len(cart["items"]):
        raise NotFoundError("Cart item", product_id)
    cart["items"] = remaining
    save_cart(db, cart)
    return ok(cart_out(db, cart), "Product removed from cart")
