"""Orders: creation from a cart or an explicit item list, and the status lifecycle."""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo.database import Database

import inventory
import pricing
from catalog import lookup_user, resolved_unit_price
from config import SHIPPING_DAYS_ON_ASSIGN, SHIPPING_DAYS_ON_STATUS
from database import create_document, find_by_id, get_db, serialize
from errors import (
    BusinessRuleError,
    CouponError,
    InsufficientStockError,
    InvalidInputError,
    InvalidTransitionError,
    PermissionDeniedError,
    ShopError,
)
from rate_limit import rate_limit
from routers import ok
from routers.cart import load_cart, save_cart
from schemas import Address, Order, OrderItem, OrderStatus, PaymentMethod, Role
from security import Capability, RequestContext, require

log = logging.getLogger("shop.orders")

router = APIRouter(prefix="/orders", tags=["orders"], dependencies=[Depends(rate_limit("orders"))])

TRANSITIONS = {
    OrderStatus.pending: {OrderStatus.shipped, OrderStatus.cancelled},
    OrderStatus.shipped: {OrderStatus.delivered, OrderStatus.cancelled},
    OrderStatus.delivered: set(),
    OrderStatus.cancelled: set(),
}


class OrderLine(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class CreateOrderRequest(BaseModel):
    items: List[OrderLine] = Field(..., min_length=1)
    shipping_address: Address
    payment_method: PaymentMethod
    notes: Optional[str] = None


class FromCartRequest(BaseModel):
    shipping_address: Address
    payment_method: PaymentMethod
    notes: Optional[str] = None


class StatusRequest(BaseModel):
    status: OrderStatus


class AssignRequest(BaseModel):
    courier_id: str


def order_number(order_id) -> str:
    return "ORD-" + str(order_id)[-6:]


def order_out(db: Database, order: dict) -> dict:
    out = serialize(order)
    out["courier"] = lookup_user(db, order.get("courier_id"))
    return out


def can_transition(current: str, requested: str) -> bool:
    return OrderStatus(requested) in TRANSITIONS[OrderStatus(current)]


def price_lines(db: Database, quantities: Dict[str, int]) -> List[dict]:
    """Check every requested product and price it. Nothing is written."""
    lines = []
    for product_id, quantity in quantities.items():
        product = find_by_id(db, "product", product_id, "Product")
        if not product.get("is_active", True):
            raise BusinessRuleError(f"{product['name']} is not available", product_id=product_id)
        if product.get("stock", 0) < quantity:
            raise InsufficientStockError(product["name"], product.get("stock", 0))
        unit = resolved_unit_price(db, product)
        lines.append({"product": product, "item": OrderItem(
            product_id=product_id, name=product["name"], quantity=quantity, unit_price=unit,
            line_total=pricing.round_money(unit * quantity),
        ).model_dump()})
    return lines


def take_all(db: Database, lines: List[dict], reference: str, user_id: str) -> None:
    taken = []
    try:
        for line in lines:
            inventory.take_stock(db, line["product"], line["item"]["quantity"], reference=reference,
                                 user_id=user_id)
            taken.append(line)
    except ShopError:
        log.warning("Stock changed while placing %s, rolling back %s line(s)", reference, len(taken))
        for line in taken:
            product_id = line["product"]["_id"]
            try:
                current = find_by_id(db, "product", product_id, "Product")
                inventory.restock(db, current, line["item"]["quantity"], reference=reference,
                                  comment="rollback", user_id=user_id)
            except ShopError as e:
                log.error("Could not give back %s unit(s) of product %s for %s: %s",
                          line["item"]["quantity"], product_id, reference, e.message)
        raise


def restore_stock(db: Database, order: dict, user_id: Optional[str]) -> None:
    for item in order["items"]:
        product = db["product"].find_one({"_id": ObjectId(item["product_id"])})
        if product is None:
            log.warning("Product %s of order %s no longer exists", item["product_id"], order["_id"])
            continue
        inventory.restock(db, product, item["quantity"], reference=order.get("number"),
                          comment="order cancelled", user_id=user_id)


def place_order(db: Database, ctx: RequestContext, quantities: Dict[str, int], shipping_address: Address,
                payment_method: PaymentMethod, notes: Optional[str] = None,
                coupon: Optional[dict] = None) -> dict:
    lines = price_lines(db, quantities)
    items = [line["item"] for line in lines]
    subtotal = pricing.subtotal(items)
    total = subtotal
    if coupon is not None:
        pricing.check_coupon(coupon, subtotal, datetime.utcnow())
        total = pricing.apply_rate(subtotal, pricing.coupon_rate(coupon, subtotal))

    oid = ObjectId()
    number = order_number(oid)
    order = Order(
        user_id=ctx.user_id,
        items=items,
        subtotal=subtotal,
        coupon_code=coupon["code"] if coupon else None,
        discount=pricing.round_money(subtotal - total),
        total=total,
        shipping_address=shipping_address,
        payment_method=payment_method,
        notes=notes,
    ).model_dump()
    order.update({"_id": oid, "number": number})

    take_all(db, lines, number, ctx.user_id)
    create_document(db, "order", order)
    if coupon is not None:
        db["coupon"].update_one({"_id": coupon["_id"]}, {"$inc": {"used_count": 1}})
    log.info("Order %s created for %s (total %.2f)", number, ctx.user_id, total)
    return db["order"].find_one({"_id": oid})


def _visible_order(db: Database, order_id: str, ctx: RequestContext) -> dict:
    order = find_by_id(db, "order", order_id, "Order")
    if order["user_id"] != ctx.user_id and not ctx.can(Capability.manage_orders):
        raise PermissionDeniedError("Not authorized to access this order")
    return order


# Creation

@router.post("", status_code=201)
def create_order(payload: CreateOrderRequest, ctx: RequestContext = Depends(require(Capability.shop)),
                 db: Database = Depends(get_db)):
    quantities: Dict[str, int] = {}
    for line in payload.items:
        quantities[line.product_id] = quantities.get(line.product_id, 0) + line.quantity
    order = place_order(db, ctx, quantities, payload.shipping_address, payload.payment_method, payload.notes)
    return ok(order_out(db, order), "Order created")


@router.post("/from-cart", status_code=201)
def create_order_from_cart(payload: FromCartRequest, ctx: RequestContext = Depends(require(Capability.shop)),
                           db: Database = Depends(get_db)):
    cart = load_cart(db, ctx.user_id)
    if not cart["items"]:
        raise BusinessRuleError("Your cart is empty")
    coupon = None
    if cart.get("coupon_code"):
        coupon = db["coupon"].find_one({"code": cart["coupon_code"]})
        if coupon is None:
            raise CouponError("The coupon applied to your cart no longer exists")

    quantities = {it["product_id"]: it["quantity"] for it in cart["items"]}
    order = place_order(db, ctx, quantities, payload.shipping_address, payload.payment_method, payload.notes,
                        coupon=coupon)
    save_cart(db, pricing.clear_cart(cart))
    return ok(order_out(db, order), "Order created")


# Reads

@router.get("")
def my_orders(ctx: RequestContext = Depends(require(Capability.shop)), db: Database = Depends(get_db)):
    orders = db["order"].find({"user_id": ctx.user_id}).sort("created_at", -1)
    return ok([order_out(db, o) for o in orders])


@router.get("/all")
def all_orders(status: Optional[OrderStatus] = None,
               _: RequestContext = Depends(require(Capability.manage_orders)),
               db: Database = Depends(get_db)):
    filt = {"status": status.value} if status else {}
    orders = db["order"].find(filt).sort("created_at", -1)
    return ok([{**order_out(db, o), "customer": lookup_user(db, o["user_id"])} for o in orders])


@router.get("/count")
def order_count(_: RequestContext = Depends(require(Capability.manage_orders)), db: Database = Depends(get_db)):
    return ok({"count": db["order"].count_documents({})})


@router.get("/{order_id}")
def get_order(order_id: str, ctx: RequestContext = Depends(require(Capability.shop)),
              db: Database = Depends(get_db)):
    return ok(order_out(db, _visible_order(db, order_id, ctx)))


# Status changes

@router.put("/{order_id}/cancel")
def cancel_order(order_id: str, ctx: RequestContext = Depends(require(Capability.shop)),
                 db: Database = Depends(get_db)):
    order = find_by_id(db, "order", order_id, "Order")
    if order["user_id"] != ctx.user_id:
        raise PermissionDeniedError("Not authorized to cancel this order")
    if order["status"] != OrderStatus.pending:
        raise BusinessRuleError("Only pending orders can be cancelled")
    res = db["order"].update_one(
        {"_id": order["_id"], "status": OrderStatus.pending.value},
        {"$set": {"status": OrderStatus.cancelled.value, "updated_at": datetime.utcnow()}},
    )
    if res.modified_count == 0:
        raise BusinessRuleError("Only pending orders can be cancelled")
    restore_stock(db, order, ctx.user_id)
    log.info("Order %s cancelled by its owner", order.get("number"))
    return ok(order_out(db, find_by_id(db, "order", order_id, "Order")), "Order cancelled")


@router.put("/{order_id}/status")
def update_status(order_id: str, payload: StatusRequest,
                  ctx: RequestContext = Depends(require(Capability.manage_orders)),
                  db: Database = Depends(get_db)):
    order = find_by_id(db, "order", order_id, "Order")
    requested = payload.status
    if not can_transition(order["status"], requested):
        log.warning("Rejected order %s transition %s -> %s", order.get("number"), order["status"], requested.value)
        raise InvalidTransitionError(order["status"], requested.value)

    now = datetime.utcnow()
    update = {"status": requested.value, "updated_at": now}
    if requested == OrderStatus.shipped:
        update["estimated_delivery"] = now + timedelta(days=SHIPPING_DAYS_ON_STATUS)
    elif requested == OrderStatus.delivered:
        update["delivered_at"] = now
    res = db["order"].update_one({"_id": order["_id"], "status": order["status"]}, {"$set": update})
    if res.modified_count == 0:
        raise InvalidTransitionError(order["status"], requested.value)
    if requested == OrderStatus.cancelled:
        restore_stock(db, order, ctx.user_id)
    log.info("Order %s moved %s -> %s", order.get("number"), order["status"], requested.value)
    return ok(order_out(db, find_by_id(db, "order", order_id, "Order")))


@router.put("/{order_id}/assign")
def assign_courier(order_id: str, payload: AssignRequest,
                   _: RequestContext = Depends(require(Capability.manage_orders)),
                   db: Database = Depends(get_db)):
    order = find_by_id(db, "order", order_id, "Order")
    courier = find_by_id(db, "user", payload.courier_id, "Courier")
    if courier.get("role") != Role.courier:
        raise InvalidInputError("This user is not a courier")
    if not courier.get("is_active", True):
        raise BusinessRuleError("This courier is not active")
    if order["status"] not in (OrderStatus.pending, OrderStatus.shipped):
        raise InvalidTransitionError(order["status"], OrderStatus.shipped.value)

    now = datetime.utcnow()
    update = {"courier_id": payload.courier_id, "updated_at": now}
    if order["status"] == OrderStatus.pending:
        update["status"] = OrderStatus.shipped.value
        update["estimated_delivery"] = now + timedelta(days=SHIPPING_DAYS_ON_ASSIGN)
    db["order"].update_one({"_id": order["_id"]}, {"$set": update})
    log.info("Order %s assigned to courier %s", order.get("number"), payload.courier_id)
    return ok(order_out(db, find_by_id(db, "order", order_id, "Order")), "Courier assigned")
