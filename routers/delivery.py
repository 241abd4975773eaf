import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from pymongo.database import Database

from catalog import lookup_user
from database import find_by_id, get_db, serialize
from errors import InvalidTransitionError, PermissionDeniedError
from rate_limit import rate_limit
from routers import ok
from routers.payments import record_cash_payment
from schemas import OrderStatus, PaymentStatus
from security import Capability, RequestContext, public_user, require

log = logging.getLogger("shop.delivery")

router = APIRouter(prefix="/delivery", tags=["delivery"], dependencies=[Depends(rate_limit("delivery"))])

courier_only = require(Capability.deliver_orders)

CLOSED = [OrderStatus.delivered.value, OrderStatus.cancelled.value]


def assigned_order(db: Database, order_id: str, ctx: RequestContext) -> dict:
    order = find_by_id(db, "order", order_id, "Order")
    if order.get("courier_id") != ctx.user_id:
        raise PermissionDeniedError("This order is not assigned to you")
    return order


@router.get("/profile")
def profile(ctx: RequestContext = Depends(courier_only), db: Database = Depends(get_db)):
    orders = db["order"]
    return ok({
        **public_user(ctx.user),
        "open_orders": orders.count_documents({"courier_id": ctx.user_id, "status": {"$nin": CLOSED}}),
        "delivered_orders": orders.count_documents({"courier_id": ctx.user_id,
                                                    "status": OrderStatus.delivered.value}),
    })


@router.get("/orders")
def my_deliveries(ctx: RequestContext = Depends(courier_only), db: Database = Depends(get_db)):
    orders = db["order"].find({"courier_id": ctx.user_id, "status": {"$nin": CLOSED}}).sort("estimated_delivery", 1)
    return ok([serialize(o) for o in orders])


@router.get("/orders/{order_id}")
def delivery_detail(order_id: str, ctx: RequestContext = Depends(courier_only), db: Database = Depends(get_db)):
    return ok(serialize(assigned_order(db, order_id, ctx)))


@router.get("/orders/{order_id}/client-info")
def client_info(order_id: str, ctx: RequestContext = Depends(courier_only), db: Database = Depends(get_db)):
    order = assigned_order(db, order_id, ctx)
    return ok({
        "customer": lookup_user(db, order["user_id"]),
        "shipping_address": order.get("shipping_address"),
        "payment_method": order.get("payment_method"),
        "payment_status": order.get("payment_status"),
        "total": order.get("total"),
    })


@router.put("/orders/{order_id}/confirm")
def confirm_delivery(order_id: str, ctx: RequestContext = Depends(courier_only), db: Database = Depends(get_db)):
    order = assigned_order(db, order_id, ctx)
    if order["status"] != OrderStatus.shipped:
        raise InvalidTransitionError(order["status"], OrderStatus.delivered.value)
    now = datetime.utcnow()
    db["order"].update_one({"_id": order["_id"]}, {"$set": {
        "status": OrderStatus.delivered.value,
        "delivered_at": now,
        "updated_at": now,
    }})
    if order.get("payment_status") == PaymentStatus.pending:
        record_cash_payment(db, order, collected_by=ctx.user_id)
    log.info("Order %s delivered by courier %s", order.get("number"), ctx.user_id)
    return ok(serialize(find_by_id(db, "order", order_id, "Order")), "Delivery confirmed")
