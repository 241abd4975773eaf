"""Payment attempts and their effect on the order payment status.

Card and PayPal charges go through ``provider``, a callable
``(method, amount, token, description) -> (transaction_id, details)`` that
raises ``PaymentProviderError`` when the charge is refused. No provider is
configured by default, in which case those methods are refused.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from pymongo.database import Database

from database import create_document, find_by_id, get_db, serialize, to_obj_id
from errors import BusinessRuleError, InvalidInputError, PaymentProviderError, PermissionDeniedError
from rate_limit import rate_limit
from routers import ok
from schemas import Payment, PaymentMethod, PaymentStatus
from security import Capability, RequestContext, get_current_user, require

log = logging.getLogger("shop.payments")

router = APIRouter(prefix="/payments", tags=["payments"], dependencies=[Depends(rate_limit("payments"))])

ChargeProvider = Callable[[str, float, str, str], Tuple[str, Dict]]
provider: Optional[ChargeProvider] = None


class PaymentRequest(BaseModel):
    order_id: str
    method: PaymentMethod
    token: Optional[str] = None


def charge(method: PaymentMethod, amount: float, token: str, description: str) -> Tuple[str, Dict]:
    if provider is None:
        raise PaymentProviderError(f"{method.value} payments are not available at the moment")
    return provider(method.value, amount, token, description)


def save_payment(db: Database, payment: dict) -> dict:
    """Insert or update a payment and copy its status onto the order."""
    now = datetime.utcnow()
    if "_id" in payment:
        db["payment"].update_one({"_id": payment["_id"]}, {"$set": {
            "status": payment["status"],
            "transaction_id": payment.get("transaction_id"),
            "details": payment.get("details", {}),
            "updated_at": now,
        }})
    else:
        payment["_id"] = to_obj_id(create_document(db, "payment", payment))
    order = find_by_id(db, "order", payment["order_id"], "Order")
    db["order"].update_one({"_id": order["_id"]}, {"$set": {"payment_status": payment["status"], "updated_at": now}})
    log.info("Payment %s for order %s is %s", payment["_id"], order.get("number"), payment["status"])
    return db["payment"].find_one({"_id": payment["_id"]})


def record_cash_payment(db: Database, order: dict, collected_by: Optional[str] = None) -> dict:
    """Mark the cash due on ``order`` as collected."""
    payment = db["payment"].find_one({
        "order_id": str(order["_id"]),
        "method": PaymentMethod.cash.value,
        "status": PaymentStatus.pending.value,
    })
    if payment is None:
        payment = Payment(order_id=str(order["_id"]), amount=order["total"], method=PaymentMethod.cash).model_dump()
    payment["status"] = PaymentStatus.paid.value
    payment.setdefault("details", {})["collected_by"] = collected_by
    return save_payment(db, payment)


@router.post("", status_code=201)
def process_payment(payload: PaymentRequest, ctx: RequestContext = Depends(require(Capability.shop)),
                    db: Database = Depends(get_db)):
    order = find_by_id(db, "order", payload.order_id, "Order")
    if order["user_id"] != ctx.user_id:
        raise PermissionDeniedError("Not authorized to pay for this order")
    if order.get("payment_status") != PaymentStatus.pending:
        raise BusinessRuleError("This order is not awaiting payment")

    payment = Payment(order_id=payload.order_id, amount=order["total"], method=payload.method).model_dump()
    if payload.method == PaymentMethod.cash:
        payment["details"] = {"shipping_address": order.get("shipping_address")}
    else:
        if not payload.token:
            raise InvalidInputError("A payment token is required")
        transaction_id, details = charge(payload.method, order["total"], payload.token,
                                         f"Payment for order {order.get('number')}")
        payment.update({"status": PaymentStatus.paid.value, "transaction_id": transaction_id, "details": details})

    payment = save_payment(db, payment)
    return ok({"payment_id": str(payment["_id"]), "status": payment["status"]}, "Payment processed")


@router.get("/{payment_id}")
def get_payment(payment_id: str, ctx: RequestContext = Depends(get_current_user), db: Database = Depends(get_db)):
    payment = find_by_id(db, "payment", payment_id, "Payment")
    order = find_by_id(db, "order", payment["order_id"], "Order")
    if order["user_id"] != ctx.user_id and not ctx.can(Capability.manage_payments):
        raise PermissionDeniedError("Not authorized to view this payment")
    out = serialize(payment)
    out["order"] = serialize(order)
    return ok(out)


@router.put("/{payment_id}/validate")
def validate_payment(payment_id: str, ctx: RequestContext = Depends(require(Capability.manage_payments)),
                     db: Database = Depends(get_db)):
    payment = find_by_id(db, "payment", payment_id, "Payment")
    if payment["method"] != PaymentMethod.cash or payment["status"] != PaymentStatus.pending:
        raise BusinessRuleError("Only pending cash payments can be validated")
    payment["status"] = PaymentStatus.paid.value
    payment.setdefault("details", {})["validated_by"] = ctx.user_id
    return ok(serialize(save_payment(db, payment)), "Payment validated")


@router.put("/{payment_id}/cancel")
def cancel_payment(payment_id: str, ctx: RequestContext = Depends(require(Capability.manage_payments)),
                   db: Database = Depends(get_db)):
    payment = find_by_id(db, "payment", payment_id, "Payment")
    if payment["status"] != PaymentStatus.pending:
        raise BusinessRuleError("Only pending payments can be cancelled")
    payment["status"] = PaymentStatus.cancelled.value
    payment.setdefault("details", {})["cancelled_by"] = ctx.user_id
    return ok(serialize(save_payment(db, payment)), "Payment cancelled")
