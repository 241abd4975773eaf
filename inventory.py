"""Stock bookkeeping.

Every change to a product's stock goes through ``apply_movement`` which
appends an audit record to ``stock_movements`` and keeps ``is_active`` in
step with the stock level:

* reaching zero deactivates the product with reason ``out_of_stock``;
* going back above zero re-activates it, but only when it was deactivated
  for being out of stock. Products switched off by an admin stay off.
"""
import logging
from datetime import datetime
from typing import Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from errors import BusinessRuleError, InsufficientStockError, InvalidInputError
from schemas import DeactivationReason, MovementType, StockMovement

log = logging.getLogger("shop.inventory")


def availability_after(product: dict, new_stock: int) -> dict:
    """Fields to update on the product once its stock becomes ``new_stock``."""
    if new_stock == 0 and product.get("is_active", True):
        return {"is_active": False, "deactivation_reason": DeactivationReason.out_of_stock.value}
    if (new_stock > 0 and not product.get("is_active", True)
            and product.get("deactivation_reason") == DeactivationReason.out_of_stock):
        return {"is_active": True, "deactivation_reason": None}
    return {}


def apply_movement(database: Database, product: dict, movement_type: MovementType, new_stock: int,
                   reference: Optional[str] = None, comment: Optional[str] = None,
                   user_id: Optional[str] = None) -> dict:
    previous = product.get("stock", 0)
    if new_stock < 0:
        raise InsufficientStockError(product.get("name", str(product["_id"])), previous)
    movement = StockMovement(
        type=movement_type,
        quantity=new_stock - previous,
        previous_stock=previous,
        new_stock=new_stock,
        reference=reference,
        comment=comment,
        user_id=user_id,
    ).model_dump()
    fields = {"stock": new_stock, "updated_at": datetime.utcnow()}
    fields.update(availability_after(product, new_stock))
    updated = database["product"].find_one_and_update(
        {"_id": product["_id"], "stock": previous},
        {"$set": fields, "$push": {"stock_movements": movement}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise BusinessRuleError("Stock was modified by another request, please retry")
    log.info("Stock %s on product %s: %s -> %s (%s)", movement_type.value, product["_id"],
             previous, new_stock, reference or "-")
    return updated


def restock(database: Database, product: dict, quantity: int, **kwargs) -> dict:
    if quantity < 1:
        raise InvalidInputError("Quantity must be at least 1")
    return apply_movement(database, product, MovementType.entry, product.get("stock", 0) + quantity, **kwargs)


def take_stock(database: Database, product: dict, quantity: int,
               movement_type: MovementType = MovementType.exit, **kwargs) -> dict:
    if quantity < 1:
        raise InvalidInputError("Quantity must be at least 1")
    return apply_movement(database, product, movement_type, product.get("stock", 0) - quantity, **kwargs)


def adjust_stock(database: Database, product: dict, new_stock: int, **kwargs) -> dict:
    if new_stock < 0:
        raise InvalidInputError("Stock cannot be negative")
    return apply_movement(database, product, MovementType.adjustment, new_stock, **kwargs)


def is_low_stock(product: dict) -> bool:
    return product.get("stock", 0) <= product.get("low_stock_threshold", 0)
