"""Price calculations shared by the cart, promotion and order flows.

Everything here works on plain documents (dicts as stored in MongoDB) and
never touches the database, so the arithmetic can be tested on its own.

Money is kept as floats rounded to two decimals at the edges: line totals
and subtotals are rounded once they are summed, and a discounted total is
rounded after the discount is applied.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from errors import CouponError
from schemas import CouponType, PromotionDiscount


def round_money(value: float) -> float:
    return round(float(value), 2)


# Promotions

def promotion_is_valid_at(promotion: dict, when: datetime) -> bool:
    return bool(promotion.get("is_active", True)) and promotion["starts_at"] <= when <= promotion["ends_at"]


def discounted_price(price: float, discount_type: str, value: float) -> float:
    """Price after a single discount rule.

    Percentages are capped at 100 and fixed amounts never push the price
    below zero.
    """
    if discount_type == PromotionDiscount.percentage:
        rate = min(max(value, 0), 100)
        return price * (1 - rate / 100)
    if discount_type == PromotionDiscount.amount:
        return max(0.0, price - max(value, 0))
    return price


def best_promotion(price: float, promotions: Iterable[dict]) -> Tuple[float, Optional[dict]]:
    """Lowest price reachable with any ONE of the promotions."""
    best_price, best = price, None
    for promo in promotions:
        reduced = discounted_price(price, promo["discount_type"], promo["discount_value"])
        if reduced < best_price:
            best_price, best = reduced, promo
    return best_price, best


def resolve_price(price: float, promotions: List[dict]) -> Dict[str, Any]:
    best_price, best = best_promotion(price, promotions)
    best_price = round_money(best_price)
    discount = round_money(price - best_price)
    discount_percentage = round(discount / price * 100) if price else 0
    return {
        "original_price": price,
        "best_price": best_price,
        "discount": discount,
        "discount_percentage": discount_percentage,
        "best_promotion": best,
    }


def unit_price(product: dict, promotions: List[dict]) -> float:
    """Price a customer pays for one unit right now."""
    price = resolve_price(product["price"], promotions)["best_price"]
    promo_price = product.get("promo_price")
    if promo_price is not None and promo_price < price:
        price = round_money(promo_price)
    return price


# Carts

def subtotal(items: Iterable[dict]) -> float:
    return round_money(sum(it["unit_price"] * it["quantity"] for it in items))


def apply_rate(amount: float, rate: float) -> float:
    return round_money(amount * (1 - rate / 100))


def recompute_cart(cart: dict) -> dict:
    """Refresh ``subtotal`` and ``total`` of a cart in place."""
    cart["subtotal"] = subtotal(cart.get("items", []))
    cart["total"] = apply_rate(cart["subtotal"], cart.get("discount_rate", 0) or 0)
    return cart


def clear_cart(cart: dict) -> dict:
    cart.update({"items": [], "coupon_code": None, "discount_rate": 0, "subtotal": 0, "total": 0})
    return cart


# Coupons

def check_coupon(coupon: dict, amount: float, when: datetime) -> None:
    """Raise CouponError with the reason when the coupon can't be used."""
    if not coupon.get("is_active", True):
        raise CouponError("This coupon is no longer active")
    if when < coupon["starts_at"] or when > coupon["ends_at"]:
        raise CouponError("This coupon has expired or is not yet valid")
    max_uses = coupon.get("max_uses")
    if max_uses is not None and coupon.get("used_count", 0) >= max_uses:
        raise CouponError("This coupon has reached its maximum number of uses")
    if amount < coupon.get("min_amount", 0):
        raise CouponError(f"This coupon requires a minimum amount of {coupon['min_amount']}")


def coupon_rate(coupon: dict, amount: float) -> float:
    """Percentage taken off ``amount`` by the coupon.

    Fixed coupons are turned into the equivalent percentage of the amount
    they are applied to.
    """
    if coupon["discount_type"] == CouponType.fixed:
        if amount <= 0:
            return 0.0
        return min(coupon["value"] / amount * 100, 100.0)
    return min(coupon["value"], 100.0)
