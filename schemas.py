"""
Database Schemas for the pharmacy storefront

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class User -> collection "user"

References between documents are stored as hex id strings.
"""
from enum import Enum
from typing import Annotated, List, Optional, Dict, Any
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, EmailStr
from datetime import datetime, timezone

from config import DEFAULT_LOW_STOCK_THRESHOLD


# Closed value sets

class Role(str, Enum):
    customer = "customer"
    admin = "admin"
    courier = "courier"


class OrderStatus(str, Enum):
    pending = "pending"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    cancelled = "cancelled"


class PaymentMethod(str, Enum):
    card = "card"
    paypal = "paypal"
    cash = "cash"


class TargetType(str, Enum):
    product = "product"
    category = "category"


class PromotionDiscount(str, Enum):
    percentage = "percentage"
    amount = "amount"


class CouponType(str, Enum):
    percentage = "percentage"
    fixed = "fixed"


class MovementType(str, Enum):
    entry = "entry"
    exit = "exit"
    adjustment = "adjustment"
    reservation = "reservation"


class DeactivationReason(str, Enum):
    out_of_stock = "out_of_stock"
    admin = "admin"


def _naive_utc(value: datetime) -> datetime:
    # stored datetimes are naive UTC, as returned by pymongo
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_naive_utc)]


class Document(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)


# Core domain models

class Address(Document):
    full_name: str
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str
    phone: Optional[str] = None


class User(Document):
    name: str
    email: EmailStr
    hashed_password: str
    phone: Optional[str] = None
    role: Role = Role.customer
    is_active: bool = True
    is_verified: bool = False
    verification_token: Optional[str] = None
    reset_password_token: Optional[str] = None
    reset_password_expires: Optional[datetime] = None
    login_attempts: int = 0
    lock_until: Optional[datetime] = None


class Category(Document):
    name: str
    slug: str
    description: Optional[str] = None
    parent_id: Optional[str] = None
    is_active: bool = True


class Review(Document):
    user_id: str
    name: str
    rating: int = Field(..., ge=1, le=5)
    comment: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class StockMovement(Document):
    type: MovementType
    quantity: int
    previous_stock: int
    new_stock: int
    reference: Optional[str] = None
    comment: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Product(Document):
    name: str
    description: str
    price: float = Field(..., ge=0)
    promo_price: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0, le=100)
    images: List[str] = Field(default_factory=list)
    stock: int = Field(0, ge=0)
    low_stock_threshold: int = Field(DEFAULT_LOW_STOCK_THRESHOLD, ge=0)
    category_id: str
    is_active: bool = True
    deactivation_reason: Optional[DeactivationReason] = None
    reviews: List[Review] = Field(default_factory=list)
    rating: float = Field(0, ge=0, le=5)
    rating_count: int = 0
    stock_movements: List[StockMovement] = Field(default_factory=list)


class CartItem(Document):
    product_id: str
    quantity: int = Field(1, ge=1)
    unit_price: float = Field(..., ge=0)


class Cart(Document):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    coupon_code: Optional[str] = None
    discount_rate: float = Field(0, ge=0, le=100)
    subtotal: float = 0
    total: float = 0


class OrderItem(Document):
    product_id: str
    name: str
    quantity: int = Field(1, ge=1)
    unit_price: float = Field(..., ge=0)
    line_total: float = Field(..., ge=0)


class Order(Document):
    user_id: str
    items: List[OrderItem]
    subtotal: float
    coupon_code: Optional[str] = None
    discount: float = 0
    total: float = Field(..., ge=0)
    shipping_address: Address
    payment_method: PaymentMethod
    notes: Optional[str] = None
    status: OrderStatus = OrderStatus.pending
    payment_status: PaymentStatus = PaymentStatus.pending
    courier_id: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class Payment(Document):
    order_id: str
    amount: float = Field(..., ge=0)
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.pending
    transaction_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class Promotion(Document):
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


class Coupon(Document):
    code: str
    description: str
    discount_type: CouponType = CouponType.percentage
    value: float = Field(..., ge=0)
    min_amount: float = Field(0, ge=0)
    starts_at: UtcDatetime = Field(default_factory=datetime.utcnow)
    ends_at: UtcDatetime
    max_uses: Optional[int] = Field(None, ge=1)
    used_count: int = 0
    is_active: bool = True
