from __future__ import annotations
from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator

# Each stored model maps onto one collection: products, coupons, orders, users

OrderStatus = Literal[
    "not confirmed",
    "payment pending",
    "confirmed",
    "preparing",
    "out for delivery",
    "delivered",
    "cancelled",
]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
PaymentMethod = Literal["online", "cod"]
DiscountType = Literal["percentage", "fixed"]

PHONE_PATTERN = r"^\d{10}$"
PINCODE_PATTERN = r"^\d{6}$"
EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive UTC datetimes; keep everything we store the same."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ----- Catalog -----

class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    price: float = Field(..., ge=0, description="Unit price in INR")
    image: Optional[str] = Field(None, description="Durable image URL")
    category: str = "other"
    flavors: list[str] = Field(default_factory=list)
    featured: bool = False

class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    image: Optional[str] = None
    category: Optional[str] = None
    flavors: Optional[list[str]] = None
    featured: Optional[bool] = None

class ProductOut(Product):
    id: str


# ----- Coupons -----

class Coupon(BaseModel):
    code: str = Field(..., min_length=1)
    discount_type: DiscountType
    discount_value: float = Field(..., gt=0)
    min_order_amount: Optional[float] = Field(None, ge=0)
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def _strip_code(cls, v: str) -> str:
        return v.strip()

    @field_validator("valid_from", "valid_until")
    @classmethod
    def _to_naive_utc(cls, v: datetime) -> datetime:
        return naive_utc(v)

    @model_validator(mode="after")
    def _check_window(self):
        if self.valid_from > self.valid_until:
            raise ValueError("valid_from must not be after valid_until")
        if self.discount_type == "percentage" and self.discount_value > 100:
            raise ValueError("percentage discount cannot exceed 100")
        return self

class CouponUpdate(BaseModel):
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(None, gt=0)
    min_order_amount: Optional[float] = Field(None, ge=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: Optional[bool] = None

    @field_validator("valid_from", "valid_until")
    @classmethod
    def _to_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(v)

class CouponOut(Coupon):
    id: str

class CouponValidateIn(BaseModel):
    code: str = Field(..., min_length=1)
    amount: float = Field(..., ge=0)

class CouponApplied(BaseModel):
    """Snapshot of the coupon as it was applied to one order."""
    code: str
    discount_type: DiscountType
    discount_value: float
    discount_amount: float = Field(..., ge=0)


# ----- Customer and shipping -----

class Customer(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., pattern=EMAIL_PATTERN)
    phone: str = Field(..., pattern=PHONE_PATTERN)

class ShippingDetails(BaseModel):
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., pattern=PINCODE_PATTERN)


# ----- Cart -----

class CartLine(BaseModel):
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    image: Optional[str] = None
    quantity: int = Field(1, ge=1)

class AppliedCoupon(BaseModel):
    """Discount parameters held by the cart; the amount is always recomputed."""
    code: str
    discount_type: DiscountType
    discount_value: float
    min_order_amount: Optional[float] = None

class CartState(BaseModel):
    items: list[CartLine] = Field(default_factory=list)
    coupon: Optional[AppliedCoupon] = None

class CartOut(CartState):
    subtotal: float
    discount_amount: float
    final_total: float
    item_count: int

class CartAddIn(BaseModel):
    cart: CartState = Field(default_factory=CartState)
    product_id: str
    quantity: int = Field(1, ge=1)

class CartQuantityIn(BaseModel):
    cart: CartState
    quantity: int = Field(..., ge=1)

class CartCouponIn(BaseModel):
    cart: CartState
    code: Optional[str] = Field(None, description="Omit to remove the applied coupon")


# ----- Orders: creation payloads -----

class CheckoutLine(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)

class CheckoutDraft(BaseModel):
    """A cart checkout that is not persisted until payment succeeds."""
    type: Literal["simple"] = "simple"
    customer: Customer
    items: list[CheckoutLine] = Field(..., min_length=1)
    coupon_code: Optional[str] = None
    shipping: Optional[ShippingDetails] = None
    notes: Optional[str] = None

class CustomOrderCreate(BaseModel):
    type: Literal["custom"] = "custom"
    customer: Customer
    occasion: str = Field(..., min_length=1)
    cake_size: str = Field(..., min_length=1)
    flavor: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    image: Optional[str] = None
    required_date: datetime
    notes: Optional[str] = None

    @field_validator("required_date")
    @classmethod
    def _to_naive_utc(cls, v: datetime) -> datetime:
        return naive_utc(v)

class OrderItem(BaseModel):
    product_id: Optional[str] = None
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    image: Optional[str] = None

class SimpleOrderCreate(BaseModel):
    """Priced cart order, assembled server-side from a CheckoutDraft."""
    type: Literal["simple"] = "simple"
    customer: Customer
    items: list[OrderItem] = Field(..., min_length=1)
    total: float = Field(..., ge=0)
    price: float = Field(..., ge=0)
    final_amount: float = Field(..., ge=0)
    discount_amount: float = Field(0, ge=0)
    coupon: Optional[CouponApplied] = None
    shipping: Optional[ShippingDetails] = None
    notes: Optional[str] = None

OrderRequest = Annotated[Union[CheckoutDraft, CustomOrderCreate], Field(discriminator="type")]


# ----- Orders: stored shape -----

class PaymentReceipt(BaseModel):
    payment_id: str = Field(..., min_length=1)
    payment_amount: float = Field(..., ge=0)
    payment_method: PaymentMethod = "online"
    payment_signature: Optional[str] = None

class OrderBase(BaseModel):
    id: str
    customer: Customer
    status: OrderStatus
    payment_status: PaymentStatus = "pending"
    total: Optional[float] = None
    price: Optional[float] = None
    final_amount: Optional[float] = None
    discount_amount: float = 0
    coupon: Optional[CouponApplied] = None
    payment_id: Optional[str] = None
    payment_amount: Optional[float] = None
    payment_method: Optional[PaymentMethod] = None
    payment_signature: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    notes: Optional[str] = None
    required_date: Optional[datetime] = None
    delivery_date: Optional[datetime] = None
    delivery_person: Optional[str] = None
    delivery_contact: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    def has_shipping(self) -> bool:
        return all([self.address, self.city, self.state, self.pincode])

class SimpleOrder(OrderBase):
    type: Literal["simple"] = "simple"
    items: list[OrderItem]
    total: float
    price: float

class CustomOrder(OrderBase):
    type: Literal["custom"] = "custom"
    occasion: str
    cake_size: str
    flavor: str
    description: str
    image: Optional[str] = None
    required_date: datetime

Order = Annotated[Union[SimpleOrder, CustomOrder], Field(discriminator="type")]
order_adapter: TypeAdapter[Union[SimpleOrder, CustomOrder]] = TypeAdapter(Order)


# ----- Order updates -----

class OrderShippingUpdate(ShippingDetails):
    notes: Optional[str] = None

class OrderLookupIn(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)

class AdminOrderUpdate(BaseModel):
    status: Optional[OrderStatus] = None
    price: Optional[float] = Field(None, ge=0)
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = Field(None, pattern=PINCODE_PATTERN)
    delivery_date: Optional[datetime] = None
    delivery_person: Optional[str] = None
    delivery_contact: Optional[str] = None

    @field_validator("delivery_date")
    @classmethod
    def _to_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(v)

class TransitionsOut(BaseModel):
    order_id: str
    status: OrderStatus
    allowed: list[OrderStatus]


# ----- Payments -----

class PaymentIntentIn(BaseModel):
    order_id: Optional[str] = None
    checkout: Optional[CheckoutDraft] = None
    shipping: Optional[ShippingDetails] = None

    @model_validator(mode="after")
    def _one_target(self):
        if bool(self.order_id) == bool(self.checkout):
            raise ValueError("provide exactly one of order_id or checkout")
        return self

class PaymentIntentOut(BaseModel):
    gateway_order_id: str
    amount: float
    amount_subunits: int
    currency: str
    key_id: str
    order_id: Optional[str] = None

class PaymentConfirmIn(BaseModel):
    order_id: Optional[str] = None
    checkout: Optional[CheckoutDraft] = None
    gateway_order_id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1)
    amount: float = Field(..., ge=0)
    signature: Optional[str] = None
    shipping: Optional[ShippingDetails] = None

    @model_validator(mode="after")
    def _one_target(self):
        if bool(self.order_id) == bool(self.checkout):
            raise ValueError("provide exactly one of order_id or checkout")
        return self

class PaymentConfirmOut(BaseModel):
    success: bool = True
    order_id: str
    status: OrderStatus
    payment_status: PaymentStatus
    clear_cart: bool = False

class RecoveryOut(BaseModel):
    recovered: list[str]
    pending: list[str]


# ----- Store status and users -----

class StoreStatus(BaseModel):
    is_online: bool = True

class UserRegister(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    email: str = Field(..., pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=6)

class UserLogin(BaseModel):
    phone: str
    password: str

class PhoneCheckIn(BaseModel):
    phone: str

class UserOut(BaseModel):
    id: str
    name: str
    phone: str
    email: str
    is_admin: bool = False

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserOut
