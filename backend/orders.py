from __future__ import annotations
from datetime import datetime
from typing import Any, Optional, Union

from motor.motor_asyncio import AsyncIOMotorDatabase

from app_logger import get_logger
from database import ORDERS, serialize, to_oid
from errors import InvalidInput, InvalidTransition, NotFound, PriceNotSet
from money import final_amount, round_money
from schemas import (
    CustomOrder,
    CustomOrderCreate,
    OrderStatus,
    PaymentReceipt,
    ShippingDetails,
    SimpleOrder,
    SimpleOrderCreate,
    order_adapter,
)

log = get_logger("orders")

AnyOrder = Union[SimpleOrder, CustomOrder]

# The one authoritative lifecycle graph. "not confirmed" only moves forward to
# "payment pending"; every non-terminal state can be cancelled.
ALLOWED_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "not confirmed": ("payment pending", "cancelled"),
    "payment pending": ("confirmed", "cancelled"),
    "confirmed": ("preparing", "cancelled"),
    "preparing": ("out for delivery", "cancelled"),
    "out for delivery": ("delivered", "cancelled"),
    "delivered": (),
    "cancelled": (),
}

PRICEABLE_STATUSES = frozenset({"not confirmed", "payment pending"})

# Simple orders may be confirmed by a successful payment from any of these,
# including states the transition table would not let them leave directly.
SIMPLE_PAYMENT_CONFIRMABLE = frozenset({"not confirmed", "payment pending", "confirmed"})


def allowed_transitions(status: str) -> tuple[str, ...]:
    return ALLOWED_TRANSITIONS.get(status, ())


def is_valid_transition(current: str, target: str) -> bool:
    return target in allowed_transitions(current)


def can_confirm_payment(order: AnyOrder) -> bool:
    """Simple orders may be confirmed from any pre-delivery state checkout can leave them in."""
    if order.type == "simple":
        return order.status in SIMPLE_PAYMENT_CONFIRMABLE
    return is_valid_transition(order.status, "confirmed")


def amount_due(order: AnyOrder) -> float:
    """What the customer owes for ``order`` before the gateway minimum is applied."""
    if order.price is None:
        raise PriceNotSet(order.id)
    if order.final_amount is not None:
        return order.final_amount
    return final_amount(order.price, order.discount_amount)


def _shipping_fields(shipping: Optional[ShippingDetails]) -> dict[str, Any]:
    return shipping.model_dump() if shipping else {}


class OrderStore:
    """Order records and the status machine that guards them.

    Writes are conditional on the status last read; otherwise last write wins.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def _load(self, order_id: str) -> AnyOrder:
        doc = await self.db[ORDERS].find_one({"_id": to_oid(order_id)})
        if not doc:
            raise NotFound("Order not found")
        return order_adapter.validate_python(serialize(doc))

    async def get_order(self, order_id: str) -> AnyOrder:
        return await self._load(order_id)

    async def find_by_payment_id(self, payment_id: str) -> Optional[AnyOrder]:
        doc = await self.db[ORDERS].find_one({"payment_id": payment_id})
        return order_adapter.validate_python(serialize(doc)) if doc else None

    async def list_orders_by_phone(self, phone: str) -> list[AnyOrder]:
        if not phone:
            raise InvalidInput("Phone number is required")
        return await self.find({"customer.phone": phone})

    async def find(self, filter_dict: dict[str, Any], limit: int = 500) -> list[AnyOrder]:
        cursor = self.db[ORDERS].find(filter_dict).sort([("created_at", -1)]).limit(limit)
        orders = []
        async for d in cursor:
            orders.append(order_adapter.validate_python(serialize(d)))
        return orders

    async def create_order(
        self,
        data: Union[SimpleOrderCreate, CustomOrderCreate],
        status: Optional[OrderStatus] = None,
        payment: Optional[PaymentReceipt] = None,
    ) -> AnyOrder:
        now = datetime.utcnow()
        if isinstance(data, SimpleOrderCreate):
            if status not in (None, "payment pending", "confirmed"):
                raise InvalidInput(f"A simple order cannot be created as {status}")
            if status == "confirmed" and payment is None:
                raise InvalidInput("A confirmed order needs a verified payment")
            doc = data.model_dump(exclude={"shipping"})
            doc.update(_shipping_fields(data.shipping))
            doc["required_date"] = now
            doc["status"] = status or ("confirmed" if payment else "payment pending")
        else:
            if status not in (None, "not confirmed") or payment is not None:
                raise InvalidInput("A custom order starts unpriced and unconfirmed")
            doc = data.model_dump()
            doc.update(total=None, price=None, final_amount=None, discount_amount=0, coupon=None)
            doc["status"] = "not confirmed"

        doc["payment_status"] = "pending"
        if payment is not None:
            doc.update(payment.model_dump())
            doc["payment_status"] = "paid"
        doc["created_at"] = now
        doc["updated_at"] = now

        result = await self.db[ORDERS].insert_one(doc)
        doc["_id"] = result.inserted_id
        order = order_adapter.validate_python(serialize(doc))
        log.info("Created %s order %s (%s)", order.type, order.id, order.status)
        return order

    async def _write(self, order: AnyOrder, changes: dict[str, Any], extra_filter: Optional[dict] = None) -> AnyOrder:
        changes = {**changes, "updated_at": datetime.utcnow()}
        flt = {"_id": to_oid(order.id), "status": order.status, **(extra_filter or {})}
        result = await self.db[ORDERS].update_one(flt, {"$set": changes})
        if result.matched_count == 0:
            fresh = await self._load(order.id)
            target = changes.get("status", fresh.status)
            raise InvalidTransition(
                fresh.status, target,
                f"Order {order.id} changed while updating (now {fresh.status})",
            )
        return order.model_copy(update=changes)

    async def update_order(
        self,
        order_id: str,
        status: Optional[OrderStatus] = None,
        price: Optional[float] = None,
        shipping: Optional[dict[str, Any]] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> AnyOrder:
        """Price, status and plain field updates in one write.

        A status equal to the current one means "no status change". The first
        price on a "not confirmed" order also moves it to "payment pending".
        """
        order = await self._load(order_id)
        changes: dict[str, Any] = {}
        target = status or order.status

        if price is not None:
            if price < 0:
                raise InvalidInput("Please enter a valid price")
            if order.status not in PRICEABLE_STATUSES:
                raise InvalidInput(f"Price cannot be changed once the order is {order.status}")
            if order.type != "custom":
                raise InvalidInput("Simple orders are priced at checkout")
            price = round_money(price)
            changes["price"] = price
            changes["total"] = price
            changes["final_amount"] = final_amount(price, order.discount_amount)
            if order.status == "not confirmed" and target == "not confirmed":
                target = "payment pending"

        if target != order.status:
            if not is_valid_transition(order.status, target):
                raise InvalidTransition(order.status, target)
            if target == "payment pending" and order.price is None and "price" not in changes:
                raise PriceNotSet(order.id)
            changes["status"] = target

        changes.update(shipping or {})
        changes.update(extra or {})
        if not changes:
            return order

        updated = await self._write(order, changes)
        if "status" in changes:
            log.info("Order %s: %s -> %s", order.id, order.status, updated.status)
        return updated

    async def update_status(self, order_id: str, new_status: OrderStatus) -> AnyOrder:
        order = await self._load(order_id)
        # Staying put is not a transition
        if not is_valid_transition(order.status, new_status):
            raise InvalidTransition(order.status, new_status)
        return await self.update_order(order_id, status=new_status)

    async def set_price(self, order_id: str, price: float) -> AnyOrder:
        return await self.update_order(order_id, price=price)

    async def update_shipping_details(
        self, order_id: str, details: ShippingDetails, notes: Optional[str] = None
    ) -> AnyOrder:
        extra = {"notes": notes} if notes is not None else None
        return await self.update_order(order_id, shipping=details.model_dump(), extra=extra)

    async def mark_paid(
        self,
        order_id: str,
        receipt: PaymentReceipt,
        shipping: Optional[ShippingDetails] = None,
    ) -> AnyOrder:
        """Same payment id again is a no-op; a second, different payment is refused."""
        order = await self._load(order_id)
        if order.payment_status == "paid":
            if order.payment_id == receipt.payment_id:
                return order
            raise InvalidInput(f"Order {order.id} is already paid")
        if order.type == "custom" and order.price is None:
            raise PriceNotSet(order.id)
        if not can_confirm_payment(order):
            raise InvalidTransition(order.status, "confirmed")

        changes = {
            **receipt.model_dump(exclude_none=True),
            **_shipping_fields(shipping),
            "status": "confirmed",
            "payment_status": "paid",
        }
        try:
            updated = await self._write(order, changes, {"payment_status": {"$ne": "paid"}})
        except InvalidTransition:
            fresh = await self._load(order_id)
            if fresh.payment_status == "paid" and fresh.payment_id == receipt.payment_id:
                return fresh
            raise
        log.info("Order %s paid with %s", order.id, receipt.payment_id)
        return updated
