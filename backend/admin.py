from __future__ import annotations
import re
from typing import Any, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from database import is_oid, to_oid
from orders import AnyOrder, OrderStore, allowed_transitions
from schemas import AdminOrderUpdate, TransitionsOut

SHIPPING_FIELDS = ("address", "city", "state", "pincode")
DELIVERY_FIELDS = ("delivery_date", "delivery_person", "delivery_contact")


def search_filter(q: Optional[str] = None, status: Optional[str] = None) -> dict[str, Any]:
    """Order id when ``q`` is one, otherwise a substring match on customer fields."""
    flt: dict[str, Any] = {}
    if q and q.strip():
        q = q.strip()
        if is_oid(q):
            flt["_id"] = to_oid(q)
        else:
            pattern = {"$regex": re.escape(q), "$options": "i"}
            flt["$or"] = [
                {"customer.name": pattern},
                {"customer.email": pattern},
                {"customer.phone": pattern},
            ]
    if status and status != "all":
        flt["status"] = status
    return flt


class AdminOrders:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.store = OrderStore(db)

    async def list_orders(self, q: Optional[str] = None, status: Optional[str] = None) -> list[AnyOrder]:
        return await self.store.find(search_filter(q, status))

    async def transitions(self, order_id: str) -> TransitionsOut:
        order = await self.store.get_order(order_id)
        return TransitionsOut(
            order_id=order.id,
            status=order.status,
            allowed=list(allowed_transitions(order.status)),
        )

    async def update_order(self, order_id: str, changes: AdminOrderUpdate) -> AnyOrder:
        data = changes.model_dump(exclude_unset=True)
        shipping = {k: data[k] for k in SHIPPING_FIELDS if data.get(k)}
        delivery = {k: data[k] for k in DELIVERY_FIELDS if k in data}
        return await self.store.update_order(
            order_id,
            status=data.get("status"),
            price=data.get("price"),
            shipping=shipping,
            extra=delivery,
        )
