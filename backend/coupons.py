from __future__ import annotations
import re
from datetime import datetime
from typing import Optional, Union

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from app_logger import get_logger
from database import COUPONS, serialize, to_oid
from errors import (
    CouponExpired,
    CouponNotFound,
    CouponNotYetValid,
    InvalidInput,
    MinimumNotMet,
    NotFound,
)
from money import round_money
from schemas import AppliedCoupon, Coupon, CouponApplied, CouponOut, CouponUpdate

log = get_logger("coupons")

DiscountParams = Union[Coupon, AppliedCoupon, CouponApplied]


def _code_filter(code: str) -> dict:
    # Exact match, case-insensitive
    return {"code": {"$regex": f"^{re.escape(code.strip())}$", "$options": "i"}}


def compute_discount(coupon: DiscountParams, amount: float) -> float:
    """Discount a coupon grants on ``amount``, clamped to the amount itself."""
    if coupon.discount_type == "percentage":
        discount = amount * coupon.discount_value / 100
    else:
        discount = coupon.discount_value
    return round_money(min(max(discount, 0.0), amount))


def applied_snapshot(coupon: DiscountParams, amount: float) -> CouponApplied:
    return CouponApplied(
        code=coupon.code,
        discount_type=coupon.discount_type,
        discount_value=coupon.discount_value,
        discount_amount=compute_discount(coupon, amount),
    )


class CouponEngine:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def validate(self, code: str, order_amount: float, now: Optional[datetime] = None) -> CouponOut:
        """Check ``code`` against ``order_amount`` at ``now``.

        Nothing is consumed: coupons are promotional and any customer may
        apply an active one as often as they like, so calling this twice with
        the same inputs gives the same answer.
        """
        if not code or not code.strip():
            raise InvalidInput("Valid coupon code is required")
        if order_amount is None or order_amount < 0:
            raise InvalidInput("Valid order amount is required")

        doc = await self.db[COUPONS].find_one({**_code_filter(code), "is_active": True})
        if not doc:
            log.info("No active coupon for code %r", code)
            raise CouponNotFound(f"No active coupon found with code: {code.strip()}")
        coupon = CouponOut(**serialize(doc))

        now = now or datetime.utcnow()
        if now < coupon.valid_from:
            raise CouponNotYetValid(f'Coupon "{coupon.code}" valid from {coupon.valid_from:%d/%m/%Y}')
        if now > coupon.valid_until:
            raise CouponExpired(f'Coupon "{coupon.code}" expired on {coupon.valid_until:%d/%m/%Y}')

        minimum = coupon.min_order_amount or 0
        if minimum > 0 and order_amount < minimum:
            raise MinimumNotMet(f"Requires minimum order of ₹{minimum:g} (current: ₹{order_amount:g})")
        return coupon

    async def list_coupons(self) -> list[CouponOut]:
        docs = []
        async for d in self.db[COUPONS].find({}).sort([("created_at", -1)]):
            docs.append(CouponOut(**serialize(d)))
        return docs

    async def create_coupon(self, coupon: Coupon) -> CouponOut:
        if await self.db[COUPONS].find_one(_code_filter(coupon.code)):
            raise InvalidInput("Coupon code already exists")
        now = datetime.utcnow()
        data = {**coupon.model_dump(), "created_at": now, "updated_at": now}
        try:
            result = await self.db[COUPONS].insert_one(data)
        except DuplicateKeyError:
            raise InvalidInput("Coupon code already exists")
        log.info("Created coupon %s", coupon.code)
        return CouponOut(id=str(result.inserted_id), **coupon.model_dump())

    async def update_coupon(self, coupon_id: str, changes: CouponUpdate) -> CouponOut:
        oid = to_oid(coupon_id)
        doc = await self.db[COUPONS].find_one({"_id": oid})
        if not doc:
            raise NotFound("Coupon not found")
        merged = {**serialize(doc), **changes.model_dump(exclude_unset=True)}
        # Re-run the window and percentage checks on the merged record
        try:
            updated = CouponOut(**merged)
        except ValueError as e:
            raise InvalidInput(str(e))
        fields = updated.model_dump(exclude={"id", "code"})
        await self.db[COUPONS].update_one(
            {"_id": oid}, {"$set": {**fields, "updated_at": datetime.utcnow()}}
        )
        return updated

    async def delete_coupon(self, coupon_id: str) -> None:
        result = await self.db[COUPONS].delete_one({"_id": to_oid(coupon_id)})
        if result.deleted_count == 0:
            raise NotFound("Coupon not found")
