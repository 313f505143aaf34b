from __future__ import annotations
from typing import Optional

from coupons import CouponEngine, compute_discount
from errors import InvalidInput, NotFound
from money import chargeable, round_money
from schemas import AppliedCoupon, CartLine, CartOut, CartState, ProductOut


class Cart:
    """Client-held cart; loaded with ``from_state``, totals always derived."""

    def __init__(self, items: Optional[list[CartLine]] = None, coupon: Optional[AppliedCoupon] = None,
                 minimum: float = 1.0):
        self.items: list[CartLine] = [i.model_copy() for i in (items or [])]
        self.coupon = coupon
        self.minimum = minimum

    @classmethod
    def from_state(cls, state: CartState, minimum: float = 1.0) -> "Cart":
        return cls(state.items, state.coupon, minimum=minimum)

    def to_state(self) -> CartState:
        return CartState(items=[i.model_copy() for i in self.items], coupon=self.coupon)

    @property
    def subtotal(self) -> float:
        return round_money(sum(i.price * i.quantity for i in self.items))

    @property
    def discount_amount(self) -> float:
        if not self.coupon:
            return 0.0
        return compute_discount(self.coupon, self.subtotal)

    @property
    def final_total(self) -> float:
        if not self.items:
            return 0.0
        # Even a fully discounted cart is charged the gateway minimum
        return chargeable(self.subtotal - self.discount_amount, self.minimum)

    @property
    def item_count(self) -> int:
        return sum(i.quantity for i in self.items)

    def summary(self) -> CartOut:
        return CartOut(
            items=[i.model_copy() for i in self.items],
            coupon=self.coupon,
            subtotal=self.subtotal,
            discount_amount=self.discount_amount,
            final_total=self.final_total,
            item_count=self.item_count,
        )

    def _find(self, product_id: str) -> Optional[CartLine]:
        return next((i for i in self.items if i.product_id == product_id), None)

    def add_item(self, product: ProductOut, quantity: int = 1) -> None:
        if quantity < 1:
            raise InvalidInput("Quantity must be at least 1")
        line = self._find(product.id)
        if line:
            line.quantity += quantity
            return
        self.items.append(CartLine(
            product_id=product.id,
            name=product.name,
            price=product.price,
            image=product.image,
            quantity=quantity,
        ))

    def update_quantity(self, product_id: str, quantity: int) -> None:
        # Zero is not a removal; callers remove explicitly
        if quantity < 1:
            raise InvalidInput("Quantity must be at least 1")
        line = self._find(product_id)
        if not line:
            raise InvalidInput("Item is not in the cart")
        line.quantity = quantity

    def remove_item(self, product_id: str) -> None:
        before = len(self.items)
        self.items = [i for i in self.items if i.product_id != product_id]
        if len(self.items) == before:
            raise InvalidInput("Item is not in the cart")

    def clear(self) -> None:
        self.items = []
        self.coupon = None

    async def apply_coupon(self, engine: CouponEngine, code: str) -> float:
        """Validate ``code`` against the current subtotal and keep its parameters.

        Returns the discount it grants right now. A rejected code leaves the
        cart without a coupon.
        """
        self.coupon = None
        coupon = await engine.validate(code, self.subtotal)
        self.coupon = AppliedCoupon(
            code=coupon.code,
            discount_type=coupon.discount_type,
            discount_value=coupon.discount_value,
            min_order_amount=coupon.min_order_amount,
        )
        return self.discount_amount

    async def revalidate_coupon(self, engine: CouponEngine) -> None:
        """Drop the coupon if it no longer holds for the current subtotal."""
        if not self.coupon:
            return
        try:
            await self.apply_coupon(engine, self.coupon.code)
        except (InvalidInput, NotFound):
            self.coupon = None

    def remove_coupon(self) -> None:
        self.coupon = None
