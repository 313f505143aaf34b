from __future__ import annotations
from motor.motor_asyncio import AsyncIOMotorDatabase

from app_logger import get_logger
from cart import Cart
from coupons import CouponEngine, applied_snapshot
from errors import InvalidInput, NotFound
from money import round_money
from products import ProductCatalog
from schemas import CheckoutDraft, OrderItem, SimpleOrderCreate

log = get_logger("checkout")


async def cart_from_draft(db: AsyncIOMotorDatabase, draft: CheckoutDraft, minimum: float) -> Cart:
    """Rebuild the cart from catalog prices so the client cannot set its own."""
    catalog = ProductCatalog(db)
    cart = Cart(minimum=minimum)
    for line in draft.items:
        try:
            product = await catalog.get_product(line.product_id)
        except (NotFound, InvalidInput):
            raise InvalidInput(f"Invalid product {line.product_id}")
        cart.add_item(product, line.quantity)
    return cart


async def build_simple_order(
    db: AsyncIOMotorDatabase,
    draft: CheckoutDraft,
    minimum: float,
    strict_coupon: bool = True,
) -> SimpleOrderCreate:
    """Price a checkout draft as the cart does. Reconciliation passes ``strict_coupon=False``."""
    cart = await cart_from_draft(db, draft, minimum)
    if draft.coupon_code:
        try:
            await cart.apply_coupon(CouponEngine(db), draft.coupon_code)
        except (InvalidInput, NotFound):
            if strict_coupon:
                raise
            log.warning("Coupon %s no longer valid at confirmation; recording without it", draft.coupon_code)

    items = [
        OrderItem(product_id=i.product_id, name=i.name, quantity=i.quantity, price=i.price, image=i.image)
        for i in cart.items
    ]
    return SimpleOrderCreate(
        customer=draft.customer,
        items=items,
        total=cart.subtotal,
        price=cart.final_total,
        final_amount=cart.final_total,
        discount_amount=round_money(cart.discount_amount),
        coupon=applied_snapshot(cart.coupon, cart.subtotal) if cart.coupon else None,
        shipping=draft.shipping,
        notes=draft.notes,
    )
