from __future__ import annotations
import hashlib
import json
import time
from datetime import datetime
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from app_logger import get_logger
from checkout import build_simple_order
from config import settings
from database import PAYMENT_INTENTS
from errors import (
    BakeryError,
    InvalidInput,
    InvalidTransition,
    PaymentIntentFailed,
    PersistenceAfterPaymentFailed,
    PriceNotSet,
)
from gateway import PaymentGateway
from money import amount_to_pay
from orders import AnyOrder, OrderStore, amount_due, can_confirm_payment
from outbox import OutboxEntry, PaymentOutbox
from schemas import (
    CheckoutDraft,
    PaymentConfirmIn,
    PaymentConfirmOut,
    PaymentIntentIn,
    PaymentIntentOut,
    PaymentReceipt,
    RecoveryOut,
)

log = get_logger("payments")


def _check_payable(order: AnyOrder) -> None:
    if order.payment_status == "paid":
        raise InvalidInput("Order is already paid")
    if order.type == "custom" and (order.status == "not confirmed" or order.price is None):
        raise PriceNotSet(order.id)
    if not can_confirm_payment(order):
        raise InvalidTransition(order.status, "confirmed")


def checkout_fingerprint(draft: CheckoutDraft) -> str:
    # Shipping and notes may still change between intent and payment
    body = draft.model_dump(mode="json", include={"customer", "items", "coupon_code"})
    return hashlib.sha256(json.dumps(body, sort_keys=True).encode("utf-8")).hexdigest()


def _same_amount(a: float, b: float) -> bool:
    return abs(a - b) < 0.01


class PaymentFlow:
    """Intent -> customer pays -> verify -> record.

    Every gateway order is saved with what it was issued for, so a signed
    callback can only settle the order and amount it was created for.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        gateway: PaymentGateway,
        outbox: PaymentOutbox,
        minimum: Optional[float] = None,
    ):
        self.db = db
        self.store = OrderStore(db)
        self.gateway = gateway
        self.outbox = outbox
        self.minimum = settings.MIN_CHARGEABLE_AMOUNT if minimum is None else minimum

    async def create_intent(self, req: PaymentIntentIn) -> PaymentIntentOut:
        binding: dict = {"order_id": req.order_id, "checkout_hash": None}
        if req.order_id:
            order = await self.store.get_order(req.order_id)
            _check_payable(order)
            if not (order.has_shipping() or req.shipping):
                raise InvalidInput("Shipping details are required before payment")
            due = amount_due(order)
            receipt = f"order_{order.id}"
        else:
            if not (req.checkout.shipping or req.shipping):
                raise InvalidInput("Shipping details are required before payment")
            draft = await build_simple_order(self.db, req.checkout, self.minimum)
            due = draft.final_amount
            receipt = f"order_{int(time.time() * 1000)}"
            binding["checkout_hash"] = checkout_fingerprint(req.checkout)

        amount = amount_to_pay(due, self.minimum)
        log.info("Creating payment intent for %s: %.2f", receipt, amount)
        intent = await self.gateway.create_intent(amount, receipt)
        await self.db[PAYMENT_INTENTS].insert_one({
            "_id": intent.id,
            **binding,
            "amount": amount,
            "receipt": receipt,
            "created_at": datetime.utcnow(),
        })
        return PaymentIntentOut(
            gateway_order_id=intent.id,
            amount=amount,
            amount_subunits=intent.amount,
            currency=intent.currency,
            key_id=self.gateway.key_id,
            order_id=req.order_id,
        )

    async def confirm(self, req: PaymentConfirmIn) -> PaymentConfirmOut:
        if not req.signature or not self.gateway.verify_signature(
            req.gateway_order_id, req.payment_id, req.signature
        ):
            log.warning("Rejected payment %s: invalid signature", req.payment_id)
            raise PaymentIntentFailed("Invalid payment signature")

        # Recorded before touching the database: from here on the money has moved
        now = datetime.utcnow()
        entry = await self.outbox.record(OutboxEntry(
            payment_id=req.payment_id,
            gateway_order_id=req.gateway_order_id,
            order_id=req.order_id,
            checkout=req.checkout,
            shipping=req.shipping or (req.checkout.shipping if req.checkout else None),
            amount=req.amount,
            signature=req.signature,
            created_at=now,
            updated_at=now,
        ))
        return await self._apply(entry)

    async def _apply(self, entry: OutboxEntry) -> PaymentConfirmOut:
        try:
            order = await self._persist(entry)
        except BakeryError as e:
            # Retrying will not help; keep the captured payment for staff
            await self.outbox.mark_attempt(entry.payment_id, e.message, rejected=True)
            log.error("Payment %s captured but rejected by order: %s", entry.payment_id, e.message)
            raise
        except Exception as e:
            await self.outbox.mark_attempt(entry.payment_id, repr(e))
            log.error("Payment %s captured but order write failed: %r", entry.payment_id, e)
            raise PersistenceAfterPaymentFailed(entry.payment_id) from e

        await self.outbox.complete(entry.payment_id)
        return PaymentConfirmOut(
            order_id=order.id,
            status=order.status,
            payment_status=order.payment_status,
            clear_cart=order.type == "simple",
        )

    async def _captured_amount(self, entry: OutboxEntry) -> float:
        """Amount the gateway order was issued for, once it is known to belong to ``entry``."""
        intent = await self.db[PAYMENT_INTENTS].find_one({"_id": entry.gateway_order_id})
        if not intent:
            raise PaymentIntentFailed("Unknown payment order")
        if entry.order_id:
            belongs = intent.get("order_id") == entry.order_id
        else:
            belongs = (
                intent.get("order_id") is None
                and intent.get("checkout_hash") == checkout_fingerprint(entry.checkout)
            )
        if not belongs:
            log.warning("Payment %s: gateway order %s was issued for another order",
                        entry.payment_id, entry.gateway_order_id)
            raise PaymentIntentFailed("Payment does not belong to this order")
        if not _same_amount(intent["amount"], entry.amount):
            raise PaymentIntentFailed("Payment amount does not match")
        return float(intent["amount"])

    def _check_charge(self, entry: OutboxEntry, due: float, captured: float) -> None:
        charged = amount_to_pay(due, self.minimum)
        if not _same_amount(charged, captured):
            log.warning("Payment %s captured %.2f but order is now priced at %.2f",
                        entry.payment_id, captured, charged)
            raise PaymentIntentFailed("Order amount changed since payment was started")

    async def _persist(self, entry: OutboxEntry) -> AnyOrder:
        captured = await self._captured_amount(entry)

        if entry.order_id:
            order = await self.store.get_order(entry.order_id)
            if order.payment_status == "paid" and order.payment_id == entry.payment_id:
                return order
            _check_payable(order)
            self._check_charge(entry, amount_due(order), captured)
            return await self.store.mark_paid(order.id, self._receipt(entry, captured), entry.shipping)

        # Cart checkout: the order is born here, already paid
        existing = await self.store.find_by_payment_id(entry.payment_id)
        if existing:
            return existing
        data = await build_simple_order(self.db, entry.checkout, self.minimum, strict_coupon=False)
        if entry.shipping:
            data.shipping = entry.shipping
        self._check_charge(entry, data.final_amount, captured)
        return await self.store.create_order(data, status="confirmed", payment=self._receipt(entry, captured))

    @staticmethod
    def _receipt(entry: OutboxEntry, captured: float) -> PaymentReceipt:
        return PaymentReceipt(
            payment_id=entry.payment_id,
            payment_amount=captured,
            payment_method="online",
            payment_signature=entry.signature,
        )

    async def replay_pending(self) -> RecoveryOut:
        """Retry every payment still waiting for its order write."""
        recovered = []
        for entry in await self.outbox.retryable():
            try:
                result = await self._apply(entry)
            except BakeryError:
                continue
            recovered.append(result.order_id)
        pending = [e.payment_id for e in await self.outbox.all()]
        if pending:
            log.warning("%d captured payment(s) still not recorded: %s", len(pending), ", ".join(pending))
        return RecoveryOut(recovered=recovered, pending=pending)

    async def recover(self, payment_id: str) -> PaymentConfirmOut:
        entry = await self.outbox.get(payment_id)
        if entry is None:
            existing = await self.store.find_by_payment_id(payment_id)
            if existing:
                return PaymentConfirmOut(
                    order_id=existing.id,
                    status=existing.status,
                    payment_status=existing.payment_status,
                    clear_cart=existing.type == "simple",
                )
            raise InvalidInput(f"No pending payment with ID: {payment_id}")
        return await self._apply(entry)
