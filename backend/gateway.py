from __future__ import annotations
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from app_logger import get_logger
from config import settings
from errors import PaymentIntentFailed
from money import to_subunits

log = get_logger("gateway")


@dataclass
class PaymentIntent:
    id: str
    amount: int  # paise
    currency: str
    receipt: str


class PaymentGateway(Protocol):
    key_id: str

    async def create_intent(self, amount: float, receipt: str) -> PaymentIntent: ...

    def verify_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> bool: ...


def sign(secret: str, gateway_order_id: str, payment_id: str) -> str:
    """HMAC-SHA256 over ``gateway_order_id|payment_id``, hex encoded."""
    message = f"{gateway_order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayGateway:
    """Razorpay Orders API over httpx.

    Only the server-side half lives here: creating the order the checkout
    widget pays against, and checking the signature the widget hands back.
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        api_url: str = "https://api.razorpay.com/v1",
        currency: str = "INR",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.api_url = api_url.rstrip("/")
        self.currency = currency
        self.timeout = timeout
        self.transport = transport

    async def create_intent(self, amount: float, receipt: str) -> PaymentIntent:
        if not self.key_id or not self.key_secret:
            raise PaymentIntentFailed("Payment gateway is not configured")
        payload = {
            "amount": to_subunits(amount),
            "currency": self.currency,
            "receipt": receipt,
            "payment_capture": 1,
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.api_url,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                resp = await client.post("/orders", json=payload)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            log.error("Razorpay rejected order for %s: %s %s", receipt, e.response.status_code, e.response.text[:200])
            raise PaymentIntentFailed("Failed to create payment order") from e
        except (httpx.HTTPError, ValueError) as e:
            log.error("Razorpay order request failed for %s: %s", receipt, e)
            raise PaymentIntentFailed("Failed to create payment order") from e

        return PaymentIntent(
            id=data["id"],
            amount=int(data.get("amount", payload["amount"])),
            currency=data.get("currency", self.currency),
            receipt=data.get("receipt", receipt),
        )

    def verify_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        if not signature or not self.key_secret:
            return False
        expected = sign(self.key_secret, gateway_order_id, payment_id)
        return hmac.compare_digest(expected, signature)


def get_gateway() -> PaymentGateway:
    return RazorpayGateway(
        key_id=settings.RAZORPAY_KEY_ID,
        key_secret=settings.RAZORPAY_KEY_SECRET,
        api_url=settings.RAZORPAY_API_URL,
        currency=settings.CURRENCY,
    )
