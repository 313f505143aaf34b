from __future__ import annotations
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse


class BakeryError(Exception):
    """Base for every error surfaced to API callers."""

    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(BakeryError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidInput(BakeryError):
    status_code = 400
    code = "INVALID_INPUT"


class InvalidTransition(BakeryError):
    status_code = 409
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        super().__init__(message or f"Invalid status transition from {current} to {target}")
        self.current = current
        self.target = target


class PriceNotSet(BakeryError):
    status_code = 409
    code = "PRICE_NOT_SET"

    def __init__(self, order_id: str):
        super().__init__("Order price not confirmed yet")
        self.order_id = order_id


class PaymentIntentFailed(BakeryError):
    status_code = 402
    code = "PAYMENT_FAILED"


class PersistenceAfterPaymentFailed(BakeryError):
    status_code = 500
    code = "PAYMENT_NOT_RECORDED"

    def __init__(self, payment_id: str):
        super().__init__(
            "Payment succeeded but order update failed. "
            f"Please contact support with payment ID: {payment_id}"
        )
        self.payment_id = payment_id


# Coupon rejections

class CouponNotFound(NotFound):
    code = "COUPON_NOT_FOUND"


class CouponNotYetValid(InvalidInput):
    code = "COUPON_NOT_YET_VALID"


class CouponExpired(InvalidInput):
    code = "COUPON_EXPIRED"


class MinimumNotMet(InvalidInput):
    code = "COUPON_MINIMUM_NOT_MET"


async def bakery_error_handler(request: Request, exc: BakeryError) -> JSONResponse:
    body = {"success": False, "error": exc.message, "code": exc.code}
    payment_id = getattr(exc, "payment_id", None)
    if payment_id:
        body["payment_id"] = payment_id
    return JSONResponse(status_code=exc.status_code, content=body)
