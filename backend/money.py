import math


def round_money(x: float) -> float:
    return round(float(x or 0), 2)


def final_amount(base: float, discount: float) -> float:
    """Amount owed after discount. Never negative."""
    return max(0.0, round_money(base - discount))


def chargeable(amount: float, minimum: float) -> float:
    return max(float(minimum), round_money(amount))


def amount_to_pay(amount: float, minimum: float) -> float:
    # Whole rupees only; anything smaller than the gateway minimum is lifted to it
    return float(max(minimum, math.floor(amount)))


def to_subunits(amount: float) -> int:
    """Rupees -> paise, as the gateway expects."""
    return int(round(amount * 100))
