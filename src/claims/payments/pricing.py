"""Establishment VIP price list for cash purchases (THB)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

from claims.errors import ValidationError


@dataclass(frozen=True)
class VipPrice:
    duration_days: int
    price: int
    discount: int = 0  # percent
    original_price: int | None = None
    popular: bool = False


# Base price 3000 THB / 7 days; longer terms are discounted.
ESTABLISHMENT_VIP_PRICES: Final[tuple[VipPrice, ...]] = (
    VipPrice(duration_days=7, price=3000),
    VipPrice(duration_days=30, price=10800, discount=10, original_price=12000, popular=True),
    VipPrice(duration_days=90, price=25200, discount=30, original_price=36000),
    VipPrice(duration_days=365, price=54750, discount=50, original_price=109500),
)

_PRICES_BY_DURATION: Final[dict[int, VipPrice]] = {item.duration_days: item for item in ESTABLISHMENT_VIP_PRICES}


def available_durations() -> list[int]:
    return sorted(_PRICES_BY_DURATION)


def price_for(duration_days: int) -> VipPrice:
    try:
        duration = int(duration_days)
    except (TypeError, ValueError) as error:
        raise ValidationError(f"Invalid VIP duration: {duration_days}") from error
    price = _PRICES_BY_DURATION.get(duration)
    if price is None:
        raise ValidationError(
            f"Unsupported VIP duration {duration_days}; choose one of {available_durations()} days."
        )
    return price
