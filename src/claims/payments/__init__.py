"""Cash payment verification for establishment VIP."""

from .ledger import CashVerificationLedger
from .pricing import ESTABLISHMENT_VIP_PRICES, VipPrice, available_durations, price_for

__all__ = [
    "CashVerificationLedger",
    "ESTABLISHMENT_VIP_PRICES",
    "VipPrice",
    "available_durations",
    "price_for",
]
