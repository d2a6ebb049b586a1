from __future__ import annotations

import math
from decimal import Decimal
from typing import Mapping, Optional, Union

from ..config import LedgerSettings, get_settings
from ..errors import InvalidPlan


Number = Union[int, float, Decimal, str]

DEFAULT_PLAN_PRICES: Mapping[str, Number] = {"starter": 75, "pro": 180, "premium": 375}
DEFAULT_CURRENCY_TO_USD: Number = "0.27"
DEFAULT_USD_PER_CREDIT: Number = "0.01"


def _decimal(value: Number) -> Decimal:
    # str() first so binary floats like 0.27 convert to their literal value.
    return value if isinstance(value, Decimal) else Decimal(str(value))


class PlanPricing:
    """
    Maps a plan id to its fixed monthly credit allotment.

    Credits = ceil(plan price * currency-to-USD rate / USD per credit),
    computed in Decimal so the rounding does not depend on float error.
    """

    def __init__(
        self,
        plan_prices: Optional[Mapping[str, Number]] = None,
        currency_to_usd: Number = DEFAULT_CURRENCY_TO_USD,
        usd_per_credit: Number = DEFAULT_USD_PER_CREDIT,
    ) -> None:
        prices = plan_prices if plan_prices is not None else DEFAULT_PLAN_PRICES
        self._prices = {plan: _decimal(price) for plan, price in prices.items()}
        self._currency_to_usd = _decimal(currency_to_usd)
        self._usd_per_credit = _decimal(usd_per_credit)
        if self._usd_per_credit <= 0:
            raise ValueError("usd_per_credit must be positive")

    @classmethod
    def from_settings(cls, settings: Optional[LedgerSettings] = None) -> "PlanPricing":
        settings = settings or get_settings()
        return cls(
            plan_prices=settings.PLAN_PRICES,
            currency_to_usd=settings.CURRENCY_TO_USD,
            usd_per_credit=settings.USD_PER_CREDIT,
        )

    def is_known(self, plan_id: str) -> bool:
        return plan_id in self._prices

    def credits_for(self, plan_id: str) -> int:
        price = self._prices.get(plan_id)
        if price is None:
            raise InvalidPlan(f"Invalid planId: {plan_id}")
        return math.ceil(price * self._currency_to_usd / self._usd_per_credit)
