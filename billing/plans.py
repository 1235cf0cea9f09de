from dataclasses import dataclass
from typing import Optional

from billing.schemas import BillingCycle

CYCLE_DAYS = {BillingCycle.MONTHLY.value: 30, BillingCycle.YEARLY.value: 365}

TIER_RANK = {"basic": 1, "pro": 2, "business": 3}

CREDIT_PACKS = (50, 100, 250, 500)
CREDIT_PACK_PRICE = 0.05


@dataclass(frozen=True)
class Plan:
    id: str
    tier: str
    monthly_price: float
    yearly_price: float
    credits_per_month: int

    def price(self, cycle: str) -> float:
        return self.yearly_price if cycle == BillingCycle.YEARLY.value else self.monthly_price

    def credit_grant(self, cycle: str) -> int:
        return self.credits_per_month * 12 if cycle == BillingCycle.YEARLY.value else self.credits_per_month


PLANS = {
    plan.id: plan
    for plan in (
        Plan("basic", "basic", 9.99, 99.99, 300),
        Plan("pro", "pro", 19.99, 199.99, 900),
        Plan("business", "business", 49.99, 499.99, 2800),
    )
}


def get_plan(plan_id: Optional[str]) -> Optional[Plan]:
    return PLANS.get((plan_id or "").strip().lower())


def normalize_cycle(cycle: Optional[str]) -> str:
    return BillingCycle.YEARLY.value if cycle == BillingCycle.YEARLY.value else BillingCycle.MONTHLY.value


def cycle_days(cycle: Optional[str]) -> int:
    return CYCLE_DAYS[normalize_cycle(cycle)]


def days_from_amount(amount: Optional[float]) -> int:
    """Last-resort duration when neither the provider nor the stored order says."""
    return 365 if (amount or 0) > 50 else 30


def apple_product_id(plan_id: str, cycle: str) -> str:
    return f"com.morntool.{plan_id}.{normalize_cycle(cycle)}"


def parse_apple_product_id(product_id: str):
    parts = (product_id or "").split(".")
    if len(parts) != 4 or parts[0] != "com" or parts[1] != "morntool":
        return None, None
    return parts[2], parts[3]


# catalog prices are quoted in USD and charged 1:1 in CNY on the CN providers
USD_TO_CNY_RATE = 1.0
CNY_METHODS = ("alipay", "wechat")


def charge_for(method: str, amount_usd: float):
    if method in CNY_METHODS:
        return round(amount_usd * USD_TO_CNY_RATE, 2), "CNY"
    return round(amount_usd, 2), "USD"
