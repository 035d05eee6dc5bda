"""Subscription plans and their prices.

This is the only place plan prices live: order creation reads the amount to
charge from here and verification resolves the charged amount back to a plan
from the same table. Bump ``PLANS_VERSION`` whenever a price changes.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

PLANS_VERSION = 1
DEFAULT_CURRENCY = "INR"


@dataclass(frozen=True)
class Plan:
    key: str
    role: str
    subscription_type: str
    amount: int  # minor units (paise)
    duration: Optional[timedelta]  # None = lifetime
    rank: int

    @property
    def is_lifetime(self) -> bool:
        return self.duration is None


PRO_MONTHLY = Plan(
    key="pro",
    role="pro",
    subscription_type="pro_monthly",
    amount=14900,  # ₹149.00
    duration=timedelta(days=30),
    rank=1,
)
MAX_LIFETIME = Plan(
    key="max",
    role="max",
    subscription_type="max_lifetime",
    amount=149900,  # ₹1,499.00
    duration=None,
    rank=2,
)

PLANS = {p.key: p for p in (PRO_MONTHLY, MAX_LIFETIME)}
_PLANS_BY_AMOUNT = {p.amount: p for p in PLANS.values()}

ROLE_RANK = {"free": 0, **{p.role: p.rank for p in PLANS.values()}}


def get_plan(key) -> Optional[Plan]:
    return PLANS.get(key) if isinstance(key, str) else None


def resolve_plan(amount) -> tuple[Optional[Plan], bool]:
    """Map a gateway-reported charged amount to a plan.

    Unknown amounts resolve to ``(None, False)``; nothing is guessed or
    partially credited.
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        return None, False
    plan = _PLANS_BY_AMOUNT.get(amount)
    return plan, plan is not None
