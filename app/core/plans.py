"""Plan catalog shared by checkout creation and webhook fulfillment.

Both paths resolve plans through ``get_plan`` so the amount granted for a
plan always equals the amount priced for it at checkout.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, List, Optional

from app.core.settings import S


class UnknownPlan(ValueError):
    def __init__(self, plan_id: str) -> None:
        super().__init__(f"Unknown plan id: {plan_id!r}")
        self.plan_id = plan_id


@dataclass(frozen=True)
class Plan:
    plan_id: str
    display_credits: int
    native_credits: float
    is_subscription: bool
    interval: Optional[str] = None

    @property
    def price_env_var(self) -> str:
        return "STRIPE_PRICE_" + self.plan_id.upper().replace("-", "_")

    @property
    def price_id(self) -> str:
        return os.environ.get(self.price_env_var, "")


PLANS: Dict[str, Plan] = {
    p.plan_id: p
    for p in (
        Plan("monthly-basic", 1000, 300, True, "monthly"),
        Plan("monthly-pro", 2000, 600, True, "monthly"),
        Plan("monthly-enterprise", 3000, 900, True, "monthly"),
        Plan("credits-1500", 1500, 450, False),
        Plan("credits-6000", 6000, 1800, False),
        Plan("credits-15000", 15000, 4500, False),
    )
}


def get_plan(plan_id: Optional[str]) -> Plan:
    plan = PLANS.get(plan_id or "")
    if plan is None:
        raise UnknownPlan(plan_id or "")
    return plan


def list_plans(*, subscription: Optional[bool] = None) -> List[Plan]:
    plans = list(PLANS.values())
    if subscription is not None:
        plans = [p for p in plans if p.is_subscription == subscription]
    return plans


def display_credits(native: float) -> float:
    # user-facing credits are a fixed multiple of the key service's unit
    return round(float(native) * S.credit_display_multiplier, 2)
