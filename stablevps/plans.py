"""
StableVPS Plan Catalog
======================

Customer-facing plans and prices (EUR). Each plan ID is mapped to a
concrete product by every provider adapter.
"""

import calendar
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class BillingCycle(Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    monthly_price: float
    yearly_price: float
    platforms: str
    specs: Dict[str, str] = field(default_factory=dict)

    def price(self, cycle: BillingCycle) -> float:
        return self.monthly_price if cycle == BillingCycle.MONTHLY else self.yearly_price

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "monthlyPrice": self.monthly_price,
            "yearlyPrice": self.yearly_price,
            "platforms": self.platforms,
            "specs": dict(self.specs),
        }


# Yearly prices give roughly two months free
PLANS: Dict[str, Plan] = {
    "basic": Plan(
        id="basic",
        name="Starter",
        monthly_price=12.49,
        yearly_price=124.90,
        platforms="1-2",
        specs={"cpu": "1 vCPU", "ram": "2.5 GB", "storage": "17 GB NVMe", "os": "Windows Server 2022"},
    ),
    "prime": Plan(
        id="prime",
        name="Professional",
        monthly_price=19.49,
        yearly_price=194.90,
        platforms="2-4",
        specs={"cpu": "2 vCPU", "ram": "4 GB", "storage": "35 GB NVMe", "os": "Windows Server 2022"},
    ),
    "pro": Plan(
        id="pro",
        name="Enterprise",
        monthly_price=34.49,
        yearly_price=344.90,
        platforms="4-8+",
        specs={"cpu": "4 vCPU", "ram": "8 GB", "storage": "65 GB NVMe", "os": "Windows Server 2022"},
    ),
}


def list_plans() -> List[Plan]:
    return list(PLANS.values())


def get_plan(plan_id: str) -> Optional[Plan]:
    return PLANS.get(plan_id)


def get_plan_price(plan_id: str, cycle: BillingCycle) -> float:
    """Price of a plan for one billing period. Raises KeyError for unknown plans."""
    return PLANS[plan_id].price(BillingCycle(cycle))


def to_cents(amount: float) -> int:
    return int(round(amount * 100))


def period_end(start: datetime, cycle: BillingCycle) -> datetime:
    """One billing period after `start`, clamping to the end of shorter months."""
    cycle = BillingCycle(cycle)
    if cycle == BillingCycle.YEARLY:
        year, month = start.year + 1, start.month
    else:
        year, month = start.year + start.month // 12, start.month % 12 + 1

    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)
