"""
Plan Catalogue

Pricing templates a subscription is created from. A plan is immutable per
version: subscriptions copy the credit allowance at creation time, and
issued invoices freeze the amounts they were computed with.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict


class PlanCode(Enum):
    STARTER = "STARTER"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


@dataclass(frozen=True)
class PlanTerms:
    """Pricing terms for one plan."""
    code: str
    name: str
    base_price: Decimal
    included_assets: int
    included_credits: int
    asset_uplift_rate: Decimal  # per asset beyond included_assets
    overage_per_credit_rate: Decimal
    max_sites: int

    @classmethod
    def for_code(cls, code: PlanCode) -> "PlanTerms":
        """Get the default terms for a plan code."""
        return DEFAULT_PLANS[code]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "base_price": self.base_price,
            "included_assets": self.included_assets,
            "included_credits": self.included_credits,
            "asset_uplift_rate": self.asset_uplift_rate,
            "overage_per_credit_rate": self.overage_per_credit_rate,
            "max_sites": self.max_sites,
        }


DEFAULT_PLANS: Dict[PlanCode, PlanTerms] = {
    PlanCode.STARTER: PlanTerms(
        code="STARTER",
        name="Starter (Pilot)",
        base_price=Decimal("4000.00"),
        included_assets=200,
        included_credits=250_000,
        asset_uplift_rate=Decimal("3.00"),
        overage_per_credit_rate=Decimal("0.002"),
        max_sites=1,
    ),
    PlanCode.PRO: PlanTerms(
        code="PRO",
        name="Pro (Scale)",
        base_price=Decimal("9000.00"),
        included_assets=1_000,
        included_credits=1_000_000,
        asset_uplift_rate=Decimal("3.00"),
        overage_per_credit_rate=Decimal("0.002"),
        max_sites=3,
    ),
    PlanCode.ENTERPRISE: PlanTerms(
        code="ENTERPRISE",
        name="Enterprise (Autonomous)",
        base_price=Decimal("18000.00"),
        included_assets=3_000,
        included_credits=5_000_000,
        asset_uplift_rate=Decimal("3.00"),
        overage_per_credit_rate=Decimal("0.0015"),
        max_sites=8,
    ),
}
