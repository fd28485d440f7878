"""
Runtime configuration, read from the environment.
"""

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class BillingConfig:
    """Configuration for the billing service."""
    database_url: str = "sqlite:///reliability_billing.db"
    api_key: str = "dev-key-change-in-production"
    stripe_api_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_meter_event_name: str = "inference_credits"
    currency: str = "CAD"
    gainshare_min_pct: Decimal = Decimal("10")
    gainshare_max_pct: Decimal = Decimal("20")
    gainshare_estimated_repairs: int = 100
    cors_origins: str = "*"
    port: int = 8000
    debug: bool = False

    @classmethod
    def from_env(cls) -> "BillingConfig":
        """Build configuration from environment variables."""
        return cls(
            database_url=os.environ.get("DATABASE_URL", cls.database_url),
            api_key=os.environ.get("API_KEY", cls.api_key),
            stripe_api_key=os.environ.get("STRIPE_API_KEY"),
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET"),
            stripe_meter_event_name=os.environ.get(
                "STRIPE_METER_EVENT_NAME", cls.stripe_meter_event_name
            ),
            currency=os.environ.get("BILLING_CURRENCY", cls.currency).upper(),
            gainshare_min_pct=Decimal(os.environ.get("GAINSHARE_MIN_PCT", "10")),
            gainshare_max_pct=Decimal(os.environ.get("GAINSHARE_MAX_PCT", "20")),
            gainshare_estimated_repairs=int(
                os.environ.get("GAINSHARE_ESTIMATED_REPAIRS", cls.gainshare_estimated_repairs)
            ),
            cors_origins=os.environ.get("CORS_ORIGINS", cls.cors_origins),
            port=int(os.environ.get("PORT", cls.port)),
            debug=_env_bool("DEBUG"),
        )

    @property
    def cors_origin_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
