"""
Persistence Layer for Reliability Billing

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, get_database
from .models import (
    GainShareRunRecord,
    InvoiceRecord,
    KPIBaselineRecord,
    KPIMeasurementRecord,
    PlanRecord,
    SubscriptionLimitsRecord,
    SubscriptionRecord,
    UsageEventRecord,
)
from .repository import (
    AssetSnapshotRepository,
    GainShareRepository,
    InvoiceRepository,
    KPIRepository,
    PlanRepository,
    SubscriptionRepository,
    UsageRepository,
)

__all__ = [
    "Database",
    "get_database",
    "GainShareRunRecord",
    "InvoiceRecord",
    "KPIBaselineRecord",
    "KPIMeasurementRecord",
    "PlanRecord",
    "SubscriptionLimitsRecord",
    "SubscriptionRecord",
    "UsageEventRecord",
    "AssetSnapshotRepository",
    "GainShareRepository",
    "InvoiceRepository",
    "KPIRepository",
    "PlanRepository",
    "SubscriptionRepository",
    "UsageRepository",
]
