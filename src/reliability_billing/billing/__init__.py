"""
RELIABILITY BILLING - Billing Module

Credit accounting and period reconciliation:
- Usage ledger with atomic balance decrement
- Subscription lifecycle
- Invoice reconciliation with best-effort Stripe mirroring
- Gain-share savings calculation and approval
- Stripe webhook status transitions
"""

from .ledger import UsageLedger, UsageResult, alert_for, usage_percent
from .subscriptions import SubscriptionService
from .invoicing import InvoiceReconciler, quantize_money
from .gainshare import DEFAULT_METRICS, GainShareCalculator, MetricModel, SavingsContext
from .stripe_integration import StripeCustomer, StripeIntegration, to_minor_units
from .webhooks import WebhookProcessor, map_subscription_status

__all__ = [
    "UsageLedger",
    "UsageResult",
    "alert_for",
    "usage_percent",
    "SubscriptionService",
    "InvoiceReconciler",
    "quantize_money",
    "DEFAULT_METRICS",
    "GainShareCalculator",
    "MetricModel",
    "SavingsContext",
    "StripeCustomer",
    "StripeIntegration",
    "to_minor_units",
    "WebhookProcessor",
    "map_subscription_status",
]
