"""
Usage Ledger

Records usage events and keeps the per-subscription credit balance.

The usage_events table is the source of truth. remaining_credits in
subscription_limits is a cached aggregate: it is decremented with a single
storage-level UPDATE in the same transaction as the event insert, and can
always be re-derived by summing the period's events (rebuild_balance).

Usage is never blocked at the limit. A negative balance is how overage is
represented and billed at period close.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
import structlog

from ..core.credits import CreditRuleTable, EventType, default_rule_table
from ..core.periods import month_bounds, to_iso
from ..errors import (
    BillingError,
    LedgerWriteFailure,
    ProcessorPushFailure,
    SubscriptionInactive,
    SubscriptionNotFound,
)
from ..persistence.database import Database, get_database
from ..persistence.models import SubscriptionLimitsRecord, SubscriptionRecord, UsageEventRecord
from ..persistence.repository import SubscriptionRepository, UsageRepository

logger = structlog.get_logger()

ALERT_OVERAGE = "OVERAGE"
ALERT_CRITICAL = "CRITICAL"
ALERT_WARNING = "WARNING"

CRITICAL_THRESHOLD = 90
WARNING_THRESHOLD = 75


def usage_percent(included_credits: int, remaining_credits: int) -> float:
    """Share of the allowance consumed. Not clamped, so overage exceeds 100."""
    if included_credits <= 0:
        return 0.0 if remaining_credits >= 0 else 100.0
    return round((included_credits - remaining_credits) / included_credits * 100, 2)


def alert_for(included_credits: int, remaining_credits: int) -> Optional[str]:
    """
    Advisory alert tier for a balance.

    Thresholds are compared on whole credits, never on the rounded
    usage_percent.
    """
    if remaining_credits < 0:
        return ALERT_OVERAGE
    consumed = included_credits - remaining_credits
    if consumed * 100 > CRITICAL_THRESHOLD * included_credits:
        return ALERT_CRITICAL
    if consumed * 100 > WARNING_THRESHOLD * included_credits:
        return ALERT_WARNING
    return None


@dataclass
class UsageResult:
    """Outcome of a tracked usage event."""
    event_id: str
    credits_burned: int
    remaining_credits: int
    included_credits: int
    overage_credits: int
    usage_percent: float
    alert: Optional[str]

    @classmethod
    def from_limits(cls, event_id: str, credits: int, limits: SubscriptionLimitsRecord) -> "UsageResult":
        percent = usage_percent(limits.included_credits, limits.remaining_credits)
        return cls(
            event_id=event_id,
            credits_burned=credits,
            remaining_credits=limits.remaining_credits,
            included_credits=limits.included_credits,
            overage_credits=max(0, -limits.remaining_credits),
            usage_percent=percent,
            alert=alert_for(limits.included_credits, limits.remaining_credits),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "credits_burned": self.credits_burned,
            "remaining_credits": self.remaining_credits,
            "included_credits": self.included_credits,
            "overage_credits": self.overage_credits,
            "usage_percent": self.usage_percent,
            "alert": self.alert,
        }


class UsageLedger:
    """
    Credit ledger for subscriptions.

    Usage:
        ledger = UsageLedger(db)
        result = ledger.track_usage(tenant_id, subscription_id, "optimizer_job")
        print(result.remaining_credits, result.alert)
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        rules: Optional[CreditRuleTable] = None,
        processor: Optional[Any] = None,
    ):
        self.db = db or get_database()
        self.rules = rules or default_rule_table
        self.processor = processor
        self.subscriptions = SubscriptionRepository(self.db)
        self.usage = UsageRepository(self.db)

    def _require_subscription(self, subscription_id: str) -> SubscriptionRecord:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)
        return subscription

    def _require_limits(self, subscription_id: str) -> SubscriptionLimitsRecord:
        limits = self.subscriptions.get_limits(subscription_id)
        if limits is None:
            raise SubscriptionNotFound(subscription_id)
        return limits

    def track_usage(
        self,
        tenant_id: str,
        subscription_id: str,
        event_type: str,
        units: Optional[float] = None,
        meta: Optional[Dict[str, Any]] = None,
        site_id: Optional[str] = None,
        asset_id: Optional[str] = None,
    ) -> UsageResult:
        """
        Record one usage event and burn its credits.

        Raises:
            UnknownEventType: no credit rule for event_type (nothing written)
            InvalidUsageEvent: per-unit rule without a usable quantity
            SubscriptionNotFound: unknown subscription or tenant mismatch
            SubscriptionInactive: subscription is cancelled
            LedgerWriteFailure: storage error; neither write was applied
        """
        meta = dict(meta or {})
        # Rule lookup happens before any read or write
        credits = self.rules.compute_credits(event_type, meta, units)
        raw_units = self.rules.raw_units(event_type, meta, units)

        subscription = self._require_subscription(subscription_id)
        if subscription.tenant_id != tenant_id:
            logger.warning(
                "usage_tenant_mismatch",
                subscription_id=subscription_id,
                tenant_id=tenant_id,
            )
            raise SubscriptionNotFound(subscription_id)
        if subscription.status == "cancelled":
            raise SubscriptionInactive(
                f"Subscription {subscription_id} is cancelled",
                {"subscription_id": subscription_id, "status": subscription.status},
            )

        event = UsageEventRecord(
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            event_type=event_type.value if isinstance(event_type, EventType) else event_type,
            units=raw_units,
            credits_consumed=credits,
            site_id=site_id,
            asset_id=asset_id,
            meta=meta,
        )

        try:
            limits = self.usage.record(event)
        except BillingError:
            raise
        except Exception as e:
            logger.error(
                "usage_write_failed",
                subscription_id=subscription_id,
                event_type=event.event_type,
                error=str(e),
            )
            raise LedgerWriteFailure(
                "Failed to record usage event",
                {"subscription_id": subscription_id, "event_type": event.event_type},
            ) from e

        if limits is None:
            logger.error("usage_limits_missing", subscription_id=subscription_id)
            raise LedgerWriteFailure(
                "Subscription has no credit balance",
                {"subscription_id": subscription_id},
            )

        result = UsageResult.from_limits(event.id, credits, limits)

        logger.info(
            "usage_tracked",
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            event_type=event.event_type,
            credits=credits,
            remaining=result.remaining_credits,
            alert=result.alert,
        )

        return result

    def usage_summary(self, subscription_id: str, period: Optional[str] = None) -> Dict[str, Any]:
        """
        Aggregate usage by event type.

        Args:
            subscription_id: Subscription to summarize
            period: Optional YYYY-MM month; all time when omitted
        """
        self._require_subscription(subscription_id)

        start = end = None
        if period:
            bounds = month_bounds(period)
            start, end = to_iso(bounds[0]), to_iso(bounds[1])

        by_type: Dict[str, Dict[str, Any]] = {}
        total = 0
        for row in self.usage.summarize(subscription_id, start, end):
            credits = int(row["credits"])
            by_type[row["event_type"]] = {
                "count": int(row["count"]),
                "units": float(row["units"]),
                "credits": credits,
            }
            total += credits

        return {
            "subscription_id": subscription_id,
            "period": period,
            "total_credits": total,
            "by_type": by_type,
        }

    def period_credits(self, subscription_id: str, start: str, end: str) -> int:
        """Credits consumed over [start, end) according to the event log."""
        return self.usage.sum_credits(subscription_id, to_iso(start), to_iso(end))

    def check_consistency(self, subscription_id: str) -> Dict[str, Any]:
        """
        Compare the cached balance with the event log for the current period.

        The cached balance counts every event since the period started,
        including any logged after its end that the next close carries over.
        """
        subscription = self._require_subscription(subscription_id)
        limits = self._require_limits(subscription_id)

        ledger_consumed = self.usage.sum_credits(subscription_id, subscription.current_period_start)
        cached_consumed = limits.consumed_credits
        drift = cached_consumed - ledger_consumed

        if drift:
            logger.warning(
                "ledger_balance_drift",
                subscription_id=subscription_id,
                cached=cached_consumed,
                ledger=ledger_consumed,
                drift=drift,
            )

        return {
            "subscription_id": subscription_id,
            "period_start": subscription.current_period_start,
            "period_end": subscription.current_period_end,
            "included_credits": limits.included_credits,
            "remaining_credits": limits.remaining_credits,
            "cached_consumed": cached_consumed,
            "ledger_consumed": ledger_consumed,
            "drift": drift,
            "consistent": drift == 0,
        }

    def rebuild_balance(self, subscription_id: str) -> Dict[str, Any]:
        """
        Re-derive remaining_credits from the event log.

        Operational recovery after a suspected drift; never run automatically.
        """
        before = self.check_consistency(subscription_id)
        remaining = before["included_credits"] - before["ledger_consumed"]
        self.usage.overwrite_balance(subscription_id, remaining)

        logger.info(
            "credit_balance_rebuilt",
            subscription_id=subscription_id,
            previous_remaining=before["remaining_credits"],
            remaining=remaining,
        )

        after = self.check_consistency(subscription_id)
        after["previous_remaining_credits"] = before["remaining_credits"]
        return after

    def report_usage(self, subscription_id: str, quantity: Optional[int] = None) -> Dict[str, Any]:
        """
        Report metered credits for the current period to the payment processor.

        The quantity defaults to the period's credits from the event log. The
        identifier is derived from the period and quantity, so re-reporting
        the same figure is a no-op at the processor.
        """
        subscription = self._require_subscription(subscription_id)
        if self.processor is None or not self.processor.is_available:
            raise ProcessorPushFailure("Payment processor is not configured")
        if not subscription.stripe_customer_id:
            raise ProcessorPushFailure(
                "Subscription has no payment processor customer",
                {"subscription_id": subscription_id},
            )

        if quantity is None:
            quantity = self.period_credits(
                subscription_id,
                subscription.current_period_start,
                subscription.current_period_end,
            )

        period_key = subscription.current_period_start[:10]
        report = self.processor.report_usage(
            customer_id=subscription.stripe_customer_id,
            quantity=quantity,
            idempotency_key=f"usage_{subscription_id}_{period_key}_{quantity}",
        )

        logger.info("usage_reported", subscription_id=subscription_id, quantity=quantity)
        return {"subscription_id": subscription_id, **report}
