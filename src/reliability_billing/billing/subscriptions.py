"""
Subscription Service

Creates subscriptions from the plan catalogue and links them to a payment
processor customer. A subscription copies the plan's credit allowance into
its SubscriptionLimits at creation time.
"""

from datetime import date, datetime
from typing import Any, Dict, Optional, Union
import structlog

from ..core.periods import add_months, parse_timestamp, to_iso, utcnow
from ..errors import ActiveSubscriptionExists, PlanNotFound, ProcessorPushFailure, SubscriptionNotFound
from ..persistence.database import Database, get_database
from ..persistence.models import SubscriptionLimitsRecord, SubscriptionRecord
from ..persistence.repository import PlanRepository, SubscriptionRepository

logger = structlog.get_logger()


class SubscriptionService:
    """Subscription lifecycle operations."""

    def __init__(
        self,
        db: Optional[Database] = None,
        processor: Optional[Any] = None,
        currency: str = "CAD",
    ):
        self.db = db or get_database()
        self.processor = processor
        self.currency = currency
        self.plans = PlanRepository(self.db)
        self.subscriptions = SubscriptionRepository(self.db)

    def create_subscription(
        self,
        tenant_id: str,
        plan_code: str,
        start_date: Optional[Union[str, date, datetime]] = None,
    ) -> Dict[str, Any]:
        """
        Start a subscription on a plan.

        The first period is [start, start + 1 calendar month). The day of
        start_date becomes the anchor day for every later period.

        Raises:
            PlanNotFound: no active plan with that code
            ActiveSubscriptionExists: the tenant already has a live subscription
        """
        plan = self.plans.get_by_code(plan_code)
        if plan is None or not plan.is_active:
            raise PlanNotFound(plan_code)

        existing = self.subscriptions.get_active_for_tenant(tenant_id)
        if existing is not None:
            logger.warning("subscription_already_active", tenant_id=tenant_id, subscription_id=existing.id)
            raise ActiveSubscriptionExists(
                f"Tenant {tenant_id} already has subscription {existing.id}",
                {"tenant_id": tenant_id, "subscription_id": existing.id},
            )

        start = parse_timestamp(start_date) if start_date is not None else utcnow()
        end = add_months(start, 1, anchor_day=start.day)

        subscription = SubscriptionRecord(
            tenant_id=tenant_id,
            plan_id=plan.id,
            current_period_start=to_iso(start),
            current_period_end=to_iso(end),
            anchor_day=start.day,
            currency=self.currency,
        )
        limits = SubscriptionLimitsRecord(
            subscription_id=subscription.id,
            included_assets=plan.included_assets,
            included_credits=plan.included_credits,
            remaining_credits=plan.included_credits,
            last_reset_at=subscription.current_period_start,
        )
        self.subscriptions.create(subscription, limits)

        return {
            "subscription_id": subscription.id,
            "tenant_id": tenant_id,
            "status": subscription.status,
            "plan_code": plan.code,
            "current_period_start": subscription.current_period_start,
            "current_period_end": subscription.current_period_end,
            "included_credits": plan.included_credits,
        }

    def require(self, subscription_id: str) -> SubscriptionRecord:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)
        return subscription

    def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Subscription with its plan and current credit balance."""
        subscription = self.require(subscription_id)
        plan = self.plans.get(subscription.plan_id)
        limits = self.subscriptions.get_limits(subscription_id)
        return {
            "subscription": subscription.to_dict(),
            "plan": plan.to_dict() if plan else None,
            "limits": limits.to_dict() if limits else None,
        }

    def attach_customer(
        self,
        subscription_id: str,
        email: str,
        name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a payment processor customer and link it to the subscription."""
        subscription = self.require(subscription_id)
        if self.processor is None or not self.processor.is_available:
            raise ProcessorPushFailure("Payment processor is not configured")

        customer = self.processor.create_customer(
            tenant_id=subscription.tenant_id,
            email=email,
            name=name,
            metadata={"subscription_id": subscription_id},
        )
        self.subscriptions.link_customer(subscription_id, customer.customer_id)

        return {
            "subscription_id": subscription_id,
            "stripe_customer_id": customer.customer_id,
            "email": email,
        }
