"""
Invoice Reconciler

Closes a subscription's billing period:

    base + max(0, assets - included_assets) * asset_uplift_rate
         + max(0, credits_used - included_credits) * overage_per_credit_rate
         + tax

Local state is written first, in one transaction: the invoice row, the
credit reset and the period advance. The payment processor mirror is pushed
afterwards and may fail without undoing anything; such invoices keep a
pending/failed sync status and are retried by sync_pending_invoices().

A period is only closed once it has ended. Generating again for the same
period, or again before the next one ends, returns the existing invoice.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple
import structlog

from ..core.periods import add_months, parse_timestamp, to_iso, utcnow
from ..errors import (
    ConcurrentInvoiceGeneration,
    InvalidPeriod,
    InvoiceNotFound,
    PeriodNotEnded,
    PlanNotFound,
    ProcessorPushFailure,
    SubscriptionNotFound,
)
from ..persistence.database import Database, get_database
from ..persistence.models import InvoiceRecord, SubscriptionRecord
from ..persistence.repository import (
    AssetSnapshotRepository,
    InvoiceRepository,
    PlanRepository,
    SubscriptionRepository,
    UsageRepository,
)

logger = structlog.get_logger()

CENT = Decimal("0.01")


def quantize_money(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


class InvoiceReconciler:
    """
    Period-close invoicing for subscriptions.

    Generation is serialized per subscription by an in-process lock; the
    (subscription_id, period_start) unique constraint and the conditional
    period advance cover multiple processes.
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        processor: Optional[Any] = None,
        tax_calculator: Optional[Callable[[Decimal], Decimal]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            db: Database handle
            processor: Payment processor (StripeIntegration or compatible)
            tax_calculator: Returns tax for a subtotal; tax is 0 when absent
            clock: Current time, compared against the period end
        """
        self.db = db or get_database()
        self.processor = processor
        self.tax_calculator = tax_calculator
        self.clock = clock
        self.plans = PlanRepository(self.db)
        self.subscriptions = SubscriptionRepository(self.db)
        self.usage = UsageRepository(self.db)
        self.assets = AssetSnapshotRepository(self.db)
        self.invoices = InvoiceRepository(self.db)
        self._locks: Dict[str, Lock] = {}
        self._locks_guard = Lock()

    def _lock_for(self, subscription_id: str) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(subscription_id)
            if lock is None:
                lock = self._locks[subscription_id] = Lock()
            return lock

    def generate_invoice(self, subscription_id: str, period_start: Optional[str] = None) -> Dict[str, Any]:
        """
        Invoice the subscription's current period and roll it forward.

        Args:
            subscription_id: Subscription to invoice
            period_start: Period the caller means to close. When it is an
                earlier, already closed period the existing invoice is
                returned, so a retrying scheduler never closes two periods.

        Raises:
            SubscriptionNotFound: unknown subscription
            PlanNotFound: the subscription's plan is missing
            InvalidPeriod: period_start is neither current nor invoiced
            PeriodNotEnded: the current period is still open and has no
                invoiced predecessor to return
            ConcurrentInvoiceGeneration: the period moved under us (rolled back)
        """
        with self._lock_for(subscription_id):
            subscription = self.subscriptions.get(subscription_id)
            if subscription is None:
                raise SubscriptionNotFound(subscription_id)

            if period_start is not None:
                requested = to_iso(period_start)
                if requested != subscription.current_period_start:
                    closed = self.invoices.get_for_period(subscription_id, requested)
                    if closed is None:
                        raise InvalidPeriod(
                            f"No invoice or open period starting {requested}",
                            {"subscription_id": subscription_id, "period_start": requested},
                        )
                    return self._result(closed, already_invoiced=True)

            plan = self.plans.get(subscription.plan_id)
            if plan is None:
                raise PlanNotFound(subscription.plan_id)

            period_start = subscription.current_period_start
            period_end = subscription.current_period_end

            existing = self.invoices.get_for_period(subscription_id, period_start)
            if existing is not None:
                logger.info(
                    "invoice_already_generated",
                    subscription_id=subscription_id,
                    invoice_id=existing.id,
                    period_start=period_start,
                )
                return self._result(existing, already_invoiced=True)

            if to_iso(self.clock()) < period_end:
                previous = self.invoices.list_for_subscription(subscription_id, limit=1)
                if previous and previous[0].period_end == period_start:
                    # Retry of the close that opened this period
                    logger.info(
                        "invoice_already_generated",
                        subscription_id=subscription_id,
                        invoice_id=previous[0].id,
                        period_start=previous[0].period_start,
                    )
                    return self._result(previous[0], already_invoiced=True)
                raise PeriodNotEnded(
                    f"Billing period of subscription {subscription_id} ends {period_end}",
                    {"subscription_id": subscription_id, "period_start": period_start, "period_end": period_end},
                )

            new_start = period_end
            new_end = to_iso(add_months(parse_timestamp(period_end), 1, subscription.anchor_day))

            asset_count = self.assets.latest_count(subscription.tenant_id)
            credits_used = self.usage.sum_credits(subscription_id, period_start, period_end)
            carried_over = self.usage.sum_credits(subscription_id, new_start)

            limits = self.subscriptions.get_limits(subscription_id)
            cached_consumed = limits.consumed_credits if limits else None
            drift = cached_consumed - credits_used - carried_over if cached_consumed is not None else None
            if drift:
                logger.warning(
                    "ledger_balance_drift",
                    subscription_id=subscription_id,
                    cached=cached_consumed,
                    ledger=credits_used + carried_over,
                    drift=drift,
                )

            asset_overage = max(0, asset_count - plan.included_assets)
            credit_overage = max(0, credits_used - plan.included_credits)

            base_amount = quantize_money(plan.base_price)
            asset_uplift = quantize_money(asset_overage * plan.asset_uplift_rate)
            usage_overage = quantize_money(credit_overage * plan.overage_per_credit_rate)
            subtotal = base_amount + asset_uplift + usage_overage
            tax = quantize_money(self.tax_calculator(subtotal)) if self.tax_calculator else quantize_money(Decimal("0"))
            total = subtotal + tax

            invoice = InvoiceRecord(
                subscription_id=subscription_id,
                period_start=period_start,
                period_end=period_end,
                base_amount=base_amount,
                asset_uplift_amount=asset_uplift,
                usage_overage_amount=usage_overage,
                subtotal=subtotal,
                tax=tax,
                total=total,
                asset_count=asset_count,
                credits_consumed=credits_used,
                currency=subscription.currency,
                meta={
                    "plan_code": plan.code,
                    "included_assets": plan.included_assets,
                    "asset_overage": asset_overage,
                    "asset_uplift_rate": str(plan.asset_uplift_rate),
                    "included_credits": plan.included_credits,
                    "credits_used": credits_used,
                    "credit_overage": credit_overage,
                    "overage_per_credit_rate": str(plan.overage_per_credit_rate),
                    "cached_credits_consumed": cached_consumed,
                    "ledger_drift": drift,
                },
            )

            reset_at = to_iso(utcnow())

            with self.db.connection() as conn:
                created = self.invoices.insert_if_absent(conn, invoice)
                if created:
                    self.subscriptions.reset_credits(
                        conn, subscription_id, plan.included_credits, reset_at, new_start
                    )
                    advanced = self.subscriptions.advance_period(
                        conn, subscription_id, period_start, new_start, new_end
                    )
                    if not advanced:
                        raise ConcurrentInvoiceGeneration(
                            f"Period of subscription {subscription_id} changed during invoicing",
                            {"subscription_id": subscription_id, "period_start": period_start},
                        )

            if not created:
                # Another process won the insert
                existing = self.invoices.get_for_period(subscription_id, period_start)
                return self._result(existing, already_invoiced=True)

            logger.info(
                "invoice_generated",
                invoice_id=invoice.id,
                subscription_id=subscription_id,
                period_start=period_start,
                total=str(total),
            )
            logger.info(
                "credits_reset",
                subscription_id=subscription_id,
                included_credits=plan.included_credits,
                carried_over=carried_over,
            )
            logger.info(
                "subscription_period_advanced",
                subscription_id=subscription_id,
                period_start=new_start,
                period_end=new_end,
            )

        invoice = self._push_to_processor(invoice, subscription)
        return self._result(invoice, already_invoiced=False)

    def _line_items(self, invoice: InvoiceRecord) -> List[Tuple[str, Decimal, str]]:
        period = f"{invoice.period_start[:10]} to {invoice.period_end[:10]}"
        plan_code = invoice.meta.get("plan_code", "")
        items = [("base", invoice.base_amount, f"{plan_code} subscription, {period}".strip())]
        if invoice.asset_uplift_amount > 0:
            items.append((
                "asset_uplift",
                invoice.asset_uplift_amount,
                f"Asset uplift: {invoice.meta.get('asset_overage')} assets over {invoice.meta.get('included_assets')}",
            ))
        if invoice.usage_overage_amount > 0:
            items.append((
                "usage_overage",
                invoice.usage_overage_amount,
                f"Usage overage: {invoice.meta.get('credit_overage')} credits over {invoice.meta.get('included_credits')}",
            ))
        if invoice.tax > 0:
            items.append(("tax", invoice.tax, "Tax"))
        return items

    def _push_to_processor(self, invoice: InvoiceRecord, subscription: SubscriptionRecord) -> InvoiceRecord:
        """
        Mirror a local invoice to the payment processor.

        Idempotency keys derive from the local invoice id, so a retry reuses
        whatever the processor already created.
        """
        if self.processor is None or not self.processor.is_available:
            logger.info("invoice_sync_deferred", invoice_id=invoice.id, reason="processor_not_configured")
            return invoice
        if not subscription.stripe_customer_id:
            logger.info("invoice_sync_deferred", invoice_id=invoice.id, reason="no_customer")
            return invoice

        customer_id = subscription.stripe_customer_id
        remote_id = invoice.stripe_invoice_id
        try:
            if remote_id is None:
                remote = self.processor.create_invoice(
                    customer_id=customer_id,
                    description=f"Reliability billing {invoice.period_start[:10]} to {invoice.period_end[:10]}",
                    metadata={
                        "invoice_id": invoice.id,
                        "subscription_id": invoice.subscription_id,
                        "tenant_id": subscription.tenant_id,
                    },
                    idempotency_key=f"inv_{invoice.id}_create",
                )
                remote_id = remote["id"]

            for key, amount, description in self._line_items(invoice):
                self.processor.add_invoice_item(
                    customer_id=customer_id,
                    invoice_id=remote_id,
                    amount=amount,
                    description=description,
                    idempotency_key=f"inv_{invoice.id}_{key}",
                )

            finalized = self.processor.finalize_invoice(
                remote_id,
                idempotency_key=f"inv_{invoice.id}_finalize",
            )
        except ProcessorPushFailure as e:
            logger.warning(
                "invoice_sync_failed",
                invoice_id=invoice.id,
                stripe_invoice_id=remote_id,
                error=e.message,
            )
            self.invoices.record_sync(invoice.id, "failed", stripe_invoice_id=remote_id, error=e.message)
            return self.invoices.get(invoice.id)

        self.invoices.record_sync(
            invoice.id,
            "synced",
            stripe_invoice_id=finalized["id"],
            stripe_hosted_url=finalized.get("hosted_invoice_url"),
        )
        logger.info("invoice_synced", invoice_id=invoice.id, stripe_invoice_id=finalized["id"])
        return self.invoices.get(invoice.id)

    def sync_invoice(self, invoice_id: str) -> Dict[str, Any]:
        """Retry the processor push for one invoice."""
        invoice = self.invoices.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFound(f"Invoice not found: {invoice_id}", {"invoice_id": invoice_id})
        if invoice.processor_sync_status == "synced":
            return self._result(invoice, already_invoiced=True)

        subscription = self.subscriptions.get(invoice.subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(invoice.subscription_id)
        return self._result(self._push_to_processor(invoice, subscription), already_invoiced=True)

    def sync_pending_invoices(self, limit: int = 100) -> Dict[str, Any]:
        """Retry sweep over invoices whose processor mirror is pending or failed."""
        counts = {"attempted": 0, "synced": 0, "failed": 0, "deferred": 0}

        for invoice in self.invoices.list_unsynced(limit):
            counts["attempted"] += 1
            result = self.sync_invoice(invoice.id)
            status = result["processor_sync_status"]
            if status == "synced":
                counts["synced"] += 1
            elif status == "failed":
                counts["failed"] += 1
            else:
                counts["deferred"] += 1

        logger.info("invoice_sync_sweep_completed", **counts)
        return counts

    def list_invoices(self, subscription_id: str) -> List[Dict[str, Any]]:
        if self.subscriptions.get(subscription_id) is None:
            raise SubscriptionNotFound(subscription_id)
        return [inv.to_dict() for inv in self.invoices.list_for_subscription(subscription_id)]

    def record_asset_snapshot(
        self,
        tenant_id: str,
        asset_count: int,
        captured_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Store a point-in-time asset count used by the next invoice."""
        captured = to_iso(captured_at) if captured_at else to_iso(utcnow())
        self.assets.record(tenant_id, asset_count, captured)
        return {"tenant_id": tenant_id, "asset_count": asset_count, "captured_at": captured}

    @staticmethod
    def _result(invoice: InvoiceRecord, already_invoiced: bool) -> Dict[str, Any]:
        return {
            "invoice_id": invoice.id,
            "subscription_id": invoice.subscription_id,
            "period_start": invoice.period_start,
            "period_end": invoice.period_end,
            "total": invoice.total,
            "currency": invoice.currency,
            "status": invoice.status,
            "stripe_invoice_id": invoice.stripe_invoice_id,
            "stripe_hosted_url": invoice.stripe_hosted_url,
            "processor_sync_status": invoice.processor_sync_status,
            "breakdown": invoice.breakdown(),
            "already_invoiced": already_invoiced,
        }
