"""
Repository Layer for Reliability Billing

Provides CRUD operations for all persisted entities. Methods that take a
`conn` run inside the caller's transaction; the rest open their own.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import structlog

from ..core.periods import to_iso
from ..core.plans import DEFAULT_PLANS
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

logger = structlog.get_logger()


def _now() -> str:
    return to_iso(datetime.now(timezone.utc))


class PlanRepository:
    """Repository for the plan catalogue."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, plan: PlanRecord) -> PlanRecord:
        self.db.execute(
            """INSERT INTO billing_plans
               (id, code, name, base_price, included_assets, included_credits,
                asset_uplift_rate, overage_per_credit_rate, max_sites, is_active, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            plan.to_db_tuple()
        )
        logger.info("plan_created", plan_id=plan.id, code=plan.code)
        return plan

    def get(self, plan_id: str) -> Optional[PlanRecord]:
        results = self.db.execute("SELECT * FROM billing_plans WHERE id = ?", (plan_id,))
        return PlanRecord.from_row(results[0]) if results else None

    def get_by_code(self, code: str) -> Optional[PlanRecord]:
        results = self.db.execute(
            "SELECT * FROM billing_plans WHERE code = ?",
            (code.upper(),)
        )
        return PlanRecord.from_row(results[0]) if results else None

    def list_active(self) -> List[PlanRecord]:
        """Active plans, cheapest first."""
        results = self.db.execute("SELECT * FROM billing_plans WHERE is_active = 1")
        plans = [PlanRecord.from_row(r) for r in results]
        return sorted(plans, key=lambda p: p.base_price)

    def seed_defaults(self) -> List[PlanRecord]:
        """Insert any default plan that is not in the catalogue yet."""
        created = []
        for terms in DEFAULT_PLANS.values():
            if self.get_by_code(terms.code) is None:
                created.append(self.create(PlanRecord.from_terms(terms)))
        return created


class SubscriptionRepository:
    """Repository for subscriptions and their cached credit balance."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(
        self,
        subscription: SubscriptionRecord,
        limits: SubscriptionLimitsRecord,
    ) -> SubscriptionRecord:
        """Insert a subscription and its limits atomically."""
        with self.db.connection() as conn:
            self.db.write(
                conn,
                """INSERT INTO billing_subscriptions
                   (id, tenant_id, plan_id, status, currency, current_period_start,
                    current_period_end, anchor_day, stripe_customer_id,
                    stripe_subscription_id, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                subscription.to_db_tuple()
            )
            self.db.write(
                conn,
                """INSERT INTO subscription_limits
                   (subscription_id, included_assets, included_credits,
                    remaining_credits, last_reset_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                limits.to_db_tuple()
            )
        logger.info(
            "subscription_created",
            subscription_id=subscription.id,
            tenant_id=subscription.tenant_id,
            plan_id=subscription.plan_id,
        )
        return subscription

    def get(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        results = self.db.execute(
            "SELECT * FROM billing_subscriptions WHERE id = ?",
            (subscription_id,)
        )
        return SubscriptionRecord.from_row(results[0]) if results else None

    def get_active_for_tenant(self, tenant_id: str) -> Optional[SubscriptionRecord]:
        results = self.db.execute(
            """SELECT * FROM billing_subscriptions
               WHERE tenant_id = ? AND status IN ('active', 'past_due')
               ORDER BY created_at DESC LIMIT 1""",
            (tenant_id,)
        )
        return SubscriptionRecord.from_row(results[0]) if results else None

    def get_limits(self, subscription_id: str) -> Optional[SubscriptionLimitsRecord]:
        results = self.db.execute(
            "SELECT * FROM subscription_limits WHERE subscription_id = ?",
            (subscription_id,)
        )
        return SubscriptionLimitsRecord.from_row(results[0]) if results else None

    def update_status(self, subscription_id: str, status: str) -> bool:
        rows = self._update_status("id", subscription_id, status)
        logger.info("subscription_status_updated", subscription_id=subscription_id, status=status)
        return rows > 0

    def update_status_by_stripe_subscription(self, stripe_subscription_id: str, status: str) -> bool:
        rows = self._update_status("stripe_subscription_id", stripe_subscription_id, status)
        logger.info(
            "subscription_status_updated",
            stripe_subscription_id=stripe_subscription_id,
            status=status,
            matched=rows,
        )
        return rows > 0

    def _update_status(self, column: str, value: str, status: str) -> int:
        with self.db.connection() as conn:
            return self.db.write(
                conn,
                f"UPDATE billing_subscriptions SET status = ?, updated_at = ? WHERE {column} = ?",
                (status, _now(), value)
            )

    def link_customer(
        self,
        subscription_id: str,
        stripe_customer_id: str,
        stripe_subscription_id: Optional[str] = None,
    ) -> bool:
        """Attach payment processor identifiers to a subscription."""
        with self.db.connection() as conn:
            rows = self.db.write(
                conn,
                """UPDATE billing_subscriptions
                   SET stripe_customer_id = ?,
                       stripe_subscription_id = COALESCE(?, stripe_subscription_id),
                       updated_at = ?
                   WHERE id = ?""",
                (stripe_customer_id, stripe_subscription_id, _now(), subscription_id)
            )
        logger.info(
            "subscription_customer_linked",
            subscription_id=subscription_id,
            stripe_customer_id=stripe_customer_id,
        )
        return rows > 0

    def reset_credits(
        self,
        conn: Any,
        subscription_id: str,
        included_credits: int,
        reset_at: str,
        period_start: str,
    ) -> int:
        """
        Reset the cached balance for the period starting at period_start.

        Usage already logged at or after period_start belongs to that period
        and stays burned. Runs in the caller's transaction.
        """
        return self.db.write(
            conn,
            """UPDATE subscription_limits
               SET included_credits = ?,
                   remaining_credits = ? - (
                       SELECT COALESCE(SUM(credits_consumed), 0) FROM usage_events
                       WHERE subscription_id = ? AND occurred_at >= ?
                   ),
                   last_reset_at = ?, updated_at = ?
               WHERE subscription_id = ?""",
            (included_credits, included_credits, subscription_id, period_start,
             reset_at, reset_at, subscription_id)
        )

    def advance_period(
        self,
        conn: Any,
        subscription_id: str,
        expected_start: str,
        new_start: str,
        new_end: str,
    ) -> int:
        """
        Move the subscription to its next period.

        Only matches while the period still starts at expected_start, so a
        second concurrent advance updates nothing.
        """
        return self.db.write(
            conn,
            """UPDATE billing_subscriptions
               SET current_period_start = ?, current_period_end = ?, updated_at = ?
               WHERE id = ? AND current_period_start = ?""",
            (new_start, new_end, _now(), subscription_id, expected_start)
        )


class UsageRepository:
    """Repository for the usage event ledger."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def record(self, event: UsageEventRecord) -> Optional[SubscriptionLimitsRecord]:
        """
        Append a usage event and decrement the cached balance in one transaction.

        The decrement is a single storage-level arithmetic update, so
        concurrent writers never lose each other's credits. Returns the
        balance after the decrement, or None (with nothing written) when the
        subscription has no limits row.
        """
        with self.db.connection() as conn:
            rows = self.db.write(
                conn,
                """UPDATE subscription_limits
                   SET remaining_credits = remaining_credits - ?, updated_at = ?
                   WHERE subscription_id = ?""",
                (event.credits_consumed, event.occurred_at, event.subscription_id)
            )
            if rows == 0:
                return None

            self.db.write(
                conn,
                """INSERT INTO usage_events
                   (id, tenant_id, subscription_id, site_id, asset_id, event_type,
                    units, credits_consumed, meta, occurred_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                event.to_db_tuple()
            )
            results = self.db.fetch(
                conn,
                "SELECT * FROM subscription_limits WHERE subscription_id = ?",
                (event.subscription_id,)
            )
        return SubscriptionLimitsRecord.from_row(results[0])

    def sum_credits(self, subscription_id: str, start: str, end: Optional[str] = None) -> int:
        """Sum of frozen credits over [start, end), or from start onward without an end."""
        query = """SELECT COALESCE(SUM(credits_consumed), 0) AS total
                   FROM usage_events
                   WHERE subscription_id = ? AND occurred_at >= ?"""
        params: List[Any] = [subscription_id, start]
        if end is not None:
            query += " AND occurred_at < ?"
            params.append(end)
        results = self.db.execute(query, tuple(params))
        return int(results[0]["total"]) if results else 0

    def summarize(
        self,
        subscription_id: str,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Per event type aggregates, optionally bounded to [start, end)."""
        query = """SELECT event_type,
                          COUNT(*) AS count,
                          COALESCE(SUM(units), 0) AS units,
                          COALESCE(SUM(credits_consumed), 0) AS credits
                   FROM usage_events WHERE subscription_id = ?"""
        params: List[Any] = [subscription_id]
        if start is not None:
            query += " AND occurred_at >= ?"
            params.append(start)
        if end is not None:
            query += " AND occurred_at < ?"
            params.append(end)
        query += " GROUP BY event_type ORDER BY event_type"
        return self.db.execute(query, tuple(params))

    def list_events(self, subscription_id: str, limit: int = 1000) -> List[UsageEventRecord]:
        results = self.db.execute(
            "SELECT * FROM usage_events WHERE subscription_id = ? ORDER BY occurred_at DESC LIMIT ?",
            (subscription_id, limit)
        )
        return [UsageEventRecord.from_row(r) for r in results]

    def overwrite_balance(self, subscription_id: str, remaining_credits: int) -> bool:
        """Replace the cached balance. Used only by the rebuild procedure."""
        with self.db.connection() as conn:
            rows = self.db.write(
                conn,
                "UPDATE subscription_limits SET remaining_credits = ?, updated_at = ? WHERE subscription_id = ?",
                (remaining_credits, _now(), subscription_id)
            )
        return rows > 0


class AssetSnapshotRepository:
    """Point-in-time asset counts from the inventory."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def record(self, tenant_id: str, asset_count: int, captured_at: Optional[str] = None) -> None:
        self.db.execute(
            "INSERT INTO asset_snapshots (tenant_id, asset_count, captured_at) VALUES (?, ?, ?)",
            (tenant_id, asset_count, captured_at or _now())
        )
        logger.info("asset_snapshot_recorded", tenant_id=tenant_id, asset_count=asset_count)

    def latest_count(self, tenant_id: str) -> int:
        """Most recent asset count, 0 if the tenant was never counted."""
        results = self.db.execute(
            """SELECT asset_count FROM asset_snapshots
               WHERE tenant_id = ? ORDER BY captured_at DESC, id DESC LIMIT 1""",
            (tenant_id,)
        )
        return results[0]["asset_count"] if results else 0


class InvoiceRepository:
    """Repository for invoices."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def insert_if_absent(self, conn: Any, invoice: InvoiceRecord) -> bool:
        """
        Insert unless an invoice already exists for (subscription, period_start).

        Returns True when this call created the row.
        """
        rows = self.db.write(
            conn,
            """INSERT INTO billing_invoices
               (id, subscription_id, period_start, period_end, base_amount,
                asset_uplift_amount, usage_overage_amount, subtotal, tax, total,
                currency, status, asset_count, credits_consumed, meta,
                stripe_invoice_id, stripe_hosted_url, processor_sync_status,
                processor_sync_error, processor_sync_attempts, paid_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (subscription_id, period_start) DO NOTHING""",
            invoice.to_db_tuple()
        )
        return rows > 0

    def get(self, invoice_id: str) -> Optional[InvoiceRecord]:
        results = self.db.execute("SELECT * FROM billing_invoices WHERE id = ?", (invoice_id,))
        return InvoiceRecord.from_row(results[0]) if results else None

    def get_for_period(self, subscription_id: str, period_start: str) -> Optional[InvoiceRecord]:
        results = self.db.execute(
            "SELECT * FROM billing_invoices WHERE subscription_id = ? AND period_start = ?",
            (subscription_id, period_start)
        )
        return InvoiceRecord.from_row(results[0]) if results else None

    def get_by_stripe_id(self, stripe_invoice_id: str) -> Optional[InvoiceRecord]:
        results = self.db.execute(
            "SELECT * FROM billing_invoices WHERE stripe_invoice_id = ?",
            (stripe_invoice_id,)
        )
        return InvoiceRecord.from_row(results[0]) if results else None

    def list_for_subscription(self, subscription_id: str, limit: int = 100) -> List[InvoiceRecord]:
        results = self.db.execute(
            "SELECT * FROM billing_invoices WHERE subscription_id = ? ORDER BY period_start DESC LIMIT ?",
            (subscription_id, limit)
        )
        return [InvoiceRecord.from_row(r) for r in results]

    def list_unsynced(self, limit: int = 100) -> List[InvoiceRecord]:
        """Invoices whose processor mirror is missing or failed."""
        results = self.db.execute(
            """SELECT * FROM billing_invoices
               WHERE processor_sync_status IN ('pending', 'failed')
               ORDER BY created_at ASC LIMIT ?""",
            (limit,)
        )
        return [InvoiceRecord.from_row(r) for r in results]

    def record_sync(
        self,
        invoice_id: str,
        status: str,
        stripe_invoice_id: Optional[str] = None,
        stripe_hosted_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Record the outcome of a processor push attempt."""
        with self.db.connection() as conn:
            self.db.write(
                conn,
                """UPDATE billing_invoices
                   SET processor_sync_status = ?,
                       stripe_invoice_id = COALESCE(?, stripe_invoice_id),
                       stripe_hosted_url = COALESCE(?, stripe_hosted_url),
                       processor_sync_error = ?,
                       processor_sync_attempts = processor_sync_attempts + 1
                   WHERE id = ?""",
                (status, stripe_invoice_id, stripe_hosted_url, error, invoice_id)
            )

    def update_status_by_stripe_id(
        self,
        stripe_invoice_id: str,
        status: str,
        paid_at: Optional[str] = None,
    ) -> Optional[InvoiceRecord]:
        """
        Set status (and paid_at) from a processor event; amounts are never touched.

        A paid invoice stays paid: events delivered out of order cannot move it
        back. Returns the invoice as stored, or None when it is unknown.
        """
        with self.db.connection() as conn:
            rows = self.db.write(
                conn,
                """UPDATE billing_invoices
                   SET status = ?, paid_at = COALESCE(?, paid_at)
                   WHERE stripe_invoice_id = ? AND (status != 'paid' OR ? = 'paid')""",
                (status, paid_at, stripe_invoice_id, status)
            )
            results = self.db.fetch(
                conn,
                "SELECT * FROM billing_invoices WHERE stripe_invoice_id = ?",
                (stripe_invoice_id,)
            )
        if not results:
            return None
        invoice = InvoiceRecord.from_row(results[0])
        if rows == 0:
            logger.info(
                "invoice_status_kept",
                stripe_invoice_id=stripe_invoice_id,
                status=invoice.status,
                requested=status,
            )
        else:
            logger.info("invoice_status_updated", stripe_invoice_id=stripe_invoice_id, status=status)
        return invoice


class KPIRepository:
    """Repository for KPI baselines and measurements."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def add_baseline(self, baseline: KPIBaselineRecord) -> KPIBaselineRecord:
        self.db.execute(
            """INSERT INTO kpi_baselines
               (id, tenant_id, metric, baseline_value, cost_per_unit,
                effective_from, effective_to, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            baseline.to_db_tuple()
        )
        logger.info("kpi_baseline_recorded", tenant_id=baseline.tenant_id, metric=baseline.metric)
        return baseline

    def close_open_baselines(self, tenant_id: str, metric: str, at: str) -> int:
        """End every open-ended revision of a metric that started before `at`."""
        with self.db.connection() as conn:
            return self.db.write(
                conn,
                """UPDATE kpi_baselines SET effective_to = ?
                   WHERE tenant_id = ? AND metric = ? AND effective_to IS NULL
                     AND effective_from < ?""",
                (at, tenant_id, metric, at)
            )

    def add_measurement(self, measurement: KPIMeasurementRecord) -> KPIMeasurementRecord:
        self.db.execute(
            """INSERT INTO kpi_measurements (id, tenant_id, metric, measured_value, measured_at)
               VALUES (?, ?, ?, ?, ?)""",
            measurement.to_db_tuple()
        )
        return measurement

    def baselines_overlapping(self, tenant_id: str, start: str, end: str) -> List[KPIBaselineRecord]:
        """Baselines whose [effective_from, effective_to) window overlaps [start, end)."""
        results = self.db.execute(
            """SELECT * FROM kpi_baselines
               WHERE tenant_id = ? AND effective_from < ?
                 AND (effective_to IS NULL OR effective_to > ?)
               ORDER BY effective_from ASC""",
            (tenant_id, end, start)
        )
        return [KPIBaselineRecord.from_row(r) for r in results]

    def measurements(self, tenant_id: str, metric: str, start: str, end: str) -> List[KPIMeasurementRecord]:
        results = self.db.execute(
            """SELECT * FROM kpi_measurements
               WHERE tenant_id = ? AND metric = ? AND measured_at >= ? AND measured_at < ?
               ORDER BY measured_at ASC""",
            (tenant_id, metric, start, end)
        )
        return [KPIMeasurementRecord.from_row(r) for r in results]

    def count_measurements(self, tenant_id: str, start: str, end: str) -> int:
        results = self.db.execute(
            """SELECT COUNT(*) AS cnt FROM kpi_measurements
               WHERE tenant_id = ? AND measured_at >= ? AND measured_at < ?""",
            (tenant_id, start, end)
        )
        return results[0]["cnt"] if results else 0


class GainShareRepository:
    """Repository for gain-share runs."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, run: GainShareRunRecord) -> GainShareRunRecord:
        self.db.execute(
            """INSERT INTO gainshare_runs
               (id, tenant_id, period_start, period_end, method, calculated_savings,
                share_pct, fee, currency, status, report, decided_at, decided_by, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            run.to_db_tuple()
        )
        return run

    def get(self, run_id: str) -> Optional[GainShareRunRecord]:
        results = self.db.execute("SELECT * FROM gainshare_runs WHERE id = ?", (run_id,))
        return GainShareRunRecord.from_row(results[0]) if results else None

    def list_for_tenant(self, tenant_id: str, limit: int = 100) -> List[GainShareRunRecord]:
        results = self.db.execute(
            "SELECT * FROM gainshare_runs WHERE tenant_id = ? ORDER BY created_at DESC LIMIT ?",
            (tenant_id, limit)
        )
        return [GainShareRunRecord.from_row(r) for r in results]

    def decide(self, run_id: str, status: str, decided_by: Optional[str] = None) -> bool:
        """Move a pending run to approved/rejected. False if it was not pending."""
        with self.db.connection() as conn:
            rows = self.db.write(
                conn,
                """UPDATE gainshare_runs
                   SET status = ?, decided_at = ?, decided_by = ?
                   WHERE id = ? AND status = 'pending_approval'""",
                (status, _now(), decided_by, run_id)
            )
        if rows:
            logger.info("gainshare_run_decided", run_id=run_id, status=status)
        return rows > 0
