"""
Tests for the Invoice Reconciler

Local invoice, credit reset and period advance always complete; the Stripe
mirror is best-effort and retried by the sync sweep.
"""

import threading
from decimal import Decimal

import pytest

from reliability_billing.billing.invoicing import InvoiceReconciler
from reliability_billing.core.periods import parse_timestamp
from reliability_billing.errors import InvalidPeriod, InvoiceNotFound, PeriodNotEnded, SubscriptionNotFound
from reliability_billing.persistence.repository import InvoiceRepository, SubscriptionRepository


@pytest.fixture
def reconciler(db, processor, after_first_period):
    return InvoiceReconciler(db, processor, clock=after_first_period)


def burn_credits(ledger, subscription_id, credits):
    """Track LLM usage worth exactly `credits` credits."""
    ledger.track_usage(
        "tenant-1", subscription_id, "LLM_token_usage", meta={"total_tokens": credits * 1000}
    )


class TestInvoiceMath:

    def test_base_only(self, reconciler, starter):
        result = reconciler.generate_invoice(starter["subscription_id"])

        assert result["breakdown"]["base"] == Decimal("4000.00")
        assert result["breakdown"]["asset_uplift"] == Decimal("0.00")
        assert result["breakdown"]["usage_overage"] == Decimal("0.00")
        assert result["breakdown"]["tax"] == Decimal("0.00")
        assert result["total"] == Decimal("4000.00")
        assert result["already_invoiced"] is False

    def test_asset_and_usage_overage(self, db, reconciler, ledger, starter):
        sub_id = starter["subscription_id"]
        reconciler.record_asset_snapshot("tenant-1", 250)
        burn_credits(ledger, sub_id, 260_000)

        result = reconciler.generate_invoice(sub_id)

        assert result["breakdown"]["asset_uplift"] == Decimal("150.00")
        assert result["breakdown"]["usage_overage"] == Decimal("20.00")
        assert result["total"] == Decimal("4170.00")

        invoice = InvoiceRepository(db).get(result["invoice_id"])
        assert invoice.asset_count == 250
        assert invoice.credits_consumed == 260_000
        assert invoice.meta["credit_overage"] == 10_000
        assert invoice.meta["asset_overage"] == 50
        assert invoice.status == "open"

    def test_latest_asset_snapshot_wins(self, reconciler, starter):
        reconciler.record_asset_snapshot("tenant-1", 900, "2025-01-01T00:00:00Z")
        reconciler.record_asset_snapshot("tenant-1", 210, "2025-02-01T00:00:00Z")

        result = reconciler.generate_invoice(starter["subscription_id"])

        assert result["breakdown"]["asset_uplift"] == Decimal("30.00")

    def test_tax_calculator(self, db, processor, after_first_period, starter):
        reconciler = InvoiceReconciler(
            db, processor,
            tax_calculator=lambda subtotal: subtotal * Decimal("0.13"),
            clock=after_first_period,
        )

        result = reconciler.generate_invoice(starter["subscription_id"])

        assert result["breakdown"]["tax"] == Decimal("520.00")
        assert result["total"] == Decimal("4520.00")

    def test_invoice_frozen_after_plan_change(self, db, reconciler, starter):
        result = reconciler.generate_invoice(starter["subscription_id"])

        db.execute("UPDATE billing_plans SET base_price = ? WHERE code = ?", ("9999.00", "STARTER"))

        invoice = InvoiceRepository(db).get(result["invoice_id"])
        assert invoice.base_amount == Decimal("4000.00")


class TestPeriodClose:

    def test_credits_reset_and_period_advanced(self, db, reconciler, ledger, starter):
        sub_id = starter["subscription_id"]
        burn_credits(ledger, sub_id, 300_000)

        reconciler.generate_invoice(sub_id)

        subs = SubscriptionRepository(db)
        limits = subs.get_limits(sub_id)
        subscription = subs.get(sub_id)
        assert limits.remaining_credits == 250_000
        assert subscription.current_period_start == starter["current_period_end"]

    def test_month_end_rollover(self, db, reconciler, subscription_service):
        created = subscription_service.create_subscription("tenant-9", "PRO", "2023-12-31T00:00:00Z")
        sub_id = created["subscription_id"]
        subs = SubscriptionRepository(db)

        assert parse_timestamp(created["current_period_end"]).date().isoformat() == "2024-01-31"

        reconciler.generate_invoice(sub_id)
        assert parse_timestamp(subs.get(sub_id).current_period_end).date().isoformat() == "2024-02-29"

        reconciler.generate_invoice(sub_id)
        assert parse_timestamp(subs.get(sub_id).current_period_end).date().isoformat() == "2024-03-31"

    def test_duplicate_call_for_same_period(self, db, reconciler, starter):
        sub_id = starter["subscription_id"]
        period_start = starter["current_period_start"]

        first = reconciler.generate_invoice(sub_id, period_start)
        second = reconciler.generate_invoice(sub_id, period_start)

        assert second["already_invoiced"] is True
        assert second["invoice_id"] == first["invoice_id"]
        assert len(InvoiceRepository(db).list_for_subscription(sub_id)) == 1
        # Advanced exactly once
        assert SubscriptionRepository(db).get(sub_id).current_period_start == starter["current_period_end"]

    def test_unknown_period_rejected(self, reconciler, starter):
        with pytest.raises(InvalidPeriod):
            reconciler.generate_invoice(starter["subscription_id"], "2001-01-01T00:00:00Z")

    def test_concurrent_generation_invoices_once(self, db, after_first_period, starter):
        sub_id = starter["subscription_id"]
        period_start = starter["current_period_start"]
        reconciler = InvoiceReconciler(db, clock=after_first_period)
        results = []

        def worker():
            results.append(reconciler.generate_invoice(sub_id, period_start))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 4
        assert len({r["invoice_id"] for r in results}) == 1
        assert sum(1 for r in results if not r["already_invoiced"]) == 1
        assert len(InvoiceRepository(db).list_for_subscription(sub_id)) == 1

    def test_unknown_subscription(self, reconciler):
        with pytest.raises(SubscriptionNotFound):
            reconciler.generate_invoice("missing")


class TestPeriodEnd:
    """Periods are closed on the real clock, once they are over."""

    def test_open_period_is_not_closed(self, db, processor, starter):
        sub_id = starter["subscription_id"]

        with pytest.raises(PeriodNotEnded):
            InvoiceReconciler(db, processor).generate_invoice(sub_id)

        assert InvoiceRepository(db).list_for_subscription(sub_id) == []
        assert SubscriptionRepository(db).get(sub_id).current_period_start == starter["current_period_start"]

    def test_open_period_named_explicitly(self, db, processor, starter):
        with pytest.raises(PeriodNotEnded):
            InvoiceReconciler(db, processor).generate_invoice(
                starter["subscription_id"], starter["current_period_start"]
            )

    def test_repeat_after_close_returns_same_invoice(self, db, processor, lapsed):
        sub_id = lapsed["subscription_id"]
        reconciler = InvoiceReconciler(db, processor)

        first = reconciler.generate_invoice(sub_id)
        second = reconciler.generate_invoice(sub_id)

        assert first["already_invoiced"] is False
        assert second["already_invoiced"] is True
        assert second["invoice_id"] == first["invoice_id"]
        # One base fee, one period advance
        assert len(InvoiceRepository(db).list_for_subscription(sub_id)) == 1
        assert SubscriptionRepository(db).get(sub_id).current_period_start == lapsed["current_period_end"]

    def test_usage_after_period_end_stays_burned(self, db, processor, ledger, lapsed):
        sub_id = lapsed["subscription_id"]
        # The first period is over, so this belongs to the next one
        ledger.track_usage("tenant-1", sub_id, "optimizer_job")

        result = InvoiceReconciler(db, processor).generate_invoice(sub_id)

        assert InvoiceRepository(db).get(result["invoice_id"]).credits_consumed == 0
        assert SubscriptionRepository(db).get_limits(sub_id).remaining_credits == 250_000 - 500
        report = ledger.check_consistency(sub_id)
        assert report["ledger_consumed"] == 500
        assert report["consistent"] is True

    def test_usage_after_close_billed_next_period(self, db, processor, ledger, after_first_period, lapsed):
        sub_id = lapsed["subscription_id"]
        InvoiceReconciler(db, processor).generate_invoice(sub_id)
        burn_credits(ledger, sub_id, 251_000)

        assert ledger.check_consistency(sub_id)["consistent"] is True

        later = InvoiceReconciler(db, processor, clock=after_first_period).generate_invoice(sub_id)

        assert later["period_start"] == lapsed["current_period_end"]
        assert later["breakdown"]["usage_overage"] == Decimal("2.00")


class TestProcessorSync:

    def test_pending_without_customer(self, reconciler, processor, starter):
        result = reconciler.generate_invoice(starter["subscription_id"])

        assert result["processor_sync_status"] == "pending"
        assert result["stripe_invoice_id"] is None
        assert processor.calls == []

    def test_pending_without_processor(self, db, lapsed):
        result = InvoiceReconciler(db).generate_invoice(lapsed["subscription_id"])
        assert result["processor_sync_status"] == "pending"

    def test_synced_with_line_items(self, reconciler, processor, subscription_service, ledger, starter):
        sub_id = starter["subscription_id"]
        subscription_service.attach_customer(sub_id, "ops@tenant-1.example")
        reconciler.record_asset_snapshot("tenant-1", 250)

        result = reconciler.generate_invoice(sub_id)

        assert result["processor_sync_status"] == "synced"
        assert result["stripe_invoice_id"] == "in_test_1"
        assert result["stripe_hosted_url"] == "https://invoice.stripe.test/in_test_1"

        items = [kw for name, kw in processor.calls if name == "add_invoice_item"]
        assert [i["amount"] for i in items] == [Decimal("4000.00"), Decimal("150.00")]
        assert all(i["idempotency_key"].startswith(f"inv_{result['invoice_id']}_") for i in items)
        assert processor.call_names()[-1] == "finalize_invoice"

    def test_failure_does_not_block_local_invoice(
        self, db, failing_processor, subscription_service, ledger, after_first_period, starter
    ):
        sub_id = starter["subscription_id"]
        subscription_service.attach_customer(sub_id, "ops@tenant-1.example")
        burn_credits(ledger, sub_id, 1000)

        result = InvoiceReconciler(db, failing_processor, clock=after_first_period).generate_invoice(sub_id)

        assert result["processor_sync_status"] == "failed"
        invoice = InvoiceRepository(db).get(result["invoice_id"])
        assert invoice.processor_sync_error
        assert invoice.processor_sync_attempts == 1
        assert SubscriptionRepository(db).get_limits(sub_id).remaining_credits == 250_000
        assert SubscriptionRepository(db).get(sub_id).current_period_start == starter["current_period_end"]

    def test_sync_sweep_retries_failed(self, db, failing_processor, processor, subscription_service, lapsed):
        sub_id = lapsed["subscription_id"]
        subscription_service.attach_customer(sub_id, "ops@tenant-1.example")
        failed = InvoiceReconciler(db, failing_processor).generate_invoice(sub_id)

        counts = InvoiceReconciler(db, processor).sync_pending_invoices()

        assert counts == {"attempted": 1, "synced": 1, "failed": 0, "deferred": 0}
        invoice = InvoiceRepository(db).get(failed["invoice_id"])
        assert invoice.processor_sync_status == "synced"
        assert invoice.processor_sync_attempts == 2
        assert invoice.stripe_invoice_id == "in_test_1"

    def test_sync_sweep_defers_without_customer(self, reconciler, starter):
        reconciler.generate_invoice(starter["subscription_id"])

        counts = reconciler.sync_pending_invoices()

        assert counts["deferred"] == 1
        assert counts["synced"] == 0

    def test_sync_unknown_invoice(self, reconciler):
        with pytest.raises(InvoiceNotFound):
            reconciler.sync_invoice("missing")
