"""
Tests for the Usage Ledger

The event log is the source of truth; remaining_credits must always equal
included_credits minus the period's summed events.
"""

import threading
from datetime import datetime, timezone

import pytest

from reliability_billing.billing.ledger import UsageLedger, alert_for, usage_percent
from reliability_billing.errors import (
    InvalidUsageEvent,
    LedgerWriteFailure,
    SubscriptionInactive,
    SubscriptionNotFound,
    UnknownEventType,
)
from reliability_billing.persistence.repository import SubscriptionRepository, UsageRepository


def current_month() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m")


class TestTrackUsage:
    """Test usage recording and balance decrement."""

    def test_track_burns_credits(self, ledger, starter):
        result = ledger.track_usage(
            "tenant-1", starter["subscription_id"], "LLM_token_usage", meta={"total_tokens": 1500}
        )

        assert result.credits_burned == 2
        assert result.remaining_credits == 250_000 - 2
        assert result.overage_credits == 0
        assert result.alert is None

    def test_event_is_frozen_in_log(self, db, ledger, starter):
        ledger.track_usage(
            "tenant-1", starter["subscription_id"], "vision_frame_batch",
            meta={"frames": 150}, site_id="site-a", asset_id="pump-7",
        )

        events = UsageRepository(db).list_events(starter["subscription_id"])
        assert len(events) == 1
        assert events[0].credits_consumed == 10
        assert events[0].units == 150
        assert events[0].site_id == "site-a"
        assert events[0].meta == {"frames": 150}

    def test_unknown_event_type_writes_nothing(self, db, ledger, starter):
        with pytest.raises(UnknownEventType):
            ledger.track_usage("tenant-1", starter["subscription_id"], "teleport")

        assert UsageRepository(db).list_events(starter["subscription_id"]) == []
        limits = SubscriptionRepository(db).get_limits(starter["subscription_id"])
        assert limits.remaining_credits == 250_000

    def test_invalid_quantity_writes_nothing(self, db, ledger, starter):
        with pytest.raises(InvalidUsageEvent):
            ledger.track_usage("tenant-1", starter["subscription_id"], "LLM_token_usage", meta={})

        assert UsageRepository(db).list_events(starter["subscription_id"]) == []

    def test_unknown_subscription(self, ledger):
        with pytest.raises(SubscriptionNotFound):
            ledger.track_usage("tenant-1", "missing", "optimizer_job")

    def test_tenant_mismatch_is_not_found(self, ledger, starter):
        with pytest.raises(SubscriptionNotFound):
            ledger.track_usage("tenant-2", starter["subscription_id"], "optimizer_job")

    def test_cancelled_subscription_rejected(self, db, ledger, starter):
        SubscriptionRepository(db).update_status(starter["subscription_id"], "cancelled")

        with pytest.raises(SubscriptionInactive):
            ledger.track_usage("tenant-1", starter["subscription_id"], "optimizer_job")

    def test_past_due_still_records(self, db, ledger, starter):
        SubscriptionRepository(db).update_status(starter["subscription_id"], "past_due")

        result = ledger.track_usage("tenant-1", starter["subscription_id"], "optimizer_job")
        assert result.credits_burned == 500

    def test_storage_error_surfaces_as_ledger_failure(self, db, ledger, starter, monkeypatch):
        def broken(event):
            raise RuntimeError("disk full")

        monkeypatch.setattr(ledger.usage, "record", broken)

        with pytest.raises(LedgerWriteFailure):
            ledger.track_usage("tenant-1", starter["subscription_id"], "optimizer_job")


class TestOverageAndAlerts:
    """Usage is never blocked; a negative balance is overage."""

    def test_overage(self, ledger, starter):
        sub_id = starter["subscription_id"]
        # 250 simulator runs use the whole 250,000 allowance
        for _ in range(250):
            ledger.track_usage("tenant-1", sub_id, "simulator_run")

        result = ledger.track_usage("tenant-1", sub_id, "optimizer_job")

        assert result.remaining_credits == -500
        assert result.alert == "OVERAGE"
        assert result.overage_credits == abs(result.remaining_credits)
        assert result.usage_percent > 100

    def test_alert_tiers(self):
        assert alert_for(1000, -1) == "OVERAGE"
        assert alert_for(1000, 50) == "CRITICAL"
        assert alert_for(1000, 100) == "WARNING"
        assert alert_for(1000, 200) == "WARNING"
        assert alert_for(1000, 250) is None

    def test_alert_zero_allowance(self):
        assert alert_for(0, 0) is None
        assert alert_for(0, -1) == "OVERAGE"

    def test_just_over_critical_threshold(self, ledger, starter):
        # 225,001 of 250,000 credits rounds to 90.0% but is over the line
        result = ledger.track_usage(
            "tenant-1", starter["subscription_id"], "LLM_token_usage", meta={"total_tokens": 225_001_000}
        )

        assert result.remaining_credits == 24_999
        assert result.usage_percent == 90.0
        assert result.alert == "CRITICAL"

    def test_exactly_at_critical_threshold(self, ledger, starter):
        result = ledger.track_usage(
            "tenant-1", starter["subscription_id"], "LLM_token_usage", meta={"total_tokens": 225_000_000}
        )

        assert result.alert == "WARNING"

    def test_just_over_warning_threshold(self, ledger, starter):
        sub_id = starter["subscription_id"]
        at_line = ledger.track_usage("tenant-1", sub_id, "LLM_token_usage", meta={"total_tokens": 187_500_000})
        over = ledger.track_usage("tenant-1", sub_id, "LLM_token_usage", meta={"total_tokens": 1000})

        assert at_line.alert is None
        assert over.usage_percent == 75.0
        assert over.alert == "WARNING"

    def test_usage_percent_uses_included_allowance(self):
        assert usage_percent(250_000, 248_500) == 0.6
        assert usage_percent(1000, -500) == 150.0

    def test_usage_percent_zero_allowance(self):
        assert usage_percent(0, 0) == 0.0
        assert usage_percent(0, -5) == 100.0

    def test_warning_threshold_reached(self, ledger, starter):
        sub_id = starter["subscription_id"]
        # 200 runs = 200,000 of 250,000 credits = 80%
        for _ in range(200):
            result = ledger.track_usage("tenant-1", sub_id, "simulator_run")

        assert result.usage_percent == 80.0
        assert result.alert == "WARNING"


class TestConsistency:
    """The cached balance is re-derivable from the event log."""

    def test_balance_matches_event_sum(self, ledger, starter):
        sub_id = starter["subscription_id"]
        ledger.track_usage("tenant-1", sub_id, "LLM_token_usage", meta={"total_tokens": 12_345})
        ledger.track_usage("tenant-1", sub_id, "vision_frame_batch", meta={"frames": 999})
        ledger.track_usage("tenant-1", sub_id, "optimizer_job")

        report = ledger.check_consistency(sub_id)

        assert report["consistent"] is True
        assert report["ledger_consumed"] == 13 + 50 + 500
        assert report["included_credits"] - report["remaining_credits"] == report["ledger_consumed"]

    def test_concurrent_tracking_loses_no_credits(self, temp_db, db, starter):
        sub_id = starter["subscription_id"]
        errors = []

        def worker():
            worker_ledger = UsageLedger(db)
            try:
                for _ in range(10):
                    worker_ledger.track_usage("tenant-1", sub_id, "optimizer_job")
            except Exception as e:  # pragma: no cover - reported below
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        report = UsageLedger(db).check_consistency(sub_id)
        assert report["remaining_credits"] == 250_000 - 40 * 500
        assert report["consistent"] is True

    def test_rebuild_repairs_drift(self, db, ledger, starter):
        sub_id = starter["subscription_id"]
        ledger.track_usage("tenant-1", sub_id, "optimizer_job")
        UsageRepository(db).overwrite_balance(sub_id, 1)

        assert ledger.check_consistency(sub_id)["drift"] != 0

        result = ledger.rebuild_balance(sub_id)

        assert result["previous_remaining_credits"] == 1
        assert result["remaining_credits"] == 250_000 - 500
        assert result["consistent"] is True


class TestUsageSummary:

    def test_end_to_end_optimizer_jobs(self, ledger, starter):
        sub_id = starter["subscription_id"]
        for _ in range(3):
            ledger.track_usage("tenant-1", sub_id, "optimizer_job")

        summary = ledger.usage_summary(sub_id)

        assert summary["total_credits"] == 1500
        assert summary["by_type"]["optimizer_job"]["count"] == 3
        assert summary["by_type"]["optimizer_job"]["credits"] == 1500

    def test_period_filter(self, ledger, starter):
        sub_id = starter["subscription_id"]
        ledger.track_usage("tenant-1", sub_id, "LLM_token_usage", meta={"total_tokens": 2500})

        this_month = ledger.usage_summary(sub_id, current_month())
        long_ago = ledger.usage_summary(sub_id, "2001-01")

        assert this_month["total_credits"] == 3
        assert this_month["by_type"]["LLM_token_usage"]["units"] == 2500
        assert long_ago["total_credits"] == 0
        assert long_ago["by_type"] == {}

    def test_summary_is_idempotent(self, ledger, starter):
        sub_id = starter["subscription_id"]
        ledger.track_usage("tenant-1", sub_id, "simulator_run")
        ledger.track_usage("tenant-1", sub_id, "vision_frame_batch", meta={"frames": 42})

        assert ledger.usage_summary(sub_id) == ledger.usage_summary(sub_id)

    def test_unknown_subscription(self, ledger):
        with pytest.raises(SubscriptionNotFound):
            ledger.usage_summary("missing")


class TestReportUsage:

    def test_report_period_credits(self, ledger, processor, subscription_service, starter):
        sub_id = starter["subscription_id"]
        subscription_service.attach_customer(sub_id, "ops@tenant-1.example")
        ledger.track_usage("tenant-1", sub_id, "optimizer_job")

        result = ledger.report_usage(sub_id)

        assert result["quantity"] == 500
        name, kwargs = processor.calls[-1]
        assert name == "report_usage"
        assert kwargs["customer_id"] == "cus_tenant-1"

    def test_report_requires_customer(self, ledger, starter):
        from reliability_billing.errors import ProcessorPushFailure

        with pytest.raises(ProcessorPushFailure):
            ledger.report_usage(starter["subscription_id"])
