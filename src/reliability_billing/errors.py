"""
Billing Error Taxonomy

Every error raised by the billing engine derives from BillingError and
carries the HTTP status and machine code the API renders it with.
"""

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for billing failures surfaced to callers."""
    status_code = 500
    code = "billing_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "ok": False,
            "error": self.message,
            "code": self.code,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class UnknownEventType(BillingError):
    """Raised when no credit rule is registered for an event type."""
    status_code = 400
    code = "unknown_event_type"

    def __init__(self, event_type: str):
        super().__init__(f"Unknown event type: {event_type}", {"event_type": event_type})
        self.event_type = event_type


class InvalidUsageEvent(BillingError):
    """Raised when a usage event carries no usable quantity."""
    status_code = 400
    code = "invalid_usage_event"


class InvalidPeriod(BillingError):
    """Raised for malformed or empty billing periods."""
    status_code = 400
    code = "invalid_period"


class InvalidSharePercentage(BillingError):
    """Raised when a gain-share percentage is outside the allowed band."""
    status_code = 400
    code = "invalid_share_pct"


class SubscriptionNotFound(BillingError):
    status_code = 404
    code = "subscription_not_found"

    def __init__(self, subscription_id: str):
        super().__init__(
            f"Subscription not found: {subscription_id}",
            {"subscription_id": subscription_id},
        )


class PlanNotFound(BillingError):
    status_code = 404
    code = "plan_not_found"

    def __init__(self, plan: str):
        super().__init__(f"Plan not found: {plan}", {"plan": plan})


class InvoiceNotFound(BillingError):
    status_code = 404
    code = "invoice_not_found"


class GainShareRunNotFound(BillingError):
    status_code = 404
    code = "gainshare_run_not_found"


class SubscriptionInactive(BillingError):
    """Raised when usage is tracked against a cancelled subscription."""
    status_code = 409
    code = "subscription_inactive"


class ActiveSubscriptionExists(BillingError):
    status_code = 409
    code = "active_subscription_exists"


class InvalidStatusTransition(BillingError):
    status_code = 409
    code = "invalid_status_transition"


class ConcurrentInvoiceGeneration(BillingError):
    """
    Raised when the subscription period moved while an invoice was being
    generated. The local transaction is rolled back.
    """
    status_code = 409
    code = "concurrent_invoice_generation"


class PeriodNotEnded(BillingError):
    """Raised when closing a billing period before its end. Nothing is written."""
    status_code = 409
    code = "period_not_ended"


class LedgerWriteFailure(BillingError):
    """
    Raised when the usage event insert or balance decrement fails.

    Both writes share one transaction, so nothing has been applied.
    """
    status_code = 500
    code = "ledger_write_failure"


class ProcessorPushFailure(BillingError):
    """Raised when a payment processor call fails."""
    status_code = 502
    code = "processor_push_failure"


class GainShareCalculationIncomplete(BillingError):
    """
    A metric lacks a baseline or measurements for the period.

    Never escapes the calculator: the metric contributes zero savings and
    the reason is kept in the run report.
    """
    status_code = 422
    code = "gainshare_calculation_incomplete"

    def __init__(self, metric: str, reason: str):
        super().__init__(f"{metric}: {reason}", {"metric": metric})
        self.metric = metric
        self.reason = reason


class WebhookVerificationFailed(BillingError):
    """Raised when a processor webhook cannot be authenticated or parsed."""
    status_code = 400
    code = "webhook_verification_failed"
