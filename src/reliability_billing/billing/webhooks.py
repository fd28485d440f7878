"""
Payment processor webhook handling.

Applies Stripe events to local state. Only invoice status/paid_at and
subscription status/processor ids are ever changed here; invoice amounts
are a frozen snapshot.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
import structlog

from ..core.periods import to_iso
from ..persistence.database import Database, get_database
from ..persistence.repository import InvoiceRepository, SubscriptionRepository

logger = structlog.get_logger()

# Stripe subscription status -> local status
STRIPE_SUBSCRIPTION_STATUS = {
    "canceled": "cancelled",
    "incomplete_expired": "cancelled",
    "past_due": "past_due",
    "unpaid": "past_due",
}


def map_subscription_status(stripe_status: Optional[str]) -> str:
    return STRIPE_SUBSCRIPTION_STATUS.get(stripe_status or "", "active")


class WebhookProcessor:
    """Dispatches verified processor events to status transitions."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.invoices = InvoiceRepository(self.db)
        self.subscriptions = SubscriptionRepository(self.db)
        self._handlers: Dict[str, Callable[[Dict[str, Any]], bool]] = {
            "invoice.paid": self._invoice_paid,
            "invoice.payment_failed": self._invoice_payment_failed,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "checkout.session.completed": self._checkout_completed,
        }

    def apply_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply one event. Unknown types are acknowledged and ignored.

        Returns:
            {"received": True, "type": ..., "handled": bool}
        """
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("webhook_event_ignored", event_type=event_type, event_id=event.get("id"))
            return {"received": True, "type": event_type, "handled": False}

        handled = handler(obj)
        logger.info("webhook_event_applied", event_type=event_type, event_id=event.get("id"), handled=handled)
        return {"received": True, "type": event_type, "handled": handled}

    def _invoice_paid(self, obj: Dict[str, Any]) -> bool:
        paid_ts = (obj.get("status_transitions") or {}).get("paid_at")
        if paid_ts:
            paid_at = to_iso(datetime.fromtimestamp(paid_ts, timezone.utc))
        else:
            paid_at = to_iso(datetime.now(timezone.utc))

        invoice = self.invoices.update_status_by_stripe_id(obj.get("id", ""), "paid", paid_at)
        if invoice is None:
            logger.warning("webhook_invoice_unknown", stripe_invoice_id=obj.get("id"))
            return False
        return True

    def _invoice_payment_failed(self, obj: Dict[str, Any]) -> bool:
        invoice = self.invoices.update_status_by_stripe_id(obj.get("id", ""), "payment_failed")
        if invoice is None:
            logger.warning("webhook_invoice_unknown", stripe_invoice_id=obj.get("id"))
            return False
        if invoice.status != "payment_failed":
            logger.info("webhook_invoice_already_paid", stripe_invoice_id=obj.get("id"), status=invoice.status)
            return False
        self.subscriptions.update_status(invoice.subscription_id, "past_due")
        return True

    def _subscription_updated(self, obj: Dict[str, Any]) -> bool:
        status = map_subscription_status(obj.get("status"))
        return self.subscriptions.update_status_by_stripe_subscription(obj.get("id", ""), status)

    def _subscription_deleted(self, obj: Dict[str, Any]) -> bool:
        return self.subscriptions.update_status_by_stripe_subscription(obj.get("id", ""), "cancelled")

    def _checkout_completed(self, obj: Dict[str, Any]) -> bool:
        subscription_id = (obj.get("metadata") or {}).get("subscription_id")
        customer_id = obj.get("customer")
        if not subscription_id or not customer_id:
            logger.warning("webhook_checkout_unlinked", session_id=obj.get("id"))
            return False
        return self.subscriptions.link_customer(subscription_id, customer_id, obj.get("subscription"))
