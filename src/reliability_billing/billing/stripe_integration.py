"""
Stripe Integration for Reliability Billing

The payment processor is a downstream mirror of local billing truth:
- Customer creation for tenants
- Invoice creation, line items and finalization at period close
- Metered credit usage reporting
- Webhook signature verification

Every call takes an idempotency key where Stripe supports one, so a failed
push can be retried without duplicating charges. All Stripe failures are
raised as ProcessorPushFailure.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional
import structlog
import stripe

from ..errors import ProcessorPushFailure, WebhookVerificationFailed

logger = structlog.get_logger()


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount (dollars) into Stripe's minor units (cents)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class StripeCustomer:
    """Stripe customer representation."""
    customer_id: str
    tenant_id: str
    email: str
    created_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "created_at": self.created_at,
        }


class StripeIntegration:
    """
    Payment processor client backed by stripe-python.

    Without an API key the integration reports itself unavailable and the
    invoice reconciler leaves processor sync pending.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        meter_event_name: str = "inference_credits",
        currency: str = "CAD",
    ):
        """
        Initialize Stripe integration.

        Args:
            api_key: Stripe secret key
            webhook_secret: Stripe webhook signing secret
            meter_event_name: Billing meter that receives credit usage
            currency: ISO currency for invoices and line items
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.meter_event_name = meter_event_name
        self.currency = currency.lower()

        if self.api_key:
            stripe.api_key = self.api_key
            logger.info("stripe_integration_initialized")
        else:
            logger.warning("stripe_not_configured", api_key_set=False)

    @property
    def is_available(self) -> bool:
        """Check if Stripe integration is available."""
        return bool(self.api_key)

    def _require(self, operation: str) -> None:
        if not self.is_available:
            raise ProcessorPushFailure(
                f"Stripe is not configured; cannot {operation}",
                {"operation": operation},
            )

    def create_customer(
        self,
        tenant_id: str,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> StripeCustomer:
        """Create a Stripe customer for a tenant."""
        self._require("create_customer")

        metadata = {"tenant_id": tenant_id, **(metadata or {})}
        name = name or f"Tenant {tenant_id}"
        # Same request, same key; a corrected email is a new request
        request_hash = hashlib.sha256(
            json.dumps({"email": email, "name": name, "metadata": metadata}, sort_keys=True).encode()
        ).hexdigest()[:16]

        try:
            stripe_customer = stripe.Customer.create(
                email=email,
                name=name,
                metadata=metadata,
                idempotency_key=f"customer_{tenant_id}_{request_hash}",
            )
        except stripe.StripeError as e:
            logger.error("stripe_customer_create_failed", tenant_id=tenant_id, error=str(e))
            raise ProcessorPushFailure(f"Failed to create customer: {e}")

        customer = StripeCustomer(
            customer_id=stripe_customer.id,
            tenant_id=tenant_id,
            email=email,
            created_at=datetime.fromtimestamp(
                stripe_customer.created, timezone.utc
            ).isoformat(),
        )

        logger.info(
            "stripe_customer_created",
            customer_id=customer.customer_id,
            tenant_id=tenant_id,
        )

        return customer

    def create_invoice(
        self,
        customer_id: str,
        description: str,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a draft invoice that only collects items attached to it explicitly."""
        self._require("create_invoice")

        try:
            invoice = stripe.Invoice.create(
                customer=customer_id,
                currency=self.currency,
                description=description,
                metadata=metadata or {},
                auto_advance=False,
                pending_invoice_items_behavior="exclude",
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error("stripe_invoice_create_failed", customer_id=customer_id, error=str(e))
            raise ProcessorPushFailure(f"Failed to create invoice: {e}")

        logger.info("stripe_invoice_created", stripe_invoice_id=invoice.id, customer_id=customer_id)
        return {"id": invoice.id, "status": invoice.status}

    def add_invoice_item(
        self,
        customer_id: str,
        invoice_id: str,
        amount: Decimal,
        description: str,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Attach a line item (amount in major units) to a draft invoice."""
        self._require("add_invoice_item")

        try:
            item = stripe.InvoiceItem.create(
                customer=customer_id,
                invoice=invoice_id,
                amount=to_minor_units(amount),
                currency=self.currency,
                description=description,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error("stripe_invoice_item_failed", stripe_invoice_id=invoice_id, error=str(e))
            raise ProcessorPushFailure(f"Failed to add invoice item: {e}")

        return {"id": item.id, "amount": item.amount, "description": description}

    def finalize_invoice(
        self,
        invoice_id: str,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Finalize a draft invoice; the hosted URL only exists afterwards."""
        self._require("finalize_invoice")

        try:
            invoice = stripe.Invoice.finalize_invoice(
                invoice_id,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error("stripe_invoice_finalize_failed", stripe_invoice_id=invoice_id, error=str(e))
            raise ProcessorPushFailure(f"Failed to finalize invoice: {e}")

        logger.info("stripe_invoice_finalized", stripe_invoice_id=invoice.id)
        return {
            "id": invoice.id,
            "status": invoice.status,
            "hosted_invoice_url": invoice.hosted_invoice_url,
        }

    def report_usage(
        self,
        customer_id: str,
        quantity: int,
        timestamp: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Report metered credit usage to Stripe.

        Args:
            customer_id: The Stripe customer the usage belongs to
            quantity: Number of credits to report
            timestamp: Unix timestamp (defaults to now)
            idempotency_key: Unique key to prevent duplicate reports
        """
        self._require("report_usage")
        timestamp = timestamp or int(datetime.now(timezone.utc).timestamp())

        try:
            event = stripe.billing.MeterEvent.create(
                event_name=self.meter_event_name,
                payload={
                    "stripe_customer_id": customer_id,
                    "value": str(quantity),
                },
                timestamp=timestamp,
                identifier=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error("stripe_usage_report_failed", customer_id=customer_id, error=str(e))
            raise ProcessorPushFailure(f"Failed to report usage: {e}")

        logger.info(
            "stripe_usage_reported",
            identifier=event.identifier,
            quantity=quantity,
            customer_id=customer_id,
        )

        return {
            "identifier": event.identifier,
            "event_name": self.meter_event_name,
            "customer_id": customer_id,
            "quantity": quantity,
            "timestamp": timestamp,
        }

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify a webhook signature and return the event as a plain dict.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value
        """
        if not self.webhook_secret:
            logger.warning("stripe_webhook_not_configured")
            raise WebhookVerificationFailed("Webhook secret not configured")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError:
            logger.error("stripe_webhook_signature_invalid")
            raise WebhookVerificationFailed("Invalid webhook signature")
        except ValueError as e:
            logger.error("stripe_webhook_payload_invalid", error=str(e))
            raise WebhookVerificationFailed("Invalid webhook payload")

        event = json.loads(payload)
        logger.info(
            "stripe_webhook_received",
            event_type=event.get("type"),
            event_id=event.get("id"),
        )
        return event
