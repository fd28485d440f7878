"""
Pytest Configuration and Fixtures
"""

import json
import os
import sys
import tempfile
from datetime import timedelta
from decimal import Decimal

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ.pop("STRIPE_API_KEY", None)

from reliability_billing.billing.stripe_integration import StripeCustomer
from reliability_billing.core.periods import utcnow
from reliability_billing.errors import ProcessorPushFailure, WebhookVerificationFailed
from reliability_billing.persistence.database import Database
from reliability_billing.persistence.repository import PlanRepository


class FakeProcessor:
    """Records payment processor calls instead of talking to Stripe."""

    def __init__(self, fail_on=None, available=True):
        self.fail_on = set(fail_on or ())
        self.is_available = available
        self.calls = []
        self._invoices = 0

    def _call(self, name, **kwargs):
        self.calls.append((name, kwargs))
        if name in self.fail_on:
            raise ProcessorPushFailure(f"{name} failed: processor unavailable")

    def call_names(self):
        return [name for name, _ in self.calls]

    def create_customer(self, tenant_id, email, name=None, metadata=None):
        self._call("create_customer", tenant_id=tenant_id, email=email)
        return StripeCustomer(customer_id=f"cus_{tenant_id}", tenant_id=tenant_id, email=email)

    def create_invoice(self, customer_id, description, metadata=None, idempotency_key=None):
        self._call("create_invoice", customer_id=customer_id, idempotency_key=idempotency_key)
        self._invoices += 1
        return {"id": f"in_test_{self._invoices}", "status": "draft"}

    def add_invoice_item(self, customer_id, invoice_id, amount, description, idempotency_key=None):
        self._call(
            "add_invoice_item",
            invoice_id=invoice_id,
            amount=Decimal(amount),
            description=description,
            idempotency_key=idempotency_key,
        )
        return {"id": f"ii_{idempotency_key}", "amount": amount, "description": description}

    def finalize_invoice(self, invoice_id, idempotency_key=None):
        self._call("finalize_invoice", invoice_id=invoice_id, idempotency_key=idempotency_key)
        return {
            "id": invoice_id,
            "status": "open",
            "hosted_invoice_url": f"https://invoice.stripe.test/{invoice_id}",
        }

    def report_usage(self, customer_id, quantity, timestamp=None, idempotency_key=None):
        self._call("report_usage", customer_id=customer_id, quantity=quantity, idempotency_key=idempotency_key)
        return {"identifier": idempotency_key, "customer_id": customer_id, "quantity": quantity}

    def construct_event(self, payload, signature):
        if signature != "t=1,v1=valid":
            raise WebhookVerificationFailed("Invalid webhook signature")
        return json.loads(payload)


@pytest.fixture
def temp_db():
    """Create a temporary database file for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup, including WAL side files
    for path in (db_path, db_path + "-wal", db_path + "-shm"):
        try:
            os.unlink(path)
        except OSError:
            pass


@pytest.fixture
def db(temp_db):
    """Initialized database with the default plan catalogue."""
    database = Database(f"sqlite:///{temp_db}")
    database.initialize()
    PlanRepository(database).seed_defaults()
    yield database
    database.close()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def failing_processor():
    """Processor whose invoice creation always fails."""
    return FakeProcessor(fail_on={"create_invoice"})


@pytest.fixture
def subscription_service(db, processor):
    from reliability_billing.billing.subscriptions import SubscriptionService
    return SubscriptionService(db, processor)


@pytest.fixture
def ledger(db, processor):
    from reliability_billing.billing.ledger import UsageLedger
    return UsageLedger(db, processor=processor)


@pytest.fixture
def starter(subscription_service):
    """STARTER subscription for tenant-1 starting now."""
    return subscription_service.create_subscription("tenant-1", "STARTER")


@pytest.fixture
def lapsed(subscription_service):
    """STARTER subscription for tenant-1 whose first period ended days ago."""
    return subscription_service.create_subscription("tenant-1", "STARTER", utcnow() - timedelta(days=33))


@pytest.fixture
def after_first_period():
    """Clock 40 days ahead: past the first period of a subscription starting now."""
    return lambda: utcnow() + timedelta(days=40)
