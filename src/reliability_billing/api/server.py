"""
RELIABILITY BILLING - FastAPI Server

Endpoints:
- POST /subscriptions - Create a subscription on a plan
- POST /usage/track - Record a usage event and burn credits
- GET /usage/summary - Aggregate usage by event type
- POST /invoices/generate - Close the current period and invoice it
- POST /gainshare - Calculate a gain-share fee for a period
- POST /webhooks/stripe - Stripe status transitions

Every endpoint except /health and the Stripe webhook requires X-API-Key.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
import structlog

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..billing.gainshare import GainShareCalculator
from ..billing.invoicing import InvoiceReconciler
from ..billing.ledger import UsageLedger
from ..billing.stripe_integration import StripeIntegration
from ..billing.subscriptions import SubscriptionService
from ..billing.webhooks import WebhookProcessor
from ..config import BillingConfig
from ..errors import BillingError
from ..persistence.database import Database
from ..persistence.repository import PlanRepository

logger = structlog.get_logger()


# ============================================================================
# Pydantic Models
# ============================================================================

class CreateSubscriptionRequest(BaseModel):
    """Request to start a subscription."""
    tenant_id: str = Field(..., min_length=1)
    plan_code: str = Field(..., description="STARTER, PRO or ENTERPRISE")
    start_date: Optional[str] = Field(None, description="ISO-8601 start; defaults to now")


class AttachCustomerRequest(BaseModel):
    email: str = Field(..., min_length=3)
    name: Optional[str] = None


class TrackUsageRequest(BaseModel):
    """A single usage event."""
    tenant_id: str = Field(..., min_length=1)
    subscription_id: str = Field(..., min_length=1)
    event_type: str = Field(..., description="LLM_token_usage, vision_frame_batch, optimizer_job, simulator_run")
    units: Optional[float] = Field(None, ge=0, description="Raw quantity when meta does not carry it")
    meta: Dict[str, Any] = Field(default_factory=dict)
    site_id: Optional[str] = None
    asset_id: Optional[str] = None


class SubscriptionRef(BaseModel):
    subscription_id: str = Field(..., min_length=1)


class GenerateInvoiceRequest(BaseModel):
    subscription_id: str = Field(..., min_length=1)
    period_start: Optional[str] = Field(None, description="Period being closed; guards scheduler retries")


class ReportUsageRequest(BaseModel):
    subscription_id: str = Field(..., min_length=1)
    quantity: Optional[int] = Field(None, ge=0, description="Defaults to the current period's credits")


class SyncInvoicesRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)


class AssetSnapshotRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)
    asset_count: int = Field(..., ge=0)
    captured_at: Optional[str] = None


class KPIBaselineRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)
    metric: str = Field(..., description="availability, mtbf, mttr")
    baseline_value: float
    effective_from: str
    effective_to: Optional[str] = None
    cost_per_unit: Optional[Decimal] = Field(None, ge=0)


class KPIMeasurementRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)
    metric: str
    value: float
    measured_at: Optional[str] = None


class GainShareRequest(BaseModel):
    """Request to calculate a gain-share fee."""
    tenant_id: str = Field(..., min_length=1)
    period_start: str
    period_end: str
    share_pct: Decimal = Field(..., description="Percentage of savings charged as fee")


class DecisionRequest(BaseModel):
    decided_by: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    processor_configured: bool
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(
        self,
        config: Optional[BillingConfig] = None,
        db: Optional[Database] = None,
        processor: Optional[Any] = None,
    ):
        self.config = config or BillingConfig.from_env()
        self.db = db or Database(self.config.database_url)
        self.db.initialize()
        PlanRepository(self.db).seed_defaults()

        self.processor = processor or StripeIntegration(
            api_key=self.config.stripe_api_key,
            webhook_secret=self.config.stripe_webhook_secret,
            meter_event_name=self.config.stripe_meter_event_name,
            currency=self.config.currency,
        )
        self.plans = PlanRepository(self.db)
        self.subscriptions = SubscriptionService(self.db, self.processor, currency=self.config.currency)
        self.ledger = UsageLedger(self.db, processor=self.processor)
        self.invoicing = InvoiceReconciler(self.db, self.processor)
        self.gainshare = GainShareCalculator(
            self.db,
            min_pct=self.config.gainshare_min_pct,
            max_pct=self.config.gainshare_max_pct,
            estimated_repairs=self.config.gainshare_estimated_repairs,
            currency=self.config.currency,
        )
        self.webhooks = WebhookProcessor(self.db)
        self.start_time = datetime.now(timezone.utc)


# ============================================================================
# Dependencies
# ============================================================================

def get_state(request: Request) -> AppState:
    """Get application state."""
    state = getattr(request.app.state, "billing", None)
    if state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return state


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Verify API key."""
    if x_api_key != state.config.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


router = APIRouter()


# ============================================================================
# Endpoints
# ============================================================================

@router.get("/health", response_model=HealthResponse, tags=["System"])
def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=__version__,
        processor_configured=state.processor.is_available,
        uptime_seconds=uptime,
    )


@router.get("/plans", tags=["Subscriptions"])
def list_plans(state: AppState = Depends(get_state), api_key: str = Depends(verify_api_key)):
    """Active plans, cheapest first."""
    return {"plans": [plan.to_dict() for plan in state.plans.list_active()]}


@router.post("/subscriptions", status_code=201, tags=["Subscriptions"])
def create_subscription(
    request: CreateSubscriptionRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    result = state.subscriptions.create_subscription(
        tenant_id=request.tenant_id,
        plan_code=request.plan_code,
        start_date=request.start_date,
    )
    return {"ok": True, **result}


@router.get("/subscriptions/{subscription_id}", tags=["Subscriptions"])
def get_subscription(
    subscription_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.subscriptions.get_subscription(subscription_id)


@router.post("/subscriptions/{subscription_id}/customer", tags=["Subscriptions"])
def attach_customer(
    subscription_id: str,
    request: AttachCustomerRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Create the Stripe customer for a subscription's tenant."""
    result = state.subscriptions.attach_customer(subscription_id, request.email, request.name)
    return {"ok": True, **result}


@router.post("/usage/track", tags=["Usage"])
def track_usage(
    request: TrackUsageRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Record a usage event.

    Usage past the allowance is still recorded; the response alert is
    advisory (WARNING > 75%, CRITICAL > 90%, OVERAGE below zero).
    """
    result = state.ledger.track_usage(
        tenant_id=request.tenant_id,
        subscription_id=request.subscription_id,
        event_type=request.event_type,
        units=request.units,
        meta=request.meta,
        site_id=request.site_id,
        asset_id=request.asset_id,
    )
    return {"ok": True, **result.to_dict()}


@router.get("/usage/summary", tags=["Usage"])
def usage_summary(
    subscription_id: str = Query(..., alias="subscriptionId"),
    period: Optional[str] = Query(None, description="YYYY-MM"),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return state.ledger.usage_summary(subscription_id, period)


@router.get("/usage/consistency", tags=["Usage"])
def usage_consistency(
    subscription_id: str = Query(..., alias="subscriptionId"),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Cached balance versus the event log for the current period."""
    return state.ledger.check_consistency(subscription_id)


@router.post("/usage/rebuild", tags=["Usage"])
def rebuild_balance(
    request: SubscriptionRef,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return {"ok": True, **state.ledger.rebuild_balance(request.subscription_id)}


@router.post("/usage/report", tags=["Usage"])
def report_usage(
    request: ReportUsageRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Report metered credits to the Stripe billing meter."""
    return {"ok": True, **state.ledger.report_usage(request.subscription_id, request.quantity)}


@router.post("/assets/snapshots", tags=["Invoices"])
def record_asset_snapshot(
    request: AssetSnapshotRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    result = state.invoicing.record_asset_snapshot(
        request.tenant_id, request.asset_count, request.captured_at
    )
    return {"ok": True, **result}


@router.post("/invoices/generate", tags=["Invoices"])
def generate_invoice(
    request: GenerateInvoiceRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Invoice the current period, reset credits and advance the period.

    A repeated call for the same period returns the existing invoice with
    already_invoiced set.
    """
    return {"ok": True, **state.invoicing.generate_invoice(request.subscription_id, request.period_start)}


@router.get("/invoices", tags=["Invoices"])
def list_invoices(
    subscription_id: str = Query(..., alias="subscriptionId"),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    invoices = state.invoicing.list_invoices(subscription_id)
    return {"total": len(invoices), "invoices": invoices}


@router.post("/invoices/sync", tags=["Invoices"])
def sync_invoices(
    request: SyncInvoicesRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Retry the Stripe push for pending and failed invoices."""
    return {"ok": True, **state.invoicing.sync_pending_invoices(request.limit)}


@router.post("/kpi/baselines", status_code=201, tags=["Gain-Share"])
def record_baseline(
    request: KPIBaselineRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    baseline = state.gainshare.record_baseline(
        tenant_id=request.tenant_id,
        metric=request.metric,
        baseline_value=request.baseline_value,
        effective_from=request.effective_from,
        effective_to=request.effective_to,
        cost_per_unit=request.cost_per_unit,
    )
    return {"ok": True, "baseline": baseline.to_dict()}


@router.post("/kpi/measurements", status_code=201, tags=["Gain-Share"])
def record_measurement(
    request: KPIMeasurementRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    measurement = state.gainshare.record_measurement(
        tenant_id=request.tenant_id,
        metric=request.metric,
        value=request.value,
        measured_at=request.measured_at,
    )
    return {"ok": True, "measurement": measurement.to_dict()}


@router.post("/gainshare", tags=["Gain-Share"])
def calculate_gainshare(
    request: GainShareRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Calculate savings and fee; the run waits for approval."""
    result = state.gainshare.calculate_gainshare(
        tenant_id=request.tenant_id,
        period_start=request.period_start,
        period_end=request.period_end,
        share_pct=request.share_pct,
    )
    return {"ok": True, **result}


@router.post("/gainshare/{run_id}/approve", tags=["Gain-Share"])
def approve_gainshare(
    run_id: str,
    request: DecisionRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return {"ok": True, **state.gainshare.approve(run_id, request.decided_by)}


@router.post("/gainshare/{run_id}/reject", tags=["Gain-Share"])
def reject_gainshare(
    run_id: str,
    request: DecisionRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    return {"ok": True, **state.gainshare.reject(run_id, request.decided_by)}


@router.post("/webhooks/stripe", tags=["Webhooks"])
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header("", alias="Stripe-Signature"),
    state: AppState = Depends(get_state),
):
    """Stripe webhook; authenticated by signature instead of API key."""
    payload = await request.body()
    event = state.processor.construct_event(payload, stripe_signature)
    return state.webhooks.apply_event(event)


# ============================================================================
# Application Factory
# ============================================================================

async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    else:
        logger.info("request_rejected", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(state: Optional[AppState] = None, config: Optional[BillingConfig] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        state: Prebuilt state (tests inject one); built on startup otherwise
        config: Configuration for the state built on startup
    """

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        logger.info("reliability_billing_starting", version=__version__)
        if getattr(application.state, "billing", None) is None:
            application.state.billing = AppState(config)
        yield
        logger.info("reliability_billing_stopping")

    application = FastAPI(
        title="Reliability Billing",
        description="""
# Usage Metering and Billing Reconciliation

- **Credit ledger**: usage events burn credits from the subscription allowance
- **Invoicing**: base + asset uplift + usage overage at period close
- **Gain-share**: performance fees from KPI improvements, approved by a human
- **Stripe**: invoices, metered usage and webhooks mirror local billing truth
        """,
        version=__version__,
        lifespan=lifespan,
    )
    if state is not None:
        application.state.billing = state

    origins = (config or (state.config if state else None) or BillingConfig.from_env()).cors_origin_list
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(BillingError, billing_error_handler)
    application.include_router(router)

    return application


app = create_app()


# ============================================================================
# Run
# ============================================================================

def run(host: str = "0.0.0.0", port: Optional[int] = None, reload: Optional[bool] = None):
    """Run the server."""
    import uvicorn
    config = BillingConfig.from_env()
    uvicorn.run(
        "reliability_billing.api.server:app",
        host=host,
        port=port or config.port,
        reload=config.debug if reload is None else reload,
    )


if __name__ == "__main__":
    run()
