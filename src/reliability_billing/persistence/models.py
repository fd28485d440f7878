"""
Data Models for Persistence Layer

Rows are mapped to dataclasses here. Money columns come back as TEXT from
SQLite and NUMERIC from PostgreSQL; both are normalised to Decimal.
Timestamps are normalised to UTC ISO-8601 strings.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
import json
import uuid

from ..core.periods import to_iso
from ..core.plans import PlanTerms


def _now() -> str:
    return to_iso(datetime.now(timezone.utc))


def _new_id() -> str:
    return str(uuid.uuid4())


def _dec(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _ts(value: Any) -> Optional[str]:
    if value is None:
        return None
    return to_iso(value)


def _json_in(value: Any) -> Dict[str, Any]:
    if isinstance(value, str) and value:
        return json.loads(value)
    return value or {}


def _json_out(value: Optional[Dict[str, Any]]) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


@dataclass
class PlanRecord:
    """Persisted plan."""
    code: str
    name: str
    base_price: Decimal
    included_assets: int
    included_credits: int
    asset_uplift_rate: Decimal
    overage_per_credit_rate: Decimal
    max_sites: int
    is_active: bool = True
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)

    @classmethod
    def from_terms(cls, terms: PlanTerms) -> "PlanRecord":
        return cls(
            code=terms.code,
            name=terms.name,
            base_price=terms.base_price,
            included_assets=terms.included_assets,
            included_credits=terms.included_credits,
            asset_uplift_rate=terms.asset_uplift_rate,
            overage_per_credit_rate=terms.overage_per_credit_rate,
            max_sites=terms.max_sites,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "base_price": self.base_price,
            "included_assets": self.included_assets,
            "included_credits": self.included_credits,
            "asset_uplift_rate": self.asset_uplift_rate,
            "overage_per_credit_rate": self.overage_per_credit_rate,
            "max_sites": self.max_sites,
            "is_active": self.is_active,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.code,
            self.name,
            self.base_price,
            self.included_assets,
            self.included_credits,
            self.asset_uplift_rate,
            self.overage_per_credit_rate,
            self.max_sites,
            1 if self.is_active else 0,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PlanRecord":
        return cls(
            id=row["id"],
            code=row["code"],
            name=row["name"],
            base_price=_dec(row["base_price"]),
            included_assets=row["included_assets"],
            included_credits=row["included_credits"],
            asset_uplift_rate=_dec(row["asset_uplift_rate"]),
            overage_per_credit_rate=_dec(row["overage_per_credit_rate"]),
            max_sites=row["max_sites"],
            is_active=bool(row.get("is_active", 1)),
            created_at=_ts(row["created_at"]),
        )


@dataclass
class SubscriptionRecord:
    """Persisted subscription."""
    tenant_id: str
    plan_id: str
    current_period_start: str
    current_period_end: str
    anchor_day: int
    status: str = "active"
    currency: str = "CAD"
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "currency": self.currency,
            "current_period_start": self.current_period_start,
            "current_period_end": self.current_period_end,
            "anchor_day": self.anchor_day,
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.tenant_id,
            self.plan_id,
            self.status,
            self.currency,
            self.current_period_start,
            self.current_period_end,
            self.anchor_day,
            self.stripe_customer_id,
            self.stripe_subscription_id,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SubscriptionRecord":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            plan_id=row["plan_id"],
            status=row.get("status", "active"),
            currency=row.get("currency", "CAD"),
            current_period_start=_ts(row["current_period_start"]),
            current_period_end=_ts(row["current_period_end"]),
            anchor_day=row["anchor_day"],
            stripe_customer_id=row.get("stripe_customer_id"),
            stripe_subscription_id=row.get("stripe_subscription_id"),
            created_at=_ts(row["created_at"]),
            updated_at=_ts(row["updated_at"]),
        )


@dataclass
class SubscriptionLimitsRecord:
    """Cached credit balance for a subscription."""
    subscription_id: str
    included_assets: int
    included_credits: int
    remaining_credits: int
    last_reset_at: str
    updated_at: str = field(default_factory=_now)

    @property
    def consumed_credits(self) -> int:
        return self.included_credits - self.remaining_credits

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "included_assets": self.included_assets,
            "included_credits": self.included_credits,
            "remaining_credits": self.remaining_credits,
            "last_reset_at": self.last_reset_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.subscription_id,
            self.included_assets,
            self.included_credits,
            self.remaining_credits,
            self.last_reset_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SubscriptionLimitsRecord":
        return cls(
            subscription_id=row["subscription_id"],
            included_assets=row["included_assets"],
            included_credits=row["included_credits"],
            remaining_credits=row["remaining_credits"],
            last_reset_at=_ts(row["last_reset_at"]),
            updated_at=_ts(row["updated_at"]),
        )


@dataclass
class UsageEventRecord:
    """Immutable usage event. credits_consumed is frozen at write time."""
    tenant_id: str
    subscription_id: str
    event_type: str
    units: float
    credits_consumed: int
    site_id: Optional[str] = None
    asset_id: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    occurred_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "subscription_id": self.subscription_id,
            "site_id": self.site_id,
            "asset_id": self.asset_id,
            "event_type": self.event_type,
            "units": self.units,
            "credits_consumed": self.credits_consumed,
            "meta": self.meta,
            "occurred_at": self.occurred_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.tenant_id,
            self.subscription_id,
            self.site_id,
            self.asset_id,
            self.event_type,
            self.units,
            self.credits_consumed,
            _json_out(self.meta),
            self.occurred_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageEventRecord":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            subscription_id=row["subscription_id"],
            site_id=row.get("site_id"),
            asset_id=row.get("asset_id"),
            event_type=row["event_type"],
            units=row["units"],
            credits_consumed=row["credits_consumed"],
            meta=_json_in(row.get("meta")),
            occurred_at=_ts(row["occurred_at"]),
        )


@dataclass
class InvoiceRecord:
    """
    Persisted invoice.

    Amounts are a point-in-time snapshot; after creation only status,
    paid_at and the processor sync columns change.
    """
    subscription_id: str
    period_start: str
    period_end: str
    base_amount: Decimal
    asset_uplift_amount: Decimal
    usage_overage_amount: Decimal
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    asset_count: int
    credits_consumed: int
    currency: str = "CAD"
    status: str = "open"
    meta: Dict[str, Any] = field(default_factory=dict)
    stripe_invoice_id: Optional[str] = None
    stripe_hosted_url: Optional[str] = None
    processor_sync_status: str = "pending"
    processor_sync_error: Optional[str] = None
    processor_sync_attempts: int = 0
    paid_at: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)

    def breakdown(self) -> Dict[str, Decimal]:
        return {
            "base": self.base_amount,
            "asset_uplift": self.asset_uplift_amount,
            "usage_overage": self.usage_overage_amount,
            "tax": self.tax,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "period_start": self.period_start,
            "period_end": self.period_end,
            "base_amount": self.base_amount,
            "asset_uplift_amount": self.asset_uplift_amount,
            "usage_overage_amount": self.usage_overage_amount,
            "subtotal": self.subtotal,
            "tax": self.tax,
            "total": self.total,
            "currency": self.currency,
            "status": self.status,
            "asset_count": self.asset_count,
            "credits_consumed": self.credits_consumed,
            "meta": self.meta,
            "stripe_invoice_id": self.stripe_invoice_id,
            "stripe_hosted_url": self.stripe_hosted_url,
            "processor_sync_status": self.processor_sync_status,
            "processor_sync_error": self.processor_sync_error,
            "processor_sync_attempts": self.processor_sync_attempts,
            "paid_at": self.paid_at,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.subscription_id,
            self.period_start,
            self.period_end,
            self.base_amount,
            self.asset_uplift_amount,
            self.usage_overage_amount,
            self.subtotal,
            self.tax,
            self.total,
            self.currency,
            self.status,
            self.asset_count,
            self.credits_consumed,
            _json_out(self.meta),
            self.stripe_invoice_id,
            self.stripe_hosted_url,
            self.processor_sync_status,
            self.processor_sync_error,
            self.processor_sync_attempts,
            self.paid_at,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "InvoiceRecord":
        return cls(
            id=row["id"],
            subscription_id=row["subscription_id"],
            period_start=_ts(row["period_start"]),
            period_end=_ts(row["period_end"]),
            base_amount=_dec(row["base_amount"]),
            asset_uplift_amount=_dec(row["asset_uplift_amount"]),
            usage_overage_amount=_dec(row["usage_overage_amount"]),
            subtotal=_dec(row["subtotal"]),
            tax=_dec(row["tax"]),
            total=_dec(row["total"]),
            currency=row.get("currency", "CAD"),
            status=row.get("status", "open"),
            asset_count=row["asset_count"],
            credits_consumed=row["credits_consumed"],
            meta=_json_in(row.get("meta")),
            stripe_invoice_id=row.get("stripe_invoice_id"),
            stripe_hosted_url=row.get("stripe_hosted_url"),
            processor_sync_status=row.get("processor_sync_status", "pending"),
            processor_sync_error=row.get("processor_sync_error"),
            processor_sync_attempts=row.get("processor_sync_attempts", 0),
            paid_at=_ts(row.get("paid_at")),
            created_at=_ts(row["created_at"]),
        )


@dataclass
class KPIBaselineRecord:
    """Baseline for one metric, valid over [effective_from, effective_to)."""
    tenant_id: str
    metric: str
    baseline_value: float
    effective_from: str
    effective_to: Optional[str] = None
    cost_per_unit: Optional[Decimal] = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "metric": self.metric,
            "baseline_value": self.baseline_value,
            "cost_per_unit": self.cost_per_unit,
            "effective_from": self.effective_from,
            "effective_to": self.effective_to,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.tenant_id,
            self.metric,
            self.baseline_value,
            self.cost_per_unit,
            self.effective_from,
            self.effective_to,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "KPIBaselineRecord":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            metric=row["metric"],
            baseline_value=row["baseline_value"],
            cost_per_unit=_dec(row.get("cost_per_unit")),
            effective_from=_ts(row["effective_from"]),
            effective_to=_ts(row.get("effective_to")),
            created_at=_ts(row["created_at"]),
        )


@dataclass
class KPIMeasurementRecord:
    tenant_id: str
    metric: str
    measured_value: float
    measured_at: str = field(default_factory=_now)
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "metric": self.metric,
            "measured_value": self.measured_value,
            "measured_at": self.measured_at,
        }

    def to_db_tuple(self) -> tuple:
        return (self.id, self.tenant_id, self.metric, self.measured_value, self.measured_at)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "KPIMeasurementRecord":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            metric=row["metric"],
            measured_value=row["measured_value"],
            measured_at=_ts(row["measured_at"]),
        )


@dataclass
class GainShareRunRecord:
    """Persisted gain-share run. Only status fields change after creation."""
    tenant_id: str
    period_start: str
    period_end: str
    calculated_savings: Decimal
    share_pct: Decimal
    fee: Decimal
    currency: str = "CAD"
    method: str = "delta_savings"
    status: str = "pending_approval"
    report: Dict[str, Any] = field(default_factory=dict)
    decided_at: Optional[str] = None
    decided_by: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "period_start": self.period_start,
            "period_end": self.period_end,
            "method": self.method,
            "calculated_savings": self.calculated_savings,
            "share_pct": self.share_pct,
            "fee": self.fee,
            "currency": self.currency,
            "status": self.status,
            "report": self.report,
            "decided_at": self.decided_at,
            "decided_by": self.decided_by,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.tenant_id,
            self.period_start,
            self.period_end,
            self.method,
            self.calculated_savings,
            self.share_pct,
            self.fee,
            self.currency,
            self.status,
            _json_out(self.report),
            self.decided_at,
            self.decided_by,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "GainShareRunRecord":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            period_start=_ts(row["period_start"]),
            period_end=_ts(row["period_end"]),
            method=row.get("method", "delta_savings"),
            calculated_savings=_dec(row["calculated_savings"]),
            share_pct=_dec(row["share_pct"]),
            fee=_dec(row["fee"]),
            currency=row.get("currency", "CAD"),
            status=row.get("status", "pending_approval"),
            report=_json_in(row.get("report")),
            decided_at=_ts(row.get("decided_at")),
            decided_by=row.get("decided_by"),
            created_at=_ts(row["created_at"]),
        )
