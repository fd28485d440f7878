"""
Gain-Share Calculator

Converts KPI improvements over a period into dollar savings and a
performance fee:

    savings_m = cost_model_m(improvement_m)   (0 unless improved)
    calculated_savings = sum(savings_m)
    fee = calculated_savings * share_pct / 100

Each metric contributes independently. A metric without a baseline or
without measurements in the period is reported as incomplete and
contributes nothing. Runs are stored as pending_approval and never bill
automatically.

Cost models are heuristics:
- availability: improvement (percentage points) / 100 * period hours * cost per downtime hour
- mtbf: (improvement / baseline * 100) / 10 failures avoided * cost per failure
- mttr: improvement (hours) * estimated repairs * labour cost per hour
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union
import structlog

from ..core.periods import hours_between, parse_timestamp, to_iso, utcnow
from ..errors import (
    GainShareCalculationIncomplete,
    GainShareRunNotFound,
    InvalidPeriod,
    InvalidSharePercentage,
    InvalidStatusTransition,
)
from ..persistence.database import Database, get_database
from ..persistence.models import GainShareRunRecord, KPIBaselineRecord, KPIMeasurementRecord
from ..persistence.repository import GainShareRepository, KPIRepository

logger = structlog.get_logger()

CENT = Decimal("0.01")

Timestamp = Union[str, date, datetime]


@dataclass(frozen=True)
class SavingsContext:
    """Inputs a cost model sees besides the improvement itself."""
    baseline_value: Decimal
    cost_per_unit: Decimal
    period_hours: Decimal
    estimated_repairs: int


@dataclass(frozen=True)
class MetricModel:
    """How a KPI improvement turns into money."""
    name: str
    higher_is_better: bool
    default_cost_per_unit: Decimal
    savings: Callable[[Decimal, SavingsContext], Decimal]

    def improvement(self, baseline: Decimal, actual: Decimal) -> Decimal:
        return actual - baseline if self.higher_is_better else baseline - actual


def _availability_savings(improvement: Decimal, ctx: SavingsContext) -> Decimal:
    return improvement / 100 * ctx.period_hours * ctx.cost_per_unit


def _mtbf_savings(improvement: Decimal, ctx: SavingsContext) -> Decimal:
    if ctx.baseline_value == 0:
        raise GainShareCalculationIncomplete("mtbf", "baseline is zero")
    pct_improvement = improvement / ctx.baseline_value * 100
    failures_avoided = pct_improvement / 10
    return failures_avoided * ctx.cost_per_unit


def _mttr_savings(improvement: Decimal, ctx: SavingsContext) -> Decimal:
    return improvement * ctx.estimated_repairs * ctx.cost_per_unit


DEFAULT_METRICS: Dict[str, MetricModel] = {
    "availability": MetricModel("availability", True, Decimal("25000"), _availability_savings),
    "mtbf": MetricModel("mtbf", True, Decimal("50000"), _mtbf_savings),
    "mttr": MetricModel("mttr", False, Decimal("150"), _mttr_savings),
}


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value))


class GainShareCalculator:
    """
    Savings reconciliation against KPI baselines.

    Usage:
        calc = GainShareCalculator(db)
        calc.record_baseline("tenant-1", "availability", 92.0, "2025-01-01")
        calc.record_measurement("tenant-1", "availability", 95.0, "2025-02-10")
        run = calc.calculate_gainshare("tenant-1", "2025-02-01", "2025-03-01", 15)
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        min_pct: Decimal = Decimal("10"),
        max_pct: Decimal = Decimal("20"),
        estimated_repairs: int = 100,
        currency: str = "CAD",
        metrics: Optional[Dict[str, MetricModel]] = None,
    ):
        self.db = db or get_database()
        self.min_pct = _decimal(min_pct)
        self.max_pct = _decimal(max_pct)
        self.estimated_repairs = estimated_repairs
        self.currency = currency
        self.metrics: Dict[str, MetricModel] = dict(DEFAULT_METRICS if metrics is None else metrics)
        self.kpis = KPIRepository(self.db)
        self.runs = GainShareRepository(self.db)

    def register_metric(self, model: MetricModel) -> None:
        self.metrics[model.name] = model

    # KPI inputs

    def record_baseline(
        self,
        tenant_id: str,
        metric: str,
        baseline_value: float,
        effective_from: Timestamp,
        effective_to: Optional[Timestamp] = None,
        cost_per_unit: Optional[Decimal] = None,
    ) -> KPIBaselineRecord:
        """
        Store a baseline revision.

        An open-ended earlier revision of the same metric is closed at
        effective_from, so only one revision is valid at any instant.
        """
        start = to_iso(effective_from)
        end = to_iso(effective_to) if effective_to is not None else None
        if end is not None and end <= start:
            raise InvalidPeriod("effective_to must be after effective_from")

        closed = self.kpis.close_open_baselines(tenant_id, metric, start)
        if closed:
            logger.info("kpi_baseline_superseded", tenant_id=tenant_id, metric=metric, closed=closed)

        return self.kpis.add_baseline(KPIBaselineRecord(
            tenant_id=tenant_id,
            metric=metric,
            baseline_value=float(baseline_value),
            effective_from=start,
            effective_to=end,
            cost_per_unit=_decimal(cost_per_unit) if cost_per_unit is not None else None,
        ))

    def record_measurement(
        self,
        tenant_id: str,
        metric: str,
        value: float,
        measured_at: Optional[Timestamp] = None,
    ) -> KPIMeasurementRecord:
        return self.kpis.add_measurement(KPIMeasurementRecord(
            tenant_id=tenant_id,
            metric=metric,
            measured_value=float(value),
            measured_at=to_iso(measured_at) if measured_at is not None else to_iso(utcnow()),
        ))

    # Calculation

    def _validate_share_pct(self, share_pct: Any) -> Decimal:
        try:
            pct = _decimal(share_pct)
        except ArithmeticError:
            raise InvalidSharePercentage(f"share_pct is not a number: {share_pct!r}")
        if not pct.is_finite() or pct < self.min_pct or pct > self.max_pct:
            raise InvalidSharePercentage(
                f"share_pct must be between {self.min_pct} and {self.max_pct}",
                {"share_pct": str(share_pct), "min": str(self.min_pct), "max": str(self.max_pct)},
            )
        return pct

    def _select_baselines(self, tenant_id: str, start: str, end: str) -> Dict[str, KPIBaselineRecord]:
        """Most recent overlapping revision per metric."""
        selected: Dict[str, KPIBaselineRecord] = {}
        for baseline in self.kpis.baselines_overlapping(tenant_id, start, end):
            current = selected.get(baseline.metric)
            if current is None or baseline.effective_from >= current.effective_from:
                selected[baseline.metric] = baseline
        return selected

    def _metric_savings(
        self,
        tenant_id: str,
        metric: str,
        baseline: Optional[KPIBaselineRecord],
        start: str,
        end: str,
        period_hours: Decimal,
    ) -> Dict[str, Any]:
        model = self.metrics.get(metric)
        if model is None:
            raise GainShareCalculationIncomplete(metric, "no cost model registered")
        if baseline is None:
            raise GainShareCalculationIncomplete(metric, "no baseline for period")

        samples = self.kpis.measurements(tenant_id, metric, start, end)
        if not samples:
            raise GainShareCalculationIncomplete(metric, "no measurements in period")

        baseline_value = _decimal(baseline.baseline_value)
        actual = sum(_decimal(s.measured_value) for s in samples) / len(samples)
        cost_per_unit = baseline.cost_per_unit if baseline.cost_per_unit is not None else model.default_cost_per_unit
        improvement = model.improvement(baseline_value, actual)

        if improvement > 0:
            ctx = SavingsContext(
                baseline_value=baseline_value,
                cost_per_unit=cost_per_unit,
                period_hours=period_hours,
                estimated_repairs=self.estimated_repairs,
            )
            savings = model.savings(improvement, ctx).quantize(CENT)
            status = "improved"
        else:
            savings = Decimal("0.00")
            status = "no_improvement"

        return {
            "status": status,
            "baseline": float(baseline_value),
            "actual": float(actual),
            "improvement": float(improvement),
            "cost_per_unit": float(cost_per_unit),
            "samples": len(samples),
            "savings": savings,
        }

    def calculate_gainshare(
        self,
        tenant_id: str,
        period_start: Timestamp,
        period_end: Timestamp,
        share_pct: Any,
    ) -> Dict[str, Any]:
        """
        Compute savings and fee for a period and store a pending run.

        Raises:
            InvalidSharePercentage: share_pct outside the configured band
            InvalidPeriod: period_end not after period_start
        """
        pct = self._validate_share_pct(share_pct)

        start_dt, end_dt = parse_timestamp(period_start), parse_timestamp(period_end)
        if end_dt <= start_dt:
            raise InvalidPeriod("period_end must be after period_start")
        start, end = to_iso(start_dt), to_iso(end_dt)
        period_hours = _decimal(hours_between(start_dt, end_dt))

        baselines = self._select_baselines(tenant_id, start, end)
        metric_names: List[str] = sorted(set(self.metrics) | set(baselines))

        breakdown: Dict[str, Dict[str, Any]] = {}
        total = Decimal("0.00")
        for metric in metric_names:
            try:
                entry = self._metric_savings(
                    tenant_id, metric, baselines.get(metric), start, end, period_hours
                )
            except GainShareCalculationIncomplete as e:
                logger.warning(
                    "gainshare_metric_incomplete",
                    tenant_id=tenant_id,
                    metric=metric,
                    reason=e.reason,
                )
                entry = {"status": "incomplete", "reason": e.reason, "savings": Decimal("0.00")}
            total += entry["savings"]
            breakdown[metric] = entry

        fee = total * pct / 100

        report = {
            "method": "delta_savings",
            "period_hours": float(period_hours),
            "baselines": {
                metric: {
                    "baseline_value": b.baseline_value,
                    "cost_per_unit": str(b.cost_per_unit) if b.cost_per_unit is not None else None,
                    "effective_from": b.effective_from,
                    "effective_to": b.effective_to,
                }
                for metric, b in baselines.items()
            },
            "savings_breakdown": {
                metric: {**entry, "savings": str(entry["savings"])}
                for metric, entry in breakdown.items()
            },
            "kpi_count": self.kpis.count_measurements(tenant_id, start, end),
            "calculation_date": to_iso(utcnow()),
        }

        run = self.runs.create(GainShareRunRecord(
            tenant_id=tenant_id,
            period_start=start,
            period_end=end,
            calculated_savings=total,
            share_pct=pct,
            fee=fee,
            currency=self.currency,
            report=report,
        ))

        logger.info(
            "gainshare_run_created",
            run_id=run.id,
            tenant_id=tenant_id,
            savings=str(total),
            fee=str(fee),
        )

        return self._result(run)

    # Approval workflow

    def get_run(self, run_id: str) -> GainShareRunRecord:
        run = self.runs.get(run_id)
        if run is None:
            raise GainShareRunNotFound(f"Gain-share run not found: {run_id}", {"run_id": run_id})
        return run

    def _decide(self, run_id: str, status: str, decided_by: Optional[str]) -> Dict[str, Any]:
        run = self.get_run(run_id)
        if not self.runs.decide(run_id, status, decided_by):
            raise InvalidStatusTransition(
                f"Gain-share run {run_id} is {run.status}, expected pending_approval",
                {"run_id": run_id, "status": run.status},
            )
        return self._result(self.get_run(run_id))

    def approve(self, run_id: str, decided_by: Optional[str] = None) -> Dict[str, Any]:
        return self._decide(run_id, "approved", decided_by)

    def reject(self, run_id: str, decided_by: Optional[str] = None) -> Dict[str, Any]:
        return self._decide(run_id, "rejected", decided_by)

    def list_runs(self, tenant_id: str) -> List[Dict[str, Any]]:
        return [self._result(run) for run in self.runs.list_for_tenant(tenant_id)]

    @staticmethod
    def _result(run: GainShareRunRecord) -> Dict[str, Any]:
        return {
            "gainshare_run_id": run.id,
            "tenant_id": run.tenant_id,
            "period_start": run.period_start,
            "period_end": run.period_end,
            "calculated_savings": run.calculated_savings,
            "share_pct": run.share_pct,
            "fee": run.fee,
            "currency": run.currency,
            "status": run.status,
            "savings_breakdown": run.report.get("savings_breakdown", {}),
            "decided_at": run.decided_at,
            "decided_by": run.decided_by,
        }
