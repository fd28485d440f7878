"""
Credit Rule Table

Converts heterogeneous usage events into integer credits.

    credits = per_unit_cost * ceil(quantity / unit_size)

Rounding is always up: a partial block of usage is billed as a full block.
Flat-priced events (optimizer jobs, simulator runs) count as one unit per
event regardless of their metadata.
"""

import math
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple, Union

from ..errors import InvalidUsageEvent, UnknownEventType


class EventType(Enum):
    """Built-in usage event types."""
    LLM_TOKEN_USAGE = "LLM_token_usage"
    VISION_FRAME_BATCH = "vision_frame_batch"
    OPTIMIZER_JOB = "optimizer_job"
    SIMULATOR_RUN = "simulator_run"


@dataclass(frozen=True)
class CreditRule:
    """
    Credit cost formula for one event type.

    quantity_key names the meta field holding the raw quantity. A rule
    without one is flat: every event counts as a single unit.
    """
    per_unit_cost: int
    unit_size: int = 1
    quantity_key: Optional[str] = None
    unit_label: str = "event"

    @property
    def is_flat(self) -> bool:
        return self.quantity_key is None

    def quantity(self, meta: Mapping[str, Any], units: Optional[float] = None) -> float:
        """Resolve the raw quantity an event is billed on."""
        if self.is_flat:
            return 1

        raw = meta.get(self.quantity_key) if meta else None
        if raw is None:
            raw = units
        if raw is None:
            raise InvalidUsageEvent(
                f"Missing '{self.quantity_key}' in meta and no units given",
                {"quantity_key": self.quantity_key},
            )

        try:
            value = float(raw)
        except (TypeError, ValueError):
            raise InvalidUsageEvent(f"Non-numeric quantity: {raw!r}")

        if value < 0 or math.isnan(value) or math.isinf(value):
            raise InvalidUsageEvent(f"Quantity must be a finite non-negative number: {raw!r}")
        return value

    def unit_count(self, meta: Mapping[str, Any], units: Optional[float] = None) -> int:
        if self.is_flat:
            return 1
        # Decimal keeps 1500/1000 from picking up binary float error before ceil
        quantity = Decimal(str(self.quantity(meta, units)))
        return int(math.ceil(quantity / Decimal(self.unit_size)))

    def credits(self, meta: Mapping[str, Any], units: Optional[float] = None) -> int:
        return self.per_unit_cost * self.unit_count(meta, units)


DEFAULT_RULES: Dict[str, CreditRule] = {
    EventType.LLM_TOKEN_USAGE.value: CreditRule(
        per_unit_cost=1, unit_size=1000, quantity_key="total_tokens", unit_label="1k_tokens",
    ),
    EventType.VISION_FRAME_BATCH.value: CreditRule(
        per_unit_cost=5, unit_size=100, quantity_key="frames", unit_label="100_frames",
    ),
    EventType.OPTIMIZER_JOB.value: CreditRule(per_unit_cost=500, unit_label="job"),
    EventType.SIMULATOR_RUN.value: CreditRule(per_unit_cost=1000, unit_label="run"),
}


class CreditRuleTable:
    """
    Registry of credit rules keyed by event type.

    New event types are added with register(); anything not registered is
    rejected with UnknownEventType before a ledger write happens.
    """

    def __init__(self, rules: Optional[Mapping[str, CreditRule]] = None):
        self._rules: Dict[str, CreditRule] = dict(DEFAULT_RULES if rules is None else rules)

    def register(self, event_type: Union[str, EventType], rule: CreditRule) -> None:
        self._rules[_key(event_type)] = rule

    def rule_for(self, event_type: Union[str, EventType]) -> CreditRule:
        rule = self._rules.get(_key(event_type))
        if rule is None:
            raise UnknownEventType(_key(event_type))
        return rule

    def compute_credits(
        self,
        event_type: Union[str, EventType],
        meta: Optional[Mapping[str, Any]] = None,
        units: Optional[float] = None,
    ) -> int:
        """Credits consumed by one event."""
        return self.rule_for(event_type).credits(meta or {}, units)

    def raw_units(
        self,
        event_type: Union[str, EventType],
        meta: Optional[Mapping[str, Any]] = None,
        units: Optional[float] = None,
    ) -> float:
        """Raw quantity recorded on the usage event."""
        rule = self.rule_for(event_type)
        if rule.is_flat:
            return units if units is not None else 1
        return rule.quantity(meta or {}, units)

    def __contains__(self, event_type: object) -> bool:
        if isinstance(event_type, (str, EventType)):
            return _key(event_type) in self._rules
        return False

    def __iter__(self) -> Iterator[Tuple[str, CreditRule]]:
        return iter(sorted(self._rules.items()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            event_type: {
                "credits_per_unit": rule.per_unit_cost,
                "unit": rule.unit_label,
                "unit_size": rule.unit_size,
                "quantity_key": rule.quantity_key,
            }
            for event_type, rule in self
        }


def _key(event_type: Union[str, EventType]) -> str:
    return event_type.value if isinstance(event_type, EventType) else str(event_type)


default_rule_table = CreditRuleTable()


def compute_credits(
    event_type: Union[str, EventType],
    meta: Optional[Mapping[str, Any]] = None,
    units: Optional[float] = None,
) -> int:
    """Credits for an event under the default rule table."""
    return default_rule_table.compute_credits(event_type, meta, units)
