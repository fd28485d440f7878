"""
RELIABILITY BILLING - Core Module

Pure pricing logic with no storage dependencies:
- Credit rule table (usage event -> credits)
- Plan catalogue
- Calendar-month billing periods
"""

from .credits import CreditRule, CreditRuleTable, EventType, compute_credits, default_rule_table
from .plans import DEFAULT_PLANS, PlanCode, PlanTerms
from .periods import add_months, month_bounds, parse_timestamp, to_iso, utcnow

__all__ = [
    "CreditRule",
    "CreditRuleTable",
    "EventType",
    "compute_credits",
    "default_rule_table",
    "DEFAULT_PLANS",
    "PlanCode",
    "PlanTerms",
    "add_months",
    "month_bounds",
    "parse_timestamp",
    "to_iso",
    "utcnow",
]
