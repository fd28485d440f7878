"""
RELIABILITY BILLING

Usage metering and billing reconciliation for industrial-maintenance tenants:
- Credit ledger for heterogeneous usage events
- Period-close invoicing with Stripe mirroring
- Gain-share fees from KPI improvements
"""

__version__ = "1.0.0"
