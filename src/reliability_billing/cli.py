"""
Reliability Billing CLI

Commands:
  serve          - Run the billing API server
  seed-plans     - Insert the default plan catalogue
  invoice        - Generate the invoice for a subscription's current period
  sync-invoices  - Retry the Stripe push for pending/failed invoices
  rebuild        - Re-derive a subscription's credit balance from its events

Period rollover is triggered externally (cron or a scheduler) by calling
`invoice` once per subscription per period.
"""

import argparse
import sys
from typing import List, Optional

from .config import BillingConfig
from .errors import BillingError


def _database(config: BillingConfig):
    from .persistence.database import Database

    db = Database(config.database_url)
    db.initialize()
    return db


def _processor(config: BillingConfig):
    from .billing.stripe_integration import StripeIntegration

    return StripeIntegration(
        api_key=config.stripe_api_key,
        webhook_secret=config.stripe_webhook_secret,
        meter_event_name=config.stripe_meter_event_name,
        currency=config.currency,
    )


def cmd_serve(args, config: BillingConfig):
    """Run the billing API server."""
    import uvicorn

    port = args.port or config.port
    print(f"Starting Reliability Billing on {args.host}:{port}")

    uvicorn.run(
        "reliability_billing.api.server:app",
        host=args.host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_seed_plans(args, config: BillingConfig):
    """Insert any default plan missing from the catalogue."""
    from .persistence.repository import PlanRepository

    plans = PlanRepository(_database(config))
    created = plans.seed_defaults()
    print(f"Plans created: {len(created)}")
    for plan in plans.list_active():
        print(f"  {plan.code:<12} {plan.base_price:>10} {config.currency}  {plan.included_credits:>9} credits")


def cmd_invoice(args, config: BillingConfig):
    """Generate the invoice for a subscription's current period."""
    from .billing.invoicing import InvoiceReconciler

    reconciler = InvoiceReconciler(_database(config), _processor(config))
    result = reconciler.generate_invoice(args.subscription_id, args.period_start)

    if result["already_invoiced"]:
        print("Period already invoiced")
    print(f"Invoice: {result['invoice_id']}")
    print(f"  Period: {result['period_start'][:10]} to {result['period_end'][:10]}")
    for name, amount in result["breakdown"].items():
        print(f"  {name:<14} {amount:>10}")
    print(f"  {'total':<14} {result['total']:>10} {result['currency']}")
    print(f"  Stripe sync: {result['processor_sync_status']}")


def cmd_sync_invoices(args, config: BillingConfig):
    """Retry the Stripe push for pending and failed invoices."""
    from .billing.invoicing import InvoiceReconciler

    reconciler = InvoiceReconciler(_database(config), _processor(config))
    counts = reconciler.sync_pending_invoices(args.limit)
    print(
        f"Attempted: {counts['attempted']}  Synced: {counts['synced']}  "
        f"Failed: {counts['failed']}  Deferred: {counts['deferred']}"
    )


def cmd_rebuild(args, config: BillingConfig):
    """Re-derive the cached credit balance from the usage event log."""
    from .billing.ledger import UsageLedger

    ledger = UsageLedger(_database(config))
    result = ledger.rebuild_balance(args.subscription_id)
    print(f"Subscription: {args.subscription_id}")
    print(f"  Previous remaining: {result['previous_remaining_credits']}")
    print(f"  Remaining:          {result['remaining_credits']}")
    print(f"  Consistent:         {'Yes' if result['consistent'] else 'No'}")


COMMANDS = {
    "serve": cmd_serve,
    "seed-plans": cmd_seed_plans,
    "invoice": cmd_invoice,
    "sync-invoices": cmd_sync_invoices,
    "rebuild": cmd_rebuild,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reliability-billing",
        description="Reliability Billing - usage metering and billing reconciliation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    subparsers.add_parser("seed-plans", help="Insert the default plan catalogue")

    invoice_parser = subparsers.add_parser("invoice", help="Invoice a subscription's current period")
    invoice_parser.add_argument("subscription_id")
    invoice_parser.add_argument("--period-start", help="Period being closed (ISO-8601); makes retries safe")

    sync_parser = subparsers.add_parser("sync-invoices", help="Retry Stripe sync of invoices")
    sync_parser.add_argument("--limit", type=int, default=100)

    rebuild_parser = subparsers.add_parser("rebuild", help="Rebuild a credit balance from the ledger")
    rebuild_parser.add_argument("subscription_id")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return 1

    config = BillingConfig.from_env()
    try:
        command(args, config)
    except BillingError as e:
        print(f"Error: {e.message}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
