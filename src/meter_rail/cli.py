"""
Meter Rail CLI

Commands:
  serve            - Run the metering server
  reconcile        - Recompute usage aggregates for a billing period
  overages         - Show a customer's overages for a billing period
  process-billing  - Invoice a creator's overages for a billing period
  sync-usage       - Report a period's usage totals to the billing provider
  retry-failed     - Retry failed billing sync records
"""

import argparse
import sys

from .core.errors import MeteringError
from .metering import InlineDispatcher


def _services():
    from .services import build_services
    return build_services(dispatcher=InlineDispatcher())


def cmd_serve(args):
    """Run the metering server."""
    import uvicorn
    from .config import Settings

    port = args.port or Settings.from_env().port
    host = args.host or "0.0.0.0"

    print(f"Starting Meter Rail on {host}:{port}")

    uvicorn.run(
        "meter_rail.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_reconcile(args):
    """Recompute every aggregate with events in the period."""
    services = _services()
    try:
        count = services.aggregation.reconcile_period(args.creator, args.period)
        print(f"Reconciled {count} aggregates for {args.period}")
    finally:
        services.close()


def cmd_overages(args):
    """Show a customer's overages."""
    services = _services()
    try:
        if args.preview:
            overages = services.overages.preview_overages(args.customer, args.creator, args.period)
        else:
            overages = services.overages.calculate_usage_overages(args.customer, args.creator, args.period)

        if not overages:
            print(f"No overages for {args.customer} in {args.period}")
            return

        print(f"Overages for {args.customer} ({args.period})")
        print("=" * 40)
        for overage in overages:
            status = "billed" if overage.billed else "unbilled"
            print(
                f"{overage.meter_id}: {overage.actual_usage:g} used, {overage.limit_value:g} included, "
                f"{overage.overage_amount:g} over -> {overage.overage_cost:.2f} ({status})"
            )
    finally:
        services.close()


def cmd_process_billing(args):
    """Invoice a creator's overages for a period."""
    services = _services()
    try:
        result = services.billing_sync.process_billing_cycle(args.creator, args.period)
        print(f"Billing period: {result.billing_period}")
        print(f"  Customers processed: {result.processed}")
        print(f"  Line items created: {result.line_items_created}")
        for error in result.errors:
            print(f"  Error: {error}")
        if result.errors:
            sys.exit(1)
    finally:
        services.close()


def cmd_sync_usage(args):
    """Report usage totals to the billing provider."""
    services = _services()
    try:
        summary = services.billing_sync.sync_period_usage(args.creator, args.period)
        print(
            f"Usage sync for {args.period}: {summary['synced']} synced, {summary['failed']} failed, "
            f"{summary['exhausted']} out of retries"
        )
    finally:
        services.close()


def cmd_retry_failed(args):
    """Retry failed sync records that have attempts left."""
    services = _services()
    try:
        summary = services.billing_sync.retry_all_failed(limit=args.limit)
        print(f"Retried: {summary['synced']} synced, {summary['failed']} still failing")
    finally:
        services.close()


def main():
    parser = argparse.ArgumentParser(
        description="Meter Rail - Usage Metering & Tier Enforcement",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # reconcile
    reconcile_parser = subparsers.add_parser("reconcile", help="Recompute aggregates")
    reconcile_parser.add_argument("creator", help="Creator ID")
    reconcile_parser.add_argument("period", help="Billing period key, e.g. 2024-01")

    # overages
    overages_parser = subparsers.add_parser("overages", help="Show customer overages")
    overages_parser.add_argument("customer", help="Customer ID")
    overages_parser.add_argument("creator", help="Creator ID")
    overages_parser.add_argument("period", help="Billing period key")
    overages_parser.add_argument("--preview", action="store_true", help="Compute without storing")

    # process-billing
    billing_parser = subparsers.add_parser("process-billing", help="Invoice overages")
    billing_parser.add_argument("creator", help="Creator ID")
    billing_parser.add_argument("period", help="Billing period key")

    # sync-usage
    sync_parser = subparsers.add_parser("sync-usage", help="Report usage to the billing provider")
    sync_parser.add_argument("creator", help="Creator ID")
    sync_parser.add_argument("period", help="Billing period key")

    # retry-failed
    retry_parser = subparsers.add_parser("retry-failed", help="Retry failed billing sync")
    retry_parser.add_argument("--limit", type=int, default=100)

    args = parser.parse_args()

    commands = {
        "serve": cmd_serve,
        "reconcile": cmd_reconcile,
        "overages": cmd_overages,
        "process-billing": cmd_process_billing,
        "sync-usage": cmd_sync_usage,
        "retry-failed": cmd_retry_failed,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return

    try:
        command(args)
    except MeteringError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
