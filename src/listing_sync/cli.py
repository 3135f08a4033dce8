"""
Command-line interface for manual Listing Sync operations.

Runs the same services the Celery workers run, against one tenant, and
prints results as JSON. Exit codes: 0 success (partial success included),
2 reconnection required, 1 any other failure.
"""

import argparse
import json
import sys
import uuid
from typing import Any, Dict, List, Optional

from listing_sync.database.connection import get_db_context, init_db
from listing_sync.database.models import Tenant
from listing_sync.services.connection_resolver import ConnectionResolver
from listing_sync.services.context import SyncContext
from listing_sync.services.sync_service import SyncService
from listing_sync.services.token_manager import TokenManager
from listing_sync.utils.config import get_config
from listing_sync.utils.exceptions import ErrorType, ListingSyncError, ValidationError
from listing_sync.utils.logger import get_logger, setup_logging

cli_logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_AUTH_REVOKED = 2

SYNC_TARGETS = ["catalog", "orders", "metrics", "reconcile", "all"]


def _print_json(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str, ensure_ascii=False))


def _load_tenant(db, tenant_id: str) -> Tenant:
    try:
        key = uuid.UUID(tenant_id)
    except ValueError:
        raise ValidationError("Tenant id must be a UUID", field="tenant", value=tenant_id)
    tenant = db.get(Tenant, key)
    if tenant is None:
        raise ValidationError("Unknown tenant", field="tenant", value=tenant_id)
    return tenant


class ListingSyncCLI:
    """Command-line interface for Listing Sync operations."""

    def __init__(self):
        self.config = get_config()

    def cmd_init_db(self, args) -> int:
        init_db()
        _print_json({"status": "ok", "action": "init-db"})
        return EXIT_OK

    def cmd_sync(self, args) -> int:
        with get_db_context() as db:
            tenant = _load_tenant(db, args.tenant)
            ctx = SyncContext.with_timeout(
                tenant.id, self.config.sync.deadline_seconds,
                force_prices=args.force_prices, triggered_by="cli",
            )
            service = SyncService(tenant, db, config=self.config)

            if args.target == "all":
                _print_json(service.run_full_sync(ctx))
                return EXIT_OK

            if args.target == "catalog":
                result = service.sync_catalog(ctx)
            elif args.target == "orders":
                result = service.sync_orders(ctx, days=args.days)
            elif args.target == "metrics":
                result = service.sync_metrics(ctx, days=args.days)
            else:
                result = service.reconcile(ctx)

            output = result.to_dict()
            output["status"] = "completed_with_errors" if result.errors else "success"
            _print_json(output)
            return EXIT_OK

    def cmd_refresh_tokens(self, args) -> int:
        with get_db_context() as db:
            stats = TokenManager(db, config=self.config).refresh_expiring_tokens(args.window_hours)
        _print_json(stats)
        return EXIT_OK

    def cmd_resolve(self, args) -> int:
        with get_db_context() as db:
            tenant = _load_tenant(db, args.tenant)
            resolved = ConnectionResolver(db, self.config.sync.token_safety_margin_seconds).resolve(tenant.id)
            connection = resolved.connection
            # Tokens stay out of the output
            _print_json({
                "tenant_id": str(tenant.id),
                "connection_id": str(connection.id),
                "provider_account_id": connection.provider_account_id,
                "status": connection.status,
                "expires_at": connection.expires_at,
                "reason": resolved.reason,
            })
        return EXIT_OK


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser."""
    parser = argparse.ArgumentParser(
        prog="listing-sync",
        description="Listing Sync CLI - manual marketplace synchronization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  listing-sync init-db
  listing-sync sync all --tenant 6f1c...          # Full run for one tenant
  listing-sync sync metrics --tenant 6f1c... --days 7
  listing-sync sync catalog --tenant 6f1c... --force-prices
  listing-sync refresh-tokens
  listing-sync resolve --tenant 6f1c...
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-db", help="Create database tables")

    sync_parser = subparsers.add_parser("sync", help="Synchronize one tenant")
    sync_parser.add_argument("target", choices=SYNC_TARGETS, help="What to synchronize")
    sync_parser.add_argument("--tenant", required=True, help="Tenant UUID")
    sync_parser.add_argument(
        "--days",
        type=int,
        default=30,
        help="Lookback window for orders and metrics (default: 30)"
    )
    sync_parser.add_argument(
        "--force-prices",
        action="store_true",
        help="Re-check buyer prices regardless of the TTL"
    )

    refresh_parser = subparsers.add_parser("refresh-tokens", help="Refresh tokens close to expiry")
    refresh_parser.add_argument("--window-hours", type=int, default=None)

    resolve_parser = subparsers.add_parser("resolve", help="Show the connection a tenant resolves to")
    resolve_parser.add_argument("--tenant", required=True, help="Tenant UUID")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging()

    if not args.command:
        parser.print_help()
        return EXIT_FAILURE

    if args.command == "sync" and args.days <= 0:
        print("--days must be positive", file=sys.stderr)
        return EXIT_FAILURE

    handlers = {
        "init-db": "cmd_init_db",
        "sync": "cmd_sync",
        "refresh-tokens": "cmd_refresh_tokens",
        "resolve": "cmd_resolve",
    }

    try:
        cli = ListingSyncCLI()
        return getattr(cli, handlers[args.command])(args)
    except ListingSyncError as e:
        cli_logger.error(f"{args.command} failed: [{e.error_type.value}] {e}")
        _print_json({"status": "error", "error_type": e.error_type.value, "message": e.message})
        return EXIT_AUTH_REVOKED if e.error_type == ErrorType.AUTH_REVOKED else EXIT_FAILURE
    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        return 130
    except Exception as e:
        cli_logger.error(f"CLI operation failed: {e}", exc_info=True)
        _print_json({"status": "error", "message": str(e)})
        return EXIT_FAILURE


def cli_entry_point():
    """Entry point for console script."""
    sys.exit(main())


if __name__ == "__main__":
    cli_entry_point()
