"""Main entry point for the stock monitor."""

import argparse
import asyncio
import logging
import sys

import yaml
from pydantic import ValidationError

from .errors import MonitorError, ProductNotFoundError
from .fetcher import PlaywrightPageFetcher
from .models import MonitorState, Product, Variant
from .notifier import ConsoleNotifier
from .purchase import PlaywrightPurchaseAction
from .service import MonitorService
from .store import ProductStore
from .webhook import WebhookSink

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)
logger = logging.getLogger(__name__)

DEFAULT_STORE = "stock_monitor.yaml"


def build_service(store_path: str, headless: bool = True, cdp_url: str | None = None) -> MonitorService:
    """Create a service backed by Playwright and the YAML store."""
    fetcher = PlaywrightPageFetcher(headless=headless, cdp_url=cdp_url)
    return MonitorService(
        ProductStore(store_path),
        fetcher,
        notifier=ConsoleNotifier(),
        webhook=WebhookSink(),
        purchase=PlaywrightPurchaseAction(fetcher),
    )


def resolve_product_id(service: MonitorService, text: str) -> str:
    """Accept a full product id or an unambiguous prefix of one."""
    ids = [p.id for p in service.list_products()]
    if text in ids:
        return text
    matches = [pid for pid in ids if pid.startswith(text)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise ProductNotFoundError(f"Product {text} not found.")
    raise ProductNotFoundError(f"Product id prefix {text} is ambiguous ({len(matches)} matches).")


def parse_variants(values: list[str]) -> list[Variant]:
    variants = []
    for item in values:
        kind, sep, value = item.partition("=")
        if not sep or not kind or not value:
            raise ValueError(f"Variant must be TYPE=VALUE, got: {item}")
        variants.append(Variant(type=kind.strip(), value=value.strip()))
    return variants


def parse_setting_changes(values: list[str]) -> dict:
    """Turn KEY=VALUE pairs into typed settings changes."""
    changes = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            raise ValueError(f"Setting must be KEY=VALUE, got: {item}")
        # YAML scalars give us bools and numbers for free
        changes[key.strip()] = yaml.safe_load(raw) if raw else ""
    return changes


def format_product(product: Product) -> str:
    line = (
        f"{product.id[:8]}  [{product.monitor_state.value:<6}] "
        f"{product.stock_status.value:<12} ${product.current_price:>8.2f}  {product.name}"
    )
    if product.monitor_state == MonitorState.ERROR:
        line += f"\n          degraded: {product.error_count} errors, last: {product.last_error}"
    elif product.error_count:
        line += f"\n          {product.error_count} recent errors, last: {product.last_error}"
    return line


def show_products(service: MonitorService) -> int:
    """Show monitored products."""
    products = service.list_products()
    if not products:
        print("No products monitored.")
        return 0
    print(f"=== Products ({len(products)} total) ===\n")
    for product in products:
        print(format_product(product))
        print(f"          {product.url}")
    return 0


def show_status(service: MonitorService) -> int:
    """Show store status."""
    print(service.store.print_status())
    return 0


def show_logs(service: MonitorService, limit: int = 20) -> int:
    """Show the audit log, newest first."""
    entries = service.get_logs(limit)
    if not entries:
        print("No log entries.")
        return 0
    for entry in entries:
        product = f" [{entry.product_id[:8]}]" if entry.product_id else ""
        print(f"{entry.timestamp.isoformat(timespec='seconds')} {entry.event.value:<13}{product} {entry.details}")
    return 0


def show_settings(service: MonitorService, changes: list[str]) -> int:
    if changes:
        settings = service.update_settings(**parse_setting_changes(changes))
    else:
        settings = service.get_settings()
    print(yaml.dump(settings.model_dump(mode="json"), default_flow_style=False, sort_keys=False), end="")
    return 0


async def run_command(service: MonitorService, args: argparse.Namespace) -> int:
    """Dispatch one CLI command."""
    command = args.command

    if command == "run":
        await service.run()
        return 0

    if command == "add":
        product = await service.add_product(
            args.url,
            auto_add_to_cart=args.auto_cart,
            selected_variants=parse_variants(args.variant),
            max_quantity=args.quantity,
        )
        print(format_product(product))
        return 0

    if command == "list":
        return show_products(service)
    if command == "status":
        return show_status(service)
    if command == "logs":
        return show_logs(service, args.limit)
    if command == "clear-logs":
        service.clear_logs()
        print("Logs cleared.")
        return 0
    if command == "settings":
        return show_settings(service, args.set)

    if command == "start-all":
        print(f"Resumed {service.start_all()} products.")
        return 0
    if command == "stop-all":
        print(f"Paused {service.stop_all()} products.")
        return 0

    if command == "export":
        path = service.export_to_file(args.file)
        print(f"Exported to {path}")
        return 0
    if command == "import":
        count = service.import_from_file(args.file)
        print(f"Imported {count} products.")
        return 0

    product_id = resolve_product_id(service, args.id)
    if command == "remove":
        service.remove_product(product_id)
        print(f"Removed {product_id}")
    elif command == "pause":
        print(format_product(service.pause(product_id)))
    elif command == "resume":
        print(format_product(service.resume(product_id)))
    elif command == "toggle":
        print(format_product(service.toggle_monitor(product_id)))
    elif command == "check":
        print(format_product(await service.check_now(product_id)))
    elif command == "cart":
        if not await service.add_to_cart(product_id):
            print("Add to cart failed.")
            return 1
        print("Added to cart.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Stock Monitor - Watch product pages for restocks and price drops"
    )
    parser.add_argument(
        "-s", "--store",
        default=DEFAULT_STORE,
        help=f"Store file path (default: {DEFAULT_STORE})"
    )
    parser.add_argument(
        "--no-headless",
        action="store_true",
        help="Show browser window"
    )
    parser.add_argument(
        "--cdp-url",
        default=None,
        help="Attach to a running browser over CDP (e.g. http://localhost:9222)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("run", help="Run the monitor until interrupted")

    add_parser = subparsers.add_parser("add", help="Start monitoring a product")
    add_parser.add_argument("url", help="Product page URL")
    add_parser.add_argument(
        "--auto-cart",
        action="store_true",
        help="Add to cart automatically when it comes back in stock"
    )
    add_parser.add_argument(
        "-q", "--quantity",
        type=int,
        default=1,
        help="Quantity to add when the page shows no limit (default: 1)"
    )
    add_parser.add_argument(
        "--variant",
        action="append",
        default=[],
        metavar="TYPE=VALUE",
        help="Variant to select, e.g. size=M (repeatable)"
    )

    for name, help_text in (
        ("remove", "Stop monitoring a product"),
        ("pause", "Pause a product"),
        ("resume", "Resume a product"),
        ("toggle", "Toggle a product between active and paused"),
        ("check", "Check a product now"),
        ("cart", "Add a product to the cart now"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("id", help="Product id or unique id prefix")

    subparsers.add_parser("start-all", help="Resume all products")
    subparsers.add_parser("stop-all", help="Pause all products")
    subparsers.add_parser("list", help="List monitored products")
    subparsers.add_parser("status", help="Show monitor status")

    logs_parser = subparsers.add_parser("logs", help="Show the activity log")
    logs_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=20,
        help="Number of entries to show (default: 20)"
    )
    subparsers.add_parser("clear-logs", help="Delete the activity log")

    settings_parser = subparsers.add_parser("settings", help="Show or change settings")
    settings_parser.add_argument(
        "--set",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Change a setting, e.g. check_interval_seconds=60 (repeatable)"
    )

    export_parser = subparsers.add_parser("export", help="Export products, settings and profiles")
    export_parser.add_argument("file", help="Output file (.json, .yaml)")
    import_parser = subparsers.add_parser("import", help="Import an export file, replacing stored data")
    import_parser.add_argument("file", help="Export file to import")

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    service = build_service(args.store, headless=not args.no_headless, cdp_url=args.cdp_url)
    try:
        return asyncio.run(run_command(service, args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 1
    except (MonitorError, ValidationError, ValueError, OSError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
