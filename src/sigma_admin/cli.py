"""Command-line entry points for the Sigma admin console.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing results. Keeping the CLI thin ensures the same parser
configuration can be reused by tests or by any alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, exports, log, reports, set_console_level
from .constants import OrderStatus, PaymentMethod, TransactionType
from .sync import dump_tasks


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="sigma-admin",
        description="Command-line tools for the Sigma store admin data.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Echo informational log messages to stderr.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as orders and stock movements."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "adjust-stock": register_adjust_stock_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "create-order": register_create_order_command(subparsers),
        "set-status": register_set_status_command(subparsers),
        "sync": register_sync_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "products": register_products_command(subparsers),
        "orders": register_orders_command(subparsers),
        "outbox": register_outbox_command(subparsers),
        "report": register_report_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
        "invoice": register_invoice_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_variant_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--size", default=None)
    parser.add_argument("--color", default=None)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Add a product to the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--price", required=True, help='Display price, e.g. "350.000đ".')
        parser.add_argument("--stock", type=int, default=0)
        parser.add_argument("--sku", default="")
        parser.add_argument("--category", default="")
        parser.add_argument("--brand", default="")
        parser.add_argument("--sizes", default=None, help="Comma-separated sizes, e.g. S,M,L.")
        parser.add_argument("--colors", default=None, help="Comma-separated colors.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Remove a product from the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product)


def register_adjust_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust-stock``."""
    name = "adjust-stock"
    help_text = "Record a manual stock import or export."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", type=int, required=True)
        parser.add_argument("--type", required=True, choices=[t.value for t in TransactionType])
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--note", default=None)
        _add_variant_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust_stock)


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--email", default=None)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--address", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_create_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``create-order``."""
    name = "create-order"
    help_text = "Place an order for a registered customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--product-id", type=int, required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument(
            "--payment-method",
            default=PaymentMethod.COD.value,
            choices=[p.value for p in PaymentMethod],
        )
        parser.add_argument("--shipping-fee", default="0")
        _add_variant_arguments(parser)
        parser.add_argument("--ship-name", default=None)
        parser.add_argument("--ship-phone", default=None)
        parser.add_argument("--ship-address", default=None)
        parser.add_argument("--note", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_order)


def register_set_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-status``."""
    name = "set-status"
    help_text = "Move an order to a new status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--status", required=True, choices=[s.value for s in OrderStatus])
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_status)


def register_sync_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sync``."""
    name = "sync"
    help_text = "Merge every collection with the remote API and flush pending writes."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--push-all",
            action="store_true",
            help="Queue every local record for upload before draining.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sync)


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "List cached products."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products)


def register_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``orders``."""
    name = "orders"
    help_text = "List cached orders, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--status", default=None, choices=[s.value for s in OrderStatus])
        parser.add_argument("--customer-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_orders)


def register_outbox_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``outbox``."""
    name = "outbox"
    help_text = "Show writes waiting for the remote API."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--dead", action="store_true", help="Show writes that were given up on.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_outbox)


REPORT_KINDS = ("inventory", "customers", "segments")


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Print or export the inventory, customer growth, or segmentation report."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("kind", choices=REPORT_KINDS)
        parser.add_argument("--csv", type=Path, default=None, help="Write the report as CSV to this path.")
        parser.add_argument("--xlsx", type=Path, default=None, help="Write the report as an Excel workbook.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_report)


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Print today's dashboard figures."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard)


def register_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoice``."""
    name = "invoice"
    help_text = "Render a printable HTML invoice for an order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--output", type=Path, default=None, help="Write the HTML here instead of stdout.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoice)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations.

    A CLI process is short lived, so collections merge with the remote API
    inline on first read instead of in the background.
    """
    return core_logic.load_runtime_context(config_path, merge_on_read=True)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_adjust_stock(args: argparse.Namespace) -> core_logic.InventoryAdjustmentCommand:
    """Translate CLI args into an inventory adjustment command."""
    return core_logic.InventoryAdjustmentCommand(
        product_id=args.product_id,
        type=TransactionType(args.type),
        quantity=args.quantity,
        note=args.note,
        size=args.size,
        color=args.color,
    )


def translate_create_order(
    args: argparse.Namespace, customer: data_manager.Customer
) -> core_logic.OrderCommand:
    """Translate CLI args into an order command for ``customer``."""
    shipping = None
    if args.ship_name or args.ship_phone or args.ship_address:
        shipping = core_logic.ShippingInfo(
            name=args.ship_name or customer.full_name,
            phone=args.ship_phone or customer.phone_number or "",
            address=args.ship_address or customer.address or "",
        )
    return core_logic.OrderCommand(
        customer=customer,
        product_id=args.product_id,
        quantity=args.quantity,
        payment_method=PaymentMethod(args.payment_method),
        shipping_fee=Decimal(args.shipping_fee),
        size=args.size,
        color=args.color,
        shipping=shipping,
        note=args.note,
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(
        context,
        name=args.name,
        price=args.price,
        stock=args.stock,
        sku=args.sku,
        category=args.category,
        brand=args.brand,
        sizes=core_logic.split_csv_option(args.sizes),
        colors=core_logic.split_csv_option(args.colors),
    )
    print(f"Added product {product.id}: {product.name}")
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow in the BLL."""
    if not core_logic.delete_product(context, args.product_id):
        raise core_logic.MissingReferenceError(f"Unknown product id: {args.product_id}")
    print(f"Deleted product {args.product_id}")
    return 0


def run_adjust_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a manual inventory adjustment via the BLL."""
    transaction = core_logic.adjust_inventory(context, translate_adjust_stock(args))
    print(f"Recorded {transaction.type.value} of {transaction.quantity} x {transaction.product_name}")
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow in the BLL."""
    customer = core_logic.add_customer(
        context,
        full_name=args.name,
        email=args.email,
        phone_number=args.phone,
        address=args.address,
    )
    print(f"Added customer {customer.id}: {customer.full_name}")
    return 0


def run_create_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the order workflow via the BLL."""
    customer = core_logic.get_customer(context, args.customer_id)
    result = core_logic.create_order(context, translate_create_order(args, customer))
    if not result.success:
        log.error("Order rejected: %s", result.message)
        print(result.message)
        return 2
    print(f"{result.message}: {result.order.id} ({exports.format_vnd(result.order.total_price)})")
    return 0


def run_set_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute an order status change via the BLL."""
    order = core_logic.update_order_status(context, args.order_id, args.status)
    print(f"Order {order.id} is now {order.status.value}")
    return 0


def run_sync(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Merge with the remote API and drain the outbox."""
    if not context.remote.online:
        print("Remote API is not configured; nothing to sync.")
        return 0
    if args.push_all:
        for store in (context.products, context.orders, context.transactions, context.customers):
            store.push_all()
    report = core_logic.sync_all(context)
    print(f"Sent {report.sent}, failed {report.failed}, dropped {report.dropped}")
    return 0


def run_products(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List products with their stock."""
    for product in core_logic.list_products(context):
        variants = ", ".join(
            f"{v.size or '-'}/{v.color or '-'}={v.stock}" for v in product.variants
        )
        line = f"{product.id}\t{product.name}\t{product.price}\tstock={product.stock}"
        print(f"{line}\t[{variants}]" if variants else line)
    return 0


def run_orders(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List orders, optionally filtered by status or customer."""
    orders = (
        core_logic.orders_for_customer(context, args.customer_id)
        if args.customer_id
        else core_logic.list_orders(context)
    )
    for order in orders:
        if args.status and order.status.value != args.status:
            continue
        print(
            f"{order.id}\t{order.status.value}\t{order.customer_name}\t"
            f"{order.product_name} x{order.quantity}\t{exports.format_vnd(order.total_price)}"
        )
    return 0


def run_outbox(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print pending (or dead-lettered) sync tasks as JSON."""
    tasks = context.outbox.dead_letters() if args.dead else context.outbox.pending()
    print(dump_tasks(tasks))
    return 0


def build_report_rows(context: core_logic.RuntimeContext, kind: str):
    """Return the export-ready rows for the named report."""
    if kind == "inventory":
        return reports.rows_from(reports.inventory_report_for(context))
    if kind == "customers":
        return reports.rows_from(reports.customer_growth_for(context))
    if kind == "segments":
        return reports.rows_from(reports.customer_segments_for(context))
    raise KeyError(f"Unknown report: {kind}")


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print a report and optionally export it."""
    rows = build_report_rows(context, args.kind)
    if args.csv is not None:
        exports.write_csv(rows, args.csv)
    if args.xlsx is not None:
        exports.write_xlsx(rows, args.xlsx, sheet_title=args.kind.capitalize())
    if args.csv is None and args.xlsx is None:
        print(exports.rows_to_csv(rows))
    return 0


def run_dashboard(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the headline dashboard figures."""
    metrics = reports.dashboard_metrics_for(context)
    print(f"Revenue today: {exports.format_vnd(metrics.revenue_today)}")
    print(f"Pending orders: {metrics.pending_orders}")
    print(f"Products: {metrics.product_count}")
    print(f"Low stock: {len(metrics.low_stock_products)}")
    for product in metrics.low_stock_products:
        print(f"  {product.name} ({product.stock})")
    print("Last 7 days:")
    for point in metrics.daily_sales:
        print(f"  {point.name}\t{point.value}\t{exports.format_vnd(point.revenue or Decimal('0'))}")
    return 0


def run_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Render an order invoice to stdout or a file."""
    order = core_logic.get_order(context, args.order_id)
    html = exports.render_invoice_html(order, context.settings)
    if args.output is None:
        print(html)
    else:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(html, encoding="utf-8")
        print(f"Invoice written to {args.output}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def flush_outbox(context: core_logic.RuntimeContext) -> None:
    """Push writes queued by the command; failures stay queued for the next run."""
    if not context.remote.online or not context.outbox.pending():
        return
    report = context.outbox.drain()
    if report.failed or report.dropped:
        log.warning("%d write(s) could not reach the remote API yet", report.failed + report.dropped)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if getattr(args, "verbose", False):
        set_console_level("INFO")
    context = None
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            flush_outbox(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
    finally:
        if context is not None:
            core_logic.close_context(context)
