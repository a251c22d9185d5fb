"""Command-line entry points for the spa ledger.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into calls on :class:`spa_ledger.store.LedgerStore`.
Keeping the CLI thin ensures the same parser configuration can be reused by
tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, TypeVar

from . import ledger_service, log, metrics
from .constants import PaymentMethod, TimeRange
from .store import CheckoutLine, LedgerStore, Notification

T = TypeVar("T")


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[LedgerStore, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="spa-ledger",
        description="Command-line tools for the spa ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini).",
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


def _payment_choices() -> List[str]:
    return [member.value for member in PaymentMethod]


def _make_spec(
    name: str,
    help_text: str,
    configure: Callable[[argparse.ArgumentParser], None],
    execute: Callable[[LedgerStore, argparse.Namespace], int],
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and restocks."""
    specs = {
        "add-product": register_add_product_command(),
        "update-product": register_update_product_command(),
        "delete-product": register_delete_product_command(),
        "sale": register_sale_command(),
        "bulk-sale": register_bulk_sale_command(),
        "restock": register_restock_command(),
        "adjust": register_adjust_command(),
        "monthly-restock": register_monthly_restock_command(),
        "add-service": register_add_service_command(),
        "deactivate-service": register_deactivate_service_command(),
        "service-income": register_service_income_command(),
        "expense": register_expense_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(),
        "log": register_log_command(),
        "restock-details": register_restock_details_command(),
        "metrics": register_metrics_command(),
        "finances": register_finances_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_product_command() -> CommandSpec:
    """Register the parser and executor for ``add-product``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)
        parser.add_argument("--cost-price", required=True)
        parser.add_argument("--sell-price", required=True)
        parser.add_argument("--stock", default="0")
        parser.add_argument("--category", default="")
        parser.add_argument("--description", default="")
        parser.add_argument("--low-stock-threshold", default="5")
        parser.add_argument("--size", default=None)
        parser.add_argument("--ingredients", default=None)
        parser.add_argument("--skin-concerns", default=None)

    return _make_spec("add-product", "Add a product to the catalog.", configure, run_add_product)


def register_update_product_command() -> CommandSpec:
    """Register the parser and executor for ``update-product``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--category", default=None)
        parser.add_argument("--description", default=None)
        parser.add_argument("--cost-price", default=None)
        parser.add_argument("--sell-price", default=None)
        parser.add_argument("--low-stock-threshold", default=None)

    return _make_spec("update-product", "Update catalog attributes of a product.", configure, run_update_product)


def register_delete_product_command() -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)

    return _make_spec("delete-product", "Remove a product from the catalog.", configure, run_delete_product)


def register_sale_command() -> CommandSpec:
    """Register the parser and executor for ``sale``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--payment-method", choices=_payment_choices(), default=None)

    return _make_spec("sale", "Record a single-product sale.", configure, run_sale)


def register_bulk_sale_command() -> CommandSpec:
    """Register the parser and executor for ``bulk-sale``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--item",
            action="append",
            required=True,
            metavar="PRODUCT_ID:QUANTITY[:DISCOUNT]",
            help="Cart line; repeat for each product.",
        )
        parser.add_argument("--payment-method", choices=_payment_choices(), default=None)

    return _make_spec("bulk-sale", "Record a multi-product checkout.", configure, run_bulk_sale)


def register_restock_command() -> CommandSpec:
    """Register the parser and executor for ``restock``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True)

    return _make_spec("restock", "Record a restock of one product.", configure, run_restock)


def register_adjust_command() -> CommandSpec:
    """Register the parser and executor for ``adjust``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--new-quantity", required=True)

    return _make_spec("adjust", "Set a product's stock to a counted value.", configure, run_adjust)


def register_monthly_restock_command() -> CommandSpec:
    """Register the parser and executor for ``monthly-restock``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--target",
            action="append",
            required=True,
            metavar="PRODUCT_ID=QUANTITY",
            help="Desired stock level; repeat for each product.",
        )

    return _make_spec("monthly-restock", "Restock several products as one event.", configure, run_monthly_restock)


def register_add_service_command() -> CommandSpec:
    """Register the parser and executor for ``add-service``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)
        parser.add_argument("--price", required=True)
        parser.add_argument("--description", default="")

    return _make_spec("add-service", "Add a sellable service.", configure, run_add_service)


def register_deactivate_service_command() -> CommandSpec:
    """Register the parser and executor for ``deactivate-service``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--service-id", required=True)

    return _make_spec("deactivate-service", "Hide a service from sale.", configure, run_deactivate_service)


def register_service_income_command() -> CommandSpec:
    """Register the parser and executor for ``service-income``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--service-id",
            action="append",
            required=True,
            help="Service sold; repeat to record a bundle.",
        )
        parser.add_argument("--discount", default=None, help="Bundle discount (bundles only).")
        parser.add_argument("--customer-name", default=None)
        parser.add_argument("--payment-method", choices=_payment_choices(), default=None)
        parser.add_argument("--tip", default=None)
        parser.add_argument("--notes", default=None)

    return _make_spec("service-income", "Record income for one or more services.", configure, run_service_income)


def register_expense_command() -> CommandSpec:
    """Register the parser and executor for ``expense``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--amount", required=True)
        parser.add_argument("--vendor", default=None)
        parser.add_argument("--category", default=None)
        parser.add_argument("--payment-method", choices=_payment_choices(), default=None)
        parser.add_argument("--description", default=None)

    return _make_spec("expense", "Record a business expense.", configure, run_expense)


def register_stock_command() -> CommandSpec:
    """Register the parser and executor for ``stock``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--low-only", action="store_true", help="Only list products at or below threshold.")

    return _make_spec("stock", "Display current stock levels.", configure, run_stock_report)


def register_log_command() -> CommandSpec:
    """Register the parser and executor for ``log``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--limit", type=int, default=None)

    return _make_spec("log", "Display the transaction log.", configure, run_log_report)


def register_restock_details_command() -> CommandSpec:
    """Register the parser and executor for ``restock-details``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--parent-id", default=None, help="Aggregate restock to expand.")

    return _make_spec(
        "restock-details",
        "List monthly restocks or the lines of one restock.",
        configure,
        run_restock_details,
    )


def register_metrics_command() -> CommandSpec:
    """Register the parser and executor for ``metrics``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--range",
            dest="time_range",
            choices=[member.value for member in TimeRange],
            default=TimeRange.LAST_30_DAYS.value,
        )
        parser.add_argument("--services", action="store_true", help="Report services instead of products.")
        parser.add_argument("--export-dir", type=Path, default=None, help="Write the table as CSV here.")

    return _make_spec("metrics", "Display product or service performance.", configure, run_metrics_report)


def register_finances_command() -> CommandSpec:
    """Register the parser and executor for ``finances``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        pass

    return _make_spec("finances", "Display this month's income, expenses and net profit.", configure, run_finances_report)


def load_runtime_context(config_path: Optional[Path] = None) -> ledger_service.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = ledger_service.load_runtime_context(Path(config_path) if config_path is not None else None)
    ledger_service.ensure_schema_version(context)
    return context


def dispatch_command(
    store: LedgerStore,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(store, args)


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


# ---------------------------------------------------------------------------
# Argument translation
# ---------------------------------------------------------------------------


def parse_decimal(raw: str, label: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid {label}: {raw!r}") from exc


def parse_int(raw: str, label: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid {label}: {raw!r}") from exc


def translate_add_product(args: argparse.Namespace) -> ledger_service.NewProductCommand:
    """Translate CLI args into an add-product command object."""
    return ledger_service.NewProductCommand(
        name=args.name,
        cost_price=parse_decimal(args.cost_price, "cost price"),
        sell_price=parse_decimal(args.sell_price, "sell price"),
        stock_quantity=parse_int(args.stock, "stock"),
        category=args.category,
        description=args.description,
        low_stock_threshold=parse_int(args.low_stock_threshold, "low stock threshold"),
        size=args.size,
        ingredients=args.ingredients,
        skin_concerns=args.skin_concerns,
    )


def translate_update_product(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate the supplied update-product options into a partial update."""
    updates: Dict[str, Any] = {}
    for field in ("name", "category", "description"):
        value = getattr(args, field)
        if value is not None:
            updates[field] = value
    for field in ("cost_price", "sell_price"):
        value = getattr(args, field)
        if value is not None:
            updates[field] = parse_decimal(value, field.replace("_", " "))
    if args.low_stock_threshold is not None:
        updates["low_stock_threshold"] = parse_int(args.low_stock_threshold, "low stock threshold")
    if not updates:
        raise ValueError("Nothing to update")
    return updates


def translate_bulk_sale(args: argparse.Namespace) -> List[CheckoutLine]:
    """Translate ``--item PRODUCT_ID:QUANTITY[:DISCOUNT]`` values into cart lines."""
    lines = []
    for raw in args.item:
        parts = raw.split(":")
        if len(parts) not in (2, 3):
            raise ValueError(f"Invalid item: {raw!r}")
        discount = parse_decimal(parts[2], "discount") if len(parts) == 3 else Decimal("0")
        lines.append(CheckoutLine(product_id=parts[0], quantity=parse_int(parts[1], "quantity"), discount=discount))
    return lines


def translate_monthly_restock(args: argparse.Namespace) -> Dict[str, int]:
    """Translate ``--target PRODUCT_ID=QUANTITY`` values into target levels."""
    targets: Dict[str, int] = {}
    for raw in args.target:
        product_id, sep, quantity = raw.partition("=")
        if not sep or not product_id:
            raise ValueError(f"Invalid target: {raw!r}")
        targets[product_id] = parse_int(quantity, "quantity")
    return targets


def translate_service_income(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate the optional service-income details."""
    details: Dict[str, Any] = {
        "customer_name": args.customer_name,
        "payment_method": args.payment_method,
        "description": args.notes,
    }
    if args.tip is not None:
        details["tip_amount"] = parse_decimal(args.tip, "tip")
    if len(args.service_id) > 1:
        details["discount"] = parse_decimal(args.discount, "discount") if args.discount else Decimal("0")
    elif args.discount:
        raise ValueError("A discount needs more than one service")
    return details


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def require_result(store: LedgerStore, result: Optional[T]) -> T:
    """Re-raise the error a store operation swallowed so it maps to an exit code."""
    if result is None and store.last_error is not None:
        raise store.last_error
    return result  # type: ignore[return-value]


def run_add_product(store: LedgerStore, args: argparse.Namespace) -> int:
    """Execute the add-product workflow."""
    product = require_result(store, store.add_product(translate_add_product(args)))
    print(product.id)
    return 0


def run_update_product(store: LedgerStore, args: argparse.Namespace) -> int:
    """Execute the update-product workflow."""
    require_result(store, store.update_product(args.product_id, translate_update_product(args)))
    return 0


def run_delete_product(store: LedgerStore, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow."""
    require_result(store, store.delete_product(args.product_id))
    return 0


def run_sale(store: LedgerStore, args: argparse.Namespace) -> int:
    """Execute the sale workflow."""
    outcome = require_result(
        store,
        store.record_sale(
            args.product_id,
            parse_int(args.quantity, "quantity"),
            payment_method=args.payment_method,
        ),
    )
    print(outcome.sale.id)
    return 0


def run_bulk_sale(store: LedgerStore, args: argparse.Namespace) -> int:
    """Execute the bulk sale workflow."""
    outcome = store.record_bulk_sale(translate_bulk_sale(args), payment_method=args.payment_method)
    print(outcome.sale.id)
    return 0


def run_restock(store: LedgerStore, args: argparse.Namespace) -> int:
    """Execute the restock workflow."""
    require_result(store, store.record_restock(args.product_id, parse_int(args.quantity, "quantity")))
    return 0


def run_adjust(store: LedgerStore, args: argparse.Namespace) -> int:
    """Execute the inventory adjustment workflow."""
    require_result(store, store.adjust_inventory(args.product_id, parse_int(args.new_quantity, "quantity")))
    return 0


def run_monthly_restock(store: LedgerStore, args: argparse.Namespace) -> int:
    """Execute the monthly restock workflow."""
    outcome = store.record_monthly_restock(translate_monthly_restock(args))
    if outcome is None:
        require_result(store, outcome)
        return 0
    print(outcome.parent.id)
    return 0


def run_add_service(store: LedgerStore, args: argparse.Namespace) -> int:
    """Execute the add-service workflow."""
    service = require_result(
        store,
        store.add_service(
            name=args.name,
            price=parse_decimal(args.price, "price"),
            description=args.description,
        ),
    )
    print(service.id)
    return 0


def run_deactivate_service(store: LedgerStore, args: argparse.Namespace) -> int:
    """Execute the deactivate-service workflow."""
    require_result(store, store.deactivate_service(args.service_id))
    return 0


def run_service_income(store: LedgerStore, args: argparse.Namespace) -> int:
    """Execute the service income workflow."""
    details = translate_service_income(args)
    if len(args.service_id) > 1:
        record = store.record_bundled_service_income(args.service_id, **details)
    else:
        record = store.record_service_income(args.service_id[0], **details)
    require_result(store, record)
    return 0


def run_expense(store: LedgerStore, args: argparse.Namespace) -> int:
    """Execute the expense workflow."""
    record = store.record_expense(
        parse_decimal(args.amount, "amount"),
        vendor=args.vendor,
        category=args.category,
        payment_method=args.payment_method,
        description=args.description,
    )
    require_result(store, record)
    return 0


def run_stock_report(store: LedgerStore, args: argparse.Namespace) -> int:
    """Print stock levels and the inventory value."""
    products = store.low_stock_products() if args.low_only else store.list_products()
    for product in sorted(products, key=lambda item: item.name.lower()):
        flag = " LOW" if product.is_low_stock else ""
        print(f"{product.id}  {product.name:<30} {product.stock_quantity:>5}{flag}")
    print(f"Inventory value: ${store.get_total_inventory_value():.2f}")
    if store.last_restock_date is not None:
        print(f"Last restock: {store.last_restock_date.date().isoformat()}")
    return 0


def run_log_report(store: LedgerStore, args: argparse.Namespace) -> int:
    """Print the transaction log, newest first."""
    transactions = store.transactions if args.limit is None else store.transactions[: args.limit]
    for transaction in transactions:
        print(
            f"{transaction.date.isoformat()}  {transaction.kind.value:<17} "
            f"{transaction.product_name:<30} {transaction.quantity:>5} ${transaction.price:.2f}"
        )
    return 0


def run_restock_details(store: LedgerStore, args: argparse.Namespace) -> int:
    """Print aggregate restocks, or the lines of one of them."""
    if args.parent_id is None:
        rows = store.get_restock_summaries()
    else:
        rows = store.get_restock_details(args.parent_id)
    if store.last_error is not None:
        raise store.last_error
    for transaction in rows:
        print(
            f"{transaction.id}  {transaction.date.isoformat()}  {transaction.product_name:<30} "
            f"{transaction.quantity:>5} ${transaction.price:.2f}"
        )
    return 0


def run_metrics_report(store: LedgerStore, args: argparse.Namespace) -> int:
    """Print product or service performance for the selected window."""
    ranges = metrics.get_date_ranges()
    time_range = TimeRange(args.time_range)
    if args.services:
        rows: Sequence[Any] = metrics.calculate_services_data(store.service_incomes, time_range, ranges)
    else:
        sales = metrics.sellable_sales_transactions(store.transactions, store.products)
        window = [txn for txn in sales if metrics.in_time_range(txn.date, time_range, ranges)]
        rows = metrics.calculate_product_performance(window, store.list_products())

    print(metrics.generate_csv_data(rows, not args.services), end="")
    if args.export_dir is not None:
        metrics.export_to_csv(rows, not args.services, args.export_dir)
    return 0


def run_finances_report(store: LedgerStore, args: argparse.Namespace) -> int:
    """Print the monthly finance summary."""
    summary = require_result(store, store.get_finance_summary())
    print(f"Income: ${summary.total_income:.2f}")
    print(f"Expenses: ${summary.total_expenses:.2f}")
    print(f"Net profit: ${summary.net_profit:.2f}")
    print(f"Top service: {summary.top_service_name} (${summary.top_service_amount:.2f})")
    print(f"Top vendor: {summary.top_vendor} (${summary.top_vendor_amount:.2f})")
    return 0


def cli_notifier(notification: Notification) -> None:
    """Print store notifications for the terminal user."""
    print(f"[{notification.level.value}] {notification.title}: {notification.message}")


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, ledger_service.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: ledger_service.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        ledger_service.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        store = LedgerStore(context, notifier=cli_notifier)
        failed = store.load()
        if failed:
            log.warning("Continuing with partially loaded ledger: %s", ", ".join(failed))
        exit_code = dispatch_command(store, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
