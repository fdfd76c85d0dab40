"""Command-line entry points for stockbook.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into calls on :mod:`stockbook.core_logic` and
:mod:`stockbook.reports`, and printing the results. Ledger failures come back
as :class:`~stockbook.results.Err` values and are mapped to exit codes here.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log, reports, set_console_level
from .constants import OutReason, TransactionType
from .results import (
    Err,
    InsufficientStock,
    InvalidReversal,
    LedgerError,
    LedgerFailure,
    NotFound,
    StorageFailure,
)


EXIT_OK = 0
EXIT_ERROR = 1
EXIT_REJECTED = 2
EXIT_MISSING_FILE = 3
EXIT_NOT_FOUND = 4
EXIT_STORAGE = 5


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    writes: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stockbook",
        description="Stock ledger and sales reports for the stockbook workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Echo ledger activity (INFO log records) to stderr.",
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
    """Declare mutating CLI commands."""
    specs = {
        "add-product": register_add_product_command(),
        "stock-in": register_stock_in_command(),
        "stock-out": register_stock_out_command(),
        "adjust": register_adjust_command(),
        "revert": register_revert_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "products": register_products_command(),
        "history": register_history_command(),
        "log": register_log_command(),
        "recent": register_recent_command(),
        "stats": register_stats_command(),
        "finance": register_finance_command(),
        "daily": register_daily_command(),
        "categories": register_categories_command(),
        "alerts": register_alerts_command(),
        "audit": register_audit_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_movement_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", required=True)
    parser.add_argument("--quantity", required=True)
    parser.add_argument("--notes", default=None)
    parser.add_argument("--reference-no", default=None)


def _add_range_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", type=date.fromisoformat, default=None, help="First day (YYYY-MM-DD).")
    parser.add_argument("--end", type=date.fromisoformat, default=None, help="Last day (YYYY-MM-DD).")
    parser.add_argument("--days", type=int, default=7, help="Window length when --start is omitted.")


def register_add_product_command() -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--unit", default="pcs")
        parser.add_argument("--stock", default="0", help="Opening stock.")
        parser.add_argument("--min-stock", default="0")
        parser.add_argument("--purchase-price", required=True)
        parser.add_argument("--selling-price", required=True)
        parser.add_argument("--category", default=None)
        parser.add_argument("--expiry-date", type=date.fromisoformat, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product, writes=True)


def register_stock_in_command() -> CommandSpec:
    """Register the parser and executor for ``stock-in``."""
    name = "stock-in"
    help_text = "Record incoming stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_movement_arguments(parser)
        parser.add_argument("--batch-number", default=None)
        parser.add_argument("--batch-expiry-date", type=date.fromisoformat, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_in, writes=True)


def register_stock_out_command() -> CommandSpec:
    """Register the parser and executor for ``stock-out``."""
    name = "stock-out"
    help_text = "Record outgoing stock (sale, damage, expiry, loss)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_movement_arguments(parser)
        parser.add_argument(
            "--reason",
            choices=[member.value for member in OutReason],
            default=OutReason.SOLD.value,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_out, writes=True)


def register_adjust_command() -> CommandSpec:
    """Register the parser and executor for ``adjust``."""
    name = "adjust"
    help_text = "Set the stock of a product after a stock-take."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_movement_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust, writes=True)


def register_revert_command() -> CommandSpec:
    """Register the parser and executor for ``revert``."""
    name = "revert"
    help_text = "Delete a transaction and undo its effect on stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_revert, writes=True)


def register_products_command() -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "Display products and current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products_report)


def register_history_command() -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "Display the ledger of one product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--limit", type=int, default=50)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history_report)


def register_log_command() -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the ledger filtered by date and type."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--from", dest="date_from", type=date.fromisoformat, default=None)
        parser.add_argument("--to", dest="date_to", type=date.fromisoformat, default=None)
        parser.add_argument("--type", dest="transaction_type", choices=[member.value for member in TransactionType])
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report)


def register_recent_command() -> CommandSpec:
    """Register the parser and executor for ``recent``."""
    name = "recent"
    help_text = "Display the latest transactions."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--limit", type=int, default=10)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_recent_report)


def register_stats_command() -> CommandSpec:
    """Register the parser and executor for ``stats``."""
    name = "stats"
    help_text = "Display movement counts."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stats_report)


def register_finance_command() -> CommandSpec:
    """Register the parser and executor for ``finance``."""
    name = "finance"
    help_text = "Display revenue and profit, overall or for a date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", type=date.fromisoformat, default=None)
        parser.add_argument("--end", type=date.fromisoformat, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_finance_report)


def register_daily_command() -> CommandSpec:
    """Register the parser and executor for ``daily``."""
    name = "daily"
    help_text = "Display revenue and profit per day."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_range_arguments(parser)
        parser.add_argument("--fill-gaps", action="store_true", help="Show days without sales as zero rows.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_daily_report)


def register_categories_command() -> CommandSpec:
    """Register the parser and executor for ``categories``."""
    name = "categories"
    help_text = "Display revenue and profit per product category."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_range_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_categories_report)


def register_alerts_command() -> CommandSpec:
    """Register the parser and executor for ``alerts``."""
    name = "alerts"
    help_text = "Display low-stock products and products or batches close to expiry."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--days", type=int, default=None, help="Expiry window (defaults to config).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_alerts_report)


def register_audit_command() -> CommandSpec:
    """Register the parser and executor for ``audit``."""
    name = "audit"
    help_text = "Replay a product's ledger and report stale balance snapshots."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--opening-stock", default="0")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_audit_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


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


def parse_decimal(raw: str, label: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"{label} must be a number: {raw!r}") from exc


def compose_out_notes(reason: str, notes: Optional[str]) -> str:
    """Build ``OUT`` notes in the ``"<Reason> - free text"`` form."""
    return f"{reason} - {notes}" if notes else reason


def resolve_range(args: argparse.Namespace, *, today: Optional[date] = None) -> tuple[date, date]:
    """Turn ``--start``/``--end``/``--days`` into an inclusive date window."""
    end = args.end or today or date.today()
    start = args.start or end - timedelta(days=max(args.days, 0))
    if start > end:
        raise ValueError(f"Start date {start} is after end date {end}")
    return start, end


def translate_add_product(args: argparse.Namespace) -> data_manager.ProductRow:
    """Translate CLI args into a catalog record."""
    return data_manager.ProductRow(
        product_id=args.product_id,
        product_name=args.product_name,
        unit=args.unit,
        current_stock=parse_decimal(args.stock, "Stock"),
        min_stock=parse_decimal(args.min_stock, "Minimum stock"),
        purchase_price=parse_decimal(args.purchase_price, "Purchase price"),
        selling_price=parse_decimal(args.selling_price, "Selling price"),
        category=args.category,
        expiry_date=args.expiry_date.isoformat() if args.expiry_date else None,
    )


def translate_movement(args: argparse.Namespace, transaction_type: TransactionType) -> core_logic.StockCommand:
    """Translate CLI args into a stock movement command."""
    notes = args.notes
    if transaction_type is TransactionType.OUT:
        notes = compose_out_notes(args.reason, args.notes)
    batch_expiry = getattr(args, "batch_expiry_date", None)
    return core_logic.StockCommand(
        product_id=args.product_id,
        transaction_type=transaction_type,
        quantity=parse_decimal(args.quantity, "Quantity"),
        notes=notes,
        reference_no=args.reference_no,
        batch_number=getattr(args, "batch_number", None),
        batch_expiry_date=batch_expiry.isoformat() if batch_expiry else None,
    )


def report_failure(failure: LedgerFailure) -> int:
    """Print a ledger failure and return the matching exit code."""
    print(f"[ERROR] {failure.describe()}")
    if isinstance(failure, NotFound):
        return EXIT_NOT_FOUND
    if isinstance(failure, (InsufficientStock, InvalidReversal)):
        return EXIT_REJECTED
    if isinstance(failure, StorageFailure):
        return EXIT_STORAGE
    return EXIT_ERROR


def format_entry(entry: reports.LedgerEntry) -> str:
    transaction = entry.transaction
    name = entry.product_name or f"<removed {transaction.product_id}>"
    line = (
        f"#{transaction.transaction_id} {transaction.transaction_date} {transaction.transaction_type.value:<6} "
        f"{transaction.quantity} {transaction.unit} {name} -> {transaction.balance_after}"
    )
    if transaction.notes:
        line += f" | {transaction.notes}"
    if transaction.batch_number:
        line += f" | batch {transaction.batch_number}"
        if transaction.batch_expiry_date:
            line += f" (exp {transaction.batch_expiry_date})"
    return line


def _run_movement(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    transaction_type: TransactionType,
) -> int:
    result = core_logic.record_transaction(context, translate_movement(args, transaction_type))
    if isinstance(result, Err):
        return report_failure(result.failure)
    recorded = result.value
    print(
        f"Recorded #{recorded.transaction.transaction_id} {transaction_type.value} "
        f"{recorded.transaction.quantity} {recorded.transaction.unit}: "
        f"stock {recorded.old_stock} -> {recorded.new_stock}"
    )
    return EXIT_OK


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow."""
    result = core_logic.add_product(context, translate_add_product(args))
    if isinstance(result, Err):
        return report_failure(result.failure)
    print(f"Added product {result.value.product_id} ({result.value.product_name})")
    return EXIT_OK


def run_stock_in(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return _run_movement(context, args, TransactionType.IN)


def run_stock_out(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return _run_movement(context, args, TransactionType.OUT)


def run_adjust(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return _run_movement(context, args, TransactionType.ADJUST)


def run_revert(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the revert workflow."""
    result = core_logic.revert_transaction(context, args.transaction_id)
    if isinstance(result, Err):
        return report_failure(result.failure)
    reverted = result.value
    print(
        f"Reverted #{reverted.transaction.transaction_id}: "
        f"stock {reverted.old_stock} -> {reverted.new_stock}"
    )
    if reverted.later_transaction_count:
        print(
            f"Warning: {reverted.later_transaction_count} later transaction(s) keep "
            "balance snapshots that no longer match the live stock."
        )
    return EXIT_OK


def run_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for product in core_logic.list_products(context):
        flag = " LOW" if product.current_stock <= product.min_stock else ""
        print(
            f"{product.product_id} {product.product_name}: {product.current_stock} {product.unit} "
            f"(min {product.min_stock}, buy {product.purchase_price}, sell {product.selling_price}, "
            f"{product.category or '-'}){flag}"
        )
    return EXIT_OK


def run_history_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.get_product(context, args.product_id)
    if isinstance(result, Err):
        return report_failure(result.failure)
    for entry in reports.transactions_for_product(context, args.product_id, args.limit):
        print(format_entry(entry))
    return EXIT_OK


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for entry in reports.all_transactions(context, args.date_from, args.date_to, args.transaction_type):
        print(format_entry(entry))
    return EXIT_OK


def run_recent_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for entry in reports.recent_transactions(context, args.limit):
        print(format_entry(entry))
    return EXIT_OK


def run_stats_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    stats = reports.transaction_stats(context)
    print(f"IN total: {stats.total_in} (today {stats.today_in})")
    print(f"OUT total: {stats.total_out} (today {stats.today_out})")
    print(f"Last {reports.RECENT_WINDOW_DAYS} days: {stats.recent_count}")
    return EXIT_OK


def run_finance_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    if args.start is None and args.end is None:
        stats = reports.financial_stats(context)
        print(f"Revenue: {stats.total_revenue} (today {stats.today_revenue})")
        print(f"Profit: {stats.total_profit} (today {stats.today_profit})")
        return EXIT_OK

    end = args.end or date.today()
    start = args.start or end
    totals = reports.financial_stats_for_range(context, start, end)
    print(f"{start} .. {end}: revenue {totals.total_revenue}, profit {totals.total_profit}, "
          f"{totals.transaction_count} sale(s)")
    return EXIT_OK


def run_daily_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    start, end = resolve_range(args)
    rows = reports.daily_breakdown(context, start, end)
    if args.fill_gaps:
        rows = reports.fill_daily_gaps(rows, start, end)
    for row in rows:
        print(f"{row.day}: revenue {row.revenue}, profit {row.profit}, {row.transaction_count} sale(s)")
    summary = reports.summarize_series([row.revenue for row in rows])
    print(
        f"Total {summary.total}, average {summary.average:.2f}, high {summary.highest}, "
        f"low {summary.lowest}, trend {summary.trend_percent:.1f}%"
    )
    return EXIT_OK


def run_categories_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    start, end = resolve_range(args)
    for row in reports.category_breakdown(context, start, end):
        print(
            f"{row.category}: revenue {row.revenue}, profit {row.profit}, "
            f"{row.product_count} product(s), {row.transaction_count} sale(s)"
        )
    return EXIT_OK


def run_alerts_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for product in core_logic.low_stock_products(context):
        print(f"LOW {product.product_id} {product.product_name}: {product.current_stock} {product.unit} "
              f"(min {product.min_stock})")
    for item in core_logic.near_expiry_products(context, args.days):
        print(f"EXPIRES {item.urgency.value} {item.product.product_id} {item.product.product_name}: "
              f"{item.days_left} day(s)")
    for batch in core_logic.near_expiry_batches(context, args.days):
        print(f"BATCH {batch.urgency.value} {batch.transaction.batch_number} "
              f"{batch.product_name or batch.transaction.product_id}: {batch.days_left} day(s)")
    return EXIT_OK


def run_audit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.audit_product_ledger(
        context, args.product_id, opening_stock=parse_decimal(args.opening_stock, "Opening stock"))
    if isinstance(result, Err):
        return report_failure(result.failure)
    audit = result.value
    print(f"Replayed {audit.replayed_stock}, live {audit.live_stock}")
    if audit.drifted_transaction_ids:
        print("Stale snapshots: " + ", ".join(f"#{tid}" for tid in audit.drifted_transaction_ids))
    return EXIT_OK if audit.consistent else EXIT_REJECTED


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    log.error("%s", error)
    if isinstance(error, LedgerError):
        return report_failure(error.failure)
    if isinstance(error, FileNotFoundError):
        return EXIT_MISSING_FILE
    if isinstance(error, ValueError):
        print(f"[ERROR] {error}")
        return EXIT_REJECTED
    return EXIT_ERROR


def persist_workbook(context: core_logic.RuntimeContext) -> int:
    """Persist workbook changes when the units of work did not already save."""
    try:
        core_logic.persist_context(context)
    except OSError as error:
        log.error("Failed to save '%s': %s", context.settings.data_file, error)
        return report_failure(StorageFailure(str(error)))
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if getattr(args, "verbose", False):
        set_console_level(logging.INFO)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        spec = command_table[args.command]
        if exit_code == EXIT_OK and spec.writes and not context.settings.autosave:
            exit_code = persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
