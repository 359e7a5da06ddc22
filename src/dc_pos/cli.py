"""Command-line entry points for the point-of-sale toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end that wants to expose
the package capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import EXPENSE_CATEGORIES, BaseUnit, DiscountType, PaymentMethod, Role, SaleUnit
from .errors import BusinessRuleViolation, ConfigurationError, OutOfStockError
from .models import BillDiscount, PackComposition, Payment

EXIT_INSUFFICIENT_PAYMENT = 5


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
        prog="dc-pos",
        description="Command-line tools for the point-of-sale workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
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
    """Declare mutating CLI commands such as sales and deliveries."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "receive": register_receive_command(subparsers),
        "sell": register_sell_command(subparsers),
        "add-supplier": register_add_supplier_command(subparsers),
        "supplier-invoice": register_supplier_invoice_command(subparsers),
        "supplier-payment": register_supplier_payment_command(subparsers),
        "expense": register_expense_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "expiring": register_expiring_command(subparsers),
        "sales": register_sales_command(subparsers),
        "supplier-aging": register_supplier_aging_command(subparsers),
        "expenses": register_expenses_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def decimal_arg(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"not a number: {raw!r}") from exc


def date_arg(raw: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO date (YYYY-MM-DD): {raw!r}") from exc


def payment_arg(raw: str) -> Payment:
    """Parse ``METHOD:AMOUNT[:REFERENCE]`` into a :class:`Payment`."""
    parts = raw.split(":", 2)
    if len(parts) < 2:
        raise argparse.ArgumentTypeError(f"expected METHOD:AMOUNT[:REF], got {raw!r}")
    try:
        method = PaymentMethod(parts[0].strip().lower())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"unknown payment method: {parts[0]!r}") from exc
    reference = parts[2] if len(parts) == 3 and parts[2] else None
    return Payment(method=method, amount=decimal_arg(parts[1]), reference=reference)


# ---------------------------------------------------------------------------
# Registrars
# ---------------------------------------------------------------------------


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sku", required=True)
        parser.add_argument("--name", required=True, help="English product name.")
        parser.add_argument("--name-si", default=None)
        parser.add_argument("--name-ta", default=None)
        parser.add_argument("--category", default=None)
        parser.add_argument("--base-unit", required=True, choices=[member.value for member in BaseUnit])
        parser.add_argument("--default-unit", required=True, choices=[member.value for member in SaleUnit])
        parser.add_argument(
            "--allowed-units",
            default=None,
            help="Comma-separated sale units (defaults to the default unit only).",
        )
        parser.add_argument("--price", required=True, type=decimal_arg, help="Price per base unit.")
        parser.add_argument("--barcode", action="append", default=[], help="May be repeated.")
        parser.add_argument("--requires-expiry", action="store_true")
        parser.add_argument("--pack-piece-sku", default=None)
        parser.add_argument("--pack-count", type=decimal_arg, default=None)
        parser.add_argument("--min-stock", type=decimal_arg, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_receive_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``receive``."""
    name = "receive"
    help_text = "Book a delivery as a new batch."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True, type=decimal_arg)
        parser.add_argument(
            "--unit",
            choices=[member.value for member in SaleUnit],
            default=None,
            help="Unit of --quantity (defaults to the product's base unit).",
        )
        parser.add_argument("--unit-cost", required=True, type=decimal_arg, help="Cost per base unit.")
        parser.add_argument("--expiry", type=date_arg, default=None)
        parser.add_argument("--lot", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_receive)


def register_sell_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sell``."""
    name = "sell"
    help_text = "Record a single-line sale drawn from the FEFO batch."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=decimal_arg, default=None)
        parser.add_argument("--unit", choices=[member.value for member in SaleUnit], default=None)
        parser.add_argument("--batch-id", default=None, help="Sell from this batch instead of the FEFO pick.")
        parser.add_argument("--discount-pct", type=decimal_arg, default=None)
        parser.add_argument("--discount-amount", type=decimal_arg, default=None)
        bill_discount = parser.add_mutually_exclusive_group()
        bill_discount.add_argument("--bill-discount-pct", type=decimal_arg, default=None)
        bill_discount.add_argument("--bill-discount-amount", type=decimal_arg, default=None)
        parser.add_argument(
            "--payment",
            action="append",
            type=payment_arg,
            default=[],
            help="METHOD:AMOUNT[:REF]; may be repeated. Defaults to exact cash.",
        )
        parser.add_argument("--override-reason", default=None)
        parser.add_argument("--role", choices=[member.value for member in Role], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sell)


def register_add_supplier_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-supplier``."""
    name = "add-supplier"
    help_text = "Register a supplier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--email", default=None)
        parser.add_argument("--address", default=None)
        parser.add_argument("--terms-days", type=int, default=0)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_supplier)


def register_supplier_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``supplier-invoice``."""
    name = "supplier-invoice"
    help_text = "Record a supplier invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supplier-id", required=True)
        parser.add_argument("--invoice-no", required=True)
        parser.add_argument("--total", required=True, type=decimal_arg)
        parser.add_argument("--date", dest="invoice_date", type=date_arg, default=None)
        parser.add_argument("--due-date", type=date_arg, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_supplier_invoice)


def register_supplier_payment_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``supplier-payment``."""
    name = "supplier-payment"
    help_text = "Pay down a supplier invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.add_argument("--amount", required=True, type=decimal_arg)
        parser.add_argument(
            "--method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--date", dest="paid_on", type=date_arg, default=None)
        parser.add_argument("--reference", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_supplier_payment)


def register_expense_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``expense``."""
    name = "expense"
    help_text = "Record an operating expense."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--category",
            required=True,
            help=f"One of: {', '.join(EXPENSE_CATEGORIES)} (case-insensitive).",
        )
        parser.add_argument("--amount", required=True, type=decimal_arg)
        parser.add_argument("--date", dest="spent_on", type=date_arg, default=None)
        parser.add_argument("--payee", default=None)
        parser.add_argument("--note", default=None)
        parser.add_argument("--doc-url", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_expense)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display available stock per product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--low", action="store_true", help="Only products below their minimum stock.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_expiring_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``expiring``."""
    name = "expiring"
    help_text = "List batches that are expired or close to expiry."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--days", type=int, default=None, help="Window in days (defaults to config).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_expiring_report)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "Summarize sales over a date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--from", dest="start", type=date_arg, default=None)
        parser.add_argument("--to", dest="end", type=date_arg, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_supplier_aging_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``supplier-aging``."""
    name = "supplier-aging"
    help_text = "Display outstanding supplier balances by age."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supplier-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_supplier_aging_report)


def register_expenses_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``expenses``."""
    name = "expenses"
    help_text = "List expenses or total them by category."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--from", dest="start", type=date_arg, default=None)
        parser.add_argument("--to", dest="end", type=date_arg, default=None)
        parser.add_argument("--search", default=None, help="Match category, payee, or note.")
        parser.add_argument("--totals", action="store_true", help="Print per-category totals instead.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_expenses_report)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


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


# ---------------------------------------------------------------------------
# Translators
# ---------------------------------------------------------------------------


def translate_add_product(args: argparse.Namespace) -> core_logic.AddProductCommand:
    """Translate CLI args into an add-product command object."""
    default_unit = SaleUnit(args.default_unit)
    if args.allowed_units:
        allowed = tuple(SaleUnit(unit.strip()) for unit in args.allowed_units.split(",") if unit.strip())
    else:
        allowed = (default_unit,)

    pack_bom = None
    if args.pack_piece_sku and args.pack_count is not None:
        pack_bom = PackComposition(piece_sku=args.pack_piece_sku, count=args.pack_count)

    return core_logic.AddProductCommand(
        sku=args.sku,
        name_en=args.name,
        base_unit=BaseUnit(args.base_unit),
        default_sale_unit=default_unit,
        allowed_sale_units=allowed,
        price_base=args.price,
        name_si=args.name_si,
        name_ta=args.name_ta,
        category=args.category,
        barcodes=tuple(args.barcode),
        requires_expiry=args.requires_expiry,
        pack_bom=pack_bom,
        min_stock=args.min_stock,
    )


def translate_receive(args: argparse.Namespace) -> core_logic.ReceiveStockCommand:
    """Translate CLI args into a receive-stock command object."""
    return core_logic.ReceiveStockCommand(
        product_id=args.product_id,
        quantity=args.quantity,
        unit_cost=args.unit_cost,
        expiry=args.expiry,
        lot=args.lot,
        unit=SaleUnit(args.unit) if args.unit else None,
    )


def translate_bill_discount(args: argparse.Namespace) -> Optional[BillDiscount]:
    """Translate the mutually exclusive bill discount flags."""
    if args.bill_discount_pct is not None:
        return BillDiscount(type=DiscountType.PERCENT, value=args.bill_discount_pct)
    if args.bill_discount_amount is not None:
        return BillDiscount(type=DiscountType.AMOUNT, value=args.bill_discount_amount)
    return None


def translate_add_supplier(args: argparse.Namespace) -> core_logic.AddSupplierCommand:
    return core_logic.AddSupplierCommand(
        name=args.name,
        phone=args.phone,
        email=args.email,
        address=args.address,
        terms_days=args.terms_days,
    )


def translate_supplier_invoice(args: argparse.Namespace) -> core_logic.SupplierInvoiceCommand:
    return core_logic.SupplierInvoiceCommand(
        supplier_id=args.supplier_id,
        invoice_no=args.invoice_no,
        total=args.total,
        invoice_date=args.invoice_date,
        due_date=args.due_date,
    )


def translate_supplier_payment(args: argparse.Namespace) -> core_logic.SupplierPaymentCommand:
    return core_logic.SupplierPaymentCommand(
        invoice_id=args.invoice_id,
        amount=args.amount,
        method=PaymentMethod(args.method),
        paid_on=args.paid_on,
        reference=args.reference,
    )


def translate_add_expense(args: argparse.Namespace) -> core_logic.AddExpenseCommand:
    return core_logic.AddExpenseCommand(
        category=args.category,
        amount=args.amount,
        spent_on=args.spent_on,
        payee=args.payee,
        note=args.note,
        doc_url=args.doc_url,
    )


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, translate_add_product(args))
    print(f"{product.product_id}\t{product.sku}\t{','.join(product.barcodes)}")
    return 0


def run_receive(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the receive-stock workflow in the BLL."""
    batch = core_logic.receive_stock(context, translate_receive(args))
    print(f"{batch.batch_id}\t{batch.on_hand}")
    return 0


def run_sell(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Build a one-line cart, confirm it, and print the bill number.

    Without ``--payment`` the customer is assumed to pay the exact total in
    cash. Returns :data:`EXIT_INSUFFICIENT_PAYMENT` when the tenders fall
    short, in which case nothing is persisted.
    """
    product = core_logic.get_product(context, args.product_id)
    if args.batch_id:
        batch = core_logic.get_batch(context, args.batch_id)
    else:
        batch = core_logic.select_batch_for_product(context, product.product_id, args.quantity)
    if batch is None:
        raise OutOfStockError(f"No sellable batch for product {product.product_id}")

    cart = core_logic.new_cart(context)
    item = core_logic.build_cart_item(
        context,
        product,
        batch,
        sale_unit=SaleUnit(args.unit) if args.unit else None,
        qty=args.quantity,
        override_reason=args.override_reason,
    )
    cart.add_item(item, today=core_logic.local_today(context))
    if args.discount_pct is not None or args.discount_amount is not None:
        cart.update_item(0, discount_pct=args.discount_pct, discount_amount=args.discount_amount)
    cart.set_bill_discount(translate_bill_discount(args))

    payments: List[Payment] = list(args.payment)
    if not payments:
        taxes = context.settings.taxes
        totals = cart.totals(taxes.effective_mode, taxes.rate if taxes.enabled else Decimal("0"), taxes.rounding)
        payments = [Payment(method=PaymentMethod.CASH, amount=totals.total)]

    sale = core_logic.complete_sale(
        context,
        cart,
        payments,
        cashier_role=Role(args.role) if args.role else None,
    )
    if sale is None:
        log.error("Sale not confirmed: payments do not cover the bill total")
        return EXIT_INSUFFICIENT_PAYMENT
    print(f"{sale.bill_no}\ttotal={sale.total}\tvat={sale.vat_total}\tsale_id={sale.sale_id}")
    return 0


def run_add_supplier(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    supplier = core_logic.add_supplier(context, translate_add_supplier(args))
    print(supplier.supplier_id)
    return 0


def run_supplier_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    invoice = core_logic.record_supplier_invoice(context, translate_supplier_invoice(args))
    print(f"{invoice.invoice_id}\tdue={invoice.due_date.isoformat()}")
    return 0


def run_supplier_payment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    payment = core_logic.record_supplier_payment(context, translate_supplier_payment(args))
    invoice = core_logic.get_supplier_invoice(context, payment.invoice_id)
    print(f"{payment.payment_id}\tbalance={invoice.balance}")
    return 0


def run_add_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    expense = core_logic.add_expense(context, translate_add_expense(args))
    print(expense.expense_id)
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    if args.low:
        for product, stock in core_logic.list_low_stock(context):
            print(f"{product.product_id}\t{product.sku}\t{stock}\tmin={product.min_stock}")
        return 0

    inventory = core_logic.calculate_inventory(context)
    for product in core_logic.list_products(context):
        print(f"{product.product_id}\t{product.sku}\t{inventory.get(product.product_id, Decimal('0'))}")
    return 0


def run_expiring_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the expiring-batches report."""
    for evaluated in core_logic.list_expiring_batches(context, within_days=args.days):
        batch = evaluated.batch
        status = "EXPIRED" if evaluated.is_expired else f"{evaluated.days_to_expiry}d"
        print(f"{batch.batch_id}\t{batch.product_id}\t{batch.expiry.isoformat()}\t{status}\t{batch.on_hand}")
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sales summary report; both bounds default to today."""
    today = core_logic.local_today(context)
    summary = core_logic.calculate_sales_summary(context, args.start or today, args.end or today)
    for key, value in summary.items():
        print(f"{key}\t{value}")
    return 0


def run_supplier_aging_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the supplier aging report."""
    for bucket, balance in core_logic.calculate_supplier_aging(context, args.supplier_id).items():
        print(f"{bucket}\t{balance}")
    return 0


def run_expenses_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print matching expenses, or category totals with ``--totals``.

    Open date bounds include every recorded expense.
    """
    if args.totals:
        totals = core_logic.calculate_expense_totals(context, args.start, args.end)
        for category, amount in totals.items():
            print(f"{category}\t{amount}")
        print(f"TOTAL\t{sum(totals.values(), Decimal('0'))}")
        return 0

    expenses = core_logic.list_expenses_between(context, args.start or date.min, args.end or date.max)
    if args.search:
        matching = {expense.expense_id for expense in core_logic.search_expenses(context, args.search)}
        expenses = [expense for expense in expenses if expense.expense_id in matching]
    for expense in expenses:
        print(f"{expense.spent_on.isoformat()}\t{expense.category}\t{expense.amount}\t{expense.payee or ''}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, ConfigurationError):
        log.error("Configuration error: %s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
