"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Iterable
from unittest.mock import Mock

import openpyxl
import pytest

from dc_pos import cli, core_logic, data_manager
from dc_pos.constants import BaseUnit, DiscountType, PaymentMethod, SaleUnit
from dc_pos.errors import BusinessRuleViolation, ConfigurationError, OutOfStockError
from dc_pos.models import BillDiscount, PackComposition, Payment


WRITE_COMMANDS = {
    "add-product",
    "receive",
    "sell",
    "add-supplier",
    "supplier-invoice",
    "supplier-payment",
    "expense",
}

READ_COMMANDS = {
    "stock",
    "expiring",
    "sales",
    "supplier-aging",
    "expenses",
}


def _parse(*argv: str) -> argparse.Namespace:
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    return parser.parse_args(list(argv))


def _stock_rice(context, *, kilos: str = "10", expiry: date = date(2026, 6, 1)):
    product = core_logic.add_product(
        context,
        core_logic.AddProductCommand(
            sku="RICE-001",
            name_en="Samba Rice",
            base_unit=BaseUnit.GRAM,
            default_sale_unit=SaleUnit.KILOGRAM,
            allowed_sale_units=(SaleUnit.KILOGRAM, SaleUnit.GRAM),
            price_base=Decimal("0.1"),
            min_stock=Decimal("20000"),
        ),
    )
    batch = core_logic.receive_stock(
        context,
        core_logic.ReceiveStockCommand(
            product_id=product.product_id,
            quantity=Decimal(kilos),
            unit=SaleUnit.KILOGRAM,
            unit_cost=Decimal("0.06"),
            expiry=expiry,
        ),
    )
    return product, batch


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "dc-pos"
    assert parser.parse_args(["--config", "x.ini"]).config == Path("x.ini")


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire the mutating and reporting sub-commands."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)

    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text
        assert spec.name in subparsers_action.choices


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)

    assert set(specs) == READ_COMMANDS
    for spec in specs.values():
        assert callable(spec.execute)
        assert spec.name in subparsers_action.choices


def test_sell_command_parses_payments_and_discounts():
    """The sell parser should collect repeated payments and discount flags."""

    args = _parse(
        "sell",
        "--product-id",
        "P-1",
        "--quantity",
        "1.5",
        "--unit",
        "kg",
        "--discount-pct",
        "10",
        "--bill-discount-amount",
        "5",
        "--payment",
        "cash:100",
        "--payment",
        "card:50:AUTH-1",
    )

    assert args.quantity == Decimal("1.5")
    assert args.discount_pct == Decimal("10")
    assert args.payment == [
        Payment(method=PaymentMethod.CASH, amount=Decimal("100")),
        Payment(method=PaymentMethod.CARD, amount=Decimal("50"), reference="AUTH-1"),
    ]


def test_sell_command_rejects_two_bill_discounts():
    with pytest.raises(SystemExit):
        _parse("sell", "--product-id", "P-1", "--bill-discount-pct", "5", "--bill-discount-amount", "5")


def test_receive_command_rejects_bad_dates():
    with pytest.raises(SystemExit):
        _parse("receive", "--product-id", "P-1", "--quantity", "1", "--unit-cost", "1", "--expiry", "14/03/2026")


def test_sales_command_maps_range_flags():
    args = _parse("sales", "--from", "2026-03-01", "--to", "2026-03-14")
    assert (args.start, args.end) == (date(2026, 3, 1), date(2026, 3, 14))


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def test_payment_arg_parses_reference():
    assert cli.payment_arg("Wallet:12.50:TXN 9") == Payment(
        method=PaymentMethod.WALLET,
        amount=Decimal("12.50"),
        reference="TXN 9",
    )


@pytest.mark.parametrize("raw", ["cash", "cheque:10", "cash:ten"])
def test_payment_arg_rejects_malformed_values(raw):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.payment_arg(raw)


def test_decimal_and_date_args_reject_garbage():
    with pytest.raises(argparse.ArgumentTypeError):
        cli.decimal_arg("1,5")
    with pytest.raises(argparse.ArgumentTypeError):
        cli.date_arg("yesterday")


# ---------------------------------------------------------------------------
# Runtime context helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    """load_runtime_context should load settings from the specified config path."""

    loaded = core_logic.load_runtime_context(config_file)
    loader = Mock(return_value=loaded)
    monkeypatch.setattr(core_logic, "load_runtime_context", loader)

    assert cli.load_runtime_context(config_file) is loaded
    loader.assert_called_once_with(config_file)


def test_load_runtime_context_defaults_to_working_directory(monkeypatch, tmp_path, context):
    loader = Mock(return_value=context)
    monkeypatch.setattr(core_logic, "load_runtime_context", loader)
    monkeypatch.chdir(tmp_path)

    cli.load_runtime_context()

    loader.assert_called_once_with(tmp_path / "config.ini")


def test_load_runtime_context_checks_schema(config_factory):
    bundle = config_factory(schema_version="0.9")
    with pytest.raises(RuntimeError):
        cli.load_runtime_context(bundle.config_path)


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(context):
    execute = Mock(return_value=0)
    command_table = {"stock": cli.CommandSpec("stock", "help", Mock(), execute)}
    args = argparse.Namespace(command="stock")

    assert cli.dispatch_command(context, args, command_table) == 0
    execute.assert_called_once_with(context, args)


def test_dispatch_command_handles_unknown_commands(context):
    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="unknown"), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert set(table) == {spec.name for spec in command_spec_iterable}


def test_build_command_table_detects_duplicate_commands():
    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_translate_add_product_builds_units_and_pack():
    args = _parse(
        "add-product",
        "--sku",
        "EGG-10",
        "--name",
        "Eggs",
        "--base-unit",
        "pcs",
        "--default-unit",
        "pack",
        "--allowed-units",
        "pack, pcs",
        "--price",
        "45",
        "--pack-piece-sku",
        "EGG-1",
        "--pack-count",
        "10",
        "--barcode",
        "111",
        "--barcode",
        "222",
    )

    command = cli.translate_add_product(args)

    assert command.base_unit is BaseUnit.PIECE
    assert command.allowed_sale_units == (SaleUnit.PACK, SaleUnit.PIECE)
    assert command.pack_bom == PackComposition(piece_sku="EGG-1", count=Decimal("10"))
    assert command.barcodes == ("111", "222")
    assert command.requires_expiry is False


def test_translate_add_product_defaults_allowed_units():
    args = _parse("add-product", "--sku", "S", "--name", "N", "--base-unit", "g", "--default-unit", "kg", "--price", "1")
    assert cli.translate_add_product(args).allowed_sale_units == (SaleUnit.KILOGRAM,)


def test_translate_receive_keeps_optional_unit():
    args = _parse("receive", "--product-id", "P-1", "--quantity", "5", "--unit", "kg", "--unit-cost", "0.2")
    command = cli.translate_receive(args)
    assert command.unit is SaleUnit.KILOGRAM
    assert command.expiry is None


@pytest.mark.parametrize(
    ("flags", "expected"),
    [
        ([], None),
        (["--bill-discount-pct", "5"], BillDiscount(type=DiscountType.PERCENT, value=Decimal("5"))),
        (["--bill-discount-amount", "20"], BillDiscount(type=DiscountType.AMOUNT, value=Decimal("20"))),
    ],
)
def test_translate_bill_discount(flags, expected):
    args = _parse("sell", "--product-id", "P-1", *flags)
    assert cli.translate_bill_discount(args) == expected


def test_translate_supplier_commands():
    invoice = cli.translate_supplier_invoice(
        _parse("supplier-invoice", "--supplier-id", "SUP-1", "--invoice-no", "A1", "--total", "900", "--date", "2026-03-01")
    )
    payment = cli.translate_supplier_payment(
        _parse("supplier-payment", "--invoice-id", "INV-1", "--amount", "100", "--method", "bank", "--reference", "R")
    )
    supplier = cli.translate_add_supplier(_parse("add-supplier", "--name", "Mills", "--terms-days", "14"))

    assert invoice.invoice_date == date(2026, 3, 1)
    assert invoice.due_date is None
    assert payment.method is PaymentMethod.BANK
    assert supplier.terms_days == 14


# ---------------------------------------------------------------------------
# Command execution helpers
# ---------------------------------------------------------------------------


def test_run_add_product_invokes_bll(runtime_context, monkeypatch, capsys):
    """run_add_product should delegate to the business logic layer."""

    command = Mock(name="command")
    product = Mock(product_id="P-1", sku="S-1", barcodes=("111",))
    add_product = Mock(return_value=product)
    monkeypatch.setattr(cli, "translate_add_product", lambda _: command)
    monkeypatch.setattr(cli.core_logic, "add_product", add_product)

    assert cli.run_add_product(runtime_context, argparse.Namespace()) == 0
    add_product.assert_called_once_with(runtime_context, command)
    assert capsys.readouterr().out == "P-1\tS-1\t111\n"


def test_run_sell_prints_bill_number(runtime_context, capsys):
    product, batch = _stock_rice(runtime_context)
    args = _parse("sell", "--product-id", product.product_id, "--quantity", "1.5", "--discount-pct", "10")

    assert cli.run_sell(runtime_context, args) == 0

    output = capsys.readouterr().out
    assert output.startswith("DC-20260314-0001\ttotal=135")
    assert core_logic.get_batch(runtime_context, batch.batch_id).on_hand == Decimal("8500")


def test_run_sell_reports_insufficient_payment(runtime_context):
    product, batch = _stock_rice(runtime_context)
    args = _parse("sell", "--product-id", product.product_id, "--quantity", "1", "--payment", "cash:99")

    assert cli.run_sell(runtime_context, args) == cli.EXIT_INSUFFICIENT_PAYMENT
    assert core_logic.list_sales(runtime_context) == []
    assert core_logic.get_batch(runtime_context, batch.batch_id).on_hand == Decimal("10000")


def test_run_sell_without_sellable_batch(runtime_context):
    product, _ = _stock_rice(runtime_context, expiry=date(2026, 3, 1))
    args = _parse("sell", "--product-id", product.product_id)

    with pytest.raises(OutOfStockError):
        cli.run_sell(runtime_context, args)


def test_run_sell_from_expired_batch_needs_override(runtime_context, capsys):
    product, batch = _stock_rice(runtime_context, expiry=date(2026, 3, 1))
    base = ["sell", "--product-id", product.product_id, "--batch-id", batch.batch_id]

    with pytest.raises(BusinessRuleViolation):
        cli.run_sell(runtime_context, _parse(*base))

    assert cli.run_sell(runtime_context, _parse(*base, "--override-reason", "Staff meal")) == 0
    (sale,) = core_logic.list_sales(runtime_context)
    assert sale.lines[0].override_reason == "Staff meal"


def test_run_stock_report_lists_inventory(runtime_context, capsys):
    product, _ = _stock_rice(runtime_context)

    cli.run_stock_report(runtime_context, _parse("stock"))
    assert capsys.readouterr().out == f"{product.product_id}\tRICE-001\t10000\n"

    cli.run_stock_report(runtime_context, _parse("stock", "--low"))
    assert capsys.readouterr().out == f"{product.product_id}\tRICE-001\t10000\tmin=20000\n"


def test_run_expiring_report_marks_expired(runtime_context, capsys):
    _stock_rice(runtime_context, expiry=date(2026, 3, 10))

    cli.run_expiring_report(runtime_context, _parse("expiring"))

    assert "\t2026-03-10\tEXPIRED\t" in capsys.readouterr().out


def test_run_sales_report_defaults_to_today(runtime_context, monkeypatch, capsys):
    summary = Mock(return_value={"bills": Decimal("0")})
    monkeypatch.setattr(cli.core_logic, "calculate_sales_summary", summary)

    cli.run_sales_report(runtime_context, _parse("sales"))

    summary.assert_called_once_with(runtime_context, date(2026, 3, 14), date(2026, 3, 14))
    assert capsys.readouterr().out == "bills\t0\n"


def test_supplier_commands_round_trip(runtime_context, capsys):
    cli.run_add_supplier(runtime_context, _parse("add-supplier", "--name", "Mills", "--terms-days", "30"))
    supplier_id = capsys.readouterr().out.strip()

    cli.run_supplier_invoice(
        runtime_context,
        _parse("supplier-invoice", "--supplier-id", supplier_id, "--invoice-no", "A1", "--total", "900", "--date", "2026-01-01"),
    )
    invoice_id, due = capsys.readouterr().out.strip().split("\t")
    assert due == "due=2026-01-31"

    cli.run_supplier_payment(runtime_context, _parse("supplier-payment", "--invoice-id", invoice_id, "--amount", "400"))
    assert capsys.readouterr().out.strip().endswith("balance=500")

    cli.run_supplier_aging_report(runtime_context, _parse("supplier-aging", "--supplier-id", supplier_id))
    assert "31-60\t500" in capsys.readouterr().out


def test_translate_add_expense_maps_arguments():
    args = _parse(
        "expense", "--category", "transport", "--amount", "8500", "--date", "2026-03-02", "--payee", "Delivery Ltd"
    )

    command = cli.translate_add_expense(args)

    assert command == core_logic.AddExpenseCommand(
        category="transport",
        amount=Decimal("8500"),
        spent_on=date(2026, 3, 2),
        payee="Delivery Ltd",
    )


def test_expense_commands_round_trip(runtime_context, capsys):
    for argv in (
        ("expense", "--category", "Utilities", "--amount", "12500", "--date", "2026-03-01", "--payee", "CEB"),
        ("expense", "--category", "transport", "--amount", "8500", "--date", "2026-03-02", "--note", "van hire"),
        ("expense", "--category", "utilities", "--amount", "2500", "--date", "2026-02-01", "--payee", "Water Board"),
    ):
        assert cli.run_add_expense(runtime_context, _parse(*argv)) == 0
    capsys.readouterr()

    cli.run_expenses_report(runtime_context, _parse("expenses", "--totals", "--from", "2026-03-01"))
    assert capsys.readouterr().out.splitlines() == ["Utilities\t12500", "Transport\t8500", "TOTAL\t21000"]

    cli.run_expenses_report(runtime_context, _parse("expenses", "--search", "board"))
    assert capsys.readouterr().out.splitlines() == ["2026-02-01\tUtilities\t2500\tWater Board"]


def test_expense_with_unknown_category_is_rejected(runtime_context):
    with pytest.raises(BusinessRuleViolation):
        cli.run_add_expense(runtime_context, _parse("expense", "--category", "Snacks", "--amount", "10"))
    assert core_logic.list_expenses(runtime_context) == []


# ---------------------------------------------------------------------------
# Error handling and persistence
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (BusinessRuleViolation("invalid"), 2),
        (OutOfStockError("empty"), 2),
        (FileNotFoundError("missing"), 3),
        (ConfigurationError("bad unit"), 4),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    assert cli.handle_cli_error(error) == expected
    assert any(str(error) in record.getMessage() for record in caplog.records)


def test_persist_workbook_handles_read_only_workbooks(runtime_context, monkeypatch):
    def fake_persist(_: core_logic.RuntimeContext) -> None:
        raise PermissionError("read-only")

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)
    with pytest.raises(RuntimeError, match="read-only"):
        cli.persist_workbook(runtime_context)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_handles_bll_errors_without_persisting(monkeypatch, runtime_context):
    """main should surface business rule violations as non-zero exits."""

    parser = _stub_parser(command="sell")
    command_table = {"sell": cli.CommandSpec("sell", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    def fake_dispatch(*_: object) -> int:
        raise BusinessRuleViolation("invalid")

    persist = Mock()
    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", persist)

    assert cli.main(["sell"]) == 2
    persist.assert_not_called()


def test_main_reports_missing_config(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "stock"]) == 3


def test_main_runs_a_full_sale(config_factory, capsys):
    """add-product, receive, and sell through main persist to the workbook."""

    bundle = config_factory()
    config = ["--config", str(bundle.config_path)]

    assert cli.main([*config, "add-product", "--sku", "SOAP-1", "--name", "Soap", "--base-unit", "pcs",
                     "--default-unit", "pcs", "--price", "120"]) == 0
    product_id = capsys.readouterr().out.split("\t")[0]

    assert cli.main([*config, "receive", "--product-id", product_id, "--quantity", "24",
                     "--unit-cost", "80", "--expiry", "2099-12-31"]) == 0
    capsys.readouterr()

    assert cli.main([*config, "sell", "--product-id", product_id, "--quantity", "2", "--payment", "cash:500"]) == 0
    assert capsys.readouterr().out.startswith("DC-")

    assert cli.main([*config, "sell", "--product-id", product_id, "--quantity", "1", "--payment", "cash:1"]) == 5

    workbook = openpyxl.load_workbook(bundle.workbook_path)
    assert len(list(data_manager.iter_sales(workbook))) == 1
    (batch,) = data_manager.iter_batches(workbook)
    assert batch.on_hand == Decimal("22")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stub_parser(command: str) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            return argparse.Namespace(command=command, config=None)

    return _Stub(prog="test")


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]
