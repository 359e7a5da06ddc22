"""Data access layer for the point-of-sale workbook.

This module provides low-level helpers that read from and write to the
``pos_master_data.xlsx`` workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending or updating
   individual rows.
"""


from __future__ import annotations

import configparser
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    NEAR_EXPIRY_DAYS,
    BaseUnit,
    PaymentMethod,
    Role,
    SaleUnit,
    SheetName,
    TaxMode,
)
from .errors import ConfigurationError, InvalidTaxModeError
from .models import (
    Batch,
    Expense,
    PackComposition,
    Payment,
    Product,
    Sale,
    SaleLine,
    Supplier,
    SupplierInvoice,
    SupplierPayment,
    TaxSettings,
    UnitSettings,
)


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
BATCHES_SHEET = SheetName.BATCHES.value
SALES_SHEET = SheetName.SALES.value
SALE_LINES_SHEET = SheetName.SALE_LINES.value
PAYMENTS_SHEET = SheetName.PAYMENTS.value
BILL_SEQUENCES_SHEET = SheetName.BILL_SEQUENCES.value
STOCK_MOVEMENTS_SHEET = SheetName.STOCK_MOVEMENTS.value
SUPPLIERS_SHEET = SheetName.SUPPLIERS.value
SUPPLIER_INVOICES_SHEET = SheetName.SUPPLIER_INVOICES.value
SUPPLIER_PAYMENTS_SHEET = SheetName.SUPPLIER_PAYMENTS.value
EXPENSES_SHEET = SheetName.EXPENSES.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: [
        "ProductID",
        "SKU",
        "NameEN",
        "NameSI",
        "NameTA",
        "Category",
        "BaseUnit",
        "DefaultSaleUnit",
        "AllowedSaleUnits",
        "PriceBase",
        "Barcodes",
        "RequiresExpiry",
        "PackPieceSKU",
        "PackCount",
        "MinStock",
        "Archived",
    ],
    BATCHES_SHEET: [
        "BatchID",
        "ProductID",
        "Lot",
        "Expiry",
        "UnitCost",
        "OnHand",
        "Reserved",
        "CreatedAt",
        "UpdatedAt",
    ],
    SALES_SHEET: [
        "SaleID",
        "BillNo",
        "SaleClientID",
        "SaleAt",
        "CashierRole",
        "TaxMode",
        "TaxRate",
        "Subtotal",
        "DiscountTotal",
        "MarkdownTotal",
        "VatTotal",
        "Rounding",
        "Total",
    ],
    SALE_LINES_SHEET: [
        "SaleID",
        "LineNo",
        "ProductID",
        "BatchID",
        "Qty",
        "SaleUnit",
        "PriceUnit",
        "DiscountPct",
        "DiscountAmount",
        "MarkdownPct",
        "CogsBase",
        "OverrideReason",
    ],
    PAYMENTS_SHEET: ["SaleID", "Method", "Amount", "Reference"],
    BILL_SEQUENCES_SHEET: ["Date", "LastSequence"],
    STOCK_MOVEMENTS_SHEET: ["MovementID", "SaleID", "LineNo", "BatchID", "Quantity", "Timestamp"],
    SUPPLIERS_SHEET: ["SupplierID", "Name", "Phone", "Email", "Address", "TermsDays"],
    SUPPLIER_INVOICES_SHEET: [
        "InvoiceID",
        "SupplierID",
        "InvoiceNo",
        "Date",
        "DueDate",
        "Total",
        "Balance",
    ],
    SUPPLIER_PAYMENTS_SHEET: ["PaymentID", "InvoiceID", "Date", "Amount", "Method", "Reference"],
    EXPENSES_SHEET: ["ExpenseID", "Category", "Amount", "Date", "Payee", "Note", "DocURL"],
}

# configparser lowercases option names.
TAX_OPTIONS = frozenset({"enabled", "rate", "mode", "rounding"})
UNIT_OPTIONS = frozenset({"kgstep", "gstep", "pcsstep"})


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    taxes: TaxSettings = field(default_factory=TaxSettings)
    units: UnitSettings = field(default_factory=UnitSettings)
    default_cashier_role: Role = Role.CASHIER
    near_expiry_days: int = NEAR_EXPIRY_DAYS


@dataclass(frozen=True)
class StockMovementRow:
    """In-memory view of a row from the ``StockMovements`` sheet."""

    movement_id: str
    sale_id: Optional[str]
    line_no: Optional[int]
    batch_id: str
    quantity: Decimal
    timestamp_iso: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data. Required entries are validated later by
            :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def _reject_unknown_options(parser: configparser.ConfigParser, section: str, known: frozenset[str]) -> None:
    unknown = sorted(set(parser.options(section)) - known)
    if unknown:
        raise KeyError(f"Unknown configuration entries in [{section}]: {', '.join(unknown)}")


def _config_decimal(raw: str, *, section: str, option: str) -> Decimal:
    try:
        return Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ConfigurationError(f"[{section}] {option} is not a number: {raw!r}", value=raw) from exc


def parse_tax_settings(parser: configparser.ConfigParser) -> TaxSettings:
    """Build :class:`TaxSettings` from the optional ``[Taxes]`` section.

    Raises:
        KeyError: If the section holds options other than Enabled, Rate, Mode
            and Rounding.
        InvalidTaxModeError: If ``Mode`` is not none, inclusive or exclusive.
        ConfigurationError: If ``Rate`` falls outside 0-100, ``Rounding`` is
            negative, or a value cannot be parsed.
    """
    if not parser.has_section("Taxes"):
        return TaxSettings()
    _reject_unknown_options(parser, "Taxes", TAX_OPTIONS)

    try:
        enabled = parser.getboolean("Taxes", "Enabled", fallback=True)
    except ValueError as exc:
        raise ConfigurationError(f"[Taxes] Enabled is not a boolean: {exc}") from exc

    rate = _config_decimal(parser.get("Taxes", "Rate", fallback="0"), section="Taxes", option="Rate")
    if not Decimal("0") <= rate <= Decimal("100"):
        raise ConfigurationError(f"[Taxes] Rate must be between 0 and 100, got {rate}", value=rate)

    mode_raw = parser.get("Taxes", "Mode", fallback=TaxMode.NONE.value).strip().lower()
    try:
        mode = TaxMode(mode_raw)
    except ValueError as exc:
        raise InvalidTaxModeError(f"Invalid tax mode: {mode_raw}", value=mode_raw) from exc

    rounding_raw = parser.get("Taxes", "Rounding", fallback="").strip().lower()
    rounding: Optional[Decimal] = None
    if rounding_raw not in ("", "none", "null"):
        rounding = _config_decimal(rounding_raw, section="Taxes", option="Rounding")
        if rounding < Decimal("0"):
            raise ConfigurationError(f"[Taxes] Rounding must not be negative, got {rounding}", value=rounding)
        if rounding == Decimal("0"):
            rounding = None

    return TaxSettings(enabled=enabled, rate=rate, mode=mode, rounding=rounding)


def parse_unit_settings(parser: configparser.ConfigParser) -> UnitSettings:
    """Build :class:`UnitSettings` from the optional ``[Units]`` section."""
    defaults = UnitSettings()
    if not parser.has_section("Units"):
        return defaults
    _reject_unknown_options(parser, "Units", UNIT_OPTIONS)

    steps = {}
    for option, attribute in (("KgStep", "kg_step"), ("GStep", "g_step"), ("PcsStep", "pcs_step")):
        raw = parser.get("Units", option, fallback=None)
        if raw is None:
            steps[attribute] = getattr(defaults, attribute)
            continue
        value = _config_decimal(raw, section="Units", option=option)
        if value <= Decimal("0"):
            raise ConfigurationError(f"[Units] {option} must be positive, got {value}", value=value)
        steps[attribute] = value
    return UnitSettings(**steps)


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The function validates that all required options are present under the
    expected sections and normalizes the configured data file path. Relative
    paths are expanded against ``base_path`` when provided, or against the
    current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container with resolved data file
            path, store metadata, tax and unit settings, and defaults.

    Raises:
        KeyError: If one of the required ``[System]`` options is missing, or an
            unknown option appears in ``[Taxes]`` or ``[Units]``.
        ConfigurationError: If a tax, unit, or default value is invalid.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    role_raw = parser.get("Defaults", "CashierRole", fallback=Role.CASHIER.value).strip().lower()
    try:
        default_role = Role(role_raw)
    except ValueError as exc:
        raise ConfigurationError(f"[Defaults] CashierRole is not a known role: {role_raw}", value=role_raw) from exc

    try:
        near_expiry_days = parser.getint("Defaults", "NearExpiryDays", fallback=NEAR_EXPIRY_DAYS)
    except ValueError as exc:
        raise ConfigurationError(f"[Defaults] NearExpiryDays is not an integer: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        taxes=parse_tax_settings(parser),
        units=parse_unit_settings(parser),
        default_cashier_role=default_role,
        near_expiry_days=near_expiry_days,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook file.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Row iteration
# ---------------------------------------------------------------------------


def _iter_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[Product]:
    """Iterate over product records stored on the ``Products`` worksheet.

    The iterator skips the header row and any fully empty rows. Each remaining
    row is converted through :func:`deserialize_product`.

    Args:
        workbook (Workbook): Workbook containing the ``Products`` sheet.

    Yields:
        Product: One structured record for each meaningful row.
    """

    for raw in _iter_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_batches(workbook: Workbook) -> Iterable[Batch]:
    """Iterate over the ``Batches`` worksheet and yield typed records."""

    for raw in _iter_rows(workbook, BATCHES_SHEET):
        yield deserialize_batch(raw)


def iter_sales(workbook: Workbook) -> Iterable[Sale]:
    """Reassemble complete sales from the Sales, SaleLines and Payments sheets.

    Lines are ordered by ``LineNo`` and payments keep sheet order. Sales are
    yielded in the order they were appended.

    Args:
        workbook (Workbook): Workbook containing the three sale sheets.

    Yields:
        Sale: Fully populated, immutable sale record.
    """

    lines_by_sale: Dict[str, List[tuple[int, SaleLine]]] = defaultdict(list)
    for raw in _iter_rows(workbook, SALE_LINES_SHEET):
        sale_id, line_no, line = deserialize_sale_line(raw)
        lines_by_sale[sale_id].append((line_no, line))

    payments_by_sale: Dict[str, List[Payment]] = defaultdict(list)
    for raw in _iter_rows(workbook, PAYMENTS_SHEET):
        sale_id, payment = deserialize_payment(raw)
        payments_by_sale[sale_id].append(payment)

    for raw in _iter_rows(workbook, SALES_SHEET):
        sale_id = str(raw[0])
        lines = tuple(line for _, line in sorted(lines_by_sale.get(sale_id, []), key=lambda pair: pair[0]))
        yield deserialize_sale(raw, lines=lines, payments=tuple(payments_by_sale.get(sale_id, [])))


def iter_stock_movements(workbook: Workbook) -> Iterable[StockMovementRow]:
    for raw in _iter_rows(workbook, STOCK_MOVEMENTS_SHEET):
        yield deserialize_stock_movement(raw)


def iter_suppliers(workbook: Workbook) -> Iterable[Supplier]:
    for raw in _iter_rows(workbook, SUPPLIERS_SHEET):
        yield deserialize_supplier(raw)


def iter_supplier_invoices(workbook: Workbook) -> Iterable[SupplierInvoice]:
    for raw in _iter_rows(workbook, SUPPLIER_INVOICES_SHEET):
        yield deserialize_supplier_invoice(raw)


def iter_supplier_payments(workbook: Workbook) -> Iterable[SupplierPayment]:
    for raw in _iter_rows(workbook, SUPPLIER_PAYMENTS_SHEET):
        yield deserialize_supplier_payment(raw)


def iter_expenses(workbook: Workbook) -> Iterable[Expense]:
    for raw in _iter_rows(workbook, EXPENSES_SHEET):
        yield deserialize_expense(raw)


# ---------------------------------------------------------------------------
# Appends and updates
# ---------------------------------------------------------------------------


def append_product(workbook: Workbook, record: Product) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_batch(workbook: Workbook, record: Batch) -> None:
    """Append a batch record to the ``Batches`` worksheet."""

    workbook[BATCHES_SHEET].append(serialize_batch(record))


def append_sale(workbook: Workbook, record: Sale) -> None:
    """Append a sale header, its lines, and its payments.

    The header is written to ``Sales``; each line lands on ``SaleLines`` with
    a 1-based ``LineNo`` and each payment on ``Payments``, all keyed by the
    sale identifier.

    Args:
        workbook (Workbook): Workbook containing the sale sheets.
        record (Sale): Completed sale to persist.
    """

    workbook[SALES_SHEET].append(serialize_sale(record))
    lines_sheet = workbook[SALE_LINES_SHEET]
    for line_no, line in enumerate(record.lines, start=1):
        lines_sheet.append(serialize_sale_line(record.sale_id, line_no, line))
    payments_sheet = workbook[PAYMENTS_SHEET]
    for payment in record.payments:
        payments_sheet.append(serialize_payment(record.sale_id, payment))


def append_stock_movement(workbook: Workbook, record: StockMovementRow) -> None:
    workbook[STOCK_MOVEMENTS_SHEET].append(serialize_stock_movement(record))


def append_supplier(workbook: Workbook, record: Supplier) -> None:
    workbook[SUPPLIERS_SHEET].append(serialize_supplier(record))


def append_supplier_invoice(workbook: Workbook, record: SupplierInvoice) -> None:
    workbook[SUPPLIER_INVOICES_SHEET].append(serialize_supplier_invoice(record))


def append_supplier_payment(workbook: Workbook, record: SupplierPayment) -> None:
    workbook[SUPPLIER_PAYMENTS_SHEET].append(serialize_supplier_payment(record))


def append_expense(workbook: Workbook, record: Expense) -> None:
    workbook[EXPENSES_SHEET].append(serialize_expense(record))


def _header_map(workbook: Workbook, sheet_name: str) -> Dict[Any, int]:
    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _update_row(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    field_values: Mapping[str, Any],
    *,
    label: str,
) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{label} not found: {key_value}")

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    for field_name, value in field_values.items():
        if field_name not in header_map:
            raise KeyError(f"Unknown {label.lower()} field: {field_name}")
        sheet.cell(row=row_index, column=header_map[field_name], value=_cell_value(value))


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    _update_row(workbook, PRODUCTS_SHEET, "ProductID", product_id, field_values, label="Product")


def update_batch(workbook: Workbook, batch_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns (typically ``OnHand`` and ``Reserved``) of a batch.

    Raises:
        KeyError: If the batch or any referenced column cannot be found.
    """

    _update_row(workbook, BATCHES_SHEET, "BatchID", batch_id, field_values, label="Batch")


def update_supplier_invoice(workbook: Workbook, invoice_id: str, *, field_values: dict[str, Any]) -> None:
    _update_row(workbook, SUPPLIER_INVOICES_SHEET, "InvoiceID", invoice_id, field_values, label="Invoice")


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column. Cells are
            compared as strings so numeric-looking keys still match.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == str(key_value):
            return row_idx

    return None


def get_and_increment_sequence(workbook: Workbook, date_key: str) -> int:
    """Read, increment, and write back the bill sequence for ``date_key``.

    The first call for a date creates the row with sequence ``1``. Callers
    must serialize invocations per key; the workbook offers no locking.

    Args:
        workbook (Workbook): Workbook containing the ``BillSequences`` sheet.
        date_key (str): Colombo-local date formatted as ``YYYYMMDD``.

    Returns:
        int: The newly issued sequence value.
    """

    sheet = workbook[BILL_SEQUENCES_SHEET]
    row_index = locate_row(workbook, BILL_SEQUENCES_SHEET, "Date", date_key)
    if row_index is None:
        sheet.append([date_key, 1])
        return 1

    current = sheet.cell(row=row_index, column=2).value
    next_value = int(current or 0) + 1
    sheet.cell(row=row_index, column=2, value=next_value)
    return next_value


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _cell_value(value: Any) -> Any:
    """Normalize Python values into what the workbook stores."""
    if value is None:
        return None
    if isinstance(value, (SaleUnit, BaseUnit, TaxMode, Role, PaymentMethod)):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _join(values: Iterable[Any]) -> Optional[str]:
    joined = ",".join(str(_cell_value(value)) for value in values)
    return joined or None


def _split(raw: object) -> tuple[str, ...]:
    if raw is None:
        return ()
    return tuple(part.strip() for part in str(raw).split(",") if part.strip())


def _decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _optional_decimal(raw: object) -> Optional[Decimal]:
    return Decimal(str(raw)) if raw is not None and str(raw) != "" else None


def _optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def _bool(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"true", "1", "yes"}
    return bool(raw)


def _date(raw: object) -> Optional[date]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw)[:10])


# Placeholder for blank timestamp cells; sorts before every real timestamp.
EPOCH_UTC = datetime.min.replace(tzinfo=UTC)


def _datetime(raw: object) -> Optional[datetime]:
    """Parse a timestamp cell; naive values (typed into Excel by hand) are taken as UTC."""
    if raw is None or raw == "":
        return None
    parsed = raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def serialize_product(record: Product) -> list[object]:
    """Convert a product into the ``Products`` column ordering.

    Sale units and barcodes are stored as comma-separated lists; the pack
    composition is split over ``PackPieceSKU`` and ``PackCount``.
    """

    pack = record.pack_bom
    return [
        record.product_id,
        record.sku,
        record.name_en,
        record.name_si,
        record.name_ta,
        record.category,
        _cell_value(record.base_unit),
        _cell_value(record.default_sale_unit),
        _join(record.allowed_sale_units),
        record.price_base,
        _join(record.barcodes),
        record.requires_expiry,
        pack.piece_sku if pack else None,
        pack.count if pack else None,
        record.min_stock,
        record.archived,
    ]


def deserialize_product(raw_row: Sequence[object]) -> Product:
    """Convert a raw worksheet row into a strongly typed product record.

    Identifier and name fields are coerced to ``str`` to avoid surprises caused
    by Excel interpreting numbers, prices become :class:`~decimal.Decimal`, and
    unit columns are parsed back into their enums.
    """

    (
        product_id,
        sku,
        name_en,
        name_si,
        name_ta,
        category,
        base_unit,
        default_sale_unit,
        allowed_sale_units,
        price_base,
        barcodes,
        requires_expiry,
        pack_piece_sku,
        pack_count,
        min_stock,
        archived,
    ) = raw_row

    pack_bom = None
    if pack_piece_sku is not None and pack_count is not None:
        pack_bom = PackComposition(piece_sku=str(pack_piece_sku), count=_decimal(pack_count))

    return Product(
        product_id=str(product_id),
        sku=str(sku),
        name_en=str(name_en),
        base_unit=BaseUnit(str(base_unit)),
        default_sale_unit=SaleUnit(str(default_sale_unit)),
        allowed_sale_units=tuple(SaleUnit(unit) for unit in _split(allowed_sale_units)),
        price_base=_decimal(price_base, "0.00"),
        name_si=_optional_str(name_si),
        name_ta=_optional_str(name_ta),
        category=_optional_str(category),
        barcodes=_split(barcodes),
        requires_expiry=_bool(requires_expiry),
        pack_bom=pack_bom,
        min_stock=_optional_decimal(min_stock),
        archived=_bool(archived),
    )


def serialize_batch(record: Batch) -> list[object]:
    return [
        record.batch_id,
        record.product_id,
        record.lot,
        _cell_value(record.expiry),
        record.unit_cost,
        record.on_hand,
        record.reserved,
        _cell_value(record.created_at),
        _cell_value(record.updated_at),
    ]


def deserialize_batch(raw_row: Sequence[object]) -> Batch:
    """Convert a raw ``Batches`` row; dates are parsed from ISO text."""

    (
        batch_id,
        product_id,
        lot,
        expiry,
        unit_cost,
        on_hand,
        reserved,
        created_at,
        updated_at,
    ) = raw_row

    return Batch(
        batch_id=str(batch_id),
        product_id=str(product_id),
        unit_cost=_decimal(unit_cost, "0.00"),
        on_hand=_decimal(on_hand),
        created_at=_datetime(created_at) or EPOCH_UTC,
        lot=_optional_str(lot),
        expiry=_date(expiry),
        reserved=_decimal(reserved),
        updated_at=_datetime(updated_at),
    )


def serialize_sale(record: Sale) -> list[object]:
    return [
        record.sale_id,
        record.bill_no,
        record.sale_client_id,
        _cell_value(record.sale_at),
        _cell_value(record.cashier_role),
        _cell_value(record.tax_mode),
        record.tax_rate,
        record.subtotal,
        record.discount_total,
        record.markdown_total,
        record.vat_total,
        record.rounding,
        record.total,
    ]


def deserialize_sale(raw_row: Sequence[object], *, lines: tuple[SaleLine, ...], payments: tuple[Payment, ...]) -> Sale:
    (
        sale_id,
        bill_no,
        sale_client_id,
        sale_at,
        cashier_role,
        tax_mode,
        tax_rate,
        subtotal,
        discount_total,
        markdown_total,
        vat_total,
        rounding,
        total,
    ) = raw_row

    return Sale(
        sale_id=str(sale_id),
        bill_no=str(bill_no),
        sale_client_id=str(sale_client_id),
        sale_at=_datetime(sale_at) or EPOCH_UTC,
        cashier_role=Role(str(cashier_role)),
        tax_mode=TaxMode(str(tax_mode)),
        tax_rate=_decimal(tax_rate),
        subtotal=_decimal(subtotal, "0.00"),
        discount_total=_decimal(discount_total, "0.00"),
        markdown_total=_decimal(markdown_total, "0.00"),
        vat_total=_decimal(vat_total, "0.00"),
        rounding=_decimal(rounding, "0.00"),
        total=_decimal(total, "0.00"),
        payments=payments,
        lines=lines,
    )


def serialize_sale_line(sale_id: str, line_no: int, line: SaleLine) -> list[object]:
    return [
        sale_id,
        line_no,
        line.product_id,
        line.batch_id,
        line.qty,
        _cell_value(line.sale_unit),
        line.price_unit,
        line.discount_pct,
        line.discount_amount,
        line.markdown_pct,
        line.cogs_base,
        line.override_reason,
    ]


def deserialize_sale_line(raw_row: Sequence[object]) -> tuple[str, int, SaleLine]:
    """Return ``(sale_id, line_no, line)`` for a raw ``SaleLines`` row."""

    (
        sale_id,
        line_no,
        product_id,
        batch_id,
        qty,
        sale_unit,
        price_unit,
        discount_pct,
        discount_amount,
        markdown_pct,
        cogs_base,
        override_reason,
    ) = raw_row

    line = SaleLine(
        product_id=str(product_id),
        batch_id=str(batch_id),
        qty=_decimal(qty),
        sale_unit=SaleUnit(str(sale_unit)),
        price_unit=_decimal(price_unit, "0.00"),
        discount_pct=_optional_decimal(discount_pct),
        discount_amount=_optional_decimal(discount_amount),
        markdown_pct=_optional_decimal(markdown_pct),
        cogs_base=_decimal(cogs_base, "0.00"),
        override_reason=_optional_str(override_reason),
    )
    return str(sale_id), int(line_no or 0), line


def serialize_payment(sale_id: str, payment: Payment) -> list[object]:
    return [sale_id, _cell_value(payment.method), payment.amount, payment.reference]


def deserialize_payment(raw_row: Sequence[object]) -> tuple[str, Payment]:
    sale_id, method, amount, reference = raw_row
    return str(sale_id), Payment(
        method=PaymentMethod(str(method)),
        amount=_decimal(amount, "0.00"),
        reference=_optional_str(reference),
    )


def serialize_stock_movement(record: StockMovementRow) -> list[object]:
    return [
        record.movement_id,
        record.sale_id,
        record.line_no,
        record.batch_id,
        record.quantity,
        record.timestamp_iso,
    ]


def deserialize_stock_movement(raw_row: Sequence[object]) -> StockMovementRow:
    movement_id, sale_id, line_no, batch_id, quantity, timestamp_iso = raw_row
    return StockMovementRow(
        movement_id=str(movement_id),
        sale_id=_optional_str(sale_id),
        line_no=int(line_no) if line_no is not None else None,
        batch_id=str(batch_id),
        quantity=_decimal(quantity),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
    )


def serialize_supplier(record: Supplier) -> list[object]:
    return [record.supplier_id, record.name, record.phone, record.email, record.address, record.terms_days]


def deserialize_supplier(raw_row: Sequence[object]) -> Supplier:
    supplier_id, name, phone, email, address, terms_days = raw_row
    return Supplier(
        supplier_id=str(supplier_id),
        name=str(name),
        phone=_optional_str(phone),
        email=_optional_str(email),
        address=_optional_str(address),
        terms_days=int(terms_days or 0),
    )


def serialize_supplier_invoice(record: SupplierInvoice) -> list[object]:
    return [
        record.invoice_id,
        record.supplier_id,
        record.invoice_no,
        _cell_value(record.invoice_date),
        _cell_value(record.due_date),
        record.total,
        record.balance,
    ]


def deserialize_supplier_invoice(raw_row: Sequence[object]) -> SupplierInvoice:
    invoice_id, supplier_id, invoice_no, invoice_date, due_date, total, balance = raw_row
    return SupplierInvoice(
        invoice_id=str(invoice_id),
        supplier_id=str(supplier_id),
        invoice_no=str(invoice_no),
        invoice_date=_date(invoice_date) or date.min,
        due_date=_date(due_date) or date.min,
        total=_decimal(total, "0.00"),
        balance=_decimal(balance, "0.00"),
    )


def serialize_supplier_payment(record: SupplierPayment) -> list[object]:
    return [
        record.payment_id,
        record.invoice_id,
        _cell_value(record.paid_on),
        record.amount,
        _cell_value(record.method),
        record.reference,
    ]


def deserialize_supplier_payment(raw_row: Sequence[object]) -> SupplierPayment:
    payment_id, invoice_id, paid_on, amount, method, reference = raw_row
    return SupplierPayment(
        payment_id=str(payment_id),
        invoice_id=str(invoice_id),
        paid_on=_date(paid_on) or date.min,
        amount=_decimal(amount, "0.00"),
        method=PaymentMethod(str(method)),
        reference=_optional_str(reference),
    )


def serialize_expense(record: Expense) -> list[object]:
    return [
        record.expense_id,
        record.category,
        record.amount,
        _cell_value(record.spent_on),
        record.payee,
        record.note,
        record.doc_url,
    ]


def deserialize_expense(raw_row: Sequence[object]) -> Expense:
    """Convert a raw ``Expenses`` row; the date may be ISO text or an Excel date."""

    expense_id, category, amount, spent_on, payee, note, doc_url = raw_row
    return Expense(
        expense_id=str(expense_id),
        category=str(category),
        amount=_decimal(amount, "0.00"),
        spent_on=_date(spent_on) or date.min,
        payee=_optional_str(payee),
        note=_optional_str(note),
        doc_url=_optional_str(doc_url),
    )
