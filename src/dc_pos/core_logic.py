"""Business logic layer for the point-of-sale workbook.

This module orchestrates the catalog, inventory, checkout, and supplier ledger
on top of the Data Access Layer (DAL). The pure calculators in
:mod:`dc_pos.billing`, :mod:`dc_pos.fefo`, and :mod:`dc_pos.sales` do the
arithmetic; this layer feeds them workbook state, enforces the domain rules,
and writes the results back through :mod:`dc_pos.data_manager`.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from openpyxl.workbook import Workbook

from . import cart as cart_module
from . import data_manager, log
from .cart import Cart
from .constants import (
    COLOMBO_TZ,
    EXPECTED_SCHEMA_VERSION,
    EXPENSE_CATEGORIES,
    BaseUnit,
    PaymentMethod,
    Role,
    SaleUnit,
)
from .errors import BusinessRuleViolation, MissingReferenceError, OutOfStockError
from .fefo import evaluate_batch, select_fefo_batch
from .models import (
    Batch,
    CartItem,
    EvaluatedBatch,
    Expense,
    PackComposition,
    Payment,
    Product,
    Sale,
    Supplier,
    SupplierInvoice,
    SupplierPayment,
)
from .sales import Clock, IdFactory, is_fully_paid, new_id, process_sale, stock_deductions, utc_now
from .units import to_base, validate_product_units


INTERNAL_BARCODE_PREFIX = "200"

AGING_BUCKETS: tuple[str, ...] = ("0-30", "31-60", "61-90", "90+")

ZERO = Decimal("0")


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook, and injected capabilities used by the BLL.

    ``clock`` and ``id_factory`` default to UTC now and UUID4 strings. Tests
    replace them to make bill numbers and identifiers deterministic.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    clock: Clock = utc_now
    id_factory: IdFactory = new_id
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _locks: Dict[str, threading.Lock] = field(default_factory=dict, repr=False, compare=False)
    _locks_guard: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


@dataclass(frozen=True)
class AddProductCommand:
    """User intent for adding a catalog entry."""

    sku: str
    name_en: str
    base_unit: BaseUnit
    default_sale_unit: SaleUnit
    allowed_sale_units: tuple[SaleUnit, ...]
    price_base: Decimal
    name_si: Optional[str] = None
    name_ta: Optional[str] = None
    category: Optional[str] = None
    barcodes: tuple[str, ...] = ()
    requires_expiry: bool = False
    pack_bom: Optional[PackComposition] = None
    min_stock: Optional[Decimal] = None


@dataclass(frozen=True)
class ReceiveStockCommand:
    """User intent for booking a new batch into inventory.

    ``quantity`` is expressed in ``unit`` when given, otherwise in the
    product's base unit. ``unit_cost`` is always per base unit.
    """

    product_id: str
    quantity: Decimal
    unit_cost: Decimal
    expiry: Optional[date] = None
    lot: Optional[str] = None
    unit: Optional[SaleUnit] = None


@dataclass(frozen=True)
class AddSupplierCommand:
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    terms_days: int = 0


@dataclass(frozen=True)
class SupplierInvoiceCommand:
    """User intent for recording a supplier invoice."""

    supplier_id: str
    invoice_no: str
    total: Decimal
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None


@dataclass(frozen=True)
class SupplierPaymentCommand:
    """User intent for paying down a supplier invoice."""

    invoice_id: str
    amount: Decimal
    method: PaymentMethod = PaymentMethod.CASH
    paid_on: Optional[date] = None
    reference: Optional[str] = None


@dataclass(frozen=True)
class AddExpenseCommand:
    """User intent for recording an operating expense."""

    category: str
    amount: Decimal
    spent_on: Optional[date] = None
    payee: Optional[str] = None
    note: Optional[str] = None
    doc_url: Optional[str] = None


# ---------------------------------------------------------------------------
# Context plumbing
# ---------------------------------------------------------------------------


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    The business logic layer maintains in-memory caches keyed by domain area
    (products, batches, sales, suppliers, expenses). Buckets are plain dictionaries that
    store precomputed query results so repeated lookups skip workbook scans.

    Args:
        context (RuntimeContext): Runtime state carrying the shared cache
            dictionary.
        name (str): Logical bucket name to fetch or create.

    Returns:
        dict[str, Any]: Mutable mapping for the requested bucket.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Args:
        context (RuntimeContext): Active runtime context whose cache should be
            pruned.
        *names (str): Bucket identifiers to remove. Missing buckets are
            ignored.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _key_lock(context: RuntimeContext, key: str) -> threading.Lock:
    """Return the lock serializing read-modify-write cycles on ``key``."""
    with context._locks_guard:
        lock = context._locks.get(key)
        if lock is None:
            lock = threading.Lock()
            context._locks[key] = lock
        return lock


def local_today(context: RuntimeContext) -> date:
    """Colombo-local calendar date of the context clock."""
    return context.clock().astimezone(COLOMBO_TZ).date()


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the product cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` products, ``active``
            (non-archived) products, and ``by_id`` / ``by_sku`` lookups.
    """

    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = list(data_manager.iter_products(context.workbook))
        bucket["all"] = all_products
        bucket["active"] = [product for product in all_products if not product.archived]
        bucket["by_id"] = {product.product_id: product for product in all_products}
        bucket["by_sku"] = {product.sku.lower(): product for product in all_products}
        log.debug(
            "Populated products cache with %d entries (%d active)",
            len(all_products),
            len(bucket["active"]),
        )
    return bucket


def _ensure_batches_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "batches")
    if "all" not in bucket:
        all_batches = list(data_manager.iter_batches(context.workbook))
        by_product: Dict[str, List[Batch]] = {}
        for batch in all_batches:
            by_product.setdefault(batch.product_id, []).append(batch)
        bucket["all"] = all_batches
        bucket["by_id"] = {batch.batch_id: batch for batch in all_batches}
        bucket["by_product"] = by_product
        log.debug("Populated batches cache with %d entries", len(all_batches))
    return bucket


def _ensure_movements_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "movements")
    if "keys" not in bucket:
        bucket["keys"] = {
            (movement.sale_id, movement.line_no)
            for movement in data_manager.iter_stock_movements(context.workbook)
            if movement.sale_id is not None
        }
    return bucket


def _ensure_sales_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the sales cache bucket on demand.

    Sales are immutable after creation, so the bucket keeps the full list in
    append order together with ``by_id`` and ``by_bill_no`` lookups.
    """

    bucket = _get_cache_bucket(context, "sales")
    if "all" not in bucket:
        all_sales = list(data_manager.iter_sales(context.workbook))
        bucket["all"] = all_sales
        bucket["by_id"] = {sale.sale_id: sale for sale in all_sales}
        bucket["by_bill_no"] = {sale.bill_no: sale for sale in all_sales}
        log.debug("Populated sales cache with %d entries", len(all_sales))
    return bucket


def _ensure_suppliers_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "suppliers")
    if "all" not in bucket:
        suppliers = list(data_manager.iter_suppliers(context.workbook))
        invoices = list(data_manager.iter_supplier_invoices(context.workbook))
        bucket["all"] = suppliers
        bucket["by_id"] = {supplier.supplier_id: supplier for supplier in suppliers}
        bucket["invoices"] = invoices
        bucket["invoices_by_id"] = {invoice.invoice_id: invoice for invoice in invoices}
        log.debug(
            "Populated suppliers cache with %d suppliers and %d invoices",
            len(suppliers),
            len(invoices),
        )
    return bucket


def _ensure_expenses_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "expenses")
    if "all" not in bucket:
        bucket["all"] = list(data_manager.iter_expenses(context.workbook))
        log.debug("Populated expenses cache with %d rows", len(bucket["all"]))
    return bucket


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    clock: Clock = utc_now,
    id_factory: IdFactory = new_id,
) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    The helper resolves ``config.ini``, parses settings, and opens the Excel
    workbook that stores catalog, inventory, and sales data. The resulting
    :class:`RuntimeContext` bundles the immutable settings with a mutable
    workbook handle, the injected clock and id factory, and empty caches.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        clock (Callable[[], datetime]): Source of aware timestamps.
        id_factory (Callable[[], str]): Source of unique identifiers.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
        ConfigurationError: When a tax, unit, or default value is invalid.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook, clock=clock, id_factory=id_factory)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Args:
        context (RuntimeContext): Runtime context containing the resolved
            settings.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext, *, include_archived: bool = False) -> List[Product]:
    """Return cached products, hiding archived entries unless asked.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        include_archived (bool): When ``True`` soft-deleted products are
            included.

    Returns:
        list[Product]: Copy of the cached product list in sheet order.
    """
    cache = _ensure_products_cache(context)
    source = cache["all"] if include_archived else cache["active"]
    return list(source)


def get_product(context: RuntimeContext, product_id: str) -> Product:
    """Return a product by identifier.

    Raises:
        MissingReferenceError: If no product carries ``product_id``.
    """
    cache = _ensure_products_cache(context)
    try:
        return cache["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}") from exc


def find_product_by_sku(context: RuntimeContext, sku: str) -> Optional[Product]:
    """Case-insensitive SKU lookup; ``None`` when nothing matches."""
    return _ensure_products_cache(context)["by_sku"].get(sku.strip().lower())


def find_product_by_barcode(context: RuntimeContext, barcode: str) -> Optional[Product]:
    """Return the first active product carrying ``barcode`` exactly.

    The scanner collaborator feeds raw strings; surrounding whitespace is
    ignored.
    """
    code = barcode.strip()
    for product in list_products(context):
        if code in product.barcodes:
            return product
    return None


def search_products(context: RuntimeContext, query: str) -> List[Product]:
    """Match active products by name (any language), SKU, or barcode fragment."""
    needle = query.strip().lower()
    if not needle:
        return list_products(context)

    matches = []
    for product in list_products(context):
        names = (product.name_en, product.name_si, product.name_ta, product.sku)
        if any(name and needle in name.lower() for name in names):
            matches.append(product)
        elif any(needle in barcode for barcode in product.barcodes):
            matches.append(product)
    return matches


def generate_internal_barcode(sku: str) -> str:
    """Build a 12-digit in-store barcode: ``200`` + 8 SKU digits + check digit.

    Non-digit SKU characters are dropped; the digits are right-padded with
    zeros and truncated to eight.
    """
    digits = "".join(ch for ch in sku if ch.isdigit())
    body = INTERNAL_BARCODE_PREFIX + digits.ljust(8, "0")[:8]
    total = sum(int(digit) * (1 if index % 2 == 0 else 3) for index, digit in enumerate(body))
    return body + str((10 - total % 10) % 10)


def add_product(context: RuntimeContext, command: AddProductCommand) -> Product:
    """Validate and append a new catalog entry.

    When the command carries no barcode an internal one is generated from the
    SKU so every product can be scanned.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (AddProductCommand): Structured product definition.

    Returns:
        Product: Newly appended product.

    Raises:
        BusinessRuleViolation: If the SKU is blank or already used.
        ConfigurationError: If the default sale unit is not allowed.
        InvalidUnitError: If an allowed unit does not fit the base unit.
        ValueError: If the base price is negative.
    """
    sku = command.sku.strip()
    if not sku:
        raise BusinessRuleViolation("SKU is required")
    if find_product_by_sku(context, sku) is not None:
        log.warning("Attempted to add duplicate SKU '%s'", sku)
        raise BusinessRuleViolation(f"SKU '{sku}' already exists")
    if not command.name_en.strip():
        raise BusinessRuleViolation("English product name is required")
    require_nonnegative_money(command.price_base)

    barcodes = tuple(code.strip() for code in command.barcodes if code.strip())
    if not barcodes:
        barcodes = (generate_internal_barcode(sku),)

    product = Product(
        product_id=context.id_factory(),
        sku=sku,
        name_en=command.name_en.strip(),
        base_unit=BaseUnit(command.base_unit),
        default_sale_unit=SaleUnit(command.default_sale_unit),
        allowed_sale_units=tuple(SaleUnit(unit) for unit in command.allowed_sale_units),
        price_base=command.price_base,
        name_si=command.name_si,
        name_ta=command.name_ta,
        category=command.category,
        barcodes=barcodes,
        requires_expiry=command.requires_expiry,
        pack_bom=command.pack_bom,
        min_stock=command.min_stock,
    )
    validate_product_units(product)

    data_manager.append_product(context.workbook, product)
    _invalidate_cache(context, "products")
    log.info("Added product '%s' (sku=%s, barcode=%s)", product.product_id, sku, barcodes[0])
    return product


def archive_product(context: RuntimeContext, product_id: str) -> Product:
    """Soft-delete a product so it no longer appears in sale flows."""
    product = get_product(context, product_id)
    if product.archived:
        return product
    data_manager.update_product(context.workbook, product_id, field_values={"Archived": True})
    _invalidate_cache(context, "products")
    log.info("Archived product '%s'", product_id)
    return get_product(context, product_id)


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


def list_batches(context: RuntimeContext, product_id: Optional[str] = None) -> List[Batch]:
    """Return every batch, or only those of ``product_id``, in sheet order."""
    cache = _ensure_batches_cache(context)
    if product_id is None:
        return list(cache["all"])
    return list(cache["by_product"].get(product_id, []))


def get_batch(context: RuntimeContext, batch_id: str) -> Batch:
    """Return a batch by identifier.

    Raises:
        MissingReferenceError: If no batch carries ``batch_id``.
    """
    cache = _ensure_batches_cache(context)
    try:
        return cache["by_id"][batch_id]
    except KeyError as exc:
        log.warning("Batch lookup failed for id '%s'", batch_id)
        raise MissingReferenceError(f"Unknown batch id: {batch_id}") from exc


def list_available_batches(context: RuntimeContext, product_id: str) -> List[Batch]:
    """Batches of ``product_id`` with stock left after reservations."""
    return [batch for batch in list_batches(context, product_id) if batch.available > ZERO]


def receive_stock(context: RuntimeContext, command: ReceiveStockCommand) -> Batch:
    """Create a new batch for a delivery.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (ReceiveStockCommand): Structured delivery description.

    Returns:
        Batch: Newly appended batch with ``on_hand`` in base units.

    Raises:
        MissingReferenceError: If the product is unknown.
        BusinessRuleViolation: If the product is archived, or requires an
            expiry date and none was given.
        InvalidUnitError: If ``command.unit`` does not fit the product.
        ValueError: If the quantity is not positive or the cost is negative.
    """
    product = get_product(context, command.product_id)
    if product.archived:
        log.warning("Attempted to receive stock for archived product '%s'", command.product_id)
        raise BusinessRuleViolation(f"Product '{command.product_id}' is archived")
    require_positive_quantity(command.quantity)
    require_nonnegative_money(command.unit_cost)
    if product.requires_expiry and command.expiry is None:
        raise BusinessRuleViolation(f"Product '{command.product_id}' requires an expiry date")

    base_qty = command.quantity
    if command.unit is not None:
        base_qty = to_base(product, command.quantity, command.unit)

    now = context.clock()
    batch = Batch(
        batch_id=context.id_factory(),
        product_id=product.product_id,
        unit_cost=command.unit_cost,
        on_hand=base_qty,
        created_at=now,
        lot=command.lot,
        expiry=command.expiry,
        updated_at=now,
    )
    data_manager.append_batch(context.workbook, batch)
    _invalidate_cache(context, "batches")
    log.info(
        "Received batch '%s' for product '%s' (on_hand=%s, expiry=%s)",
        batch.batch_id,
        product.product_id,
        base_qty,
        command.expiry,
    )
    return batch


def _write_batch(context: RuntimeContext, batch: Batch, *, on_hand: Decimal, reserved: Decimal) -> Batch:
    now = context.clock()
    data_manager.update_batch(
        context.workbook,
        batch.batch_id,
        field_values={"OnHand": on_hand, "Reserved": reserved, "UpdatedAt": now},
    )
    _invalidate_cache(context, "batches")
    return get_batch(context, batch.batch_id)


def reserve_stock(context: RuntimeContext, batch_id: str, qty: Decimal) -> Batch:
    """Hold ``qty`` base units of a batch for an in-progress sale.

    Raises:
        MissingReferenceError: If the batch is unknown.
        OutOfStockError: If ``qty`` exceeds the batch's available quantity.
        ValueError: If ``qty`` is not positive.
    """
    require_positive_quantity(qty)
    with _key_lock(context, f"batch:{batch_id}"):
        batch = get_batch(context, batch_id)
        if qty > batch.available:
            log.warning("Reserve of %s exceeds available %s on batch '%s'", qty, batch.available, batch_id)
            raise OutOfStockError(f"Batch {batch_id} has only {batch.available} available")
        updated = _write_batch(context, batch, on_hand=batch.on_hand, reserved=batch.reserved + qty)
    log.info("Reserved %s on batch '%s'", qty, batch_id)
    return updated


def release_stock(context: RuntimeContext, batch_id: str, qty: Decimal) -> Batch:
    """Return a previous reservation; ``reserved`` never drops below zero."""
    require_positive_quantity(qty)
    with _key_lock(context, f"batch:{batch_id}"):
        batch = get_batch(context, batch_id)
        updated = _write_batch(context, batch, on_hand=batch.on_hand, reserved=max(ZERO, batch.reserved - qty))
    log.info("Released %s on batch '%s'", qty, batch_id)
    return updated


def consume_stock(context: RuntimeContext, batch_id: str, qty: Decimal, *, sale_id: str, line_no: int) -> Batch:
    """Deduct sold stock from a batch exactly once per sale line.

    A ``StockMovements`` row keyed by ``(sale_id, line_no)`` is written with
    every deduction; a repeated call for the same key leaves the batch as it
    is. ``on_hand`` and ``reserved`` are both reduced and clamped at zero.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        batch_id (str): Batch to deduct from.
        qty (Decimal): Quantity in base units.
        sale_id (str): Identifier of the sale the deduction belongs to.
        line_no (int): 1-based line number inside the sale.

    Returns:
        Batch: The batch after the deduction (or unchanged on a replay).

    Raises:
        MissingReferenceError: If the batch is unknown.
        ValueError: If ``qty`` is not positive.
    """
    require_positive_quantity(qty)
    with _key_lock(context, f"batch:{batch_id}"):
        movements = _ensure_movements_cache(context)
        batch = get_batch(context, batch_id)
        if (sale_id, line_no) in movements["keys"]:
            log.info("Stock for sale '%s' line %d already consumed; skipping", sale_id, line_no)
            return batch

        updated = _write_batch(
            context,
            batch,
            on_hand=max(ZERO, batch.on_hand - qty),
            reserved=max(ZERO, batch.reserved - qty),
        )
        data_manager.append_stock_movement(
            context.workbook,
            data_manager.StockMovementRow(
                movement_id=context.id_factory(),
                sale_id=sale_id,
                line_no=line_no,
                batch_id=batch_id,
                quantity=qty,
                timestamp_iso=context.clock().isoformat(),
            ),
        )
        movements["keys"].add((sale_id, line_no))
    log.info("Consumed %s from batch '%s' for sale '%s' line %d", qty, batch_id, sale_id, line_no)
    return updated


# ---------------------------------------------------------------------------
# Bill sequence and checkout
# ---------------------------------------------------------------------------


def next_bill_sequence(context: RuntimeContext, date_key: str) -> int:
    """Atomically draw the next bill sequence for a Colombo-local day."""
    with _key_lock(context, f"sequence:{date_key}"):
        value = data_manager.get_and_increment_sequence(context.workbook, date_key)
    log.debug("Allocated bill sequence %d for %s", value, date_key)
    return value


def build_cart_item(
    context: RuntimeContext,
    product: Product,
    batch: Batch,
    *,
    sale_unit: Optional[SaleUnit] = None,
    qty: Optional[Decimal] = None,
    override_reason: Optional[str] = None,
) -> CartItem:
    """Price a cart line against today's date and the configured unit steps.

    Raises:
        BusinessRuleViolation: If the product is archived.
        InvalidUnitError: If ``sale_unit`` is not allowed for the product.
        InvalidQuantityError: If ``qty`` does not fit the unit step.
    """
    if product.archived:
        raise BusinessRuleViolation(f"Product '{product.product_id}' is archived")
    return cart_module.build_cart_item(
        product,
        batch,
        today=local_today(context),
        sale_unit=sale_unit,
        qty=qty,
        override_reason=override_reason,
        unit_settings=context.settings.units,
        near_expiry_days=context.settings.near_expiry_days,
    )


def new_cart(context: RuntimeContext) -> Cart:
    return Cart(unit_settings=context.settings.units, near_expiry_days=context.settings.near_expiry_days)


def select_batch_for_product(
    context: RuntimeContext,
    product_id: str,
    qty_needed: Optional[Decimal] = None,
) -> Optional[Batch]:
    """Return the FEFO batch for ``product_id`` or ``None`` when nothing is sellable."""
    get_product(context, product_id)
    return select_fefo_batch(list_batches(context, product_id), qty_needed, today=local_today(context))


def apply_sale_stock(context: RuntimeContext, sale: Sale) -> List[Batch]:
    """Consume stock for every line of ``sale``.

    Safe to call again after a partial failure: lines that were already
    deducted are skipped.

    Raises:
        MissingReferenceError: If a line references an unknown product or
            batch.
    """
    products = _ensure_products_cache(context)["by_id"]
    return [
        consume_stock(
            context,
            deduction.batch_id,
            deduction.base_qty,
            sale_id=deduction.sale_id,
            line_no=deduction.line_no,
        )
        for deduction in stock_deductions(sale, products)
    ]


def _check_cart_references(context: RuntimeContext, cart: Cart) -> None:
    """Resolve every line the way stock application will, before anything is written."""
    for item in cart.items:
        product = get_product(context, item.product.product_id)
        get_batch(context, item.batch.batch_id)
        to_base(product, item.qty, item.sale_unit)


def complete_sale(
    context: RuntimeContext,
    cart: Cart,
    payments: Iterable[Payment],
    *,
    cashier_role: Optional[Role] = None,
) -> Optional[Sale]:
    """Confirm the cart as a sale, persist it, and deduct its stock.

    Confirmation does not proceed, and ``None`` is returned, when the cart is
    empty or the payments do not cover the bill total. Otherwise the sale is
    processed with the configured tax and rounding, appended to the workbook,
    its stock consumed, and the cart cleared.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        cart (Cart): Cart holding the lines and optional bill discount.
        payments (Iterable[Payment]): Tenders offered by the customer.
        cashier_role (Role | None): Operator role; defaults to the configured
            ``[Defaults] CashierRole``.

    Returns:
        Sale | None: The recorded sale, or ``None`` when confirmation was
            refused.

    Raises:
        ValueError: If a payment amount is negative.
        MissingReferenceError: If a line references an unknown product or
            batch. Nothing is recorded and the cart is kept.
        InvalidUnitError: If a line's sale unit no longer fits its product.
    """
    if cart.is_empty:
        log.warning("Refused to complete sale: cart is empty")
        return None
    _check_cart_references(context, cart)

    tenders = tuple(payments)
    for payment in tenders:
        require_nonnegative_money(payment.amount)

    taxes = context.settings.taxes
    tax_mode = taxes.effective_mode
    tax_rate = taxes.rate if taxes.enabled else ZERO
    totals = cart.totals(tax_mode, tax_rate, taxes.rounding)
    if not is_fully_paid(totals.total, tenders):
        log.warning("Refused to complete sale: payments do not cover total %s", totals.total)
        return None

    sale = process_sale(
        cart.items,
        cart.bill_discount,
        tenders,
        cashier_role or context.settings.default_cashier_role,
        tax_mode,
        tax_rate,
        taxes.rounding,
        next_sequence=lambda date_key: next_bill_sequence(context, date_key),
        clock=context.clock,
        id_factory=context.id_factory,
    )
    data_manager.append_sale(context.workbook, sale)
    _invalidate_cache(context, "sales")
    log.info("Recorded sale '%s' as bill '%s'", sale.sale_id, sale.bill_no)

    try:
        apply_sale_stock(context, sale)
    except Exception:
        # The sale is on record; a retry must go through apply_sale_stock.
        log.error("Stock for sale '%s' was not fully applied; rerun apply_sale_stock", sale.sale_id)
        cart.clear()
        raise
    cart.clear()
    return sale


# ---------------------------------------------------------------------------
# Sale queries
# ---------------------------------------------------------------------------


def _sale_day(sale: Sale) -> date:
    return sale.sale_at.astimezone(COLOMBO_TZ).date()


def list_sales(context: RuntimeContext) -> List[Sale]:
    """Snapshot of every recorded sale in append order."""
    return list(_ensure_sales_cache(context)["all"])


def get_sale(context: RuntimeContext, sale_id: str) -> Sale:
    cache = _ensure_sales_cache(context)
    try:
        return cache["by_id"][sale_id]
    except KeyError as exc:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise MissingReferenceError(f"Unknown sale id: {sale_id}") from exc


def get_sale_by_bill_number(context: RuntimeContext, bill_no: str) -> Sale:
    cache = _ensure_sales_cache(context)
    try:
        return cache["by_bill_no"][bill_no]
    except KeyError as exc:
        log.warning("Sale lookup failed for bill '%s'", bill_no)
        raise MissingReferenceError(f"Unknown bill number: {bill_no}") from exc


def list_sales_between(context: RuntimeContext, start: date, end: date) -> List[Sale]:
    """Sales whose Colombo-local day falls within ``start``..``end`` inclusive."""
    return [sale for sale in list_sales(context) if start <= _sale_day(sale) <= end]


def list_sales_for_day(context: RuntimeContext, day: date) -> List[Sale]:
    return list_sales_between(context, day, day)


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def calculate_inventory(context: RuntimeContext) -> Dict[str, Decimal]:
    """Aggregate available base-unit stock per product.

    Every catalog product appears in the result, including those without
    batches, so callers can render complete stock listings.

    Returns:
        dict[str, Decimal]: Mapping of ``product_id`` to the summed
            ``on_hand - reserved`` of its batches.
    """
    inventory: Dict[str, Decimal] = {
        product.product_id: ZERO for product in list_products(context, include_archived=True)
    }
    for batch in list_batches(context):
        inventory[batch.product_id] = inventory.get(batch.product_id, ZERO) + batch.available
    return inventory


def list_expiring_batches(
    context: RuntimeContext,
    today: Optional[date] = None,
    within_days: Optional[int] = None,
) -> List[EvaluatedBatch]:
    """Batches with stock whose expiry falls within ``within_days`` of ``today``.

    Already expired batches that still hold stock are included so they can be
    written off. The result is ordered by expiry date.
    """
    today = today or local_today(context)
    window = context.settings.near_expiry_days if within_days is None else within_days
    expiring = []
    for batch in list_batches(context):
        if batch.on_hand <= ZERO or batch.expiry is None:
            continue
        evaluated = evaluate_batch(batch, today, context.settings.near_expiry_days)
        if evaluated.days_to_expiry is not None and evaluated.days_to_expiry <= window:
            expiring.append(evaluated)
    return sorted(expiring, key=lambda evaluated: (evaluated.batch.expiry, evaluated.batch.created_at))


def list_low_stock(context: RuntimeContext) -> List[Tuple[Product, Decimal]]:
    """Active products whose on-hand stock is below their ``min_stock``."""
    on_hand: Dict[str, Decimal] = {}
    for batch in list_batches(context):
        on_hand[batch.product_id] = on_hand.get(batch.product_id, ZERO) + batch.on_hand

    low = []
    for product in list_products(context):
        if not product.min_stock:
            continue
        stock = on_hand.get(product.product_id, ZERO)
        if stock < product.min_stock:
            low.append((product, stock))
    return low


def calculate_sales_summary(context: RuntimeContext, start: date, end: date) -> Dict[str, Decimal]:
    """Summarize sales between ``start`` and ``end`` inclusive.

    Cost of goods uses the unit cost captured on each sale line at the time of
    sale. Gross margin is the tax-exclusive subtotal minus that cost.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        start (date): First Colombo-local day to include.
        end (date): Last Colombo-local day to include.

    Returns:
        dict[str, Decimal]: Keys ``bills``, ``subtotal``, ``discount_total``,
            ``markdown_total``, ``vat_total``, ``rounding``, ``total``,
            ``cogs``, and ``gross_margin``.

    Raises:
        MissingReferenceError: If a sale line references an unknown product.
    """
    summary = {
        "bills": ZERO,
        "subtotal": ZERO,
        "discount_total": ZERO,
        "markdown_total": ZERO,
        "vat_total": ZERO,
        "rounding": ZERO,
        "total": ZERO,
        "cogs": ZERO,
    }
    for sale in list_sales_between(context, start, end):
        summary["bills"] += 1
        summary["subtotal"] += sale.subtotal
        summary["discount_total"] += sale.discount_total
        summary["markdown_total"] += sale.markdown_total
        summary["vat_total"] += sale.vat_total
        summary["rounding"] += sale.rounding
        summary["total"] += sale.total
        for line in sale.lines:
            product = get_product(context, line.product_id)
            summary["cogs"] += to_base(product, line.qty, line.sale_unit) * line.cogs_base
    summary["gross_margin"] = summary["subtotal"] - summary["cogs"]
    return summary


# ---------------------------------------------------------------------------
# Supplier ledger
# ---------------------------------------------------------------------------


def list_suppliers(context: RuntimeContext) -> List[Supplier]:
    return list(_ensure_suppliers_cache(context)["all"])


def get_supplier(context: RuntimeContext, supplier_id: str) -> Supplier:
    cache = _ensure_suppliers_cache(context)
    try:
        return cache["by_id"][supplier_id]
    except KeyError as exc:
        log.warning("Supplier lookup failed for id '%s'", supplier_id)
        raise MissingReferenceError(f"Unknown supplier id: {supplier_id}") from exc


def list_supplier_invoices(context: RuntimeContext, supplier_id: Optional[str] = None) -> List[SupplierInvoice]:
    invoices = _ensure_suppliers_cache(context)["invoices"]
    if supplier_id is None:
        return list(invoices)
    return [invoice for invoice in invoices if invoice.supplier_id == supplier_id]


def get_supplier_invoice(context: RuntimeContext, invoice_id: str) -> SupplierInvoice:
    cache = _ensure_suppliers_cache(context)
    try:
        return cache["invoices_by_id"][invoice_id]
    except KeyError as exc:
        log.warning("Invoice lookup failed for id '%s'", invoice_id)
        raise MissingReferenceError(f"Unknown invoice id: {invoice_id}") from exc


def add_supplier(context: RuntimeContext, command: AddSupplierCommand) -> Supplier:
    """Append a supplier.

    Raises:
        BusinessRuleViolation: If the name is blank.
        ValueError: If ``terms_days`` is negative.
    """
    if not command.name.strip():
        raise BusinessRuleViolation("Supplier name is required")
    if command.terms_days < 0:
        raise ValueError("Payment terms must be zero or positive")

    supplier = Supplier(
        supplier_id=context.id_factory(),
        name=command.name.strip(),
        phone=command.phone,
        email=command.email,
        address=command.address,
        terms_days=command.terms_days,
    )
    data_manager.append_supplier(context.workbook, supplier)
    _invalidate_cache(context, "suppliers")
    log.info("Added supplier '%s' (%s)", supplier.supplier_id, supplier.name)
    return supplier


def record_supplier_invoice(context: RuntimeContext, command: SupplierInvoiceCommand) -> SupplierInvoice:
    """Record a payable; its balance starts at the invoice total.

    The due date defaults to the invoice date plus the supplier's payment
    terms.

    Raises:
        MissingReferenceError: If the supplier is unknown.
        BusinessRuleViolation: If the invoice number is blank or the due date
            precedes the invoice date.
        ValueError: If the total is negative.
    """
    supplier = get_supplier(context, command.supplier_id)
    if not command.invoice_no.strip():
        raise BusinessRuleViolation("Invoice number is required")
    require_nonnegative_money(command.total)

    invoice_date = command.invoice_date or local_today(context)
    due_date = command.due_date or invoice_date + timedelta(days=supplier.terms_days)
    if due_date < invoice_date:
        raise BusinessRuleViolation("Invoice due date cannot precede the invoice date")

    invoice = SupplierInvoice(
        invoice_id=context.id_factory(),
        supplier_id=supplier.supplier_id,
        invoice_no=command.invoice_no.strip(),
        invoice_date=invoice_date,
        due_date=due_date,
        total=command.total,
        balance=command.total,
    )
    data_manager.append_supplier_invoice(context.workbook, invoice)
    _invalidate_cache(context, "suppliers")
    log.info(
        "Recorded invoice '%s' for supplier '%s' (total=%s, due=%s)",
        invoice.invoice_no,
        supplier.supplier_id,
        invoice.total,
        due_date,
    )
    return invoice


def record_supplier_payment(context: RuntimeContext, command: SupplierPaymentCommand) -> SupplierPayment:
    """Pay down an invoice balance.

    Raises:
        MissingReferenceError: If the invoice is unknown.
        BusinessRuleViolation: If the amount exceeds the outstanding balance.
        ValueError: If the amount is not positive.
    """
    if command.amount <= ZERO:
        log.error("Supplier payment validation failed: %s", command.amount)
        raise ValueError("Amount must be greater than zero")

    with _key_lock(context, f"invoice:{command.invoice_id}"):
        invoice = get_supplier_invoice(context, command.invoice_id)
        if command.amount > invoice.balance:
            log.warning(
                "Payment %s exceeds balance %s on invoice '%s'",
                command.amount,
                invoice.balance,
                command.invoice_id,
            )
            raise BusinessRuleViolation(
                f"Payment {command.amount} exceeds outstanding balance {invoice.balance}"
            )

        payment = SupplierPayment(
            payment_id=context.id_factory(),
            invoice_id=invoice.invoice_id,
            paid_on=command.paid_on or local_today(context),
            amount=command.amount,
            method=PaymentMethod(command.method),
            reference=command.reference,
        )
        data_manager.append_supplier_payment(context.workbook, payment)
        data_manager.update_supplier_invoice(
            context.workbook,
            invoice.invoice_id,
            field_values={"Balance": invoice.balance - command.amount},
        )
        _invalidate_cache(context, "suppliers")
    log.info("Recorded payment of %s against invoice '%s'", command.amount, command.invoice_id)
    return payment


def calculate_supplier_aging(
    context: RuntimeContext,
    supplier_id: str,
    today: Optional[date] = None,
) -> Dict[str, Decimal]:
    """Bucket a supplier's outstanding balances by days past due.

    Invoices that are not yet due count toward ``0-30``.

    Returns:
        dict[str, Decimal]: Balances keyed by ``0-30``, ``31-60``, ``61-90``,
            and ``90+``.
    """
    get_supplier(context, supplier_id)
    today = today or local_today(context)
    aging = {bucket: ZERO for bucket in AGING_BUCKETS}
    for invoice in list_supplier_invoices(context, supplier_id):
        if invoice.balance <= ZERO:
            continue
        overdue = (today - invoice.due_date).days
        if overdue <= 30:
            aging["0-30"] += invoice.balance
        elif overdue <= 60:
            aging["31-60"] += invoice.balance
        elif overdue <= 90:
            aging["61-90"] += invoice.balance
        else:
            aging["90+"] += invoice.balance
    return aging


# ---------------------------------------------------------------------------
# Expenses
# ---------------------------------------------------------------------------


def _expense_category(raw: str) -> str:
    wanted = raw.strip().casefold()
    for category in EXPENSE_CATEGORIES:
        if category.casefold() == wanted:
            return category
    log.warning("Rejected unknown expense category '%s'", raw)
    raise BusinessRuleViolation(
        f"Unknown expense category '{raw}'; expected one of: {', '.join(EXPENSE_CATEGORIES)}"
    )


def add_expense(context: RuntimeContext, command: AddExpenseCommand) -> Expense:
    """Record an operating expense dated today unless ``spent_on`` is given.

    The category is matched case-insensitively against
    :data:`~dc_pos.constants.EXPENSE_CATEGORIES` and stored in its canonical
    spelling.

    Raises:
        BusinessRuleViolation: If the category is unknown.
        ValueError: If the amount is not positive.
    """
    category = _expense_category(command.category)
    if command.amount <= ZERO:
        log.error("Expense amount validation failed: %s", command.amount)
        raise ValueError("Amount must be greater than zero")

    expense = Expense(
        expense_id=context.id_factory(),
        category=category,
        amount=command.amount,
        spent_on=command.spent_on or local_today(context),
        payee=(command.payee or "").strip() or None,
        note=(command.note or "").strip() or None,
        doc_url=command.doc_url,
    )
    data_manager.append_expense(context.workbook, expense)
    _invalidate_cache(context, "expenses")
    log.info("Recorded %s expense of %s on %s", category, expense.amount, expense.spent_on)
    return expense


def list_expenses(context: RuntimeContext) -> List[Expense]:
    return list(_ensure_expenses_cache(context)["all"])


def list_expenses_between(context: RuntimeContext, start: date, end: date) -> List[Expense]:
    """Expenses dated ``start``..``end`` inclusive, oldest first."""
    selected = [expense for expense in list_expenses(context) if start <= expense.spent_on <= end]
    return sorted(selected, key=lambda expense: expense.spent_on)


def search_expenses(context: RuntimeContext, query: str) -> List[Expense]:
    """Case-insensitive substring match on category, payee, or note."""
    needle = query.strip().casefold()
    return [
        expense
        for expense in list_expenses(context)
        if any(needle in (text or "").casefold() for text in (expense.category, expense.payee, expense.note))
    ]


def calculate_expense_totals(
    context: RuntimeContext,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> Dict[str, Decimal]:
    """Sum expenses per category, largest first.

    Without bounds every recorded expense is included.
    """
    totals: Dict[str, Decimal] = {}
    for expense in list_expenses(context):
        if start is not None and expense.spent_on < start:
            continue
        if end is not None and expense.spent_on > end:
            continue
        totals[expense.category] = totals.get(expense.category, ZERO) + expense.amount
    return dict(sorted(totals.items(), key=lambda item: (-item[1], item[0])))


# ---------------------------------------------------------------------------
# Validators and persistence
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: Decimal) -> None:
    """Validate that a quantity is strictly positive.

    Args:
        quantity (Decimal): Quantity supplied by a command object.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= ZERO:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook, the same
            clock and id factory, and empty caches.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(
        settings=context.settings,
        workbook=workbook,
        clock=context.clock,
        id_factory=context.id_factory,
    )
