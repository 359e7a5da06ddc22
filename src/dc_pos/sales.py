"""Sale processor: bill numbers, immutable sale records, and tender helpers.

The processor never touches stock. It returns a :class:`Sale`; turning the
sale into stock deductions is a separate step (:func:`stock_deductions`) so a
failed inventory update cannot corrupt the sale record and can be retried.
Time, identifiers, and the bill sequence are injected as callables.
"""

from __future__ import annotations

import threading
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from . import log
from .billing import ZERO, calculate_bill
from .constants import BILL_NUMBER_PREFIX, BILL_SEQUENCE_WIDTH, COLOMBO_TZ, Role, TaxMode
from .errors import MissingReferenceError
from .models import BillDiscount, CartItem, Payment, Product, Sale, SaleLine, StockDeduction
from .units import to_base


Clock = Callable[[], datetime]
IdFactory = Callable[[], str]
SequenceAllocator = Callable[[str], int]


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def bill_date_key(moment: datetime) -> str:
    """Return the Colombo-local calendar date of ``moment`` as ``YYYYMMDD``."""
    return moment.astimezone(COLOMBO_TZ).strftime("%Y%m%d")


def format_bill_number(date_key: str, sequence: int) -> str:
    """Format a bill number as ``DC-YYYYMMDD-NNNN``."""
    return f"{BILL_NUMBER_PREFIX}-{date_key}-{sequence:0{BILL_SEQUENCE_WIDTH}d}"


class InMemorySequenceStore:
    """Thread-safe per-day counter usable as a :data:`SequenceAllocator`."""

    def __init__(self, initial: Optional[Mapping[str, int]] = None):
        self._lock = threading.Lock()
        self._values: Dict[str, int] = dict(initial or {})

    def get_and_increment(self, date_key: str) -> int:
        with self._lock:
            value = self._values.get(date_key, 0) + 1
            self._values[date_key] = value
            return value

    def __call__(self, date_key: str) -> int:
        return self.get_and_increment(date_key)

    def last_sequence(self, date_key: str) -> int:
        with self._lock:
            return self._values.get(date_key, 0)


def generate_bill_number(next_sequence: SequenceAllocator, *, now: datetime) -> str:
    """Issue the next bill number for the Colombo-local day of ``now``.

    ``next_sequence`` must perform an atomic read-increment-write for the
    given date key; uniqueness of the returned number rests on it.
    """
    date_key = bill_date_key(now)
    sequence = next_sequence(date_key)
    bill_no = format_bill_number(date_key, sequence)
    log.info("Issued bill number '%s'", bill_no)
    return bill_no


def create_sale_lines(items: Iterable[CartItem]) -> tuple[SaleLine, ...]:
    """Freeze cart lines, capturing each batch's current unit cost."""
    return tuple(
        SaleLine(
            product_id=item.product.product_id,
            batch_id=item.batch.batch_id,
            qty=item.qty,
            sale_unit=item.sale_unit,
            price_unit=item.price_unit,
            discount_pct=item.discount_pct,
            discount_amount=item.discount_amount,
            markdown_pct=item.markdown_pct,
            cogs_base=item.batch.unit_cost,
            override_reason=item.override_reason,
        )
        for item in items
    )


def process_sale(
    items: Sequence[CartItem],
    bill_discount: Optional[BillDiscount],
    payments: Iterable[Payment],
    cashier_role: Role,
    tax_mode: TaxMode,
    tax_rate: Decimal,
    rounding_rule: Optional[Decimal],
    *,
    next_sequence: SequenceAllocator,
    clock: Clock = utc_now,
    id_factory: IdFactory = new_id,
) -> Sale:
    """Turn a cart into an immutable :class:`Sale`.

    The bill is calculated before a bill number is drawn so a configuration
    error never burns a sequence value.

    Raises:
        InvalidTaxModeError: If ``tax_mode`` is not supported.
        ValueError: If ``cashier_role`` is not a known role.
    """
    role = Role(cashier_role)
    totals = calculate_bill(items, bill_discount, tax_mode, tax_rate, rounding_rule)

    sale_at = clock()
    bill_no = generate_bill_number(next_sequence, now=sale_at)
    sale = Sale(
        sale_id=id_factory(),
        bill_no=bill_no,
        sale_client_id=id_factory(),
        sale_at=sale_at,
        cashier_role=role,
        tax_mode=TaxMode(tax_mode),
        tax_rate=tax_rate,
        subtotal=totals.subtotal,
        discount_total=totals.discount_total,
        markdown_total=totals.markdown_total,
        vat_total=totals.vat_total,
        rounding=totals.rounding,
        total=totals.total,
        payments=tuple(payments),
        lines=create_sale_lines(items),
    )
    log.info("Processed sale '%s' (%s) total=%s lines=%d", sale.sale_id, bill_no, sale.total, len(sale.lines))
    return sale


def total_paid(payments: Iterable[Payment]) -> Decimal:
    return sum((payment.amount for payment in payments), ZERO)


def is_fully_paid(total: Decimal, payments: Iterable[Payment]) -> bool:
    return total_paid(payments) >= total


def remaining_due(total: Decimal, payments: Iterable[Payment]) -> Decimal:
    return max(ZERO, total - total_paid(payments))


def calculate_change(total: Decimal, payments: Iterable[Payment]) -> Decimal:
    """Change owed to the customer; derived on demand, never stored."""
    return max(ZERO, total_paid(payments) - total)


def stock_deductions(sale: Sale, products: Mapping[str, Product]) -> List[StockDeduction]:
    """Translate sale lines into base-unit deductions for the inventory store.

    Raises:
        MissingReferenceError: If a line references a product absent from
            ``products``.
        InvalidUnitError: If a line's sale unit no longer fits its product.
    """
    deductions: List[StockDeduction] = []
    for line_no, line in enumerate(sale.lines, start=1):
        product = products.get(line.product_id)
        if product is None:
            raise MissingReferenceError(f"Unknown product id: {line.product_id}")
        deductions.append(
            StockDeduction(
                sale_id=sale.sale_id,
                line_no=line_no,
                batch_id=line.batch_id,
                base_qty=to_base(product, line.qty, line.sale_unit),
            )
        )
    return deductions
