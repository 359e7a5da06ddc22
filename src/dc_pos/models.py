"""Domain records shared by the calculators, the DAL, and the BLL.

Every record is a frozen dataclass. Collections inside records are tuples so
that a completed :class:`Sale` stays immutable end to end.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from .constants import BaseUnit, DiscountType, PaymentMethod, Role, SaleUnit, TaxMode


@dataclass(frozen=True)
class PackComposition:
    """A pack sale unit made of ``count`` base pieces of ``piece_sku``."""

    piece_sku: str
    count: Decimal


@dataclass(frozen=True)
class Product:
    """Catalog entry; immutable for the duration of a sale."""

    product_id: str
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
    archived: bool = False


@dataclass(frozen=True)
class Batch:
    """A lot of physical stock for one product, quantities in base units."""

    batch_id: str
    product_id: str
    unit_cost: Decimal
    on_hand: Decimal
    created_at: datetime
    lot: Optional[str] = None
    expiry: Optional[date] = None
    reserved: Decimal = Decimal("0")
    updated_at: Optional[datetime] = None

    @property
    def available(self) -> Decimal:
        return self.on_hand - self.reserved


@dataclass(frozen=True)
class EvaluatedBatch:
    """Read-only expiry classification of a batch relative to a given day."""

    batch: Batch
    is_expired: bool
    is_near_expiry: bool
    days_to_expiry: Optional[int] = None


@dataclass(frozen=True)
class CartItem:
    """One working line of an in-progress sale."""

    product: Product
    batch: Batch
    qty: Decimal
    sale_unit: SaleUnit
    price_unit: Decimal
    discount_pct: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    markdown_pct: Optional[Decimal] = None
    override_reason: Optional[str] = None


@dataclass(frozen=True)
class BillDiscount:
    """Single discount applied to the post-line-discount subtotal."""

    type: DiscountType
    value: Decimal


@dataclass(frozen=True)
class TaxBreakdown:
    subtotal: Decimal
    tax: Decimal
    total: Decimal


@dataclass(frozen=True)
class BillTotals:
    """Result of :func:`dc_pos.billing.calculate_bill`."""

    subtotal: Decimal
    discount_total: Decimal
    markdown_total: Decimal
    vat_total: Decimal
    rounding: Decimal
    total: Decimal


@dataclass(frozen=True)
class SaleLine:
    """Frozen counterpart of a :class:`CartItem` inside a completed sale."""

    product_id: str
    batch_id: str
    qty: Decimal
    sale_unit: SaleUnit
    price_unit: Decimal
    discount_pct: Optional[Decimal]
    discount_amount: Optional[Decimal]
    markdown_pct: Optional[Decimal]
    cogs_base: Decimal
    override_reason: Optional[str] = None


@dataclass(frozen=True)
class Payment:
    """One tender applied to a sale."""

    method: PaymentMethod
    amount: Decimal
    reference: Optional[str] = None


@dataclass(frozen=True)
class Sale:
    """Finalized transaction; the unit of record crossing the persistence boundary."""

    sale_id: str
    bill_no: str
    sale_client_id: str
    sale_at: datetime
    cashier_role: Role
    tax_mode: TaxMode
    tax_rate: Decimal
    subtotal: Decimal
    discount_total: Decimal
    markdown_total: Decimal
    vat_total: Decimal
    rounding: Decimal
    total: Decimal
    payments: tuple[Payment, ...]
    lines: tuple[SaleLine, ...]


@dataclass(frozen=True)
class StockDeduction:
    """Instruction for the inventory store to consume ``base_qty`` from a batch."""

    sale_id: str
    line_no: int
    batch_id: str
    base_qty: Decimal


@dataclass(frozen=True)
class Supplier:
    supplier_id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    terms_days: int = 0


@dataclass(frozen=True)
class SupplierInvoice:
    invoice_id: str
    supplier_id: str
    invoice_no: str
    invoice_date: date
    due_date: date
    total: Decimal
    balance: Decimal


@dataclass(frozen=True)
class SupplierPayment:
    payment_id: str
    invoice_id: str
    paid_on: date
    amount: Decimal
    method: PaymentMethod
    reference: Optional[str] = None


@dataclass(frozen=True)
class Expense:
    """Operating cost outside the supplier ledger (rent, utilities, transport)."""

    expense_id: str
    category: str
    amount: Decimal
    spent_on: date
    payee: Optional[str] = None
    note: Optional[str] = None
    doc_url: Optional[str] = None


@dataclass(frozen=True)
class TaxSettings:
    """Typed ``[Taxes]`` section of ``config.ini``."""

    enabled: bool = True
    rate: Decimal = Decimal("0")
    mode: TaxMode = TaxMode.NONE
    rounding: Optional[Decimal] = None

    @property
    def effective_mode(self) -> TaxMode:
        return self.mode if self.enabled else TaxMode.NONE


@dataclass(frozen=True)
class UnitSettings:
    """Typed ``[Units]`` section of ``config.ini``: minimum quantity increments."""

    kg_step: Decimal = Decimal("0.05")
    g_step: Decimal = Decimal("1")
    pcs_step: Decimal = Decimal("1")
