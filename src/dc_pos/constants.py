"""Enumerations shared across the point-of-sale modules.

Centralises domain constants so that the pure calculators, the data access
layer (DAL), the business logic layer (BLL), and the CLI rely on a single
source of truth for units, tax modes, tenders, and sheet names.
"""

from __future__ import annotations

from datetime import timedelta, timezone
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Human-facing bill numbers read DC-YYYYMMDD-NNNN.
BILL_NUMBER_PREFIX = "DC"
BILL_SEQUENCE_WIDTH = 4

# Asia/Colombo observes no daylight saving, so a fixed offset is exact.
COLOMBO_TZ = timezone(timedelta(hours=5, minutes=30), name="Asia/Colombo")

NEAR_EXPIRY_DAYS = 7

# Categories offered when recording an expense.
EXPENSE_CATEGORIES: tuple[str, ...] = (
    "Utilities",
    "Transport",
    "Marketing",
    "Maintenance",
    "Office Supplies",
    "Insurance",
    "Rent",
    "Staff",
    "Professional Services",
    "Other",
)


class BaseUnit(str, Enum):
    """Units in which stock is tracked internally."""

    GRAM = "g"
    PIECE = "pcs"


class SaleUnit(str, Enum):
    """Units a cashier may transact in."""

    KILOGRAM = "kg"
    GRAM = "g"
    HECTOGRAM = "100g"
    PIECE = "pcs"
    PACK = "pack"


class TaxMode(str, Enum):
    """Supported tax treatments for the bill total."""

    NONE = "none"
    INCLUSIVE = "inclusive"
    EXCLUSIVE = "exclusive"


class DiscountType(str, Enum):
    """Kinds of bill-level discount."""

    PERCENT = "percent"
    AMOUNT = "amount"


class PaymentMethod(str, Enum):
    """Enumerate supported tenders."""

    CASH = "cash"
    CARD = "card"
    WALLET = "wallet"
    BANK = "bank"


class Role(str, Enum):
    """Operator roles recorded on each sale."""

    OWNER = "owner"
    MANAGER = "manager"
    CASHIER = "cashier"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    BATCHES = "Batches"
    SALES = "Sales"
    SALE_LINES = "SaleLines"
    PAYMENTS = "Payments"
    BILL_SEQUENCES = "BillSequences"
    STOCK_MOVEMENTS = "StockMovements"
    SUPPLIERS = "Suppliers"
    SUPPLIER_INVOICES = "SupplierInvoices"
    SUPPLIER_PAYMENTS = "SupplierPayments"
    EXPENSES = "Expenses"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "BILL_NUMBER_PREFIX",
    "BILL_SEQUENCE_WIDTH",
    "COLOMBO_TZ",
    "NEAR_EXPIRY_DAYS",
    "EXPENSE_CATEGORIES",
    "BaseUnit",
    "SaleUnit",
    "TaxMode",
    "DiscountType",
    "PaymentMethod",
    "Role",
    "SheetName",
]
