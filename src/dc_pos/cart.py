"""Explicit cart state for one register session.

The cart is a plain object passed to whoever needs it. Every mutation
validates first and only then changes state, so a rejected action leaves the
cart exactly as it was.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Optional, Union

from . import log
from .billing import calculate_bill
from .constants import NEAR_EXPIRY_DAYS, BaseUnit, SaleUnit, TaxMode
from .errors import (
    BusinessRuleViolation,
    ExpiredBatchError,
    InvalidQuantityError,
    InvalidUnitError,
    MissingReferenceError,
    OutOfStockError,
)
from .fefo import calculate_markdown, evaluate_batch
from .models import Batch, BillDiscount, BillTotals, CartItem, Product, UnitSettings
from .tax import HUNDRED
from .units import sale_unit_price, to_base, validate_quantity


DateLike = Union[date, datetime]

EDITABLE_FIELDS = frozenset({"qty", "discount_pct", "discount_amount", "override_reason"})


def default_quantity(product: Product) -> Decimal:
    """Starting quantity for a new line: half a kilo for loose goods, else one."""
    if product.base_unit == BaseUnit.GRAM and product.default_sale_unit == SaleUnit.KILOGRAM:
        return Decimal("0.5")
    return Decimal("1")


def _check_quantity(qty: Decimal, sale_unit: SaleUnit, unit_settings: Optional[UnitSettings]) -> None:
    if qty <= Decimal("0"):
        raise InvalidQuantityError(f"Quantity must be greater than zero, got {qty}")
    if not validate_quantity(qty, sale_unit, unit_settings):
        raise InvalidQuantityError(f"Quantity {qty} is not a multiple of the {SaleUnit(sale_unit).value} step")


def build_cart_item(
    product: Product,
    batch: Batch,
    *,
    today: DateLike,
    sale_unit: Optional[SaleUnit] = None,
    qty: Optional[Decimal] = None,
    override_reason: Optional[str] = None,
    unit_settings: Optional[UnitSettings] = None,
    near_expiry_days: int = NEAR_EXPIRY_DAYS,
) -> CartItem:
    """Price a new cart line for ``batch`` of ``product``.

    The near-expiry markdown is applied to the unit price here and also kept
    on the line as ``markdown_pct``.

    Raises:
        InvalidUnitError: If ``sale_unit`` is not allowed for the product.
        InvalidQuantityError: If ``qty`` does not fit the unit step.
    """
    unit = SaleUnit(sale_unit) if sale_unit is not None else product.default_sale_unit
    if unit not in product.allowed_sale_units:
        raise InvalidUnitError(f"Sale unit {unit.value} is not allowed for product {product.product_id}", value=unit)

    quantity = qty if qty is not None else default_quantity(product)
    _check_quantity(quantity, unit, unit_settings)

    markdown = calculate_markdown(evaluate_batch(batch, today, near_expiry_days), product.price_base)
    price = sale_unit_price(product, unit) * (1 - markdown / HUNDRED)
    return CartItem(
        product=product,
        batch=batch,
        qty=quantity,
        sale_unit=unit,
        price_unit=price,
        markdown_pct=markdown if markdown > 0 else None,
        override_reason=override_reason,
    )


class Cart:
    """Working lines of an in-progress sale plus the optional bill discount."""

    def __init__(self, unit_settings: Optional[UnitSettings] = None, near_expiry_days: int = NEAR_EXPIRY_DAYS):
        self.unit_settings = unit_settings
        self.near_expiry_days = near_expiry_days
        self.items: List[CartItem] = []
        self.bill_discount: Optional[BillDiscount] = None

    def __len__(self) -> int:
        return len(self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def _line(self, index: int) -> CartItem:
        if not 0 <= index < len(self.items):
            raise MissingReferenceError(f"No cart line at index {index}")
        return self.items[index]

    def _check_stock(self, item: CartItem, qty: Decimal) -> None:
        if item.batch.available <= Decimal("0"):
            raise OutOfStockError(f"No stock available in batch {item.batch.batch_id}")
        if to_base(item.product, qty, item.sale_unit) > item.batch.available:
            raise OutOfStockError(
                f"Batch {item.batch.batch_id} holds {item.batch.available} base units, "
                f"requested {to_base(item.product, qty, item.sale_unit)}"
            )

    def _check_override(self, item: CartItem, today: DateLike) -> None:
        if evaluate_batch(item.batch, today).is_expired and not (item.override_reason or "").strip():
            log.warning("Rejected expired batch '%s' without override reason", item.batch.batch_id)
            raise ExpiredBatchError(
                f"Batch {item.batch.batch_id} is expired; an override reason is required"
            )

    def add_item(self, item: CartItem, *, today: DateLike) -> CartItem:
        """Add a line, merging it into an identical product/batch/unit line.

        Raises:
            BusinessRuleViolation: If the batch belongs to another product.
            OutOfStockError: If the batch cannot cover the quantity.
            ExpiredBatchError: If the batch is expired and the line carries no
                override justification.
            InvalidQuantityError: If the quantity does not fit the unit step.
        """
        if item.batch.product_id != item.product.product_id:
            raise BusinessRuleViolation(
                f"Batch {item.batch.batch_id} does not belong to product {item.product.product_id}"
            )
        _check_quantity(item.qty, item.sale_unit, self.unit_settings)

        self._check_override(item, today)

        for index, existing in enumerate(self.items):
            if (
                existing.product.product_id == item.product.product_id
                and existing.batch.batch_id == item.batch.batch_id
                and existing.sale_unit == item.sale_unit
            ):
                merged_qty = existing.qty + item.qty
                self._check_stock(existing, merged_qty)
                merged = replace(
                    existing,
                    qty=merged_qty,
                    override_reason=existing.override_reason or item.override_reason,
                )
                self.items[index] = merged
                log.debug("Merged cart line %d to qty %s", index, merged_qty)
                return merged

        self._check_stock(item, item.qty)
        self.items.append(item)
        if item.override_reason:
            log.info(
                "Expired batch '%s' added with override: %s",
                item.batch.batch_id,
                item.override_reason,
            )
        return item

    def update_item(self, index: int, *, today: Optional[DateLike] = None, **changes: Any) -> CartItem:
        """Edit quantity, discounts, or the override reason of a line.

        Changing ``override_reason`` needs ``today``: a line on an expired
        batch cannot lose its justification.
        """
        current = self._line(index)
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise BusinessRuleViolation(f"Cart line fields cannot be edited: {', '.join(sorted(unknown))}")

        updated = replace(current, **changes)
        if "qty" in changes:
            _check_quantity(updated.qty, updated.sale_unit, self.unit_settings)
            self._check_stock(updated, updated.qty)
        if "override_reason" in changes:
            if today is None:
                raise TypeError("update_item() needs 'today' to change override_reason")
            self._check_override(updated, today)
        self.items[index] = updated
        return updated

    def change_unit(self, index: int, sale_unit: SaleUnit, *, today: DateLike) -> CartItem:
        """Re-price a line in another allowed sale unit, keeping its quantity."""
        current = self._line(index)
        repriced = build_cart_item(
            current.product,
            current.batch,
            today=today,
            sale_unit=sale_unit,
            qty=current.qty,
            override_reason=current.override_reason,
            unit_settings=self.unit_settings,
            near_expiry_days=self.near_expiry_days,
        )
        self._check_stock(repriced, repriced.qty)
        updated = replace(
            repriced,
            discount_pct=current.discount_pct,
            discount_amount=current.discount_amount,
        )
        self.items[index] = updated
        return updated

    def remove_item(self, index: int) -> CartItem:
        self._line(index)
        return self.items.pop(index)

    def set_bill_discount(self, discount: Optional[BillDiscount]) -> None:
        self.bill_discount = discount

    def clear(self) -> None:
        self.items = []
        self.bill_discount = None

    def totals(self, tax_mode: TaxMode, tax_rate: Decimal, rounding_rule: Optional[Decimal]) -> BillTotals:
        return calculate_bill(self.items, self.bill_discount, tax_mode, tax_rate, rounding_rule)
