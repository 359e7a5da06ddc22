"""Bill calculator: markdowns, discounts, tax, and cash rounding.

``calculate_bill`` is pure and deterministic so the cart can call it on every
mutation. The order of operations is fixed:

1. line gross = qty x unit price
2. markdown percentage comes off the line gross
3. line discount (percentage of the marked-down gross, plus any fixed
   amount) comes off next; the line is clamped at zero
4. the bill-level discount comes off the summed subtotal, clamped at zero
5. tax is applied to the post-discount subtotal
6. the grand total is rounded to the configured step
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from . import log
from .constants import DiscountType, TaxMode
from .models import BillDiscount, BillTotals, CartItem
from .tax import HUNDRED, calculate_tax


ZERO = Decimal("0")


@dataclass(frozen=True)
class LineAmounts:
    """Per-line breakdown produced while accumulating a bill."""

    gross: Decimal
    markdown: Decimal
    discount: Decimal
    net: Decimal


def calculate_line(item: CartItem) -> LineAmounts:
    """Apply markdown and line discount to a single cart line."""
    gross = item.qty * item.price_unit
    line_gross = gross

    markdown = ZERO
    if item.markdown_pct:
        markdown = line_gross * (Decimal(item.markdown_pct) / HUNDRED)
        line_gross -= markdown

    # Both discount kinds are honoured when set together.
    discount = ZERO
    if item.discount_pct:
        discount += line_gross * (item.discount_pct / HUNDRED)
    if item.discount_amount:
        discount += item.discount_amount

    return LineAmounts(
        gross=gross,
        markdown=markdown,
        discount=discount,
        net=max(ZERO, line_gross - discount),
    )


def bill_discount_amount(subtotal: Decimal, bill_discount: Optional[BillDiscount]) -> Decimal:
    """Return the amount a bill-level discount takes off ``subtotal``."""
    if bill_discount is None:
        return ZERO
    if DiscountType(bill_discount.type) is DiscountType.PERCENT:
        return subtotal * (bill_discount.value / HUNDRED)
    return bill_discount.value


def round_to_step(amount: Decimal, step: Optional[Decimal]) -> Decimal:
    """Round ``amount`` to the nearest multiple of ``step``, ties away from zero.

    A missing or zero step leaves the amount untouched.
    """
    if not step:
        return amount
    units = (amount / step).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return units * step


def calculate_bill(
    items: Iterable[CartItem],
    bill_discount: Optional[BillDiscount],
    tax_mode: TaxMode,
    tax_rate: Decimal,
    rounding_rule: Optional[Decimal],
) -> BillTotals:
    """Compute the totals of a bill from its cart lines.

    Args:
        items (Iterable[CartItem]): Cart lines; ``price_unit`` is used as-is.
        bill_discount (BillDiscount | None): Optional discount on the summed
            subtotal, either a percentage or a flat amount.
        tax_mode (TaxMode): Tax treatment applied to the discounted subtotal.
        tax_rate (Decimal): Tax percentage (0-100).
        rounding_rule (Decimal | None): Cash rounding step for the grand
            total such as ``1`` or ``0.5``. ``None`` or ``0`` disables it.

    Returns:
        BillTotals: ``subtotal`` is the tax calculator's net figure, so for
            inclusive tax it excludes the VAT portion.

    Raises:
        InvalidTaxModeError: If ``tax_mode`` is not a supported mode.
    """
    subtotal = ZERO
    discount_total = ZERO
    markdown_total = ZERO

    for item in items:
        amounts = calculate_line(item)
        markdown_total += amounts.markdown
        discount_total += amounts.discount
        subtotal += amounts.net

    if bill_discount is not None:
        reduction = bill_discount_amount(subtotal, bill_discount)
        discount_total += reduction
        subtotal = max(ZERO, subtotal - reduction)

    taxed = calculate_tax(subtotal, tax_rate, tax_mode)

    total = taxed.total
    rounding = ZERO
    if rounding_rule:
        rounded = round_to_step(total, rounding_rule)
        rounding = rounded - total
        total = rounded

    log.debug(
        "Calculated bill: subtotal=%s discount=%s markdown=%s vat=%s rounding=%s total=%s",
        taxed.subtotal,
        discount_total,
        markdown_total,
        taxed.tax,
        rounding,
        total,
    )
    return BillTotals(
        subtotal=taxed.subtotal,
        discount_total=discount_total,
        markdown_total=markdown_total,
        vat_total=taxed.tax,
        rounding=rounding,
        total=total,
    )
