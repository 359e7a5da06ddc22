"""Tax calculator for the three supported tax modes."""

from __future__ import annotations

from decimal import Decimal

from . import log
from .constants import TaxMode
from .errors import InvalidTaxModeError
from .models import TaxBreakdown


HUNDRED = Decimal("100")


def apply_inclusive(gross_amount: Decimal, tax_rate: Decimal) -> tuple[Decimal, Decimal]:
    """Split a tax-included amount into ``(net, tax)``."""
    net = gross_amount / (1 + tax_rate / HUNDRED)
    return net, gross_amount - net


def apply_exclusive(net_amount: Decimal, tax_rate: Decimal) -> tuple[Decimal, Decimal]:
    """Add tax on top of a tax-exclusive amount, returning ``(gross, tax)``."""
    tax = net_amount * (tax_rate / HUNDRED)
    return net_amount + tax, tax


def calculate_tax(amount: Decimal, tax_rate: Decimal, tax_mode: TaxMode) -> TaxBreakdown:
    """Apply ``tax_mode`` at ``tax_rate`` percent to ``amount``.

    Args:
        amount (Decimal): Post-discount bill amount.
        tax_rate (Decimal): Percentage between 0 and 100.
        tax_mode (TaxMode): ``none``, ``inclusive`` or ``exclusive``. Plain
            strings with those values are accepted as well.

    Returns:
        TaxBreakdown: ``subtotal`` is the net-of-tax figure, ``tax`` the tax
            portion, and ``total`` what the customer owes before rounding.

    Raises:
        InvalidTaxModeError: If ``tax_mode`` is not one of the three modes.
    """
    try:
        mode = TaxMode(tax_mode)
    except ValueError as exc:
        log.error("Invalid tax mode: %s", tax_mode)
        raise InvalidTaxModeError(f"Invalid tax mode: {tax_mode}", value=tax_mode) from exc

    if mode is TaxMode.NONE:
        return TaxBreakdown(subtotal=amount, tax=Decimal("0"), total=amount)
    if mode is TaxMode.INCLUSIVE:
        net, tax = apply_inclusive(amount, tax_rate)
        return TaxBreakdown(subtotal=net, tax=tax, total=amount)
    gross, tax = apply_exclusive(amount, tax_rate)
    return TaxBreakdown(subtotal=amount, tax=tax, total=gross)
