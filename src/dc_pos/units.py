"""Conversion between a product's base unit and the units a cashier sells in.

Stock is always tracked in base units (grams or pieces). A sale unit maps to a
base unit through a fixed multiplier, or through the product's pack
composition for ``pack`` sales. Every helper here is pure.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Mapping, Optional

from . import log
from .constants import BaseUnit, SaleUnit
from .errors import ConfigurationError, InvalidUnitError
from .models import Product, UnitSettings


UNIT_CONVERSIONS: Mapping[SaleUnit, tuple[BaseUnit, Decimal]] = {
    SaleUnit.KILOGRAM: (BaseUnit.GRAM, Decimal("1000")),
    SaleUnit.GRAM: (BaseUnit.GRAM, Decimal("1")),
    SaleUnit.HECTOGRAM: (BaseUnit.GRAM, Decimal("100")),
    SaleUnit.PIECE: (BaseUnit.PIECE, Decimal("1")),
    # Only reached when the product has no pack composition.
    SaleUnit.PACK: (BaseUnit.PIECE, Decimal("1")),
}

QUANTITY_TOLERANCE = Decimal("0.001")

DEFAULT_UNIT_SETTINGS = UnitSettings()


def _label(value: object) -> str:
    return str(getattr(value, "value", value))


def _multiplier(product: Product, sale_unit: SaleUnit) -> Decimal:
    """Return how many base units one ``sale_unit`` of ``product`` holds.

    Raises:
        InvalidUnitError: If the unit is unknown or belongs to a different
            dimension than ``product.base_unit``.
    """
    if sale_unit == SaleUnit.PACK and product.pack_bom is not None:
        return product.pack_bom.count

    try:
        base, multiplier = UNIT_CONVERSIONS[SaleUnit(sale_unit)]
    except (KeyError, ValueError) as exc:
        log.error("Unknown sale unit '%s' for product '%s'", _label(sale_unit), product.product_id)
        raise InvalidUnitError(f"Unknown sale unit: {_label(sale_unit)}", value=sale_unit) from exc

    if base != product.base_unit:
        log.error(
            "Sale unit '%s' is incompatible with base unit '%s' of product '%s'",
            _label(sale_unit),
            _label(product.base_unit),
            product.product_id,
        )
        raise InvalidUnitError(
            f"Invalid unit conversion: {_label(sale_unit)} for base unit {_label(product.base_unit)}",
            value=sale_unit,
        )
    return multiplier


def is_compatible(product: Product, sale_unit: SaleUnit) -> bool:
    """Report whether ``sale_unit`` can be converted for ``product``."""
    try:
        _multiplier(product, sale_unit)
    except InvalidUnitError:
        return False
    return True


def to_base(product: Product, qty: Decimal, sale_unit: SaleUnit) -> Decimal:
    """Convert ``qty`` expressed in ``sale_unit`` into the product's base unit."""
    return qty * _multiplier(product, sale_unit)


def from_base(product: Product, base_qty: Decimal, sale_unit: SaleUnit) -> Decimal:
    """Convert a base-unit quantity back into ``sale_unit``."""
    return base_qty / _multiplier(product, sale_unit)


def sale_unit_price(product: Product, sale_unit: SaleUnit) -> Decimal:
    """Undiscounted, pre-markdown price of one ``sale_unit`` of ``product``."""
    return product.price_base * _multiplier(product, sale_unit)


def get_unit_step(sale_unit: SaleUnit, settings: Optional[UnitSettings] = None) -> Decimal:
    """Return the minimum quantity increment allowed for ``sale_unit``.

    Zero or missing steps in ``settings`` fall back to the defaults of
    0.05 kg, 1 g (also for 100 g), and 1 piece or pack.
    """
    settings = settings or DEFAULT_UNIT_SETTINGS
    if sale_unit == SaleUnit.KILOGRAM:
        return settings.kg_step or DEFAULT_UNIT_SETTINGS.kg_step
    if sale_unit in (SaleUnit.GRAM, SaleUnit.HECTOGRAM):
        return settings.g_step or DEFAULT_UNIT_SETTINGS.g_step
    if sale_unit in (SaleUnit.PIECE, SaleUnit.PACK):
        return settings.pcs_step or DEFAULT_UNIT_SETTINGS.pcs_step
    return Decimal("1")


def validate_quantity(qty: Decimal, sale_unit: SaleUnit, settings: Optional[UnitSettings] = None) -> bool:
    """Check that ``qty`` is a whole multiple of the unit step.

    The remainder is compared against both ends of the step so values that
    land a hair below a multiple (for example ``0.1499999``) still pass.
    """
    step = get_unit_step(sale_unit, settings)
    remainder = abs(qty) % step
    return min(remainder, step - remainder) < QUANTITY_TOLERANCE


def validate_product_units(product: Product) -> None:
    """Enforce the catalog invariants on a product's sale units.

    Raises:
        ConfigurationError: If the default sale unit is not among the allowed
            units.
        InvalidUnitError: If any allowed unit is dimensionally incompatible
            with the base unit.
    """
    if product.default_sale_unit not in product.allowed_sale_units:
        raise ConfigurationError(
            f"Default sale unit {_label(product.default_sale_unit)} is not allowed for product {product.product_id}",
            value=product.default_sale_unit,
        )
    for unit in product.allowed_sale_units:
        _multiplier(product, unit)
