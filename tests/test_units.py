"""Unit tests for conversions between base units and sale units."""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

import pytest

from dc_pos import units
from dc_pos.constants import BaseUnit, SaleUnit
from dc_pos.errors import ConfigurationError, InvalidUnitError
from dc_pos.models import PackComposition, UnitSettings


@pytest.fixture
def biscuit(make_product):
    """Biscuits sold by the piece or in packs of six."""

    return make_product(
        product_id="P-BISC",
        sku="BISC-6",
        name_en="Cream Crackers",
        base_unit=BaseUnit.PIECE,
        default_sale_unit=SaleUnit.PIECE,
        allowed_sale_units=(SaleUnit.PIECE, SaleUnit.PACK),
        price_base=Decimal("45"),
        pack_bom=PackComposition(piece_sku="BISC-1", count=Decimal("6")),
    )


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("sale_unit", "qty", "expected"),
    [
        (SaleUnit.KILOGRAM, Decimal("2"), Decimal("2000")),
        (SaleUnit.KILOGRAM, Decimal("0.25"), Decimal("250")),
        (SaleUnit.GRAM, Decimal("150"), Decimal("150")),
        (SaleUnit.HECTOGRAM, Decimal("3"), Decimal("300")),
    ],
)
def test_to_base_converts_mass_units(make_product, sale_unit, qty, expected):
    """Mass sale units should scale into grams."""

    assert units.to_base(make_product(), qty, sale_unit) == expected


def test_pack_uses_pack_composition(biscuit):
    """A pack should convert through the product's pack count."""

    assert units.to_base(biscuit, Decimal("2"), SaleUnit.PACK) == Decimal("12")
    assert units.from_base(biscuit, Decimal("18"), SaleUnit.PACK) == Decimal("3")


def test_pack_without_composition_counts_as_one_piece(biscuit):
    """Without a pack composition a pack is a single piece."""

    loose = replace(biscuit, pack_bom=None)
    assert units.to_base(loose, Decimal("4"), SaleUnit.PACK) == Decimal("4")


def test_incompatible_unit_raises_and_names_the_unit(make_product):
    """Selling grams-based stock by the piece is a configuration error."""

    with pytest.raises(InvalidUnitError) as excinfo:
        units.to_base(make_product(), Decimal("1"), SaleUnit.PIECE)

    assert excinfo.value.value == SaleUnit.PIECE
    assert "pcs" in str(excinfo.value)
    assert "g" in str(excinfo.value)


def test_unknown_unit_raises(make_product):
    """A unit outside the enumeration is rejected rather than defaulted."""

    with pytest.raises(InvalidUnitError):
        units.to_base(make_product(), Decimal("1"), "litre")


@pytest.mark.parametrize("sale_unit", [SaleUnit.KILOGRAM, SaleUnit.GRAM, SaleUnit.HECTOGRAM])
@pytest.mark.parametrize("qty", [Decimal("0.05"), Decimal("1"), Decimal("3.35"), Decimal("1250")])
def test_round_trip_between_units(make_product, sale_unit, qty):
    """to_base(from_base(x)) should give back the original quantity."""

    product = make_product()
    assert units.to_base(product, units.from_base(product, qty, sale_unit), sale_unit) == qty


def test_is_compatible_reports_pairs(make_product, biscuit):
    """Compatibility checks should not raise."""

    assert units.is_compatible(make_product(), SaleUnit.KILOGRAM)
    assert not units.is_compatible(make_product(), SaleUnit.PACK)
    assert units.is_compatible(biscuit, SaleUnit.PACK)


def test_sale_unit_price_scales_base_price(make_product, biscuit):
    """Unit price is the base price times the unit multiplier."""

    assert units.sale_unit_price(make_product(), SaleUnit.KILOGRAM) == Decimal("100.0")
    assert units.sale_unit_price(make_product(), SaleUnit.HECTOGRAM) == Decimal("10.0")
    assert units.sale_unit_price(biscuit, SaleUnit.PACK) == Decimal("270")


# ---------------------------------------------------------------------------
# Steps and validation
# ---------------------------------------------------------------------------


def test_get_unit_step_defaults():
    """Without settings the default steps apply."""

    assert units.get_unit_step(SaleUnit.KILOGRAM) == Decimal("0.05")
    assert units.get_unit_step(SaleUnit.GRAM) == Decimal("1")
    assert units.get_unit_step(SaleUnit.HECTOGRAM) == Decimal("1")
    assert units.get_unit_step(SaleUnit.PACK) == Decimal("1")


def test_get_unit_step_uses_settings_and_falls_back_on_zero():
    """Configured steps win; a zero step falls back to the default."""

    settings = UnitSettings(kg_step=Decimal("0.1"), g_step=Decimal("0"), pcs_step=Decimal("2"))

    assert units.get_unit_step(SaleUnit.KILOGRAM, settings) == Decimal("0.1")
    assert units.get_unit_step(SaleUnit.GRAM, settings) == Decimal("1")
    assert units.get_unit_step(SaleUnit.PIECE, settings) == Decimal("2")


@pytest.mark.parametrize(
    ("qty", "valid"),
    [
        (Decimal("0.5"), True),
        (Decimal("0.15"), True),
        (Decimal("0.1499999"), True),
        (Decimal("0.12"), False),
        (Decimal("1.03"), False),
    ],
)
def test_validate_quantity_for_kilograms(qty, valid):
    """Kilogram quantities must land on the 0.05 grid within tolerance."""

    assert units.validate_quantity(qty, SaleUnit.KILOGRAM) is valid


def test_validate_quantity_rejects_fractional_pieces():
    assert not units.validate_quantity(Decimal("1.5"), SaleUnit.PIECE)
    assert units.validate_quantity(Decimal("3"), SaleUnit.PIECE)


def test_validate_product_units_requires_default_in_allowed(make_product):
    """The default sale unit must be one of the allowed units."""

    product = make_product(allowed_sale_units=(SaleUnit.GRAM,))
    with pytest.raises(ConfigurationError) as excinfo:
        units.validate_product_units(product)

    assert excinfo.value.value == SaleUnit.KILOGRAM


def test_validate_product_units_rejects_incompatible_allowed_unit(make_product):
    product = make_product(allowed_sale_units=(SaleUnit.KILOGRAM, SaleUnit.PIECE))
    with pytest.raises(InvalidUnitError):
        units.validate_product_units(product)
