"""Shared pytest fixtures and utilities for the point-of-sale tests."""

from __future__ import annotations

import argparse
import itertools
import sys
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from dc_pos import cli, constants, core_logic, data_manager  # noqa: E402
from dc_pos.constants import BaseUnit, SaleUnit  # noqa: E402
from dc_pos.models import Batch, Product, TaxSettings, UnitSettings  # noqa: E402
from dc_pos.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION

# 10:00 in Colombo on 14 March 2026.
FIXED_NOW = datetime(2026, 3, 14, 4, 30, tzinfo=UTC)
TODAY = date(2026, 3, 14)

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Taxes]\n"
    "Enabled = {tax_enabled}\n"
    "Rate = {tax_rate}\n"
    "Mode = {tax_mode}\n"
    "Rounding = {rounding}\n\n"
    "[Units]\n"
    "KgStep = 0.05\n"
    "GStep = 1\n"
    "PcsStep = 1\n\n"
    "[Defaults]\n"
    "CashierRole = cashier\n"
    "NearExpiryDays = 7\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


# ---------------------------------------------------------------------------
# Deterministic collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    """Clock pinned to ``FIXED_NOW``."""

    return lambda: FIXED_NOW


@pytest.fixture
def id_factory() -> Callable[[], str]:
    """Sequential identifiers ``ID-0001``, ``ID-0002``, ..."""

    counter = itertools.count(1)
    return lambda: f"ID-{next(counter):04d}"


@pytest.fixture
def make_product() -> Callable[..., Product]:
    """Build products; defaults describe rice sold loose by the kilogram."""

    def _make(**overrides) -> Product:
        base = Product(
            product_id="P-RICE",
            sku="RICE-001",
            name_en="Samba Rice",
            base_unit=BaseUnit.GRAM,
            default_sale_unit=SaleUnit.KILOGRAM,
            allowed_sale_units=(SaleUnit.KILOGRAM, SaleUnit.GRAM, SaleUnit.HECTOGRAM),
            price_base=Decimal("0.1"),
        )
        return replace(base, **overrides)

    return _make


@pytest.fixture
def make_batch() -> Callable[..., Batch]:
    """Build batches of ``P-RICE`` holding 10 kg."""

    def _make(**overrides) -> Batch:
        base = Batch(
            batch_id="B-1",
            product_id="P-RICE",
            unit_cost=Decimal("0.06"),
            on_hand=Decimal("10000"),
            created_at=datetime(2026, 3, 1, 8, 0, tzinfo=UTC),
        )
        return replace(base, **overrides)

    return _make


# ---------------------------------------------------------------------------
# Workbook and configuration fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    unique_dir = f"workbook_{uuid.uuid4().hex}"
    return workbook_factory(subdir=unique_dir)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        tax_enabled: str = "true",
        tax_rate: str = "0",
        tax_mode: str = "none",
        rounding: str = "none",
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                tax_enabled=tax_enabled,
                tax_rate=tax_rate,
                tax_mode=tax_mode,
                rounding=rounding,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path, fixed_clock, id_factory) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file, clock=fixed_clock, id_factory=id_factory)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="dc-pos", description="POS CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        store_name="Test Store",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        taxes=TaxSettings(),
        units=UnitSettings(),
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock, fixed_clock, id_factory) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook, clock=fixed_clock, id_factory=id_factory)
