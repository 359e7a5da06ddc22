"""Bootstrap the point-of-sale master workbook.

Used as the ``dc-pos-setup`` script and by the test-suite fixtures. The sheet
layout comes from :data:`dc_pos.data_manager.SHEET_COLUMNS`, so the file this
writes is always the one the data layer expects to read.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Optional, Sequence
import sys

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from . import log
from . import data_manager
from .data_manager import SHEET_COLUMNS

HEADER_FONT = Font(bold=True)
MIN_COLUMN_WIDTH = 12


def _write_header(worksheet, columns: Sequence[str]) -> None:
    for column_index, column_name in enumerate(columns, start=1):
        cell = worksheet.cell(row=1, column=column_index, value=column_name)
        cell.font = HEADER_FONT
        width = max(MIN_COLUMN_WIDTH, len(column_name) + 2)
        worksheet.column_dimensions[get_column_letter(column_index)].width = width
    worksheet.freeze_panes = "A2"


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Write an empty workbook with one bold-headed sheet per record type.

    Raises ``FileExistsError`` when ``destination`` exists and ``overwrite``
    is false.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing master workbook: {destination}")

    workbook = openpyxl.Workbook()
    placeholder = workbook.active
    for sheet_name, columns in sheet_columns.items():
        _write_header(workbook.create_sheet(title=sheet_name), columns)
    if placeholder is not None:
        workbook.remove(placeholder)

    data_manager.save_workbook(workbook, destination)
    log.info("Created master workbook '%s' with %d sheets", destination, len(sheet_columns))
    return destination


def run_from_config(config_path: Optional[Path] = None, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``[System] DataFile``.

    The configuration is located and validated exactly as the runtime does,
    so a config the CLI would reject is rejected here too.
    """

    resolved = data_manager.find_config_file(config_path)
    parser = data_manager.read_config(resolved)
    settings = data_manager.parse_settings(parser, base_path=resolved.expanduser().resolve().parent)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dc-pos-setup",
        description="Create the point-of-sale master workbook",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config.ini (default: search upward from the working directory)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the workbook if it already exists.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``dc-pos-setup``; returns a process exit code."""

    args = build_parser().parse_args(argv)
    try:
        output_path = run_from_config(args.config, overwrite=args.force)
    except FileExistsError as exc:
        log.error("%s (use --force to replace it)", exc)
        return 1
    except (FileNotFoundError, KeyError, ValueError) as exc:
        log.error("Invalid configuration: %s", exc)
        return 1
    except OSError as exc:
        log.error("Unable to write workbook: %s", exc)
        return 1

    print(f"Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
