"""Bootstrap utility for the back-office master workbook.

Run as ``backoffice-setup`` (or ``python -m backoffice_erp.setup_excel``) to
create an empty workbook with every sheet and bold header row the data layer
expects. ``--init-config`` also writes a starter ``config.ini`` when none
exists yet.
"""

from __future__ import annotations

import argparse
import configparser
from pathlib import Path
from typing import Iterable, Mapping, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION


DEFAULT_DATA_FILE = "backoffice_master.xlsx"
DEFAULT_ACTOR = "back-office"


def write_default_config(
    config_path: Path,
    *,
    data_file: str = DEFAULT_DATA_FILE,
    business_name: str = "My Business",
    default_actor: str = DEFAULT_ACTOR,
) -> Path:
    """Write a starter ``config.ini`` matching the current schema version.

    Raises:
        FileExistsError: If ``config_path`` already exists.
    """

    config_path = config_path.expanduser().resolve()
    if config_path.exists():
        raise FileExistsError(f"Refusing to overwrite existing configuration: {config_path}")

    parser = configparser.ConfigParser()
    parser["System"] = {
        "DataFile": data_file,
        "BusinessName": business_name,
        "SchemaVersion": EXPECTED_SCHEMA_VERSION,
    }
    parser["Defaults"] = {"DefaultActor": default_actor}
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        parser.write(handle)
    log.info("Wrote default configuration '%s'", config_path)
    return config_path


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = data_manager.SHEET_COLUMNS,
    products: Iterable[data_manager.ProductRow] = (),
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination``.

    Args:
        destination (Path): Target ``.xlsx`` path.
        sheet_columns (Mapping[str, Sequence[str]]): Sheet name to header
            titles, in column order.
        products (Iterable[ProductRow]): Optional catalog rows to seed.
        overwrite (bool): Replace an existing file instead of refusing.

    Returns:
        Path: Resolved path of the written workbook.

    Raises:
        FileExistsError: If the target exists and ``overwrite`` is ``False``.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing master workbook: {destination}")

    workbook = openpyxl.Workbook()
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    seeded = 0
    for product in products:
        data_manager.append_product(workbook, product)
        seeded += 1

    data_manager.save_workbook(workbook, destination)
    log.info("Created master workbook '%s' (%d sheets, %d products)", destination, len(sheet_columns), seeded)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``DataFile`` in ``config_path``."""

    config_path = config_path.expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="backoffice-setup",
        description="Initialize the back-office master workbook",
    )
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a starter configuration file first if none exists.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``backoffice-setup``."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Back-office ERP Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        if args.init_config and not config_path.exists():
            write_default_config(config_path)
            print(f"Wrote starter configuration: {config_path}")
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\nSuccessfully created '{output_path}'.")
    print("Run 'backoffice-cli --help' to see the available commands.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
