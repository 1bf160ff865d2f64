"""Utility for initializing the sales portal order store workbook.

The module doubles as a script (``sales-setup``) and as a library used by
tests. It writes every sheet the data layer expects, seeds the three user
roles and registers a first administrator.
"""

from __future__ import annotations

import argparse
import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from .constants import Role
from .data_manager import (
    CONFIG_FILE_NAME,
    SHEET_COLUMNS,
    RoleRow,
    UserRow,
    append_role,
    append_user,
)

ROLE_IDS: Mapping[Role, int] = {
    Role.ADMIN: 1,
    Role.SALES_COORDINATOR: 2,
    Role.SALES_PERSON: 3,
}

DEFAULT_ADMIN_NAME = "admin"


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path
    default_salesperson_code: str


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        data_file_raw = parser.get("System", "DataFile")
        default_salesperson_code = parser.get("Defaults", "DefaultSalesPerson")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(
        data_file=data_file_path,
        default_salesperson_code=default_salesperson_code,
    )


def create_store_workbook(
    destination: Path,
    *,
    default_salesperson_code: str,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    admin_name: str = DEFAULT_ADMIN_NAME,
    overwrite: bool = False,
) -> Path:
    """Create the order store workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing order workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # openpyxl always starts with a default "Sheet".
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    for role, role_id in ROLE_IDS.items():
        append_role(workbook, RoleRow(role_id=role_id, role_name=role.value))

    append_user(
        workbook,
        UserRow(
            user_id=1,
            user_name=admin_name,
            role_id=ROLE_IDS[Role.ADMIN],
            salesperson_code=default_salesperson_code,
            location_codes=(),
            is_active=True,
        ),
    )

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    settings = load_settings(config_path)
    return create_store_workbook(
        settings.data_file,
        default_salesperson_code=settings.default_salesperson_code,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(prog="sales-setup", description="Initialize the sales portal order workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Sales Portal Setup Script ---")
    print(f"Using configuration: {config_path}")

    try:
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

    print(f"\n[SUCCESS] Created order workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
