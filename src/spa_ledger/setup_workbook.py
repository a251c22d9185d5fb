"""Utility for initializing the spa ledger data workbook.

The module doubles as a script (``python -m spa_ledger.setup_workbook``) and as
a library used by tests. Every table the data service manages becomes one
worksheet whose first row holds the snake_case column names.
"""

from __future__ import annotations

import argparse
import configparser
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Mapping, Sequence

import openpyxl
from openpyxl.styles import Font

from .constants import BULK_RESTOCK_PRODUCT_ID, BULK_RESTOCK_PRODUCT_NAME, TableName

TABLE_COLUMNS: Mapping[str, Sequence[str]] = {
    TableName.PRODUCTS.value: [
        "id",
        "name",
        "description",
        "category",
        "cost_price",
        "sell_price",
        "stock_quantity",
        "low_stock_threshold",
        "last_restocked",
        "image_url",
        "size",
        "ingredients",
        "skin_concerns",
        "created_at",
        "updated_at",
    ],
    TableName.TRANSACTIONS.value: [
        "id",
        "product_id",
        "product_name",
        "quantity",
        "price",
        "type",
        "date",
        "user_id",
        "user_name",
        "sale_id",
        "discount",
        "original_price",
        "parent_transaction_id",
        "created_at",
    ],
    TableName.SALES.value: [
        "id",
        "date",
        "total_amount",
        "user_id",
        "user_name",
        "payment_method",
        "notes",
        "discount",
        "original_total",
        "created_at",
    ],
    TableName.SERVICES.value: [
        "id",
        "name",
        "description",
        "price",
        "active",
        "created_at",
    ],
    TableName.FINANCES.value: [
        "id",
        "type",
        "date",
        "amount",
        "customer_name",
        "service_id",
        "payment_method",
        "tip_amount",
        "vendor",
        "category",
        "description",
        "created_at",
        "updated_at",
    ],
}

CONFIG_FILE = "config.ini"


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config file's
    directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        data_file_raw = parser.get("System", "DataFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(data_file=data_file_path)


def _bulk_restock_product_row(columns: Sequence[str]) -> list[object]:
    now_iso = datetime.now(UTC).isoformat()
    values = {
        "id": BULK_RESTOCK_PRODUCT_ID,
        "name": BULK_RESTOCK_PRODUCT_NAME,
        "description": "System product used for aggregate restock transactions",
        "category": "System",
        "cost_price": 0,
        "sell_price": 0,
        "stock_quantity": 0,
        "low_stock_threshold": 0,
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    return [values.get(column) for column in columns]


def create_master_workbook(
    destination: Path,
    *,
    table_columns: Mapping[str, Sequence[str]] = TABLE_COLUMNS,
    seed_system_products: bool = True,
    overwrite: bool = False,
) -> Path:
    """Create the ledger workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists. The bulk restock system
    product is seeded unless ``seed_system_products`` is disabled.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing ledger workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in table_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    products_table = TableName.PRODUCTS.value
    if seed_system_products and products_table in table_columns:
        workbook[products_table].append(
            _bulk_restock_product_row(table_columns[products_table])
        )

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config.ini``."""

    settings = load_settings(config_path)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the spa ledger data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
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

    print("--- Spa Ledger Setup ---")
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
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\nSuccessfully created '{output_path}'.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
