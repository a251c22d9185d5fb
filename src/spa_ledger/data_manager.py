"""Remote data service for the spa ledger.

This module is the storage collaborator the ledger talks to. Tables live as
worksheets inside a single workbook; rows are exchanged as plain mappings
keyed by snake_case column names, exactly as a hosted relational backend
would return them. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Row operations: ``select_rows``/``insert_rows``/``update_rows``/
   ``delete_rows`` filtered by equality predicates, plus the stored
   procedures ``get_sales``, ``insert_sale``, ``insert_transaction_with_sale``
   and ``insert_bulk_transactions``.
"""


from __future__ import annotations

import configparser
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import TableName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_TABLE = TableName.PRODUCTS.value
TRANSACTIONS_TABLE = TableName.TRANSACTIONS.value
SALES_TABLE = TableName.SALES.value
SERVICES_TABLE = TableName.SERVICES.value
FINANCES_TABLE = TableName.FINANCES.value

Row = Dict[str, Any]


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    default_user_id: str
    default_user_name: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must provide ``DataFile``, ``BusinessName`` and
    ``SchemaVersion``. The ``[Defaults]`` section is optional; when absent the
    acting user falls back to the unknown user. Relative ``DataFile`` entries
    are anchored at ``base_path`` (or the working directory).

    Raises:
        KeyError: If one of the required ``[System]`` options is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    default_user_id = parser.get("Defaults", "UserId", fallback="unknown")
    default_user_name = parser.get("Defaults", "UserName", fallback="Unknown User")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        default_user_id=default_user_id,
        default_user_name=default_user_name,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""

    return datetime.now(UTC).isoformat()


def _table_value(table: Any) -> str:
    return table.value if isinstance(table, Enum) else str(table)


def _sheet(workbook: Workbook, table: Any) -> Worksheet:
    name = _table_value(table)
    if name not in workbook.sheetnames:
        raise KeyError(f"Unknown table: {name}")
    return workbook[name]


def header_map(sheet: Worksheet) -> Dict[str, int]:
    """Map column names from the header row to 1-based column indices."""

    return {
        cell.value: idx + 1
        for idx, cell in enumerate(sheet[1])
        if cell.value is not None
    }


def serialize_cell(value: Any) -> Any:
    """Convert a Python value into something the worksheet can store.

    Enums collapse to their values and datetimes become ISO strings so that
    rows read back look the same whether or not the workbook was saved.
    """

    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _matches(row: Mapping[str, Any], filters: Optional[Mapping[str, Any]]) -> bool:
    if not filters:
        return True
    return all(row.get(column) == serialize_cell(expected) for column, expected in filters.items())


def _check_cells(row: Mapping[str, Any], table: str) -> None:
    for name, value in row.items():
        if isinstance(value, str) and ILLEGAL_CHARACTERS_RE.search(value):
            log.error("Rejected control characters in '%s.%s'", table, name)
            raise ValueError(f"Column '{name}' of table '{table}' contains characters a worksheet cannot store")


def _check_columns(columns: Mapping[str, int], names: Sequence[str], table: str) -> None:
    for name in names:
        if name not in columns:
            raise KeyError(f"Unknown {table} column: {name}")


def _iter_indexed_rows(sheet: Worksheet) -> Iterator[tuple[int, Row]]:
    columns = header_map(sheet)
    for row_idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        # skip fully empty rows
        if not any(cell is not None for cell in raw):
            continue
        yield row_idx, {name: (raw[col - 1] if col - 1 < len(raw) else None) for name, col in columns.items()}


def iter_rows(workbook: Workbook, table: Any) -> Iterator[Row]:
    """Stream every populated row of ``table`` as a column-name mapping."""

    sheet = _sheet(workbook, table)
    for _, row in _iter_indexed_rows(sheet):
        yield row


def select_rows(
    workbook: Workbook,
    table: Any,
    *,
    filters: Optional[Mapping[str, Any]] = None,
    order_by: Optional[str] = None,
    descending: bool = False,
    limit: Optional[int] = None,
) -> List[Row]:
    """Return rows of ``table`` matching every equality predicate in ``filters``.

    Args:
        workbook (Workbook): Workbook acting as the backing store.
        table (str | TableName): Table to query.
        filters (Mapping | None): Column/value pairs that must all match.
        order_by (str | None): Column to sort by. ISO timestamps sort
            chronologically as text; ``None`` values sort first.
        descending (bool): Reverse the ordering.
        limit (int | None): Maximum number of rows to return.

    Returns:
        list[dict[str, Any]]: Matching rows in the requested order.
    """

    rows = [row for row in iter_rows(workbook, table) if _matches(row, filters)]
    if order_by is not None:
        rows.sort(key=lambda row: (row.get(order_by) is not None, row.get(order_by) or ""), reverse=descending)
    if limit is not None:
        rows = rows[:limit]
    return rows


def insert_rows(workbook: Workbook, table: Any, records: Sequence[Mapping[str, Any]]) -> List[Row]:
    """Append ``records`` to ``table`` and return the stored rows.

    Missing ``id`` values are generated as UUID4 strings and ``created_at`` is
    stamped when the table has that column. Unknown columns and text the
    worksheet cannot store are rejected before anything is written.

    Raises:
        KeyError: If the table or any referenced column does not exist.
        ValueError: If a text value holds control characters.
    """

    table_name = _table_value(table)
    sheet = _sheet(workbook, table)
    columns = header_map(sheet)
    for record in records:
        _check_columns(columns, list(record), table_name)

    inserted: List[Row] = []
    staged: List[List[Any]] = []
    now_iso = utc_now_iso()
    for record in records:
        row: Row = {name: None for name in columns}
        row.update({key: serialize_cell(value) for key, value in record.items()})
        _check_cells(row, table_name)
        if not row.get("id"):
            row["id"] = str(uuid.uuid4())
        if "created_at" in columns and row.get("created_at") is None:
            row["created_at"] = now_iso
        ordered = [None] * max(columns.values())
        for name, col in columns.items():
            ordered[col - 1] = row[name]
        staged.append(ordered)
        inserted.append(row)

    for ordered in staged:
        sheet.append(ordered)

    log.debug("Inserted %d row(s) into '%s'", len(inserted), table_name)
    return inserted


def update_rows(
    workbook: Workbook,
    table: Any,
    *,
    filters: Mapping[str, Any],
    values: Mapping[str, Any],
) -> int:
    """Overwrite ``values`` on every row of ``table`` matching ``filters``.

    Returns:
        int: Number of rows updated.

    Raises:
        KeyError: If the table or any referenced column does not exist.
        ValueError: If a text value holds control characters.
    """

    table_name = _table_value(table)
    sheet = _sheet(workbook, table)
    columns = header_map(sheet)
    _check_columns(columns, list(values), table_name)
    _check_columns(columns, list(filters), table_name)
    _check_cells({name: serialize_cell(value) for name, value in values.items()}, table_name)

    updated = 0
    for row_idx, row in list(_iter_indexed_rows(sheet)):
        if not _matches(row, filters):
            continue
        for name, value in values.items():
            sheet.cell(row=row_idx, column=columns[name], value=serialize_cell(value))
        updated += 1

    log.debug("Updated %d row(s) in '%s'", updated, table_name)
    return updated


def delete_rows(workbook: Workbook, table: Any, *, filters: Mapping[str, Any]) -> int:
    """Delete every row of ``table`` matching ``filters``.

    Returns:
        int: Number of rows deleted.
    """

    table_name = _table_value(table)
    sheet = _sheet(workbook, table)
    _check_columns(header_map(sheet), list(filters), table_name)

    targets = [row_idx for row_idx, row in _iter_indexed_rows(sheet) if _matches(row, filters)]
    # Delete bottom-up so earlier indices stay valid.
    for row_idx in reversed(targets):
        sheet.delete_rows(row_idx)

    log.debug("Deleted %d row(s) from '%s'", len(targets), table_name)
    return len(targets)


# ---------------------------------------------------------------------------
# Stored procedures
# ---------------------------------------------------------------------------


SALE_FIELDS = (
    "date",
    "total_amount",
    "user_id",
    "user_name",
    "payment_method",
    "notes",
    "discount",
    "original_total",
)

TRANSACTION_FIELDS = (
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
)


def get_sales(workbook: Workbook) -> List[Row]:
    """Return every sale header."""

    return select_rows(workbook, SALES_TABLE)


def insert_sale(workbook: Workbook, sale: Mapping[str, Any]) -> List[Row]:
    """Insert one sale header and return it as a single-row list.

    Only the known sale fields are honoured; ``date`` defaults to now and
    ``total_amount`` to zero.
    """

    record = {name: sale.get(name) for name in SALE_FIELDS}
    if record["date"] is None:
        record["date"] = utc_now_iso()
    if record["total_amount"] is None:
        record["total_amount"] = 0
    return insert_rows(workbook, SALES_TABLE, [record])


def _transaction_record(transaction: Mapping[str, Any]) -> Row:
    record = {name: transaction.get(name) for name in TRANSACTION_FIELDS}
    if record["date"] is None:
        record["date"] = utc_now_iso()
    if record["quantity"] is not None:
        record["quantity"] = int(record["quantity"])
    # Blank foreign keys are stored as NULL.
    for key in ("sale_id", "parent_transaction_id"):
        if not record[key]:
            record[key] = None
    return record


def insert_transaction_with_sale(workbook: Workbook, transaction: Mapping[str, Any]) -> List[Row]:
    """Insert one transaction, optionally tied to a sale or parent restock."""

    return insert_rows(workbook, TRANSACTIONS_TABLE, [_transaction_record(transaction)])


def insert_bulk_transactions(workbook: Workbook, transactions: Sequence[Mapping[str, Any]]) -> List[Row]:
    """Insert several transactions in one call and return the stored rows."""

    records = [_transaction_record(transaction) for transaction in transactions]
    return insert_rows(workbook, TRANSACTIONS_TABLE, records)
