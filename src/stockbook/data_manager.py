"""Data access layer for stockbook.

This module provides low-level helpers that read from and write to the master
``.xlsx`` workbook. Ledger rules belong in :mod:`stockbook.core_logic`.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records, appending rows, updating
   product cells, and deleting or restoring ledger rows. Every mutating
   helper returns what the caller needs to undo it.
"""


from __future__ import annotations

import configparser
import os
import tempfile
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SEQUENCE_KEY, SheetName, TransactionType


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
TRANSACTIONS_SHEET = SheetName.STOCK_TRANSACTIONS.value
META_SHEET = SheetName.META.value

DEFAULT_AUTOSAVE = True
DEFAULT_EXPIRY_WINDOW_DAYS = 7


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    autosave: bool = DEFAULT_AUTOSAVE
    expiry_window_days: int = DEFAULT_EXPIRY_WINDOW_DAYS


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    unit: str
    current_stock: Decimal
    min_stock: Decimal
    purchase_price: Decimal
    selling_price: Decimal
    category: Optional[str] = None
    expiry_date: Optional[str] = None


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``StockTransactions`` sheet."""

    transaction_id: int
    product_id: str
    transaction_type: TransactionType
    quantity: Decimal
    unit: str
    notes: Optional[str]
    reference_no: Optional[str]
    balance_after: Decimal
    batch_number: Optional[str]
    batch_expiry_date: Optional[str]
    transaction_date: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
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

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` entries are mandatory. ``[Ledger] AutoSave`` and
    ``[Alerts] ExpiryWindowDays`` fall back to module defaults when absent.
    Relative ``DataFile`` entries are anchored to ``base_path`` (or the
    current working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative paths.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required entry is missing.
        ValueError: If an optional entry holds a value of the wrong type.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    autosave = parser.getboolean("Ledger", "AutoSave", fallback=DEFAULT_AUTOSAVE)
    expiry_window_days = parser.getint(
        "Alerts", "ExpiryWindowDays", fallback=DEFAULT_EXPIRY_WINDOW_DAYS)
    if expiry_window_days < 0:
        raise ValueError("ExpiryWindowDays must be zero or positive")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        autosave=autosave,
        expiry_window_days=expiry_window_days,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        KeyError: If one of the sheets in :class:`SheetName` is missing.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    missing = [sheet.value for sheet in SheetName if sheet.value not in wb.sheetnames]
    if missing:
        raise KeyError(f"Workbook {data_file} is missing sheets: {', '.join(missing)}")
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination`` without leaving a torn file.

    The workbook is first written to a temporary file in the destination
    folder and then moved over the target with :func:`os.replace`, so the
    previous file survives intact if serialization fails halfway.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the workbook.

    Raises:
        OSError: If the temporary file cannot be written or moved.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=dest.suffix, dir=dest.parent)
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        workbook.save(tmp_path)
        os.replace(tmp_path, dest)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    Header and fully empty rows are skipped.
    """

    sheet = workbook[PRODUCTS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_product(raw)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream transaction records from the ``StockTransactions`` worksheet.

    Rows come back in sheet order, which is insertion order.
    """

    sheet = workbook[TRANSACTIONS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_transaction(raw)


def find_product(workbook: Workbook, product_id: str) -> Optional[ProductRow]:
    """Read a single product straight from the sheet, bypassing any cache."""

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        return None
    return deserialize_product(_row_values(workbook, PRODUCTS_SHEET, row_index))


def find_transaction(workbook: Workbook, transaction_id: int) -> Optional[TransactionRow]:
    """Read a single ledger row straight from the sheet, bypassing any cache."""

    row_index = locate_row(workbook, TRANSACTIONS_SHEET, "TransactionID", transaction_id)
    if row_index is None:
        return None
    return deserialize_transaction(_row_values(workbook, TRANSACTIONS_SHEET, row_index))


def append_product(workbook: Workbook, record: ProductRow) -> int:
    """Append a product record and return its 1-based row index."""

    sheet = workbook[PRODUCTS_SHEET]
    sheet.append(serialize_product(record))
    return sheet.max_row


def append_transaction(workbook: Workbook, record: TransactionRow) -> int:
    """Append a ledger record and return its 1-based row index.

    Numerical fields stay :class:`~decimal.Decimal` so the saved cell keeps
    the exact value.
    """

    sheet = workbook[TRANSACTIONS_SHEET]
    sheet.append(serialize_transaction(record))
    return sheet.max_row


def update_product(workbook: Workbook, product_id: str, *, field_values: Dict[str, Any]) -> Dict[str, Any]:
    """Update selected columns for an existing product.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Returns:
        dict[str, Any]: The values the touched cells held before the update,
            keyed by column name. Passing it back restores the row.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")

    sheet = workbook[PRODUCTS_SHEET]
    header_map = _header_map(workbook, PRODUCTS_SHEET)

    unknown = [field for field in field_values if field not in header_map]
    if unknown:
        raise KeyError(f"Unknown product field: {', '.join(unknown)}")

    previous: Dict[str, Any] = {}
    for field, value in field_values.items():
        cell = sheet.cell(row=row_index, column=header_map[field])
        previous[field] = cell.value
        cell.value = value
    return previous


def delete_row(workbook: Workbook, sheet_name: str, row_index: int) -> List[Any]:
    """Remove a data row and return its raw cell values for later restoration."""

    if row_index < 2:
        raise ValueError("The header row cannot be deleted")
    values = list(_row_values(workbook, sheet_name, row_index))
    workbook[sheet_name].delete_rows(row_index, 1)
    return values


def restore_row(workbook: Workbook, sheet_name: str, row_index: int, values: Sequence[Any]) -> None:
    """Re-insert a row previously removed with :func:`delete_row`."""

    sheet = workbook[sheet_name]
    sheet.insert_rows(row_index, 1)
    for column, value in enumerate(values, start=1):
        sheet.cell(row=row_index, column=column, value=value)


def read_sequence(workbook: Workbook) -> int:
    """Return the next transaction identifier stored on the ``Meta`` sheet.

    Workbooks created before the sequence row existed fall back to one past
    the highest identifier in the ledger.
    """

    row_index = locate_row(workbook, META_SHEET, "Key", SEQUENCE_KEY)
    if row_index is not None:
        raw = workbook[META_SHEET].cell(row=row_index, column=2).value
        if raw is not None:
            return int(raw)

    highest = max((row.transaction_id for row in iter_transactions(workbook)), default=0)
    log.debug("Sequence row missing; deriving next id %d from ledger", highest + 1)
    return highest + 1


def write_sequence(workbook: Workbook, value: int) -> None:
    """Store ``value`` as the next transaction identifier."""

    sheet = workbook[META_SHEET]
    row_index = locate_row(workbook, META_SHEET, "Key", SEQUENCE_KEY)
    if row_index is None:
        sheet.append([SEQUENCE_KEY, value])
    else:
        sheet.cell(row=row_index, column=2, value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: object) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Keys are compared as text so identifiers Excel stored as numbers still
    match their string form.

    Returns:
        int | None: 1-based row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    wanted = str(key_value)
    sheet = workbook[sheet_name]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == wanted:
            return row_idx

    return None


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the ``Products`` column ordering."""

    return [
        record.product_id,
        record.product_name,
        record.unit,
        record.current_stock,
        record.min_stock,
        record.purchase_price,
        record.selling_price,
        record.category,
        record.expiry_date,
    ]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the ledger column ordering."""

    return [
        record.transaction_id,
        record.product_id,
        record.transaction_type.value,
        record.quantity,
        record.unit,
        record.notes,
        record.reference_no,
        record.balance_after,
        record.batch_number,
        record.batch_expiry_date,
        record.transaction_date,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Numbers become :class:`~decimal.Decimal`, identifiers become ``str`` and
    blank optional cells stay ``None``.
    """

    (
        product_id,
        product_name,
        unit,
        current_stock,
        min_stock,
        purchase_price,
        selling_price,
        category,
        expiry_date,
    ) = tuple(raw_row[:9]) + (None,) * (9 - len(raw_row[:9]))

    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        unit=str(unit) if unit is not None else "",
        current_stock=_to_decimal(current_stock),
        min_stock=_to_decimal(min_stock),
        purchase_price=_to_decimal(purchase_price),
        selling_price=_to_decimal(selling_price),
        category=_to_optional_text(category),
        expiry_date=_to_optional_text(expiry_date),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a strongly typed ledger record.

    Raises:
        ValueError: If the ``Type`` cell holds anything other than a
            :class:`TransactionType` value.
    """

    (
        transaction_id,
        product_id,
        transaction_type,
        quantity,
        unit,
        notes,
        reference_no,
        balance_after,
        batch_number,
        batch_expiry_date,
        transaction_date,
    ) = tuple(raw_row[:11]) + (None,) * (11 - len(raw_row[:11]))

    return TransactionRow(
        transaction_id=int(transaction_id),
        product_id=str(product_id),
        transaction_type=TransactionType(str(transaction_type)),
        quantity=_to_decimal(quantity),
        unit=str(unit) if unit is not None else "",
        notes=_to_optional_text(notes),
        reference_no=_to_optional_text(reference_no),
        balance_after=_to_decimal(balance_after),
        batch_number=_to_optional_text(batch_number),
        batch_expiry_date=_to_optional_text(batch_expiry_date),
        transaction_date=_to_optional_text(transaction_date) or "",
    )


def _header_map(workbook: Workbook, sheet_name: str) -> Dict[object, int]:
    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _row_values(workbook: Workbook, sheet_name: str, row_index: int) -> tuple:
    sheet = workbook[sheet_name]
    return tuple(cell.value for cell in sheet[row_index])


def _to_decimal(raw: object) -> Decimal:
    if raw is None or raw == "":
        return Decimal("0")
    return Decimal(str(raw))


def _to_optional_text(raw: object) -> Optional[str]:
    if raw is None:
        return None
    # Cells typed as dates in Excel load back as datetime objects.
    if isinstance(raw, datetime):
        if raw.time() == time.min:
            return raw.date().isoformat()
        return raw.isoformat()
    if isinstance(raw, date):
        return raw.isoformat()
    text = str(raw)
    return text if text != "" else None
