"""Data access layer for Sandwich Ledger.

This module provides low-level helpers that read from and write to the ledger
workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records, appending or updating
   individual rows, and rewriting whole sheets.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from openpyxl.styles import Font
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import (
    CUSTOMER_COLUMNS,
    DEFAULT_UNIT_PRICE,
    SALE_COLUMNS,
    SALES_SHEET_PATTERN,
    SETTINGS_COLUMNS,
    SHEET_COLUMNS,
    SUMMARY_COLUMNS,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
SUMMARY_SHEET = SheetName.SALES_SUMMARY.value
SETTINGS_SHEET = SheetName.SETTINGS.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    default_unit_price: int = DEFAULT_UNIT_PRICE


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``customers`` sheet."""

    customer_id: str
    first_name: str
    last_name: str
    phone: str
    email: str
    registered_at: str


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from a monthly ``sales_YYYY_MM`` sheet."""

    sale_id: str
    customer_id: str
    quantity: int
    unit_price: int
    total_price: int
    amount_paid: int
    pending_balance: int
    status: str
    sale_datetime: str
    last_payment_datetime: str


@dataclass(frozen=True)
class SummaryRow:
    """In-memory view of a row from the ``sales_summary`` sheet."""

    month: str
    status: str
    last_updated_at: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the current
            directory or any of its parents.
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

    Required options live under ``[System]``. ``[Defaults] UnitPrice`` is
    optional and falls back to :data:`~sandwich_ledger.constants.DEFAULT_UNIT_PRICE`.
    Relative ``DataFile`` entries are anchored to ``base_path`` (or the current
    working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative data files.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``UnitPrice`` is not a positive integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    unit_price = parser.getint("Defaults", "UnitPrice", fallback=DEFAULT_UNIT_PRICE)
    if unit_price <= 0:
        raise ValueError(f"UnitPrice must be a positive integer, got {unit_price}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        default_unit_price=unit_price,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the ledger ``.xlsx`` file.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

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


# ---------------------------------------------------------------------------
# Sheet lifecycle
# ---------------------------------------------------------------------------


def sheet_exists(workbook: Workbook, sheet_name: str) -> bool:
    """Return ``True`` when ``sheet_name`` is present in ``workbook``."""

    return sheet_name in workbook.sheetnames


def create_sheet(workbook: Workbook, sheet_name: str, columns: Sequence[str]) -> Worksheet:
    """Create ``sheet_name`` with a bold header row built from ``columns``.

    Raises:
        ValueError: If the sheet already exists.
    """

    if sheet_exists(workbook, sheet_name):
        raise ValueError(f"Sheet already exists: {sheet_name}")
    worksheet = workbook.create_sheet(title=sheet_name)
    _write_header(worksheet, columns)
    log.info("Created sheet '%s'", sheet_name)
    return worksheet


def _write_header(worksheet: Worksheet, columns: Sequence[str]) -> None:
    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(columns, start=1):
        cell = worksheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font


def read_header(worksheet: Worksheet) -> list[str]:
    """Return the header row of ``worksheet`` with trailing blanks removed."""

    if worksheet.max_row < 1:
        return []
    values = [cell.value for cell in worksheet[1]]
    while values and values[-1] is None:
        values.pop()
    return [str(value) if value is not None else "" for value in values]


def expected_columns(sheet_name: str) -> Optional[tuple[str, ...]]:
    """Return the column schema for a known sheet, or ``None`` if unmanaged."""

    if sheet_name in SHEET_COLUMNS:
        return SHEET_COLUMNS[sheet_name]
    if is_sales_sheet(sheet_name):
        return SALE_COLUMNS
    return None


def validate_headers(workbook: Workbook) -> None:
    """Check header-to-field alignment for every managed sheet in ``workbook``.

    Sheets that are absent are ignored here; missing sheets are a setup concern
    handled by the business layer. Unmanaged sheets are skipped.

    Raises:
        ValueError: If a managed sheet's header differs from its schema.
    """

    for sheet_name in workbook.sheetnames:
        columns = expected_columns(sheet_name)
        if columns is None:
            continue
        header = read_header(workbook[sheet_name])
        if tuple(header) != columns:
            log.error(
                "Header mismatch on sheet '%s': expected %s, found %s",
                sheet_name,
                list(columns),
                header,
            )
            raise ValueError(
                f"Sheet '{sheet_name}' header mismatch: expected {list(columns)}, found {header}"
            )


def is_sales_sheet(sheet_name: str) -> bool:
    """Return ``True`` when ``sheet_name`` follows the ``sales_YYYY_MM`` format."""

    return SALES_SHEET_PATTERN.match(sheet_name) is not None


def list_sales_sheets(workbook: Workbook) -> list[str]:
    """Return every monthly sales sheet name in chronological order."""

    return sorted(name for name in workbook.sheetnames if is_sales_sheet(name))


# ---------------------------------------------------------------------------
# Row iteration
# ---------------------------------------------------------------------------


def _iter_raw_rows(worksheet: Worksheet, width: int) -> Iterable[tuple[int, tuple[object, ...]]]:
    for row_idx, raw in enumerate(
        worksheet.iter_rows(min_row=2, max_col=width, values_only=True), start=2
    ):
        # skip fully empty rows
        if any(cell is not None and cell != "" for cell in raw):
            yield row_idx, tuple(raw) + (None,) * (width - len(raw))


def iter_customers(workbook: Workbook) -> Iterable[CustomerRow]:
    """Iterate over customer records stored on the ``customers`` worksheet.

    Header and fully empty rows are skipped. Each remaining row is converted
    into a :class:`CustomerRow` via :func:`deserialize_customer`.
    """

    sheet = workbook[CUSTOMERS_SHEET]
    for _, raw in _iter_raw_rows(sheet, len(CUSTOMER_COLUMNS)):
        yield deserialize_customer(raw)


def iter_sales(workbook: Workbook, sheet_name: str) -> Iterable[SaleRow]:
    """Stream sale records from one monthly ``sales_YYYY_MM`` worksheet.

    Raises:
        ValueError: If a numeric cell holds text; the message names the sheet
            and row.
    """

    sheet = workbook[sheet_name]
    for row_idx, raw in _iter_raw_rows(sheet, len(SALE_COLUMNS)):
        try:
            yield deserialize_sale(raw)
        except ValueError as exc:
            raise ValueError(f"Sheet '{sheet_name}' row {row_idx}: {exc}") from exc


def iter_summary(workbook: Workbook) -> Iterable[SummaryRow]:
    """Iterate over the entries currently stored on ``sales_summary``."""

    sheet = workbook[SUMMARY_SHEET]
    for _, raw in _iter_raw_rows(sheet, len(SUMMARY_COLUMNS)):
        yield deserialize_summary(raw)


def iter_settings(workbook: Workbook) -> Iterable[tuple[int, str, object]]:
    """Yield ``(row_index, key, value)`` triples from the ``settings`` sheet."""

    sheet = workbook[SETTINGS_SHEET]
    for row_idx, raw in _iter_raw_rows(sheet, len(SETTINGS_COLUMNS)):
        key, value = raw
        yield row_idx, str(key) if key is not None else "", value


# ---------------------------------------------------------------------------
# Row mutation
# ---------------------------------------------------------------------------


def append_customer(workbook: Workbook, record: CustomerRow) -> None:
    """Append a customer record to the ``customers`` worksheet."""

    sheet = workbook[CUSTOMERS_SHEET]
    sheet.append(serialize_customer(record))


def append_sale(workbook: Workbook, sheet_name: str, record: SaleRow) -> None:
    """Append a sale record to the monthly worksheet ``sheet_name``."""

    sheet = workbook[sheet_name]
    sheet.append(serialize_sale(record))


def rewrite_summary(workbook: Workbook, records: Sequence[SummaryRow]) -> None:
    """Clear ``sales_summary`` and rewrite its header followed by ``records``.

    Any row previously present on the sheet, including manual additions, is
    discarded.
    """

    sheet = workbook[SUMMARY_SHEET]
    if sheet.max_row >= 1:
        sheet.delete_rows(1, sheet.max_row)
    _write_header(sheet, SUMMARY_COLUMNS)
    for record in records:
        sheet.append(serialize_summary(record))


def append_setting(workbook: Workbook, key: str, value: object) -> None:
    """Append a ``key``/``value`` row to the ``settings`` worksheet."""

    sheet = workbook[SETTINGS_SHEET]
    sheet.append([key, value])


def locate_setting(workbook: Workbook, key: str) -> Optional[tuple[int, object]]:
    """Return ``(row_index, raw_value)`` for ``key`` or ``None`` when absent."""

    for row_idx, current_key, value in iter_settings(workbook):
        if current_key == key:
            return row_idx, value
    return None


def set_setting_value(workbook: Workbook, row_index: int, value: object) -> None:
    """Overwrite the value cell of the settings row at ``row_index``."""

    sheet = workbook[SETTINGS_SHEET]
    sheet.cell(row=row_index, column=SETTINGS_COLUMNS.index("value") + 1, value=value)


def update_customer(workbook: Workbook, customer_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing customer.

    Only the specified fields are modified, leaving other columns untouched.

    Raises:
        KeyError: If the customer or any referenced column cannot be found.
    """

    _update_row(workbook, CUSTOMERS_SHEET, "customer_id", customer_id, field_values, "customer")


def update_sale(workbook: Workbook, sheet_name: str, sale_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing sale on ``sheet_name``.

    Raises:
        KeyError: If the sale or any referenced column cannot be found.
    """

    _update_row(workbook, sheet_name, "sale_id", sale_id, field_values, "sale")


def _update_row(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    field_values: dict[str, Any],
    label: str,
) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{label.capitalize()} not found: {key_value}")

    sheet = workbook[sheet_name]
    header_map = {name: idx + 1 for idx, name in enumerate(read_header(sheet))}

    for field in field_values:
        if field not in header_map:
            raise KeyError(f"Unknown {label} field: {field}")
    for field, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[field], value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = {name: idx + 1 for idx, name in enumerate(read_header(sheet))}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if len(row) < key_col_index:
            continue
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


# ---------------------------------------------------------------------------
# Row <-> record mapping
# ---------------------------------------------------------------------------


def serialize_customer(record: CustomerRow) -> list[object]:
    """Convert a customer dataclass into the ``customers`` column ordering."""

    return [
        record.customer_id,
        record.first_name,
        record.last_name,
        record.phone,
        record.email,
        record.registered_at,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Convert a sale dataclass into the monthly sales column ordering."""

    return [
        record.sale_id,
        record.customer_id,
        record.quantity,
        record.unit_price,
        record.total_price,
        record.amount_paid,
        record.pending_balance,
        record.status,
        record.sale_datetime,
        record.last_payment_datetime,
    ]


def serialize_summary(record: SummaryRow) -> list[object]:
    """Convert a summary dataclass into the ``sales_summary`` column ordering."""

    return [record.month, record.status, record.last_updated_at]


def _text(raw: object) -> str:
    return str(raw).strip() if raw is not None else ""


def _integer(raw: object) -> int:
    if raw is None or raw == "":
        return 0
    if isinstance(raw, float):
        return int(raw)
    try:
        return int(str(raw).strip())
    except ValueError as exc:
        raise ValueError(f"Expected a whole number, found {raw!r}") from exc


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    """Convert a raw worksheet row into a strongly typed customer record.

    Every column is coerced to ``str`` so that phone numbers Excel stored as
    numbers still compare as text; blank cells become empty strings.
    """

    customer_id, first_name, last_name, phone, email, registered_at = raw_row
    if isinstance(phone, float):
        phone = int(phone)
    return CustomerRow(
        customer_id=_text(customer_id),
        first_name=_text(first_name),
        last_name=_text(last_name),
        phone=_text(phone),
        email=_text(email),
        registered_at=_text(registered_at),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw worksheet row into a strongly typed sale record.

    Numeric columns are normalised to ``int``; blank numeric cells read as
    zero and blank text cells as empty strings.
    """

    (
        sale_id,
        customer_id,
        quantity,
        unit_price,
        total_price,
        amount_paid,
        pending_balance,
        status,
        sale_datetime,
        last_payment_datetime,
    ) = raw_row

    return SaleRow(
        sale_id=_text(sale_id),
        customer_id=_text(customer_id),
        quantity=_integer(quantity),
        unit_price=_integer(unit_price),
        total_price=_integer(total_price),
        amount_paid=_integer(amount_paid),
        pending_balance=_integer(pending_balance),
        status=_text(status),
        sale_datetime=_text(sale_datetime),
        last_payment_datetime=_text(last_payment_datetime),
    )


def deserialize_summary(raw_row: Sequence[object]) -> SummaryRow:
    """Convert a raw worksheet row into a summary record."""

    month, status, last_updated_at = raw_row
    return SummaryRow(
        month=_text(month),
        status=_text(status),
        last_updated_at=_text(last_updated_at),
    )
