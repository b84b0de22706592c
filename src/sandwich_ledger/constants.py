"""Enumerations and schema constants shared across Sandwich Ledger modules.

Centralises sheet names, column orderings, identifier formats, and status
vocabularies so that the data access layer (DAL), business logic layer (BLL),
and the action API rely on a single source of truth.
"""

from __future__ import annotations

import re
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Price charged per unit when neither the caller nor config.ini overrides it.
DEFAULT_UNIT_PRICE = 15000

CUSTOMER_ID_PREFIX = "C"
SALE_ID_PREFIX = "S"
ID_DIGITS = 5
MAX_ID_NUMBER = 10**ID_DIGITS - 1

CUSTOMER_ID_PATTERN = re.compile(r"^C\d{5}$")
SALE_ID_PATTERN = re.compile(r"^S\d{5}$")
MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
SALES_SHEET_PATTERN = re.compile(r"^sales_(\d{4})_(0[1-9]|1[0-2])$")

SALES_SHEET_PREFIX = "sales_"
SUMMARY_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class SheetName(str, Enum):
    """Enumerate the fixed workbook sheet names managed by the DAL.

    Monthly sales segments are named dynamically (``sales_YYYY_MM``) and are
    therefore not listed here.
    """

    CUSTOMERS = "customers"
    SALES_SUMMARY = "sales_summary"
    SETTINGS = "settings"


class SaleStatus(str, Enum):
    """Payment state of a single sale."""

    PAID = "Paid"
    PARTIAL = "Partial"
    UNPAID = "Unpaid"


class SummaryStatus(str, Enum):
    """Rollup state of a monthly ledger segment."""

    PENDING = "pending"
    SETTLED = "settled"


class CounterKey(str, Enum):
    """Keys of the identity counters stored on the ``settings`` sheet."""

    CUSTOMER = "last_customer_id_number"
    SALE = "last_sale_id_number"


CUSTOMER_COLUMNS: tuple[str, ...] = (
    "customer_id",
    "first_name",
    "last_name",
    "phone",
    "email",
    "registered_at",
)

SALE_COLUMNS: tuple[str, ...] = (
    "sale_id",
    "customer_id",
    "quantity",
    "unit_price",
    "total_price",
    "amount_paid",
    "pending_balance",
    "status",
    "sale_datetime",
    "last_payment_datetime",
)

SUMMARY_COLUMNS: tuple[str, ...] = ("month", "status", "last_updated_at")

SETTINGS_COLUMNS: tuple[str, ...] = ("key", "value")

# Fixed sheets created by ``setup`` together with their header rows.
SHEET_COLUMNS: dict[str, tuple[str, ...]] = {
    SheetName.CUSTOMERS.value: CUSTOMER_COLUMNS,
    SheetName.SALES_SUMMARY.value: SUMMARY_COLUMNS,
    SheetName.SETTINGS.value: SETTINGS_COLUMNS,
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_UNIT_PRICE",
    "CUSTOMER_ID_PREFIX",
    "SALE_ID_PREFIX",
    "ID_DIGITS",
    "MAX_ID_NUMBER",
    "CUSTOMER_ID_PATTERN",
    "SALE_ID_PATTERN",
    "MONTH_PATTERN",
    "SALES_SHEET_PATTERN",
    "SALES_SHEET_PREFIX",
    "SUMMARY_TIMESTAMP_FORMAT",
    "SheetName",
    "SaleStatus",
    "SummaryStatus",
    "CounterKey",
    "CUSTOMER_COLUMNS",
    "SALE_COLUMNS",
    "SUMMARY_COLUMNS",
    "SETTINGS_COLUMNS",
    "SHEET_COLUMNS",
]
