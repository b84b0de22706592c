"""Business logic layer for Sandwich Ledger.

This module owns the customer registry, the monthly sale ledger, the identity
allocator that hands out ``C#####``/``S#####`` identifiers, and the summary
aggregator that rolls monthly segments up into pending/settled states. It
consumes the Data Access Layer (DAL) for all I/O while ensuring every mutation
passes through validation first, so a rejected request never leaves a partial
row behind.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import data_manager, log, validators
from .constants import (
    CUSTOMER_ID_PREFIX,
    EXPECTED_SCHEMA_VERSION,
    ID_DIGITS,
    MAX_ID_NUMBER,
    SALE_COLUMNS,
    SALE_ID_PREFIX,
    SALES_SHEET_PATTERN,
    SALES_SHEET_PREFIX,
    SHEET_COLUMNS,
    SUMMARY_TIMESTAMP_FORMAT,
    CounterKey,
    SaleStatus,
    SummaryStatus,
)
from .errors import (
    AllocationError,
    BusinessRuleViolation,
    DuplicateRecordError,
    MissingReferenceError,
    SetupRequiredError,
    ValidationError,
)


# Sheets openpyxl or Google Sheets create by default; removed by setup when empty.
DEFAULT_SHEET_NAMES: tuple[str, ...] = ("Sheet", "Sheet1")


@dataclass
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL.

    The re-entrant lock serializes the check-then-act sequences (counter
    increments, uniqueness check followed by append) for callers that share a
    context across threads. ``workbook`` is swapped in place by
    :func:`discard_unsaved_changes`.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def lock(self) -> Any:
        return self._lock


@dataclass(frozen=True)
class CustomerCommand:
    """User intent for registering a new customer."""

    first_name: str
    last_name: str
    phone: str
    email: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class CustomerUpdate:
    """Partial customer update; ``None`` means "leave unchanged".

    An empty string for ``email`` clears the stored address.
    """

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    def provided_fields(self) -> Dict[str, Any]:
        return {
            name: value
            for name, value in (
                ("first_name", self.first_name),
                ("last_name", self.last_name),
                ("phone", self.phone),
                ("email", self.email),
            )
            if value is not None
        }


@dataclass(frozen=True)
class SaleCommand:
    """User intent for registering a sale.

    ``unit_price`` overrides the configured default price when given.
    """

    customer_id: str
    quantity: int
    amount_paid: int
    unit_price: Optional[int] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentCommand:
    """User intent for applying a payment to an existing sale."""

    sale_id: str
    amount: int
    timestamp: Optional[datetime] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or, when ``None``, the current UTC datetime."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are simple dictionaries keyed by domain area (customers, sales)
    that store precomputed query results so repeated lookups avoid rescanning
    the workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored so callers can request targeted invalidation
    without checking first.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _require_sheet(context: RuntimeContext, sheet_name: str) -> Worksheet:
    if not data_manager.sheet_exists(context.workbook, sheet_name):
        log.error("Sheet '%s' not found; setup is required", sheet_name)
        raise SetupRequiredError(f"Sheet '{sheet_name}' not found. Please run setup first.")
    return context.workbook[sheet_name]


def _ensure_customers_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the customer cache bucket on demand.

    The bucket holds the full list in sheet order plus ``by_id``, ``by_phone``
    and ``by_email`` indexes. Phone and email keys are the normalized values
    stored on the sheet, so lookups compare canonical forms only.
    """

    bucket = _get_cache_bucket(context, "customers")
    if "all" not in bucket:
        _require_sheet(context, data_manager.CUSTOMERS_SHEET)
        all_customers = list(data_manager.iter_customers(context.workbook))
        bucket["all"] = all_customers
        bucket["by_id"] = {}
        bucket["by_phone"] = {}
        bucket["by_email"] = {}
        for customer in all_customers:
            # First occurrence wins so lookups match a top-down sheet scan.
            bucket["by_id"].setdefault(customer.customer_id, customer)
            if customer.phone:
                bucket["by_phone"].setdefault(customer.phone.lower(), customer)
            if customer.email:
                bucket["by_email"].setdefault(customer.email.lower(), customer)
        log.debug("Populated customers cache with %d entries", len(all_customers))
    return bucket


def _ensure_sales_cache(context: RuntimeContext, sheet_name: str) -> List[data_manager.SaleRow]:
    """Return the cached rows of one monthly segment, loading them on demand."""

    bucket = _get_cache_bucket(context, "sales")
    if sheet_name not in bucket:
        bucket[sheet_name] = list(data_manager.iter_sales(context.workbook, sheet_name))
        log.debug(
            "Populated sales cache for '%s' with %d entries",
            sheet_name,
            len(bucket[sheet_name]),
        )
    return bucket[sheet_name]


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Resolves ``config.ini``, parses settings, opens the workbook, checks that
    every managed sheet present carries the expected header row, and refuses
    a configuration declaring a different schema version.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
        ValueError: When a sheet header does not match its schema.
        RuntimeError: When the configured schema version is not supported.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    data_manager.validate_headers(workbook)
    context = RuntimeContext(settings=settings, workbook=workbook)
    ensure_schema_version(context)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return context


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    A new :class:`RuntimeContext` is produced, so any cached data from the
    previous context is discarded.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def discard_unsaved_changes(context: RuntimeContext) -> None:
    """Replace ``context.workbook`` with the copy on disk and drop all caches.

    Used after a failed write so rows and counter bumps that never reached
    disk cannot be saved by a later action.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    with context.lock:
        context.workbook = data_manager.refresh_workbook(context.settings.data_file)
        context._cache.clear()
    log.warning("Discarded unsaved changes to '%s'", context.settings.data_file)


def setup_workbook(context: RuntimeContext) -> Dict[str, Any]:
    """Create whatever fixed sheets and counters the workbook is missing.

    Safe to run repeatedly. Missing counters are seeded from the highest
    identifier already on the sheets, which lets a workbook that predates the
    ``settings`` sheet keep allocating without collisions. Existing counters
    are never touched.

    Returns:
        dict[str, Any]: ``created_sheets``, ``removed_sheets`` and
            ``seeded_counters`` describing what changed.
    """
    workbook = context.workbook
    created: List[str] = []
    removed: List[str] = []
    seeded: Dict[str, int] = {}

    with context.lock:
        for sheet_name, columns in SHEET_COLUMNS.items():
            if not data_manager.sheet_exists(workbook, sheet_name):
                data_manager.create_sheet(workbook, sheet_name, columns)
                created.append(sheet_name)

        for default_name in DEFAULT_SHEET_NAMES:
            if data_manager.sheet_exists(workbook, default_name) and _sheet_is_blank(workbook[default_name]):
                workbook.remove(workbook[default_name])
                removed.append(default_name)
                log.info("Sheet '%s' has been deleted", default_name)

        if data_manager.locate_setting(workbook, CounterKey.CUSTOMER.value) is None:
            customer_ids = (row.customer_id for row in data_manager.iter_customers(workbook))
            seeded[CounterKey.CUSTOMER.value] = scan_max_suffix(customer_ids, CUSTOMER_ID_PREFIX)
        if data_manager.locate_setting(workbook, CounterKey.SALE.value) is None:
            sale_ids = (
                row.sale_id
                for sheet_name in data_manager.list_sales_sheets(workbook)
                for row in data_manager.iter_sales(workbook, sheet_name)
            )
            seeded[CounterKey.SALE.value] = scan_max_suffix(sale_ids, SALE_ID_PREFIX)
        for key, value in seeded.items():
            data_manager.append_setting(workbook, key, value)
            log.info("Seeded counter '%s' at %d", key, value)

        _invalidate_cache(context, "customers", "sales")

    return {
        "created_sheets": created,
        "removed_sheets": removed,
        "seeded_counters": seeded,
    }


def _sheet_is_blank(worksheet: Worksheet) -> bool:
    return all(
        cell is None or cell == ""
        for row in worksheet.iter_rows(values_only=True)
        for cell in row
    )


# ---------------------------------------------------------------------------
# Identity allocation
# ---------------------------------------------------------------------------


def format_identifier(prefix: str, number: int) -> str:
    """Render ``number`` as ``prefix`` followed by five zero-padded digits."""
    return f"{prefix}{number:0{ID_DIGITS}d}"


def scan_max_suffix(identifiers: Iterable[str], prefix: str) -> int:
    """Return the highest numeric suffix among well-formed ``identifiers``.

    Values that do not match ``prefix`` followed by five digits are ignored;
    an empty or fully malformed input yields zero.
    """
    highest = 0
    for identifier in identifiers:
        if not identifier or not identifier.startswith(prefix):
            continue
        suffix = identifier[len(prefix):]
        if len(suffix) == ID_DIGITS and suffix.isdigit():
            highest = max(highest, int(suffix))
    return highest


def _parse_counter(raw_value: object) -> Optional[int]:
    """Return ``raw_value`` as a non-negative ``int`` or ``None`` if corrupt."""
    if isinstance(raw_value, bool):
        return None
    if isinstance(raw_value, float):
        return int(raw_value) if raw_value.is_integer() and raw_value >= 0 else None
    try:
        value = int(str(raw_value).strip())
    except ValueError:
        return None
    return value if value >= 0 else None


def allocate_next(context: RuntimeContext, kind: CounterKey) -> int:
    """Increment the persisted counter for ``kind`` and return the new value.

    The read, increment and write happen under the context lock. The counter
    is authoritative: there is no fallback to scanning or to timestamps.

    Raises:
        SetupRequiredError: If the settings sheet or the counter row is absent.
        AllocationError: If the stored value is not a non-negative integer or
            the five-digit space is exhausted.
    """
    with context.lock:
        _require_sheet(context, data_manager.SETTINGS_SHEET)
        located = data_manager.locate_setting(context.workbook, kind.value)
        if located is None:
            log.error("Counter '%s' missing from settings sheet", kind.value)
            raise SetupRequiredError(f"Missing '{kind.value}' in settings sheet. Please run setup first.")

        row_index, raw_value = located
        current = _parse_counter(raw_value)
        if current is None:
            log.error("Counter '%s' is corrupt: %r", kind.value, raw_value)
            raise AllocationError(f"Counter '{kind.value}' holds an invalid value: {raw_value!r}")

        next_value = current + 1
        if next_value > MAX_ID_NUMBER:
            log.error("Counter '%s' exhausted at %d", kind.value, current)
            raise AllocationError(f"Counter '{kind.value}' has no identifiers left")

        data_manager.set_setting_value(context.workbook, row_index, next_value)
        log.debug("Allocated %s=%d", kind.value, next_value)
        return next_value


def next_customer_id(context: RuntimeContext) -> str:
    """Allocate the next customer identifier (``C00001``, ``C00002``, ...)."""
    return format_identifier(CUSTOMER_ID_PREFIX, allocate_next(context, CounterKey.CUSTOMER))


def next_sale_id(context: RuntimeContext) -> str:
    """Allocate the next sale identifier from the single global sale counter."""
    return format_identifier(SALE_ID_PREFIX, allocate_next(context, CounterKey.SALE))


# ---------------------------------------------------------------------------
# Customer registry
# ---------------------------------------------------------------------------


def list_customers(context: RuntimeContext) -> List[data_manager.CustomerRow]:
    """Return every customer in sheet order.

    Raises:
        SetupRequiredError: If the ``customers`` sheet is missing.
    """
    return list(_ensure_customers_cache(context)["all"])


def customer_exists(context: RuntimeContext, customer_id: str) -> bool:
    """Return ``True`` when ``customer_id`` is registered."""
    return find_customer_by_id(context, customer_id) is not None


def find_customer_by_phone(context: RuntimeContext, phone: object) -> Optional[data_manager.CustomerRow]:
    """Find a customer by phone number, whatever its punctuation.

    Returns ``None`` without searching when ``phone`` does not normalize to
    ten digits.
    """
    check = validators.validate_phone(phone)
    if not check.valid:
        return None
    return _ensure_customers_cache(context)["by_phone"].get(check.value)


def find_customer_by_email(context: RuntimeContext, email: object) -> Optional[data_manager.CustomerRow]:
    """Find a customer by email address (case-insensitive)."""
    check = validators.validate_email(email)
    if not check.valid or not check.provided:
        return None
    return _ensure_customers_cache(context)["by_email"].get(check.value)


def find_customer_by_id(context: RuntimeContext, customer_id: object) -> Optional[data_manager.CustomerRow]:
    """Find a customer by identifier; malformed identifiers return ``None``."""
    if not validators.validate_customer_id(customer_id):
        return None
    return _ensure_customers_cache(context)["by_id"].get(customer_id.strip())


def find_customer_by_name(
    context: RuntimeContext, first_name: object, last_name: object
) -> Optional[data_manager.CustomerRow]:
    """Find the first customer whose full name matches, ignoring case."""
    if not isinstance(first_name, str) or not isinstance(last_name, str):
        return None
    wanted_first = first_name.strip().lower()
    wanted_last = last_name.strip().lower()
    if not wanted_first or not wanted_last:
        return None
    for customer in _ensure_customers_cache(context)["all"]:
        if customer.first_name.lower() == wanted_first and customer.last_name.lower() == wanted_last:
            return customer
    return None


def register_customer(context: RuntimeContext, command: CustomerCommand) -> data_manager.CustomerRow:
    """Validate and append a new customer record.

    Required fields are checked first, then phone and email formats, then
    uniqueness. An identifier is allocated only once every check has passed,
    so rejected attempts leave the customer counter untouched.

    Raises:
        ValidationError: If a required field is missing or malformed.
        DuplicateRecordError: If the phone or email is already registered.
        SetupRequiredError: If the customers or settings sheet is missing.
    """
    first_name = command.first_name.strip() if isinstance(command.first_name, str) else ""
    last_name = command.last_name.strip() if isinstance(command.last_name, str) else ""
    if not first_name or not last_name or not command.phone:
        log.warning("Customer registration rejected: missing required fields")
        raise ValidationError("Fields 'first_name', 'last_name', and 'phone' are required")

    phone = validators.require_phone(command.phone)
    email = validators.require_email(command.email)

    with context.lock:
        if find_customer_by_phone(context, phone) is not None:
            log.warning("Customer registration rejected: duplicate phone '%s'", phone)
            raise DuplicateRecordError("Customer with this phone number already exists")
        if email and find_customer_by_email(context, email) is not None:
            log.warning("Customer registration rejected: duplicate email '%s'", email)
            raise DuplicateRecordError("Customer with this email already exists")

        timestamp = _resolve_timestamp(command.timestamp)
        customer = data_manager.CustomerRow(
            customer_id=next_customer_id(context),
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            email=email,
            registered_at=timestamp.isoformat(),
        )
        data_manager.append_customer(context.workbook, customer)
        _invalidate_cache(context, "customers")

    log.info("Customer %s registered successfully", customer.customer_id)
    return customer


def update_customer(
    context: RuntimeContext, customer_id: object, changes: CustomerUpdate
) -> data_manager.CustomerRow:
    """Apply a partial update to an existing customer.

    Every provided field is validated as at registration and phone/email are
    checked against every *other* customer before the first cell is written,
    so a single bad field leaves the record untouched.

    Raises:
        ValidationError: If the id is malformed, no field is provided, or a
            field fails validation.
        MissingReferenceError: If no customer has ``customer_id``.
        DuplicateRecordError: If another customer already uses the new phone
            or email.
    """
    if not validators.validate_customer_id(customer_id):
        raise ValidationError(f"Customer ID '{customer_id}' is not in the correct format.")
    provided = changes.provided_fields()
    if not provided:
        raise ValidationError("No customer fields provided for update")

    with context.lock:
        existing = find_customer_by_id(context, customer_id)
        if existing is None:
            log.warning("Customer update rejected: unknown id '%s'", customer_id)
            raise MissingReferenceError(f"Customer with ID '{customer_id}' does not exist.")

        field_values: Dict[str, Any] = {}
        if "first_name" in provided:
            field_values["first_name"] = validators.require_name(provided["first_name"], "first_name")
        if "last_name" in provided:
            field_values["last_name"] = validators.require_name(provided["last_name"], "last_name")
        if "phone" in provided:
            phone = validators.require_phone(provided["phone"])
            other = find_customer_by_phone(context, phone)
            if other is not None and other.customer_id != existing.customer_id:
                log.warning("Customer update rejected: phone '%s' belongs to %s", phone, other.customer_id)
                raise DuplicateRecordError("Customer with this phone number already exists")
            field_values["phone"] = phone
        if "email" in provided:
            email = validators.require_email(provided["email"])
            if email:
                other = find_customer_by_email(context, email)
                if other is not None and other.customer_id != existing.customer_id:
                    log.warning("Customer update rejected: email '%s' belongs to %s", email, other.customer_id)
                    raise DuplicateRecordError("Customer with this email already exists")
            field_values["email"] = email

        data_manager.update_customer(context.workbook, existing.customer_id, field_values=field_values)
        _invalidate_cache(context, "customers")

    log.info("Customer %s updated (%s)", existing.customer_id, ", ".join(sorted(field_values)))
    return replace(existing, **field_values)


# ---------------------------------------------------------------------------
# Sale ledger
# ---------------------------------------------------------------------------


def month_key(moment: datetime) -> str:
    """Return the ``YYYY-MM`` segment key for ``moment``."""
    return moment.strftime("%Y-%m")


def segment_sheet_name(month: str) -> str:
    """Translate a ``YYYY-MM`` key into its ``sales_YYYY_MM`` sheet name.

    Raises:
        ValidationError: If ``month`` is not a valid ``YYYY-MM`` key.
    """
    if not validators.validate_month(month):
        raise ValidationError(f"Month '{month}' must use the YYYY-MM format")
    return f"{SALES_SHEET_PREFIX}{month.replace('-', '_')}"


def month_from_sheet_name(sheet_name: str) -> str:
    """Translate a ``sales_YYYY_MM`` sheet name back into its ``YYYY-MM`` key."""
    match = SALES_SHEET_PATTERN.match(sheet_name)
    if match is None:
        raise ValueError(f"Not a monthly sales sheet: {sheet_name}")
    return f"{match.group(1)}-{match.group(2)}"


def list_months(context: RuntimeContext) -> List[str]:
    """Return every ledger segment key present in the workbook, oldest first."""
    return [month_from_sheet_name(name) for name in data_manager.list_sales_sheets(context.workbook)]


def get_segment(context: RuntimeContext, month: str) -> Worksheet:
    """Return the sales sheet for ``month``, creating it with its header if absent.

    Idempotent: repeated calls hand back the same worksheet.
    """
    sheet_name = segment_sheet_name(month)
    with context.lock:
        if data_manager.sheet_exists(context.workbook, sheet_name):
            log.debug("Sales sheet for %s already exists", month)
            return context.workbook[sheet_name]
        worksheet = data_manager.create_sheet(context.workbook, sheet_name, SALE_COLUMNS)
        _invalidate_cache(context, "sales")
        log.info("Sales sheet for %s created", month)
        return worksheet


def calculate_sale_status(total_price: int, amount_paid: int) -> SaleStatus:
    """Derive the payment status from the total and the amount paid so far."""
    if amount_paid >= total_price:
        return SaleStatus.PAID
    if amount_paid > 0:
        return SaleStatus.PARTIAL
    return SaleStatus.UNPAID


def build_sale_row(
    inputs: validators.SaleInputs, *, sale_id: str, timestamp: datetime
) -> data_manager.SaleRow:
    """Materialize validated sale inputs into a DAL row.

    ``last_payment_datetime`` starts out equal to ``sale_datetime``.
    """
    total_price = inputs.total_price
    return data_manager.SaleRow(
        sale_id=sale_id,
        customer_id=inputs.customer_id,
        quantity=inputs.quantity,
        unit_price=inputs.unit_price,
        total_price=total_price,
        amount_paid=inputs.amount_paid,
        pending_balance=total_price - inputs.amount_paid,
        status=calculate_sale_status(total_price, inputs.amount_paid).value,
        sale_datetime=timestamp.isoformat(),
        last_payment_datetime=timestamp.isoformat(),
    )


def register_sale(context: RuntimeContext, command: SaleCommand) -> data_manager.SaleRow:
    """Validate and append a sale to the segment of the month it happens in.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (SaleCommand): Structured intent describing the sale.

    Returns:
        data_manager.SaleRow: Newly appended sale.

    Raises:
        ValidationError: When an input is missing or malformed.
        MissingReferenceError: When the customer is unknown.
        SetupRequiredError / AllocationError: When no sale id can be issued.
    """
    unit_price = command.unit_price if command.unit_price is not None else context.settings.default_unit_price
    with context.lock:
        inputs = validators.validate_sale_inputs(
            command.customer_id,
            command.quantity,
            command.amount_paid,
            unit_price=unit_price,
            customer_exists=lambda candidate: customer_exists(context, candidate),
        )

        timestamp = _resolve_timestamp(command.timestamp)
        month = month_key(timestamp)
        sale_id = next_sale_id(context)
        sale = build_sale_row(inputs, sale_id=sale_id, timestamp=timestamp)
        worksheet = get_segment(context, month)
        data_manager.append_sale(context.workbook, worksheet.title, sale)
        _invalidate_cache(context, "sales")

    log.info(
        "Sale %s registered successfully for customer %s (quantity=%d, paid=%d, status=%s)",
        sale.sale_id,
        sale.customer_id,
        sale.quantity,
        sale.amount_paid,
        sale.status,
    )
    return sale


def list_sales(context: RuntimeContext, month: Optional[str] = None) -> List[data_manager.SaleRow]:
    """Return the sales of one month, or of every month when ``month`` is ``None``.

    An unknown month yields an empty list; it does not create the segment.
    """
    if month is not None:
        sheet_name = segment_sheet_name(month)
        if not data_manager.sheet_exists(context.workbook, sheet_name):
            return []
        return list(_ensure_sales_cache(context, sheet_name))
    sales: List[data_manager.SaleRow] = []
    for sheet_name in data_manager.list_sales_sheets(context.workbook):
        sales.extend(_ensure_sales_cache(context, sheet_name))
    return sales


def find_sale(context: RuntimeContext, sale_id: object) -> Optional[tuple[str, data_manager.SaleRow]]:
    """Locate ``sale_id`` across all segments and return ``(month, sale)``."""
    if not validators.validate_sale_id(sale_id):
        return None
    wanted = sale_id.strip()
    for sheet_name in data_manager.list_sales_sheets(context.workbook):
        for sale in _ensure_sales_cache(context, sheet_name):
            if sale.sale_id == wanted:
                return month_from_sheet_name(sheet_name), sale
    return None


def record_payment(context: RuntimeContext, command: PaymentCommand) -> data_manager.SaleRow:
    """Apply a payment to an existing sale and refresh its derived columns.

    ``amount_paid``, ``pending_balance``, ``status`` and
    ``last_payment_datetime`` are rewritten in place on the sale's segment.

    Raises:
        ValidationError: If the id is malformed, the amount is not a positive
            integer, or it exceeds the pending balance.
        MissingReferenceError: If the sale cannot be found.
    """
    if not validators.validate_sale_id(command.sale_id):
        raise ValidationError(f"Sale ID '{command.sale_id}' is not in the correct format.")
    if not validators.is_integer(command.amount) or command.amount <= 0:
        raise ValidationError("Payment amount must be a positive integer.")

    with context.lock:
        located = find_sale(context, command.sale_id)
        if located is None:
            log.warning("Payment rejected: unknown sale '%s'", command.sale_id)
            raise MissingReferenceError(f"Sale with ID '{command.sale_id}' does not exist.")
        month, sale = located

        if command.amount > sale.pending_balance:
            log.warning(
                "Payment rejected: %d exceeds pending balance %d of sale %s",
                command.amount,
                sale.pending_balance,
                sale.sale_id,
            )
            raise ValidationError(
                f"Payment ({command.amount}) cannot be greater than the pending balance ({sale.pending_balance})."
            )

        amount_paid = sale.amount_paid + command.amount
        timestamp = _resolve_timestamp(command.timestamp)
        field_values = {
            "amount_paid": amount_paid,
            "pending_balance": sale.total_price - amount_paid,
            "status": calculate_sale_status(sale.total_price, amount_paid).value,
            "last_payment_datetime": timestamp.isoformat(),
        }
        data_manager.update_sale(
            context.workbook,
            segment_sheet_name(month),
            sale.sale_id,
            field_values=field_values,
        )
        _invalidate_cache(context, "sales")

    log.info(
        "Payment of %d recorded for sale %s (pending=%d)",
        command.amount,
        sale.sale_id,
        field_values["pending_balance"],
    )
    return replace(sale, **field_values)


# ---------------------------------------------------------------------------
# Summary aggregation
# ---------------------------------------------------------------------------


def summarize_segment(sales: Iterable[data_manager.SaleRow]) -> SummaryStatus:
    """Return ``pending`` if any sale still owes money, otherwise ``settled``."""
    if any(sale.pending_balance > 0 for sale in sales):
        return SummaryStatus.PENDING
    return SummaryStatus.SETTLED


def rebuild_summary(context: RuntimeContext, *, now: Optional[datetime] = None) -> List[data_manager.SummaryRow]:
    """Recompute the status of every monthly segment and rewrite ``sales_summary``.

    The sheet is cleared and rewritten rather than merged, so manual rows are
    discarded. Every entry carries the same run timestamp. Segments whose
    header does not match the sales schema are skipped with a warning.

    Raises:
        SetupRequiredError: If the ``sales_summary`` sheet is missing.
    """
    _require_sheet(context, data_manager.SUMMARY_SHEET)
    run_at = _resolve_timestamp(now).strftime(SUMMARY_TIMESTAMP_FORMAT)

    entries: List[data_manager.SummaryRow] = []
    with context.lock:
        for sheet_name in data_manager.list_sales_sheets(context.workbook):
            header = data_manager.read_header(context.workbook[sheet_name])
            if tuple(header) != SALE_COLUMNS:
                log.warning("Sheet '%s' is missing the expected sales header; skipped", sheet_name)
                continue
            status = summarize_segment(_ensure_sales_cache(context, sheet_name))
            entries.append(
                data_manager.SummaryRow(
                    month=month_from_sheet_name(sheet_name),
                    status=status.value,
                    last_updated_at=run_at,
                )
            )
        data_manager.rewrite_summary(context.workbook, entries)

    log.info("Sales summary updated (%d months)", len(entries))
    return entries


def list_summary(context: RuntimeContext) -> List[data_manager.SummaryRow]:
    """Return the summary entries as last persisted, without recomputing them."""
    _require_sheet(context, data_manager.SUMMARY_SHEET)
    return list(data_manager.iter_summary(context.workbook))


def list_pending_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    """Return the sales with an outstanding balance in months marked pending.

    Only months flagged ``pending`` in the persisted summary are read; a stale
    summary yields stale results. Call :func:`rebuild_summary` first when
    freshness matters.
    """
    pending: List[data_manager.SaleRow] = []
    for entry in list_summary(context):
        if entry.status != SummaryStatus.PENDING.value:
            continue
        if not validators.validate_month(entry.month):
            log.warning("Ignoring summary row with malformed month '%s'", entry.month)
            continue
        sheet_name = segment_sheet_name(entry.month)
        if not data_manager.sheet_exists(context.workbook, sheet_name):
            log.warning("Summary lists month %s but sheet '%s' is missing", entry.month, sheet_name)
            continue
        pending.extend(sale for sale in _ensure_sales_cache(context, sheet_name) if sale.pending_balance > 0)
    return pending


__all__ = [
    "AllocationError",
    "BusinessRuleViolation",
    "DuplicateRecordError",
    "MissingReferenceError",
    "SetupRequiredError",
    "ValidationError",
    "RuntimeContext",
    "CustomerCommand",
    "CustomerUpdate",
    "SaleCommand",
    "PaymentCommand",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
    "discard_unsaved_changes",
    "setup_workbook",
    "format_identifier",
    "scan_max_suffix",
    "allocate_next",
    "next_customer_id",
    "next_sale_id",
    "list_customers",
    "customer_exists",
    "find_customer_by_phone",
    "find_customer_by_email",
    "find_customer_by_id",
    "find_customer_by_name",
    "register_customer",
    "update_customer",
    "month_key",
    "segment_sheet_name",
    "month_from_sheet_name",
    "list_months",
    "get_segment",
    "calculate_sale_status",
    "build_sale_row",
    "register_sale",
    "list_sales",
    "find_sale",
    "record_payment",
    "summarize_segment",
    "rebuild_summary",
    "list_summary",
    "list_pending_sales",
]
