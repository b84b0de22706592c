"""Field normalization and validation rules.

Phone and email checks never raise: they report a :class:`FieldCheck` so
lookups can bail out quietly on bad input while registration turns a failed
check into a :class:`~sandwich_ledger.errors.ValidationError`. Sale input
validation raises, naming the violated rule in the message.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional

from .constants import CUSTOMER_ID_PATTERN, MONTH_PATTERN, SALE_ID_PATTERN
from .errors import MissingReferenceError, ValidationError


NON_DIGITS_REGEX = re.compile(r"\D")
EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_DIGITS = 10
COUNTRY_CODE = "1"


@dataclass(frozen=True)
class FieldCheck:
    """Outcome of normalizing a single raw field.

    ``provided`` is ``False`` only for optional fields left blank, in which
    case ``valid`` is ``True`` and ``value`` is the empty string.
    """

    valid: bool
    value: Optional[str]
    provided: bool = True


@dataclass(frozen=True)
class SaleInputs:
    """Sanitized sale inputs together with the derived total."""

    customer_id: str
    quantity: int
    amount_paid: int
    unit_price: int

    @property
    def total_price(self) -> int:
        return self.quantity * self.unit_price


def validate_phone(raw: object) -> FieldCheck:
    """Reduce ``raw`` to a bare 10-digit phone number.

    Every non-digit character is discarded. An 11-digit result starting with
    the ``1`` country code loses that leading digit. Anything other than
    exactly ten remaining digits is invalid.
    """

    if isinstance(raw, bool) or not isinstance(raw, (str, int)):
        return FieldCheck(valid=False, value=None)
    digits = NON_DIGITS_REGEX.sub("", str(raw))
    if len(digits) == PHONE_DIGITS + 1 and digits.startswith(COUNTRY_CODE):
        digits = digits[1:]
    if len(digits) != PHONE_DIGITS:
        return FieldCheck(valid=False, value=None)
    return FieldCheck(valid=True, value=digits)


def validate_email(raw: object) -> FieldCheck:
    """Trim and lower-case ``raw`` and check it against :data:`EMAIL_REGEX`.

    Blank or absent input is reported as not provided rather than invalid.
    """

    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return FieldCheck(valid=True, value="", provided=False)
    if not isinstance(raw, str):
        return FieldCheck(valid=False, value=None)
    normalized = raw.strip().lower()
    if EMAIL_REGEX.match(normalized) is None:
        return FieldCheck(valid=False, value=None)
    return FieldCheck(valid=True, value=normalized)


def validate_customer_id(raw: object) -> bool:
    """Return ``True`` when ``raw`` looks like ``C`` followed by five digits."""

    return isinstance(raw, str) and CUSTOMER_ID_PATTERN.match(raw.strip()) is not None


def validate_sale_id(raw: object) -> bool:
    """Return ``True`` when ``raw`` looks like ``S`` followed by five digits."""

    return isinstance(raw, str) and SALE_ID_PATTERN.match(raw.strip()) is not None


def validate_month(raw: object) -> bool:
    """Return ``True`` when ``raw`` is a ``YYYY-MM`` segment key."""

    return isinstance(raw, str) and MONTH_PATTERN.match(raw) is not None


def is_integer(value: object) -> bool:
    """Return ``True`` for real integers; booleans are rejected."""

    return isinstance(value, int) and not isinstance(value, bool)


def require_name(raw: object, field: str) -> str:
    """Return ``raw`` trimmed, raising when it is not a non-empty string."""

    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError(f"Field '{field}' is required")
    return raw.strip()


def require_phone(raw: object) -> str:
    """Return the normalized phone for ``raw`` or raise :class:`ValidationError`."""

    check = validate_phone(raw)
    if not check.valid:
        raise ValidationError("Phone number must be 10 digits")
    return check.value


def require_email(raw: object) -> str:
    """Return the normalized email (``""`` when not provided) or raise."""

    check = validate_email(raw)
    if not check.valid:
        raise ValidationError("Invalid email format")
    return check.value


def validate_sale_inputs(
    customer_id: object,
    quantity: object,
    amount_paid: object,
    *,
    unit_price: object,
    customer_exists: Callable[[str], bool],
) -> SaleInputs:
    """Check the inputs of a new sale, in order, and return them sanitized.

    Args:
        customer_id: Identifier of the purchasing customer.
        quantity: Units sold; must be an integer greater than zero.
        amount_paid: Initial payment; an integer between zero and the total.
        unit_price: Price per unit; a positive integer.
        customer_exists: Predicate confirming the customer is registered.

    Returns:
        SaleInputs: The validated values.

    Raises:
        ValidationError: On the first violated rule.
        MissingReferenceError: If ``customer_id`` is well formed but unknown.
    """

    if not customer_id or quantity is None or amount_paid is None:
        raise ValidationError("Missing required fields: customerId, quantity, amountPaid")
    if not validate_customer_id(customer_id):
        raise ValidationError(f"Customer ID '{customer_id}' is not in the correct format.")
    customer_id = customer_id.strip()
    if not customer_exists(customer_id):
        raise MissingReferenceError(f"Customer with ID '{customer_id}' does not exist.")
    if not is_integer(quantity) or not is_integer(amount_paid):
        raise ValidationError("Quantity and amountPaid must be integers.")
    if not is_integer(unit_price) or unit_price <= 0:
        raise ValidationError("Unit price must be a positive integer.")
    if quantity <= 0:
        raise ValidationError("Quantity must be greater than 0.")
    if amount_paid < 0:
        raise ValidationError("Amount paid cannot be a negative number.")

    total_price = quantity * unit_price
    if amount_paid > total_price:
        raise ValidationError(
            f"Amount paid ({amount_paid}) cannot be greater than the total price ({total_price})."
        )

    return SaleInputs(
        customer_id=customer_id,
        quantity=quantity,
        amount_paid=amount_paid,
        unit_price=unit_price,
    )
