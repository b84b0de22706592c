"""Exception hierarchy raised by the business logic layer.

Every domain failure derives from :class:`BusinessRuleViolation` so that the
presentation layers (CLI, action API) can translate the whole family into a
user-facing message with a single ``except`` clause.
"""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation):
    """Raised when input is missing or malformed. Nothing has been written."""


class DuplicateRecordError(BusinessRuleViolation):
    """Raised when a phone number or email is already registered."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced customer or sale is unknown."""


class SetupRequiredError(BusinessRuleViolation):
    """Raised when a required sheet or counter is missing from the workbook."""


class AllocationError(BusinessRuleViolation):
    """Raised when an identity counter is unreadable or exhausted."""


__all__ = [
    "BusinessRuleViolation",
    "ValidationError",
    "DuplicateRecordError",
    "MissingReferenceError",
    "SetupRequiredError",
    "AllocationError",
]
