"""Action-based request/response boundary for Sandwich Ledger.

Callers hand an action name plus a JSON-shaped payload to
:func:`dispatch_action` and always get a plain ``dict`` back: either
``{"success": True, <key>: ...}`` or ``{"success": False, "error": str}``.
Business rule violations raised by :mod:`sandwich_ledger.core_logic` are
converted here; nothing crosses this boundary as an exception. Transports
(an HTTP handler, the CLI ``request`` command) wrap :func:`handle_get` and
:func:`handle_post`.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from . import core_logic, log
from .errors import BusinessRuleViolation


Payload = Mapping[str, Any]
Handler = Callable[[core_logic.RuntimeContext, Payload], Dict[str, Any]]


@dataclass(frozen=True)
class ActionSpec:
    """Describe how an action is executed and whether it writes to the workbook."""

    name: str
    method: str
    handler: Handler
    mutates: bool


def success(**fields: Any) -> Dict[str, Any]:
    return {"success": True, **fields}


def failure(message: str) -> Dict[str, Any]:
    return {"success": False, "error": message}


def _record(row: Any) -> Dict[str, Any]:
    return asdict(row)


def _as_mapping(payload: Optional[Any]) -> Payload:
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise core_logic.ValidationError("Request data must be a JSON object")
    return payload


def run_setup(context: core_logic.RuntimeContext, payload: Payload) -> Dict[str, Any]:
    return success(result=core_logic.setup_workbook(context))


def run_get_all_customers(context: core_logic.RuntimeContext, payload: Payload) -> Dict[str, Any]:
    return success(data=[_record(row) for row in core_logic.list_customers(context)])


def run_register_customer(context: core_logic.RuntimeContext, payload: Payload) -> Dict[str, Any]:
    command = core_logic.CustomerCommand(
        first_name=payload.get("first_name"),
        last_name=payload.get("last_name"),
        phone=payload.get("phone"),
        email=payload.get("email"),
    )
    return success(customer=_record(core_logic.register_customer(context, command)))


def run_update_customer(context: core_logic.RuntimeContext, payload: Payload) -> Dict[str, Any]:
    changes = core_logic.CustomerUpdate(
        first_name=payload.get("first_name"),
        last_name=payload.get("last_name"),
        phone=payload.get("phone"),
        email=payload.get("email"),
    )
    customer = core_logic.update_customer(context, payload.get("customer_id"), changes)
    return success(customer=_record(customer))


def run_find_customer(context: core_logic.RuntimeContext, payload: Payload) -> Dict[str, Any]:
    if payload.get("customer_id"):
        customer = core_logic.find_customer_by_id(context, payload["customer_id"])
    elif payload.get("phone"):
        customer = core_logic.find_customer_by_phone(context, payload["phone"])
    elif payload.get("email"):
        customer = core_logic.find_customer_by_email(context, payload["email"])
    elif payload.get("first_name") or payload.get("last_name"):
        customer = core_logic.find_customer_by_name(
            context, payload.get("first_name"), payload.get("last_name")
        )
    else:
        raise core_logic.ValidationError(
            "Provide one of 'customer_id', 'phone', 'email', or 'first_name' and 'last_name'"
        )
    return success(customer=_record(customer) if customer is not None else None)


def run_register_sale(context: core_logic.RuntimeContext, payload: Payload) -> Dict[str, Any]:
    command = core_logic.SaleCommand(
        customer_id=payload.get("customerId"),
        quantity=payload.get("quantity"),
        amount_paid=payload.get("amountPaid"),
        unit_price=payload.get("unitPrice"),
    )
    return success(sale=_record(core_logic.register_sale(context, command)))


def run_record_payment(context: core_logic.RuntimeContext, payload: Payload) -> Dict[str, Any]:
    command = core_logic.PaymentCommand(
        sale_id=payload.get("saleId"),
        amount=payload.get("amount"),
    )
    return success(sale=_record(core_logic.record_payment(context, command)))


def run_list_pending_sales(context: core_logic.RuntimeContext, payload: Payload) -> Dict[str, Any]:
    return success(data=[_record(row) for row in core_logic.list_pending_sales(context)])


def run_update_sales_summary(context: core_logic.RuntimeContext, payload: Payload) -> Dict[str, Any]:
    return success(data=[_record(row) for row in core_logic.rebuild_summary(context)])


def run_get_sales_summary(context: core_logic.RuntimeContext, payload: Payload) -> Dict[str, Any]:
    return success(data=[_record(row) for row in core_logic.list_summary(context)])


ACTIONS: Dict[str, ActionSpec] = {
    spec.name: spec
    for spec in (
        ActionSpec("setup", "GET", run_setup, mutates=True),
        ActionSpec("getAllCustomers", "GET", run_get_all_customers, mutates=False),
        ActionSpec("listPendingSales", "GET", run_list_pending_sales, mutates=False),
        ActionSpec("updateSalesSummary", "GET", run_update_sales_summary, mutates=True),
        ActionSpec("getSalesSummary", "GET", run_get_sales_summary, mutates=False),
        ActionSpec("findCustomer", "GET", run_find_customer, mutates=False),
        ActionSpec("registerCustomer", "POST", run_register_customer, mutates=True),
        ActionSpec("updateCustomer", "POST", run_update_customer, mutates=True),
        ActionSpec("registerSale", "POST", run_register_sale, mutates=True),
        ActionSpec("recordPayment", "POST", run_record_payment, mutates=True),
    )
}


def dispatch_action(
    context: core_logic.RuntimeContext,
    action: Optional[str],
    payload: Optional[Any] = None,
    *,
    persist: bool = True,
) -> Dict[str, Any]:
    """Run ``action`` against ``context`` and return a tagged result.

    Actions run one at a time under the context lock. When a mutating action
    succeeds and ``persist`` is true the workbook is saved. If the handler or
    the save fails unexpectedly, the in-memory workbook is reloaded from disk
    so the half-applied change cannot be saved by a later action.
    """
    spec = ACTIONS.get(action or "")
    if spec is None:
        log.warning("Rejected unknown action '%s'", action)
        return failure("Unknown or unsupported action.")

    log.info("Processing action '%s'", spec.name)
    with context.lock:
        try:
            result = spec.handler(context, _as_mapping(payload))
            if spec.mutates and persist:
                core_logic.persist_context(context)
        except BusinessRuleViolation as error:
            log.warning("Action '%s' failed: %s", spec.name, error)
            return failure(str(error))
        except Exception as error:
            log.exception("Unexpected error during action '%s'", spec.name)
            if spec.mutates and persist:
                _rollback(context, spec.name)
            return failure(str(error))
    return result


def _rollback(context: core_logic.RuntimeContext, action: str) -> None:
    try:
        core_logic.discard_unsaved_changes(context)
    except (OSError, ValueError):
        log.exception("Could not reload the workbook after failed action '%s'", action)


def handle_get(context: core_logic.RuntimeContext, params: Mapping[str, Any]) -> Dict[str, Any]:
    """Route a GET-style request whose ``action`` sits in the query parameters."""
    action = params.get("action")
    spec = ACTIONS.get(action or "")
    if spec is None or spec.method != "GET":
        return failure("Unknown or unsupported GET action.")
    payload = {key: value for key, value in params.items() if key != "action"}
    return dispatch_action(context, action, payload)


def handle_post(context: core_logic.RuntimeContext, body: str) -> Dict[str, Any]:
    """Route a POST-style request whose body is ``{"action": ..., "data": ...}``."""
    try:
        params = json.loads(body)
    except (TypeError, ValueError):
        return failure("Invalid JSON format in request body.")
    if not isinstance(params, dict):
        return failure("Invalid JSON format in request body.")

    action = params.get("action")
    spec = ACTIONS.get(action or "")
    if spec is None or spec.method != "POST":
        return failure("Unknown or unsupported POST action.")
    return dispatch_action(context, action, params.get("data"))


__all__ = [
    "ActionSpec",
    "ACTIONS",
    "dispatch_action",
    "handle_get",
    "handle_post",
    "success",
    "failure",
]
