"""Integration tests describing the end-to-end Sandwich Ledger workflows.

These scenarios exercise the data access layer, the business logic layer and
the outer boundaries (action API and CLI) together against real workbooks on
disk.
"""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime

from sandwich_ledger import api, cli, core_logic, data_manager


def test_customer_and_sale_lifecycle_flow(runtime_context):
    """Register, sell, pay and summarize with a save/reload between steps."""

    context = runtime_context

    customer = core_logic.register_customer(
        context,
        core_logic.CustomerCommand(
            first_name="Nathalia",
            last_name="Cruz",
            phone="317 635 9773",
            email="nathalia@mail.com",
        ),
    )

    # Persist and reload so every later step reads what was actually written.
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    sale = core_logic.register_sale(
        context,
        core_logic.SaleCommand(
            customer_id=customer.customer_id,
            quantity=3,
            amount_paid=10000,
            timestamp=datetime(2025, 3, 14, 9, 30, tzinfo=UTC),
        ),
    )
    core_logic.rebuild_summary(context)
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    assert core_logic.list_pending_sales(context) == [sale]
    assert [entry.status for entry in core_logic.list_summary(context)] == ["pending"]

    core_logic.record_payment(
        context,
        core_logic.PaymentCommand(sale_id=sale.sale_id, amount=sale.pending_balance),
    )
    core_logic.rebuild_summary(context)
    core_logic.persist_context(context)
    context = core_logic.refresh_context(context)

    assert [entry.status for entry in core_logic.list_summary(context)] == ["settled"]
    assert core_logic.list_pending_sales(context) == []
    (stored,) = core_logic.list_sales(context, "2025-03")
    assert (stored.amount_paid, stored.pending_balance, stored.status) == (15000, 0, "Paid")


def test_counters_survive_reload(runtime_context):
    """Identifiers continue from the persisted counters after a restart."""

    context = runtime_context
    for index in range(2):
        core_logic.register_customer(
            context,
            core_logic.CustomerCommand(
                first_name="Guest",
                last_name=str(index),
                phone=f"300000000{index}",
            ),
        )
    core_logic.persist_context(context)

    reloaded = core_logic.refresh_context(context)
    third = core_logic.register_customer(
        reloaded,
        core_logic.CustomerCommand(first_name="Guest", last_name="2", phone="3000000002"),
    )

    assert third.customer_id == "C00003"


def test_rejected_sale_leaves_disk_untouched(config_factory):
    """A failed action through the API saves nothing."""

    bundle = config_factory()
    context = core_logic.load_runtime_context(bundle.config_path)
    api.dispatch_action(
        context,
        "registerCustomer",
        {"first_name": "Ana", "last_name": "Ruiz", "phone": "3001234567"},
    )

    result = api.dispatch_action(
        context,
        "registerSale",
        {"customerId": "C00001", "quantity": 1, "amountPaid": 999999},
    )

    assert result["success"] is False
    reloaded = core_logic.load_runtime_context(bundle.config_path)
    assert core_logic.list_sales(reloaded) == []
    assert data_manager.locate_setting(reloaded.workbook, "last_sale_id_number")[1] == 0


def test_failed_save_discards_unsaved_sale(config_factory, monkeypatch):
    """A sale whose save fails is not written out by the next action."""

    bundle = config_factory()
    context = core_logic.load_runtime_context(bundle.config_path)
    api.dispatch_action(
        context,
        "registerCustomer",
        {"first_name": "Ana", "last_name": "Ruiz", "phone": "3001234567"},
    )

    def locked_disk(_context):
        raise PermissionError("disk locked")

    with monkeypatch.context() as patch:
        patch.setattr(api.core_logic, "persist_context", locked_disk)
        result = api.dispatch_action(
            context,
            "registerSale",
            {"customerId": "C00001", "quantity": 1, "amountPaid": 0},
        )

    assert result == {"success": False, "error": "disk locked"}
    assert core_logic.list_sales(context) == []
    assert len(core_logic.list_customers(context)) == 1
    assert data_manager.locate_setting(context.workbook, "last_sale_id_number")[1] == 0

    retried = api.dispatch_action(
        context,
        "registerSale",
        {"customerId": "C00001", "quantity": 1, "amountPaid": 0},
    )

    assert retried["sale"]["sale_id"] == "S00001"
    reloaded = core_logic.load_runtime_context(bundle.config_path)
    assert [sale.sale_id for sale in core_logic.list_sales(reloaded)] == ["S00001"]


def test_concurrent_registrations_receive_distinct_ids(runtime_context):
    """Callers sharing one context never receive the same identifier."""

    context = runtime_context
    results = []
    results_lock = threading.Lock()

    def worker(index: int) -> None:
        outcome = api.dispatch_action(
            context,
            "registerCustomer",
            {"first_name": "Guest", "last_name": str(index), "phone": f"30000000{index:02d}"},
            persist=False,
        )
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(12)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert all(outcome["success"] for outcome in results)
    issued = sorted(outcome["customer"]["customer_id"] for outcome in results)
    assert issued == [f"C{number:05d}" for number in range(1, 13)]


def test_cli_customer_sale_and_pending_flow(config_factory, capsys):
    """Drive the CLI end to end and read the results back from disk."""

    bundle = config_factory()
    base = ["--config", str(bundle.config_path)]

    assert cli.main([*base, "add-customer", "--first-name", "Ana", "--last-name", "Ruiz", "--phone", "3001234567"]) == 0
    assert cli.main([*base, "sale", "--customer-id", "C00001", "--quantity", "2", "--amount-paid", "0"]) == 0
    assert cli.main([*base, "summary"]) == 0
    capsys.readouterr()

    assert cli.main([*base, "pending"]) == 0
    pending = json.loads(capsys.readouterr().out)
    assert [row["sale_id"] for row in pending] == ["S00001"]
    assert pending[0]["total_price"] == 2 * bundle.unit_price

    assert cli.main([*base, "pay", "--sale-id", "S00001", "--amount", str(2 * bundle.unit_price)]) == 0
    assert cli.main([*base, "summary"]) == 0
    capsys.readouterr()

    assert cli.main([*base, "pending"]) == 0
    assert json.loads(capsys.readouterr().out) == []


def test_cli_duplicate_customer_exit_code(config_factory, capsys):
    bundle = config_factory()
    args = [
        "--config",
        str(bundle.config_path),
        "add-customer",
        "--first-name",
        "Ana",
        "--last-name",
        "Ruiz",
        "--phone",
        "3001234567",
    ]

    assert cli.main(args) == 0
    assert cli.main(args) == 2
    capsys.readouterr()

    context = core_logic.load_runtime_context(bundle.config_path)
    assert len(core_logic.list_customers(context)) == 1


def test_cli_request_command_persists(config_factory, capsys):
    bundle = config_factory()
    payload = json.dumps({"first_name": "Ana", "last_name": "Ruiz", "phone": "3001234567"})

    assert cli.main(["--config", str(bundle.config_path), "request", "registerCustomer", "--data", payload]) == 0
    capsys.readouterr()

    context = core_logic.load_runtime_context(bundle.config_path)
    assert core_logic.find_customer_by_phone(context, "3001234567") is not None
