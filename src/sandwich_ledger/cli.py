"""Command-line entry points for the Sandwich Ledger toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict, dataclass, is_dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import api, core_logic, data_manager, log, setup_excel


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-cli",
        description="Command-line tools for the Sandwich Ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as registrations and payments."""
    specs = {
        "setup": register_setup_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "update-customer": register_update_customer_command(subparsers),
        "sale": register_sale_command(subparsers),
        "pay": register_pay_command(subparsers),
        "summary": register_summary_command(subparsers),
        "request": register_request_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and lookups."""
    specs = {
        "customers": register_customers_command(subparsers),
        "find-customer": register_find_customer_command(subparsers),
        "pending": register_pending_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _simple_spec(name: str, help_text: str, execute, *, mutates: bool) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute, mutates=mutates)


def register_setup_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``setup``."""
    return _simple_spec(
        "setup",
        "Create missing sheets and identity counters.",
        run_setup,
        mutates=True,
    )


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a new customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--first-name", required=True)
        parser.add_argument("--last-name", required=True)
        parser.add_argument("--phone", required=True)
        parser.add_argument("--email", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_update_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-customer``."""
    name = "update-customer"
    help_text = "Update fields of an existing customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--first-name", default=None)
        parser.add_argument("--last-name", default=None)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--email", default=None, help="Pass an empty string to clear the email.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_customer)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale in the current month's ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--quantity", required=True, type=int)
        parser.add_argument("--amount-paid", required=True, type=int)
        parser.add_argument("--unit-price", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_pay_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Apply a payment to an outstanding sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument("--amount", required=True, type=int)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    return _simple_spec(
        "summary",
        "Rebuild the monthly pending/settled summary.",
        run_summary,
        mutates=True,
    )


def register_request_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``request``."""
    name = "request"
    help_text = "Send a raw action and JSON payload through the action API."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("action")
        parser.add_argument("--data", default="{}", help="JSON object passed as the action payload.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_request)


def register_customers_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``customers``."""
    return _simple_spec("customers", "List every customer.", run_customers, mutates=False)


def register_find_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``find-customer``."""
    name = "find-customer"
    help_text = "Look up a customer by id, phone, email, or full name."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        group = parser.add_mutually_exclusive_group(required=True)
        group.add_argument("--customer-id")
        group.add_argument("--phone")
        group.add_argument("--email")
        group.add_argument("--name", nargs=2, metavar=("FIRST", "LAST"))
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_find_customer,
        mutates=False,
    )


def register_pending_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pending``."""
    return _simple_spec(
        "pending",
        "List sales with an outstanding balance in months marked pending.",
        run_pending,
        mutates=False,
    )


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def ensure_workbook_file(config_path: Optional[Path] = None) -> Path:
    """Create the configured workbook when it does not exist yet."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    resolved = target.expanduser().resolve()
    parser = data_manager.read_config(resolved)
    settings = data_manager.parse_settings(parser, base_path=resolved.parent)
    if not settings.data_file.exists():
        setup_excel.create_master_workbook(settings.data_file)
        log.info("Created workbook '%s'", settings.data_file)
    return settings.data_file


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_add_customer(args: argparse.Namespace) -> core_logic.CustomerCommand:
    """Translate CLI args into a customer registration command."""
    return core_logic.CustomerCommand(
        first_name=args.first_name,
        last_name=args.last_name,
        phone=args.phone,
        email=args.email,
    )


def translate_update_customer(args: argparse.Namespace) -> core_logic.CustomerUpdate:
    """Translate CLI args into a partial customer update."""
    return core_logic.CustomerUpdate(
        first_name=args.first_name,
        last_name=args.last_name,
        phone=args.phone,
        email=args.email,
    )


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        customer_id=args.customer_id,
        quantity=args.quantity,
        amount_paid=args.amount_paid,
        unit_price=args.unit_price,
    )


def translate_pay(args: argparse.Namespace) -> core_logic.PaymentCommand:
    """Translate CLI args into a payment command object."""
    return core_logic.PaymentCommand(sale_id=args.sale_id, amount=args.amount)


def emit(payload: Any) -> None:
    """Print ``payload`` as indented JSON, expanding dataclass records."""
    if is_dataclass(payload):
        payload = asdict(payload)
    elif isinstance(payload, list):
        payload = [asdict(item) if is_dataclass(item) else item for item in payload]
    print(json.dumps(payload, indent=2, default=str))


def run_setup(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the setup workflow in the BLL."""
    emit(core_logic.setup_workbook(context))
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the customer registration workflow in the BLL."""
    emit(core_logic.register_customer(context, translate_add_customer(args)))
    return 0


def run_update_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the customer update workflow in the BLL."""
    emit(core_logic.update_customer(context, args.customer_id, translate_update_customer(args)))
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    emit(core_logic.register_sale(context, translate_sale(args)))
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment workflow via the BLL."""
    emit(core_logic.record_payment(context, translate_pay(args)))
    return 0


def run_summary(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the summary rebuild workflow."""
    emit(core_logic.rebuild_summary(context))
    return 0


def run_request(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Send a raw action through the action API and print its tagged result."""
    try:
        payload = json.loads(args.data)
    except ValueError as error:
        raise core_logic.ValidationError(f"--data is not valid JSON: {error}") from error
    result = api.dispatch_action(context, args.action, payload, persist=False)
    emit(result)
    return 0 if result.get("success") else 2


def run_customers(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the customer listing workflow."""
    emit(core_logic.list_customers(context))
    return 0


def run_find_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the customer lookup workflow; exit code 4 when nothing matches."""
    if args.customer_id:
        customer = core_logic.find_customer_by_id(context, args.customer_id)
    elif args.phone:
        customer = core_logic.find_customer_by_phone(context, args.phone)
    elif args.email:
        customer = core_logic.find_customer_by_email(context, args.email)
    else:
        customer = core_logic.find_customer_by_name(context, *args.name)
    emit(customer)
    return 0 if customer is not None else 4


def run_pending(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the pending sales reporting workflow."""
    emit(core_logic.list_pending_sales(context))
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        config_path = getattr(args, "config", None)
        if args.command == "setup":
            ensure_workbook_file(config_path)
        context = load_runtime_context(config_path)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
