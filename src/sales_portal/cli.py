"""Command-line entry points for the sales portal.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the request objects consumed by the lifecycle
engine and the reporting aggregator. Every command prints the resulting
:class:`~sales_portal.errors.ServiceResult` as JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import log
from .constants import OrderStatus, Role
from .errors import SalesPortalError, ServiceResult
from .runtime import RuntimeContext, ensure_schema_version
from .runtime import load_runtime_context as _load_runtime_context
from .schemas import OrderRequest, UpdateOrderRequest


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="sales-cli",
        description="Command-line tools for the sales order portal.",
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
    """Declare mutating CLI commands such as submissions and status updates."""
    specs = {
        "add-user": register_add_user_command(subparsers),
        "submit-order": register_submit_order_command(subparsers),
        "update-status": register_update_status_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and invoice views."""
    specs = {
        "orders": register_orders_command(subparsers),
        "summary": register_summary_command(subparsers),
        "invoices": register_invoices_command(subparsers),
        "customer-invoices": register_customer_invoices_command(subparsers),
        "stock": register_stock_command(subparsers),
        "order-details": register_order_details_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_user_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-user``."""
    name = "add-user"
    help_text = "Register a portal user with a role and assigned locations."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--user-name", required=True)
        parser.add_argument("--role", choices=[member.value for member in Role], required=True)
        parser.add_argument("--salesperson-code", required=True)
        parser.add_argument("--locations", default="", help="Comma separated location codes.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_user)


def register_submit_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``submit-order``."""
    name = "submit-order"
    help_text = "Submit a new order described by a JSON file."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--user-id", type=int, required=True)
        parser.add_argument("--order-file", type=Path, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_submit_order)


def register_update_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-status``."""
    name = "update-status"
    help_text = "Move an order to another status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-number", type=int, required=True)
        parser.add_argument("--status", choices=[member.value for member in OrderStatus], required=True)
        parser.add_argument("--reject-reason", default=None)
        parser.add_argument("--tracking-number", default=None)
        parser.add_argument("--delivery-person", default=None)
        parser.add_argument("--delivery-date", default=None, help="YYYY-MM-DD")
        parser.add_argument("--note", default=None)
        parser.add_argument("--expected-version", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_status)


def register_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``orders``."""
    name = "orders"
    help_text = "List the orders of one status visible to a user."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--user-id", type=int, required=True)
        parser.add_argument("--status", choices=[member.value for member in OrderStatus], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_orders_report)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    name = "summary"
    help_text = "Display pending, delivered and rejected order counts."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--user-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_summary_report)


def register_invoices_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoices``."""
    name = "invoices"
    help_text = "Display posted invoices of the customers visible to a user."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--user-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoices_report)


def register_customer_invoices_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``customer-invoices``."""
    name = "customer-invoices"
    help_text = "Display the open invoices of one customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-code", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_customer_invoices_report)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display stock per item and location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_order_details_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``order-details``."""
    name = "order-details"
    help_text = "Display the locations, customers and items a user can order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--user-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_order_details_report)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return _load_runtime_context(target)


def dispatch_command(
    context: RuntimeContext,
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


def to_jsonable(value: Any) -> Any:
    """Turn dataclasses, enums, decimals and dates into JSON-ready values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Mapping):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def emit_result(result: ServiceResult) -> int:
    """Print ``result`` as JSON and map it to an exit code."""
    print(json.dumps(to_jsonable(result), indent=2))
    return 0 if result.success else 2


def run_service(context: RuntimeContext, call: Callable[[], Awaitable[ServiceResult]]) -> int:
    """Run one service coroutine on a fresh event loop and report its result."""

    async def runner() -> ServiceResult:
        try:
            return await call()
        finally:
            await context.aclose()

    return emit_result(asyncio.run(runner()))


def translate_submit_order(args: argparse.Namespace) -> OrderRequest:
    """Translate CLI args into an order request read from ``--order-file``."""
    path = Path(args.order_file).expanduser().resolve()
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle, parse_float=Decimal)
    return OrderRequest.from_mapping(payload)


def translate_update_status(args: argparse.Namespace) -> UpdateOrderRequest:
    """Translate CLI args into a status update request."""
    return UpdateOrderRequest(
        order_number=args.order_number,
        status=OrderStatus(args.status),
        reject_reason=args.reject_reason,
        tracking_number=args.tracking_number,
        delivery_person_name=args.delivery_person,
        delivery_date=date.fromisoformat(args.delivery_date) if args.delivery_date else None,
        note=args.note,
        expected_version=args.expected_version,
    )


def run_add_user(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Create a user in the directory."""
    locations = [code for code in args.locations.split(",") if code.strip()]

    async def call() -> ServiceResult:
        try:
            user = await context.users.add_user(args.user_name, Role(args.role), args.salesperson_code, locations)
        except ValueError as exc:
            return ServiceResult.fail(str(exc))
        return ServiceResult.ok("User added successfully", data=user)

    return run_service(context, call)


def run_submit_order(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the submission workflow in the lifecycle engine."""
    request = translate_submit_order(args)
    return run_service(context, lambda: context.engine.submit_order(args.user_id, request))


def run_update_status(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the status transition workflow in the lifecycle engine."""
    request = translate_update_status(args)
    return run_service(context, lambda: context.engine.update_order_status(request))


def run_orders_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    status = OrderStatus(args.status)
    return run_service(context, lambda: context.reporting.list_orders(args.user_id, status))


def run_summary_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    return run_service(context, lambda: context.reporting.order_status_summary(args.user_id))


def run_invoices_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    return run_service(context, lambda: context.reporting.customer_invoices(args.user_id))


def run_customer_invoices_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    return run_service(context, lambda: context.reporting.customer_invoice_details(args.customer_code))


def run_stock_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    return run_service(context, context.reporting.sales_stock_details)


def run_order_details_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    return run_service(context, lambda: context.reporting.order_creation_details(args.user_id))


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, SalesPortalError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
