"""Command-line entry points for the retail ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the requests consumed by the business layer, and
printing read-only reports. Every command declares the permission it needs;
the acting user's role is checked before the command runs.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import codec, core_logic, log, reports
from .constants import FawryPaymentType, LifecycleState, PaymentStatus, Permission, RecordKind, Role, has_permission
from .models import Record, SaleItem


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured, guarded, and executed."""

    name: str
    help_text: str
    permission: Permission
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


class PermissionDeniedError(core_logic.BusinessRuleViolation):
    """Raised when the acting user's role does not grant a command."""


class InsufficientStockError(core_logic.ValidationError):
    """Raised when a sale or invoice asks for more stock than is on hand."""


def parse_money(raw: str) -> Decimal:
    """argparse ``type`` for monetary amounts."""

    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid amount: {raw!r}") from exc
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"invalid amount: {raw!r}")
    return value


def parse_day(raw: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date (expected YYYY-MM-DD): {raw!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-cli",
        description="Command-line tools for the retail ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini).",
    )
    parser.add_argument(
        "--user",
        default=None,
        help="Username to act as (defaults to DefaultUser from config.ini).",
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
    """Declare mutating CLI commands such as sales and payments."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "update-product": register_update_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "update-customer": register_update_customer_command(subparsers),
        "delete-customer": register_delete_customer_command(subparsers),
        "sale": register_record_command(
            "sale", "Record a sale.", Permission.CREATE_SALES, run_sale
        ),
        "invoice": register_invoice_command(subparsers),
        "fawry-sale": register_fawry_sale_command(subparsers),
        "sales-return": register_record_command(
            "sales-return", "Record a sales return.", Permission.MANAGE_RETURNS, run_sales_return
        ),
        "invoice-return": register_record_command(
            "invoice-return", "Record an invoice return.", Permission.MANAGE_RETURNS, run_invoice_return
        ),
        "unarchive": register_unarchive_command(subparsers),
        "pay": register_pay_command(subparsers),
        "delete-record": register_lifecycle_command(
            "delete-record", "Move a record to the trash.", run_delete_record
        ),
        "restore-record": register_lifecycle_command(
            "restore-record", "Restore a record from the trash.", run_restore_record
        ),
        "purge-record": register_lifecycle_command(
            "purge-record", "Permanently delete a trashed record.", run_purge_record
        ),
        "backup": register_backup_command(subparsers),
        "restore": register_restore_command(subparsers),
        "set-company": register_set_company_command(subparsers),
        "set-print": register_set_print_command(subparsers),
        "update-user": register_update_user_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
        "report": register_report_command(subparsers),
        "statement": register_statement_command(subparsers),
        "records": register_records_command(subparsers),
        "trash": register_trash_command(subparsers),
        "log": register_log_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


# ---------------------------------------------------------------------------
# Catalogue commands
# ---------------------------------------------------------------------------


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--price", type=parse_money, required=True)
        parser.add_argument("--cost", type=parse_money, required=True)
        parser.add_argument("--min-stock", type=int, default=0)
        parser.add_argument("--image-url", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.MANAGE_INVENTORY,
        register=registrar,
        execute=run_add_product,
    )


def register_update_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Edit fields of an existing product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--quantity", type=int, default=None)
        parser.add_argument("--price", type=parse_money, default=None)
        parser.add_argument("--cost", type=parse_money, default=None)
        parser.add_argument("--min-stock", type=int, default=None)
        parser.add_argument("--image-url", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.MANAGE_INVENTORY,
        register=registrar,
        execute=run_update_product,
    )


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Remove a product from the catalogue."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.MANAGE_INVENTORY,
        register=registrar,
        execute=run_delete_product,
    )


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a new customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--address", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.MANAGE_CUSTOMERS,
        register=registrar,
        execute=run_add_customer,
    )


def register_update_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-customer``."""
    name = "update-customer"
    help_text = "Edit fields of an existing customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--address", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.MANAGE_CUSTOMERS,
        register=registrar,
        execute=run_update_customer,
    )


def register_delete_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-customer``."""
    name = "delete-customer"
    help_text = "Remove a customer; existing records keep their details."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.MANAGE_CUSTOMERS,
        register=registrar,
        execute=run_delete_customer,
    )


# ---------------------------------------------------------------------------
# Record commands
# ---------------------------------------------------------------------------


def add_record_arguments(parser: argparse.ArgumentParser) -> None:
    """Attach the arguments shared by every record-creating command."""
    parser.add_argument("--customer-name", default="")
    parser.add_argument("--customer-id", default=None)
    parser.add_argument(
        "--item",
        dest="items",
        action="append",
        required=True,
        metavar="PRODUCT_ID:QTY[:PRICE]",
        help="Line item; repeat for multiple items.",
    )
    parser.add_argument("--discount", type=parse_money, default=Decimal("0"))
    parser.add_argument(
        "--status",
        choices=[member.value for member in PaymentStatus],
        default=PaymentStatus.PAID.value,
    )
    parser.add_argument("--amount-paid", type=parse_money, default=None)


def register_record_command(
    name: str,
    help_text: str,
    permission: Permission,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    """Register a record-creating command that takes only the shared arguments."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_record_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, permission=permission, register=registrar, execute=execute)


def register_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoice``."""
    name = "invoice"
    help_text = "Record an invoice, optionally as an archived draft."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_record_arguments(parser)
        parser.add_argument("--archive", action="store_true", help="Store as a draft without moving stock.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.CREATE_SALES,
        register=registrar,
        execute=run_invoice,
    )


def register_fawry_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``fawry-sale``."""
    name = "fawry-sale"
    help_text = "Record an instant (Fawry) sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_record_arguments(parser)
        parser.add_argument(
            "--payment-type",
            choices=[member.value for member in FawryPaymentType],
            default=FawryPaymentType.CASH.value,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.CREATE_SALES,
        register=registrar,
        execute=run_fawry_sale,
    )


def register_unarchive_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``unarchive``."""
    name = "unarchive"
    help_text = "Promote an archived invoice to the invoice list."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--record-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.CREATE_SALES,
        register=registrar,
        execute=run_unarchive,
    )


def register_pay_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Apply a customer payment to their oldest open debts."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--amount", type=parse_money, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.MANAGE_CUSTOMERS,
        register=registrar,
        execute=run_pay,
    )


def register_lifecycle_command(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    """Register a trash lifecycle command addressed by kind and record id."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[member.value for member in RecordKind], required=True)
        parser.add_argument("--record-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.DELETE_RECORDS,
        register=registrar,
        execute=execute,
    )


# ---------------------------------------------------------------------------
# Data and settings commands
# ---------------------------------------------------------------------------


def register_backup_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``backup``."""
    name = "backup"
    help_text = "Write a JSON backup of all ledger data."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--destination",
            type=Path,
            default=Path("."),
            help="Backup file or directory (defaults to the current directory).",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.BACKUP_DATA,
        register=registrar,
        execute=run_backup,
    )


def register_restore_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restore``."""
    name = "restore"
    help_text = "Replace all ledger data with a JSON backup."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--source", type=Path, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.BACKUP_DATA,
        register=registrar,
        execute=run_restore,
    )


def register_set_company_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-company``."""
    name = "set-company"
    help_text = "Update the company details printed on records."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", default=None)
        parser.add_argument("--address", default=None)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--logo", default=None)
        parser.add_argument("--logo-opacity", type=float, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.MANAGE_SETTINGS,
        register=registrar,
        execute=run_set_company,
    )


def register_set_print_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-print``."""
    name = "set-print"
    help_text = "Update print settings."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--show-cost-on-print", action=argparse.BooleanOptionalAction, default=None)
        parser.add_argument("--footer-text", default=None)
        parser.add_argument("--font-size", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.MANAGE_SETTINGS,
        register=registrar,
        execute=run_set_print,
    )


def register_update_user_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-user``."""
    name = "update-user"
    help_text = "Edit a user; an empty --password clears it."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--user-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--username", default=None)
        parser.add_argument("--password", default=None)
        parser.add_argument("--role", choices=[member.value for member in Role], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.MANAGE_USERS,
        register=registrar,
        execute=run_update_user,
    )


# ---------------------------------------------------------------------------
# Read commands
# ---------------------------------------------------------------------------


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--low", action="store_true", help="Only list products at or below minimum stock.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.VIEW_DASHBOARD,
        register=registrar,
        execute=run_stock_report,
    )


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display stock value, sales, and profit totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--today", type=parse_day, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.VIEW_DASHBOARD,
        register=registrar,
        execute=run_dashboard_report,
    )


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Display a sales report for a date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", type=parse_day, required=True)
        parser.add_argument("--end", type=parse_day, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.VIEW_REPORTS,
        register=registrar,
        execute=run_period_report,
    )


def register_statement_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``statement``."""
    name = "statement"
    help_text = "Display a customer's records, payments, and balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.VIEW_RECORDS,
        register=registrar,
        execute=run_statement_report,
    )


def register_records_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``records``."""
    name = "records"
    help_text = "List active records of one kind."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[member.value for member in RecordKind], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.VIEW_RECORDS,
        register=registrar,
        execute=run_records_report,
    )


def register_trash_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``trash``."""
    name = "trash"
    help_text = "List trashed records of one kind."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[member.value for member in RecordKind], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.DELETE_RECORDS,
        register=registrar,
        execute=run_trash_report,
    )


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the activity log."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--limit", type=int, default=20)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        permission=Permission.VIEW_LOGS,
        register=registrar,
        execute=run_log_report,
    )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None, *, username: Optional[str] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(config_path, username=username)


def require_permission(context: core_logic.RuntimeContext, spec: CommandSpec) -> None:
    """Reject the command when the acting user's role lacks its permission."""
    user = context.acting_user
    if not has_permission(user.role, spec.permission):
        log.warning("User '%s' (%s) denied '%s'", user.username, user.role.value, spec.name)
        raise PermissionDeniedError(f"User '{user.username}' is not allowed to run '{spec.name}'")


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Check permissions and dispatch the parsed arguments to the executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    require_permission(context, spec)
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


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def _changes(args: argparse.Namespace, *fields: str) -> Dict[str, Any]:
    return {field: getattr(args, field) for field in fields if getattr(args, field, None) is not None}


def require_stock_on_hand(context: core_logic.RuntimeContext, items: Sequence[SaleItem]) -> None:
    """Reject items asking for more of a product than is on hand.

    Quantities of repeated products are added up before the check.

    Raises:
        InsufficientStockError: If any product would go below zero.
    """
    requested: Dict[str, int] = {}
    for item in items:
        requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity
    for product_id, quantity in requested.items():
        product = core_logic.get_product(context, product_id)
        if product.quantity < quantity:
            log.error("Insufficient stock for '%s': %d requested, %d on hand", product.name, quantity, product.quantity)
            raise InsufficientStockError(
                f"Only {product.quantity} of '{product.name}' on hand; {quantity} requested"
            )


def translate_items(
    context: core_logic.RuntimeContext,
    raw_items: Sequence[str],
    *,
    check_stock: bool = False,
) -> List[SaleItem]:
    """Turn ``PRODUCT_ID:QTY[:PRICE]`` strings into line items.

    Raises:
        core_logic.ValidationError: If an item string is malformed.
        core_logic.MissingReferenceError: If a product id is unknown.
        InsufficientStockError: If ``check_stock`` is set and an item asks
            for more than is on hand.
    """
    items: List[SaleItem] = []
    for raw in raw_items:
        parts = raw.split(":")
        if len(parts) not in (2, 3):
            raise core_logic.ValidationError(f"Malformed item '{raw}'; expected PRODUCT_ID:QTY[:PRICE]")
        try:
            quantity = int(parts[1])
            price = Decimal(parts[2]) if len(parts) == 3 else None
        except (ValueError, InvalidOperation) as exc:
            raise core_logic.ValidationError(f"Malformed item '{raw}'") from exc
        items.append(core_logic.item_from_product(context, parts[0], quantity, price=price))
    if check_stock:
        require_stock_on_hand(context, items)
    return items


def translate_record(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    *,
    check_stock: bool = False,
) -> core_logic.RecordCommand:
    """Translate CLI args into a record command object.

    A record needs ``--customer-id`` or ``--customer-name``. A name without an
    id registers a new customer so later payments can reach the record.

    Raises:
        core_logic.ValidationError: If neither customer option is given or an
            item is malformed.
        core_logic.MissingReferenceError: If the customer or a product is
            unknown.
    """
    customer_name = (args.customer_name or "").strip()
    customer_id = args.customer_id
    if customer_id is None and not customer_name:
        log.error("Record rejected: no customer given")
        raise core_logic.ValidationError("A record needs --customer-id or --customer-name")
    if customer_id is not None:
        core_logic.get_customer(context, customer_id)

    items = translate_items(context, args.items, check_stock=check_stock)
    if customer_id is None:
        customer_id = core_logic.add_customer(context, name=customer_name).id

    payment_type = getattr(args, "payment_type", None)
    return core_logic.RecordCommand(
        customer_name=customer_name,
        customer_id=customer_id,
        items=items,
        discount=args.discount,
        payment_status=PaymentStatus(args.status),
        amount_paid=args.amount_paid,
        payment_type=FawryPaymentType(payment_type) if payment_type is not None else None,
    )


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-product request."""
    return {
        "name": args.name,
        "quantity": args.quantity,
        "price": args.price,
        "cost": args.cost,
        "min_stock": args.min_stock,
        "image_url": args.image_url,
    }


def translate_update_user(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into a partial user edit."""
    changes = _changes(args, "name", "username", "password")
    if args.role is not None:
        changes["role"] = Role(args.role)
    return changes


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, **translate_add_product(args))
    print(product.id)
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    changes = _changes(args, "name", "quantity", "price", "cost", "min_stock", "image_url")
    core_logic.update_product(context, args.product_id, **changes)
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_product(context, args.product_id)
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow in the BLL."""
    customer = core_logic.add_customer(context, name=args.name, phone=args.phone, address=args.address)
    print(customer.id)
    return 0


def run_update_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.update_customer(context, args.customer_id, **_changes(args, "name", "phone", "address"))
    return 0


def run_delete_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_customer(context, args.customer_id)
    return 0


def _print_created(record: Record) -> None:
    print(f"{record.id} #{record.record_number} {record.final_total} {record.payment_status.value}")


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    _print_created(core_logic.add_sale(context, translate_record(context, args, check_stock=True)))
    return 0


def run_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice workflow via the BLL."""
    command = translate_record(context, args, check_stock=True)
    _print_created(core_logic.add_invoice(context, command, archive=args.archive))
    return 0


def run_fawry_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the instant sale workflow via the BLL."""
    _print_created(core_logic.add_fawry_sale(context, translate_record(context, args)))
    return 0


def run_sales_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_created(core_logic.add_sales_return(context, translate_record(context, args)))
    return 0


def run_invoice_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_created(core_logic.add_invoice_return(context, translate_record(context, args)))
    return 0


def _report_lifecycle(outcome: Optional[Record], verb: str, record_id: str) -> int:
    if outcome is None:
        print(f"No record {record_id} to {verb}")
        return 1
    print(f"{verb.capitalize()}d record #{outcome.record_number}")
    return 0


def run_unarchive(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the unarchive workflow via the BLL."""
    return _report_lifecycle(core_logic.unarchive_invoice(context, args.record_id), "unarchive", args.record_id)


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment allocation workflow via the BLL."""
    result = core_logic.allocate_payment(context, args.customer_id, args.amount)
    for leg in result.applied:
        print(f"#{leg.record_number} {leg.kind.value}: paid {leg.amount}, remaining {leg.remaining}")
    if result.unallocated > 0:
        print(f"Unallocated: {result.unallocated}")
    return 0


def run_delete_record(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    outcome = core_logic.soft_delete_record(context, RecordKind(args.kind), args.record_id)
    return _report_lifecycle(outcome, "trash", args.record_id)


def run_restore_record(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    outcome = core_logic.restore_record(context, RecordKind(args.kind), args.record_id)
    return _report_lifecycle(outcome, "restore", args.record_id)


def run_purge_record(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    outcome = core_logic.permanent_delete_record(context, RecordKind(args.kind), args.record_id)
    return _report_lifecycle(outcome, "purge", args.record_id)


def run_backup(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the backup workflow via the BLL."""
    print(core_logic.backup_data(context, args.destination))
    return 0


def run_restore(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the restore workflow via the BLL."""
    payload = Path(args.source).expanduser().read_text(encoding="utf-8")
    core_logic.restore_data(context, payload)
    return 0


def run_set_company(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.update_company_info(context, **_changes(args, "name", "address", "phone", "logo", "logo_opacity"))
    return 0


def run_set_print(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    changes = _changes(args, "show_cost_on_print", "footer_text", "font_size")
    core_logic.update_print_settings(context, **changes)
    return 0


def run_update_user(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.update_user(context, args.user_id, **translate_update_user(args))
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    state = context.state
    products = reports.low_stock_products(state) if args.low else state.products
    for product in products:
        print(f"{product.id}\t{product.name}\t{product.quantity}\t(min {product.min_stock})")
    return 0


def run_dashboard_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the dashboard reporting workflow."""
    today = args.today if args.today is not None else datetime.now(UTC).date()
    summary = reports.dashboard_summary(context.state, today)
    print(f"Products: {summary.product_count}")
    print(f"Customers: {summary.customer_count}")
    print(f"Stock value: {summary.stock_value:.2f}")
    print(f"Sales value: {summary.sales_value:.2f}")
    print(f"Total profit: {summary.total_profit:.2f}")
    print(f"Profit today: {summary.today_profit:.2f}")
    print(f"Low stock: {', '.join(product.name for product in summary.low_stock) or '-'}")
    return 0


def run_period_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the period reporting workflow."""
    report = reports.period_report(context.state, args.start, args.end)
    print(f"Period: {report.start.isoformat()} .. {report.end.isoformat()}")
    print(f"Revenue: {report.revenue:.2f}")
    print(f"Profit: {report.profit:.2f}")
    print(f"Returns: {report.returns_total:.2f}")
    print(f"Transactions: {report.transaction_count}")
    for day in report.daily:
        print(f"  {day.day.isoformat()}\t{day.sales:.2f}\t{day.profit:.2f}")
    for entry in report.top_products:
        print(f"  product {entry.name}: {entry.value}")
    for entry in report.top_customers:
        print(f"  customer {entry.name}: {entry.value:.2f}")
    for status, count in report.status_counts.items():
        print(f"  {status.value}: {count}")
    return 0


def run_statement_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the customer statement workflow."""
    statement = reports.customer_statement(context.state, args.customer_id)
    for kind, record in statement.records:
        print(f"#{record.record_number}\t{kind.value}\t{record.final_total}\t{record.amount_remaining}")
    print(f"Total purchases: {statement.total_purchases:.2f}")
    print(f"Outstanding: {statement.outstanding:.2f}")
    return 0


def _print_records(records: Sequence[Record]) -> None:
    for record in records:
        print(
            f"{record.id}\t#{record.record_number}\t{record.customer_name}\t"
            f"{record.final_total}\t{record.payment_status.value}"
        )


def run_records_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_records(core_logic.list_records(context, RecordKind(args.kind)))
    return 0


def run_trash_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_records(core_logic.list_records(context, RecordKind(args.kind), state=LifecycleState.TRASHED))
    return 0


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the activity log reporting workflow."""
    for entry in core_logic.list_activity(context)[: args.limit]:
        print(f"{entry.timestamp.isoformat()}\t{entry.user}\t{entry.action}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, codec.InvalidFormatError):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(args.config, username=args.user)
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
