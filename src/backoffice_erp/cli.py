"""Command-line entry points for the back-office ERP.

The module only wires argparse onto the business layer: every sub-command is
described by a :class:`CommandSpec`, its arguments are translated into the
command objects of :mod:`backoffice_erp.core_logic`, and raised exceptions are
mapped onto exit codes by :func:`handle_cli_error`. Write commands load the
document, apply one change and save it, so each invocation is one audited
edit.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log, pricing
from .constants import DocumentKind, DocumentStatus, ReturnType
from .exceptions import BusinessRuleViolation, PartialBatchFailure, PersistenceFailure, ValidationError
from .lifecycle import ActorContext


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed.

    Commands with ``needs_context`` set to ``False`` run without a workbook
    and receive ``None`` as their context.
    """

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[Optional[core_logic.RuntimeContext], argparse.Namespace], int]
    needs_context: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="backoffice-cli",
        description="Price, edit and audit invoices and purchase orders stored in the back-office workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to a search upwards from the working directory).",
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
    """Declare commands that change the workbook."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "create": register_create_command(subparsers),
        "add-item": register_add_item_command(subparsers),
        "update-item": register_update_item_command(subparsers),
        "remove-item": register_remove_item_command(subparsers),
        "extra-discount": register_extra_discount_command(subparsers),
        "set-status": register_set_status_command(subparsers),
        "return": register_return_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only commands."""
    specs = {
        "price": register_price_command(subparsers),
        "totals": register_totals_command(subparsers),
        "stock": register_stock_command(subparsers),
        "returns": register_returns_command(subparsers),
        "history": register_history_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_actor_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--actor", default=None, help="Acting user id (defaults to DefaultActor in config.ini).")
    parser.add_argument(
        "--privileged",
        action="store_true",
        help="Act through the adjustment workflow, allowing edits to locked documents.",
    )
    parser.add_argument("--reason", default=None, help="Reason recorded in the audit trail.")


def _add_line_arguments(parser: argparse.ArgumentParser, *, product_required: bool) -> None:
    parser.add_argument("--product-id", required=product_required, default=None)
    parser.add_argument("--quantity", required=True)
    parser.add_argument("--free", dest="free_quantity", default="0")
    parser.add_argument("--discount", dest="discount_percent", default="0")
    parser.add_argument("--unit-price", default=None, help="Override the catalog price.")


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--sku", default=None)
        parser.add_argument("--unit", dest="unit_of_measure", default="unit")
        parser.add_argument("--selling-price", required=True)
        parser.add_argument("--cost-price", default="0")
        parser.add_argument("--mrp", default="0")
        parser.add_argument("--quantity", default="0", help="Opening stock level.")
        parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_create_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``create``."""
    name = "create"
    help_text = "Create a draft invoice or purchase order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[member.value for member in DocumentKind], default=DocumentKind.INVOICE.value)
        parser.add_argument("--party-id", required=True, help="Customer or supplier id.")
        parser.add_argument("--sales-rep-id", default=None)
        parser.add_argument("--date", dest="document_date", default=None, help="ISO date (defaults to today).")
        parser.add_argument("--document-id", default=None)
        _add_actor_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create)


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Add a product line to a document and save it."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--document-id", required=True)
        _add_line_arguments(parser, product_required=True)
        _add_actor_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item)


def register_update_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-item``."""
    name = "update-item"
    help_text = "Change an existing line and save the document."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--document-id", required=True)
        parser.add_argument("--line-id", required=True)
        _add_line_arguments(parser, product_required=False)
        _add_actor_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_item)


def register_remove_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove-item``."""
    name = "remove-item"
    help_text = "Remove a line and save the document."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--document-id", required=True)
        parser.add_argument("--line-id", required=True)
        _add_actor_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove_item)


def register_extra_discount_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``extra-discount``."""
    name = "extra-discount"
    help_text = "Set the document-level extra discount percentage."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--document-id", required=True)
        parser.add_argument("--percent", required=True)
        _add_actor_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_extra_discount)


def register_set_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-status``."""
    name = "set-status"
    help_text = "Move a document to the next lifecycle status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--document-id", required=True)
        parser.add_argument("--status", required=True, choices=[member.value for member in DocumentStatus])
        _add_actor_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_status)


def register_return_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``return``."""
    name = "return"
    help_text = "Record returned goods against an invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--document-id", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            metavar="PRODUCT:QTY",
            help="Product and quantity returned; repeat for several products.",
        )
        parser.add_argument("--type", dest="return_type", choices=[member.value for member in ReturnType], default=ReturnType.GOOD.value)
        parser.add_argument("--reason-code", default=None)
        parser.add_argument("--notes", default=None)
        parser.add_argument("--actor", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_return)


def register_price_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``price``."""
    name = "price"
    help_text = "Price a single line without touching the workbook."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--unit-price", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--discount", dest="discount_percent", default="0")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_price, needs_context=False)


def register_totals_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``totals``."""
    name = "totals"
    help_text = "Display the lines and totals of a document."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--document-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_totals)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--include-inactive", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_returns_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``returns``."""
    name = "returns"
    help_text = "List returns recorded against a document."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--document-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_returns_report)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "Display the audit trail of a document, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--document-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(config_path)


def dispatch_command(
    context: Optional[core_logic.RuntimeContext],
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


def parse_decimal(raw: Optional[str], field: str) -> Optional[Decimal]:
    """Parse a numeric argument, keeping ``None`` as ``None``.

    Raises:
        ValidationError: If ``raw`` is not a number.
    """
    if raw is None:
        return None
    try:
        return Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"{field} must be a number, got {raw!r}") from exc


def translate_actor(context: core_logic.RuntimeContext, args: argparse.Namespace) -> ActorContext:
    """Build the acting user from ``--actor``/``--privileged`` or the config default."""
    return ActorContext(
        actor_id=getattr(args, "actor", None) or context.settings.default_actor_id,
        privileged=bool(getattr(args, "privileged", False)),
    )


def translate_add_product(args: argparse.Namespace) -> data_manager.ProductRow:
    """Translate CLI args into a product row."""
    return data_manager.ProductRow(
        product_id=args.product_id,
        sku=args.sku or args.product_id,
        product_name=args.product_name,
        unit_of_measure=args.unit_of_measure,
        selling_price=parse_decimal(args.selling_price, "selling price"),
        cost_price=parse_decimal(args.cost_price, "cost price"),
        mrp=parse_decimal(args.mrp, "MRP"),
        available_quantity=parse_decimal(args.quantity, "quantity"),
        is_active=not getattr(args, "inactive", False),
    )


def translate_line(args: argparse.Namespace) -> core_logic.LineItemCommand:
    """Translate CLI args into a line item command."""
    return core_logic.LineItemCommand(
        product_id=args.product_id,
        quantity=parse_decimal(args.quantity, "quantity"),
        free_quantity=parse_decimal(args.free_quantity, "free quantity"),
        discount_percent=parse_decimal(args.discount_percent, "discount"),
        unit_price=parse_decimal(args.unit_price, "unit price"),
    )


def translate_returns(args: argparse.Namespace) -> List[core_logic.ReturnCommand]:
    """Translate repeated ``--item PRODUCT:QTY`` values into return commands."""
    commands = []
    for item in args.items:
        product_id, separator, quantity = item.rpartition(":")
        if not separator or not product_id:
            raise ValidationError(f"Return item must look like PRODUCT:QTY, got {item!r}")
        commands.append(
            core_logic.ReturnCommand(
                document_id=args.document_id,
                product_id=product_id,
                quantity=parse_decimal(quantity, "return quantity"),
                return_type=ReturnType(args.return_type),
                reason_code=args.reason_code,
                notes=args.notes,
            )
        )
    return commands


def _save_edit(context: core_logic.RuntimeContext, document: core_logic.Document, actor: ActorContext, args: argparse.Namespace) -> pricing.Totals:
    totals = core_logic.save_document(
        context,
        document,
        actor=actor,
        change_reason=getattr(args, "reason", None),
        as_draft=document.status is DocumentStatus.DRAFT,
    )
    print(f"{document.document_id}: grand total {pricing.to_money(totals.grand_total)}")
    return totals


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, translate_add_product(args))
    print(f"Added product {product.product_id}")
    return 0


def run_create(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Create and store a new draft document."""
    actor = translate_actor(context, args)
    document = core_logic.new_document(
        DocumentKind(args.kind),
        args.party_id,
        args.sales_rep_id,
        args.document_date,
        document_id=args.document_id,
    )
    core_logic.save_document(context, document, actor=actor, change_reason=args.reason, as_draft=True)
    print(document.document_id)
    return 0


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    actor = translate_actor(context, args)
    document = core_logic.load_document(context, args.document_id)
    line = core_logic.add_line_item(
        document,
        translate_line(args),
        catalog=core_logic.product_catalog(context),
        stock=core_logic.load_stock_snapshot(context),
        actor=actor,
    )
    print(f"Added line {line.line_id}: {line.product_name} x {line.quantity} = {pricing.to_money(line.total)}")
    _save_edit(context, document, actor, args)
    return 0


def run_update_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    actor = translate_actor(context, args)
    document = core_logic.load_document(context, args.document_id)
    line = core_logic.update_line_item(
        document,
        args.line_id,
        translate_line(args),
        catalog=core_logic.product_catalog(context),
        stock=core_logic.load_stock_snapshot(context),
        actor=actor,
    )
    print(f"Updated line {line.line_id}: {line.product_name} x {line.quantity} = {pricing.to_money(line.total)}")
    _save_edit(context, document, actor, args)
    return 0


def run_remove_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    actor = translate_actor(context, args)
    document = core_logic.load_document(context, args.document_id)
    core_logic.remove_line_item(document, args.line_id, actor=actor)
    print(f"Removed line {args.line_id}")
    _save_edit(context, document, actor, args)
    return 0


def run_extra_discount(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    actor = translate_actor(context, args)
    document = core_logic.load_document(context, args.document_id)
    core_logic.set_extra_discount(document, parse_decimal(args.percent, "percent"), actor=actor)
    _save_edit(context, document, actor, args)
    return 0


def run_set_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    header = core_logic.change_status(
        context,
        args.document_id,
        DocumentStatus(args.status),
        actor=translate_actor(context, args),
        reason=args.reason,
    )
    print(f"{header.document_id}: {header.status.value}")
    return 0


def run_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Record every ``--item`` in one batch and report partial failures."""
    result = core_logic.record_returns(context, translate_returns(args), actor=translate_actor(context, args))
    print(f"Processed {result.success_count} returns")
    for command, message in result.failed:
        print(f"  {command.product_id}: {message}")
    result.raise_for_failures()
    return 0


def run_price(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Print the discount and total of one line."""
    line = pricing.price(
        parse_decimal(args.unit_price, "unit price"),
        pricing.clamp_quantity(parse_decimal(args.quantity, "quantity")),
        pricing.clamp_percent(parse_decimal(args.discount_percent, "discount")),
    )
    print(f"discount {pricing.to_money(line.discount_amount)}")
    print(f"total    {pricing.to_money(line.total)}")
    return 0


def run_totals(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    document = core_logic.load_document(context, args.document_id)
    totals = core_logic.compute_totals(document)
    print(f"{document.document_id} [{document.kind.value}] {document.status.value} party={document.party_id}")
    for line in document.items:
        print(
            f"  {line.line_id}  {line.sku:<12} qty={line.quantity} free={line.free_quantity} "
            f"@ {line.unit_price} -{line.discount_percent}% = {pricing.to_money(line.total)}"
        )
    money = pricing.to_money
    inferred = " (inferred)" if document.extra_discount_inferred else ""
    print(f"gross            {money(totals.gross_total)}")
    print(f"item discounts   {money(totals.item_discount_total)}")
    print(f"subtotal         {money(totals.subtotal)}")
    print(f"extra discount   {money(totals.extra_discount_amount)} ({totals.extra_discount_percent}%{inferred})")
    print(f"refunds          {money(totals.refund_total)}")
    print(f"grand total      {money(totals.grand_total)}")
    print(f"balance due      {money(pricing.balance_due(totals.grand_total, document.paid_amount))}")
    if totals.is_negative:
        print("WARNING: grand total is negative")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    for product in core_logic.list_products(context, include_inactive=args.include_inactive):
        print(f"{product.product_id:<12} {product.product_name:<30} {product.available_quantity} {product.unit_of_measure}")
    return 0


def run_returns_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    rows = core_logic.list_returns(context, args.document_id)
    for row in rows:
        print(f"{row.return_id} {row.product_id} x {row.quantity} {row.return_type.value} refund={pricing.to_money(row.refund_value)}")
    print(f"refund total {pricing.to_money(pricing.refund_total(rows))}")
    return 0


def run_history_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for entry in core_logic.list_history(context, args.document_id):
        previous = entry.previous_status.value if entry.previous_status is not None else "-"
        print(f"{entry.changed_at} {entry.changed_by}: {entry.reason} (was {previous}, {entry.previous_total})")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    log.error("%s", error)
    if isinstance(error, PartialBatchFailure):
        return 5
    if isinstance(error, PersistenceFailure):
        return 4
    if isinstance(error, BusinessRuleViolation):
        return 2
    if isinstance(error, FileNotFoundError):
        return 3
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        spec = command_table[args.command]
        context = load_runtime_context(getattr(args, "config", None)) if spec.needs_context else None
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
