"""Command-line entry points for the sales bonus report.

All orchestration in this module is limited to argparse wiring, turning the
configuration into report options, and printing what the business layer
returns. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import bonus_rules, core_logic, data_manager, log, setup_excel


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[Optional[core_logic.RuntimeContext], argparse.Namespace], int]
    requires_context: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="sales-report",
        description="Per-seller sales performance and bonus reports.",
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
    specs = [
        register_init_command(subparsers),
        register_report_command(subparsers),
        register_awards_command(subparsers),
        register_rules_command(subparsers),
    ]
    for spec in specs:
        spec.register(subparsers)
    return build_command_table(specs)


def register_init_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``init``."""
    name = "init"
    help_text = "Create an empty dataset workbook at the configured DataFile."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--force", action="store_true", help="Overwrite an existing workbook.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_init, requires_context=False)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Build the per-seller performance report."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--format", dest="output_format", choices=["table", "json"], default="table")
        parser.add_argument("--output", type=Path, default=None, help="Also write the report to this .xlsx file.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_report)


def register_awards_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``awards``."""
    name = "awards"
    help_text = "List the outcome of every configured bonus rule."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_awards)


def register_rules_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``rules``."""
    name = "rules"
    help_text = "List the bonus rules and revenue functions that can be configured."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_rules, requires_context=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context and check its schema version.

    Without ``config_path`` the data layer searches upward from the working
    directory, the same lookup ``init`` uses.
    """
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


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


def build_report(context: core_logic.RuntimeContext) -> core_logic.SalesReport:
    """Run the orchestrator with options derived from the context settings."""
    options = bonus_rules.build_report_options(context.settings)
    return core_logic.analyze_sales_data(context.dataset, options)


def format_report_table(report: core_logic.SalesReport) -> str:
    """Render report rows as a fixed-width text table."""
    header = f"{'Seller':<12} {'Name':<24} {'Revenue':>12} {'Profit':>12} {'Bonus':>10} {'Sales':>6}  Top products"
    lines = [f"Ordering: {report.ordering.value}", header, "-" * len(header)]
    for row in report.rows:
        top = ", ".join(f"{product.sku} x {product.quantity}" for product in row.top_products)
        lines.append(
            f"{row.seller_id:<12} {row.name:<24} {row.revenue:>12} {row.profit:>12} {row.bonus:>10} {row.sale_count:>6}  {top}"
        )
    return "\n".join(lines)


def format_outcomes(outcomes: Iterable[core_logic.BonusOutcome]) -> str:
    """Render bonus outcomes one per line; rules without a winner say so."""
    lines = []
    for outcome in outcomes:
        if isinstance(outcome, core_logic.BonusAward):
            lines.append(f"{outcome.category.value}: {outcome.seller_id} ({outcome.bonus})")
        else:
            lines.append(f"{outcome.category.value}: no eligible seller")
    return "\n".join(lines)


def run_init(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Create the dataset workbook named in the configuration."""
    config_path = data_manager.find_config_file(getattr(args, "config", None))
    destination = setup_excel.run_from_config(Path(config_path), overwrite=getattr(args, "force", False))
    print(f"Created dataset workbook at '{destination}'.")
    return 0


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Build the report, print it, and optionally persist it."""
    report = build_report(context)
    if getattr(args, "output_format", "table") == "json":
        payload = {
            "ordering": report.ordering.value,
            "rows": [row.to_dict() for row in report.rows],
            "awards": [outcome.to_dict() for outcome in report.outcomes],
        }
        print(json.dumps(payload, indent=2, ensure_ascii=False))
    else:
        print(format_report_table(report))

    output = getattr(args, "output", None)
    if output is not None:
        data_manager.write_report_workbook(
            output,
            [row.to_dict() for row in report.rows],
            [award.to_dict() for award in report.awards],
        )
    return 0


def run_awards(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the outcome of each configured bonus rule."""
    report = build_report(context)
    print(format_outcomes(report.outcomes))
    return 0


def run_rules(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Print the names accepted by the ``[Report]`` configuration section."""
    print("Aggregate bonus rules:")
    for name in bonus_rules.BONUS_RULES:
        print(f"  {name}")
    print("Rank bonus functions:")
    for name in bonus_rules.RANK_BONUS_FUNCTIONS:
        print(f"  {name}")
    print("Revenue functions:")
    for name in core_logic.REVENUE_FUNCTIONS:
        print(f"  {name}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.SalesReportError):
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
        spec = command_table.get(args.command)
        context = None
        if spec is None or spec.requires_context:
            context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
