"""nodeflow CLI for running and inspecting the node pipeline - Tyro implementation."""

from __future__ import annotations

import json
import logging
import sys
from builtins import print as builtin_print
from pathlib import Path
from typing import Annotated, Any, Literal

import attrs
import tyro
from pydantic import TypeAdapter, ValidationError
from rich import print
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from nodeflow.config import CONFIG_FILENAME, NodeflowConfig, get_config, set_config_instance
from nodeflow.errors import NodeflowError, RuleConfigError
from nodeflow.filters import is_configured, resolve_order
from nodeflow.models import Node
from nodeflow.pipeline import PipelineExecutor, PipelineResult
from nodeflow.rules import SubscriptionRules

logger = logging.getLogger(__name__)

OutputFormat = Literal["ascii", "mermaid", "json"]


# Subcommand definitions using attrs
@attrs.define
class Run:
    """Run the pipeline over a node pool with one subscription's rules."""

    nodes: Annotated[Path, tyro.conf.arg(aliases=["-n"])]
    """JSON file with the node pool (a list, or an object with a "nodes" list)."""

    rules: Annotated[Path, tyro.conf.arg(aliases=["-r"])]
    """JSON file with the subscription rules."""

    seed: int | None = None
    """Seed for random dynamic node selection."""

    json: Annotated[bool, tyro.conf.arg(aliases=["-j"])] = False
    """Print the result as JSON."""

    overrides: str | None = None
    """Stage overrides, e.g. "-dedupe_nodes,+resolve_chains"."""


@attrs.define
class Check:
    """Validate a subscription rule file and summarize it."""

    rules: Annotated[Path, tyro.conf.arg(aliases=["-r"])]
    """JSON file with the subscription rules."""


@attrs.define
class DagViz:
    """Visualize the stage pipeline DAG.

    Shows stage execution order and dependencies based on reads/writes declarations.
    """

    output: Annotated[OutputFormat, tyro.conf.arg(aliases=["-o"])] = "ascii"
    """Output format: ascii, mermaid, json."""

    validate: Annotated[bool, tyro.conf.arg(aliases=["-v"])] = False
    """Validate the DAG and report any issues."""


# Type alias for all subcommands
Command = (
    Annotated[Run, tyro.conf.subcommand(name="run")]
    | Annotated[Check, tyro.conf.subcommand(name="check")]
    | Annotated[DagViz, tyro.conf.subcommand(name="dag-viz")]
)


def setup_logging(debug: bool = False) -> None:
    """Configure logging with 100-character text width."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)-20s - %(levelname)-8s - %(message).100s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _read_json(path: Path) -> Any:
    try:
        with path.open(encoding="utf-8") as f:
            return json.load(f)
    except OSError as e:
        raise RuleConfigError(str(path), f"cannot read file: {e}") from e
    except json.JSONDecodeError as e:
        raise RuleConfigError(str(path), f"invalid JSON: {e}") from e


def load_nodes(path: Path) -> list[Node]:
    """Load a node pool file.

    Raises:
        RuleConfigError: If the file is unreadable or a node is invalid
    """
    data = _read_json(path)
    if isinstance(data, dict):
        data = data.get("nodes", [])
    try:
        return TypeAdapter(list[Node]).validate_python(data)
    except ValidationError as e:
        raise RuleConfigError(str(path), str(e)) from e


def load_rules(path: Path) -> SubscriptionRules:
    """Load a subscription rule file in either layout.

    Raises:
        RuleConfigError: If the file is unreadable or the rules are invalid
    """
    data = _read_json(path)
    if not isinstance(data, dict):
        raise RuleConfigError(str(path), "expected a JSON object")
    return SubscriptionRules.load(data)


def load_config(config_dir: Path | None) -> NodeflowConfig:
    """Load configuration from ``config_dir`` or by discovery."""
    if config_dir is None:
        return get_config()
    config = NodeflowConfig.from_yaml(config_dir / CONFIG_FILENAME)
    set_config_instance(config)
    return config


def print_result(result: PipelineResult, console: Console) -> None:
    """Render a pipeline result as rich tables."""
    table = Table(title=f"Nodes ({len(result.nodes)})", show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Protocol", style="green")
    table.add_column("Dialer Proxy", style="magenta")
    for r in result.nodes:
        table.add_row(
            str(r.index),
            str(r.id),
            escape(r.display_name),
            r.node.protocol.value,
            escape(result.plan.dialer_for(r.id)) or "-",
        )
    console.print(table)

    if result.groups:
        groups = Table(title="Proxy Groups", show_header=True, header_style="bold")
        groups.add_column("Name", style="cyan")
        groups.add_column("Type", style="green")
        groups.add_column("Members")
        for group in result.groups:
            groups.add_row(escape(group.name), group.type, escape(", ".join(group.proxies)))
        console.print(groups)

    if result.errors:
        lines = "\n".join(f"• {escape(str(e))}" for e in result.errors)
        console.print(Panel(lines, title="[bold red]Chain errors[/bold red]", border_style="red", expand=False))


def handle_run(config: NodeflowConfig, cmd: Run) -> None:
    """Handle run subcommand."""
    pool = load_nodes(cmd.nodes)
    rules = load_rules(cmd.rules)

    executor = PipelineExecutor.from_config(config)
    result = executor.run(pool, rules, seed=cmd.seed, overrides=cmd.overrides)

    if cmd.json:
        builtin_print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    else:
        print_result(result, Console())

    if not result.valid:
        sys.exit(1)


def handle_check(config: NodeflowConfig, cmd: Check) -> None:
    """Handle check subcommand."""
    rules = load_rules(cmd.rules)
    console = Console()

    table = Table(title="Subscription rules", show_header=True, header_style="bold")
    table.add_column("Section", style="cyan")
    table.add_column("Setting")

    filters = rules.filters
    for stage in resolve_order(filters, config.filter_order):
        state = "[green]configured[/green]" if is_configured(stage, filters) else "[dim]off[/dim]"
        table.add_row(f"filter: {stage.value}", state)

    dedup = rules.dedup
    if dedup.mode == "common":
        table.add_row("dedup", f"common by {', '.join(dedup.common_fields) or '-'}")
    elif dedup.mode == "protocol":
        table.add_row("dedup", f"per protocol: {', '.join(sorted(dedup.protocol_rules)) or '-'}")
    else:
        table.add_row("dedup", "[dim]off[/dim]")

    active = [rule for rule in rules.preprocess if rule.enabled and rule.pattern]
    table.add_row("preprocess", f"{len(active)} active rule(s)")
    table.add_row("name template", escape(rules.name_template) or "[dim](upstream name)[/dim]")

    for rule in rules.enabled_chain_rules:
        hops = " → ".join(hop.type for hop in rule.chain.hops) or "(no hops)"
        table.add_row(f"chain: {escape(rule.name) or rule.id}", f"{hops} ⇒ {rule.chain.target.type}")

    console.print(table)
    print("[green]Rules are valid[/green]")


def handle_dag_viz(cmd: DagViz) -> None:
    """Handle dag-viz subcommand to visualize the pipeline DAG."""
    executor = PipelineExecutor()
    dag = executor.dag

    if cmd.validate:
        warnings = dag.validate()
        if warnings:
            print("[yellow]DAG Validation Warnings:[/yellow]")
            for w in warnings:
                print(f"  • {w}")
        else:
            print("[green]DAG validation passed - no issues found[/green]")
        print()

    if cmd.output == "mermaid":
        builtin_print(dag.to_mermaid())
        return
    if cmd.output == "json":
        data = dag.to_dict()
        data["parallel_groups"] = [sorted(g) for g in dag.parallel_groups]
        builtin_print(json.dumps(data, indent=2))
        return

    console = Console()
    console.print(Panel("[bold cyan]Pipeline Stage DAG[/bold cyan]", expand=False))

    order = dag.execution_order
    console.print("\n[bold]Execution Order:[/bold]")
    console.print(f"  {' → '.join(order)}")

    console.print("\n[bold]Stage Dependencies:[/bold]")
    table = Table(show_header=True, header_style="bold")
    table.add_column("Stage", style="cyan")
    table.add_column("Reads", style="green")
    table.add_column("Writes", style="yellow")
    table.add_column("Depends On", style="magenta")
    for name in order:
        spec = dag.get_hook(name)
        table.add_row(
            name,
            ", ".join(sorted(spec.reads)) or "-",
            ", ".join(sorted(spec.writes)) or "-",
            ", ".join(sorted(dag.get_dependencies(name))) or "-",
        )
    console.print(table)

    console.print("\n[bold]DAG Visualization:[/bold]")
    console.print(dag.to_ascii())


def main(
    cmd: Annotated[Command, tyro.conf.arg(name="")],
    *,
    config_dir: Annotated[Path | None, tyro.conf.arg(help="Configuration directory")] = None,
    debug: bool = False,
) -> None:
    """nodeflow - subscription node selection and proxy chain pipeline.

    Filters, deduplicates and renames a node pool for one subscription and
    resolves its proxy chain rules.
    """
    try:
        config = load_config(config_dir)
        setup_logging(debug or config.debug)

        if isinstance(cmd, Run):
            handle_run(config, cmd)
        elif isinstance(cmd, Check):
            handle_check(config, cmd)
        elif isinstance(cmd, DagViz):
            handle_dag_viz(cmd)
    except NodeflowError as e:
        print(f"[red]Error: {escape(str(e))}[/red]", file=sys.stderr)
        sys.exit(1)


def entry_point() -> None:
    """Entry point for the nodeflow command."""
    tyro.cli(main)


if __name__ == "__main__":
    entry_point()
