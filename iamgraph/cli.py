"""
iamgraph CLI entry point.
"""
import sys
from typing import Dict, List, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from iamgraph import __version__
from iamgraph.config import REPORT_FORMATS, Settings, load_settings
from iamgraph.engine.diff import ChangeAction, Plan, render_change
from iamgraph.engine.executor import ApplyResult, Executor
from iamgraph.errors import ConfigurationError, IamGraphError, PartialApplyError, StateError
from iamgraph.graph.checks import check_declarations
from iamgraph.loader import load
from iamgraph.outputs import collect_outputs
from iamgraph.providers.memory import MemoryProvider
from iamgraph.reporters import json_reporter, markdown
from iamgraph.state.store import JsonStateStore

console = Console(stderr=True)

_ACTION_COLORS = {
    ChangeAction.CREATE: "green",
    ChangeAction.UPDATE: "yellow",
    ChangeAction.REPLACE: "bold yellow",
    ChangeAction.DELETE: "red",
    ChangeAction.NOOP: "dim",
}


def _parse_vars(pairs: Tuple[str, ...]) -> Dict[str, str]:
    variables = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected NAME=VALUE, got '{pair}'", param_hint="--var")
        name, value = pair.split("=", 1)
        variables[name.strip()] = value
    return variables


def _settings(ctx: click.Context, **overrides) -> Settings:
    base: Settings = ctx.obj["settings"]
    try:
        return base.merged(**overrides)
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}", highlight=False)
        sys.exit(2)


def _stderr(no_color: bool) -> Console:
    return Console(stderr=True, no_color=no_color)


def _load_or_exit(stderr: Console, paths: Tuple[str, ...], settings: Settings):
    with stderr.status("[bold]Loading declarations…"):
        try:
            config, graph = load(paths, settings.variables)
        except ConfigurationError as exc:
            stderr.print(f"[red]Configuration error:[/red] {exc}", highlight=False)
            sys.exit(2)
    if not len(graph):
        stderr.print("[yellow]No resource declarations found in the provided paths.[/yellow]")
    for warning in check_declarations(config.resources):
        stderr.print(f"[yellow]Warning:[/yellow] {warning}", highlight=False)
    return config, graph


def _open_state(stderr: Console, settings: Settings) -> JsonStateStore:
    try:
        return JsonStateStore(settings.state_path)
    except StateError as exc:
        stderr.print(f"[red]State error:[/red] {exc}", highlight=False)
        sys.exit(2)


def _print_plan(stderr: Console, plan: Plan) -> None:
    for change in plan.changes:
        if change.action == ChangeAction.NOOP:
            continue
        color = _ACTION_COLORS[change.action]
        lines = render_change(change)
        stderr.print(f"[{color}]{lines[0]}[/{color}]", highlight=False)
        for line in lines[1:]:
            stderr.print(line, markup=False, highlight=False)
    counts = plan.counts()
    stderr.print(
        "Plan: "
        + ", ".join(f"{counts[a.value]} to {a.value}" for a in ChangeAction if a != ChangeAction.NOOP)
        + f", {counts[ChangeAction.NOOP.value]} unchanged."
    )


def _print_summary_table(stderr: Console, result: ApplyResult, error: Optional[PartialApplyError] = None) -> None:
    tbl = Table(title=f"{result.operation.capitalize()} Summary", show_header=True, header_style="bold")
    tbl.add_column("#", style="dim", width=4)
    tbl.add_column("Resource", width=45)
    tbl.add_column("Outcome", width=14)

    outcome: Dict[str, str] = {}
    for bucket, label in (
        (result.created, "[green]created[/green]"),
        (result.updated, "[yellow]updated[/yellow]"),
        (result.replaced, "[yellow]replaced[/yellow]"),
        (result.deleted, "[red]deleted[/red]"),
        (result.unchanged, "[dim]unchanged[/dim]"),
    ):
        for addr in bucket:
            outcome[addr] = label
    rows: List[str] = list(result.order)
    if error is not None:
        for addr in error.failed:
            outcome[addr] = "[bold red]failed[/bold red]"
        for addr in error.not_attempted:
            outcome[addr] = "[dim]not attempted[/dim]"
            if addr not in rows:
                rows.append(addr)

    for i, addr in enumerate(rows, 1):
        tbl.add_row(str(i), addr, outcome.get(addr, "[dim]skipped[/dim]"))

    stderr.print(tbl)


def _write(report: str, output: Optional[str], stderr: Console) -> None:
    if output:
        with open(output, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(report)
        stderr.print(f"Report written to [bold]{output}[/bold]")
    else:
        click.echo(report)


def _run(provider: MemoryProvider, settings: Settings, fn, graph) -> ApplyResult:
    """Run an apply or destroy and persist the simulated account whatever happens."""
    try:
        return fn(graph)
    finally:
        provider.save(settings.remote_path)


# ------------------------------------------------------------------ shared options
def _common(f):
    f = click.option("--no-color", is_flag=True, default=False, help="Disable rich terminal color output.")(f)
    f = click.option("--var", "var_pairs", multiple=True, metavar="NAME=VALUE",
                     help="Set a variable; overrides defaults and iamgraph.yaml.")(f)
    f = click.argument("paths", nargs=-1, required=True, type=click.Path())(f)
    return f


def _state_options(f):
    f = click.option("--state", "state_path", type=click.Path(), default=None,
                     help="State file (default: .iamgraph/state.json).")(f)
    f = click.option("--remote", "remote_path", type=click.Path(), default=None,
                     help="Simulated account file used by the memory provider.")(f)
    return f


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.option("--config", "config_path", type=click.Path(), default=None,
              help="Settings file (default: ./iamgraph.yaml when present).")
@click.pass_context
def cli(ctx, config_path):
    """iamgraph: dependency-ordered apply and destroy for declared IAM resources."""
    ctx.ensure_object(dict)
    try:
        ctx.obj["settings"] = load_settings(config_path)
    except ConfigurationError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}", highlight=False)
        sys.exit(2)


@cli.command()
@_common
@click.pass_context
def validate(ctx, paths, var_pairs, no_color):
    """Check declarations, references and cycles without touching any state."""
    stderr = _stderr(no_color)
    settings = _settings(ctx, variables=_parse_vars(var_pairs))
    config, graph = _load_or_exit(stderr, paths, settings)
    stderr.print(
        f"[green]Valid:[/green] {len(graph)} resources, {len(graph.edges())} dependencies, "
        f"{len(config.outputs)} outputs."
    )


@cli.command()
@_common
@click.option("--format", "output_format", type=click.Choice(["text", "mermaid"]),
              default="text", show_default=True, help="Output format.")
@click.pass_context
def graph(ctx, paths, var_pairs, no_color, output_format):
    """Print the apply order (or a Mermaid diagram) of the dependency graph."""
    stderr = _stderr(no_color)
    settings = _settings(ctx, variables=_parse_vars(var_pairs))
    _, dep_graph = _load_or_exit(stderr, paths, settings)
    if output_format == "mermaid":
        click.echo(markdown.build_mermaid(dep_graph, {}))
        return
    for i, addr in enumerate(dep_graph.topological_order(), 1):
        deps = dep_graph.dependencies(addr)
        click.echo(f"{i:>3}. {addr}" + (f"  <- {', '.join(deps)}" if deps else ""))


@cli.command()
@_common
@_state_options
@click.option("--format", "output_format", type=click.Choice(REPORT_FORMATS, case_sensitive=False),
              default=None, help="Report format (default from settings: text).")
@click.option("--output", "-o", type=click.Path(), default=None,
              help="Write report to this file (default: stdout).")
@click.option("--detailed-exitcode", is_flag=True, default=False,
              help="Exit with code 3 when the plan contains changes.")
@click.pass_context
def plan(ctx, paths, var_pairs, no_color, state_path, remote_path, output_format, output, detailed_exitcode):
    """Show what apply would change. Makes no provider calls."""
    stderr = _stderr(no_color)
    settings = _settings(ctx, variables=_parse_vars(var_pairs), state_path=state_path,
                         remote_path=remote_path, report_format=output_format)
    config, dep_graph = _load_or_exit(stderr, paths, settings)
    state = _open_state(stderr, settings)
    executor = Executor(MemoryProvider.load(settings.remote_path), state, settings.parallelism, stderr)
    the_plan = executor.plan(dep_graph)
    source_label = ", ".join(paths)

    fmt = settings.report_format.lower()
    if fmt == "json":
        _write(json_reporter.build_report(the_plan, source_label, dep_graph.topological_order()), output, stderr)
    elif fmt == "markdown":
        _write(markdown.build_report(dep_graph, the_plan, source_label), output, stderr)
    else:
        _print_plan(stderr, the_plan)

    if detailed_exitcode and the_plan.has_changes:
        sys.exit(3)


@cli.command()
@_common
@_state_options
@click.option("--parallelism", type=int, default=None, help="Max simultaneous provider calls.")
@click.option("--auto-approve", is_flag=True, default=False, help="Skip the confirmation prompt.")
@click.pass_context
def apply(ctx, paths, var_pairs, no_color, state_path, remote_path, parallelism, auto_approve):
    """Create, update or replace resources so remote state matches the declarations."""
    stderr = _stderr(no_color)
    settings = _settings(ctx, variables=_parse_vars(var_pairs), state_path=state_path,
                         remote_path=remote_path, parallelism=parallelism)
    config, dep_graph = _load_or_exit(stderr, paths, settings)
    state = _open_state(stderr, settings)
    provider = MemoryProvider.load(settings.remote_path)
    executor = Executor(provider, state, settings.parallelism, stderr)

    the_plan = executor.plan(dep_graph)
    _print_plan(stderr, the_plan)
    if not the_plan.has_changes:
        stderr.print("[green]No changes.[/green] Remote state matches the configuration.")
        sys.exit(0)
    if not auto_approve and not click.confirm("Apply these changes?", err=True):
        stderr.print("Apply cancelled.")
        sys.exit(1)

    try:
        result = _run(provider, settings, executor.apply, dep_graph)
    except PartialApplyError as exc:
        if exc.result is not None:
            _print_summary_table(stderr, exc.result, exc)
        stderr.print(f"[red]{exc}[/red]", highlight=False)
        for addr, err in exc.failed.items():
            stderr.print(f"  [red]{addr}:[/red] {err.cause}", highlight=False)
        sys.exit(1)
    except IamGraphError as exc:
        stderr.print(f"[red]Error:[/red] {exc}", highlight=False)
        sys.exit(1)

    _print_summary_table(stderr, result)
    counts = result.counts()
    stderr.print(
        f"Apply complete: {counts['created']} created, {counts['updated']} updated, "
        f"{counts['replaced']} replaced, {counts['deleted']} deleted."
    )
    for out in collect_outputs(config.outputs, state):
        stderr.print(f"  {out.name} = {out.display()}", markup=False, highlight=False)
    sys.exit(0)


@cli.command()
@_common
@_state_options
@click.option("--parallelism", type=int, default=None, help="Max simultaneous provider calls.")
@click.option("--auto-approve", is_flag=True, default=False, help="Skip the confirmation prompt.")
@click.pass_context
def destroy(ctx, paths, var_pairs, no_color, state_path, remote_path, parallelism, auto_approve):
    """Delete every declared (and orphaned) resource, dependents first."""
    stderr = _stderr(no_color)
    settings = _settings(ctx, variables=_parse_vars(var_pairs), state_path=state_path,
                         remote_path=remote_path, parallelism=parallelism)
    _, dep_graph = _load_or_exit(stderr, paths, settings)
    state = _open_state(stderr, settings)
    if not state.entries():
        stderr.print("[green]Nothing to destroy.[/green]")
        sys.exit(0)
    provider = MemoryProvider.load(settings.remote_path)
    executor = Executor(provider, state, settings.parallelism, stderr)

    doomed = executor.destroy_order(dep_graph)
    stderr.print(f"[red]{len(doomed)}[/red] resource(s) will be destroyed:")
    for addr in doomed:
        stderr.print(f"  - {addr}", markup=False, highlight=False)
    if not auto_approve and not click.confirm("Destroy these resources?", err=True):
        stderr.print("Destroy cancelled.")
        sys.exit(1)

    try:
        result = _run(provider, settings, executor.destroy, dep_graph)
    except PartialApplyError as exc:
        if exc.result is not None:
            _print_summary_table(stderr, exc.result, exc)
        stderr.print(f"[red]{exc}[/red]", highlight=False)
        for addr, err in exc.failed.items():
            stderr.print(f"  [red]{addr}:[/red] {err.cause}", highlight=False)
        sys.exit(1)
    except IamGraphError as exc:
        stderr.print(f"[red]Error:[/red] {exc}", highlight=False)
        sys.exit(1)

    _print_summary_table(stderr, result)
    stderr.print(f"Destroy complete: {len(result.deleted)} destroyed.")
    sys.exit(0)


@cli.command()
@_common
@_state_options
@click.option("--name", default=None, help="Show a single output.")
@click.option("--reveal", is_flag=True, default=False, help="Print sensitive values in full.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print outputs as JSON.")
@click.pass_context
def output(ctx, paths, var_pairs, no_color, state_path, remote_path, name, reveal, as_json):
    """Show output values. Sensitive outputs stay masked unless --reveal is given."""
    stderr = _stderr(no_color)
    settings = _settings(ctx, variables=_parse_vars(var_pairs), state_path=state_path,
                         remote_path=remote_path)
    config, _ = _load_or_exit(stderr, paths, settings)
    state = _open_state(stderr, settings)
    values = collect_outputs(config.outputs, state)
    if name is not None:
        values = [v for v in values if v.name == name]
        if not values:
            stderr.print(f"[red]No output named '{name}'.[/red]")
            sys.exit(2)

    if as_json:
        click.echo(json_reporter.build_outputs(values, reveal))
    elif name is not None:
        click.echo(values[0].display(reveal))
    else:
        for v in values:
            click.echo(f"{v.name} = {v.display(reveal)}")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
