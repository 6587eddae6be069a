"""
CLI interface for provisio.

Provides commands: run, validate, probe, manifests, init, runs.
"""

import json

import click
import yaml
from rich.markup import escape
from rich.table import Table

from provisio import __version__
from provisio.config import DEFAULT_CONFIG, ProvisioConfig, get_provisio_home, write_default_config
from provisio.errors import JournalError, ManifestError
from provisio.journal import RunJournal
from provisio.probes import IdempotencyProber, ProbeRegistry
from provisio.registry import StepRegistry, find_manifest, list_bundled_manifests
from provisio.reporter import EXIT_ERROR, exit_code, print_report
from provisio.schemas import ProbeResult, RunContext
from provisio.sequencer import provision
from provisio.utils import (
    console,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)


@click.group()
@click.version_option(version=__version__, prog_name="provisio")
@click.pass_context
def main(ctx):
    """
    provisio - Idempotent provisioning sequencer.

    Runs manifests of probe-then-act steps in dependency order.
    """
    from provisio.config import load_config

    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config()
    except FileNotFoundError:
        # No config yet: run on defaults
        ctx.obj["config"] = DEFAULT_CONFIG
    except Exception as e:
        ctx.obj["config_error"] = str(e)


def _get_config(ctx) -> ProvisioConfig:
    if "config" not in ctx.obj:
        print_error(f"Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}")
        click.echo("Fix the file or run 'provisio init --force' to recreate it.", err=True)
        raise SystemExit(EXIT_ERROR)
    return ctx.obj["config"]


def _parse_vars(var_pairs: tuple[str, ...]) -> dict:
    """Parse KEY=VALUE pairs; values are YAML scalars (true, 3, 1.5, text)."""
    variables = {}
    for pair in var_pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{pair}'", param_hint="--var")
        try:
            value = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            value = raw
        variables[key.strip()] = value
    return variables


def _load_registry(manifest: str) -> StepRegistry:
    try:
        return StepRegistry.load(manifest)
    except ManifestError as e:
        print_error(f"Invalid manifest: {e}")
        raise SystemExit(EXIT_ERROR)


@main.command("run")
@click.argument("manifest")
@click.option("--var", "var_pairs", multiple=True, metavar="KEY=VALUE",
              help="Override a manifest variable (repeatable)")
@click.option("--dry-run", is_flag=True, help="Probe only, execute nothing")
@click.option("--verbose", is_flag=True, help="Debug logging and every attempt's output")
@click.option("--no-journal", is_flag=True, help="Do not save the run report")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.pass_context
def run(ctx, manifest: str, var_pairs: tuple, dry_run: bool, verbose: bool,
        no_journal: bool, as_json: bool):
    """
    Run a provisioning manifest.

    MANIFEST is a manifest file or the name of a bundled manifest.

    Exit codes: 0 success, 2 partial failure, 3 aborted, 1 error.

    Examples:

        provisio run code-server-datascience

        provisio run ./dev-vm.yaml --var setup_ssl=true --var domain=dev.example.com

        provisio run code-server-datascience --dry-run
    """
    config = _get_config(ctx)
    variables = _parse_vars(var_pairs)
    setup_logging(
        log_file=config.log_path,
        log_level="DEBUG" if verbose else config.log_level,
        log_format=config.log_format,
        console_output=not as_json,
    )

    if not as_json:
        print_banner(f"provisio {manifest}" + (" (dry run)" if dry_run else ""))

    try:
        report = provision(manifest, variables=variables, dry_run=dry_run, config=config)
    except ManifestError as e:
        print_error(f"Invalid manifest: {e}")
        raise SystemExit(EXIT_ERROR)

    if not no_journal:
        try:
            path = RunJournal(config.runs_path).save(report)
            if not as_json:
                print_info(f"Run report saved to {path}")
        except OSError as e:
            print_warning(f"Could not save run report: {e}")

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        print_report(report, verbose=verbose)

    raise SystemExit(exit_code(report))


@main.command("validate")
@click.argument("manifest")
def validate(manifest: str):
    """Validate a manifest and show its execution order."""
    registry = _load_registry(manifest)
    print_success(
        f"Manifest '{registry.manifest_id}' is valid: {len(registry)} steps"
    )
    for i, step in enumerate(registry.topological_order(), 1):
        deps = f" (after {', '.join(step.depends_on)})" if step.depends_on else ""
        when = f" [when {step.when}]" if step.when is not None else ""
        click.echo(f"  {i:>2}. {step.name} [{step.criticality.value}]{deps}{when}")


@main.command("probe")
@click.argument("manifest")
@click.option("--var", "var_pairs", multiple=True, metavar="KEY=VALUE",
              help="Override a manifest variable (repeatable)")
@click.pass_context
def probe(ctx, manifest: str, var_pairs: tuple):
    """
    Show which steps are already satisfied, without changing anything.
    """
    config = _get_config(ctx)
    registry = _load_registry(manifest)
    run_ctx = RunContext.create(
        variables={**registry.variables, **_parse_vars(var_pairs)}, dry_run=True
    )
    prober = IdempotencyProber(ProbeRegistry.create_default(config.probe_timeout_s))

    styles = {
        ProbeResult.SATISFIED: "green",
        ProbeResult.UNSATISFIED: "yellow",
        ProbeResult.UNKNOWN: "red",
    }
    table = Table(title=f"Probe: {registry.manifest_id}")
    table.add_column("Step", style="bold")
    table.add_column("Status")
    table.add_column("Detail")
    for step in registry.topological_order():
        if step.when is not None:
            try:
                if not run_ctx.evaluate(step.when):
                    table.add_row(escape(step.name), "[dim]condition not met[/dim]", escape(step.when))
                    continue
            except ManifestError as e:
                table.add_row(escape(step.name), "[red]condition error[/red]", escape(str(e)))
                continue
        outcome = prober.probe(step, run_ctx)
        style = styles[outcome.result]
        table.add_row(
            escape(step.name),
            f"[{style}]{outcome.result.value}[/{style}]",
            escape(outcome.detail),
        )
    console.print(table)


@main.command("manifests")
def manifests():
    """List bundled manifests."""
    names = list_bundled_manifests()
    if not names:
        print_info("No bundled manifests")
        return
    for name in names:
        try:
            registry = StepRegistry.load(find_manifest(name))
            click.echo(f"  {name:<32} {len(registry):>3} steps  {registry.description}".rstrip())
        except ManifestError as e:
            click.echo(f"  {name:<32} invalid: {e}")


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize provisio configuration."""
    cfg_path = get_provisio_home() / "config.yaml"
    try:
        write_default_config(cfg_path, force=force)
    except FileExistsError:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(EXIT_ERROR)
    click.echo(f"Initialized provisio config at {cfg_path}")


@main.group("runs")
def runs_group():
    """Inspect journaled runs."""
    pass


@runs_group.command("list")
@click.pass_context
def list_runs(ctx):
    """List journaled runs, newest first."""
    journal = RunJournal(_get_config(ctx).runs_path)
    run_ids = journal.list_runs()
    if not run_ids:
        print_info(f"No runs found in {journal.runs_dir}")
        return

    table = Table(title="Runs")
    table.add_column("Run ID")
    table.add_column("Manifest")
    table.add_column("Started")
    table.add_column("Outcome")
    for run_id in run_ids:
        try:
            report = journal.load(run_id)
        except JournalError as e:
            print_warning(f"Skipping {e}")
            continue
        if report is None:
            continue
        outcome = report.outcome.value if report.outcome else "-"
        if report.dry_run:
            outcome += " (dry run)"
        table.add_row(
            run_id,
            escape(report.manifest_id),
            report.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            outcome,
        )
    console.print(table)


@runs_group.command("show")
@click.argument("run_id", required=False)
@click.option("--verbose", is_flag=True, help="Show every attempt's output")
@click.pass_context
def show_run(ctx, run_id: str | None, verbose: bool):
    """
    Show a journaled run (default: the latest).
    """
    journal = RunJournal(_get_config(ctx).runs_path)
    try:
        report = journal.load(run_id) if run_id else journal.latest()
    except JournalError as e:
        print_error(str(e))
        raise SystemExit(EXIT_ERROR)
    if report is None:
        print_error(f"Run not found: {run_id}" if run_id else "No runs journaled yet")
        raise SystemExit(EXIT_ERROR)
    print_report(report, verbose=verbose)


if __name__ == "__main__":
    main()
