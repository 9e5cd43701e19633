"""Typer-based CLI for RepoCompat."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import List, Optional

import toml
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__, config_manager
from .dependencies import DependencyGraphAnalyzer
from .errors import AnalysisCancelled, ConfigurationBootstrapError, ManifestMissingError, ResultNotFoundError
from .models import AnalysisResult, ComparisonResult, RepositoryDescriptor, to_jsonable
from .parser import SourceStructureExtractor
from .scorer import CompatibilityScorer
from .snapshot import RepositorySnapshotBuilder
from .storage import ResultStore

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    help="RepoCompat: structural diff and compatibility scoring for JS/TS repositories.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
results_app = typer.Typer(help="Stored analysis results")
config_app = typer.Typer(help="Analysis configuration")
credentials_app = typer.Typer(help="Repository access tokens")

app.add_typer(results_app, name="results")
app.add_typer(config_app, name="config")
app.add_typer(credentials_app, name="credentials")

RISK_STYLES = {"low": "green", "medium": "yellow", "high": "red"}


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"RepoCompat v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
):
    """Compare JavaScript / TypeScript repositories and score how safely they merge."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _fail(message: str) -> None:
    err_console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=1)


def _risk(level: str) -> str:
    return f"[{RISK_STYLES.get(level, 'white')}]{level}[/]"


def _load_config() -> config_manager.AnalysisConfiguration:
    try:
        return config_manager.load_configuration()
    except ConfigurationBootstrapError as exc:
        _fail(str(exc))


def _scorer(cfg: config_manager.AnalysisConfiguration, store: Optional[ResultStore] = None) -> CompatibilityScorer:
    builder = RepositorySnapshotBuilder(SourceStructureExtractor(max_workers=cfg.max_workers))
    return CompatibilityScorer(configuration=cfg, snapshot_builder=builder, store=store)


def _print_comparison(key: str, comparison: ComparisonResult) -> None:
    changes = comparison.changes
    body = [
        f"Score: [bold]{comparison.compatibility_score}[/bold]   Risk: {_risk(comparison.risk_level)}",
        f"Files: +{len(changes.added_files)} ~{len(changes.modified_files)} -{len(changes.deleted_files)}"
        f"   Config changes: {len(changes.configuration_changes)}",
        f"Dependencies: +{len(comparison.dependency_comparison.added)} "
        f"-{len(comparison.dependency_comparison.removed)} "
        f"~{len(comparison.dependency_comparison.updated)}",
        f"API backward compatible: {'yes' if comparison.api_compatibility.backward_compatible else '[red]no[/red]'}",
    ]
    if comparison.potential_issues:
        body.append("")
        body.extend(f"[yellow]•[/yellow] {issue}" for issue in comparison.potential_issues[:10])
        if len(comparison.potential_issues) > 10:
            body.append(f"  … {len(comparison.potential_issues) - 10} more")
    console.print(Panel("\n".join(body), title=key, expand=False))


def _print_result(result: AnalysisResult) -> None:
    table = Table(title=f"Analysis {result.id}")
    table.add_column("Repository", style="cyan")
    table.add_column("Branch")
    table.add_column("Commit")
    table.add_column("Units", justify="right")
    table.add_column("Status")
    for name, repo in result.repositories.items():
        status = "[green]ok[/green]" if repo.is_accessible else f"[red]{repo.error or 'inaccessible'}[/red]"
        table.add_row(name, repo.branch, (repo.commit_ref or "")[:10], str(len(repo.structure.units())), status)
    console.print(table)

    for key, comparison in result.comparisons.items():
        _print_comparison(key, comparison)

    summary = result.summary
    console.print(f"\n[bold]Summary:[/bold] {result.short_summary()}  (risk {_risk(summary.risk_level)})")
    for action in summary.recommended_actions:
        console.print(f"  → {action}")


@app.command("analyze")
def analyze(
    base: Optional[List[str]] = typer.Option(None, "--base", "-b", help="Base repository name (repeatable)."),
    target: Optional[str] = typer.Option(None, "--target", "-t", help="Target repository name."),
    no_save: bool = typer.Option(False, "--no-save", help="Do not persist the result."),
):
    """Analyze the configured repositories and compare the configured pairs."""
    cfg = _load_config()
    repositories = None
    pairs = None
    if base or target:
        target_name = target or "current"
        bases = base or [b for b, t in cfg.pairs if t == target_name]
        pairs = [(b, target_name) for b in bases]
        try:
            repositories = [
                config_manager.repository_descriptor(name, cfg)
                for name in dict.fromkeys([*bases, target_name])
            ]
        except ConfigurationBootstrapError as exc:
            _fail(str(exc))

    cancel_event = threading.Event()
    scorer = _scorer(cfg)
    try:
        with console.status("Analyzing repositories…"):
            result = scorer.perform_analysis(repositories, pairs, cancel_event, persist=not no_save)
    except ConfigurationBootstrapError as exc:
        _fail(str(exc))
    except KeyboardInterrupt:
        cancel_event.set()
        _fail("Analysis cancelled")
    except AnalysisCancelled as exc:
        _fail(str(exc))

    _print_result(result)
    if not no_save:
        console.print(f"\nSaved as [cyan]{result.id}[/cyan]")


@app.command("compare")
def compare_paths(
    base_path: Path = typer.Argument(..., exists=True, file_okay=False, help="Base working copy."),
    target_path: Path = typer.Argument(..., exists=True, file_okay=False, help="Target working copy."),
    as_json: bool = typer.Option(False, "--json", help="Print the comparison as JSON."),
):
    """Compare two local working copies without touching the result store."""
    cfg = _load_config()
    scorer = _scorer(cfg)
    base = RepositoryDescriptor(name="base", url=str(base_path), local_path=str(base_path))
    target = RepositoryDescriptor(name="target", url=str(target_path), local_path=str(target_path))
    result = scorer.perform_analysis([base, target], [("base", "target")], persist=False)
    comparison = result.comparisons["base-vs-target"]
    if as_json:
        typer.echo(json.dumps(to_jsonable(comparison), indent=2))
        return
    _print_comparison("base-vs-target", comparison)
    for finding in comparison.findings:
        console.print(f"  [{finding.category}] {finding.description} → {finding.migration_guidance}")


@app.command("extract")
def extract(
    project_path: Path = typer.Argument(..., exists=True, file_okay=False, help="Project to scan."),
):
    """Show the structural summary of one working copy."""
    extractor = SourceStructureExtractor()
    structure = extractor.extract(project_path.resolve())
    summary = extractor.summarize(structure)

    table = Table(title=f"Structure of {project_path}")
    table.add_column("Path", style="cyan")
    table.add_column("Kind")
    table.add_column("Name")
    table.add_column("Complexity")
    table.add_column("Idioms")
    for unit in structure.units():
        table.add_row(
            unit.path, unit.kind, unit.name, unit.complexity.score,
            ", ".join(i.name for i in unit.idioms),
        )
    console.print(table)
    console.print(
        f"Files: {summary['total_files']}  Components: {summary['total_components']}  "
        f"Services: {summary['total_services']}  Utilities: {summary['total_utilities']}  "
        f"Avg complexity: {summary['average_complexity']:.1f}"
    )
    if summary["skipped"]:
        console.print(f"[yellow]Skipped {summary['skipped']} unparseable files[/yellow]")
    for note in summary["improvements"]:
        console.print(f"  → {note}")


@app.command("deps")
def deps(
    base_manifest: Path = typer.Argument(..., help="Base package.json (or its directory)."),
    target_manifest: Path = typer.Argument(..., help="Target package.json (or its directory)."),
):
    """Compare two dependency manifests."""
    analyzer = DependencyGraphAnalyzer()
    try:
        changes = analyzer.compare_manifests(base_manifest, target_manifest)
    except ManifestMissingError as exc:
        _fail(str(exc))

    table = Table(title="Dependency changes")
    table.add_column("Package", style="cyan")
    table.add_column("Change")
    table.add_column("Versions")
    for name in changes.added:
        table.add_row(name, "[green]added[/green]", "")
    for name in changes.removed:
        table.add_row(name, "[red]removed[/red]", "")
    for update in changes.updated:
        label = "[red]breaking[/red]" if update.is_breaking else "updated"
        table.add_row(update.name, label, f"{update.old_version} → {update.new_version}")
    console.print(table)
    console.print(f"{len(changes.unchanged)} unchanged")


@results_app.command("list")
def results_list(
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum entries to show."),
):
    """List stored analyses, most recent first."""
    entries = ResultStore().list_results(limit)
    if not entries:
        console.print("[yellow]No stored analyses.[/yellow]")
        raise typer.Exit(code=0)
    table = Table(title="Analyses")
    table.add_column("ID", style="cyan")
    table.add_column("Timestamp")
    table.add_column("Summary")
    for entry in entries:
        table.add_row(entry["id"], entry["timestamp"], entry["summary"])
    console.print(table)


@results_app.command("show")
def results_show(
    result_id: str = typer.Argument(..., help="Analysis id."),
    as_json: bool = typer.Option(False, "--json", help="Print the stored JSON."),
):
    """Show one stored analysis."""
    try:
        result = ResultStore().load(result_id)
    except ResultNotFoundError as exc:
        _fail(str(exc))
    if as_json:
        typer.echo(json.dumps(result.to_dict(), indent=2))
        return
    _print_result(result)


@config_app.command("show")
def config_show():
    """Print the active configuration."""
    cfg = _load_config()
    typer.echo(toml.dumps(cfg.to_dict()))


@config_app.command("reset")
def config_reset():
    """Restore the default configuration."""
    config_manager.reset_configuration()
    console.print("[green]Configuration reset to defaults.[/green]")


@config_app.command("export")
def config_export(destination: Path = typer.Argument(..., help="TOML or JSON file to write.")):
    """Write the configuration to a file."""
    try:
        path = config_manager.export_configuration(destination)
    except ConfigurationBootstrapError as exc:
        _fail(str(exc))
    console.print(f"Exported configuration to {path}")


@config_app.command("import")
def config_import(source: Path = typer.Argument(..., exists=True, dir_okay=False, help="TOML or JSON file.")):
    """Replace the configuration with the contents of a file."""
    try:
        cfg = config_manager.import_configuration(source)
    except ConfigurationBootstrapError as exc:
        _fail(str(exc))
    console.print(f"Imported configuration with {len(cfg.repositories)} repositories")


@credentials_app.command("set")
def credentials_set(
    repository: str = typer.Argument(..., help="Repository URL."),
    token: str = typer.Option(..., "--token", prompt=True, hide_input=True, help="Access token."),
    token_type: str = typer.Option("github", "--type", help="github, gitlab, bitbucket or generic."),
    expires_days: Optional[int] = typer.Option(None, "--expires-days", help="Token lifetime in days."),
    validate: bool = typer.Option(False, "--validate", help="Probe the provider with the token."),
):
    """Store an access token for a repository."""
    if token_type not in config_manager.TOKEN_TYPES:
        raise typer.BadParameter(f"Unknown token type: {token_type}")
    try:
        config_manager.set_repository_credentials(
            repository, token, token_type, expiration_days=expires_days,
        )
    except ConfigurationBootstrapError as exc:
        _fail(str(exc))
    console.print(f"[green]Stored credentials for {repository}[/green]")
    if validate:
        if config_manager.validate_repository_access(repository):
            console.print("[green]Token accepted by provider.[/green]")
        else:
            console.print("[yellow]Token could not be validated.[/yellow]")


@credentials_app.command("remove")
def credentials_remove(repository: str = typer.Argument(..., help="Repository URL.")):
    """Forget the access token for a repository."""
    try:
        removed = config_manager.remove_repository_credentials(repository)
    except ConfigurationBootstrapError as exc:
        _fail(str(exc))
    if not removed:
        console.print(f"[yellow]No credentials stored for {repository}[/yellow]")
        raise typer.Exit(code=0)
    console.print(f"Removed credentials for {repository}")


if __name__ == "__main__":
    app()
