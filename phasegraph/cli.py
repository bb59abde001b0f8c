"""Typer-based CLI for PhaseGraph relationship and impact analysis."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional

import toml
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__, config
from .config_manager import load_settings, save_settings
from .errors import PhaseGraphError
from .graph_export import export_dot
from .logging_config import setup_logging
from .models import DetectionOptions, ImpactReport, Relationship, Severity
from .orchestrator import RelationshipOrchestrator

app = typer.Typer(
    help="PhaseGraph: cross-phase relationship detection and change-impact analysis.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True)

SEVERITY_STYLES = {
    Severity.CRITICAL.value: "bold red",
    Severity.HIGH.value: "red",
    Severity.MEDIUM.value: "yellow",
    Severity.LOW.value: "green",
    Severity.MINIMAL.value: "dim",
}

ProjectArg = typer.Argument(..., exists=True, file_okay=False, help="Project root directory.")


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"PhaseGraph v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-V", help="Enable debug logging."),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", dir_okay=False, help="Alternate config.toml to load."
    ),
):
    """PhaseGraph: find how project deliverables depend on each other and what a change breaks."""
    setup_logging(verbose=verbose)
    ctx.obj = {"config_file": config_file}


def _config_file(ctx: typer.Context) -> Optional[Path]:
    return (ctx.obj or {}).get("config_file")


def _orchestrator(ctx: typer.Context, overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> RelationshipOrchestrator:
    settings = load_settings(_config_file(ctx), overrides)
    return RelationshipOrchestrator(settings=settings)


def _abort(exc: Exception) -> NoReturn:
    err_console.print(f"[red]Error:[/red] {exc}")
    raise typer.Exit(code=1)


def _relationship_table(relationships: List[Relationship], title: str) -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("ID", overflow="fold")
    table.add_column("Source")
    table.add_column("Target")
    table.add_column("Type")
    table.add_column("Confidence", justify="right")
    table.add_column("Status")
    for rel in relationships:
        table.add_row(
            rel.id,
            rel.source.key,
            rel.target.key,
            rel.type,
            f"{rel.confidence:.2f}",
            rel.metadata.validation_status,
        )
    return table


@app.command("analyze")
def analyze(
    ctx: typer.Context,
    project_root: Path = ProjectArg,
    sequential: bool = typer.Option(False, "--sequential", help="Run detection one artifact at a time."),
    min_confidence: Optional[float] = typer.Option(
        None, "--min-confidence", min=0.0, max=1.0, help="Override the detector confidence threshold."
    ),
    timeout: Optional[int] = typer.Option(None, "--timeout", min=1, help="Per-detector timeout in milliseconds."),
    cross_phase_only: bool = typer.Option(False, "--cross-phase-only", help="Ignore relationships within a phase."),
    max_relationships: int = typer.Option(100, "--max", min=1, help="Keep at most this many relationships."),
    json_output: bool = typer.Option(False, "--json", help="Print the graph as JSON."),
):
    """Detect relationships between all deliverables and persist the graph."""
    orchestrator_overrides: Dict[str, Any] = {}
    if sequential:
        orchestrator_overrides["enable_parallel_detection"] = False
    if timeout is not None:
        orchestrator_overrides["timeout_ms"] = timeout
    orchestrator = _orchestrator(ctx, {"orchestrator": orchestrator_overrides})

    options = DetectionOptions(
        min_confidence=min_confidence,
        cross_phase_only=cross_phase_only,
        max_relationships=max_relationships,
    )
    try:
        graph = asyncio.run(orchestrator.analyze_project_relationships(project_root, options))
    except PhaseGraphError as exc:
        _abort(exc)

    if json_output:
        typer.echo(json.dumps(graph.to_json_dict(), indent=2))
        return

    if not graph.artifacts:
        typer.echo(f"No deliverables found under {project_root / config.DELIVERABLES_DIR}.")
        return

    console.print(_relationship_table(graph.relationships, f"Relationships in {graph.project_id}"))
    batch = orchestrator.get_metrics().get("last_batch") or {}
    stats = graph.statistics
    console.print(
        f"Artifacts: {len(graph.artifacts)} | Relationships: {stats.total_relationships} | "
        f"Avg confidence: {stats.average_confidence:.2f} | "
        f"Quality: {graph.metadata.quality_score or 0.0:.2f}"
    )
    if batch.get("failed"):
        console.print(
            f"[yellow]{batch['failed']} of {batch['total']} detector runs failed "
            f"({batch['timed_out']} timed out)[/yellow]"
        )


@app.command("relationships")
def relationships(
    ctx: typer.Context,
    project_root: Path = ProjectArg,
    artifact: str = typer.Argument(..., help="Artifact id: 'phase/name', 'phase_name' or name."),
    types: Optional[List[str]] = typer.Option(None, "--type", "-t", help="Only these relationship types."),
    min_strength: Optional[float] = typer.Option(None, "--min-strength", min=0.0, max=1.0),
    sort_by: str = typer.Option("strength", "--sort-by", help="strength, confidence, type or created."),
    order: str = typer.Option("desc", "--order", help="asc or desc."),
    limit: int = typer.Option(50, "--limit", min=1, max=1000),
    json_output: bool = typer.Option(False, "--json", help="Print relationships as JSON."),
):
    """List stored relationships touching an artifact."""
    orchestrator = _orchestrator(ctx)
    query = {
        "relationship_types": types or None,
        "min_strength": min_strength,
        "sort_by": sort_by,
        "sort_order": order,
        "limit": limit,
    }
    try:
        found = asyncio.run(orchestrator.get_deliverable_relationships(project_root, artifact, query))
    except PhaseGraphError as exc:
        _abort(exc)

    if json_output:
        typer.echo(json.dumps([rel.to_json_dict() for rel in found], indent=2))
        return
    if not found:
        typer.echo(f"No relationships found for '{artifact}'.")
        return
    console.print(_relationship_table(found, f"Relationships for {artifact}"))


def _print_impact(report: ImpactReport) -> None:
    summary = report.summary
    style = SEVERITY_STYLES.get(summary.highest_severity.value, "")
    console.print(Panel(
        f"Change: {report.change_description}\n"
        f"Impacted artifacts: {summary.total_impacted}\n"
        f"Highest severity: [{style}]{summary.highest_severity.value}[/{style}]\n"
        f"Estimated effort: {summary.estimated_total_effort.hours:g}h "
        f"({summary.estimated_total_effort.complexity})",
        title=f"Impact of {report.source_artifact.key}",
        border_style="cyan",
    ))
    if not report.impacted_artifacts:
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Artifact")
    table.add_column("Severity")
    table.add_column("Impact")
    table.add_column("Confidence", justify="right")
    table.add_column("Effort", justify="right")
    table.add_column("Path")
    for item in report.impacted_artifacts:
        item_style = SEVERITY_STYLES.get(item.severity.value, "")
        table.add_row(
            item.artifact.key,
            f"[{item_style}]{item.severity.value}[/{item_style}]",
            item.impact_type,
            f"{item.confidence:.2f}",
            f"{item.estimated_effort.hours:g}h",
            " -> ".join(ref.name for ref in item.propagation_path),
        )
    console.print(table)

    worst = report.impacted_artifacts[0]
    if worst.recommendations:
        console.print("[bold]Recommendations:[/bold]")
        for line in worst.recommendations:
            console.print(f"  - {line}")


@app.command("impact")
def impact(
    ctx: typer.Context,
    project_root: Path = ProjectArg,
    artifact: str = typer.Argument(..., help="Artifact that is about to change."),
    change_type: str = typer.Option(
        "modification", "--change-type", help="creation, modification, deletion or restructure."
    ),
    scope: str = typer.Option("minor", "--scope", help="trivial, minor, moderate, major or critical."),
    description: str = typer.Option("Unspecified change", "--description", "-d"),
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON."),
):
    """Predict which deliverables a change will affect."""
    orchestrator = _orchestrator(ctx)
    change = {"type": change_type, "scope": scope, "description": description}
    try:
        report = asyncio.run(orchestrator.analyze_change_impact(project_root, artifact, change))
    except PhaseGraphError as exc:
        _abort(exc)

    if json_output:
        typer.echo(json.dumps(report.to_dict(), indent=2))
        return
    _print_impact(report)


@app.command("review")
def review(
    ctx: typer.Context,
    project_root: Path = ProjectArg,
    relationship_id: str = typer.Argument(..., help="Relationship id."),
    status: str = typer.Option(..., "--status", "-s", help="confirmed, rejected, needs_review or pending."),
):
    """Record a validation decision on a relationship."""
    orchestrator = _orchestrator(ctx)
    try:
        orchestrator.update_relationship(project_root, relationship_id, {"metadata": {"validation_status": status}})
    except PhaseGraphError as exc:
        _abort(exc)
    typer.echo(f"Marked '{relationship_id}' as {status}.")


@app.command("delete")
def delete(
    ctx: typer.Context,
    project_root: Path = ProjectArg,
    relationship_id: str = typer.Argument(..., help="Relationship id."),
):
    """Remove a relationship from the stored graph."""
    orchestrator = _orchestrator(ctx)
    try:
        orchestrator.delete_relationship(project_root, relationship_id)
    except PhaseGraphError as exc:
        _abort(exc)
    typer.echo(f"Deleted relationship '{relationship_id}'.")


@app.command("health")
def health(
    ctx: typer.Context,
    project_root: Path = ProjectArg,
):
    """Check storage health and detector availability."""
    orchestrator = _orchestrator(ctx)
    report = orchestrator.get_storage_health(project_root)

    colors = {"healthy": "green", "degraded": "yellow", "unhealthy": "red"}
    color = colors[report.status]
    console.print(f"Storage: [{color}]{report.status}[/{color}]")

    table = Table(title="Metrics", show_header=True, show_lines=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in report.metrics.items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)

    for issue in report.issues:
        console.print(f"[{color}]{issue.type}[/{color}] ({issue.severity.value}): {issue.description}")
        if issue.recommendation:
            console.print(f"  -> {issue.recommendation}")

    for info in orchestrator.get_detector_info():
        state = "available" if info["available"] else "unavailable"
        console.print(f"Detector {info['name']} v{info['version']}: {state}")

    if report.status == "unhealthy":
        raise typer.Exit(code=1)


@app.command("detectors")
def detectors(ctx: typer.Context):
    """List registered relationship detectors."""
    orchestrator = _orchestrator(ctx)
    table = Table(title="Detectors", show_header=True, header_style="bold cyan")
    table.add_column("Name")
    table.add_column("Version")
    table.add_column("Priority", justify="right")
    table.add_column("Relationship types")
    table.add_column("Available")
    for info in orchestrator.get_detector_info():
        table.add_row(
            info["name"],
            info["version"],
            str(info["priority"]),
            ", ".join(info["supported_types"]),
            "yes" if info["available"] else "no",
        )
    console.print(table)


@app.command("export")
def export(
    ctx: typer.Context,
    project_root: Path = ProjectArg,
    output: Path = typer.Argument(..., dir_okay=False, help="DOT file to write."),
    focus: str = typer.Option("", "--focus", "-f", help="Only the neighbourhood of this artifact."),
):
    """Export the stored relationship graph to Graphviz DOT."""
    orchestrator = _orchestrator(ctx)
    graph = orchestrator.storage.get_all(project_root)
    if graph.is_empty and not graph.artifacts:
        typer.echo("No relationship graph stored yet. Run 'phasegraph analyze' first.")
        raise typer.Exit(code=1)
    edges = export_dot(graph, output, focus=focus)
    typer.echo(f"Exported {edges} relationships to {output}")


@app.command("show-config")
def show_config(ctx: typer.Context):
    """Print the resolved configuration."""
    settings = load_settings(_config_file(ctx))
    typer.echo(toml.dumps(settings.to_dict()))


@app.command("init-config")
def init_config(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config file."),
):
    """Write the resolved configuration, defaults filled in, to config.toml."""
    path = _config_file(ctx) or config.CONFIG_FILE
    if path.exists() and not force:
        typer.echo(f"{path} already exists (use --force to overwrite).")
        raise typer.Exit(code=1)
    settings = load_settings(path)
    if not save_settings(settings, path):
        typer.echo(f"Could not write {path}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Wrote configuration to {path}")


if __name__ == "__main__":
    app()
