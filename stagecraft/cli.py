"""Command line interface for running stagecraft pipelines."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

import typer
import yaml

from stagecraft import PipelineExecutor, get_broker, get_repository
from stagecraft.config import load_config
from stagecraft.contracts import RunReport
from stagecraft.definitions import RunDefinition, load_definition
from stagecraft.errors import AuthError, CycleError, DefinitionError
from stagecraft.persistence import RunRepository
from stagecraft.templates import ml_platform_pipeline

app = typer.Typer(help="CLI for stagecraft provisioning pipelines")

runs_app = typer.Typer(help="Commands for inspecting recorded runs")
app.add_typer(runs_app, name="runs")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Root log level"),
) -> None:
    """Stagecraft CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _config_error(exc: Exception) -> typer.Exit:
    typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED)
    return typer.Exit(code=2)


def _repository(config_path: Optional[Path]) -> RunRepository:
    try:
        if config_path is None:
            return get_repository()
        return get_repository(config=load_config(str(config_path)))
    except (ValueError, RuntimeError) as exc:
        raise _config_error(exc)


def _load(definition_path: Path, rollout_steps: Optional[int] = None) -> RunDefinition:
    try:
        definition = load_definition(definition_path, default_rollout_steps=rollout_steps)
        definition.graph()
    except CycleError as exc:
        typer.secho(f"Dependency cycle: {' -> '.join(exc.cycle)}", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    except DefinitionError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=2)
    return definition


def _print_report(report: RunReport) -> None:
    colour = typer.colors.GREEN if report.succeeded else typer.colors.RED
    typer.secho(
        f"Run {report.run_id} ({report.name}) attempt {report.attempt}: "
        f"{report.status.value}",
        fg=colour,
    )
    if report.error:
        typer.echo(f"Error: {report.error['reason']}: {report.error['message']}")
    for stage in report.stages:
        line = f"- {stage.name}: {stage.status.value}"
        if stage.changed is not None:
            line += " (changed)" if stage.changed else " (unchanged)"
        if stage.resource_id:
            line += f" {stage.resource_id}"
        if stage.error:
            line += f" [{stage.error['reason']}] {stage.error['message']}"
        typer.echo(line)


async def _execute(
    executor: PipelineExecutor, definition: RunDefinition, run_id: Optional[str]
) -> RunReport:
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, cancel.set)
    except (NotImplementedError, RuntimeError):  # pragma: no cover - platform specific
        pass
    return await executor.execute(definition, run_id=run_id, cancel=cancel)


@app.command("run")
def run(
    definition_path: Path,
    run_id: Optional[str] = typer.Option(None, help="Re-run an earlier run id"),
    config: Optional[Path] = typer.Option(None, help="Path to stagecraft.yaml"),
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON"),
) -> None:
    """
    Execute a run definition.

    Stages are dispatched in dependency waves against the configured
    provisioning backend. Passing ``--run-id`` of an earlier run re-executes
    it; stages that already converged report ``unchanged``. SIGTERM stops
    dispatching new waves.

    Example:
        stagecraft run pipeline.yaml
        stagecraft run pipeline.yaml --run-id 0b6c... --json
    """
    settings = load_config(str(config) if config else None)
    definition = _load(definition_path, settings.execution.rollout_steps)
    repository = _repository(config)
    try:
        executor = PipelineExecutor.from_config(
            settings,
            broker=get_broker(settings),
            repository=repository,
        )
    except (AuthError, ValueError) as exc:
        raise _config_error(exc)
    report = asyncio.run(_execute(executor, definition, run_id))

    if json_output:
        typer.echo(report.model_dump_json(indent=2))
    else:
        _print_report(report)
    if not report.succeeded:
        raise typer.Exit(code=1)


@app.command("plan")
def plan(definition_path: Path) -> None:
    """Validate a run definition and print the waves it would dispatch."""
    definition = _load(definition_path)
    graph = definition.graph()
    typer.echo(f"Run {definition.name}: {len(graph)} stages")
    for number, wave in enumerate(graph.waves(), start=1):
        typer.echo(f"Wave {number}: {', '.join(wave)}")


@app.command("init")
def init(
    path: Path = typer.Argument(Path("pipeline.yaml")),
    model: str = typer.Option("model", help="Model name used to derive resource names"),
    endpoint: str = typer.Option("model-endpoint", help="Online endpoint name"),
    slot: str = typer.Option("green", help="Deployment receiving traffic"),
    previous_slot: Optional[str] = typer.Option("blue", help="Deployment drained of traffic"),
    steps: int = typer.Option(3, help="Traffic shifting steps"),
    force: bool = typer.Option(False, help="Overwrite an existing file"),
) -> None:
    """Write the standard ML platform pipeline as a run definition."""
    if path.exists() and not force:
        typer.secho(f"{path} already exists; use --force to overwrite", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    definition = ml_platform_pipeline(
        model, endpoint, slot=slot, previous_slot=previous_slot or None, steps=steps
    )
    path.write_text(yaml.safe_dump(definition.to_document(), sort_keys=False))
    typer.echo(f"Wrote {len(definition.stages)} stages to {path}")


@runs_app.command("list")
def runs_list(
    config: Optional[Path] = typer.Option(None, help="Path to stagecraft.yaml"),
) -> None:
    """List recorded runs with their status and attempt count."""
    repo = _repository(config)
    runs = asyncio.run(repo.list_runs())
    if not runs:
        typer.echo("No runs found")
        return
    for item in runs:
        typer.echo(f"{item.run_id}\t{item.name}\t{item.status}\tattempt {item.attempt}")


@runs_app.command("show")
def runs_show(
    run_id: str,
    config: Optional[Path] = typer.Option(None, help="Path to stagecraft.yaml"),
) -> None:
    """Show the latest stage outcomes of a recorded run."""
    repo = _repository(config)
    item = asyncio.run(repo.get_run(run_id))
    if item is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {item.run_id} ({item.name}): {item.status}, attempt {item.attempt}")
    if item.error:
        typer.echo(f"Error: {item.error.get('reason')}: {item.error.get('message')}")
    for name, record in item.latest_stages().items():
        output = record.output or {}
        typer.echo(
            f"- {name}: {record.status}"
            + (f" {output['resource_id']}" if output.get("resource_id") else "")
            + (
                f" ({record.started_at} -> {record.completed_at})"
                if record.started_at or record.completed_at
                else ""
            )
        )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
