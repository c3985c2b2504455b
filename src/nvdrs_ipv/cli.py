# src/nvdrs_ipv/cli.py
from pathlib import Path
from typing import List, Optional

import typer
from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.table import Table

from .config import get_database_url, load_experiment_config
from .db import create_db_engine, ensure_schema, make_session_factory, session_scope
from .errors import IPVTrackerError
from .ingest.narratives import check_data_loaded, load_narrative_file
from .logging_setup import setup_logging
from .pipeline.orchestrator import ExperimentOrchestrator
from .tracking.experiments import ExperimentSummary
from .tracking.queries import compare_experiments, list_experiments

app = typer.Typer(help="IPV detection experiments: load narratives, run and inspect experiments")
console = Console()

DatabaseOption = typer.Option(None, "--database-url", help="SQLAlchemy URL (defaults to DATABASE_URL or sqlite:///experiments.db)")


def _fmt(value, digits: int = 3) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.{digits}f}"
    return str(value)


def _session_factory(database_url: str):
    engine = create_db_engine(database_url)
    added = ensure_schema(engine)
    if added:
        console.print(f"[yellow]Schema migrated, added: {', '.join(added)}[/yellow]")
    return make_session_factory(engine)


def _print_summary(summary: ExperimentSummary) -> None:
    table = Table(title=f"Experiment {summary.experiment_id}", box=box.ROUNDED)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    metrics = summary.metrics
    rows = [
        ("Name", summary.name),
        ("Status", summary.status),
        ("Narratives", f"{summary.narratives_processed} processed / {_fmt(summary.narratives_total)} total"),
        ("Skipped", summary.narratives_skipped),
        ("Runtime (s)", _fmt(summary.total_runtime_seconds, 1)),
    ]
    if metrics is not None:
        counts = metrics.counts
        rows += [
            ("Accuracy", _fmt(metrics.accuracy)),
            ("Precision", _fmt(metrics.precision)),
            ("Recall", _fmt(metrics.recall)),
            ("F1", _fmt(metrics.f1)),
            ("TP / TN / FP / FN", f"{counts.true_positive} / {counts.true_negative} / "
                                  f"{counts.false_positive} / {counts.false_negative}"),
        ]
    for name, value in rows:
        table.add_row(name, _fmt(value))
    console.print(table)


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/red] {error}")
    raise typer.Exit(code=1)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    "Load .env and configure console logging"
    load_dotenv()
    setup_logging(verbose)


@app.command("init-db")
def init_db(database_url: Optional[str] = DatabaseOption):
    "Create tables and indexes, adding any missing columns"
    url = get_database_url(database_url)
    added = ensure_schema(create_db_engine(url))
    typer.echo(f"schema ready at {url}" + (f" (added: {', '.join(added)})" if added else ""))


@app.command("load-csv")
def load_csv(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Wide NVDRS CSV export"),
    force: bool = typer.Option(False, "--force", help="Reload even if this file was loaded before"),
    database_url: Optional[str] = DatabaseOption,
):
    "Pivot and load source narratives from a CSV export"
    factory = _session_factory(get_database_url(database_url))
    with session_scope(factory) as s:
        outcome = load_narrative_file(s, path, force_reload=force)
    if outcome.already_loaded:
        typer.echo(f"already loaded: {outcome.existing} narratives from {path} (use --force to reload)")
        return
    table = Table(title=f"Loaded from {path}", box=box.ROUNDED)
    table.add_column("Type")
    table.add_column("Narratives", justify="right")
    table.add_column("Manual positives", justify="right")
    for narrative_type, counts in outcome.by_type.items():
        table.add_row(narrative_type, str(counts["n"]), str(counts["n_positive"]))
    console.print(table)
    if outcome.skipped_duplicates:
        typer.echo(f"skipped {outcome.skipped_duplicates} duplicate narratives")


def _prepare(config_path: Path, database_url: Optional[str]):
    config = load_experiment_config(config_path, database_url=database_url)
    factory = _session_factory(config.storage.database_url)
    data_file = config.data.file
    if data_file and data_file.lower().endswith(".csv") and Path(data_file).exists():
        with session_scope(factory) as s:
            if not check_data_loaded(s, data_file):
                load_narrative_file(s, data_file)
    return config, factory


@app.command("run")
def run(
    config_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Experiment YAML"),
    database_url: Optional[str] = DatabaseOption,
):
    "Run a new experiment"
    try:
        config, factory = _prepare(config_path, database_url)
        result = ExperimentOrchestrator(config, factory).run()
    except IPVTrackerError as e:
        _fail(e)
    _print_summary(result.summary)


@app.command("resume")
def resume(
    experiment_id: str = typer.Argument(..., help="Experiment left in 'running' state"),
    config_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Experiment YAML"),
    database_url: Optional[str] = DatabaseOption,
):
    "Resume a crashed experiment, skipping narratives that already have results"
    try:
        config, factory = _prepare(config_path, database_url)
        result = ExperimentOrchestrator(config, factory).resume(experiment_id)
    except IPVTrackerError as e:
        _fail(e)
    typer.echo(f"resumed: {result.resumed_skips} skipped, {result.attempted} processed")
    _print_summary(result.summary)


@app.command("list")
def list_cmd(
    status: Optional[str] = typer.Option(None, "--status", help="running | completed | failed"),
    database_url: Optional[str] = DatabaseOption,
):
    "List experiments, newest first"
    factory = _session_factory(get_database_url(database_url))
    with session_scope(factory) as s:
        try:
            experiments = list_experiments(s, status)
        except ValueError as e:
            _fail(e)
        table = Table(title="Experiments", box=box.ROUNDED)
        for column in ("ID", "Name", "Status", "Model", "Prompt", "Processed", "F1", "Started"):
            table.add_column(column)
        for e in experiments:
            table.add_row(
                e.experiment_id, e.name, e.status, e.model_name, _fmt(e.prompt_version),
                f"{e.narratives_processed}/{_fmt(e.narratives_total)}", _fmt(e.f1), _fmt(e.start_time),
            )
    console.print(table)


@app.command("compare")
def compare(
    experiment_ids: List[str] = typer.Argument(..., help="Experiment IDs"),
    database_url: Optional[str] = DatabaseOption,
):
    "Compare experiments side by side, best F1 first"
    factory = _session_factory(get_database_url(database_url))
    with session_scope(factory) as s:
        table = Table(title="Experiment comparison", box=box.ROUNDED)
        for column in ("ID", "Name", "Model", "Temp", "Accuracy", "Precision", "Recall", "F1"):
            table.add_column(column)
        for e in compare_experiments(s, experiment_ids):
            table.add_row(
                e.experiment_id, e.name, e.model_name, _fmt(e.temperature, 2),
                _fmt(e.accuracy), _fmt(e.precision), _fmt(e.recall), _fmt(e.f1),
            )
    console.print(table)


if __name__ == "__main__":
    app()
