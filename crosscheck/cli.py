from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer

from crosscheck.constants import DEFAULT_BATCH_NAME, DEFAULT_ENVIRONMENTS
from crosscheck.errors import ConfigError
from crosscheck.schemas import BatchReport, EnvironmentDescriptor
from crosscheck.services.artifacts import ArtifactStore
from crosscheck.services.matrix import load_batch_config, load_script
from crosscheck.services.orchestrator import BatchOrchestrator
from crosscheck.services.storage import LocalJsonStorage, ReportRepository

CONFIG_ERROR_EXIT_CODE = 3

LOGGER = logging.getLogger("crosscheck.cli")

app = typer.Typer(help="Run interaction scripts across browsers and devices.", no_args_is_help=True)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _read_json(path: Path, label: str) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"{label} file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{label} file is not valid JSON: {path} ({exc})") from exc


def _print_report(report: BatchReport) -> None:
    typer.echo(f"Batch: {report.batch_name}")
    for result in report.ordered_results():
        verdicts = ", ".join(f"{item.tag}={item.verdict.value}" for item in result.checkpoint_results) or "-"
        line = f"  [{result.status.value:>9}] {result.environment.key:<28} {verdicts}"
        if result.error:
            line += f"  ({result.error})"
        typer.echo(line)
    summary = report.summary
    typer.echo(
        f"Jobs: {summary.jobs_total} total, {summary.jobs_completed} completed, "
        f"{summary.jobs_failed} failed, {summary.jobs_errored} errored"
    )
    typer.echo(f"Overall: {report.overall_status.value}")


@app.command("run")
def run(
    script: Path = typer.Argument(..., help="JSON file with the interaction script."),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="JSON batch configuration. Defaults to the built-in environment matrix.",
    ),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-n", help="Maximum concurrent jobs."),
    batch_name: Optional[str] = typer.Option(None, "--batch-name", "-b", help="Override the batch name."),
    artifacts: Path = typer.Option(Path("artifacts"), "--artifacts", help="Directory for captures and baselines."),
    state: Path = typer.Option(Path("crosscheck.state.json"), "--state", help="JSON file holding batch records."),
    report_path: Optional[Path] = typer.Option(None, "--report", "-o", help="Write the batch report as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run a batch and exit with its overall status code."""
    _configure_logging(verbose)
    try:
        raw_config = (
            _read_json(config, "Config")
            if config is not None
            else {"batch_name": DEFAULT_BATCH_NAME, "environments": DEFAULT_ENVIRONMENTS}
        )
        batch_config = load_batch_config(
            raw_config,
            overrides={"concurrency": concurrency, "batch_name": batch_name},
        )
        interaction_script = load_script(_read_json(script, "Script"))
        repo = ReportRepository(LocalJsonStorage(state))
        orchestrator = BatchOrchestrator(repo, ArtifactStore(root=artifacts), auto_start=False)
        batch_id, report = orchestrator.execute(batch_config, interaction_script)
    except ConfigError as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise typer.Exit(CONFIG_ERROR_EXIT_CODE)

    _print_report(report)
    if report_path is not None:
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
        LOGGER.info("Wrote report for batch %s to %s", batch_id, report_path)
    raise typer.Exit(report.exit_code)


@app.command("environments")
def environments() -> None:
    """List the default environment matrix."""
    for index, raw in enumerate(DEFAULT_ENVIRONMENTS, 1):
        descriptor = EnvironmentDescriptor.model_validate(raw)
        kind = "device" if descriptor.is_mobile else "desktop"
        typer.echo(f"{index:>2}. {descriptor.key} ({kind})")


if __name__ == "__main__":
    app()
