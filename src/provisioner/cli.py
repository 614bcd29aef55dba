"""
CLI: ``provisioner`` — run scrape jobs and query the fleet.

Usage::

    provisioner run URL --prefix lausanne --upload-id reviews/lausanne.csv
    provisioner run URL -p lausanne -u reviews/lausanne.csv --deadline 900 --json
    provisioner census                  # all running containers
    provisioner census --managed-only   # only units this tool created
    provisioner settings                # effective settings
"""

from __future__ import annotations

import asyncio
import json

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from provisioner.core.errors import ProvisionerError
from provisioner.core.settings import get_settings
from provisioner.jobs import Job
from provisioner.logging.config import configure_logging
from provisioner.pipeline.runner import JobResult, ProvisionRunner

app = typer.Typer(
    name="provisioner",
    help="Run a scraper in a throwaway container and publish its output.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()
err_console = Console(stderr=True)


def build_runner(deadline: float | None = None) -> ProvisionRunner:
    """Runner from environment settings, optionally with a different deadline."""
    settings = get_settings()
    if deadline is not None:
        settings = settings.model_copy(update={"job_deadline_seconds": deadline})
    return ProvisionRunner.from_settings(settings)


def _version_callback(value: bool) -> None:
    if value:
        from provisioner import __version__

        typer.echo(f"provisioner {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Override PROVISIONER_LOG_LEVEL."),
) -> None:
    """provisioner CLI — ephemeral scrape jobs."""
    settings = get_settings()
    configure_logging(level=log_level or settings.log_level, format=settings.log_format)


# ── Jobs ─────────────────────────────────────────────────────────────────


@app.command()
def run(
    url: str = typer.Argument(..., help="Location review page to scrape."),
    prefix: str = typer.Option(..., "--prefix", "-p", help="Prefix for the local artifact file."),
    upload_id: str = typer.Option(..., "--upload-id", "-u", help="Key to publish the artifact under."),
    name: str | None = typer.Option(None, "--name", "-n", help="Location name (default: from URL)."),
    deadline: float | None = typer.Option(None, "--deadline", "-d", help="Job deadline in seconds."),
    json_out: bool = typer.Option(False, "--json", help="Output result as JSON."),
) -> None:
    """Run one scrape job end to end."""
    try:
        job = Job(
            target_url=url,
            file_prefix=prefix,
            upload_identifier=upload_id,
            work_name=name or "",
        )
    except (ValidationError, ProvisionerError) as exc:
        err_console.print(f"[red]Invalid job:[/] {exc}")
        raise typer.Exit(code=2) from None

    if not json_out:
        console.print(f"[bold]provisioner run[/] — job {job.job_id} ({job.work_name})")

    runner = build_runner(deadline)
    result = asyncio.run(runner.execute(job))

    if json_out:
        typer.echo(result.model_dump_json(indent=2))
    else:
        _print_job_result(result)

    if not result.succeeded:
        raise typer.Exit(code=1)


# ── Census ───────────────────────────────────────────────────────────────


@app.command()
def census(
    managed_only: bool = typer.Option(False, "--managed-only", help="Count only units created here."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Count running units on the backend."""
    runner = build_runner()
    try:
        count = asyncio.run(runner.count_running(managed_only=managed_only))
    except ProvisionerError as exc:
        err_console.print(f"[red]{exc.kind}:[/] {exc.message}")
        raise typer.Exit(code=1) from None

    if json_out:
        typer.echo(json.dumps({"running": count, "managed_only": managed_only}))
    else:
        scope = "managed units" if managed_only else "containers"
        console.print(f"[bold]{count}[/] running {scope}")


# ── Settings ─────────────────────────────────────────────────────────────


@app.command("settings")
def show_settings() -> None:
    """Show effective settings."""
    settings = get_settings()
    table = Table(title="Provisioner settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in settings.model_dump().items():
        table.add_row(key, str(value))
    console.print(table)


# ── Output ───────────────────────────────────────────────────────────────


def _print_job_result(result: JobResult) -> None:
    colour = "green" if result.succeeded else "red"
    table = Table(title=f"Job {result.job_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("status", f"[{colour}]{result.status.value}[/]")
    table.add_row("work name", result.work_name)
    table.add_row("unit", (result.unit_id or "-")[:12])
    table.add_row("exit code", str(result.exit_code) if result.exit_code is not None else "-")
    table.add_row("local file", result.local_path or "-")
    table.add_row("size", f"{result.size_bytes} bytes" if result.size_bytes is not None else "-")
    table.add_row("published", f"{result.bucket}/{result.upload_identifier}" if result.bucket else "-")
    table.add_row("duration", f"{result.duration_seconds:.1f}s")
    console.print(table)

    if result.error:
        err_console.print(f"[red]{result.error_kind}:[/] {result.error.get('message')}")


if __name__ == "__main__":
    app()
