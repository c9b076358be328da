"""CLI entrypoint for comicgen."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import rich_click as click

from comicgen import __version__
from comicgen.generation.controllers import (
    CallbackApplyCommand,
    CleanupCommand,
    CommandError,
    GenerationCliController,
    JobsLaunchCommand,
    JobsListCommand,
    JobsResumeCommand,
    JobsStatusCommand,
    ServeCommand,
)

click.rich_click.USE_MARKDOWN = True
GENERATION_CONTROLLER = GenerationCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="comicgen")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def comicgen(log_level: str) -> None:
    """Comic page generation CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@comicgen.group()
def jobs() -> None:
    """Comic job commands."""


@jobs.command("launch")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--product",
    type=click.Choice(("preview", "full"), case_sensitive=False),
    default="preview",
    show_default=True,
    help="Product to generate: preview (1 page) or full (7 pages).",
)
@click.option(
    "--prompt",
    "prompts",
    multiple=True,
    required=True,
    help="Page prompt, in page order. Repeat once per page.",
)
@click.option(
    "--reference-image",
    "reference_images",
    multiple=True,
    help="Reference image URL. Can be repeated.",
)
@click.option("--theme", default=None, help="Comic theme.")
@click.option("--style", default=None, help="Art style.")
@click.option(
    "--payment-ref",
    default=None,
    help="Reference of an already verified payment; required for the full product.",
)
@click.option(
    "--wait/--no-wait",
    default=True,
    show_default=True,
    help="Wait for all pages to finish before exiting.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Max seconds to wait for pages.",
)
def jobs_launch(  # noqa: PLR0913
    db_path: Path | None,
    product: str,
    prompts: tuple[str, ...],
    reference_images: tuple[str, ...],
    theme: str | None,
    style: str | None,
    payment_ref: str | None,
    wait: bool,
    timeout_seconds: float | None,
) -> None:
    """Create a comic job and submit one generation task per page."""

    _run(
        GENERATION_CONTROLLER.launch,
        JobsLaunchCommand(
            db_path=db_path,
            product=product,
            prompts=prompts,
            reference_images=reference_images,
            theme=theme,
            style=style,
            payment_ref=payment_ref,
            wait=wait,
            timeout_seconds=timeout_seconds,
        ),
    )


@jobs.command("status")
@click.argument("job_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_status(job_id: str, db_path: Path | None) -> None:
    """Show job progress and per-page task state."""

    _run(GENERATION_CONTROLLER.status, JobsStatusCommand(db_path=db_path, job_id=job_id))


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(("generating", "completed", "failed"), case_sensitive=False),
    default=None,
    help="Optional job status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List newest jobs first."""

    _run(
        GENERATION_CONTROLLER.list_jobs,
        JobsListCommand(db_path=db_path, status=status, limit=limit),
    )


@jobs.command("resume")
@click.argument("job_id", required=False)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--wait/--no-wait",
    default=True,
    show_default=True,
    help="Wait for resumed pages to finish before exiting.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Max seconds to wait per job.",
)
def jobs_resume(
    job_id: str | None,
    db_path: Path | None,
    wait: bool,
    timeout_seconds: float | None,
) -> None:
    """Restart pollers for waiting pages of one job, or of every generating job."""

    _run(
        GENERATION_CONTROLLER.resume,
        JobsResumeCommand(
            db_path=db_path,
            job_id=job_id,
            wait=wait,
            timeout_seconds=timeout_seconds,
        ),
    )


@comicgen.group()
def callback() -> None:
    """Provider callback commands."""


@callback.command("apply")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--file",
    "payload_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON file with the provider callback body.",
)
def callback_apply(db_path: Path | None, payload_path: Path) -> None:
    """Apply a saved provider callback body, as the webhook would."""

    _run(
        GENERATION_CONTROLLER.apply_callback,
        CallbackApplyCommand(db_path=db_path, payload_path=payload_path),
    )


@comicgen.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--retention-hours",
    type=click.IntRange(min=0),
    default=None,
    help="Override COMICGEN_RETENTION_HOURS.",
)
def cleanup(db_path: Path | None, retention_hours: int | None) -> None:
    """Delete reference images of jobs older than the retention window."""

    _run(
        GENERATION_CONTROLLER.cleanup,
        CleanupCommand(db_path=db_path, retention_hours=retention_hours),
    )


@comicgen.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--host", default=None, help="Bind host (default COMICGEN_WEB_HOST).")
@click.option(
    "--port",
    type=click.IntRange(min=1, max=65535),
    default=None,
    help="Bind port (default COMICGEN_WEB_PORT).",
)
@click.option(
    "--resume-pending/--no-resume-pending",
    default=True,
    show_default=True,
    help="Restart pollers for generating jobs on startup.",
)
def serve(db_path: Path | None, host: str | None, port: int | None, resume_pending: bool) -> None:
    """Run the webhook and job status HTTP server.

    The served app has no payment verifier, so only the free preview product is
    offered; `POST /api/generate/full` answers 404.
    """

    try:
        GENERATION_CONTROLLER.serve(
            ServeCommand(db_path=db_path, host=host, port=port, resume_pending=resume_pending),
        )
    except CommandError as error:
        raise click.ClickException(str(error)) from error


def _run(handler: Callable[[Any], list[str]], command: object) -> None:
    try:
        lines = handler(command)
    except CommandError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    comicgen()
