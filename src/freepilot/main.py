"""CLI entrypoint for freepilot."""

import logging
from collections.abc import Callable, Iterable
from pathlib import Path

import rich_click as click

from freepilot import __version__
from freepilot.errors import FreepilotError
from freepilot.jobs.controllers import (
    JobCancelCommand,
    JobCleanupCommand,
    JobCliController,
    JobInspectCommand,
    JobListCommand,
    JobRunCommand,
    JobStatsCommand,
)
from freepilot.jobs.models import JobStatus

click.rich_click.USE_MARKDOWN = True
JOB_CONTROLLER = JobCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="freepilot")
@click.option("--verbose", "-v", is_flag=True, help="Log pipeline activity to stderr.")
def freepilot(verbose: bool) -> None:
    """Freepilot: resolve GitHub issues with a supervised coding agent."""

    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING, format=LOG_FORMAT)


@freepilot.group()
def job() -> None:
    """Job commands."""


@job.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--issue-url", required=True, help="GitHub issue URL to resolve.")
@click.option(
    "--poll-seconds",
    type=click.FloatRange(min=0.1),
    default=1.0,
    show_default=True,
    help="How often progress is re-read from the job log.",
)
def job_run(db_path: Path | None, issue_url: str, poll_seconds: float) -> None:
    """Create a job and run its pipeline in the foreground.

    Press **Ctrl+C** to request cancellation.
    """

    _emit_lines(
        lambda: JOB_CONTROLLER.run_job(
            JobRunCommand(db_path=db_path, issue_url=issue_url, poll_seconds=poll_seconds),
        ),
    )


@job.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to show.",
)
def job_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        lambda: JOB_CONTROLLER.list_jobs(
            JobListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@job.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def job_show(db_path: Path | None, job_id: str) -> None:
    """Show job record and event history."""

    _emit_lines(
        lambda: JOB_CONTROLLER.show_job(JobInspectCommand(db_path=db_path, job_id=job_id)),
    )


@job.command("progress")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--json", "as_json", is_flag=True, help="Print the summary as JSON.")
def job_progress(db_path: Path | None, job_id: str, as_json: bool) -> None:
    """Show human-readable progress inferred from the job log."""

    _emit_lines(
        lambda: JOB_CONTROLLER.progress(
            JobInspectCommand(db_path=db_path, job_id=job_id, as_json=as_json),
        ),
    )


@job.command("logs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def job_logs(db_path: Path | None, job_id: str) -> None:
    """Print the job log."""

    _emit_lines(
        lambda: JOB_CONTROLLER.logs(JobInspectCommand(db_path=db_path, job_id=job_id)),
    )


@job.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option(
    "--force",
    is_flag=True,
    help="Also mark the job CANCELLED now, for jobs whose pipeline is no longer running.",
)
def job_cancel(db_path: Path | None, job_id: str, force: bool) -> None:
    """Request cancellation of a running job."""

    _emit_lines(
        lambda: JOB_CONTROLLER.cancel_job(
            JobCancelCommand(db_path=db_path, job_id=job_id, force=force),
        ),
    )


@job.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--hours",
    type=click.FloatRange(min=0),
    default=None,
    help="Delete checkouts of jobs older than this (default: FREEPILOT_CLEANUP_AFTER_HOURS).",
)
@click.option("--dry-run", is_flag=True, help="Report what would be deleted.")
def job_cleanup(db_path: Path | None, hours: float | None, dry_run: bool) -> None:
    """Delete local repository checkouts of old finished jobs."""

    _emit_lines(
        lambda: JOB_CONTROLLER.cleanup(
            JobCleanupCommand(db_path=db_path, hours=hours, dry_run=dry_run),
        ),
    )


@job.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--merged-prs/--no-merged-prs",
    default=False,
    show_default=True,
    help="Also count merged pull requests via the GitHub API.",
)
def job_stats(db_path: Path | None, merged_prs: bool) -> None:
    """Show totals over completed jobs."""

    _emit_lines(
        lambda: JOB_CONTROLLER.stats(JobStatsCommand(db_path=db_path, merged_prs=merged_prs)),
    )


def _emit_lines(produce: Callable[[], Iterable[str]]) -> None:
    """Echo controller output; controller errors become a clean CLI failure."""

    try:
        for line in produce():
            click.echo(line)
    except (FreepilotError, ValueError) as error:
        raise click.ClickException(str(error)) from error


if __name__ == "__main__":  # pragma: no cover
    freepilot()
