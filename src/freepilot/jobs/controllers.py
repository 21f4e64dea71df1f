"""Controllers for job CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path

from freepilot.agent.launcher import AgentLauncher
from freepilot.config import Settings
from freepilot.jobs.maintenance import cleanup_old_repositories, collect_job_stats
from freepilot.jobs.models import JobStatus
from freepilot.jobs.orchestrator import JobOrchestrator
from freepilot.jobs.progress import analyze_logs
from freepilot.jobs.repository import JobRepository
from freepilot.jobs.supervisor import ProcessRegistry, ProcessSupervisor
from freepilot.jobs.workdir import JobWorkdirManager
from freepilot.services.github import (
    GitHubClient,
    GitHubPublishService,
    GitHubRepositoryService,
    GitRunner,
)
from freepilot.services.wallet import NoopWalletService


@dataclass(slots=True)
class JobRunCommand:
    """CLI input for running one job in the foreground."""

    db_path: Path | None
    issue_url: str
    poll_seconds: float = 1.0


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    """CLI input for commands addressing one job."""

    db_path: Path | None
    job_id: str
    as_json: bool = False


@dataclass(slots=True)
class JobCancelCommand:
    """CLI input for cancellation."""

    db_path: Path | None
    job_id: str
    force: bool


@dataclass(slots=True)
class JobCleanupCommand:
    """CLI input for checkout cleanup."""

    db_path: Path | None
    hours: float | None
    dry_run: bool


@dataclass(slots=True)
class JobStatsCommand:
    """CLI input for aggregate stats."""

    db_path: Path | None
    merged_prs: bool


class JobCliController:
    """Coordinates job run, inspection, cancellation and maintenance commands."""

    def run_job(self, command: JobRunCommand) -> Iterator[str]:
        """Run the pipeline in this process, streaming progress until it ends.

        Interrupting the command requests cancellation and waits for the
        pipeline to settle.
        """

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_run()

        with _repository(settings) as repository, ExitStack() as stack:
            orchestrator = build_orchestrator(settings, repository, stack=stack)
            job = repository.create_job(issue_url=command.issue_url)
            yield f"Job created: job_id={job.job_id}"

            workdir = orchestrator.workdir
            thread = orchestrator.start(job.job_id)
            last_step = ""
            try:
                while thread.is_alive():
                    thread.join(timeout=command.poll_seconds)
                    summary = analyze_logs(workdir.read_log(job.job_id))
                    if summary.current_step != last_step:
                        last_step = summary.current_step
                        yield f"Step: {last_step}"
            except KeyboardInterrupt:
                orchestrator.request_cancel(job.job_id)
                yield "Cancellation requested, waiting for the job to stop..."
                thread.join()

            final = repository.require_job(job.job_id)
            yield f"Status: {final.status.value}"
            if final.result_url:
                yield f"Pull request: {final.result_url}"
            if final.error_summary:
                yield f"Error: {final.error_summary}"

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} status={job.status.value} "
                f"cancel_requested={job.cancel_requested} "
                f"created_at={job.created_at.isoformat()} url={job.issue_url}",
            )
        return lines

    def show_job(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Issue: {job.issue_url}",
            f"Status: {job.status.value}",
            f"Cancel requested: {job.cancel_requested}",
            f"Process: {job.process_pid if job.process_pid is not None else '-'}",
            f"Pull request: {job.result_url or '-'}",
            f"Error: {job.error_summary or '-'}",
            f"Cleaned up: {job.cleaned_up}",
            f"Created: {job.created_at.isoformat()}",
            f"Finished: {job.finished_at.isoformat() if job.finished_at else '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def progress(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.require_job(command.job_id)
        workdir = JobWorkdirManager(settings.jobs_dir)
        summary = analyze_logs(workdir.read_log(job.job_id))

        if command.as_json:
            payload = {"status": job.status.value, **summary.to_dict()}
            return [json.dumps(payload, ensure_ascii=False)]

        lines = [
            f"Job: {job.job_id}",
            f"Status: {job.status.value}",
            f"Current step: {summary.current_step}",
            f"Completed steps: {len(summary.completed_steps)}",
        ]
        lines.extend(f"  ✓ {step}" for step in summary.completed_steps)
        lines.append(f"Total cost: {summary.total_cost} sats")
        return lines

    def logs(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.require_job(command.job_id)
        text = JobWorkdirManager(settings.jobs_dir).read_log(job.job_id)
        if not text:
            return [f"No logs yet for job {job.job_id}"]
        return text.splitlines()

    def cancel_job(self, command: JobCancelCommand) -> list[str]:
        """Set the cancellation flag; a running pipeline observes it and stops.

        ``force`` also writes CANCELLED directly, for jobs whose pipeline
        process is gone and will never reach another checkpoint.
        """

        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.require_job(command.job_id)
            if job.status.is_terminal:
                return [f"Job already finished: {job.job_id} status={job.status.value}"]
            flipped = repository.request_cancel(command.job_id)
            lines = [
                f"Cancel requested: {command.job_id}"
                if flipped
                else f"Cancel already requested: {command.job_id}",
            ]
            if command.force:
                recorded = repository.finish_job(command.job_id, JobStatus.CANCELLED)
                lines.append(f"Status: {recorded.value}")
                if job.process_pid is not None:
                    lines.append(
                        f"Warning: worker pid {job.process_pid} was recorded for this job "
                        "and is not stopped by a forced cancel.",
                    )
        return lines

    def cleanup(self, command: JobCleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        hours = command.hours if command.hours is not None else settings.cleanup.after_hours
        with _repository(settings) as repository:
            report = cleanup_old_repositories(
                repository,
                JobWorkdirManager(settings.jobs_dir),
                older_than_hours=hours,
                dry_run=command.dry_run,
            )
        mode = " (dry run)" if command.dry_run else ""
        return [
            f"Cleanup{mode}: examined={report.examined} deleted={report.deleted} "
            f"failed={report.failed}",
        ]

    def stats(self, command: JobStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, ExitStack() as stack:
            github = None
            if command.merged_prs:
                if not settings.github.token:
                    raise ValueError("GITHUB_TOKEN is required to count merged pull requests.")
                github = stack.enter_context(_github_client(settings))
            stats = collect_job_stats(
                repository,
                JobWorkdirManager(settings.jobs_dir),
                github=github,
            )
        merged = "-" if stats.total_merged_prs is None else str(stats.total_merged_prs)
        return [
            f"Completed jobs: {stats.total_completed_jobs}",
            f"Earned: {stats.total_earnings_in_sats} sats",
            f"Tokens processed: {stats.total_tokens_processed}",
            f"Merged pull requests: {merged}",
        ]


def build_orchestrator(
    settings: Settings,
    repository: JobRepository,
    *,
    stack: ExitStack,
    registry: ProcessRegistry | None = None,
) -> JobOrchestrator:
    """Wire the production collaborators; ``stack`` owns the HTTP client."""

    registry = registry or ProcessRegistry()
    github = stack.enter_context(_github_client(settings))
    git = GitRunner()
    supervisor = ProcessSupervisor(registry, grace_seconds=settings.agent.grace_seconds)
    return JobOrchestrator(
        store=repository,
        workdir=JobWorkdirManager(settings.jobs_dir),
        wallet=NoopWalletService(),
        repositories=GitHubRepositoryService(
            github,
            git,
            bot_username=settings.github.bot_username,
            clone_url_template=settings.github.clone_url_template,
        ),
        publisher=GitHubPublishService(
            github,
            git,
            bot_username=settings.github.bot_username,
            public_url=settings.public_url,
        ),
        agent=AgentLauncher(
            supervisor,
            command_template=settings.agent.command_template,
            timeout_seconds=settings.agent.timeout_seconds,
            extra_env=settings.agent.extra_env,
        ),
        registry=registry,
    )


def _github_client(settings: Settings) -> GitHubClient:
    return GitHubClient(
        token=settings.github.token,
        api_url=settings.github.api_url,
        timeout_seconds=settings.github.request_timeout_seconds,
    )


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    try:
        return JobStatus(value.upper())
    except ValueError as error:
        raise ValueError(f"Unsupported job status: {value!r}") from error


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()

