"""Pipeline sequencing for one job with cooperative cancellation."""

from __future__ import annotations

import logging
import threading

from freepilot.agent.launcher import AgentLauncher
from freepilot.errors import FreepilotError, JobCancelledError
from freepilot.jobs.job_logger import close_job_logger, create_job_logger
from freepilot.jobs.models import JobStatus
from freepilot.jobs.repository import JobRepository
from freepilot.jobs.supervisor import ProcessRegistry
from freepilot.jobs.workdir import JobWorkdirManager
from freepilot.services.base import (
    PublishService,
    RepositoryService,
    StageContext,
    WalletService,
)

logger = logging.getLogger(__name__)

PREPARING_REPOSITORY_MESSAGE = "Preparing repository"
LAUNCHING_AGENT_MESSAGE = "Launching agent"
COMPLETED_MESSAGE = "Job completed! 🎉"
FAILED_MESSAGE = "job failed"
CANCELLED_MESSAGE = "Job was cancelled"


class JobOrchestrator:
    """Drive a job through wallet check, repository preparation, agent and publish.

    Cancellation is observed in two ways. Before each stage the store's
    ``cancel_requested`` flag is re-read; while the agent runs, the job's
    cancellation event interrupts the supervised process. Every run ends in
    exactly one terminal status and the store decides precedence between a
    late COMPLETED/FAILED and an earlier cancel request.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobRepository,
        workdir: JobWorkdirManager,
        wallet: WalletService,
        repositories: RepositoryService,
        publisher: PublishService,
        agent: AgentLauncher,
        registry: ProcessRegistry,
    ) -> None:
        self.store = store
        self.workdir = workdir
        self.wallet = wallet
        self.repositories = repositories
        self.publisher = publisher
        self.agent = agent
        self.registry = registry
        self._lock = threading.Lock()
        self._cancellations: dict[str, threading.Event] = {}

    def start(self, job_id: str) -> threading.Thread:
        """Run the pipeline on its own daemon thread."""

        thread = threading.Thread(
            target=self.run,
            args=(job_id,),
            daemon=True,
            name=f"job-{job_id}",
        )
        thread.start()
        logger.info("Started pipeline thread for job %s", job_id)
        return thread

    def request_cancel(self, job_id: str) -> bool:
        """Mark the job cancelled and interrupt its live worker, if any.

        Returns True only for the request that set the flag; repeated or late
        requests change nothing.
        """

        flipped = self.store.request_cancel(job_id)
        with self._lock:
            cancellation = self._cancellations.get(job_id)
        if cancellation is not None:
            cancellation.set()
        signalled = self.registry.cancel(job_id)
        logger.info(
            "Cancel requested for job %s (flag_set=%s, process_signalled=%s)",
            job_id,
            flipped,
            signalled,
        )
        return flipped

    def run(self, job_id: str) -> None:
        """Run the pipeline of a job still in INITIALIZING.

        Any other status means the job finished or another runner owns it,
        and nothing is written.
        """

        job = self.store.require_job(job_id)
        if job.status != JobStatus.INITIALIZING:
            logger.warning("Job %s is %s, not starting its pipeline", job_id, job.status.value)
            return
        cancellation = self._claim(job_id)
        if cancellation is None:
            logger.warning("Job %s already has a pipeline running", job_id)
            return
        try:
            self._run_claimed(job.job_id, job.issue_url, cancellation)
        finally:
            with self._lock:
                self._cancellations.pop(job_id, None)

    def _run_claimed(self, job_id: str, issue_url: str, cancellation: threading.Event) -> None:
        try:
            job_dir = self.workdir.ensure_job_dir(job_id)
            job_log = create_job_logger(job_id, job_dir)
        except Exception as error:
            logger.exception("Could not set up the workspace of job %s", job_id)
            self.store.finish_job(
                job_id,
                JobStatus.FAILED,
                error_summary=_summarize_error(error),
            )
            return

        context = StageContext(job_id=job_id, job_logger=job_log, job_dir=job_dir)
        try:
            result_url = self._run_stages(issue_url, context, cancellation)
        except _RunnerConflictError as error:
            logger.warning("Job %s left to its other runner: %s", job_id, error)
        except JobCancelledError as error:
            logger.info("Job %s cancelled: %s", job_id, error)
            self._finish(context, JobStatus.CANCELLED)
        except FreepilotError as error:
            logger.warning("Job %s failed: %s", job_id, error)
            self._finish(context, JobStatus.FAILED, error=error)
        except Exception as error:
            logger.exception("Unexpected error while running job %s", job_id)
            self._finish(context, JobStatus.FAILED, error=error)
        else:
            self._finish(context, JobStatus.COMPLETED, result_url=result_url)
        finally:
            close_job_logger(job_log)

    def _run_stages(
        self,
        issue_url: str,
        context: StageContext,
        cancellation: threading.Event,
    ) -> str:
        job_id = context.job_id
        job_log = context.job_logger

        self._enter_stage(job_id, JobStatus.CHECKING_WALLET, cancellation)
        self.wallet.check(context)

        job_log.info(PREPARING_REPOSITORY_MESSAGE)
        self._enter_stage(job_id, JobStatus.PREPARING_REPOSITORY, cancellation)
        prepared = self.repositories.prepare(issue_url, context)

        job_log.info(LAUNCHING_AGENT_MESSAGE)
        self._enter_stage(job_id, JobStatus.AGENT_WORKING, cancellation)
        self.agent.run(
            prepared,
            context,
            cancellation=cancellation,
            cancel_requested=lambda: self.store.is_cancel_requested(job_id),
            on_spawn=lambda pid: self.store.attach_process(job_id, pid),
            on_exit=lambda pid: self.store.detach_process(job_id, pid),
        )

        self._enter_stage(job_id, JobStatus.PUBLISHING, cancellation)
        return self.publisher.publish(prepared, context).result_url

    def _enter_stage(
        self,
        job_id: str,
        status: JobStatus,
        cancellation: threading.Event,
    ) -> None:
        if cancellation.is_set() or self.store.is_cancel_requested(job_id):
            raise JobCancelledError(f"Cancellation observed before {status.value}.")
        if not self.store.update_status(job_id, status):
            current = self.store.require_job(job_id)
            if current.cancel_requested or current.status == JobStatus.CANCELLED:
                raise JobCancelledError(f"Cancellation observed before {status.value}.")
            # Status moved on without us: another process is running this job.
            raise _RunnerConflictError(
                f"Job {job_id} cannot move from {current.status.value} to {status.value}.",
            )

    def _finish(
        self,
        context: StageContext,
        status: JobStatus,
        *,
        result_url: str | None = None,
        error: BaseException | None = None,
    ) -> None:
        error_summary = _summarize_error(error) if error is not None else None
        recorded = self.store.finish_job(
            context.job_id,
            status,
            result_url=result_url,
            error_summary=error_summary,
        )
        job_log = context.job_logger
        if recorded == JobStatus.CANCELLED and result_url is not None:
            job_log.warning("Pull request %s was opened before the cancel took effect", result_url)
        if recorded == JobStatus.COMPLETED:
            job_log.info(COMPLETED_MESSAGE)
        elif recorded == JobStatus.FAILED:
            job_log.error("%s: %s", FAILED_MESSAGE, error_summary)
        else:
            job_log.info(CANCELLED_MESSAGE)
        if recorded != status:
            logger.info(
                "Job %s resolved as %s instead of %s",
                context.job_id,
                recorded.value,
                status.value,
            )

    def _claim(self, job_id: str) -> threading.Event | None:
        """Register the job's cancellation event unless a run already owns it."""

        with self._lock:
            if job_id in self._cancellations:
                return None
            cancellation = threading.Event()
            self._cancellations[job_id] = cancellation
        return cancellation


class _RunnerConflictError(FreepilotError):
    """The job's status was advanced by a pipeline running elsewhere."""


def _summarize_error(error: BaseException) -> str:
    message = str(error).strip() or type(error).__name__
    return message[:500]
