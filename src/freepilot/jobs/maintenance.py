"""Housekeeping over finished jobs: checkout cleanup and aggregate stats."""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta

from freepilot.errors import CollaboratorError
from freepilot.jobs.models import JobStatus
from freepilot.jobs.repository import JobRepository
from freepilot.jobs.workdir import JobWorkdirManager, extract_repository_name
from freepilot.services.github import GitHubClient, parse_pull_request_url
from freepilot.storage.common import utc_now

logger = logging.getLogger(__name__)

_SATS_PATTERN = re.compile(r"(\d+) sats", re.IGNORECASE)
_TOKENS_PATTERN = re.compile(r"(\d+) (?:input|output)", re.IGNORECASE)


@dataclass(slots=True)
class CleanupReport:
    """What a cleanup pass touched."""

    examined: int = 0
    deleted: int = 0
    failed: int = 0


@dataclass(slots=True)
class JobStats:
    """Totals over completed jobs."""

    total_completed_jobs: int = 0
    total_earnings_in_sats: int = 0
    total_tokens_processed: int = 0
    total_merged_prs: int | None = None

    def to_dict(self) -> dict[str, int | None]:
        return {
            "totalCompletedJobs": self.total_completed_jobs,
            "totalEarningsInSats": self.total_earnings_in_sats,
            "totalTokensProcessed": self.total_tokens_processed,
            "totalMergedPRs": self.total_merged_prs,
        }


def cleanup_old_repositories(
    store: JobRepository,
    workdir: JobWorkdirManager,
    *,
    older_than_hours: float,
    now: datetime | None = None,
    dry_run: bool = False,
) -> CleanupReport:
    """Delete local checkouts of jobs created before the cutoff.

    The job directory itself (and its ``log.txt``) is kept so progress and
    stats stay available. A failure on one job is logged and skipped.
    """

    cutoff = (now or utc_now()) - timedelta(hours=older_than_hours)
    jobs = store.list_jobs_for_cleanup(created_before=cutoff)
    logger.info("Found %s old jobs to clean up", len(jobs))

    report = CleanupReport(examined=len(jobs))
    for job in jobs:
        if not job.status.is_terminal:
            logger.debug("Skipping running job %s", job.job_id)
            continue
        checkout = workdir.checkout_path(job.job_id, extract_repository_name(job.issue_url))
        if dry_run:
            logger.info("Would delete %s for job %s", checkout, job.job_id)
            continue
        try:
            if checkout.exists():
                shutil.rmtree(checkout)
                report.deleted += 1
                logger.info("Deleted repository folder for job %s: %s", job.job_id, checkout)
            else:
                logger.debug("Repository folder doesn't exist for job %s", job.job_id)
            store.mark_cleaned_up(job.job_id)
        except OSError as error:
            report.failed += 1
            logger.error("Failed to cleanup job %s: %s", job.job_id, error)
    logger.info("Completed cleanup of old repository folders")
    return report


def collect_job_stats(
    store: JobRepository,
    workdir: JobWorkdirManager,
    *,
    github: GitHubClient | None = None,
) -> JobStats:
    """Sum sats and token counts over completed job logs.

    Merged pull requests are only counted when a GitHub client is given.
    """

    completed = store.list_jobs(status=JobStatus.COMPLETED, limit=None)
    stats = JobStats(total_completed_jobs=len(completed))
    for job in completed:
        try:
            text = workdir.read_log(job.job_id)
        except OSError as error:
            logger.warning("Could not read log file for job %s: %s", job.job_id, error)
            continue
        stats.total_earnings_in_sats += sum(int(m.group(1)) for m in _SATS_PATTERN.finditer(text))
        stats.total_tokens_processed += sum(
            int(m.group(1)) for m in _TOKENS_PATTERN.finditer(text)
        )

    if github is not None:
        pr_urls = [job.result_url for job in completed if job.result_url]
        stats.total_merged_prs = _count_merged_pull_requests(github, pr_urls)
    return stats


def _count_merged_pull_requests(github: GitHubClient, pr_urls: list[str]) -> int:
    merged = 0
    for pr_url in sorted(set(pr_urls)):
        parsed = parse_pull_request_url(pr_url)
        if parsed is None:
            continue
        owner, repo, number = parsed
        try:
            if github.get_pull_request(owner, repo, number).get("merged"):
                merged += 1
        except CollaboratorError as error:
            logger.warning("Could not fetch PR %s: %s", pr_url, error)
    return merged
