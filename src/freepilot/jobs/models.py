"""Domain models for jobs and their pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Job lifecycle states exposed to callers."""

    INITIALIZING = "INITIALIZING"
    CHECKING_WALLET = "CHECKING_WALLET"
    PREPARING_REPOSITORY = "PREPARING_REPOSITORY"
    AGENT_WORKING = "AGENT_WORKING"
    PUBLISHING = "PUBLISHING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

PIPELINE_ORDER: tuple[JobStatus, ...] = (
    JobStatus.INITIALIZING,
    JobStatus.CHECKING_WALLET,
    JobStatus.PREPARING_REPOSITORY,
    JobStatus.AGENT_WORKING,
    JobStatus.PUBLISHING,
)


def statuses_before(status: JobStatus) -> tuple[JobStatus, ...]:
    """Non-terminal statuses a job may leave to enter ``status``."""

    if status not in PIPELINE_ORDER:
        raise ValueError(f"Not a pipeline stage status: {status.value}")
    return PIPELINE_ORDER[: PIPELINE_ORDER.index(status)]


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and orchestrator logic."""

    job_id: str
    issue_url: str
    status: JobStatus
    cancel_requested: bool
    process_pid: int | None
    result_url: str | None
    error_summary: str | None
    cleaned_up: bool
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job record with event stream."""

    job: JobView
    events: list[JobEventView]
