"""Exception taxonomy for the job pipeline."""

from __future__ import annotations


class FreepilotError(RuntimeError):
    """Base class for pipeline errors."""


class JobNotFoundError(FreepilotError):
    """Job id is unknown to the store."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobCancelledError(FreepilotError):
    """User-requested interruption observed by the pipeline.

    Not a failure: resolves to the CANCELLED terminal status.
    """


class CollaboratorError(FreepilotError):
    """Repository, publish or wallet provider failed."""


class WorkerError(FreepilotError):
    """Worker process stage failed."""


class WorkerSpawnError(WorkerError):
    """Worker process could not be started."""


class WorkerExitError(WorkerError):
    """Worker process ran and exited with a non-zero code."""

    def __init__(self, exit_code: int) -> None:
        super().__init__(f"Agent process exited with non-success code: {exit_code}")
        self.exit_code = exit_code


class WorkerTimeoutError(WorkerError):
    """Worker process exceeded its wall-clock budget."""
