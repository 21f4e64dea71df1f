"""Per-job log sink writing the job's ``log.txt``."""

from __future__ import annotations

import logging
from pathlib import Path

from freepilot.jobs.workdir import LOG_FILE_NAME

JOB_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def create_job_logger(job_id: str, job_dir: Path) -> logging.Logger:
    """Logger appending to ``<job_dir>/log.txt`` and propagating to the app log."""

    job_dir.mkdir(parents=True, exist_ok=True)
    job_logger = logging.getLogger(f"freepilot.job.{job_id}")
    job_logger.setLevel(logging.INFO)
    close_job_logger(job_logger)

    handler = logging.FileHandler(job_dir / LOG_FILE_NAME, encoding="utf-8")
    handler.setFormatter(logging.Formatter(JOB_LOG_FORMAT))
    job_logger.addHandler(handler)
    return job_logger


def close_job_logger(job_logger: logging.Logger) -> None:
    """Detach and close file handlers so the log file is released."""

    for handler in list(job_logger.handlers):
        job_logger.removeHandler(handler)
        handler.close()
