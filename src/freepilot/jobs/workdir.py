"""Per-job directory layout."""

from __future__ import annotations

from pathlib import Path

LOG_FILE_NAME = "log.txt"


class JobWorkdirManager:
    """Creates deterministic per-job directory layout under ``<work_dir>/jobs``."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def job_dir(self, job_id: str) -> Path:
        return self.root_dir / job_id

    def ensure_job_dir(self, job_id: str) -> Path:
        path = self.job_dir(job_id)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def log_path(self, job_id: str) -> Path:
        return self.job_dir(job_id) / LOG_FILE_NAME

    def checkout_path(self, job_id: str, repository_name: str) -> Path:
        return self.job_dir(job_id) / repository_name

    def read_log(self, job_id: str) -> str:
        """Full accumulated log text, empty when nothing was written yet."""

        path = self.log_path(job_id)
        if not path.exists():
            return ""
        return path.read_text("utf-8", errors="replace")


def extract_repository_name(issue_url: str) -> str:
    """Repository name from a GitHub issue URL (``.../<owner>/<repo>/issues/<n>``)."""

    issue_index = issue_url.find("/issues")
    repo_url = issue_url if issue_index == -1 else issue_url[:issue_index]
    return repo_url.rstrip("/").split("/")[-1]
