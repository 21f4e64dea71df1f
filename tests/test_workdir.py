from __future__ import annotations

from pathlib import Path

import allure

from freepilot.jobs.job_logger import close_job_logger, create_job_logger
from freepilot.jobs.workdir import JobWorkdirManager, extract_repository_name

pytestmark = [
    allure.epic("Job Pipeline"),
    allure.feature("Job Workspace"),
]


def test_job_layout_is_deterministic(tmp_path: Path) -> None:
    workdir = JobWorkdirManager(tmp_path / "jobs")

    created = workdir.ensure_job_dir("abc")

    assert created == tmp_path / "jobs" / "abc"
    assert created.is_dir()
    assert workdir.log_path("abc") == created / "log.txt"
    assert workdir.checkout_path("abc", "widgets") == created / "widgets"
    assert workdir.read_log("abc") == ""


def test_extract_repository_name() -> None:
    assert extract_repository_name("https://github.com/acme/widgets/issues/7") == "widgets"
    assert extract_repository_name("https://github.com/acme/widgets/") == "widgets"


def test_job_logger_appends_to_log_file(tmp_path: Path) -> None:
    workdir = JobWorkdirManager(tmp_path / "jobs")
    job_logger = create_job_logger("abc", workdir.job_dir("abc"))

    job_logger.info("Preparing repository")
    job_logger.error("job failed: boom")
    close_job_logger(job_logger)

    lines = workdir.read_log("abc").splitlines()
    assert lines[0].endswith("[INFO] Preparing repository")
    assert lines[1].endswith("[ERROR] job failed: boom")
    assert job_logger.handlers == []


def test_job_logger_reopens_without_duplicate_handlers(tmp_path: Path) -> None:
    job_dir = tmp_path / "jobs" / "abc"
    first = create_job_logger("abc", job_dir)
    second = create_job_logger("abc", job_dir)

    second.info("once")
    close_job_logger(second)

    assert first is second
    assert (job_dir / "log.txt").read_text("utf-8").count("once") == 1
