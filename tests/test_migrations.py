from pathlib import Path

import allure
from sqlalchemy import inspect

from freepilot.jobs.repository import JobRepository
from freepilot.storage.alembic_runner import current_revision
from freepilot.storage.common import build_sqlite_engine

pytestmark = [
    allure.epic("Job Pipeline"),
    allure.feature("Job Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()

    assert current_revision(repository.engine) == "20261019_0001"

    inspector = inspect(repository.engine)
    assert {"jobs", "job_events"} <= set(inspector.get_table_names())
    job_columns = {column["name"] for column in inspector.get_columns("jobs")}
    assert {
        "job_id",
        "issue_url",
        "status",
        "cancel_requested",
        "process_pid",
        "result_url",
        "error_summary",
    } <= job_columns
    repository.close()


def test_fresh_database_has_no_revision(tmp_path: Path) -> None:
    engine = build_sqlite_engine(db_path=tmp_path / "empty.db", busy_timeout_ms=1000)

    assert current_revision(engine) is None
    engine.dispose()


def test_init_schema_is_repeatable(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "freepilot.db"
    repository = JobRepository(db_path)
    repository.init_schema()
    job = repository.create_job(issue_url="https://github.com/acme/widgets/issues/7")

    repository.init_schema()

    assert repository.require_job(job.job_id).issue_url.endswith("/issues/7")
    repository.close()
