"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from freepilot.errors import JobNotFoundError
from freepilot.jobs.models import (
    TERMINAL_STATUSES,
    JobDetails,
    JobEventView,
    JobStatus,
    JobView,
    statuses_before,
)
from freepilot.storage.alembic_runner import upgrade_head
from freepilot.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from freepilot.storage.sqlmodel_models import Job, JobEvent

_TERMINAL_VALUES = tuple(status.value for status in TERMINAL_STATUSES)


class JobRepository:
    """Job persistence facade.

    Every status mutation is a conditional UPDATE checked by ``rowcount`` so
    concurrent writers (the pipeline thread, a cancel request, an operator
    CLI in another process) never overwrite a terminal status.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def create_job(self, *, issue_url: str, job_id: str | None = None) -> JobView:
        """Create a job in INITIALIZING state."""

        now = utc_now()
        new_id = job_id or uuid4().hex
        with Session(self.engine) as session:
            row = Job(
                job_id=new_id,
                issue_url=issue_url,
                status=JobStatus.INITIALIZING.value,
                cancel_requested=False,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=new_id,
                event_type="created",
                status_from=None,
                status_to=JobStatus.INITIALIZING,
                details={"issue_url": issue_url},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if row is None:
                return None
            return _to_job_view(row)

    def require_job(self, job_id: str) -> JobView:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def is_cancel_requested(self, job_id: str) -> bool:
        """Re-read the cancellation flag from the store."""

        return self.require_job(job_id).cancel_requested

    def update_status(self, job_id: str, status: JobStatus) -> bool:
        """Advance a job to a later pipeline stage.

        Returns False when the job is terminal or already at/after ``status``.
        """

        allowed_from = statuses_before(status)
        now = utc_now()
        with Session(self.engine) as session:
            previous = self._get_job_row(session=session, job_id=job_id)
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status).in_([item.value for item in allowed_from]),
                )
                .values(status=status.value, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="status_changed",
                status_from=JobStatus(previous.status),
                status_to=status,
                details={},
            )
            session.commit()
            return True

    def request_cancel(self, job_id: str) -> bool:
        """Set ``cancel_requested`` once on a non-terminal job.

        Returns True only for the request that flipped the flag.
        """

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status).notin_(_TERMINAL_VALUES),
                    col(Job.cancel_requested).is_(False),
                )
                .values(cancel_requested=True, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                self._get_job_row(session=session, job_id=job_id)
                return False
            row = self._get_job_row(session=session, job_id=job_id)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="cancel_requested",
                status_from=JobStatus(row.status),
                status_to=JobStatus(row.status),
                details={},
            )
            session.commit()
            return True

    def finish_job(
        self,
        job_id: str,
        status: JobStatus,
        *,
        result_url: str | None = None,
        error_summary: str | None = None,
    ) -> JobStatus:
        """Write a terminal status and return the status actually recorded.

        COMPLETED and FAILED are refused once cancellation was requested; the
        job resolves to CANCELLED instead. A terminal job is never touched.
        """

        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Unsupported terminal status: {status.value}")

        now = utc_now()
        with Session(self.engine) as session:
            previous = self._get_job_row(session=session, job_id=job_id)
            previous_status = JobStatus(previous.status)
            conditions = [
                col(Job.job_id) == job_id,
                col(Job.status).notin_(_TERMINAL_VALUES),
            ]
            if status != JobStatus.CANCELLED:
                conditions.append(col(Job.cancel_requested).is_(False))

            values: dict[str, object] = {
                "status": status.value,
                "process_pid": None,
                "finished_at": to_db_datetime(now),
                "updated_at": to_db_datetime(now),
            }
            if status == JobStatus.COMPLETED:
                values["result_url"] = result_url
            if status == JobStatus.FAILED:
                values["error_summary"] = error_summary
            result = session.exec(sa_update(Job).where(*conditions).values(**values))
            recorded = status

            if result.rowcount != 1 and status != JobStatus.CANCELLED:
                recorded = JobStatus.CANCELLED
                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == job_id,
                        col(Job.status).notin_(_TERMINAL_VALUES),
                        col(Job.cancel_requested).is_(True),
                    )
                    .values(
                        status=JobStatus.CANCELLED.value,
                        process_pid=None,
                        finished_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )

            if result.rowcount != 1:
                session.rollback()
                return JobStatus(self._get_job_row(session=session, job_id=job_id).status)

            event_details: dict[str, object] = {}
            # A pull request opened before a late cancel stays findable.
            if status == JobStatus.COMPLETED and result_url is not None:
                event_details["result_url"] = result_url
            if recorded == JobStatus.FAILED and error_summary is not None:
                event_details["error_summary"] = error_summary
            if recorded != status:
                event_details["requested_status"] = status.value
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=_TERMINAL_EVENT_TYPES[recorded],
                status_from=previous_status,
                status_to=recorded,
                details=event_details,
            )
            session.commit()
            return recorded

    def attach_process(self, job_id: str, pid: int) -> bool:
        """Record the live worker process of a running job."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status).notin_(_TERMINAL_VALUES),
                    col(Job.process_pid).is_(None),
                )
                .values(process_pid=pid, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="process_attached",
                status_from=None,
                status_to=None,
                details={"pid": pid},
            )
            session.commit()
            return True

    def detach_process(self, job_id: str, pid: int) -> None:
        """Clear the process handle if it still points at ``pid``."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(col(Job.job_id) == job_id, col(Job.process_pid) == pid)
                .values(process_pid=None, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="process_detached",
                status_from=None,
                status_to=None,
                details={"pid": pid},
            )
            session.commit()

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int | None = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc())
            if status is not None:
                statement = statement.where(Job.status == status.value)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job record with event stream."""

        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()
            job = _to_job_view(row)

        events: list[JobEventView] = []
        for event_row in event_rows:
            details = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=event_row.id or 0,
                    job_id=event_row.job_id,
                    event_type=event_row.event_type,
                    status_from=(
                        JobStatus(event_row.status_from)
                        if event_row.status_from is not None
                        else None
                    ),
                    status_to=(
                        JobStatus(event_row.status_to) if event_row.status_to is not None else None
                    ),
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return JobDetails(job=job, events=events)

    def list_jobs_for_cleanup(self, *, created_before: datetime) -> list[JobView]:
        """Jobs older than ``created_before`` whose checkout was not removed yet."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    col(Job.created_at) < to_db_datetime(created_before),
                    col(Job.cleaned_up).is_(False),
                )
                .order_by(col(Job.created_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def mark_cleaned_up(self, job_id: str) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(col(Job.job_id) == job_id, col(Job.cleaned_up).is_(False))
                .values(cleaned_up=True, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="cleaned_up",
                status_from=None,
                status_to=None,
                details={},
            )
            session.commit()

    def _get_job_row(self, *, session: Session, job_id: str) -> Job:
        row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
        if row is None:
            raise JobNotFoundError(job_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


_TERMINAL_EVENT_TYPES = {
    JobStatus.COMPLETED: "completed",
    JobStatus.FAILED: "failed",
    JobStatus.CANCELLED: "canceled",
}


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        issue_url=row.issue_url,
        status=JobStatus(row.status),
        cancel_requested=bool(row.cancel_requested),
        process_pid=row.process_pid,
        result_url=row.result_url,
        error_summary=row.error_summary,
        cleaned_up=bool(row.cleaned_up),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
    )
