"""SQLModel ORM tables for job storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_jobs_status_created", "status", "created_at"),)

    job_id: str = Field(primary_key=True)
    issue_url: str
    status: str = Field(index=True)
    cancel_requested: bool = Field(default=False, sa_column_kwargs={"server_default": text("0")})
    process_pid: int | None = None
    result_url: str | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    cleaned_up: bool = Field(default=False, sa_column_kwargs={"server_default": text("0")})
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
