"""Shared test fixtures."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from pathlib import Path
from uuid import uuid4

import pytest

from freepilot.jobs.repository import JobRepository
from freepilot.jobs.workdir import JobWorkdirManager


class LineRecorder(logging.Handler):
    """Collects log records and lets tests wait for a line to appear."""

    def __init__(self) -> None:
        super().__init__(level=logging.DEBUG)
        self.records: list[tuple[int, str]] = []
        self._condition = threading.Condition()

    def emit(self, record: logging.LogRecord) -> None:
        with self._condition:
            self.records.append((record.levelno, record.getMessage()))
            self._condition.notify_all()

    def messages(self, level: int | None = None) -> list[str]:
        with self._condition:
            return [text for lvl, text in self.records if level is None or lvl == level]

    def wait_for(self, text: str, timeout: float = 10.0) -> bool:
        with self._condition:
            return self._condition.wait_for(
                lambda: any(text in message for _, message in self.records),
                timeout=timeout,
            )


@pytest.fixture()
def sink() -> Iterator[tuple[logging.Logger, LineRecorder]]:
    recorder = LineRecorder()
    sink_logger = logging.getLogger(f"tests.sink.{uuid4().hex}")
    sink_logger.setLevel(logging.DEBUG)
    sink_logger.propagate = False
    sink_logger.addHandler(recorder)
    yield sink_logger, recorder
    sink_logger.removeHandler(recorder)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "freepilot.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def workdir(tmp_path: Path) -> JobWorkdirManager:
    return JobWorkdirManager(tmp_path / "jobs")
