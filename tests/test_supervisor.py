from __future__ import annotations

import logging
import sys
import threading
import time
from pathlib import Path

import allure
import pytest

from freepilot.jobs.supervisor import (
    ProcessHandle,
    ProcessRegistry,
    ProcessSupervisor,
    WorkerOutcome,
    WorkerOutcomeKind,
    WorkerRunRequest,
    strip_ansi,
)

ECHO_AGENT = [sys.executable, "-m", "freepilot.agent.echo_agent"]

pytestmark = [
    allure.epic("Job Pipeline"),
    allure.feature("Worker Process Supervision"),
]


def _request(  # noqa: PLR0913
    tmp_path: Path,
    sink_logger: logging.Logger,
    *args: str,
    job_id: str = "job-1",
    timeout_seconds: float = 30.0,
    cancellation: threading.Event | None = None,
    cancel_requested=None,
    spawned: list[int] | None = None,
    exited: list[int] | None = None,
) -> WorkerRunRequest:
    return WorkerRunRequest(
        job_id=job_id,
        command=[*ECHO_AGENT, *args],
        working_directory=tmp_path,
        timeout_seconds=timeout_seconds,
        cancellation=cancellation or threading.Event(),
        log_sink=sink_logger,
        cancel_requested=cancel_requested,
        on_spawn=spawned.append if spawned is not None else None,
        on_exit=exited.append if exited is not None else None,
    )


def _execute_in_thread(
    supervisor: ProcessSupervisor,
    request: WorkerRunRequest,
) -> tuple[threading.Thread, list[WorkerOutcome]]:
    outcomes: list[WorkerOutcome] = []
    thread = threading.Thread(target=lambda: outcomes.append(supervisor.execute(request)))
    thread.start()
    return thread, outcomes


def test_successful_run_streams_output_and_cleans_up(tmp_path: Path, sink) -> None:
    sink_logger, recorder = sink
    registry = ProcessRegistry()
    spawned: list[int] = []
    exited: list[int] = []
    request = _request(
        tmp_path,
        sink_logger,
        "--line",
        "hello from agent",
        "--ansi",
        "--stderr-line",
        "\x1b[31mwarning\x1b[0m",
        spawned=spawned,
        exited=exited,
    )

    outcome = ProcessSupervisor(registry).execute(request)

    assert outcome == WorkerOutcome(kind=WorkerOutcomeKind.SUCCESS, exit_code=0)
    assert "hello from agent" in recorder.messages(logging.INFO)
    assert "\x1b[31mwarning\x1b[0m" in recorder.messages(logging.ERROR)
    assert spawned and spawned == exited
    assert registry.get("job-1") is None


def test_non_zero_exit_is_exit_failure(tmp_path: Path, sink) -> None:
    sink_logger, _ = sink

    outcome = ProcessSupervisor(ProcessRegistry()).execute(
        _request(tmp_path, sink_logger, "--exit-code", "3"),
    )

    assert outcome.kind == WorkerOutcomeKind.EXIT_FAILURE
    assert outcome.exit_code == 3
    assert outcome.force_killed is False


def test_missing_executable_is_spawn_failure(tmp_path: Path, sink) -> None:
    sink_logger, _ = sink
    spawned: list[int] = []
    request = WorkerRunRequest(
        job_id="job-1",
        command=[str(tmp_path / "no-such-agent")],
        working_directory=tmp_path,
        timeout_seconds=5,
        cancellation=threading.Event(),
        log_sink=sink_logger,
        on_spawn=spawned.append,
    )
    registry = ProcessRegistry()

    outcome = ProcessSupervisor(registry).execute(request)

    assert outcome.kind == WorkerOutcomeKind.SPAWN_FAILURE
    assert outcome.cause
    assert spawned == []
    assert registry.job_ids() == []


def test_cancellation_before_spawn_never_starts_process(tmp_path: Path, sink) -> None:
    sink_logger, _ = sink
    cancellation = threading.Event()
    cancellation.set()
    spawned: list[int] = []

    outcome = ProcessSupervisor(ProcessRegistry()).execute(
        _request(tmp_path, sink_logger, cancellation=cancellation, spawned=spawned),
    )

    assert outcome.kind == WorkerOutcomeKind.CANCELLED
    assert spawned == []


def test_cancel_through_registry_stops_process_with_sigterm(tmp_path: Path, sink) -> None:
    sink_logger, recorder = sink
    registry = ProcessRegistry()
    supervisor = ProcessSupervisor(registry, grace_seconds=5.0)
    request = _request(tmp_path, sink_logger, "--line", "ready", "--sleep", "30")

    started = time.monotonic()
    thread, outcomes = _execute_in_thread(supervisor, request)
    assert recorder.wait_for("ready")
    assert registry.cancel("job-1") is True
    thread.join(timeout=20)

    assert not thread.is_alive()
    assert outcomes[0].kind == WorkerOutcomeKind.CANCELLED
    assert outcomes[0].force_killed is False
    assert time.monotonic() - started < 5.0
    assert registry.get("job-1") is None


def test_process_ignoring_sigterm_is_killed_once_after_grace(tmp_path: Path, sink) -> None:
    sink_logger, recorder = sink
    registry = ProcessRegistry()
    supervisor = ProcessSupervisor(registry, grace_seconds=0.5)
    request = _request(
        tmp_path,
        sink_logger,
        "--ignore-sigterm",
        "--line",
        "ready",
        "--sleep",
        "30",
    )

    thread, outcomes = _execute_in_thread(supervisor, request)
    assert recorder.wait_for("ready")
    request.cancellation.set()
    thread.join(timeout=20)

    assert not thread.is_alive()
    assert outcomes[0].kind == WorkerOutcomeKind.CANCELLED
    assert outcomes[0].force_killed is True
    assert outcomes[0].exit_code is not None and outcomes[0].exit_code < 0


def test_timeout_uses_same_escalation(tmp_path: Path, sink) -> None:
    sink_logger, _ = sink

    outcome = ProcessSupervisor(ProcessRegistry(), grace_seconds=2.0).execute(
        _request(tmp_path, sink_logger, "--sleep", "30", timeout_seconds=0.5),
    )

    assert outcome.kind == WorkerOutcomeKind.TIMED_OUT
    assert outcome.force_killed is False


def test_cancel_recorded_in_store_before_registration_is_not_lost(tmp_path: Path, sink) -> None:
    sink_logger, _ = sink
    probes: list[bool] = []

    def cancel_requested() -> bool:
        probes.append(True)
        return True

    started = time.monotonic()
    outcome = ProcessSupervisor(ProcessRegistry()).execute(
        _request(tmp_path, sink_logger, "--sleep", "30", cancel_requested=cancel_requested),
    )

    assert outcome.kind == WorkerOutcomeKind.CANCELLED
    assert probes
    assert time.monotonic() - started < 5.0


def test_live_probe_picks_up_cancel_from_another_process(tmp_path: Path, sink) -> None:
    sink_logger, recorder = sink
    flag = threading.Event()
    supervisor = ProcessSupervisor(ProcessRegistry(), probe_interval_seconds=0.2)
    request = _request(
        tmp_path,
        sink_logger,
        "--line",
        "ready",
        "--sleep",
        "30",
        cancel_requested=flag.is_set,
    )

    thread, outcomes = _execute_in_thread(supervisor, request)
    assert recorder.wait_for("ready")
    flag.set()
    thread.join(timeout=20)

    assert outcomes[0].kind == WorkerOutcomeKind.CANCELLED


def test_registry_rejects_second_live_process_for_job() -> None:
    registry = ProcessRegistry()
    first = ProcessHandle("job-1", process=None, cancellation=threading.Event())  # type: ignore[arg-type]
    second = ProcessHandle("job-1", process=None, cancellation=threading.Event())  # type: ignore[arg-type]
    registry.register(first)

    with pytest.raises(ValueError, match="already has a live worker"):
        registry.register(second)

    registry.unregister(second)
    assert registry.get("job-1") is first
    registry.unregister(first)
    assert registry.get("job-1") is None


def test_registry_cancel_without_handle_returns_false() -> None:
    assert ProcessRegistry().cancel("missing") is False


def test_registry_cancel_sets_handle_event() -> None:
    registry = ProcessRegistry()
    cancellation = threading.Event()
    registry.register(ProcessHandle("job-1", process=None, cancellation=cancellation))  # type: ignore[arg-type]

    assert registry.cancel("job-1") is True
    assert cancellation.is_set()


def test_strip_ansi_removes_escape_sequences() -> None:
    assert strip_ansi("\x1b[1;32mDone\x1b[0m \x1b[2K") == "Done "


def test_empty_command_is_spawn_failure(tmp_path: Path, sink) -> None:
    sink_logger, _ = sink
    request = _request(tmp_path, sink_logger)
    request.command = []

    outcome = ProcessSupervisor(ProcessRegistry()).execute(request)

    assert outcome.kind == WorkerOutcomeKind.SPAWN_FAILURE



@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("\x1b]8;;https://x.test\x07link\x1b]8;;\x07 done", "link done"),
        ("\x1b]0;goose\x1b\\ready", "ready"),
    ],
)
def test_strip_ansi_removes_operating_system_commands(raw: str, expected: str) -> None:
    assert strip_ansi(raw) == expected


class _BlindRegistry(ProcessRegistry):
    """Reports no live handle, as if another worker registered just after the check."""

    def get(self, job_id: str) -> ProcessHandle | None:
        return None


def test_losing_registration_race_reaps_the_new_process(tmp_path: Path, sink) -> None:
    sink_logger, _ = sink
    registry = _BlindRegistry()
    existing = ProcessHandle("job-1", process=None, cancellation=threading.Event())  # type: ignore[arg-type]
    registry.register(existing)
    spawned: list[int] = []
    exited: list[int] = []
    request = _request(
        tmp_path,
        sink_logger,
        "--line",
        "ready",
        "--sleep",
        "30",
        spawned=spawned,
        exited=exited,
    )

    started = time.monotonic()
    outcome = ProcessSupervisor(registry, grace_seconds=0.5).execute(request)

    assert outcome.kind == WorkerOutcomeKind.SPAWN_FAILURE
    assert "already has a live worker" in (outcome.cause or "")
    assert time.monotonic() - started < 5
    assert spawned == []
    assert exited == []
    assert registry.job_ids() == ["job-1"]
    assert ProcessRegistry.get(registry, "job-1") is existing
