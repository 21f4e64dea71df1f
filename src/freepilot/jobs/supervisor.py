"""Lifecycle supervision for one external worker process."""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

_ANSI_ESCAPE = re.compile(
    r"\x1B\][^\x07\x1B]*(?:\x07|\x1B\\)"  # OSC, ended by BEL or ST
    r"|\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])",
)


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences from worker output."""

    return _ANSI_ESCAPE.sub("", text)


class WorkerOutcomeKind(str, Enum):
    """How a worker invocation ended."""

    SUCCESS = "success"
    EXIT_FAILURE = "exit_failure"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    SPAWN_FAILURE = "spawn_failure"


@dataclass(slots=True)
class WorkerOutcome:
    """Exactly one outcome per ``ProcessSupervisor.execute`` call."""

    kind: WorkerOutcomeKind
    exit_code: int | None = None
    cause: str | None = None
    force_killed: bool = False


@dataclass(slots=True)
class WorkerRunRequest:  # noqa: PLR0902
    """Inputs required to run one worker process for a job."""

    job_id: str
    command: list[str]
    working_directory: Path
    timeout_seconds: float
    cancellation: threading.Event
    log_sink: logging.Logger
    extra_env: dict[str, str] = field(default_factory=dict)
    cancel_requested: Callable[[], bool] | None = None
    on_spawn: Callable[[int], object] | None = None
    on_exit: Callable[[int], object] | None = None


class ProcessHandle:
    """Live worker process registered for a job."""

    def __init__(
        self,
        job_id: str,
        process: subprocess.Popen[str],
        cancellation: threading.Event,
    ) -> None:
        self.job_id = job_id
        self.process = process
        self.cancellation = cancellation

    @property
    def pid(self) -> int:
        return self.process.pid

    def request_cancel(self) -> None:
        """Ask the supervising thread to stop the process."""

        self.cancellation.set()


class ProcessRegistry:
    """Lock-guarded map of job id to its live worker process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: dict[str, ProcessHandle] = {}

    def register(self, handle: ProcessHandle) -> None:
        with self._lock:
            if handle.job_id in self._handles:
                raise ValueError(f"Job {handle.job_id} already has a live worker process.")
            self._handles[handle.job_id] = handle

    def unregister(self, handle: ProcessHandle) -> None:
        with self._lock:
            if self._handles.get(handle.job_id) is handle:
                del self._handles[handle.job_id]

    def get(self, job_id: str) -> ProcessHandle | None:
        with self._lock:
            return self._handles.get(job_id)

    def cancel(self, job_id: str) -> bool:
        """Signal the live process of ``job_id``; False when none is registered."""

        handle = self.get(job_id)
        if handle is None:
            return False
        handle.request_cancel()
        return True

    def job_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._handles)


class ProcessSupervisor:
    """Spawn, stream, stop and reap one worker process per call.

    Stop requests (cancellation or timeout) send SIGTERM to the worker's
    process group, then SIGKILL once the grace period elapses if the process
    is still running. All signals are sent from the supervising thread, which
    is also the only thread that reaps the process.
    """

    def __init__(
        self,
        registry: ProcessRegistry,
        *,
        grace_seconds: float = 5.0,
        poll_interval_seconds: float = 0.1,
        probe_interval_seconds: float = 1.0,
    ) -> None:
        self.registry = registry
        self.grace_seconds = max(0.0, grace_seconds)
        self.poll_interval_seconds = poll_interval_seconds
        self.probe_interval_seconds = probe_interval_seconds

    def execute(self, request: WorkerRunRequest) -> WorkerOutcome:
        if request.cancellation.is_set():
            return WorkerOutcome(kind=WorkerOutcomeKind.CANCELLED)
        if not request.command:
            return WorkerOutcome(
                kind=WorkerOutcomeKind.SPAWN_FAILURE,
                cause="Worker command is empty.",
            )
        if self.registry.get(request.job_id) is not None:
            return WorkerOutcome(
                kind=WorkerOutcomeKind.SPAWN_FAILURE,
                cause=f"Job {request.job_id} already has a live worker process.",
            )

        env = os.environ.copy()
        env.update(request.extra_env)
        try:
            process = subprocess.Popen(  # noqa: S603
                request.command,
                cwd=request.working_directory,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except OSError as error:
            logger.warning("Failed to spawn worker for job %s: %s", request.job_id, error)
            return WorkerOutcome(kind=WorkerOutcomeKind.SPAWN_FAILURE, cause=str(error))

        logger.info("Spawned worker pid=%s for job %s", process.pid, request.job_id)
        readers = [
            _start_reader(process.stdout, request.log_sink, logging.INFO, strip=True),
            _start_reader(process.stderr, request.log_sink, logging.ERROR, strip=False),
        ]
        handle = ProcessHandle(request.job_id, process, request.cancellation)
        notified = False
        try:
            try:
                self.registry.register(handle)
            except ValueError as error:
                # Lost the race with another worker for the same job.
                logger.warning("Not supervising worker for job %s: %s", request.job_id, error)
                return WorkerOutcome(kind=WorkerOutcomeKind.SPAWN_FAILURE, cause=str(error))
            if request.on_spawn is not None:
                request.on_spawn(process.pid)
            notified = True
            # A cancel that landed between spawn and registration found no handle.
            if request.cancel_requested is not None and request.cancel_requested():
                request.cancellation.set()
            return self._monitor(process, request)
        finally:
            self.registry.unregister(handle)
            if process.poll() is None:
                _signal_group(process, signal.SIGKILL)
                process.wait()
            for reader in readers:
                reader.join(timeout=self.grace_seconds or 1.0)
            if notified and request.on_exit is not None:
                request.on_exit(process.pid)

    def _monitor(
        self,
        process: subprocess.Popen[str],
        request: WorkerRunRequest,
    ) -> WorkerOutcome:
        started = time.monotonic()
        deadline = started + request.timeout_seconds
        next_probe = started + self.probe_interval_seconds
        stop_reason: WorkerOutcomeKind | None = None
        kill_at: float | None = None
        force_killed = False

        while True:
            try:
                returncode = process.wait(timeout=self.poll_interval_seconds)
            except subprocess.TimeoutExpired:
                returncode = None
            if returncode is not None:
                break

            now = time.monotonic()
            if stop_reason is None:
                # The store flag also carries cancels issued from other processes.
                if request.cancel_requested is not None and now >= next_probe:
                    next_probe = now + self.probe_interval_seconds
                    if request.cancel_requested():
                        request.cancellation.set()

                if request.cancellation.is_set():
                    stop_reason = WorkerOutcomeKind.CANCELLED
                elif now >= deadline:
                    stop_reason = WorkerOutcomeKind.TIMED_OUT
                if stop_reason is not None:
                    logger.info(
                        "Stopping worker pid=%s for job %s (%s), grace %.1fs",
                        process.pid,
                        request.job_id,
                        stop_reason.value,
                        self.grace_seconds,
                    )
                    _signal_group(process, signal.SIGTERM)
                    kill_at = now + self.grace_seconds
            elif not force_killed and kill_at is not None and now >= kill_at:
                logger.warning(
                    "Worker pid=%s for job %s ignored SIGTERM, sending SIGKILL",
                    process.pid,
                    request.job_id,
                )
                _signal_group(process, signal.SIGKILL)
                force_killed = True

        if stop_reason is not None:
            return WorkerOutcome(
                kind=stop_reason,
                exit_code=returncode,
                force_killed=force_killed,
            )
        if returncode == 0:
            return WorkerOutcome(kind=WorkerOutcomeKind.SUCCESS, exit_code=0)
        return WorkerOutcome(kind=WorkerOutcomeKind.EXIT_FAILURE, exit_code=returncode)


def _signal_group(process: subprocess.Popen[str], sig: signal.Signals) -> None:
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        return
    except PermissionError:
        process.send_signal(sig)


def _start_reader(
    stream: IO[str] | None,
    sink: logging.Logger,
    level: int,
    *,
    strip: bool,
) -> threading.Thread:
    def pump() -> None:
        if stream is None:
            return
        with stream:
            for raw_line in stream:
                line = raw_line.rstrip("\r\n")
                if strip:
                    line = strip_ansi(line)
                if line:
                    sink.log(level, line)

    thread = threading.Thread(
        target=pump,
        name=f"worker-{logging.getLevelName(level)}",
        daemon=True,
    )
    thread.start()
    return thread
