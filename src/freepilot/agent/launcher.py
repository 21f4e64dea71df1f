"""Run the external coding agent inside a prepared checkout."""

from __future__ import annotations

import shlex
import threading
from collections.abc import Callable

from freepilot.errors import (
    JobCancelledError,
    WorkerExitError,
    WorkerSpawnError,
    WorkerTimeoutError,
)
from freepilot.jobs.supervisor import (
    ProcessSupervisor,
    WorkerOutcome,
    WorkerOutcomeKind,
    WorkerRunRequest,
)
from freepilot.services.base import PreparedRepository, StageContext


def build_agent_prompt(*, job_id: str, issue_text: str) -> str:
    """Instructions that keep the agent's work local and on a job-specific branch."""

    return (
        "Follow the following steps in order:\n"
        "\n"
        "1. *Locally* checkout a new branch to address the issue. Prefix it with feat/ "
        "for features or chore/ or fix/ etc based on the type of change. "
        f"Suffix the branch with -{job_id}\n"
        "2. *Locally* address the issue by making the relevant file changes. "
        "Don't show me the code and don't try to run the app.\n"
        "3. *Locally* commit the changes on the current branch with a meaningful description.\n"
        "\n"
        "The issue content is below:\n"
        "\n"
        f"{issue_text}\n"
    )


def build_agent_command(command_template: str, prompt: str) -> list[str]:
    """Render the ``{prompt}`` placeholder and split into argv."""

    stripped = command_template.strip()
    if not stripped:
        raise WorkerSpawnError("Agent command template is empty.")
    if "{prompt}" not in stripped:
        raise WorkerSpawnError("Agent command template must include {prompt}.")
    try:
        rendered = stripped.format(prompt=shlex.quote(prompt))
    except (KeyError, IndexError) as error:
        raise WorkerSpawnError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise WorkerSpawnError("Agent command template rendered empty command.")
    return argv


def raise_for_outcome(outcome: WorkerOutcome, *, timeout_seconds: float) -> None:
    """Translate a non-success worker outcome into the pipeline's exceptions."""

    if outcome.kind == WorkerOutcomeKind.SUCCESS:
        return
    if outcome.kind == WorkerOutcomeKind.CANCELLED:
        raise JobCancelledError("Agent process stopped on cancellation request.")
    if outcome.kind == WorkerOutcomeKind.TIMED_OUT:
        raise WorkerTimeoutError(f"Agent process timed out after {timeout_seconds:g}s.")
    if outcome.kind == WorkerOutcomeKind.SPAWN_FAILURE:
        raise WorkerSpawnError(f"Agent process failed to start: {outcome.cause}")
    raise WorkerExitError(outcome.exit_code if outcome.exit_code is not None else -1)


class AgentLauncher:
    """Turns a prepared repository into one supervised agent run."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        *,
        command_template: str,
        timeout_seconds: float,
        extra_env: dict[str, str] | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds
        self.extra_env = dict(extra_env or {})

    def run(  # noqa: PLR0913
        self,
        prepared: PreparedRepository,
        context: StageContext,
        *,
        cancellation: threading.Event,
        cancel_requested: Callable[[], bool] | None = None,
        on_spawn: Callable[[int], object] | None = None,
        on_exit: Callable[[int], object] | None = None,
    ) -> WorkerOutcome:
        job_log = context.job_logger
        prompt = build_agent_prompt(job_id=context.job_id, issue_text=prepared.issue_text)
        command = build_agent_command(self.command_template, prompt)

        job_log.info("Spawning goose process")
        outcome = self.supervisor.execute(
            WorkerRunRequest(
                job_id=context.job_id,
                command=command,
                working_directory=prepared.checkout_path,
                timeout_seconds=self.timeout_seconds,
                cancellation=cancellation,
                log_sink=job_log,
                extra_env=self.extra_env,
                cancel_requested=cancel_requested,
                on_spawn=on_spawn,
                on_exit=on_exit,
            ),
        )
        if outcome.kind == WorkerOutcomeKind.EXIT_FAILURE:
            job_log.error("Goose process exited with non-success code %s", outcome.exit_code)
        if outcome.force_killed:
            job_log.warning("Agent process ignored SIGTERM and was killed")
        raise_for_outcome(outcome, timeout_seconds=self.timeout_seconds)
        return outcome
