"""Coarse progress inference from unstructured job logs.

The summary is recomputed from the full log text on every call and keeps no
state, so it is safe to call repeatedly while the job runs or after a
restart.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

PROGRESS_ANALYZER_VERSION = 1

INITIAL_STEP = "Initializing"
FINALIZING_STEP = "Finalizing"
COMPLETED_STEP = "Completed"
FAILED_STEP = "Failed"
CANCELLED_STEP = "Cancelled"

SUCCESS_MARKER = "Job completed! 🎉"
FAILURE_MARKER = "job failed"
CANCELLED_MARKER = "Job was cancelled"

_COST_PATTERN = re.compile(r"(\d+)\s*sats")


@dataclass(frozen=True, slots=True)
class StepRule:
    """One log pattern mapped to a user-facing step label."""

    pattern: re.Pattern[str]
    label: str
    priority: int


def _rule(pattern: str, label: str, priority: int) -> StepRule:
    return StepRule(pattern=re.compile(pattern, re.IGNORECASE), label=label, priority=priority)


STEP_RULES: tuple[StepRule, ...] = (
    _rule(r"Preparing repository", "Checking out repository", 1),
    _rule(r"extracted repository from issue URL", "Analyzing issue URL", 2),
    _rule(r"forking repository", "Forking repository", 3),
    _rule(r"cloning forked repository", "Cloning repository", 4),
    _rule(r"Launching agent", "Looking at the code", 5),
    _rule(r"Spawning goose process", "Understanding the issue", 6),
    _rule(r"starting session.*provider:", "Starting code analysis", 7),
    _rule(r"I'll help you.*follow.*steps", "Planning solution", 8),
    _rule(r"checkout.*new branch", "Creating development branch", 9),
    _rule(r"git checkout -b", "Setting up development environment", 10),
    _rule(r"Step 2.*address.*issue", "Coding solution", 11),
    _rule(r"Step 3.*commit.*changes", "Reviewing and committing changes", 12),
    _rule(r"git commit", "Committing changes", 13),
    _rule(r"getting branch name", "Preparing pull request", 14),
    _rule(r"pushing branch", "Pushing changes", 15),
    _rule(r"creating pull request", "Opening pull request", 16),
    _rule(r"successfully created pull request", "Pull request created", 17),
)


@dataclass(slots=True)
class ProgressSummary:
    """Human-readable progress derived from the job log."""

    current_step: str = INITIAL_STEP
    completed_steps: list[str] = field(default_factory=list)
    total_cost: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "currentStep": self.current_step,
            "completedSteps": list(self.completed_steps),
            "totalCost": self.total_cost,
        }


def analyze_logs(logs: str, *, rules: tuple[StepRule, ...] = STEP_RULES) -> ProgressSummary:
    """Map accumulated log text to a progress summary."""

    observed: list[StepRule] = []
    for line in logs.split("\n"):
        matched = _first_match(line, rules)
        if matched is not None:
            observed.append(matched)

    unique: dict[str, StepRule] = {}
    for step in observed:
        unique.setdefault(step.label, step)
    ordered = sorted(unique.values(), key=lambda step: step.priority)
    completed_steps = [step.label for step in ordered]

    current_step = INITIAL_STEP
    if ordered:
        current_step = _next_step_label(ordered[-1], rules)

    # Literal end-of-log markers are authoritative over the inferred step.
    if SUCCESS_MARKER in logs:
        current_step = COMPLETED_STEP
        final_label = rules[-1].label
        if final_label not in completed_steps:
            completed_steps.append(final_label)
    elif FAILURE_MARKER in logs:
        current_step = FAILED_STEP
    elif CANCELLED_MARKER in logs:
        current_step = CANCELLED_STEP

    return ProgressSummary(
        current_step=current_step,
        completed_steps=completed_steps,
        total_cost=total_cost(logs),
    )


def total_cost(logs: str) -> int:
    """Sum every integer immediately preceding the ``sats`` unit.

    Repeated echoes of the same charge are summed again.
    """

    return sum(int(match.group(1)) for match in _COST_PATTERN.finditer(logs))


def _first_match(line: str, rules: tuple[StepRule, ...]) -> StepRule | None:
    for rule in rules:
        if rule.pattern.search(line):
            return rule
    return None


def _next_step_label(last: StepRule, rules: tuple[StepRule, ...]) -> str:
    if last.priority >= rules[-1].priority:
        return COMPLETED_STEP
    for rule in rules:
        if rule.priority > last.priority:
            return rule.label
    return FINALIZING_STEP
