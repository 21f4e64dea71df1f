"""Collaborator interfaces used by the job orchestrator."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class StageContext:
    """Per-job values every stage collaborator receives."""

    job_id: str
    job_logger: logging.Logger
    job_dir: Path


@dataclass(slots=True)
class PreparedRepository:
    """Local checkout of the repository the issue belongs to."""

    checkout_path: Path
    issue_text: str
    owner: str
    repo: str
    issue_number: int
    issue_url: str


@dataclass(slots=True)
class PublishResult:
    """Artifact produced by a successful publish."""

    result_url: str


class WalletService(Protocol):
    """Payment pre-check before any work starts."""

    def check(self, context: StageContext) -> None:
        """Raise ``CollaboratorError`` when the job cannot be paid for."""


class RepositoryService(Protocol):
    """Fork, sync and clone the repository an issue belongs to."""

    def prepare(self, issue_url: str, context: StageContext) -> PreparedRepository:
        """Return the local checkout and issue text, or raise ``CollaboratorError``."""


class PublishService(Protocol):
    """Push the agent's branch and open a pull request."""

    def publish(self, prepared: PreparedRepository, context: StageContext) -> PublishResult:
        """Return the pull request URL, or raise ``CollaboratorError``."""
