"""Runtime configuration for the job pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_AGENT_COMMAND = "goose run --with-builtin=developer -t {prompt}"


@dataclass(slots=True)
class AgentSettings:
    """External coding agent settings."""

    command_template: str = DEFAULT_AGENT_COMMAND
    timeout_seconds: float = 600.0
    grace_seconds: float = 5.0
    extra_env: dict[str, str] = field(default_factory=lambda: {"GOOSE_MODE": "auto"})


@dataclass(slots=True)
class GitHubSettings:
    """Source-control provider settings."""

    token: str | None = None
    bot_username: str = "freepilot-bot"
    api_url: str = "https://api.github.com"
    clone_url_template: str = "git@github.com:{owner}/{repo}.git"
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class CleanupSettings:
    """Local checkout retention settings."""

    after_hours: int = 1


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".freepilot.db")
    work_dir: Path = Path(".")
    public_url: str = "https://freepilot.albylabs.com"
    sqlite_busy_timeout_ms: int = 5_000
    agent: AgentSettings = field(default_factory=AgentSettings)
    github: GitHubSettings = field(default_factory=GitHubSettings)
    cleanup: CleanupSettings = field(default_factory=CleanupSettings)

    @property
    def jobs_dir(self) -> Path:
        return self.work_dir / "jobs"

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("FREEPILOT_DB_PATH", ".freepilot.db")),
            work_dir=Path(os.getenv("FREEPILOT_WORK_DIR", os.getenv("WORK_DIR", "."))),
            public_url=os.getenv("FREEPILOT_PUBLIC_URL", "https://freepilot.albylabs.com"),
            sqlite_busy_timeout_ms=int(os.getenv("FREEPILOT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            agent=AgentSettings(
                command_template=os.getenv("FREEPILOT_AGENT_COMMAND", DEFAULT_AGENT_COMMAND),
                timeout_seconds=float(os.getenv("FREEPILOT_AGENT_TIMEOUT_SECONDS", "600")),
                grace_seconds=float(os.getenv("FREEPILOT_AGENT_GRACE_SECONDS", "5")),
                extra_env=_parse_env_pairs(
                    os.getenv("FREEPILOT_AGENT_ENV", "GOOSE_MODE=auto"),
                ),
            ),
            github=GitHubSettings(
                token=os.getenv("GITHUB_TOKEN") or None,
                bot_username=os.getenv("FREEPILOT_GITHUB_BOT_USERNAME", "freepilot-bot"),
                api_url=os.getenv("FREEPILOT_GITHUB_API_URL", "https://api.github.com"),
                clone_url_template=os.getenv(
                    "FREEPILOT_GITHUB_CLONE_URL_TEMPLATE",
                    "git@github.com:{owner}/{repo}.git",
                ),
                request_timeout_seconds=float(
                    os.getenv("FREEPILOT_GITHUB_REQUEST_TIMEOUT_SECONDS", "30"),
                ),
            ),
            cleanup=CleanupSettings(
                after_hours=int(os.getenv("FREEPILOT_CLEANUP_AFTER_HOURS", "1")),
            ),
        )

    def validate_for_run(self) -> None:
        """Raise configuration error if pipeline settings are unusable."""

        if "{prompt}" not in self.agent.command_template:
            raise ValueError("FREEPILOT_AGENT_COMMAND must include {prompt}.")
        if self.agent.timeout_seconds <= 0:
            raise ValueError("FREEPILOT_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.agent.grace_seconds < 0:
            raise ValueError("FREEPILOT_AGENT_GRACE_SECONDS must be >= 0.")
        if self.cleanup.after_hours < 0:
            raise ValueError("FREEPILOT_CLEANUP_AFTER_HOURS must be >= 0.")
        parsed = urlparse(self.github.api_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid FREEPILOT_GITHUB_API_URL: "
                f"{self.github.api_url!r}. Expected an absolute http(s) URL.",
            )
        if not self.github.token:
            raise ValueError("GITHUB_TOKEN is required to prepare and publish repositories.")


def _parse_env_pairs(raw: str) -> dict[str, str]:
    pairs: dict[str, str] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                f"Invalid FREEPILOT_AGENT_ENV entry: {token!r}. Expected format 'KEY=VALUE'.",
            )
        key, value = token.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError(f"Invalid FREEPILOT_AGENT_ENV entry: {token!r}. Empty key.")
        pairs[key] = value.strip()
    return pairs
