"""GitHub-backed repository preparation and pull request publishing."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from freepilot.errors import CollaboratorError
from freepilot.services.base import PreparedRepository, PublishResult, StageContext

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_USER_AGENT = "Freepilot/1.0 (+https://freepilot.albylabs.com)"
PULL_REQUEST_TITLE_PREFIX = "[Freepilot]"

_ISSUE_URL = re.compile(r"/([^/]+)/([^/]+)/issues/(\d+)")
_PULL_REQUEST_URL = re.compile(r"github\.com/([^/]+)/([^/]+)/pull/(\d+)")


@dataclass(frozen=True, slots=True)
class IssueReference:
    """Repository coordinates parsed from an issue URL."""

    owner: str
    repo: str
    issue_number: int
    repo_url: str


def parse_issue_url(issue_url: str) -> IssueReference:
    """Split ``https://github.com/<owner>/<repo>/issues/<n>`` into its parts."""

    match = _ISSUE_URL.search(issue_url)
    if match is None:
        raise CollaboratorError(f"Not a GitHub issue URL: {issue_url!r}")
    owner, repo, number = match.groups()
    return IssueReference(
        owner=owner,
        repo=repo,
        issue_number=int(number),
        repo_url=issue_url[: issue_url.index("/issues")],
    )


def parse_pull_request_url(pr_url: str) -> tuple[str, str, int] | None:
    match = _PULL_REQUEST_URL.search(pr_url)
    if match is None:
        return None
    owner, repo, number = match.groups()
    return owner, repo, int(number)


def pull_request_title(branch_name: str, job_id: str | None = None) -> str:
    """Human title from an agent branch such as ``fix/login-button-<job_id>``.

    The trailing ``-<job_id>`` suffix is dropped, the type prefix becomes
    ``type:`` and dashes become spaces.
    """

    job_suffix = f"-{job_id}" if job_id else None
    if job_suffix and branch_name.endswith(job_suffix):
        stem = branch_name[: -len(job_suffix)]
    else:
        suffix_index = branch_name.rfind("-")
        stem = branch_name[:suffix_index] if suffix_index > 0 else branch_name
    words = stem.replace("/", ": ", 1).replace("-", " ")
    return f"{PULL_REQUEST_TITLE_PREFIX} {words}"


def pull_request_body(*, issue_url: str, branch_logs: str, job_url: str) -> str:
    return f"Fixes {issue_url}\n\n{branch_logs}\n\nView job on Freepilot: {job_url}"


class GitHubClient:
    """Thin REST client for the handful of GitHub calls the pipeline needs."""

    def __init__(
        self,
        *,
        token: str | None,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": DEFAULT_USER_AGENT,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=api_url,
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    def create_fork(self, owner: str, repo: str) -> dict[str, Any]:
        return self._request("POST", f"/repos/{owner}/{repo}/forks")

    def get_repository(self, owner: str, repo: str) -> dict[str, Any]:
        return self._request("GET", f"/repos/{owner}/{repo}")

    def merge_upstream(self, owner: str, repo: str, branch: str) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/repos/{owner}/{repo}/merge-upstream",
            json={"branch": branch},
        )

    def get_issue(self, owner: str, repo: str, issue_number: int) -> dict[str, Any]:
        return self._request("GET", f"/repos/{owner}/{repo}/issues/{issue_number}")

    def get_pull_request(self, owner: str, repo: str, number: int) -> dict[str, Any]:
        return self._request("GET", f"/repos/{owner}/{repo}/pulls/{number}")

    def create_pull_request(  # noqa: PLR0913
        self,
        owner: str,
        repo: str,
        *,
        title: str,
        head: str,
        base: str,
        body: str,
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={
                "title": title,
                "head": head,
                "base": base,
                "body": body,
                "maintainer_can_modify": True,
            },
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            logger.warning("GitHub request %s %s failed: %s", method, path, exc)
            raise CollaboratorError(f"GitHub request {method} {path} failed: {exc}") from exc
        if not response.is_success:
            message = _error_message(response)
            raise CollaboratorError(
                f"GitHub {method} {path} returned HTTP {response.status_code}: {message}",
            )
        if not response.content:
            return {}
        payload = response.json()
        return payload if isinstance(payload, dict) else {"items": payload}

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GitHubClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()[:200]
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.text.strip()[:200]


class GitRunner:
    """Run ``git`` subcommands and return their stdout."""

    def __init__(self, *, executable: str = "git", timeout_seconds: float = 600.0) -> None:
        self.executable = executable
        self.timeout_seconds = timeout_seconds

    def run(self, args: list[str], *, cwd: Path) -> str:
        command = [self.executable, *args]
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            raise CollaboratorError(f"git executable not found: {self.executable}") from error
        except subprocess.TimeoutExpired as error:
            raise CollaboratorError(
                f"git {args[0]} timed out after {self.timeout_seconds:g}s",
            ) from error
        if completed.returncode != 0:
            raise CollaboratorError(
                f"git {args[0]} exited with non-success code {completed.returncode}: "
                f"{completed.stderr.strip()}",
            )
        return completed.stdout


class GitHubRepositoryService:
    """Fork the issue's repository into the bot account and clone the fork."""

    def __init__(
        self,
        client: GitHubClient,
        git: GitRunner,
        *,
        bot_username: str,
        clone_url_template: str = "git@github.com:{owner}/{repo}.git",
    ) -> None:
        self.client = client
        self.git = git
        self.bot_username = bot_username
        self.clone_url_template = clone_url_template

    def prepare(self, issue_url: str, context: StageContext) -> PreparedRepository:
        job_log = context.job_logger
        issue = parse_issue_url(issue_url)
        job_log.info(
            "extracted repository from issue URL: owner=%s repo=%s issue=%s",
            issue.owner,
            issue.repo,
            issue.issue_number,
        )

        job_log.info("forking repository %s/%s", issue.owner, issue.repo)
        try:
            self.client.create_fork(issue.owner, issue.repo)
        except CollaboratorError as error:
            # An existing fork makes this call fail; the sync below decides.
            job_log.error("Failed to fork repo: %s", error)

        job_log.info("getting upstream repository data")
        default_branch = _default_branch(self.client.get_repository(issue.owner, issue.repo))

        job_log.info("ensuring fork is up to date")
        try:
            synced = self.client.merge_upstream(self.bot_username, issue.repo, default_branch)
        except CollaboratorError as error:
            job_log.error("Failed to update fork: %s", error)
            raise
        job_log.info("Synced fork: %s", synced.get("message", ""))

        job_log.info("cloning forked repository %s/%s", self.bot_username, issue.repo)
        context.job_dir.mkdir(parents=True, exist_ok=True)
        clone_url = self.clone_url_template.format(owner=self.bot_username, repo=issue.repo)
        self.git.run(["clone", clone_url, issue.repo], cwd=context.job_dir)

        issue_data = self.client.get_issue(issue.owner, issue.repo, issue.issue_number)
        title = str(issue_data.get("title") or "")
        body = str(issue_data.get("body") or "")
        if not body.strip():
            job_log.warning("The issue has no description. Add a description for better results.")

        return PreparedRepository(
            checkout_path=context.job_dir / issue.repo,
            issue_text=f"{title}\n\n{body}",
            owner=issue.owner,
            repo=issue.repo,
            issue_number=issue.issue_number,
            issue_url=issue_url,
        )


class GitHubPublishService:
    """Push the agent's branch from the fork and open a pull request upstream."""

    def __init__(
        self,
        client: GitHubClient,
        git: GitRunner,
        *,
        bot_username: str,
        public_url: str,
    ) -> None:
        self.client = client
        self.git = git
        self.bot_username = bot_username
        self.public_url = public_url.rstrip("/")

    def publish(self, prepared: PreparedRepository, context: StageContext) -> PublishResult:
        job_log = context.job_logger
        repo_dir = prepared.checkout_path

        job_log.info("getting branch name")
        branch_name = self.git.run(["rev-parse", "--abbrev-ref", "HEAD"], cwd=repo_dir).strip()
        job_log.info("got branch name: %s", branch_name)

        job_log.info("getting upstream repository data")
        default_branch = _default_branch(
            self.client.get_repository(prepared.owner, prepared.repo),
        )
        if branch_name == default_branch:
            raise CollaboratorError(
                f"Agent left no feature branch: HEAD is the default branch {default_branch!r}.",
            )

        job_log.info("pushing branch")
        self.git.run(["push", "-u", "origin", "HEAD"], cwd=repo_dir)

        job_log.info("getting branch logs")
        branch_logs = self.git.run(
            ["--no-pager", "log", f"{default_branch}..HEAD"],
            cwd=repo_dir,
        )

        job_log.info("creating pull request")
        try:
            created = self.client.create_pull_request(
                prepared.owner,
                prepared.repo,
                title=pull_request_title(branch_name, context.job_id),
                head=f"{self.bot_username}:{branch_name}",
                base=default_branch,
                body=pull_request_body(
                    issue_url=prepared.issue_url,
                    branch_logs=branch_logs.strip(),
                    job_url=f"{self.public_url}/jobs/{context.job_id}",
                ),
            )
        except CollaboratorError as error:
            job_log.error("failed to create pull request: %s", error)
            raise

        html_url = created.get("html_url")
        if not html_url:
            raise CollaboratorError("GitHub did not return a pull request URL.")
        job_log.info("successfully created pull request")
        return PublishResult(result_url=str(html_url))


def _default_branch(repository: dict[str, Any]) -> str:
    return str(repository.get("default_branch") or "main")
