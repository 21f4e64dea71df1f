from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import allure
import httpx
import pytest

from freepilot.errors import CollaboratorError
from freepilot.services.base import PreparedRepository, StageContext
from freepilot.services.github import (
    GitHubClient,
    GitHubPublishService,
    GitHubRepositoryService,
    parse_issue_url,
    parse_pull_request_url,
    pull_request_title,
)

pytestmark = [
    allure.epic("Collaborators"),
    allure.feature("GitHub Repository and Publish"),
]

API_URL = "https://api.github.test"
ISSUE_URL = "https://github.com/acme/widgets/issues/7"

Route = Callable[[httpx.Request], httpx.Response]


class FakeGit:
    """Records git invocations and replays canned stdout per subcommand."""

    def __init__(self, outputs: dict[str, str] | None = None) -> None:
        self.outputs = outputs or {}
        self.calls: list[tuple[list[str], Path]] = []

    def run(self, args: list[str], *, cwd: Path) -> str:
        self.calls.append((args, cwd))
        key = args[0] if args[0] != "--no-pager" else args[1]
        return self.outputs.get(key, "")


def _client(routes: dict[tuple[str, str], Route], seen: list[httpx.Request]) -> GitHubClient:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        route = routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": "Not Found"})
        return route(request)

    return GitHubClient(token="t0ken", api_url=API_URL, transport=httpx.MockTransport(handler))


def _json(status: int, payload: dict) -> Route:
    return lambda _request: httpx.Response(status, json=payload)


def _prepare_routes(**overrides: Route) -> dict[tuple[str, str], Route]:
    routes: dict[tuple[str, str], Route] = {
        ("POST", "/repos/acme/widgets/forks"): _json(202, {"full_name": "freepilot-bot/widgets"}),
        ("GET", "/repos/acme/widgets"): _json(200, {"default_branch": "develop"}),
        ("POST", "/repos/freepilot-bot/widgets/merge-upstream"): _json(
            200,
            {"message": "Successfully fetched and fast-forwarded from upstream acme:develop."},
        ),
        ("GET", "/repos/acme/widgets/issues/7"): _json(
            200,
            {"title": "Crash on start", "body": "The widget crashes."},
        ),
    }
    for key, route in overrides.items():
        method, path = key.split(" ", 1) if " " in key else ("GET", key)
        routes[(method, path)] = route
    return routes


def _context(tmp_path: Path, sink_logger) -> StageContext:
    return StageContext(job_id="f00d", job_logger=sink_logger, job_dir=tmp_path / "f00d")


def test_parse_issue_url() -> None:
    issue = parse_issue_url(ISSUE_URL)

    assert (issue.owner, issue.repo, issue.issue_number) == ("acme", "widgets", 7)
    assert issue.repo_url == "https://github.com/acme/widgets"


def test_parse_issue_url_rejects_other_urls() -> None:
    with pytest.raises(CollaboratorError, match="Not a GitHub issue URL"):
        parse_issue_url("https://github.com/acme/widgets/pull/3")


def test_parse_pull_request_url() -> None:
    assert parse_pull_request_url("https://github.com/acme/widgets/pull/11") == (
        "acme",
        "widgets",
        11,
    )
    assert parse_pull_request_url("https://example.com/x") is None


@pytest.mark.parametrize(
    ("branch", "job_id", "expected"),
    [
        ("fix/login-button-f00d", "f00d", "[Freepilot] fix: login button"),
        ("feat/dark-mode-42", None, "[Freepilot] feat: dark mode"),
        ("chore/bump-deps-a1b2-c3", "a1b2-c3", "[Freepilot] chore: bump deps"),
    ],
)
def test_pull_request_title(branch: str, job_id: str | None, expected: str) -> None:
    assert pull_request_title(branch, job_id) == expected


def test_prepare_forks_syncs_clones_and_reads_issue(tmp_path: Path, sink) -> None:
    sink_logger, recorder = sink
    seen: list[httpx.Request] = []
    git = FakeGit()
    service = GitHubRepositoryService(
        _client(_prepare_routes(), seen),
        git,
        bot_username="freepilot-bot",
    )
    context = _context(tmp_path, sink_logger)

    prepared = service.prepare(ISSUE_URL, context)

    assert prepared == PreparedRepository(
        checkout_path=context.job_dir / "widgets",
        issue_text="Crash on start\n\nThe widget crashes.",
        owner="acme",
        repo="widgets",
        issue_number=7,
        issue_url=ISSUE_URL,
    )
    assert git.calls == [
        (["clone", "git@github.com:freepilot-bot/widgets.git", "widgets"], context.job_dir),
    ]
    merge_request = next(r for r in seen if r.url.path.endswith("/merge-upstream"))
    assert json.loads(merge_request.content) == {"branch": "develop"}
    assert all(r.headers["Authorization"] == "Bearer t0ken" for r in seen)
    messages = "\n".join(recorder.messages())
    assert "extracted repository from issue URL" in messages
    assert "forking repository acme/widgets" in messages
    assert "cloning forked repository freepilot-bot/widgets" in messages


def test_prepare_tolerates_fork_failure(tmp_path: Path, sink) -> None:
    sink_logger, recorder = sink
    routes = _prepare_routes(
        **{"POST /repos/acme/widgets/forks": _json(403, {"message": "fork exists"})},
    )
    service = GitHubRepositoryService(_client(routes, []), FakeGit(), bot_username="freepilot-bot")

    prepared = service.prepare(ISSUE_URL, _context(tmp_path, sink_logger))

    assert prepared.repo == "widgets"
    assert any("Failed to fork repo" in message for message in recorder.messages())


def test_prepare_fails_when_fork_sync_fails(tmp_path: Path, sink) -> None:
    sink_logger, _ = sink
    routes = _prepare_routes(
        **{
            "POST /repos/freepilot-bot/widgets/merge-upstream": _json(
                409,
                {"message": "merge conflict"},
            ),
        },
    )
    git = FakeGit()
    service = GitHubRepositoryService(_client(routes, []), git, bot_username="freepilot-bot")

    with pytest.raises(CollaboratorError, match="merge conflict"):
        service.prepare(ISSUE_URL, _context(tmp_path, sink_logger))
    assert git.calls == []


def test_prepare_warns_about_empty_issue_body(tmp_path: Path, sink) -> None:
    sink_logger, recorder = sink
    routes = _prepare_routes(
        **{"/repos/acme/widgets/issues/7": _json(200, {"title": "Crash", "body": None})},
    )
    service = GitHubRepositoryService(_client(routes, []), FakeGit(), bot_username="freepilot-bot")

    prepared = service.prepare(ISSUE_URL, _context(tmp_path, sink_logger))

    assert prepared.issue_text == "Crash\n\n"
    assert any("has no description" in message for message in recorder.messages())


def _prepared(tmp_path: Path) -> PreparedRepository:
    return PreparedRepository(
        checkout_path=tmp_path / "f00d" / "widgets",
        issue_text="Crash",
        owner="acme",
        repo="widgets",
        issue_number=7,
        issue_url=ISSUE_URL,
    )


def test_publish_pushes_branch_and_opens_pull_request(tmp_path: Path, sink) -> None:
    sink_logger, recorder = sink
    created: list[dict] = []

    def create_pull(request: httpx.Request) -> httpx.Response:
        created.append(json.loads(request.content))
        return httpx.Response(
            201,
            json={"html_url": "https://github.com/acme/widgets/pull/11"},
        )

    routes = {
        ("GET", "/repos/acme/widgets"): _json(200, {"default_branch": "main"}),
        ("POST", "/repos/acme/widgets/pulls"): create_pull,
    }
    git = FakeGit(
        {
            "rev-parse": "fix/widget-crash-f00d\n",
            "log": "commit abc123\n\n    Fix crash on start\n",
        },
    )
    service = GitHubPublishService(
        _client(routes, []),
        git,
        bot_username="freepilot-bot",
        public_url="https://freepilot.example/",
    )

    result = service.publish(_prepared(tmp_path), _context(tmp_path, sink_logger))

    assert result.result_url == "https://github.com/acme/widgets/pull/11"
    assert [args for args, _ in git.calls] == [
        ["rev-parse", "--abbrev-ref", "HEAD"],
        ["push", "-u", "origin", "HEAD"],
        ["--no-pager", "log", "main..HEAD"],
    ]
    payload = created[0]
    assert payload["title"] == "[Freepilot] fix: widget crash"
    assert payload["head"] == "freepilot-bot:fix/widget-crash-f00d"
    assert payload["base"] == "main"
    assert payload["maintainer_can_modify"] is True
    assert payload["body"].startswith(f"Fixes {ISSUE_URL}\n\ncommit abc123")
    assert payload["body"].endswith("View job on Freepilot: https://freepilot.example/jobs/f00d")
    messages = recorder.messages()
    for expected in (
        "getting branch name",
        "pushing branch",
        "creating pull request",
        "successfully created pull request",
    ):
        assert expected in messages


def test_publish_refuses_default_branch_without_pushing(tmp_path: Path, sink) -> None:
    sink_logger, _ = sink
    routes = {("GET", "/repos/acme/widgets"): _json(200, {"default_branch": "main"})}
    git = FakeGit({"rev-parse": "main\n"})
    service = GitHubPublishService(
        _client(routes, []),
        git,
        bot_username="freepilot-bot",
        public_url="https://freepilot.example",
    )

    with pytest.raises(CollaboratorError, match="no feature branch"):
        service.publish(_prepared(tmp_path), _context(tmp_path, sink_logger))
    assert [args[0] for args, _ in git.calls] == ["rev-parse"]


def test_publish_surfaces_pull_request_errors(tmp_path: Path, sink) -> None:
    sink_logger, recorder = sink
    routes = {
        ("GET", "/repos/acme/widgets"): _json(200, {"default_branch": "main"}),
        ("POST", "/repos/acme/widgets/pulls"): _json(
            422,
            {"message": "A pull request already exists"},
        ),
    }
    service = GitHubPublishService(
        _client(routes, []),
        FakeGit({"rev-parse": "fix/x-f00d"}),
        bot_username="freepilot-bot",
        public_url="https://freepilot.example",
    )

    with pytest.raises(CollaboratorError, match="HTTP 422: A pull request already exists"):
        service.publish(_prepared(tmp_path), _context(tmp_path, sink_logger))
    assert any("failed to create pull request" in m for m in recorder.messages())


def test_client_wraps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = GitHubClient(token=None, api_url=API_URL, transport=httpx.MockTransport(handler))

    with client, pytest.raises(CollaboratorError, match="connection refused"):
        client.get_repository("acme", "widgets")
