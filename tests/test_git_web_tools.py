"""Tests for the git and web search tools."""

import shutil
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from sportello.agent.tools import web
from sportello.agent.tools.git import CommitChangesTool, GitLogTool, RepoStatusTool, run_git
from sportello.agent.tools.web import WebSearchTool
from sportello.cache.actions import ActionType
from sportello.config.schema import GitToolsConfig

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest_asyncio.fixture
async def git_repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for var, value in {
        "GIT_AUTHOR_NAME": "Doc", "GIT_AUTHOR_EMAIL": "doc@example.com",
        "GIT_COMMITTER_NAME": "Doc", "GIT_COMMITTER_EMAIL": "doc@example.com",
    }.items():
        monkeypatch.setenv(var, value)
    await run_git(tmp_path, "init", "-q")
    (tmp_path / "index.html").write_text("<h1>Arcade</h1>\n")
    await run_git(tmp_path, "add", "-A")
    await run_git(tmp_path, "commit", "-q", "-m", "Initial page")
    return tmp_path


@needs_git
@pytest.mark.asyncio
async def test_status_and_log(git_repo: Path) -> None:
    (git_repo / "game.js").write_text("let timer = 30;\n")
    status = RepoStatusTool(git_repo)
    log = GitLogTool(git_repo)

    status_out = await status.execute(status.parse_args({}))
    log_out = await log.execute(log.parse_args({"grep": "initial"}))
    none_out = await log.execute(log.parse_args({"grep": "frogs"}))

    assert "Last commit:" in status_out and "Initial page" in status_out
    assert "?? game.js" in status_out
    assert "Doc: Initial page" in log_out
    assert none_out == "No matching commits"


@needs_git
@pytest.mark.asyncio
async def test_commit_without_push(git_repo: Path) -> None:
    tool = CommitChangesTool(git_repo, GitToolsConfig(push=False))
    (git_repo / "game.js").write_text("let timer = 60;\n")

    args = tool.parse_args({"message": "Longer timer", "files": ["game.js"]})
    out = await tool.execute(args)
    again = await tool.execute(tool.parse_args({"message": "Nothing new"}))

    assert out.startswith("Committed ") and "Longer timer (1 file(s))" in out
    assert again == "Nothing to commit: working tree clean"
    assert tool.action_for(args) == (ActionType.COMMIT, ("game.js",), "Longer timer")


@needs_git
@pytest.mark.asyncio
async def test_failed_push_is_a_warning(git_repo: Path) -> None:
    tool = CommitChangesTool(git_repo, GitToolsConfig(push=True, remote="nowhere"))
    (git_repo / "style.css").write_text("body {}\n")

    out = await tool.execute(tool.parse_args({"message": "Add styles"}))

    assert out.startswith("Committed ")
    assert "Warning: push failed" in out


@needs_git
@pytest.mark.asyncio
async def test_git_errors_become_error_strings(tmp_path: Path) -> None:
    tool = GitLogTool(tmp_path)

    out = await tool.execute(tool.parse_args({}))

    assert out.startswith("Error:")


@pytest.fixture
def brave(monkeypatch: pytest.MonkeyPatch) -> list[httpx.Request]:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.params["q"] == "broken":
            return httpx.Response(500)
        return httpx.Response(200, json={"web": {"results": [
            {"title": "Frogger", "url": "https://example.com/frogger", "description": "Classic arcade game"},
            {"title": "Frog facts", "url": "https://example.com/facts"},
        ]}})

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        web.httpx, "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )
    return requests


@pytest.mark.asyncio
async def test_web_search_formats_results(brave: list[httpx.Request]) -> None:
    tool = WebSearchTool(api_key="key", max_results=5)

    out = await tool.execute(tool.parse_args({"query": "frogger", "count": 2}))

    assert out.splitlines()[0] == "Results for: frogger"
    assert "1. Frogger\n   https://example.com/frogger\n   Classic arcade game" in out
    assert "2. Frog facts" in out
    assert brave[0].headers["X-Subscription-Token"] == "key"
    assert brave[0].url.params["count"] == "2"


@pytest.mark.asyncio
async def test_web_search_errors(brave: list[httpx.Request]) -> None:
    unconfigured = WebSearchTool()
    tool = WebSearchTool(api_key="key")

    missing_key = await unconfigured.execute(unconfigured.parse_args({"query": "frogs"}))
    failed = await tool.execute(tool.parse_args({"query": "broken"}))

    assert missing_key.startswith("Error: web search is not configured")
    assert failed.startswith("Error: web search failed")
    assert len(brave) == 1
