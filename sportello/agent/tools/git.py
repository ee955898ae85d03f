"""Version-control tools backed by the git CLI."""

import asyncio
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import Field

from sportello.agent.tools.base import Tool, ToolArgs, ToolKind, ToolName
from sportello.cache.actions import ActionType
from sportello.config.schema import GitToolsConfig


class GitError(RuntimeError):
    """A git command exited non-zero."""


async def run_git(root: Path, *args: str, timeout: float = 30.0) -> str:
    """Run a git command inside `root` and return stdout. Raises GitError."""
    process = await asyncio.create_subprocess_exec(
        "git", *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=root,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise GitError(f"git {args[0]} timed out after {timeout}s")

    if process.returncode != 0:
        raise GitError(stderr.decode().strip() or f"git {args[0]} failed")
    return stdout.decode()


class _GitTool(Tool):
    def __init__(self, root: Path, config: GitToolsConfig | None = None):
        self.root = root
        self.config = config or GitToolsConfig()


class RepoStatusArgs(ToolArgs):
    pass


class RepoStatusTool(_GitTool):
    """Branch, working tree changes and last commit."""

    args_model = RepoStatusArgs

    @property
    def name(self) -> ToolName:
        return ToolName.REPO_STATUS

    @property
    def description(self) -> str:
        return "Show the repository status: current branch, uncommitted changes and the latest commit."

    async def execute(self, args: RepoStatusArgs) -> str:
        try:
            branch = (await run_git(self.root, "rev-parse", "--abbrev-ref", "HEAD")).strip()
            changes = (await run_git(self.root, "status", "--short")).rstrip()
            last = (await run_git(self.root, "log", "-1", "--format=%h %s (%cr)")).strip()
        except GitError as e:
            return f"Error: {e}"

        lines = [f"Branch: {branch}", f"Last commit: {last or 'none'}"]
        lines.append(f"Changes:\n{changes}" if changes else "Working tree clean")
        return "\n".join(lines)


class GitLogArgs(ToolArgs):
    count: int = Field(default=10, ge=1, le=50, description="Number of commits to show")
    grep: str | None = Field(default=None, description="Only commits whose message contains this text")
    path: str | None = Field(default=None, description="Only commits touching this path")


class GitLogTool(_GitTool):
    """Recent commit history."""

    args_model = GitLogArgs

    @property
    def name(self) -> ToolName:
        return ToolName.GIT_LOG

    @property
    def description(self) -> str:
        return "Show recent commits, optionally filtered by message text or path."

    async def execute(self, args: GitLogArgs) -> str:
        cmd = ["log", f"-{args.count}", "--format=%h %ad %an: %s", "--date=short"]
        if args.grep:
            cmd += ["-i", f"--grep={args.grep}"]
        if args.path:
            cmd += ["--", args.path]
        try:
            out = (await run_git(self.root, *cmd)).strip()
        except GitError as e:
            return f"Error: {e}"
        return out or "No matching commits"


class CommitChangesArgs(ToolArgs):
    message: str = Field(description="Commit message")
    files: list[str] | None = Field(default=None, description="Files to stage; omit to stage all changes")


class CommitChangesTool(_GitTool):
    """Stage, commit and (optionally) push."""

    kind = ToolKind.MUTATING
    args_model = CommitChangesArgs
    primary = True

    @property
    def name(self) -> ToolName:
        return ToolName.COMMIT_CHANGES

    @property
    def description(self) -> str:
        return "Commit changes to the repository and push them. Stages the given files, or everything."

    def target_paths(self, params: dict[str, Any]) -> list[str]:
        files = params.get("files")
        return [f for f in files if isinstance(f, str)] if isinstance(files, list) else []

    async def execute(self, args: CommitChangesArgs) -> str:
        try:
            if args.files:
                await run_git(self.root, "add", "--", *args.files)
            else:
                await run_git(self.root, "add", "-A")

            staged = (await run_git(self.root, "diff", "--cached", "--name-only")).split()
            if not staged:
                return "Nothing to commit: working tree clean"

            await run_git(self.root, "commit", "-m", args.message)
            sha = (await run_git(self.root, "rev-parse", "--short", "HEAD")).strip()
        except GitError as e:
            return f"Error: {e}"

        result = f"Committed {sha}: {args.message} ({len(staged)} file(s))"
        if not self.config.push:
            return result
        try:
            await run_git(self.root, "push", self.config.remote, self.config.branch, timeout=60.0)
        except GitError as e:
            logger.warning("Push failed after commit {}: {}", sha, e)
            return f"{result}\nWarning: push failed: {e}"
        return f"{result}\nPushed to {self.config.remote}/{self.config.branch}"

    def action_for(self, args: CommitChangesArgs) -> tuple[ActionType, tuple[str, ...], str]:
        return ActionType.COMMIT, tuple(args.files or ()), args.message[:80]
