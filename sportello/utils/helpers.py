"""Utility functions for sportello."""

import re
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the sportello data directory (~/.sportello)."""
    return ensure_dir(Path.home() / ".sportello")


def get_repo_path(repo: str | None = None) -> Path:
    """
    Get the repository path the tools operate on.

    Args:
        repo: Optional repository path. Defaults to ~/.sportello/repo.

    Returns:
        Expanded and ensured repository path.
    """
    if repo:
        path = Path(repo).expanduser()
    else:
        path = Path.home() / ".sportello" / "repo"
    return ensure_dir(path)


def resolve_inside(root: Path, path: str) -> Path:
    """
    Resolve a user/model supplied path against the repository root.

    Site URLs such as ``https://host/src/game.html`` are reduced to their path.

    Raises:
        PermissionError: If the resolved path escapes the root.
    """
    if "://" in path:
        path = path.split("://", 1)[1].partition("/")[2]
    resolved = (root / path.lstrip("/")).resolve()
    root = root.resolve()
    if resolved != root and root not in resolved.parents:
        raise PermissionError(f"Path {path} is outside the repository")
    return resolved


def truncate(text: str, limit: int, suffix: str = "\n... (truncated)") -> str:
    """Cut text to at most ``limit`` characters, marking the cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + suffix


def strip_think(text: str | None) -> str | None:
    """Remove <think>...</think> blocks that some models embed in content."""
    if not text:
        return None
    return re.sub(r"<think>[\s\S]*?</think>", "", text).strip() or None
