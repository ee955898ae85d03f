"""Utility functions for sportello."""

from sportello.utils.helpers import (
    ensure_dir,
    get_data_path,
    get_repo_path,
    resolve_inside,
    strip_think,
    truncate,
)

__all__ = ["ensure_dir", "get_data_path", "get_repo_path", "resolve_inside", "strip_think", "truncate"]
