"""File system tools: list, exists, search, read, write, edit, delete, move."""

import asyncio
import re
from collections import defaultdict
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, model_validator

from sportello.agent.tools.base import Tool, ToolArgs, ToolKind, ToolName
from sportello.cache.actions import ActionType
from sportello.utils.helpers import resolve_inside, truncate

_SKIP_DIRS = frozenset({".git", "node_modules", "__pycache__", ".venv", "dist", "build"})
_MAX_SEARCH_MATCHES = 50


class _RepoTool(Tool):
    """Shared helpers for tools that operate inside the repository root."""

    def __init__(self, root: Path, max_read_chars: int = 60000):
        self.root = root
        self.max_read_chars = max_read_chars

    def _resolve(self, path: str) -> Path:
        return resolve_inside(self.root, path)

    def _rel(self, path: Path) -> str:
        return path.resolve().relative_to(self.root.resolve()).as_posix() or "."

    def target_paths(self, params: dict[str, Any]) -> list[str]:
        path = params.get("path")
        return [path] if isinstance(path, str) else []


def _iter_files(base: Path):
    if base.is_file():
        yield base
        return
    for path in sorted(base.rglob("*")):
        if path.is_file() and not any(part in _SKIP_DIRS for part in path.relative_to(base).parts):
            yield path


class ListFilesArgs(ToolArgs):
    path: str = Field(default=".", description="Directory to list, relative to the repository root")


class ListFilesTool(_RepoTool):
    """List a directory, grouping files by extension."""

    args_model = ListFilesArgs

    @property
    def name(self) -> ToolName:
        return ToolName.LIST_FILES

    @property
    def description(self) -> str:
        return "List files in a repository directory. Returns files grouped by extension."

    async def execute(self, args: ListFilesArgs) -> str:
        try:
            base = self._resolve(args.path)
        except PermissionError as e:
            return f"Error: {e}"
        if not base.exists():
            return f"Error: Directory not found: {args.path}"
        if not base.is_dir():
            return f"Error: Not a directory: {args.path}"

        groups: dict[str, list[str]] = defaultdict(list)
        dirs = []
        for item in sorted(base.iterdir()):
            if item.name in _SKIP_DIRS or item.name.startswith("."):
                continue
            if item.is_dir():
                dirs.append(f"{item.name}/")
            else:
                groups[item.suffix or "(no extension)"].append(item.name)

        if not dirs and not groups:
            return f"Directory {args.path} is empty"

        lines = [f"Contents of {self._rel(base)}:"]
        if dirs:
            lines.append(f"directories ({len(dirs)}): {', '.join(dirs)}")
        for ext in sorted(groups):
            names = groups[ext]
            lines.append(f"{ext} ({len(names)}): {', '.join(names)}")
        return "\n".join(lines)


class FileExistsArgs(ToolArgs):
    path: str = Field(description="File path or site URL to check")


class FileExistsTool(_RepoTool):
    """Fast existence check that accepts paths or site URLs."""

    args_model = FileExistsArgs

    @property
    def name(self) -> ToolName:
        return ToolName.FILE_EXISTS

    @property
    def description(self) -> str:
        return (
            "Check whether a file exists. Accepts a repository path or a site URL "
            "(the URL path is used). Returns EXISTS with size, or NOT FOUND."
        )

    async def execute(self, args: FileExistsArgs) -> str:
        try:
            target = self._resolve(args.path)
        except PermissionError as e:
            return f"Error: {e}"
        if target.is_file():
            return f"EXISTS: {self._rel(target)} ({target.stat().st_size} bytes)"
        if target.is_dir():
            return f"EXISTS: {self._rel(target)}/ (directory)"
        return f"NOT FOUND: {args.path}"


class SearchFilesArgs(ToolArgs):
    pattern: str = Field(description="Text or regex pattern to search for")
    path: str = Field(default=".", description="Directory or file to search in")
    case_insensitive: bool = Field(default=False, description="Case-insensitive search")
    file_pattern: str | None = Field(default=None, description='Only search files whose name contains this (e.g. ".html")')


class SearchFilesTool(_RepoTool):
    """grep-like search across repository files."""

    args_model = SearchFilesArgs

    @property
    def name(self) -> ToolName:
        return ToolName.SEARCH_FILES

    @property
    def description(self) -> str:
        return "Search for a text or regex pattern across repository files, like grep."

    async def execute(self, args: SearchFilesArgs) -> str:
        try:
            base = self._resolve(args.path)
        except PermissionError as e:
            return f"Error: {e}"
        if not base.exists():
            return f"Error: Path not found: {args.path}"
        try:
            regex = re.compile(args.pattern, re.IGNORECASE if args.case_insensitive else 0)
        except re.error:
            regex = re.compile(re.escape(args.pattern), re.IGNORECASE if args.case_insensitive else 0)

        matches = await asyncio.to_thread(self._search, base, regex, args.file_pattern)
        if not matches:
            return f"No matches for '{args.pattern}' in {args.path}"
        header = f"{len(matches)} match(es) for '{args.pattern}'"
        if len(matches) >= _MAX_SEARCH_MATCHES:
            header += f" (showing first {_MAX_SEARCH_MATCHES})"
        return "\n".join([header, *matches])

    def _search(self, base: Path, regex: re.Pattern[str], file_pattern: str | None) -> list[str]:
        results: list[str] = []
        for path in _iter_files(base):
            if file_pattern and file_pattern not in path.name:
                continue
            try:
                text = path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for lineno, line in enumerate(text.splitlines(), 1):
                if regex.search(line):
                    results.append(f"{self._rel(path)}:{lineno}: {line.strip()[:200]}")
                    if len(results) >= _MAX_SEARCH_MATCHES:
                        return results
        return results


class ReadFileArgs(ToolArgs):
    path: str = Field(description="File path to read")


class ReadFileTool(_RepoTool):
    """Read a file from the repository."""

    args_model = ReadFileArgs

    @property
    def name(self) -> ToolName:
        return ToolName.READ_FILE

    @property
    def description(self) -> str:
        return "Read the contents of a file in the repository."

    async def execute(self, args: ReadFileArgs) -> str:
        try:
            file_path = self._resolve(args.path)
        except PermissionError as e:
            return f"Error: {e}"
        if not file_path.exists():
            return f"Error: File not found: {args.path}"
        if not file_path.is_file():
            return f"Error: Not a file: {args.path}"
        try:
            content = file_path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            return f"Error: {args.path} is not a text file"
        return truncate(content, self.max_read_chars)


class WriteFileArgs(ToolArgs):
    path: str = Field(description="File path to write")
    content: str = Field(description="Full content of the file")


class WriteFileTool(_RepoTool):
    """Create or overwrite a file."""

    kind = ToolKind.MUTATING
    args_model = WriteFileArgs
    primary = True

    @property
    def name(self) -> ToolName:
        return ToolName.WRITE_FILE

    @property
    def description(self) -> str:
        return "Create a new file or overwrite an existing one with the given content."

    async def execute(self, args: WriteFileArgs) -> str:
        try:
            file_path = self._resolve(args.path)
        except PermissionError as e:
            return f"Error: {e}"
        file_path.parent.mkdir(parents=True, exist_ok=True)
        existed = file_path.exists()
        file_path.write_text(args.content, encoding="utf-8")
        verb = "Updated" if existed else "Created"
        return f"{verb} {self._rel(file_path)} ({len(args.content)} chars)"

    def action_for(self, args: WriteFileArgs) -> tuple[ActionType, tuple[str, ...], str]:
        return ActionType.WRITE, (args.path,), f"{len(args.content)} chars"


class Replacement(BaseModel):
    old: str = Field(description="Exact text to find")
    new: str = Field(description="Replacement text")
    replace_all: bool = False

    @model_validator(mode="before")
    @classmethod
    def _accept_long_names(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if "old" not in data and "old_string" in data:
                data["old"] = data.pop("old_string")
            if "new" not in data and "new_string" in data:
                data["new"] = data.pop("new_string")
        return data


class EditFileArgs(ToolArgs):
    path: str = Field(description="File path to edit")
    old_string: str | None = Field(default=None, description="Exact text to replace; must be unique in the file")
    new_string: str | None = Field(default=None, description="Text to replace old_string with")
    replace_all: bool = Field(default=False, description="Replace every occurrence of old_string")
    replacements: list[Replacement] | None = Field(
        default=None, description="Batch mode: list of {old, new, replace_all?} applied in order"
    )

    @model_validator(mode="after")
    def _one_mode(self) -> "EditFileArgs":
        if self.replacements:
            return self
        if self.old_string is None or self.new_string is None:
            raise ValueError("provide old_string and new_string, or replacements")
        return self

    def edits(self) -> list[Replacement]:
        if self.replacements:
            return list(self.replacements)
        return [Replacement(old=self.old_string or "", new=self.new_string or "", replace_all=self.replace_all)]


class EditFileTool(_RepoTool):
    """Exact string replacement, single or batched."""

    kind = ToolKind.MUTATING
    args_model = EditFileArgs
    primary = True

    @property
    def name(self) -> ToolName:
        return ToolName.EDIT_FILE

    @property
    def description(self) -> str:
        return (
            "Edit a file by exact string replacement. Read the file first so old_string "
            "matches exactly, including whitespace. Use replacements for several edits."
        )

    async def execute(self, args: EditFileArgs) -> str:
        try:
            file_path = self._resolve(args.path)
        except PermissionError as e:
            return f"Error: {e}"
        if not file_path.is_file():
            return f"Error: File not found: {args.path}"

        content = file_path.read_text(encoding="utf-8")
        for i, edit in enumerate(args.edits(), 1):
            if not edit.old:
                return f"Error: replacement {i} has an empty old string"
            count = content.count(edit.old)
            if count == 0:
                return f"Error: replacement {i}: old text not found in {args.path}. Read the file and copy it exactly."
            if count > 1 and not edit.replace_all:
                return (
                    f"Error: replacement {i}: old text appears {count} times in {args.path}. "
                    "Add surrounding context or set replace_all."
                )
            content = content.replace(edit.old, edit.new, -1 if edit.replace_all else 1)

        file_path.write_text(content, encoding="utf-8")
        return f"Edited {self._rel(file_path)} ({len(args.edits())} replacement(s))"

    def action_for(self, args: EditFileArgs) -> tuple[ActionType, tuple[str, ...], str]:
        first = args.edits()[0]
        summary = f"{first.old[:40]!r} -> {first.new[:40]!r}"
        if len(args.edits()) > 1:
            summary += f" (+{len(args.edits()) - 1} more)"
        return ActionType.EDIT, (args.path,), summary


class DeleteFileArgs(ToolArgs):
    path: str = Field(description="File path to delete")


class DeleteFileTool(_RepoTool):
    """Delete a file."""

    kind = ToolKind.MUTATING
    args_model = DeleteFileArgs
    primary = True

    @property
    def name(self) -> ToolName:
        return ToolName.DELETE_FILE

    @property
    def description(self) -> str:
        return "Delete a file from the repository."

    async def execute(self, args: DeleteFileArgs) -> str:
        try:
            file_path = self._resolve(args.path)
        except PermissionError as e:
            return f"Error: {e}"
        if not file_path.is_file():
            return f"Error: File not found: {args.path}"
        file_path.unlink()
        return f"Deleted {args.path}"

    def action_for(self, args: DeleteFileArgs) -> tuple[ActionType, tuple[str, ...], str]:
        return ActionType.DELETE, (args.path,), ""


class MoveFileArgs(ToolArgs):
    source: str = Field(description="Current file path")
    destination: str = Field(description="New file path")


class MoveFileTool(_RepoTool):
    """Move or rename a file."""

    kind = ToolKind.MUTATING
    args_model = MoveFileArgs
    primary = True

    @property
    def name(self) -> ToolName:
        return ToolName.MOVE_FILE

    @property
    def description(self) -> str:
        return "Move or rename a file inside the repository."

    def target_paths(self, params: dict[str, Any]) -> list[str]:
        return [p for p in (params.get("source"), params.get("destination")) if isinstance(p, str)]

    async def execute(self, args: MoveFileArgs) -> str:
        try:
            src = self._resolve(args.source)
            dst = self._resolve(args.destination)
        except PermissionError as e:
            return f"Error: {e}"
        if not src.is_file():
            return f"Error: File not found: {args.source}"
        if dst.exists():
            return f"Error: Destination already exists: {args.destination}"
        dst.parent.mkdir(parents=True, exist_ok=True)
        src.rename(dst)
        return f"Moved {args.source} -> {args.destination}"

    def action_for(self, args: MoveFileArgs) -> tuple[ActionType, tuple[str, ...], str]:
        return ActionType.MOVE, (args.source, args.destination), ""
