"""Search tools: find files by name and grep file contents."""

import re
from pathlib import Path
from typing import Any, Dict, Iterator, List

import aiofiles

from ..errors import file_not_found, invalid_input, not_a_directory
from .base import BaseTool, ToolContext
from .filesystem import resolve_path

DEFAULT_MAX_RESULTS = 100

SKIPPED_DIRS = {".git", ".hg", ".svn", "__pycache__", "node_modules", ".venv", "venv"}


def _walk_files(root: Path, pattern: str) -> Iterator[Path]:
    """Regular files under ``root`` whose name matches ``pattern``, in path order."""
    for path in sorted(root.rglob(pattern)):
        relative = path.relative_to(root)
        if any(part in SKIPPED_DIRS for part in relative.parts[:-1]):
            continue
        if path.is_file():
            yield path


class SearchFilesTool(BaseTool):
    """Find files whose names match a glob pattern."""

    name = "search_files"
    independent = True

    @property
    def description(self) -> str:
        return (
            "Find files under a directory whose names match a wildcard pattern "
            "(* for any characters, ? for one character), e.g. '*.py' or 'test_*.py'."
        )

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "minLength": 1, "description": "File name pattern"},
                "path": {"type": "string", "default": ".", "description": "Directory to search in"},
                "max_results": {"type": "integer", "minimum": 1, "default": DEFAULT_MAX_RESULTS},
            },
            "required": ["pattern"],
            "additionalProperties": False,
        }

    async def execute(
        self,
        context: ToolContext,
        pattern: str,
        path: str = ".",
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> Dict[str, Any]:
        root = resolve_path(context, path)
        if not root.exists():
            raise file_not_found(path)
        if not root.is_dir():
            raise not_a_directory(path)

        matches: List[str] = []
        truncated = False
        for file_path in _walk_files(root, pattern):
            context.cancel_token.raise_if_cancelled("search_files")
            if len(matches) >= max_results:
                truncated = True
                break
            matches.append(str(file_path.relative_to(context.working_directory)))

        return {"pattern": pattern, "matches": matches, "count": len(matches), "truncated": truncated}


class GrepSearchTool(BaseTool):
    """Search file contents with a regular expression."""

    name = "grep_search"
    independent = True

    @property
    def description(self) -> str:
        return (
            "Search file contents for a regular expression, like grep. Returns the "
            "matching lines with file paths and 1-indexed line numbers. Binary and "
            "oversized files are skipped."
        )

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "minLength": 1, "description": "Regular expression"},
                "path": {"type": "string", "default": ".", "description": "File or directory to search"},
                "include": {"type": "string", "default": "*", "description": "File name pattern to search in"},
                "case_sensitive": {"type": "boolean", "default": True},
                "max_results": {"type": "integer", "minimum": 1, "default": DEFAULT_MAX_RESULTS},
            },
            "required": ["pattern"],
            "additionalProperties": False,
        }

    async def execute(
        self,
        context: ToolContext,
        pattern: str,
        path: str = ".",
        include: str = "*",
        case_sensitive: bool = True,
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> Dict[str, Any]:
        try:
            regex = re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
        except re.error as e:
            raise invalid_input(f"invalid regular expression {pattern!r}: {e}").with_context("pattern", pattern)

        target = resolve_path(context, path)
        if not target.exists():
            raise file_not_found(path)
        files = [target] if target.is_file() else _walk_files(target, include)

        matches: List[Dict[str, Any]] = []
        files_searched = 0
        truncated = False
        for file_path in files:
            context.cancel_token.raise_if_cancelled("grep_search")
            if file_path.stat().st_size > context.max_file_size:
                continue
            try:
                async with aiofiles.open(file_path, "r", encoding="utf-8") as f:
                    content = await f.read()
            except (UnicodeDecodeError, PermissionError):
                continue

            files_searched += 1
            relative = str(file_path.relative_to(context.working_directory))
            for number, line in enumerate(content.splitlines(), 1):
                if not regex.search(line):
                    continue
                if len(matches) >= max_results:
                    truncated = True
                    break
                matches.append({"file": relative, "line": number, "content": line.strip()})
            if truncated:
                break

        return {
            "pattern": pattern,
            "matches": matches,
            "count": len(matches),
            "files_searched": files_searched,
            "truncated": truncated,
        }
