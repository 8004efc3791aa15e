"""Filesystem tools: read, write and list, sandboxed to the working directory."""

import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from ..errors import (
    file_not_found,
    invalid_input,
    not_a_directory,
    path_traversal,
    permission_denied,
    symlink_escape,
)
from .base import BaseTool, ToolContext

DEFAULT_READ_LIMIT = 1000

# Writes that shrink a file above this size to under a tenth of it are refused
SIZE_GUARD_MIN_BYTES = 1000
SIZE_GUARD_RATIO = 10


def _is_within(path: Path, base: Path) -> bool:
    try:
        path.relative_to(base)
        return True
    except ValueError:
        return False


def resolve_path(context: ToolContext, path: str) -> Path:
    """
    Resolve a tool path argument inside the working directory.

    Lexical escapes (``..`` or absolute paths elsewhere) raise PATH_TRAVERSAL;
    paths that only escape after following symlinks raise SYMLINK_ESCAPE.
    """
    base = context.working_directory
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = base / candidate
    normalized = Path(os.path.normpath(str(candidate)))

    if not _is_within(normalized, base):
        raise path_traversal(path, str(base))

    real = normalized.resolve()
    if not _is_within(real, base):
        raise symlink_escape(path, str(real), str(base))
    return normalized


async def atomic_write(path: Path, content: str) -> None:
    """Write ``content`` to a temp file beside ``path`` and rename it in place."""
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    os.close(fd)
    try:
        async with aiofiles.open(tmp_name, "w", encoding="utf-8") as f:
            await f.write(content)
        if path.exists():
            os.chmod(tmp_name, path.stat().st_mode & 0o7777)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class ReadFileTool(BaseTool):
    """Read a text file, optionally a window of lines."""

    name = "read_file"
    independent = True

    @property
    def description(self) -> str:
        return (
            "Read a text file. Returns up to 1000 lines by default; use offset "
            "(1-indexed start line) and limit to page through large files."
        )

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to the working directory"},
                "offset": {"type": "integer", "minimum": 1, "description": "Start line (1-indexed)"},
                "limit": {"type": "integer", "minimum": 1, "description": "Maximum number of lines"},
            },
            "required": ["path"],
            "additionalProperties": False,
        }

    async def execute(self, context: ToolContext, path: str, offset: int = 1, limit: Optional[int] = None) -> Dict[str, Any]:
        file_path = resolve_path(context, path)

        if not file_path.exists():
            raise file_not_found(path)
        if not file_path.is_file():
            raise invalid_input(f"not a file: {path}").with_context("path", path)

        size = file_path.stat().st_size
        if size > context.max_file_size:
            raise invalid_input(f"file too large: {path} ({size} bytes)").with_context("path", path)

        try:
            async with aiofiles.open(file_path, "r", encoding="utf-8") as f:
                content = await f.read()
        except UnicodeDecodeError:
            raise invalid_input(f"file appears to be binary: {path}").with_context("path", path)
        except PermissionError:
            raise permission_denied(path)

        lines = content.splitlines()
        limit = limit or DEFAULT_READ_LIMIT
        selected = lines[offset - 1:offset - 1 + limit]

        return {
            "path": path,
            "content": "\n".join(selected),
            "total_lines": len(lines),
            "returned_lines": len(selected),
            "start_line": offset,
        }


class WriteFileTool(BaseTool):
    """Atomically write a text file."""

    name = "write_file"

    @property
    def description(self) -> str:
        return (
            "Write content to a file, creating or overwriting it atomically. "
            "Parent directories are created by default. Writes that would shrink "
            "a file by more than 90% are refused unless allow_size_reduce is true."
        )

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to the working directory"},
                "content": {"type": "string", "description": "Full file content"},
                "create_dirs": {"type": "boolean", "default": True},
                "allow_size_reduce": {"type": "boolean", "default": False},
            },
            "required": ["path", "content"],
            "additionalProperties": False,
        }

    async def execute(
        self,
        context: ToolContext,
        path: str,
        content: str,
        create_dirs: bool = True,
        allow_size_reduce: bool = False,
    ) -> Dict[str, Any]:
        file_path = resolve_path(context, path)
        new_size = len(content.encode("utf-8"))

        if new_size > context.max_file_size:
            raise invalid_input(f"content too large for {path} ({new_size} bytes)").with_context("path", path)

        if file_path.is_dir():
            raise invalid_input(f"path is a directory: {path}").with_context("path", path)

        if file_path.exists() and not allow_size_reduce:
            current_size = file_path.stat().st_size
            if current_size > SIZE_GUARD_MIN_BYTES and new_size < current_size // SIZE_GUARD_RATIO:
                raise (
                    invalid_input(
                        f"refusing to reduce {path} from {current_size} to {new_size} bytes"
                    )
                    .with_context("path", path)
                    .with_suggestion("set allow_size_reduce=true if this is intentional")
                )

        if not file_path.parent.exists():
            if not create_dirs:
                raise not_a_directory(str(file_path.parent.relative_to(context.working_directory)))
            file_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            await atomic_write(file_path, content)
        except PermissionError:
            raise permission_denied(path)

        context.report_progress(path=path, bytes=new_size)
        return {
            "path": path,
            "size": new_size,
            "lines": len(content.splitlines()),
        }


class ReplaceInFileTool(BaseTool):
    """Replace exact text in an existing file."""

    name = "replace_in_file"

    @property
    def description(self) -> str:
        return (
            "Replace every occurrence of old_text with new_text in an existing file. "
            "old_text must match exactly, including whitespace. Use max_replacements "
            "to refuse edits that would touch more occurrences than expected."
        )

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to the working directory"},
                "old_text": {"type": "string", "minLength": 1, "description": "Exact text to find"},
                "new_text": {"type": "string", "description": "Replacement text"},
                "max_replacements": {"type": "integer", "minimum": 1},
            },
            "required": ["path", "old_text", "new_text"],
            "additionalProperties": False,
        }

    async def execute(
        self,
        context: ToolContext,
        path: str,
        old_text: str,
        new_text: str,
        max_replacements: Optional[int] = None,
    ) -> Dict[str, Any]:
        file_path = resolve_path(context, path)

        if not file_path.exists():
            raise file_not_found(path)
        if not file_path.is_file():
            raise invalid_input(f"not a file: {path}").with_context("path", path)
        if not new_text:
            raise (
                invalid_input("refusing to replace with empty text")
                .with_context("path", path)
                .with_suggestion("use apply_patch to delete lines")
            )

        try:
            async with aiofiles.open(file_path, "r", encoding="utf-8") as f:
                content = await f.read()
        except UnicodeDecodeError:
            raise invalid_input(f"file appears to be binary: {path}").with_context("path", path)
        except PermissionError:
            raise permission_denied(path)

        count = content.count(old_text)
        if count == 0:
            raise (
                invalid_input(f"text to replace not found in {path}")
                .with_context("path", path)
                .with_suggestion("old_text must match exactly, including whitespace")
            )
        if max_replacements is not None and count > max_replacements:
            raise (
                invalid_input(f"{count} occurrences found in {path}, at most {max_replacements} allowed")
                .with_context("path", path)
            )

        try:
            await atomic_write(file_path, content.replace(old_text, new_text))
        except PermissionError:
            raise permission_denied(path)

        context.report_progress(path=path, replacements=count)
        return {"path": path, "replacements": count}


class ListDirectoryTool(BaseTool):
    """List directory entries."""

    name = "list_directory"
    independent = True

    @property
    def description(self) -> str:
        return "List files and directories, optionally recursively."

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "default": ".", "description": "Directory to list"},
                "recursive": {"type": "boolean", "default": False},
            },
            "additionalProperties": False,
        }

    async def execute(self, context: ToolContext, path: str = ".", recursive: bool = False) -> Dict[str, Any]:
        dir_path = resolve_path(context, path)

        if not dir_path.exists():
            raise file_not_found(path)
        if not dir_path.is_dir():
            raise not_a_directory(path)

        items = dir_path.rglob("*") if recursive else dir_path.iterdir()
        entries: List[Dict[str, Any]] = []
        try:
            for item in items:
                context.cancel_token.raise_if_cancelled("list_directory")
                is_dir = item.is_dir()
                # Dangling links are listed from the link itself
                info = item.stat() if item.exists() else item.lstat()
                entries.append({
                    "name": item.name,
                    "path": str(item.relative_to(context.working_directory)),
                    "is_dir": is_dir,
                    "is_symlink": item.is_symlink(),
                    "size": 0 if is_dir else info.st_size,
                })
        except PermissionError:
            raise permission_denied(path)

        entries.sort(key=lambda e: (not e["is_dir"], e["path"]))
        return {"path": path, "recursive": recursive, "entries": entries, "count": len(entries)}
