"""Unified diff patch tool."""

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiofiles

from ..errors import patch_failed, permission_denied
from .base import BaseTool, ToolContext
from .filesystem import atomic_write, resolve_path

HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
DEV_NULL = "/dev/null"

logger = logging.getLogger(__name__)


class Hunk:
    """One ``@@`` block of a unified diff."""

    def __init__(self, old_start: int, old_count: int, new_start: int, new_count: int):
        self.old_start = old_start
        self.old_count = old_count
        self.new_start = new_start
        self.new_count = new_count
        self.lines: List[str] = []

    @property
    def old_lines(self) -> List[str]:
        return [line[1:] for line in self.lines if line[:1] in (" ", "-")]

    @property
    def new_lines(self) -> List[str]:
        return [line[1:] for line in self.lines if line[:1] in (" ", "+")]

    @property
    def is_complete(self) -> bool:
        return len(self.old_lines) >= self.old_count and len(self.new_lines) >= self.new_count

    @property
    def added(self) -> int:
        return sum(1 for line in self.lines if line.startswith("+"))

    @property
    def removed(self) -> int:
        return sum(1 for line in self.lines if line.startswith("-"))


class FilePatch:
    """All hunks targeting one file."""

    def __init__(self, old_path: str, new_path: str):
        self.old_path = old_path
        self.new_path = new_path
        self.hunks: List[Hunk] = []

    @property
    def is_create(self) -> bool:
        return self.old_path == DEV_NULL

    @property
    def is_delete(self) -> bool:
        return self.new_path == DEV_NULL

    @property
    def path(self) -> str:
        return self.old_path if self.is_delete else self.new_path


def _strip_header_path(raw: str) -> str:
    path = raw.split("\t", 1)[0].strip()
    if path != DEV_NULL and (path.startswith("a/") or path.startswith("b/")):
        path = path[2:]
    return path


def parse_unified_diff(text: str) -> List[FilePatch]:
    """Parse a (possibly multi-file) unified diff."""
    patches: List[FilePatch] = []
    current: Optional[FilePatch] = None
    hunk: Optional[Hunk] = None
    lines = text.splitlines()
    i = 0

    while i < len(lines):
        line = lines[i]
        if hunk is not None and not hunk.is_complete:
            if line[:1] in (" ", "+", "-"):
                hunk.lines.append(line)
            elif line == "":
                # Some generators drop the leading space on blank context lines
                hunk.lines.append(" ")
            elif not line.startswith("\\"):
                raise patch_failed(f"unexpected line in hunk at line {i + 1}")
            i += 1
            continue

        if line.startswith("--- ") and i + 1 < len(lines) and lines[i + 1].startswith("+++ "):
            current = FilePatch(_strip_header_path(line[4:]), _strip_header_path(lines[i + 1][4:]))
            patches.append(current)
            hunk = None
            i += 2
            continue

        match = HUNK_HEADER.match(line)
        if match:
            if current is None:
                raise patch_failed(f"hunk without file header at line {i + 1}")
            hunk = Hunk(
                int(match.group(1)),
                int(match.group(2)) if match.group(2) is not None else 1,
                int(match.group(3)),
                int(match.group(4)) if match.group(4) is not None else 1,
            )
            current.hunks.append(hunk)
        i += 1

    if not patches:
        raise patch_failed("no file headers found in patch")
    for file_patch in patches:
        if not file_patch.hunks and not file_patch.is_delete:
            raise patch_failed(f"no hunks for {file_patch.path}")
        for hunk in file_patch.hunks:
            if len(hunk.old_lines) != hunk.old_count or len(hunk.new_lines) != hunk.new_count:
                raise patch_failed(
                    f"hunk line counts do not match header in {file_patch.path} at -{hunk.old_start}"
                )
    return patches


def _find_block(lines: List[str], block: List[str], expected: int, start: int) -> int:
    """Locate ``block`` at ``expected`` or, failing that, the first match after ``start``."""
    size = len(block)
    if 0 <= expected <= len(lines) - size and lines[expected:expected + size] == block:
        return expected
    for index in range(start, len(lines) - size + 1):
        if lines[index:index + size] == block:
            return index
    return -1


def apply_hunks(content: str, hunks: List[Hunk], path: str) -> Tuple[str, int, int]:
    """Apply hunks to ``content``; any context mismatch raises PATCH_FAILED."""
    trailing_newline = content.endswith("\n") or not content
    lines = content.splitlines()
    offset = 0
    cursor = 0
    added = removed = 0

    for number, hunk in enumerate(hunks, 1):
        old_block = hunk.old_lines
        expected = hunk.old_start - 1 + offset if hunk.old_count else hunk.old_start + offset
        index = _find_block(lines, old_block, expected, cursor)
        if index < 0:
            raise patch_failed(f"hunk {number} does not apply to {path}").with_context("path", path)

        new_block = hunk.new_lines
        lines[index:index + len(old_block)] = new_block
        cursor = index + len(new_block)
        offset += len(new_block) - len(old_block)
        added += hunk.added
        removed += hunk.removed

    result = "\n".join(lines)
    if lines and trailing_newline:
        result += "\n"
    return result, added, removed


class ApplyPatchTool(BaseTool):
    """Apply a unified diff across one or more files."""

    name = "apply_patch"

    @property
    def description(self) -> str:
        return (
            "Apply a unified diff. Supports creating (--- /dev/null), updating and "
            "deleting (+++ /dev/null) files. Every hunk is checked before anything is "
            "written, so a patch that does not apply leaves all files untouched."
        )

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "patch": {"type": "string", "minLength": 1, "description": "Unified diff text"},
                "dry_run": {"type": "boolean", "default": False, "description": "Validate without writing"},
            },
            "required": ["patch"],
            "additionalProperties": False,
        }

    async def _read(self, path: Path, display: str) -> str:
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                return await f.read()
        except PermissionError:
            raise permission_denied(display)

    async def _load(self, path: Path, display: str) -> Optional[str]:
        """Current content of ``path``, or None when it does not exist."""
        if not path.exists():
            return None
        if not path.is_file():
            raise patch_failed(f"not a regular file: {display}").with_context("path", display)
        return await self._read(path, display)

    def _check_parent(self, context: ToolContext, path: Path, display: str) -> None:
        """The nearest existing ancestor of a created file must be a directory."""
        parent = path.parent
        while parent != context.working_directory and not parent.exists():
            parent = parent.parent
        if not parent.is_dir():
            raise (
                patch_failed(f"cannot create {display}: {parent.name} is not a directory")
                .with_context("path", display)
            )

    async def _rollback(self, written: List[Path], originals: Dict[Path, Optional[str]]) -> None:
        for path in reversed(written):
            original = originals[path]
            try:
                if original is None:
                    path.unlink(missing_ok=True)
                else:
                    await atomic_write(path, original)
            except OSError as e:
                logger.error(f"Could not restore {path} after a failed patch: {e}")

    async def execute(self, context: ToolContext, patch: str, dry_run: bool = False) -> Dict[str, Any]:
        file_patches = parse_unified_diff(patch)

        # Validate every file before touching the tree; sections for the same
        # path apply on top of each other
        originals: Dict[Path, Optional[str]] = {}
        planned: Dict[Path, Optional[str]] = {}
        displays: Dict[Path, str] = {}
        total_added = total_removed = 0
        for file_patch in file_patches:
            display = file_patch.path
            target = resolve_path(context, display)
            if target not in planned:
                originals[target] = await self._load(target, display)
                planned[target] = originals[target]
                displays[target] = display
            current = planned[target]

            if file_patch.is_create:
                if current is not None:
                    raise patch_failed(f"file already exists: {display}").with_context("path", display)
                self._check_parent(context, target, display)
                new_content, added, removed = apply_hunks("", file_patch.hunks, display)
            elif current is None:
                raise patch_failed(f"file not found: {display}").with_context("path", display)
            elif file_patch.is_delete:
                new_content, added, removed = None, 0, len(current.splitlines())
                if file_patch.hunks:
                    remaining, _, removed = apply_hunks(current, file_patch.hunks, display)
                    if remaining.strip():
                        raise patch_failed(f"delete hunk does not cover all of {display}")
            else:
                new_content, added, removed = apply_hunks(current, file_patch.hunks, display)

            planned[target] = new_content
            total_added += added
            total_removed += removed

        changes: List[Tuple[Path, str, Optional[str]]] = []
        files: List[Dict[str, Any]] = []
        for target, new_content in planned.items():
            original = originals[target]
            if new_content is None and original is None:
                continue
            if new_content is None:
                action = "delete"
            elif original is None:
                action = "create"
            else:
                action = "update"
            changes.append((target, action, new_content))
            files.append({"path": displays[target], "action": action})

        if not dry_run:
            written: List[Path] = []
            try:
                for target, action, new_content in changes:
                    context.report_progress(path=displays[target], action=action)
                    if new_content is None:
                        target.unlink()
                    else:
                        target.parent.mkdir(parents=True, exist_ok=True)
                        await atomic_write(target, new_content)
                    written.append(target)
            except BaseException:
                await self._rollback(written, originals)
                raise

        return {
            "files": files,
            "lines_added": total_added,
            "lines_removed": total_removed,
            "dry_run": dry_run,
        }
