"""Shell command execution tool."""

import asyncio
import logging
from typing import Any, Dict, Optional

from ..errors import cancelled, execution_failed, timeout as timeout_error
from .base import BaseTool, ToolContext
from .filesystem import resolve_path

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 50_000


def _decode(data: Optional[bytes]) -> str:
    text = (data or b"").decode("utf-8", errors="replace")
    if len(text) > MAX_OUTPUT_CHARS:
        omitted = len(text) - MAX_OUTPUT_CHARS
        text = text[:MAX_OUTPUT_CHARS] + f"\n... [{omitted} characters truncated]"
    return text


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    process.kill()
    await process.wait()


class ExecuteCommandTool(BaseTool):
    """Run a shell command in the working directory."""

    name = "execute_command"

    @property
    def description(self) -> str:
        return (
            "Execute a shell command in the working directory and return its exit "
            "code, stdout and stderr. A non-zero exit code is reported, not raised."
        )

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {"type": "string", "minLength": 1, "description": "Shell command to run"},
                "working_directory": {
                    "type": "string",
                    "description": "Subdirectory to run in, relative to the working directory",
                },
                "timeout": {"type": "number", "exclusiveMinimum": 0, "description": "Timeout in seconds"},
            },
            "required": ["command"],
            "additionalProperties": False,
        }

    async def execute(
        self,
        context: ToolContext,
        command: str,
        working_directory: str = ".",
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        cwd = resolve_path(context, working_directory)
        limit = timeout or context.command_timeout
        context.cancel_token.raise_if_cancelled(command)

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise execution_failed(command, e)

        logger.debug("Started command %r (pid %s)", command, process.pid)
        context.report_progress(pid=process.pid, command=command)

        communicate = asyncio.ensure_future(process.communicate())
        cancel_wait = asyncio.ensure_future(context.cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {communicate, cancel_wait},
                timeout=limit,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            communicate.cancel()
            await _terminate(process)
            raise
        finally:
            cancel_wait.cancel()

        if communicate not in done:
            communicate.cancel()
            await _terminate(process)
            if cancel_wait in done:
                raise cancelled(command)
            raise timeout_error(command).with_context("timeout", limit)

        stdout, stderr = communicate.result()
        return {
            "command": command,
            "exit_code": process.returncode,
            "stdout": _decode(stdout),
            "stderr": _decode(stderr),
            "success": process.returncode == 0,
        }
