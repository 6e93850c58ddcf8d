"""Shell and host information tools."""
from __future__ import annotations

import asyncio
import logging
import os
import platform
import socket
import sys
import time

from deskagent.engine.capabilities import Capability
from deskagent.engine.errors import ToolExecutionError
from deskagent.engine.tool_inputs import GetSystemInfoInput, RunShellCommandInput
from deskagent.engine.tools.filesystem import Sandbox

logger = logging.getLogger(__name__)

ALLOWED_COMMANDS = ("ls", "pwd", "date", "echo", "cat", "grep")

_STARTED_AT = time.monotonic()


def _path_args(command: str, args: list[str]) -> list[str]:
    """Arguments of a whitelisted command that name files."""
    operands = [a for a in args if not a.startswith("-")]
    if command in ("ls", "cat"):
        return operands
    if command == "grep":
        return operands[1:]  # first operand is the pattern
    return []


def system_tools(sandbox: Sandbox, timeout_seconds: float = 10.0) -> list[Capability]:

    async def run_shell_command(payload: RunShellCommandInput) -> dict:
        if payload.command not in ALLOWED_COMMANDS:
            raise ToolExecutionError(
                "run_shell_command", f"Command not allowed: {payload.command}",
            )
        for arg in _path_args(payload.command, payload.args):
            sandbox.resolve(arg, "run_shell_command")

        full_command = " ".join([payload.command, *payload.args])
        # create_subprocess_exec passes args as array, no shell
        proc = await asyncio.create_subprocess_exec(
            payload.command, *payload.args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(sandbox.root),
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=timeout_seconds,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ToolExecutionError(
                "run_shell_command",
                f"Command timed out after {timeout_seconds:g}s: {full_command}",
            ) from None
        logger.debug("run_shell_command: %s -> rc=%s", full_command, proc.returncode)
        return {
            "stdout": stdout.decode("utf-8", errors="replace").strip(),
            "stderr": stderr.decode("utf-8", errors="replace").strip(),
            "command": full_command,
            "returncode": proc.returncode,
        }

    async def get_system_info(payload: GetSystemInfoInput) -> dict:
        return {
            "platform": sys.platform,
            "system": platform.system(),
            "release": platform.release(),
            "arch": platform.machine(),
            "hostname": socket.gethostname(),
            "python_version": platform.python_version(),
            "cpu_count": os.cpu_count(),
            "uptime": round(time.monotonic() - _STARTED_AT, 3),
        }

    return [
        Capability(
            name="run_shell_command",
            description=(
                "Execute a safe command. Only whitelisted commands are allowed: "
                + ", ".join(ALLOWED_COMMANDS) + "."
            ),
            input_model=RunShellCommandInput,
            execute=run_shell_command,
        ),
        Capability(
            name="get_system_info",
            description="Get basic system information like OS, architecture and Python version.",
            input_model=GetSystemInfoInput,
            execute=get_system_info,
        ),
    ]
