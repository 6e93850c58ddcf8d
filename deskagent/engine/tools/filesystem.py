"""Workspace file tools, sandboxed to one root directory."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path, PurePosixPath

from deskagent.engine.capabilities import Capability
from deskagent.engine.errors import ToolExecutionError
from deskagent.engine.tool_inputs import (
    ListFilesInput,
    ReadFileInput,
    SearchFilesInput,
    WriteFileInput,
)

logger = logging.getLogger(__name__)


class Sandbox:
    """Resolves relative paths and refuses anything outside the root."""

    def __init__(self, root: Path, max_file_size_mb: float = 10.0) -> None:
        self.root = root.expanduser().resolve()
        self.max_file_size_mb = max_file_size_mb

    @property
    def max_file_size_bytes(self) -> int:
        return int(self.max_file_size_mb * 1024 * 1024)

    def contains(self, path: Path) -> bool:
        return path == self.root or self.root in path.parents

    def resolve(self, relative: str, tool_name: str) -> Path:
        target = (self.root / relative).resolve()
        if not self.contains(target):
            raise ToolExecutionError(tool_name, "Access denied: path outside allowed directory")
        return target

    def relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()


def filesystem_tools(sandbox: Sandbox) -> list[Capability]:

    async def list_files(payload: ListFilesInput) -> list[dict]:
        target = sandbox.resolve(payload.path, "list_files")
        if not target.is_dir():
            raise ToolExecutionError("list_files", f"not a directory: {payload.path}")
        entries = []
        for entry in sorted(target.iterdir(), key=lambda p: p.name):
            entries.append({
                "name": entry.name,
                "type": "directory" if entry.is_dir() else "file",
                "path": str(PurePosixPath(payload.path) / entry.name),
            })
        return entries

    async def read_file(payload: ReadFileInput) -> dict:
        target = sandbox.resolve(payload.path, "read_file")
        if not target.is_file():
            raise ToolExecutionError("read_file", f"no such file: {payload.path}")
        size = target.stat().st_size
        if size > sandbox.max_file_size_bytes:
            raise ToolExecutionError(
                "read_file", f"File too large (max {sandbox.max_file_size_mb:g}MB)",
            )
        content = await asyncio.to_thread(target.read_text, encoding="utf-8")
        return {"path": payload.path, "content": content, "size": size}

    async def write_file(payload: WriteFileInput) -> dict:
        target = sandbox.resolve(payload.path, "write_file")
        if target == sandbox.root:
            raise ToolExecutionError("write_file", "path must name a file")
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_text, payload.content, encoding="utf-8")
        logger.info("write_file: wrote %s", payload.path)
        return {
            "path": payload.path,
            "size": len(payload.content.encode("utf-8")),
            "message": "File written successfully",
        }

    async def search_files(payload: SearchFilesInput) -> list[str]:
        pattern = payload.pattern
        if PurePosixPath(pattern).is_absolute() or ".." in PurePosixPath(pattern).parts:
            raise ToolExecutionError("search_files", "pattern must stay inside the workspace")
        matches: list[str] = []
        for path in sandbox.root.glob(pattern):
            if not sandbox.contains(path.resolve()):
                continue
            matches.append(sandbox.relative(path))
            if len(matches) >= payload.max_results:
                break
        return matches

    return [
        Capability(
            name="list_files",
            description=(
                "List files and directories at a given path within the allowed "
                "workspace. Returns name, type (file/directory) and path."
            ),
            input_model=ListFilesInput,
            execute=list_files,
        ),
        Capability(
            name="read_file",
            description=(
                "Read the contents of a text file within the allowed workspace."
            ),
            input_model=ReadFileInput,
            execute=read_file,
        ),
        Capability(
            name="write_file",
            description=(
                "Write or overwrite a text file within the allowed workspace."
            ),
            input_model=WriteFileInput,
            execute=write_file,
        ),
        Capability(
            name="search_files",
            description=(
                "Search for files by glob pattern within the allowed workspace."
            ),
            input_model=SearchFilesInput,
            execute=search_files,
        ),
    ]
