"""Capability registry, sandboxed file tools, shell whitelist, custom tools."""

from __future__ import annotations

import sys
import textwrap

import pytest

from deskagent.engine.capabilities import Capability, CapabilityRegistry, load_capabilities
from deskagent.engine.config import SessionConfig
from deskagent.engine.errors import ToolExecutionError, ValidationError
from deskagent.engine.tool_inputs import GetSystemInfoInput, ListFilesInput
from deskagent.engine.tools.custom import (
    load_custom_tools,
    tool_from_definition,
    validate_tool_definition,
)
from deskagent.engine.tools.filesystem import Sandbox, filesystem_tools
from deskagent.engine.tools.system import system_tools


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "workspace"
    root.mkdir()
    (root / "notes.txt").write_text("hello notes", encoding="utf-8")
    (root / "src").mkdir()
    (root / "src" / "main.py").write_text("print('hi')\n", encoding="utf-8")
    (root / "src" / "util.py").write_text("", encoding="utf-8")
    (tmp_path / "secret.txt").write_text("top secret", encoding="utf-8")
    return root


@pytest.fixture
def registry(workspace):
    sandbox = Sandbox(workspace, max_file_size_mb=0.001)
    return CapabilityRegistry(filesystem_tools(sandbox) + system_tools(sandbox, timeout_seconds=5))


# ── Registry ──


def test_builtin_tool_names(registry):
    assert sorted(registry.names()) == [
        "get_system_info", "list_files", "read_file",
        "run_shell_command", "search_files", "write_file",
    ]


def test_later_definition_overrides_earlier():
    async def first(payload):
        return "first"

    async def second(payload):
        return "second"

    registry = CapabilityRegistry([
        Capability("echo", "a", GetSystemInfoInput, first),
        Capability("echo", "b", GetSystemInfoInput, second, source="user.py"),
    ])
    assert len(registry) == 1
    assert registry.get("echo").source == "user.py"


def test_registry_snapshot_is_immutable(registry):
    with pytest.raises(TypeError):
        registry._capabilities["new"] = None  # type: ignore[index]


@pytest.mark.asyncio
async def test_invoke_validates_input(registry):
    with pytest.raises(ValidationError):
        await registry.invoke("read_file", {"file": "notes.txt"})
    with pytest.raises(ValidationError):
        await registry.invoke("no_such_tool", {})


@pytest.mark.asyncio
async def test_invoke_wraps_unexpected_exceptions():
    def broken(payload):
        raise KeyError("missing")

    registry = CapabilityRegistry([Capability("broken", "b", GetSystemInfoInput, broken)])
    with pytest.raises(ToolExecutionError) as exc_info:
        await registry.invoke("broken", {})
    assert exc_info.value.tool_name == "broken"


def test_schema_uses_aliases_and_drops_title(registry):
    schema = registry.get("search_files").schema()
    assert "title" not in schema
    assert "maxResults" in schema["properties"]
    assert registry.get("get_system_info").schema()["properties"] == {}


# ── File tools ──


@pytest.mark.asyncio
async def test_list_files(registry):
    entries = await registry.invoke("list_files", {"path": "."})
    assert [(e["name"], e["type"]) for e in entries] == [("notes.txt", "file"), ("src", "directory")]


@pytest.mark.asyncio
@pytest.mark.parametrize("tool, payload", [
    ("read_file", {"path": "../secret.txt"}),
    ("list_files", {"path": "/"}),
    ("write_file", {"path": "../escape.txt", "content": "x"}),
])
async def test_paths_outside_root_are_denied(registry, tool, payload):
    with pytest.raises(ToolExecutionError) as exc_info:
        await registry.invoke(tool, payload)
    assert "Access denied" in str(exc_info.value)


@pytest.mark.asyncio
async def test_read_file_size_cap(registry, workspace):
    result = await registry.invoke("read_file", {"path": "notes.txt"})
    assert result["content"] == "hello notes"

    (workspace / "big.txt").write_text("x" * 5000, encoding="utf-8")
    with pytest.raises(ToolExecutionError) as exc_info:
        await registry.invoke("read_file", {"path": "big.txt"})
    assert "File too large" in str(exc_info.value)


@pytest.mark.asyncio
async def test_write_file_creates_parents(registry, workspace):
    result = await registry.invoke("write_file", {"path": "out/new.txt", "content": "data"})
    assert result["size"] == 4
    assert (workspace / "out" / "new.txt").read_text(encoding="utf-8") == "data"


@pytest.mark.asyncio
async def test_search_files_glob_and_limit(registry):
    matches = await registry.invoke("search_files", {"pattern": "**/*.py"})
    assert sorted(matches) == ["src/main.py", "src/util.py"]
    limited = await registry.invoke("search_files", {"pattern": "**/*.py", "maxResults": 1})
    assert len(limited) == 1
    with pytest.raises(ToolExecutionError):
        await registry.invoke("search_files", {"pattern": "../*.txt"})


# ── Shell and system tools ──


@pytest.mark.asyncio
async def test_shell_rejects_commands_outside_whitelist(registry):
    with pytest.raises(ToolExecutionError) as exc_info:
        await registry.invoke("run_shell_command", {"command": "rm", "args": ["-rf", "."]})
    assert "Command not allowed" in str(exc_info.value)


@pytest.mark.asyncio
async def test_shell_rejects_paths_outside_root(registry):
    with pytest.raises(ToolExecutionError):
        await registry.invoke("run_shell_command", {"command": "cat", "args": ["../secret.txt"]})


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX echo")
@pytest.mark.asyncio
async def test_shell_runs_whitelisted_command_without_shell(registry):
    result = await registry.invoke("run_shell_command", {"command": "echo", "args": ["a;", "ls"]})
    assert result["stdout"] == "a; ls"
    assert result["returncode"] == 0


@pytest.mark.asyncio
async def test_system_info_fields(registry):
    info = await registry.invoke("get_system_info", {})
    assert {"platform", "arch", "hostname", "python_version", "cpu_count", "uptime"} <= set(info)


# ── Custom tools ──


def _write_tool(directory, name, body):
    path = directory / name
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


def test_validate_tool_definition_rejects_bad_shapes():
    with pytest.raises(ValidationError):
        validate_tool_definition({"name": "x"})
    with pytest.raises(ValidationError):
        validate_tool_definition({
            "name": "x", "description": "d",
            "input_schema": {"type": "array", "properties": {}},
            "execute": lambda args: None,
        })


@pytest.mark.asyncio
async def test_tool_from_definition_validates_schema_and_calls_execute():
    calls = []

    def execute(args):
        calls.append(args)
        return len(args["text"].split())

    capability = tool_from_definition({
        "name": "word_count",
        "description": "Count words",
        "input_schema": {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
        "execute": execute,
    }, source="test")
    registry = CapabilityRegistry([capability])
    assert await registry.invoke("word_count", {"text": "one two three"}) == 3
    assert calls == [{"text": "one two three"}]
    with pytest.raises(ValidationError):
        await registry.invoke("word_count", {})


def test_load_custom_tools_skips_invalid_files(tmp_path):
    tools_dir = tmp_path / "tools"
    tools_dir.mkdir()
    _write_tool(tools_dir, "shout.py", """
        async def execute(args):
            return args["text"].upper()

        TOOL = {
            "name": "shout",
            "description": "Upper-case text",
            "input_schema": {"type": "object", "properties": {"text": {"type": "string"}}},
            "execute": execute,
        }
    """)
    _write_tool(tools_dir, "no_export.py", "VALUE = 1\n")
    _write_tool(tools_dir, "syntax_error.py", "def broken(:\n")
    _write_tool(tools_dir, "_private.py", "raise RuntimeError('never imported')\n")

    tools = load_custom_tools(tools_dir)
    assert [t.name for t in tools] == ["shout"]
    assert load_custom_tools(tmp_path / "missing") == []


@pytest.mark.asyncio
async def test_user_tools_override_builtins(tmp_path, workspace):
    tools_dir = tmp_path / "tools"
    tools_dir.mkdir()
    _write_tool(tools_dir, "list_files.py", """
        TOOL = {
            "name": "list_files",
            "description": "Custom listing",
            "input_schema": {"type": "object", "properties": {"path": {"type": "string"}}},
            "execute": lambda args: ["custom"],
        }
    """)
    config = SessionConfig(allowed_root_dir=str(workspace), tools_dir=str(tools_dir))
    registry = load_capabilities(config)
    assert registry.get("list_files").description == "Custom listing"
    assert await registry.invoke("list_files", {"path": "."}) == ["custom"]
    assert "read_file" in registry


def test_list_files_input_model_is_strict():
    with pytest.raises(Exception):
        ListFilesInput.model_validate({"path": ".", "extra": 1})
