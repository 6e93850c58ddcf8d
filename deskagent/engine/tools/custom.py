"""User-defined tools loaded from Python files.

Each ``*.py`` file in the tools directory must export ``TOOL``::

    TOOL = {
        "name": "word_count",
        "description": "Count words in a string",
        "input_schema": {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
        "execute": execute,   # sync or async, receives a dict
    }

Invalid files are skipped with a warning.
"""
from __future__ import annotations

import importlib.util
import inspect
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from deskagent.engine.capabilities import Capability
from deskagent.engine.errors import ValidationError
from deskagent.engine.tool_inputs import model_from_schema

logger = logging.getLogger(__name__)


def validate_tool_definition(tool: Any) -> None:
    """Raise ValidationError unless *tool* is a usable definition."""
    if not isinstance(tool, dict):
        raise ValidationError("tool definition", "TOOL must be a dict")
    name = tool.get("name")
    if not isinstance(name, str) or not name:
        raise ValidationError("tool definition", "missing or invalid 'name'")
    description = tool.get("description")
    if not isinstance(description, str) or not description:
        raise ValidationError("tool definition", f"{name}: missing or invalid 'description'")
    schema = tool.get("input_schema")
    if not isinstance(schema, dict):
        raise ValidationError("tool definition", f"{name}: missing or invalid 'input_schema'")
    if schema.get("type") != "object":
        raise ValidationError("tool definition", f"{name}: input_schema.type must be 'object'")
    if not isinstance(schema.get("properties"), dict):
        raise ValidationError("tool definition", f"{name}: input_schema.properties must be an object")
    if not callable(tool.get("execute")):
        raise ValidationError("tool definition", f"{name}: missing or invalid 'execute'")


def tool_from_definition(tool: dict[str, Any], source: str) -> Capability:
    validate_tool_definition(tool)
    execute_fn = tool["execute"]

    async def execute(payload: BaseModel) -> Any:
        result = execute_fn(payload.model_dump(exclude_none=True))
        if inspect.isawaitable(result):
            result = await result
        return result

    return Capability(
        name=tool["name"],
        description=tool["description"],
        input_model=model_from_schema(tool["name"], tool["input_schema"]),
        execute=execute,
        input_schema=dict(tool["input_schema"]),
        source=source,
    )


def _load_module(path: Path) -> Any:
    spec = importlib.util.spec_from_file_location(f"deskagent_user_tool_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise ValidationError("tool definition", f"cannot load {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def load_custom_tools(tools_dir: Path) -> list[Capability]:
    """Load every valid tool file in *tools_dir*, sorted by file name."""
    tools_dir = tools_dir.expanduser()
    if not tools_dir.is_dir():
        logger.debug("Custom tools directory not found: %s", tools_dir)
        return []

    tools: list[Capability] = []
    for path in sorted(tools_dir.glob("*.py")):
        if path.name.startswith("_") or not path.is_file():
            continue
        try:
            module = _load_module(path)
            definition = getattr(module, "TOOL", None)
            if definition is None:
                raise ValidationError("tool definition", "file does not export TOOL")
            tools.append(tool_from_definition(definition, str(path)))
        except ValidationError as exc:
            logger.warning("Skipping custom tool %s: %s", path.name, exc)
            continue
        except Exception as exc:
            logger.warning("Skipping custom tool %s: failed to import (%s)", path.name, exc)
            continue
        logger.info("Loaded custom tool %s from %s", tools[-1].name, path.name)
    return tools
