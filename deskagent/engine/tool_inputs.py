"""Typed tool-input payloads.

Known capabilities get a pydantic model each; anything else decodes
to ``GenericToolInput``, a validated string-keyed mapping. The same
models are used for strict validation before dispatch in the
capability registry and for lenient decoding of ``tool_use`` frames.
"""
from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, create_model
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)


class ToolInput(BaseModel):
    """Base for all tool inputs."""

    model_config = ConfigDict(extra="forbid")


class ListFilesInput(ToolInput):
    path: str = Field(description='Relative path from workspace root (e.g. "src")')


class ReadFileInput(ToolInput):
    path: str = Field(description='Relative path to the file (e.g. "src/index.ts")')


class WriteFileInput(ToolInput):
    path: str = Field(description="Relative path to the file")
    content: str = Field(description="The content to write to the file")


class SearchFilesInput(ToolInput):
    pattern: str = Field(description='Glob pattern (e.g. "**/*.py")')
    max_results: int = Field(
        default=100,
        ge=1,
        alias="maxResults",
        description="Maximum number of results to return",
    )

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class RunShellCommandInput(ToolInput):
    command: str = Field(description="The command to run (must be whitelisted)")
    args: list[str] = Field(default_factory=list, description="Command arguments")


class GetSystemInfoInput(ToolInput):
    pass


class GenericToolInput(BaseModel):
    """Fallback payload for tools without a dedicated model."""

    model_config = ConfigDict(extra="allow")


KNOWN_TOOL_INPUTS: dict[str, type[ToolInput]] = {
    "list_files": ListFilesInput,
    "read_file": ReadFileInput,
    "write_file": WriteFileInput,
    "search_files": SearchFilesInput,
    "run_shell_command": RunShellCommandInput,
    "get_system_info": GetSystemInfoInput,
}


def decode_tool_input(tool_name: str, raw: Any) -> BaseModel:
    """Decode a wire payload leniently.

    Known tools get their typed model when the payload fits; anything
    that does not validate is kept as a ``GenericToolInput`` so the
    transcript still shows what the worker sent.
    """
    if not isinstance(raw, dict):
        raw = {} if raw is None else {"value": raw}
    model = KNOWN_TOOL_INPUTS.get(tool_name)
    if model is not None:
        try:
            return model.model_validate(raw)
        except PydanticValidationError as exc:
            logger.debug(
                "tool_use input for %s does not match its model (%d errors); "
                "keeping generic payload",
                tool_name, exc.error_count(),
            )
    return GenericToolInput.model_validate(raw)


def dump_tool_input(payload: BaseModel | dict | None) -> dict[str, Any]:
    """Plain JSON-ready dict for a decoded payload."""
    if payload is None:
        return {}
    if isinstance(payload, BaseModel):
        return payload.model_dump(by_alias=True, exclude_none=True)
    return dict(payload)


_JSON_TYPES: dict[str, type] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
    "array": list,
    "object": dict,
}


def model_from_schema(name: str, schema: dict[str, Any]) -> type[BaseModel]:
    """Build a pydantic model from a JSON-schema-like ``input_schema``.

    Used for user-defined tools that ship a schema instead of a model.
    Only top-level ``properties``/``required`` are interpreted.
    """
    properties = schema.get("properties") or {}
    required = set(schema.get("required") or [])
    fields: dict[str, Any] = {}
    for prop_name, prop in properties.items():
        py_type = _JSON_TYPES.get((prop or {}).get("type", ""), Any)
        if prop_name in required:
            fields[prop_name] = (py_type, ...)
        else:
            fields[prop_name] = (py_type | None if py_type is not Any else Any, None)
    model_name = "".join(part.title() for part in name.replace("-", "_").split("_")) + "Input"
    return create_model(model_name, __base__=GenericToolInput, **fields)
