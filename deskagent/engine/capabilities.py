"""Capability registry: named, schema-validated tools.

Built-in tools are merged with user tools (user wins on a name clash)
into one immutable snapshot. Every invocation is validated against
the tool's pydantic input model before dispatch.
"""
from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .config import SessionConfig
from .errors import DeskAgentError, ToolExecutionError, ValidationError

logger = logging.getLogger(__name__)

# async def execute(payload) -> JSON-serializable result
Executor = Callable[[BaseModel], Awaitable[Any] | Any]


@dataclass(frozen=True)
class Capability:
    name: str
    description: str
    input_model: type[BaseModel]
    execute: Executor = field(repr=False)
    input_schema: dict[str, Any] = field(default_factory=dict, repr=False)
    source: str = "builtin"

    def schema(self) -> dict[str, Any]:
        """JSON schema advertised to the model."""
        if self.input_schema:
            return self.input_schema
        schema = self.input_model.model_json_schema(by_alias=True)
        schema.pop("title", None)
        schema.setdefault("properties", {})
        return schema


class CapabilityRegistry:
    """Immutable name -> Capability snapshot."""

    def __init__(self, capabilities: Iterable[Capability] = ()) -> None:
        merged: dict[str, Capability] = {}
        for capability in capabilities:
            previous = merged.get(capability.name)
            if previous is not None:
                logger.info(
                    "Tool %s from %s overrides %s",
                    capability.name, capability.source, previous.source,
                )
            merged[capability.name] = capability
        self._capabilities = MappingProxyType(merged)

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __iter__(self) -> Iterator[Capability]:
        return iter(self._capabilities.values())

    def __len__(self) -> int:
        return len(self._capabilities)

    def names(self) -> list[str]:
        return list(self._capabilities)

    def get(self, name: str) -> Capability | None:
        return self._capabilities.get(name)

    def validate(self, name: str, raw_input: Any) -> BaseModel:
        capability = self._capabilities.get(name)
        if capability is None:
            raise ValidationError("tool", f"unknown tool {name!r}")
        if raw_input is None:
            raw_input = {}
        try:
            return capability.input_model.model_validate(raw_input)
        except PydanticValidationError as exc:
            raise ValidationError(f"input for {name}", str(exc)) from exc

    async def invoke(self, name: str, raw_input: Any) -> Any:
        """Validate and execute one tool call.

        Raises ValidationError for bad input and ToolExecutionError for
        failures inside the tool.
        """
        payload = self.validate(name, raw_input)
        capability = self._capabilities[name]
        logger.debug("Invoking tool %s", name)
        try:
            result = capability.execute(payload)
            if inspect.isawaitable(result):
                result = await result
        except DeskAgentError:
            raise
        except Exception as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            raise ToolExecutionError(name, str(exc) or type(exc).__name__) from exc
        return result


def load_capabilities(config: SessionConfig) -> CapabilityRegistry:
    """Built-in tools plus user tools from ``config.tools_dir``."""
    from .tools.custom import load_custom_tools
    from .tools.filesystem import Sandbox, filesystem_tools
    from .tools.system import system_tools

    sandbox = Sandbox(Path(config.allowed_root_dir), max_file_size_mb=config.max_file_size_mb)
    capabilities: list[Capability] = []
    capabilities.extend(filesystem_tools(sandbox))
    capabilities.extend(system_tools(sandbox, timeout_seconds=config.shell_timeout_seconds))
    if config.tools_dir:
        capabilities.extend(load_custom_tools(Path(config.tools_dir)))
    registry = CapabilityRegistry(capabilities)
    logger.info("Loaded %d tools: %s", len(registry), ", ".join(registry.names()))
    return registry
