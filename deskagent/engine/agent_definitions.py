"""Named agent configurations (prompt + tool set + model).

Built-in agents are always present. User definitions are ``*.json``,
``*.yaml`` or ``*.yml`` files in the agents directory; a user agent
with a built-in's name replaces it. Invalid files are skipped with a
warning. The merged result is an immutable snapshot.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

logger = logging.getLogger(__name__)

AgentModel = Literal["sonnet", "opus", "haiku", "inherit"]

_DEFINITION_SUFFIXES = (".json", ".yaml", ".yml")


class AgentDefinition(BaseModel):
    """One named agent."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    prompt: str = Field(min_length=1)
    tools: tuple[str, ...] | None = None
    model: AgentModel | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    source: str = "builtin"

    @field_validator("tools", mode="before")
    @classmethod
    def _tools_must_be_list(cls, value: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, (list, tuple)):
            raise ValueError("tools must be an array")
        return tuple(value)

    def to_sdk_fields(self) -> dict[str, Any]:
        """Keyword arguments for ``claude_agent_sdk.AgentDefinition``."""
        fields: dict[str, Any] = {
            "description": self.description,
            "prompt": self.prompt,
        }
        if self.tools is not None:
            fields["tools"] = list(self.tools)
        if self.model is not None:
            fields["model"] = self.model
        return fields


BUILTIN_AGENTS: tuple[AgentDefinition, ...] = (
    AgentDefinition(
        name="researcher",
        description=(
            "Use when the user needs deep research on a topic using web search "
            "and analysis. Finds, synthesizes and presents information from "
            "multiple sources."
        ),
        tools=("WebSearch", "WebFetch", "read_file", "write_file"),
        prompt=(
            "You are a research specialist.\n\n"
            "Break complex questions into searchable parts, search for relevant "
            "sources, read the promising ones in depth, cross-reference what you "
            "find and present it in a clear, organized form. Always cite your "
            "sources and say where they are weak."
        ),
        model="sonnet",
    ),
    AgentDefinition(
        name="coder",
        description=(
            "Use for writing, refactoring and debugging code and for "
            "implementing features."
        ),
        tools=("read_file", "write_file", "search_files", "list_files", "run_shell_command"),
        prompt=(
            "You are a coding specialist.\n\n"
            "Read the existing code first and follow its style and conventions. "
            "Write clean code with proper error handling and test your changes "
            "when possible. Prefer readability over cleverness."
        ),
        model="sonnet",
    ),
    AgentDefinition(
        name="file-ops",
        description=(
            "Use for batch file operations, organization, renaming and "
            "filesystem management."
        ),
        tools=("list_files", "read_file", "write_file", "search_files", "run_shell_command"),
        prompt=(
            "You are a file operations specialist.\n\n"
            "Confirm destructive operations before running them, summarize what "
            "will change, handle missing files and permission errors gracefully "
            "and report results with counts and examples."
        ),
        model="haiku",
    ),
    AgentDefinition(
        name="analyst",
        description=(
            "Use for data analysis, log parsing, pattern detection and "
            "generating insights from structured or unstructured data."
        ),
        tools=("read_file", "write_file", "search_files", "list_files", "run_shell_command"),
        prompt=(
            "You are a data analyst.\n\n"
            "Understand the structure of the data first, identify the key "
            "metrics, look for anomalies and outliers and present actionable "
            "findings in a well-formatted report."
        ),
        model="sonnet",
    ),
)


class AgentCatalog(Mapping[str, AgentDefinition]):
    """Immutable name -> AgentDefinition snapshot."""

    def __init__(self, definitions: list[AgentDefinition]) -> None:
        merged: dict[str, AgentDefinition] = {}
        for definition in definitions:
            if definition.name in merged:
                logger.info(
                    "Agent %s from %s overrides %s",
                    definition.name, definition.source, merged[definition.name].source,
                )
            merged[definition.name] = definition
        self._definitions = MappingProxyType(merged)

    def __getitem__(self, name: str) -> AgentDefinition:
        return self._definitions[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._definitions)

    def __len__(self) -> int:
        return len(self._definitions)


def parse_agent_definition(raw: Any, source: str) -> AgentDefinition:
    """Validate one raw definition. Raises ValidationError."""
    if not isinstance(raw, dict):
        raise ValidationError("agent definition", f"{source}: not an object")
    try:
        return AgentDefinition.model_validate({**raw, "source": source})
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'definition'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ValidationError("agent definition", f"{source}: {problems}") from exc


def _read_definition_file(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        return json.loads(text)
    return yaml.safe_load(text)


def load_user_agents(agents_dir: Path) -> list[AgentDefinition]:
    agents_dir = agents_dir.expanduser()
    if not agents_dir.is_dir():
        logger.debug("No custom agents directory at %s", agents_dir)
        return []
    files = sorted(
        p for p in agents_dir.iterdir()
        if p.is_file() and p.suffix in _DEFINITION_SUFFIXES
    )
    logger.debug("Found %d agent definition files in %s", len(files), agents_dir)
    definitions: list[AgentDefinition] = []
    for path in files:
        try:
            raw = _read_definition_file(path)
            definitions.append(parse_agent_definition(raw, path.name))
        except (OSError, json.JSONDecodeError, yaml.YAMLError) as exc:
            logger.warning("Failed to read agent definition %s: %s", path.name, exc)
            continue
        except ValidationError as exc:
            logger.warning("%s", exc)
            continue
        logger.info("Loaded custom agent %s from %s", definitions[-1].name, path.name)
    return definitions


def load_agent_catalog(agents_dir: str | Path | None = None) -> AgentCatalog:
    """Built-in agents merged with user definitions (user wins)."""
    definitions = list(BUILTIN_AGENTS)
    if agents_dir:
        definitions.extend(load_user_agents(Path(agents_dir)))
    catalog = AgentCatalog(definitions)
    logger.info("Agents available: %s", ", ".join(catalog))
    return catalog
