"""Agent catalog: built-ins, user overrides, invalid definitions."""

from __future__ import annotations

import json

import pytest

from deskagent.engine.agent_definitions import (
    BUILTIN_AGENTS,
    AgentDefinition,
    load_agent_catalog,
    parse_agent_definition,
)
from deskagent.engine.errors import ValidationError


@pytest.fixture
def agents_dir(tmp_path):
    path = tmp_path / "agents"
    path.mkdir()
    return path


def test_builtin_agents_present_without_user_dir():
    catalog = load_agent_catalog(None)
    assert set(catalog) == {a.name for a in BUILTIN_AGENTS}
    assert {"researcher", "coder", "file-ops", "analyst"} <= set(catalog)
    assert catalog["coder"].source == "builtin"


def test_missing_directory_yields_builtins(tmp_path):
    catalog = load_agent_catalog(tmp_path / "nowhere")
    assert len(catalog) == len(BUILTIN_AGENTS)


def test_user_json_definition_overrides_builtin(agents_dir):
    (agents_dir / "coder.json").write_text(json.dumps({
        "name": "coder",
        "description": "House coding style",
        "prompt": "Write Go only.",
        "tools": ["read_file"],
        "model": "opus",
    }), encoding="utf-8")
    catalog = load_agent_catalog(agents_dir)
    coder = catalog["coder"]
    assert coder.description == "House coding style"
    assert coder.tools == ("read_file",)
    assert coder.source == "coder.json"
    assert len(catalog) == len(BUILTIN_AGENTS)


def test_user_yaml_definition_is_added(agents_dir):
    (agents_dir / "reviewer.yaml").write_text(
        "name: reviewer\n"
        "description: Reviews pull requests\n"
        "prompt: Be thorough.\n"
        "tools: [read_file, search_files]\n",
        encoding="utf-8",
    )
    catalog = load_agent_catalog(agents_dir)
    assert catalog["reviewer"].tools == ("read_file", "search_files")
    assert catalog["reviewer"].model is None


def test_invalid_files_are_skipped(agents_dir):
    (agents_dir / "tools_not_list.json").write_text(json.dumps({
        "name": "bad1", "description": "d", "prompt": "p", "tools": "read_file",
    }), encoding="utf-8")
    (agents_dir / "bad_model.json").write_text(json.dumps({
        "name": "bad2", "description": "d", "prompt": "p", "model": "gpt",
    }), encoding="utf-8")
    (agents_dir / "no_prompt.yaml").write_text("name: bad3\ndescription: d\n", encoding="utf-8")
    (agents_dir / "broken.json").write_text("{not json", encoding="utf-8")
    (agents_dir / "notes.txt").write_text("ignored", encoding="utf-8")

    catalog = load_agent_catalog(agents_dir)
    assert not {"bad1", "bad2", "bad3"} & set(catalog)
    assert len(catalog) == len(BUILTIN_AGENTS)


def test_parse_agent_definition_reports_fields():
    with pytest.raises(ValidationError) as exc_info:
        parse_agent_definition({"name": "x", "description": "d"}, "x.json")
    assert "prompt" in str(exc_info.value)
    with pytest.raises(ValidationError):
        parse_agent_definition(["not", "an", "object"], "list.json")


def test_catalog_and_definitions_are_immutable():
    catalog = load_agent_catalog(None)
    with pytest.raises(TypeError):
        catalog["new"] = catalog["coder"]  # type: ignore[index]
    with pytest.raises(Exception):
        catalog["coder"].prompt = "changed"  # type: ignore[misc]


def test_to_sdk_fields_omits_unset_values():
    definition = AgentDefinition(name="plain", description="d", prompt="p")
    assert definition.to_sdk_fields() == {"description": "d", "prompt": "p"}
    coder = load_agent_catalog(None)["coder"]
    fields = coder.to_sdk_fields()
    assert fields["model"] == "sonnet"
    assert isinstance(fields["tools"], list)
