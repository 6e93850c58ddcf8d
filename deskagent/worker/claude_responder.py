"""Responder backed by the Claude Agent SDK.

Wraps claude_agent_sdk.query(). The capability registry is exposed to
the model as an in-process MCP server; agent definitions are passed
as SDK subagents. The SDK session id is kept per conversation so a
loaded conversation resumes its own context.
"""
from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from deskagent.engine.agent_definitions import AgentCatalog
from deskagent.engine.capabilities import CapabilityRegistry
from deskagent.engine.errors import DeskAgentError, QueryError
from deskagent.engine.codec import WorkerRequest
from deskagent.worker.runtime import QueryContext, Responder

logger = logging.getLogger(__name__)

MCP_SERVER_NAME = "deskagent-tools"
_MCP_PREFIX = f"mcp__{MCP_SERVER_NAME}__"


def _text(text: str) -> dict[str, Any]:
    """Format a successful tool response."""
    return {"content": [{"type": "text", "text": text}]}


def _error(text: str) -> dict[str, Any]:
    return {
        "content": [{"type": "text", "text": f"ERROR: {text}"}],
        "is_error": True,
    }


def _tool_result_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
            else:
                parts.append(str(item))
        return "\n".join(parts)
    return str(content)


def build_mcp_server(registry: CapabilityRegistry) -> dict[str, Any]:
    """Wrap every registry tool in an SDK ``@tool`` handler."""
    from claude_agent_sdk import create_sdk_mcp_server, tool

    sdk_tools = []
    for capability in registry:
        name = capability.name

        async def handler(args: dict[str, Any], _name: str = name) -> dict[str, Any]:
            try:
                result = await registry.invoke(_name, args)
            except DeskAgentError as exc:
                return _error(str(exc))
            if isinstance(result, str):
                return _text(result)
            return _text(json.dumps(result, ensure_ascii=False, default=str))

        sdk_tools.append(tool(name, capability.description, capability.schema())(handler))

    server_config = create_sdk_mcp_server(MCP_SERVER_NAME, tools=sdk_tools)
    return {MCP_SERVER_NAME: server_config}


class ClaudeResponder(Responder):
    """Streams replies from claude_agent_sdk.query()."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        agents: AgentCatalog,
        model_id: str | None = None,
        max_turns: int = 10,
        cwd: str | None = None,
    ) -> None:
        self._registry = registry
        self._agents = agents
        self._model_id = model_id
        self._max_turns = max_turns
        self._cwd = cwd
        self._session_id: str | None = None
        self._sessions: dict[str, str] = {}
        self._mcp_servers: dict[str, Any] | None = None

    def _options(self) -> Any:
        from claude_agent_sdk import AgentDefinition, ClaudeAgentOptions

        if self._mcp_servers is None:
            self._mcp_servers = build_mcp_server(self._registry)
        options_kwargs: dict[str, Any] = {
            "mcp_servers": self._mcp_servers,
            "allowed_tools": [_MCP_PREFIX + name for name in self._registry.names()],
            "max_turns": self._max_turns,
            "include_partial_messages": True,
            "agents": {
                name: AgentDefinition(**definition.to_sdk_fields())
                for name, definition in self._agents.items()
            },
        }
        if self._model_id:
            options_kwargs["model"] = self._model_id
        if self._session_id:
            options_kwargs["resume"] = self._session_id
        if self._cwd:
            options_kwargs["cwd"] = self._cwd
        return ClaudeAgentOptions(**options_kwargs)

    @staticmethod
    async def _prompt_stream(request: WorkerRequest) -> AsyncIterator[dict[str, Any]]:
        content: list[dict[str, Any]] = []
        if request.message:
            content.append({"type": "text", "text": request.message})
        for image in request.images:
            content.append({
                "type": "image",
                "source": {"type": "base64", "media_type": image.mime_type, "data": image.data},
            })
        yield {"type": "user", "message": {"role": "user", "content": content}}

    async def respond(self, request: WorkerRequest, ctx: QueryContext) -> dict[str, Any] | None:
        try:
            from claude_agent_sdk import query
        except ImportError as exc:
            raise QueryError(request.id, "claude_agent_sdk not installed") from exc

        options = self._options()
        prompt: Any = self._prompt_stream(request) if request.images else request.message
        streamed_text = False
        usage: dict[str, Any] | None = None

        async for message in query(prompt=prompt, options=options):
            session_id = getattr(message, "session_id", None)
            if session_id and session_id != self._session_id:
                self._session_id = session_id
                logger.info("SDK session %s", session_id)

            event = getattr(message, "event", None)
            if isinstance(event, dict):
                delta = event.get("delta") or {}
                if event.get("type") == "content_block_delta" and delta.get("type") == "text_delta":
                    ctx.token(delta.get("text", ""))
                    streamed_text = True
                continue

            if hasattr(message, "content") and isinstance(message.content, list):
                for block in message.content:
                    if hasattr(block, "tool_use_id"):
                        is_error = bool(getattr(block, "is_error", False))
                        text = _tool_result_text(getattr(block, "content", None))
                        ctx.tool_result(
                            block.tool_use_id,
                            result=None if is_error else text,
                            error=(text or "Tool failed") if is_error else None,
                        )
                    elif hasattr(block, "name") and hasattr(block, "input"):
                        name = str(block.name)
                        if name.startswith(_MCP_PREFIX):
                            name = name[len(_MCP_PREFIX):]
                        ctx.tool_use(getattr(block, "id", ""), name, block.input)
                    elif hasattr(block, "text") and not streamed_text:
                        ctx.token(block.text)
                # Partial text of the next assistant turn starts fresh.
                streamed_text = False
                continue

            if hasattr(message, "result") or hasattr(message, "is_error"):
                if getattr(message, "is_error", False):
                    raise QueryError(request.id, str(getattr(message, "result", None) or "Unknown error"))
                usage = {
                    "num_turns": getattr(message, "num_turns", None),
                    "total_cost_usd": getattr(message, "total_cost_usd", None),
                    "usage": getattr(message, "usage", None),
                }

        if request.conversation_id and self._session_id:
            self._sessions[request.conversation_id] = self._session_id
        return usage

    async def new_conversation(self) -> None:
        logger.info("Starting a new SDK session")
        self._session_id = None

    async def load_conversation(self, conversation_id: str) -> None:
        self._session_id = self._sessions.get(conversation_id)
        logger.info(
            "Loaded conversation %s (session=%s)", conversation_id, self._session_id or "new",
        )
