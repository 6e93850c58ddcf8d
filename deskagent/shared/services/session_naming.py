"""Conversation titles derived from the first exchange.

A deterministic fallback title is applied immediately; a short
model-generated title can replace it afterwards. Model naming is
best-effort and never raises.
"""
from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)

MAX_FALLBACK_TITLE = 50

NAMING_PROMPT = (
    "Generate a concise, descriptive title (5-10 words max) for this "
    "conversation. Only respond with the title, nothing else.\n\n"
    "User: {user}\n\nAssistant: {assistant}\n\nTitle:"
)


def fallback_title(user_message: str) -> str:
    """First user message, trimmed to 50 characters with an ellipsis."""
    text = " ".join((user_message or "").strip().split())
    if len(text) <= MAX_FALLBACK_TITLE:
        return text
    return text[:MAX_FALLBACK_TITLE] + "..."


def _clean_title(raw: str) -> str:
    title = raw.strip().splitlines()[0] if raw.strip() else ""
    title = title.strip().strip("\"'`").strip()
    if title.lower().startswith("title:"):
        title = title[len("title:"):].strip()
    if len(title) > 60:
        title = title[:57].rstrip() + "..."
    return title


async def generate_conversation_title(
    user_message: str,
    assistant_message: str,
    model_id: str | None = None,
    timeout: float = 15.0,
) -> str | None:
    """Ask the model for a short title. Returns None when unavailable."""
    try:
        from claude_agent_sdk import ClaudeAgentOptions, query
    except ImportError:
        logger.debug("claude_agent_sdk not installed; keeping fallback title")
        return None

    prompt = NAMING_PROMPT.format(
        user=user_message[:500],
        assistant=assistant_message[:500],
    )
    options = ClaudeAgentOptions(
        system_prompt="",
        allowed_tools=[],
        permission_mode="plan",
        max_turns=1,
        model=model_id,
    )

    async def _run() -> str:
        result_text = ""
        async for message in query(prompt=prompt, options=options):
            if hasattr(message, "result") and message.result:
                result_text = message.result
        return result_text

    try:
        raw = await asyncio.wait_for(_run(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.debug("Conversation naming timed out")
        return None
    except Exception:
        logger.debug("Conversation naming failed", exc_info=True)
        return None
    return _clean_title(raw) or None
