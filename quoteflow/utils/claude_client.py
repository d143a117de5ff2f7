"""Claude Messages API — structured extraction through a forced tool call.

The analyzer is the only caller: it needs one JSON object that matches a
schema, so every request declares a single tool and forces the model to
call it. The tool input is the result.

Model tiers:
  - fast: Haiku, the default for supplier replies
  - smart: Sonnet, for long or messy replies

Usage:
    from quoteflow.utils.claude_client import claude_structured
    result = await claude_structured(prompt, QUOTE_SCHEMA, system=SYSTEM_PROMPT)
"""

import json
from typing import Any

import httpx
from loguru import logger

from ..config import settings
from ..http_client import http

API_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"
TOOL_NAME = "structured_output"

MODELS = {
    "fast": "claude-haiku-4-5-20251001",
    "smart": "claude-sonnet-4-5-20250929",
}


def _headers() -> dict:
    return {
        "x-api-key": settings.anthropic_api_key,
        "anthropic-version": API_VERSION,
        "content-type": "application/json",
    }


def build_request(prompt: str, schema: dict, *, system: str = "", model_tier: str = "fast",
                  max_tokens: int = 1024) -> dict[str, Any]:
    """Request body with the schema as the single, forced tool."""
    body: dict[str, Any] = {
        "model": MODELS.get(model_tier, MODELS["fast"]),
        "max_tokens": max_tokens,
        "messages": [{"role": "user", "content": prompt}],
        "tools": [{
            "name": TOOL_NAME,
            "description": "Return structured data matching the required schema.",
            "input_schema": schema,
        }],
        "tool_choice": {"type": "tool", "name": TOOL_NAME},
    }
    if system:
        # System prompt is identical across replies, so mark it cacheable
        body["system"] = [{"type": "text", "text": system, "cache_control": {"type": "ephemeral"}}]
    return body


def tool_input(data: dict) -> dict | None:
    for block in data.get("content") or []:
        if block.get("type") == "tool_use" and block.get("name") == TOOL_NAME:
            return block.get("input")
    return None


async def claude_structured(
    prompt: str,
    schema: dict,
    *,
    system: str = "",
    model_tier: str = "fast",
    max_tokens: int = 1024,
    timeout: float = 30,
    client: httpx.AsyncClient | None = None,
) -> dict | None:
    """Schema-conforming dict, or None when the key is missing or the call fails."""
    if not settings.anthropic_api_key:
        return None

    body = build_request(prompt, schema, system=system, model_tier=model_tier, max_tokens=max_tokens)
    try:
        resp = await (client or http).post(API_URL, headers=_headers(), json=body, timeout=timeout)
    except httpx.HTTPError as e:
        logger.warning("Claude call failed: {}", e)
        return None

    if resp.status_code != 200:
        logger.warning("Claude API {}: {}", resp.status_code, resp.text[:200])
        return None

    try:
        data = resp.json()
    except ValueError as e:
        logger.warning("Claude returned invalid JSON: {}", e)
        return None

    usage = data.get("usage") or {}
    logger.debug(
        "Claude {} used {} in / {} out tokens",
        body["model"], usage.get("input_tokens"), usage.get("output_tokens"),
    )
    result = tool_input(data)
    if result is None:
        logger.warning("Claude response has no {} tool call", TOOL_NAME)
    return result


def safe_json_parse(text: str) -> dict | list | None:
    """Parse JSON that may be wrapped in markdown fences or preamble."""
    if not text:
        return None

    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = "\n".join(
            line for line in cleaned.split("\n") if not line.strip().startswith("```")
        ).strip()

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    for start_char, end_char in (("[", "]"), ("{", "}")):
        start, end = cleaned.find(start_char), cleaned.rfind(end_char)
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start : end + 1])
            except json.JSONDecodeError:
                continue
    return None
