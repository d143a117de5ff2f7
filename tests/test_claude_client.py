"""Tests for utils/claude_client.py — request shape and response handling."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from quoteflow.utils.claude_client import (
    MODELS,
    build_request,
    claude_structured,
    safe_json_parse,
    tool_input,
)

SCHEMA = {"type": "object", "properties": {"confidence": {"type": "number"}}}


def _resp(status=200, data=None):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = data or {}
    resp.text = "err"
    return resp


def test_build_request_forces_tool():
    body = build_request("hi", SCHEMA, system="sys", model_tier="smart")
    assert body["model"] == MODELS["smart"]
    assert body["tool_choice"] == {"type": "tool", "name": "structured_output"}
    assert body["tools"][0]["input_schema"] is SCHEMA
    assert body["system"][0]["cache_control"] == {"type": "ephemeral"}


def test_unknown_tier_falls_back_to_fast():
    assert build_request("hi", SCHEMA, model_tier="huge")["model"] == MODELS["fast"]


def test_tool_input_picks_tool_block():
    data = {"content": [
        {"type": "text", "text": "thinking"},
        {"type": "tool_use", "name": "structured_output", "input": {"confidence": 0.7}},
    ]}
    assert tool_input(data) == {"confidence": 0.7}
    assert tool_input({"content": []}) is None


@pytest.mark.asyncio
async def test_claude_structured_returns_tool_input():
    client = MagicMock()
    client.post = AsyncMock(return_value=_resp(200, {
        "content": [{"type": "tool_use", "name": "structured_output", "input": {"confidence": 1}}],
    }))
    with patch("quoteflow.utils.claude_client.settings") as s:
        s.anthropic_api_key = "k"
        assert await claude_structured("p", SCHEMA, client=client) == {"confidence": 1}
    assert client.post.await_args.kwargs["headers"]["x-api-key"] == "k"


@pytest.mark.asyncio
async def test_claude_structured_failures_return_none():
    client = MagicMock()
    client.post = AsyncMock(side_effect=[_resp(529), httpx.ReadTimeout("slow")])
    with patch("quoteflow.utils.claude_client.settings") as s:
        s.anthropic_api_key = "k"
        assert await claude_structured("p", SCHEMA, client=client) is None
        assert await claude_structured("p", SCHEMA, client=client) is None


@pytest.mark.asyncio
async def test_no_key_skips_call():
    client = MagicMock()
    client.post = AsyncMock()
    with patch("quoteflow.utils.claude_client.settings") as s:
        s.anthropic_api_key = ""
        assert await claude_structured("p", SCHEMA, client=client) is None
    client.post.assert_not_awaited()


@pytest.mark.parametrize("text,expected", [
    ('{"a": 1}', {"a": 1}),
    ('```json\n[{"name": "x"}]\n```', [{"name": "x"}]),
    ('Here you go: [{"name": "x"}] thanks', [{"name": "x"}]),
    ("nothing here", None),
    ("", None),
])
def test_safe_json_parse(text, expected):
    assert safe_json_parse(text) == expected
