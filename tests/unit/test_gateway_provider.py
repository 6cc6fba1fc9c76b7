"""Tests for the gateway model caller using httpx.MockTransport."""

from __future__ import annotations

import json

import httpx
import pytest

from stepiq.core.exceptions import ModelCallError
from stepiq.model_providers.gateway_provider import GatewayModelCaller
from stepiq.models.llm import ModelRequest


def _caller(handler) -> GatewayModelCaller:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GatewayModelCaller("http://gateway:4000/", client=client)


def _completion(content: str) -> dict:
    return {
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 8, "total_tokens": 20},
    }


async def test_posts_chat_completion_with_user_key():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_completion("hello"), headers={"x-litellm-response-cost": "0.0125"})

    caller = _caller(handler)
    response = await caller.call_model(
        ModelRequest(
            model="claude-sonnet-4-20250514",
            prompt="Say hello",
            system="Be brief",
            temperature=0.2,
            output_format="json",
            api_keys={"anthropic": "sk-ant-user", "openai": "sk-openai-user"},
        )
    )
    await caller.aclose()

    body = json.loads(seen[0].content)
    assert str(seen[0].url) == "http://gateway:4000/chat/completions"
    assert body["messages"] == [
        {"role": "system", "content": "Be brief"},
        {"role": "user", "content": "Say hello"},
    ]
    assert body["api_key"] == "sk-ant-user"
    assert body["response_format"] == {"type": "json_object"}
    assert "max_tokens" not in body
    assert response.output == "hello"
    assert (response.input_tokens, response.output_tokens) == (12, 8)
    assert response.cost_cents == pytest.approx(1.25)


async def test_error_status_raises_without_body():
    caller = _caller(lambda request: httpx.Response(401, text="bad key sk-leak"))
    with pytest.raises(ModelCallError) as exc_info:
        await caller.call_model(ModelRequest(model="gpt-5.2", prompt="hi"))
    assert "401" in str(exc_info.value)
    assert "sk-leak" not in str(exc_info.value)


async def test_malformed_completion_raises():
    caller = _caller(lambda request: httpx.Response(200, json={"choices": []}))
    with pytest.raises(ModelCallError, match="Malformed"):
        await caller.call_model(ModelRequest(model="gpt-5.2", prompt="hi"))
