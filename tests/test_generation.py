from __future__ import annotations

import asyncio
from types import SimpleNamespace

import anthropic
import httpx
import pytest

from curator.core.errors import GenerationServiceError
from curator.services.generation import GenerationClient


class _Messages:
    def __init__(self, response=None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.response


def _client(messages: _Messages) -> GenerationClient:
    return GenerationClient("key", "test-model", client=SimpleNamespace(messages=messages))


def test_generate_joins_text_blocks_and_reports_usage() -> None:
    messages = _Messages(
        SimpleNamespace(
            content=[
                SimpleNamespace(type="text", text='{"a": '),
                SimpleNamespace(type="tool_use", text="ignored"),
                SimpleNamespace(type="text", text="1}"),
            ],
            usage=SimpleNamespace(input_tokens=10, output_tokens=5),
        )
    )
    result = asyncio.run(_client(messages).generate(system_prompt="sys", user_prompt="user", max_tokens=100))

    assert result.text == '{"a": 1}'
    assert result.total_tokens == 15
    assert messages.calls[0]["model"] == "test-model"
    assert messages.calls[0]["system"] == "sys"
    assert messages.calls[0]["messages"] == [{"role": "user", "content": "user"}]


def test_empty_response_raises() -> None:
    messages = _Messages(SimpleNamespace(content=[], usage=None))
    with pytest.raises(GenerationServiceError):
        asyncio.run(_client(messages).generate(system_prompt="s", user_prompt="u", max_tokens=10))


def test_api_error_is_wrapped() -> None:
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    messages = _Messages(error=anthropic.APIConnectionError(request=request))
    with pytest.raises(GenerationServiceError):
        asyncio.run(_client(messages).generate(system_prompt="s", user_prompt="u", max_tokens=10))
