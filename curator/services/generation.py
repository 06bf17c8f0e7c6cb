from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import anthropic
from anthropic import AsyncAnthropic

from curator.core.errors import GenerationServiceError


@dataclass(slots=True)
class GenerationResult:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class Generator(Protocol):
    async def generate(self, *, system_prompt: str, user_prompt: str, max_tokens: int) -> GenerationResult:
        ...


class GenerationClient:
    """Generation service client backed by the Anthropic messages API."""

    def __init__(self, api_key: str | None, model: str, *, client: AsyncAnthropic | None = None) -> None:
        self.model = model
        self._api_key = api_key
        self._client = client

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def generate(self, *, system_prompt: str, user_prompt: str, max_tokens: int) -> GenerationResult:
        try:
            message = await self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
            )
        except anthropic.APIError as exc:
            raise GenerationServiceError(f"generation request failed: {exc}") from exc

        text = "".join(block.text for block in message.content if getattr(block, "type", None) == "text")
        if not text.strip():
            raise GenerationServiceError("generation response has no text content")
        usage = message.usage
        return GenerationResult(
            text=text,
            input_tokens=usage.input_tokens if usage else 0,
            output_tokens=usage.output_tokens if usage else 0,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
