from __future__ import annotations
from typing import Optional, Protocol, runtime_checkable
from openai import AsyncOpenAI
from src.utils.logger import get_logger


@runtime_checkable
class LLMClient(Protocol):
    """Anything that can turn a prompt into generated text."""

    async def generate(
        self,
        prompt: str,
        *,
        model: str,
        max_tokens: int,
        temperature: Optional[float] = None,
    ) -> str: ...

    async def close(self) -> None: ...


class OpenAICompatibleClient:
    """
    Chat-completions client for any OpenAI-compatible endpoint
    (OpenAI, vLLM, llama.cpp server, Ollama, LM Studio).

    Timeouts are enforced by the callers, which wrap ``generate`` in
    ``asyncio.wait_for``; the SDK's own retries are disabled so a slow
    endpoint fails once instead of several times.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        logger=None,
    ):
        self.logger = logger or get_logger("LLMClient")
        client_kwargs = {
            "api_key": api_key or "not-needed",
            "max_retries": 0,
        }
        if base_url:
            client_kwargs["base_url"] = base_url
        if timeout is not None:
            client_kwargs["timeout"] = timeout
        self._client = AsyncOpenAI(**client_kwargs)

    async def generate(
        self,
        prompt: str,
        *,
        model: str,
        max_tokens: int,
        temperature: Optional[float] = None,
    ) -> str:
        request = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
        }
        if temperature is not None:
            request["temperature"] = temperature
        response = await self._client.chat.completions.create(**request)
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def close(self) -> None:
        await self._client.close()
