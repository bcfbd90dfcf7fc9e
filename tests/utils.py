"""Test doubles shared by the unit tests: model client, tokenizer, upstream connection."""

import asyncio
from typing import Any, Optional
from mcp import types

from src.mcpcp.config import ProxyConfig, parse_config


class FakeTokenizer:
    """One token per whitespace-separated word."""

    def encode(self, text: str) -> list[str]:
        return text.split()


class BrokenTokenizer:
    def encode(self, text: str):
        raise RuntimeError("tokenizer exploded")


class FakeLLMClient:
    """
    Records every generate() call. Replies are consumed in order; the last
    reply is repeated once the queue is down to one.
    """

    def __init__(self, replies=None, error: Optional[Exception] = None, delay: float = 0.0):
        self.replies = list(replies or [])
        self.error = error
        self.delay = delay
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def generate(self, prompt, *, model, max_tokens, temperature=None) -> str:
        self.calls.append(
            {"prompt": prompt, "model": model, "max_tokens": max_tokens, "temperature": temperature}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if not self.replies:
            return ""
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]

    async def close(self) -> None:
        self.closed = True


def text_result(*texts: str, is_error: bool = False) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=t) for t in texts],
        isError=is_error,
    )


def make_tool(name: str, properties=None, required=None, description: Optional[str] = None) -> types.Tool:
    schema: dict[str, Any] = {"type": "object", "properties": dict(properties or {})}
    if required is not None:
        schema["required"] = list(required)
    return types.Tool(name=name, description=description or f"{name} tool", inputSchema=schema)


def make_resource(uri: str, name: Optional[str] = None) -> types.Resource:
    return types.Resource(uri=uri, name=name or uri.rsplit("/", 1)[-1])


def make_prompt(name: str) -> types.Prompt:
    return types.Prompt(name=name, description=f"{name} prompt")


class FakeConnection:
    """In-memory upstream implementing the UpstreamConnection protocol."""

    def __init__(self, upstream_id: str, tools=(), resources=(), prompts=()):
        self._id = upstream_id
        self.tools = list(tools)
        self.resources = list(resources)
        self.prompts = list(prompts)
        # tool name -> CallToolResult or Exception
        self.tool_results: dict[str, Any] = {}
        self.list_tools_error: Optional[Exception] = None
        self.connect_error: Optional[Exception] = None
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.resource_reads: list[str] = []
        self.prompt_gets: list[tuple[str, Any]] = []
        self.connected = False
        self.closed = False

    @property
    def id(self) -> str:
        return self._id

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def close(self) -> None:
        self.closed = True
        self.connected = False

    async def list_tools(self) -> list[types.Tool]:
        if self.list_tools_error is not None:
            raise self.list_tools_error
        return list(self.tools)

    async def list_resources(self) -> list[types.Resource]:
        return list(self.resources)

    async def list_prompts(self) -> list[types.Prompt]:
        return list(self.prompts)

    async def call_tool(self, name: str, args: dict[str, Any]) -> types.CallToolResult:
        self.calls.append((name, dict(args)))
        result = self.tool_results.get(name)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return text_result(f"{self._id}:{name}")
        return result

    async def read_resource(self, uri: str) -> types.ReadResourceResult:
        self.resource_reads.append(uri)
        return types.ReadResourceResult(
            contents=[types.TextResourceContents(uri=uri, text=f"{self._id}:{uri}")]
        )

    async def get_prompt(self, name: str, args=None) -> types.GetPromptResult:
        self.prompt_gets.append((name, args))
        return types.GetPromptResult(
            messages=[
                types.PromptMessage(
                    role="user", content=types.TextContent(type="text", text=f"{self._id}:{name}")
                )
            ]
        )


def make_config(**raw: Any) -> ProxyConfig:
    """Build a ProxyConfig from camelCase/snake_case keyword arguments."""
    return parse_config(raw)


def stdio_upstream(upstream_id: str, tools: Optional[dict[str, Any]] = None, **extra: Any) -> dict[str, Any]:
    return {"id": upstream_id, "command": "npx", "args": ["-y", upstream_id], "tools": tools or {}, **extra}


def words(n: int, word: str = "word") -> str:
    return " ".join([word] * n)
