from __future__ import annotations
import asyncio
import os
from contextlib import AsyncExitStack
from typing import Any, Optional, Protocol, runtime_checkable
import httpx
from mcp import types
from mcp.client.session import ClientSession
from mcp.client.sse import sse_client
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.client.streamable_http import streamable_http_client
from src.mcpcp.config import UpstreamServerConfig
from src.mcpcp.constants import CLIENT_NAME, DEFAULT_CONNECTION_TIMEOUT_SECONDS, VERSION
from src.utils.logger import get_logger

# Default allowlist for command execution
DEFAULT_ALLOWED_COMMANDS = {"node", "npx", "uvx", "python", "python3", "uv", "docker", "deno", "bunx"}

# Env vars that cannot be overridden by upstream config
PROTECTED_ENV_VARS = {"PATH", "LD_PRELOAD", "LD_LIBRARY_PATH", "HOME", "USER", "PYTHONPATH", "PYTHONHOME"}


@runtime_checkable
class UpstreamConnection(Protocol):
    """What the Aggregator and Router need from one upstream server."""

    @property
    def id(self) -> str: ...

    async def call_tool(self, name: str, args: dict[str, Any]) -> types.CallToolResult: ...

    async def read_resource(self, uri: str) -> types.ReadResourceResult: ...

    async def get_prompt(
        self, name: str, args: Optional[dict[str, str]] = None
    ) -> types.GetPromptResult: ...

    async def list_tools(self) -> list[types.Tool]: ...

    async def list_resources(self) -> list[types.Resource]: ...

    async def list_prompts(self) -> list[types.Prompt]: ...


def get_allowed_commands() -> set[str]:
    """Return the set of allowed commands, from env var or default."""
    env_val = os.environ.get("MCPCP_ALLOWED_COMMANDS", "")
    if env_val.strip():
        return {cmd.strip() for cmd in env_val.split(",") if cmd.strip()}
    return DEFAULT_ALLOWED_COMMANDS


def validate_command(command: str) -> None:
    """Raise ValueError if command is not in the allowed list."""
    cmd_name = os.path.basename(command)
    allowed = get_allowed_commands()
    if cmd_name not in allowed:
        raise ValueError(
            f"Command '{command}' is not in the allowed commands list. "
            f"Allowed: {sorted(allowed)}. "
            f"Set MCPCP_ALLOWED_COMMANDS to override."
        )


def filter_env(env: dict[str, str]) -> dict[str, str]:
    """Remove protected env vars from the upstream-provided env dict."""
    return {k: v for k, v in env.items() if k not in PROTECTED_ENV_VARS}


class UpstreamClient:
    """
    A long-lived MCP client session to one upstream server.

    Each client owns its own AsyncExitStack so a crashed upstream cannot tear
    down the others. ``connect`` and ``close`` must run in the same task for
    the SSE and streamable HTTP transports (anyio cancel scopes).
    """

    def __init__(
        self,
        config: UpstreamServerConfig,
        connection_timeout: float = DEFAULT_CONNECTION_TIMEOUT_SECONDS,
        logger=None,
    ):
        self.config = config
        self.connection_timeout = connection_timeout
        self.logger = logger or get_logger(f"Upstream.{config.id}")
        self.session: Optional[ClientSession] = None
        self.capabilities: Optional[types.ServerCapabilities] = None
        self._stack: Optional[AsyncExitStack] = None

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def connected(self) -> bool:
        return self.session is not None

    async def connect(self) -> None:
        stack = AsyncExitStack()
        await stack.__aenter__()
        try:
            read, write = await self._open_transport(stack)
            session = await stack.enter_async_context(
                ClientSession(
                    read,
                    write,
                    client_info=types.Implementation(name=CLIENT_NAME, version=VERSION),
                )
            )
            result = await asyncio.wait_for(session.initialize(), timeout=self.connection_timeout)
        except BaseException as e:
            self.logger.error(f"❌ Failed to connect to '{self.id}': {e}")
            await stack.aclose()
            raise

        self._stack = stack
        self.session = session
        self.capabilities = result.capabilities
        server_name = result.serverInfo.name if result.serverInfo else "unknown"
        self.logger.info(f"✅ Connected to '{self.id}' ({server_name}) via {self.config.transport}")

    async def _open_transport(self, stack: AsyncExitStack):
        transport = self.config.transport
        if transport == "stdio":
            validate_command(self.config.command)
            merged_env = os.environ.copy()
            merged_env.update(filter_env(self.config.env))
            params = StdioServerParameters(
                command=self.config.command,
                args=self.config.args,
                env=merged_env,
            )
            self.logger.info(f"🔌 Creating stdio client for {self.id}")
            return await stack.enter_async_context(stdio_client(params))

        if transport == "sse":
            self.logger.info(f"🌐 Connecting to '{self.id}' via SSE")
            return await stack.enter_async_context(
                sse_client(url=self.config.url, headers=self.config.headers or None)
            )

        self.logger.info(f"🌐 Connecting to '{self.id}' via Streamable HTTP")
        http_client = None
        if self.config.headers:
            http_client = await stack.enter_async_context(
                httpx.AsyncClient(headers=self.config.headers, follow_redirects=True)
            )
        read, write, _ = await stack.enter_async_context(
            streamable_http_client(self.config.url, http_client=http_client)
        )
        return read, write

    def _require_session(self) -> ClientSession:
        if self.session is None:
            raise ConnectionError(f"Upstream '{self.id}' is not connected")
        return self.session

    async def list_tools(self) -> list[types.Tool]:
        if not (self.capabilities and self.capabilities.tools):
            return []
        return (await self._require_session().list_tools()).tools

    async def list_resources(self) -> list[types.Resource]:
        if not (self.capabilities and self.capabilities.resources):
            return []
        return (await self._require_session().list_resources()).resources

    async def list_prompts(self) -> list[types.Prompt]:
        if not (self.capabilities and self.capabilities.prompts):
            return []
        return (await self._require_session().list_prompts()).prompts

    async def call_tool(self, name: str, args: dict[str, Any]) -> types.CallToolResult:
        return await self._require_session().call_tool(name, args)

    async def read_resource(self, uri: str) -> types.ReadResourceResult:
        return await self._require_session().read_resource(uri)

    async def get_prompt(
        self, name: str, args: Optional[dict[str, str]] = None
    ) -> types.GetPromptResult:
        return await self._require_session().get_prompt(name, args)

    async def close(self) -> None:
        stack, self._stack = self._stack, None
        self.session = None
        self.capabilities = None
        if stack is None:
            return
        try:
            await stack.aclose()
            self.logger.info(f"🔌 Disconnected from '{self.id}'")
        except Exception as e:
            self.logger.warning(f"⚠️ Error closing connection to '{self.id}': {e}")
