from __future__ import annotations
from contextlib import AsyncExitStack
from typing import Any, Optional
import anyio
from mcp import server, types
from mcp.server.lowlevel.server import NotificationOptions
from mcp.server.session import ServerSession
from mcp.shared.exceptions import McpError
from mcp.types import INTERNAL_ERROR, INVALID_PARAMS, ErrorData
from src.mcpcp.aggregator import Aggregator
from src.mcpcp.constants import SERVER_NAME, VERSION
from src.mcpcp.errors import NotFoundError
from src.mcpcp.pipeline import ToolCallPipeline
from src.utils.logger import get_logger


class ContextProxyServer(server.Server):
    """The MCP server surface presented to the downstream client."""

    def __init__(self, aggregator: Aggregator, pipeline: ToolCallPipeline, logger=None):
        super().__init__(SERVER_NAME, version=VERSION)
        self.aggregator = aggregator
        self.pipeline = pipeline
        self.logger = logger or get_logger("ProxyServer")
        # Active downstream session, kept for list_changed notifications
        self._server_session: Optional[ServerSession] = None
        self._register_request_handlers()

    def _register_request_handlers(self) -> None:
        self.request_handlers[types.ListToolsRequest] = self._list_tools
        self.request_handlers[types.CallToolRequest] = self._call_tool
        self.request_handlers[types.ListResourcesRequest] = self._list_resources
        self.request_handlers[types.ReadResourceRequest] = self._read_resource
        self.request_handlers[types.ListPromptsRequest] = self._list_prompts
        self.request_handlers[types.GetPromptRequest] = self._get_prompt

    def initialization_options(self):
        return self.create_initialization_options(
            notification_options=NotificationOptions(
                prompts_changed=True,
                resources_changed=True,
                tools_changed=True,
            )
        )

    ## Tools
    async def _list_tools(self, _: Any) -> types.ServerResult:
        return types.ServerResult(types.ListToolsResult(tools=self.aggregator.list_tools()))

    async def _call_tool(self, req: types.CallToolRequest) -> types.ServerResult:
        result = await self.pipeline.call_tool(req.params.name, req.params.arguments or {})
        return types.ServerResult(result)

    ## Resources
    async def _list_resources(self, _: Any) -> types.ServerResult:
        return types.ServerResult(
            types.ListResourcesResult(resources=self.aggregator.list_resources())
        )

    async def _read_resource(self, req: types.ReadResourceRequest) -> types.ServerResult:
        uri = str(req.params.uri)
        try:
            result = await self.pipeline.read_resource(uri)
        except NotFoundError as e:
            raise McpError(ErrorData(code=INVALID_PARAMS, message=str(e)))
        except Exception as e:
            raise McpError(
                ErrorData(code=INTERNAL_ERROR, message=f"Failed to read resource '{uri}': {e}")
            )
        return types.ServerResult(result)

    ## Prompts
    async def _list_prompts(self, _: Any) -> types.ServerResult:
        return types.ServerResult(types.ListPromptsResult(prompts=self.aggregator.list_prompts()))

    async def _get_prompt(self, req: types.GetPromptRequest) -> types.ServerResult:
        name = req.params.name
        try:
            result = await self.pipeline.get_prompt(name, req.params.arguments)
        except NotFoundError as e:
            raise McpError(ErrorData(code=INVALID_PARAMS, message=str(e)))
        except Exception as e:
            raise McpError(
                ErrorData(code=INTERNAL_ERROR, message=f"Failed to get prompt '{name}': {e}")
            )
        return types.ServerResult(result)

    ## Notifications
    async def notify_catalog_changed(self) -> None:
        await self._send_tools_list_changed()
        await self._send_resources_list_changed()
        await self._send_prompts_list_changed()

    async def _send_tools_list_changed(self) -> None:
        if self._server_session:
            try:
                await self._server_session.send_tool_list_changed()
                self.logger.info("📢 Sent tools/list_changed notification")
            except Exception as e:
                self.logger.error(f"❌ Failed to send tools/list_changed notification: {e}")
        else:
            self.logger.debug("⚠️ No active session to send tools/list_changed notification")

    async def _send_prompts_list_changed(self) -> None:
        if self._server_session:
            try:
                await self._server_session.send_prompt_list_changed()
                self.logger.info("📢 Sent prompts/list_changed notification")
            except Exception as e:
                self.logger.error(f"❌ Failed to send prompts/list_changed notification: {e}")

    async def _send_resources_list_changed(self) -> None:
        if self._server_session:
            try:
                await self._server_session.send_resource_list_changed()
                self.logger.info("📢 Sent resources/list_changed notification")
            except Exception as e:
                self.logger.error(f"❌ Failed to send resources/list_changed notification: {e}")

    async def run(
        self,
        read_stream,
        write_stream,
        initialization_options,
        raise_exceptions: bool = False,
    ):
        """
        Same message loop as ``server.Server.run`` but keeps a reference to the
        ServerSession, which the base class does not expose, so list_changed
        notifications can be sent after a reload.
        """
        async with AsyncExitStack() as stack:
            lifespan_context = await stack.enter_async_context(self.lifespan(self))
            session = await stack.enter_async_context(
                ServerSession(read_stream, write_stream, initialization_options)
            )
            self._server_session = session
            self.logger.debug("🔗 Server session stored for notifications")

            try:
                async with anyio.create_task_group() as tg:
                    async for message in session.incoming_messages:
                        tg.start_soon(
                            self._handle_message,
                            message,
                            session,
                            lifespan_context,
                            raise_exceptions,
                        )
            finally:
                self._server_session = None
