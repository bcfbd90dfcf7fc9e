import asyncio
import signal
from pathlib import Path
from typing import Any, Callable, Literal, Optional
import anyio
import uvicorn
from mcp.server.sse import SseServerTransport
from mcp.server.stdio import stdio_server
from pydantic_settings import BaseSettings, SettingsConfigDict
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route
from src.mcpcp.aggregator import Aggregator
from src.mcpcp.compression.compressor import Compressor
from src.mcpcp.config import ProxyConfig, UpstreamServerConfig, load_config
from src.mcpcp.constants import (
    CACHE_CLEANUP_INTERVAL_SECONDS,
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_RETRY_CLEANUP_WINDOW_SECONDS,
    VERSION,
)
from src.mcpcp.errors import ConfigError
from src.mcpcp.llm import LLMClient, OpenAICompatibleClient
from src.mcpcp.masking.llm_detector import LLMDetector
from src.mcpcp.masking.masker import Masker
from src.mcpcp.masking.patterns import create_custom_pattern
from src.mcpcp.pipeline import ToolCallPipeline
from src.mcpcp.policy import ToolPolicyResolver
from src.mcpcp.proxy_server import ContextProxyServer
from src.mcpcp.response_cache import ResponseCache
from src.mcpcp.retry_tracker import RetryTracker
from src.mcpcp.router import Router
from src.mcpcp.upstream import UpstreamClient
from src.utils.logger import configure_logging, get_logger

LLMFactory = Callable[[Optional[str], Optional[str]], LLMClient]


class ProxySettings(BaseSettings):
    """Process-level settings for the proxy (env prefix MCPCP_)."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    transport: Literal["stdio", "sse"] = "stdio"
    sse_server_debug: bool = False
    config_path: Optional[str] = None

    model_config = SettingsConfigDict(env_prefix="MCPCP_")


def default_llm_factory(base_url: Optional[str], api_key: Optional[str]) -> LLMClient:
    return OpenAICompatibleClient(base_url=base_url, api_key=api_key)


class ContextProxy:
    """
    Wires the proxy together: upstream connections, the catalog, the
    compression/masking pipeline and the downstream MCP server.
    """

    def __init__(
        self,
        config: ProxyConfig,
        llm_factory: Optional[LLMFactory] = None,
        connection_factory: Optional[Callable[[UpstreamServerConfig], Any]] = None,
        **settings: Any,
    ):
        self.settings = ProxySettings(**settings)
        configure_logging(level=self.settings.log_level)
        self.logger = get_logger("ContextProxy")
        self.config = config
        self._llm_factory = llm_factory or default_llm_factory
        self._connection_factory = connection_factory or (lambda upstream: UpstreamClient(upstream))
        self._llm_clients: list[LLMClient] = []
        # Safe under asyncio single-threaded model: add/discard are synchronous.
        self._bg_tasks: set[asyncio.Task] = set()

        self.retry_tracker = RetryTracker()
        self.resolver = ToolPolicyResolver(config)
        self.cache = self._build_cache(config)
        self.compressor = self._build_compressor(config)
        masker = self._build_masker(config)

        self.aggregator = Aggregator(
            resolver=self.resolver,
            mode=config.namespacing.mode,
            separator=config.namespacing.separator,
        )
        self.router = Router(self.aggregator, self.resolver, masker=masker)
        self.pipeline = ToolCallPipeline(
            self.router,
            self.resolver,
            compressor=self.compressor,
            retry_tracker=self.retry_tracker,
            restore_responses=self._restore_responses(config),
        )
        self.server = ContextProxyServer(self.aggregator, self.pipeline)

    @classmethod
    def from_file(cls, path: str, **settings: Any) -> "ContextProxy":
        """Load config from ``path``. Raises ConfigError on any problem."""
        config = load_config(Path(path))
        return cls(config, config_path=str(path), **settings)

    # ------------------------------------------------------------------
    # Component construction
    # ------------------------------------------------------------------

    @staticmethod
    def _build_cache(config: ProxyConfig) -> Optional[ResponseCache]:
        if not config.cache.enabled:
            return None
        return ResponseCache(
            default_ttl=config.cache.ttl_seconds,
            max_entries=config.cache.max_entries,
        )

    @staticmethod
    def _restore_responses(config: ProxyConfig) -> bool:
        return config.masking.restore_responses if config.masking else False

    def _build_compressor(self, config: ProxyConfig) -> Compressor:
        c = config.compression
        llm = self._llm_factory(c.base_url, c.api_key)
        self._llm_clients.append(llm)
        return Compressor(
            llm,
            default_policy=self.resolver.resolve_compression_policy(),
            cache=self.cache,
            timeout_seconds=c.timeout_seconds,
        )

    def _build_masker(self, config: ProxyConfig) -> Optional[Masker]:
        masking = config.masking
        if masking is None or not masking.enabled:
            return None
        custom = [
            create_custom_pattern(name, definition.regex, definition.replacement)
            for name, definition in masking.custom_patterns.items()
        ]
        detector = None
        if masking.llm_config is not None:
            llm = self._llm_factory(masking.llm_config.base_url, masking.llm_config.api_key)
            self._llm_clients.append(llm)
            detector = LLMDetector(
                llm,
                model=masking.llm_config.model,
                timeout_seconds=masking.llm_config.timeout_seconds,
            )
        self.logger.info(
            f"🔒 Masking enabled ({len(custom)} custom pattern(s), "
            f"LLM fallback {'available' if detector else 'not configured'})"
        )
        return Masker(self.resolver, custom_patterns=custom, detector=detector)

    async def _close_llm_clients(self, clients: list[LLMClient]) -> None:
        for client in clients:
            try:
                await client.close()
            except Exception as e:
                self.logger.warning(f"⚠️ Error closing model client: {e}")

    # ------------------------------------------------------------------
    # Upstreams
    # ------------------------------------------------------------------

    async def _connect_upstream(self, upstream: UpstreamServerConfig) -> bool:
        connection = self._connection_factory(upstream)
        try:
            await connection.connect()
        except Exception as e:
            self.logger.warning(f"⚠️ Upstream '{upstream.id}' failed to connect: {e}")
            return False
        self.aggregator.register(connection)
        return True

    async def start_upstreams(self) -> None:
        """Connect every enabled upstream, then build the catalog."""
        for upstream in self.config.upstreams:
            if not upstream.enabled:
                self.logger.info(f"⏸️ Upstream '{upstream.id}' is disabled, skipping")
                continue
            await self._connect_upstream(upstream)
        await self.aggregator.refresh()

    async def close_upstreams(self) -> None:
        for upstream_id in list(self.aggregator.connections):
            connection = self.aggregator.unregister(upstream_id)
            if connection is not None and hasattr(connection, "close"):
                await connection.close()

    # ------------------------------------------------------------------
    # Reload
    # ------------------------------------------------------------------

    async def reload(self, config: ProxyConfig) -> None:
        """
        Apply a new configuration without restarting.

        Rebuilds the resolver, compressor and masker, resets retry state and
        the cache, reconnects upstreams whose connection settings changed,
        refreshes the catalog and notifies the downstream client.
        """
        self.logger.info("🔄 Reloading configuration")
        old_config = self.config
        old_llm_clients, self._llm_clients = self._llm_clients, []

        self.config = config
        self.resolver = ToolPolicyResolver(config)
        self.cache = self._build_cache(config)
        self.compressor = self._build_compressor(config)
        masker = self._build_masker(config)

        self.router.set_resolver(self.resolver)
        self.router.set_masker(masker)
        self.pipeline.reconfigure(self.resolver, self.compressor, self._restore_responses(config))
        self.aggregator.set_resolver(self.resolver)
        self.aggregator.mode = config.namespacing.mode
        self.aggregator.separator = config.namespacing.separator
        self.retry_tracker.reset()
        await self._close_llm_clients(old_llm_clients)

        old_defs = {u.id: u for u in old_config.upstreams if u.enabled}
        new_defs = {u.id: u for u in config.upstreams if u.enabled}
        for upstream_id, old_def in old_defs.items():
            new_def = new_defs.get(upstream_id)
            if new_def is None or _connection_changed(old_def, new_def):
                connection = self.aggregator.unregister(upstream_id)
                if connection is not None and hasattr(connection, "close"):
                    await connection.close()
        for upstream_id, new_def in new_defs.items():
            if self.aggregator.get_connection(upstream_id) is None:
                await self._connect_upstream(new_def)

        await self.aggregator.refresh()
        await self.server.notify_catalog_changed()
        self.logger.info("✅ Configuration reloaded")

    async def reload_from_file(self) -> None:
        path = self.settings.config_path
        if not path:
            self.logger.warning("⚠️ Reload requested but no config file path is known")
            return
        try:
            config = load_config(Path(path))
        except ConfigError as e:
            self.logger.error(f"❌ Reload aborted, keeping current configuration: {e}")
            return
        await self.reload(config)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _track_task(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._bg_tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._bg_tasks.discard(task)
        if not task.cancelled():
            exc = task.exception()
            if exc:
                self.logger.error(f"❌ Background task '{task.get_name()}' failed: {exc}")

    def run_sweeps(self) -> None:
        if self.cache is not None:
            self.cache.cleanup()
        self.retry_tracker.cleanup(
            self.resolver.max_retry_window(DEFAULT_RETRY_CLEANUP_WINDOW_SECONDS)
        )

    async def _sweep_loop(self, interval_seconds: float = CACHE_CLEANUP_INTERVAL_SECONDS) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.run_sweeps()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self):
        """Connect upstreams, start the downstream transport, run until signalled."""
        self.logger.info(
            f"🚀 Starting mcp-context-proxy {VERSION} with transport: {self.settings.transport}"
        )

        loop = asyncio.get_running_loop()
        shutdown_event = asyncio.Event()

        def _signal_handler(sig: int) -> None:
            sig_name = signal.Signals(sig).name
            self.logger.info(f"🛑 Received {sig_name}, initiating graceful shutdown...")
            shutdown_event.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _signal_handler, sig)
        if hasattr(signal, "SIGHUP") and self.settings.config_path:
            loop.add_signal_handler(
                signal.SIGHUP, lambda: self._track_task(self.reload_from_file(), "reload")
            )

        try:
            await self.start_upstreams()
            self._track_task(self._sweep_loop(), "sweeps")

            server_task = asyncio.create_task(self.start_server())
            shutdown_task = asyncio.create_task(shutdown_event.wait())
            done, pending = await asyncio.wait(
                {server_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
        finally:
            for task in list(self._bg_tasks):
                task.cancel()
            await asyncio.gather(*list(self._bg_tasks), return_exceptions=True)
            await self.close_upstreams()
            await self._close_llm_clients(self._llm_clients)
            self.logger.info("✅ Graceful shutdown complete")

    async def start_server(self):
        if self.settings.transport == "stdio":
            await self.start_stdio_server()
        elif self.settings.transport == "sse":
            await self.start_sse_server()
        else:
            raise ValueError(f"Unsupported transport: {self.settings.transport}")

    async def start_stdio_server(self) -> None:
        async with stdio_server() as (read_stream, write_stream):
            try:
                await self.server.run(
                    read_stream,
                    write_stream,
                    self.server.initialization_options(),
                )
            except (anyio.ClosedResourceError, ExceptionGroup) as e:
                # Stdin closing while in-flight handlers write responses is expected.
                if isinstance(e, ExceptionGroup):
                    _, unhandled = e.split(anyio.ClosedResourceError)
                    if unhandled:
                        raise unhandled
                self.logger.debug("Stdio stream closed during shutdown (expected)")

    def create_starlette_app(self) -> Starlette:
        sse = SseServerTransport("/messages/")

        class _SSEHandler:
            """Raw ASGI handler for SSE; Starlette's request_response wrapper
            would TypeError when the handler returns None after streaming."""

            def __init__(self, proxy: "ContextProxy", sse_transport: SseServerTransport):
                self._proxy = proxy
                self._sse = sse_transport

            async def __call__(self, scope, receive, send):
                async with self._sse.connect_sse(scope, receive, send) as streams:
                    await self._proxy.server.run(
                        streams[0],
                        streams[1],
                        self._proxy.server.initialization_options(),
                    )

        return Starlette(
            debug=self.settings.sse_server_debug,
            routes=[
                Route("/sse", endpoint=_SSEHandler(self, sse)),
                Mount("/messages/", app=sse.handle_post_message),
                Route("/health", endpoint=self.handle_health, methods=["GET"]),
            ],
        )

    async def start_sse_server(self) -> None:
        config = uvicorn.Config(
            self.create_starlette_app(),
            host=self.settings.host,
            port=self.settings.port,
            log_level=self.settings.log_level.lower(),
        )
        server = uvicorn.Server(config)
        await server.serve()

    async def handle_health(self, request: Request) -> JSONResponse:
        """Connected upstreams and catalog sizes."""
        snapshot = self.aggregator.snapshot
        stats = self.aggregator.stats()
        upstreams = {
            upstream.id: {
                "connected": upstream.id in stats,
                **stats.get(upstream.id, {"tools": 0, "resources": 0, "prompts": 0}),
            }
            for upstream in self.config.upstreams
            if upstream.enabled
        }
        return JSONResponse(
            {
                "status": "healthy",
                "version": VERSION,
                "connected_upstreams": len(stats),
                "upstreams": upstreams,
                "catalog": {
                    "tools": len(snapshot.tools),
                    "resources": len(snapshot.resources),
                    "prompts": len(snapshot.prompts),
                },
                "cache_entries": len(self.cache) if self.cache is not None else 0,
            }
        )


def _connection_changed(old: UpstreamServerConfig, new: UpstreamServerConfig) -> bool:
    """True when the transport settings differ; tool policy changes need no reconnect."""
    return old.model_dump(exclude={"tools", "name"}) != new.model_dump(exclude={"tools", "name"})
