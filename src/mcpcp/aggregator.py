from __future__ import annotations
import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any, Literal, Optional
from mcp import types
from src.mcpcp.constants import BYPASS_FIELD, DEFAULT_SEPARATOR, GOAL_FIELD
from src.mcpcp.policy import ToolPolicyResolver
from src.mcpcp.upstream import UpstreamConnection
from src.utils.logger import get_logger

NamespacingMode = Literal["prefix_all", "prefix_conflicts"]

GOAL_FIELD_SCHEMA = {
    "type": "string",
    "description": (
        "Optional. What you are trying to find or do with this tool's output. "
        "Large responses are condensed to keep only what serves this goal."
    ),
}
BYPASS_FIELD_SCHEMA = {
    "type": "boolean",
    "description": "Optional. Set to true to receive the full, uncompressed response.",
}


@dataclass(frozen=True)
class CatalogEntry:
    connection: UpstreamConnection
    original_name: str
    item: Any  # types.Tool | types.Resource | types.Prompt

    @property
    def upstream_id(self) -> str:
        return self.connection.id


@dataclass(frozen=True)
class CatalogSnapshot:
    tools: dict[str, CatalogEntry] = field(default_factory=dict)
    resources: dict[str, CatalogEntry] = field(default_factory=dict)
    prompts: dict[str, CatalogEntry] = field(default_factory=dict)


@dataclass
class _Listing:
    tools: list[types.Tool] = field(default_factory=list)
    resources: list[types.Resource] = field(default_factory=list)
    prompts: list[types.Prompt] = field(default_factory=list)


class Aggregator:
    """
    Merges the tools, resources and prompts of all registered upstreams into
    one namespaced catalog.

    Public names are ``{upstream_id}{separator}{original_name}``. In
    ``prefix_conflicts`` mode names stay bare until a later upstream exposes a
    name that is already taken; only that later entry is prefixed. Resources
    are keyed by their raw URI, first registered upstream wins.

    ``refresh`` builds a complete new snapshot and swaps it in with a single
    assignment, so lookups never observe a half-built catalog. Each swap
    hands the resolver the owner of every public tool name, so per-tool
    policy follows the upstream that actually serves the name.
    """

    def __init__(
        self,
        resolver: Optional[ToolPolicyResolver] = None,
        mode: NamespacingMode = "prefix_all",
        separator: str = DEFAULT_SEPARATOR,
        logger=None,
    ):
        self.resolver = resolver
        self.mode = mode
        self.separator = separator
        self.logger = logger or get_logger("Aggregator")
        self._connections: dict[str, UpstreamConnection] = {}
        self._listings: dict[str, _Listing] = {}
        self._snapshot = CatalogSnapshot()
        self._refresh_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    @property
    def connections(self) -> dict[str, UpstreamConnection]:
        return dict(self._connections)

    def get_connection(self, upstream_id: str) -> Optional[UpstreamConnection]:
        return self._connections.get(upstream_id)

    def register(self, connection: UpstreamConnection) -> None:
        """Add an upstream. Its capabilities appear after the next refresh."""
        if self.separator in connection.id:
            raise ValueError(
                f"Upstream id '{connection.id}' cannot contain '{self.separator}' separator"
            )
        if connection.id in self._connections:
            self.logger.warning(f"⚠️ Replacing already registered upstream '{connection.id}'")
            self._listings.pop(connection.id, None)
        self._connections[connection.id] = connection
        self.logger.info(f"🔌 Registered upstream '{connection.id}'")

    def unregister(self, upstream_id: str) -> Optional[UpstreamConnection]:
        """Remove an upstream and drop its entries from the catalog immediately."""
        connection = self._connections.pop(upstream_id, None)
        if connection is None:
            self.logger.warning(f"⚠️ Tried to unregister unknown upstream: {upstream_id}")
            return None
        self._listings.pop(upstream_id, None)
        self._swap(self._build_snapshot())
        self.logger.info(f"🗑️ Unregistered upstream '{upstream_id}'")
        return connection

    def set_resolver(self, resolver: Optional[ToolPolicyResolver]) -> None:
        self.resolver = resolver
        self._publish_owners()

    def tool_owners(self) -> dict[str, tuple[str, str]]:
        """Public tool name -> (upstream_id, original_name) for the current catalog."""
        return {
            public_name: (entry.upstream_id, entry.original_name)
            for public_name, entry in self._snapshot.tools.items()
        }

    def _publish_owners(self) -> None:
        if self.resolver is not None:
            self.resolver.set_tool_owners(self.tool_owners())

    def _swap(self, snapshot: CatalogSnapshot) -> None:
        self._snapshot = snapshot
        self._publish_owners()

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> CatalogSnapshot:
        """Re-pull tool/resource/prompt lists from every registered upstream."""
        async with self._refresh_lock:
            listings: dict[str, _Listing] = {}
            for upstream_id, connection in list(self._connections.items()):
                listings[upstream_id] = await self._fetch_listing(connection)
            self._listings = listings
            snapshot = self._build_snapshot()
            self._swap(snapshot)

        self.logger.info(
            f"📚 Catalog refreshed: {len(snapshot.tools)} tools, "
            f"{len(snapshot.resources)} resources, {len(snapshot.prompts)} prompts "
            f"from {len(self._connections)} upstream(s)"
        )
        return snapshot

    async def _fetch_listing(self, connection: UpstreamConnection) -> _Listing:
        listing = _Listing()
        try:
            listing.tools = list(await connection.list_tools())
        except Exception as e:
            self.logger.error(f"❌ Failed to list tools from '{connection.id}': {e}")
        try:
            listing.resources = list(await connection.list_resources())
        except Exception as e:
            self.logger.warning(f"⚠️ Failed to list resources from '{connection.id}': {e}")
        try:
            listing.prompts = list(await connection.list_prompts())
        except Exception as e:
            self.logger.warning(f"⚠️ Failed to list prompts from '{connection.id}': {e}")
        return listing

    def _build_snapshot(self) -> CatalogSnapshot:
        snapshot = CatalogSnapshot()
        for upstream_id, connection in self._connections.items():
            listing = self._listings.get(upstream_id)
            if listing is None:
                continue
            for tool in listing.tools:
                self._add_named(snapshot.tools, connection, tool.name, tool, "tool")
            for prompt in listing.prompts:
                self._add_named(snapshot.prompts, connection, prompt.name, prompt, "prompt")
            for resource in listing.resources:
                uri = str(resource.uri)
                existing = snapshot.resources.get(uri)
                if existing is not None:
                    self.logger.warning(
                        f"⚠️ Resource '{uri}' from '{upstream_id}' already provided by "
                        f"'{existing.upstream_id}', skipping"
                    )
                    continue
                snapshot.resources[uri] = CatalogEntry(connection, uri, resource)
        return snapshot

    def _add_named(
        self,
        table: dict[str, CatalogEntry],
        connection: UpstreamConnection,
        original_name: str,
        item: Any,
        kind: str,
    ) -> None:
        if self.mode == "prefix_conflicts" and original_name not in table:
            public_name = original_name
        else:
            public_name = self.make_key(connection.id, original_name)
        if public_name in table:
            self.logger.warning(
                f"⚠️ Duplicate {kind} '{public_name}' from '{connection.id}', "
                f"keeping the one from '{table[public_name].upstream_id}'"
            )
            return
        table[public_name] = CatalogEntry(connection, original_name, item)

    def make_key(self, upstream_id: str, item_name: str) -> str:
        """Returns a namespaced key like 'server__item'."""
        return f"{upstream_id}{self.separator}{item_name}"

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> CatalogSnapshot:
        return self._snapshot

    def find_tool(self, public_name: str) -> Optional[CatalogEntry]:
        return self._snapshot.tools.get(public_name)

    def find_resource(self, uri: str) -> Optional[CatalogEntry]:
        return self._snapshot.resources.get(str(uri))

    def find_prompt(self, public_name: str) -> Optional[CatalogEntry]:
        return self._snapshot.prompts.get(public_name)

    # ------------------------------------------------------------------
    # Listings presented downstream
    # ------------------------------------------------------------------

    def list_tools(self) -> list[types.Tool]:
        """Tools with public names, hidden tools removed and tool policy applied."""
        tools = []
        for public_name, entry in self._snapshot.tools.items():
            if self.resolver is not None and self.resolver.is_tool_hidden(public_name):
                continue
            tools.append(self._present_tool(public_name, entry.item))
        return tools

    def _present_tool(self, public_name: str, tool: types.Tool) -> types.Tool:
        schema = copy.deepcopy(tool.inputSchema) if tool.inputSchema else {}
        schema.setdefault("type", "object")
        properties = dict(schema.get("properties") or {})
        description = tool.description

        if self.resolver is not None:
            hidden = set(self.resolver.get_hidden_parameters(public_name))
            if hidden:
                properties = {k: v for k, v in properties.items() if k not in hidden}
                if "required" in schema:
                    schema["required"] = [r for r in schema["required"] if r not in hidden]
            override = self.resolver.get_description_override(public_name)
            if override is not None:
                description = override
            if self.resolver.is_goal_aware_enabled(public_name):
                properties[GOAL_FIELD] = dict(GOAL_FIELD_SCHEMA)
            if self.resolver.is_bypass_enabled():
                properties[BYPASS_FIELD] = dict(BYPASS_FIELD_SCHEMA)

        schema["properties"] = properties
        return tool.model_copy(
            update={"name": public_name, "description": description, "inputSchema": schema}
        )

    def list_resources(self) -> list[types.Resource]:
        resources = []
        for entry in self._snapshot.resources.values():
            resource = entry.item
            if self.mode == "prefix_all":
                name = resource.name or str(resource.uri)
                resource = resource.model_copy(update={"name": self.make_key(entry.upstream_id, name)})
            resources.append(resource)
        return resources

    def list_prompts(self) -> list[types.Prompt]:
        return [
            entry.item.model_copy(update={"name": public_name})
            for public_name, entry in self._snapshot.prompts.items()
        ]

    def stats(self) -> dict[str, dict[str, int]]:
        """Catalog sizes per upstream, for health reporting."""
        counts = {
            upstream_id: {"tools": 0, "resources": 0, "prompts": 0}
            for upstream_id in self._connections
        }
        for kind, table in (
            ("tools", self._snapshot.tools),
            ("resources", self._snapshot.resources),
            ("prompts", self._snapshot.prompts),
        ):
            for entry in table.values():
                if entry.upstream_id in counts:
                    counts[entry.upstream_id][kind] += 1
        return counts
