from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Optional
from mcp import types
from src.mcpcp.aggregator import Aggregator
from src.mcpcp.constants import BYPASS_FIELD, GOAL_FIELD
from src.mcpcp.errors import NotFoundError
from src.mcpcp.masking.masker import Masker
from src.mcpcp.policy import ToolPolicyResolver
from src.utils.logger import get_logger


@dataclass
class ToolCallOutcome:
    result: types.CallToolResult
    goal: Optional[str] = None
    bypass: bool = False
    restoration_map: Optional[dict[str, str]] = None


def error_result(text: str) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        isError=True,
    )


def extract_control_fields(args: Optional[dict[str, Any]]) -> tuple[dict[str, Any], Optional[str], bool]:
    """
    Split the reserved goal/bypass fields off the caller's arguments.

    Both fields are always removed. A goal that is not a string is
    ignored, and only a real boolean ``True`` turns bypass on.
    """
    forwarded = dict(args or {})
    raw_goal = forwarded.pop(GOAL_FIELD, None)
    raw_bypass = forwarded.pop(BYPASS_FIELD, None)
    goal = raw_goal if isinstance(raw_goal, str) else None
    bypass = raw_bypass is True
    return forwarded, goal, bypass


class Router:
    """
    Routes downstream requests to the upstream that owns them.

    Tool calls never raise: hidden or unknown tools and upstream failures come
    back as error results. Resource reads and prompt fetches raise
    ``NotFoundError`` or propagate the upstream exception instead.
    Compression is applied by the caller, not here.
    """

    def __init__(
        self,
        aggregator: Aggregator,
        resolver: ToolPolicyResolver,
        masker: Optional[Masker] = None,
        logger=None,
    ):
        self.aggregator = aggregator
        self.resolver = resolver
        self.masker = masker
        self.logger = logger or get_logger("Router")

    def set_masker(self, masker: Optional[Masker]) -> None:
        self.masker = masker

    def set_resolver(self, resolver: ToolPolicyResolver) -> None:
        self.resolver = resolver

    async def call_tool(self, public_name: str, args: Optional[dict[str, Any]]) -> ToolCallOutcome:
        forwarded, goal, bypass = extract_control_fields(args)

        if self.resolver.is_tool_hidden(public_name):
            self.logger.warning(f"⚠️ Call to hidden tool '{public_name}' rejected")
            return ToolCallOutcome(
                result=error_result(f"Error: Tool '{public_name}' not found"),
                goal=goal,
                bypass=bypass,
            )

        overrides = self.resolver.get_parameter_overrides(public_name)
        if overrides:
            forwarded.update(overrides)

        restoration_map = None
        masker = self.masker
        if masker is not None and masker.is_enabled(public_name):
            try:
                masked = await masker.mask_tool_args(forwarded, public_name)
            except Exception as e:
                self.logger.error(
                    f"❌ Masking failed for '{public_name}' (phase=mask_args): {e}, forwarding unmasked"
                )
            else:
                forwarded = masked.masked
                if masked.was_masked:
                    restoration_map = masked.restoration_map

        entry = self.aggregator.find_tool(public_name)
        if entry is None:
            self.logger.error(f"⚠️ Tool '{public_name}' not found in any upstream.")
            return ToolCallOutcome(
                result=error_result(f"Error: Tool '{public_name}' not found"),
                goal=goal,
                bypass=bypass,
                restoration_map=restoration_map,
            )

        try:
            self.logger.debug(f"➡️ Calling '{entry.original_name}' on '{entry.upstream_id}'")
            result = await entry.connection.call_tool(entry.original_name, forwarded)
        except Exception as e:
            self.logger.error(f"❌ Failed to call tool '{public_name}' (phase=upstream_call): {e}")
            return ToolCallOutcome(
                result=error_result(f"Error calling tool: {e}"),
                goal=goal,
                bypass=bypass,
                restoration_map=restoration_map,
            )

        return ToolCallOutcome(
            result=result,
            goal=goal,
            bypass=bypass,
            restoration_map=restoration_map,
        )

    async def read_resource(self, uri: str) -> types.ReadResourceResult:
        uri = str(uri)
        entry = self.aggregator.find_resource(uri)
        if entry is None:
            self.logger.error(f"⚠️ Resource '{uri}' not found in any upstream.")
            raise NotFoundError("resource", uri)
        try:
            return await entry.connection.read_resource(uri)
        except Exception as e:
            self.logger.error(f"❌ Failed to read resource '{uri}' from '{entry.upstream_id}': {e}")
            raise

    async def get_prompt(
        self, public_name: str, args: Optional[dict[str, str]] = None
    ) -> types.GetPromptResult:
        entry = self.aggregator.find_prompt(public_name)
        if entry is None:
            self.logger.error(f"⚠️ Prompt '{public_name}' not found in any upstream.")
            raise NotFoundError("prompt", public_name)
        try:
            return await entry.connection.get_prompt(entry.original_name, args)
        except Exception as e:
            self.logger.error(f"❌ Failed to get prompt '{public_name}' from '{entry.upstream_id}': {e}")
            raise
