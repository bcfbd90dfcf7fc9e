from __future__ import annotations
from dataclasses import replace
from typing import Any, Optional
from mcp import types
from src.mcpcp.compression.compressor import Compressor
from src.mcpcp.masking.masker import restore_result
from src.mcpcp.policy import ToolPolicyResolver
from src.mcpcp.retry_tracker import RetryTracker
from src.mcpcp.router import Router
from src.utils.logger import get_logger, tool_context


class ToolCallPipeline:
    """
    Runs a downstream request through routing, compression and restoration.

    Order for a tool call: Router (controls, overrides, masking, dispatch),
    then compression with the retry-escalated budget, then placeholder
    restoration in the returned text.
    """

    def __init__(
        self,
        router: Router,
        resolver: ToolPolicyResolver,
        compressor: Optional[Compressor] = None,
        retry_tracker: Optional[RetryTracker] = None,
        restore_responses: bool = True,
        logger=None,
    ):
        self.router = router
        self.resolver = resolver
        self.compressor = compressor
        self.retry_tracker = retry_tracker or RetryTracker()
        self.restore_responses = restore_responses
        self.logger = logger or get_logger("Pipeline")

    def reconfigure(
        self,
        resolver: ToolPolicyResolver,
        compressor: Optional[Compressor],
        restore_responses: bool,
    ) -> None:
        self.resolver = resolver
        self.compressor = compressor
        self.restore_responses = restore_responses

    async def call_tool(self, name: str, args: Optional[dict[str, Any]]) -> types.CallToolResult:
        with tool_context(name):
            return await self._call_tool(name, args)

    async def _call_tool(self, name: str, args: Optional[dict[str, Any]]) -> types.CallToolResult:
        outcome = await self.router.call_tool(name, args)
        result = outcome.result

        if not result.isError:
            result = await self._compress(name, result, outcome.goal, outcome.bypass)

        if self.restore_responses and outcome.restoration_map:
            result = restore_result(result, outcome.restoration_map)
        return result

    async def _compress(
        self, name: str, result: types.CallToolResult, goal: Optional[str], bypass: bool
    ) -> types.CallToolResult:
        if self.compressor is None:
            return result
        if bypass and self.resolver.is_bypass_enabled():
            self.logger.debug(f"⏭️ Compression bypassed for '{name}' on caller request")
            return result

        policy = self.resolver.resolve_compression_policy(name)
        if not policy.enabled:
            return result

        self.retry_tracker.record_call(name)
        multiplier = self.retry_tracker.get_escalation_multiplier(name, policy.retry_escalation)
        if multiplier > 1:
            policy = replace(policy, max_output_tokens=int(policy.max_output_tokens * multiplier))

        return await self.compressor.compress_tool_result(
            result,
            policy=policy,
            goal=goal if policy.goal_aware else None,
            tool_name=name,
            cache_ttl=policy.cache_ttl,
        )

    async def read_resource(self, uri: str) -> types.ReadResourceResult:
        result = await self.router.read_resource(uri)
        if self.compressor is None:
            return result
        policy = self.resolver.resolve_compression_policy()
        if not policy.enabled:
            return result
        return await self.compressor.compress_resource_result(result, policy=policy)

    async def get_prompt(self, name: str, args: Optional[dict[str, str]] = None) -> types.GetPromptResult:
        return await self.router.get_prompt(name, args)
