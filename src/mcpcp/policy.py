from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Any, Optional
from src.mcpcp.config import ProxyConfig, ToolConfig
from src.utils.logger import get_logger


@dataclass(frozen=True)
class RetryEscalation:
    enabled: bool = True
    window_seconds: float = 60.0
    token_multiplier: float = 2.0


@dataclass(frozen=True)
class CompressionPolicy:
    enabled: bool = True
    token_threshold: int = 1000
    max_output_tokens: int = 500
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    goal_aware: bool = True
    custom_instructions: Optional[str] = None
    retry_escalation: Optional[RetryEscalation] = None
    cache_ttl: Optional[float] = None


@dataclass(frozen=True)
class MaskingPolicy:
    enabled: bool = False
    pii_types: tuple[str, ...] = field(default_factory=tuple)
    llm_fallback: bool = False
    llm_fallback_threshold: str = "low"


DISABLED_MASKING = MaskingPolicy(enabled=False)


class ToolPolicyResolver:
    """
    Merges the global compression/masking defaults with per-tool overrides.

    Tool names are the public names seen by the downstream client. The
    Aggregator publishes which upstream owns each public name via
    ``set_tool_owners``; an owned name is resolved against that upstream's
    tool config only. Names the catalog has not published fall back to the
    ``{upstream}{separator}{tool}`` split. A bare name nobody owns has no
    tool config.

    Resolved policies are immutable and memoised for catalog names and
    configured tools. Build a new resolver when the configuration changes.
    """

    def __init__(self, config: ProxyConfig, logger=None):
        self.config = config
        self.separator = config.namespacing.separator
        self.logger = logger or get_logger("PolicyResolver")
        self._global_compression = self._build_global_compression()
        self._global_masking = self._build_global_masking()
        self._owners: dict[str, tuple[str, str]] = {}
        self._compression_cache: dict[str, CompressionPolicy] = {}
        self._masking_cache: dict[str, MaskingPolicy] = {}

    def _build_global_compression(self) -> CompressionPolicy:
        c = self.config.compression
        escalation = None
        if c.retry_escalation is not None:
            escalation = RetryEscalation(
                enabled=c.retry_escalation.enabled,
                window_seconds=c.retry_escalation.window_seconds,
                token_multiplier=c.retry_escalation.token_multiplier,
            )
        return CompressionPolicy(
            enabled=c.enabled,
            token_threshold=c.token_threshold,
            max_output_tokens=c.max_output_tokens,
            model=c.model,
            temperature=c.temperature,
            goal_aware=c.goal_aware,
            custom_instructions=c.custom_instructions,
            retry_escalation=escalation,
        )

    def _build_global_masking(self) -> MaskingPolicy:
        masking = self.config.masking
        if masking is None:
            return DISABLED_MASKING
        p = masking.default_policy
        return MaskingPolicy(
            enabled=p.enabled,
            pii_types=tuple(p.pii_types),
            llm_fallback=p.llm_fallback,
            llm_fallback_threshold=p.llm_fallback_threshold,
        )

    # ------------------------------------------------------------------
    # Tool lookup
    # ------------------------------------------------------------------

    def set_tool_owners(self, owners: dict[str, tuple[str, str]]) -> None:
        """Record ``public_name -> (upstream_id, original_name)`` from the catalog."""
        self._owners = dict(owners)
        self._compression_cache.clear()
        self._masking_cache.clear()

    def owner_of(self, tool_name: str) -> Optional[tuple[str, str]]:
        owner = self._owners.get(tool_name)
        if owner is not None:
            return owner
        if self.separator in tool_name:
            upstream_id, original = tool_name.split(self.separator, 1)
            if self.config.get_upstream(upstream_id) is not None:
                return upstream_id, original
        return None

    def get_tool_config(self, tool_name: str) -> Optional[ToolConfig]:
        """Return the ToolConfig of the upstream that owns a public tool name, or None."""
        owner = self.owner_of(tool_name)
        if owner is None:
            return None
        upstream_id, original = owner
        upstream = self.config.get_upstream(upstream_id)
        return upstream.tools.get(original) if upstream is not None else None

    def _memoisable(self, tool_name: str, tool_config: Optional[ToolConfig]) -> bool:
        return tool_config is not None or tool_name in self._owners

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def resolve_compression_policy(self, tool_name: Optional[str] = None) -> CompressionPolicy:
        if tool_name is None:
            return self._global_compression
        cached = self._compression_cache.get(tool_name)
        if cached is not None:
            return cached

        policy = self._global_compression
        tool_config = self.get_tool_config(tool_name)
        if tool_config is not None:
            if tool_config.compression is not None:
                overrides = tool_config.compression.model_dump(exclude_none=True)
                policy = replace(policy, **overrides)
            if tool_config.cache_ttl is not None:
                policy = replace(policy, cache_ttl=tool_config.cache_ttl)

        if self._memoisable(tool_name, tool_config):
            self._compression_cache[tool_name] = policy
        return policy

    def resolve_masking_policy(self, tool_name: Optional[str] = None) -> MaskingPolicy:
        masking = self.config.masking
        if masking is None or not masking.enabled:
            return DISABLED_MASKING
        if tool_name is None:
            return self._global_masking
        cached = self._masking_cache.get(tool_name)
        if cached is not None:
            return cached

        policy = self._global_masking
        tool_config = self.get_tool_config(tool_name)
        if tool_config is not None and tool_config.masking is not None:
            overrides = tool_config.masking.model_dump(exclude_none=True)
            if "pii_types" in overrides:
                overrides["pii_types"] = tuple(overrides["pii_types"])
            policy = replace(policy, **overrides)

        if self._memoisable(tool_name, tool_config):
            self._masking_cache[tool_name] = policy
        return policy

    # ------------------------------------------------------------------
    # Visibility and argument rewriting
    # ------------------------------------------------------------------

    def is_tool_hidden(self, tool_name: str) -> bool:
        tool_config = self.get_tool_config(tool_name)
        return bool(tool_config and tool_config.hidden)

    def get_description_override(self, tool_name: str) -> Optional[str]:
        tool_config = self.get_tool_config(tool_name)
        return tool_config.overwrite_description if tool_config else None

    def get_hidden_parameters(self, tool_name: str) -> list[str]:
        tool_config = self.get_tool_config(tool_name)
        return list(tool_config.hide_parameters) if tool_config else []

    def get_parameter_overrides(self, tool_name: str) -> dict[str, Any]:
        tool_config = self.get_tool_config(tool_name)
        return dict(tool_config.parameter_overrides) if tool_config else {}

    def get_cache_ttl(self, tool_name: str) -> Optional[float]:
        """Per-tool cache TTL in seconds; None means the cache default applies."""
        tool_config = self.get_tool_config(tool_name)
        return tool_config.cache_ttl if tool_config else None

    # ------------------------------------------------------------------
    # Global switches
    # ------------------------------------------------------------------

    def get_retry_escalation(self) -> Optional[RetryEscalation]:
        return self._global_compression.retry_escalation

    def is_goal_aware_enabled(self, tool_name: Optional[str] = None) -> bool:
        return self.resolve_compression_policy(tool_name).goal_aware

    def is_bypass_enabled(self) -> bool:
        return self.config.compression.bypass_enabled

    def max_retry_window(self, default: float) -> float:
        """Largest configured escalation window, used to bound the periodic sweep."""
        escalation = self.get_retry_escalation()
        if escalation is None:
            return default
        return max(default, escalation.window_seconds)
