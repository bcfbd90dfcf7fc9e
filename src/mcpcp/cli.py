from __future__ import annotations
from pathlib import Path
from src.mcpcp.config import ProxyConfig, ToolConfig, generate_example_config, load_config, save_config
from src.utils.logger import get_logger

logger = get_logger("cli")
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "mcp-context-proxy" / "config.yaml"


def cmd_init(path: Path = DEFAULT_CONFIG_PATH, force: bool = False) -> str:
    """Write an example configuration file."""
    path = Path(path)
    if path.exists() and not force:
        return f"⚠️  {path} already exists. Use --force to overwrite."
    save_config(generate_example_config(), path)
    logger.info(f"📝 Wrote example config to {path}")
    return f"✅ Wrote example config to {path}"


def _describe_tool(tool_name: str, tool: ToolConfig) -> str:
    notes = []
    if tool.hidden:
        notes.append("hidden")
    if tool.overwrite_description:
        notes.append("description override")
    if tool.hide_parameters:
        notes.append(f"hides {', '.join(tool.hide_parameters)}")
    if tool.parameter_overrides:
        notes.append(f"overrides {', '.join(sorted(tool.parameter_overrides))}")
    if tool.compression:
        fields = tool.compression.model_dump(exclude_none=True)
        if fields:
            notes.append("compression " + ", ".join(f"{k}={v}" for k, v in fields.items()))
    if tool.masking:
        fields = tool.masking.model_dump(exclude_none=True)
        if fields:
            notes.append("masking " + ", ".join(f"{k}={v}" for k, v in fields.items()))
    if tool.cache_ttl is not None:
        notes.append(f"cache ttl {tool.cache_ttl:g}s")
    return f"    - {tool_name}: {'; '.join(notes) if notes else 'defaults'}"


def summarize_config(config: ProxyConfig) -> str:
    c = config.compression
    lines = ["mcp-context-proxy configuration", "=" * 40]
    lines.append(
        f"Compression: {'on' if c.enabled else 'off'} "
        f"(model {c.model}, threshold {c.token_threshold}, budget {c.max_output_tokens} tokens)"
    )
    if c.retry_escalation and c.retry_escalation.enabled:
        lines.append(
            f"Retry escalation: x{c.retry_escalation.token_multiplier:g} per retry "
            f"within {c.retry_escalation.window_seconds:g}s"
        )
    if config.masking and config.masking.enabled:
        policy = config.masking.default_policy
        lines.append(f"Masking: on ({', '.join(policy.pii_types)})")
    else:
        lines.append("Masking: off")
    lines.append(
        f"Cache: {'on' if config.cache.enabled else 'off'} (ttl {config.cache.ttl_seconds:g}s)"
    )
    lines.append(f"Namespacing: {config.namespacing.mode} (separator '{config.namespacing.separator}')")

    if not config.upstreams:
        lines.append("\nNo upstreams configured.")
    for upstream in config.upstreams:
        target = upstream.command if upstream.transport == "stdio" else upstream.url
        state = "" if upstream.enabled else " [disabled]"
        lines.append(f"\n{upstream.id}{state}")
        lines.append(f"  Transport: {upstream.transport} ({target})")
        if upstream.tools:
            lines.append(f"  Tool policies ({len(upstream.tools)}):")
            for tool_name, tool in sorted(upstream.tools.items()):
                lines.append(_describe_tool(tool_name, tool))
    return "\n".join(lines)


def cmd_check(path: Path = DEFAULT_CONFIG_PATH) -> str:
    """Validate a configuration file. Raises ConfigError when it is invalid."""
    config = load_config(Path(path))
    return f"✅ {path} is valid\n\n{summarize_config(config)}"
