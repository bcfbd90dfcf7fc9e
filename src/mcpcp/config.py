from __future__ import annotations
import json
import re
from pathlib import Path
from typing import Any, Literal, Optional
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel
from src.mcpcp.constants import DEFAULT_SEPARATOR
from src.mcpcp.errors import ConfigError
from src.utils.logger import get_logger

logger = get_logger("config")

PIIType = Literal[
    "email",
    "ssn",
    "phone",
    "credit_card",
    "ip_address",
    "date_of_birth",
    "passport",
    "driver_license",
    "custom",
]
Confidence = Literal["low", "medium", "high"]
Transport = Literal["stdio", "sse", "streamable-http"]

DEFAULT_PII_TYPES: list[str] = ["email", "ssn", "phone", "credit_card", "ip_address"]


class _ConfigModel(BaseModel):
    # camelCase aliases so both `hideParameters` and `hide_parameters` load
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )


class RetryEscalationConfig(_ConfigModel):
    enabled: bool = True
    window_seconds: float = Field(default=60.0, gt=0)
    token_multiplier: float = Field(default=2.0, ge=1)


class CompressionConfig(_ConfigModel):
    enabled: bool = True
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    model: str = "gpt-4o-mini"
    token_threshold: int = Field(default=1000, ge=0)
    max_output_tokens: int = Field(default=500, gt=0)
    temperature: float = Field(default=0.2, ge=0, le=2)
    timeout_seconds: float = Field(default=30.0, gt=0)
    goal_aware: bool = True
    bypass_enabled: bool = False
    custom_instructions: Optional[str] = None
    retry_escalation: Optional[RetryEscalationConfig] = None


class ToolCompressionOverride(_ConfigModel):
    enabled: Optional[bool] = None
    token_threshold: Optional[int] = Field(default=None, ge=0)
    max_output_tokens: Optional[int] = Field(default=None, gt=0)
    goal_aware: Optional[bool] = None
    custom_instructions: Optional[str] = None


class MaskingPolicyConfig(_ConfigModel):
    enabled: bool = True
    pii_types: list[PIIType] = Field(default_factory=lambda: list(DEFAULT_PII_TYPES))
    llm_fallback: bool = False
    llm_fallback_threshold: Confidence = "low"


class ToolMaskingOverride(_ConfigModel):
    enabled: Optional[bool] = None
    pii_types: Optional[list[PIIType]] = None
    llm_fallback: Optional[bool] = None
    llm_fallback_threshold: Optional[Confidence] = None


class MaskingLLMConfig(_ConfigModel):
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    model: str = "gpt-4o-mini"
    timeout_seconds: float = Field(default=10.0, gt=0)


class CustomPatternConfig(_ConfigModel):
    regex: str
    replacement: str

    @field_validator("regex")
    @classmethod
    def _check_regex(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid regular expression '{value}': {e}") from e
        return value


class MaskingConfig(_ConfigModel):
    enabled: bool = False
    default_policy: MaskingPolicyConfig = Field(default_factory=MaskingPolicyConfig)
    llm_config: Optional[MaskingLLMConfig] = None
    custom_patterns: dict[str, CustomPatternConfig] = Field(default_factory=dict)
    restore_responses: bool = True


class ToolConfig(_ConfigModel):
    hidden: bool = False
    overwrite_description: Optional[str] = None
    hide_parameters: list[str] = Field(default_factory=list)
    parameter_overrides: dict[str, Any] = Field(default_factory=dict)
    cache_ttl: Optional[float] = Field(default=None, ge=0)
    compression: Optional[ToolCompressionOverride] = None
    masking: Optional[ToolMaskingOverride] = None


class UpstreamServerConfig(_ConfigModel):
    id: str = Field(min_length=1)
    name: Optional[str] = None
    transport: Transport = "stdio"
    command: Optional[str] = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
    tools: dict[str, ToolConfig] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_transport_target(self) -> "UpstreamServerConfig":
        if self.transport == "stdio" and not self.command:
            raise ValueError(f"upstream '{self.id}': stdio transport requires 'command'")
        if self.transport != "stdio" and not self.url:
            raise ValueError(f"upstream '{self.id}': {self.transport} transport requires 'url'")
        return self


class CacheConfig(_ConfigModel):
    enabled: bool = True
    ttl_seconds: float = Field(default=300.0, ge=0)
    max_entries: int = Field(default=1000, gt=0)


class NamespacingConfig(_ConfigModel):
    mode: Literal["prefix_all", "prefix_conflicts"] = "prefix_all"
    separator: str = Field(default=DEFAULT_SEPARATOR, min_length=1)


class ProxyConfig(_ConfigModel):
    upstreams: list[UpstreamServerConfig] = Field(default_factory=list)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)
    masking: Optional[MaskingConfig] = None
    cache: CacheConfig = Field(default_factory=CacheConfig)
    namespacing: NamespacingConfig = Field(default_factory=NamespacingConfig)

    @model_validator(mode="after")
    def _check_upstream_ids(self) -> "ProxyConfig":
        seen: set[str] = set()
        separator = self.namespacing.separator
        for upstream in self.upstreams:
            if upstream.id in seen:
                raise ValueError(f"duplicate upstream id '{upstream.id}'")
            if separator in upstream.id:
                raise ValueError(
                    f"upstream id '{upstream.id}' cannot contain the '{separator}' separator"
                )
            seen.add(upstream.id)
        return self

    def get_upstream(self, upstream_id: str) -> Optional[UpstreamServerConfig]:
        for upstream in self.upstreams:
            if upstream.id == upstream_id:
                return upstream
        return None


def parse_config(raw: dict[str, Any]) -> ProxyConfig:
    """Validate a raw mapping into a ProxyConfig. Raises ConfigError on invalid shape."""
    try:
        return ProxyConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def load_config(path: Path) -> ProxyConfig:
    """Load a YAML or JSON config file. Any failure is fatal (raises ConfigError)."""
    path = Path(path)
    if not path.exists():
        logger.error(f"❌ Config file does not exist: {path}")
        raise ConfigError(f"Config file does not exist: {path}")
    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix == ".json":
                raw = json.load(f)
            else:
                raw = yaml.safe_load(f) or {}
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        logger.error(f"❌ Could not parse {path}: {e}")
        raise ConfigError(f"Could not parse {path}: {e}") from e
    except OSError as e:
        logger.error(f"❌ Could not read {path}: {e}")
        raise ConfigError(f"Could not read {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config root in {path} must be a mapping")
    try:
        config = parse_config(raw)
    except ConfigError as e:
        logger.error(f"❌ Invalid config schema at {path}: {e}")
        raise
    logger.info(f"📄 Loaded config from {path} ({len(config.upstreams)} upstream(s))")
    return config


def save_config(config: ProxyConfig, path: Path) -> None:
    """Save config to YAML file, creating parent dirs as needed."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(
            config.model_dump(by_alias=True, exclude_none=True),
            f,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )


def generate_example_config() -> ProxyConfig:
    """Example configuration written by `main.py init`."""
    return ProxyConfig(
        upstreams=[
            UpstreamServerConfig(
                id="fs",
                name="Filesystem",
                transport="stdio",
                command="npx",
                args=["-y", "@modelcontextprotocol/server-filesystem", "/tmp"],
                tools={
                    "write_file": ToolConfig(hidden=True),
                    "read_text_file": ToolConfig(
                        compression=ToolCompressionOverride(token_threshold=2000),
                    ),
                },
            ),
            UpstreamServerConfig(
                id="fetch",
                name="Fetch",
                transport="stdio",
                command="uvx",
                args=["mcp-server-fetch"],
                tools={
                    "fetch": ToolConfig(
                        hide_parameters=["max_length"],
                        parameter_overrides={"max_length": 50000},
                        compression=ToolCompressionOverride(
                            custom_instructions="Keep URLs and headings."
                        ),
                    ),
                },
            ),
        ],
        compression=CompressionConfig(
            base_url="http://localhost:8080/v1",
            model="qwen2.5-7b-instruct",
            retry_escalation=RetryEscalationConfig(),
        ),
        masking=MaskingConfig(
            enabled=False,
            default_policy=MaskingPolicyConfig(),
        ),
    )
