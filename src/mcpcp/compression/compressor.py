from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Any, Optional
import tiktoken
from mcp import types
from src.mcpcp.compression.strategy import Strategy, build_compression_prompt, detect_strategy
from src.mcpcp.llm import LLMClient
from src.mcpcp.policy import CompressionPolicy
from src.mcpcp.response_cache import ResponseCache
from src.utils.logger import get_logger

DEFAULT_ENCODING = "cl100k_base"


@dataclass(frozen=True)
class CompressionResult:
    original: str
    compressed: str
    strategy: Strategy
    original_tokens: int
    compressed_tokens: int
    was_compressed: bool


def compressed_marker(result: CompressionResult) -> str:
    return (
        f"[compressed from {result.original_tokens} to {result.compressed_tokens} tokens]\n"
        f"{result.compressed}"
    )


class Compressor:
    """
    Shrinks oversized text with an external model.

    Content at or under the policy's token threshold is returned untouched.
    Anything that goes wrong past that point (model error, timeout, empty
    output) is logged and the original text is returned, so compression can
    never fail a request.
    """

    def __init__(
        self,
        llm: LLMClient,
        default_policy: Optional[CompressionPolicy] = None,
        tokenizer: Any = None,
        cache: Optional[ResponseCache] = None,
        timeout_seconds: float = 30.0,
        logger=None,
    ):
        self.llm = llm
        self.default_policy = default_policy or CompressionPolicy()
        self.cache = cache
        self.timeout_seconds = timeout_seconds
        self.logger = logger or get_logger("Compressor")
        self._tokenizer = tokenizer

    # ------------------------------------------------------------------
    # Token accounting
    # ------------------------------------------------------------------

    def _get_tokenizer(self):
        if self._tokenizer is None:
            self._tokenizer = tiktoken.get_encoding(DEFAULT_ENCODING)
        return self._tokenizer

    def count_tokens(self, text: str) -> int:
        """Token count for ``text``; falls back to ``len(text) // 4`` if the tokenizer fails."""
        try:
            return len(self._get_tokenizer().encode(text))
        except Exception as e:
            self.logger.warning(
                f"⚠️ Tokenizer failed (phase=count_tokens): {e}. Using length/4 estimate."
            )
            return len(text) // 4

    # ------------------------------------------------------------------
    # Text compression
    # ------------------------------------------------------------------

    async def compress(
        self,
        text: str,
        *,
        policy: Optional[CompressionPolicy] = None,
        goal: Optional[str] = None,
        tool_name: Optional[str] = None,
        cache_ttl: Optional[float] = None,
    ) -> CompressionResult:
        policy = policy or self.default_policy
        label = tool_name or "<resource>"
        original_tokens = self.count_tokens(text)

        if original_tokens <= policy.token_threshold:
            return CompressionResult(
                original=text,
                compressed=text,
                strategy="default",
                original_tokens=original_tokens,
                compressed_tokens=original_tokens,
                was_compressed=False,
            )

        strategy = detect_strategy(text)
        target_tokens = policy.max_output_tokens
        ttl = cache_ttl if cache_ttl is not None else policy.cache_ttl

        unchanged = CompressionResult(
            original=text,
            compressed=text,
            strategy=strategy,
            original_tokens=original_tokens,
            compressed_tokens=original_tokens,
            was_compressed=False,
        )

        cache_key = None
        if self.cache is not None and (ttl is None or ttl > 0):
            cache_key = ResponseCache.make_key(text, target_tokens, goal)
            entry = self.cache.get(cache_key)
            if entry is not None:
                self.logger.debug(f"💾 Cache hit for {label} ({original_tokens} tokens)")
                return CompressionResult(
                    original=text,
                    compressed=entry.compressed_text,
                    strategy=entry.strategy,
                    original_tokens=original_tokens,
                    compressed_tokens=entry.compressed_tokens,
                    was_compressed=True,
                )

        self.logger.debug(
            f"🗜️ Compressing {label}: {original_tokens} tokens, strategy '{strategy}', "
            f"budget {target_tokens}{', goal-aware' if goal else ''}"
        )
        prompt = build_compression_prompt(
            strategy,
            text,
            max_tokens=target_tokens,
            goal=goal,
            custom_instructions=policy.custom_instructions,
        )

        try:
            output = await asyncio.wait_for(
                self.llm.generate(
                    prompt,
                    model=policy.model,
                    max_tokens=target_tokens,
                    temperature=policy.temperature,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            self.logger.error(
                f"❌ Compression timed out for {label} (phase=model_call) "
                f"after {self.timeout_seconds}s, returning original"
            )
            return unchanged
        except Exception as e:
            self.logger.error(
                f"❌ Compression failed for {label} (phase=model_call): {e}, returning original"
            )
            return unchanged

        if not output or not output.strip():
            self.logger.warning(
                f"⚠️ Compression model returned empty output for {label} (phase=model_output), "
                "returning original"
            )
            return unchanged

        compressed_tokens = self.count_tokens(output)
        if cache_key is not None:
            self.cache.set(cache_key, output, compressed_tokens, strategy, ttl=ttl)

        reduction = (1 - compressed_tokens / original_tokens) * 100 if original_tokens else 0.0
        self.logger.info(
            f"✅ Compressed {label}: {original_tokens} -> {compressed_tokens} tokens "
            f"({reduction:.1f}% reduction)"
        )
        return CompressionResult(
            original=text,
            compressed=output,
            strategy=strategy,
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
            was_compressed=True,
        )

    # ------------------------------------------------------------------
    # MCP result variants
    # ------------------------------------------------------------------

    async def compress_tool_result(
        self,
        result: types.CallToolResult,
        *,
        policy: Optional[CompressionPolicy] = None,
        goal: Optional[str] = None,
        tool_name: Optional[str] = None,
        cache_ttl: Optional[float] = None,
    ) -> types.CallToolResult:
        """
        Compress all text parts of a tool result into the first one.

        Non-text parts (images, audio, embedded resources) keep their
        position; text parts after the first are dropped once compressed.
        """
        texts = [c.text for c in result.content if isinstance(c, types.TextContent)]
        if not texts:
            return result

        outcome = await self.compress(
            "\n".join(texts),
            policy=policy,
            goal=goal,
            tool_name=tool_name,
            cache_ttl=cache_ttl,
        )
        if not outcome.was_compressed:
            return result

        content = []
        replaced = False
        for part in result.content:
            if isinstance(part, types.TextContent):
                if replaced:
                    continue
                content.append(types.TextContent(type="text", text=compressed_marker(outcome)))
                replaced = True
            else:
                content.append(part)
        return result.model_copy(update={"content": content})

    async def compress_resource_result(
        self,
        result: types.ReadResourceResult,
        *,
        policy: Optional[CompressionPolicy] = None,
        goal: Optional[str] = None,
    ) -> types.ReadResourceResult:
        texts = [
            c.text for c in result.contents if isinstance(c, types.TextResourceContents)
        ]
        if not texts:
            return result

        outcome = await self.compress("\n".join(texts), policy=policy, goal=goal)
        if not outcome.was_compressed:
            return result

        contents = []
        replaced = False
        for part in result.contents:
            if isinstance(part, types.TextResourceContents):
                if replaced:
                    continue
                contents.append(part.model_copy(update={"text": compressed_marker(outcome)}))
                replaced = True
            else:
                contents.append(part)
        return result.model_copy(update={"contents": contents})
