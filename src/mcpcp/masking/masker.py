from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Any, Optional
from mcp import types
from src.mcpcp.masking.llm_detector import LLMDetector
from src.mcpcp.masking.patterns import (
    LABEL_CATEGORIES,
    PIIPattern,
    confidence_rank,
    find_matches,
    get_patterns_for_types,
)
from src.mcpcp.policy import MaskingPolicy, ToolPolicyResolver
from src.utils.logger import get_logger

_LLM_PLACEHOLDER = re.compile(r"\[([A-Z][A-Z0-9_]*?)_REDACTED\]")
LLM_MATCH_CONFIDENCE = "medium"


@dataclass(frozen=True)
class PIIMatch:
    category: str
    confidence: str
    method: str  # "pattern" | "llm"
    field: str
    start: int
    end: int
    placeholder: str


@dataclass
class MaskResult:
    masked: Any
    was_masked: bool = False
    masked_fields: list[str] = field(default_factory=list)
    restoration_map: dict[str, str] = field(default_factory=dict)
    matches: list[PIIMatch] = field(default_factory=list)


class _MaskingPass:
    """Placeholder bookkeeping for one mask_tool_args call."""

    def __init__(self):
        self.counter = 0
        self.by_value: dict[str, str] = {}
        self.restoration_map: dict[str, str] = {}
        self.masked_fields: list[str] = []
        self.matches: list[PIIMatch] = []

    def placeholder_for(self, value: str, label: str) -> str:
        existing = self.by_value.get(value)
        if existing is not None:
            return existing
        self.counter += 1
        placeholder = f"[{label}_{self.counter}]"
        self.by_value[value] = placeholder
        self.restoration_map[placeholder] = value
        return placeholder


def recover_llm_values(original: str, masked: str) -> Optional[list[tuple[str, str]]]:
    """
    Map each ``[TYPE_REDACTED]`` token in ``masked`` back to the text it replaced.

    Returns ``(label, original_value)`` pairs in order, or None when the model
    changed anything other than the replaced spans.
    """
    labels = []
    parts = []
    last = 0
    for match in _LLM_PLACEHOLDER.finditer(masked):
        parts.append(re.escape(masked[last:match.start()]))
        parts.append("(.+?)")
        labels.append(match.group(1))
        last = match.end()
    parts.append(re.escape(masked[last:]))
    if not labels:
        return None
    aligned = re.fullmatch("".join(parts), original, re.DOTALL)
    if aligned is None:
        return None
    return list(zip(labels, aligned.groups()))


class Masker:
    """
    Reversible PII masking of tool-call arguments.

    Every string inside the arguments (recursively through dicts and lists) is
    scanned with the categories the tool's masking policy enables. Matches are
    replaced by numbered placeholders such as ``[EMAIL_1]``; the placeholder to
    original mapping is returned so responses can be restored afterwards.

    When the policy enables LLM fallback and the strongest pattern match in a
    field is below ``llm_fallback_threshold``, the pattern-masked text is also
    sent to the LLM detector. Detector failures fail open: the field keeps its
    pattern-masked value. Operators opting into best-effort detection accept
    that PII the patterns miss may be forwarded when the detector is down.
    """

    def __init__(
        self,
        resolver: ToolPolicyResolver,
        custom_patterns: Optional[list[PIIPattern]] = None,
        detector: Optional[LLMDetector] = None,
        logger=None,
    ):
        self.resolver = resolver
        self.custom_patterns = list(custom_patterns or [])
        self.detector = detector
        self.logger = logger or get_logger("Masker")

    def is_enabled(self, tool_name: str) -> bool:
        policy = self.resolver.resolve_masking_policy(tool_name)
        return policy.enabled and bool(policy.pii_types)

    def patterns_for(self, policy: MaskingPolicy) -> list[PIIPattern]:
        patterns = get_patterns_for_types(policy.pii_types)
        if "custom" in policy.pii_types:
            patterns.extend(self.custom_patterns)
        return patterns

    async def mask_tool_args(self, args: dict[str, Any], tool_name: str) -> MaskResult:
        policy = self.resolver.resolve_masking_policy(tool_name)
        if not policy.enabled:
            return MaskResult(masked=args)

        patterns = self.patterns_for(policy)
        state = _MaskingPass()
        masked = await self._mask_value(args, "", patterns, policy, state, tool_name)

        if state.restoration_map:
            self.logger.info(
                f"🔒 Masked {len(state.restoration_map)} value(s) in {tool_name} "
                f"({', '.join(state.masked_fields)})"
            )
        return MaskResult(
            masked=masked,
            was_masked=bool(state.restoration_map),
            masked_fields=state.masked_fields,
            restoration_map=state.restoration_map,
            matches=state.matches,
        )

    async def _mask_value(self, value, path, patterns, policy, state, tool_name):
        if isinstance(value, str):
            return await self._mask_string(value, path, patterns, policy, state, tool_name)
        if isinstance(value, dict):
            masked = {}
            for key, item in value.items():
                child = f"{path}.{key}" if path else str(key)
                masked[key] = await self._mask_value(item, child, patterns, policy, state, tool_name)
            return masked
        if isinstance(value, list):
            masked = []
            for index, item in enumerate(value):
                masked.append(
                    await self._mask_value(item, f"{path}[{index}]", patterns, policy, state, tool_name)
                )
            return masked
        return value

    async def _mask_string(self, text, path, patterns, policy, state, tool_name) -> str:
        original = text
        strongest = 0

        for pattern in patterns:
            spans = find_matches(pattern, text)
            if not spans:
                continue
            strongest = max(strongest, confidence_rank(pattern.confidence))
            pieces = []
            last = 0
            for start, end, value in spans:
                placeholder = state.placeholder_for(value, pattern.label)
                pieces.append(text[last:start])
                pieces.append(placeholder)
                last = end
                state.matches.append(
                    PIIMatch(
                        category=pattern.category,
                        confidence=pattern.confidence,
                        method="pattern",
                        field=path,
                        start=start,
                        end=end,
                        placeholder=placeholder,
                    )
                )
            pieces.append(text[last:])
            text = "".join(pieces)

        if (
            policy.llm_fallback
            and self.detector is not None
            and strongest < confidence_rank(policy.llm_fallback_threshold)
        ):
            text = await self._llm_fallback(text, path, policy, state, tool_name)

        if text != original:
            state.masked_fields.append(path)
        return text

    async def _llm_fallback(self, text, path, policy, state, tool_name) -> str:
        detection = await self.detector.detect_and_mask(text, policy.pii_types)
        if not detection.has_pii:
            return text

        recovered = recover_llm_values(text, detection.masked_text)
        if recovered is None:
            self.logger.warning(
                f"⚠️ LLM masking for {tool_name} field '{path}' could not be aligned "
                "with the input (phase=llm_restore), keeping pattern result"
            )
            return text

        pieces = []
        last = 0
        values = iter(recovered)
        for match in _LLM_PLACEHOLDER.finditer(detection.masked_text):
            label, value = next(values)
            placeholder = state.placeholder_for(value, label)
            pieces.append(detection.masked_text[last:match.start()])
            start = sum(len(p) for p in pieces)
            pieces.append(placeholder)
            last = match.end()
            state.matches.append(
                PIIMatch(
                    category=LABEL_CATEGORIES.get(label, "custom"),
                    confidence=LLM_MATCH_CONFIDENCE,
                    method="llm",
                    field=path,
                    start=start,
                    end=start + len(placeholder),
                    placeholder=placeholder,
                )
            )
        pieces.append(detection.masked_text[last:])
        return "".join(pieces)

    # ------------------------------------------------------------------
    # Restoration
    # ------------------------------------------------------------------

    def restore(self, value: Any, restoration_map: dict[str, str]) -> Any:
        """Replace placeholders with their original values, recursively."""
        if not restoration_map:
            return value
        if isinstance(value, str):
            return _restore_text(value, restoration_map)
        if isinstance(value, dict):
            return {k: self.restore(v, restoration_map) for k, v in value.items()}
        if isinstance(value, list):
            return [self.restore(v, restoration_map) for v in value]
        return value

    def restore_result(
        self, result: types.CallToolResult, restoration_map: Optional[dict[str, str]]
    ) -> types.CallToolResult:
        return restore_result(result, restoration_map)


def restore_result(
    result: types.CallToolResult, restoration_map: Optional[dict[str, str]]
) -> types.CallToolResult:
    """Restore placeholders in the text parts of a tool result."""
    if not restoration_map:
        return result
    content = [
        part.model_copy(update={"text": _restore_text(part.text, restoration_map)})
        if isinstance(part, types.TextContent)
        else part
        for part in result.content
    ]
    return result.model_copy(update={"content": content})


def _restore_text(text: str, restoration_map: dict[str, str]) -> str:
    placeholders = sorted(restoration_map, key=len, reverse=True)
    pattern = re.compile("|".join(re.escape(p) for p in placeholders))
    return pattern.sub(lambda m: restoration_map[m.group(0)], text)
