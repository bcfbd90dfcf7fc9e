from __future__ import annotations
import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional
from src.mcpcp.llm import LLMClient
from src.utils.logger import get_logger

MIN_DETECTION_TOKENS = 500

DETECTION_PROMPT = """<text>
{text}
</text>

<task>
Find personally identifiable information (PII) in the text above.
PII types to detect: {pii_types}

Replace every occurrence with a placeholder of the form [TYPE_REDACTED], where
TYPE is the upper-case PII type (for example [EMAIL_REDACTED] or [PHONE_REDACTED]).
Leave existing bracketed placeholders and all other text exactly as they are.

Respond with only a JSON object:
{{"hasPII": true or false, "detectedTypes": ["<type>", ...], "maskedText": "<the text with PII replaced>"}}
</task>"""


@dataclass(frozen=True)
class DetectionResult:
    has_pii: bool
    masked_text: str
    detected_types: list[str] = field(default_factory=list)


def extract_json_object(reply: str) -> Optional[dict[str, Any]]:
    """First well-formed JSON object anywhere in ``reply``, or None."""
    decoder = json.JSONDecoder()
    index = reply.find("{")
    while index != -1:
        try:
            value, _ = decoder.raw_decode(reply, index)
        except ValueError:
            index = reply.find("{", index + 1)
            continue
        if isinstance(value, dict):
            return value
        index = reply.find("{", index + 1)
    return None


class LLMDetector:
    """
    Model-backed PII detector used as a fallback after the pattern pass.

    Fails open: a model error, timeout, unparseable reply or a reply missing
    ``hasPII``/``maskedText`` yields ``has_pii=False`` with the text unchanged.
    """

    def __init__(
        self,
        llm: LLMClient,
        model: str,
        timeout_seconds: float = 10.0,
        logger=None,
    ):
        self.llm = llm
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.logger = logger or get_logger("LLMDetector")

    async def detect_and_mask(self, text: str, pii_types: Iterable[str]) -> DetectionResult:
        unchanged = DetectionResult(has_pii=False, masked_text=text)
        prompt = DETECTION_PROMPT.format(text=text, pii_types=", ".join(pii_types))

        try:
            reply = await asyncio.wait_for(
                self.llm.generate(
                    prompt,
                    model=self.model,
                    max_tokens=max(MIN_DETECTION_TOKENS, len(text) * 2),
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            self.logger.warning(
                f"⚠️ PII detection timed out after {self.timeout_seconds}s (phase=llm_detect), failing open"
            )
            return unchanged
        except Exception as e:
            self.logger.warning(f"⚠️ PII detection failed (phase=llm_detect): {e}, failing open")
            return unchanged

        verdict = extract_json_object(reply or "")
        if verdict is None:
            self.logger.warning("⚠️ PII detector reply contained no JSON object, failing open")
            return unchanged

        has_pii = verdict.get("hasPII")
        masked_text = verdict.get("maskedText")
        if not isinstance(has_pii, bool) or not isinstance(masked_text, str):
            self.logger.warning(
                "⚠️ PII detector reply is missing 'hasPII' or 'maskedText', failing open"
            )
            return unchanged
        if not has_pii:
            return unchanged

        detected = verdict.get("detectedTypes")
        detected_types = [t for t in detected if isinstance(t, str)] if isinstance(detected, list) else []
        return DetectionResult(has_pii=True, masked_text=masked_text, detected_types=detected_types)
