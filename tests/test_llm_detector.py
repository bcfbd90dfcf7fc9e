import json
import pytest

from src.mcpcp.masking.llm_detector import LLMDetector, extract_json_object
from tests.utils import FakeLLMClient


def test_extract_json_object_finds_first_object_in_prose():
    reply = 'Here it is: {"hasPII": false, "maskedText": "x"} hope that helps {"other": 1}'
    assert extract_json_object(reply) == {"hasPII": False, "maskedText": "x"}


def test_extract_json_object_skips_broken_braces():
    assert extract_json_object('{oops} then {"a": 1}') == {"a": 1}
    assert extract_json_object("no json here") is None


@pytest.mark.asyncio
async def test_detects_and_masks():
    reply = json.dumps(
        {"hasPII": True, "detectedTypes": ["email"], "maskedText": "mail [EMAIL_REDACTED]"}
    )
    llm = FakeLLMClient([reply])
    detector = LLMDetector(llm, model="guard")

    result = await detector.detect_and_mask("mail a@b.io", ["email", "phone"])

    assert result.has_pii is True
    assert result.masked_text == "mail [EMAIL_REDACTED]"
    assert result.detected_types == ["email"]
    prompt = llm.calls[0]["prompt"]
    assert "mail a@b.io" in prompt
    assert "email, phone" in prompt
    assert llm.calls[0]["max_tokens"] == 500


@pytest.mark.asyncio
async def test_token_budget_scales_with_input():
    llm = FakeLLMClient(['{"hasPII": false, "maskedText": ""}'])
    await LLMDetector(llm, model="guard").detect_and_mask("x" * 400, ["email"])
    assert llm.calls[0]["max_tokens"] == 800


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply",
    [
        "I could not find anything.",
        '{"detectedTypes": []}',
        '{"hasPII": "yes", "maskedText": "x"}',
        '{"hasPII": true}',
        '{"hasPII": false, "maskedText": "changed"}',
    ],
)
async def test_fails_open_on_unusable_replies(reply):
    detector = LLMDetector(FakeLLMClient([reply]), model="guard")
    result = await detector.detect_and_mask("original", ["email"])
    assert result.has_pii is False
    assert result.masked_text == "original"


@pytest.mark.asyncio
async def test_fails_open_on_error_and_timeout():
    failing = LLMDetector(FakeLLMClient(error=RuntimeError("boom")), model="guard")
    assert (await failing.detect_and_mask("text", ["email"])).masked_text == "text"

    slow = LLMDetector(FakeLLMClient(["{}"], delay=1.0), model="guard", timeout_seconds=0.01)
    assert (await slow.detect_and_mask("text", ["email"])).has_pii is False
