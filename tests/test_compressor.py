"""
Tests for Compressor: threshold pass-through, model call, fail-open paths,
caching and the MCP result variants.
"""
import pytest
from mcp import types

from src.mcpcp.compression.compressor import Compressor, compressed_marker
from src.mcpcp.policy import CompressionPolicy
from src.mcpcp.response_cache import ResponseCache
from tests.utils import BrokenTokenizer, FakeLLMClient, FakeTokenizer, text_result, words

POLICY = CompressionPolicy(token_threshold=10, max_output_tokens=50, model="tiny", temperature=0.1)


def _compressor(llm, **kwargs):
    return Compressor(llm, tokenizer=FakeTokenizer(), **kwargs)


@pytest.mark.asyncio
async def test_under_threshold_is_untouched():
    llm = FakeLLMClient(["should not be used"])
    result = await _compressor(llm).compress(words(10), policy=POLICY)

    assert result.was_compressed is False
    assert result.compressed == result.original
    assert result.strategy == "default"
    assert result.original_tokens == 10
    assert llm.calls == []


@pytest.mark.asyncio
async def test_over_threshold_calls_model_with_policy():
    llm = FakeLLMClient(["tiny summary"])
    result = await _compressor(llm).compress(words(40), policy=POLICY, tool_name="fs__read")

    assert result.was_compressed is True
    assert result.compressed == "tiny summary"
    assert (result.original_tokens, result.compressed_tokens) == (40, 2)
    call = llm.calls[0]
    assert call["model"] == "tiny"
    assert call["max_tokens"] == 50
    assert call["temperature"] == 0.1
    assert call["prompt"].startswith("<document>")
    assert compressed_marker(result) == "[compressed from 40 to 2 tokens]\ntiny summary"


@pytest.mark.asyncio
async def test_goal_and_custom_instructions_reach_the_prompt():
    llm = FakeLLMClient(["ok"])
    policy = CompressionPolicy(token_threshold=1, custom_instructions="Keep ids.")
    await _compressor(llm).compress(words(5), policy=policy, goal="list the ids")

    prompt = llm.calls[0]["prompt"]
    assert prompt.endswith("<goal>\nlist the ids\n</goal>")
    assert "ADDITIONAL INSTRUCTIONS: Keep ids." in prompt


@pytest.mark.asyncio
async def test_json_content_uses_json_strategy():
    llm = FakeLLMClient(['{"ok": true}'])
    payload = '{"items": [' + ", ".join(f'{{"id": {i}}}' for i in range(20)) + "]}"
    result = await _compressor(llm).compress(payload, policy=POLICY)

    assert result.strategy == "json"
    assert llm.calls[0]["prompt"].startswith('<document type="json">')


@pytest.mark.asyncio
async def test_model_error_returns_original():
    llm = FakeLLMClient(error=RuntimeError("backend down"))
    text = words(40)
    result = await _compressor(llm).compress(text, policy=POLICY)

    assert result.was_compressed is False
    assert result.compressed == text


@pytest.mark.asyncio
async def test_model_timeout_returns_original():
    llm = FakeLLMClient(["late"], delay=1.0)
    text = words(40)
    result = await _compressor(llm, timeout_seconds=0.01).compress(text, policy=POLICY)

    assert result.was_compressed is False
    assert result.compressed == text


@pytest.mark.asyncio
async def test_empty_model_output_returns_original():
    llm = FakeLLMClient(["   "])
    result = await _compressor(llm).compress(words(40), policy=POLICY)
    assert result.was_compressed is False


@pytest.mark.asyncio
async def test_cache_hit_skips_model():
    llm = FakeLLMClient(["cached summary"])
    compressor = _compressor(llm, cache=ResponseCache())

    first = await compressor.compress(words(40), policy=POLICY)
    second = await compressor.compress(words(40), policy=POLICY)

    assert len(llm.calls) == 1
    assert second.was_compressed is True
    assert second.compressed == first.compressed == "cached summary"


@pytest.mark.asyncio
async def test_cache_is_keyed_by_goal():
    llm = FakeLLMClient(["summary"])
    compressor = _compressor(llm, cache=ResponseCache())

    await compressor.compress(words(40), policy=POLICY, goal="a")
    await compressor.compress(words(40), policy=POLICY, goal="b")

    assert len(llm.calls) == 2


@pytest.mark.asyncio
async def test_zero_cache_ttl_disables_caching():
    llm = FakeLLMClient(["summary"])
    cache = ResponseCache()
    compressor = _compressor(llm, cache=cache)

    await compressor.compress(words(40), policy=POLICY, cache_ttl=0)
    await compressor.compress(words(40), policy=POLICY, cache_ttl=0)

    assert len(llm.calls) == 2
    assert len(cache) == 0


def test_tokenizer_failure_falls_back_to_length_estimate():
    compressor = Compressor(FakeLLMClient(), tokenizer=BrokenTokenizer())
    assert compressor.count_tokens("x" * 40) == 10


@pytest.mark.asyncio
async def test_tool_result_text_parts_are_merged_and_non_text_kept():
    llm = FakeLLMClient(["merged summary"])
    image = types.ImageContent(type="image", data="aGVsbG8=", mimeType="image/png")
    result = types.CallToolResult(
        content=[
            types.TextContent(type="text", text=words(20, "alpha")),
            image,
            types.TextContent(type="text", text=words(20, "beta")),
        ]
    )

    compressed = await _compressor(llm).compress_tool_result(result, policy=POLICY)

    assert len(compressed.content) == 2
    assert compressed.content[0].text == "[compressed from 40 to 2 tokens]\nmerged summary"
    assert compressed.content[1] == image
    # both parts were sent, joined by a newline
    assert f"{words(20, 'alpha')}\n{words(20, 'beta')}" in llm.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_small_tool_result_is_returned_as_is():
    llm = FakeLLMClient(["unused"])
    result = text_result("short answer")
    assert await _compressor(llm).compress_tool_result(result, policy=POLICY) is result


@pytest.mark.asyncio
async def test_tool_result_without_text_is_returned_as_is():
    result = types.CallToolResult(
        content=[types.ImageContent(type="image", data="aGVsbG8=", mimeType="image/png")]
    )
    assert await _compressor(FakeLLMClient()).compress_tool_result(result, policy=POLICY) is result


@pytest.mark.asyncio
async def test_resource_result_is_compressed():
    llm = FakeLLMClient(["resource summary"])
    result = types.ReadResourceResult(
        contents=[types.TextResourceContents(uri="file:///docs/big.md", text=words(40))]
    )

    compressed = await _compressor(llm).compress_resource_result(result, policy=POLICY)

    part = compressed.contents[0]
    assert part.text == "[compressed from 40 to 2 tokens]\nresource summary"
    assert str(part.uri) == "file:///docs/big.md"
