"""
Tests for Router: control fields, hidden tools, parameter overrides,
masking of forwarded arguments, dispatch and error results.
"""
import pytest
from unittest.mock import MagicMock

from src.mcpcp.aggregator import Aggregator
from src.mcpcp.constants import BYPASS_FIELD, GOAL_FIELD
from src.mcpcp.errors import NotFoundError
from src.mcpcp.masking.masker import Masker
from src.mcpcp.policy import ToolPolicyResolver
from src.mcpcp.router import Router, extract_control_fields
from tests.utils import FakeConnection, make_config, make_prompt, make_resource, make_tool, stdio_upstream


async def _router(config, *connections, with_masker=False, mode="prefix_all"):
    resolver = ToolPolicyResolver(config)
    aggregator = Aggregator(resolver=resolver, mode=mode)
    for connection in connections:
        aggregator.register(connection)
    await aggregator.refresh()
    masker = Masker(resolver) if with_masker else None
    return Router(aggregator, resolver, masker=masker), aggregator


def test_extract_control_fields():
    forwarded, goal, bypass = extract_control_fields(
        {"q": 1, GOAL_FIELD: "find it", BYPASS_FIELD: True}
    )
    assert forwarded == {"q": 1}
    assert (goal, bypass) == ("find it", True)


def test_invalid_control_fields_are_stripped_and_ignored():
    forwarded, goal, bypass = extract_control_fields(
        {"q": 1, GOAL_FIELD: 42, BYPASS_FIELD: "true"}
    )
    assert forwarded == {"q": 1}
    assert goal is None
    assert bypass is False
    assert extract_control_fields(None) == ({}, None, False)


def test_any_string_goal_is_reported_verbatim():
    _, goal, _ = extract_control_fields({GOAL_FIELD: "   "})
    assert goal == "   "
    _, goal, _ = extract_control_fields({GOAL_FIELD: ""})
    assert goal == ""


@pytest.mark.asyncio
async def test_db_search_scenario():
    config = make_config(
        upstreams=[
            stdio_upstream("db", tools={"search": {"parameterOverrides": {"max_results": 10}}})
        ],
        masking={"enabled": True, "defaultPolicy": {"piiTypes": ["email"]}},
    )
    db = FakeConnection("db", tools=[make_tool("search")])
    router, _ = await _router(config, db, with_masker=True)

    outcome = await router.call_tool(
        "db__search",
        {
            "email": "user@example.com",
            "query": "test",
            GOAL_FIELD: "find user",
            BYPASS_FIELD: True,
        },
    )

    assert db.calls == [("search", {"email": "[EMAIL_1]", "query": "test", "max_results": 10})]
    assert outcome.goal == "find user"
    assert outcome.bypass is True
    assert outcome.restoration_map == {"[EMAIL_1]": "user@example.com"}
    assert not outcome.result.isError


@pytest.mark.asyncio
async def test_parameter_overrides_win_over_caller():
    config = make_config(
        upstreams=[stdio_upstream("fetch", tools={"fetch": {"parameterOverrides": {"max_length": 1000}}})]
    )
    fetch = FakeConnection("fetch", tools=[make_tool("fetch")])
    router, _ = await _router(config, fetch)

    await router.call_tool("fetch__fetch", {"url": "https://x.dev", "max_length": 5000})

    assert fetch.calls[0][1]["max_length"] == 1000


@pytest.mark.asyncio
async def test_hidden_tool_never_reaches_aggregator_or_upstream():
    config = make_config(upstreams=[stdio_upstream("fs", tools={"write_file": {"hidden": True}})])
    fs = FakeConnection("fs", tools=[make_tool("write_file")])
    router, aggregator = await _router(config, fs)
    aggregator.find_tool = MagicMock(wraps=aggregator.find_tool)

    outcome = await router.call_tool("fs__write_file", {"path": "/etc/passwd", GOAL_FIELD: "x"})

    assert outcome.result.isError is True
    assert outcome.result.content[0].text == "Error: Tool 'fs__write_file' not found"
    assert outcome.goal == "x"
    assert outcome.restoration_map is None
    aggregator.find_tool.assert_not_called()
    assert fs.calls == []


@pytest.mark.asyncio
async def test_same_tool_name_on_two_upstreams_routes_to_its_own():
    config = make_config(upstreams=[stdio_upstream("fs"), stdio_upstream("gh")])
    fs = FakeConnection("fs", tools=[make_tool("read_file")])
    gh = FakeConnection("gh", tools=[make_tool("read_file")])
    router, _ = await _router(config, fs, gh)

    fs_outcome = await router.call_tool("fs__read_file", {"path": "a"})
    gh_outcome = await router.call_tool("gh__read_file", {"path": "b"})

    assert fs.calls == [("read_file", {"path": "a"})]
    assert gh.calls == [("read_file", {"path": "b"})]
    assert fs_outcome.result.content[0].text == "fs:read_file"
    assert gh_outcome.result.content[0].text == "gh:read_file"


@pytest.mark.asyncio
async def test_shared_bare_name_keeps_its_owners_policy_in_prefix_conflicts_mode():
    config = make_config(
        upstreams=[
            stdio_upstream("fs", tools={"read_file": {"parameterOverrides": {"encoding": "utf-8"}}}),
            stdio_upstream("gh", tools={"read_file": {"hidden": True}}),
        ],
        namespacing={"mode": "prefix_conflicts"},
    )
    fs = FakeConnection("fs", tools=[make_tool("read_file")])
    gh = FakeConnection("gh", tools=[make_tool("read_file")])
    router, aggregator = await _router(config, fs, gh, mode="prefix_conflicts")

    assert [t.name for t in aggregator.list_tools()] == ["read_file"]

    outcome = await router.call_tool("read_file", {"path": "a"})
    hidden = await router.call_tool("gh__read_file", {"path": "b"})

    assert outcome.result.isError is False
    assert outcome.result.content[0].text == "fs:read_file"
    assert fs.calls == [("read_file", {"path": "a", "encoding": "utf-8"})]
    assert hidden.result.isError is True
    assert gh.calls == []


@pytest.mark.asyncio
async def test_unknown_tool_is_error_result_with_metadata():
    config = make_config(
        upstreams=[stdio_upstream("fs")],
        masking={"enabled": True},
    )
    router, _ = await _router(config, FakeConnection("fs"), with_masker=True)

    outcome = await router.call_tool("fs__nope", {"to": "a@b.io", BYPASS_FIELD: True})

    assert outcome.result.isError is True
    assert outcome.result.content[0].text == "Error: Tool 'fs__nope' not found"
    assert outcome.bypass is True
    assert outcome.restoration_map == {"[EMAIL_1]": "a@b.io"}


@pytest.mark.asyncio
async def test_upstream_exception_becomes_error_result():
    config = make_config(upstreams=[stdio_upstream("fs")])
    fs = FakeConnection("fs", tools=[make_tool("read_file")])
    fs.tool_results["read_file"] = RuntimeError("disk on fire")
    router, _ = await _router(config, fs)

    outcome = await router.call_tool("fs__read_file", {GOAL_FIELD: "read"})

    assert outcome.result.isError is True
    assert outcome.result.content[0].text == "Error calling tool: disk on fire"
    assert outcome.goal == "read"


@pytest.mark.asyncio
async def test_masking_failure_forwards_unmasked():
    config = make_config(upstreams=[stdio_upstream("fs")], masking={"enabled": True})
    fs = FakeConnection("fs", tools=[make_tool("send")])
    router, _ = await _router(config, fs, with_masker=True)

    async def explode(*args, **kwargs):
        raise RuntimeError("masker bug")

    router.masker.mask_tool_args = explode
    outcome = await router.call_tool("fs__send", {"to": "a@b.io"})

    assert fs.calls == [("send", {"to": "a@b.io"})]
    assert outcome.restoration_map is None


@pytest.mark.asyncio
async def test_set_masker_hot_swaps():
    config = make_config(upstreams=[stdio_upstream("fs")], masking={"enabled": True})
    fs = FakeConnection("fs", tools=[make_tool("send")])
    router, _ = await _router(config, fs)

    await router.call_tool("fs__send", {"to": "a@b.io"})
    router.set_masker(Masker(router.resolver))
    await router.call_tool("fs__send", {"to": "a@b.io"})
    router.set_masker(None)
    await router.call_tool("fs__send", {"to": "a@b.io"})

    assert [args["to"] for _, args in fs.calls] == ["a@b.io", "[EMAIL_1]", "a@b.io"]


@pytest.mark.asyncio
async def test_read_resource_and_get_prompt():
    config = make_config(upstreams=[stdio_upstream("fs")])
    fs = FakeConnection(
        "fs",
        resources=[make_resource("file:///docs/readme.md")],
        prompts=[make_prompt("summarize")],
    )
    router, _ = await _router(config, fs)

    result = await router.read_resource("file:///docs/readme.md")
    assert result.contents[0].text == "fs:file:///docs/readme.md"

    prompt = await router.get_prompt("fs__summarize", {"topic": "x"})
    assert fs.prompt_gets == [("summarize", {"topic": "x"})]
    assert prompt.messages[0].content.text == "fs:summarize"


@pytest.mark.asyncio
async def test_missing_resource_and_prompt_raise_not_found():
    config = make_config(upstreams=[stdio_upstream("fs")])
    router, _ = await _router(config, FakeConnection("fs"))

    with pytest.raises(NotFoundError, match="Resource 'file:///missing' not found"):
        await router.read_resource("file:///missing")
    with pytest.raises(NotFoundError, match="Prompt 'fs__nope' not found"):
        await router.get_prompt("fs__nope")


@pytest.mark.asyncio
async def test_upstream_resource_error_propagates():
    config = make_config(upstreams=[stdio_upstream("fs")])
    fs = FakeConnection("fs", resources=[make_resource("file:///docs/readme.md")])

    async def broken(uri):
        raise ConnectionError("gone")

    fs.read_resource = broken
    router, _ = await _router(config, fs)

    with pytest.raises(ConnectionError):
        await router.read_resource("file:///docs/readme.md")
