"""
Tests for the upstream client helpers: command allowlist, env filtering,
and behaviour before a session exists.
"""
import pytest

from src.mcpcp.config import parse_config
from src.mcpcp.upstream import (
    DEFAULT_ALLOWED_COMMANDS,
    UpstreamClient,
    UpstreamConnection,
    filter_env,
    get_allowed_commands,
    validate_command,
)
from tests.utils import FakeConnection


def _client(**upstream):
    raw = {"id": "fs", "command": "npx", **upstream}
    return UpstreamClient(parse_config({"upstreams": [raw]}).upstreams[0])


def test_default_allowlist(monkeypatch):
    monkeypatch.delenv("MCPCP_ALLOWED_COMMANDS", raising=False)
    assert get_allowed_commands() == DEFAULT_ALLOWED_COMMANDS
    validate_command("npx")
    validate_command("/usr/local/bin/uvx")
    with pytest.raises(ValueError, match="not in the allowed commands"):
        validate_command("bash")


def test_allowlist_from_env(monkeypatch):
    monkeypatch.setenv("MCPCP_ALLOWED_COMMANDS", "bash, zsh")
    assert get_allowed_commands() == {"bash", "zsh"}
    validate_command("bash")
    with pytest.raises(ValueError):
        validate_command("npx")


def test_filter_env_drops_protected_vars():
    env = {"PATH": "/evil", "LD_PRELOAD": "x.so", "API_TOKEN": "abc"}
    assert filter_env(env) == {"API_TOKEN": "abc"}


def test_both_client_and_fake_satisfy_protocol():
    assert isinstance(_client(), UpstreamConnection)
    assert isinstance(FakeConnection("x"), UpstreamConnection)


@pytest.mark.asyncio
async def test_unconnected_client():
    client = _client()
    assert client.id == "fs"
    assert client.connected is False
    assert await client.list_tools() == []
    assert await client.list_resources() == []
    assert await client.list_prompts() == []
    with pytest.raises(ConnectionError, match="not connected"):
        await client.call_tool("read_file", {})
    await client.close()


@pytest.mark.asyncio
async def test_disallowed_command_fails_connect(monkeypatch):
    monkeypatch.delenv("MCPCP_ALLOWED_COMMANDS", raising=False)
    client = _client(command="rm")
    with pytest.raises(ValueError):
        await client.connect()
    assert client.connected is False
