"""Shared constants for mcp-context-proxy."""

VERSION = "0.4.0"

# MCP client/server identification
CLIENT_NAME = "mcpcp-proxy"
SERVER_NAME = "mcp-context-proxy"

# Reserved control fields read from tool-call arguments and never forwarded upstream
GOAL_FIELD = "_mcpcp_goal"
BYPASS_FIELD = "_mcpcp_bypass"

DEFAULT_SEPARATOR = "__"

# Timing (seconds)
CACHE_CLEANUP_INTERVAL_SECONDS = 60.0
DEFAULT_RETRY_CLEANUP_WINDOW_SECONDS = 300.0
DEFAULT_CONNECTION_TIMEOUT_SECONDS = 30.0

# Default network settings for the SSE transport
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000
