"""Exception types raised by the proxy core."""


class ProxyError(Exception):
    """Base class for errors raised by mcp-context-proxy."""


class ConfigError(ProxyError):
    """Invalid or unreadable configuration. Fatal at startup."""


class NotFoundError(ProxyError, LookupError):
    """A tool, resource or prompt is not present in the merged catalog."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"{kind.capitalize()} '{name}' not found")
